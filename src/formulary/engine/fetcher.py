"""Materializes formula sources into build directories."""

from pathlib import Path
import shutil
import tarfile
import tempfile
from typing import Protocol
from urllib.parse import urlparse

from pyvider.telemetry import logger

from ..checksums import verify_file
from ..exceptions import ExecutionError, FetchError
from ..models import CommandSpec, Source
from .executor import CancelToken, Executor


class SourceFetcher(Protocol):
    def resolve_ref(self, source: Source) -> str:
        """Returns the concrete ref a fetch would use right now."""
        ...

    def fetch(
        self, source: Source, destination: Path, cancel: CancelToken | None = None
    ) -> str:
        """Places the source tree in `destination` and returns the ref used."""
        ...


class DefaultFetcher:
    """Fetches with `git` for git-head sources and `curl` for archives."""

    def __init__(self, executor: Executor) -> None:
        self.executor = executor

    def resolve_ref(self, source: Source) -> str:
        if source.is_archive:
            return source.checksum or ""
        spec = CommandSpec(
            program="git",
            arguments=("ls-remote", source.url, f"refs/heads/{source.ref}"),
        )
        result = self._run(spec, f"Cannot query {source.url}")
        first_line = result.output.strip().splitlines()[:1]
        if not first_line:
            raise FetchError(f"Branch '{source.ref}' not found at {source.url}.")
        return first_line[0].split()[0]

    def fetch(
        self, source: Source, destination: Path, cancel: CancelToken | None = None
    ) -> str:
        destination.mkdir(parents=True, exist_ok=True)
        if source.is_archive:
            return self._fetch_archive(source, destination, cancel)
        return self._fetch_git(source, destination, cancel)

    def _fetch_git(self, source: Source, destination: Path, cancel: CancelToken | None) -> str:
        logger.info(f"Cloning {source.url} ({source.ref})", destination=str(destination))
        clone = CommandSpec(
            program="git",
            arguments=(
                "clone",
                "--depth",
                "1",
                "--branch",
                source.ref or "main",
                source.url,
                str(destination),
            ),
            working_directory=str(destination.parent),
        )
        self._run(clone, f"Cannot clone {source.url}", cancel)
        rev_parse = CommandSpec(
            program="git",
            arguments=("rev-parse", "HEAD"),
            working_directory=str(destination),
        )
        return self._run(rev_parse, "Cannot read cloned revision", cancel).output.strip()

    def _fetch_archive(self, source: Source, destination: Path, cancel: CancelToken | None) -> str:
        checksum = source.checksum
        if not checksum:
            raise FetchError("Refusing to download an archive without a checksum.")

        filename = Path(urlparse(source.url).path).name or "source.tar.gz"
        with tempfile.TemporaryDirectory(prefix="formulary_fetch_") as tmp_str:
            archive = Path(tmp_str) / filename
            logger.info(f"Downloading {source.url}")
            download = CommandSpec(
                program="curl",
                arguments=("-fsSL", "-o", str(archive), source.url),
                working_directory=tmp_str,
            )
            self._run(download, f"Cannot download {source.url}", cancel)
            verify_file(archive, checksum)
            try:
                shutil.unpack_archive(str(archive), str(destination), filter="data")
            except (tarfile.TarError, OSError, ValueError) as e:
                raise FetchError(f"Cannot unpack {filename}: {e}") from e

        _flatten_single_directory(destination)
        return checksum

    def _run(self, spec: CommandSpec, failure: str, cancel: CancelToken | None = None):
        try:
            return self.executor.run(spec, cancel=cancel, label="fetch")
        except ExecutionError as e:
            raise FetchError(f"{failure}: {e.message}", step="fetch", output_tail=e.output_tail) from e


def _flatten_single_directory(destination: Path) -> None:
    """Hoists the contents of a lone top-level directory, as tarballs usually ship."""
    entries = list(destination.iterdir())
    if len(entries) != 1 or not entries[0].is_dir():
        return
    staging = entries[0].rename(destination / f".{entries[0].name}.unpack")
    for child in list(staging.iterdir()):
        shutil.move(str(child), str(destination / child.name))
    staging.rmdir()
