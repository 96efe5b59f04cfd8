"""Pytest fixtures for the entire formulary test suite."""

from collections.abc import Callable
import json
from pathlib import Path
import sys
from typing import Any

import pytest

from formulary.config import EngineConfig
from formulary.engine.executor import CancelToken
from formulary.engine.orchestrator import Orchestrator
from formulary.models import CommandSpec, Formula, Source
from formulary.receipts import FileReceiptStore

DEFAULT_REF = "a" * 40


class FakeFetcher:
    """Stands in for git/curl: writes a marker file and reports a fixed ref."""

    def __init__(self) -> None:
        self.refs: dict[str, str] = {}
        self.fetched: list[str] = []
        self.on_fetch: Callable[[Source], None] | None = None

    def resolve_ref(self, source: Source) -> str:
        return self.refs.get(source.url, DEFAULT_REF)

    def fetch(
        self, source: Source, destination: Path, cancel: CancelToken | None = None
    ) -> str:
        destination.mkdir(parents=True, exist_ok=True)
        (destination / "SOURCE").write_text(source.url)
        self.fetched.append(source.url)
        if self.on_fetch is not None:
            self.on_fetch(source)
        return self.resolve_ref(source)


def formula_url(name: str) -> str:
    return f"https://example.invalid/{name}.git"


def py_step(code: str, *args: str, working_directory: str | None = None) -> CommandSpec:
    """A step that runs a Python snippet with the current interpreter."""
    return CommandSpec(
        program=sys.executable,
        arguments=("-c", code, *args),
        working_directory=working_directory,
    )


APPEND_LINE = "import sys; open(sys.argv[1], 'a').write('x\\n')"
WRITE_FILE = (
    "import pathlib, sys; p = pathlib.Path(sys.argv[1]); "
    "p.parent.mkdir(parents=True, exist_ok=True); p.write_text('ok')"
)
FAIL = "import sys; print('boom'); sys.exit(3)"


@pytest.fixture
def engine_config(tmp_path: Path) -> EngineConfig:
    return EngineConfig(
        prefix=tmp_path / "prefix",
        formula_dir=tmp_path / "formulae",
        state_dir=tmp_path / "state",
        lock_timeout=5.0,
        grace_period=1.0,
    )


@pytest.fixture
def store(engine_config: EngineConfig) -> FileReceiptStore:
    return FileReceiptStore(engine_config.receipts_dir)


@pytest.fixture
def fake_fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture
def orchestrator(
    engine_config: EngineConfig, store: FileReceiptStore, fake_fetcher: FakeFetcher
) -> Orchestrator:
    return Orchestrator(engine_config, store, fetcher=fake_fetcher)


@pytest.fixture
def make_formula() -> Callable[..., Formula]:
    """A factory fixture for formulas whose steps are Python one-liners."""

    def _make(
        name: str,
        deps: tuple[str, ...] = (),
        install_steps: tuple[CommandSpec, ...] | None = None,
        test_steps: tuple[CommandSpec, ...] | None = None,
        required_tools: tuple[str, ...] = (),
    ) -> Formula:
        return Formula(
            name=name,
            description=f"{name} test formula",
            homepage="https://example.invalid",
            license="MIT",
            source=Source(type="git-head", url=formula_url(name), ref="main"),
            build_dependencies=deps,
            install_steps=install_steps if install_steps is not None else (py_step("pass"),),
            test_steps=test_steps if test_steps is not None else (py_step("pass"),),
            required_tools=required_tools,
        )

    return _make


@pytest.fixture
def write_formula() -> Callable[..., Path]:
    """A factory fixture that writes a TOML formula declaration to a directory."""

    def _write(
        directory: Path,
        name: str,
        deps: list[str] | None = None,
        install_steps: list[list[str]] | None = None,
        test_steps: list[list[str]] | None = None,
        extra: dict[str, Any] | None = None,
    ) -> Path:
        directory.mkdir(parents=True, exist_ok=True)
        install_steps = install_steps if install_steps is not None else [[sys.executable, "-c", "pass"]]
        test_steps = test_steps if test_steps is not None else [[sys.executable, "-c", "pass"]]
        lines = [
            f"name = {json.dumps(name)}",
            f"description = {json.dumps(name + ' test formula')}",
            'homepage = "https://example.invalid"',
            'license = "MIT"',
            f"build_dependencies = {json.dumps(deps or [])}",
            f"install_steps = {json.dumps(install_steps)}",
            f"test_steps = {json.dumps(test_steps)}",
        ]
        for key, value in (extra or {}).items():
            lines.append(f"{key} = {json.dumps(value)}")
        lines += [
            "",
            "[source]",
            'type = "git-head"',
            f"url = {json.dumps(formula_url(name))}",
            'ref = "main"',
        ]
        path = directory / f"{name}.toml"
        path.write_text("\n".join(lines) + "\n")
        return path

    return _write
