"""
Centralized checksum handling for archive sources.
"""

from pathlib import Path
import re

from cryptography.hazmat.primitives import hashes

from .exceptions import FetchError, IntegrityConfigError

_SHA256_HEX = re.compile(r"^[0-9a-f]{64}\Z")
_CHUNK_SIZE = 1024 * 1024


def normalize_checksum(checksum: str) -> str:
    """Returns the checksum as `sha256:<hex>`, accepting a bare hex digest."""
    value = checksum.strip().lower()
    algorithm, sep, digest = value.partition(":")
    if not sep:
        algorithm, digest = "sha256", value
    if algorithm != "sha256":
        raise IntegrityConfigError(f"Unsupported checksum algorithm '{algorithm}'.")
    if not _SHA256_HEX.match(digest):
        raise IntegrityConfigError(
            "Checksum must be a 64-character hex SHA-256 digest."
        )
    return f"sha256:{digest}"


def sha256_file(path: Path) -> str:
    digest = hashes.Hash(hashes.SHA256())
    with path.open("rb") as f:
        while chunk := f.read(_CHUNK_SIZE):
            digest.update(chunk)
    return digest.finalize().hex()


def verify_file(path: Path, expected: str) -> None:
    """Raises FetchError unless `path` hashes to `expected`."""
    expected_digest = normalize_checksum(expected).partition(":")[2]
    actual = sha256_file(path)
    if actual != expected_digest:
        raise FetchError(
            f"Checksum mismatch for {path.name}: expected {expected_digest}, got {actual}."
        )
