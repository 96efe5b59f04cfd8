"""Durable record of installed formulas."""

import json
import os
from pathlib import Path
import tempfile
from typing import Protocol

from pyvider.telemetry import logger

from .exceptions import ReceiptError
from .models import FORMULA_NAME_PATTERN, Receipt


class ReceiptStore(Protocol):
    def get(self, name: str) -> Receipt | None: ...

    def put(self, receipt: Receipt) -> None: ...

    def remove(self, name: str) -> bool: ...

    def list(self) -> list[Receipt]: ...


class FileReceiptStore:
    """Keeps one JSON document per formula name under `root`.

    `put` replaces the whole document atomically; readers never observe a
    partially written receipt.
    """

    SUFFIX = ".json"

    def __init__(self, root: Path) -> None:
        self.root = root

    def _path(self, name: str) -> Path:
        if not FORMULA_NAME_PATTERN.match(name):
            raise ReceiptError(f"Invalid formula name '{name}'.")
        return self.root / f"{name}{self.SUFFIX}"

    def get(self, name: str) -> Receipt | None:
        path = self._path(name)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            return Receipt.from_dict(json.loads(text))
        except (ValueError, KeyError, TypeError) as e:
            raise ReceiptError(f"Corrupt receipt at {path}: {e}") from e

    def put(self, receipt: Receipt) -> None:
        path = self._path(receipt.name)
        self.root.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(receipt.to_dict(), indent=2, sort_keys=True)

        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{receipt.name}.", suffix=".tmp", dir=self.root
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        logger.debug("Receipt written", formula=receipt.name, path=str(path))

    def remove(self, name: str) -> bool:
        path = self._path(name)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        logger.debug("Receipt removed", formula=name)
        return True

    def list(self) -> list[Receipt]:
        if not self.root.is_dir():
            return []
        receipts = []
        for path in sorted(self.root.glob(f"*{self.SUFFIX}")):
            try:
                receipt = self.get(path.stem)
            except ReceiptError as e:
                logger.warning("Ignoring unreadable receipt", path=str(path), error=str(e))
                continue
            if receipt is not None:
                receipts.append(receipt)
        return receipts
