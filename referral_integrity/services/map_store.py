from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

SNAPSHOT_SUFFIX = "-prev"


class MapLoadError(RuntimeError):
    """The referral map could not be read; nothing may be written."""


@dataclass(slots=True)
class LoadedMap:
    raw_bytes: bytes
    payload: dict[str, Any]


class MapStore:
    def __init__(self, path: str | os.PathLike[str]) -> None:
        self.path = Path(path)

    @property
    def snapshot_path(self) -> Path:
        return self.path.with_name(f"{self.path.stem}{SNAPSHOT_SUFFIX}{self.path.suffix}")

    def load(self) -> LoadedMap:
        try:
            raw_bytes = self.path.read_bytes()
        except FileNotFoundError as exc:
            raise MapLoadError(f"referral map not found at {self.path}") from exc
        except OSError as exc:
            raise MapLoadError(f"referral map unreadable at {self.path}: {exc}") from exc

        try:
            payload = json.loads(raw_bytes.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise MapLoadError(f"referral map at {self.path} is not valid JSON: {exc}") from exc
        if not isinstance(payload, dict):
            raise MapLoadError(f"referral map at {self.path} must be a JSON object")
        return LoadedMap(raw_bytes=raw_bytes, payload=payload)

    def write(self, payload: dict[str, Any]) -> None:
        data = (json.dumps(payload, indent=2, ensure_ascii=False) + "\n").encode("utf-8")
        _write_atomic(self.path, data)
        logger.info("wrote referral map: %s", self.path)

    def write_snapshot(self, raw_bytes: bytes) -> None:
        _write_atomic(self.snapshot_path, raw_bytes)
        logger.info("wrote rollback snapshot: %s", self.snapshot_path)


def _write_atomic(path: Path, data: bytes) -> None:
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise
