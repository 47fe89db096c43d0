"""
Keyed storage backends for data that must survive a process restart.

Used by the persisted cache tier and by the token store.
"""

import hashlib
import json
from pathlib import Path
from typing import Any, Protocol

from loguru import logger

from krios.services.errors import CacheError


class PersistentStore(Protocol):
    """Minimal keyed storage contract."""

    def get(self, key: str) -> Any | None: ...

    def set(self, key: str, value: Any) -> None: ...

    def delete(self, key: str) -> None: ...

    def keys(self) -> list[str]: ...

    def clear(self) -> None: ...


class MemoryStore:
    """Dictionary-backed store, useful for tests and ephemeral sessions."""

    def __init__(self):
        self._data: dict[str, str] = {}

    def get(self, key: str) -> Any | None:
        raw = self._data.get(key)
        return json.loads(raw) if raw is not None else None

    def set(self, key: str, value: Any) -> None:
        # Serialize on write so stored values never alias caller objects
        self._data[key] = json.dumps(value)

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._data)

    def clear(self) -> None:
        self._data.clear()


class JsonFileStore:
    """
    One JSON file per key inside a directory.

    File names are hashes of the key; the key itself is stored inside the
    file so ``keys()`` can recover it.
    """

    def __init__(self, directory: str | Path, prefix: str = "krios_cache_"):
        self._dir = Path(directory)
        self._prefix = prefix
        try:
            self._dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise CacheError(f"Cannot use cache directory '{self._dir}': {e}") from e

    def _path(self, key: str) -> Path:
        digest = hashlib.sha256(key.encode()).hexdigest()[:32]
        return self._dir / f"{self._prefix}{digest}.json"

    def _files(self) -> list[Path]:
        return sorted(self._dir.glob(f"{self._prefix}*.json"))

    def get(self, key: str) -> Any | None:
        path = self._path(key)
        if not path.exists():
            return None
        record = json.loads(path.read_text(encoding="utf-8"))
        return record.get("value")

    def set(self, key: str, value: Any) -> None:
        path = self._path(key)
        tmp = path.with_suffix(".tmp")
        tmp.write_text(json.dumps({"key": key, "value": value}), encoding="utf-8")
        tmp.replace(path)

    def delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)

    def keys(self) -> list[str]:
        keys = []
        for path in self._files():
            try:
                record = json.loads(path.read_text(encoding="utf-8"))
                keys.append(record["key"])
            except (OSError, ValueError, KeyError, TypeError):
                logger.warning(f"Removing unreadable store file: {path.name}")
                path.unlink(missing_ok=True)
        return keys

    def clear(self) -> None:
        for path in self._files():
            path.unlink(missing_ok=True)
