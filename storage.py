"""Key-value string stores with a finite, shared quota.

Occupancy is counted the way browser local storage counts it: the sum of
``len(key) + len(value)`` over every key held, whoever wrote it.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Dict, Iterable, Optional

from config import CONFIG_DIR, STORAGE_QUOTA_BYTES
from errors import StorageQuotaError

logger = logging.getLogger(__name__)


def occupancy(items: Iterable[tuple[str, str]]) -> int:
    return sum(len(key) + len(value) for key, value in items)


class InMemoryStore:
    def __init__(self, quota: int = STORAGE_QUOTA_BYTES, initial: Optional[Dict[str, str]] = None) -> None:
        self.quota = quota
        self._data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        _check_quota(self._data, key, value, self.quota)
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def items(self) -> Iterable[tuple[str, str]]:
        return list(self._data.items())


class JsonFileStore:
    """Store every key in one JSON object on disk."""

    def __init__(self, path: Path | None = None, quota: int = STORAGE_QUOTA_BYTES) -> None:
        self._path = path or CONFIG_DIR / "storage.json"
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self.quota = quota

    def get(self, key: str) -> Optional[str]:
        value = self._read_all().get(key)
        return value if isinstance(value, str) else None

    def set(self, key: str, value: str) -> None:
        data = self._read_all()
        _check_quota(data, key, value, self.quota)
        data[key] = value
        self._write_all(data)

    def remove(self, key: str) -> None:
        data = self._read_all()
        if key in data:
            del data[key]
            self._write_all(data)

    def items(self) -> Iterable[tuple[str, str]]:
        return [(k, v) for k, v in self._read_all().items() if isinstance(v, str)]

    def _read_all(self) -> dict:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as exc:
            logger.warning("storage file %s unreadable: %s", self._path, exc)
            return {}
        return data if isinstance(data, dict) else {}

    def _write_all(self, data: dict) -> None:
        try:
            self._path.write_text(json.dumps(data, ensure_ascii=False), encoding="utf-8")
        except OSError as exc:
            raise StorageQuotaError(f"write to {self._path} failed: {exc}") from exc


def _check_quota(data: Dict[str, str], key: str, value: str, quota: int) -> None:
    others = occupancy((k, v) for k, v in data.items() if k != key and isinstance(v, str))
    needed = others + len(key) + len(value)
    if needed > quota:
        raise StorageQuotaError(f"quota exceeded: {needed} > {quota}")
