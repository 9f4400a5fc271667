"""
Key-value persistence used for credentials and the usage ledger.

Values must be JSON-serializable. Two backends are provided: an in-memory
dict and a single JSON file.
"""

import json
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any


class StorageError(Exception):
    """Storage related errors"""
    pass


class KeyValueStore(ABC):
    """get / set / remove over JSON-serializable values."""

    @abstractmethod
    def get(self, key: str, default: Any = None) -> Any:
        ...

    @abstractmethod
    def set(self, key: str, value: Any) -> None:
        ...

    @abstractmethod
    def remove(self, key: str) -> None:
        ...

    @abstractmethod
    def keys(self) -> list[str]:
        ...


class MemoryStore(KeyValueStore):
    """In-process store; values are round-tripped through JSON like the file store."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    def get(self, key: str, default: Any = None) -> Any:
        if key not in self._data:
            return default
        return json.loads(self._data[key])

    def set(self, key: str, value: Any) -> None:
        try:
            self._data[key] = json.dumps(value)
        except TypeError as e:
            raise StorageError(f"Value for '{key}' is not JSON-serializable: {e}")

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._data.keys())


class JsonFileStore(KeyValueStore):
    """
    Store backed by one JSON object on disk.

    Each ``set`` rewrites the file through a temporary file and an atomic
    rename, so a record is never half-written.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def _read(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise StorageError(f"Corrupt store file {self.path}: {e}")
        if not isinstance(data, dict):
            raise StorageError(f"Store file {self.path} must contain a JSON object")
        return data

    def _write(self, data: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, ensure_ascii=False)
            os.replace(tmp_path, self.path)
        except (OSError, TypeError) as e:
            Path(tmp_path).unlink(missing_ok=True)
            raise StorageError(f"Failed to write store file {self.path}: {e}")

    def get(self, key: str, default: Any = None) -> Any:
        return self._read().get(key, default)

    def set(self, key: str, value: Any) -> None:
        data = self._read()
        data[key] = value
        self._write(data)

    def remove(self, key: str) -> None:
        data = self._read()
        if key in data:
            del data[key]
            self._write(data)

    def keys(self) -> list[str]:
        return list(self._read().keys())


class CredentialStore:
    """
    Per-provider API keys, stored under ``api_key_<provider>``.
    """

    PREFIX = "api_key_"

    def __init__(self, store: KeyValueStore | None = None):
        self._store = store or MemoryStore()

    def get(self, provider: str) -> str | None:
        return self._store.get(f"{self.PREFIX}{provider}") or None

    def set(self, provider: str, credential: str) -> None:
        if not credential or not credential.strip():
            raise StorageError("API key cannot be empty")
        self._store.set(f"{self.PREFIX}{provider}", credential.strip())

    def remove(self, provider: str) -> None:
        self._store.remove(f"{self.PREFIX}{provider}")

    def has(self, provider: str) -> bool:
        return bool(self.get(provider))

    def masked(self) -> dict[str, str | None]:
        """Stored providers mapped to ``***`` plus the last four characters."""
        result = {}
        for key in self._store.keys():
            if key.startswith(self.PREFIX):
                value = self._store.get(key)
                result[key[len(self.PREFIX):]] = f"***{value[-4:]}" if value else None
        return result
