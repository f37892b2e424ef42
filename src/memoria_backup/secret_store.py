"""
Secure secret store: where key metadata and historical keys live.

The vault only needs opaque get/set/delete by string key. The on-disk
store keeps one file per key, owner-read/write only, written atomically
with the tmp + rename pattern.

Storage layout:
    ~/.memoria-backup/secrets/
    ├── memoria_key_metadata
    └── memoria_historical_keys
"""

from __future__ import annotations

import logging
import os
import re
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

logger = logging.getLogger("memoria_backup.secret_store")

_SAFE_NAME = re.compile(r"^[A-Za-z0-9_.-]+$")


class SecretStore(ABC):
    """Abstract confidential, durable key-value store."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Return the stored value, or None if absent."""

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        """Store ``value`` under ``key``, replacing any previous value."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove ``key``. Missing keys are ignored."""


class MemorySecretStore(SecretStore):
    """Process-local store. Secrets vanish when the process exits."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)


class FileSecretStore(SecretStore):
    """One 0600 file per secret under a private directory.

    Args:
        directory: Directory to hold the secret files. Created 0700.
    """

    def __init__(self, directory: Path) -> None:
        self._dir = directory

    def _path(self, key: str) -> Path:
        if not _SAFE_NAME.match(key):
            raise ValueError(f"Invalid secret name: {key!r}")
        return self._dir / key

    def get(self, key: str) -> Optional[str]:
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def set(self, key: str, value: str) -> None:
        self._dir.mkdir(parents=True, exist_ok=True)
        os.chmod(self._dir, 0o700)
        path = self._path(key)
        tmp_path = path.with_name(f".{key}.tmp")
        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(value)
        tmp_path.replace(path)

    def delete(self, key: str) -> None:
        path = self._path(key)
        if path.exists():
            path.unlink()
            logger.debug("Deleted secret %s", key)
