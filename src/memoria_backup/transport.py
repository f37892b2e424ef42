"""
Object-storage transport: where encrypted chunks travel.

The pipelines speak to a chunked object store through ObjectStorage.
Only ciphertext and manifests ever cross this boundary. Delivery is
assumed at-least-once; the pipelines' own checksum step, not a
transport return code, decides whether a backup succeeded.

LocalDirectoryStorage writes to a plain directory, which covers USB
drives, NAS mounts, and any folder a sync client already mirrors.

Layout:
    <root>/
    └── backup_20261018T020000Z_1a2b3c/
        ├── chunk-00000.bin
        ├── chunk-00001.bin
        └── manifest.json        # written last, only after verification
"""

from __future__ import annotations

import asyncio
import logging
import re
import shutil
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from .models import BackupManifest

logger = logging.getLogger("memoria_backup.transport")

MANIFEST_NAME = "manifest.json"
_SAFE_ID = re.compile(r"^[A-Za-z0-9_.-]+$")


class TransportError(Exception):
    """A transport operation failed.

    Attributes:
        transient: Whether retrying the same call may succeed.
    """

    def __init__(self, message: str, transient: bool = False) -> None:
        super().__init__(message)
        self.transient = transient


class ConnectionLostError(TransportError):
    """Connectivity to the storage provider dropped."""

    def __init__(self, message: str = "Connection to storage lost") -> None:
        super().__init__(message, transient=False)


class ObjectNotFoundError(TransportError):
    """The requested chunk or manifest does not exist."""

    def __init__(self, message: str) -> None:
        super().__init__(message, transient=False)


class ObjectStorage(ABC):
    """Abstract chunked object store."""

    @abstractmethod
    async def put_chunk(self, backup_id: str, index: int, data: bytes) -> None:
        """Store one chunk."""

    @abstractmethod
    async def get_chunk(self, backup_id: str, index: int) -> bytes:
        """Fetch one chunk.

        Raises:
            ObjectNotFoundError: If the chunk does not exist.
        """

    @abstractmethod
    async def put_manifest(self, manifest: BackupManifest) -> None:
        """Store a manifest, making the backup listable."""

    @abstractmethod
    async def get_manifest(self, backup_id: str) -> Optional[BackupManifest]:
        """Fetch a manifest, or None if the backup has none."""

    @abstractmethod
    async def list_backups(self, region: Optional[str] = None) -> list[BackupManifest]:
        """Manifests of every listable backup, newest first."""

    @abstractmethod
    async def delete_backup(self, backup_id: str) -> None:
        """Remove every chunk and the manifest of a backup."""


class LocalDirectoryStorage(ObjectStorage):
    """Directory-per-backup storage on a local or mounted filesystem.

    A missing root is treated as a lost connection (an unmounted drive),
    not as an empty store.

    Args:
        root: Directory that holds the backups.
        create: Create ``root`` now if it does not exist.
    """

    def __init__(self, root: Path, create: bool = True) -> None:
        self.root = root
        if create:
            self.root.mkdir(parents=True, exist_ok=True)

    def _backup_dir(self, backup_id: str) -> Path:
        if not _SAFE_ID.match(backup_id):
            raise TransportError(f"Invalid backup id: {backup_id!r}")
        if not self.root.is_dir():
            raise ConnectionLostError(f"Storage root unavailable: {self.root}")
        return self.root / backup_id

    @staticmethod
    def _chunk_name(index: int) -> str:
        return f"chunk-{index:05d}.bin"

    async def put_chunk(self, backup_id: str, index: int, data: bytes) -> None:
        await asyncio.to_thread(self._put_chunk_sync, backup_id, index, data)

    async def get_chunk(self, backup_id: str, index: int) -> bytes:
        return await asyncio.to_thread(self._get_chunk_sync, backup_id, index)

    async def put_manifest(self, manifest: BackupManifest) -> None:
        await asyncio.to_thread(self._put_manifest_sync, manifest)

    async def get_manifest(self, backup_id: str) -> Optional[BackupManifest]:
        return await asyncio.to_thread(self._get_manifest_sync, backup_id)

    async def list_backups(self, region: Optional[str] = None) -> list[BackupManifest]:
        return await asyncio.to_thread(self._list_sync, region)

    async def delete_backup(self, backup_id: str) -> None:
        await asyncio.to_thread(self._delete_sync, backup_id)

    def _put_chunk_sync(self, backup_id: str, index: int, data: bytes) -> None:
        target = self._backup_dir(backup_id)
        try:
            target.mkdir(exist_ok=True)
            tmp = target / f".{self._chunk_name(index)}.tmp"
            tmp.write_bytes(data)
            tmp.replace(target / self._chunk_name(index))
        except OSError as exc:
            raise TransportError(f"Chunk write failed: {exc}") from exc

    def _get_chunk_sync(self, backup_id: str, index: int) -> bytes:
        path = self._backup_dir(backup_id) / self._chunk_name(index)
        if not path.exists():
            raise ObjectNotFoundError(f"Chunk {index} of {backup_id} not found")
        try:
            return path.read_bytes()
        except OSError as exc:
            raise TransportError(f"Chunk read failed: {exc}") from exc

    def _put_manifest_sync(self, manifest: BackupManifest) -> None:
        target = self._backup_dir(manifest.backup_id)
        try:
            target.mkdir(exist_ok=True)
            tmp = target / f".{MANIFEST_NAME}.tmp"
            tmp.write_text(manifest.model_dump_json(indent=2), encoding="utf-8")
            tmp.replace(target / MANIFEST_NAME)
        except OSError as exc:
            raise TransportError(f"Manifest write failed: {exc}") from exc

    def _get_manifest_sync(self, backup_id: str) -> Optional[BackupManifest]:
        path = self._backup_dir(backup_id) / MANIFEST_NAME
        if not path.exists():
            return None
        try:
            return BackupManifest.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as exc:
            logger.warning("Unreadable manifest for %s: %s", backup_id, exc)
            return None

    def _list_sync(self, region: Optional[str]) -> list[BackupManifest]:
        if not self.root.is_dir():
            raise ConnectionLostError(f"Storage root unavailable: {self.root}")
        manifests = []
        for d in self.root.iterdir():
            if not d.is_dir() or not _SAFE_ID.match(d.name):
                continue
            manifest = self._get_manifest_sync(d.name)
            if manifest is None:
                continue
            if region is None or manifest.region == region:
                manifests.append(manifest)
        return sorted(manifests, key=lambda m: m.created_at, reverse=True)

    def _delete_sync(self, backup_id: str) -> None:
        target = self._backup_dir(backup_id)
        if not target.exists():
            return
        try:
            shutil.rmtree(target)
        except OSError as exc:
            raise TransportError(f"Delete failed: {exc}") from exc
        logger.info("Deleted backup %s from %s", backup_id, self.root)
