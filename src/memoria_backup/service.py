"""
BackupService: one object wiring the vault, both pipelines, history,
health, and audit together.

Every collaborator is injected, so tests pass in-memory fakes and the
CLI uses ``BackupService.open(home)`` for the on-disk defaults:

    ~/.memoria-backup/
    ├── config.yaml          # BackupConfig
    ├── backup-status.json   # BackupHistory
    ├── audit.log            # AuditLog (JSONL)
    ├── secrets/             # FileSecretStore (0700 / 0600)
    ├── memories/            # JsonDirectoryStore
    └── storage/             # LocalDirectoryStorage (default target)
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Optional, Union

from . import BACKUP_HOME
from .audit import AUDIT_LOG_NAME, AuditAction, AuditLog
from .backup import BackupPipeline
from .config import BackupConfig, load_config, save_config
from .device import DeviceMonitor, HostDeviceMonitor
from .errors import BackupError, ErrorCode
from .health import HealthReporter
from .history import STATUS_FILENAME, BackupHistory
from .keyvault import KeyVault
from .models import (
    BackupManifest,
    BackupStatus,
    BackupValidation,
    EncryptedBlob,
    HealthReport,
    KeyMaterial,
    RestoreSummary,
    utcnow,
)
from .restore import RestorePipeline
from .runs import BackupCallback, RestoreCallback
from .secret_store import FileSecretStore, SecretStore
from .store import JsonDirectoryStore, MemoryStore
from .transport import ConnectionLostError, LocalDirectoryStorage, ObjectStorage, TransportError

logger = logging.getLogger("memoria_backup.service")


class BackupService:
    """Facade over key management, backup, restore, and health.

    Args:
        secret_store: Where the vault persists key metadata.
        store: Local memories.
        device: Network and battery state.
        storage: Backup destination.
        config: Current settings.
        history: Persisted counters. In-memory if omitted.
        audit: Audit log. In-memory if omitted.
        home: Directory settings are saved to. ``None`` disables saving.
    """

    def __init__(
        self,
        secret_store: SecretStore,
        store: MemoryStore,
        device: DeviceMonitor,
        storage: ObjectStorage,
        config: Optional[BackupConfig] = None,
        history: Optional[BackupHistory] = None,
        audit: Optional[AuditLog] = None,
        home: Optional[Path] = None,
    ) -> None:
        self.config = config or BackupConfig()
        self.home = home
        self.audit = audit or AuditLog()
        self.history = history or BackupHistory(storage_limit=self.config.storage_limit_bytes)
        self.vault = KeyVault(secret_store, self.audit)
        self.storage = storage
        self.backups = BackupPipeline(
            self.vault, store, device, storage, self.config, self.history, self.audit,
        )
        self.restores = RestorePipeline(
            self.vault, store, storage, self.config, self.history, self.audit,
        )
        self.health_reporter = HealthReporter(self.history, self.config)

    @classmethod
    def open(
        cls,
        home: Optional[Union[str, Path]] = None,
        storage_root: Optional[Union[str, Path]] = None,
        device: Optional[DeviceMonitor] = None,
    ) -> "BackupService":
        """Build a service over the on-disk layout under ``home``.

        Args:
            home: Backup home. Defaults to ``MEMORIA_BACKUP_HOME`` or
                ``~/.memoria-backup``.
            storage_root: Backup destination directory, e.g. a mounted
                USB drive. Defaults to ``<home>/storage``.
            device: Device monitor. Defaults to HostDeviceMonitor.
        """
        home_path = Path(home or BACKUP_HOME).expanduser()
        config = load_config(home_path)
        storage_path = Path(storage_root).expanduser() if storage_root else home_path / "storage"
        return cls(
            secret_store=FileSecretStore(home_path / "secrets"),
            store=JsonDirectoryStore(home_path / "memories"),
            device=device or HostDeviceMonitor(),
            storage=LocalDirectoryStorage(storage_path),
            config=config,
            history=BackupHistory(home_path / STATUS_FILENAME, config.storage_limit_bytes),
            audit=AuditLog(home_path / AUDIT_LOG_NAME),
            home=home_path,
        )

    # -------------------------------------------------------------------
    # Keys
    # -------------------------------------------------------------------

    async def initialize(self, password: str) -> KeyMaterial:
        """Unlock (or create) the vault with ``password``."""
        return await self.vault.initialize(password)

    async def rotate_keys(self, password: str) -> KeyMaterial:
        """Retire the current key and derive a new one."""
        return await self.vault.rotate_keys(password)

    async def export_keys(self, export_password: str) -> EncryptedBlob:
        """Sealed bundle of every key, for moving to another device."""
        return await self.vault.export_keys(export_password)

    async def import_keys(self, blob: EncryptedBlob, import_password: str) -> KeyMaterial:
        """Install keys from an exported bundle."""
        return await self.vault.import_keys(blob, import_password)

    async def clear_keys(self) -> None:
        """Destroy every key. Existing backups become unreadable."""
        await self.vault.clear_keys()

    def rotation_due(self, now: Optional[datetime] = None) -> bool:
        """Whether the current key is older than ``key_rotation_days``."""
        return self.vault.rotation_due(self.config.key_rotation_days, now)

    # -------------------------------------------------------------------
    # Backups
    # -------------------------------------------------------------------

    async def backup(self, manual: bool = True, on_progress: Optional[BackupCallback] = None) -> str:
        """Create a backup. Returns its id."""
        return await self.backups.run(manual=manual, on_progress=on_progress)

    async def restore(
        self,
        backup_id: str,
        on_progress: Optional[RestoreCallback] = None,
    ) -> RestoreSummary:
        """Restore ``backup_id`` into the local store."""
        return await self.restores.run(backup_id, on_progress=on_progress)

    async def validate(self, backup_id: str) -> BackupValidation:
        """Check a backup end to end without restoring it."""
        return await self.restores.validate(backup_id)

    async def list_backups(self) -> list[BackupManifest]:
        """Completed backups in the configured region, newest first."""
        try:
            return await self.storage.list_backups(self.config.compliance_region.value)
        except ConnectionLostError as exc:
            raise BackupError(ErrorCode.NO_NETWORK, f"Connection lost: {exc}") from exc
        except TransportError as exc:
            raise BackupError(ErrorCode.DOWNLOAD_FAILED, f"Could not list backups: {exc}") from exc

    async def delete_backup(self, backup_id: str) -> BackupManifest:
        """Delete one backup and release its storage.

        Raises:
            BackupError: BACKUP_NOT_FOUND, NO_NETWORK, or UPLOAD_FAILED.
        """
        try:
            manifest = await self.storage.get_manifest(backup_id)
            if manifest is None:
                raise BackupError(ErrorCode.BACKUP_NOT_FOUND, f"Backup '{backup_id}' not found")
            await self.storage.delete_backup(backup_id)
        except ConnectionLostError as exc:
            raise BackupError(ErrorCode.NO_NETWORK, f"Connection lost: {exc}") from exc
        except TransportError as exc:
            raise BackupError(ErrorCode.UPLOAD_FAILED, f"Could not delete backup: {exc}") from exc

        self.history.release_storage(manifest)
        self.audit.record(
            AuditAction.BACKUP_DELETED,
            f"Backup {backup_id} deleted",
            metadata={"bytes": manifest.ciphertext_bytes},
        )
        logger.info("Deleted backup %s", backup_id)
        return manifest

    async def prune_expired(self, now: Optional[datetime] = None) -> list[str]:
        """Delete backups older than ``max_backup_retention_days``.

        The newest backup is always kept, however old.

        Returns:
            Ids of the deleted backups.
        """
        now = now or utcnow()
        cutoff = now - timedelta(days=self.config.max_backup_retention_days)
        manifests = await self.list_backups()
        expired = [m for m in manifests[1:] if m.created_at < cutoff]

        deleted = []
        for manifest in expired:
            await self.delete_backup(manifest.backup_id)
            deleted.append(manifest.backup_id)
        if deleted:
            logger.info("Pruned %d expired backup(s)", len(deleted))
        return deleted

    # -------------------------------------------------------------------
    # Status and settings
    # -------------------------------------------------------------------

    def status(self) -> BackupStatus:
        """Persisted backup counters."""
        return self.history.status()

    def health(self, now: Optional[datetime] = None) -> HealthReport:
        """Current health score with issues and recommendations."""
        return self.health_reporter.assess(now)

    def update_config(self, **changes: Any) -> BackupConfig:
        """Apply and persist settings changes.

        Raises:
            pydantic.ValidationError: If a change is invalid or unknown.
        """
        config = self.config.updated(**changes)
        if self.home is not None:
            save_config(self.home, config)

        self.config = config
        self.backups.config = config
        self.restores.config = config
        self.health_reporter.config = config
        if "storage_limit_bytes" in changes:
            self.history.set_storage_limit(config.storage_limit_bytes)

        self.audit.record(
            AuditAction.SETTINGS_CHANGED,
            "Backup settings updated",
            metadata=config.model_dump(mode="json", include=set(changes)),
        )
        logger.info("Settings updated: %s", ", ".join(sorted(changes)))
        return config
