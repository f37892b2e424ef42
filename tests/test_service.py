"""Tests for the BackupService facade."""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import pytest
from pydantic import ValidationError

from memoria_backup.audit import AUDIT_LOG_NAME, AuditAction
from memoria_backup.config import CONFIG_FILENAME, load_config
from memoria_backup.device import StaticDeviceMonitor
from memoria_backup.errors import BackupError, ErrorCode
from memoria_backup.history import STATUS_FILENAME
from memoria_backup.models import BackupManifest
from memoria_backup.secret_store import MemorySecretStore
from memoria_backup.service import BackupService
from memoria_backup.store import JsonDirectoryStore

from conftest import BASE_TIME, PASSWORD, InMemoryStorage, InMemoryStore, make_record


@pytest.fixture
def service(config, device, storage, store) -> BackupService:
    return BackupService(MemorySecretStore(), store, device, storage, config)


def _manifest(backup_id: str, days: int, size: int = 100) -> BackupManifest:
    return BackupManifest(
        backup_id=backup_id, item_count=1, plaintext_bytes=size, ciphertext_bytes=size,
        key_id="k", region="us-east", created_at=BASE_TIME + timedelta(days=days),
        chunk_count=1,
    )


class TestOnDisk:
    """The default on-disk layout."""

    @pytest.mark.asyncio
    async def test_backup_and_restore_on_disk(self, tmp_home: Path) -> None:
        memories = JsonDirectoryStore(tmp_home / "memories")
        for i in range(3):
            await memories.put_item(make_record(f"mem-{i}"))

        service = BackupService.open(tmp_home, device=StaticDeviceMonitor())
        service.update_config(enabled=True)
        await service.initialize(PASSWORD)
        backup_id = await service.backup()

        assert (tmp_home / CONFIG_FILENAME).exists()
        assert (tmp_home / STATUS_FILENAME).exists()
        assert (tmp_home / AUDIT_LOG_NAME).exists()
        assert (tmp_home / "storage" / backup_id).is_dir()

        reopened = BackupService.open(tmp_home, device=StaticDeviceMonitor())
        assert reopened.config.enabled
        assert reopened.status().total_backups == 1
        await reopened.initialize(PASSWORD)
        assert [m.backup_id for m in await reopened.list_backups()] == [backup_id]

        summary = await reopened.restore(backup_id)
        assert summary.skipped_count == 3

    @pytest.mark.asyncio
    async def test_custom_storage_root(self, tmp_home: Path, tmp_path: Path) -> None:
        usb = tmp_path / "usb"
        service = BackupService.open(tmp_home, storage_root=usb, device=StaticDeviceMonitor())
        assert service.storage.root == usb
        assert usb.is_dir()


class TestBackupManagement:
    """List, delete, prune."""

    @pytest.mark.asyncio
    async def test_list_filters_region(self, service: BackupService, storage: InMemoryStorage) -> None:
        storage.manifests["backup_us"] = _manifest("backup_us", 0)
        storage.manifests["backup_eu"] = _manifest("backup_eu", 1).model_copy(
            update={"region": "eu-west"},
        )
        assert [m.backup_id for m in await service.list_backups()] == ["backup_us"]

    @pytest.mark.asyncio
    async def test_list_without_connection(self, service: BackupService, storage: InMemoryStorage) -> None:
        storage.connected = False
        with pytest.raises(BackupError) as exc_info:
            await service.list_backups()
        assert exc_info.value.code == ErrorCode.NO_NETWORK

    @pytest.mark.asyncio
    async def test_delete_releases_storage(self, service: BackupService, storage: InMemoryStorage) -> None:
        await service.initialize(PASSWORD)
        backup_id = await service.backup()
        assert service.status().storage_used > 0

        await service.delete_backup(backup_id)

        assert service.status().storage_used == 0
        assert service.status().total_backups == 0
        assert await service.list_backups() == []
        assert AuditAction.BACKUP_DELETED in [e.action for e in service.audit.read()]

    @pytest.mark.asyncio
    async def test_delete_unknown(self, service: BackupService) -> None:
        with pytest.raises(BackupError) as exc_info:
            await service.delete_backup("backup_nope")
        assert exc_info.value.code == ErrorCode.BACKUP_NOT_FOUND

    @pytest.mark.asyncio
    async def test_prune_expired(self, service: BackupService, storage: InMemoryStorage) -> None:
        for backup_id, days in (("backup_a", 0), ("backup_b", 5), ("backup_c", 35)):
            storage.manifests[backup_id] = _manifest(backup_id, days)

        deleted = await service.prune_expired(now=BASE_TIME + timedelta(days=40))

        assert sorted(deleted) == ["backup_a", "backup_b"]
        assert list(storage.manifests) == ["backup_c"]

    @pytest.mark.asyncio
    async def test_prune_keeps_newest(self, service: BackupService, storage: InMemoryStorage) -> None:
        for backup_id, days in (("backup_a", 0), ("backup_b", 1)):
            storage.manifests[backup_id] = _manifest(backup_id, days)

        deleted = await service.prune_expired(now=BASE_TIME + timedelta(days=365))

        assert deleted == ["backup_a"]
        assert list(storage.manifests) == ["backup_b"]

    @pytest.mark.asyncio
    async def test_validate(self, service: BackupService) -> None:
        await service.initialize(PASSWORD)
        backup_id = await service.backup()
        assert (await service.validate(backup_id)).is_valid


class TestSettings:
    """Config updates."""

    def test_update_propagates(self, service: BackupService) -> None:
        service.update_config(chunk_size_bytes=2048, enabled=False)

        assert service.backups.config.chunk_size_bytes == 2048
        assert service.restores.config.chunk_size_bytes == 2048
        assert "Cloud backup is disabled" in service.health().issues
        assert service.audit.read()[-1].action == AuditAction.SETTINGS_CHANGED

    def test_storage_limit_updates_history(self, service: BackupService) -> None:
        service.update_config(storage_limit_bytes=5000)
        assert service.status().storage_limit == 5000

    def test_invalid_update_leaves_config(self, service: BackupService) -> None:
        before = service.config
        with pytest.raises(ValidationError):
            service.update_config(battery_threshold=3)
        assert service.config is before

    def test_update_persists(self, tmp_home: Path) -> None:
        service = BackupService.open(tmp_home, device=StaticDeviceMonitor())
        service.update_config(compliance_region="eu-west")
        assert load_config(tmp_home).compliance_region.value == "eu-west"

    @pytest.mark.asyncio
    async def test_rotation_due(self, service: BackupService) -> None:
        key = await service.initialize(PASSWORD)
        assert not service.rotation_due(now=key.derived_at + timedelta(days=10))
        assert service.rotation_due(now=key.derived_at + timedelta(days=91))

    @pytest.mark.asyncio
    async def test_key_lifecycle(self, service: BackupService) -> None:
        await service.initialize(PASSWORD)
        await service.rotate_keys(PASSWORD)
        export = await service.export_keys("ExportPass9")

        other = BackupService(
            MemorySecretStore(), InMemoryStore(), StaticDeviceMonitor(), InMemoryStorage(),
        )
        imported = await other.import_keys(export, "ExportPass9")
        assert imported.key_id == service.vault.current_key.key_id

        await service.clear_keys()
        assert not service.vault.is_initialized
