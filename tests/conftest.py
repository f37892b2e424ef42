"""Shared test fixtures for memoria-backup."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

import pytest
import pytest_asyncio

from memoria_backup.audit import AuditLog
from memoria_backup.backup import BackupPipeline
from memoria_backup.config import BackupConfig
from memoria_backup.device import ConnectionType, StaticDeviceMonitor
from memoria_backup.history import BackupHistory
from memoria_backup.keyvault import KeyVault
from memoria_backup.models import BackupManifest, MemoryRecord, RecordFilter
from memoria_backup.restore import RestorePipeline
from memoria_backup.secret_store import MemorySecretStore
from memoria_backup.store import MemoryStore
from memoria_backup.transport import (
    ConnectionLostError,
    ObjectNotFoundError,
    ObjectStorage,
    TransportError,
)

PASSWORD = "CorrectHorse1"
BASE_TIME = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def make_record(
    record_id: str,
    updated_at: Optional[datetime] = None,
    size: int = 0,
    **fields,
) -> MemoryRecord:
    """Build a MemoryRecord, optionally padded with a transcript of ``size`` chars."""
    if size:
        fields["transcript"] = "x" * size
    fields.setdefault("title", f"Memory {record_id}")
    return MemoryRecord(
        id=record_id,
        payload_ref=f"audio/{record_id}.m4a",
        updated_at=updated_at or BASE_TIME,
        **fields,
    )


class InMemoryStore(MemoryStore):
    """Dict-backed local store with per-record write failures."""

    def __init__(self, records: Optional[list[MemoryRecord]] = None) -> None:
        self.records: dict[str, MemoryRecord] = {r.id: r for r in records or []}
        self.fail_ids: set[str] = set()
        self.writes: list[str] = []

    async def list_items(self, record_filter: Optional[RecordFilter] = None) -> list[MemoryRecord]:
        return [
            r for r in self.records.values()
            if record_filter is None or record_filter.matches(r)
        ]

    async def get_item(self, record_id: str) -> Optional[MemoryRecord]:
        return self.records.get(record_id)

    async def put_item(self, record: MemoryRecord) -> None:
        if record.id in self.fail_ids:
            raise OSError(f"disk full writing {record.id}")
        self.writes.append(record.id)
        self.records[record.id] = record


class InMemoryStorage(ObjectStorage):
    """Object storage fake with failure injection.

    Attributes:
        connected: When False every call raises ConnectionLostError.
        transient_failures: Number of upcoming put_chunk calls that fail
            with a transient TransportError.
        put_error: Raised by every put_chunk when set.
        lose_connection_after: Drop the connection after this many
            successful chunk uploads.
        corrupt_reads: Flip a byte in every chunk read back.
    """

    def __init__(self) -> None:
        self.chunks: dict[tuple[str, int], bytes] = {}
        self.manifests: dict[str, BackupManifest] = {}
        self.connected = True
        self.transient_failures = 0
        self.put_error: Optional[Exception] = None
        self.lose_connection_after: Optional[int] = None
        self.corrupt_reads = False
        self.put_attempts = 0
        self.deleted: list[str] = []

    def _check(self) -> None:
        if not self.connected:
            raise ConnectionLostError()

    def chunk_indexes(self, backup_id: str) -> list[int]:
        return sorted(i for (b, i) in self.chunks if b == backup_id)

    async def put_chunk(self, backup_id: str, index: int, data: bytes) -> None:
        self._check()
        self.put_attempts += 1
        await asyncio.sleep(0)
        if self.lose_connection_after is not None and len(self.chunks) >= self.lose_connection_after:
            self.connected = False
            raise ConnectionLostError()
        if self.transient_failures > 0:
            self.transient_failures -= 1
            raise TransportError("503 Service Unavailable", transient=True)
        if self.put_error is not None:
            raise self.put_error
        self.chunks[(backup_id, index)] = data

    async def get_chunk(self, backup_id: str, index: int) -> bytes:
        self._check()
        await asyncio.sleep(0)
        try:
            data = self.chunks[(backup_id, index)]
        except KeyError:
            raise ObjectNotFoundError(f"chunk {index} of {backup_id}") from None
        if self.corrupt_reads:
            data = data[:-1] + bytes([data[-1] ^ 0x01])
        return data

    async def put_manifest(self, manifest: BackupManifest) -> None:
        self._check()
        self.manifests[manifest.backup_id] = manifest

    async def get_manifest(self, backup_id: str) -> Optional[BackupManifest]:
        self._check()
        return self.manifests.get(backup_id)

    async def list_backups(self, region: Optional[str] = None) -> list[BackupManifest]:
        self._check()
        manifests = [m for m in self.manifests.values() if region is None or m.region == region]
        return sorted(manifests, key=lambda m: m.created_at, reverse=True)

    async def delete_backup(self, backup_id: str) -> None:
        self._check()
        self.manifests.pop(backup_id, None)
        for key in [k for k in self.chunks if k[0] == backup_id]:
            del self.chunks[key]
        self.deleted.append(backup_id)


class ProgressLog:
    """Collects progress snapshots from a callback."""

    def __init__(self) -> None:
        self.events: list = []

    def __call__(self, progress) -> None:
        self.events.append(progress)

    @property
    def statuses(self) -> list:
        seen = []
        for event in self.events:
            if not seen or seen[-1] != event.status:
                seen.append(event.status)
        return seen

    @property
    def last(self):
        return self.events[-1]


@pytest.fixture
def config() -> BackupConfig:
    """Enabled config with no retry delay."""
    return BackupConfig(enabled=True, retry_delay_seconds=0.0)


@pytest.fixture
def device() -> StaticDeviceMonitor:
    return StaticDeviceMonitor(connected=True, connection=ConnectionType.WIFI, battery=0.9)


@pytest.fixture
def secret_store() -> MemorySecretStore:
    return MemorySecretStore()


@pytest.fixture
def storage() -> InMemoryStorage:
    return InMemoryStorage()


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore([
        make_record("mem-1", BASE_TIME),
        make_record("mem-2", BASE_TIME + timedelta(hours=1)),
        make_record("mem-3", BASE_TIME + timedelta(hours=2)),
    ])


@pytest.fixture
def history() -> BackupHistory:
    return BackupHistory()


@pytest.fixture
def audit() -> AuditLog:
    return AuditLog()


@pytest_asyncio.fixture
async def vault(secret_store: MemorySecretStore, audit: AuditLog) -> KeyVault:
    """A vault unlocked with PASSWORD."""
    v = KeyVault(secret_store, audit)
    await v.initialize(PASSWORD)
    return v


@pytest.fixture
def backup_pipeline(vault, store, device, storage, config, history, audit) -> BackupPipeline:
    return BackupPipeline(vault, store, device, storage, config, history, audit)


@pytest.fixture
def restore_pipeline(vault, store, storage, config, history, audit) -> RestorePipeline:
    return RestorePipeline(vault, store, storage, config, history, audit)


@pytest.fixture
def tmp_home(tmp_path: Path) -> Path:
    """A temporary backup home directory."""
    home = tmp_path / ".memoria-backup"
    home.mkdir()
    return home
