"""Tests for on-disk collaborators and the transfer helpers."""

from __future__ import annotations

import asyncio
import shutil
from datetime import timedelta
from pathlib import Path

import pytest

from memoria_backup.models import BackupManifest, RecordFilter
from memoria_backup.secret_store import FileSecretStore, MemorySecretStore
from memoria_backup.store import JsonDirectoryStore
from memoria_backup.transfer import run_bounded, with_retries
from memoria_backup.transport import (
    MANIFEST_NAME,
    ConnectionLostError,
    LocalDirectoryStorage,
    ObjectNotFoundError,
    TransportError,
)

from conftest import BASE_TIME, make_record


def _manifest(backup_id: str, region: str = "us-east", hours: int = 0) -> BackupManifest:
    return BackupManifest(
        backup_id=backup_id, item_count=1, plaintext_bytes=10, key_id="k",
        region=region, created_at=BASE_TIME + timedelta(hours=hours), chunk_count=1,
    )


class TestLocalDirectoryStorage:
    """Directory-per-backup storage."""

    @pytest.mark.asyncio
    async def test_chunk_round_trip(self, tmp_path: Path) -> None:
        storage = LocalDirectoryStorage(tmp_path / "storage")
        await storage.put_chunk("backup_a", 0, b"\x00\x01")
        assert await storage.get_chunk("backup_a", 0) == b"\x00\x01"

    @pytest.mark.asyncio
    async def test_missing_chunk(self, tmp_path: Path) -> None:
        storage = LocalDirectoryStorage(tmp_path / "storage")
        with pytest.raises(ObjectNotFoundError):
            await storage.get_chunk("backup_a", 3)

    @pytest.mark.asyncio
    async def test_unlisted_without_manifest(self, tmp_path: Path) -> None:
        storage = LocalDirectoryStorage(tmp_path / "storage")
        await storage.put_chunk("backup_a", 0, b"data")

        assert await storage.list_backups() == []
        assert await storage.get_manifest("backup_a") is None

    @pytest.mark.asyncio
    async def test_list_newest_first_by_region(self, tmp_path: Path) -> None:
        storage = LocalDirectoryStorage(tmp_path / "storage")
        await storage.put_manifest(_manifest("backup_old", hours=0))
        await storage.put_manifest(_manifest("backup_new", hours=5))
        await storage.put_manifest(_manifest("backup_eu", region="eu-west", hours=9))

        ids = [m.backup_id for m in await storage.list_backups("us-east")]
        assert ids == ["backup_new", "backup_old"]
        assert len(await storage.list_backups()) == 3

    @pytest.mark.asyncio
    async def test_delete(self, tmp_path: Path) -> None:
        storage = LocalDirectoryStorage(tmp_path / "storage")
        await storage.put_chunk("backup_a", 0, b"data")
        await storage.put_manifest(_manifest("backup_a"))

        await storage.delete_backup("backup_a")
        await storage.delete_backup("backup_a")

        assert not (tmp_path / "storage" / "backup_a").exists()

    @pytest.mark.asyncio
    async def test_manifest_written_as_file(self, tmp_path: Path) -> None:
        storage = LocalDirectoryStorage(tmp_path / "storage")
        await storage.put_manifest(_manifest("backup_a"))
        assert (tmp_path / "storage" / "backup_a" / MANIFEST_NAME).exists()

    @pytest.mark.asyncio
    async def test_unmounted_root_is_connection_loss(self, tmp_path: Path) -> None:
        root = tmp_path / "usb"
        storage = LocalDirectoryStorage(root)
        shutil.rmtree(root)

        with pytest.raises(ConnectionLostError):
            await storage.list_backups()
        with pytest.raises(ConnectionLostError):
            await storage.put_chunk("backup_a", 0, b"x")

    @pytest.mark.asyncio
    async def test_rejects_path_traversal(self, tmp_path: Path) -> None:
        storage = LocalDirectoryStorage(tmp_path / "storage")
        with pytest.raises(TransportError):
            await storage.put_chunk("../escape", 0, b"x")


class TestJsonDirectoryStore:
    """One JSON file per record."""

    @pytest.mark.asyncio
    async def test_put_and_get(self, tmp_path: Path) -> None:
        store = JsonDirectoryStore(tmp_path / "memories")
        record = make_record("mem-1", size=20)
        await store.put_item(record)

        loaded = await store.get_item("mem-1")
        assert loaded.model_dump() == record.model_dump()
        assert await store.get_item("mem-404") is None

    @pytest.mark.asyncio
    async def test_list_applies_filter(self, tmp_path: Path) -> None:
        store = JsonDirectoryStore(tmp_path / "memories")
        await store.put_item(make_record("a"))
        await store.put_item(make_record("b", archived=True))
        await store.put_item(make_record("c", tags=["family"]))

        assert len(await store.list_items()) == 3
        assert {r.id for r in await store.list_items(RecordFilter())} == {"a", "c"}
        assert [r.id for r in await store.list_items(RecordFilter(include_tags=["family"]))] == ["c"]

    @pytest.mark.asyncio
    async def test_skips_unreadable(self, tmp_path: Path) -> None:
        store = JsonDirectoryStore(tmp_path / "memories")
        await store.put_item(make_record("a"))
        (tmp_path / "memories" / "broken.json").write_text("{")

        assert [r.id for r in await store.list_items()] == ["a"]

    @pytest.mark.asyncio
    async def test_missing_directory_is_empty(self, tmp_path: Path) -> None:
        assert await JsonDirectoryStore(tmp_path / "nowhere").list_items() == []


class TestSecretStores:
    """Secret persistence."""

    def test_memory_store(self) -> None:
        store = MemorySecretStore()
        store.set("k", "v")
        assert store.get("k") == "v"
        store.delete("k")
        store.delete("k")
        assert store.get("k") is None

    def test_file_store(self, tmp_path: Path) -> None:
        store = FileSecretStore(tmp_path / "secrets")
        store.set("memoria_key_metadata", "value")
        assert FileSecretStore(tmp_path / "secrets").get("memoria_key_metadata") == "value"
        store.delete("memoria_key_metadata")
        assert store.get("memoria_key_metadata") is None

    def test_file_store_rejects_bad_names(self, tmp_path: Path) -> None:
        with pytest.raises(ValueError):
            FileSecretStore(tmp_path).set("../x", "v")


class TestTransferHelpers:
    """Bounded pool and retries."""

    @pytest.mark.asyncio
    async def test_results_in_job_order(self) -> None:
        async def job(i: int) -> int:
            await asyncio.sleep(0.001 * (5 - i))
            return i

        results = await run_bounded([lambda i=i: job(i) for i in range(5)], limit=2)
        assert results == [0, 1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_concurrency_bounded(self) -> None:
        active = 0
        peak = 0

        async def job() -> None:
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.001)
            active -= 1

        await run_bounded([job for _ in range(8)], limit=2)
        assert peak == 2

    @pytest.mark.asyncio
    async def test_failure_cancels_rest(self) -> None:
        finished = []

        async def ok(i: int) -> None:
            await asyncio.sleep(0.05)
            finished.append(i)

        async def bad() -> None:
            raise TransportError("boom")

        with pytest.raises(TransportError):
            await run_bounded([bad, lambda: ok(1), lambda: ok(2)], limit=3)
        assert finished == []

    @pytest.mark.asyncio
    async def test_retries_transient(self) -> None:
        calls = []

        async def flaky() -> str:
            calls.append(1)
            if len(calls) < 3:
                raise TransportError("busy", transient=True)
            return "done"

        assert await with_retries(flaky, max_retries=3, delay=0, label="test") == "done"
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_no_retry_for_permanent(self) -> None:
        calls = []

        async def broken() -> None:
            calls.append(1)
            raise TransportError("denied")

        with pytest.raises(TransportError):
            await with_retries(broken, max_retries=3, delay=0, label="test")
        assert len(calls) == 1
