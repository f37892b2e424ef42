"""
Encrypted restore pipeline.

Brings a stored backup back onto the device:

    download -> validate checksum -> resolve key -> decrypt all -> merge

Every chunk is decrypted before anything is written, so a single
failed chunk aborts the restore with nothing changed locally. Chunks
are opened as positions ``0..n-1`` of the requested backup, so a chunk
moved in from another backup or another slot fails authentication. Merging
is last-write-wins per record: a local record whose ``updated_at`` is
the same or newer than the backed-up copy is kept and counted as
skipped. A record the local store rejects is logged and counted as
failed without stopping the others.

Backups made under a retired key decrypt through the vault's
historical keys.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
from typing import Optional

from pydantic import ValidationError

from . import codec
from .audit import AuditAction, AuditLog
from .config import BackupConfig
from .errors import BackupError, ErrorCode
from .history import BackupHistory
from .keyvault import KeyVault
from .models import (
    SCHEMA_VERSION,
    BackupManifest,
    BackupPayload,
    BackupValidation,
    MemoryRecord,
    RestoreSummary,
    RunKind,
    RunStatus,
)
from .runs import RestoreCallback, RestoreRun
from .store import MemoryStore
from .transfer import run_bounded
from .transport import ConnectionLostError, ObjectNotFoundError, ObjectStorage, TransportError

logger = logging.getLogger("memoria_backup.restore")

_DOWNLOAD_SPAN = 30
_DECRYPT_START = 30
_MERGE_START, _MERGE_SPAN = 60, 35

# Error code for an unexpected exception, by the stage it escaped from.
_STAGE_ERRORS = {
    RunStatus.DOWNLOADING: ErrorCode.DOWNLOAD_FAILED,
    RunStatus.DECRYPTING: ErrorCode.DECRYPTION_FAILED,
}


class RestorePipeline:
    """Runs one restore at a time.

    Args:
        vault: Resolves current and historical keys.
        store: Local store to merge into.
        storage: Object store holding the backups.
        config: Backup settings (transfer pool size).
        history: Records terminal run status.
        audit: Optional audit log.
    """

    def __init__(
        self,
        vault: KeyVault,
        store: MemoryStore,
        storage: ObjectStorage,
        config: BackupConfig,
        history: Optional[BackupHistory] = None,
        audit: Optional[AuditLog] = None,
    ) -> None:
        self._vault = vault
        self._store = store
        self._storage = storage
        self.config = config
        self._history = history or BackupHistory()
        self._audit = audit
        self._lock = asyncio.Lock()

    @property
    def in_progress(self) -> bool:
        """Whether a restore is currently running."""
        return self._lock.locked()

    async def run(
        self,
        backup_id: str,
        on_progress: Optional[RestoreCallback] = None,
    ) -> RestoreSummary:
        """Restore one backup into the local store.

        Args:
            backup_id: Backup to restore.
            on_progress: Called with a RestoreProgress snapshot at every
                stage change, chunk, and record.

        Returns:
            RestoreSummary with restored, skipped, and failed counts.

        Raises:
            BackupError: RESTORE_IN_PROGRESS, NOT_INITIALIZED,
                BACKUP_NOT_FOUND, NO_NETWORK, DOWNLOAD_FAILED,
                VERIFICATION_FAILED, KEY_NOT_FOUND, DECRYPTION_FAILED, or
                INVALID_FORMAT. Any other exception is wrapped by the
                stage it escaped from (INIT_FAILED while merging).
        """
        if self._lock.locked():
            raise BackupError(ErrorCode.RESTORE_IN_PROGRESS, "A restore is already running")

        async with self._lock:
            if not self._vault.is_initialized:
                raise BackupError(ErrorCode.NOT_INITIALIZED, "Unlock the key vault before restoring")
            run = RestoreRun(secrets.token_hex(8), backup_id, on_progress)
            try:
                return await self._execute(run)
            except BackupError as exc:
                self._fail(run, exc)
                raise
            except Exception as exc:
                error = BackupError(
                    _STAGE_ERRORS.get(run.status, ErrorCode.INIT_FAILED),
                    f"Unexpected error while {run.status.value}: {exc}",
                )
                self._fail(run, error)
                raise error from exc

    def _fail(self, run: RestoreRun, exc: BackupError) -> None:
        backup_id = run.progress.backup_id
        run.fail(exc)
        self._history.record_failure(backup_id, RunKind.RESTORE, exc.code.value)
        self._record(
            AuditAction.RESTORE_FAILED,
            f"Restore of {backup_id} failed",
            success=False,
            error=exc.code.value,
        )
        logger.error("Restore of %s failed: %s", backup_id, exc)

    async def validate(self, backup_id: str) -> BackupValidation:
        """Check that a backup is complete and decryptable, writing nothing."""
        report = BackupValidation(backup_id=backup_id)
        try:
            manifest = await self._fetch_manifest(backup_id)
        except BackupError as exc:
            report.errors.append(exc.message)
            return report

        report.metadata_valid = manifest.chunk_count > 0 and manifest.item_count >= 0
        if manifest.schema_version.split(".")[0] != SCHEMA_VERSION.split(".")[0]:
            report.metadata_valid = False
            report.errors.append(f"Unsupported schema version {manifest.schema_version}")

        try:
            chunks = await self._download_chunks(manifest)
            report.checksum_match = codec.verify_stream_checksum(chunks, manifest.checksum)
            if not report.checksum_match:
                report.errors.append("Checksum mismatch")
                return report
            records = await self._decrypt(backup_id, manifest, chunks)
            report.decryption_successful = True
            report.memory_count_match = len(records) == manifest.item_count
            if not report.memory_count_match:
                report.errors.append(
                    f"Manifest lists {manifest.item_count} memories, backup holds {len(records)}"
                )
        except BackupError as exc:
            report.errors.append(exc.message)

        if manifest.is_automatic:
            report.warnings.append("Automatic backup")
        report.is_valid = (
            report.metadata_valid
            and report.checksum_match
            and report.decryption_successful
            and report.memory_count_match
        )
        return report

    # -------------------------------------------------------------------
    # Stages
    # -------------------------------------------------------------------

    async def _execute(self, run: RestoreRun) -> RestoreSummary:
        backup_id = run.progress.backup_id
        run.report(step="Downloading backup...", progress=0)

        manifest = await self._fetch_manifest(backup_id)
        chunks = await self._download_chunks(manifest, run)
        if not codec.verify_stream_checksum(chunks, manifest.checksum):
            raise BackupError(ErrorCode.VERIFICATION_FAILED, "Downloaded backup failed its checksum")

        run.advance(RunStatus.DECRYPTING, "Decrypting your memories...", _DECRYPT_START)
        records = await self._decrypt(backup_id, manifest, chunks)

        run.advance(RunStatus.MERGING, "Restoring your memories...", _MERGE_START)
        run.report(total_memories=len(records))
        summary = await self._merge(run, backup_id, records)

        self._history.record_restore(
            backup_id,
            f"restored={summary.restored_count} skipped={summary.skipped_count} "
            f"failed={summary.failed_count}",
        )
        self._record(
            AuditAction.BACKUP_RESTORED,
            f"Restored {summary.restored_count} of {summary.total_count} memories from {backup_id}",
            metadata=summary.model_dump(exclude={"errors"}),
        )
        logger.info(
            "Restore of %s completed: %d restored, %d skipped, %d failed",
            backup_id, summary.restored_count, summary.skipped_count, summary.failed_count,
        )
        run.advance(
            RunStatus.COMPLETED,
            f"Restore completed! {summary.restored_count} memories restored.",
            100,
        )
        return summary

    async def _fetch_manifest(self, backup_id: str) -> BackupManifest:
        try:
            manifest = await self._storage.get_manifest(backup_id)
        except ConnectionLostError as exc:
            raise BackupError(ErrorCode.NO_NETWORK, f"Connection lost: {exc}") from exc
        except TransportError as exc:
            raise BackupError(ErrorCode.DOWNLOAD_FAILED, f"Manifest download failed: {exc}") from exc
        if manifest is None:
            raise BackupError(ErrorCode.BACKUP_NOT_FOUND, f"Backup '{backup_id}' not found")
        return manifest

    async def _download_chunks(
        self,
        manifest: BackupManifest,
        run: Optional[RestoreRun] = None,
    ) -> list[bytes]:
        downloaded = 0

        def make_job(index: int):
            async def job() -> bytes:
                nonlocal downloaded
                data = await self._storage.get_chunk(manifest.backup_id, index)
                downloaded += 1
                if run is not None:
                    run.report(progress=(downloaded * _DOWNLOAD_SPAN) // manifest.chunk_count)
                return data
            return job

        try:
            return await run_bounded(
                [make_job(i) for i in range(manifest.chunk_count)],
                self.config.max_concurrent_transfers,
            )
        except ConnectionLostError as exc:
            raise BackupError(ErrorCode.NO_NETWORK, f"Connection lost during download: {exc}") from exc
        except ObjectNotFoundError as exc:
            raise BackupError(ErrorCode.DOWNLOAD_FAILED, f"Backup is incomplete: {exc}") from exc
        except TransportError as exc:
            raise BackupError(ErrorCode.DOWNLOAD_FAILED, f"Download failed: {exc}") from exc

    async def _decrypt(
        self,
        backup_id: str,
        manifest: BackupManifest,
        chunks: list[bytes],
    ) -> list[MemoryRecord]:
        """Decrypt every chunk as belonging to ``backup_id``, in order."""
        key = await self._vault.resolve_key(manifest.key_id)

        parts: list[bytes] = []
        for index, chunk in enumerate(chunks):
            blob = codec.unpack_chunk(chunk, manifest.key_id, manifest.created_at)
            context = codec.chunk_context(backup_id, index, len(chunks))
            parts.append(codec.decrypt(key, blob, context))

        try:
            payload = BackupPayload.model_validate_json(b"".join(parts))
        except ValidationError as exc:
            raise BackupError(ErrorCode.INVALID_FORMAT, "Backup payload is malformed") from exc

        if payload.item_count != len(payload.memories):
            logger.warning(
                "Backup %s payload declares %d memories but holds %d",
                manifest.backup_id, payload.item_count, len(payload.memories),
            )
        return payload.memories

    async def _merge(
        self,
        run: RestoreRun,
        backup_id: str,
        records: list[MemoryRecord],
    ) -> RestoreSummary:
        summary = RestoreSummary(backup_id=backup_id, total_count=len(records))
        for index, record in enumerate(records, start=1):
            try:
                existing = await self._store.get_item(record.id)
                if existing is not None and existing.updated_at >= record.updated_at:
                    summary.skipped_count += 1
                else:
                    await self._store.put_item(record)
                    summary.restored_count += 1
            except Exception as exc:
                summary.failed_count += 1
                summary.errors.append(f"{record.id}: {exc}")
                logger.warning("Failed to restore memory %s: %s", record.id, exc)

            run.report(
                progress=_MERGE_START + (index * _MERGE_SPAN) // len(records),
                memories_restored=summary.restored_count,
                step=f"Restored {summary.restored_count} of {len(records)} memories...",
            )
        return summary

    def _record(self, action: AuditAction, detail: str, **kwargs) -> None:
        if self._audit is not None:
            self._audit.record(action, detail, **kwargs)
