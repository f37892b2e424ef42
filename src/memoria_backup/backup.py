"""
Encrypted backup pipeline.

Turns the eligible local memories into an encrypted, verified,
restorable backup in object storage:

    preflight -> gather -> manifest -> encrypt -> upload -> verify -> complete

The payload is one JSON document split into fixed-size plaintext
windows. Each window is encrypted under the current key, bound to the
backup id and its chunk position, and uploaded as an
``iv || tag || ciphertext`` frame no larger than ``chunk_size_bytes``
(default 1 MiB). The manifest checksum covers every uploaded
chunk in index order, and after upload the chunks are read back and
re-hashed; a mismatch deletes the backup so a verified-bad backup is
never listed. The manifest is written last: until then a backup is
invisible to list_backups().

Only one backup runs at a time; a second run() while one is in flight
fails immediately with BACKUP_IN_PROGRESS.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
from typing import Optional

from . import codec
from .audit import AuditAction, AuditLog
from .config import BackupConfig
from .device import DeviceMonitor
from .errors import BackupError, ErrorCode
from .history import BackupHistory
from .keyvault import KeyVault
from .models import (
    BackupManifest,
    BackupPayload,
    KeyMaterial,
    RecordFilter,
    RunKind,
    RunStatus,
    utcnow,
)
from .preflight import run_preflight
from .runs import BackupCallback, BackupRun
from .store import MemoryStore
from .transfer import run_bounded, with_retries
from .transport import ConnectionLostError, ObjectStorage, TransportError

logger = logging.getLogger("memoria_backup.backup")

# Progress bands per stage, in percent.
_GATHERED = 20
_ENCRYPT_START, _ENCRYPT_SPAN = 30, 40
_UPLOAD_START, _UPLOAD_SPAN = 70, 25
_VERIFY_START = 95

# Error code for an unexpected exception, by the stage it escaped from.
_STAGE_ERRORS = {
    RunStatus.PREPARING: ErrorCode.INIT_FAILED,
    RunStatus.ENCRYPTING: ErrorCode.ENCRYPTION_FAILED,
    RunStatus.UPLOADING: ErrorCode.UPLOAD_FAILED,
    RunStatus.VERIFYING: ErrorCode.VERIFICATION_FAILED,
}


def new_backup_id() -> str:
    """Sortable, unique backup identifier."""
    return f"backup_{utcnow():%Y%m%dT%H%M%SZ}_{secrets.token_hex(4)}"


def format_bytes(size: int) -> str:
    """Human-readable size, e.g. ``40.0 KB``."""
    value = float(size)
    for unit in ("bytes", "KB", "MB", "GB"):
        if value < 1024 or unit == "GB":
            return f"{int(value)} bytes" if unit == "bytes" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} GB"


def split_windows(payload: bytes, chunk_size: int) -> list[bytes]:
    """Split ``payload`` into consecutive windows of at most ``chunk_size``."""
    return [payload[i:i + chunk_size] for i in range(0, len(payload), chunk_size)]


class BackupPipeline:
    """Runs one backup at a time.

    Args:
        vault: Supplies the current key.
        store: Local memories to back up.
        device: Network and battery state for preflight.
        storage: Destination object store.
        config: Backup settings; replace ``pipeline.config`` to update.
        history: Counters updated on completion and failure.
        audit: Optional audit log.
    """

    def __init__(
        self,
        vault: KeyVault,
        store: MemoryStore,
        device: DeviceMonitor,
        storage: ObjectStorage,
        config: BackupConfig,
        history: Optional[BackupHistory] = None,
        audit: Optional[AuditLog] = None,
    ) -> None:
        self._vault = vault
        self._store = store
        self._device = device
        self._storage = storage
        self.config = config
        self._history = history or BackupHistory()
        self._audit = audit
        self._lock = asyncio.Lock()

    @property
    def in_progress(self) -> bool:
        """Whether a backup is currently running."""
        return self._lock.locked()

    async def run(self, manual: bool = False, on_progress: Optional[BackupCallback] = None) -> str:
        """Create one backup.

        Args:
            manual: True when the user pressed "back up now". Manual runs
                skip the Wi-Fi and battery gates, never the network gate.
            on_progress: Called with a BackupProgress snapshot at every
                stage change and chunk boundary.

        Returns:
            The new backup's id.

        Raises:
            BackupError: BACKUP_IN_PROGRESS, NOT_INITIALIZED, a preflight
                code, NO_DATA, ENCRYPTION_FAILED, NO_NETWORK,
                UPLOAD_FAILED, or VERIFICATION_FAILED. Any other
                exception is wrapped by the stage it escaped from
                (INIT_FAILED while preparing), so the run always ends
                FAILED with history and audit written.
        """
        if self._lock.locked():
            raise BackupError(ErrorCode.BACKUP_IN_PROGRESS, "A backup is already running")

        async with self._lock:
            key = self._vault.current_key
            run_preflight(self.config, self._device, manual).raise_for_failure()

            run = BackupRun(new_backup_id(), on_progress)
            try:
                return await self._execute(run, key, manual)
            except BackupError as exc:
                self._fail(run, exc)
                raise
            except Exception as exc:
                error = BackupError(
                    _STAGE_ERRORS.get(run.status, ErrorCode.INIT_FAILED),
                    f"Unexpected error while {run.status.value}: {exc}",
                )
                if run.status in (RunStatus.UPLOADING, RunStatus.VERIFYING):
                    await self._discard(run.progress.backup_id)
                self._fail(run, error)
                raise error from exc

    def _fail(self, run: BackupRun, exc: BackupError) -> None:
        run.fail(exc)
        self._history.record_failure(run.progress.backup_id, RunKind.BACKUP, exc.code.value)
        self._record(
            AuditAction.BACKUP_FAILED,
            f"Backup {run.progress.backup_id} failed",
            success=False,
            error=exc.code.value,
        )
        logger.error("Backup %s failed: %s", run.progress.backup_id, exc)

    # -------------------------------------------------------------------
    # Stages
    # -------------------------------------------------------------------

    async def _execute(self, run: BackupRun, key: KeyMaterial, manual: bool) -> str:
        backup_id = run.progress.backup_id
        created_at = utcnow()
        run.report(step="Preparing backup...", progress=0)

        run.report(step="Gathering memories to back up...", progress=10)
        records = await self._store.list_items(RecordFilter(
            exclude_archived=self.config.exclude_archived,
            include_tags=self.config.include_tags,
        ))
        if not records:
            raise BackupError(ErrorCode.NO_DATA, "No memories to back up")

        payload = BackupPayload(item_count=len(records), memories=records)
        plaintext = payload.model_dump_json().encode("utf-8")
        run.report(
            step=f"Found {len(records)} memories to back up ({format_bytes(len(plaintext))})",
            progress=_GATHERED,
            total_bytes=len(plaintext),
        )

        run.advance(RunStatus.ENCRYPTING, "Encrypting memories for secure storage...", _ENCRYPT_START)
        chunks = await self._encrypt(run, key, plaintext)

        ciphertext_bytes = sum(len(c) for c in chunks)
        manifest = BackupManifest(
            backup_id=backup_id,
            created_at=created_at,
            item_count=len(records),
            plaintext_bytes=len(plaintext),
            ciphertext_bytes=ciphertext_bytes,
            checksum=codec.stream_checksum(chunks),
            key_id=key.key_id,
            region=self.config.compliance_region.value,
            chunk_count=len(chunks),
            is_automatic=not manual,
        )

        run.advance(RunStatus.UPLOADING, "Uploading encrypted backup...", _UPLOAD_START)
        run.report(bytes_processed=0, total_bytes=ciphertext_bytes)
        await self._upload(run, backup_id, chunks)

        run.advance(RunStatus.VERIFYING, "Verifying backup integrity...", _VERIFY_START)
        await self._verify(manifest)
        await self._publish(manifest)

        self._history.record_backup(manifest)
        self._record(
            AuditAction.BACKUP_CREATED,
            f"Backup {backup_id} created",
            metadata={
                "items": manifest.item_count,
                "bytes": manifest.ciphertext_bytes,
                "key_id": manifest.key_id,
                "manual": manual,
            },
        )
        logger.info(
            "Backup %s completed: %d memories, %d chunks, %d bytes",
            backup_id, manifest.item_count, manifest.chunk_count, ciphertext_bytes,
        )
        run.advance(
            RunStatus.COMPLETED,
            f"Backup completed successfully! {len(records)} memories backed up securely.",
            100,
        )
        return backup_id

    async def _encrypt(self, run: BackupRun, key: KeyMaterial, plaintext: bytes) -> list[bytes]:
        # The frame overhead counts against the chunk size limit.
        windows = split_windows(plaintext, self.config.chunk_size_bytes - codec.FRAME_OVERHEAD)
        backup_id = run.progress.backup_id
        chunks: list[bytes] = []
        processed = 0
        for index, window in enumerate(windows):
            context = codec.chunk_context(backup_id, index, len(windows))
            chunks.append(codec.pack_chunk(codec.encrypt(key, window, context)))
            processed += len(window)
            run.report(
                bytes_processed=processed,
                progress=_ENCRYPT_START + (processed * _ENCRYPT_SPAN) // len(plaintext),
            )
            await asyncio.sleep(0)
        return chunks

    async def _upload(self, run: BackupRun, backup_id: str, chunks: list[bytes]) -> None:
        total = sum(len(c) for c in chunks)
        uploaded = 0

        def make_job(index: int, data: bytes):
            async def job() -> None:
                nonlocal uploaded
                await with_retries(
                    lambda: self._storage.put_chunk(backup_id, index, data),
                    self.config.max_retries,
                    self.config.retry_delay_seconds,
                    f"Upload of chunk {index} of {backup_id}",
                )
                uploaded += len(data)
                run.report(
                    bytes_processed=uploaded,
                    progress=_UPLOAD_START + (uploaded * _UPLOAD_SPAN) // total,
                )
            return job

        try:
            await run_bounded(
                [make_job(i, c) for i, c in enumerate(chunks)],
                self.config.max_concurrent_transfers,
            )
        except ConnectionLostError as exc:
            # Partial chunks stay behind for later cleanup; with no
            # manifest they are never listed as restorable.
            raise BackupError(ErrorCode.NO_NETWORK, f"Connection lost during upload: {exc}") from exc
        except TransportError as exc:
            await self._discard(backup_id)
            raise BackupError(ErrorCode.UPLOAD_FAILED, f"Upload failed: {exc}") from exc

    async def _verify(self, manifest: BackupManifest) -> None:
        try:
            downloaded = [
                await self._storage.get_chunk(manifest.backup_id, i)
                for i in range(manifest.chunk_count)
            ]
        except ConnectionLostError as exc:
            raise BackupError(ErrorCode.NO_NETWORK, f"Connection lost during verification: {exc}") from exc
        except TransportError as exc:
            await self._discard(manifest.backup_id)
            raise BackupError(ErrorCode.VERIFICATION_FAILED, f"Read-back failed: {exc}") from exc

        if not codec.verify_stream_checksum(downloaded, manifest.checksum):
            await self._discard(manifest.backup_id)
            raise BackupError(ErrorCode.VERIFICATION_FAILED, "Checksum mismatch after upload")

    async def _publish(self, manifest: BackupManifest) -> None:
        try:
            await self._storage.put_manifest(manifest)
        except ConnectionLostError as exc:
            raise BackupError(ErrorCode.NO_NETWORK, f"Connection lost writing manifest: {exc}") from exc
        except TransportError as exc:
            await self._discard(manifest.backup_id)
            raise BackupError(ErrorCode.UPLOAD_FAILED, f"Manifest write failed: {exc}") from exc

    async def _discard(self, backup_id: str) -> None:
        """Best-effort removal of a failed backup."""
        try:
            await self._storage.delete_backup(backup_id)
            logger.info("Removed failed backup %s", backup_id)
        except Exception as exc:
            logger.warning("Could not remove failed backup %s: %s", backup_id, exc)

    def _record(self, action: AuditAction, detail: str, **kwargs) -> None:
        if self._audit is not None:
            self._audit.record(action, detail, **kwargs)
