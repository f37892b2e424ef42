"""
Backup history: persisted counters the health report is built from.

Stored as ``<home>/backup-status.json``. Holds the last backup time,
totals, storage used, the last error, and one terminal status line per
finished run (newest last, capped).
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from .models import BackupManifest, BackupStatus, RunKind, RunRecord, RunStatus, utcnow

logger = logging.getLogger("memoria_backup.history")

STATUS_FILENAME = "backup-status.json"
MAX_RUN_RECORDS = 50


class BackupHistory:
    """Load, update, and persist BackupStatus.

    Args:
        path: JSON file to persist to. ``None`` keeps state in memory.
        storage_limit: Storage quota in bytes used for utilization.
    """

    def __init__(self, path: Optional[Path] = None, storage_limit: Optional[int] = None) -> None:
        self._path = path
        self._status = self._load()
        if storage_limit is not None:
            self._status.storage_limit = storage_limit

    def status(self) -> BackupStatus:
        """A copy of the current status."""
        return self._status.model_copy(deep=True)

    def set_storage_limit(self, limit: int) -> None:
        """Change the quota used for utilization."""
        self._status.storage_limit = limit
        self._save()

    def record_backup(self, manifest: BackupManifest, finished_at: Optional[datetime] = None) -> None:
        """Count a completed backup."""
        finished_at = finished_at or utcnow()
        self._status.last_backup_time = finished_at
        self._status.total_backups += 1
        self._status.storage_used += manifest.ciphertext_bytes
        self._status.last_error = None
        self._append(RunRecord(
            run_id=manifest.backup_id,
            kind=RunKind.BACKUP,
            status=RunStatus.COMPLETED,
            finished_at=finished_at,
            detail=f"{manifest.item_count} memories, {manifest.ciphertext_bytes} bytes",
        ))

    def record_restore(self, backup_id: str, detail: str) -> None:
        """Log a completed restore."""
        self._append(RunRecord(
            run_id=backup_id, kind=RunKind.RESTORE, status=RunStatus.COMPLETED, detail=detail,
        ))

    def record_failure(self, run_id: str, kind: RunKind, detail: str) -> None:
        """Log a failed run and remember the error."""
        self._status.last_error = detail
        self._append(RunRecord(run_id=run_id, kind=kind, status=RunStatus.FAILED, detail=detail))

    def release_storage(self, manifest: BackupManifest) -> None:
        """Account for a deleted backup."""
        self._status.storage_used = max(0, self._status.storage_used - manifest.ciphertext_bytes)
        self._status.total_backups = max(0, self._status.total_backups - 1)
        self._save()

    def _append(self, record: RunRecord) -> None:
        self._status.runs.append(record)
        del self._status.runs[:-MAX_RUN_RECORDS]
        self._save()

    def _load(self) -> BackupStatus:
        if self._path is None or not self._path.exists():
            return BackupStatus()
        try:
            return BackupStatus.model_validate_json(self._path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as exc:
            logger.warning("Failed to load backup status, starting fresh: %s", exc)
            return BackupStatus()

    def _save(self) -> None:
        if self._path is None:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(".json.tmp")
        tmp.write_text(self._status.model_dump_json(indent=2), encoding="utf-8")
        tmp.replace(self._path)
