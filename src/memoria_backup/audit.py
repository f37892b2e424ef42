"""
Backup audit trail.

Every backup, restore, deletion, settings change, and key event is
appended to ``<home>/audit.log`` as one JSON line, keeping the log
append-only and machine-parseable.
"""

from __future__ import annotations

import json
import logging
import socket
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger("memoria_backup.audit")

AUDIT_LOG_NAME = "audit.log"


class AuditAction(str, Enum):
    """What happened."""

    BACKUP_CREATED = "backup_created"
    BACKUP_FAILED = "backup_failed"
    BACKUP_RESTORED = "backup_restored"
    RESTORE_FAILED = "restore_failed"
    BACKUP_DELETED = "backup_deleted"
    SETTINGS_CHANGED = "settings_changed"
    KEYS_INITIALIZED = "keys_initialized"
    KEY_ROTATED = "key_rotated"
    KEYS_EXPORTED = "keys_exported"
    KEYS_IMPORTED = "keys_imported"
    KEYS_CLEARED = "keys_cleared"


class AuditEntry(BaseModel):
    """A single audit log line."""

    timestamp: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    action: AuditAction
    detail: str
    success: bool = True
    error: Optional[str] = None
    host: str = Field(default_factory=socket.gethostname)
    metadata: Optional[dict] = None


class AuditLog:
    """Append-only JSONL audit log.

    Args:
        path: Log file. ``None`` keeps entries in memory only.
    """

    def __init__(self, path: Optional[Path] = None) -> None:
        self._path = path
        self._entries: list[AuditEntry] = []

    def record(
        self,
        action: AuditAction,
        detail: str,
        success: bool = True,
        error: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> AuditEntry:
        """Append an event.

        Write failures are logged, never raised: a full disk must not
        turn a successful backup into a failed one.
        """
        entry = AuditEntry(
            action=action,
            detail=detail,
            success=success,
            error=error,
            metadata=metadata,
        )
        if self._path is None:
            self._entries.append(entry)
            return entry

        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("a", encoding="utf-8") as f:
                f.write(entry.model_dump_json() + "\n")
        except OSError as exc:
            logger.warning("Audit write failed (%s): %s", action.value, exc)
        return entry

    def read(self, limit: int = 0) -> list[AuditEntry]:
        """Return entries oldest first.

        Args:
            limit: Maximum entries to return (0 = all, keeps the newest).
        """
        if self._path is None:
            entries = list(self._entries)
        else:
            entries = []
            if self._path.exists():
                for line in self._path.read_text(encoding="utf-8").splitlines():
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        entries.append(AuditEntry.model_validate(json.loads(line)))
                    except (json.JSONDecodeError, ValidationError):
                        logger.debug("Skipping unreadable audit line")

        if limit > 0:
            entries = entries[-limit:]
        return entries
