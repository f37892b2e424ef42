"""
Run state machines for backup and restore.

Each run walks a fixed set of stages and ends in exactly one terminal
state. Every transition and progress update is pushed to the caller's
callback; nothing is polled. Runs are ephemeral: only their terminal
status line survives, in the backup history.

Backup:  preparing -> encrypting -> uploading -> verifying -> completed
Restore: downloading -> decrypting -> merging -> completed
Any non-terminal stage may move to failed.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional, Union

from .errors import BackupError
from .models import BackupProgress, RestoreProgress, RunStatus

logger = logging.getLogger("memoria_backup.runs")

BackupCallback = Callable[[BackupProgress], None]
RestoreCallback = Callable[[RestoreProgress], None]

_TERMINAL = {RunStatus.COMPLETED, RunStatus.FAILED}

_BACKUP_TRANSITIONS: dict[RunStatus, set[RunStatus]] = {
    RunStatus.PREPARING: {RunStatus.ENCRYPTING, RunStatus.FAILED},
    RunStatus.ENCRYPTING: {RunStatus.UPLOADING, RunStatus.FAILED},
    RunStatus.UPLOADING: {RunStatus.VERIFYING, RunStatus.FAILED},
    RunStatus.VERIFYING: {RunStatus.COMPLETED, RunStatus.FAILED},
}

_RESTORE_TRANSITIONS: dict[RunStatus, set[RunStatus]] = {
    RunStatus.DOWNLOADING: {RunStatus.DECRYPTING, RunStatus.FAILED},
    RunStatus.DECRYPTING: {RunStatus.MERGING, RunStatus.FAILED},
    RunStatus.MERGING: {RunStatus.COMPLETED, RunStatus.FAILED},
}


class InvalidTransition(RuntimeError):
    """A run was asked to move to a stage it cannot reach."""


class _Run:
    """Shared transition and notification logic."""

    _transitions: dict[RunStatus, set[RunStatus]] = {}

    def __init__(
        self,
        progress: Union[BackupProgress, RestoreProgress],
        callback: Optional[Callable],
    ) -> None:
        self.progress = progress
        self._callback = callback
        self._started = time.monotonic()

    @property
    def status(self) -> RunStatus:
        """Current stage."""
        return self.progress.status

    @property
    def is_terminal(self) -> bool:
        """Whether the run has completed or failed."""
        return self.status in _TERMINAL

    def advance(self, status: RunStatus, step: str, progress: Optional[int] = None) -> None:
        """Move to ``status`` and notify.

        Raises:
            InvalidTransition: If ``status`` is not reachable from here.
        """
        if status not in self._transitions.get(self.status, set()):
            raise InvalidTransition(f"{self.status.value} -> {status.value}")
        self.progress.status = status
        self.report(step=step, progress=progress)

    def report(self, step: Optional[str] = None, progress: Optional[int] = None, **fields) -> None:
        """Update progress fields without changing stage, then notify."""
        if step is not None:
            self.progress.current_step = step
        if progress is not None:
            self.progress.progress = max(0, min(100, progress))
        for name, value in fields.items():
            setattr(self.progress, name, value)
        self._emit()

    def fail(self, error: BackupError) -> None:
        """Move to FAILED with ``error`` attached. No-op once terminal."""
        if self.is_terminal:
            return
        self.progress.status = RunStatus.FAILED
        self.progress.error = error.code.value
        self.progress.current_step = error.user_message
        self._emit()

    def _emit(self) -> None:
        if hasattr(self.progress, "time_elapsed"):
            self.progress.time_elapsed = round(time.monotonic() - self._started, 3)
        if self._callback is None:
            return
        try:
            self._callback(self.progress.model_copy())
        except Exception as exc:
            logger.warning("Progress callback raised, ignoring: %s", exc)


class BackupRun(_Run):
    """State of one backup, starting in PREPARING."""

    _transitions = _BACKUP_TRANSITIONS

    def __init__(self, backup_id: str, callback: Optional[BackupCallback] = None) -> None:
        super().__init__(BackupProgress(backup_id=backup_id), callback)


class RestoreRun(_Run):
    """State of one restore, starting in DOWNLOADING."""

    _transitions = _RESTORE_TRANSITIONS

    def __init__(
        self,
        restore_id: str,
        backup_id: str,
        callback: Optional[RestoreCallback] = None,
    ) -> None:
        super().__init__(RestoreProgress(restore_id=restore_id, backup_id=backup_id), callback)
