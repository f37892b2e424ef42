"""Tests for run state machines and the error taxonomy."""

from __future__ import annotations

import pytest

from memoria_backup.errors import BackupError, ErrorCategory, ErrorCode
from memoria_backup.models import RunStatus
from memoria_backup.runs import BackupRun, InvalidTransition, RestoreRun

from conftest import ProgressLog


class TestBackupRun:
    """Backup stage transitions."""

    def test_starts_preparing(self) -> None:
        assert BackupRun("b1").status == RunStatus.PREPARING

    def test_full_walk(self) -> None:
        log = ProgressLog()
        run = BackupRun("b1", log)
        for status in (RunStatus.ENCRYPTING, RunStatus.UPLOADING, RunStatus.VERIFYING):
            run.advance(status, status.value)
        run.advance(RunStatus.COMPLETED, "done", 100)

        assert run.is_terminal
        assert log.statuses[-1] == RunStatus.COMPLETED
        assert log.last.progress == 100

    def test_cannot_skip_stages(self) -> None:
        with pytest.raises(InvalidTransition):
            BackupRun("b1").advance(RunStatus.UPLOADING, "skip")

    def test_no_transition_out_of_terminal(self) -> None:
        run = BackupRun("b1")
        run.fail(BackupError(ErrorCode.NO_DATA))
        with pytest.raises(InvalidTransition):
            run.advance(RunStatus.ENCRYPTING, "again")

    def test_fail_sets_error(self) -> None:
        log = ProgressLog()
        run = BackupRun("b1", log)
        run.fail(BackupError(ErrorCode.LOW_BATTERY))

        assert log.last.status == RunStatus.FAILED
        assert log.last.error == "LOW_BATTERY"
        assert "battery" in log.last.current_step.lower()

    def test_fail_once(self) -> None:
        log = ProgressLog()
        run = BackupRun("b1", log)
        run.fail(BackupError(ErrorCode.NO_DATA))
        run.fail(BackupError(ErrorCode.NO_NETWORK))
        assert len(log.events) == 1
        assert log.last.error == "NO_DATA"

    def test_progress_clamped(self) -> None:
        run = BackupRun("b1")
        run.report(progress=140)
        assert run.progress.progress == 100
        run.report(progress=-5)
        assert run.progress.progress == 0

    def test_callback_gets_snapshots(self) -> None:
        log = ProgressLog()
        run = BackupRun("b1", log)
        run.report(progress=10)
        run.report(progress=20)
        assert [e.progress for e in log.events] == [10, 20]


class TestRestoreRun:
    """Restore stage transitions."""

    def test_walk(self) -> None:
        run = RestoreRun("r1", "b1")
        assert run.status == RunStatus.DOWNLOADING
        run.advance(RunStatus.DECRYPTING, "decrypting")
        run.advance(RunStatus.MERGING, "merging")
        run.advance(RunStatus.COMPLETED, "done")
        assert run.is_terminal

    def test_backup_stages_not_allowed(self) -> None:
        with pytest.raises(InvalidTransition):
            RestoreRun("r1", "b1").advance(RunStatus.ENCRYPTING, "wrong pipeline")


class TestBackupError:
    """Error metadata."""

    def test_user_message_and_category(self) -> None:
        exc = BackupError(ErrorCode.NO_NETWORK, "socket closed")
        assert exc.message == "socket closed"
        assert exc.category == ErrorCategory.NETWORK
        assert exc.should_retry
        assert "internet" in exc.user_message.lower()
        assert str(exc) == "NO_NETWORK: socket closed"

    def test_default_message(self) -> None:
        exc = BackupError(ErrorCode.INVALID_PASSWORD)
        assert exc.message == exc.user_message
        assert not exc.should_retry

    def test_every_code_has_a_message(self) -> None:
        for code in ErrorCode:
            assert BackupError(code).user_message != "Something went wrong."

    def test_to_dict(self) -> None:
        data = BackupError(ErrorCode.DECRYPTION_FAILED).to_dict()
        assert data["code"] == "DECRYPTION_FAILED"
        assert data["category"] == "encryption"
        assert data["should_retry"] is False
