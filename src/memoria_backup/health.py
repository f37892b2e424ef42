"""
Backup health scoring.

Reads only the persisted history and the current settings, so it is
safe to call at any time, including while a backup is running.

    score starts at 100
      -30  backup disabled
      -25  never backed up
      -15  last backup more than 7 days ago
      -20  storage over 90% full (else -10 over 75%)
    floored at 0

Every deduction adds exactly one issue and one recommendation.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from .config import BackupConfig
from .history import BackupHistory
from .models import HealthReport, utcnow

STALE_AFTER_DAYS = 7


class HealthReporter:
    """Score backup health from history and config.

    Args:
        history: Source of the last backup time and storage usage.
        config: Current backup settings.
    """

    def __init__(self, history: BackupHistory, config: BackupConfig) -> None:
        self._history = history
        self.config = config

    def assess(self, now: Optional[datetime] = None) -> HealthReport:
        """Build a HealthReport as of ``now`` (default: current UTC time)."""
        now = now or utcnow()
        status = self._history.status()
        report = HealthReport()

        def deduct(points: int, issue: str, recommendation: str) -> None:
            report.score -= points
            report.issues.append(issue)
            report.recommendations.append(recommendation)

        if not self.config.enabled:
            deduct(30, "Cloud backup is disabled",
                   "Enable cloud backup to protect your precious memories")

        if status.last_backup_time is None:
            deduct(25, "No backups have been created yet",
                   "Create your first backup to secure your memories")
        else:
            days = (now - status.last_backup_time).days
            if days > STALE_AFTER_DAYS:
                deduct(15, f"Last backup was {days} days ago",
                       "Create a new backup to keep your memories up to date")

        usage = status.utilization * 100
        if usage > 90:
            deduct(20, "Cloud storage is almost full",
                   "Consider upgrading your storage plan or deleting old backups")
        elif usage > 75:
            deduct(10, "Cloud storage is getting full",
                   "Monitor your storage usage and consider cleanup")

        report.score = max(0, report.score)
        return report
