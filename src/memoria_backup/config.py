"""
Backup configuration: what runs, when, and where it lands.

Persisted as YAML at ``<home>/config.yaml``. Unknown keys in the file
are rejected so a typo never silently disables a safety gate.
"""

from __future__ import annotations

import logging
from enum import Enum
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger("memoria_backup.config")

CONFIG_FILENAME = "config.yaml"
DEFAULT_CHUNK_SIZE = 1024 * 1024
# Each uploaded chunk carries a 28-byte IV and tag frame on top of its data.
MIN_CHUNK_SIZE = 64


class ComplianceRegion(str, Enum):
    """Where backups are stored for data-residency purposes."""

    US_EAST = "us-east"
    US_WEST = "us-west"
    EU_WEST = "eu-west"
    ASIA_PACIFIC = "asia-pacific"


class BackupConfig(BaseModel):
    """User-facing backup settings.

    Backup is disabled until the user opts in.
    """

    model_config = ConfigDict(extra="forbid")

    enabled: bool = False
    wifi_only_backup: bool = True
    low_power_mode: bool = True
    battery_threshold: float = Field(default=0.2, ge=0.0, le=1.0)
    chunk_size_bytes: int = Field(default=DEFAULT_CHUNK_SIZE, ge=MIN_CHUNK_SIZE)
    max_backup_retention_days: int = Field(default=30, ge=1)
    key_rotation_days: int = Field(default=90, ge=1)
    compliance_region: ComplianceRegion = ComplianceRegion.US_EAST
    exclude_archived: bool = True
    include_tags: list[str] = Field(default_factory=list)
    storage_limit_bytes: int = Field(default=1024 * 1024 * 1024, gt=0)
    max_concurrent_transfers: int = Field(default=2, ge=1)
    max_retries: int = Field(default=3, ge=0)
    retry_delay_seconds: float = Field(default=2.0, ge=0.0)

    def updated(self, **changes: Any) -> "BackupConfig":
        """Return a validated copy with ``changes`` applied.

        Raises:
            pydantic.ValidationError: If a change is invalid or unknown.
        """
        data = self.model_dump()
        data.update(changes)
        return BackupConfig.model_validate(data)


def load_config(home: Path) -> BackupConfig:
    """Load config from ``home``, falling back to defaults.

    Args:
        home: Backup home directory.

    Returns:
        BackupConfig from disk, or defaults if absent or unreadable.
    """
    config_path = home / CONFIG_FILENAME
    if not config_path.exists():
        return BackupConfig()
    try:
        data = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
        return BackupConfig.model_validate(data)
    except (yaml.YAMLError, ValidationError, OSError) as exc:
        logger.warning("Failed to load %s, using defaults: %s", config_path, exc)
        return BackupConfig()


def save_config(home: Path, config: BackupConfig) -> Path:
    """Write config to ``home`` as YAML.

    Returns:
        Path of the written file.
    """
    home.mkdir(parents=True, exist_ok=True)
    config_path = home / CONFIG_FILENAME
    config_path.write_text(
        yaml.safe_dump(config.model_dump(mode="json"), default_flow_style=False, sort_keys=True),
        encoding="utf-8",
    )
    return config_path


def coerce_value(raw: Optional[str]) -> Any:
    """Parse a CLI ``key=value`` right-hand side with YAML scalar rules."""
    if raw is None:
        return None
    return yaml.safe_load(raw)
