"""
Preflight gating: decide whether a backup may start right now.

Checks, in order:
  - Backup enabled              -> BACKUP_DISABLED
  - Network reachable           -> NO_NETWORK      (manual runs too)
  - Wi-Fi, if wifi-only         -> WIFI_REQUIRED   (automatic runs only)
  - Battery above threshold,
    if low-power mode is on     -> LOW_BATTERY     (automatic runs only)

Device state is polled once per check, here and nowhere else. A failed
preflight has no side effects.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from .config import BackupConfig
from .device import ConnectionType, DeviceMonitor
from .errors import BackupError, ErrorCode


@dataclass
class PreflightCheck:
    """Result of one gating condition."""

    name: str
    passed: bool
    code: Optional[ErrorCode] = None
    detail: str = ""
    skipped: bool = False


@dataclass
class PreflightResult:
    """All gating conditions for one run."""

    manual: bool
    checks: list[PreflightCheck] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        """True if every check passed or was skipped."""
        return all(c.passed for c in self.checks)

    @property
    def first_failure(self) -> Optional[PreflightCheck]:
        """The check that blocks the run, if any."""
        return next((c for c in self.checks if not c.passed), None)

    def raise_for_failure(self) -> None:
        """Raise the blocking check's error.

        Raises:
            BackupError: With the first failed check's code.
        """
        failure = self.first_failure
        if failure is not None and failure.code is not None:
            raise BackupError(failure.code, failure.detail)


def check_enabled(config: BackupConfig) -> PreflightCheck:
    """Backup must be switched on."""
    return PreflightCheck(
        name="enabled",
        passed=config.enabled,
        code=None if config.enabled else ErrorCode.BACKUP_DISABLED,
        detail="" if config.enabled else "Cloud backup is disabled",
    )


def check_network(device: DeviceMonitor) -> PreflightCheck:
    """Some network must be reachable. Applies to manual runs as well."""
    connected = device.is_connected()
    return PreflightCheck(
        name="network",
        passed=connected,
        code=None if connected else ErrorCode.NO_NETWORK,
        detail="" if connected else "No internet connection available",
    )


def check_wifi(config: BackupConfig, device: DeviceMonitor, manual: bool) -> PreflightCheck:
    """Automatic runs wait for Wi-Fi when configured wifi-only."""
    if manual or not config.wifi_only_backup:
        return PreflightCheck(name="wifi", passed=True, skipped=True)
    connection = device.connection_type()
    on_wifi = connection == ConnectionType.WIFI
    return PreflightCheck(
        name="wifi",
        passed=on_wifi,
        code=None if on_wifi else ErrorCode.WIFI_REQUIRED,
        detail=f"connection={connection.value}",
    )


def check_battery(config: BackupConfig, device: DeviceMonitor, manual: bool) -> PreflightCheck:
    """Automatic runs in low-power mode wait for enough charge."""
    if manual or not config.low_power_mode:
        return PreflightCheck(name="battery", passed=True, skipped=True)
    level = device.battery_level()
    charged = level >= config.battery_threshold
    return PreflightCheck(
        name="battery",
        passed=charged,
        code=None if charged else ErrorCode.LOW_BATTERY,
        detail=f"battery={level:.0%} threshold={config.battery_threshold:.0%}",
    )


def run_preflight(config: BackupConfig, device: DeviceMonitor, manual: bool) -> PreflightResult:
    """Evaluate every gate, stopping at the first failure.

    Args:
        config: Current backup configuration.
        device: Network and battery source.
        manual: True when the user started the run.

    Returns:
        PreflightResult; call raise_for_failure() to enforce it.
    """
    result = PreflightResult(manual=manual)
    for check in (
        lambda: check_enabled(config),
        lambda: check_network(device),
        lambda: check_wifi(config, device, manual),
        lambda: check_battery(config, device, manual),
    ):
        outcome = check()
        result.checks.append(outcome)
        if not outcome.passed:
            break
    return result
