"""Tests for backup preflight gating."""

from __future__ import annotations

import pytest

from memoria_backup.config import BackupConfig
from memoria_backup.device import ConnectionType, StaticDeviceMonitor
from memoria_backup.errors import BackupError, ErrorCode
from memoria_backup.preflight import check_battery, run_preflight


def _config(**overrides) -> BackupConfig:
    return BackupConfig(enabled=True).updated(**overrides)


class TestPreflight:
    """Automatic and manual gating."""

    def test_all_clear(self) -> None:
        result = run_preflight(_config(), StaticDeviceMonitor(), manual=False)
        assert result.ok
        assert result.first_failure is None
        result.raise_for_failure()

    def test_disabled(self) -> None:
        result = run_preflight(_config(enabled=False), StaticDeviceMonitor(), manual=False)
        assert result.first_failure.code == ErrorCode.BACKUP_DISABLED

    def test_no_network_blocks_manual_too(self) -> None:
        device = StaticDeviceMonitor(connected=False)
        result = run_preflight(_config(), device, manual=True)
        assert result.first_failure.code == ErrorCode.NO_NETWORK

    def test_cellular_blocks_automatic(self) -> None:
        device = StaticDeviceMonitor(connection=ConnectionType.CELLULAR)
        result = run_preflight(_config(), device, manual=False)
        assert result.first_failure.code == ErrorCode.WIFI_REQUIRED

    def test_cellular_allowed_when_not_wifi_only(self) -> None:
        device = StaticDeviceMonitor(connection=ConnectionType.CELLULAR)
        assert run_preflight(_config(wifi_only_backup=False), device, manual=False).ok

    def test_cellular_allowed_for_manual(self) -> None:
        device = StaticDeviceMonitor(connection=ConnectionType.CELLULAR)
        assert run_preflight(_config(), device, manual=True).ok

    def test_low_battery_blocks_automatic(self) -> None:
        device = StaticDeviceMonitor(battery=0.1)
        result = run_preflight(_config(low_power_mode=True), device, manual=False)

        assert not result.ok
        with pytest.raises(BackupError) as exc_info:
            result.raise_for_failure()
        assert exc_info.value.code == ErrorCode.LOW_BATTERY

    def test_low_battery_allowed_for_manual(self) -> None:
        device = StaticDeviceMonitor(battery=0.1)
        assert run_preflight(_config(low_power_mode=True), device, manual=True).ok

    def test_low_battery_ignored_without_low_power_mode(self) -> None:
        device = StaticDeviceMonitor(battery=0.1)
        assert run_preflight(_config(low_power_mode=False), device, manual=False).ok

    def test_battery_at_threshold_passes(self) -> None:
        check = check_battery(_config(battery_threshold=0.2), StaticDeviceMonitor(battery=0.2), False)
        assert check.passed

    def test_stops_at_first_failure(self) -> None:
        device = StaticDeviceMonitor(connected=False, battery=0.05)
        result = run_preflight(_config(), device, manual=False)
        assert [c.name for c in result.checks] == ["enabled", "network"]
