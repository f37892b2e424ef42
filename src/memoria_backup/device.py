"""
Device conditions: network and battery, polled at preflight time.

HostDeviceMonitor reads what the host exposes: a short TCP probe for
connectivity, ``/sys/class/net`` for the link type, and
``/sys/class/power_supply`` for the battery. Hosts without a battery
report full charge so the battery gate never blocks a desktop.
"""

from __future__ import annotations

import logging
import socket
from abc import ABC, abstractmethod
from enum import Enum
from pathlib import Path

logger = logging.getLogger("memoria_backup.device")

SYS_NET = Path("/sys/class/net")
SYS_POWER = Path("/sys/class/power_supply")


class ConnectionType(str, Enum):
    """Kind of network link currently in use."""

    WIFI = "wifi"
    CELLULAR = "cellular"
    NONE = "none"


class DeviceMonitor(ABC):
    """Abstract source of network and battery state."""

    @abstractmethod
    def is_connected(self) -> bool:
        """Whether any network is reachable."""

    @abstractmethod
    def connection_type(self) -> ConnectionType:
        """The active link type."""

    @abstractmethod
    def battery_level(self) -> float:
        """Battery charge in 0..1."""


class StaticDeviceMonitor(DeviceMonitor):
    """Fixed conditions, e.g. for scripted or scheduled runs."""

    def __init__(
        self,
        connected: bool = True,
        connection: ConnectionType = ConnectionType.WIFI,
        battery: float = 1.0,
    ) -> None:
        self.connected = connected
        self.connection = connection if connected else ConnectionType.NONE
        self.battery = battery

    def is_connected(self) -> bool:
        return self.connected

    def connection_type(self) -> ConnectionType:
        return self.connection if self.connected else ConnectionType.NONE

    def battery_level(self) -> float:
        return self.battery


class HostDeviceMonitor(DeviceMonitor):
    """Probe the machine we are running on.

    Args:
        probe_host: Host for the reachability probe.
        probe_port: Port for the reachability probe.
        timeout: Probe timeout in seconds.
    """

    def __init__(
        self,
        probe_host: str = "1.1.1.1",
        probe_port: int = 53,
        timeout: float = 2.0,
    ) -> None:
        self.probe_host = probe_host
        self.probe_port = probe_port
        self.timeout = timeout

    def is_connected(self) -> bool:
        try:
            with socket.create_connection((self.probe_host, self.probe_port), timeout=self.timeout):
                return True
        except OSError:
            return False

    def connection_type(self) -> ConnectionType:
        if not self.is_connected():
            return ConnectionType.NONE
        if not SYS_NET.is_dir():
            # No link information; treat a working connection as wifi.
            return ConnectionType.WIFI
        for iface in SYS_NET.iterdir():
            if not _link_up(iface):
                continue
            if (iface / "wireless").exists():
                return ConnectionType.WIFI
            if iface.name.startswith(("wwan", "rmnet", "ppp")):
                return ConnectionType.CELLULAR
        return ConnectionType.WIFI

    def battery_level(self) -> float:
        if not SYS_POWER.is_dir():
            return 1.0
        for supply in SYS_POWER.iterdir():
            capacity = supply / "capacity"
            if not capacity.exists():
                continue
            try:
                return max(0.0, min(1.0, int(capacity.read_text().strip()) / 100))
            except (OSError, ValueError) as exc:
                logger.debug("Unreadable battery capacity %s: %s", capacity, exc)
        return 1.0


def _link_up(iface: Path) -> bool:
    if iface.name == "lo":
        return False
    try:
        return (iface / "operstate").read_text().strip() == "up"
    except OSError:
        return False
