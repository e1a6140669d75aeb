from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from ..config import settings


STATE_VERSION = "1.0"


def now_iso() -> str:
    return datetime.now(timezone.utc).astimezone().isoformat(timespec="seconds")


class Role(str, Enum):
    WAN_PRIMARY = "WAN_PRIMARY"
    WAN_SECONDARY = "WAN_SECONDARY"
    WAN_AVAILABLE = "WAN_AVAILABLE"
    LAN = "LAN"
    DISABLED = "DISABLED"  # no explicit role


class WanPriority(str, Enum):
    PRIMARY = "primary"
    SECONDARY = "secondary"
    AVAILABLE = "available"

    @property
    def role(self) -> Role:
        return {
            WanPriority.PRIMARY: Role.WAN_PRIMARY,
            WanPriority.SECONDARY: Role.WAN_SECONDARY,
            WanPriority.AVAILABLE: Role.WAN_AVAILABLE,
        }[self]


class NetworkMode(str, Enum):
    LOCAL_ONLY = "LOCAL_ONLY"
    INTERNET_SHARING = "INTERNET_SHARING"
    MIXED_MODE = "MIXED_MODE"
    BRIDGE_MODE = "BRIDGE_MODE"


class ConnectivityStatus(BaseModel):
    has_internet: bool = False
    ip_address: str = ""
    gateway: str = ""
    last_check: str = Field(default_factory=now_iso)


class PortForward(BaseModel):
    external_port: int = Field(ge=1, le=65535)
    target_ip: str
    target_port: int = Field(ge=1, le=65535)

    @property
    def target(self) -> str:
        return f"{self.target_ip}:{self.target_port}"


class NetworkConfiguration(BaseModel):
    lan_network: str = Field(default_factory=lambda: settings.lan_network)
    lan_ip: str = Field(default_factory=lambda: settings.lan_ip)
    wifi_ssid: str = Field(default_factory=lambda: settings.wifi_ssid)
    wifi_password: str = Field(default_factory=lambda: settings.wifi_password)
    evaluation_interval: int = Field(default_factory=lambda: settings.evaluation_interval)
    connectivity_timeout: int = Field(default_factory=lambda: settings.connectivity_timeout)


class NetworkState(BaseModel):
    version: str = STATE_VERSION
    mode: NetworkMode = NetworkMode.LOCAL_ONLY
    auto_mode: bool = True
    local_only_forced: bool = False
    wan_primary: Optional[str] = None
    wan_secondary: Optional[str] = None
    wan_available: List[str] = Field(default_factory=list)
    lan_interfaces: List[str] = Field(default_factory=list)
    connectivity_status: Dict[str, ConnectivityStatus] = Field(default_factory=dict)
    port_forwards: List[PortForward] = Field(default_factory=list)
    blocked_ports: List[int] = Field(default_factory=list)
    allowed_ports: List[int] = Field(default_factory=list)
    last_update: Optional[str] = None
    last_evaluation: Optional[str] = None
    configuration: NetworkConfiguration = Field(default_factory=NetworkConfiguration)

    def role_of(self, interface: str) -> Role:
        if self.wan_primary == interface:
            return Role.WAN_PRIMARY
        if self.wan_secondary == interface:
            return Role.WAN_SECONDARY
        if interface in self.wan_available:
            return Role.WAN_AVAILABLE
        if interface in self.lan_interfaces:
            return Role.LAN
        return Role.DISABLED

    def clear_role(self, interface: str) -> None:
        if self.wan_primary == interface:
            self.wan_primary = None
        if self.wan_secondary == interface:
            self.wan_secondary = None
        self.wan_available = [i for i in self.wan_available if i != interface]
        self.lan_interfaces = [i for i in self.lan_interfaces if i != interface]

    def assign_role(self, interface: str, role: Role) -> None:
        self.clear_role(interface)
        if role == Role.WAN_PRIMARY:
            self.wan_primary = interface
        elif role == Role.WAN_SECONDARY:
            self.wan_secondary = interface
        elif role == Role.WAN_AVAILABLE:
            self.wan_available.append(interface)
        elif role == Role.LAN:
            self.lan_interfaces.append(interface)

    def clear_wan(self) -> None:
        self.wan_primary = None
        self.wan_secondary = None
        self.wan_available = []

    def wan_interfaces(self) -> List[str]:
        out: List[str] = []
        for name in (self.wan_primary, self.wan_secondary):
            if name:
                out.append(name)
        out.extend(self.wan_available)
        return out

    def has_internet(self, interface: str) -> bool:
        status = self.connectivity_status.get(interface)
        return bool(status and status.has_internet)

    def summary_lines(self) -> List[str]:
        return [
            "=== Network State Summary ===",
            f"Mode: {self.mode.value}" + (" (forced)" if self.local_only_forced else ""),
            f"Auto Mode: {'true' if self.auto_mode else 'false'}",
            f"Primary WAN: {self.wan_primary or 'null'}",
            f"Secondary WAN: {self.wan_secondary or 'null'}",
            f"Available WAN: {' '.join(self.wan_available)}",
            f"LAN Interfaces: {' '.join(self.lan_interfaces)}",
            f"Last Update: {self.last_update or 'Never'}",
            f"Last Evaluation: {self.last_evaluation or 'Never'}",
        ]


class NetworkStateResponse(BaseModel):
    state: NetworkState
    services: Dict[str, str] = Field(default_factory=dict)
