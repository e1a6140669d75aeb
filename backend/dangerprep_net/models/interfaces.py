from __future__ import annotations

import re
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


CONF_LINE_RE = re.compile(r'^(ETHERNET|WIFI|TAILSCALE)_([^=]+)="(.*)"$')


class InterfaceType(str, Enum):
    ETHERNET = "ethernet"
    WIFI = "wifi"
    TAILSCALE = "tailscale"


class LinkState(str, Enum):
    UP = "UP"
    DOWN = "DOWN"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def from_operstate(cls, value: Optional[str]) -> "LinkState":
        norm = (value or "").strip().upper()
        if norm == "UP":
            return cls.UP
        if norm == "DOWN":
            return cls.DOWN
        return cls.UNKNOWN


class InterfaceRecord(BaseModel):
    name: str
    type: InterfaceType
    mac: Optional[str] = None
    state: LinkState = LinkState.UNKNOWN
    driver: Optional[str] = None
    speed: Optional[str] = None
    capabilities: List[str] = Field(default_factory=list)
    ip: Optional[str] = None

    @property
    def conf_key(self) -> str:
        return f"{self.type.value.upper()}_{self.name}"

    def fields(self) -> Dict[str, str]:
        if self.type == InterfaceType.ETHERNET:
            return {
                "type": self.type.value,
                "mac": self.mac or "",
                "state": self.state.value,
                "speed": self.speed or "unknown",
            }
        if self.type == InterfaceType.WIFI:
            return {
                "type": self.type.value,
                "mac": self.mac or "",
                "state": self.state.value,
                "driver": self.driver or "unknown",
                "capabilities": ",".join(self.capabilities),
            }
        return {"type": self.type.value, "ip": self.ip or "", "state": self.state.value}

    def to_conf_line(self) -> str:
        body = ",".join(f"{k}={v}" for k, v in self.fields().items())
        return f'{self.conf_key}="{body}"'

    @classmethod
    def from_conf_line(cls, line: str) -> Optional["InterfaceRecord"]:
        m = CONF_LINE_RE.match(line.strip())
        if not m:
            return None
        kind, name, body = m.groups()
        values: Dict[str, str] = {}
        last_key: Optional[str] = None
        for part in body.split(","):
            if "=" in part:
                key, _, value = part.partition("=")
                values[key] = value
                last_key = key
            elif last_key is not None and part:
                # capabilities=ap,monitor: bare tokens continue the previous value
                values[last_key] = f"{values[last_key]},{part}"
        caps = [c for c in values.get("capabilities", "").split(",") if c]
        return cls(
            name=name,
            type=InterfaceType(kind.lower()),
            mac=values.get("mac") or None,
            state=LinkState.from_operstate(values.get("state")),
            driver=values.get("driver") or None,
            speed=values.get("speed") or None,
            capabilities=caps,
            ip=values.get("ip") or None,
        )


class InterfaceStatus(BaseModel):
    name: str
    type: InterfaceType
    state: LinkState
    mac_address: Optional[str] = None
    ipv4_address: Optional[str] = None
    role: str
    has_internet: bool = False


class InterfacesResponse(BaseModel):
    interfaces: List[InterfaceStatus]


class AssignWanRequest(BaseModel):
    interface: str
    priority: str = "primary"  # primary | secondary | available
