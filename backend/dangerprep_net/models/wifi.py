from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field


class WifiNetwork(BaseModel):
    ssid: str
    signal: int = 0
    security: str = ""
    channel: Optional[int] = None
    in_use: bool = False


class WifiInterfaceStatus(BaseModel):
    name: str
    mac: Optional[str] = None
    state: str = "UNKNOWN"
    ip: Optional[str] = None
    connection: Optional[str] = None
    mode: Optional[str] = None  # "ap" or "client"
    ssid: Optional[str] = None


class WifiConnectRequest(BaseModel):
    ssid: str
    password: str
    interface: Optional[str] = None


class WifiScanResponse(BaseModel):
    interface: str
    networks: List[WifiNetwork] = Field(default_factory=list)
