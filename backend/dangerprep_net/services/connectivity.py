from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional

from ..config import settings
from ..models.network import ConnectivityStatus
from ..utils import system


logger = logging.getLogger(__name__)


def link_is_up(interface: str) -> bool:
    for entry in system.run_json(["ip", "-j", "link", "show", "dev", interface]):
        if (entry.get("operstate") or "").upper() == "UP":
            return True
    return False


def first_ipv4(interface: str) -> str:
    for entry in system.run_json(["ip", "-j", "addr", "show", "dev", interface]):
        for addr in entry.get("addr_info", []):
            if addr.get("family") == "inet" and addr.get("local"):
                return addr["local"]
    return ""


def default_gateway(interface: Optional[str] = None) -> str:
    cmd = ["ip", "-j", "route", "show", "default"]
    if interface:
        cmd += ["dev", interface]
    for route in system.run_json(cmd):
        if route.get("gateway"):
            return route["gateway"]
    return ""


def has_default_route_via(interface: str) -> bool:
    for route in system.run_json(["ip", "-j", "route", "show", "default"]):
        if route.get("dev") == interface:
            return True
    return False


def ping(host: str, interface: Optional[str] = None, count: int = 1, wait: int = 3,
         timeout: Optional[float] = None) -> bool:
    cmd = ["ping", "-c", str(count), "-W", str(wait)]
    if interface:
        cmd += ["-I", interface]
    cmd.append(host)
    return system.run_command(cmd, timeout=timeout or settings.connectivity_timeout).ok


def internet_via(interface: str, hosts: Optional[List[str]] = None) -> bool:
    for host in hosts or settings.probe_hosts:
        if ping(host, interface=interface):
            return True
    return False


def probe_interface(interface: str) -> ConnectivityStatus:
    """Check link, address, gateway and internet reachability of one interface."""
    if not link_is_up(interface):
        logger.debug("Interface %s is down", interface)
        return ConnectivityStatus(has_internet=False)

    ip_address = first_ipv4(interface)
    gateway = default_gateway(interface)
    has_internet = False
    if ip_address and gateway:
        has_internet = internet_via(interface)
        logger.debug("Interface %s internet=%s", interface, has_internet)
    else:
        logger.debug("Interface %s has no IP address or gateway", interface)
    return ConnectivityStatus(has_internet=has_internet, ip_address=ip_address, gateway=gateway)


def probe_all(interfaces: Iterable[str]) -> Dict[str, ConnectivityStatus]:
    logger.info("Scanning interface connectivity...")
    return {name: probe_interface(name) for name in interfaces if name and name != "lo"}
