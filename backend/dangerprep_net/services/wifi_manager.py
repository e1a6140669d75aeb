from __future__ import annotations

import logging
import os
import re
import time
from typing import Dict, List, Optional

from ..config import settings
from ..errors import MissingPrerequisiteError, NetworkError, UsageError
from ..models.interfaces import LinkState
from ..models.network import Role
from ..models.wifi import WifiInterfaceStatus, WifiNetwork
from ..utils import system
from ..utils.paths import atomic_write
from . import connectivity, firewall, router_apply
from .interface_manager import interface_manager
from .network_state import NetworkStateStore, network_state_store


logger = logging.getLogger(__name__)

AP_PROFILE_RE = re.compile(r"^(Hotspot|DangerPrep-AP)")
HOSTAPD_IFACE_RE = re.compile(r"^interface=.*$", re.MULTILINE)
MIN_PASSWORD_LENGTH = 8
CONNECT_SETTLE_SECONDS = 3
REPEATER_SETTLE_SECONDS = 10


def split_terse(line: str) -> List[str]:
    """Split one line of ``nmcli -t`` output on unescaped colons."""
    fields: List[str] = []
    current = []
    escaped = False
    for ch in line:
        if escaped:
            current.append(ch)
            escaped = False
        elif ch == "\\":
            escaped = True
        elif ch == ":":
            fields.append("".join(current))
            current = []
        else:
            current.append(ch)
    fields.append("".join(current))
    return fields


def parse_scan(text: str) -> List[WifiNetwork]:
    """Parse ``nmcli -t -f IN-USE,SSID,SIGNAL,SECURITY,CHAN device wifi list``."""
    networks: List[WifiNetwork] = []
    for line in text.splitlines():
        if not line.strip():
            continue
        fields = split_terse(line)
        if len(fields) < 5:
            continue
        in_use, ssid, signal, security, chan = fields[:5]
        if not ssid:
            continue
        networks.append(
            WifiNetwork(
                ssid=ssid,
                signal=int(signal) if signal.isdigit() else 0,
                security=security or "open",
                channel=int(chan) if chan.isdigit() else None,
                in_use=in_use.strip() == "*",
            )
        )
    networks.sort(key=lambda n: n.signal, reverse=True)
    return networks


def parse_connection_fields(text: str) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for line in text.splitlines():
        key, sep, value = line.partition(":")
        if sep:
            out[key.strip()] = value.strip()
    return out


class WifiManager:
    def __init__(self, store: Optional[NetworkStateStore] = None) -> None:
        self._store = store

    @property
    def store(self) -> NetworkStateStore:
        return self._store or network_state_store

    def resolve_interface(self, interface: Optional[str] = None) -> str:
        if interface:
            interface_manager.validate_interface(interface, "WiFi interface")
            return interface
        name = interface_manager.first_wifi_interface()
        if not name:
            raise MissingPrerequisiteError("No WiFi interface found")
        return name

    def scan(self, interface: Optional[str] = None) -> List[WifiNetwork]:
        iface = self.resolve_interface(interface)
        logger.info("Scanning for WiFi networks on %s...", iface)
        system.run_command(["nmcli", "device", "wifi", "rescan", "ifname", iface])
        time.sleep(CONNECT_SETTLE_SECONDS)
        result = system.run_command(
            ["nmcli", "-t", "-f", "IN-USE,SSID,SIGNAL,SECURITY,CHAN", "device", "wifi", "list", "ifname", iface],
            check=True,
        )
        return parse_scan(result.stdout)

    def connect(self, ssid: str, password: str, interface: Optional[str] = None) -> Dict[str, object]:
        if not ssid or not password:
            raise UsageError("Usage: wifi-connect <ssid> <password> [interface]")
        iface = self.resolve_interface(interface)
        logger.info("Connecting to WiFi network: %s", ssid)
        system.run_command(["nmcli", "connection", "delete", ssid])
        system.run_command(["nmcli", "device", "wifi", "connect", ssid, "password", password, "ifname", iface],
                           check=True)
        logger.info("Connected to %s", ssid)
        time.sleep(CONNECT_SETTLE_SECONDS)
        ip = connectivity.first_ipv4(iface)
        if ip:
            logger.info("IP Address: %s", ip)
        internet = connectivity.ping("8.8.8.8")
        if internet:
            logger.info("Internet connectivity confirmed")
        else:
            logger.warning("Connected but no internet access detected")
        return {"interface": iface, "ssid": ssid, "ip": ip, "internet": internet}

    def active_connection(self, interface: str) -> Optional[str]:
        result = system.run_command(["nmcli", "-t", "-f", "NAME,DEVICE", "connection", "show", "--active"])
        for line in result.stdout.splitlines():
            fields = split_terse(line)
            if len(fields) >= 2 and fields[1] == interface:
                return fields[0]
        return None

    def disconnect(self, interface: Optional[str] = None) -> Optional[str]:
        iface = self.resolve_interface(interface)
        connection = self.active_connection(iface)
        if not connection:
            logger.warning("No active WiFi connection on %s", iface)
            return None
        logger.info("Disconnecting %s from %s", iface, connection)
        system.run_command(["nmcli", "connection", "down", connection], check=True)
        return connection

    def create_ap(self, ssid: str, password: str, interface: Optional[str] = None) -> str:
        if not ssid or not password:
            raise UsageError("Usage: wifi-ap <ssid> <password>")
        if len(password) < MIN_PASSWORD_LENGTH:
            raise UsageError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
        iface = self.resolve_interface(interface)
        if system.service_is_active("hostapd") and os.path.exists(settings.hostapd_conf):
            logger.warning("DangerPrep hostapd is already configured and running")
            logger.info("To reconfigure, edit %s and restart hostapd", settings.hostapd_conf)
            return "hostapd"

        result = system.run_command(["nmcli", "-t", "-f", "NAME", "connection", "show"])
        for name in result.stdout.splitlines():
            if AP_PROFILE_RE.match(name):
                system.run_command(["nmcli", "connection", "down", name])
                system.run_command(["nmcli", "connection", "delete", name])

        con = f"DangerPrep-AP-{iface}"
        system.run_command(
            ["nmcli", "device", "wifi", "hotspot", "ifname", iface, "con-name", con,
             "ssid", ssid, "password", password, "band", "bg"],
            check=True,
        )
        logger.info("Access point created: %s on %s", ssid, iface)
        return con

    def interface_status(self, iface: str) -> WifiInterfaceStatus:
        status = WifiInterfaceStatus(name=iface)
        for entry in system.run_json(["ip", "-j", "link", "show", "dev", iface]):
            status.mac = entry.get("address")
            status.state = LinkState.from_operstate(entry.get("operstate")).value
        status.ip = interface_manager.current_ipv4(iface)
        status.connection = self.active_connection(iface)
        if status.connection:
            details = system.run_command(
                ["nmcli", "-t", "-f", "802-11-wireless.mode,802-11-wireless.ssid", "connection", "show",
                 status.connection]
            )
            fields = parse_connection_fields(details.stdout)
            status.mode = "ap" if fields.get("802-11-wireless.mode") == "ap" else "client"
            status.ssid = fields.get("802-11-wireless.ssid") or None
        return status

    def status(self) -> List[WifiInterfaceStatus]:
        return [self.interface_status(name) for name in interface_manager.wifi_interfaces()]

    def _point_hostapd_at(self, iface: str) -> None:
        path = settings.hostapd_conf
        if not os.path.exists(path):
            logger.warning("hostapd configuration not found: %s", path)
            return
        with open(path, "r", encoding="utf-8") as f:
            text = f.read()
        updated = HOSTAPD_IFACE_RE.sub(f"interface={iface}", text)
        if updated != text:
            atomic_write(path, updated)

    def repeater_start(self, ssid: str, password: str, interface: Optional[str] = None) -> str:
        """Use ``interface`` as upstream client and repeat it on a virtual AP interface."""
        if not ssid:
            raise UsageError("Usage: wifi-repeater-start <ssid> <password> [interface]")
        iface = self.resolve_interface(interface or settings.wifi_interface)
        ap_iface = f"{iface}_ap"
        logger.info("Setting up WiFi repeater: upstream %s via %s", ssid, iface)

        system.stop_services("hostapd")
        system.run_command(["nmcli", "device", "wifi", "connect", ssid, "password", password, "ifname", iface],
                           check=True)
        time.sleep(REPEATER_SETTLE_SECONDS)
        if not connectivity.ping("8.8.8.8"):
            raise NetworkError("Failed to connect to upstream WiFi")
        logger.info("Connected to upstream WiFi successfully")

        if not interface_manager.interface_exists(ap_iface):
            system.run_command(["iw", "dev", iface, "interface", "add", ap_iface, "type", "__ap"], check=True)
        router_apply.set_interface_address(ap_iface, f"{settings.lan_ip}/{router_apply.lan_prefix()}")
        self._point_hostapd_at(ap_iface)

        with self.store.transaction() as state:
            state.assign_role(iface, Role.WAN_PRIMARY)
            state.assign_role(ap_iface, Role.LAN)
            lans = list(state.lan_interfaces)
        firewall.set_ip_forwarding(True)
        firewall.apply_plan(router_apply.sharing_plan(self.store.load(), iface, lans, router_apply.inventory_types()))
        system.start_services("hostapd", "dnsmasq")
        logger.info("WiFi repeater configured (upstream %s, hotspot %s at %s)", iface, ap_iface, settings.lan_ip)
        return ap_iface

    def repeater_stop(self, interface: Optional[str] = None) -> None:
        iface = interface or settings.wifi_interface
        ap_iface = f"{iface}_ap"
        logger.info("Cleaning up WiFi repeater on %s", iface)
        system.stop_services("hostapd", "wpa_supplicant")
        result = system.run_command(["iw", "dev", ap_iface, "del"])
        if not result.ok:
            logger.debug("No virtual interface %s to remove", ap_iface)
        self._point_hostapd_at(iface)
        self.store.clear_role(ap_iface)
        logger.info("WiFi repeater cleanup completed")

