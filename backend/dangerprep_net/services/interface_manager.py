from __future__ import annotations

import logging
import os
import re
from datetime import datetime
from typing import Dict, List, Optional

import psutil

from ..config import settings
from ..errors import InterfaceNotFoundError, MissingPrerequisiteError
from ..models.interfaces import InterfaceRecord, InterfaceType, LinkState
from ..models.network import NetworkState
from ..utils import system
from ..utils.paths import atomic_write, interfaces_conf_path


logger = logging.getLogger(__name__)

ETHERNET_NAME_RE = re.compile(r"^(en|eth)")
TAILSCALE_NAME_RE = re.compile(r"^tailscale")
IW_INTERFACE_RE = re.compile(r"^\s*Interface\s+(\S+)")
IW_WIPHY_RE = re.compile(r"^\s*wiphy\s+(\d+)")

# iw "Supported interface modes" entries mapped to the capability names we record
CAPABILITY_MODES = (("AP", "ap"), ("monitor", "monitor"), ("mesh point", "mesh"))


def parse_iw_dev_interfaces(text: str) -> List[str]:
    names: List[str] = []
    for line in text.splitlines():
        m = IW_INTERFACE_RE.match(line)
        if m and m.group(1) not in names:
            names.append(m.group(1))
    return names


def parse_supported_modes(phy_info: str) -> List[str]:
    modes: List[str] = []
    in_block = False
    for raw in phy_info.splitlines():
        line = raw.strip()
        if line.startswith("Supported interface modes"):
            in_block = True
            continue
        if not in_block:
            continue
        if line.startswith("*"):
            modes.append(line.lstrip("* ").strip())
        else:
            break
    return modes


def capabilities_from_modes(modes: List[str]) -> List[str]:
    caps: List[str] = []
    for mode, cap in CAPABILITY_MODES:
        if mode in modes:
            caps.append(cap)
    return caps


class InterfaceManager:
    """Kernel interface inventory backed by interfaces.conf."""

    def _sysfs(self, name: str, *parts: str) -> str:
        return os.path.join(settings.sysfs_net_dir, name, *parts)

    def interface_exists(self, name: str) -> bool:
        return bool(name) and os.path.isdir(self._sysfs(name))

    def validate_interface(self, name: str, what: str = "interface") -> None:
        if not name:
            raise InterfaceNotFoundError(f"No {what} specified")
        if not self.interface_exists(name):
            raise InterfaceNotFoundError(f"{what} does not exist: {name}")

    def is_wireless(self, name: str) -> bool:
        return os.path.isdir(self._sysfs(name, "wireless"))

    def wifi_interfaces(self) -> List[str]:
        names: List[str] = []
        if os.path.isdir(settings.sysfs_net_dir):
            for entry in sorted(os.listdir(settings.sysfs_net_dir)):
                if self.is_wireless(entry):
                    names.append(entry)
        result = system.run_command(["iw", "dev"])
        if result.ok:
            for name in parse_iw_dev_interfaces(result.stdout):
                if name not in names:
                    names.append(name)
        return names

    def first_wifi_interface(self) -> Optional[str]:
        names = self.wifi_interfaces()
        return names[0] if names else None

    def _driver(self, name: str) -> str:
        link = self._sysfs(name, "device", "driver")
        try:
            return os.path.basename(os.readlink(link))
        except OSError:
            return "unknown"

    def _speed(self, name: str) -> str:
        try:
            stats = psutil.net_if_stats().get(name)
        except OSError:
            stats = None
        if stats and stats.speed > 0:
            return f"{stats.speed}Mbps"
        return "unknown"

    def _wifi_capabilities(self, name: str) -> List[str]:
        info = system.run_command(["iw", "dev", name, "info"])
        phy = None
        for line in info.stdout.splitlines():
            m = IW_WIPHY_RE.match(line)
            if m:
                phy = m.group(1)
                break
        if phy is None:
            return []
        phy_info = system.run_command(["iw", "phy", f"phy{phy}", "info"])
        if not phy_info.ok:
            return []
        return capabilities_from_modes(parse_supported_modes(phy_info.stdout))

    def classify(self, name: str, wifi_names: List[str]) -> Optional[InterfaceType]:
        if name in wifi_names or self.is_wireless(name):
            return InterfaceType.WIFI
        if TAILSCALE_NAME_RE.match(name):
            return InterfaceType.TAILSCALE
        if ETHERNET_NAME_RE.match(name):
            return InterfaceType.ETHERNET
        return None

    def scan_interfaces(self) -> List[InterfaceRecord]:
        entries = system.run_json(["ip", "-j", "addr", "show"])
        wifi_names = self.wifi_interfaces()
        records: List[InterfaceRecord] = []
        seen = set()
        for entry in entries:
            name = entry.get("ifname")
            if not name or name == "lo" or name in seen:
                continue
            kind = self.classify(name, wifi_names)
            if kind is None:
                logger.debug("Skipping unsupported interface %s", name)
                continue
            seen.add(name)
            try:
                records.append(self._record(entry, kind))
            except Exception as exc:  # noqa: BLE001
                logger.error("Failed to enumerate %s: %s", name, exc)
        return records

    def _record(self, entry: Dict, kind: InterfaceType) -> InterfaceRecord:
        name = entry["ifname"]
        state = LinkState.from_operstate(entry.get("operstate"))
        mac = entry.get("address")
        if kind == InterfaceType.ETHERNET:
            record = InterfaceRecord(name=name, type=kind, mac=mac, state=state, speed=self._speed(name))
            logger.info("Ethernet: %s (%s, %s, %s)", name, mac, state.value, record.speed)
        elif kind == InterfaceType.WIFI:
            record = InterfaceRecord(
                name=name,
                type=kind,
                mac=mac,
                state=state,
                driver=self._driver(name),
                capabilities=self._wifi_capabilities(name),
            )
            logger.info("WiFi: %s (%s, %s, %s, caps: %s)", name, mac, state.value, record.driver,
                        ",".join(record.capabilities))
        else:
            cidr = None
            for addr in entry.get("addr_info", []):
                if addr.get("family") == "inet":
                    cidr = f"{addr.get('local')}/{addr.get('prefixlen')}"
                    break
            record = InterfaceRecord(name=name, type=kind, ip=cidr, state=state)
            logger.info("Tailscale: %s (%s, %s)", name, cidr, state.value)
        return record

    def enumerate_interfaces(self) -> List[InterfaceRecord]:
        logger.info("Enumerating physical network interfaces...")
        records = self.scan_interfaces()
        if not any(r.type == InterfaceType.TAILSCALE for r in records):
            logger.warning("Tailscale interface not found")
        stamp = datetime.now().strftime("%a %b %d %H:%M:%S %Y")
        lines = ["# DangerPrep Interface Configuration", f"# Generated on {stamp}", ""]
        for kind in (InterfaceType.ETHERNET, InterfaceType.WIFI, InterfaceType.TAILSCALE):
            lines.extend(r.to_conf_line() for r in records if r.type == kind)
        lines.extend(["", f"# Interface enumeration completed on {stamp}"])
        atomic_write(interfaces_conf_path(), "\n".join(lines) + "\n")
        logger.info("Interface enumeration completed (%d interfaces)", len(records))
        return records

    def load_interfaces(self) -> List[InterfaceRecord]:
        path = interfaces_conf_path()
        if not os.path.exists(path):
            raise MissingPrerequisiteError(
                "Interface configuration not found. Run 'network-manager enumerate' first."
            )
        records: List[InterfaceRecord] = []
        with open(path, "r", encoding="utf-8") as f:
            for line in f:
                if not line.strip() or line.lstrip().startswith("#"):
                    continue
                record = InterfaceRecord.from_conf_line(line)
                if record is not None:
                    records.append(record)
        return records

    def get_interface(self, name: str) -> InterfaceRecord:
        for record in self.load_interfaces():
            if record.name == name:
                return record
        raise InterfaceNotFoundError(f"Interface '{name}' not found. Run 'network-manager enumerate' first.")

    def interface_type(self, name: str) -> Optional[InterfaceType]:
        try:
            return self.get_interface(name).type
        except (InterfaceNotFoundError, MissingPrerequisiteError):
            return None

    def kernel_interfaces(self) -> List[str]:
        names = []
        for entry in system.run_json(["ip", "-j", "link", "show"]):
            name = entry.get("ifname")
            if name and name != "lo":
                names.append(name)
        return names

    def current_ipv4(self, name: str, with_prefix: bool = True) -> Optional[str]:
        for entry in system.run_json(["ip", "-j", "addr", "show", "dev", name]):
            for addr in entry.get("addr_info", []):
                if addr.get("family") == "inet" and addr.get("local"):
                    if with_prefix:
                        return f"{addr['local']}/{addr.get('prefixlen')}"
                    return addr["local"]
        return None

    def describe(self, state: NetworkState) -> List[str]:
        lines = ["Available Network Interfaces:", "============================="]
        for record in self.load_interfaces():
            lines.append("")
            lines.append(f"Interface: {record.name}")
            lines.append(f"  Type: {record.type.value}")
            for key, value in record.fields().items():
                if key != "type":
                    lines.append(f"  {key}: {value}")
            ip = self.current_ipv4(record.name)
            if ip:
                lines.append(f"  current_ip: {ip}")
            role = state.role_of(record.name)
            lines.append(f"  role: {role.value if role.value.startswith('WAN') else 'LAN'}")
        return lines

    def describe_split(self, state: NetworkState) -> List[str]:
        records = self.load_interfaces()
        wan = state.wan_interfaces()
        lines = ["Current Interface Configuration:", "==============================="]
        if state.wan_primary:
            lines.append(f"WAN Interface: {state.wan_primary}")
        else:
            lines.append("WAN Interface: None (all interfaces are LAN)")
        lines.extend(["", "LAN Interfaces:"])
        for record in records:
            if record.name not in wan:
                lines.append(f"  {record.name} ({record.type.value})")
        lines.extend(["", "Tailscale is always considered part of LAN network"])
        return lines


interface_manager = InterfaceManager()
