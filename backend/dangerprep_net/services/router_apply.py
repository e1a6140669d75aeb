from __future__ import annotations

import ipaddress
import logging
import os
import time
from datetime import datetime
from typing import Dict, List, Optional

from ..config import settings
from ..errors import MissingPrerequisiteError, NetworkError, UsageError, WanUnavailableError
from ..models.interfaces import InterfaceType
from ..models.network import NetworkMode, NetworkState
from ..utils import system
from ..utils.paths import atomic_write, routing_state_path
from . import connectivity, dnsmasq, firewall
from .interface_manager import interface_manager
from .network_state import NetworkStateStore, network_state_store


logger = logging.getLogger(__name__)

CONNECTION_PREFIX = "DangerPrep"
WAN_CONNECTION = "DangerPrep-WAN"
NETWORK_SERVICES = ("hostapd", "dnsmasq")


def lan_prefix() -> int:
    return ipaddress.ip_network(settings.lan_network, strict=False).prefixlen


def _nmcli(*args: str, check: bool = True) -> system.CommandResult:
    return system.run_command(["nmcli", *args], check=check)


def inventory_types() -> Dict[str, InterfaceType]:
    try:
        return {r.name: r.type for r in interface_manager.load_interfaces()}
    except MissingPrerequisiteError:
        return {}


def split_roles(state: NetworkState, types: Dict[str, InterfaceType]) -> List[str]:
    """Inventory interfaces that hold no WAN role, in inventory order."""
    wan = set(state.wan_interfaces())
    return [name for name in types if name not in wan]


def configure_wan(wan: str, kind: Optional[InterfaceType], ssid: Optional[str] = None,
                  password: Optional[str] = None) -> None:
    logger.info("Configuring WAN interface: %s (%s)", wan, kind.value if kind else "unknown")
    if kind == InterfaceType.ETHERNET:
        _nmcli("connection", "delete", WAN_CONNECTION, check=False)
        _nmcli("connection", "add", "type", "ethernet", "ifname", wan, "con-name", WAN_CONNECTION,
               "ipv4.method", "auto", "ipv4.may-fail", "no", "connection.autoconnect", "yes")
        _nmcli("connection", "up", WAN_CONNECTION)
    elif kind == InterfaceType.WIFI:
        if ssid and password:
            logger.info("Connecting to WiFi: %s", ssid)
            _nmcli("device", "wifi", "connect", ssid, "password", password, "ifname", wan)
        elif ssid or password:
            raise UsageError("WiFi WAN requires both SSID and password")
        else:
            logger.info("Using existing WiFi association on %s", wan)
    elif kind == InterfaceType.TAILSCALE:
        raise NetworkError("Tailscale cannot be used as WAN interface")
    else:
        raise NetworkError(f"Unknown interface type for {wan}")


def wait_for_wan(wan: str, delay: Optional[float] = None) -> None:
    time.sleep(settings.wan_wait_seconds if delay is None else delay)
    if not connectivity.has_default_route_via(wan):
        raise WanUnavailableError(f"Failed to configure WAN interface: {wan} (no default route)")
    logger.info("WAN interface %s configured, IP: %s", wan, connectivity.first_ipv4(wan) or "none")


def configure_lan(lans: List[str], types: Dict[str, InterfaceType]) -> List[str]:
    """Bring up LAN interfaces; returns the ones dnsmasq should serve."""
    dhcp: List[str] = []
    address = f"{settings.lan_ip}/{lan_prefix()}"
    for name in lans:
        kind = types.get(name)
        if kind == InterfaceType.ETHERNET:
            con = f"{CONNECTION_PREFIX}-LAN-{name}"
            logger.info("Configuring LAN interface: %s (ethernet, %s)", name, address)
            _nmcli("connection", "delete", con, check=False)
            _nmcli("connection", "add", "type", "ethernet", "ifname", name, "con-name", con,
                   "ipv4.method", "manual", "ipv4.addresses", address, "connection.autoconnect", "yes")
            _nmcli("connection", "up", con)
            dhcp.append(name)
        elif kind == InterfaceType.WIFI:
            con = f"{CONNECTION_PREFIX}-AP-{name}"
            _nmcli("connection", "delete", con, check=False)
            _nmcli("device", "wifi", "hotspot", "ifname", name, "con-name", con,
                   "ssid", settings.wifi_ssid, "password", settings.wifi_password, "band", "bg")
            logger.info("WiFi AP: %s (SSID: %s)", name, settings.wifi_ssid)
            dhcp.append(name)
        elif kind == InterfaceType.TAILSCALE:
            logger.info("Tailscale interface: %s (managed externally)", name)
        else:
            logger.warning("Unknown interface type for %s", name)
    return dhcp


def write_routing_snapshot(wan: str, lans: List[str]) -> None:
    stamp = datetime.now().strftime("%a %b %d %H:%M:%S %Y")
    atomic_write(
        routing_state_path(),
        f"wan_interface={wan}\nlan_interfaces={' '.join(lans)}\nstarted_at={stamp}\n",
    )


def read_routing_snapshot() -> Dict[str, str]:
    path = routing_state_path()
    data: Dict[str, str] = {}
    if not os.path.exists(path):
        return data
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            key, sep, value = line.rstrip("\n").partition("=")
            if sep:
                data[key] = value
    return data


def sharing_plan(state: NetworkState, wan: str, lans: List[str],
                 types: Dict[str, InterfaceType]) -> firewall.FirewallPlan:
    plan = firewall.base_plan()
    firewall.add_internet_sharing(plan, wan, lans, types)
    firewall.add_operator_rules(plan, state)
    return plan


def dangerprep_connections() -> List[str]:
    result = _nmcli("-t", "-f", "NAME", "connection", "show", check=False)
    return [line.strip() for line in result.stdout.splitlines() if line.startswith(CONNECTION_PREFIX)]


def teardown() -> None:
    """Undo a route application. Every step is best effort."""
    for con in dangerprep_connections():
        _nmcli("connection", "down", con, check=False)
        _nmcli("connection", "delete", con, check=False)
    firewall.clear_nat_rules()
    dnsmasq.remove_config()
    path = routing_state_path()
    if os.path.exists(path):
        os.remove(path)


def start_routing(ssid: Optional[str] = None, password: Optional[str] = None,
                  store: Optional[NetworkStateStore] = None) -> List[str]:
    store = store or network_state_store
    types = {r.name: r.type for r in interface_manager.load_interfaces()}
    state = store.load()
    wan = state.wan_primary
    if not wan:
        raise NetworkError("No WAN interface configured. Use 'network-manager set-wan <interface>' first.")
    lans = split_roles(state, types)
    logger.info("Starting dynamic routing (WAN: %s, LAN: %s)", wan, " ".join(lans))
    try:
        configure_wan(wan, types.get(wan), ssid, password)
        wait_for_wan(wan)
        dhcp = configure_lan(lans, types)
        if dhcp:
            dnsmasq.write_config(dhcp)
        firewall.set_ip_forwarding(True)
        firewall.apply_plan(sharing_plan(state, wan, lans, types))
        write_routing_snapshot(wan, lans)
    except Exception as exc:  # noqa: BLE001
        logger.error("Route application failed: %s; cleaning up", exc)
        teardown()
        raise
    logger.info("Dynamic routing started: WAN(%s) <-> LAN(%s)", wan, " ".join(lans))
    return lans


def stop_routing() -> None:
    logger.info("Stopping dynamic routing...")
    teardown()
    logger.info("Dynamic routing stopped")


def routing_status_lines(store: Optional[NetworkStateStore] = None) -> List[str]:
    store = store or network_state_store
    state = store.load()
    types = inventory_types()
    lines = ["Dynamic Routing Status:", "======================"]
    wan = state.wan_primary
    if wan:
        kind = types.get(wan)
        lines.append(f"WAN Interface: {wan} ({kind.value if kind else 'unknown'})")
        ip = interface_manager.current_ipv4(wan)
        if ip:
            lines.append(f"  IP: {ip}")
    else:
        lines.append("WAN Interface: None configured")
    lines.extend(["", "LAN Interfaces:"])
    for name in split_roles(state, types):
        lines.append(f"  {name} ({types[name].value})")
        ip = interface_manager.current_ipv4(name)
        if ip:
            lines.append(f"    IP: {ip}")
    nat = firewall.read_table("nat")
    filt = firewall.read_table("filter")
    masq = sum(1 for rule in nat.rules.get("POSTROUTING", []) if "MASQUERADE" in rule)
    fwd = sum(1 for rule in filt.rules.get("FORWARD", []) if "ACCEPT" in rule)
    lines.extend(["", "Routing Rules:", f"  NAT rules: {masq}", f"  Forward rules: {fwd}"])
    snapshot = read_routing_snapshot()
    if snapshot.get("started_at"):
        lines.extend(["", f"Started: {snapshot['started_at']}"])
    return lines


def set_interface_address(name: str, cidr: str) -> None:
    system.run_command(["ip", "addr", "flush", "dev", name], check=True)
    system.run_command(["ip", "addr", "add", cidr, "dev", name], check=True)
    system.run_command(["ip", "link", "set", name, "up"], check=True)


def apply_internet_sharing(store: NetworkStateStore) -> None:
    state = store.load()
    wan = state.wan_primary
    if not wan:
        raise NetworkError("No primary WAN interface for internet sharing")
    logger.info("Configuring internet sharing via %s", wan)
    firewall.set_ip_forwarding(True)
    lans = [name for name in state.lan_interfaces if interface_manager.interface_exists(name)]
    if not lans and interface_manager.interface_exists(settings.wifi_interface) \
            and settings.wifi_interface != wan:
        store.add_lan_interface(settings.wifi_interface)
        lans = [settings.wifi_interface]
        state = store.load()
    types = inventory_types()
    firewall.apply_plan(sharing_plan(state, wan, lans, types))
    dhcp = [name for name in lans if types.get(name) != InterfaceType.TAILSCALE]
    if dhcp:
        dnsmasq.write_config(dhcp)
    system.start_services(*NETWORK_SERVICES)


def apply_local_only(store: NetworkStateStore) -> None:
    logger.info("Configuring local-only network")
    firewall.set_ip_forwarding(False)
    wifi = settings.wifi_interface
    if interface_manager.interface_exists(wifi):
        set_interface_address(wifi, f"{settings.lan_ip}/{lan_prefix()}")
        store.add_lan_interface(wifi)
    state = store.load()
    lans = [name for name in state.lan_interfaces if interface_manager.interface_exists(name)]
    plan = firewall.base_plan()
    firewall.add_local_only(plan, state.configuration.lan_network, lans)
    firewall.add_operator_rules(plan, state)
    firewall.apply_plan(plan)
    if lans:
        dnsmasq.write_config(lans)
    system.start_services(*NETWORK_SERVICES)


def apply_network_configuration(store: Optional[NetworkStateStore] = None) -> NetworkMode:
    """Bring the system in line with the stored network mode."""
    store = store or network_state_store
    mode = store.get_mode()
    logger.info("Applying network configuration for mode: %s", mode.value)
    if mode in (NetworkMode.INTERNET_SHARING, NetworkMode.MIXED_MODE):
        # secondary WANs are tracked for failover only
        apply_internet_sharing(store)
    elif mode == NetworkMode.LOCAL_ONLY:
        apply_local_only(store)
    else:
        logger.warning("Bridge mode not yet implemented")
    return mode


def apply_firewall(store: Optional[NetworkStateStore] = None) -> int:
    """Reconcile the firewall with the stored mode and operator rules only."""
    store = store or network_state_store
    state = store.load()
    lans = [name for name in state.lan_interfaces if interface_manager.interface_exists(name)]
    return firewall.apply_plan(firewall.build_plan(state, lans, inventory_types()))


def reset_network(store: Optional[NetworkStateStore] = None) -> None:
    store = store or network_state_store
    system.stop_services("hostapd", "dnsmasq", "wpa_supplicant")
    firewall.clear_nat_rules()
    store.reset_to_defaults()

