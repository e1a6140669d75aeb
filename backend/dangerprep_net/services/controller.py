"""Operator-facing operations shared by the command line and the JSON API.

Mutating operations hold the network lock for their whole duration so an
evaluation triggered by the background loop cannot interleave with them.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from ..errors import NetworkError, UsageError
from ..models.network import NetworkMode, NetworkState, WanPriority
from ..models.wifi import WifiInterfaceStatus, WifiNetwork
from ..utils import system
from ..utils.logging import log_section
from . import diagnostics, firewall, router_apply
from .connectivity import probe_interface
from .intelligence import NetworkIntelligence
from .interface_manager import interface_manager
from .network_state import NetworkStateStore, network_state_store
from .transitions import check_transition
from .wifi_manager import WifiManager


logger = logging.getLogger(__name__)

STATUS_SERVICES = ("hostapd", "dnsmasq")
QUERY_FIELDS = ("mode", "wan-primary", "wan-secondary", "wan-all", "lan-all", "connectivity", "auto-mode", "local-only")


def parse_priority(value: Optional[str]) -> WanPriority:
    try:
        return WanPriority(value or "primary")
    except ValueError:
        raise UsageError(f"Invalid WAN priority: {value} (use: primary, secondary, available)")


class NetworkController:
    def __init__(self, store: Optional[NetworkStateStore] = None) -> None:
        self.store = store or network_state_store
        self.intelligence = NetworkIntelligence(self.store)
        self.wifi = WifiManager(self.store)

    @property
    def lock(self):
        return self.store.lock

    def _check(self, action: str) -> NetworkState:
        state = self.store.load()
        check_transition(state, action)
        return state

    # Read-only views

    def service_status(self) -> Dict[str, str]:
        return {name: "Running" if system.service_is_active(name) else "Stopped" for name in STATUS_SERVICES}

    def status_lines(self) -> List[str]:
        state = self.store.load()
        lines = list(state.summary_lines())
        lines.extend(["", "=== Interface Connectivity ==="])
        for name in interface_manager.kernel_interfaces():
            status = state.connectivity_status.get(name)
            internet = "true" if status and status.has_internet else "false"
            ip = status.ip_address if status else ""
            lines.append(f"{name:<12} {state.role_of(name).value:<15} {internet:<8} {ip}".rstrip())
        lines.extend(["", "=== Service Status ==="])
        for name, value in self.service_status().items():
            lines.append(f"{name:<12} {value}")
        return lines

    def query(self, field: str) -> str:
        state = self.store.load()
        if field == "mode":
            return state.mode.value
        if field == "wan-primary":
            return state.wan_primary or "null"
        if field == "wan-secondary":
            return state.wan_secondary or "null"
        if field == "wan-all":
            lines = [f"Primary: {state.wan_primary or 'null'}", f"Secondary: {state.wan_secondary or 'null'}"]
            lines.extend(f"Available: {name}" for name in state.wan_available)
            return "\n".join(lines)
        if field == "lan-all":
            return "\n".join(state.lan_interfaces)
        if field == "connectivity":
            return "\n".join(
                f"{name}: {'true' if state.has_internet(name) else 'false'}"
                for name in interface_manager.kernel_interfaces()
            )
        if field == "auto-mode":
            return "enabled" if state.auto_mode else "disabled"
        if field == "local-only":
            return "forced" if state.local_only_forced else "off"
        raise UsageError(f"Unknown query: {field} (use: {', '.join(QUERY_FIELDS)})")

    def list_interfaces(self) -> List[str]:
        return interface_manager.describe(self.store.load())

    def config_lines(self) -> List[str]:
        return interface_manager.describe_split(self.store.load())

    def show_wan(self) -> List[str]:
        state = self.store.load()
        if not state.wan_primary:
            return ["No WAN interface configured", "All interfaces are considered LAN"]
        return [f"WAN: {state.wan_primary}", "LAN: All other interfaces + Tailscale"]

    def show_wan_details(self) -> List[str]:
        state = self.store.load()
        lines = ["WAN Configuration:", "=================="]
        for label, names in (
            ("Primary", [state.wan_primary] if state.wan_primary else []),
            ("Secondary", [state.wan_secondary] if state.wan_secondary else []),
            ("Available", state.wan_available),
        ):
            if not names:
                lines.append(f"{label}: none")
            for name in names:
                status = state.connectivity_status.get(name)
                kind = interface_manager.interface_type(name)
                lines.append(f"{label}: {name} ({kind.value if kind else 'unknown'})")
                if status:
                    lines.append(f"  internet: {'yes' if status.has_internet else 'no'}")
                    lines.append(f"  ip: {status.ip_address or '-'}  gateway: {status.gateway or '-'}")
                    lines.append(f"  last check: {status.last_check}")
        return lines

    # Mode control

    def enumerate(self) -> int:
        with self.lock:
            log_section(logger, "Enumerating Interfaces")
            return len(interface_manager.enumerate_interfaces())

    def set_auto_mode(self, enabled: bool) -> None:
        with self.lock:
            self._check("auto" if enabled else "manual")
            log_section(logger, "Enabling Auto Mode" if enabled else "Disabling Auto Mode")
            self.store.set_auto_mode(enabled)
            if enabled:
                self.intelligence.force_evaluation()

    def evaluate(self, force: bool = True) -> Optional[NetworkMode]:
        with self.lock:
            self._check("evaluate")
            log_section(logger, "Network Evaluation")
            if force:
                return self.intelligence.force_evaluation()
            return self.intelligence.evaluate()

    def set_wan(self, interface: str, priority: Optional[str] = None) -> WanPriority:
        prio = parse_priority(priority)
        with self.lock:
            self._check("set-wan")
            log_section(logger, "Setting WAN Interface")
            interface_manager.get_interface(interface)
            logger.info("Setting %s as %s WAN interface", interface, prio.value)
            self.store.set_role(interface, prio.role)
            self.store.update_connectivity(interface, probe_interface(interface))
            if self.store.is_auto_mode():
                self.intelligence.force_evaluation()
            logger.info("WAN interface %s set as %s", interface, prio.value)
            return prio

    def clear_wan(self, interface: Optional[str] = None) -> None:
        with self.lock:
            self._check("clear-wan")
            log_section(logger, "Clearing WAN Interface")
            if interface:
                self.store.clear_role(interface)
                logger.info("WAN designation cleared for %s", interface)
            else:
                self.store.clear_wan()
            if self.store.is_auto_mode():
                self.intelligence.force_evaluation()

    def local_only(self) -> None:
        with self.lock:
            self._check("local-only")
            log_section(logger, "Forcing Local-Only Mode")
            with self.store.transaction() as state:
                state.clear_wan()
                state.mode = NetworkMode.LOCAL_ONLY
                state.local_only_forced = True
            router_apply.apply_local_only(self.store)
            logger.info("Local-only mode activated")

    def normal(self) -> Optional[NetworkMode]:
        with self.lock:
            self._check("normal")
            log_section(logger, "Leaving Local-Only Mode")
            with self.store.transaction() as state:
                state.local_only_forced = False
            return self.intelligence.force_evaluation()

    def reset(self) -> None:
        with self.lock:
            self._check("reset")
            log_section(logger, "Resetting Network Configuration")
            logger.warning("This will reset all network configuration to defaults")
            router_apply.reset_network(self.store)
            if self.intelligence.force_evaluation() is None:
                # services were stopped and NAT flushed: bring the unchanged mode back up
                router_apply.apply_network_configuration(self.store)
            logger.info("Network configuration reset to defaults")

    # WiFi

    def wifi_scan(self, interface: Optional[str] = None) -> List[WifiNetwork]:
        return self.wifi.scan(interface)

    def wifi_status(self) -> List[WifiInterfaceStatus]:
        return self.wifi.status()

    def wifi_connect(self, ssid: str, password: str, interface: Optional[str] = None) -> Dict[str, object]:
        with self.lock:
            self._check("wifi-connect")
            log_section(logger, "Connecting to WiFi")
            result = self.wifi.connect(ssid, password, interface)
            self.intelligence.handle_wifi_connection(str(result["interface"]), ssid)
            return result

    def wifi_disconnect(self, interface: Optional[str] = None) -> None:
        with self.lock:
            self._check("wifi-disconnect")
            log_section(logger, "Disconnecting from WiFi")
            iface = self.wifi.resolve_interface(interface)
            self.wifi.disconnect(iface)
            self.intelligence.handle_wifi_disconnection(iface)

    def wifi_ap(self, ssid: str, password: str) -> str:
        with self.lock:
            self._check("wifi-ap")
            log_section(logger, "Creating WiFi Access Point")
            return self.wifi.create_ap(ssid, password)

    def wifi_repeater_start(self, ssid: str, password: str, interface: Optional[str] = None) -> str:
        with self.lock:
            self._check("wifi-repeater-start")
            log_section(logger, "Starting WiFi Repeater")
            ap_iface = self.wifi.repeater_start(ssid, password, interface)
            iface = ap_iface[: -len("_ap")]
            self.intelligence.handle_wifi_connection(iface, ssid, repeater=True)
            return ap_iface

    def wifi_repeater_stop(self, interface: Optional[str] = None) -> None:
        with self.lock:
            self._check("wifi-repeater-stop")
            log_section(logger, "Stopping WiFi Repeater")
            iface = interface or self.wifi.resolve_interface(None)
            self.wifi.repeater_stop(iface)
            self.intelligence.handle_wifi_disconnection(iface)

    def diagnostics(self, kind: str = "all") -> List[str]:
        return diagnostics.run_diagnostics(kind)

    # Routing

    def routing_start(self, ssid: Optional[str] = None, password: Optional[str] = None) -> List[str]:
        with self.lock:
            self._check("routing-start")
            log_section(logger, "Starting Dynamic Routing")
            router_apply.start_routing(ssid, password, store=self.store)
            return router_apply.routing_status_lines(self.store)

    def routing_stop(self) -> None:
        with self.lock:
            self._check("routing-stop")
            log_section(logger, "Stopping Dynamic Routing")
            router_apply.stop_routing()

    def routing_status(self) -> List[str]:
        return router_apply.routing_status_lines(self.store)

    # Firewall

    def firewall_status(self) -> List[str]:
        lines = firewall.status_lines()
        state = self.store.load()
        if state.blocked_ports:
            lines.append("Blocked ports: " + " ".join(str(p) for p in state.blocked_ports))
        return lines

    def list_forwards(self) -> List[str]:
        lines = ["Port Forwarding Rules:", "======================"]
        lines.extend(firewall.list_forward_lines() or ["No port forwarding rules configured"])
        return lines

    def _reconcile_firewall(self) -> int:
        return router_apply.apply_firewall(self.store)

    def firewall_reset(self) -> int:
        with self.lock:
            self._check("firewall")
            log_section(logger, "Resetting Firewall")
            with self.store.transaction() as state:
                state.port_forwards = []
                state.blocked_ports = []
                state.allowed_ports = []
            return self._reconcile_firewall()

    def add_port_forward(self, external_port: str, target: str) -> None:
        fwd = firewall.parse_port_forward(external_port, target)
        with self.lock:
            self._check("firewall")
            with self.store.transaction() as state:
                state.port_forwards = [f for f in state.port_forwards if f.external_port != fwd.external_port]
                state.port_forwards.append(fwd)
            self._reconcile_firewall()
            logger.info("Port forward added: %d -> %s", fwd.external_port, fwd.target)

    def remove_port_forward(self, external_port: str) -> None:
        port = firewall.parse_port(external_port)
        with self.lock:
            self._check("firewall")
            state = self.store.load()
            if not any(f.external_port == port for f in state.port_forwards):
                raise NetworkError(f"No port forwarding rule found for port {port}")
            with self.store.transaction() as state:
                state.port_forwards = [f for f in state.port_forwards if f.external_port != port]
            self._reconcile_firewall()
            logger.info("Port forward removed: %d", port)

    def block_port(self, value: str) -> None:
        port = firewall.parse_port(value)
        with self.lock:
            self._check("firewall")
            with self.store.transaction() as state:
                state.allowed_ports = [p for p in state.allowed_ports if p != port]
                if port not in state.blocked_ports:
                    state.blocked_ports.append(port)
            self._reconcile_firewall()
            logger.info("Port %d blocked", port)

    def allow_port(self, value: str) -> None:
        port = firewall.parse_port(value)
        with self.lock:
            self._check("firewall")
            with self.store.transaction() as state:
                state.blocked_ports = [p for p in state.blocked_ports if p != port]
                if port not in state.allowed_ports:
                    state.allowed_ports.append(port)
            self._reconcile_firewall()
            logger.info("Port %d allowed", port)


network_controller = NetworkController()
