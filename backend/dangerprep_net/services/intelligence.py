"""WAN ranking and automatic network mode selection.

Every evaluation probes all kernel interfaces, ranks the ones with internet
access by interface class, records primary/secondary/available WAN roles and
derives the network mode from them. The system is only reconfigured when the
derived mode differs from the stored one.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Iterable, List, Optional, Tuple

from ..config import settings
from ..models.network import ConnectivityStatus, NetworkMode, NetworkState, now_iso
from ..utils import system
from . import connectivity, router_apply
from .interface_manager import interface_manager
from .network_state import NetworkStateStore, network_state_store


logger = logging.getLogger(__name__)

PRIORITY_ETHERNET = 100
PRIORITY_WIFI_REPEATER = 80
PRIORITY_WIFI_CLIENT = 60
PRIORITY_USB_ETHERNET = 40
PRIORITY_OTHER = 20

ETHERNET_RE = re.compile(r"^(eth|enp|eno|ens)[0-9]")
USB_ETHERNET_RE = re.compile(r"^(usb|enx)[0-9a-f]")
WIFI_RE = re.compile(r"^(wlan|wlp)[0-9]")


def hostapd_running_for(interface: str) -> bool:
    return system.run_command(["pgrep", "-f", f"hostapd.*{interface}"]).ok


def interface_priority(interface: str) -> int:
    if ETHERNET_RE.match(interface):
        return PRIORITY_ETHERNET
    if USB_ETHERNET_RE.match(interface):
        return PRIORITY_USB_ETHERNET
    if WIFI_RE.match(interface):
        if hostapd_running_for(interface):
            return PRIORITY_WIFI_REPEATER
        return PRIORITY_WIFI_CLIENT
    return PRIORITY_OTHER


def rank_wan_candidates(state: NetworkState, interfaces: Iterable[str]) -> List[Tuple[int, str]]:
    """(priority, name) for interfaces with internet, best first."""
    candidates = [(interface_priority(name), name) for name in interfaces if state.has_internet(name)]
    return sorted(candidates, key=lambda c: (-c[0], c[1]))


def assign_wan_roles(state: NetworkState, ranked: List[Tuple[int, str]]) -> bool:
    if not ranked:
        logger.info("No WAN candidates found")
        return False
    names = [name for _, name in ranked]
    state.clear_wan()
    for name in names:
        if name in state.lan_interfaces:
            state.lan_interfaces.remove(name)
    state.wan_primary = names[0]
    state.wan_secondary = names[1] if len(names) > 1 else None
    state.wan_available = names[2:]
    logger.info("WAN candidates evaluated: primary=%s, secondary=%s", state.wan_primary, state.wan_secondary or "")
    return True


def determine_mode(state: NetworkState) -> NetworkMode:
    if state.local_only_forced:
        return NetworkMode.LOCAL_ONLY
    if state.wan_primary:
        if state.wan_secondary or state.wan_available:
            return NetworkMode.MIXED_MODE
        return NetworkMode.INTERNET_SHARING
    return NetworkMode.LOCAL_ONLY


def _seconds_since(stamp: Optional[str]) -> Optional[float]:
    if not stamp:
        return None
    try:
        then = datetime.fromisoformat(stamp)
    except ValueError:
        return None
    now = datetime.now(then.tzinfo) if then.tzinfo else datetime.now()
    return (now - then).total_seconds()


class NetworkIntelligence:
    def __init__(self, store: Optional[NetworkStateStore] = None) -> None:
        self._store = store

    @property
    def store(self) -> NetworkStateStore:
        return self._store or network_state_store

    def _apply(self) -> None:
        router_apply.apply_network_configuration(self.store)

    def evaluate(self, force: bool = False) -> Optional[NetworkMode]:
        """Run one evaluation; returns the new mode when it changed."""
        with self.store.lock:
            state = self.store.load()
            if not state.auto_mode:
                logger.info("Auto mode disabled, skipping evaluation")
                return None
            age = _seconds_since(state.last_evaluation)
            if not force and age is not None and age < settings.min_evaluation_interval:
                logger.debug("Skipping evaluation, too soon since last evaluation (%.0fs)", age)
                return None

            logger.info("Evaluating network configuration...")
            self.store.mark_evaluation(now_iso())
            names = interface_manager.kernel_interfaces()
            statuses = connectivity.probe_all(names)

            with self.store.transaction() as state:
                state.connectivity_status.update(statuses)
                if not state.local_only_forced:
                    assign_wan_roles(state, rank_wan_candidates(state, names))
                optimal = determine_mode(state)
                current = state.mode
                if optimal != current:
                    logger.info("Network mode change needed: %s -> %s", current.value, optimal.value)
                    state.mode = optimal

            if optimal == current:
                logger.debug("Network mode unchanged: %s", current.value)
                return None
            self._apply()
            return optimal

    def force_evaluation(self) -> Optional[NetworkMode]:
        logger.info("Forcing network re-evaluation...")
        self.store.mark_evaluation(None)
        return self.evaluate(force=True)

    def handle_wifi_connection(self, interface: str, ssid: str, repeater: bool = False) -> Optional[NetworkMode]:
        logger.info("Handling WiFi connection: %s to %s (repeater: %s)", interface, ssid, repeater)
        status = connectivity.probe_interface(interface)
        self.store.update_connectivity(interface, status)
        if status.has_internet:
            logger.info("WiFi interface %s has internet, adding as WAN candidate", interface)
        return self.force_evaluation()

    def handle_wifi_disconnection(self, interface: str) -> Optional[NetworkMode]:
        logger.info("Handling WiFi disconnection: %s", interface)
        with self.store.transaction() as state:
            state.connectivity_status[interface] = ConnectivityStatus(has_internet=False)
            state.clear_role(interface)
        return self.force_evaluation()


network_intelligence = NetworkIntelligence()
