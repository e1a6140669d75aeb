from __future__ import annotations

import json
import logging
import os
from contextlib import contextmanager
from typing import Iterator, Optional

from pydantic import ValidationError

from ..models.network import (
    ConnectivityStatus,
    NetworkMode,
    NetworkState,
    Role,
    now_iso,
)
from ..utils.lock import NetworkLock, network_lock
from ..utils.paths import atomic_write, network_state_path, wan_conf_path


logger = logging.getLogger(__name__)


class NetworkStateStore:
    """JSON-backed network state, shared by the CLI, the API and the evaluator."""

    def __init__(self, path: Optional[str] = None, lock: Optional[NetworkLock] = None) -> None:
        self._path = path
        self._lock = lock or network_lock

    @property
    def path(self) -> str:
        return self._path or network_state_path()

    @property
    def lock(self) -> NetworkLock:
        return self._lock

    def _read(self) -> Optional[NetworkState]:
        if not os.path.exists(self.path):
            return None
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                return NetworkState.model_validate(json.load(f))
        except (OSError, ValueError, ValidationError) as exc:
            logger.warning("Invalid network state file %s (%s), using defaults", self.path, exc)
            return None

    def load(self) -> NetworkState:
        # read-only: a missing file means defaults until the next save
        state = self._read()
        return NetworkState() if state is None else state

    def save(self, state: NetworkState, touch: bool = True) -> None:
        if touch:
            state.last_update = now_iso()
        atomic_write(self.path, state.model_dump_json(indent=2) + "\n")
        self._sync_legacy_wan(state)

    def reset_to_defaults(self) -> NetworkState:
        state = NetworkState()
        with self._lock:
            atomic_write(self.path, state.model_dump_json(indent=2) + "\n")
            self._sync_legacy_wan(state)
        logger.info("Default network state created")
        return state

    @contextmanager
    def transaction(self, touch: bool = True) -> Iterator[NetworkState]:
        with self._lock:
            state = self.load()
            yield state
            self.save(state, touch=touch)

    def _sync_legacy_wan(self, state: NetworkState) -> None:
        path = wan_conf_path()
        if state.wan_primary:
            current = None
            if os.path.exists(path):
                with open(path, "r", encoding="utf-8") as f:
                    current = f.read().strip()
            if current != state.wan_primary:
                atomic_write(path, state.wan_primary + "\n")
        elif os.path.exists(path):
            os.remove(path)

    # Convenience accessors used by the controller and the API

    def get_mode(self) -> NetworkMode:
        return self.load().mode

    def set_mode(self, mode: NetworkMode) -> None:
        with self.transaction() as state:
            state.mode = mode
        logger.info("Network mode set to: %s", mode.value)

    def is_auto_mode(self) -> bool:
        return self.load().auto_mode

    def set_auto_mode(self, enabled: bool) -> None:
        with self.transaction() as state:
            state.auto_mode = enabled
        logger.info("Auto mode set to: %s", "true" if enabled else "false")

    def set_role(self, interface: str, role: Role) -> None:
        with self.transaction() as state:
            state.assign_role(interface, role)
        logger.info("Interface %s role set to: %s", interface, role.value)

    def clear_role(self, interface: str) -> None:
        with self.transaction() as state:
            state.clear_role(interface)
        logger.debug("Interface %s cleared from all roles", interface)

    def clear_wan(self) -> None:
        with self.transaction() as state:
            state.clear_wan()
        logger.info("All WAN designations cleared")

    def add_lan_interface(self, interface: str) -> None:
        with self.transaction() as state:
            if state.role_of(interface) != Role.LAN:
                state.assign_role(interface, Role.LAN)

    def update_connectivity(self, interface: str, status: ConnectivityStatus) -> None:
        with self.transaction() as state:
            state.connectivity_status[interface] = status
        logger.debug("Updated connectivity for %s: internet=%s", interface, status.has_internet)

    def mark_evaluation(self, when: Optional[str] = None) -> None:
        with self.transaction(touch=False) as state:
            state.last_evaluation = when


network_state_store = NetworkStateStore()
