from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends

from ..errors import MissingPrerequisiteError, UsageError
from ..models.interfaces import AssignWanRequest, InterfacesResponse, InterfaceStatus
from ..models.network import NetworkStateResponse
from ..models.wifi import WifiConnectRequest, WifiInterfaceStatus, WifiScanResponse
from ..security.auth import require_auth
from ..services.controller import network_controller
from ..services.interface_manager import interface_manager


router = APIRouter(dependencies=[Depends(require_auth)])


@router.get("/status", response_model=NetworkStateResponse)
def status() -> NetworkStateResponse:
    return NetworkStateResponse(
        state=network_controller.store.load(),
        services=network_controller.service_status(),
    )


@router.get("/interfaces", response_model=InterfacesResponse)
def list_interfaces() -> InterfacesResponse:
    state = network_controller.store.load()
    try:
        records = interface_manager.load_interfaces()
    except MissingPrerequisiteError:
        records = []
    return InterfacesResponse(
        interfaces=[
            InterfaceStatus(
                name=r.name,
                type=r.type,
                state=r.state,
                mac_address=r.mac,
                ipv4_address=interface_manager.current_ipv4(r.name),
                role=state.role_of(r.name).value,
                has_internet=state.has_internet(r.name),
            )
            for r in records
        ]
    )


@router.get("/wan")
def wan() -> dict:
    state = network_controller.store.load()
    return {
        "primary": state.wan_primary,
        "secondary": state.wan_secondary,
        "available": state.wan_available,
        "mode": state.mode.value,
    }


@router.get("/query/{field}")
def query(field: str) -> dict:
    return {"field": field, "value": network_controller.query(field)}


@router.post("/wan")
def assign_wan(req: AssignWanRequest) -> dict:
    prio = network_controller.set_wan(req.interface, req.priority)
    return {"ok": True, "interface": req.interface, "priority": prio.value}


@router.delete("/wan/{interface}")
def clear_wan(interface: str) -> dict:
    network_controller.clear_wan(interface)
    return {"ok": True}


@router.post("/mode/{mode}")
def set_mode(mode: str) -> dict:
    if mode == "auto":
        network_controller.set_auto_mode(True)
    elif mode == "manual":
        network_controller.set_auto_mode(False)
    elif mode == "local-only":
        network_controller.local_only()
    elif mode == "normal":
        network_controller.normal()
    else:
        raise UsageError(f"Unknown mode: {mode} (use: auto, manual, local-only, normal)")
    return {"ok": True, "mode": network_controller.query("mode")}


@router.post("/evaluate")
def evaluate() -> dict:
    changed = network_controller.evaluate()
    return {"ok": True, "changed": changed is not None, "mode": network_controller.query("mode")}


@router.post("/reset")
def reset() -> dict:
    network_controller.reset()
    return {"ok": True}


@router.get("/wifi/scan", response_model=WifiScanResponse)
def wifi_scan(interface: Optional[str] = None) -> WifiScanResponse:
    iface = network_controller.wifi.resolve_interface(interface)
    return WifiScanResponse(interface=iface, networks=network_controller.wifi_scan(iface))


@router.get("/wifi/status", response_model=List[WifiInterfaceStatus])
def wifi_status() -> List[WifiInterfaceStatus]:
    return network_controller.wifi_status()


@router.post("/wifi/connect")
def wifi_connect(req: WifiConnectRequest) -> dict:
    return network_controller.wifi_connect(req.ssid, req.password, req.interface)
