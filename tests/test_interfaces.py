import os

import pytest

from dangerprep_net.errors import InterfaceNotFoundError, MissingPrerequisiteError
from dangerprep_net.models.interfaces import InterfaceRecord, InterfaceType, LinkState
from dangerprep_net.services.interface_manager import (
    capabilities_from_modes,
    interface_manager,
    parse_iw_dev_interfaces,
    parse_supported_modes,
)
from dangerprep_net.utils.paths import interfaces_conf_path


IW_DEV = """phy#0
\tInterface wlan0
\t\tifindex 3
\t\twdev 0x1
\t\taddr dc:a6:32:00:00:01
\t\ttype managed
\t\twiphy 0
phy#1
\tInterface wlan1
\t\tifindex 5
\t\twiphy 1
"""

PHY_INFO = """Wiphy phy0
\tmax # scan SSIDs: 10
\tSupported interface modes:
\t\t * IBSS
\t\t * managed
\t\t * AP
\t\t * monitor
\t\t * mesh point
\tBand 1:
\t\tCapabilities: 0x1062
"""


def test_parse_iw_dev_interfaces():
    assert parse_iw_dev_interfaces(IW_DEV) == ["wlan0", "wlan1"]


def test_supported_modes_map_to_capabilities():
    modes = parse_supported_modes(PHY_INFO)
    assert modes == ["IBSS", "managed", "AP", "monitor", "mesh point"]
    assert capabilities_from_modes(modes) == ["ap", "monitor", "mesh"]


def test_conf_line_keeps_capability_list():
    line = 'WIFI_wlan0="type=wifi,mac=dc:a6:32:00:00:01,state=UP,driver=brcmfmac,capabilities=ap,monitor"'
    record = InterfaceRecord.from_conf_line(line)
    assert record.name == "wlan0"
    assert record.type == InterfaceType.WIFI
    assert record.driver == "brcmfmac"
    assert record.capabilities == ["ap", "monitor"]
    assert record.to_conf_line() == line


def test_conf_line_ignores_foreign_lines():
    assert InterfaceRecord.from_conf_line("# comment") is None
    assert InterfaceRecord.from_conf_line("BRIDGE_br0=\"type=bridge\"") is None


def test_operstate_normalisation():
    assert LinkState.from_operstate("up") == LinkState.UP
    assert LinkState.from_operstate("LOWERLAYERDOWN") == LinkState.UNKNOWN
    assert LinkState.from_operstate(None) == LinkState.UNKNOWN


def test_enumerate_writes_inventory(env):
    env.add_interface("eth0", driver="r8169")
    env.add_interface("wlan0", wireless=True, driver="brcmfmac")
    env.add_interface("tailscale0")
    env.add_interface("docker0")
    env.fake.on_json("ip", "-j", "addr", "show", data=[
        {"ifname": "lo", "operstate": "UNKNOWN"},
        {"ifname": "eth0", "operstate": "UP", "address": "aa:bb:cc:00:00:01"},
        {"ifname": "wlan0", "operstate": "DOWN", "address": "aa:bb:cc:00:00:02"},
        {"ifname": "docker0", "operstate": "DOWN"},
        {"ifname": "tailscale0", "operstate": "UNKNOWN",
         "addr_info": [{"family": "inet", "local": "100.64.0.5", "prefixlen": 32}]},
    ])
    env.fake.on("iw", "dev", "wlan0", "info", stdout="Interface wlan0\n\twiphy 0\n")
    env.fake.on("iw", "phy", "phy0", "info", stdout=PHY_INFO)

    records = interface_manager.enumerate_interfaces()

    assert [r.name for r in records] == ["eth0", "wlan0", "tailscale0"]
    with open(interfaces_conf_path(), encoding="utf-8") as f:
        text = f.read()
    assert text.startswith("# DangerPrep Interface Configuration\n")
    assert 'WIFI_wlan0="type=wifi,mac=aa:bb:cc:00:00:02,state=DOWN,driver=brcmfmac,capabilities=ap,monitor,mesh"' in text
    assert 'TAILSCALE_tailscale0="type=tailscale,ip=100.64.0.5/32,state=UNKNOWN"' in text
    assert "docker0" not in text

    loaded = interface_manager.load_interfaces()
    assert [(r.name, r.type) for r in loaded] == [
        ("eth0", InterfaceType.ETHERNET),
        ("wlan0", InterfaceType.WIFI),
        ("tailscale0", InterfaceType.TAILSCALE),
    ]


def test_load_without_inventory_is_missing_prerequisite(env):
    assert not os.path.exists(interfaces_conf_path())
    with pytest.raises(MissingPrerequisiteError):
        interface_manager.load_interfaces()


def test_get_interface_unknown_name(env):
    env.write_inventory('ETHERNET_eth0="type=ethernet,mac=,state=UP,speed=1000Mbps"')
    assert interface_manager.get_interface("eth0").speed == "1000Mbps"
    with pytest.raises(InterfaceNotFoundError):
        interface_manager.get_interface("eth9")
    assert interface_manager.interface_type("eth9") is None


def test_validate_interface_checks_sysfs(env):
    env.add_interface("eth0")
    interface_manager.validate_interface("eth0")
    with pytest.raises(InterfaceNotFoundError):
        interface_manager.validate_interface("eth1")
    with pytest.raises(InterfaceNotFoundError):
        interface_manager.validate_interface("")
