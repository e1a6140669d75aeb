import os

from dangerprep_net.config import settings
from dangerprep_net.services import dnsmasq


def test_render_body_serves_lan():
    body = dnsmasq.render_body(["wlan0", "eth1"], "192.168.120.1")
    lines = body.splitlines()
    assert "interface=wlan0" in lines
    assert "interface=eth1" in lines
    assert "bind-interfaces" in lines
    assert "dhcp-range=192.168.120.100,192.168.120.200,12h" in lines
    assert "dhcp-option=3,192.168.120.1" in lines
    assert "server=1.1.1.1" in lines
    assert "domain=dangerprep.local" in lines


def test_write_config_only_when_changed(env):
    assert dnsmasq.write_config(["wlan0"]) is True
    assert len(env.fake.ran("systemctl", "restart", "dnsmasq")) == 1
    with open(settings.dnsmasq_conf, encoding="utf-8") as f:
        text = f.read()
    assert text.startswith(dnsmasq.HEADER + "\n# Generated on ")

    assert dnsmasq.write_config(["wlan0"]) is False
    assert len(env.fake.ran("systemctl", "restart", "dnsmasq")) == 1

    assert dnsmasq.write_config(["wlan0", "eth1"]) is True
    assert len(env.fake.ran("systemctl", "restart", "dnsmasq")) == 2


def test_remove_config(env):
    dnsmasq.write_config(["wlan0"], restart=False)
    assert env.fake.ran("systemctl") == []
    dnsmasq.remove_config()
    assert not os.path.exists(settings.dnsmasq_conf)
    # nothing to remove is fine
    dnsmasq.remove_config(restart=False)
