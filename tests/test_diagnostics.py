from collections import namedtuple

import dns.resolver
import psutil
import pytest
import requests

from dangerprep_net.errors import UsageError
from dangerprep_net.services import diagnostics


Addr = namedtuple("Addr", "ip port")
Conn = namedtuple("Conn", "laddr raddr status")


def test_unknown_type():
    with pytest.raises(UsageError, match="Unknown diagnostic type"):
        diagnostics.run_diagnostics("bogus")


def test_routes(env):
    env.fake.on("ip", "route", "show", stdout="default via 192.168.1.1 dev eth0\n192.168.1.0/24 dev eth0\n")
    lines = diagnostics.run_diagnostics("routes")
    assert "  default via 192.168.1.1 dev eth0" in lines
    assert "  No ARP entries" in lines


def test_connectivity_without_gateway(env):
    env.fake.on("ping", "-c", "2", "-W", "2", "1.1.1.1")
    lines = diagnostics.check_connectivity()
    assert lines[1].endswith("No default gateway found")
    assert "Internet connectivity: 1/3 hosts reachable" in lines


def test_dns_failures_reported(env, monkeypatch):
    def fail(self, *args, **kwargs):
        raise dns.resolver.NXDOMAIN()

    monkeypatch.setattr(dns.resolver.Resolver, "resolve", fail)
    lines = diagnostics.check_dns()
    assert any("google.com" in line and "Failed to resolve" in line for line in lines)
    assert any("Reverse lookup failed" in line for line in lines)


def test_ports(monkeypatch):
    conns = [Conn(Addr("0.0.0.0", 53), (), psutil.CONN_LISTEN), Conn(Addr("0.0.0.0", 2222), (), psutil.CONN_LISTEN)]
    monkeypatch.setattr(psutil, "net_connections", lambda kind="inet": conns)
    lines = diagnostics.check_ports()
    assert lines[1] == "  53 2222"
    assert any(line.startswith("  DNS (53)") and "Listening" in line for line in lines)


def test_speed_without_internet(monkeypatch):
    def offline(*args, **kwargs):
        raise requests.ConnectionError("offline")

    monkeypatch.setattr(requests, "get", offline)
    assert diagnostics.check_speed()[-1] == "  Speed test failed - no internet connectivity"


def test_wifi_without_interfaces(env):
    assert diagnostics.run_diagnostics("wifi") == ["No WiFi interfaces found"]
