from __future__ import annotations

import logging
import os
import time
from typing import Callable, Dict, List

import dns.exception
import dns.resolver
import dns.reversename
import psutil
import requests

from ..config import settings
from ..errors import UsageError
from ..utils import system
from . import connectivity
from .interface_manager import interface_manager


logger = logging.getLogger(__name__)

INTERNET_HOSTS = ("8.8.8.8", "1.1.1.1", "9.9.9.9")
DNS_TEST_DOMAINS = ("google.com", "cloudflare.com", "github.com")
REVERSE_TEST_ADDRESS = "8.8.8.8"
SPEED_TEST_URL = "http://speedtest.ftp.otenet.gr/files/test1Mb.db"
SPEED_TEST_TIMEOUT = 10
COMMON_PORTS = ((22, "SSH"), (53, "DNS"), (80, "HTTP"), (443, "HTTPS"), (67, "DHCP"))

OK = "✓"
FAIL = "✗"


def check_connectivity() -> List[str]:
    logger.info("Testing network connectivity...")
    lines = ["Local Network:"]
    gateway = connectivity.default_gateway()
    if gateway:
        reachable = connectivity.ping(gateway, count=3, wait=2)
        lines.append(f"  Gateway ({gateway}): " + (f"{OK} Reachable" if reachable else f"{FAIL} Unreachable"))
    else:
        lines.append(f"  Gateway: {FAIL} No default gateway found")

    lines.extend(["", "Internet Connectivity:"])
    reachable_count = 0
    for host in INTERNET_HOSTS:
        if connectivity.ping(host, count=2, wait=2):
            reachable_count += 1
            lines.append(f"  {host}: {OK} Reachable")
        else:
            lines.append(f"  {host}: {FAIL} Unreachable")
    if reachable_count:
        lines.append(f"Internet connectivity: {reachable_count}/{len(INTERNET_HOSTS)} hosts reachable")
    else:
        lines.append("No internet connectivity detected")
    return lines


def check_interfaces() -> List[str]:
    logger.info("Network interface diagnostics...")
    lines = ["Interface Status:"]
    for entry in system.run_json(["ip", "-j", "addr", "show"]):
        name = entry.get("ifname")
        state = entry.get("operstate", "UNKNOWN")
        lines.append(f"  {name}: {state}")
        addrs = [f"{a.get('local')}/{a.get('prefixlen')}" for a in entry.get("addr_info", []) if a.get("local")]
        if state == "UP" and addrs:
            lines.append(f"    Addresses: {' '.join(addrs)}")

    lines.extend(["", "Interface Statistics:"])
    counters = psutil.net_io_counters(pernic=True)
    for name in sorted(counters):
        if name == "lo":
            continue
        c = counters[name]
        lines.append(f"  {name}: RX {c.bytes_recv // (1024 * 1024)}MB, TX {c.bytes_sent // (1024 * 1024)}MB")
    return lines


def check_routes() -> List[str]:
    logger.info("Routing diagnostics...")
    lines = ["Routing Table:"]
    routes = system.run_command(["ip", "route", "show"]).stdout.splitlines()
    lines.extend(f"  {r}" for r in routes[:10])
    lines.extend(["", "Default Gateway:"])
    defaults = [r for r in routes if r.startswith("default")]
    if defaults:
        lines.extend(f"  {r}" for r in defaults)
    else:
        lines.append("  No default gateway configured")
    lines.extend(["", "ARP Table (recent):"])
    neigh = system.run_command(["ip", "neigh", "show"]).stdout.splitlines()
    if neigh:
        lines.extend(f"  {n}" for n in neigh[:10])
    else:
        lines.append("  No ARP entries")
    return lines


def _nameservers() -> List[str]:
    servers: List[str] = []
    if os.path.exists(settings.resolv_conf):
        with open(settings.resolv_conf, "r", encoding="utf-8") as f:
            for line in f:
                parts = line.split()
                if len(parts) >= 2 and parts[0] == "nameserver":
                    servers.append(parts[1])
    return servers


def check_dns() -> List[str]:
    logger.info("DNS diagnostics...")
    lines = ["DNS Configuration:"]
    lines.extend(f"  nameserver {s}" for s in _nameservers()[:3])

    resolver = dns.resolver.Resolver()
    resolver.lifetime = 5.0
    lines.extend(["", "DNS Resolution Test:"])
    for domain in DNS_TEST_DOMAINS:
        try:
            resolver.resolve(domain, "A")
            lines.append(f"  {domain}: {OK} Resolves")
        except dns.exception.DNSException as exc:
            logger.debug("Lookup of %s failed: %s", domain, exc)
            lines.append(f"  {domain}: {FAIL} Failed to resolve")

    lines.extend(["", "Reverse DNS Test:"])
    try:
        resolver.resolve(dns.reversename.from_address(REVERSE_TEST_ADDRESS), "PTR")
        lines.append(f"  {REVERSE_TEST_ADDRESS}: {OK} Reverse lookup works")
    except dns.exception.DNSException as exc:
        logger.debug("Reverse lookup failed: %s", exc)
        lines.append(f"  {REVERSE_TEST_ADDRESS}: {FAIL} Reverse lookup failed")
    return lines


def check_ports() -> List[str]:
    logger.info("Port diagnostics...")
    try:
        conns = psutil.net_connections(kind="inet")
    except (psutil.AccessDenied, OSError) as exc:
        return [f"Listening Ports: unavailable ({exc})"]
    listening = sorted({c.laddr.port for c in conns if c.laddr and (c.status == psutil.CONN_LISTEN or not c.raddr)})
    lines = ["Listening Ports:", "  " + (" ".join(str(p) for p in listening[:15]) or "none")]
    lines.extend(["", "Common Service Ports:"])
    for port, name in COMMON_PORTS:
        mark = f"{OK} Listening" if port in listening else f"{FAIL} Not listening"
        lines.append(f"  {name} ({port}): {mark}")
    return lines


def check_wifi() -> List[str]:
    logger.info("WiFi diagnostics...")
    names = interface_manager.wifi_interfaces()
    if not names:
        return ["No WiFi interfaces found"]
    lines: List[str] = []
    for name in names:
        lines.append(f"WiFi Interface: {name}")
        lines.append("  Status: " + ("UP" if connectivity.link_is_up(name) else "DOWN"))
        link = system.run_command(["iw", "dev", name, "link"])
        if "Connected" in link.stdout:
            lines.append("  Connection: Connected")
            lines.extend(f"  {ln.strip()}" for ln in link.stdout.splitlines() if "SSID" in ln)
        else:
            lines.append("  Connection: Not connected")
        lines.append("")
    return lines


def check_speed() -> List[str]:
    logger.info("Basic network speed test...")
    lines = ["Testing download speed (basic)..."]
    start = time.monotonic()
    try:
        resp = requests.get(SPEED_TEST_URL, timeout=SPEED_TEST_TIMEOUT)
        resp.raise_for_status()
    except requests.RequestException as exc:
        logger.debug("Speed test failed: %s", exc)
        lines.append("  Speed test failed - no internet connectivity")
        return lines
    duration = max(time.monotonic() - start, 0.001)
    megabytes = len(resp.content) / (1024 * 1024)
    lines.append(f"  Approximate speed: {megabytes / duration:.2f} MB/s")
    return lines


CHECKS: Dict[str, Callable[[], List[str]]] = {
    "connectivity": check_connectivity,
    "interfaces": check_interfaces,
    "routes": check_routes,
    "dns": check_dns,
    "ports": check_ports,
    "wifi": check_wifi,
    "speed": check_speed,
}


def run_diagnostics(kind: str = "all") -> List[str]:
    if kind == "all":
        lines = ["DangerPrep Network Diagnostics", ""]
        for check in CHECKS.values():
            lines.extend(check())
            lines.append("")
        lines.append("Network diagnostics completed")
        return lines
    check = CHECKS.get(kind)
    if check is None:
        raise UsageError(f"Unknown diagnostic type: {kind} (use: all, {', '.join(CHECKS)})")
    return check()
