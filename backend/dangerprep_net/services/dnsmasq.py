from __future__ import annotations

import logging
import os
from datetime import datetime
from typing import List, Optional, Sequence

from ..config import settings
from ..utils import system
from ..utils.paths import atomic_write


logger = logging.getLogger(__name__)

HEADER = "# DangerPrep Dynamic Routing Configuration"


def render_body(interfaces: Sequence[str], lan_ip: Optional[str] = None) -> str:
    gateway = lan_ip or settings.lan_ip
    lines: List[str] = ["# Bind to LAN interfaces"]
    lines.extend(f"interface={name}" for name in interfaces)
    lines.append("bind-interfaces")
    lines.extend([
        "",
        "# DHCP configuration",
        f"dhcp-range={settings.dhcp_range_start},{settings.dhcp_range_end},{settings.dhcp_lease_time}",
        f"dhcp-option=3,{gateway}",
        f"dhcp-option=6,{gateway}",
        "",
        "# DNS forwarding",
    ])
    lines.extend(f"server={server}" for server in settings.get_dns_servers())
    lines.extend([
        "cache-size=1000",
        "",
        "# Local domain",
        f"domain={settings.local_domain}",
        "expand-hosts",
        "",
        "# Logging",
        "log-queries",
        "log-dhcp",
    ])
    return "\n".join(lines) + "\n"


def _current_body(path: str) -> Optional[str]:
    if not os.path.exists(path):
        return None
    with open(path, "r", encoding="utf-8") as f:
        text = f.read()
    # Skip the header and the generation stamp
    parts = text.split("\n", 3)
    return parts[3] if len(parts) == 4 else text


def write_config(interfaces: Sequence[str], lan_ip: Optional[str] = None, restart: bool = True) -> bool:
    """Write the DHCP/DNS config for ``interfaces``; returns True when it changed."""
    path = settings.dnsmasq_conf
    body = render_body(interfaces, lan_ip)
    if _current_body(path) == body:
        logger.info("dnsmasq configuration unchanged")
        return False
    stamp = datetime.now().strftime("%a %b %d %H:%M:%S %Y")
    atomic_write(path, f"{HEADER}\n# Generated on {stamp}\n\n{body}")
    logger.info("DHCP and DNS configured for interfaces: %s", " ".join(interfaces))
    if restart:
        system.restart_service("dnsmasq")
        system.run_command(["systemctl", "enable", "dnsmasq"])
    return True


def remove_config(restart: bool = True) -> None:
    path = settings.dnsmasq_conf
    if os.path.exists(path):
        os.remove(path)
        logger.info("Removed %s", path)
    if restart:
        result = system.run_command(["systemctl", "restart", "dnsmasq"])
        if not result.ok:
            logger.debug("dnsmasq restart ignored: %s", result.stderr.strip())
