from __future__ import annotations

import argparse
import logging
import sys
import time
from typing import Iterable, List, Optional

from .config import settings
from .errors import NetworkError, PrivilegeError
from .utils import system
from .utils.logging import setup_logging


logger = logging.getLogger("dangerprep_net.cli")

# Commands that only read state
ROOTLESS_COMMANDS = {
    "status",
    "query",
    "diagnostics",
    "list-interfaces",
    "show-wan",
    "show-wan-details",
    "config",
    "wifi-scan",
    "wifi-status",
    "routing status",
    "firewall status",
    "firewall list-forwards",
    "help",
}


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="network-manager", description="DangerPrep network controller")
    ap.add_argument("--debug", action="store_true", help="verbose logging")
    sub = ap.add_subparsers(dest="command", metavar="COMMAND")
    sub.required = True

    sub.add_parser("status", help="show network state, connectivity and services")
    sub.add_parser("auto", help="enable automatic network management")
    sub.add_parser("manual", help="disable automatic network management")
    sub.add_parser("evaluate", help="force a network re-evaluation")
    sub.add_parser("enumerate", help="detect interfaces and write interfaces.conf")
    sub.add_parser("list-interfaces", help="list enumerated interfaces")
    sub.add_parser("show-wan", help="show the primary WAN interface")
    sub.add_parser("show-wan-details", help="show WAN roles with connectivity")
    sub.add_parser("config", help="show the WAN/LAN split")

    p = sub.add_parser("set-wan", help="designate a WAN interface")
    p.add_argument("interface")
    p.add_argument("priority", nargs="?", default="primary", help="primary, secondary or available")

    p = sub.add_parser("clear-wan", help="clear one or all WAN designations")
    p.add_argument("interface", nargs="?")

    p = sub.add_parser("wifi-scan", help="scan for WiFi networks")
    p.add_argument("interface", nargs="?")

    p = sub.add_parser("wifi-connect", help="connect to a WiFi network")
    p.add_argument("ssid")
    p.add_argument("password")
    p.add_argument("interface", nargs="?")

    p = sub.add_parser("wifi-disconnect", help="disconnect from WiFi")
    p.add_argument("interface", nargs="?")

    p = sub.add_parser("wifi-ap", help="create a WiFi access point")
    p.add_argument("ssid")
    p.add_argument("password")

    sub.add_parser("wifi-status", help="show WiFi interface status")

    p = sub.add_parser("wifi-repeater-start", help="repeat an upstream WiFi network")
    p.add_argument("ssid")
    p.add_argument("password")
    p.add_argument("interface", nargs="?")

    p = sub.add_parser("wifi-repeater-stop", help="stop WiFi repeater mode")
    p.add_argument("interface", nargs="?")

    p = sub.add_parser("diagnostics", help="run network diagnostics")
    p.add_argument("type", nargs="?", default="all")

    sub.add_parser("local-only", help="force local-only mode")
    sub.add_parser("normal", help="leave forced local-only mode")
    sub.add_parser("reset", help="reset network configuration to defaults")

    p = sub.add_parser("query", help="print one state field")
    p.add_argument("field")

    p = sub.add_parser("routing", help="start, stop or show dynamic routing")
    rsub = p.add_subparsers(dest="action", metavar="ACTION")
    rsub.required = True
    rp = rsub.add_parser("start")
    rp.add_argument("ssid", nargs="?")
    rp.add_argument("password", nargs="?")
    rsub.add_parser("stop")
    rsub.add_parser("status")

    p = sub.add_parser("firewall", help="firewall status and operator rules")
    fsub = p.add_subparsers(dest="action", metavar="ACTION")
    fsub.required = True
    fsub.add_parser("status")
    fsub.add_parser("reset")
    fp = fsub.add_parser("port-forward")
    fp.add_argument("external_port")
    fp.add_argument("target", help="IP:PORT")
    fp = fsub.add_parser("remove-port-forward")
    fp.add_argument("external_port")
    fsub.add_parser("list-forwards")
    fp = fsub.add_parser("block-port")
    fp.add_argument("port")
    fp = fsub.add_parser("allow-port")
    fp.add_argument("port")

    sub.add_parser("watch", help="evaluate periodically in the foreground")
    sub.add_parser("serve", help="run the JSON API server")
    sub.add_parser("help", help="show this help")
    return ap


def command_key(args: argparse.Namespace) -> str:
    action = getattr(args, "action", None)
    return f"{args.command} {action}" if action else args.command


def emit(lines: Iterable[str]) -> None:
    for line in lines:
        print(line)


def watch(interval: Optional[float] = None) -> None:
    from .services.intelligence import network_intelligence

    period = interval or settings.evaluation_interval
    logger.info("Watching network every %ss (Ctrl-C to stop)", period)
    try:
        while True:
            try:
                network_intelligence.evaluate()
            except NetworkError as exc:
                logger.warning("Evaluation failed: %s", exc)
            time.sleep(period)
    except KeyboardInterrupt:
        logger.info("Watch stopped")


def serve() -> None:
    import uvicorn

    uvicorn.run("dangerprep_net.main:app", host=settings.host, port=settings.port)


def dispatch(args: argparse.Namespace, parser: argparse.ArgumentParser) -> int:
    from .services.controller import network_controller as ctl

    cmd = args.command
    if cmd == "help":
        parser.print_help()
    elif cmd == "status":
        emit(ctl.status_lines())
    elif cmd == "auto":
        ctl.set_auto_mode(True)
    elif cmd == "manual":
        ctl.set_auto_mode(False)
    elif cmd == "evaluate":
        mode = ctl.evaluate()
        print(f"Network mode: {ctl.query('mode')}" + (" (changed)" if mode else ""))
    elif cmd == "enumerate":
        count = ctl.enumerate()
        print(f"Enumerated {count} interface(s)")
    elif cmd == "list-interfaces":
        emit(ctl.list_interfaces())
    elif cmd == "show-wan":
        emit(ctl.show_wan())
    elif cmd == "show-wan-details":
        emit(ctl.show_wan_details())
    elif cmd == "config":
        emit(ctl.config_lines())
    elif cmd == "set-wan":
        prio = ctl.set_wan(args.interface, args.priority)
        print(f"WAN interface {args.interface} set as {prio.value}")
    elif cmd == "clear-wan":
        ctl.clear_wan(args.interface)
        print(f"WAN designation cleared for {args.interface}" if args.interface else "All WAN designations cleared")
    elif cmd == "wifi-scan":
        networks = ctl.wifi_scan(args.interface)
        print(f"{'':2}{'SSID':<32} {'SIGNAL':>6} {'CHAN':>4}  SECURITY")
        for n in networks:
            print(f"{'*' if n.in_use else ' ':2}{n.ssid:<32} {n.signal:>6} {n.channel or '':>4}  {n.security}")
    elif cmd == "wifi-connect":
        result = ctl.wifi_connect(args.ssid, args.password, args.interface)
        print(f"Connected to {args.ssid} on {result['interface']} (IP: {result['ip'] or 'none'})")
    elif cmd == "wifi-disconnect":
        ctl.wifi_disconnect(args.interface)
    elif cmd == "wifi-ap":
        print(f"Access point ready: {ctl.wifi_ap(args.ssid, args.password)}")
    elif cmd == "wifi-status":
        emit(format_wifi_status(ctl.wifi_status()))
    elif cmd == "wifi-repeater-start":
        print(f"WiFi repeater started on {ctl.wifi_repeater_start(args.ssid, args.password, args.interface)}")
    elif cmd == "wifi-repeater-stop":
        ctl.wifi_repeater_stop(args.interface)
    elif cmd == "diagnostics":
        emit(ctl.diagnostics(args.type))
    elif cmd == "local-only":
        ctl.local_only()
        print("Local-only mode activated")
    elif cmd == "normal":
        ctl.normal()
        print(f"Network mode: {ctl.query('mode')}")
    elif cmd == "reset":
        ctl.reset()
        print("Network configuration reset to defaults")
    elif cmd == "query":
        print(ctl.query(args.field))
    elif cmd == "routing":
        return dispatch_routing(args, ctl)
    elif cmd == "firewall":
        return dispatch_firewall(args, ctl)
    elif cmd == "watch":
        watch()
    elif cmd == "serve":
        serve()
    return 0


def dispatch_routing(args: argparse.Namespace, ctl) -> int:
    if args.action == "start":
        emit(ctl.routing_start(args.ssid, args.password))
    elif args.action == "stop":
        ctl.routing_stop()
    else:
        emit(ctl.routing_status())
    return 0


def dispatch_firewall(args: argparse.Namespace, ctl) -> int:
    action = args.action
    if action == "status":
        emit(ctl.firewall_status())
    elif action == "reset":
        changes = ctl.firewall_reset()
        print(f"Firewall reset to default DangerPrep rules ({changes} change(s))")
    elif action == "port-forward":
        ctl.add_port_forward(args.external_port, args.target)
        print(f"Port forward added: {args.external_port} -> {args.target}")
    elif action == "remove-port-forward":
        ctl.remove_port_forward(args.external_port)
        print(f"Port forward removed: {args.external_port}")
    elif action == "list-forwards":
        emit(ctl.list_forwards())
    elif action == "block-port":
        ctl.block_port(args.port)
        print(f"Port {args.port} blocked")
    elif action == "allow-port":
        ctl.allow_port(args.port)
        print(f"Port {args.port} allowed")
    return 0


def format_wifi_status(statuses) -> List[str]:
    if not statuses:
        return ["No WiFi interfaces found"]
    lines = ["WiFi Status:", "============"]
    for s in statuses:
        lines.append(f"Interface: {s.name}")
        lines.append(f"  MAC: {s.mac or '-'}")
        lines.append(f"  State: {s.state}")
        lines.append(f"  IP: {s.ip or '-'}")
        if s.connection:
            lines.append(f"  Connection: {s.connection} ({'access point' if s.mode == 'ap' else 'client'})")
            lines.append(f"  SSID: {s.ssid or '-'}")
        else:
            lines.append("  Connection: none")
    return lines


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    key = command_key(args)
    if key != "help":
        setup_logging("network-manager", "DEBUG" if args.debug else None)
    try:
        if key not in ROOTLESS_COMMANDS and not system.is_root():
            raise PrivilegeError(f"'{key}' requires root privileges (run with sudo)")
        return dispatch(args, parser)
    except NetworkError as exc:
        logger.debug("%s failed", key, exc_info=True)
        print(f"[ERROR] {exc}", file=sys.stderr)
        return exc.exit_code


if __name__ == "__main__":
    sys.exit(main())
