"""Declarative iptables management.

A :class:`FirewallPlan` lists, for every chain it owns, the exact rules the
chain should hold (in ``iptables -S`` form) plus the chain policy. Applying a
plan reconciles the live ruleset against it with the fewest ``-D``/``-I``
operations, falling back to a flush of that single chain when the kept rules
are out of order. Chains the plan does not own are never touched.
"""

from __future__ import annotations

import ipaddress
import logging
import os
import re
import shlex
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from ..config import settings
from ..errors import CommandError, UsageError
from ..models.interfaces import InterfaceType
from ..models.network import NetworkMode, NetworkState, PortForward
from ..utils import system
from ..utils.paths import atomic_write


logger = logging.getLogger(__name__)

ChainKey = Tuple[str, str]
RuleArgs = Tuple[str, ...]

FILTER_CHAINS = ("INPUT", "FORWARD", "OUTPUT")
NAT_CHAINS = ("PREROUTING", "POSTROUTING")
ESTABLISHED = ("-m", "state", "--state", "RELATED,ESTABLISHED")
TAILSCALE_IFACE = "tailscale0"
TAILSCALE_PORT = 41641
K3S_API_PORT = 6443
TARGET_RE = re.compile(r"^(\d{1,3}(?:\.\d{1,3}){3}):(\d+)$")


def tcp(port: int) -> RuleArgs:
    return ("-p", "tcp", "-m", "tcp", "--dport", str(port))


def udp(port: int) -> RuleArgs:
    return ("-p", "udp", "-m", "udp", "--dport", str(port))


@dataclass(frozen=True)
class Rule:
    table: str
    chain: str
    args: RuleArgs

    def spec(self) -> str:
        return f"-t {self.table} -A {self.chain} " + " ".join(self.args)


@dataclass
class FirewallPlan:
    policies: Dict[ChainKey, str] = field(default_factory=dict)
    _head: Dict[ChainKey, List[RuleArgs]] = field(default_factory=dict)
    _body: Dict[ChainKey, List[RuleArgs]] = field(default_factory=dict)
    _tail: Dict[ChainKey, List[RuleArgs]] = field(default_factory=dict)

    def own(self, table: str, chain: str, policy: Optional[str] = None) -> None:
        key = (table, chain)
        for bucket in (self._head, self._body, self._tail):
            bucket.setdefault(key, [])
        if policy:
            self.policies[key] = policy

    def _add(self, bucket: Dict[ChainKey, List[RuleArgs]], table: str, chain: str, args: Sequence[str]) -> None:
        key = (table, chain)
        if key not in self._body:
            self.own(table, chain)
        rule = tuple(str(a) for a in args)
        if rule not in self.rules(table, chain):
            bucket[key].append(rule)

    def add(self, table: str, chain: str, *args: str) -> None:
        self._add(self._body, table, chain, args)

    def add_head(self, table: str, chain: str, *args: str) -> None:
        self._add(self._head, table, chain, args)

    def add_tail(self, table: str, chain: str, *args: str) -> None:
        self._add(self._tail, table, chain, args)

    def chains(self) -> List[ChainKey]:
        return list(self._body.keys())

    def rules(self, table: str, chain: str) -> List[RuleArgs]:
        key = (table, chain)
        return self._head.get(key, []) + self._body.get(key, []) + self._tail.get(key, [])

    def all_rules(self) -> List[Rule]:
        return [Rule(t, c, args) for t, c in self.chains() for args in self.rules(t, c)]

    def rule_count(self) -> int:
        return len(self.all_rules())


@dataclass
class TableState:
    policies: Dict[str, str] = field(default_factory=dict)
    rules: Dict[str, List[RuleArgs]] = field(default_factory=dict)


def parse_rules(text: str) -> TableState:
    """Parse ``iptables -S`` output."""
    state = TableState()
    for line in text.splitlines():
        parts = shlex.split(line)
        if len(parts) >= 3 and parts[0] == "-P":
            state.policies[parts[1]] = parts[2]
            state.rules.setdefault(parts[1], [])
        elif len(parts) >= 2 and parts[0] == "-N":
            state.rules.setdefault(parts[1], [])
        elif len(parts) >= 2 and parts[0] == "-A":
            state.rules.setdefault(parts[1], []).append(tuple(parts[2:]))
    return state


def diff_chain(current: List[RuleArgs], desired: List[RuleArgs]) -> List[Tuple]:
    """Operations turning ``current`` into ``desired``.

    Returns ``("-D", rule)``, ``("-I", position, rule)``, ``("-F",)`` and
    ``("-A", rule)`` tuples, to be executed in order.
    """
    if current == desired:
        return []
    remaining = Counter(desired)
    kept: List[RuleArgs] = []
    deletions: List[Tuple] = []
    for rule in current:
        if remaining[rule] > 0:
            remaining[rule] -= 1
            kept.append(rule)
        else:
            deletions.append(("-D", rule))

    kept_counts = Counter(kept)
    in_order: List[RuleArgs] = []
    budget = Counter(kept_counts)
    for rule in desired:
        if budget[rule] > 0:
            budget[rule] -= 1
            in_order.append(rule)
    if kept != in_order:
        return [("-F",)] + [("-A", rule) for rule in desired]

    ops: List[Tuple] = list(deletions)
    budget = Counter(kept_counts)
    for index, rule in enumerate(desired):
        if budget[rule] > 0:
            budget[rule] -= 1
            continue
        ops.append(("-I", index + 1, rule))
    return ops


def _iptables(table: str, *args: str) -> None:
    system.run_command(["iptables", "-t", table, *args], check=True)


def read_table(table: str) -> TableState:
    result = system.run_command(["iptables", "-t", table, "-S"], check=True)
    return parse_rules(result.stdout)


def plan_operations(plan: FirewallPlan) -> List[Tuple[str, str, Tuple]]:
    ops: List[Tuple[str, str, Tuple]] = []
    tables = sorted({t for t, _ in plan.chains()})
    for table in tables:
        live = read_table(table)
        for t, chain in plan.chains():
            if t != table:
                continue
            policy = plan.policies.get((t, chain))
            if policy and live.policies.get(chain) != policy:
                ops.append((table, chain, ("-P", policy)))
            for op in diff_chain(live.rules.get(chain, []), plan.rules(t, chain)):
                ops.append((table, chain, op))
    return ops


def _execute(table: str, chain: str, op: Tuple) -> None:
    kind = op[0]
    if kind == "-P":
        _iptables(table, "-P", chain, op[1])
    elif kind == "-F":
        _iptables(table, "-F", chain)
    elif kind == "-I":
        _iptables(table, "-I", chain, str(op[1]), *op[2])
    else:
        _iptables(table, kind, chain, *op[1])


def restore_accept_policies() -> None:
    """Open the filter chains so a failed apply cannot lock the operator out."""
    for chain in FILTER_CHAINS:
        result = system.run_command(["iptables", "-P", chain, "ACCEPT"])
        if not result.ok:
            logger.warning("Could not reset %s policy: %s", chain, result.stderr.strip())


def apply_plan(plan: FirewallPlan, save: bool = True) -> int:
    """Reconcile the live ruleset with ``plan``; returns the number of changes."""
    try:
        ops = plan_operations(plan)
        for table, chain, op in ops:
            logger.debug("iptables -t %s %s %s", table, chain, op)
            _execute(table, chain, op)
    except CommandError:
        logger.error("Firewall apply failed, restoring ACCEPT policies")
        restore_accept_policies()
        raise
    if ops:
        logger.info("Firewall reconciled: %d change(s), %d rule(s) managed", len(ops), plan.rule_count())
    else:
        logger.info("Firewall already up to date (%d rules)", plan.rule_count())
    if save:
        save_rules()
    return len(ops)


def save_rules() -> None:
    result = system.run_command(["iptables-save"])
    if not result.ok:
        logger.warning("iptables-save failed: %s", result.stderr.strip())
        return
    atomic_write(settings.iptables_rules_file, result.stdout)


def read_ssh_port() -> int:
    path = settings.sshd_config
    if os.path.exists(path):
        with open(path, "r", encoding="utf-8") as f:
            for line in f:
                parts = line.split()
                if len(parts) >= 2 and parts[0] == "Port" and parts[1].isdigit():
                    return int(parts[1])
    return settings.ssh_port


def normalise_network(cidr: str) -> str:
    return str(ipaddress.ip_network(cidr, strict=False))


def base_plan(ssh_port: Optional[int] = None) -> FirewallPlan:
    plan = FirewallPlan()
    plan.own("filter", "INPUT", "DROP")
    plan.own("filter", "FORWARD", "DROP")
    plan.own("filter", "OUTPUT", "ACCEPT")
    plan.own("nat", "PREROUTING")
    plan.own("nat", "POSTROUTING")

    plan.add("filter", "INPUT", "-i", "lo", "-j", "ACCEPT")
    plan.add("filter", "OUTPUT", "-o", "lo", "-j", "ACCEPT")
    plan.add("filter", "INPUT", *ESTABLISHED, "-j", "ACCEPT")
    plan.add("filter", "FORWARD", *ESTABLISHED, "-j", "ACCEPT")

    plan.add("filter", "INPUT", *tcp(ssh_port or read_ssh_port()), "-j", "ACCEPT")
    for port in (80, 443, 53):
        plan.add("filter", "INPUT", *tcp(port), "-j", "ACCEPT")
    for port in (53, 67, 68):
        plan.add("filter", "INPUT", *udp(port), "-j", "ACCEPT")

    plan.add("filter", "INPUT", *udp(TAILSCALE_PORT), "-j", "ACCEPT")
    plan.add("filter", "INPUT", "-i", TAILSCALE_IFACE, "-j", "ACCEPT")
    plan.add("filter", "FORWARD", "-i", TAILSCALE_IFACE, "-j", "ACCEPT")
    plan.add("filter", "FORWARD", "-o", TAILSCALE_IFACE, "-j", "ACCEPT")
    plan.add("filter", "INPUT", *tcp(K3S_API_PORT), "-j", "ACCEPT")
    return plan


def add_internet_sharing(
    plan: FirewallPlan,
    wan: str,
    lans: Iterable[str],
    types: Optional[Dict[str, InterfaceType]] = None,
) -> None:
    types = types or {}
    lan_list = [lan for lan in lans if lan and lan != wan]
    plan.add("nat", "POSTROUTING", "-o", wan, "-j", "MASQUERADE")
    for lan in lan_list:
        # Tailscale routes for itself
        if types.get(lan) == InterfaceType.TAILSCALE:
            continue
        plan.add("filter", "FORWARD", "-i", lan, "-o", wan, "-j", "ACCEPT")
        plan.add("filter", "FORWARD", "-i", wan, "-o", lan, *ESTABLISHED, "-j", "ACCEPT")
    for lan1 in lan_list:
        for lan2 in lan_list:
            if lan1 != lan2:
                plan.add("filter", "FORWARD", "-i", lan1, "-o", lan2, "-j", "ACCEPT")
    for lan in lan_list:
        if types.get(lan) != InterfaceType.TAILSCALE:
            plan.add("filter", "INPUT", "-i", lan, "-j", "ACCEPT")


def add_local_only(plan: FirewallPlan, lan_network: str, lans: Iterable[str]) -> None:
    network = normalise_network(lan_network)
    for lan in lans:
        plan.add("filter", "INPUT", "-i", lan, "-j", "ACCEPT")
    plan.add("filter", "OUTPUT", "-d", "127.0.0.0/8", "-j", "ACCEPT")
    plan.add("filter", "OUTPUT", "-d", network, "-j", "ACCEPT")
    plan.add("filter", "OUTPUT", *udp(53), "-j", "ACCEPT")
    plan.add("filter", "OUTPUT", *udp(67), "-j", "ACCEPT")
    plan.add("filter", "FORWARD", "-d", network, "-j", "ACCEPT")
    # "-d 0.0.0.0/0" is printed without the address by iptables -S
    plan.add_tail("filter", "OUTPUT", "-j", "DROP")
    plan.add_tail("filter", "FORWARD", "-j", "DROP")


def add_operator_rules(plan: FirewallPlan, state: NetworkState) -> None:
    for fwd in state.port_forwards:
        plan.add("nat", "PREROUTING", *tcp(fwd.external_port), "-j", "DNAT", "--to-destination", fwd.target)
        plan.add("filter", "FORWARD", "-d", f"{fwd.target_ip}/32", *tcp(fwd.target_port), "-j", "ACCEPT")
        plan.add("filter", "INPUT", *tcp(fwd.external_port), "-j", "ACCEPT")
    for port in state.allowed_ports:
        plan.add("filter", "INPUT", *tcp(port), "-j", "ACCEPT")
        plan.add("filter", "INPUT", *udp(port), "-j", "ACCEPT")
    for port in state.blocked_ports:
        plan.add_head("filter", "INPUT", *tcp(port), "-j", "DROP")
        plan.add_head("filter", "INPUT", *udp(port), "-j", "DROP")


def build_plan(
    state: NetworkState,
    lans: Optional[List[str]] = None,
    types: Optional[Dict[str, InterfaceType]] = None,
    ssh_port: Optional[int] = None,
) -> FirewallPlan:
    """Desired ruleset for the stored mode, roles and operator rules."""
    plan = base_plan(ssh_port)
    lan_list = list(lans if lans is not None else state.lan_interfaces)
    if state.mode == NetworkMode.LOCAL_ONLY:
        add_local_only(plan, state.configuration.lan_network, lan_list)
    elif state.mode in (NetworkMode.INTERNET_SHARING, NetworkMode.MIXED_MODE) and state.wan_primary:
        add_internet_sharing(plan, state.wan_primary, lan_list, types)
    add_operator_rules(plan, state)
    return plan


def set_ip_forwarding(enabled: bool, persist: bool = True) -> None:
    value = "1" if enabled else "0"
    logger.info("%s IP forwarding", "Enabling" if enabled else "Disabling")
    system.run_command(["sysctl", "-w", f"net.ipv4.ip_forward={value}"], check=True)
    if not persist:
        return
    path = settings.sysctl_conf
    lines: List[str] = []
    if os.path.exists(path):
        with open(path, "r", encoding="utf-8") as f:
            lines = f.read().splitlines()
    kept = [ln for ln in lines if ln.replace(" ", "") not in ("net.ipv4.ip_forward=1", "net.ipv4.ip_forward=0")]
    if enabled:
        kept.append("net.ipv4.ip_forward=1")
    if kept != lines:
        atomic_write(path, "\n".join(kept) + "\n")


def ip_forwarding_enabled() -> bool:
    result = system.run_command(["sysctl", "-n", "net.ipv4.ip_forward"])
    return result.ok and result.stdout.strip() == "1"


def clear_nat_rules() -> None:
    logger.info("Clearing NAT rules")
    for args in (["-t", "nat", "-F", "POSTROUTING"], ["-F", "FORWARD"]):
        result = system.run_command(["iptables", *args])
        if not result.ok:
            logger.debug("iptables %s ignored: %s", " ".join(args), result.stderr.strip())


def parse_port(value: str) -> int:
    try:
        port = int(str(value))
    except ValueError:
        raise UsageError(f"Invalid port number: {value}")
    if port < 1 or port > 65535:
        raise UsageError(f"Invalid port number: {value}")
    return port


def parse_port_forward(external_port: str, target: str) -> PortForward:
    port = parse_port(external_port)
    m = TARGET_RE.match(target or "")
    if not m:
        raise UsageError("Invalid target format. Use IP:PORT (e.g., 192.168.120.100:80)")
    try:
        ipaddress.ip_address(m.group(1))
    except ValueError:
        raise UsageError(f"Invalid target address: {m.group(1)}")
    return PortForward(external_port=port, target_ip=m.group(1), target_port=parse_port(m.group(2)))


def status_lines() -> List[str]:
    filt = read_table("filter")
    nat = read_table("nat")
    total = sum(len(v) for v in filt.rules.values())
    lines = ["Firewall Status:", "================", f"Active iptables rules: {total}", ""]

    def show(title: str, table: TableState, chain: str) -> None:
        lines.append(f"{title} (policy {table.policies.get(chain, '-')}):")
        rules = table.rules.get(chain, [])
        for i, rule in enumerate(rules[:10], start=1):
            lines.append(f"  {i:>3}  {' '.join(rule)}")
        if not rules:
            lines.append("  (none)")
        lines.append("")

    show("NAT Rules (POSTROUTING)", nat, "POSTROUTING")
    show("Forward Rules", filt, "FORWARD")
    show("Input Rules", filt, "INPUT")
    lines.append("Port Forwarding Rules:")
    lines.extend(list_forward_lines(nat) or ["  No port forwarding rules configured"])
    lines.append("")
    lines.append("IP Forwarding: " + ("enabled" if ip_forwarding_enabled() else "disabled"))
    lines.append("")
    lines.append("Common Ports Status:")
    accepted = filt.rules.get("INPUT", [])
    for port, name in ((read_ssh_port(), "SSH"), (80, "HTTP"), (443, "HTTPS"), (53, "DNS"), (67, "DHCP")):
        allowed = any(str(port) in rule and "ACCEPT" in rule for rule in accepted)
        lines.append(f"  Port {port} ({name}): " + ("Allowed" if allowed else "Not explicitly allowed"))
    return lines


def list_forward_lines(nat: Optional[TableState] = None) -> List[str]:
    nat = nat or read_table("nat")
    out: List[str] = []
    for i, rule in enumerate(nat.rules.get("PREROUTING", []), start=1):
        if "DNAT" not in rule:
            continue
        port = rule[rule.index("--dport") + 1] if "--dport" in rule else "?"
        target = rule[rule.index("--to-destination") + 1] if "--to-destination" in rule else "?"
        out.append(f"  {i:<4}  {port:<13}  ->  {target}")
    return out
