import json
import os
from typing import Callable, Dict, List, Optional, Tuple, Union

import pytest

from dangerprep_net.config import settings
from dangerprep_net.errors import CommandError
from dangerprep_net.utils import system
from dangerprep_net.utils.system import CommandResult


FILTER_CHAINS = ("INPUT", "FORWARD", "OUTPUT")
NAT_CHAINS = ("PREROUTING", "INPUT", "OUTPUT", "POSTROUTING")


class FakeIptables:
    """In-memory iptables understanding -S, -P, -F, -A, -I and -D."""

    def __init__(self) -> None:
        self.policies: Dict[str, Dict[str, str]] = {
            "filter": {c: "ACCEPT" for c in FILTER_CHAINS},
            "nat": {c: "ACCEPT" for c in NAT_CHAINS},
        }
        self.rules: Dict[str, Dict[str, List[Tuple[str, ...]]]] = {
            "filter": {c: [] for c in FILTER_CHAINS},
            "nat": {c: [] for c in NAT_CHAINS},
        }
        self.mutations: List[List[str]] = []
        self.fail_on: Optional[str] = None

    def dump(self, table: str) -> str:
        lines = [f"-P {chain} {policy}" for chain, policy in self.policies[table].items()]
        for chain, rules in self.rules[table].items():
            lines.extend(f"-A {chain} " + " ".join(rule) for rule in rules)
        return "\n".join(lines) + "\n"

    def save(self) -> str:
        return "".join(f"*{t}\n{self.dump(t)}COMMIT\n" for t in ("filter", "nat"))

    def handle(self, argv: List[str]) -> CommandResult:
        args = argv[1:]
        table = "filter"
        if args[:1] == ["-t"]:
            table, args = args[1], args[2:]
        op = args[0]
        if op == "-S":
            return CommandResult(argv, 0, self.dump(table), "")
        self.mutations.append(argv)
        if self.fail_on and self.fail_on in " ".join(argv):
            return CommandResult(argv, 1, "", "iptables: simulated failure")
        chains = self.rules[table]
        if op == "-P":
            self.policies[table][args[1]] = args[2]
        elif op == "-F":
            for chain in ([args[1]] if len(args) > 1 else list(chains)):
                chains[chain] = []
        elif op == "-A":
            chains.setdefault(args[1], []).append(tuple(args[2:]))
        elif op == "-I":
            chains.setdefault(args[1], []).insert(int(args[2]) - 1, tuple(args[3:]))
        elif op == "-D":
            rule = tuple(args[2:])
            if rule not in chains.get(args[1], []):
                return CommandResult(argv, 1, "", "iptables: Bad rule")
            chains[args[1]].remove(rule)
        return CommandResult(argv, 0, "", "")


Response = Union[CommandResult, Callable[[List[str]], CommandResult]]


class FakeSystem:
    """Scripted replacement for ``system.run_command``.

    Responses are registered by argv prefix; the longest matching prefix wins.
    Unscripted commands succeed with empty output.
    """

    def __init__(self) -> None:
        self.calls: List[List[str]] = []
        self.responses: Dict[Tuple[str, ...], Response] = {}
        self.iptables = FakeIptables()

    def on(self, *prefix: str, stdout: str = "", returncode: int = 0, stderr: str = "") -> None:
        self.responses[tuple(prefix)] = CommandResult(list(prefix), returncode, stdout, stderr)

    def on_json(self, *prefix: str, data) -> None:
        self.on(*prefix, stdout=json.dumps(data))

    def on_call(self, *prefix: str, fn: Callable[[List[str]], CommandResult]) -> None:
        self.responses[tuple(prefix)] = fn

    def __call__(self, cmd, check: bool = False, timeout=None) -> CommandResult:
        argv = [str(c) for c in cmd]
        self.calls.append(argv)
        if argv[0] == "iptables":
            result = self.iptables.handle(argv)
        elif argv[0] == "iptables-save":
            result = CommandResult(argv, 0, self.iptables.save(), "")
        else:
            result = CommandResult(argv, 0, "", "")
            best = -1
            for prefix, response in self.responses.items():
                if tuple(argv[: len(prefix)]) == prefix and len(prefix) > best:
                    best = len(prefix)
                    result = response(argv) if callable(response) else CommandResult(
                        argv, response.returncode, response.stdout, response.stderr
                    )
        if check and not result.ok:
            raise CommandError(argv, result.returncode, result.stderr)
        return result

    def ran(self, *prefix: str) -> List[List[str]]:
        return [c for c in self.calls if tuple(c[: len(prefix)]) == prefix]


class Env:
    def __init__(self, root, fake: FakeSystem) -> None:
        self.root = root
        self.fake = fake

    @property
    def sysfs(self) -> str:
        return settings.sysfs_net_dir

    def add_interface(self, name: str, wireless: bool = False, driver: Optional[str] = None) -> None:
        path = os.path.join(self.sysfs, name)
        os.makedirs(path, exist_ok=True)
        if wireless:
            os.makedirs(os.path.join(path, "wireless"), exist_ok=True)
        if driver:
            drivers = self.root / "drivers" / driver
            drivers.mkdir(parents=True, exist_ok=True)
            os.makedirs(os.path.join(path, "device"), exist_ok=True)
            os.symlink(str(drivers), os.path.join(path, "device", "driver"))

    def write_inventory(self, *lines: str) -> None:
        path = os.path.join(settings.config_dir, "interfaces.conf")
        os.makedirs(settings.config_dir, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            f.write("# DangerPrep Interface Configuration\n\n" + "\n".join(lines) + "\n")

    def link_up(self, name: str, ip: Optional[str] = None, gateway: Optional[str] = None) -> None:
        self.fake.on_json("ip", "-j", "link", "show", "dev", name, data=[{"ifname": name, "operstate": "UP"}])
        addr = [{"family": "inet", "local": ip, "prefixlen": 24}] if ip else []
        self.fake.on_json("ip", "-j", "addr", "show", "dev", name, data=[{"ifname": name, "addr_info": addr}])
        routes = [{"dst": "default", "gateway": gateway, "dev": name}] if gateway else []
        self.fake.on_json("ip", "-j", "route", "show", "default", "dev", name, data=routes)

    def kernel_links(self, *names: str) -> None:
        self.fake.on_json("ip", "-j", "link", "show", data=[{"ifname": "lo"}] + [{"ifname": n} for n in names])


@pytest.fixture
def fake_system(monkeypatch) -> FakeSystem:
    fake = FakeSystem()
    monkeypatch.setattr(system, "run_command", fake)
    monkeypatch.setattr(system, "is_root", lambda: True)
    return fake


@pytest.fixture
def env(tmp_path, monkeypatch, fake_system) -> Env:
    paths = {
        "config_dir": tmp_path / "etc" / "dangerprep",
        "state_dir": tmp_path / "var" / "lib" / "dangerprep",
        "log_dir": tmp_path / "var" / "log",
        "lock_file": tmp_path / "run" / "dangerprep-network.lock",
        "sysfs_net_dir": tmp_path / "sys" / "class" / "net",
        "dnsmasq_conf": tmp_path / "etc" / "dnsmasq.d" / "dangerprep-routing.conf",
        "iptables_rules_file": tmp_path / "etc" / "iptables" / "rules.v4",
        "sysctl_conf": tmp_path / "etc" / "sysctl.conf",
        "sshd_config": tmp_path / "etc" / "ssh" / "sshd_config",
        "hostapd_conf": tmp_path / "etc" / "hostapd" / "hostapd.conf",
        "resolv_conf": tmp_path / "etc" / "resolv.conf",
    }
    for key, value in paths.items():
        monkeypatch.setattr(settings, key, str(value))
    os.makedirs(paths["sysfs_net_dir"], exist_ok=True)
    monkeypatch.setattr(settings, "wan_wait_seconds", 0.0)
    monkeypatch.setattr(settings, "lock_timeout", 1.0)
    monkeypatch.setattr("time.sleep", lambda _s: None)
    # no hostapd and no internet unless a test says otherwise
    fake_system.on("pgrep", returncode=1)
    fake_system.on("ping", returncode=1)
    return Env(tmp_path, fake_system)
