import os

import pytest

from dangerprep_net.config import settings
from dangerprep_net.errors import CommandError, UsageError
from dangerprep_net.models.interfaces import InterfaceType
from dangerprep_net.models.network import NetworkMode, NetworkState, PortForward
from dangerprep_net.services import firewall
from dangerprep_net.services.firewall import diff_chain, parse_rules


A = ("-i", "lo", "-j", "ACCEPT")
B = ("-p", "tcp", "-m", "tcp", "--dport", "22", "-j", "ACCEPT")
C = ("-j", "DROP")
X = ("-s", "10.9.9.9/32", "-j", "ACCEPT")


def test_diff_identical_chain_is_empty():
    assert diff_chain([A, B, C], [A, B, C]) == []


def test_diff_deletes_and_inserts_in_place():
    assert diff_chain([A, X, C], [A, B, C]) == [("-D", X), ("-I", 2, B)]


def test_diff_handles_duplicates():
    assert diff_chain([A, A, B], [A, B]) == [("-D", A)]


def test_diff_reordered_chain_is_rebuilt():
    assert diff_chain([C, A], [A, C]) == [("-F",), ("-A", A), ("-A", C)]


def test_parse_rules_reads_policies_and_quoting():
    state = parse_rules(
        "-P INPUT DROP\n"
        "-N CUSTOM\n"
        '-A INPUT -m comment --comment "keep ssh" -j ACCEPT\n'
    )
    assert state.policies == {"INPUT": "DROP"}
    assert state.rules["CUSTOM"] == []
    assert state.rules["INPUT"] == [("-m", "comment", "--comment", "keep ssh", "-j", "ACCEPT")]


def test_base_plan_rules(env):
    plan = firewall.base_plan(ssh_port=2222)
    inputs = plan.rules("filter", "INPUT")
    assert inputs[0] == ("-i", "lo", "-j", "ACCEPT")
    assert firewall.tcp(2222) + ("-j", "ACCEPT") in inputs
    assert firewall.udp(firewall.TAILSCALE_PORT) + ("-j", "ACCEPT") in inputs
    assert plan.policies[("filter", "INPUT")] == "DROP"
    assert plan.policies[("filter", "OUTPUT")] == "ACCEPT"


def test_ssh_port_read_from_sshd_config(env):
    os.makedirs(os.path.dirname(settings.sshd_config), exist_ok=True)
    with open(settings.sshd_config, "w", encoding="utf-8") as f:
        f.write("# Port 22\nPort 2200\nPermitRootLogin no\n")
    assert firewall.read_ssh_port() == 2200


def test_sharing_skips_wan_and_tailscale_forwarding():
    plan = firewall.FirewallPlan()
    firewall.add_internet_sharing(
        plan, "eth0", ["eth0", "wlan0", "tailscale0"],
        {"wlan0": InterfaceType.WIFI, "tailscale0": InterfaceType.TAILSCALE},
    )
    forward = plan.rules("filter", "FORWARD")
    assert ("-i", "wlan0", "-o", "eth0", "-j", "ACCEPT") in forward
    assert ("-i", "tailscale0", "-o", "eth0", "-j", "ACCEPT") not in forward
    assert ("-i", "wlan0", "-o", "tailscale0", "-j", "ACCEPT") in forward
    assert plan.rules("nat", "POSTROUTING") == [("-o", "eth0", "-j", "MASQUERADE")]
    assert ("-i", "tailscale0", "-j", "ACCEPT") not in plan.rules("filter", "INPUT")


def test_local_only_drops_last(env):
    state = NetworkState(mode=NetworkMode.LOCAL_ONLY, blocked_ports=[8080])
    plan = firewall.build_plan(state, ["wlan0"], ssh_port=22)
    assert plan.rules("filter", "OUTPUT")[-1] == ("-j", "DROP")
    assert plan.rules("filter", "FORWARD")[-1] == ("-j", "DROP")
    assert ("-d", "192.168.120.0/22", "-j", "ACCEPT") in plan.rules("filter", "OUTPUT")
    # blocked ports come before every accept
    assert plan.rules("filter", "INPUT")[:2] == [
        firewall.tcp(8080) + ("-j", "DROP"),
        firewall.udp(8080) + ("-j", "DROP"),
    ]


def test_port_forward_rules():
    state = NetworkState(
        mode=NetworkMode.INTERNET_SHARING,
        wan_primary="eth0",
        port_forwards=[PortForward(external_port=8080, target_ip="192.168.120.50", target_port=80)],
    )
    plan = firewall.build_plan(state, ["wlan0"], ssh_port=22)
    assert firewall.tcp(8080) + ("-j", "DNAT", "--to-destination", "192.168.120.50:80") in plan.rules(
        "nat", "PREROUTING"
    )
    assert ("-d", "192.168.120.50/32") + firewall.tcp(80) + ("-j", "ACCEPT") in plan.rules("filter", "FORWARD")


def test_apply_is_idempotent(env):
    state = NetworkState(mode=NetworkMode.INTERNET_SHARING, wan_primary="eth0")
    plan = firewall.build_plan(state, ["wlan0"], ssh_port=22)
    ipt = env.fake.iptables

    assert firewall.apply_plan(plan) > 0
    assert ipt.policies["filter"]["INPUT"] == "DROP"
    assert ipt.rules["nat"]["POSTROUTING"] == [("-o", "eth0", "-j", "MASQUERADE")]
    assert list(ipt.rules["filter"]["FORWARD"]) == plan.rules("filter", "FORWARD")

    before = len(ipt.mutations)
    assert firewall.apply_plan(plan) == 0
    assert len(ipt.mutations) == before
    with open(settings.iptables_rules_file, encoding="utf-8") as f:
        assert "MASQUERADE" in f.read()


def test_apply_repairs_drift_without_flushing(env):
    plan = firewall.build_plan(NetworkState(), ["wlan0"], ssh_port=22)
    firewall.apply_plan(plan, save=False)
    ipt = env.fake.iptables
    ipt.rules["filter"]["INPUT"].remove(firewall.tcp(443) + ("-j", "ACCEPT"))
    ipt.rules["filter"]["INPUT"].insert(1, X)
    before = len(ipt.mutations)

    assert firewall.apply_plan(plan, save=False) == 2
    assert all("-F" not in m for m in ipt.mutations[before:])
    assert ipt.rules["filter"]["INPUT"] == plan.rules("filter", "INPUT")


def test_failed_apply_reopens_policies(env):
    ipt = env.fake.iptables
    ipt.fail_on = "MASQUERADE"
    state = NetworkState(mode=NetworkMode.INTERNET_SHARING, wan_primary="eth0")

    with pytest.raises(CommandError):
        firewall.apply_plan(firewall.build_plan(state, ["wlan0"], ssh_port=22))

    assert ipt.policies["filter"] == {"INPUT": "ACCEPT", "FORWARD": "ACCEPT", "OUTPUT": "ACCEPT"}


def test_ip_forwarding_persisted(env):
    os.makedirs(os.path.dirname(settings.sysctl_conf), exist_ok=True)
    with open(settings.sysctl_conf, "w", encoding="utf-8") as f:
        f.write("kernel.panic=10\nnet.ipv4.ip_forward=0\n")

    firewall.set_ip_forwarding(True)
    assert env.fake.ran("sysctl", "-w", "net.ipv4.ip_forward=1")
    with open(settings.sysctl_conf, encoding="utf-8") as f:
        assert f.read() == "kernel.panic=10\nnet.ipv4.ip_forward=1\n"

    firewall.set_ip_forwarding(False)
    with open(settings.sysctl_conf, encoding="utf-8") as f:
        assert f.read() == "kernel.panic=10\n"


@pytest.mark.parametrize("port,target", [
    ("abc", "192.168.120.5:80"),
    ("0", "192.168.120.5:80"),
    ("8080", "192.168.120.5"),
    ("8080", "192.168.120.5:70000"),
    ("8080", "999.1.1.1:80"),
])
def test_invalid_port_forward(port, target):
    with pytest.raises(UsageError):
        firewall.parse_port_forward(port, target)


def test_list_forwards_reads_dnat_rules(env):
    env.fake.iptables.rules["nat"]["PREROUTING"] = [
        firewall.tcp(8080) + ("-j", "DNAT", "--to-destination", "192.168.120.50:80"),
        ("-i", "eth0", "-j", "ACCEPT"),
    ]
    lines = firewall.list_forward_lines()
    assert len(lines) == 1
    assert "8080" in lines[0] and "192.168.120.50:80" in lines[0]


def test_plan_rules_render_as_iptables_specs():
    plan = firewall.base_plan(ssh_port=22)
    rules = plan.all_rules()
    assert rules[0].spec() == "-t filter -A INPUT -i lo -j ACCEPT"
    assert plan.rule_count() == len(rules)
    assert {(r.table, r.chain) for r in rules} == {("filter", "INPUT"), ("filter", "FORWARD"), ("filter", "OUTPUT")}
