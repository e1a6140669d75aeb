from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import List, Optional


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Persisted configuration and state
    config_dir: str = Field("/etc/dangerprep", alias="CONFIG_DIR")
    state_dir: str = Field("/var/lib/dangerprep", alias="STATE_DIR")
    log_dir: str = Field("/var/log", alias="LOG_DIR")
    lock_file: str = Field("/var/run/dangerprep-network.lock", alias="LOCK_FILE")

    # System files the controller reads or writes
    sysfs_net_dir: str = Field("/sys/class/net", alias="SYSFS_NET_DIR")
    dnsmasq_conf: str = Field("/etc/dnsmasq.d/dangerprep-routing.conf", alias="DNSMASQ_CONF")
    iptables_rules_file: str = Field("/etc/iptables/rules.v4", alias="IPTABLES_RULES_FILE")
    sysctl_conf: str = Field("/etc/sysctl.conf", alias="SYSCTL_CONF")
    sshd_config: str = Field("/etc/ssh/sshd_config", alias="SSHD_CONFIG")
    hostapd_conf: str = Field("/etc/hostapd/hostapd.conf", alias="HOSTAPD_CONF")
    resolv_conf: str = Field("/etc/resolv.conf", alias="RESOLV_CONF")

    # LAN defaults
    lan_network: str = Field("192.168.120.0/22", alias="LAN_NETWORK")
    lan_ip: str = Field("192.168.120.1", alias="LAN_IP")
    dhcp_range_start: str = Field("192.168.120.100", alias="DHCP_RANGE_START")
    dhcp_range_end: str = Field("192.168.120.200", alias="DHCP_RANGE_END")
    dhcp_lease_time: str = Field("12h", alias="DHCP_LEASE_TIME")
    upstream_dns: List[str] = Field(default_factory=lambda: ["1.1.1.1", "8.8.8.8"], alias="UPSTREAM_DNS")
    local_domain: str = Field("dangerprep.local", alias="LOCAL_DOMAIN")
    ssh_port: int = Field(2222, alias="SSH_PORT")

    # WiFi defaults
    wifi_interface: str = Field("wlan0", alias="WIFI_INTERFACE")
    wifi_ssid: str = Field("DangerPrep", alias="WIFI_SSID")
    wifi_password: str = Field("Buff00n!", alias="WIFI_PASSWORD")

    # Connectivity probing and evaluation
    probe_hosts: List[str] = Field(
        default_factory=lambda: ["8.8.8.8", "1.1.1.1", "208.67.222.222"], alias="PROBE_HOSTS"
    )
    connectivity_timeout: int = Field(10, alias="CONNECTIVITY_TIMEOUT")
    evaluation_interval: int = Field(30, alias="EVALUATION_INTERVAL")
    min_evaluation_interval: int = Field(15, alias="MIN_EVALUATION_INTERVAL")
    wan_wait_seconds: float = Field(5.0, alias="WAN_WAIT_SECONDS")
    lock_timeout: float = Field(10.0, alias="LOCK_TIMEOUT")

    # JSON API
    host: str = Field("0.0.0.0", alias="HOST")
    port: int = Field(8080, alias="PORT")
    admin_token: str = Field("change-me-to-a-long-random-string", alias="ADMIN_TOKEN")
    secret_key: Optional[str] = Field(None, alias="SECRET_KEY")

    log_level: str = Field("INFO", alias="LOG_LEVEL")

    def get_dns_servers(self) -> List[str]:
        return [s for s in self.upstream_dns if s.strip()]


settings = Settings()
