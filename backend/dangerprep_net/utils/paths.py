from __future__ import annotations

import os
import tempfile

from ..config import settings


def _writable_dir(desired: str, fallback_name: str) -> str:
    try:
        os.makedirs(desired, exist_ok=True)
        # Try write test
        test_path = os.path.join(desired, ".wtest")
        with open(test_path, "w", encoding="utf-8") as f:
            f.write("ok")
        os.remove(test_path)
        return desired
    except OSError:
        # Fallback to home directory
        home_fallback = os.path.expanduser(os.path.join("~/.dangerprep", fallback_name))
        os.makedirs(home_fallback, exist_ok=True)
        return home_fallback


def get_config_dir() -> str:
    # state and inventory are shared with root; never redirect them per user
    return settings.config_dir


def get_state_dir() -> str:
    return settings.state_dir


def get_log_dir() -> str:
    return _writable_dir(settings.log_dir, "log")


def interfaces_conf_path() -> str:
    return os.path.join(get_config_dir(), "interfaces.conf")


def wan_conf_path() -> str:
    return os.path.join(get_config_dir(), "wan.conf")


def network_state_path() -> str:
    return os.path.join(get_state_dir(), "network-state.json")


def routing_state_path() -> str:
    return os.path.join(get_state_dir(), "routing-state")


def atomic_write(path: str, content: str, mode: int = 0o644) -> None:
    directory = os.path.dirname(path) or "."
    os.makedirs(directory, exist_ok=True)
    with tempfile.NamedTemporaryFile("w", encoding="utf-8", dir=directory, prefix=".tmp-", delete=False) as f:
        f.write(content)
        f.flush()
        os.fsync(f.fileno())
    try:
        os.replace(f.name, path)
    except OSError:
        os.unlink(f.name)
        raise
    os.chmod(path, mode)
