from __future__ import annotations

import json
import logging
import os
import subprocess
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence

from ..errors import CommandError


logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    cmd: List[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def run_command(
    cmd: Sequence[str],
    check: bool = False,
    timeout: Optional[float] = None,
) -> CommandResult:
    """Run an external tool and capture its output.

    A missing binary or a timeout is reported as return code 127/124 the way a
    shell would, so callers only ever deal with ``CommandResult``.
    """
    argv = [str(c) for c in cmd]
    logger.debug("exec: %s", " ".join(argv))
    try:
        p = subprocess.run(argv, capture_output=True, text=True, check=False, timeout=timeout)
        result = CommandResult(argv, p.returncode, p.stdout or "", p.stderr or "")
    except FileNotFoundError as exc:
        result = CommandResult(argv, 127, "", str(exc))
    except subprocess.TimeoutExpired:
        result = CommandResult(argv, 124, "", f"timed out after {timeout}s")
    if check and not result.ok:
        raise CommandError(argv, result.returncode, result.stderr or result.stdout)
    return result


def run_json(cmd: Sequence[str]) -> Any:
    """Run a tool with JSON output (``ip -j ...``); empty or invalid output gives ``[]``."""
    result = run_command(cmd)
    if not result.ok or not result.stdout.strip():
        return []
    try:
        return json.loads(result.stdout)
    except json.JSONDecodeError:
        logger.warning("invalid JSON from %s", " ".join(result.cmd))
        return []


def is_root() -> bool:
    try:
        return os.geteuid() == 0
    except AttributeError:
        return False


def service_is_active(name: str) -> bool:
    return run_command(["systemctl", "is-active", "--quiet", name]).ok


def start_services(*names: str) -> None:
    for name in names:
        logger.info("Starting service: %s", name)
        run_command(["systemctl", "start", name], check=True)


def stop_services(*names: str) -> None:
    for name in names:
        logger.info("Stopping service: %s", name)
        result = run_command(["systemctl", "stop", name])
        if not result.ok:
            logger.debug("stop %s ignored: %s", name, result.stderr.strip())


def restart_service(name: str) -> None:
    run_command(["systemctl", "restart", name], check=True)
