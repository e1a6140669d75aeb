"""Exceptions raised by the network controller.

Every error derives from :class:`NetworkError`; the command line maps
``exit_code`` straight to the process exit status.
"""

from __future__ import annotations

from typing import List, Optional


class NetworkError(Exception):
    """Base exception for network controller errors."""

    exit_code = 1


class UsageError(NetworkError):
    """Raised for invalid arguments or unknown commands."""

    exit_code = 2


class MissingPrerequisiteError(NetworkError):
    """Raised when a required configuration file has not been generated yet."""


class InterfaceNotFoundError(NetworkError):
    """Raised when an operator-named interface is unknown to the system or the inventory."""

    exit_code = 2


class InvalidTransitionError(NetworkError):
    """Raised when an operation is not allowed in the current network mode."""


class LockTimeoutError(NetworkError):
    """Raised when the network state lock cannot be acquired in time."""


class PrivilegeError(NetworkError):
    """Raised when a mutating command is run without root privileges."""


class WanUnavailableError(NetworkError):
    """Raised when the WAN interface never gets a default route."""


class CommandError(NetworkError):
    """Raised when an external tool exits non-zero."""

    def __init__(self, cmd: List[str], returncode: int, stderr: Optional[str] = None) -> None:
        self.cmd = list(cmd)
        self.returncode = returncode
        self.stderr = (stderr or "").strip()
        detail = f": {self.stderr}" if self.stderr else ""
        super().__init__(f"command failed ({returncode}): {' '.join(self.cmd)}{detail}")
