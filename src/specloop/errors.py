"""Exception types for specloop.

Each class maps to one failure category of a run. Configuration faults are
raised before any attempt starts; agent and protocol errors abort the run
mid-loop. A verifier that legitimately reports missing work is not an error
and never raises.
"""

from __future__ import annotations

from typing import Optional


class SpecLoopError(Exception):
    """Base class for all fatal specloop errors."""

    exit_code: int = 1


class ConfigurationFault(SpecLoopError):
    """Required input is missing, unreadable, or invalid."""

    exit_code = 2


class AgentProcessError(SpecLoopError):
    """The agent process could not be started or exited non-zero."""

    exit_code = 3

    def __init__(self, message: str, returncode: Optional[int] = None):
        super().__init__(message)
        self.returncode = returncode


class ProtocolViolation(SpecLoopError):
    """Verifier output does not follow the STATUS line + JSON protocol."""

    exit_code = 4

    def __init__(self, reason: str, detail: str = ""):
        message = f"ProtocolViolation: {reason}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)
        self.reason = reason
        self.detail = detail
