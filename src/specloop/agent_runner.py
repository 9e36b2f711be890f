"""Codex CLI integration for the worker and verifier roles.

The agent is a black box: a prompt goes in on stdin, text comes out on
stdout. Output is mirrored to the operator's terminal while it streams and
buffered for the loop. A non-zero exit is always an error.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
import sys
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import IO, Optional, Protocol, TextIO

from .errors import AgentProcessError

logger = logging.getLogger(__name__)


class AccessLevel(str, Enum):
    """Execution sandbox for an agent run."""

    READ_ONLY = "read-only"
    UNRESTRICTED = "unrestricted"


SANDBOX_ARGS: dict[AccessLevel, list[str]] = {
    AccessLevel.READ_ONLY: ["--sandbox", "read-only"],
    AccessLevel.UNRESTRICTED: ["--dangerously-bypass-approvals-and-sandbox"],
}


class AgentRunner(Protocol):
    """Anything that can run one agent invocation."""

    def invoke(self, prompt: str, access: AccessLevel, model: str) -> str:
        ...


def _check_access(access: object) -> AccessLevel:
    # A plain string such as "read-only" must not slip through as a different level
    if not isinstance(access, AccessLevel):
        raise ValueError(f"Unknown access level: {access!r}")
    return access


class CodexRunner:
    """Runs ``codex exec`` with a prompt on stdin."""

    def __init__(
        self,
        binary: str = "codex",
        reasoning: Optional[str] = None,
        cwd: Optional[str] = None,
        stdout: Optional[TextIO] = None,
        stderr: Optional[TextIO] = None,
    ):
        """Initialize the Codex runner.

        Args:
            binary: Codex executable name or path.
            reasoning: Optional reasoning effort passed as ``--reasoning``.
            cwd: Working directory for the agent process.
            stdout: Where to mirror agent stdout. Defaults to ``sys.stdout``.
            stderr: Where to mirror agent stderr. Defaults to ``sys.stderr``.
        """
        self.binary = binary
        self.reasoning = reasoning
        self.cwd = cwd
        self.stdout = stdout
        self.stderr = stderr

    def check_installed(self) -> bool:
        """Check if the Codex CLI is on PATH."""
        return shutil.which(self.binary) is not None

    def build_args(self, access: AccessLevel, model: str) -> list[str]:
        access = _check_access(access)
        args = [self.binary, "exec", *SANDBOX_ARGS[access], "--model", model]
        if self.reasoning:
            args += ["--reasoning", self.reasoning]
        args.append("-")
        return args

    def invoke(self, prompt: str, access: AccessLevel, model: str) -> str:
        """Run the agent to completion and return its stdout.

        Args:
            prompt: Prompt text written to the agent's stdin.
            access: Sandbox level. ``READ_ONLY`` is never relaxed.
            model: Model identifier.

        Returns:
            Everything the agent wrote to stdout.

        Raises:
            AgentProcessError: If the process cannot start or exits non-zero.
            ValueError: If ``access`` is not an AccessLevel.
        """
        args = self.build_args(access, model)
        out_sink = self.stdout or sys.stdout
        err_sink = self.stderr or sys.stderr

        logger.info(f"Invoking {self.binary} ({access.value}, model={model})")
        logger.debug(f"Command: {' '.join(args)}")

        try:
            proc = subprocess.Popen(
                args,
                cwd=self.cwd,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
            )
        except FileNotFoundError as e:
            raise AgentProcessError(f"{self.binary} not found in PATH") from e
        except OSError as e:
            raise AgentProcessError(f"Failed to start {self.binary}: {e}") from e

        captured: list[str] = []
        readers = [
            threading.Thread(target=_pump, args=(proc.stdout, out_sink, captured), daemon=True),
            threading.Thread(target=_pump, args=(proc.stderr, err_sink, None), daemon=True),
        ]
        for reader in readers:
            reader.start()

        try:
            assert proc.stdin is not None
            proc.stdin.write(prompt)
        except BrokenPipeError:
            logger.warning(f"{self.binary} closed stdin before the prompt was fully written")
        finally:
            try:
                proc.stdin.close()
            except BrokenPipeError:
                pass

        returncode = proc.wait()
        # Output must be fully drained before the exit is reported
        for reader in readers:
            reader.join()

        output = "".join(captured)
        if returncode != 0:
            logger.error(f"{self.binary} exited with code {returncode}")
            raise AgentProcessError(f"{self.binary} exited with code {returncode}", returncode=returncode)

        logger.debug(f"{self.binary} finished, captured {len(output)} chars")
        return output


def _pump(stream: Optional[IO[str]], sink: TextIO, buffer: Optional[list[str]]) -> None:
    if stream is None:
        return
    with stream:
        for chunk in stream:
            sink.write(chunk)
            sink.flush()
            if buffer is not None:
                buffer.append(chunk)


@dataclass
class AgentCall:
    """A recorded call to the scripted runner."""

    prompt: str
    access: AccessLevel
    model: str


@dataclass
class ScriptedAgentRunner:
    """Agent stand-in that replays canned outputs in order.

    Each response is either a string (returned as output) or an exception
    instance (raised). Used by tests and by ``specloop run --mock-responses``.
    """

    responses: list = field(default_factory=list)
    calls: list[AgentCall] = field(default_factory=list)

    def invoke(self, prompt: str, access: AccessLevel, model: str) -> str:
        access = _check_access(access)
        self.calls.append(AgentCall(prompt=prompt, access=access, model=model))
        if len(self.calls) > len(self.responses):
            raise AgentProcessError(f"Scripted agent has no response for call {len(self.calls)}", returncode=1)
        response = self.responses[len(self.calls) - 1]
        if isinstance(response, BaseException):
            raise response
        return response
