"""Verifier output protocol.

The verifier must answer with two non-empty lines before anything else:

    STATUS: ok            (or STATUS: missing)
    {"remainingTasks": ["...", "..."]}

Everything after the second non-empty line is free-form commentary and is
ignored. Parsing is strict about the status literal and the JSON object, and
tolerant only about the ``remainingTasks`` field itself.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Literal

from .errors import ProtocolViolation

logger = logging.getLogger(__name__)

VerifierStatus = Literal["ok", "missing"]

STATUS_OK: VerifierStatus = "ok"
STATUS_MISSING: VerifierStatus = "missing"

STATUS_LINES: dict[str, VerifierStatus] = {
    "STATUS: ok": STATUS_OK,
    "STATUS: missing": STATUS_MISSING,
}

INSUFFICIENT_OUTPUT = "insufficient output"
UNRECOGNIZED_STATUS = "unrecognized status"
MALFORMED_PAYLOAD = "malformed payload"


@dataclass(frozen=True)
class VerifierResult:
    """Parsed verifier verdict."""

    status: VerifierStatus
    remaining_tasks: list[str] = field(default_factory=list)
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status == STATUS_OK


def parse_verifier_output(raw_output: str) -> VerifierResult:
    """Parse raw verifier text into a VerifierResult.

    Args:
        raw_output: Captured stdout of the verifier agent.

    Returns:
        VerifierResult with the status and the next round's remaining tasks.

    Raises:
        ProtocolViolation: If the first two non-empty lines do not follow
            the wire format.
    """
    lines = [line.strip() for line in raw_output.splitlines()]
    lines = [line for line in lines if line]

    if len(lines) < 2:
        raise ProtocolViolation(INSUFFICIENT_OUTPUT, f"got {len(lines)} non-empty line(s)")

    status_line, payload_line = lines[0], lines[1]

    status = STATUS_LINES.get(status_line)
    if status is None:
        raise ProtocolViolation(UNRECOGNIZED_STATUS, repr(status_line[:80]))

    try:
        payload = json.loads(payload_line)
    except json.JSONDecodeError as e:
        raise ProtocolViolation(MALFORMED_PAYLOAD, str(e)) from e

    if not isinstance(payload, dict):
        raise ProtocolViolation(MALFORMED_PAYLOAD, f"expected a JSON object, got {type(payload).__name__}")

    tasks = payload.get("remainingTasks")
    if isinstance(tasks, list):
        remaining = [task if isinstance(task, str) else json.dumps(task) for task in tasks]
    else:
        if tasks is not None:
            logger.debug(f"Ignoring non-list remainingTasks: {tasks!r}")
        remaining = []

    logger.debug(f"Verifier status={status}, {len(remaining)} remaining task(s)")
    return VerifierResult(status=status, remaining_tasks=remaining, payload=payload)
