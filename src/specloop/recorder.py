"""Durable per-attempt bookkeeping for a run.

After every attempt the recorder rewrites two files in the spec directory:
``metadata.json`` (status, last run, notes log) and
``implementation-report.md``. Both are replaced whole, so a run killed
between attempts leaves the last completed attempt on disk.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING

from .protocol import STATUS_OK
from .specs import STATUS_DONE, STATUS_IN_PROGRESS, NoteRecord, SpecBundle, write_text_atomic

if TYPE_CHECKING:
    from .orchestrator import Attempt, Run

logger = logging.getLogger(__name__)


def format_note(attempt: Attempt) -> str:
    """Render the note line for an attempt.

    ``[<ISO ts>] attempt <n> status=<status>`` followed by
    ``: remaining tasks: a; b`` when the verifier left work behind.
    """
    line = f"[{attempt.timestamp}] attempt {attempt.index} status={attempt.status}"
    if attempt.remaining_tasks:
        line += f": remaining tasks: {'; '.join(attempt.remaining_tasks)}"
    elif attempt.status != STATUS_OK:
        line += ": remaining tasks: none"
    return line


def render_report(run: Run, attempt: Attempt) -> str:
    """Render the human-readable implementation report."""
    remaining = json.dumps({"remainingTasks": attempt.remaining_tasks}, indent=2, ensure_ascii=False)
    lines = [
        f"# Implementation Report for {run.spec_id} - {run.spec_name}",
        "",
        f"- Mode: {run.mode}",
        f"- Max attempts: {run.max_attempts}",
        f"- Attempts used: {attempt.index}",
        f"- Final verifier status: {attempt.status}",
        "",
        "## Remaining tasks",
        "",
        remaining,
        "",
        "## Final worker output",
        "",
        attempt.worker_output,
    ]
    text = "\n".join(lines)
    return text if text.endswith("\n") else text + "\n"


class RunRecorder:
    """Writes run metadata and the report after each attempt."""

    def __init__(self, bundle: SpecBundle):
        """Initialize the recorder.

        Args:
            bundle: The loaded spec. Its metadata object is updated in place
                and rewritten on every ``record`` call.
        """
        self.bundle = bundle
        self.metadata = bundle.metadata

    def record(self, run: Run, attempt: Attempt) -> None:
        """Persist the outcome of one attempt.

        Raises:
            OSError: If either file cannot be written.
        """
        self.write_metadata(attempt)
        self.write_report(run, attempt)

    def write_metadata(self, attempt: Attempt) -> None:
        meta = self.metadata
        meta.status = STATUS_DONE if attempt.status == STATUS_OK else STATUS_IN_PROGRESS
        meta.last_run = attempt.timestamp
        meta.notes.append(
            NoteRecord(
                timestamp=attempt.timestamp,
                attempt=attempt.index,
                status=attempt.status,
                remaining_tasks=list(attempt.remaining_tasks),
                text=format_note(attempt),
            )
        )
        meta.save(self.bundle.metadata_path)
        logger.info(f"Metadata updated: status={meta.status} ({self.bundle.metadata_path})")

    def write_report(self, run: Run, attempt: Attempt) -> None:
        write_text_atomic(self.bundle.report_path, render_report(run, attempt))
        logger.info(f"Report written to {self.bundle.report_path}")
