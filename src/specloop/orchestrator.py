"""Attempt loop controller for specloop.

One run alternates a worker invocation and a verifier invocation until the
verifier reports ``STATUS: ok`` or the attempt budget is spent:

    IDLE -> RENDERING -> WORKER_RUNNING -> VERIFIER_RENDERING
         -> VERIFIER_RUNNING -> EVALUATING -> DONE | CONTINUING | EXHAUSTED

Agent failures and verifier protocol violations move the run to ABORTED and
propagate to the caller. Every DONE, CONTINUING and EXHAUSTED transition is
recorded to disk before the loop moves on.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

from rich.console import Console
from rich.markup import escape

from .agent_runner import AccessLevel, AgentRunner
from .config import Settings
from .errors import AgentProcessError, ProtocolViolation
from .prompts import unresolved_placeholders, verifier_values, worker_values
from .protocol import STATUS_OK, parse_verifier_output
from .recorder import RunRecorder
from .specs import SpecBundle

logger = logging.getLogger(__name__)


class LoopState(str, Enum):
    """States of the attempt loop."""

    IDLE = "idle"
    RENDERING = "rendering"
    WORKER_RUNNING = "worker-running"
    VERIFIER_RENDERING = "verifier-rendering"
    VERIFIER_RUNNING = "verifier-running"
    EVALUATING = "evaluating"
    DONE = "done"
    CONTINUING = "continuing"
    ABORTED = "aborted"
    EXHAUSTED = "exhausted"


TERMINAL_STATES = frozenset({LoopState.DONE, LoopState.ABORTED, LoopState.EXHAUSTED})


@dataclass(frozen=True)
class Attempt:
    """One completed worker + verifier round."""

    index: int
    timestamp: str
    worker_output: str
    status: str
    remaining_tasks: list[str] = field(default_factory=list)


@dataclass
class Run:
    """Mutable state of one loop execution for a spec."""

    spec_id: str
    spec_name: str
    mode: str
    max_attempts: int
    acceptance_commands: list[str] = field(default_factory=list)
    attempt_counter: int = 0
    remaining_tasks: list[str] = field(default_factory=list)
    attempts: list[Attempt] = field(default_factory=list)
    state: LoopState = LoopState.IDLE

    @classmethod
    def from_bundle(cls, bundle: SpecBundle, settings: Settings) -> Run:
        if settings.max_attempts < 1:
            raise ValueError(f"max_attempts must be positive, got {settings.max_attempts}")
        return cls(
            spec_id=bundle.spec_id,
            spec_name=bundle.spec_name,
            mode=settings.mode,
            max_attempts=settings.max_attempts,
            acceptance_commands=list(bundle.acceptance_commands),
        )

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def last_attempt(self) -> Optional[Attempt]:
        return self.attempts[-1] if self.attempts else None


@dataclass
class LoopOutcome:
    """Final result of ``AttemptLoop.run``."""

    state: LoopState
    attempts_used: int
    max_attempts: int
    remaining_tasks: list[str] = field(default_factory=list)
    worker_output: str = ""

    @property
    def success(self) -> bool:
        return self.state == LoopState.DONE

    @property
    def exit_code(self) -> int:
        return 0 if self.success else 1


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class AttemptLoop:
    """Drives worker/verifier attempts for one spec."""

    def __init__(
        self,
        bundle: SpecBundle,
        settings: Settings,
        runner: AgentRunner,
        recorder: Optional[RunRecorder] = None,
        clock: Callable[[], datetime] = utc_now,
        console: Optional[Console] = None,
    ):
        """Initialize the loop.

        Args:
            bundle: Loaded spec documents and templates.
            settings: Mode, attempt budget and model selection.
            runner: Agent runner used for both roles.
            recorder: Persists each attempt. Defaults to a RunRecorder on
                the bundle.
            clock: Returns the current time; injectable for tests.
            console: Rich console for operator-facing banners.
        """
        self.bundle = bundle
        self.settings = settings
        self.runner = runner
        self.recorder = recorder or RunRecorder(bundle)
        self.clock = clock
        self.console = console or Console()
        self.run_state = Run.from_bundle(bundle, settings)

        self._warn_unresolved("worker", bundle.templates.worker, worker_values("", "", "", [], "", []))
        self._warn_unresolved(
            "verifier", bundle.templates.verifier, verifier_values("", "", "", [], "", "", "")
        )

    @staticmethod
    def _warn_unresolved(role: str, template: str, known: dict[str, str]) -> None:
        unknown = unresolved_placeholders(template, known)
        if unknown:
            logger.warning(f"{role} template has placeholders with no value: {', '.join(unknown)}")

    def _transition(self, state: LoopState) -> None:
        logger.debug(f"[{self.run_state.spec_id}] {self.run_state.state.value} -> {state.value}")
        self.run_state.state = state

    def _timestamp(self) -> str:
        return self.clock().astimezone(timezone.utc).isoformat()

    def step(self) -> LoopState:
        """Run one full attempt and return the state it ends in.

        Raises:
            AgentProcessError: If either agent invocation fails.
            ProtocolViolation: If the verifier output is malformed.
            OSError: If the attempt cannot be recorded (run is ABORTED).
            RuntimeError: If the run already finished.
        """
        run = self.run_state
        if run.finished:
            raise RuntimeError(f"Run already finished in state {run.state.value}")

        run.attempt_counter += 1
        index = run.attempt_counter
        bundle = self.bundle
        self.console.print(f"[bold]=== Attempt {index} of {run.max_attempts} for {escape(run.spec_id)} ===[/bold]")

        self._transition(LoopState.RENDERING)
        worker_prompt = bundle.templates.render_worker(
            worker_values(
                spec_id=run.spec_id,
                spec_name=run.spec_name,
                spec_body=bundle.spec_body,
                acceptance_commands=run.acceptance_commands,
                mode=run.mode,
                previous_remaining_tasks=run.remaining_tasks,
            )
        )

        try:
            self._transition(LoopState.WORKER_RUNNING)
            worker_output = self.runner.invoke(worker_prompt, AccessLevel.UNRESTRICTED, self.settings.worker_model)

            self._transition(LoopState.VERIFIER_RENDERING)
            verifier_prompt = bundle.templates.render_verifier(
                verifier_values(
                    spec_id=run.spec_id,
                    spec_name=run.spec_name,
                    spec_body=bundle.spec_body,
                    acceptance_commands=run.acceptance_commands,
                    mode=run.mode,
                    checklist=bundle.checklist,
                    implementation_report=worker_output,
                )
            )

            # The verifier never gets write access, whatever the mode
            self._transition(LoopState.VERIFIER_RUNNING)
            verifier_output = self.runner.invoke(verifier_prompt, AccessLevel.READ_ONLY, self.settings.verifier_model)

            self._transition(LoopState.EVALUATING)
            result = parse_verifier_output(verifier_output)
        except (AgentProcessError, ProtocolViolation) as e:
            self._transition(LoopState.ABORTED)
            logger.error(f"Attempt {index} aborted: {e}")
            raise

        attempt = Attempt(
            index=index,
            timestamp=self._timestamp(),
            worker_output=worker_output,
            status=result.status,
            remaining_tasks=list(result.remaining_tasks),
        )
        run.attempts.append(attempt)

        if result.status == STATUS_OK:
            next_state = LoopState.DONE
        elif index < run.max_attempts:
            next_state = LoopState.CONTINUING
        else:
            next_state = LoopState.EXHAUSTED

        self._transition(next_state)
        run.remaining_tasks = list(result.remaining_tasks)
        try:
            self.recorder.record(run, attempt)
        except Exception as e:
            self._transition(LoopState.ABORTED)
            logger.error(f"Attempt {index} could not be recorded: {e}")
            raise

        if next_state == LoopState.CONTINUING:
            logger.info(
                f"Verifier reported {len(run.remaining_tasks)} remaining task(s); continuing to next attempt"
            )
        return next_state

    def run(self) -> LoopOutcome:
        """Run attempts until the verifier accepts or the budget is spent.

        Returns:
            LoopOutcome in state DONE or EXHAUSTED.

        Raises:
            AgentProcessError: If an agent invocation fails (run is ABORTED).
            ProtocolViolation: If the verifier breaks protocol (run is ABORTED).
        """
        run = self.run_state
        while not run.finished:
            self.step()

        last = run.last_attempt
        outcome = LoopOutcome(
            state=run.state,
            attempts_used=run.attempt_counter,
            max_attempts=run.max_attempts,
            remaining_tasks=list(run.remaining_tasks),
            worker_output=last.worker_output if last else "",
        )

        if outcome.success:
            logger.info(f"{run.spec_id} verified after {outcome.attempts_used} attempt(s)")
        else:
            logger.error(f"Exhausted {run.max_attempts} attempts without STATUS: ok")
        return outcome
