"""
Orchestrator - the reboot-spanning provisioning control loop.

The Orchestrator implements:
- Step selection in declared order (first step without completed_at)
- Idempotent-check short circuit (end state already holds -> Success, no execute)
- Retry of retryable failures through a RetryPolicy
- Checkpointing of every attempt before control moves on
- Bounded reboot cycles with hand-off to a RebootCoordinator
- Cancellation between steps

Execution flow:
1. Load checkpoints (StoreCorrupt is fatal and propagates)
2. Clear the resume trigger that started this invocation
3. Open the cycle (a new one only if the previous cycle ended in a reboot)
4. Loop: select -> check/execute -> record -> (retry | next | reboot | fatal)
5. Summarize

States:
    IDLE -> SELECTING_STEP -> EXECUTING_STEP -> RECORDING -> SELECTING_STEP ...
                                             -> AWAITING_REBOOT
         -> DONE | FATAL | CANCELLED
"""

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Sequence

from imageprep.checkpoint_store import CheckpointStore
from imageprep.errors import CycleBudgetExhausted, ImagePrepError
from imageprep.reboot import RebootCoordinator
from imageprep.reporter import RunSummary, build_summary, render_text
from imageprep.retry import RetryPolicy
from imageprep.schemas import Checkpoint, CycleRecord, OutcomeKind, StepOutcome
from imageprep.steps.base import Step


logger = logging.getLogger(__name__)

DEFAULT_MAX_CYCLES = 5

EXIT_DONE = 0
EXIT_FATAL = 1
EXIT_AWAITING_REBOOT = 2
EXIT_STORE_CORRUPT = 3
EXIT_CANCELLED = 4


class RunState(str, Enum):
    """States of the control loop."""
    IDLE = "idle"
    SELECTING_STEP = "selecting_step"
    EXECUTING_STEP = "executing_step"
    RECORDING = "recording"
    AWAITING_REBOOT = "awaiting_reboot"
    DONE = "done"
    FATAL = "fatal"
    CANCELLED = "cancelled"


class FatalReason(str, Enum):
    """Why a run ended in FATAL."""
    STEP_FAILED = "step_failed"
    CYCLE_BUDGET_EXHAUSTED = "cycle_budget_exhausted"
    RESUME_SCHEDULING_FAILED = "resume_scheduling_failed"


_EXIT_CODES = {
    RunState.DONE: EXIT_DONE,
    RunState.FATAL: EXIT_FATAL,
    RunState.AWAITING_REBOOT: EXIT_AWAITING_REBOOT,
    RunState.CANCELLED: EXIT_CANCELLED,
}


class CancellationToken:
    """External cancellation signal, honored between steps only."""

    def __init__(self):
        self._event = threading.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        self.reason = reason
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()


@dataclass(frozen=True)
class RunResult:
    """Result of one orchestrator invocation."""

    state: RunState
    summary: RunSummary
    fatal_reason: Optional[FatalReason] = None
    fatal_step: Optional[str] = None
    message: Optional[str] = None

    @property
    def exit_code(self) -> int:
        return _EXIT_CODES[self.state]

    @property
    def success(self) -> bool:
        return self.state == RunState.DONE


class Orchestrator:
    """
    Drives a list of steps to completion across process restarts and reboots.

    Usage:
        store = FileCheckpointStore(state_path)
        orchestrator = Orchestrator(
            steps=manifest.steps,
            store=store,
            coordinator=create_coordinator("auto", store),
            max_cycles=5,
            resume_invocation=[sys.executable, "-m", "imageprep", "run", ...],
        )
        result = orchestrator.run()
        if result.state == RunState.AWAITING_REBOOT:
            orchestrator.restart_host()
        raise SystemExit(result.exit_code)
    """

    def __init__(
        self,
        steps: Sequence[Step],
        store: CheckpointStore,
        coordinator: Optional[RebootCoordinator] = None,
        policy: Optional[RetryPolicy] = None,
        max_cycles: int = DEFAULT_MAX_CYCLES,
        resume_invocation: Optional[list[str]] = None,
        cancel_token: Optional[CancellationToken] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the orchestrator.

        Args:
            steps: Steps in declared order; ids must be unique
            store: Checkpoint store (single source of truth)
            coordinator: Reboot coordinator (None = never schedule or restart)
            policy: Retry policy (default: 3 attempts, linear 5s steps capped at 30s)
            max_cycles: Maximum number of reboot-to-reboot cycles
            resume_invocation: argv the coordinator registers to resume the run
            cancel_token: External cancellation signal
            sleep: Sleep function used between retries
            clock: Monotonic clock used for durations
        """
        if max_cycles < 1:
            raise ValueError("max_cycles must be >= 1")
        seen: set[str] = set()
        for step in steps:
            if step.step_id in seen:
                raise ValueError(f"Duplicate step id: {step.step_id}")
            seen.add(step.step_id)

        self.steps = list(steps)
        self.store = store
        self.coordinator = coordinator
        self.policy = policy or RetryPolicy()
        self.max_cycles = max_cycles
        self.resume_invocation = resume_invocation or []
        self.cancel_token = cancel_token or CancellationToken()
        self._sleep = sleep
        self._clock = clock

        self.state = RunState.IDLE
        self.transitions: list[RunState] = []
        self.cycle: Optional[CycleRecord] = None
        self._started = 0.0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run(self) -> RunResult:
        """
        Run until Done, Fatal, AwaitingReboot or Cancelled.

        Returns:
            RunResult with the final state and summary

        Raises:
            StoreCorrupt: If the checkpoint store cannot be parsed
        """
        self._started = self._clock()
        self._transition(RunState.IDLE)

        checkpoints = self.store.load()
        self._warn_unknown_checkpoints(checkpoints)

        if self.coordinator is not None:
            try:
                self.coordinator.clear_resume()
            except (ImagePrepError, OSError) as e:
                logger.warning(
                    f"Could not clear the previous resume trigger: {e}",
                    extra={"event": "resume_clear_failed"},
                )

        if not self._open_cycle():
            error = CycleBudgetExhausted(self.store.current_cycle().cycle_number, self.max_cycles)
            return self._finish(
                RunState.FATAL,
                fatal_reason=FatalReason.CYCLE_BUDGET_EXHAUSTED,
                message=str(error),
            )

        logger.info(
            f"Provisioning run started: {len(self.steps)} steps, cycle {self.cycle.cycle_number}/{self.max_cycles}",
            extra={
                "event": "run_started",
                "metadata": {"cycle": self.cycle.cycle_number, "max_cycles": self.max_cycles},
            },
        )

        while True:
            if self.cancel_token.is_cancelled:
                return self._finish(RunState.CANCELLED, message=self.cancel_token.reason)

            self._transition(RunState.SELECTING_STEP)
            step = self._select(checkpoints)
            if step is None:
                return self._finish(RunState.DONE)

            self._transition(RunState.EXECUTING_STEP)
            outcome, checkpoint = self._execute_step(step, checkpoints.get(step.step_id))
            checkpoints[step.step_id] = checkpoint

            if outcome.kind == OutcomeKind.FAILED:
                if step.optional:
                    checkpoint = self.store.record(
                        step.step_id,
                        StepOutcome.skipped(f"optional step gave up: {outcome.reason}"),
                        checkpoint.attempts_made,
                        cycle_number=self.cycle.cycle_number,
                    )
                    checkpoints[step.step_id] = checkpoint
                    logger.warning(
                        f"Optional step {step.step_id} skipped: {outcome.reason}",
                        extra={"step": step.step_id, "event": "optional_step_skipped"},
                    )
                    continue

                return self._finish(
                    RunState.FATAL,
                    fatal_reason=FatalReason.STEP_FAILED,
                    fatal_step=step.step_id,
                    message=(
                        f"Step {step.step_id} failed after {checkpoint.attempts_made} "
                        f"attempt(s): {outcome.reason}"
                    ),
                )

            needs_reboot = outcome.kind == OutcomeKind.REBOOT_REQUIRED or (
                outcome.kind == OutcomeKind.SUCCESS
                and step.requires_reboot_after
                and not outcome.already_satisfied
            )
            if needs_reboot:
                return self._await_reboot(step)

    def restart_host(self) -> None:
        """
        Initiate the restart after an AWAITING_REBOOT result has been reported.

        If the restart cannot be initiated the reboot hand-off is withdrawn,
        so a later invocation on the same boot does not open a new cycle.

        Raises:
            ImagePrepError, OSError: If the coordinator could not restart the host
        """
        if self.state != RunState.AWAITING_REBOOT:
            raise RuntimeError(f"restart_host() called in state {self.state.value}")
        if self.coordinator is None:
            return
        try:
            self.coordinator.restart()
        except (ImagePrepError, OSError) as e:
            logger.error(
                f"Restart failed: {e}",
                extra={"event": "restart_failed", "metadata": {"mechanism": self.coordinator.mechanism}},
            )
            self.store.clear_awaiting_reboot()
            raise

    # ------------------------------------------------------------------
    # State machine internals
    # ------------------------------------------------------------------

    def _transition(self, state: RunState) -> None:
        self.state = state
        self.transitions.append(state)
        logger.debug(f"State -> {state.value}", extra={"event": "state_transition"})

    def _warn_unknown_checkpoints(self, checkpoints: dict[str, Checkpoint]) -> None:
        known = {s.step_id for s in self.steps}
        for step_id in checkpoints:
            if step_id not in known:
                logger.warning(
                    f"Checkpoint for unknown step {step_id} ignored (removed from manifest?)",
                    extra={"step": step_id, "event": "unknown_checkpoint"},
                )

    def _open_cycle(self) -> bool:
        """
        Open or continue the current cycle.

        A new cycle starts only when the previous one ended by handing off to
        a reboot; any other re-invocation continues the current cycle.

        Returns:
            False if starting the cycle would exceed max_cycles
        """
        current = self.store.current_cycle()
        if current is None:
            number = 1
        elif self.store.awaiting_reboot():
            number = current.cycle_number + 1
        else:
            number = current.cycle_number

        if number > self.max_cycles:
            return False

        self.cycle = self.store.mark_cycle(number)
        return True

    def _select(self, checkpoints: dict[str, Checkpoint]) -> Optional[Step]:
        for step in self.steps:
            checkpoint = checkpoints.get(step.step_id)
            if checkpoint is None or not checkpoint.is_complete:
                return step
        return None

    def _budget(self, step: Step) -> int:
        return step.max_attempts if step.max_attempts is not None else self.policy.max_attempts

    def _is_blocked(self, checkpoint: Optional[Checkpoint], budget: int) -> bool:
        """A step whose last recorded outcome was a give-up failure."""
        if checkpoint is None or checkpoint.last_outcome is None:
            return False
        outcome = checkpoint.last_outcome
        if outcome.kind != OutcomeKind.FAILED:
            return False
        return not outcome.retryable or checkpoint.consecutive_failures >= budget

    def _execute_step(
        self, step: Step, checkpoint: Optional[Checkpoint]
    ) -> tuple[StepOutcome, Checkpoint]:
        """
        Run one step through check, execute and retry until a decision is final.

        Returns:
            The final outcome of the step in this invocation and its checkpoint
        """
        budget = self._budget(step)
        blocked = self._is_blocked(checkpoint, budget)

        while True:
            previous_attempts = checkpoint.attempts_made if checkpoint else 0
            attempt_number = previous_attempts + 1
            started = self._clock()

            probe = step.check()
            if probe is True:
                outcome = StepOutcome.success(already_satisfied=previous_attempts == 0)
                logger.info(
                    f"Step {step.step_id}: desired state already present, not executing",
                    extra={"step": step.step_id, "event": "step_already_satisfied"},
                )
            elif isinstance(probe, StepOutcome):
                outcome = probe
            elif blocked:
                reason = checkpoint.last_outcome.reason
                logger.error(
                    f"Step {step.step_id} previously gave up ({reason}); reset it to retry",
                    extra={"step": step.step_id, "event": "step_blocked"},
                )
                return (
                    StepOutcome.failed(f"previously gave up: {reason}; reset the step to retry", False),
                    checkpoint,
                )
            else:
                outcome = step.run_attempt()

            self._transition(RunState.RECORDING)
            checkpoint = self.store.record(
                step.step_id,
                outcome,
                attempt_number,
                duration_seconds=self._clock() - started,
                cycle_number=self.cycle.cycle_number,
            )
            self.cycle = self.cycle.with_step(step.step_id)

            decision = self.policy.decide(checkpoint.consecutive_failures, outcome, budget)
            if not decision.retry:
                return outcome, checkpoint

            logger.warning(
                f"Step {step.step_id} attempt {attempt_number}/{budget} failed: "
                f"{outcome.reason}. Retrying in {decision.delay:g}s...",
                extra={
                    "step": step.step_id,
                    "event": "step_retry",
                    "metadata": {"attempt": attempt_number, "delay": decision.delay},
                },
            )
            self._sleep(decision.delay)
            self._transition(RunState.EXECUTING_STEP)

    def _await_reboot(self, step: Step) -> RunResult:
        cycle_number = self.cycle.cycle_number
        if cycle_number >= self.max_cycles:
            error = CycleBudgetExhausted(cycle_number, self.max_cycles)
            return self._finish(
                RunState.FATAL,
                fatal_reason=FatalReason.CYCLE_BUDGET_EXHAUSTED,
                fatal_step=step.step_id,
                message=str(error),
            )

        self._transition(RunState.AWAITING_REBOOT)
        self.store.mark_awaiting_reboot()

        if self.coordinator is not None:
            try:
                self.coordinator.schedule_resume(self.resume_invocation)
            except (ImagePrepError, OSError) as e:
                return self._finish(
                    RunState.FATAL,
                    fatal_reason=FatalReason.RESUME_SCHEDULING_FAILED,
                    fatal_step=step.step_id,
                    message=f"Could not schedule resume: {e}",
                )

        return self._finish(
            RunState.AWAITING_REBOOT,
            message=f"Step {step.step_id} requires a reboot (cycle {cycle_number}/{self.max_cycles})",
        )

    def _finish(
        self,
        state: RunState,
        fatal_reason: Optional[FatalReason] = None,
        fatal_step: Optional[str] = None,
        message: Optional[str] = None,
    ) -> RunResult:
        if self.state != state:
            self._transition(state)

        summary = build_summary(
            self.steps,
            self.store.load(),
            self.store.cycles(),
            run_state=state.value,
            elapsed_seconds=self._clock() - self._started,
            max_cycles=self.max_cycles,
            exit_code=_EXIT_CODES[state],
            fatal_step=fatal_step,
            fatal_reason=message if state == RunState.FATAL else None,
        )

        log = logger.error if state == RunState.FATAL else logger.info
        log(
            f"Provisioning run finished: {state.value}" + (f" - {message}" if message else ""),
            extra={
                "event": "run_finished",
                "metadata": {
                    **summary.to_dict(),
                    "fatal_classification": fatal_reason.value if fatal_reason else None,
                },
            },
        )
        logger.info(render_text(summary), extra={"event": "run_summary"})

        return RunResult(
            state=state,
            summary=summary,
            fatal_reason=fatal_reason,
            fatal_step=fatal_step,
            message=message,
        )
