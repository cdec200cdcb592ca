"""
Base classes for provisioning steps.

All steps inherit from Step and return StepOutcome.
"""

import logging
import time
from abc import ABC, abstractmethod
from enum import Enum
from typing import Callable, Optional, Union

from imageprep.errors import RebootPending, classify_exception
from imageprep.schemas import StepOutcome


logger = logging.getLogger(__name__)


class StepKind(str, Enum):
    """What a step does to the host."""
    DETECT = "detect"
    INSTALL = "install"
    CONFIGURE = "configure"
    VERIFY = "verify"


class Step(ABC):
    """
    Abstract base class for provisioning steps.

    Each step must implement:
    - idempotent_check(): Side-effect free probe of whether the end state already holds
    - execute(): Bring the host to the end state and report a StepOutcome

    The orchestrator calls check() and run_attempt(), which wrap the two
    so that nothing raised inside a step escapes unclassified.
    """

    def __init__(
        self,
        step_id: str,
        kind: StepKind,
        max_attempts: Optional[int] = None,
        requires_reboot_after: bool = False,
        optional: bool = False,
        timeout_seconds: Optional[float] = None,
        description: str = "",
    ):
        """
        Initialize step.

        Args:
            step_id: Stable identifier; checkpoints are matched on it after a reboot
            kind: Detect, install, configure or verify
            max_attempts: Attempt budget for retryable failures (None = policy default)
            requires_reboot_after: Restart the host after the step succeeds
            optional: A give-up failure is recorded as Skipped instead of Fatal
            timeout_seconds: How long to wait for child processes of this step
            description: Free text shown in the summary
        """
        if not step_id:
            raise ValueError("step_id must not be empty")
        if max_attempts is not None and max_attempts < 1:
            raise ValueError(f"Step {step_id}: max_attempts must be >= 1")
        self.step_id = step_id
        self.kind = StepKind(kind)
        self.max_attempts = max_attempts
        self.requires_reboot_after = requires_reboot_after
        self.optional = optional
        self.timeout_seconds = timeout_seconds
        self.description = description

    @abstractmethod
    def idempotent_check(self) -> bool:
        """
        Probe whether the desired end state already holds.

        Must have no side effects; may be called any number of times.
        """
        pass

    @abstractmethod
    def execute(self) -> StepOutcome:
        """
        Apply the step.

        Returns:
            StepOutcome for this attempt

        Raises:
            TransientError, PermanentError, RebootPending or anything else;
            run_attempt() classifies it.
        """
        pass

    def check(self) -> Union[bool, StepOutcome]:
        """
        Run idempotent_check(), classifying any exception it raises.

        Returns:
            The boolean result, or a Failed outcome if the probe itself blew up
        """
        try:
            return bool(self.idempotent_check())
        except Exception as e:
            reason, retryable = classify_exception(e)
            logger.warning(
                f"Step {self.step_id} idempotent check raised: {reason}",
                extra={"step": self.step_id, "event": "check_failed"},
            )
            return StepOutcome.failed(f"idempotent check failed: {reason}", retryable)

    def run_attempt(self) -> StepOutcome:
        """
        Run execute() once and classify the result.

        Returns:
            StepOutcome (never raises for ordinary exceptions)
        """
        start_time = time.time()
        logger.info(
            f"Executing step: {self.step_id} ({self.kind.value})",
            extra={"step": self.step_id, "event": "step_executing"},
        )

        try:
            outcome = self.execute()
            if not isinstance(outcome, StepOutcome):
                outcome = StepOutcome.failed(
                    f"execute() returned {type(outcome).__name__}, expected StepOutcome",
                    retryable=False,
                )
        except RebootPending as e:
            outcome = StepOutcome.reboot_required(str(e) or None)
        except Exception as e:
            reason, retryable = classify_exception(e)
            logger.error(
                f"Step {self.step_id} raised: {reason}",
                extra={
                    "step": self.step_id,
                    "event": "step_exception",
                    "metadata": {"exception": type(e).__name__, "retryable": retryable},
                },
                exc_info=True,
            )
            outcome = StepOutcome.failed(reason, retryable)

        logger.info(
            f"Step {self.step_id} attempt finished: {outcome}",
            extra={
                "step": self.step_id,
                "event": "step_attempt_finished",
                "metadata": {
                    "outcome": outcome.to_dict(),
                    "duration_seconds": round(time.time() - start_time, 3),
                },
            },
        )
        return outcome

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(id={self.step_id}, kind={self.kind.value})"


class FunctionStep(Step):
    """
    Step built from plain callables.

    Usage:
        step = FunctionStep(
            "install-runtime",
            StepKind.INSTALL,
            check=lambda: runtime_installed(),
            action=install_runtime,
        )

    `action` may return a StepOutcome, or return None for success and raise
    TransientError / PermanentError / RebootPending otherwise.
    """

    def __init__(
        self,
        step_id: str,
        kind: StepKind,
        action: Callable[[], Optional[StepOutcome]],
        check: Optional[Callable[[], bool]] = None,
        **kwargs,
    ):
        super().__init__(step_id, kind, **kwargs)
        self._action = action
        self._check = check

    def idempotent_check(self) -> bool:
        if self._check is None:
            return False
        return self._check()

    def execute(self) -> StepOutcome:
        result = self._action()
        if result is None:
            return StepOutcome.success()
        return result
