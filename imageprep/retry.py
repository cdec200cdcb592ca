"""
Retry policy for step attempts.

decide() is a pure function of (attempt, outcome): it never sleeps and never
touches the checkpoint store. The orchestrator applies the delay.

Backoff is linear and capped. Provisioning steps are short-lived local OS
operations, so the delay only needs to outlast a locked file or a service
that is still starting.
"""

from dataclasses import dataclass
from typing import Optional

from imageprep.schemas import OutcomeKind, StepOutcome


DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY = 5.0
DEFAULT_MAX_DELAY = 30.0


@dataclass(frozen=True)
class RetryDecision:
    """Either Retry(delay) or GiveUp."""

    retry: bool
    delay: float = 0.0

    @classmethod
    def retry_after(cls, delay: float) -> "RetryDecision":
        return cls(retry=True, delay=delay)

    @classmethod
    def give_up(cls) -> "RetryDecision":
        return cls(retry=False)

    def __str__(self) -> str:
        return f"Retry({self.delay:g}s)" if self.retry else "GiveUp"


@dataclass(frozen=True)
class RetryPolicy:
    """
    Linear, capped backoff for retryable failures.

    Attributes:
        max_attempts: Default attempt budget when a step does not set its own
        base_delay: Delay after the first failed attempt, in seconds
        max_delay: Ceiling for any single delay, in seconds
    """
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    base_delay: float = DEFAULT_BASE_DELAY
    max_delay: float = DEFAULT_MAX_DELAY

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be >= 0")

    def delay_for(self, attempt: int) -> float:
        """Delay before the attempt following `attempt` (1-indexed)."""
        return min(self.base_delay * max(attempt, 1), self.max_delay)

    def decide(
        self,
        attempt: int,
        outcome: StepOutcome,
        max_attempts: Optional[int] = None,
    ) -> RetryDecision:
        """
        Decide whether a step should be attempted again.

        Args:
            attempt: Number of failed attempts made so far (1-indexed)
            outcome: Outcome of the latest attempt
            max_attempts: Per-step budget (defaults to the policy's)

        Returns:
            RetryDecision
        """
        budget = max_attempts if max_attempts is not None else self.max_attempts
        if outcome.kind != OutcomeKind.FAILED:
            # Success/Skipped are done, RebootRequired belongs to the reboot coordinator
            return RetryDecision.give_up()
        if not outcome.retryable:
            return RetryDecision.give_up()
        if attempt >= budget:
            return RetryDecision.give_up()
        return RetryDecision.retry_after(self.delay_for(attempt))
