"""
Checkpoint schemas - persisted progress of a provisioning run.

Checkpoint tracks the last known outcome of one step.
CycleRecord tracks one reboot-to-reboot span of orchestrator execution.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Optional

from .outcome import OutcomeKind, StepOutcome


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass(frozen=True)
class Checkpoint:
    """
    The persisted state of a single step.

    Attributes:
        step_id: Identifier of the step (stable across restarts)
        attempts_made: Total attempts across all invocations
        last_outcome: Outcome of the most recent attempt
        completed_at: Set once the step reached Success or Skipped
        consecutive_failures: Failed attempts since the last non-failure outcome
        duration_seconds: Wall time spent in the step, summed over attempts
        cycle_number: Cycle in which the last attempt ran
        last_attempt_at: When the most recent attempt finished
    """
    step_id: str
    attempts_made: int = 0
    last_outcome: Optional[StepOutcome] = None
    completed_at: Optional[datetime] = None
    consecutive_failures: int = 0
    duration_seconds: float = 0.0
    cycle_number: int = 0
    last_attempt_at: Optional[datetime] = None

    @property
    def is_complete(self) -> bool:
        return self.completed_at is not None

    def advance(
        self,
        outcome: StepOutcome,
        attempt_number: int,
        duration_seconds: float = 0.0,
        cycle_number: Optional[int] = None,
    ) -> "Checkpoint":
        """Return the checkpoint that results from recording one more attempt."""
        now = _utcnow()
        if outcome.kind == OutcomeKind.FAILED:
            failures = self.consecutive_failures + 1
        else:
            failures = 0
        return replace(
            self,
            attempts_made=max(attempt_number, self.attempts_made),
            last_outcome=outcome,
            completed_at=now if outcome.is_terminal else None,
            consecutive_failures=failures,
            duration_seconds=self.duration_seconds + max(duration_seconds, 0.0),
            cycle_number=cycle_number if cycle_number is not None else self.cycle_number,
            last_attempt_at=now,
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        return {
            "step_id": self.step_id,
            "attempts_made": self.attempts_made,
            "last_outcome": self.last_outcome.to_dict() if self.last_outcome else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "consecutive_failures": self.consecutive_failures,
            "duration_seconds": round(self.duration_seconds, 3),
            "cycle_number": self.cycle_number,
            "last_attempt_at": self.last_attempt_at.isoformat() if self.last_attempt_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Checkpoint":
        """Deserialize from dictionary."""
        outcome = data.get("last_outcome")
        return cls(
            step_id=data["step_id"],
            attempts_made=int(data.get("attempts_made", 0)),
            last_outcome=StepOutcome.from_dict(outcome) if outcome else None,
            completed_at=_parse_ts(data.get("completed_at")),
            consecutive_failures=int(data.get("consecutive_failures", 0)),
            duration_seconds=float(data.get("duration_seconds", 0.0)),
            cycle_number=int(data.get("cycle_number", 0)),
            last_attempt_at=_parse_ts(data.get("last_attempt_at")),
        )


@dataclass(frozen=True)
class CycleRecord:
    """
    One reboot-to-reboot span of orchestrator execution.

    Attributes:
        cycle_number: 1-indexed cycle counter
        started_at: When the first invocation of this cycle began
        steps_attempted: Step ids attempted during the cycle, in order, without repeats
        ended_with_reboot: True once the cycle handed off to the reboot coordinator
    """
    cycle_number: int
    started_at: datetime = field(default_factory=_utcnow)
    steps_attempted: tuple[str, ...] = ()
    ended_with_reboot: bool = False

    def __post_init__(self):
        if self.cycle_number < 1:
            raise ValueError("cycle_number must be >= 1")

    def with_step(self, step_id: str) -> "CycleRecord":
        if step_id in self.steps_attempted:
            return self
        return replace(self, steps_attempted=self.steps_attempted + (step_id,))

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        return {
            "cycle_number": self.cycle_number,
            "started_at": self.started_at.isoformat(),
            "steps_attempted": list(self.steps_attempted),
            "ended_with_reboot": self.ended_with_reboot,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CycleRecord":
        """Deserialize from dictionary."""
        return cls(
            cycle_number=int(data["cycle_number"]),
            started_at=datetime.fromisoformat(data["started_at"]),
            steps_attempted=tuple(data.get("steps_attempted", [])),
            ended_with_reboot=bool(data.get("ended_with_reboot", False)),
        )
