"""
Outcome schema - the value every step attempt produces.

StepOutcome is a tagged union:
- Success
- Failed(reason, retryable)
- RebootRequired
- Skipped(reason)
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional


class OutcomeKind(str, Enum):
    """Kind tag of a StepOutcome."""
    SUCCESS = "success"
    FAILED = "failed"
    REBOOT_REQUIRED = "reboot_required"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class StepOutcome:
    """
    The outcome of a single step attempt.

    Attributes:
        kind: Which variant of the union this is
        reason: Why the step failed or was skipped (None for success/reboot)
        retryable: Only meaningful for FAILED outcomes
        already_satisfied: True when the idempotent check held and execute was never called
    """
    kind: OutcomeKind
    reason: Optional[str] = None
    retryable: bool = False
    already_satisfied: bool = False

    def __post_init__(self):
        if self.kind in (OutcomeKind.FAILED, OutcomeKind.SKIPPED) and not self.reason:
            raise ValueError(f"{self.kind.value} outcomes must carry a reason")
        if self.retryable and self.kind != OutcomeKind.FAILED:
            raise ValueError("Only failed outcomes can be retryable")
        if self.already_satisfied and self.kind != OutcomeKind.SUCCESS:
            raise ValueError("Only success outcomes can be already_satisfied")

    @classmethod
    def success(cls, already_satisfied: bool = False) -> "StepOutcome":
        return cls(OutcomeKind.SUCCESS, already_satisfied=already_satisfied)

    @classmethod
    def failed(cls, reason: str, retryable: bool) -> "StepOutcome":
        return cls(OutcomeKind.FAILED, reason=reason, retryable=retryable)

    @classmethod
    def reboot_required(cls, reason: Optional[str] = None) -> "StepOutcome":
        return cls(OutcomeKind.REBOOT_REQUIRED, reason=reason)

    @classmethod
    def skipped(cls, reason: str) -> "StepOutcome":
        return cls(OutcomeKind.SKIPPED, reason=reason)

    @property
    def is_terminal(self) -> bool:
        """Success and Skipped end a step for good."""
        return self.kind in (OutcomeKind.SUCCESS, OutcomeKind.SKIPPED)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {"kind": self.kind.value}
        if self.reason is not None:
            result["reason"] = self.reason
        if self.kind == OutcomeKind.FAILED:
            result["retryable"] = self.retryable
        if self.already_satisfied:
            result["already_satisfied"] = True
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StepOutcome":
        """Deserialize from dictionary."""
        return cls(
            kind=OutcomeKind(data["kind"]),
            reason=data.get("reason"),
            retryable=bool(data.get("retryable", False)),
            already_satisfied=bool(data.get("already_satisfied", False)),
        )

    def __str__(self) -> str:
        if self.kind == OutcomeKind.FAILED:
            flavor = "retryable" if self.retryable else "permanent"
            return f"failed ({flavor}): {self.reason}"
        if self.reason:
            return f"{self.kind.value}: {self.reason}"
        return self.kind.value
