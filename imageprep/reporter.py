"""
Reporter - structured summary of a provisioning run.

Builds a RunSummary from the step list, the checkpoint map and the cycle
records. Everything here is side-effect free: rendering returns a rich
Table or plain text, and the caller decides where it goes.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Optional, Sequence

from rich.table import Table

from imageprep.schemas import Checkpoint, CycleRecord, OutcomeKind
from imageprep.steps.base import Step
from imageprep.utils import format_duration


class SummaryStatus(str, Enum):
    """Per-step status shown in a summary."""
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    FAILED = "failed"
    REBOOT_PENDING = "reboot_pending"
    PENDING = "pending"


_STATUS_STYLE = {
    SummaryStatus.SUCCEEDED: "[green]✓ succeeded[/green]",
    SummaryStatus.SKIPPED: "[cyan]⏭ skipped[/cyan]",
    SummaryStatus.FAILED: "[red]✗ failed[/red]",
    SummaryStatus.REBOOT_PENDING: "[yellow]↻ reboot pending[/yellow]",
    SummaryStatus.PENDING: "[dim]… pending[/dim]",
}


@dataclass(frozen=True)
class StepSummary:
    """Summary line of one step."""

    step_id: str
    kind: str
    status: SummaryStatus
    attempts: int = 0
    duration_seconds: float = 0.0
    reason: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_id": self.step_id,
            "kind": self.kind,
            "status": self.status.value,
            "attempts": self.attempts,
            "duration_seconds": round(self.duration_seconds, 3),
            "reason": self.reason,
        }


@dataclass(frozen=True)
class RunSummary:
    """
    Read-only aggregate of a run.

    Never persisted as a source of truth; the checkpoint store is.
    """

    run_state: str
    steps: tuple[StepSummary, ...]
    cycles_used: int
    max_cycles: Optional[int] = None
    elapsed_seconds: float = 0.0
    exit_code: Optional[int] = None
    fatal_step: Optional[str] = None
    fatal_reason: Optional[str] = None

    def _count(self, status: SummaryStatus) -> int:
        return sum(1 for s in self.steps if s.status == status)

    @property
    def succeeded(self) -> int:
        return self._count(SummaryStatus.SUCCEEDED)

    @property
    def failed(self) -> int:
        return self._count(SummaryStatus.FAILED)

    @property
    def skipped(self) -> int:
        return self._count(SummaryStatus.SKIPPED)

    @property
    def pending(self) -> int:
        return self._count(SummaryStatus.PENDING) + self._count(SummaryStatus.REBOOT_PENDING)

    def totals(self) -> dict[str, int]:
        return {
            "steps": len(self.steps),
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "pending": self.pending,
            "cycles_used": self.cycles_used,
        }

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        return {
            "run_state": self.run_state,
            "exit_code": self.exit_code,
            "max_cycles": self.max_cycles,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
            "fatal_step": self.fatal_step,
            "fatal_reason": self.fatal_reason,
            "totals": self.totals(),
            "steps": [s.to_dict() for s in self.steps],
        }


def _summarize_step(step: Step, checkpoint: Optional[Checkpoint]) -> StepSummary:
    if checkpoint is None or checkpoint.last_outcome is None:
        return StepSummary(step.step_id, step.kind.value, SummaryStatus.PENDING)

    outcome = checkpoint.last_outcome
    reason = outcome.reason
    if outcome.kind == OutcomeKind.SUCCESS:
        if outcome.already_satisfied:
            status, reason = SummaryStatus.SKIPPED, "already satisfied"
        else:
            status = SummaryStatus.SUCCEEDED
    elif outcome.kind == OutcomeKind.SKIPPED:
        status = SummaryStatus.SKIPPED
    elif outcome.kind == OutcomeKind.REBOOT_REQUIRED:
        status = SummaryStatus.REBOOT_PENDING
    else:
        status = SummaryStatus.FAILED

    return StepSummary(
        step_id=step.step_id,
        kind=step.kind.value,
        status=status,
        attempts=checkpoint.attempts_made,
        duration_seconds=checkpoint.duration_seconds,
        reason=reason,
    )


def build_summary(
    steps: Sequence[Step],
    checkpoints: Mapping[str, Checkpoint],
    cycles: Sequence[CycleRecord],
    run_state: str,
    elapsed_seconds: float = 0.0,
    max_cycles: Optional[int] = None,
    exit_code: Optional[int] = None,
    fatal_step: Optional[str] = None,
    fatal_reason: Optional[str] = None,
) -> RunSummary:
    """
    Build the run summary, steps in declared order.

    Args:
        steps: The manifest's steps
        checkpoints: Checkpoint map from the store
        cycles: Cycle records from the store
        run_state: Final orchestrator state name
        elapsed_seconds: Wall time of this invocation
        max_cycles: Cycle budget of the run
        exit_code: Process exit code the CLI will use
        fatal_step: Step that made the run fatal, if any
        fatal_reason: Why the run is fatal

    Returns:
        RunSummary
    """
    return RunSummary(
        run_state=run_state,
        steps=tuple(_summarize_step(s, checkpoints.get(s.step_id)) for s in steps),
        cycles_used=max((c.cycle_number for c in cycles), default=0),
        max_cycles=max_cycles,
        elapsed_seconds=elapsed_seconds,
        exit_code=exit_code,
        fatal_step=fatal_step,
        fatal_reason=fatal_reason,
    )


def render_table(summary: RunSummary, title: Optional[str] = None) -> Table:
    """Render the summary as a rich Table (printing is the caller's job)."""
    table = Table(title=title or f"Provisioning run: {summary.run_state}", show_lines=False)
    table.add_column("#", justify="right", style="dim")
    table.add_column("Step", style="bold")
    table.add_column("Kind")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Duration", justify="right")
    table.add_column("Detail", overflow="fold")

    for i, s in enumerate(summary.steps, start=1):
        table.add_row(
            str(i),
            s.step_id,
            s.kind,
            _STATUS_STYLE[s.status],
            str(s.attempts),
            format_duration(s.duration_seconds),
            s.reason or "",
        )

    cycles = f"{summary.cycles_used}/{summary.max_cycles}" if summary.max_cycles else str(summary.cycles_used)
    table.caption = (
        f"{summary.succeeded} succeeded, {summary.failed} failed, {summary.skipped} skipped, "
        f"{summary.pending} pending · cycles {cycles} · {format_duration(summary.elapsed_seconds)}"
    )
    return table


def render_text(summary: RunSummary) -> str:
    """Render the summary as plain text lines for the log sink."""
    lines = [f"Run state: {summary.run_state} (exit {summary.exit_code})"]
    for i, s in enumerate(summary.steps, start=1):
        detail = f" - {s.reason}" if s.reason else ""
        lines.append(
            f"  {i:>2}. {s.step_id:<32} {s.kind:<9} {s.status.value:<14} "
            f"attempts={s.attempts} duration={format_duration(s.duration_seconds)}{detail}"
        )
    totals = summary.totals()
    lines.append(
        "Totals: " + ", ".join(f"{k}={v}" for k, v in totals.items())
    )
    if summary.fatal_reason:
        where = f" at step {summary.fatal_step}" if summary.fatal_step else ""
        lines.append(f"Fatal{where}: {summary.fatal_reason}")
    return "\n".join(lines)
