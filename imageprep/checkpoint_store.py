"""
CheckpointStore - durable, host-local record of provisioning progress.

The CheckpointStore manages:
- Checkpoints (one per step, updated after every attempt)
- CycleRecords (one per reboot-to-reboot span)
- The awaiting-reboot flag and the resume-trigger marker

It is the single source of truth read on every resume. Nothing about a run
lives only in memory.

Storage backends:
- In-memory (for testing)
- File-based (a single JSON document, rewritten atomically)
"""

import json
import logging
import os
import socket
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from imageprep.errors import StoreCorrupt
from imageprep.schemas import Checkpoint, CycleRecord, StepOutcome


logger = logging.getLogger(__name__)

STATE_VERSION = 1


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def current_host() -> str:
    """Identity of this machine as recorded in the state file."""
    return socket.gethostname().lower()


@dataclass
class StoreState:
    """Everything the store persists, as one document."""

    host: str
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    checkpoints: dict[str, Checkpoint] = field(default_factory=dict)
    cycles: list[CycleRecord] = field(default_factory=list)
    awaiting_reboot: bool = False
    resume: Optional[dict[str, Any]] = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        return {
            "version": STATE_VERSION,
            "host": self.host,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "awaiting_reboot": self.awaiting_reboot,
            "resume": self.resume,
            "cycles": [c.to_dict() for c in self.cycles],
            "checkpoints": {k: v.to_dict() for k, v in self.checkpoints.items()},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StoreState":
        """Deserialize from dictionary."""
        if not isinstance(data, dict):
            raise ValueError("state document is not a JSON object")
        version = data.get("version")
        if version != STATE_VERSION:
            raise ValueError(f"unsupported state version {version!r}")
        checkpoints = data.get("checkpoints", {})
        if not isinstance(checkpoints, dict):
            raise ValueError("'checkpoints' is not an object")
        return cls(
            host=data["host"],
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
            checkpoints={k: Checkpoint.from_dict(v) for k, v in checkpoints.items()},
            cycles=[CycleRecord.from_dict(c) for c in data.get("cycles", [])],
            awaiting_reboot=bool(data.get("awaiting_reboot", False)),
            resume=data.get("resume"),
        )


class CheckpointStore(ABC):
    """
    Abstract base class for checkpoint storage.

    Implementations only provide _read() and _write(); every public
    operation is a read-modify-write of the whole document, so each call is
    self-contained and nothing is held open between calls.
    """

    def __init__(self, host: Optional[str] = None):
        self.host = host or current_host()

    @abstractmethod
    def _read(self) -> StoreState:
        """
        Read the persisted state.

        Returns:
            The stored state, or a fresh one if nothing is stored yet

        Raises:
            StoreCorrupt: If stored state exists but cannot be parsed
        """
        pass

    @abstractmethod
    def _write(self, state: StoreState) -> None:
        """
        Persist the state durably before returning.

        Args:
            state: The full state document
        """
        pass

    def _fresh_state(self) -> StoreState:
        return StoreState(host=self.host)

    def _commit(self, state: StoreState) -> None:
        state.updated_at = _utcnow()
        self._write(state)

    # ---- checkpoints ----

    def load(self) -> dict[str, Checkpoint]:
        """
        Load all checkpoints keyed by step_id.

        Raises:
            StoreCorrupt: If the persisted record cannot be parsed. Callers must
                treat this as fatal rather than starting over.
        """
        return dict(self._read().checkpoints)

    def get(self, step_id: str) -> Optional[Checkpoint]:
        """Get the checkpoint of a single step."""
        return self._read().checkpoints.get(step_id)

    def record(
        self,
        step_id: str,
        outcome: StepOutcome,
        attempt_number: int,
        duration_seconds: float = 0.0,
        cycle_number: Optional[int] = None,
    ) -> Checkpoint:
        """
        Record one attempt of a step and flush before returning.

        Args:
            step_id: The step identifier
            outcome: Outcome of the attempt
            attempt_number: 1-indexed attempt number across all invocations
            duration_seconds: Time spent on the attempt
            cycle_number: Cycle the attempt ran in; the step is added to that
                cycle's steps_attempted in the same write

        Returns:
            The updated Checkpoint
        """
        if attempt_number < 1:
            raise ValueError("attempt_number must be >= 1")
        state = self._read()
        previous = state.checkpoints.get(step_id) or Checkpoint(step_id=step_id)
        checkpoint = previous.advance(outcome, attempt_number, duration_seconds, cycle_number)
        state.checkpoints[step_id] = checkpoint

        if cycle_number is not None:
            for i, cycle in enumerate(state.cycles):
                if cycle.cycle_number == cycle_number:
                    state.cycles[i] = cycle.with_step(step_id)

        self._commit(state)
        logger.debug(
            f"Recorded {step_id} attempt {attempt_number}: {outcome}",
            extra={"step": step_id, "event": "checkpoint_recorded", "metadata": checkpoint.to_dict()},
        )
        return checkpoint

    def reset(self, step_id: str) -> bool:
        """
        Forget a step's checkpoint so the next run executes it again.

        This bypasses idempotency protection and is logged as a warning.

        Returns:
            True if a checkpoint was removed
        """
        state = self._read()
        if step_id not in state.checkpoints:
            return False
        previous = state.checkpoints.pop(step_id)
        self._commit(state)
        logger.warning(
            f"Checkpoint for step {step_id} reset by operator (was: {previous.last_outcome})",
            extra={"step": step_id, "event": "checkpoint_reset", "metadata": previous.to_dict()},
        )
        return True

    def reset_all(self) -> int:
        """
        Discard all checkpoints, cycles and reboot markers.

        Returns:
            Number of checkpoints removed
        """
        state = self._read()
        removed = len(state.checkpoints)
        self._write(self._fresh_state())
        logger.warning(
            f"All {removed} checkpoints reset by operator",
            extra={"event": "checkpoint_reset_all", "metadata": {"removed": removed}},
        )
        return removed

    # ---- cycles ----

    def cycles(self) -> list[CycleRecord]:
        return list(self._read().cycles)

    def current_cycle(self) -> Optional[CycleRecord]:
        cycles = self._read().cycles
        return cycles[-1] if cycles else None

    def mark_cycle(self, cycle_number: int) -> CycleRecord:
        """
        Persist the current cycle number.

        Marking the cycle that is already current is a no-op; marking the
        next number opens a new cycle and clears the awaiting-reboot flag.

        Raises:
            ValueError: If cycle_number skips ahead or goes backwards
        """
        state = self._read()
        last = state.cycles[-1] if state.cycles else None
        if last is not None and last.cycle_number == cycle_number:
            return last

        expected = (last.cycle_number + 1) if last else 1
        if cycle_number != expected:
            raise ValueError(f"Cannot mark cycle {cycle_number}; next cycle is {expected}")

        cycle = CycleRecord(cycle_number=cycle_number)
        state.cycles.append(cycle)
        state.awaiting_reboot = False
        self._commit(state)
        logger.info(
            f"Cycle {cycle_number} started",
            extra={"event": "cycle_started", "metadata": cycle.to_dict()},
        )
        return cycle

    def awaiting_reboot(self) -> bool:
        return self._read().awaiting_reboot

    def mark_awaiting_reboot(self) -> None:
        """Flag that the current cycle ended by handing off to a reboot."""
        state = self._read()
        state.awaiting_reboot = True
        if state.cycles:
            state.cycles[-1] = replace(state.cycles[-1], ended_with_reboot=True)
        self._commit(state)

    def clear_awaiting_reboot(self) -> None:
        """Withdraw the reboot hand-off; the next invocation continues the current cycle."""
        state = self._read()
        if not state.awaiting_reboot:
            return
        state.awaiting_reboot = False
        if state.cycles:
            state.cycles[-1] = replace(state.cycles[-1], ended_with_reboot=False)
        self._commit(state)
        logger.warning(
            "Reboot hand-off withdrawn; the current cycle stays open",
            extra={"event": "reboot_withdrawn"},
        )

    # ---- resume trigger marker ----

    def resume_scheduled(self) -> Optional[dict[str, Any]]:
        """The registered resume trigger, if one is pending."""
        return self._read().resume

    def mark_resume_scheduled(self, invocation: list[str], mechanism: str) -> None:
        state = self._read()
        state.resume = {
            "invocation": list(invocation),
            "mechanism": mechanism,
            "scheduled_at": _utcnow().isoformat(),
        }
        self._commit(state)

    def clear_resume_scheduled(self) -> None:
        state = self._read()
        if state.resume is None:
            return
        state.resume = None
        self._commit(state)

    def host_of_record(self) -> str:
        return self._read().host


class InMemoryCheckpointStore(CheckpointStore):
    """
    In-memory implementation of CheckpointStore for testing.

    State round-trips through JSON on every write so tests exercise the
    same serialization as the file store.
    """

    def __init__(self, host: Optional[str] = None):
        super().__init__(host)
        self._document: Optional[str] = None

    def _read(self) -> StoreState:
        if self._document is None:
            return self._fresh_state()
        try:
            return StoreState.from_dict(json.loads(self._document))
        except (json.JSONDecodeError, AttributeError, KeyError, TypeError, ValueError) as e:
            raise StoreCorrupt("<memory>", str(e)) from e

    def _write(self, state: StoreState) -> None:
        self._document = json.dumps(state.to_dict())

    def clear(self) -> None:
        """Clear all stored data (for testing)."""
        self._document = None


class FileCheckpointStore(CheckpointStore):
    """
    File-based implementation of CheckpointStore.

    Stores the whole state as one JSON document:
        {
          "version": 1,
          "host": "...",
          "awaiting_reboot": false,
          "resume": null,
          "cycles": [...],
          "checkpoints": {"<step_id>": {...}}
        }

    Writes go to a temp file in the same directory, are fsynced, and then
    renamed over the original, so a crash leaves either the old or the new
    document. A document written by a different host is archived and ignored.
    """

    def __init__(self, path: Path | str, host: Optional[str] = None):
        super().__init__(host)
        self.path = Path(path)

    def _read(self) -> StoreState:
        if not self.path.exists():
            return self._fresh_state()

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
            state = StoreState.from_dict(data)
        except (json.JSONDecodeError, UnicodeDecodeError, AttributeError, KeyError, TypeError, ValueError) as e:
            raise StoreCorrupt(str(self.path), str(e)) from e

        if state.host != self.host:
            self._archive_foreign(state.host)
            return self._fresh_state()
        return state

    def _archive_foreign(self, other_host: str) -> Path:
        stamp = _utcnow().strftime("%Y%m%dT%H%M%SZ")
        archived = self.path.with_name(f"{self.path.name}.{other_host}.{stamp}.archived")
        os.replace(self.path, archived)
        logger.warning(
            f"State file {self.path} was written by host {other_host}, not {self.host}; "
            f"archived to {archived.name} and starting fresh",
            extra={"event": "state_archived", "metadata": {"other_host": other_host}},
        )
        return archived

    def _write(self, state: StoreState) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)

        # Write to temp file first (atomic update pattern)
        fd, temp_path = tempfile.mkstemp(
            dir=self.path.parent,
            prefix=f".{self.path.name}-",
            suffix=".tmp",
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(state.to_dict(), f, indent=2)
                f.flush()
                os.fsync(f.fileno())

            # Atomic rename
            os.replace(temp_path, self.path)
        except BaseException:
            # Clean up temp file on error
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise

        self._fsync_directory()

    def _fsync_directory(self) -> None:
        # Makes the rename itself durable; directories cannot be opened on Windows
        if os.name != "posix":
            return
        dir_fd = os.open(self.path.parent, os.O_RDONLY)
        try:
            os.fsync(dir_fd)
        finally:
            os.close(dir_fd)
