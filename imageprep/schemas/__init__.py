"""
imageprep.schemas - Value types shared by the control loop.

StepOutcome -> Checkpoint -> CycleRecord

Lifecycle:
1. StepOutcome: Produced once per step attempt (success, failed, reboot_required, skipped)
2. Checkpoint: Last known outcome and attempt count of a step, persisted after every attempt
3. CycleRecord: One reboot-to-reboot span; bounded by max_cycles
"""

from .outcome import (
    OutcomeKind,
    StepOutcome,
)
from .checkpoint import (
    Checkpoint,
    CycleRecord,
)

__all__ = [
    # Outcomes
    "OutcomeKind",
    "StepOutcome",
    # Persisted state
    "Checkpoint",
    "CycleRecord",
]
