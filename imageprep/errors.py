"""
Error classes for imageprep provisioning runs.

These error types enable retry classification at the step boundary:
- TransientError: Safe to retry (locked file, service still starting, download hiccup)
- PermanentError: Do not retry (unsupported OS, missing prerequisite, unknown exit code)
- RebootPending: Not a failure - the step needs a host restart to finish

Step bodies raise these errors to signal retry behavior.
The orchestrator never sees a raw exception: Step.run_attempt() classifies
everything into a StepOutcome before it leaves the step.

StoreCorrupt is infrastructure-level and always fatal.
"""

import subprocess
from typing import Optional

import requests


class ImagePrepError(Exception):
    """Base exception for imageprep."""
    pass


class TransientError(ImagePrepError):
    """
    Transient error - safe to retry.

    Examples:
    - File locked by another installer
    - Service momentarily unavailable
    - Child process timed out
    - Download connection reset

    The orchestrator will retry steps that raise TransientError
    according to the configured retry policy.
    """
    pass


class PermanentError(ImagePrepError):
    """
    Permanent error - do not retry.

    Examples:
    - Unsupported OS version
    - Missing prerequisite feature
    - Installer exit code outside every accepted set
    - Executable not found

    The orchestrator gives up on the step immediately.
    """
    pass


class RebootPending(ImagePrepError):
    """
    Raised by a step body when the host must restart before the step can finish.

    Mapped to a RebootRequired outcome; it is an expected terminal state,
    not a failure.
    """
    pass


class StoreCorrupt(ImagePrepError):
    """The checkpoint file exists but cannot be parsed."""

    def __init__(self, path: str, message: str):
        self.path = path
        super().__init__(f"Checkpoint store {path} is corrupt: {message}")


class ManifestError(ImagePrepError):
    """The step manifest is missing or invalid."""

    def __init__(self, message: str, step_id: Optional[str] = None):
        self.step_id = step_id
        if step_id:
            message = f"step '{step_id}': {message}"
        super().__init__(message)


class CycleBudgetExhausted(ImagePrepError):
    """A reboot was requested but the run already used max_cycles cycles."""

    def __init__(self, cycle_number: int, max_cycles: int):
        self.cycle_number = cycle_number
        self.max_cycles = max_cycles
        super().__init__(
            f"Cycle budget exhausted: cycle {cycle_number} of {max_cycles} "
            f"requested another reboot"
        )


_TRANSIENT_TYPES = (
    TransientError,
    TimeoutError,
    subprocess.TimeoutExpired,
    ConnectionError,
    PermissionError,
    requests.ConnectionError,
    requests.Timeout,
)


def classify_exception(exc: BaseException) -> tuple[str, bool]:
    """
    Map an exception raised inside a step to (reason, retryable).

    Args:
        exc: The exception caught at the step boundary

    Returns:
        Tuple of human-readable reason and whether a retry may help
    """
    reason = str(exc) or exc.__class__.__name__
    if isinstance(exc, PermanentError):
        return reason, False
    if isinstance(exc, _TRANSIENT_TYPES):
        return reason, True
    return f"{exc.__class__.__name__}: {reason}", False
