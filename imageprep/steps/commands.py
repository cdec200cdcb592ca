"""
Child-process execution for steps and reboot coordinators.

Every installer, probe and scheduling command goes through CommandRunner so
the whole control loop can be exercised in tests with a fake runner.
"""

import logging
import subprocess
from dataclasses import dataclass
from typing import Optional, Sequence

from imageprep.errors import PermanentError, TransientError


logger = logging.getLogger(__name__)

# Keep the tail of captured output only; installers can be chatty.
OUTPUT_TAIL_CHARS = 4000


@dataclass(frozen=True)
class CommandResult:
    """Result of a finished child process."""

    argv: tuple[str, ...]
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def command_line(self) -> str:
        return subprocess.list2cmdline(self.argv)


class CommandRunner:
    """Runs child processes synchronously and captures their exit code."""

    def __init__(self, default_timeout: Optional[float] = None):
        self.default_timeout = default_timeout

    def run(
        self,
        argv: Sequence[str],
        timeout: Optional[float] = None,
        cwd: Optional[str] = None,
    ) -> CommandResult:
        """
        Run a command and wait for it to exit.

        Args:
            argv: Executable followed by its arguments
            timeout: Seconds to wait before killing the child (None = default)
            cwd: Working directory for the child

        Returns:
            CommandResult with exit code and output tails

        Raises:
            TransientError: If the child did not exit within the timeout
            PermanentError: If the executable does not exist
        """
        argv = tuple(str(a) for a in argv)
        if not argv:
            raise PermanentError("Empty command")
        effective_timeout = timeout if timeout is not None else self.default_timeout
        cmd_str = subprocess.list2cmdline(argv)
        logger.debug(f"Executing command: {cmd_str}")

        try:
            proc = subprocess.run(
                argv,
                cwd=cwd,
                capture_output=True,
                text=True,
                errors="replace",
                timeout=effective_timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise TransientError(
                f"Command timed out after {effective_timeout}s: {cmd_str}"
            ) from e
        except FileNotFoundError as e:
            raise PermanentError(f"Executable not found: {argv[0]}") from e

        result = CommandResult(
            argv=argv,
            exit_code=proc.returncode,
            stdout=(proc.stdout or "")[-OUTPUT_TAIL_CHARS:],
            stderr=(proc.stderr or "")[-OUTPUT_TAIL_CHARS:],
        )
        logger.debug(
            f"Command exited {result.exit_code}: {cmd_str}",
            extra={"event": "command_finished", "metadata": {"exit_code": result.exit_code}},
        )
        return result
