"""
Reboot coordination - restart the host and resume the orchestrator afterwards.

A coordinator registers a trigger that re-runs the orchestrator once after
the next boot, then initiates the restart. The ordering is always:

    record checkpoint -> schedule_resume() -> restart()

Mechanisms:
- scheduled_task: one-shot Windows scheduled task (ONSTART, SYSTEM)
- run_once: HKLM RunOnce value (fires at the next administrator logon)
- systemd: oneshot unit on Linux images
- manual: register nothing and do not restart; the caller reboots and re-invokes

The trigger is made one-shot by clear_resume(), which every invocation calls
before doing any work.
"""

import logging
import shlex
import subprocess
import sys
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from imageprep.checkpoint_store import CheckpointStore
from imageprep.errors import PermanentError
from imageprep.steps.commands import CommandResult, CommandRunner


logger = logging.getLogger(__name__)

DEFAULT_TASK_NAME = "imageprep-resume"
DEFAULT_DELAY_SECONDS = 10
# schtasks, reg, systemctl and shutdown return promptly; a hang is an error
DEFAULT_COMMAND_TIMEOUT = 120
RUN_ONCE_KEY = r"HKLM\SOFTWARE\Microsoft\Windows\CurrentVersion\RunOnce"
SYSTEMD_UNIT_DIR = Path("/etc/systemd/system")

MECHANISMS = ("auto", "scheduled_task", "run_once", "systemd", "manual")


class RebootCoordinator(ABC):
    """
    Abstract base class for reboot coordinators.

    Subclasses implement the platform mechanism; this class keeps the
    resume marker in the checkpoint store so that scheduling twice before a
    reboot registers one trigger.
    """

    mechanism = "abstract"

    def __init__(
        self,
        store: CheckpointStore,
        runner: Optional[CommandRunner] = None,
        task_name: str = DEFAULT_TASK_NAME,
        delay_seconds: int = DEFAULT_DELAY_SECONDS,
        command_timeout: float = DEFAULT_COMMAND_TIMEOUT,
    ):
        self.store = store
        self.runner = runner or CommandRunner()
        self.command_timeout = command_timeout
        self.task_name = task_name
        self.delay_seconds = delay_seconds

    @abstractmethod
    def _register(self, invocation: list[str]) -> None:
        """Register the resume trigger. Re-registering must replace, not duplicate."""
        pass

    @abstractmethod
    def _unregister(self) -> None:
        """Remove the resume trigger if it is still present."""
        pass

    @abstractmethod
    def _restart(self) -> None:
        """Initiate the host restart."""
        pass

    def schedule_resume(self, invocation: list[str]) -> bool:
        """
        Register a trigger that re-runs `invocation` once after the next boot.

        Args:
            invocation: argv that re-runs the orchestrator

        Returns:
            True if a trigger was registered, False if an identical one was already pending

        Raises:
            PermanentError: If the platform refused the registration
        """
        existing = self.store.resume_scheduled()
        if existing and existing.get("invocation") == list(invocation) and existing.get("mechanism") == self.mechanism:
            logger.info(
                f"Resume already scheduled via {self.mechanism}; not registering again",
                extra={"event": "resume_already_scheduled"},
            )
            return False

        self._register(list(invocation))
        self.store.mark_resume_scheduled(list(invocation), self.mechanism)
        logger.info(
            f"Resume scheduled via {self.mechanism}: {subprocess.list2cmdline(invocation)}",
            extra={"event": "resume_scheduled", "metadata": {"mechanism": self.mechanism}},
        )
        return True

    def restart(self) -> None:
        """Initiate the restart. Only call after schedule_resume() returned."""
        logger.warning(
            f"Restarting host via {self.mechanism} in {self.delay_seconds}s",
            extra={"event": "restart_initiated", "metadata": {"mechanism": self.mechanism}},
        )
        self._restart()

    def clear_resume(self) -> None:
        """Remove a pending trigger left by the previous cycle."""
        if self.store.resume_scheduled() is None:
            return
        self._unregister()
        self.store.clear_resume_scheduled()
        logger.info(
            f"Cleared {self.mechanism} resume trigger",
            extra={"event": "resume_cleared"},
        )

    def _run(self, argv: list[str]) -> CommandResult:
        return self.runner.run(argv, timeout=self.command_timeout)

    def _check(self, argv: list[str], what: str) -> None:
        result = self._run(argv)
        if not result.ok:
            detail = (result.stderr or result.stdout).strip()
            raise PermanentError(f"Could not {what} (exit {result.exit_code}): {detail}")


class ScheduledTaskRebootCoordinator(RebootCoordinator):
    """One-shot Windows scheduled task that runs at startup as SYSTEM."""

    mechanism = "scheduled_task"

    def _register(self, invocation: list[str]) -> None:
        self._check(
            [
                "schtasks", "/Create",
                "/TN", self.task_name,
                "/TR", subprocess.list2cmdline(invocation),
                "/SC", "ONSTART",
                "/RU", "SYSTEM",
                "/RL", "HIGHEST",
                "/F",
            ],
            f"create scheduled task {self.task_name}",
        )

    def _unregister(self) -> None:
        result = self._run(["schtasks", "/Delete", "/TN", self.task_name, "/F"])
        if not result.ok:
            logger.debug(f"Scheduled task {self.task_name} was not present")

    def _restart(self) -> None:
        self._check(
            [
                "shutdown", "/r",
                "/t", str(self.delay_seconds),
                "/c", "imageprep: resuming provisioning after reboot",
                "/d", "p:4:1",
            ],
            "initiate restart",
        )


class RunOnceRebootCoordinator(RebootCoordinator):
    """HKLM RunOnce value; Windows deletes it before running it."""

    mechanism = "run_once"

    def _register(self, invocation: list[str]) -> None:
        self._check(
            [
                "reg", "add", RUN_ONCE_KEY,
                "/v", self.task_name,
                "/t", "REG_SZ",
                "/d", subprocess.list2cmdline(invocation),
                "/f",
            ],
            f"write RunOnce value {self.task_name}",
        )

    def _unregister(self) -> None:
        result = self._run(["reg", "delete", RUN_ONCE_KEY, "/v", self.task_name, "/f"])
        if not result.ok:
            logger.debug(f"RunOnce value {self.task_name} was not present")

    def _restart(self) -> None:
        self._check(
            ["shutdown", "/r", "/t", str(self.delay_seconds), "/d", "p:4:1"],
            "initiate restart",
        )


class SystemdRebootCoordinator(RebootCoordinator):
    """Oneshot systemd unit enabled for the next boot."""

    mechanism = "systemd"

    def __init__(self, store: CheckpointStore, unit_dir: Path = SYSTEMD_UNIT_DIR, **kwargs):
        super().__init__(store, **kwargs)
        self.unit_dir = Path(unit_dir)

    @property
    def unit_name(self) -> str:
        return f"{self.task_name}.service"

    @property
    def unit_path(self) -> Path:
        return self.unit_dir / self.unit_name

    def render_unit(self, invocation: list[str]) -> str:
        exec_start = " ".join(shlex.quote(part) for part in invocation)
        return (
            "[Unit]\n"
            "Description=imageprep: resume provisioning after reboot\n"
            "Wants=network-online.target\n"
            "After=network-online.target\n"
            "\n"
            "[Service]\n"
            "Type=oneshot\n"
            f"ExecStart={exec_start}\n"
            "\n"
            "[Install]\n"
            "WantedBy=multi-user.target\n"
        )

    def _register(self, invocation: list[str]) -> None:
        self.unit_dir.mkdir(parents=True, exist_ok=True)
        self.unit_path.write_text(self.render_unit(invocation))
        self._check(["systemctl", "daemon-reload"], "reload systemd")
        self._check(["systemctl", "enable", self.unit_name], f"enable {self.unit_name}")

    def _unregister(self) -> None:
        self._run(["systemctl", "disable", self.unit_name])
        if self.unit_path.exists():
            self.unit_path.unlink()
            self._run(["systemctl", "daemon-reload"])

    def _restart(self) -> None:
        self._check(["systemctl", "reboot"], "initiate restart")


class ManualRebootCoordinator(RebootCoordinator):
    """
    Registers nothing and never restarts.

    Used with --no-reboot, when the calling automation (e.g. a Packer
    windows-restart provisioner) owns the reboot and re-invokes the run.
    """

    mechanism = "manual"

    def _register(self, invocation: list[str]) -> None:
        logger.info(
            f"Reboot the host, then re-run: {subprocess.list2cmdline(invocation)}",
            extra={"event": "manual_resume_required"},
        )

    def _unregister(self) -> None:
        pass

    def _restart(self) -> None:
        logger.info("Automatic restart disabled; leaving the reboot to the caller")


def create_coordinator(
    mechanism: str,
    store: CheckpointStore,
    runner: Optional[CommandRunner] = None,
    task_name: str = DEFAULT_TASK_NAME,
    delay_seconds: int = DEFAULT_DELAY_SECONDS,
    platform: Optional[str] = None,
) -> RebootCoordinator:
    """
    Build the coordinator for a mechanism name.

    Args:
        mechanism: One of MECHANISMS; "auto" picks scheduled_task on Windows,
            systemd on Linux and manual elsewhere
        store: Checkpoint store that holds the resume marker
        runner: Command runner (shared with steps)
        task_name: Task / value / unit name of the trigger
        delay_seconds: Grace period before the restart
        platform: Override of sys.platform (for tests)

    Returns:
        RebootCoordinator
    """
    platform = platform or sys.platform
    if mechanism == "auto":
        if platform.startswith("win"):
            mechanism = "scheduled_task"
        elif platform.startswith("linux"):
            mechanism = "systemd"
        else:
            mechanism = "manual"

    classes = {
        "scheduled_task": ScheduledTaskRebootCoordinator,
        "run_once": RunOnceRebootCoordinator,
        "systemd": SystemdRebootCoordinator,
        "manual": ManualRebootCoordinator,
    }
    if mechanism not in classes:
        raise ValueError(f"Unknown reboot mechanism: {mechanism} (expected one of {', '.join(MECHANISMS)})")
    return classes[mechanism](store, runner=runner, task_name=task_name, delay_seconds=delay_seconds)
