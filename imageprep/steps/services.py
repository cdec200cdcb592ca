"""
Service status probes.

Normalizes the platform's service manager into three states:
"running", "stopped" and "missing".

- Windows: `sc query <name>` (exit 1060 = service does not exist)
- Elsewhere: `systemctl is-active <name>` / `systemctl cat <name>`
"""

import logging
import re
import sys
import time
from typing import Callable, Optional

from imageprep.errors import TransientError
from imageprep.steps.commands import CommandRunner
from imageprep.steps.descriptors import VerifyDescriptor


logger = logging.getLogger(__name__)

SC_SERVICE_DOES_NOT_EXIST = 1060
SC_STATE_PATTERN = re.compile(r"STATE\s*:\s*\d+\s+(\w+)")


class ServiceProbe:
    """Reads service status through the platform's service manager."""

    def __init__(self, runner: Optional[CommandRunner] = None, platform: Optional[str] = None):
        self.runner = runner or CommandRunner()
        self.platform = platform or sys.platform

    @property
    def is_windows(self) -> bool:
        return self.platform.startswith("win")

    def status(self, service: str, timeout: Optional[float] = 30) -> str:
        """
        Get normalized status of a service.

        Args:
            service: Service name
            timeout: Seconds to wait for the service manager

        Returns:
            "running", "stopped" or "missing"
        """
        if self.is_windows:
            return self._status_windows(service, timeout)
        return self._status_systemd(service, timeout)

    def _status_windows(self, service: str, timeout: Optional[float]) -> str:
        result = self.runner.run(["sc", "query", service], timeout=timeout)
        if result.exit_code == SC_SERVICE_DOES_NOT_EXIST:
            return "missing"
        match = SC_STATE_PATTERN.search(result.stdout)
        if not match:
            return "stopped"
        return "running" if match.group(1).upper() == "RUNNING" else "stopped"

    def _status_systemd(self, service: str, timeout: Optional[float]) -> str:
        result = self.runner.run(["systemctl", "is-active", service], timeout=timeout)
        state = result.stdout.strip()
        if state == "active":
            return "running"
        # is-active prints "inactive" for unknown units too
        exists = self.runner.run(["systemctl", "cat", service], timeout=timeout)
        return "stopped" if exists.ok else "missing"

    def matches(self, descriptor: VerifyDescriptor, timeout: Optional[float] = 30) -> bool:
        """Check the service once against the expected status."""
        return self.status(descriptor.service, timeout=timeout) == descriptor.status

    def wait_for(
        self,
        descriptor: VerifyDescriptor,
        timeout: Optional[float] = 30,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> str:
        """
        Poll until the service reaches the expected status.

        Raises:
            TransientError: If the status still differs after wait_seconds
        """
        deadline = clock() + descriptor.wait_seconds
        while True:
            current = self.status(descriptor.service, timeout=timeout)
            if current == descriptor.status:
                return current
            if clock() >= deadline:
                raise TransientError(
                    f"Service {descriptor.service} is {current}, expected {descriptor.status}"
                )
            logger.debug(
                f"Waiting for service {descriptor.service}: {current} -> {descriptor.status}"
            )
            sleep(descriptor.poll_interval)
