"""
DescriptorStep - a provisioning step assembled from manifest descriptors.

The step body never knows vendor specifics: it downloads what the download
descriptor says, runs what the invocation descriptor says, interprets the
exit code through the declared code sets, and verifies the declared service.
"""

import logging
from typing import Callable, Optional

from imageprep.errors import PermanentError
from imageprep.schemas import OutcomeKind, StepOutcome
from imageprep.steps.base import Step, StepKind
from imageprep.steps.commands import CommandResult, CommandRunner
from imageprep.steps.descriptors import InvocationDescriptor, StepDescriptors
from imageprep.steps.download import fetch
from imageprep.steps.services import ServiceProbe


logger = logging.getLogger(__name__)

# Short timeout for probes that do not declare one
PROBE_TIMEOUT_SECONDS = 60


def interpret_exit_code(invocation: InvocationDescriptor, result: CommandResult) -> StepOutcome:
    """
    Map an installer exit code onto a StepOutcome.

    Args:
        invocation: Descriptor carrying the accepted code sets
        result: The finished child process

    Returns:
        Success, RebootRequired or Failed (retryable only for retryable_codes)
    """
    code = result.exit_code
    if code in invocation.success_codes:
        return StepOutcome.success()
    if code in invocation.reboot_codes:
        return StepOutcome.reboot_required(f"{invocation.executable} exited {code}")

    detail = (result.stderr or result.stdout).strip().splitlines()
    tail = f": {detail[-1]}" if detail else ""
    reason = f"{invocation.executable} exited {code}{tail}"
    return StepOutcome.failed(reason, retryable=code in invocation.retryable_codes)


class DescriptorStep(Step):
    """
    Step driven by check/download/install/verify descriptors.

    Behavior by kind:
    - detect: succeeds when the check (or verify probe) holds, fails permanently otherwise
    - install / configure: download -> run invocation -> verify service
    - verify: poll the service until it reaches the expected status
    """

    def __init__(
        self,
        step_id: str,
        kind: StepKind,
        descriptors: StepDescriptors,
        runner: Optional[CommandRunner] = None,
        probe: Optional[ServiceProbe] = None,
        fetcher: Callable = fetch,
        **kwargs,
    ):
        super().__init__(step_id, kind, **kwargs)
        self.descriptors = descriptors
        self.runner = runner or CommandRunner()
        self.probe = probe or ServiceProbe(self.runner)
        self._fetch = fetcher

    @property
    def _probe_timeout(self) -> float:
        if self.timeout_seconds is None:
            return PROBE_TIMEOUT_SECONDS
        return min(self.timeout_seconds, PROBE_TIMEOUT_SECONDS)

    def idempotent_check(self) -> bool:
        check = self.descriptors.check
        verify = self.descriptors.verify

        if check is not None:
            result = self.runner.run(check.command, timeout=self._probe_timeout)
            return result.exit_code in check.success_codes

        if self.kind == StepKind.VERIFY:
            # Verification is the step itself
            return False

        if verify is not None and self.kind in (StepKind.INSTALL, StepKind.CONFIGURE, StepKind.DETECT):
            return self.probe.matches(verify, timeout=self._probe_timeout)

        return False

    def execute(self) -> StepOutcome:
        if self.kind == StepKind.DETECT:
            return self._execute_detect()
        if self.kind == StepKind.VERIFY:
            return self._verify()
        return self._execute_install()

    def _execute_detect(self) -> StepOutcome:
        # Only reached when idempotent_check() returned False
        return StepOutcome.failed("desired state not detected", retryable=False)

    def _verify(self) -> StepOutcome:
        verify = self.descriptors.verify
        if verify is None:
            raise PermanentError(f"Step {self.step_id} has no verify descriptor")
        self.probe.wait_for(verify, timeout=self._probe_timeout)
        logger.info(
            f"Service {verify.service} is {verify.status}",
            extra={"step": self.step_id, "event": "service_verified"},
        )
        return StepOutcome.success()

    def _execute_install(self) -> StepOutcome:
        download_path: Optional[str] = None
        if self.descriptors.download is not None:
            download_path = str(self._fetch(self.descriptors.download, timeout=self.timeout_seconds))

        invocation = self.descriptors.install
        if invocation is not None:
            result = self.runner.run(
                invocation.argv(download_path),
                timeout=self.timeout_seconds,
                cwd=invocation.cwd,
            )
            outcome = interpret_exit_code(invocation, result)
            logger.info(
                f"{result.command_line} exited {result.exit_code}",
                extra={
                    "step": self.step_id,
                    "event": "installer_exited",
                    "metadata": {"exit_code": result.exit_code, "outcome": outcome.kind.value},
                },
            )
            if outcome.kind != OutcomeKind.SUCCESS:
                return outcome

        if self.descriptors.verify is not None:
            return self._verify()
        return StepOutcome.success()
