"""Tests for provisioning steps.

Tests cover:
- Step boundary classification (check() and run_attempt())
- FunctionStep
- Exit-code interpretation
- DescriptorStep for every kind
- ServiceProbe on both platforms
- CommandRunner against real child processes
"""

import sys
from pathlib import Path

import pytest

from imageprep.errors import PermanentError, RebootPending, TransientError
from imageprep.schemas import OutcomeKind, StepOutcome
from imageprep.steps import (
    CheckDescriptor,
    CommandResult,
    CommandRunner,
    DescriptorStep,
    DownloadDescriptor,
    FunctionStep,
    InvocationDescriptor,
    ServiceProbe,
    StepDescriptors,
    StepKind,
    VerifyDescriptor,
    interpret_exit_code,
)


MSIEXEC = InvocationDescriptor(executable="msiexec.exe", args=("/i", "{download_path}", "/qn", "/norestart"))


def result(code: int, stdout: str = "", stderr: str = "") -> CommandResult:
    return CommandResult(argv=("x",), exit_code=code, stdout=stdout, stderr=stderr)


def no_sleep(_seconds: float) -> None:
    pass


# =============================================================================
# Step boundary
# =============================================================================


class TestStepBoundary:
    """Tests for exception classification at the step boundary."""

    def test_action_returning_none_is_success(self):
        step = FunctionStep("s", StepKind.CONFIGURE, action=lambda: None)
        assert step.run_attempt() == StepOutcome.success()

    def test_action_outcome_passes_through(self):
        outcome = StepOutcome.failed("exit 1603", retryable=False)
        step = FunctionStep("s", StepKind.INSTALL, action=lambda: outcome)
        assert step.run_attempt() == outcome

    def test_transient_error_is_retryable_failure(self):
        def action():
            raise TransientError("file is locked")

        outcome = FunctionStep("s", StepKind.INSTALL, action=action).run_attempt()
        assert outcome.kind == OutcomeKind.FAILED
        assert outcome.retryable
        assert outcome.reason == "file is locked"

    def test_unexpected_exception_is_permanent_failure(self):
        def action():
            raise KeyError("oops")

        outcome = FunctionStep("s", StepKind.INSTALL, action=action).run_attempt()
        assert outcome.kind == OutcomeKind.FAILED
        assert not outcome.retryable

    def test_reboot_pending_maps_to_reboot_required(self):
        def action():
            raise RebootPending("pending file rename operations")

        outcome = FunctionStep("s", StepKind.INSTALL, action=action).run_attempt()
        assert outcome == StepOutcome.reboot_required("pending file rename operations")

    def test_wrong_return_type_is_permanent_failure(self):
        outcome = FunctionStep("s", StepKind.INSTALL, action=lambda: True).run_attempt()
        assert outcome.kind == OutcomeKind.FAILED
        assert "expected StepOutcome" in outcome.reason

    def test_check_without_probe_is_false(self):
        assert FunctionStep("s", StepKind.INSTALL, action=lambda: None).check() is False

    def test_check_exception_becomes_failed_outcome(self):
        def probe():
            raise PermissionError("access denied")

        outcome = FunctionStep("s", StepKind.DETECT, action=lambda: None, check=probe).check()
        assert isinstance(outcome, StepOutcome)
        assert outcome.retryable
        assert outcome.reason.startswith("idempotent check failed")

    def test_invalid_step_parameters(self):
        with pytest.raises(ValueError):
            FunctionStep("", StepKind.INSTALL, action=lambda: None)
        with pytest.raises(ValueError):
            FunctionStep("s", StepKind.INSTALL, action=lambda: None, max_attempts=0)


# =============================================================================
# Exit codes
# =============================================================================


class TestInterpretExitCode:
    """Tests for interpret_exit_code()."""

    def test_success_code(self):
        assert interpret_exit_code(MSIEXEC, result(0)) == StepOutcome.success()

    @pytest.mark.parametrize("code", [3010, 1641])
    def test_reboot_codes(self, code):
        assert interpret_exit_code(MSIEXEC, result(code)).kind == OutcomeKind.REBOOT_REQUIRED

    def test_retryable_code(self):
        outcome = interpret_exit_code(MSIEXEC, result(1618))
        assert outcome.kind == OutcomeKind.FAILED
        assert outcome.retryable

    def test_unknown_code_is_permanent_with_output_tail(self):
        outcome = interpret_exit_code(MSIEXEC, result(1603, stderr="line one\nFatal error during installation."))
        assert not outcome.retryable
        assert outcome.reason == "msiexec.exe exited 1603: Fatal error during installation."

    def test_custom_success_codes(self):
        invocation = InvocationDescriptor(executable="setup.exe", success_codes=(0, 1))
        assert interpret_exit_code(invocation, result(1)) == StepOutcome.success()


# =============================================================================
# DescriptorStep
# =============================================================================


class FakeProbe:
    def __init__(self, matches: bool = True, wait_error: Exception = None):
        self._matches = matches
        self._wait_error = wait_error
        self.waited = []

    def matches(self, descriptor, timeout=None):
        return self._matches

    def wait_for(self, descriptor, timeout=None):
        self.waited.append(descriptor.service)
        if self._wait_error:
            raise self._wait_error
        return descriptor.status


class TestDescriptorStep:
    """Tests for DescriptorStep."""

    def test_check_command_decides_idempotency(self, fake_runner):
        fake_runner.add(["powershell"], 0)
        step = DescriptorStep(
            "detect-agent",
            StepKind.DETECT,
            StepDescriptors(check=CheckDescriptor(command=("powershell", "-Command", "Get-Service X"))),
            runner=fake_runner,
        )
        assert step.check() is True

    def test_detect_not_present_fails_permanently(self, fake_runner):
        fake_runner.add(["powershell"], 1)
        step = DescriptorStep(
            "detect-agent",
            StepKind.DETECT,
            StepDescriptors(check=CheckDescriptor(command=("powershell",))),
            runner=fake_runner,
        )
        assert step.check() is False
        outcome = step.run_attempt()
        assert outcome.kind == OutcomeKind.FAILED
        assert not outcome.retryable

    def test_install_downloads_then_runs_installer(self, fake_runner, tmp_path):
        fake_runner.add(["msiexec.exe"], 0)
        fetched = []

        def fetcher(descriptor, timeout=None):
            fetched.append(descriptor.url)
            return Path(descriptor.path)

        dest = tmp_path / "agent.msi"
        step = DescriptorStep(
            "install-agent",
            StepKind.INSTALL,
            StepDescriptors(
                download=DownloadDescriptor(path=str(dest), url="https://example.invalid/agent.msi"),
                install=MSIEXEC,
            ),
            runner=fake_runner,
            fetcher=fetcher,
        )

        assert step.run_attempt() == StepOutcome.success()
        assert fetched == ["https://example.invalid/agent.msi"]
        assert fake_runner.calls == [("msiexec.exe", "/i", str(dest), "/qn", "/norestart")]

    def test_install_reboot_code(self, fake_runner):
        fake_runner.add(["msiexec.exe"], 3010)
        step = DescriptorStep(
            "install-agent",
            StepKind.INSTALL,
            StepDescriptors(install=MSIEXEC),
            runner=fake_runner,
        )
        assert step.run_attempt().kind == OutcomeKind.REBOOT_REQUIRED

    def test_install_then_verify_service(self, fake_runner):
        fake_runner.add(["msiexec.exe"], 0)
        probe = FakeProbe(matches=False)
        step = DescriptorStep(
            "install-agent",
            StepKind.INSTALL,
            StepDescriptors(install=MSIEXEC, verify=VerifyDescriptor(service="AgentSvc")),
            runner=fake_runner,
            probe=probe,
        )

        assert step.check() is False
        assert step.run_attempt() == StepOutcome.success()
        assert probe.waited == ["AgentSvc"]

    def test_verify_probe_is_idempotent_check_for_install(self, fake_runner):
        step = DescriptorStep(
            "install-agent",
            StepKind.INSTALL,
            StepDescriptors(install=MSIEXEC, verify=VerifyDescriptor(service="AgentSvc")),
            runner=fake_runner,
            probe=FakeProbe(matches=True),
        )
        assert step.check() is True
        assert fake_runner.calls == []

    def test_verify_step_timeout_is_retryable(self, fake_runner):
        step = DescriptorStep(
            "verify-agent",
            StepKind.VERIFY,
            StepDescriptors(verify=VerifyDescriptor(service="AgentSvc")),
            runner=fake_runner,
            probe=FakeProbe(wait_error=TransientError("Service AgentSvc is stopped, expected running")),
        )
        assert step.check() is False
        outcome = step.run_attempt()
        assert outcome.kind == OutcomeKind.FAILED
        assert outcome.retryable

    def test_download_failure_is_retryable(self, fake_runner, tmp_path):
        def fetcher(descriptor, timeout=None):
            raise TransientError("All download sources failed for agent.msi")

        step = DescriptorStep(
            "install-agent",
            StepKind.INSTALL,
            StepDescriptors(
                download=DownloadDescriptor(path=str(tmp_path / "agent.msi"), url="https://example.invalid/a"),
                install=MSIEXEC,
            ),
            runner=fake_runner,
            fetcher=fetcher,
        )
        outcome = step.run_attempt()
        assert outcome.retryable
        assert fake_runner.calls == []


class TestIdempotentCheckPurity:
    """idempotent_check() is repeatable and never touches the installer or the download."""

    @pytest.fixture
    def fetched(self):
        return []

    @pytest.fixture
    def make_step(self, fake_runner, fetched, tmp_path):
        def fetcher(descriptor, timeout=None):
            fetched.append(descriptor.url)
            return Path(descriptor.path)

        def _make(kind=StepKind.INSTALL, check=None, platform="linux"):
            return DescriptorStep(
                "install-agent",
                kind,
                StepDescriptors(
                    check=check,
                    download=DownloadDescriptor(path=str(tmp_path / "agent.msi"), url="https://example.invalid/a"),
                    install=MSIEXEC,
                    verify=VerifyDescriptor(service="AgentSvc"),
                ),
                runner=fake_runner,
                probe=ServiceProbe(fake_runner, platform=platform),
                fetcher=fetcher,
            )

        return _make

    @pytest.mark.parametrize("exit_code, expected", [(0, True), (1, False)])
    def test_check_command(self, make_step, fake_runner, fetched, exit_code, expected):
        fake_runner.add(["check-agent"], exit_code)
        step = make_step(check=CheckDescriptor(command=("check-agent",)))

        first = step.idempotent_check()
        second = step.idempotent_check()

        assert first == second == expected
        assert fake_runner.calls == [("check-agent",), ("check-agent",)]
        assert fetched == []

    def test_windows_service_probe(self, make_step, fake_runner, fetched):
        fake_runner.add(["sc", "query"], CommandResult(("sc",), 0, stdout=SC_RUNNING))
        step = make_step(platform="win32")

        assert step.idempotent_check() is step.idempotent_check() is True
        assert fake_runner.calls == [("sc", "query", "AgentSvc")] * 2
        assert fetched == []

    def test_systemd_service_probe(self, make_step, fake_runner, fetched):
        fake_runner.add(["systemctl", "is-active"], CommandResult(("systemctl",), 3, stdout="inactive\n"))
        fake_runner.add(["systemctl", "cat"], 0)
        step = make_step(platform="linux")

        assert step.idempotent_check() is step.idempotent_check() is False
        assert all(call[0] == "systemctl" for call in fake_runner.calls)
        assert fake_runner.called("msiexec.exe") == 0
        assert fetched == []

    def test_verify_kind_never_probes(self, make_step, fake_runner, fetched):
        step = make_step(kind=StepKind.VERIFY)

        assert step.idempotent_check() is step.idempotent_check() is False
        assert fake_runner.calls == []
        assert fetched == []


# =============================================================================
# ServiceProbe
# =============================================================================


SC_RUNNING = """
SERVICE_NAME: AmazonCloudWatchAgent
        TYPE               : 10  WIN32_OWN_PROCESS
        STATE              : 4  RUNNING
"""

SC_STOPPED = SC_RUNNING.replace("4  RUNNING", "1  STOPPED")


class TestServiceProbe:
    """Tests for ServiceProbe."""

    def test_windows_running(self, fake_runner):
        fake_runner.add(["sc", "query"], CommandResult(("sc",), 0, stdout=SC_RUNNING))
        assert ServiceProbe(fake_runner, platform="win32").status("AmazonCloudWatchAgent") == "running"

    def test_windows_stopped(self, fake_runner):
        fake_runner.add(["sc", "query"], CommandResult(("sc",), 0, stdout=SC_STOPPED))
        assert ServiceProbe(fake_runner, platform="win32").status("AmazonCloudWatchAgent") == "stopped"

    def test_windows_missing(self, fake_runner):
        fake_runner.add(["sc", "query"], 1060)
        assert ServiceProbe(fake_runner, platform="win32").status("Nope") == "missing"

    def test_systemd_active(self, fake_runner):
        fake_runner.add(["systemctl", "is-active"], CommandResult(("systemctl",), 0, stdout="active\n"))
        assert ServiceProbe(fake_runner, platform="linux").status("sshd") == "running"

    def test_systemd_inactive_but_present(self, fake_runner):
        fake_runner.add(["systemctl", "is-active"], CommandResult(("systemctl",), 3, stdout="inactive\n"))
        fake_runner.add(["systemctl", "cat"], 0)
        assert ServiceProbe(fake_runner, platform="linux").status("sshd") == "stopped"

    def test_systemd_unknown_unit(self, fake_runner):
        fake_runner.add(["systemctl", "is-active"], CommandResult(("systemctl",), 3, stdout="inactive\n"))
        fake_runner.add(["systemctl", "cat"], 1)
        assert ServiceProbe(fake_runner, platform="linux").status("nope") == "missing"

    def test_wait_for_polls_until_status(self, fake_runner):
        fake_runner.add(
            ["systemctl", "is-active"],
            CommandResult(("systemctl",), 3, stdout="activating\n"),
            CommandResult(("systemctl",), 0, stdout="active\n"),
        )
        fake_runner.add(["systemctl", "cat"], 0)
        probe = ServiceProbe(fake_runner, platform="linux")
        descriptor = VerifyDescriptor(service="agent", wait_seconds=30, poll_interval=1)

        assert probe.wait_for(descriptor, sleep=no_sleep) == "running"
        assert fake_runner.called("systemctl", "is-active") == 2

    def test_wait_for_gives_up_after_wait_seconds(self, fake_runner):
        fake_runner.add(["systemctl", "is-active"], CommandResult(("systemctl",), 3, stdout="inactive\n"))
        fake_runner.add(["systemctl", "cat"], 0)
        probe = ServiceProbe(fake_runner, platform="linux")
        descriptor = VerifyDescriptor(service="agent", wait_seconds=5, poll_interval=1)
        ticks = iter([0, 0, 2, 6])

        with pytest.raises(TransientError, match="agent is stopped, expected running"):
            probe.wait_for(descriptor, sleep=no_sleep, clock=lambda: next(ticks))


# =============================================================================
# CommandRunner
# =============================================================================


class TestCommandRunner:
    """Tests for CommandRunner with real child processes."""

    def test_captures_exit_code_and_output(self):
        result = CommandRunner().run([sys.executable, "-c", "print('hello'); raise SystemExit(3)"])
        assert result.exit_code == 3
        assert result.stdout.strip() == "hello"
        assert not result.ok

    def test_timeout_is_transient(self):
        with pytest.raises(TransientError, match="timed out"):
            CommandRunner().run([sys.executable, "-c", "import time; time.sleep(30)"], timeout=0.5)

    def test_missing_executable_is_permanent(self):
        with pytest.raises(PermanentError, match="Executable not found"):
            CommandRunner().run(["definitely-not-a-real-binary-imageprep"])

    def test_empty_command_is_permanent(self):
        with pytest.raises(PermanentError):
            CommandRunner().run([])
