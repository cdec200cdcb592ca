"""Tests for the orchestrate CLI.

Manifests here drive real child processes through the current interpreter,
so exit codes are portable. Reboot codes use small values because POSIX
truncates exit statuses to 8 bits.
"""

import json
import logging
import sys

import pytest
import yaml
from click.testing import CliRunner

from imageprep.checkpoint_store import FileCheckpointStore
from imageprep.cli import cli_entry, main


PY = sys.executable


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture(autouse=True)
def reset_logging():
    yield
    logger = logging.getLogger("imageprep")
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)
    logger.setLevel(logging.NOTSET)


def python_step(step_id, code, kind="configure", **extra):
    step = {
        "id": step_id,
        "kind": kind,
        "run": {"executable": PY, "args": ["-c", code], "reboot_codes": [7], "retryable_codes": [9]},
    }
    step.update(extra)
    return step


def write_manifest(tmp_path, steps, name="test-image"):
    path = tmp_path / "manifest.yaml"
    path.write_text(yaml.safe_dump({"name": name, "steps": steps}))
    return path


@pytest.fixture
def state_path(tmp_path):
    return tmp_path / "state" / "state.json"


class TestRun:
    """Tests for `orchestrate run`."""

    def test_done_exits_zero(self, runner, tmp_path, state_path):
        manifest = write_manifest(tmp_path, [python_step("a", "pass"), python_step("b", "pass")])

        result = runner.invoke(main, ["run", "--steps", str(manifest), "--state", str(state_path), "--json"])

        assert result.exit_code == 0, result.output
        summary = json.loads(result.output)
        assert summary["run_state"] == "done"
        assert summary["totals"]["succeeded"] == 2
        assert state_path.exists()

    def test_pretty_output(self, runner, tmp_path, state_path):
        manifest = write_manifest(tmp_path, [python_step("a", "pass")])

        result = runner.invoke(main, ["run", "--steps", str(manifest), "--state", str(state_path)])

        assert result.exit_code == 0
        assert "test-image" in result.output
        assert "All steps complete" in result.output

    def test_fatal_exits_one(self, runner, tmp_path, state_path):
        manifest = write_manifest(
            tmp_path,
            [python_step("broken", "raise SystemExit(5)"), python_step("later", "pass")],
        )

        result = runner.invoke(main, ["run", "--steps", str(manifest), "--state", str(state_path), "--json"])

        assert result.exit_code == 1
        summary = json.loads(result.output)
        assert summary["run_state"] == "fatal"
        assert summary["fatal_step"] == "broken"
        assert [s["status"] for s in summary["steps"]] == ["failed", "pending"]

    def test_reboot_then_resume(self, runner, tmp_path, state_path):
        marker = tmp_path / "installed.marker"
        check = f"import os, sys; sys.exit(0 if os.path.exists({str(marker)!r}) else 1)"
        install = f"open({str(marker)!r}, 'w').close(); raise SystemExit(7)"
        step = python_step("install-agent", install, kind="install")
        step["check"] = {"command": [PY, "-c", check]}
        manifest = write_manifest(tmp_path, [step, python_step("after", "pass")])
        args = ["run", "--steps", str(manifest), "--state", str(state_path), "--no-reboot", "--json"]

        first = runner.invoke(main, args)
        assert first.exit_code == 2, first.output
        assert json.loads(first.output)["run_state"] == "awaiting_reboot"

        store = FileCheckpointStore(state_path)
        assert store.awaiting_reboot()
        resume = store.resume_scheduled()
        assert resume["mechanism"] == "manual"
        assert resume["invocation"][1:4] == ["-m", "imageprep", "run"]

        second = runner.invoke(main, args)
        assert second.exit_code == 0, second.output
        summary = json.loads(second.output)
        assert summary["totals"]["cycles_used"] == 2
        assert summary["steps"][0]["attempts"] == 2

    def test_max_cycles_exhausted(self, runner, tmp_path, state_path):
        manifest = write_manifest(tmp_path, [python_step("stubborn", "raise SystemExit(7)")])
        args = [
            "run", "--steps", str(manifest), "--state", str(state_path),
            "--no-reboot", "--max-cycles", "1", "--json",
        ]

        result = runner.invoke(main, args)

        assert result.exit_code == 1
        assert "Cycle budget exhausted" in json.loads(result.output)["fatal_reason"]

    def test_corrupt_state_exits_three(self, runner, tmp_path, state_path):
        state_path.parent.mkdir(parents=True)
        state_path.write_text("{definitely not json")
        manifest = write_manifest(tmp_path, [python_step("a", "pass")])

        result = runner.invoke(main, ["run", "--steps", str(manifest), "--state", str(state_path), "--json"])

        assert result.exit_code == 3
        summary = json.loads(result.output)
        assert summary["run_state"] == "store_corrupt"
        assert summary["steps"][0]["status"] == "pending"
        assert state_path.read_text() == "{definitely not json"

    def test_wrongly_shaped_state_exits_three(self, runner, tmp_path, state_path):
        state_path.parent.mkdir(parents=True)
        state_path.write_text(
            json.dumps(
                {
                    "version": 1,
                    "host": "build-vm",
                    "created_at": "2026-01-01T00:00:00+00:00",
                    "updated_at": "2026-01-01T00:00:00+00:00",
                    "checkpoints": {"a": 5},
                }
            )
        )
        manifest = write_manifest(tmp_path, [python_step("a", "pass")])

        result = runner.invoke(main, ["run", "--steps", str(manifest), "--state", str(state_path), "--json"])

        assert result.exit_code == 3
        assert json.loads(result.output)["run_state"] == "store_corrupt"

    def test_invalid_manifest_exits_one(self, runner, tmp_path, state_path):
        manifest = write_manifest(tmp_path, [{"id": "x", "kind": "bogus"}])

        result = runner.invoke(main, ["run", "--steps", str(manifest), "--state", str(state_path)])

        assert result.exit_code == 1
        assert "Invalid manifest" in result.output

    def test_missing_config_exits_one(self, runner, tmp_path, state_path):
        manifest = write_manifest(tmp_path, [python_step("a", "pass")])

        result = runner.invoke(
            main,
            ["run", "--steps", str(manifest), "--state", str(state_path), "--config", str(tmp_path / "none.yaml")],
        )

        assert result.exit_code == 1
        assert "Configuration error" in result.output

    def test_writes_log_file(self, runner, tmp_path, state_path, isolated_home):
        manifest = write_manifest(tmp_path, [python_step("a", "pass")])

        runner.invoke(main, ["run", "--steps", str(manifest), "--state", str(state_path), "--json"])

        (log_file,) = (isolated_home / "logs").glob("orchestrate-*.log")
        events = [json.loads(line).get("event") for line in log_file.read_text().splitlines()]
        assert "run_finished" in events
        assert "run_summary" in events


class TestStatus:
    """Tests for `orchestrate status`."""

    def test_status_reads_state_without_executing(self, runner, tmp_path, state_path):
        marker = tmp_path / "ran.marker"
        manifest = write_manifest(
            tmp_path,
            [python_step("a", "pass"), python_step("b", f"open({str(marker)!r}, 'w').close(); raise SystemExit(5)")],
        )
        runner.invoke(main, ["run", "--steps", str(manifest), "--state", str(state_path)])
        marker.unlink()

        result = runner.invoke(main, ["status", "--steps", str(manifest), "--state", str(state_path), "--json"])

        assert result.exit_code == 0
        summary = json.loads(result.output)
        assert summary["run_state"] == "in_progress"
        assert [s["status"] for s in summary["steps"]] == ["succeeded", "failed"]
        assert not marker.exists()

    def test_status_of_fresh_state(self, runner, tmp_path, state_path):
        manifest = write_manifest(tmp_path, [python_step("a", "pass")])
        result = runner.invoke(main, ["status", "--steps", str(manifest), "--state", str(state_path), "--json"])
        assert json.loads(result.output)["run_state"] == "not_started"

    def test_status_corrupt(self, runner, tmp_path, state_path):
        state_path.parent.mkdir(parents=True)
        state_path.write_text("[]")
        manifest = write_manifest(tmp_path, [python_step("a", "pass")])

        result = runner.invoke(main, ["status", "--steps", str(manifest), "--state", str(state_path)])

        assert result.exit_code == 3


class TestReset:
    """Tests for `orchestrate reset`."""

    def test_reset_step(self, runner, tmp_path, state_path):
        manifest = write_manifest(tmp_path, [python_step("a", "pass")])
        runner.invoke(main, ["run", "--steps", str(manifest), "--state", str(state_path)])

        result = runner.invoke(main, ["reset", "a", "--state", str(state_path), "--yes"])

        assert result.exit_code == 0
        assert FileCheckpointStore(state_path).get("a") is None

    def test_reset_all_prompts(self, runner, tmp_path, state_path):
        manifest = write_manifest(tmp_path, [python_step("a", "pass")])
        runner.invoke(main, ["run", "--steps", str(manifest), "--state", str(state_path)])

        declined = runner.invoke(main, ["reset", "--all", "--state", str(state_path)], input="n\n")
        assert declined.exit_code != 0
        assert FileCheckpointStore(state_path).get("a") is not None

        accepted = runner.invoke(main, ["reset", "--all", "--state", str(state_path)], input="y\n")
        assert accepted.exit_code == 0
        assert FileCheckpointStore(state_path).load() == {}

    def test_reset_requires_target(self, runner, state_path):
        result = runner.invoke(main, ["reset", "--state", str(state_path)])
        assert result.exit_code == 2
        assert "STEP_ID" in result.output


class TestValidateAndInit:
    """Tests for `orchestrate validate` and `orchestrate init`."""

    def test_validate_ok(self, runner, tmp_path):
        manifest = write_manifest(tmp_path, [python_step("a", "pass", requires_reboot_after=True)])

        result = runner.invoke(main, ["validate", "--steps", str(manifest)])

        assert result.exit_code == 0
        assert "a [configure] (reboot after)" in result.output
        assert "is valid" in result.output

    def test_validate_error(self, runner, tmp_path):
        manifest = write_manifest(tmp_path, [{"id": "v", "kind": "verify"}])

        result = runner.invoke(main, ["validate", "--steps", str(manifest)])

        assert result.exit_code == 1
        assert "verify steps require" in result.output

    def test_init(self, runner, isolated_home):
        result = runner.invoke(main, ["init"])
        assert result.exit_code == 0
        assert (isolated_home / "config.yaml").exists()

        again = runner.invoke(main, ["init"])
        assert again.exit_code == 1
        assert "already exists" in again.output


class TestEntryPoint:
    """Tests for cli_entry() exit code mapping."""

    def test_usage_error_is_64(self, monkeypatch, state_path):
        monkeypatch.setattr(sys, "argv", ["orchestrate", "reset", "--state", str(state_path)])
        with pytest.raises(SystemExit) as exc_info:
            cli_entry()
        assert exc_info.value.code == 64

    def test_missing_required_option_is_64(self, monkeypatch):
        monkeypatch.setattr(sys, "argv", ["orchestrate", "run"])
        with pytest.raises(SystemExit) as exc_info:
            cli_entry()
        assert exc_info.value.code == 64

    def test_version(self, monkeypatch, capsys):
        monkeypatch.setattr(sys, "argv", ["orchestrate", "--version"])
        with pytest.raises(SystemExit) as exc_info:
            cli_entry()
        assert exc_info.value.code == 0
        assert "0.1.0" in capsys.readouterr().out

    def test_command_exit_code_passes_through(self, monkeypatch, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("steps: []")
        monkeypatch.setattr(sys, "argv", ["orchestrate", "validate", "--steps", str(path)])
        with pytest.raises(SystemExit) as exc_info:
            cli_entry()
        assert exc_info.value.code == 1
