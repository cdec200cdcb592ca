"""
CLI interface for the imageprep provisioning orchestrator.

Provides commands: run, status, reset, validate, init.

Exit codes:
    0   Done
    1   Fatal (also invalid manifest or configuration)
    2   AwaitingReboot (resume scheduled, host restarting)
    3   StoreCorrupt
    4   Cancelled
    64  Command-line usage error
"""

import json
import logging
import signal
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

import click

from imageprep import __version__
from imageprep.checkpoint_store import FileCheckpointStore
from imageprep.config import ConfigError, OrchestratorConfig, load_config, write_default_config
from imageprep.errors import ImagePrepError, ManifestError, StoreCorrupt
from imageprep.manifest import load_manifest
from imageprep.orchestrator import (
    EXIT_CANCELLED,
    EXIT_DONE,
    EXIT_FATAL,
    EXIT_STORE_CORRUPT,
    CancellationToken,
    Orchestrator,
    RunState,
)
from imageprep.reboot import create_coordinator
from imageprep.reporter import RunSummary, build_summary, render_table, render_text
from imageprep.retry import RetryPolicy
from imageprep.steps.commands import CommandRunner
from imageprep.utils import (
    console,
    print_banner,
    print_error,
    print_info,
    print_success,
    print_warning,
    setup_logging,
)


logger = logging.getLogger(__name__)

EXIT_USAGE = 64


def _load_config_or_exit(config_path: Optional[Path]) -> OrchestratorConfig:
    try:
        return load_config(config_path)
    except ConfigError as e:
        print_error(f"Configuration error: {e}")
        raise SystemExit(EXIT_FATAL)


def _setup_logging(config: OrchestratorConfig, verbose: bool, quiet: bool) -> None:
    setup_logging(
        log_file=config.get_log_file_path(),
        log_level="DEBUG" if verbose else config.get_log_level(),
        log_format=config.get_log_format(),
        console_output=config.should_log_to_console() and not quiet,
    )


def _print_summary(summary: RunSummary, as_json: bool) -> None:
    if as_json:
        click.echo(json.dumps(summary.to_dict(), indent=2))
    else:
        console.print(render_table(summary))


def _resume_invocation(
    steps: Path, state: Path, max_cycles: int, config_path: Optional[Path]
) -> list[str]:
    invocation = [
        sys.executable, "-m", "imageprep", "run",
        "--steps", str(steps.resolve()),
        "--state", str(state.resolve()),
        "--max-cycles", str(max_cycles),
    ]
    if config_path is not None:
        invocation += ["--config", str(config_path.resolve())]
    return invocation


@contextmanager
def _cancel_on_signals(token: CancellationToken) -> Iterator[None]:
    """Turn SIGINT/SIGTERM into a cancellation honored between steps."""

    def handler(signum, frame):
        name = signal.Signals(signum).name
        token.cancel(f"received {name}")
        logger.warning(
            f"{name} received; stopping after the current step",
            extra={"event": "cancel_requested"},
        )

    previous = {}
    for sig in (signal.SIGINT, signal.SIGTERM):
        previous[sig] = signal.signal(sig, handler)
    try:
        yield
    finally:
        for sig, old in previous.items():
            signal.signal(sig, old)


@click.group()
@click.version_option(version=__version__, prog_name="orchestrate")
def main():
    """
    orchestrate - Reboot-spanning provisioning for golden images.

    Runs a manifest of detect / install / configure / verify steps,
    checkpointing every attempt so the run survives reboots.
    """
    pass


@main.command()
@click.option(
    "--steps",
    "steps_path",
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Step manifest (YAML or JSON)",
)
@click.option(
    "--state",
    "state_path",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Checkpoint file (default: state.path from config)",
)
@click.option(
    "--max-cycles",
    type=click.IntRange(min=1),
    help="Maximum reboot cycles (default: behavior.max_cycles from config)",
)
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Custom configuration file (default: $IMAGEPREP_HOME/config.yaml)",
)
@click.option(
    "--no-reboot",
    is_flag=True,
    help="Do not schedule a resume or restart; exit 2 and let the caller reboot",
)
@click.option("--verbose", is_flag=True, help="Enable debug logging")
@click.option("--json", "as_json", is_flag=True, help="Print the summary as JSON")
def run(steps_path, state_path, max_cycles, config_path, no_reboot, verbose, as_json):
    """
    Run (or resume) the provisioning steps.

    Examples:

      # First run on a fresh image
      orchestrate run --steps windows-2022-base.yaml

      # Packer-driven: the provisioner owns the reboot
      orchestrate run --steps base.yaml --no-reboot
    """
    config = _load_config_or_exit(config_path)
    _setup_logging(config, verbose, quiet=as_json)

    state_path = state_path or config.get_state_path()
    max_cycles = max_cycles or config.get_max_cycles()

    runner = CommandRunner()
    try:
        manifest = load_manifest(steps_path, runner=runner)
    except ManifestError as e:
        print_error(f"Invalid manifest: {e}")
        raise SystemExit(EXIT_FATAL)

    store = FileCheckpointStore(state_path)
    coordinator = create_coordinator(
        "manual" if no_reboot else config.get_reboot_mechanism(),
        store,
        runner=runner,
        task_name=config.get_task_name(),
        delay_seconds=config.get_reboot_delay(),
    )
    base_delay, max_delay = config.get_retry_delays()
    token = CancellationToken()

    orchestrator = Orchestrator(
        steps=manifest.steps,
        store=store,
        coordinator=coordinator,
        policy=RetryPolicy(base_delay=base_delay, max_delay=max_delay),
        max_cycles=max_cycles,
        resume_invocation=_resume_invocation(steps_path, state_path, max_cycles, config_path),
        cancel_token=token,
    )

    if not as_json:
        print_banner(f"imageprep: {manifest.name}")

    with _cancel_on_signals(token):
        try:
            result = orchestrator.run()
        except StoreCorrupt as e:
            logger.error(str(e), extra={"event": "store_corrupt"})
            summary = build_summary(
                manifest.steps,
                {},
                [],
                run_state="store_corrupt",
                max_cycles=max_cycles,
                exit_code=EXIT_STORE_CORRUPT,
                fatal_reason=str(e),
            )
            logger.info(render_text(summary), extra={"event": "run_summary"})
            _print_summary(summary, as_json)
            if not as_json:
                print_error(f"{e}. Inspect or move the file; it is never reset automatically.")
            raise SystemExit(EXIT_STORE_CORRUPT)

    _print_summary(result.summary, as_json)

    if result.state == RunState.AWAITING_REBOOT:
        if not as_json:
            print_warning(f"{result.message}; resume scheduled via {coordinator.mechanism}")
        try:
            orchestrator.restart_host()
        except (ImagePrepError, OSError) as e:
            print_error(f"Could not restart host: {e}")
            raise SystemExit(EXIT_FATAL)
    elif not as_json:
        if result.state == RunState.DONE:
            print_success("All steps complete")
        elif result.state == RunState.CANCELLED:
            print_warning(f"Run cancelled ({result.message}); checkpoints are intact")
        else:
            print_error(result.message or "Run failed")

    raise SystemExit(result.exit_code)


@main.command()
@click.option(
    "--steps",
    "steps_path",
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Step manifest (YAML or JSON)",
)
@click.option(
    "--state",
    "state_path",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Checkpoint file (default: state.path from config)",
)
@click.option("--config", "config_path", type=click.Path(dir_okay=False, path_type=Path))
@click.option("--json", "as_json", is_flag=True, help="Print the summary as JSON")
def status(steps_path, state_path, config_path, as_json):
    """
    Show progress from the checkpoint file without executing anything.
    """
    config = _load_config_or_exit(config_path)
    state_path = state_path or config.get_state_path()

    try:
        manifest = load_manifest(steps_path)
    except ManifestError as e:
        print_error(f"Invalid manifest: {e}")
        raise SystemExit(EXIT_FATAL)

    store = FileCheckpointStore(state_path)
    try:
        checkpoints = store.load()
        cycles = store.cycles()
        awaiting = store.awaiting_reboot()
    except StoreCorrupt as e:
        print_error(str(e))
        raise SystemExit(EXIT_STORE_CORRUPT)

    done = all(checkpoints.get(s.step_id) and checkpoints[s.step_id].is_complete for s in manifest.steps)
    if done:
        run_state = RunState.DONE.value
    elif awaiting:
        run_state = RunState.AWAITING_REBOOT.value
    elif checkpoints:
        run_state = "in_progress"
    else:
        run_state = "not_started"

    summary = build_summary(
        manifest.steps,
        checkpoints,
        cycles,
        run_state=run_state,
        max_cycles=config.get_max_cycles(),
    )
    _print_summary(summary, as_json)
    raise SystemExit(EXIT_DONE)


@main.command()
@click.argument("step_ids", nargs=-1)
@click.option(
    "--state",
    "state_path",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Checkpoint file (default: state.path from config)",
)
@click.option("--all", "reset_all", is_flag=True, help="Discard every checkpoint and cycle record")
@click.option("--yes", is_flag=True, help="Do not prompt for confirmation")
@click.option("--config", "config_path", type=click.Path(dir_okay=False, path_type=Path))
def reset(step_ids, state_path, reset_all, yes, config_path):
    """
    Forget checkpoints so the next run executes the steps again.

    This bypasses idempotency protection.

    Examples:

      # Retry one step that gave up
      orchestrate reset install-cloudwatch

      # Start over
      orchestrate reset --all --yes
    """
    if bool(step_ids) == reset_all:
        raise click.UsageError("Specify STEP_ID... or --all (not both)")

    config = _load_config_or_exit(config_path)
    setup_logging(
        log_file=config.get_log_file_path(),
        log_level=config.get_log_level(),
        log_format=config.get_log_format(),
        console_output=False,
    )
    store = FileCheckpointStore(state_path or config.get_state_path())

    target = "ALL checkpoints" if reset_all else ", ".join(step_ids)
    if not yes:
        click.confirm(f"Reset {target} in {store.path}?", abort=True)

    try:
        if reset_all:
            removed = store.reset_all()
            print_success(f"Reset {removed} checkpoints")
        else:
            for step_id in step_ids:
                if store.reset(step_id):
                    print_success(f"Reset {step_id}")
                else:
                    print_info(f"{step_id}: no checkpoint recorded")
    except StoreCorrupt as e:
        print_error(str(e))
        raise SystemExit(EXIT_STORE_CORRUPT)

    raise SystemExit(EXIT_DONE)


@main.command()
@click.option(
    "--steps",
    "steps_path",
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Step manifest (YAML or JSON)",
)
def validate(steps_path):
    """
    Validate a step manifest without running it.
    """
    try:
        manifest = load_manifest(steps_path)
    except ManifestError as e:
        print_error(f"Validation failed: {e}")
        raise SystemExit(EXIT_FATAL)

    for i, step in enumerate(manifest.steps, start=1):
        flags = []
        if step.optional:
            flags.append("optional")
        if step.requires_reboot_after:
            flags.append("reboot after")
        suffix = f" ({', '.join(flags)})" if flags else ""
        click.echo(f"  {i:>2}. {step.step_id} [{step.kind.value}]{suffix}")

    print_success(f"Manifest {manifest.name} is valid ({len(manifest.steps)} steps)")
    raise SystemExit(EXIT_DONE)


@main.command()
@click.option("--force", is_flag=True, help="Overwrite existing configuration")
def init(force: bool):
    """Write the default configuration to $IMAGEPREP_HOME/config.yaml."""
    try:
        cfg_path = write_default_config(force=force)
    except ConfigError as e:
        print_error(str(e))
        raise SystemExit(EXIT_FATAL)

    print_success(f"Initialized imageprep config at {cfg_path}")
    raise SystemExit(EXIT_DONE)


def cli_entry() -> None:
    """
    Console-script entry point.

    Click reports usage errors with exit code 2, which would read as
    AwaitingReboot to automation; they are remapped to 64 here.
    """
    try:
        rv = main.main(standalone_mode=False)
    except click.UsageError as e:
        e.show()
        raise SystemExit(EXIT_USAGE)
    except click.ClickException as e:
        e.show()
        raise SystemExit(EXIT_FATAL)
    except click.Abort:
        click.echo("Aborted!", err=True)
        raise SystemExit(EXIT_CANCELLED)
    raise SystemExit(rv if isinstance(rv, int) else EXIT_DONE)
