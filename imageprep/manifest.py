"""
Step manifest loading.

A manifest is a YAML (or JSON) document that declares the ordered step list
of an image. Each entry is turned into a DescriptorStep; the step bodies
themselves are data (descriptors), so nothing vendor specific lives in code.
"""

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import yaml

from imageprep.errors import ManifestError
from imageprep.steps.base import StepKind
from imageprep.steps.commands import CommandRunner
from imageprep.steps.descriptor_step import DescriptorStep
from imageprep.steps.descriptors import (
    CheckDescriptor,
    DownloadDescriptor,
    InvocationDescriptor,
    StepDescriptors,
    VerifyDescriptor,
)
from imageprep.steps.services import ServiceProbe


logger = logging.getLogger(__name__)

STEP_KEYS = {
    "id", "kind", "description", "optional",
    "check", "download", "install", "run", "verify",
    "requires_reboot_after", "max_attempts", "timeout_seconds",
}
DEFAULT_KEYS = {"max_attempts", "timeout_seconds"}


@dataclass
class Manifest:
    """A parsed manifest: name plus steps in declared order."""

    name: str
    steps: list[DescriptorStep]
    source: Optional[Path] = None

    @property
    def step_ids(self) -> list[str]:
        return [s.step_id for s in self.steps]

    def __repr__(self) -> str:
        return f"Manifest(name={self.name}, steps={len(self.steps)})"


def _read_document(path: Path) -> Any:
    if not path.exists():
        raise ManifestError(f"Manifest not found: {path}")

    try:
        with open(path, "r", encoding="utf-8") as f:
            if path.suffix.lower() == ".json":
                return json.load(f)
            return yaml.safe_load(f)
    except json.JSONDecodeError as e:
        raise ManifestError(f"Invalid JSON in {path}: {e}")
    except yaml.YAMLError as e:
        raise ManifestError(f"Invalid YAML syntax in {path}: {e}")


def _positive_int(value: Any, field_name: str, step_id: Optional[str] = None) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ManifestError(f"{field_name} must be an integer >= 1, got {value!r}", step_id)
    return value


def _timeout(value: Any, step_id: Optional[str] = None) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ManifestError(f"timeout_seconds must be a positive number, got {value!r}", step_id)
    return float(value)


def _section(data: dict[str, Any], key: str, step_id: str) -> Optional[dict[str, Any]]:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ManifestError(f"'{key}' must be a mapping", step_id)
    return value


def _build_descriptors(data: dict[str, Any], step_id: str) -> StepDescriptors:
    if "install" in data and "run" in data:
        raise ManifestError("declare either 'install' or 'run', not both", step_id)

    check = _section(data, "check", step_id)
    download = _section(data, "download", step_id)
    install = _section(data, "install", step_id) or _section(data, "run", step_id)
    verify = _section(data, "verify", step_id)

    try:
        return StepDescriptors(
            check=CheckDescriptor.from_dict(check) if check is not None else None,
            download=DownloadDescriptor.from_dict(download) if download is not None else None,
            install=InvocationDescriptor.from_dict(install) if install is not None else None,
            verify=VerifyDescriptor.from_dict(verify) if verify is not None else None,
        )
    except ManifestError as e:
        raise ManifestError(str(e), step_id) from e


def _validate_shape(kind: StepKind, descriptors: StepDescriptors, step_id: str) -> None:
    if kind == StepKind.DETECT:
        if descriptors.check is None and descriptors.verify is None:
            raise ManifestError("detect steps require 'check' or 'verify'", step_id)
    elif kind == StepKind.VERIFY:
        if descriptors.verify is None:
            raise ManifestError("verify steps require 'verify'", step_id)
    elif descriptors.install is None and descriptors.download is None:
        raise ManifestError(f"{kind.value} steps require 'install' (or 'run')", step_id)


def _build_step(
    data: Any,
    index: int,
    defaults: dict[str, Any],
    runner: CommandRunner,
    probe: ServiceProbe,
) -> DescriptorStep:
    if not isinstance(data, dict):
        raise ManifestError(f"steps[{index}] must be a mapping")

    step_id = data.get("id")
    if not isinstance(step_id, str) or not step_id.strip():
        raise ManifestError(f"steps[{index}] requires a non-empty 'id'")
    step_id = step_id.strip()

    unknown = set(data) - STEP_KEYS
    if unknown:
        raise ManifestError(f"unknown keys: {', '.join(sorted(unknown))}", step_id)

    try:
        kind = StepKind(str(data.get("kind", "")).lower())
    except ValueError:
        known = ", ".join(k.value for k in StepKind)
        raise ManifestError(f"unknown kind {data.get('kind')!r} (expected one of {known})", step_id)

    descriptors = _build_descriptors(data, step_id)
    _validate_shape(kind, descriptors, step_id)

    max_attempts = _positive_int(
        data.get("max_attempts", defaults.get("max_attempts")), "max_attempts", step_id
    )
    timeout_seconds = _timeout(data.get("timeout_seconds", defaults.get("timeout_seconds")), step_id)

    return DescriptorStep(
        step_id=step_id,
        kind=kind,
        descriptors=descriptors,
        runner=runner,
        probe=probe,
        max_attempts=max_attempts,
        requires_reboot_after=bool(data.get("requires_reboot_after", False)),
        optional=bool(data.get("optional", False)),
        timeout_seconds=timeout_seconds,
        description=str(data.get("description", "")),
    )


def parse_manifest(
    data: Any,
    runner: Optional[CommandRunner] = None,
    source: Optional[Path] = None,
) -> Manifest:
    """
    Build a Manifest from an already-parsed document.

    Args:
        data: Parsed YAML/JSON document
        runner: Command runner shared by every step (default: a new CommandRunner)
        source: File the document came from, for messages

    Returns:
        Manifest

    Raises:
        ManifestError: If the document is invalid; the message names the step
    """
    if not isinstance(data, dict):
        raise ManifestError("Manifest must be a mapping with a 'steps' list")

    defaults = data.get("defaults") or {}
    if not isinstance(defaults, dict):
        raise ManifestError("'defaults' must be a mapping")
    unknown = set(defaults) - DEFAULT_KEYS
    if unknown:
        raise ManifestError(f"unknown defaults: {', '.join(sorted(unknown))}")
    _positive_int(defaults.get("max_attempts"), "defaults.max_attempts")
    _timeout(defaults.get("timeout_seconds"))

    steps_data = data.get("steps")
    if not isinstance(steps_data, list) or not steps_data:
        raise ManifestError("Manifest requires a non-empty 'steps' list")

    runner = runner or CommandRunner()
    probe = ServiceProbe(runner)

    steps: list[DescriptorStep] = []
    seen: set[str] = set()
    for index, step_data in enumerate(steps_data):
        step = _build_step(step_data, index, defaults, runner, probe)
        if step.step_id in seen:
            raise ManifestError("duplicate step id", step.step_id)
        seen.add(step.step_id)
        steps.append(step)

    name = str(data.get("name") or (source.stem if source else "unnamed-manifest"))
    return Manifest(name=name, steps=steps, source=source)


def load_manifest(path: Path, runner: Optional[CommandRunner] = None) -> Manifest:
    """
    Load a step manifest from a YAML or JSON file.

    Args:
        path: Manifest path (.json is parsed as JSON, anything else as YAML)
        runner: Command runner shared by every step

    Returns:
        Manifest

    Raises:
        ManifestError: If the file is missing or invalid
    """
    path = Path(path)
    manifest = parse_manifest(_read_document(path), runner=runner, source=path)
    logger.debug(
        f"Loaded manifest {manifest.name} with {len(manifest.steps)} steps from {path}",
        extra={"event": "manifest_loaded", "metadata": {"steps": manifest.step_ids}},
    )
    return manifest
