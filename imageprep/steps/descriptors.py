"""
Declarative descriptors that make up a manifest step.

A step body is data, not code:
- CheckDescriptor: a side-effect free probe command
- DownloadDescriptor: where to fetch the installer and how to verify it
- InvocationDescriptor: executable, arguments and exit-code conventions
- VerifyDescriptor: which service must reach which status
"""

from dataclasses import dataclass
from typing import Any, Optional

from imageprep.errors import ManifestError


# MSI: 3010 = success, reboot required; 1641 = success, reboot initiated
DEFAULT_REBOOT_CODES = (3010, 1641)
# MSI: 1618 = another installation is already in progress
DEFAULT_RETRYABLE_CODES = (1618,)

SERVICE_STATUSES = ("running", "stopped", "missing")


def _codes(value: Any, default: tuple[int, ...], field_name: str) -> tuple[int, ...]:
    if value is None:
        return default
    if isinstance(value, int):
        value = [value]
    try:
        return tuple(int(v) for v in value)
    except (TypeError, ValueError):
        raise ManifestError(f"{field_name} must be a list of integers, got {value!r}")


def _argv(value: Any, field_name: str) -> tuple[str, ...]:
    if isinstance(value, str):
        return (value,)
    if not isinstance(value, (list, tuple)) or not value:
        raise ManifestError(f"{field_name} must be a non-empty list")
    return tuple(str(v) for v in value)


def _strings(value: Any, field_name: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    if not isinstance(value, (list, tuple)):
        raise ManifestError(f"{field_name} must be a list of strings, got {value!r}")
    return tuple(str(v) for v in value)


def _seconds(value: Any, default: float, field_name: str) -> float:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ManifestError(f"{field_name} must be a number of seconds, got {value!r}")
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        raise ManifestError(f"{field_name} must be a number of seconds, got {value!r}")
    if seconds < 0:
        raise ManifestError(f"{field_name} must be >= 0, got {value!r}")
    return seconds


@dataclass(frozen=True)
class CheckDescriptor:
    """Probe command; the end state holds when it exits with one of success_codes."""

    command: tuple[str, ...]
    success_codes: tuple[int, ...] = (0,)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CheckDescriptor":
        if "command" not in data:
            raise ManifestError("check requires 'command'")
        return cls(
            command=_argv(data["command"], "check.command"),
            success_codes=_codes(data.get("success_codes"), (0,), "check.success_codes"),
        )


@dataclass(frozen=True)
class DownloadDescriptor:
    """
    Where an installer comes from and where it lands.

    Attributes:
        path: Local destination of the file
        url: Primary download URL (optional when source_path is given)
        fallback_urls: Tried in order when the primary URL fails
        source_path: Local or UNC path to copy from instead of downloading
        sha256: Expected checksum; the file is rejected when it does not match
    """
    path: str
    url: Optional[str] = None
    fallback_urls: tuple[str, ...] = ()
    source_path: Optional[str] = None
    sha256: Optional[str] = None

    def __post_init__(self):
        if not self.url and not self.source_path:
            raise ManifestError("download requires 'url' or 'source_path'")

    @property
    def candidates(self) -> tuple[str, ...]:
        urls = (self.url,) if self.url else ()
        return urls + self.fallback_urls

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DownloadDescriptor":
        if "path" not in data:
            raise ManifestError("download requires 'path'")
        sha256 = data.get("sha256")
        if sha256 is not None and not isinstance(sha256, str):
            raise ManifestError(f"download.sha256 must be a hex string, got {sha256!r}")
        return cls(
            path=str(data["path"]),
            url=data.get("url"),
            fallback_urls=_strings(data.get("fallback_urls"), "download.fallback_urls"),
            source_path=data.get("source_path"),
            sha256=sha256.lower() if sha256 else None,
        )


@dataclass(frozen=True)
class InvocationDescriptor:
    """
    How to run an installer or configuration command.

    Arguments may reference {download_path}, which is replaced with the
    downloaded file's location.
    """
    executable: str
    args: tuple[str, ...] = ()
    success_codes: tuple[int, ...] = (0,)
    reboot_codes: tuple[int, ...] = DEFAULT_REBOOT_CODES
    retryable_codes: tuple[int, ...] = DEFAULT_RETRYABLE_CODES
    cwd: Optional[str] = None

    def __post_init__(self):
        overlap = set(self.success_codes) & (set(self.reboot_codes) | set(self.retryable_codes))
        if overlap:
            raise ManifestError(
                f"exit codes {sorted(overlap)} appear in success_codes and another code set"
            )

    def argv(self, download_path: Optional[str] = None) -> list[str]:
        # Plain replace: PowerShell arguments carry literal braces
        args = [a.replace("{download_path}", download_path or "") for a in self.args]
        return [self.executable] + args

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "InvocationDescriptor":
        if "executable" not in data:
            raise ManifestError("install requires 'executable'")
        return cls(
            executable=str(data["executable"]),
            args=_strings(data.get("args"), "install.args"),
            success_codes=_codes(data.get("success_codes"), (0,), "install.success_codes"),
            reboot_codes=_codes(data.get("reboot_codes"), DEFAULT_REBOOT_CODES, "install.reboot_codes"),
            retryable_codes=_codes(
                data.get("retryable_codes"), DEFAULT_RETRYABLE_CODES, "install.retryable_codes"
            ),
            cwd=data.get("cwd"),
        )


@dataclass(frozen=True)
class VerifyDescriptor:
    """A service that must reach `status`, polled for up to `wait_seconds`."""

    service: str
    status: str = "running"
    wait_seconds: float = 0.0
    poll_interval: float = 2.0

    def __post_init__(self):
        if self.status not in SERVICE_STATUSES:
            raise ManifestError(
                f"verify.status must be one of {', '.join(SERVICE_STATUSES)}, got {self.status!r}"
            )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "VerifyDescriptor":
        if "service" not in data:
            raise ManifestError("verify requires 'service'")
        return cls(
            service=str(data["service"]),
            status=str(data.get("status", "running")).lower(),
            wait_seconds=_seconds(data.get("wait_seconds"), 0.0, "verify.wait_seconds"),
            poll_interval=_seconds(data.get("poll_interval"), 2.0, "verify.poll_interval"),
        )


@dataclass(frozen=True)
class StepDescriptors:
    """The descriptor bundle of one manifest step."""

    check: Optional[CheckDescriptor] = None
    download: Optional[DownloadDescriptor] = None
    install: Optional[InvocationDescriptor] = None
    verify: Optional[VerifyDescriptor] = None
