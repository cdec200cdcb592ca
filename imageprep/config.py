"""
Configuration management for imageprep.

Loads and validates config.yaml from IMAGEPREP_HOME.
"""

import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from imageprep.reboot import DEFAULT_DELAY_SECONDS, DEFAULT_TASK_NAME, MECHANISMS
from imageprep.retry import DEFAULT_BASE_DELAY, DEFAULT_MAX_DELAY


CONFIG_FILENAME = "config.yaml"

DEFAULT_CONFIG_TEMPLATE = """\
# imageprep configuration
# Paths may use {home}, which expands to IMAGEPREP_HOME.

state:
  # Checkpoint store (one JSON document per host)
  path: "{home}/state.json"

logging:
  output: "{home}/logs/orchestrate-{date}.log"
  level: INFO
  format: structured   # structured | pretty
  console: true

reboot:
  mechanism: auto      # auto | scheduled_task | run_once | systemd | manual
  task_name: imageprep-resume
  delay_seconds: 10

behavior:
  max_cycles: 5
  retry:
    base_delay: 5
    max_delay: 30
"""


class ConfigError(Exception):
    """Configuration validation error."""
    pass


def get_imageprep_home() -> Path:
    """
    Get the imageprep home directory.

    Resolution order:
    1. IMAGEPREP_HOME environment variable
    2. %ProgramData%\\imageprep on Windows
    3. /var/lib/imageprep elsewhere
    """
    env_home = os.environ.get("IMAGEPREP_HOME")
    if env_home:
        return Path(env_home)
    if sys.platform.startswith("win"):
        return Path(os.environ.get("ProgramData", r"C:\ProgramData")) / "imageprep"
    return Path("/var/lib/imageprep")


def get_default_config_path() -> Path:
    return get_imageprep_home() / CONFIG_FILENAME


class OrchestratorConfig:
    """Complete orchestrator configuration."""

    def __init__(self, raw_config: Optional[Dict[str, Any]] = None, config_path: Optional[Path] = None):
        self.config_path = config_path
        self.raw_config = raw_config or {}
        self.home = get_imageprep_home()

        self.state = self._mapping("state")
        self.logging = self._mapping("logging")
        self.reboot = self._mapping("reboot")
        self.behavior = self._mapping("behavior")

    @classmethod
    def from_file(cls, config_path: Path) -> "OrchestratorConfig":
        """Load and parse a YAML configuration file."""
        if not config_path.exists():
            raise ConfigError(f"Configuration file not found: {config_path}")

        try:
            with open(config_path, "r", encoding="utf-8") as f:
                config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML syntax: {e}")

        if config is None:
            config = {}
        if not isinstance(config, dict):
            raise ConfigError(f"Configuration file must be a mapping: {config_path}")
        return cls(config, config_path)

    def _mapping(self, section: str) -> Dict[str, Any]:
        value = self.raw_config.get(section) or {}
        if not isinstance(value, dict):
            raise ConfigError(f"'{section}' must be a mapping")
        return value

    def _expand(self, value: str) -> Path:
        return Path(value.replace("{home}", str(self.home)))

    def get_state_path(self) -> Path:
        """Get checkpoint store path."""
        return self._expand(self.state.get("path", "{home}/state.json"))

    def get_log_file_path(self) -> Path:
        """Get log file path with date interpolation."""
        log_output = self.logging.get("output", "{home}/logs/orchestrate-{date}.log")
        log_output = log_output.replace("{date}", datetime.now().strftime("%Y-%m-%d"))
        return self._expand(log_output)

    def get_log_level(self) -> str:
        """Get logging level."""
        return str(self.logging.get("level", "INFO")).upper()

    def get_log_format(self) -> str:
        """Get log format (structured or pretty)."""
        return self.logging.get("format", "structured")

    def should_log_to_console(self) -> bool:
        """Check if console logging is enabled."""
        return bool(self.logging.get("console", True))

    def get_reboot_mechanism(self) -> str:
        return self.reboot.get("mechanism", "auto")

    def get_task_name(self) -> str:
        return str(self.reboot.get("task_name", DEFAULT_TASK_NAME))

    def get_reboot_delay(self) -> int:
        return int(self.reboot.get("delay_seconds", DEFAULT_DELAY_SECONDS))

    def get_max_cycles(self) -> int:
        return int(self.behavior.get("max_cycles", 5))

    def get_retry_delays(self) -> tuple[float, float]:
        """Get (base_delay, max_delay) for the retry policy."""
        retry = self.behavior.get("retry") or {}
        return (
            float(retry.get("base_delay", DEFAULT_BASE_DELAY)),
            float(retry.get("max_delay", DEFAULT_MAX_DELAY)),
        )

    def validate(self) -> None:
        """Validate entire configuration."""
        if self.get_log_level() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ConfigError(f"Invalid logging.level: {self.logging.get('level')}")

        if self.get_log_format() not in ("structured", "pretty"):
            raise ConfigError(f"Invalid logging.format: {self.get_log_format()} (expected structured or pretty)")

        if self.get_reboot_mechanism() not in MECHANISMS:
            raise ConfigError(
                f"Invalid reboot.mechanism: {self.get_reboot_mechanism()} "
                f"(expected one of {', '.join(MECHANISMS)})"
            )

        try:
            max_cycles = self.get_max_cycles()
            delay = self.get_reboot_delay()
            base_delay, max_delay = self.get_retry_delays()
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid numeric setting: {e}")

        if max_cycles < 1:
            raise ConfigError("behavior.max_cycles must be >= 1")
        if delay < 0:
            raise ConfigError("reboot.delay_seconds must be >= 0")
        if base_delay < 0 or max_delay < 0:
            raise ConfigError("behavior.retry delays must be >= 0")

    def __repr__(self) -> str:
        return f"OrchestratorConfig(path={self.config_path}, mechanism={self.get_reboot_mechanism()})"


def load_config(config_path: Optional[Path] = None) -> OrchestratorConfig:
    """
    Load orchestrator configuration from YAML file.

    Args:
        config_path: Path to config file. Defaults to $IMAGEPREP_HOME/config.yaml,
            where a missing file means built-in defaults

    Returns:
        Validated OrchestratorConfig instance

    Raises:
        ConfigError: If config is invalid, or an explicit config_path is missing
    """
    if config_path is not None:
        config = OrchestratorConfig.from_file(Path(config_path))
    else:
        default_path = get_default_config_path()
        if default_path.exists():
            config = OrchestratorConfig.from_file(default_path)
        else:
            config = OrchestratorConfig()

    config.validate()
    return config


def write_default_config(config_path: Optional[Path] = None, force: bool = False) -> Path:
    """
    Write the default configuration file.

    Raises:
        ConfigError: If the file exists and force is not set
    """
    config_path = Path(config_path) if config_path else get_default_config_path()
    if config_path.exists() and not force:
        raise ConfigError(f"Config already exists at {config_path} (use --force to overwrite)")

    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(DEFAULT_CONFIG_TEMPLATE, encoding="utf-8")
    return config_path
