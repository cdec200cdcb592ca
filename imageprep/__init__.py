"""
imageprep - Reboot-spanning provisioning orchestrator for golden images.

Runs a manifest of idempotent provisioning steps (detect, install, configure,
verify), checkpointing every attempt so a run survives process exits and
host reboots.
"""

__version__ = "0.1.0"
__author__ = "Image Engineering Team"


__all__ = ["OrchestratorConfig", "load_config", "get_imageprep_home"]

from .config import OrchestratorConfig, load_config, get_imageprep_home
