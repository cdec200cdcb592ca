"""
imageprep.steps - Provisioning step types.

Step is the abstract unit of work; DescriptorStep builds one from manifest
descriptors and FunctionStep from plain callables.
"""

from .base import FunctionStep, Step, StepKind
from .commands import CommandResult, CommandRunner
from .descriptor_step import DescriptorStep, interpret_exit_code
from .descriptors import (
    CheckDescriptor,
    DownloadDescriptor,
    InvocationDescriptor,
    StepDescriptors,
    VerifyDescriptor,
)
from .services import ServiceProbe

__all__ = [
    "Step",
    "StepKind",
    "FunctionStep",
    "DescriptorStep",
    "interpret_exit_code",
    "CommandResult",
    "CommandRunner",
    "ServiceProbe",
    "CheckDescriptor",
    "DownloadDescriptor",
    "InvocationDescriptor",
    "StepDescriptors",
    "VerifyDescriptor",
]
