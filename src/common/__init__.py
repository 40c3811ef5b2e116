"""Shared plumbing for the e2e harness: errors, subprocess seam, kubectl, polling."""

from .errors import (
    ClusterConnectionError,
    ClusterUnavailableError,
    CommandError,
    ConfigurationError,
    DeletionError,
    HarnessError,
    ProvisioningError,
    ReadinessTimeoutError,
    SuiteExecutionFailure,
    SuiteTimeoutError,
    ValidationFailure,
)
from .shell import CommandResult, run_command

__all__ = [
    "ClusterConnectionError",
    "ClusterUnavailableError",
    "CommandError",
    "CommandResult",
    "ConfigurationError",
    "DeletionError",
    "HarnessError",
    "ProvisioningError",
    "ReadinessTimeoutError",
    "SuiteExecutionFailure",
    "SuiteTimeoutError",
    "ValidationFailure",
    "run_command",
]
