from __future__ import annotations

from typing import Any, Optional, Sequence


class HarnessError(Exception):
    """Base class for every failure raised by the e2e harness."""


class ConfigurationError(HarnessError):
    """Raised when the version matrix or the run environment cannot be resolved."""


class ProvisioningError(HarnessError):
    """Raised when a cluster cannot be created after retry exhaustion."""


class ClusterConnectionError(ProvisioningError):
    """Raised when attaching to a pre-existing cluster fails."""


class DeletionError(HarnessError):
    """Raised when a cluster or release cannot be torn down."""


class ClusterUnavailableError(HarnessError):
    """Raised when a connection handle is used while its cluster is not ready."""


class ValidationFailure(HarnessError):
    """Raised when a post-condition checked by a test unit does not hold."""


class CommandError(HarnessError):
    def __init__(self, args: Sequence[str], returncode: int, stderr: str = "", stdout: str = "") -> None:
        self.argv = list(args)
        self.returncode = returncode
        self.stderr = stderr
        self.stdout = stdout
        detail = (stderr or stdout).strip()
        message = f"{' '.join(self.argv)} exited with {returncode}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class ReadinessTimeoutError(HarnessError):
    def __init__(self, description: str, attempts: int, last_error: Optional[BaseException] = None) -> None:
        self.description = description
        self.attempts = attempts
        self.last_error = last_error
        message = f"{description} not satisfied after {attempts} attempts"
        if last_error is not None:
            message = f"{message}: {last_error}"
        super().__init__(message)


class SuiteExecutionFailure(HarnessError):
    def __init__(
        self,
        message: str,
        *,
        result: Any = None,
        exit_code: Optional[int] = None,
        logs: Optional[str] = None,
    ) -> None:
        self.result = result
        self.exit_code = exit_code
        self.logs = logs
        super().__init__(message)


class SuiteTimeoutError(SuiteExecutionFailure):
    """Raised when the external suite exceeds its wall-clock bound."""


__all__ = [
    "ClusterConnectionError",
    "ClusterUnavailableError",
    "CommandError",
    "ConfigurationError",
    "DeletionError",
    "HarnessError",
    "ProvisioningError",
    "ReadinessTimeoutError",
    "SuiteExecutionFailure",
    "SuiteTimeoutError",
    "ValidationFailure",
]
