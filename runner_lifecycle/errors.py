"""Typed errors for the runner lifecycle stages."""

from __future__ import annotations


class LifecycleError(Exception):
    """Base class for fatal lifecycle errors."""

    stage = "lifecycle"
    exit_code = 1


class ConfigValidationError(LifecycleError):
    """Raised when configuration is missing or malformed."""

    stage = "validation"
    exit_code = 2

    def __init__(self, problems: list[str]) -> None:
        self.problems = list(problems)
        super().__init__("; ".join(self.problems) or "invalid configuration")


class AuthError(LifecycleError):
    """Raised when the control plane refuses to issue a registration token."""

    stage = "token_exchange"
    exit_code = 3

    def __init__(self, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(f"HTTP {status_code}: {message}")


class NetworkError(LifecycleError):
    """Raised on transport failures talking to the control plane."""

    stage = "token_exchange"
    exit_code = 4


class ConfigurationError(LifecycleError):
    """Raised when the local identity configuration procedure fails."""

    stage = "identity_configuration"
    exit_code = 5


class SupervisorError(LifecycleError):
    """Raised when the job-execution process cannot be launched."""

    stage = "supervision"
    exit_code = 6
