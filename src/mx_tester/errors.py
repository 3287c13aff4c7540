"""
Error kinds raised by the mx-tester core.

Every error carries the phase it was raised in so that the command-line
layer can report the first fatal error with phase attribution.
"""

from typing import List, Optional


class MxTesterError(Exception):
    """Base class for all mx-tester errors."""

    def __init__(self, message: str, phase: Optional[str] = None):
        super().__init__(message)
        self.phase = phase

    def __str__(self) -> str:
        message = super().__str__()
        if self.phase:
            return f"[{self.phase}] {message}"
        return message


class ConfigurationError(MxTesterError):
    """Raised when the suite configuration is malformed or inconsistent."""

    def __init__(self, message: str):
        super().__init__(message, phase="config")


class ScriptFailure(MxTesterError):
    """Raised when an operator script exits with a non-zero status."""

    def __init__(self, phase: str, index: int, command: str, exit_code: int):
        self.index = index
        self.command = command
        self.exit_code = exit_code
        super().__init__(
            f"script #{index} `{command}` failed with exit code {exit_code}",
            phase=phase,
        )


class ContainerEngineError(MxTesterError):
    """Raised when Docker fails to build, start, stop or network."""

    pass


class ServerUnreachable(MxTesterError):
    """Raised when the homeserver does not answer the liveness probe in time."""

    def __init__(self, url: str, attempts: int):
        self.url = url
        self.attempts = attempts
        super().__init__(
            f"homeserver at {url} did not answer after {attempts} attempts",
            phase="up",
        )


class ProvisioningError(MxTesterError):
    """Raised when the homeserver rejects a fixture provisioning request."""

    def __init__(self, fixture: str, cause: str):
        self.fixture = fixture
        self.cause = cause
        super().__init__(f"could not provision {fixture}: {cause}", phase="up")


class TeardownError(MxTesterError):
    """
    Aggregate of every failure collected while tearing down.

    ``resources_cleaned`` is True when the container and network were
    removed despite the failures, i.e. only teardown scripts failed.
    """

    def __init__(self, failures: List[Exception], resources_cleaned: bool):
        self.failures = list(failures)
        self.resources_cleaned = resources_cleaned
        details = "; ".join(str(failure) for failure in self.failures)
        super().__init__(
            f"{len(self.failures)} teardown step(s) failed: {details}",
            phase="down",
        )
