"""Exceptions raised while provisioning and supervising a NATS server."""

from __future__ import annotations

from typing import Sequence


class NatsSandboxError(RuntimeError):
    """Base exception for nats-sandbox failures."""


class ConfigurationError(NatsSandboxError, ValueError):
    """Raised when runner options contain an invalid value."""


class BinaryNotFoundError(NatsSandboxError):
    """Raised when a caller-supplied binary directory lacks the executable."""


class VersionNotFoundError(NatsSandboxError):
    """Raised when no release asset is published for the requested version."""

    def __init__(self, version: str) -> None:
        super().__init__(f"NATS server version '{version}' was not found.")
        self.version = version


class AcquisitionError(NatsSandboxError):
    """Raised when downloading or extracting a release archive fails."""


class PackageMalformedError(AcquisitionError):
    """Raised when a release archive does not contain the expected binary."""


class ProcessStartError(NatsSandboxError):
    """Raised when the operating system refuses to launch the server."""


class UnexpectedExitError(NatsSandboxError):
    """Raised when the server process exits before it becomes ready."""

    def __init__(
        self,
        command: Sequence[str],
        exit_code: int | None,
        output: Sequence[str] = (),
    ) -> None:
        self.command = list(command)
        self.exit_code = exit_code
        self.output = list(output)
        super().__init__(self._format())

    def _format(self) -> str:
        message = (
            f"The NATS server process '{' '.join(self.command)}' "
            f"exited unexpectedly with code {self.exit_code}."
        )
        if self.output:
            tail = "\n".join(self.output[-20:])
            message = f"{message}\n{tail}"
        return message


class ReadinessTimeoutError(NatsSandboxError):
    """Raised when the server does not accept connections in time."""

    def __init__(self, timeout: float) -> None:
        super().__init__(
            "NATS server did not become ready within the specified timeout of "
            f"{timeout:g} seconds. Consider increasing the value of 'connection_timeout'."
        )
        self.timeout = timeout
