"""Runner configuration.

Options are validated eagerly: constructing :class:`RunnerOptions` with an
invalid value raises :class:`~nats_sandbox.exceptions.ConfigurationError`
before any port, directory or process is touched. Scalar options can also be
provided through ``NATS_SANDBOX_*`` environment variables, e.g.
``NATS_SANDBOX_VERSION=2.10.22`` or ``NATS_SANDBOX_BINARY_DIRECTORY=/opt/nats``.
"""

from __future__ import annotations

import os
import re
import shlex
from datetime import timedelta
from pathlib import Path
from typing import Any, Callable, Optional, Union

from pydantic import Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import ConfigurationError
from .platforms import DEFAULT_DOWNLOAD_BASE_URL
from .transport import DownloadTransport

_VERSION_PATTERN = re.compile(r"^v?[0-9A-Za-z][0-9A-Za-z.+\-]*$")


class RunnerOptions(BaseSettings):
    """Configuration for a sandboxed NATS server.

    Attributes:
        port: Client port; ``None`` allocates a free port.
        monitoring_port: HTTP monitoring port; ``None`` allocates a free port.
        enable_jetstream: Start the server with JetStream persistence.
        enable_debug_logging: Pass ``--debug`` to the server.
        enable_trace_logging: Pass ``--trace`` to the server (very verbose).
        standard_output_logger: Receives every non-blank line the server writes
            to stdout or stderr.
        data_directory: Caller-owned data directory; ``None`` creates a
            temporary one that is deleted on disposal.
        binary_directory: Directory containing a caller-provided
            ``nats-server`` executable; disables downloads.
        cache_directory: Root of the binary cache; defaults to the per-user
            application data directory.
        connection_timeout: Seconds to wait for the server to accept a client.
        data_directory_lifetime: Age after which abandoned temporary data
            directories are swept.
        additional_arguments: Extra server flags, appended verbatim. A string is
            split with shell rules.
        version: nats-server release to download (default ``2.12.1``).
        download_base_url: Base URL of the release download mirror.
        transport: Transport used to download release archives.
    """

    model_config = SettingsConfigDict(
        env_prefix="NATS_SANDBOX_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
        arbitrary_types_allowed=True,
    )

    port: Optional[int] = Field(default=None, gt=0, description="Client port")
    monitoring_port: Optional[int] = Field(
        default=None, gt=0, description="HTTP monitoring port"
    )
    enable_jetstream: bool = Field(default=False, description="Enable JetStream")
    enable_debug_logging: bool = Field(default=False, description="Pass --debug")
    enable_trace_logging: bool = Field(default=False, description="Pass --trace")
    standard_output_logger: Optional[Callable[[str], None]] = Field(
        default=None,
        description="Sink receiving server output lines",
        exclude=True,
    )
    data_directory: Optional[Path] = Field(default=None, description="Caller-owned data dir")
    binary_directory: Optional[Path] = Field(
        default=None, description="Directory holding a nats-server executable"
    )
    cache_directory: Optional[Path] = Field(default=None, description="Binary cache root")
    connection_timeout: float = Field(
        default=30.0, ge=0, description="Seconds to wait for readiness"
    )
    data_directory_lifetime: timedelta = Field(
        default=timedelta(hours=12),
        description="Retention window for abandoned temporary data directories",
    )
    additional_arguments: Optional[Union[list[str], str]] = Field(
        default=None, description="Extra server arguments"
    )
    version: Optional[str] = Field(default=None, description="nats-server version")
    download_base_url: str = Field(
        default=DEFAULT_DOWNLOAD_BASE_URL, description="Release download base URL"
    )
    transport: Optional[DownloadTransport] = Field(
        default=None, description="Download transport", exclude=True
    )

    def __init__(self, **values: Any) -> None:
        try:
            super().__init__(**values)
        except ValidationError as exc:
            raise ConfigurationError(_describe(exc)) from exc

    @field_validator("data_directory", "binary_directory", "cache_directory", mode="before")
    @classmethod
    def _check_directory(cls, value: Any) -> Any:
        if value is None:
            return None
        if not isinstance(value, (str, bytes, os.PathLike)):
            return value
        text = os.fspath(value)
        if isinstance(text, bytes):
            text = os.fsdecode(text)
        if not text.strip():
            return None
        if "\0" in text:
            raise ValueError("directory path contains a NUL character")
        return Path(text).expanduser()

    @field_validator("data_directory_lifetime")
    @classmethod
    def _check_lifetime(cls, value: timedelta) -> timedelta:
        if value < timedelta(0):
            raise ValueError("lifetime cannot be negative")
        return value

    @field_validator("additional_arguments")
    @classmethod
    def _split_arguments(cls, value: Optional[Union[list[str], str]]) -> Optional[list[str]]:
        if value is None:
            return None
        if isinstance(value, str):
            if not value.strip():
                return None
            return shlex.split(value, posix=os.name != "nt")
        return list(value)

    @field_validator("version")
    @classmethod
    def _check_version(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        trimmed = value.strip()
        if not trimmed:
            return None
        if not _VERSION_PATTERN.match(trimmed):
            raise ValueError(f"invalid version string {value!r}")
        return trimmed

    @field_validator("download_base_url")
    @classmethod
    def _check_base_url(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError("download_base_url must be an http(s) URL")
        return value

    @model_validator(mode="after")
    def _check_distinct_ports(self) -> "RunnerOptions":
        if (
            self.port is not None
            and self.monitoring_port is not None
            and self.port == self.monitoring_port
        ):
            raise ValueError("port and monitoring_port must differ")
        return self

    @property
    def extra_arguments(self) -> list[str]:
        """Additional server arguments as an argv list."""
        return list(self.additional_arguments or [])

    @property
    def owns_data_directory(self) -> bool:
        """Return True when the runner creates and deletes the data directory."""
        return self.data_directory is None


def _describe(exc: ValidationError) -> str:
    parts: list[str] = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ())) or "options"
        parts.append(f"{location}: {error.get('msg', 'invalid value')}")
    return "Invalid runner options: " + "; ".join(parts)
