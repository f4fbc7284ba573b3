"""Platform naming conventions for nats-server release assets."""

from __future__ import annotations

import platform
import sys
from dataclasses import dataclass

from .exceptions import AcquisitionError

BINARY_NAME = "nats-server"
DEFAULT_VERSION = "2.12.1"
DEFAULT_DOWNLOAD_BASE_URL = "https://github.com/nats-io/nats-server/releases/download"

_ARCHITECTURES = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "armv6l": "arm",
    "armv7l": "arm",
    "arm": "arm",
}


@dataclass(frozen=True, slots=True)
class PlatformInfo:
    """Operating system and CPU architecture as named in release assets."""

    os: str
    arch: str

    @property
    def is_windows(self) -> bool:
        return self.os == "windows"

    @property
    def binary_file_name(self) -> str:
        return f"{BINARY_NAME}.exe" if self.is_windows else BINARY_NAME

    @property
    def archive_extension(self) -> str:
        return ".zip" if self.is_windows else ".tar.gz"


def detect_platform() -> PlatformInfo:
    """Return the release naming for the running interpreter's host."""
    if sys.platform.startswith("win"):
        os_name = "windows"
    elif sys.platform.startswith("linux"):
        os_name = "linux"
    elif sys.platform == "darwin":
        os_name = "darwin"
    else:
        raise AcquisitionError(f"Current operating system is not supported: {sys.platform}")

    # Unknown machines fall back to amd64, matching upstream's most common build.
    arch = _ARCHITECTURES.get(platform.machine().lower(), "amd64")
    return PlatformInfo(os=os_name, arch=arch)


def binary_file_name(info: PlatformInfo | None = None) -> str:
    """Return the executable file name for the given (or current) platform."""
    return (info or detect_platform()).binary_file_name


def version_tag(version: str | None) -> str:
    """Normalise a version string into the ``v<semver>`` release tag."""
    value = (version or DEFAULT_VERSION).strip()
    if value.startswith("v"):
        value = value[1:]
    return f"v{value}"


def download_url(
    tag: str,
    info: PlatformInfo | None = None,
    *,
    base_url: str = DEFAULT_DOWNLOAD_BASE_URL,
) -> str:
    """
    Build the release archive URL for a version tag.

    Example:
        ``<base>/v2.12.1/nats-server-v2.12.1-linux-amd64.tar.gz``
    """
    target = info or detect_platform()
    asset = f"{BINARY_NAME}-{tag}-{target.os}-{target.arch}{target.archive_extension}"
    return f"{base_url.rstrip('/')}/{tag}/{asset}"
