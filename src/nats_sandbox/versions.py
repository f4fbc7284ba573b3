"""Binary acquisition and the version-keyed executable cache.

Layout on disk::

    <cache root>/bin/v<version>/nats-server[.exe]

A cache entry is placed with an atomic rename and never rewritten afterwards,
so a plain existence check is enough on the warm path. Cold misses are
serialised by one lock per cache root; separate processes sharing a cache
root may both download, but each places a complete file atomically.
"""

from __future__ import annotations

import logging
import os
import shutil
import tarfile
import threading
import uuid
import zipfile
from contextlib import aclosing
from functools import lru_cache
from pathlib import Path
from typing import Optional

import anyio
import httpx
from anyio import to_thread

from .config import RunnerOptions
from .exceptions import (
    AcquisitionError,
    BinaryNotFoundError,
    NatsSandboxError,
    PackageMalformedError,
    VersionNotFoundError,
)
from .files import app_data_dir, extract_archive, make_executable, scratch_workspace
from .platforms import PlatformInfo, detect_platform, download_url, version_tag
from .transport import DownloadTransport, HttpxTransport

logger = logging.getLogger(__name__)

ARCHIVE_FILENAME = "nats-server-archive"
LOCK_POLL_INTERVAL_S = 0.05


class CacheManager:
    """Resolves nats-server executables from a shared on-disk cache.

    One manager owns one cache root and the lock guarding downloads into it.
    Use :func:`get_cache_manager` to obtain the shared instance for a root so
    every runner in the process contends on the same lock. The lock is coarse:
    downloads of unrelated versions are serialised too.
    """

    def __init__(
        self,
        root: Path | None = None,
        *,
        lock: Optional[threading.Lock] = None,
        platform: Optional[PlatformInfo] = None,
        scratch_root: Path | None = None,
    ) -> None:
        self.root = (root or app_data_dir()).resolve()
        self._lock = lock or threading.Lock()
        self._platform = platform
        self._scratch_root = scratch_root

    @property
    def platform(self) -> PlatformInfo:
        if self._platform is None:
            self._platform = detect_platform()
        return self._platform

    def binary_path(self, version: str | None = None) -> Path:
        """Return the cache path for a version (whether or not it exists)."""
        tag = version_tag(version)
        return self.root / "bin" / tag / self.platform.binary_file_name

    async def ensure(self, options: RunnerOptions) -> Path:
        """
        Return an absolute path to a usable nats-server executable.

        Raises:
            BinaryNotFoundError: ``binary_directory`` lacks the executable.
            VersionNotFoundError: No release asset exists for the version.
            PackageMalformedError: The archive lacks the executable.
            AcquisitionError: Any other download or extraction failure.
        """
        if options.binary_directory is not None:
            return self._custom_binary(options.binary_directory)

        tag = version_tag(options.version)
        binary_path = self.binary_path(tag)
        if binary_path.is_file():
            return binary_path

        # Waiters poll instead of parking a worker thread on the lock.
        while not self._lock.acquire(blocking=False):
            await anyio.sleep(LOCK_POLL_INTERVAL_S)
        try:
            if binary_path.is_file():
                logger.debug("nats-server %s was cached by a concurrent caller", tag)
                return binary_path

            url = download_url(tag, self.platform, base_url=options.download_base_url)
            transport = options.transport or HttpxTransport()
            try:
                await self._download_and_extract(transport, url, binary_path)
            except NatsSandboxError:
                raise
            except httpx.HTTPStatusError as exc:
                if exc.response.status_code == 404:
                    raise VersionNotFoundError(tag) from exc
                raise AcquisitionError(
                    f"Failed to download nats-server {tag} from {url}: {exc}"
                ) from exc
            except (
                httpx.HTTPError,
                OSError,
                EOFError,
                ValueError,
                tarfile.TarError,
                zipfile.BadZipFile,
            ) as exc:
                raise AcquisitionError(
                    f"Failed to acquire nats-server {tag} from {url}: {exc}"
                ) from exc
            return binary_path
        finally:
            self._lock.release()

    def _custom_binary(self, directory: Path) -> Path:
        candidate = (directory / self.platform.binary_file_name).resolve()
        if candidate.is_file():
            return candidate
        raise BinaryNotFoundError(
            f"The provided binary directory '{directory}' does not contain the "
            f"executable '{self.platform.binary_file_name}'."
        )

    async def _download_and_extract(
        self,
        transport: DownloadTransport,
        url: str,
        binary_path: Path,
    ) -> None:
        with scratch_workspace(self._scratch_root) as work:
            archive_path = work.download_dir / ARCHIVE_FILENAME
            logger.info("Downloading %s", url)
            with archive_path.open("wb") as handle:
                async with aclosing(transport.stream(url)) as chunks:
                    async for chunk in chunks:
                        handle.write(chunk)

            await to_thread.run_sync(extract_archive, archive_path, work.extract_dir)

            extracted = work.extract_dir / binary_path.name
            if not extracted.is_file():
                raise PackageMalformedError(
                    f"Could not find {binary_path.name} in downloaded archive {url}"
                )
            _place(extracted, binary_path)
            logger.info("Cached nats-server at %s", binary_path)


def _place(source: Path, destination: Path) -> None:
    """Stage a copy beside ``destination`` and atomically rename it into place."""
    destination.parent.mkdir(parents=True, exist_ok=True)
    staging = destination.with_name(f".{destination.name}.{uuid.uuid4().hex}.tmp")
    try:
        shutil.copyfile(source, staging)
        make_executable(staging)
        try:
            os.replace(staging, destination)
        except OSError:
            # Another process placed the entry first; keep theirs.
            if not destination.is_file():
                raise
    finally:
        if staging.exists():
            staging.unlink()


def get_cache_manager(root: Path | None = None) -> CacheManager:
    """Return the process-wide cache manager for a cache root."""
    return _manager_for_root((root or app_data_dir()).resolve())


@lru_cache
def _manager_for_root(root: Path) -> CacheManager:
    return CacheManager(root)


async def ensure_nats_binary(options: RunnerOptions) -> Path:
    """Resolve the executable for ``options`` through the shared cache manager."""
    return await get_cache_manager(options.cache_directory).ensure(options)
