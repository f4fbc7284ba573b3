"""Data directory creation and garbage collection of abandoned runs."""

from __future__ import annotations

import logging
import re
import shutil
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path

from .files import temp_root, try_delete_directory

logger = logging.getLogger(__name__)

DIRECTORY_PREFIX = "run-"
_TIMESTAMP_FORMAT = "%Y%m%dT%H%M%SZ"
_NAME_PATTERN = re.compile(r"^run-(\d{8}T\d{6}Z)-[0-9a-f]+$")


@dataclass(frozen=True, slots=True)
class DataDirectory:
    """A prepared data directory and whether this package must delete it."""

    path: Path
    owned: bool


def default_root() -> Path:
    """Return the temporary root under which auto-managed directories live."""
    return temp_root() / "data"


class DataDirectoryManager:
    """Creates data directories and sweeps ones left behind by crashed runs."""

    def __init__(self, root: Path | None = None) -> None:
        self.root = root or default_root()

    def prepare(
        self,
        requested: Path | None,
        *,
        lifetime: timedelta,
        now: datetime | None = None,
    ) -> DataDirectory:
        """
        Create the data directory for a run.

        A caller-supplied directory is created if missing and is never swept
        or deleted. Otherwise stale siblings are swept first and a uniquely
        named directory is created under :attr:`root`.
        """
        if requested is not None:
            requested.mkdir(parents=True, exist_ok=True)
            return DataDirectory(path=requested.resolve(), owned=False)

        current = now or datetime.now(timezone.utc)
        self.sweep(lifetime, now=current)
        path = self.root / _directory_name(current)
        path.mkdir(parents=True, exist_ok=False)
        logger.debug("Created data directory %s", path)
        return DataDirectory(path=path.resolve(), owned=True)

    def sweep(self, lifetime: timedelta, *, now: datetime | None = None) -> list[Path]:
        """Delete auto-managed directories older than ``lifetime``; never raises."""
        cutoff = (now or datetime.now(timezone.utc)) - lifetime
        removed: list[Path] = []
        try:
            candidates = list(self.root.iterdir())
        except OSError:
            return removed

        for candidate in candidates:
            if not candidate.name.startswith(DIRECTORY_PREFIX):
                continue
            try:
                if not candidate.is_dir():
                    continue
                created = _created_at(candidate)
            except OSError:
                continue
            if created < cutoff and try_delete_directory(candidate):
                logger.debug("Swept stale data directory %s", candidate)
                removed.append(candidate)
        return removed

    def release(self, directory: DataDirectory) -> None:
        """
        Delete an owned directory; caller-supplied directories are left alone.

        Raises:
            OSError: The directory could not be removed.
        """
        if directory.owned and directory.path.exists():
            shutil.rmtree(directory.path)


def _directory_name(created: datetime) -> str:
    stamp = created.astimezone(timezone.utc).strftime(_TIMESTAMP_FORMAT)
    return f"{DIRECTORY_PREFIX}{stamp}-{uuid.uuid4().hex}"


def _created_at(path: Path) -> datetime:
    """Creation time from the directory name, else the modification time."""
    match = _NAME_PATTERN.match(path.name)
    if match:
        return datetime.strptime(match.group(1), _TIMESTAMP_FORMAT).replace(
            tzinfo=timezone.utc
        )
    return datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
