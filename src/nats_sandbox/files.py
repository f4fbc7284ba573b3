"""Filesystem helpers: well-known roots, scratch workspaces and archives."""

from __future__ import annotations

import logging
import os
import shutil
import stat
import sys
import tarfile
import tempfile
import uuid
import zipfile
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Iterator

APP_NAME = "nats-sandbox"

logger = logging.getLogger(__name__)


def app_data_dir() -> Path:
    """Return the per-user application data directory holding the binary cache."""
    if sys.platform.startswith("win"):
        base = os.environ.get("LOCALAPPDATA") or str(Path.home() / "AppData" / "Local")
        return Path(base) / APP_NAME
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / APP_NAME
    base = os.environ.get("XDG_DATA_HOME") or str(Path.home() / ".local" / "share")
    return Path(base) / APP_NAME


def temp_root() -> Path:
    """Return the temporary root used for scratch and data directories."""
    return Path(tempfile.gettempdir()) / APP_NAME


@dataclass(frozen=True, slots=True)
class ScratchWorkspace:
    """Ephemeral download/extract directory pair used during acquisition."""

    download_dir: Path
    extract_dir: Path


@contextmanager
def scratch_workspace(root: Path | None = None) -> Iterator[ScratchWorkspace]:
    """
    Create a fresh scratch workspace and delete it when the block exits.

    Deletion happens on success and failure alike and never raises.
    """
    base = root or temp_root()
    name = f"nats-{uuid.uuid4().hex}"
    workspace = ScratchWorkspace(
        download_dir=base / "downloads" / name,
        extract_dir=base / "extract" / name,
    )
    try:
        workspace.download_dir.mkdir(parents=True, exist_ok=True)
        workspace.extract_dir.mkdir(parents=True, exist_ok=True)
        yield workspace
    finally:
        try_delete_directory(workspace.download_dir)
        try_delete_directory(workspace.extract_dir)


def extract_archive(archive_path: Path, destination: Path) -> None:
    """
    Extract a ``.zip`` or ``.tar(.gz)`` archive into ``destination``.

    Entry paths are flattened to their base names, directory entries are
    ignored and existing files are overwritten.
    """
    destination.mkdir(parents=True, exist_ok=True)
    if zipfile.is_zipfile(archive_path):
        with zipfile.ZipFile(archive_path) as archive:
            for info in archive.infolist():
                if info.is_dir():
                    continue
                name = _flat_name(info.filename)
                if not name:
                    continue
                with archive.open(info) as source:
                    _write_entry(source, destination / name)
        return

    with tarfile.open(archive_path, mode="r:*") as archive:
        for member in archive.getmembers():
            if not member.isfile():
                continue
            name = _flat_name(member.name)
            if not name:
                continue
            source = archive.extractfile(member)
            if source is None:
                continue
            with source:
                _write_entry(source, destination / name)


def _flat_name(entry_name: str) -> str:
    return entry_name.replace("\\", "/").rstrip("/").rsplit("/", 1)[-1]


def _write_entry(source: IO[bytes], target: Path) -> None:
    with target.open("wb") as handle:
        shutil.copyfileobj(source, handle)


def make_executable(path: Path) -> None:
    """Add execute permission bits on POSIX systems; no-op on Windows."""
    if sys.platform.startswith("win"):
        return
    mode = path.stat().st_mode
    path.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)


def try_delete_directory(path: Path) -> bool:
    """Recursively delete a directory, returning False instead of raising."""
    try:
        if path.exists():
            shutil.rmtree(path)
        return True
    except OSError as exc:
        logger.debug("Failed to delete directory %s", path, exc_info=exc)
        return False
