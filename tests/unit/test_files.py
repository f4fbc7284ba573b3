"""Unit tests for archive extraction and scratch workspaces."""

from __future__ import annotations

import io
import os
import tarfile
import zipfile
from pathlib import Path

import pytest

from nats_sandbox.files import extract_archive, make_executable, scratch_workspace, try_delete_directory


def _write_tar(path: Path, entries: dict[str, bytes]) -> None:
    with tarfile.open(path, "w:gz") as archive:
        for name, payload in entries.items():
            info = tarfile.TarInfo(name)
            info.size = len(payload)
            archive.addfile(info, io.BytesIO(payload))


def test_tar_entries_are_flattened(tmp_path: Path) -> None:
    archive = tmp_path / "release.tar.gz"
    _write_tar(
        archive,
        {
            "nats-server-v2.12.1-linux-amd64/nats-server": b"binary",
            "nats-server-v2.12.1-linux-amd64/README.md": b"readme",
        },
    )

    extract_archive(archive, tmp_path / "out")

    assert (tmp_path / "out" / "nats-server").read_bytes() == b"binary"
    assert (tmp_path / "out" / "README.md").read_bytes() == b"readme"
    assert not (tmp_path / "out" / "nats-server-v2.12.1-linux-amd64").exists()


def test_zip_entries_are_flattened_and_directories_skipped(tmp_path: Path) -> None:
    archive = tmp_path / "release.zip"
    with zipfile.ZipFile(archive, "w") as handle:
        handle.writestr("nats-server-v2.12.1-windows-amd64/", "")
        handle.writestr("nats-server-v2.12.1-windows-amd64/nats-server.exe", b"exe")

    extract_archive(archive, tmp_path / "out")

    assert sorted(p.name for p in (tmp_path / "out").iterdir()) == ["nats-server.exe"]


def test_existing_files_are_overwritten(tmp_path: Path) -> None:
    destination = tmp_path / "out"
    destination.mkdir()
    (destination / "nats-server").write_bytes(b"stale")
    archive = tmp_path / "release.tar.gz"
    _write_tar(archive, {"dir/nats-server": b"fresh"})

    extract_archive(archive, destination)

    assert (destination / "nats-server").read_bytes() == b"fresh"


def test_corrupt_archive_raises(tmp_path: Path) -> None:
    archive = tmp_path / "release.tar.gz"
    archive.write_bytes(b"definitely not an archive")
    with pytest.raises(tarfile.TarError):
        extract_archive(archive, tmp_path / "out")


def test_scratch_workspace_is_removed_on_error(tmp_path: Path) -> None:
    with pytest.raises(RuntimeError):
        with scratch_workspace(tmp_path) as work:
            (work.download_dir / "archive").write_bytes(b"partial")
            seen = (work.download_dir, work.extract_dir)
            raise RuntimeError("boom")

    assert not seen[0].exists()
    assert not seen[1].exists()


def test_scratch_workspaces_are_unique(tmp_path: Path) -> None:
    with scratch_workspace(tmp_path) as first, scratch_workspace(tmp_path) as second:
        assert first.download_dir != second.download_dir
        assert first.extract_dir.is_dir() and second.extract_dir.is_dir()


@pytest.mark.skipif(os.name == "nt", reason="POSIX permission bits")
def test_make_executable(tmp_path: Path) -> None:
    target = tmp_path / "nats-server"
    target.write_bytes(b"#!/bin/sh\n")
    target.chmod(0o644)
    make_executable(target)
    assert os.access(target, os.X_OK)


def test_try_delete_directory_tolerates_missing(tmp_path: Path) -> None:
    assert try_delete_directory(tmp_path / "missing") is True
