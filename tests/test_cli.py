from __future__ import annotations

from pathlib import Path

from typer.testing import CliRunner

from nats_sandbox.cli import app
from nats_sandbox.platforms import binary_file_name

runner = CliRunner()


def test_prune_command_removes_stale_directories(tmp_path: Path) -> None:
    """Test that prune deletes only abandoned run directories."""
    stale = tmp_path / "run-20000101T000000Z-0123abcd"
    stale.mkdir()
    keep = tmp_path / "unrelated"
    keep.mkdir()

    result = runner.invoke(app, ["prune", "--root", str(tmp_path)])

    assert result.exit_code == 0
    assert "Removed 1 stale data directories" in result.stdout
    assert not stale.exists()
    assert keep.exists()


def test_download_command_prints_cached_path(tmp_path: Path) -> None:
    """Test that download resolves an already cached binary without network access."""
    cached = tmp_path / "bin" / "v2.10.22" / binary_file_name()
    cached.parent.mkdir(parents=True)
    cached.write_bytes(b"cached")

    result = runner.invoke(app, ["download", "--version", "2.10.22", "--cache-dir", str(tmp_path)])

    assert result.exit_code == 0
    assert result.stdout.strip() == str(cached.resolve())


def test_run_command_rejects_invalid_port() -> None:
    """Test that invalid options exit with a usage error before starting anything."""
    result = runner.invoke(app, ["run", "--port", "0"])
    assert result.exit_code == 2


def test_run_command_reports_missing_binary(tmp_path: Path) -> None:
    """Test that startup failures exit with status 1."""
    result = runner.invoke(app, ["run", "--binary-dir", str(tmp_path)])
    assert result.exit_code == 1
