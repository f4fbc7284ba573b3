"""Pytest configuration helpers."""

from __future__ import annotations

import asyncio
import stat
import sys
import textwrap
from pathlib import Path
from typing import Awaitable, Callable

import pytest

from nats_sandbox.data_dir import DataDirectoryManager

# Stand-in for nats-server: accepts TCP connections on --port and understands a
# few test-only flags that make it misbehave on purpose.
FAKE_SERVER_SOURCE = textwrap.dedent(
    """
    import socket
    import sys
    import time

    args = sys.argv[1:]


    def flag_value(name):
        return args[args.index(name) + 1] if name in args else None


    print("fake-nats: starting with " + " ".join(args), flush=True)
    if "--exit-immediately" in args:
        sys.stderr.write("fake-nats: unrecognized flag --exit-immediately\\n")
        sys.stderr.flush()
        sys.exit(3)
    if "--never-listen" in args:
        while True:
            time.sleep(1)

    time.sleep(float(flag_value("--startup-delay") or 0))
    server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    server.bind(("127.0.0.1", int(flag_value("--port"))))
    server.listen(64)
    print("fake-nats: listening", flush=True)
    while True:
        conn, _ = server.accept()
        conn.close()
    """
)


def write_fake_server(directory: Path) -> Path:
    """Write an executable ``nats-server`` stand-in into ``directory``."""
    directory.mkdir(parents=True, exist_ok=True)
    script = directory / "fake_nats_server.py"
    script.write_text(FAKE_SERVER_SOURCE, encoding="utf-8")
    executable = directory / "nats-server"
    executable.write_text(
        f'#!/bin/sh\nexec "{sys.executable}" "{script}" "$@"\n',
        encoding="utf-8",
    )
    executable.chmod(executable.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return executable


async def _tcp_probe(url: str) -> None:
    """Readiness probe that only checks the TCP port accepts connections."""
    port = int(url.rsplit(":", 1)[1])
    _, writer = await asyncio.open_connection("127.0.0.1", port)
    writer.close()
    await writer.wait_closed()


@pytest.fixture
def fake_server(tmp_path: Path) -> Path:
    """Path to an executable fake nats-server."""
    if sys.platform.startswith("win"):
        pytest.skip("fake server relies on a POSIX shell wrapper")
    return write_fake_server(tmp_path / "bin")


@pytest.fixture
def data_manager(tmp_path: Path) -> DataDirectoryManager:
    """Data directory manager rooted in the test's temporary directory."""
    return DataDirectoryManager(tmp_path / "data")


@pytest.fixture
def tcp_probe() -> Callable[[str], Awaitable[None]]:
    """Readiness probe suitable for the fake server."""
    return _tcp_probe
