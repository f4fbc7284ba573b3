"""NATS server process supervision.

This module owns the server subprocess: launching it, capturing its output,
deciding when it is ready, detecting an early exit and tearing it down.
"""

from __future__ import annotations

import asyncio
import atexit
import contextlib
import errno
import logging
import os
import signal
import subprocess
import sys
import threading
from asyncio.subprocess import PIPE, Process
from collections import deque
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Sequence

import nats

from .config import RunnerOptions
from .data_dir import DataDirectory, DataDirectoryManager
from .exceptions import (
    NatsSandboxError,
    ProcessStartError,
    ReadinessTimeoutError,
    UnexpectedExitError,
)
from .teardown import BestEffort

logger = logging.getLogger(__name__)
server_logger = logging.getLogger("nats_sandbox.server")

START_ATTEMPTS = 3
START_RETRY_DELAY_S = 0.05
POLL_INTERVAL_S = 0.1
PROBE_TIMEOUT_S = 1.0
KILL_WAIT_S = 5.0
OUTPUT_DRAIN_S = 5.0
CAPTURED_LINES = 200
STREAM_LIMIT = 1024 * 1024

# "Text file busy" is transient under concurrent process creation.
_ETXTBSY = getattr(errno, "ETXTBSY", 26)

ReadinessProbe = Callable[[str], Awaitable[None]]
OutputSink = Callable[[str], None]


class ProcessState(str, Enum):
    """Lifecycle states of a supervised server process."""

    CREATED = "created"
    STARTING = "starting"
    READY = "ready"
    FAILED = "failed"
    DISPOSED = "disposed"


def server_url(port: int) -> str:
    """Return the client URL for a server listening on ``port``."""
    return f"nats://localhost:{port}"


def build_arguments(
    options: RunnerOptions,
    port: int,
    monitoring_port: int,
    data_directory: Path,
) -> list[str]:
    """Build the nats-server command-line flags for a run."""
    args = ["--port", str(port), "--http_port", str(monitoring_port)]
    if options.enable_jetstream:
        args.extend(["--jetstream", "--store_dir", str(data_directory / "jetstream")])
    if options.enable_debug_logging:
        args.append("--debug")
    if options.enable_trace_logging:
        args.append("--trace")
    args.extend(options.extra_arguments)
    return args


async def nats_handshake(url: str) -> None:
    """Complete a real client connect and disconnect against ``url``."""

    async def _quiet(exc: Exception) -> None:
        logger.debug("Readiness probe error for %s: %s", url, exc)

    client = await nats.connect(
        servers=[url],
        connect_timeout=PROBE_TIMEOUT_S,
        allow_reconnect=False,
        max_reconnect_attempts=0,
        error_cb=_quiet,
    )
    await client.close()


class ProcessSupervisor:
    """Starts, monitors and tears down one nats-server process.

    The supervisor moves through :class:`ProcessState`:
    ``CREATED -> STARTING -> READY | FAILED`` and reaches ``DISPOSED`` from any
    state. :meth:`dispose` never raises and is idempotent.
    """

    def __init__(
        self,
        executable: Path,
        arguments: Sequence[str],
        *,
        url: str,
        data_directory: DataDirectory,
        directories: DataDirectoryManager,
        output_sink: Optional[OutputSink] = None,
        probe: ReadinessProbe = nats_handshake,
        poll_interval: float = POLL_INTERVAL_S,
    ) -> None:
        self.command = [str(executable), *arguments]
        self.url = url
        self.data_directory = data_directory
        self._directories = directories
        self._sink = output_sink
        self._probe = probe
        self._poll_interval = poll_interval
        self._state = ProcessState.CREATED
        self._process: Process | None = None
        self._pumps: list[asyncio.Task[None]] = []
        self._output: deque[str] = deque(maxlen=CAPTURED_LINES)

    @property
    def state(self) -> ProcessState:
        return self._state

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    @property
    def returncode(self) -> int | None:
        return self._process.returncode if self._process else None

    @property
    def output(self) -> list[str]:
        """Most recent captured output lines (stdout and stderr interleaved)."""
        return list(self._output)

    def describe(self) -> str:
        return f"nats-server[{self.url}]"

    # ------------------------------------------------------------------
    # Startup

    async def start(self) -> None:
        """Launch the server process with stdout and stderr captured.

        Raises:
            ProcessStartError: The operating system refused to start it.
        """
        if self._state is not ProcessState.CREATED:
            raise NatsSandboxError(f"{self.describe()} cannot start from state {self._state.value}")
        self._state = ProcessState.STARTING
        logger.debug("Starting %s", " ".join(self.command))

        process = await self._spawn()
        self._process = process
        _register(self)
        if process.stdout is not None:
            self._pumps.append(asyncio.create_task(self._pump(process.stdout, "stdout")))
        if process.stderr is not None:
            self._pumps.append(asyncio.create_task(self._pump(process.stderr, "stderr")))

    async def _spawn(self) -> Process:
        attempt = 1
        while True:
            try:
                return await asyncio.create_subprocess_exec(
                    *self.command,
                    stdin=subprocess.DEVNULL,
                    stdout=PIPE,
                    stderr=PIPE,
                    limit=STREAM_LIMIT,
                    **_process_group_kwargs(),
                )
            except OSError as exc:
                if exc.errno == _ETXTBSY and attempt < START_ATTEMPTS:
                    logger.debug(
                        "Text file busy while starting %s (attempt %d/%d)",
                        self.command[0],
                        attempt,
                        START_ATTEMPTS,
                    )
                    attempt += 1
                    await asyncio.sleep(START_RETRY_DELAY_S)
                    continue
                self._state = ProcessState.FAILED
                raise ProcessStartError(
                    f"Failed to start NATS server '{' '.join(self.command)}': {exc}"
                ) from exc

    async def wait_ready(self, timeout: float) -> None:
        """
        Block until the server completes a client handshake.

        Readiness polling, process exit and the timeout race each other; the
        first one to resolve decides the outcome.

        Raises:
            UnexpectedExitError: The process exited before becoming ready.
            ReadinessTimeoutError: ``timeout`` seconds elapsed first.
        """
        process = self._require_process()
        ready = asyncio.create_task(self._poll_ready())
        exited = asyncio.create_task(process.wait())
        try:
            done, _ = await asyncio.wait(
                {ready, exited},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for task in (ready, exited):
                task.cancel()
            await asyncio.gather(ready, exited, return_exceptions=True)

        if ready in done and not ready.cancelled() and ready.exception() is None:
            self._state = ProcessState.READY
            logger.debug("%s is ready (pid %s)", self.describe(), process.pid)
            return

        self._state = ProcessState.FAILED
        if exited in done or process.returncode is not None:
            await self._drain_output()
            raise UnexpectedExitError(self.command, process.returncode, self.output)
        raise ReadinessTimeoutError(timeout)

    async def _poll_ready(self) -> None:
        while True:
            try:
                await self._probe(self.url)
                return
            except Exception as exc:  # noqa: BLE001
                logger.debug("%s not ready yet: %s", self.describe(), exc)
            await asyncio.sleep(self._poll_interval)

    # ------------------------------------------------------------------
    # Output capture

    async def _pump(self, stream: asyncio.StreamReader, name: str) -> None:
        try:
            while True:
                line = await stream.readline()
                if not line:
                    break
                text = line.decode("utf-8", errors="replace").rstrip()
                if not text.strip():
                    continue
                self._output.append(text)
                server_logger.debug("%s %s: %s", self.describe(), name, text)
                if self._sink is not None:
                    try:
                        self._sink(text)
                    except Exception as exc:  # noqa: BLE001
                        logger.debug("Output sink failed for %s", self.describe(), exc_info=exc)
        except (OSError, ValueError) as exc:
            logger.debug("Failed to read %s of %s", name, self.describe(), exc_info=exc)

    async def _drain_output(self) -> None:
        if not self._pumps:
            return
        await asyncio.wait(self._pumps, timeout=OUTPUT_DRAIN_S)

    # ------------------------------------------------------------------
    # Teardown

    async def dispose(self) -> None:
        """Kill the process tree and delete the data directory when owned."""
        if self._state is ProcessState.DISPOSED:
            return
        self._state = ProcessState.DISPOSED
        _unregister(self)

        cleanup = BestEffort(self.describe())
        process = self._process
        if process is not None and process.returncode is None:
            cleanup.run("kill process tree", _kill_process_tree, process)
            await cleanup.run_async("wait for exit", _wait_for_exit, process, KILL_WAIT_S)

        pumps, self._pumps = self._pumps, []
        for pump in pumps:
            pump.cancel()
        if pumps:
            await asyncio.gather(*pumps, return_exceptions=True)

        cleanup.run("delete data directory", self._directories.release, self.data_directory)
        logger.debug("Disposed %s", self.describe())

    def _kill_at_exit(self) -> None:
        cleanup = BestEffort(self.describe())
        process = self._process
        if process is not None and process.returncode is None:
            cleanup.run("kill process tree", _kill_process_tree, process)
        cleanup.run("delete data directory", self._directories.release, self.data_directory)

    def _require_process(self) -> Process:
        if self._process is None:
            raise NatsSandboxError(f"{self.describe()} has not been started")
        return self._process


def _process_group_kwargs() -> dict[str, Any]:
    if sys.platform.startswith("win"):
        return {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP}
    return {"start_new_session": True}


def _kill_process_tree(process: Process) -> None:
    if sys.platform.startswith("win"):
        subprocess.run(  # nosec B603 B607 - fixed system utility
            ["taskkill", "/F", "/T", "/PID", str(process.pid)],
            capture_output=True,
            check=False,
        )
        if process.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                process.kill()
        return
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass


async def _wait_for_exit(process: Process, timeout: float) -> None:
    await asyncio.wait_for(process.wait(), timeout=timeout)


# Supervisors with a live process, killed at interpreter exit if still running.
_live: set[ProcessSupervisor] = set()
_live_lock = threading.Lock()


def _register(supervisor: ProcessSupervisor) -> None:
    with _live_lock:
        _live.add(supervisor)


def _unregister(supervisor: ProcessSupervisor) -> None:
    with _live_lock:
        _live.discard(supervisor)


@atexit.register
def _kill_orphans() -> None:
    with _live_lock:
        remaining = list(_live)
        _live.clear()
    for supervisor in remaining:
        supervisor._kill_at_exit()
