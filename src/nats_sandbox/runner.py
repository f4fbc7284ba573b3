"""Composition root: provision, start and expose a sandboxed NATS server."""

from __future__ import annotations

import logging
import threading
from contextlib import ExitStack, asynccontextmanager
from functools import partial
from pathlib import Path
from types import TracebackType
from typing import AsyncIterator, Optional, Type

import anyio
from anyio.from_thread import BlockingPortal, start_blocking_portal

from .config import RunnerOptions
from .data_dir import DataDirectoryManager
from .ports import allocate_ephemeral_port
from .supervisor import (
    ProcessState,
    ProcessSupervisor,
    ReadinessProbe,
    build_arguments,
    nats_handshake,
    server_url,
)
from .teardown import BestEffort
from .versions import CacheManager, get_cache_manager

logger = logging.getLogger(__name__)


class AsyncNatsRunner:
    """A running NATS server owned by the caller (asyncio flavour).

    Obtain one with :meth:`start` or :func:`run_async`; dispose of it with
    :meth:`dispose` or ``async with``. Disposal is idempotent.
    """

    def __init__(
        self,
        supervisor: ProcessSupervisor,
        *,
        port: int,
        monitoring_port: int,
        binary_path: Path,
    ) -> None:
        self._supervisor = supervisor
        self._port = port
        self._monitoring_port = monitoring_port
        self._binary_path = binary_path

    @classmethod
    async def start(
        cls,
        options: Optional[RunnerOptions] = None,
        *,
        cache: Optional[CacheManager] = None,
        directories: Optional[DataDirectoryManager] = None,
        probe: Optional[ReadinessProbe] = None,
    ) -> "AsyncNatsRunner":
        """
        Start a server and wait until it accepts client connections.

        Either a ready runner is returned or an error is raised after every
        resource acquired along the way has been released.
        """
        opts = options or RunnerOptions()

        port = opts.port or allocate_ephemeral_port(
            exclude={opts.monitoring_port} if opts.monitoring_port else ()
        )
        monitoring_port = opts.monitoring_port or allocate_ephemeral_port(exclude={port})

        cache_manager = cache or get_cache_manager(opts.cache_directory)
        binary_path = await cache_manager.ensure(opts)

        manager = directories or DataDirectoryManager()
        data_directory = manager.prepare(
            opts.data_directory,
            lifetime=opts.data_directory_lifetime,
        )

        supervisor = ProcessSupervisor(
            binary_path,
            build_arguments(opts, port, monitoring_port, data_directory.path),
            url=server_url(port),
            data_directory=data_directory,
            directories=manager,
            output_sink=opts.standard_output_logger,
            probe=probe or nats_handshake,
        )
        try:
            await supervisor.start()
            await supervisor.wait_ready(opts.connection_timeout)
        except BaseException:
            with anyio.CancelScope(shield=True):
                await supervisor.dispose()
            raise

        logger.debug("NATS server ready at %s", supervisor.url)
        return cls(
            supervisor,
            port=port,
            monitoring_port=monitoring_port,
            binary_path=binary_path,
        )

    @property
    def url(self) -> str:
        return self._supervisor.url

    @property
    def port(self) -> int:
        return self._port

    @property
    def monitoring_port(self) -> int:
        return self._monitoring_port

    @property
    def data_directory(self) -> Path:
        return self._supervisor.data_directory.path

    @property
    def binary_path(self) -> Path:
        return self._binary_path

    @property
    def is_disposed(self) -> bool:
        return self._supervisor.state is ProcessState.DISPOSED

    def describe(self) -> str:
        return self._supervisor.describe()

    async def dispose(self) -> None:
        """Stop the server and remove owned ephemeral state. Never raises."""
        await self._supervisor.dispose()

    close = dispose

    async def __aenter__(self) -> "AsyncNatsRunner":
        return self

    async def __aexit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[TracebackType],
    ) -> None:
        await self.dispose()


class NatsRunner:
    """Synchronous handle around :class:`AsyncNatsRunner`.

    The asyncio machinery runs on a private event-loop thread that lives as
    long as the handle, so the runner can be used from plain test functions::

        with NatsRunner.run() as runner:
            connect(runner.url)
    """

    def __init__(self, runner: AsyncNatsRunner, portal: BlockingPortal, stack: ExitStack) -> None:
        self._runner = runner
        self._portal = portal
        self._stack = stack
        self._lock = threading.Lock()
        self._disposed = False

    @classmethod
    def run(
        cls,
        options: Optional[RunnerOptions] = None,
        *,
        cache: Optional[CacheManager] = None,
        directories: Optional[DataDirectoryManager] = None,
        probe: Optional[ReadinessProbe] = None,
    ) -> "NatsRunner":
        """Start a server, blocking until it is ready or startup has failed."""
        stack = ExitStack()
        portal = stack.enter_context(start_blocking_portal())
        try:
            runner = portal.call(
                partial(
                    AsyncNatsRunner.start,
                    options,
                    cache=cache,
                    directories=directories,
                    probe=probe,
                )
            )
        except BaseException:
            stack.close()
            raise
        return cls(runner, portal, stack)

    @property
    def url(self) -> str:
        return self._runner.url

    @property
    def port(self) -> int:
        return self._runner.port

    @property
    def monitoring_port(self) -> int:
        return self._runner.monitoring_port

    @property
    def data_directory(self) -> Path:
        return self._runner.data_directory

    @property
    def binary_path(self) -> Path:
        return self._runner.binary_path

    @property
    def is_disposed(self) -> bool:
        return self._disposed

    def dispose(self) -> None:
        """Stop the server and remove owned ephemeral state. Never raises."""
        with self._lock:
            if self._disposed:
                return
            self._disposed = True
        cleanup = BestEffort(self._runner.describe())
        cleanup.run("stop server", self._portal.call, self._runner.dispose)
        cleanup.run("stop event loop", self._stack.close)

    close = dispose

    def __enter__(self) -> "NatsRunner":
        return self

    def __exit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[TracebackType],
    ) -> None:
        self.dispose()


def run(options: Optional[RunnerOptions] = None) -> NatsRunner:
    """Start a sandboxed NATS server and return its synchronous handle."""
    return NatsRunner.run(options)


@asynccontextmanager
async def run_async(options: Optional[RunnerOptions] = None) -> AsyncIterator[AsyncNatsRunner]:
    """Start a sandboxed NATS server for the duration of an ``async with`` block."""
    runner = await AsyncNatsRunner.start(options)
    try:
        yield runner
    finally:
        await runner.dispose()
