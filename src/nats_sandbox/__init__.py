"""Disposable NATS servers for tests and experiments.

Key components:
- NatsRunner / AsyncNatsRunner: start a server and hand back a live handle
- RunnerOptions: validated configuration (also read from NATS_SANDBOX_* env)
- CacheManager: resolves and caches nats-server executables per version
- ProcessSupervisor: owns the server subprocess lifecycle

Usage:
    from nats_sandbox import NatsRunner, RunnerOptions

    with NatsRunner.run(RunnerOptions(enable_jetstream=True)) as runner:
        print(runner.url)

    async with run_async() as runner:
        client = await nats.connect(runner.url)
"""

from nats_sandbox.config import RunnerOptions
from nats_sandbox.data_dir import DataDirectory, DataDirectoryManager
from nats_sandbox.exceptions import (
    AcquisitionError,
    BinaryNotFoundError,
    ConfigurationError,
    NatsSandboxError,
    PackageMalformedError,
    ProcessStartError,
    ReadinessTimeoutError,
    UnexpectedExitError,
    VersionNotFoundError,
)
from nats_sandbox.ports import allocate_ephemeral_port
from nats_sandbox.runner import AsyncNatsRunner, NatsRunner, run, run_async
from nats_sandbox.supervisor import ProcessState, ProcessSupervisor
from nats_sandbox.transport import DownloadTransport, HttpxTransport
from nats_sandbox.versions import CacheManager, ensure_nats_binary, get_cache_manager

__all__ = [
    # Runners
    "NatsRunner",
    "AsyncNatsRunner",
    "run",
    "run_async",
    # Configuration
    "RunnerOptions",
    # Components
    "CacheManager",
    "get_cache_manager",
    "ensure_nats_binary",
    "DataDirectory",
    "DataDirectoryManager",
    "ProcessState",
    "ProcessSupervisor",
    "allocate_ephemeral_port",
    "DownloadTransport",
    "HttpxTransport",
    # Errors
    "NatsSandboxError",
    "ConfigurationError",
    "BinaryNotFoundError",
    "VersionNotFoundError",
    "AcquisitionError",
    "PackageMalformedError",
    "ProcessStartError",
    "UnexpectedExitError",
    "ReadinessTimeoutError",
]
