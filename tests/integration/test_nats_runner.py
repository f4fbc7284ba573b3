"""End-to-end tests against a real nats-server binary.

The binary is downloaded into the user cache on first use; the tests are
skipped when it cannot be acquired (for example without network access).
"""

from __future__ import annotations

import asyncio
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import anyio
import httpx
import nats
import nats.errors
import pytest

from nats_sandbox import (
    AsyncNatsRunner,
    NatsRunner,
    RunnerOptions,
    UnexpectedExitError,
    VersionNotFoundError,
    run,
    run_async,
)
from nats_sandbox.exceptions import AcquisitionError
from nats_sandbox.versions import ensure_nats_binary

pytestmark = pytest.mark.slow


@pytest.fixture(scope="session")
def nats_binary() -> Path:
    try:
        return anyio.run(ensure_nats_binary, RunnerOptions())
    except AcquisitionError as exc:
        pytest.skip(f"nats-server is not available: {exc}")


async def _round_trip(url: str, subject: str = "sandbox.test") -> bytes:
    client = await nats.connect(url)
    try:
        subscription = await client.subscribe(subject)
        await client.publish(subject, b"hello")
        message = await subscription.next_msg(timeout=5)
        return message.data
    finally:
        await client.close()


def test_default_runner_serves_clients(nats_binary: Path) -> None:
    with run() as runner:
        assert runner.binary_path == nats_binary
        assert asyncio.run(_round_trip(runner.url)) == b"hello"


def test_monitoring_endpoint_is_served(nats_binary: Path) -> None:
    with run() as runner:
        response = httpx.get(f"http://localhost:{runner.monitoring_port}/varz", timeout=5)
        assert response.status_code == 200
        assert response.json()["port"] == runner.port


@pytest.mark.asyncio
async def test_async_runner_with_jetstream(nats_binary: Path) -> None:
    async with run_async(RunnerOptions(enable_jetstream=True)) as runner:
        client = await nats.connect(runner.url)
        try:
            jetstream = client.jetstream()
            await jetstream.add_stream(name="SANDBOX", subjects=["sandbox.>"])
            ack = await jetstream.publish("sandbox.one", b"persisted")
            assert ack.stream == "SANDBOX"
        finally:
            await client.close()
        assert (runner.data_directory / "jetstream").is_dir()


@pytest.mark.asyncio
async def test_runners_do_not_share_state(nats_binary: Path) -> None:
    first = await AsyncNatsRunner.start()
    second = await AsyncNatsRunner.start()
    try:
        assert first.port != second.port
        assert first.data_directory != second.data_directory
        assert await _round_trip(first.url) == b"hello"
        assert await _round_trip(second.url) == b"hello"
    finally:
        await first.dispose()
        await second.dispose()


def test_concurrent_runners_share_one_cache(nats_binary: Path) -> None:
    with ThreadPoolExecutor(max_workers=5) as pool:
        runners = list(pool.map(lambda _: NatsRunner.run(), range(5)))
    try:
        assert {runner.binary_path for runner in runners} == {nats_binary}
        assert len({runner.port for runner in runners}) == 5
    finally:
        for runner in runners:
            runner.dispose()


async def _publish_on_first(
    urls: list[str], subject: str = "sandbox.isolation"
) -> list[bytes | None]:
    clients = [await nats.connect(url) for url in urls]
    try:
        subscriptions = [await client.subscribe(subject) for client in clients]
        for client in clients:
            await client.flush()
        await clients[0].publish(subject, b"only-here")
        await clients[0].flush()

        received: list[bytes | None] = []
        for subscription in subscriptions:
            try:
                message = await subscription.next_msg(timeout=1)
                received.append(message.data)
            except nats.errors.TimeoutError:
                received.append(None)
        return received
    finally:
        for client in clients:
            await client.close()


def test_concurrent_runners_do_not_see_each_others_messages(nats_binary: Path) -> None:
    with ThreadPoolExecutor(max_workers=5) as pool:
        runners = list(pool.map(lambda _: NatsRunner.run(), range(5)))
    try:
        received = asyncio.run(_publish_on_first([runner.url for runner in runners]))
    finally:
        for runner in runners:
            runner.dispose()

    assert received == [b"only-here", None, None, None, None]


def test_dispose_stops_server_and_removes_data(nats_binary: Path) -> None:
    runner = run(RunnerOptions(enable_jetstream=True))
    url, data_directory = runner.url, runner.data_directory

    runner.dispose()
    runner.dispose()

    assert not data_directory.exists()

    async def connect() -> None:
        await nats.connect(url, connect_timeout=1, allow_reconnect=False, max_reconnect_attempts=0)

    with pytest.raises((nats.errors.NoServersError, OSError)):
        asyncio.run(connect())


def test_invalid_server_argument_reports_output(nats_binary: Path) -> None:
    lines: list[str] = []
    options = RunnerOptions(
        additional_arguments=["--definitely-not-a-flag"],
        standard_output_logger=lines.append,
    )

    with pytest.raises(UnexpectedExitError) as exc_info:
        run(options)

    assert exc_info.value.exit_code not in (None, 0)
    assert lines


def test_unknown_version_is_reported(nats_binary: Path, tmp_path: Path) -> None:
    with pytest.raises(VersionNotFoundError) as exc_info:
        run(RunnerOptions(version="0.0.999", cache_directory=tmp_path))
    assert "0.0.999" in str(exc_info.value)


def test_becomes_ready_well_before_timeout(nats_binary: Path) -> None:
    started = time.monotonic()
    with run(RunnerOptions(connection_timeout=30)):
        assert time.monotonic() - started < 30
