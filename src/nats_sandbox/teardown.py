"""Best-effort execution for teardown paths that must never raise."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TeardownFailure:
    """A teardown step that failed and was suppressed."""

    step: str
    error: BaseException


@dataclass(slots=True)
class BestEffort:
    """Runs teardown steps, logging and recording failures instead of raising.

    Example:
        >>> cleanup = BestEffort("nats-server[4222]")
        >>> cleanup.run("delete data directory", shutil.rmtree, path)
        >>> cleanup.failures
        []
    """

    owner: str
    failures: list[TeardownFailure] = field(default_factory=list)

    def run(self, step: str, func: Callable[..., Any], *args: Any) -> bool:
        try:
            func(*args)
        except Exception as exc:  # noqa: BLE001
            self._record(step, exc)
            return False
        return True

    async def run_async(
        self, step: str, func: Callable[..., Awaitable[Any]], *args: Any
    ) -> bool:
        try:
            await func(*args)
        except Exception as exc:  # noqa: BLE001
            self._record(step, exc)
            return False
        return True

    def _record(self, step: str, exc: Exception) -> None:
        self.failures.append(TeardownFailure(step=step, error=exc))
        logger.warning("Teardown step %r failed for %s: %s", step, self.owner, exc)
