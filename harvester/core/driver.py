from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import TypeVar

from opentelemetry import trace

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

T = TypeVar("T")
Sleep = Callable[[float], Awaitable[None]]


class DriverState(str, enum.Enum):
    IDLE = "idle"
    BATCH_IN_FLIGHT = "batch_in_flight"
    BACKOFF_WAIT = "backoff_wait"
    TERMINATED = "terminated"


@dataclass(slots=True)
class BatchOutcome:
    done: bool = False
    wait_seconds: float = 0.0


class BatchDriver:
    """Runs one stage's batches until the step reports done or shutdown is requested.

    A shutdown request never interrupts an in-flight batch; it is checked
    between batches and after each backoff wait.
    """

    def __init__(
        self,
        name: str,
        step: Callable[[], Awaitable[BatchOutcome]],
        *,
        stop_event: asyncio.Event | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.name = name
        self.state = DriverState.IDLE
        self.batches = 0
        self._step = step
        self._stop_event = stop_event
        self._sleep = sleep

    @property
    def stop_requested(self) -> bool:
        return self._stop_event is not None and self._stop_event.is_set()

    async def run(self) -> int:
        try:
            while not self.stop_requested:
                self.state = DriverState.BATCH_IN_FLIGHT
                with tracer.start_as_current_span(f"{self.name}.batch") as span:
                    span.set_attribute("batch.index", self.batches)
                    outcome = await self._step()
                    span.set_attribute("batch.wait_seconds", outcome.wait_seconds)
                self.batches += 1
                if outcome.done:
                    break
                if outcome.wait_seconds > 0:
                    self.state = DriverState.BACKOFF_WAIT
                    await self._sleep(outcome.wait_seconds)
                self.state = DriverState.IDLE
            else:
                logger.info("%s: shutdown requested; stopping after %s batches", self.name, self.batches)
        finally:
            self.state = DriverState.TERMINATED
        return self.batches


async def gather_batch(calls: Sequence[Callable[[], Awaitable[T]]], *, label: str) -> list[T | None]:
    """Run one bounded batch concurrently; a raising call becomes ``None`` in its slot."""
    raw = await asyncio.gather(*(call() for call in calls), return_exceptions=True)
    results: list[T | None] = []
    for item in raw:
        if isinstance(item, Exception):
            logger.error("%s: call failed: %s", label, item, exc_info=item)
            results.append(None)
        elif isinstance(item, BaseException):
            raise item
        else:
            results.append(item)
    return results
