"""
The instance loop and its deadline racer.

Every time-bounded workflow (auction, poll, dead-man's switch) has the same
shape: events trickle in, a deadline approaches, and whichever terminal
signal arrives first ends the instance. This module holds that shape once.

ONE QUEUE, ONE HISTORY:
    Domain events, the deadline token and the early-termination token all go
    through a single asyncio.Queue, and the loop is its only consumer:

        signal handler ──put(event)──────────┐
        DeadlineRacer  ──put(TIMEOUT)────────┼──> queue ──> InstanceLoop.run()
        deactivate     ──put(DEACTIVATED)────┘

    The loop never checks a clock. Whether a bid "beat the deadline" is
    decided purely by its position in the queue, so there is exactly one
    linear record of what happened in what order.

RUNNING INSIDE A WORKFLOW:
    Temporal's Python SDK runs workflow code on its own deterministic event
    loop. asyncio.Queue, asyncio.create_task and asyncio.sleep all work there:
    the sleep becomes a durable server-side timer that survives worker
    restarts. The clock is injected (`now`) so the workflow can pass
    workflow.now() and tests can pass a real clock.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Generic, TypeVar

from .models import FinishReason, InstanceStatus

S = TypeVar("S")


@dataclass(frozen=True)
class _Terminal:
    reason: str


def compute_deadline(
    start_time: str | None, duration_seconds: float, now: datetime
) -> datetime:
    """
    Absolute deadline for an instance.

    `start_time` is ISO-8601; a naive timestamp is read as UTC. Without a
    start time the instance starts `now`.
    """
    if start_time:
        start = datetime.fromisoformat(start_time)
        if start.tzinfo is None:
            start = start.replace(tzinfo=timezone.utc)
    else:
        start = now
    return start + timedelta(seconds=duration_seconds)


class DeadlineRacer:
    """
    One-shot timer: sleeps until the deadline, then calls `emit` once.

    If the deadline has already passed when armed, emits right away. It is
    never re-armed and nothing cancels it; an auction must always close.
    """

    def __init__(
        self,
        deadline: datetime,
        now: Callable[[], datetime],
        emit: Callable[[], None],
    ) -> None:
        self._deadline = deadline
        self._now = now
        self._emit = emit
        self._task: asyncio.Task | None = None

    @property
    def armed(self) -> bool:
        return self._task is not None

    def arm(self) -> None:
        if self._task is not None:
            raise RuntimeError("deadline racer is already armed")
        self._task = asyncio.create_task(self._wait())

    async def _wait(self) -> None:
        remaining = (self._deadline - self._now()).total_seconds()
        if remaining > 0:
            await asyncio.sleep(remaining)
        self._emit()


class InstanceLoop(Generic[S]):
    """
    Holds an instance's aggregate and runs its event loop.

    Usage from a workflow:

        self._loop = InstanceLoop(initial, apply_bid, deadline, workflow.now)
        ...                                     # signal: self._loop.submit(bid)
        reason = await self._loop.run()         # blocks until a terminal signal
        final = self._loop.state

    `state` can be read at any time (queries), without touching the queue.

    `events_received` counts domain events handed to `apply`, whether or not
    they changed the aggregate (a losing bid still counts). An event whose
    `apply` raises is logged, counted in `events_rejected` and skipped; the
    loop keeps running.
    """

    def __init__(
        self,
        state: S,
        apply: Callable[[S, Any], S],
        deadline: datetime,
        now: Callable[[], datetime],
        logger: logging.Logger | logging.LoggerAdapter | None = None,
    ) -> None:
        self._state = state
        self._apply = apply
        self._now = now
        self._events: asyncio.Queue = asyncio.Queue()
        self._logger = logger or logging.getLogger(__name__)
        self._racer = DeadlineRacer(
            deadline, now, lambda: self._events.put_nowait(_Terminal(FinishReason.TIMEOUT))
        )
        self.deadline = deadline
        self.status: str = InstanceStatus.RUNNING
        self.finish_reason: str | None = None
        self.events_received = 0
        self.events_rejected = 0

    @property
    def state(self) -> S:
        return self._state

    @property
    def finished(self) -> bool:
        return self.status == InstanceStatus.FINISHED

    def seconds_remaining(self) -> float:
        if self.finished:
            return 0.0
        return max(0.0, (self.deadline - self._now()).total_seconds())

    def submit(self, event: Any) -> None:
        """Queue a domain event. Events for a finished instance are dropped."""
        if self.finished:
            self._logger.debug(f"Instance finished, dropping event: {event!r}")
            return
        self._events.put_nowait(event)

    def terminate(self, reason: str = FinishReason.DEACTIVATED) -> None:
        """Queue an early-termination token."""
        if self.finished:
            return
        self._events.put_nowait(_Terminal(reason))

    async def run(self) -> str:
        """
        Consume events until the first terminal token; return its reason.

        Arms the deadline racer on entry. Can only be called once.
        """
        if self._racer.armed:
            raise RuntimeError("instance loop has already been run")
        self._racer.arm()

        while True:
            event = await self._events.get()
            if isinstance(event, _Terminal):
                self.status = InstanceStatus.FINISHED
                self.finish_reason = event.reason
                self._logger.info(
                    f"Instance finished ({event.reason}) after "
                    f"{self.events_received} events"
                )
                return event.reason
            try:
                self._state = self._apply(self._state, event)
            except Exception as e:
                self.events_rejected += 1
                self._logger.warning(f"Dropping event {event!r}: {e}")
                continue
            self.events_received += 1
