"""
Temporal Workflows for timebox.

Five workflows, three patterns:

    AuctionWorkflow, PollWorkflow, DeadManSwitchWorkflow
        Time-bounded aggregation. Signals feed events into an InstanceLoop
        (racer.py); a durable timer races them; whichever terminal signal
        comes first ends the loop; then the final result is delivered by the
        deliver_notification activity, retried until the receiver says 200.

    HeartbeatWorkflow
        Supervision. Runs a worker activity that must heartbeat, declares it
        dead when it stops, and starts over from nothing via continue-as-new.

    MetricsWorkflow
        Instrumentation. Runs one long activity that publishes a counter and a
        gauge through the worker's metric meter until it finishes or is
        cancelled.

TEMPORAL CONCEPT - ONE WORKFLOW PER INSTANCE:
    Each auction item, poll prompt and switch id is its own workflow
    execution. Temporal persists its history, routes signals/queries to it by
    workflow id, and refuses a second start while it is running. Nothing is
    shared between executions, so instances are fully isolated.

TEMPORAL CONCEPT - @workflow.init:
    The workflow's state is built in __init__ from the start request, before
    any signal handler can run. A bid that arrives in the very first workflow
    task is queued into an InstanceLoop that already exists.

DETERMINISM:
    Time comes from workflow.now() and sleeping from asyncio.sleep (a durable
    timer). No wall-clock reads, no I/O. Aggregators are pure functions.
"""

import dataclasses
from datetime import timedelta

from temporalio import workflow
from temporalio.common import RetryPolicy
from temporalio.exceptions import ActivityError

with workflow.unsafe.imports_passed_through():
    from .activities import (
        deliver_notification,
        run_metrics_emitter,
        run_pulsing_worker,
    )
    from .aggregators import apply_bid, apply_liveness, apply_vote, initial_tally
    from .models import (
        AuctionBid,
        AuctionRequest,
        DeliveryStatus,
        DMSRequest,
        DMSState,
        DMSTimeoutPayload,
        FinishReason,
        InstanceProgress,
        MetricsConfig,
        NotificationRequest,
        PollRequest,
        PollResult,
        PollVote,
        PulseConfig,
    )
    from .racer import InstanceLoop, compute_deadline


# ── Notification retry policy ──
#
# The result must get through eventually, so attempts are unlimited
# (maximum_attempts=0). Backoff grows 1s → 5s → 25s → 100s and then stays at
# 100s. There is no dead-letter path: a receiver that is down for a day gets
# the result when it comes back.
NOTIFY_RETRY = RetryPolicy(
    initial_interval=timedelta(seconds=1),
    backoff_coefficient=5.0,
    maximum_interval=timedelta(seconds=100),
    maximum_attempts=0,
)
NOTIFY_START_TO_CLOSE = timedelta(minutes=60)
NOTIFY_HEARTBEAT = timedelta(seconds=60)

# ── Watchdog timing ──
#
# The worker heartbeats every second; five seconds of silence means dead.
# One attempt only: a dead worker is replaced by continue-as-new, not retried.
PULSE_LIVENESS_WINDOW = timedelta(seconds=5)
PULSE_START_TO_CLOSE = timedelta(minutes=60)
PULSE_RETRY = RetryPolicy(maximum_attempts=1)

# ── Metrics emitter timing ──
#
# The emitter heartbeats every tick, so a 10s window is plenty and lets a
# cancellation reach it promptly.
METRICS_START_TO_CLOSE = timedelta(minutes=60)
METRICS_HEARTBEAT = timedelta(seconds=10)


async def _notify(url: str, payload: dict) -> None:
    await workflow.execute_activity(
        deliver_notification,
        NotificationRequest(url=url, payload=payload),
        start_to_close_timeout=NOTIFY_START_TO_CLOSE,
        heartbeat_timeout=NOTIFY_HEARTBEAT,
        retry_policy=NOTIFY_RETRY,
    )


def _progress(instance_id: str, loop: InstanceLoop, delivery: str) -> InstanceProgress:
    return InstanceProgress(
        instance_id=instance_id,
        deadline=loop.deadline.isoformat(),
        status=loop.status,
        finish_reason=loop.finish_reason,
        delivery=delivery,
        events_received=loop.events_received,
        events_rejected=loop.events_rejected,
    )


@workflow.defn
class AuctionWorkflow:
    """
    Collects bids for one item until the deadline, then announces the winner.

    Signals:  bid(AuctionBid)
    Queries:  state -> AuctionBid (current top bid), progress -> InstanceProgress
    Returns:  the winning AuctionBid (bidder "" and amount 0 if nobody bid)
    """

    @workflow.init
    def __init__(self, request: AuctionRequest) -> None:
        deadline = compute_deadline(
            request.start_time, request.duration_seconds, workflow.now()
        )
        self._loop: InstanceLoop[AuctionBid] = InstanceLoop(
            AuctionBid(item=request.item), apply_bid, deadline, workflow.now, workflow.logger
        )
        self._delivery: str = DeliveryStatus.PENDING

    @workflow.run
    async def run(self, request: AuctionRequest) -> AuctionBid:
        workflow.logger.info(
            f"Auction for '{request.item}' open until {self._loop.deadline.isoformat()}"
        )
        await self._loop.run()

        top = self._loop.state
        workflow.logger.info(
            f"Auction for '{request.item}' closed: top bid {top.amount} by '{top.bidder}'"
        )

        self._delivery = DeliveryStatus.IN_FLIGHT
        await _notify(request.webhook, dataclasses.asdict(top))
        self._delivery = DeliveryStatus.SUCCEEDED

        await workflow.wait_condition(workflow.all_handlers_finished)
        return top

    @workflow.signal
    def bid(self, bid: AuctionBid) -> None:
        self._loop.submit(bid)

    @workflow.query
    def state(self) -> AuctionBid:
        return self._loop.state

    @workflow.query
    def progress(self) -> InstanceProgress:
        return _progress(workflow.info().workflow_id, self._loop, self._delivery)


@workflow.defn
class PollWorkflow:
    """
    Tallies weighted votes over a fixed set of options until the deadline.

    Votes for options that weren't configured are ignored, not rejected: the
    sender has already moved on by the time the workflow sees the signal.
    """

    @workflow.init
    def __init__(self, request: PollRequest) -> None:
        deadline = compute_deadline(
            request.start_time, request.duration_seconds, workflow.now()
        )
        self._loop: InstanceLoop[PollResult] = InstanceLoop(
            initial_tally(request.prompt, request.options),
            apply_vote,
            deadline,
            workflow.now,
            workflow.logger,
        )
        self._delivery: str = DeliveryStatus.PENDING

    @workflow.run
    async def run(self, request: PollRequest) -> PollResult:
        workflow.logger.info(
            f"Poll '{request.prompt}' open with {len(request.options)} options"
        )
        await self._loop.run()

        tally = self._loop.state
        self._delivery = DeliveryStatus.IN_FLIGHT
        await _notify(request.webhook, dataclasses.asdict(tally))
        self._delivery = DeliveryStatus.SUCCEEDED

        await workflow.wait_condition(workflow.all_handlers_finished)
        return tally

    @workflow.signal
    def vote(self, vote: PollVote) -> None:
        self._loop.submit(vote)

    @workflow.query
    def state(self) -> PollResult:
        return self._loop.state

    @workflow.query
    def progress(self) -> InstanceProgress:
        return _progress(workflow.info().workflow_id, self._loop, self._delivery)


@workflow.defn
class DeadManSwitchWorkflow:
    """
    Releases a message to a webhook unless deactivated before the deadline.

    The deactivate signal and the deadline race through the same queue; the
    first one seen decides the outcome. Only a timeout sends anything.
    """

    @workflow.init
    def __init__(self, request: DMSRequest) -> None:
        deadline = compute_deadline(
            request.start_time, request.duration_seconds, workflow.now()
        )
        self._loop: InstanceLoop[DMSState] = InstanceLoop(
            DMSState(id=request.id), apply_liveness, deadline, workflow.now, workflow.logger
        )
        self._delivery: str = DeliveryStatus.PENDING

    @workflow.run
    async def run(self, request: DMSRequest) -> DMSState:
        reason = await self._loop.run()

        if reason == FinishReason.TIMEOUT:
            workflow.logger.info(f"Switch '{request.id}' timed out, releasing message")
            self._delivery = DeliveryStatus.IN_FLIGHT
            await _notify(
                request.webhook,
                dataclasses.asdict(DMSTimeoutPayload(id=request.id, message=request.message)),
            )
            self._delivery = DeliveryStatus.SUCCEEDED
        else:
            workflow.logger.info(f"Switch '{request.id}' deactivated")
            self._delivery = DeliveryStatus.SKIPPED

        await workflow.wait_condition(workflow.all_handlers_finished)
        return self.state()

    @workflow.signal
    def deactivate(self) -> None:
        self._loop.terminate(FinishReason.DEACTIVATED)

    @workflow.query
    def state(self) -> DMSState:
        return dataclasses.replace(
            self._loop.state,
            deactivated=self._loop.finish_reason == FinishReason.DEACTIVATED,
            timed_out=self._loop.finish_reason == FinishReason.TIMEOUT,
            seconds_remaining=self._loop.seconds_remaining(),
        )

    @workflow.query
    def progress(self) -> InstanceProgress:
        return _progress(workflow.info().workflow_id, self._loop, self._delivery)


@workflow.defn
class HeartbeatWorkflow:
    """
    Watchdog: run a worker that must keep heartbeating, restart it when it stops.

    Each cycle is a brand-new workflow run (continue-as-new) with a fresh
    PulseConfig and no memory of previous cycles. Compare the notifier, which
    retries the *same* payload until it lands.
    """

    @workflow.run
    async def run(self) -> None:
        try:
            await workflow.execute_activity(
                run_pulsing_worker,
                PulseConfig(),
                start_to_close_timeout=PULSE_START_TO_CLOSE,
                heartbeat_timeout=PULSE_LIVENESS_WINDOW,
                retry_policy=PULSE_RETRY,
            )
            workflow.logger.info("Supervised worker exited")
        except ActivityError as e:
            workflow.logger.warning(f"Supervised worker declared dead: {e.cause or e}")

        workflow.continue_as_new()


@workflow.defn
class MetricsWorkflow:
    """
    Runs the metrics emitter once and returns how many ticks it published.

    Cancelling the workflow cancels the activity; the emitter sees it on its
    next heartbeat.
    """

    @workflow.run
    async def run(self, config: MetricsConfig) -> int:
        ticks = await workflow.execute_activity(
            run_metrics_emitter,
            config,
            start_to_close_timeout=METRICS_START_TO_CLOSE,
            heartbeat_timeout=METRICS_HEARTBEAT,
        )
        workflow.logger.info(f"Metrics emitter published {ticks} ticks")
        return ticks
