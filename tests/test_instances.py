"""
Tests for the client-side instance operations and the CLI helpers.

Validation runs before any RPC, so most of these need no server. The last
group runs against the time-skipping test server to check how Temporal
errors are translated.
"""

import uuid

import pytest
from temporalio.testing import WorkflowEnvironment
from temporalio.worker import Worker

from tests._recorders import WEBHOOK, NotificationRecorder
from timebox.instances import (
    InstanceAlreadyExists,
    InstanceNotFound,
    query_progress,
    query_state,
    send_event,
    start_instance,
    start_metrics,
    validate_event,
    validate_request,
)
from timebox.models import (
    AuctionBid,
    AuctionRequest,
    DMSDeactivate,
    DMSRequest,
    InstanceStatus,
    MetricsConfig,
    PollRequest,
    PollVote,
)
from timebox.shared import (
    AUCTION,
    DMS,
    HEART,
    METRICS,
    METRICS_WORKFLOW_ID,
    POLL,
    TASK_QUEUES,
    VARIANTS,
    WATCHDOG_WORKFLOW_ID,
    workflow_id,
)
from timebox.starter import build_parser, parse_duration
from timebox.worker import REGISTRY, build_runtime
from timebox.workflows import AuctionWorkflow


# ── Validation ──


@pytest.mark.parametrize(
    "request_",
    [
        AuctionRequest(item="", duration_seconds=60, webhook=WEBHOOK),
        AuctionRequest(item="vase", duration_seconds=-1, webhook=WEBHOOK),
        AuctionRequest(item="vase", duration_seconds=float("inf"), webhook=WEBHOOK),
        AuctionRequest(item="vase", duration_seconds=60, webhook="receiver.test/results"),
        AuctionRequest(item="vase", duration_seconds=60, webhook="ftp://receiver.test/results"),
        AuctionRequest(item="vase", duration_seconds=60, webhook=WEBHOOK, reserve_price=-5),
        PollRequest(prompt="lunch?", options=[], duration_seconds=60, webhook=WEBHOOK),
        PollRequest(prompt="lunch?", options=["x", "x"], duration_seconds=60, webhook=WEBHOOK),
        PollRequest(prompt="lunch?", options=["x", " "], duration_seconds=60, webhook=WEBHOOK),
        DMSRequest(id="vault", message="", duration_seconds=60, webhook=WEBHOOK),
    ],
)
def test_malformed_requests_are_rejected(request_):
    with pytest.raises(ValueError):
        validate_request(request_)


def test_well_formed_requests_pass():
    validate_request(AuctionRequest(item="vase", duration_seconds=0, webhook=WEBHOOK))
    validate_request(PollRequest(prompt="p", options=["x", "y"], duration_seconds=1, webhook=WEBHOOK))
    validate_request(DMSRequest(id="vault", message="m", duration_seconds=1, webhook="https://a.test/"))


@pytest.mark.parametrize(
    "event",
    [
        AuctionBid(item="vase", bidder="", amount=10),
        AuctionBid(item="vase", bidder="A", amount=-10),
        AuctionBid(item="vase", bidder="A", amount=float("nan")),
        AuctionBid(item="vase", bidder="A", amount="10"),
        AuctionBid(item="vase", bidder="A", amount=True),
        PollVote(prompt="p", option="x", amount=None),
        PollVote(prompt="p", option="", amount=1),
        PollVote(prompt="p", option="x", amount=-1),
        DMSDeactivate(id=""),
    ],
)
def test_malformed_events_are_rejected(event):
    with pytest.raises(ValueError):
        validate_event(event)


# ── Workflow ids and wiring ──


def test_workflow_ids():
    assert workflow_id(AUCTION, "vase") == "vase"
    assert workflow_id(POLL, "lunch?") == "poll: lunch?"
    assert workflow_id(DMS, "vault") == "dms: vault"
    assert workflow_id(HEART, "ignored") == WATCHDOG_WORKFLOW_ID
    assert workflow_id(METRICS, "") == METRICS_WORKFLOW_ID
    with pytest.raises(ValueError):
        workflow_id("raffle", "x")


def test_every_variant_has_a_queue_and_a_worker():
    assert set(REGISTRY) == set(VARIANTS)
    assert len(set(TASK_QUEUES.values())) == len(VARIANTS)


def test_no_prometheus_address_means_default_runtime():
    assert build_runtime(None) is None
    assert build_runtime("") is None


# ── CLI helpers ──


@pytest.mark.parametrize(
    "text,seconds",
    [("90", 90), ("2.5", 2.5), ("90s", 90), ("5m", 300), ("1h30m", 5400), ("250ms", 0.25)],
)
def test_parse_duration(text, seconds):
    assert parse_duration(text) == pytest.approx(seconds)


@pytest.mark.parametrize("text", ["", "5x", "m5", "5m garbage", "-5s"])
def test_parse_duration_rejects_garbage(text):
    with pytest.raises(ValueError):
        parse_duration(text)


def test_parser_collects_repeated_poll_options():
    args = build_parser().parse_args(
        ["poll", "start", "--prompt", "lunch?", "--option", "x", "--option", "y",
         "--duration", "1h", "--webhook", WEBHOOK]
    )
    assert args.options == ["x", "y"]
    assert args.wait is False


def test_parser_metrics_defaults():
    args = build_parser().parse_args(["metrics", "start"])
    assert parse_duration(args.duration) == 60
    assert parse_duration(args.interval) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "config",
    [
        MetricsConfig(duration_seconds=-1),
        MetricsConfig(interval_seconds=0),
        MetricsConfig(interval_seconds="1s"),
    ],
)
async def test_malformed_metrics_config_is_rejected_before_any_rpc(config):
    with pytest.raises(ValueError):
        await start_metrics(None, config)


# ── Against the test server ──


@pytest.mark.asyncio
async def test_query_state_rejects_watchdog():
    async with await WorkflowEnvironment.start_time_skipping() as env:
        with pytest.raises(ValueError):
            await query_state(env.client, HEART, "")


@pytest.mark.asyncio
async def test_instance_lifecycle_and_error_mapping():
    item = f"vase-{uuid.uuid4()}"
    request = AuctionRequest(item=item, duration_seconds=3600, webhook=WEBHOOK)
    recorder = NotificationRecorder()

    async with await WorkflowEnvironment.start_time_skipping() as env:
        async with Worker(
            env.client,
            task_queue=TASK_QUEUES[AUCTION],
            workflows=[AuctionWorkflow],
            activities=[recorder.activity()],
        ):
            handle = await start_instance(env.client, request)
            assert handle.id == item

            with pytest.raises(InstanceAlreadyExists):
                await start_instance(env.client, request)

            await send_event(env.client, AuctionBid(item=item, bidder="A", amount=10))
            progress = await query_progress(env.client, AUCTION, item)
            assert progress.status == InstanceStatus.RUNNING

            result = await handle.result()
            assert result.bidder == "A"

            # Finished instances keep answering queries.
            top = await query_state(env.client, AUCTION, item)
            assert top.amount == 10

            missing = f"nothing-{uuid.uuid4()}"
            with pytest.raises(InstanceNotFound) as excinfo:
                await send_event(env.client, AuctionBid(item=missing, bidder="A", amount=1))
            assert excinfo.value.workflow_id == missing

            with pytest.raises(InstanceNotFound):
                await query_state(env.client, AUCTION, missing)


@pytest.mark.asyncio
async def test_metrics_emitter_is_a_singleton():
    async with await WorkflowEnvironment.start_time_skipping() as env:
        # No worker: the first run just waits on its task queue.
        handle = await start_metrics(env.client)
        assert handle.id == METRICS_WORKFLOW_ID
        with pytest.raises(InstanceAlreadyExists):
            await start_metrics(env.client)
        await handle.terminate("test finished")
