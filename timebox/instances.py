"""
Client-side operations on timebox instances.

This is the boundary between callers (the CLI in starter.py, or any service
that embeds a Temporal client) and the running workflows:

    start_instance(client, request)          → handle  | InstanceAlreadyExists
    send_event(client, event)                → None    | InstanceNotFound
    query_state(client, variant, key)        → aggregate | InstanceNotFound
    query_progress(client, variant, key)     → InstanceProgress | InstanceNotFound
    start_watchdog(client)                   → handle  | InstanceAlreadyExists
    start_metrics(client, config)            → handle  | InstanceAlreadyExists

Validation lives here. A malformed request raises ValueError before anything
is sent to Temporal, so workflows only ever see well-formed events. Temporal
errors that callers care about are translated into InstanceError subclasses;
anything else propagates unchanged.
"""

import math
from typing import Any
from urllib.parse import urlparse

from temporalio.client import Client, WorkflowHandle
from temporalio.exceptions import WorkflowAlreadyStartedError
from temporalio.service import RPCError, RPCStatusCode

from .models import (
    AuctionBid,
    AuctionRequest,
    DMSDeactivate,
    DMSRequest,
    InstanceProgress,
    MetricsConfig,
    PollRequest,
    PollVote,
)
from .shared import AUCTION, DMS, HEART, METRICS, POLL, TASK_QUEUES, workflow_id
from .workflows import (
    AuctionWorkflow,
    DeadManSwitchWorkflow,
    HeartbeatWorkflow,
    MetricsWorkflow,
    PollWorkflow,
)

_WORKFLOWS = {
    AUCTION: AuctionWorkflow,
    POLL: PollWorkflow,
    DMS: DeadManSwitchWorkflow,
}


class InstanceError(Exception):
    def __init__(self, message: str, workflow_id: str) -> None:
        super().__init__(message)
        self.workflow_id = workflow_id


class InstanceNotFound(InstanceError):
    def __init__(self, workflow_id: str) -> None:
        super().__init__(f"No running instance '{workflow_id}'", workflow_id)


class InstanceAlreadyExists(InstanceError):
    def __init__(self, workflow_id: str) -> None:
        super().__init__(f"Instance '{workflow_id}' is already running", workflow_id)


# ── Validation ──


def _require_text(name: str, value: str) -> None:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{name} must be a non-empty string")


def _require_amount(name: str, value: float) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{name} must be a number (got {value!r})")
    if not math.isfinite(value) or value < 0:
        raise ValueError(f"{name} must be a finite, non-negative number (got {value})")


def _require_webhook(url: str) -> None:
    parsed = urlparse(url or "")
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError(f"webhook must be an absolute http(s) URL (got {url!r})")


def validate_request(request: AuctionRequest | PollRequest | DMSRequest) -> None:
    _require_amount("duration_seconds", request.duration_seconds)
    _require_webhook(request.webhook)
    if isinstance(request, AuctionRequest):
        _require_text("item", request.item)
        _require_amount("reserve_price", request.reserve_price)
    elif isinstance(request, PollRequest):
        _require_text("prompt", request.prompt)
        if not request.options:
            raise ValueError("a poll needs at least one option")
        for option in request.options:
            _require_text("option", option)
        if len(set(request.options)) != len(request.options):
            raise ValueError("poll options must be unique")
    elif isinstance(request, DMSRequest):
        _require_text("id", request.id)
        _require_text("message", request.message)
    else:
        raise ValueError(f"Unsupported start request: {type(request).__name__}")


def validate_event(event: AuctionBid | PollVote | DMSDeactivate) -> None:
    if isinstance(event, AuctionBid):
        _require_text("item", event.item)
        _require_text("bidder", event.bidder)
        _require_amount("amount", event.amount)
    elif isinstance(event, PollVote):
        _require_text("prompt", event.prompt)
        _require_text("option", event.option)
        _require_amount("amount", event.amount)
    elif isinstance(event, DMSDeactivate):
        _require_text("id", event.id)
    else:
        raise ValueError(f"Unsupported event: {type(event).__name__}")


# ── Operations ──


def _queryable(variant: str) -> type:
    if variant not in _WORKFLOWS:
        raise ValueError(f"Variant {variant!r} has no queryable state")
    return _WORKFLOWS[variant]


async def start_instance(
    client: Client, request: AuctionRequest | PollRequest | DMSRequest
) -> WorkflowHandle:
    """Start the workflow for `request` on its variant's task queue."""
    validate_request(request)
    if isinstance(request, AuctionRequest):
        variant, key = AUCTION, request.item
    elif isinstance(request, PollRequest):
        variant, key = POLL, request.prompt
    else:
        variant, key = DMS, request.id

    wf_id = workflow_id(variant, key)
    try:
        return await client.start_workflow(
            _WORKFLOWS[variant].run,
            request,
            id=wf_id,
            task_queue=TASK_QUEUES[variant],
        )
    except WorkflowAlreadyStartedError as e:
        raise InstanceAlreadyExists(wf_id) from e


async def start_watchdog(client: Client) -> WorkflowHandle:
    wf_id = workflow_id(HEART, "")
    try:
        return await client.start_workflow(
            HeartbeatWorkflow.run, id=wf_id, task_queue=TASK_QUEUES[HEART]
        )
    except WorkflowAlreadyStartedError as e:
        raise InstanceAlreadyExists(wf_id) from e


async def start_metrics(
    client: Client, config: MetricsConfig | None = None
) -> WorkflowHandle:
    config = config or MetricsConfig()
    _require_amount("duration_seconds", config.duration_seconds)
    _require_amount("interval_seconds", config.interval_seconds)
    if config.interval_seconds == 0:
        raise ValueError("interval_seconds must be positive")
    wf_id = workflow_id(METRICS, "")
    try:
        return await client.start_workflow(
            MetricsWorkflow.run, config, id=wf_id, task_queue=TASK_QUEUES[METRICS]
        )
    except WorkflowAlreadyStartedError as e:
        raise InstanceAlreadyExists(wf_id) from e


async def send_event(client: Client, event: AuctionBid | PollVote | DMSDeactivate) -> None:
    """Signal `event` to the instance its routing field names."""
    validate_event(event)
    if isinstance(event, AuctionBid):
        wf_id = workflow_id(AUCTION, event.item)
        signal, args = AuctionWorkflow.bid, [event]
    elif isinstance(event, PollVote):
        wf_id = workflow_id(POLL, event.prompt)
        signal, args = PollWorkflow.vote, [event]
    else:
        wf_id = workflow_id(DMS, event.id)
        signal, args = DeadManSwitchWorkflow.deactivate, []

    handle = client.get_workflow_handle(wf_id)
    try:
        await handle.signal(signal, *args)
    except RPCError as e:
        if e.status == RPCStatusCode.NOT_FOUND:
            raise InstanceNotFound(wf_id) from e
        raise


async def query_state(client: Client, variant: str, key: str) -> Any:
    """Current aggregate of an instance: AuctionBid, PollResult or DMSState."""
    wf_id = workflow_id(variant, key)
    handle = client.get_workflow_handle(wf_id)
    try:
        return await handle.query(_queryable(variant).state)
    except RPCError as e:
        if e.status == RPCStatusCode.NOT_FOUND:
            raise InstanceNotFound(wf_id) from e
        raise


async def query_progress(client: Client, variant: str, key: str) -> InstanceProgress:
    wf_id = workflow_id(variant, key)
    handle = client.get_workflow_handle(wf_id)
    try:
        return await handle.query(_queryable(variant).progress)
    except RPCError as e:
        if e.status == RPCStatusCode.NOT_FOUND:
            raise InstanceNotFound(wf_id) from e
        raise
