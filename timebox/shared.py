"""Shared configuration for the timebox worker and client."""

import os

TEMPORAL_HOST = os.environ.get("TEMPORAL_HOST", "localhost:7233")
TEMPORAL_NAMESPACE = os.environ.get("TEMPORAL_NAMESPACE", "default")
LOG_LEVEL = os.environ.get("TIMEBOX_LOG_LEVEL", "INFO").upper()
# host:port for the worker's Prometheus /metrics endpoint; unset means no endpoint.
PROMETHEUS_ADDRESS = os.environ.get("TIMEBOX_PROMETHEUS_ADDRESS")

AUCTION = "auction"
POLL = "poll"
DMS = "dms"
HEART = "heart"
METRICS = "metrics"
VARIANTS = (AUCTION, POLL, DMS, HEART, METRICS)

# One task queue per variant, so each can be deployed and scaled on its own.
TASK_QUEUES = {variant: f"timebox-{variant}" for variant in VARIANTS}

WATCHDOG_WORKFLOW_ID = "heartbeat-and-continue-workflow"
METRICS_WORKFLOW_ID = "metrics-workflow"


def workflow_id(variant: str, key: str) -> str:
    """
    Workflow id for an instance.

    Auctions are keyed by item name as-is; polls and switches get a prefix so
    a poll prompt can never collide with a switch id of the same text.
    """
    if variant == AUCTION:
        return key
    if variant == POLL:
        return f"poll: {key}"
    if variant == DMS:
        return f"dms: {key}"
    if variant == HEART:
        return WATCHDOG_WORKFLOW_ID
    if variant == METRICS:
        return METRICS_WORKFLOW_ID
    raise ValueError(f"Unknown variant: {variant}")
