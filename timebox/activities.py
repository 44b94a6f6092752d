"""
Temporal Activities for timebox.

Activities are the only code here that touches the outside world. Workflows
decide *when* to notify; activities do the HTTP call.

THE NOTIFIER (deliver_notification):
    Called once per instance, after its loop has finished. POSTs the final
    result as JSON and succeeds only on HTTP 200. Anything else raises
    RuntimeError, and the workflow's retry policy (unlimited attempts,
    1s → 5s → 25s → 100s backoff) keeps trying until the endpoint accepts it.

    The body is rebuilt from the activity input on every attempt. That input
    is recorded in the workflow history when the activity is first scheduled,
    so attempt 1 and attempt 40 send byte-identical bodies.

    The response is streamed with a heartbeat per chunk read. `requests`
    applies its timeout to each socket read, not to the whole response, so a
    receiver that trickles its reply would otherwise stay silent past the
    heartbeat window.

    Sync (`def`) because it uses `requests`; the worker runs it in a
    ThreadPoolExecutor.

THE WATCHDOG'S SUPERVISED TASK (run_pulsing_worker):
    Heartbeats on a fixed period, then goes silent to simulate a hung
    process. The supervisor workflow's heartbeat_timeout notices and declares
    it dead.

    Temporal can only deliver a cancellation to an activity when it
    heartbeats, so a silent activity never hears that it was timed out. It
    ends itself instead: after twice the heartbeat window (by then the server
    has already given up on it) it raises. Otherwise every watchdog cycle
    would leave one sleeping coroutine behind on the worker.

THE METRICS EMITTER (run_metrics_emitter):
    Ticks once per interval for a fixed duration, adding to a counter and
    setting a gauge through the activity's metric meter. With a Prometheus
    endpoint configured on the worker (see worker.py) both show up on
    /metrics. Heartbeats every tick so a cancellation reaches it.
"""

import asyncio
import json
import time
from datetime import datetime, timezone

import requests
from temporalio import activity

from .models import MetricsConfig, NotificationRequest, PulseConfig

# Socket timeout for one read. Must stay below the heartbeat timeout the
# workflow sets on deliver_notification (60s).
REQUEST_TIMEOUT_SECONDS = 30
READ_CHUNK_BYTES = 8192
ERROR_PREVIEW_BYTES = 200

METRICS_LABELS = {"timebox_demo": "metrics"}


def encode_payload(payload: dict) -> bytes:
    """
    Canonical wire form of a notification.

    Sorted keys and fixed separators make the bytes a function of the value
    alone, independent of dict insertion order.
    """
    return json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")


def _drain(response: requests.Response, attempt: int) -> str:
    """Read the whole body, heartbeating per chunk. Returns the start of it."""
    preview = b""
    received = 0
    for chunk in response.iter_content(chunk_size=READ_CHUNK_BYTES):
        received += len(chunk)
        if len(preview) < ERROR_PREVIEW_BYTES:
            preview += chunk[: ERROR_PREVIEW_BYTES - len(preview)]
        activity.heartbeat(f"attempt {attempt}: read {received} bytes")
    return preview.decode("utf-8", errors="replace")


@activity.defn
def deliver_notification(request: NotificationRequest) -> None:
    """
    POST the final result to the configured webhook.

    Success is HTTP 200 and nothing else: a 201 or 204 from a misconfigured
    receiver is treated as a failure, the same as a 500, because we can't
    tell that the result was actually recorded.
    """
    info = activity.info()
    body = encode_payload(request.payload)

    activity.heartbeat(f"attempt {info.attempt}: posting to webhook")
    try:
        response = requests.post(
            request.url,
            data=body,
            headers={"Content-Type": "application/json"},
            timeout=REQUEST_TIMEOUT_SECONDS,
            stream=True,
        )
        try:
            activity.heartbeat(f"attempt {info.attempt}: response {response.status_code}")
            preview = _drain(response, info.attempt)
        finally:
            response.close()
    except requests.exceptions.Timeout:
        raise RuntimeError(f"Timeout delivering notification to {request.url}")
    except requests.exceptions.RequestException as e:
        raise RuntimeError(f"Error delivering notification to {request.url}: {e}")

    if response.status_code != 200:
        raise RuntimeError(
            f"bad response ({response.status_code}) from {request.url}: {preview}"
        )

    activity.logger.info(
        f"Delivered notification for {info.workflow_id} on attempt {info.attempt}"
    )


def _silent_period(info: activity.Info) -> float:
    """How long a silent worker waits before giving up on itself."""
    if info.heartbeat_timeout:
        return 2 * info.heartbeat_timeout.total_seconds()
    if info.start_to_close_timeout:
        deadline = info.started_time + info.start_to_close_timeout
        return max(0.0, (deadline - datetime.now(timezone.utc)).total_seconds())
    return 0.0


@activity.defn
async def run_pulsing_worker(config: PulseConfig) -> None:
    """
    Heartbeat `max_pulses` times, then go silent.

    Raises RuntimeError after being silent for twice the heartbeat window
    (or at its start-to-close deadline when there is no heartbeat timeout).
    """
    info = activity.info()
    for pulse in range(config.max_pulses):
        await asyncio.sleep(config.interval_seconds)
        activity.heartbeat(pulse)

    activity.logger.info(f"Stopped heartbeating after {config.max_pulses} pulses")
    await asyncio.sleep(_silent_period(info))
    raise RuntimeError(f"worker went silent after {config.max_pulses} pulses")


@activity.defn
async def run_metrics_emitter(config: MetricsConfig) -> int:
    """
    Emit a counter and a gauge once per interval until `duration_seconds` pass.

    The counter goes up by one per tick; the gauge holds the unix time of the
    latest tick. Returns the number of ticks.
    """
    meter = activity.metric_meter().with_additional_attributes(METRICS_LABELS)
    counter = meter.create_counter("timebox_ticks", "Ticks emitted by the metrics activity")
    gauge = meter.create_gauge("timebox_last_tick", "Unix time of the latest tick", "s")

    ticks = 0
    loop = asyncio.get_running_loop()
    ends_at = loop.time() + config.duration_seconds
    try:
        while loop.time() < ends_at:
            await asyncio.sleep(config.interval_seconds)
            ticks += 1
            counter.add(1)
            gauge.set(int(time.time()))
            activity.heartbeat(ticks)
    except asyncio.CancelledError:
        activity.logger.info(f"Metrics emitter cancelled after {ticks} ticks")
        raise

    activity.logger.info(f"Metrics emitter finished after {ticks} ticks")
    return ticks
