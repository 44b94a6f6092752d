"""
Data models for the timebox workflows.

Everything that crosses a Temporal boundary (workflow inputs, signal
arguments, query results, activity arguments) is one of these dataclasses.
Temporal's default DataConverter turns them into JSON, and our PayloadCodec
(see encryption.py) encrypts that JSON before it reaches the server.

THREE KINDS OF MODEL:
    - Start requests:  AuctionRequest, PollRequest, DMSRequest.
      The configuration an instance is created with. Stored once, in the
      first event of the workflow history.
    - Events:          AuctionBid, PollVote, DMSDeactivate.
      Delivered as signals. The routing field (item / prompt / id) decides
      which instance receives the event; see instances.py.
    - Aggregates:      AuctionBid, PollResult, DMSState.
      The evolving result each instance holds and exposes through its
      `state` query. An auction's aggregate is simply its top bid.

TIMESTAMPS AS STRINGS:
    `start_time` is an ISO-8601 string rather than a datetime. It keeps the
    JSON payload obvious in the Web UI and sidesteps timezone surprises in
    the converter. racer.compute_deadline() parses it.
"""

from dataclasses import dataclass, field
from enum import StrEnum


class InstanceStatus(StrEnum):
    """Lifecycle of an instance's event loop."""
    RUNNING = "running"
    FINISHED = "finished"


class FinishReason(StrEnum):
    """Which terminal signal won the race."""
    TIMEOUT = "timeout"
    DEACTIVATED = "deactivated"


class DeliveryStatus(StrEnum):
    """
    Where the final notification is in its delivery.

    SKIPPED is only reachable by a deactivated dead-man's switch: the
    webhook exists to announce a timeout, so deactivation sends nothing.
    """
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"


# ── Start requests ──


@dataclass
class AuctionRequest:
    """
    Configuration for one auction.

    `reserve_price` is carried for callers but plays no part in choosing the
    winner: the highest bid wins whatever the reserve.
    """
    item: str
    duration_seconds: float
    webhook: str
    reserve_price: float = 0.0
    start_time: str | None = None


@dataclass
class PollRequest:
    prompt: str
    options: list[str]
    duration_seconds: float
    webhook: str
    start_time: str | None = None


@dataclass
class DMSRequest:
    """
    Configuration for a dead-man's switch.

    `message` is released to `webhook` only if the switch times out. It is
    the most sensitive value in the system, which is the main reason payloads
    are encrypted at rest.
    """
    id: str
    message: str
    duration_seconds: float
    webhook: str
    start_time: str | None = None


# ── Events and aggregates ──


@dataclass
class AuctionBid:
    """
    A bid event, and also the auction's aggregate (the current top bid).

    The aggregate starts as AuctionBid(item=<item>) with no bidder and a zero
    amount, so the first positive bid always replaces it.
    """
    item: str
    bidder: str = ""
    amount: float = 0.0


@dataclass
class PollVote:
    prompt: str
    option: str
    amount: float = 1.0


@dataclass
class PollResult:
    """Running tally of a poll: option -> accumulated weight."""
    prompt: str
    votes: dict[str, float] = field(default_factory=dict)

    def ranked(self) -> list[tuple[str, float]]:
        """Options ordered by weight, heaviest first."""
        return sorted(self.votes.items(), key=lambda item: item[1], reverse=True)


@dataclass
class DMSDeactivate:
    """Early-termination event for a dead-man's switch."""
    id: str


@dataclass
class DMSState:
    """
    Queryable state of a dead-man's switch.

    The message is not part of it: a query must never leak what the
    switch is guarding.
    """
    id: str
    deactivated: bool = False
    timed_out: bool = False
    seconds_remaining: float = 0.0

    @property
    def summary(self) -> str:
        if self.deactivated:
            return "switch was deactivated"
        if self.timed_out:
            return "switch timed out"
        return f"{self.seconds_remaining:.1f}s until timeout"


@dataclass
class DMSTimeoutPayload:
    """What the webhook receives when a switch times out."""
    id: str
    message: str


# ── Notification and operator views ──


@dataclass
class NotificationRequest:
    """
    Input to the deliver_notification activity.

    `payload` is the JSON-ready form of the final aggregate. It is recorded in
    the workflow history when the activity is scheduled, so every retry
    attempt sees exactly the same value.
    """
    url: str
    payload: dict


@dataclass
class InstanceProgress:
    """
    Operator view of one instance, returned by the `progress` query.

    Readable while the loop runs, while the notification is being retried,
    and after the workflow completes.
    """
    instance_id: str
    deadline: str
    status: str = InstanceStatus.RUNNING
    finish_reason: str | None = None
    delivery: str = DeliveryStatus.PENDING
    events_received: int = 0
    events_rejected: int = 0


@dataclass
class PulseConfig:
    """
    Behaviour of the watchdog's supervised worker.

    The worker heartbeats every `interval_seconds` and goes silent after
    `max_pulses` heartbeats, imitating a process that hangs. The supervisor
    builds a fresh PulseConfig for every cycle.
    """
    interval_seconds: float = 1.0
    max_pulses: int = 20


@dataclass
class MetricsConfig:
    """
    Behaviour of the metrics emitter: tick every `interval_seconds` for
    `duration_seconds`, then return.
    """
    duration_seconds: float = 60.0
    interval_seconds: float = 1.0
