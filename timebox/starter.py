"""
Start, signal, or query timebox instances from the command line.

This is the CLIENT. It connects to Temporal the same way the worker does
(same encrypted data converter) and uses instances.py to start workflows,
send events and read state.

Usage:
    python -m timebox.starter auction start --item vase --duration 5m --webhook http://localhost:8080/auction
    python -m timebox.starter auction bid   --item vase --bidder alice --amount 120
    python -m timebox.starter auction state --item vase

    python -m timebox.starter poll start --prompt "Lunch?" --option tacos --option pho --duration 1h --webhook http://localhost:8080/poll
    python -m timebox.starter poll vote  --prompt "Lunch?" --option tacos --amount 2
    python -m timebox.starter poll state --prompt "Lunch?"

    python -m timebox.starter dms start      --id vault --message "the key is under the mat" --duration 24h --webhook http://localhost:8080/dms
    python -m timebox.starter dms deactivate --id vault
    python -m timebox.starter dms state      --id vault

    python -m timebox.starter heart start
    python -m timebox.starter metrics start --duration 5m --interval 1s

Add --wait to any `start` to block until the instance finishes and print its
final result.

Environment variables:
    TEMPORAL_HOST, TEMPORAL_NAMESPACE, TIMEBOX_ENCRYPTION_KEYS (must match the worker)
"""

import argparse
import asyncio
import re
import sys
from datetime import datetime, timezone

from temporalio.client import Client

from .encryption import build_data_converter
from .instances import (
    InstanceError,
    query_progress,
    query_state,
    send_event,
    start_instance,
    start_metrics,
    start_watchdog,
)
from .models import (
    AuctionBid,
    AuctionRequest,
    DMSDeactivate,
    DMSRequest,
    MetricsConfig,
    PollRequest,
    PollVote,
)
from .shared import AUCTION, DMS, HEART, METRICS, POLL, TEMPORAL_HOST, TEMPORAL_NAMESPACE

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_UNIT_SECONDS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(text: str) -> float:
    """
    Seconds from "90", "90s", "5m", "1h30m" or "250ms".

    A bare number is seconds. Raises ValueError on anything else.
    """
    text = text.strip()
    try:
        return float(text)
    except ValueError:
        pass
    parts = _DURATION_PART.findall(text)
    if not parts or "".join(n + u for n, u in parts) != text:
        raise ValueError(f"Invalid duration: {text!r}")
    return sum(float(n) * _UNIT_SECONDS[u] for n, u in parts)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Start, signal, or query timebox instances",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    variants = parser.add_subparsers(dest="variant", required=True)

    # auction
    auction = variants.add_parser(AUCTION, help="Time-boxed auctions")
    auction_actions = auction.add_subparsers(dest="action", required=True)
    p = auction_actions.add_parser("start", help="Open an auction")
    p.add_argument("--item", required=True)
    p.add_argument("--duration", required=True, help="e.g. 90s, 5m, 1h30m")
    p.add_argument("--webhook", required=True, help="URL that receives the winning bid")
    p.add_argument("--reserve-price", type=float, default=0.0)
    p.add_argument("--wait", action="store_true", help="Block until the auction closes")
    p = auction_actions.add_parser("bid", help="Place a bid")
    p.add_argument("--item", required=True)
    p.add_argument("--bidder", required=True)
    p.add_argument("--amount", type=float, required=True)
    p = auction_actions.add_parser("state", help="Show the current top bid")
    p.add_argument("--item", required=True)

    # poll
    poll = variants.add_parser(POLL, help="Time-boxed weighted polls")
    poll_actions = poll.add_subparsers(dest="action", required=True)
    p = poll_actions.add_parser("start", help="Open a poll")
    p.add_argument("--prompt", required=True)
    p.add_argument("--option", action="append", required=True, dest="options",
                   help="Repeat for each option")
    p.add_argument("--duration", required=True)
    p.add_argument("--webhook", required=True)
    p.add_argument("--wait", action="store_true")
    p = poll_actions.add_parser("vote", help="Cast a weighted vote")
    p.add_argument("--prompt", required=True)
    p.add_argument("--option", required=True)
    p.add_argument("--amount", type=float, default=1.0)
    p = poll_actions.add_parser("state", help="Show the current tally")
    p.add_argument("--prompt", required=True)

    # dead-man's switch
    dms = variants.add_parser(DMS, help="Dead-man's switches")
    dms_actions = dms.add_subparsers(dest="action", required=True)
    p = dms_actions.add_parser("start", help="Arm a switch")
    p.add_argument("--id", required=True)
    p.add_argument("--message", required=True, help="Released to the webhook on timeout")
    p.add_argument("--duration", required=True)
    p.add_argument("--webhook", required=True)
    p.add_argument("--wait", action="store_true")
    p = dms_actions.add_parser("deactivate", help="Disarm a switch")
    p.add_argument("--id", required=True)
    p = dms_actions.add_parser("state", help="Show time remaining")
    p.add_argument("--id", required=True)

    # watchdog
    heart = variants.add_parser(HEART, help="Heartbeat watchdog")
    heart_actions = heart.add_subparsers(dest="action", required=True)
    heart_actions.add_parser("start", help="Start the watchdog (runs forever)")

    # metrics
    metrics = variants.add_parser(METRICS, help="Prometheus metrics emitter")
    metrics_actions = metrics.add_subparsers(dest="action", required=True)
    p = metrics_actions.add_parser("start", help="Emit a counter and a gauge for a while")
    p.add_argument("--duration", default="60s", help="How long to emit (default: 60s)")
    p.add_argument("--interval", default="1s", help="Time between ticks (default: 1s)")
    p.add_argument("--wait", action="store_true")

    return parser


def _print_result(variant: str, result) -> None:
    if variant == AUCTION:
        if result.bidder:
            print(f"Top bid for '{result.item}': {result.amount} by {result.bidder}")
        else:
            print(f"No bids for '{result.item}'")
    elif variant == POLL:
        print(f"Poll results for \"{result.prompt}\":")
        for option, weight in result.ranked():
            print(f"  {option}: {weight:g}")
    elif variant == DMS:
        print(f"Switch '{result.id}': {result.summary}")


async def run_command(client: Client, args: argparse.Namespace) -> None:
    variant, action = args.variant, args.action

    if variant == HEART:
        handle = await start_watchdog(client)
        print(f"Watchdog started (workflow id: {handle.id})")
        return

    if variant == METRICS:
        config = MetricsConfig(
            duration_seconds=parse_duration(args.duration),
            interval_seconds=parse_duration(args.interval),
        )
        handle = await start_metrics(client, config)
        print(f"Metrics emitter started (workflow id: {handle.id})")
        if args.wait:
            print(f"Published {await handle.result()} ticks")
        return

    if action == "start":
        duration = parse_duration(args.duration)
        if variant == AUCTION:
            request = AuctionRequest(
                item=args.item, duration_seconds=duration, webhook=args.webhook,
                reserve_price=args.reserve_price, start_time=_now_iso(),
            )
        elif variant == POLL:
            request = PollRequest(
                prompt=args.prompt, options=args.options, duration_seconds=duration,
                webhook=args.webhook, start_time=_now_iso(),
            )
        else:
            request = DMSRequest(
                id=args.id, message=args.message, duration_seconds=duration,
                webhook=args.webhook, start_time=_now_iso(),
            )
        handle = await start_instance(client, request)
        print(f"Started {variant} (workflow id: {handle.id}, closes in {duration:g}s)")
        if args.wait:
            _print_result(variant, await handle.result())
        return

    if action == "bid":
        await send_event(client, AuctionBid(item=args.item, bidder=args.bidder, amount=args.amount))
        print("Bid sent")
    elif action == "vote":
        await send_event(client, PollVote(prompt=args.prompt, option=args.option, amount=args.amount))
        print("Vote sent")
    elif action == "deactivate":
        await send_event(client, DMSDeactivate(id=args.id))
        print("Deactivation sent")
    elif action == "state":
        key = {AUCTION: "item", POLL: "prompt", DMS: "id"}[variant]
        state = await query_state(client, variant, getattr(args, key))
        progress = await query_progress(client, variant, getattr(args, key))
        _print_result(variant, state)
        print(
            f"  [{progress.status}] events: {progress.events_received} "
            f"({progress.events_rejected} rejected), "
            f"delivery: {progress.delivery}, deadline: {progress.deadline}"
        )


async def main():
    args = build_parser().parse_args()
    client = await Client.connect(
        TEMPORAL_HOST,
        namespace=TEMPORAL_NAMESPACE,
        data_converter=build_data_converter(),
    )
    try:
        await run_command(client, args)
    except (ValueError, InstanceError) as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
