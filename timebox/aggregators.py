"""
Aggregators: how one event changes an instance's result.

Each aggregator is a plain function `apply(current, event) -> aggregate`.
They are pure and total:
    - no I/O, no clocks, no logging
    - never raise; an event that doesn't matter returns `current` unchanged

That makes them safe to call from workflow code (deterministic on replay)
and trivial to unit test without Temporal.

Validation (negative amounts, empty names) happens before an event is
signalled, in instances.py. By the time an event gets here it is well-formed;
it may still be irrelevant, e.g. a losing bid or a vote for an option the
poll doesn't have.
"""

from typing import Any

from .models import AuctionBid, DMSState, PollResult, PollVote


def apply_bid(top: AuctionBid, event: Any) -> AuctionBid:
    """
    Keep the highest bid.

    Replacement requires a strictly greater amount, so on a tie the earlier
    bidder keeps the lead. The auction's own item is kept; the event's item
    was only used for routing.
    """
    if not isinstance(event, AuctionBid):
        return top
    if event.amount > top.amount:
        return AuctionBid(item=top.item, bidder=event.bidder, amount=event.amount)
    return top


def apply_vote(tally: PollResult, event: Any) -> PollResult:
    """Add the vote's weight to its option, if the poll offers that option."""
    if not isinstance(event, PollVote):
        return tally
    if event.option not in tally.votes:
        return tally
    votes = dict(tally.votes)
    votes[event.option] += event.amount
    return PollResult(prompt=tally.prompt, votes=votes)


def apply_liveness(state: DMSState, event: Any) -> DMSState:
    # A dead-man's switch has no domain events; only terminal signals matter.
    return state


def initial_tally(prompt: str, options: list[str]) -> PollResult:
    return PollResult(prompt=prompt, votes={option: 0.0 for option in options})
