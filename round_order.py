"""
Round and slot arithmetic.

A round is a fixed-size cycle of forging turns: round r covers heights
(r-1)*N+1 .. r*N where N is the number of forging participants. A slot is
floor(seconds since the network epoch / block time); the participant at
``slot mod N`` of the round's canonical sequence owns that slot.
"""

import math
import time
from datetime import datetime
from typing import Callable, List, NamedTuple, Optional, Sequence

from identities import sha256


class RoundInfo(NamedTuple):
    round: int
    max_participants: int
    round_height: int      # first height of the round
    next_round: int


class Milestone(NamedTuple):
    height: int
    block_time: int
    max_participants: int
    epoch: float           # unix time of the network epoch


class BlockData(NamedTuple):
    height: int
    timestamp: int         # seconds since the network epoch
    producer_identity: Optional[str] = None


def calculate_round(height: int, max_participants: int) -> RoundInfo:
    if height < 1:
        raise ValueError(f"height must be >= 1, got {height}")
    if max_participants < 1:
        raise ValueError(f"max_participants must be >= 1, got {max_participants}")
    round_number = (height - 1) // max_participants + 1
    return RoundInfo(
        round=round_number,
        max_participants=max_participants,
        round_height=(round_number - 1) * max_participants + 1,
        next_round=height // max_participants + 1,
    )


def is_new_round(height: int, max_participants: int) -> bool:
    """True when *height* is the first block of a round."""
    return height == 1 or (height - 1) % max_participants == 0


def round_position(last_height: int, max_participants: int) -> int:
    """Number of blocks already produced in the round the next block belongs to."""
    return last_height % max_participants


def order(reference_slot: int, participants: Sequence, max_participants: int) -> list:
    """Rotate *participants* so the owner of *reference_slot* comes first.

    Cyclic order is preserved and the result is truncated to
    *max_participants* entries.
    """
    if not participants or max_participants < 1:
        return []
    start = reference_slot % max_participants
    if start >= len(participants):
        start %= len(participants)
    rotated = list(participants[start:]) + list(participants)
    return rotated[:max_participants]


def shuffle_participants(participants: Sequence, round_number: int) -> list:
    """Deterministic per-round shuffle that turns the stored delegate list of a
    round into its forging sequence.

    The seed is sha256 of the decimal round number and is re-hashed after
    every four swaps. The index following each group of four is skipped, as
    the chain does.
    """
    shuffled = list(participants)
    count = len(shuffled)
    seed = sha256(str(round_number).encode("utf-8"))
    i = 0
    while i < count:
        x = 0
        while x < 4 and i < count:
            new_index = seed[x] % count
            shuffled[new_index], shuffled[i] = shuffled[i], shuffled[new_index]
            i += 1
            x += 1
        i += 1
        seed = sha256(seed)
    return shuffled


def parse_epoch(value) -> float:
    """Accept unix seconds or an ISO-8601 string such as 2017-03-21T13:00:00.000Z."""
    if isinstance(value, (int, float)):
        return float(value)
    return datetime.fromisoformat(str(value).replace("Z", "+00:00")).timestamp()


# ── Slot clock ────────────────────────────────────────────────────────────────

class SlotClock:
    """Maps wall-clock time to slots for one block-time milestone."""

    def __init__(self, epoch: float, block_time: int, now: Callable[[], float] = time.time):
        if block_time <= 0:
            raise ValueError(f"block_time must be positive, got {block_time}")
        self.epoch = epoch
        self.block_time = block_time
        self._now = now

    @classmethod
    def from_milestone(cls, milestone: Milestone, now: Callable[[], float] = time.time) -> "SlotClock":
        return cls(milestone.epoch, milestone.block_time, now)

    def get_time(self) -> float:
        """Seconds elapsed since the network epoch."""
        return self._now() - self.epoch

    def slot_number(self, timestamp: Optional[float] = None) -> int:
        if timestamp is None:
            timestamp = self.get_time()
        return math.floor(timestamp / self.block_time)

    def slot_time(self, slot: int) -> int:
        return slot * self.block_time

    def time_until_next_slot(self) -> float:
        """Seconds from now until the next slot boundary (always > 0)."""
        now = self.get_time()
        remaining = self.slot_time(self.slot_number(now) + 1) - now
        return remaining if remaining > 0 else float(self.block_time)


class RoundOrderCache(NamedTuple):
    """Canonical forging sequence of one round; names and identities share indices."""
    round: RoundInfo
    names: List[str]
    identities: List[Optional[str]]

    def order(self, reference_slot: int) -> List[str]:
        return order(reference_slot, self.names, self.round.max_participants)
