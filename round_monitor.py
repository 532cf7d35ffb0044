"""
Round Monitor — slot-aligned evaluation loop.

Every slot the monitor works out the live forging order (who forges next) and
the fixed order of the round (anchored at the round's first slot), updates the
forge status of the monitored delegates, gives a pending safe restart the
chance to commit and logs one status line.

Block-applied notifications are only queued by the event source; the loop
consumes them between cycles, so round state is never mutated from another
thread.
"""

import logging
import queue
import time
from typing import Callable, List, Optional

from forge_tracker import ForgeStatusTracker
from round_order import (BlockData, RoundOrderCache, SlotClock, calculate_round,
                         is_new_round, round_position)

log = logging.getLogger("round_monitor")

_STOP = object()


class RoundMonitor:
    def __init__(
        self,
        chain,
        directory,
        coordinator,
        reporter,
        show_forging_order: bool = True,
        log_level: int = logging.INFO,
        now: Callable[[], float] = time.time,
    ):
        self.chain = chain
        self.directory = directory
        self.coordinator = coordinator
        self.reporter = reporter
        self.tracker = ForgeStatusTracker(directory)
        self.show_forging_order = show_forging_order
        self.log_level = log_level
        self._now = now
        self._events: "queue.Queue" = queue.Queue()

        self.round_cache: Optional[RoundOrderCache] = None
        self.round_slot: Optional[int] = None      # anchor slot of the current round
        self.slot: Optional[int] = None            # live slot of the last evaluation
        self.slot_clock: Optional[SlotClock] = None
        self._clock_height: Optional[int] = None
        self.last_line: Optional[str] = None
        self._snapshot: dict = {}

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def register(self, delegate=None, secrets=()) -> None:
        """Add the configured delegate name(s) and forging secrets."""
        self.tracker.add_names(delegate)
        self.tracker.add_secrets(secrets)

    def boot(self) -> None:
        last = self.chain.get_last_block()
        self._refresh_clock(last.height)
        self.tracker.prepare_round()
        self.calculate_round_order(last.height + 1, last, initial=True)
        if not self.tracker.participants:
            log.info("No delegate configured in Round Monitor")

    def run(self) -> None:
        """Run evaluation cycles until stop() or a committed restart."""
        self.evaluate()
        while not self.coordinator.active:
            try:
                item = self._events.get(timeout=self.slot_clock.time_until_next_slot())
            except queue.Empty:
                self.evaluate()
                continue
            if item is _STOP:
                break
            self.handle_block(item)

    def stop(self) -> None:
        self._events.put(_STOP)

    def dispose(self) -> None:
        self.stop()

    # ── Block notifications ───────────────────────────────────────────────────

    def on_block_applied(self, block: BlockData) -> None:
        """Event source callback; may be called from any thread."""
        self._events.put(block)

    def handle_block(self, block: BlockData) -> None:
        self._refresh_clock(block.height)
        self._sync_round(block)

    def _sync_round(self, last_block: BlockData) -> bool:
        """Start a new round if the block after *last_block* is outside the cached one."""
        next_height = last_block.height + 1
        max_participants = self.chain.get_milestone_at(next_height).max_participants
        round_number = calculate_round(next_height, max_participants).round
        # A round starts at next_height, or notifications were missed across one.
        if self.round_cache is not None and self.round_cache.round.round == round_number:
            return False
        self.tracker.prepare_round()
        return self.calculate_round_order(next_height, last_block)

    def _refresh_clock(self, height: int) -> None:
        self.slot_clock = SlotClock.from_milestone(self.chain.get_milestone_at(height), self._now)
        self._clock_height = height

    # ── Round order ───────────────────────────────────────────────────────────

    def calculate_round_order(self, next_height: int, last_block: BlockData, initial: bool = False) -> bool:
        """Rebuild the round cache and anchor slot for the round of *next_height*.

        Returns False without touching anything when that round is already
        cached.
        """
        max_participants = self.chain.get_milestone_at(next_height).max_participants
        round_info = calculate_round(next_height, max_participants)
        if self.round_cache is not None and self.round_cache.round.round == round_info.round:
            return False

        participants = self.directory.get_active_participants(round_info)
        self.round_cache = RoundOrderCache(
            round=round_info,
            names=[p.name for p in participants],
            identities=[p.public_identity for p in participants],
        )
        if initial:
            log.info("Round Monitor watching round %d (%d forgers)", round_info.round, max_participants)

        clock = self.slot_clock
        same_slot = clock.slot_number(last_block.timestamp) == clock.slot_number()
        remaining = max_participants - round_position(last_block.height, max_participants) - 1
        if self.show_forging_order:
            live_order = self.round_cache.order(clock.slot_number() + (1 if same_slot else 0))
            log.info(self.reporter.forging_order_line(
                live_order, remaining, is_new_round(next_height, max_participants)))

        previous = None
        if round_info.round_height > 1:
            previous = self.chain.get_block_at(round_info.round_height - 1)
        if previous is not None:
            self.round_slot = clock.slot_number(previous.timestamp) + 1
        else:
            self.round_slot = clock.slot_number() + 1
        self._take_snapshot()
        return True

    def live_order(self, last_block: BlockData) -> List[str]:
        """Forging order from the live slot, skipping a slot already consumed."""
        slot = self.slot_clock.slot_number()
        if self.slot_clock.slot_number(last_block.timestamp) == slot:
            slot += 1
        return self.round_cache.order(slot)

    # ── Evaluation cycle ──────────────────────────────────────────────────────

    def evaluate(self) -> Optional[str]:
        """Run one cycle; return the status line, or None when the cycle was skipped."""
        if self.coordinator.active:
            return None
        last = self.chain.get_last_block()
        if last.height != self._clock_height:
            self._refresh_clock(last.height)
        # The chain may have crossed a round without a block notification.
        self._sync_round(last)

        slot = self.slot_clock.slot_number()
        if slot == self.slot:
            return None
        self.slot = slot
        if self.slot_clock.slot_number(last.timestamp) == slot:
            return None

        milestone = self.chain.get_milestone_at(last.height)
        block_time = milestone.block_time
        max_participants = self.round_cache.round.max_participants
        fixed_order = self.round_cache.order(self.round_slot)
        live_order = self.live_order(last)
        position = round_position(last.height, max_participants)
        round_time_remaining = (max_participants - position - 1) * block_time

        self.tracker.resolve_pending()
        forging = self.tracker.update(
            live_order, fixed_order, slot, self.round_slot, block_time,
            self.slot_clock.slot_number,
        )
        forge_time_remaining = min([round_time_remaining] + [p.time_to_forge for p in forging])

        if self.coordinator.maybe_commit(self.tracker.monitoring_any(), forging,
                                         forge_time_remaining, round_time_remaining):
            return None

        line = self.reporter.status_line(
            live_order, forging, position, max_participants,
            round_time_remaining, self.coordinator.requested,
        )
        if line:
            log.log(self.log_level, line)
        self.last_line = line
        self._take_snapshot(position=position, round_time_remaining=round_time_remaining)
        return line

    # ── Status snapshot ───────────────────────────────────────────────────────

    def _take_snapshot(self, **extra) -> None:
        round_info = self.round_cache.round if self.round_cache else None
        self._snapshot = {
            "round":           round_info.round if round_info else None,
            "round_height":    round_info.round_height if round_info else None,
            "max_forgers":     round_info.max_participants if round_info else None,
            "slot":            self.slot,
            "round_slot":      self.round_slot,
            "participants":    [p.to_dict() for p in self.tracker.participants],
            "last_line":       self.last_line,
            **extra,
        }

    def snapshot(self) -> dict:
        """Status as of the last cycle; safe to call from the HTTP thread."""
        return {
            **self._snapshot,
            "restart": {
                "state":     self.coordinator.state,
                "requested": self.coordinator.requested,
                "active":    self.coordinator.active,
            },
        }
