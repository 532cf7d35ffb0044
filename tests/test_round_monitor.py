"""Tests for round_monitor — the slot-aligned evaluation loop.

Timeline (see conftest): five forgers A..E, 8s blocks, block h in slot h+100.
The last block is height 10, so round 3 (heights 11..15) starts next with
anchor slot 111 and canonical order A..E; slot 111 belongs to B.
"""

import logging

import pytest

from forge_tracker import ForgeState
from restart_coordinator import RestartCoordinator
from round_monitor import RoundMonitor

from conftest import FakeChain, block_at


@pytest.fixture
def make_monitor(chain, directory, coordinator, reporter, clock):
    def make(delegate=None, secrets=(), **kwargs):
        kwargs.setdefault("show_forging_order", False)
        kwargs.setdefault("coordinator", coordinator)
        kwargs.setdefault("chain", chain)
        monitor = RoundMonitor(kwargs.pop("chain"), directory, kwargs.pop("coordinator"),
                               reporter, now=clock, **kwargs)
        monitor.register(delegate, secrets)
        monitor.boot()
        return monitor
    return make


class TestBoot:
    def test_builds_round_cache_and_anchor(self, make_monitor, directory):
        monitor = make_monitor("D")
        assert monitor.round_cache.round.round == 3
        assert monitor.round_cache.names == ["A", "B", "C", "D", "E"]
        assert monitor.round_cache.identities == ["pkA", "pkB", "pkC", "pkD", "pkE"]
        assert monitor.round_slot == 111
        assert directory.round_calls == [3]

    def test_logs_new_forging_order(self, make_monitor, caplog):
        caplog.set_level(logging.INFO, logger="round_monitor")
        make_monitor("D", show_forging_order=True)
        assert "New forging order: B, C, D, E, A" in caplog.text

    def test_logs_remaining_forging_order_mid_round(self, directory, coordinator, reporter, clock, caplog):
        caplog.set_level(logging.INFO, logger="round_monitor")
        chain = FakeChain(last_height=12)
        clock.at_slot(113)
        monitor = RoundMonitor(chain, directory, coordinator, reporter, now=clock)
        monitor.boot()
        assert "Remaining forging order: D, E, A, B, C" in caplog.text
        assert monitor.round_slot == 111


class TestEvaluate:
    def test_status_line(self, make_monitor):
        monitor = make_monitor("D")
        assert monitor.evaluate() == "Time until we forge: 16s (D) [1/5: B, C, D] [32s]"

    def test_same_slot_is_skipped(self, make_monitor):
        monitor = make_monitor("D")
        assert monitor.evaluate() is not None
        assert monitor.evaluate() is None

    def test_deferred_when_last_block_is_in_live_slot(self, make_monitor, chain):
        monitor = make_monitor("D")
        chain.add_block(block_at(11, slot=111))
        assert monitor.evaluate() is None
        assert monitor.slot == 111

    def test_next_slot_evaluates_again(self, make_monitor, clock):
        monitor = make_monitor("D")
        monitor.evaluate()
        clock.at_slot(112)
        assert monitor.evaluate() == "Time until we forge: 8s (D) [1/5: C, D, E] [32s]"

    def test_missed_window_reports_failure(self, make_monitor, clock):
        monitor = make_monitor("D")
        clock.at_slot(114)
        line = monitor.evaluate()
        assert "32s (D) ❌" in line
        assert monitor.tracker.find("D").state is ForgeState.FAILURE

    def test_forged_in_round_reports_success(self, make_monitor, chain, directory, clock):
        monitor = make_monitor("D")
        chain.add_block(block_at(11, slot=111))
        chain.add_block(block_at(12, slot=112))
        chain.add_block(block_at(13, slot=113))
        directory.set_last_block("D", slot=113, height=13)
        clock.at_slot(114)
        line = monitor.evaluate()
        assert "(D) ✅" in line

    def test_no_participants_shows_next_forgers(self, make_monitor):
        monitor = make_monitor()
        assert monitor.evaluate() == "Next to forge: B, C, D [1/5] [32s]"


class TestRoundBoundary:
    def test_new_round_invalidates_cache_and_resets_state(self, make_monitor, chain, directory, clock):
        monitor = make_monitor("D")
        clock.at_slot(114)
        monitor.evaluate()
        assert monitor.tracker.find("D").state is ForgeState.FAILURE

        for h, slot in [(11, 111), (12, 112), (13, 113), (14, 115), (15, 116)]:
            chain.add_block(block_at(h, slot=slot))
        monitor.handle_block(chain.get_block_at(15))

        assert directory.round_calls == [3, 4]
        assert monitor.round_cache.round.round == 4
        assert monitor.round_slot == 117
        assert monitor.tracker.find("D").state is ForgeState.UNKNOWN

    def test_block_within_round_leaves_cache_untouched(self, make_monitor, chain, directory):
        monitor = make_monitor("D")
        cache = monitor.round_cache
        chain.add_block(block_at(11, slot=111))
        monitor.handle_block(chain.get_block_at(11))
        assert monitor.round_cache is cache
        assert monitor.round_slot == 111
        assert directory.round_calls == [3]

    def test_evaluate_picks_up_unreported_round_change(self, make_monitor, directory, clock):
        chain = FakeChain(last_height=14)
        clock.at_slot(115)
        monitor = make_monitor("D", chain=chain)
        assert monitor.round_cache.round.round == 3

        chain.add_block(block_at(15))
        clock.at_slot(116)
        line = monitor.evaluate()

        assert directory.round_calls == [3, 4]
        assert monitor.round_cache.round.round == 4
        assert monitor.round_slot == 116
        assert monitor.tracker.find("D").state is ForgeState.UNKNOWN
        assert line == "Time until we forge: 16s (D) [1/5: B, C, D] [32s]"

    def test_no_commit_on_previous_round_order(self, make_monitor, directory, clock, terminator):
        # Round 3 would leave D clear of the buffer; round 4 puts D next.
        directory.round_names = ["D", "A", "B", "C", "E"]
        chain = FakeChain(last_height=14)
        clock.at_slot(115)
        monitor = make_monitor("D", chain=chain)
        monitor.coordinator.request()

        directory.round_names = ["E", "D", "A", "B", "C"]
        chain.add_block(block_at(15))
        clock.at_slot(116)
        line = monitor.evaluate()

        assert terminator.calls == 0
        assert line.startswith("Time until we forge: 0s (D)")

    def test_calculate_round_order_is_idempotent(self, make_monitor, chain, directory):
        monitor = make_monitor("D")
        assert monitor.calculate_round_order(11, chain.get_last_block()) is False
        assert directory.round_calls == [3]


class TestSafeRestart:
    def test_commits_when_nothing_is_monitored(self, make_monitor, coordinator, process_control, terminator):
        monitor = make_monitor()
        coordinator.request()
        assert monitor.evaluate() is None
        assert terminator.calls == 1
        assert process_control.restarted == ["ark-forger", "ark-relay", "ark-core"]

    def test_waits_while_monitored_delegate_is_close(self, make_monitor, coordinator, terminator):
        monitor = make_monitor("D")
        coordinator.request()
        line = monitor.evaluate()
        assert line.endswith("[Waiting to restart]")
        assert terminator.calls == 0

    def test_commits_once_clear(self, make_monitor, process_control, terminator):
        coordinator = RestartCoordinator(process_control, restart_time_buffer=10, terminate=terminator)
        monitor = make_monitor("D", coordinator=coordinator)
        coordinator.request()
        monitor.evaluate()
        assert terminator.calls == 1

    def test_waits_when_round_ends_soon(self, directory, process_control, reporter, clock, terminator):
        directory.add_standby("Z")
        chain = FakeChain(last_height=13)
        clock.at_slot(114)
        coordinator = RestartCoordinator(process_control, restart_time_buffer=20, terminate=terminator)
        monitor = RoundMonitor(chain, directory, coordinator, reporter, show_forging_order=False, now=clock)
        monitor.register("Z")
        monitor.boot()
        coordinator.request()
        line = monitor.evaluate()
        assert "Next to forge" in line
        assert terminator.calls == 0

    def test_no_evaluation_after_commit(self, make_monitor, coordinator, clock, terminator):
        monitor = make_monitor()
        coordinator.request()
        monitor.evaluate()
        clock.at_slot(112)
        assert monitor.evaluate() is None
        assert terminator.calls == 1


class TestRun:
    def test_consumes_queued_blocks_until_stopped(self, make_monitor, chain, directory):
        monitor = make_monitor("D")
        for h, slot in [(11, 111), (12, 112), (13, 113), (14, 114), (15, 115)]:
            chain.add_block(block_at(h, slot=slot))
        monitor.on_block_applied(chain.get_block_at(15))
        monitor.stop()
        monitor.run()
        assert monitor.round_cache.round.round == 4
        assert directory.round_calls == [3, 4]

    def test_returns_after_commit(self, make_monitor, coordinator, terminator):
        monitor = make_monitor()
        coordinator.request()
        monitor.run()
        assert terminator.calls == 1


def test_snapshot(make_monitor, coordinator):
    monitor = make_monitor("D")
    monitor.evaluate()
    coordinator.request()
    snap = monitor.snapshot()
    assert snap["round"] == 3
    assert snap["round_slot"] == 111
    assert snap["participants"][0]["name"] == "D"
    assert snap["participants"][0]["position"] == 2
    assert snap["restart"] == {"state": "requested", "requested": True, "active": False}
