"""
Tests for signal classification.

Covers every combination of history state and agent position, plus the
EXITED refinement and snapshot-level detection.
"""

import pytest

from core.models import FollowAction, FollowState, OrderHistoryRecord
from core.signal_detector import SignalDetector, classify
from tests.helpers import make_position


def _record(state, entry_oid=1, last_closed_entry_oid=None):
    return OrderHistoryRecord(
        symbol="BTC",
        entry_oid=entry_oid if state == FollowState.FOLLOWING else None,
        state=state,
        last_closed_entry_oid=last_closed_entry_oid,
    )


SAME = make_position(entry_oid=1)
DIFFERENT = make_position(entry_oid=2)
PAST_TP = make_position(entry_oid=1, current_price=110.0, profit_target=105.0, stop_loss=95.0)
PAST_SL = make_position(entry_oid=1, current_price=90.0, profit_target=105.0, stop_loss=95.0)


class TestClassificationTable:
    """One case per (history, position) combination."""

    @pytest.mark.parametrize(
        "record, position, expected",
        [
            (None, None, FollowAction.NONE),
            (None, SAME, FollowAction.ENTER),
            (None, DIFFERENT, FollowAction.ENTER),
            (None, PAST_TP, FollowAction.ENTER),
            (_record(FollowState.FOLLOWING), None, FollowAction.EXIT),
            (_record(FollowState.FOLLOWING), SAME, FollowAction.NONE),
            (_record(FollowState.FOLLOWING), DIFFERENT, FollowAction.REPLACE),
            (_record(FollowState.FOLLOWING), PAST_TP, FollowAction.TP_SL_CLOSE),
            (_record(FollowState.FOLLOWING), PAST_SL, FollowAction.TP_SL_CLOSE),
            (_record(FollowState.UNFOLLOWED), None, FollowAction.NONE),
            (_record(FollowState.UNFOLLOWED), SAME, FollowAction.ENTER),
            (_record(FollowState.UNFOLLOWED), DIFFERENT, FollowAction.ENTER),
            (_record(FollowState.UNFOLLOWED), PAST_TP, FollowAction.ENTER),
        ],
    )
    def test_table(self, record, position, expected):
        assert classify(record, position).action == expected

    def test_replace_takes_precedence_over_threshold(self):
        """A new entry OID wins even if the new position is already past its target."""
        position = make_position(entry_oid=2, current_price=110.0, profit_target=105.0)
        plan = classify(_record(FollowState.FOLLOWING), position)
        assert plan.action == FollowAction.REPLACE

    def test_short_threshold_is_mirrored(self):
        short_tp = make_position(quantity=-1.0, current_price=90.0, profit_target=95.0, stop_loss=105.0)
        short_inside = make_position(quantity=-1.0, current_price=100.0, profit_target=95.0, stop_loss=105.0)
        assert classify(_record(FollowState.FOLLOWING), short_tp).action == FollowAction.TP_SL_CLOSE
        assert classify(_record(FollowState.FOLLOWING), short_inside).action == FollowAction.NONE

    def test_zero_quantity_counts_as_absent(self):
        flat = make_position(quantity=0.0)
        assert classify(_record(FollowState.FOLLOWING), flat).action == FollowAction.EXIT

    def test_plan_carries_side_and_exit_plan(self):
        plan = classify(None, make_position(quantity=-2.0, leverage=5.0, profit_target=90.0))
        assert plan.target_side == "SELL"
        assert plan.leverage == 5.0
        assert plan.exit_plan.profit_target == 90.0
        assert plan.notional(10.0) == 50.0


class TestExitedState:
    def test_same_entry_oid_is_not_reentered(self):
        record = _record(FollowState.EXITED, last_closed_entry_oid=1)
        assert classify(record, SAME).action == FollowAction.NONE

    def test_new_entry_oid_is_entered(self):
        record = _record(FollowState.EXITED, last_closed_entry_oid=1)
        assert classify(record, DIFFERENT).action == FollowAction.ENTER

    def test_absent_position_is_none(self):
        record = _record(FollowState.EXITED, last_closed_entry_oid=1)
        assert classify(record, None).action == FollowAction.NONE


class TestSignalDetector:
    def test_detects_union_of_snapshot_and_history_sorted(self, store):
        store.upsert(OrderHistoryRecord(symbol="SOL", entry_oid=7, state=FollowState.FOLLOWING))
        snapshot = {
            "ETH": make_position(symbol="ETH", entry_oid=3),
            "BTC": make_position(symbol="BTC", entry_oid=1),
        }

        plans = SignalDetector(store).detect(snapshot)

        assert [p.symbol for p in plans] == ["BTC", "ETH", "SOL"]
        assert [p.action for p in plans] == [FollowAction.ENTER, FollowAction.ENTER, FollowAction.EXIT]

    def test_identical_snapshot_is_idempotent(self, store):
        store.upsert(OrderHistoryRecord(symbol="BTC", entry_oid=1, state=FollowState.FOLLOWING))
        snapshot = {"BTC": make_position(entry_oid=1)}
        detector = SignalDetector(store)

        first = detector.detect(snapshot)
        second = detector.detect(snapshot)

        assert [p.action for p in first] == [FollowAction.NONE]
        assert [p.action for p in second] == [FollowAction.NONE]

    def test_replace_example(self, store):
        store.upsert(OrderHistoryRecord(symbol="BTC", entry_oid=1, state=FollowState.FOLLOWING))

        plans = SignalDetector(store).detect({"BTC": make_position(entry_oid=2)})

        assert plans[0].action == FollowAction.REPLACE
        assert plans[0].previous.entry_oid == 1
        assert plans[0].position.entry_oid == 2

    def test_contract_symbols_are_normalized(self, store):
        store.upsert(OrderHistoryRecord(symbol="BTC", entry_oid=1, state=FollowState.FOLLOWING))

        plans = SignalDetector(store).detect({"BTCUSDT": make_position(symbol="BTC", entry_oid=1)})

        assert [(p.symbol, p.action) for p in plans] == [("BTC", FollowAction.NONE)]
