"""
Tests for the order history store: durability, reset semantics and
failure handling.
"""

import json
import os
from unittest.mock import patch

import pytest

from core.exceptions import StateStoreError, StateStoreWriteError
from core.models import FollowState, OrderHistoryRecord
from infra.state_store import OrderHistoryStore


def test_get_unknown_symbol_returns_none(store):
    assert store.get("BTC") is None
    assert store.all_records() == {}


def test_upsert_survives_restart(store, history_file):
    store.upsert(OrderHistoryRecord(symbol="btc", entry_oid=7, tp_oid=8, sl_oid=9,
                                    state=FollowState.FOLLOWING, side="LONG"))

    reopened = OrderHistoryStore(str(history_file))
    record = reopened.get("BTC")

    assert record.entry_oid == 7
    assert record.tp_oid == 8
    assert record.state == FollowState.FOLLOWING
    assert record.updated_at is not None
    with open(history_file, "r", encoding="utf-8") as f:
        assert json.load(f)["records"]["BTC"]["state"] == "following"


def test_no_temp_files_left_behind(store, history_file):
    store.upsert(OrderHistoryRecord(symbol="BTC", entry_oid=1))
    leftovers = [name for name in os.listdir(history_file.parent) if name.endswith(".tmp")]
    assert leftovers == []


def test_reset_clears_identifiers_keeps_metadata(store):
    store.upsert(OrderHistoryRecord(symbol="ETH", entry_oid=3, tp_oid=4, sl_oid=5,
                                    state=FollowState.FOLLOWING, side="SHORT",
                                    entry_price=2500.0, leverage=5.0, pending_entry_oid=3))

    record = store.reset("ETH", reason="agent_closed")

    assert record.entry_oid is None
    assert record.tp_oid is None
    assert record.sl_oid is None
    assert record.pending_entry_oid is None
    assert record.state == FollowState.UNFOLLOWED
    assert record.last_closed_entry_oid == 3
    assert record.last_exit_reason == "agent_closed"
    assert record.side == "SHORT"
    assert record.entry_price == 2500.0
    assert record.last_event_at is not None
    assert store.get("ETH") == record


def test_reset_to_exited(store):
    store.upsert(OrderHistoryRecord(symbol="SOL", entry_oid=1, state=FollowState.FOLLOWING))
    assert store.reset("SOL", reason="tp_sl", state=FollowState.EXITED).state == FollowState.EXITED


def test_following_symbols_sorted(store):
    for symbol, state in (("XRP", FollowState.FOLLOWING), ("BTC", FollowState.FOLLOWING),
                          ("ETH", FollowState.UNFOLLOWED)):
        store.upsert(OrderHistoryRecord(symbol=symbol, entry_oid=1, state=state))
    assert store.following_symbols() == ["BTC", "XRP"]


def test_mark_pending_and_touch_tick(store, history_file):
    store.mark_pending("BTC", 42)
    store.touch_tick("agent-x")

    reopened = OrderHistoryStore(str(history_file))
    assert reopened.get("BTC").pending_entry_oid == 42
    state = reopened.load()
    assert state["agent"] == "agent-x"
    assert state["last_tick_at"] is not None


def test_restore_puts_back_previous_record_or_drops_symbol(store, history_file):
    store.upsert(OrderHistoryRecord(symbol="ETH", state=FollowState.UNFOLLOWED, last_closed_entry_oid=7))
    previous = store.get("ETH")

    store.mark_pending("ETH", 8)
    store.mark_pending("SOL", 9)
    store.restore("ETH", previous)
    store.restore("SOL", None)

    reopened = OrderHistoryStore(str(history_file))
    assert reopened.get("ETH").to_dict() == previous.to_dict()
    assert reopened.get("SOL") is None


def test_corrupt_file_raises(history_file):
    history_file.write_text("{not json", encoding="utf-8")
    store = OrderHistoryStore(str(history_file))
    with pytest.raises(StateStoreError):
        store.get("BTC")


def test_write_failure_raises_and_keeps_previous_state(store, history_file):
    store.upsert(OrderHistoryRecord(symbol="BTC", entry_oid=1, state=FollowState.FOLLOWING))

    with patch("infra.state_store.os.replace", side_effect=OSError("disk full")):
        with pytest.raises(StateStoreWriteError):
            store.upsert(OrderHistoryRecord(symbol="BTC", entry_oid=2, state=FollowState.FOLLOWING))

    assert store.get("BTC").entry_oid == 1
    assert OrderHistoryStore(str(history_file)).get("BTC").entry_oid == 1
