"""
Tests for the nof1 signal source adapter.

HTTP is mocked at core.signal_source.requests.get.
"""

from unittest.mock import Mock, patch

import pytest
from requests.exceptions import ConnectionError, HTTPError

from core.exceptions import SignalSourceError
from core.signal_source import Nof1SignalSource, parse_position


def _raw_position(symbol="BTC", entry_oid=11, quantity=0.5, **overrides):
    raw = {
        "symbol": symbol,
        "entry_price": 100.0,
        "quantity": quantity,
        "leverage": 10,
        "current_price": 101.0,
        "unrealized_pnl": 0.5,
        "confidence": 0.7,
        "entry_oid": entry_oid,
        "tp_oid": entry_oid + 1,
        "sl_oid": entry_oid + 2,
        "margin": 5.0,
        "exit_plan": {"profit_target": 110.0, "stop_loss": 95.0, "invalidation_condition": "close below 90"},
    }
    raw.update(overrides)
    return raw


def _account(model_id, marker, positions):
    return {
        "id": f"{model_id}_{marker}",
        "model_id": model_id,
        "since_inception_hourly_marker": marker,
        "positions": positions,
    }


def _response(payload):
    response = Mock()
    response.json.return_value = payload
    response.raise_for_status.return_value = None
    return response


PAYLOAD = {
    "accountTotals": [
        _account("gpt-5", 10, {"BTC": _raw_position(entry_oid=1)}),
        _account("deepseek", 10, {"ETH": _raw_position("ETH", entry_oid=5)}),
        _account("gpt-5", 12, {
            "BTC": _raw_position(entry_oid=2),
            "DOGE": _raw_position("DOGE", entry_oid=9, quantity=0),
            "SOL": _raw_position("SOL", entry_oid=20, quantity=-4.0),
        }),
    ]
}


@pytest.fixture
def mock_get():
    with patch("core.signal_source.requests.get") as mock:
        mock.return_value = _response(PAYLOAD)
        yield mock


class TestFetchSnapshot:
    def test_latest_marker_wins(self, mock_get):
        snapshot = Nof1SignalSource().fetch_snapshot("gpt-5")

        assert sorted(snapshot) == ["BTC", "SOL"]
        btc = snapshot["BTC"]
        assert btc.entry_oid == 2
        assert btc.tp_oid == 3
        assert btc.leverage == 10.0
        assert btc.exit_plan.profit_target == 110.0
        assert btc.exit_plan.invalidation_condition == "close below 90"
        assert snapshot["SOL"].side == "SHORT"

    def test_marker_is_sent_as_query(self, mock_get):
        Nof1SignalSource(base_url="https://example.test/api/").fetch_snapshot("gpt-5", marker=12)
        assert mock_get.call_args[0][0] == "https://example.test/api/account-totals?lastHourlyMarker=12"

    def test_unknown_agent_raises(self, mock_get):
        with pytest.raises(SignalSourceError):
            Nof1SignalSource().fetch_snapshot("claude")

    def test_agent_without_positions_is_empty(self, mock_get):
        mock_get.return_value = _response({"accountTotals": [_account("idle", 1, {})]})
        assert Nof1SignalSource().fetch_snapshot("idle") == {}

    def test_network_failure_raises_signal_source_error(self, mock_get):
        mock_get.side_effect = ConnectionError("down")
        with pytest.raises(SignalSourceError):
            Nof1SignalSource().fetch_snapshot("gpt-5")

    def test_http_error_raises_signal_source_error(self, mock_get):
        response = _response({})
        response.raise_for_status.side_effect = HTTPError("503")
        mock_get.return_value = response
        with pytest.raises(SignalSourceError):
            Nof1SignalSource().fetch_snapshot("gpt-5")

    def test_missing_account_totals_raises(self, mock_get):
        mock_get.return_value = _response({"unexpected": []})
        with pytest.raises(SignalSourceError):
            Nof1SignalSource().fetch_snapshot("gpt-5")

    def test_malformed_position_raises(self, mock_get):
        broken = _raw_position()
        del broken["entry_price"]
        mock_get.return_value = _response({"accountTotals": [_account("gpt-5", 1, {"BTC": broken})]})
        with pytest.raises(SignalSourceError):
            Nof1SignalSource().fetch_snapshot("gpt-5")


def test_list_agents_unique_in_first_seen_order(mock_get):
    assert Nof1SignalSource().list_agents() == ["gpt-5", "deepseek"]


class TestCache:
    def test_ttl_cache_reuses_response(self, mock_get):
        source = Nof1SignalSource(cache_ttl_seconds=60)
        source.fetch_snapshot("gpt-5")
        source.fetch_snapshot("deepseek")

        assert mock_get.call_count == 1
        stats = source.stats()
        assert stats["size"] == 1
        assert stats["entries"][0]["url"].endswith("/account-totals")
        assert stats["entries"][0]["age_ms"] >= 0

    def test_stats_reports_age_in_milliseconds(self, mock_get):
        source = Nof1SignalSource(cache_ttl_seconds=60)
        with patch("core.signal_source.time.monotonic", return_value=100.0):
            source.fetch_snapshot("gpt-5")
        with patch("core.signal_source.time.monotonic", return_value=102.5):
            entry = source.stats()["entries"][0]
        assert entry["age_ms"] == 2500.0

    def test_invalidate_forces_refetch(self, mock_get):
        source = Nof1SignalSource(cache_ttl_seconds=60)
        source.fetch_snapshot("gpt-5")
        source.invalidate()

        assert source.stats() == {"size": 0, "entries": []}
        source.fetch_snapshot("gpt-5")
        assert mock_get.call_count == 2

    def test_no_cache_by_default(self, mock_get):
        source = Nof1SignalSource()
        source.fetch_snapshot("gpt-5")
        source.fetch_snapshot("gpt-5")
        assert mock_get.call_count == 2
        assert source.stats()["size"] == 0


def test_parse_position_normalizes_symbol():
    position = parse_position("btc", _raw_position(symbol="btcusdt", leverage=None, exit_plan=None))
    assert position.symbol == "BTC"
    assert position.leverage == 1.0
    assert position.exit_plan.profit_target is None
