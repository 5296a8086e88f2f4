"""
Tests for the polling scheduler (FollowLoop) and the CLI entry point.
"""

import json
from unittest.mock import Mock, patch

import pytest
import yaml

from core.exceptions import ConfigurationError, SignalSourceError
from core.models import FollowState
from runner import main_loop
from runner.main_loop import FollowLoop
from tests.helpers import FakeExchange, FakeSignalSource, make_position
from tools.config_validator import build_config

AGENT = "gpt-5"


def _raw_config(tmp_path, **follow):
    return {
        "follow": {"agent": AGENT, "risk_only": False, "total_margin": 100.0, **follow},
        "state": {
            "history_file": str(tmp_path / "data" / "order_history.json"),
            "events_file": str(tmp_path / "logs" / "events.jsonl"),
        },
        "logging": {"level": "INFO", "file": str(tmp_path / "logs" / "agent-mirror.log")},
    }


@pytest.fixture
def fake_source():
    source = FakeSignalSource()
    source.set_snapshot(AGENT, [make_position("BTC", entry_oid=1)])
    return source


def _loop(tmp_path, source, exchange=None, alerts=None, **follow):
    config = build_config(_raw_config(tmp_path, **follow))
    return FollowLoop(config, signal_source=source, exchange=exchange or FakeExchange(), alerts=alerts)


def _log_entries(loop):
    with open(loop.event_log.events_file, "r", encoding="utf-8") as f:
        return [json.loads(line) for line in f if line.strip()]


class TestConstruction:
    def test_missing_agent_is_configuration_error(self, tmp_path, fake_source):
        raw = _raw_config(tmp_path)
        raw["follow"]["agent"] = None
        with pytest.raises(ConfigurationError):
            FollowLoop(build_config(raw), signal_source=fake_source, exchange=FakeExchange())

    def test_live_without_credentials_is_configuration_error(self, tmp_path, fake_source, monkeypatch):
        monkeypatch.delenv("BINANCE_API_KEY", raising=False)
        monkeypatch.delenv("BINANCE_API_SECRET", raising=False)
        with pytest.raises(ConfigurationError):
            FollowLoop(build_config(_raw_config(tmp_path)), signal_source=fake_source)

    def test_risk_only_builds_read_only_exchange(self, tmp_path, fake_source, monkeypatch):
        monkeypatch.delenv("BINANCE_API_KEY", raising=False)
        loop = FollowLoop(build_config(_raw_config(tmp_path, risk_only=True)), signal_source=fake_source)
        assert loop.exchange.read_only


class TestRunCycle:
    def test_tick_enters_and_logs_events(self, tmp_path, fake_source):
        loop = _loop(tmp_path, fake_source)

        result = loop.run_cycle()

        assert result.action_counts() == {"enter": 1}
        assert loop.history_store.get("BTC").state == FollowState.FOLLOWING
        entries = _log_entries(loop)
        assert [e["type"] for e in entries] == ["event", "tick"]
        assert entries[0]["kind"] == "enter"
        assert entries[1]["status"] == "ok"
        assert loop.metrics.last_tick().following == 1
        assert loop.metrics.event_snapshot() == {"enter": 1}

    def test_signal_source_failure_skips_tick(self, tmp_path, fake_source):
        loop = _loop(tmp_path, fake_source)
        fake_source.fail_with = SignalSourceError("timeout")

        assert loop.run_cycle() is None
        assert _log_entries(loop)[-1]["status"] == "skipped"

        fake_source.fail_with = None
        assert loop.run_cycle() is not None
        assert loop.ticks_run == 2

    def test_unexpected_error_is_isolated(self, tmp_path, fake_source):
        loop = _loop(tmp_path, fake_source)
        fake_source.fail_with = RuntimeError("boom")

        assert loop.run_cycle() is None
        assert _log_entries(loop)[-1]["status"] == "error"

    def test_corrupt_history_aborts_tick(self, tmp_path, fake_source):
        loop = _loop(tmp_path, fake_source)
        loop.history_store.history_file.write_text("{broken", encoding="utf-8")

        assert loop.run_cycle() is None
        assert _log_entries(loop)[-1]["status"] == "aborted"

    def test_failing_notifier_does_not_break_tick(self, tmp_path, fake_source):
        alerts = Mock()
        alerts.notify_event.side_effect = RuntimeError("webhook down")
        loop = _loop(tmp_path, fake_source, alerts=alerts)

        result = loop.run_cycle()

        assert result.action_counts() == {"enter": 1}
        assert alerts.notify_event.call_count == 1
        assert loop.history_store.get("BTC").state == FollowState.FOLLOWING


class TestRunForever:
    def test_without_interval_runs_once(self, tmp_path, fake_source):
        loop = _loop(tmp_path, fake_source)
        loop.run_forever()
        assert loop.ticks_run == 1

    def test_stop_is_honored_at_tick_boundary(self, tmp_path, fake_source):
        loop = _loop(tmp_path, fake_source, interval_seconds=0.01)
        original = fake_source.fetch_snapshot

        def fetch_and_stop(agent_id, marker=None):
            loop.request_stop()
            return original(agent_id, marker)

        fake_source.fetch_snapshot = fetch_and_stop
        loop.run_forever()

        assert loop.ticks_run == 1
        assert loop.stopping
        # the in-flight tick still completed and recorded its entry
        assert loop.history_store.get("BTC").state == FollowState.FOLLOWING

    def test_keeps_ticking_until_stopped(self, tmp_path, fake_source):
        loop = _loop(tmp_path, fake_source, interval_seconds=0.01)
        calls = []

        def fetch(agent_id, marker=None):
            calls.append(agent_id)
            if len(calls) == 3:
                loop.request_stop()
            return {}

        fake_source.fetch_snapshot = fetch
        loop.run_forever()

        assert loop.ticks_run == 3


class TestMain:
    def _write_config(self, tmp_path, **follow):
        path = tmp_path / "app.yaml"
        path.write_text(yaml.safe_dump(_raw_config(tmp_path, **follow)), encoding="utf-8")
        return str(path)

    def test_once_in_risk_only_mode(self, tmp_path, fake_source):
        exchange = FakeExchange()
        config_path = self._write_config(tmp_path)
        with patch.object(main_loop, "Nof1SignalSource", return_value=fake_source), \
                patch.object(main_loop, "BinanceFuturesExchange", return_value=exchange), \
                patch.object(FollowLoop, "install_signal_handlers"):
            code = main_loop.main(["--config", config_path, "--once", "--risk-only"])

        assert code == 0
        assert exchange.mutating_calls() == []
        history = json.loads((tmp_path / "data" / "order_history.json").read_text(encoding="utf-8"))
        assert history["records"]["BTC"]["state"] == "following"

    def test_invalid_config_exits_before_loop(self, tmp_path):
        config_path = self._write_config(tmp_path, fixed_amount_per_coin=10.0)
        with patch.object(main_loop, "FollowLoop") as loop_cls:
            code = main_loop.main(["--config", config_path, "--once"])
        assert code == 2
        loop_cls.assert_not_called()

    def test_list_agents(self, tmp_path, capsys):
        source = FakeSignalSource({"a": {}, "b": {}})
        config_path = self._write_config(tmp_path)
        with patch.object(main_loop, "Nof1SignalSource", return_value=source):
            code = main_loop.main(["--config", config_path, "--list-agents"])
        assert code == 0
        assert capsys.readouterr().out.split() == ["a", "b"]
