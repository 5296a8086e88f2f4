"""
agent-mirror Runner: Main Loop

Drives the follow engine on a fixed interval.

Flow per tick (see core/follow_cycle.py):
1. Fetch the agent snapshot
2. Classify every symbol against the order history
3. Allocate margin to ENTER/REPLACE plans
4. Execute (or log, in risk-only mode) and record
5. Check profit targets and manual closes

Ticks never overlap. A stop request (SIGINT/SIGTERM) is honored between
ticks, so the order history is always consistent when the process exits.
"""

import argparse
import logging
import os
import signal
import sys
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from core.audit_log import EventLog
from core.capital_allocator import CapitalAllocator
from core.exceptions import ConfigurationError, SignalSourceError, StateStoreError
from core.exchange_binance import BinanceFuturesExchange
from core.execution import ExecutionMode, OrderExecutor
from core.exit_monitor import ExitMonitor
from core.follow_cycle import CycleResult, FollowCyclePipeline
from core.models import FollowEvent
from core.signal_source import Nof1SignalSource
from infra.alerting import AlertService
from infra.metrics import MetricsRecorder, TickStats
from infra.state_store import OrderHistoryStore
from tools.config_validator import FollowerConfig, load_config

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO", log_file: Optional[str] = "logs/agent-mirror.log") -> None:
    handlers = [logging.StreamHandler()]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.insert(0, logging.FileHandler(log_file))
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=handlers,
    )


class FollowLoop:
    """
    Polling scheduler.

    Responsibilities:
    - Build the engine from validated config
    - Run one tick at a time
    - Isolate recoverable per-tick failures
    - Forward follow events to the event log, notifier and metrics
    """

    def __init__(self, config: FollowerConfig, signal_source=None, exchange=None,
                 alerts: Optional[AlertService] = None, metrics: Optional[MetricsRecorder] = None):
        self.config = config
        follow = config.follow

        if not follow.agent:
            raise ConfigurationError("follow.agent is required")
        self.agent_id = follow.agent
        self.mode = ExecutionMode.from_risk_only(follow.risk_only)
        self.interval_seconds = follow.interval_seconds

        self.signal_source = signal_source or Nof1SignalSource(
            base_url=config.signal_source.base_url,
            timeout=config.signal_source.timeout_seconds,
            cache_ttl_seconds=config.signal_source.cache_ttl_seconds,
        )
        self.exchange = exchange or self._build_exchange()

        self.history_store = OrderHistoryStore(config.state.history_file)
        self.event_log = EventLog(config.state.events_file)
        self.alerts = alerts or AlertService.from_config(
            config.monitoring.alerts_enabled,
            config.monitoring.alerts.model_dump(),
        )
        self.metrics = metrics or MetricsRecorder(
            enabled=config.monitoring.metrics_enabled,
            port=config.monitoring.metrics_port,
        )

        allocator = CapitalAllocator(
            total_margin=follow.total_margin,
            fixed_amount_per_coin=follow.fixed_amount_per_coin,
            weighting=follow.weighting,
        )
        executor = OrderExecutor(
            mode=self.mode,
            exchange=self.exchange,
            history_store=self.history_store,
            margin_type=follow.margin_type,
            price_tolerance_percent=follow.price_tolerance_percent,
            auto_refollow=follow.auto_refollow,
            on_event=self._emit,
        )
        exit_monitor = ExitMonitor(
            executor,
            profit_target_percent=follow.profit_target_percent,
            auto_refollow=follow.auto_refollow,
            on_event=self._emit,
        )
        self.pipeline = FollowCyclePipeline(
            agent_id=self.agent_id,
            signal_source=self.signal_source,
            history_store=self.history_store,
            allocator=allocator,
            executor=executor,
            exit_monitor=exit_monitor,
            marker=follow.marker,
        )

        self._stop = threading.Event()
        self.ticks_run = 0
        logger.info(f"Initialized FollowLoop for agent={self.agent_id} in {self.mode.value} mode")

    def _build_exchange(self) -> BinanceFuturesExchange:
        exchange_cfg = self.config.exchange
        api_key = os.getenv(exchange_cfg.api_key_env, "")
        api_secret = os.getenv(exchange_cfg.api_secret_env, "")
        if self.mode == ExecutionMode.LIVE and not (api_key and api_secret):
            raise ConfigurationError(
                f"live mode requires {exchange_cfg.api_key_env} and {exchange_cfg.api_secret_env}"
            )
        return BinanceFuturesExchange(
            api_key=api_key,
            api_secret=api_secret,
            base_url=exchange_cfg.base_url,
            timeout=exchange_cfg.timeout_seconds,
            max_retries=exchange_cfg.max_retries,
            read_only=self.mode != ExecutionMode.LIVE,
        )

    def _emit(self, event: FollowEvent) -> None:
        """Fan one event out; a failing sink never breaks the tick."""
        logger.info(f"EVENT {event.kind.value.upper()} {event.symbol}: {event.basis}")
        for sink in (self.event_log.append, self.alerts.notify_event, self.metrics.record_event):
            try:
                sink(event)
            except Exception as exc:
                logger.error(f"Event sink {getattr(sink, '__qualname__', sink)} failed: {exc}")

    def install_signal_handlers(self) -> None:
        signal.signal(signal.SIGINT, self._handle_stop)
        signal.signal(signal.SIGTERM, self._handle_stop)

    def _handle_stop(self, signum, _frame) -> None:
        logger.info(f"Received signal {signum}, stopping after the current tick")
        self.request_stop()

    def request_stop(self) -> None:
        self._stop.set()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def run_cycle(self) -> Optional[CycleResult]:
        """
        Run exactly one tick.

        Returns the tick result, or None when the tick was skipped or aborted.
        """
        started = datetime.now(timezone.utc)
        start = time.monotonic()
        status = "ok"
        error: Optional[str] = None
        result: Optional[CycleResult] = None

        try:
            result = self.pipeline.run()
            if result.rejected:
                status = "partial"
        except SignalSourceError as exc:
            status = "skipped"
            error = str(exc)
            logger.warning(f"Signal source unavailable, skipping tick: {exc}")
        except StateStoreError as exc:
            status = "aborted"
            error = str(exc)
            logger.error(f"Order history unavailable, tick aborted: {exc}")
        except Exception as exc:
            status = "error"
            error = str(exc)
            logger.exception(f"Unexpected error during tick: {exc}")

        self.ticks_run += 1
        duration = time.monotonic() - start
        actions: Dict[str, Any] = result.action_counts() if result else {}

        following = 0
        if status != "aborted":
            try:
                following = len(self.history_store.following_symbols())
            except StateStoreError:
                following = 0

        self.metrics.record_tick(TickStats(
            status=status,
            actions=actions,
            rejected=len(result.rejected) if result else 0,
            following=following,
            duration_seconds=duration,
        ))
        self.event_log.log_tick(started, self.mode.value, self.agent_id, status, actions, error)
        logger.info(f"Tick {self.ticks_run} finished: status={status} duration={duration:.2f}s")
        return result

    def run_forever(self, interval_seconds: Optional[float] = None) -> None:
        """
        Run ticks until stopped, with time-aware sleep between tick starts.

        Without an interval exactly one tick is run.
        """
        interval = interval_seconds if interval_seconds is not None else self.interval_seconds
        self.metrics.start()

        if not interval:
            self.run_cycle()
            return

        logger.info(f"Starting follow loop (interval={interval}s)")
        while not self._stop.is_set():
            start = time.monotonic()
            self.run_cycle()
            elapsed = time.monotonic() - start
            sleep_for = max(interval - elapsed, 0.0)
            if elapsed > interval:
                logger.warning(f"Tick took {elapsed:.2f}s, longer than interval {interval}s")
            self._stop.wait(sleep_for)

        logger.info("Follow loop stopped cleanly.")


def _overrides_from_args(args: argparse.Namespace) -> Dict[str, Any]:
    follow: Dict[str, Any] = {}
    if args.agent:
        follow["agent"] = args.agent
    if args.interval is not None:
        follow["interval_seconds"] = args.interval
    if args.risk_only:
        follow["risk_only"] = True
    return {"follow": follow}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Mirror an AI agent's positions onto Binance futures")
    parser.add_argument("--config", default="config/app.yaml", help="Config file (default: config/app.yaml)")
    parser.add_argument("--agent", help="Agent (model) id to follow")
    parser.add_argument("--interval", type=float, default=None, help="Seconds between ticks")
    parser.add_argument("--once", action="store_true", help="Run a single tick and exit")
    parser.add_argument("--risk-only", action="store_true", help="Log intended orders, never touch the exchange")
    parser.add_argument("--list-agents", action="store_true", help="List agents published by the signal source")
    return parser


def main(argv=None) -> int:
    """Entry point"""
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.config, _overrides_from_args(args))
    except ConfigurationError as exc:
        configure_logging()
        logger.error(f"Invalid configuration: {len(exc.problems)} problem(s)")
        for idx, problem in enumerate(exc.problems, start=1):
            logger.error(f"{idx:>2}. {problem}")
        return 2

    configure_logging(config.logging.level, config.logging.file)

    if args.list_agents:
        source = Nof1SignalSource(
            base_url=config.signal_source.base_url,
            timeout=config.signal_source.timeout_seconds,
        )
        try:
            agents = source.list_agents()
        except SignalSourceError as exc:
            logger.error(f"Could not list agents: {exc}")
            return 1
        for agent in agents:
            print(agent)
        return 0

    try:
        loop = FollowLoop(config)
    except ConfigurationError as exc:
        for problem in exc.problems:
            logger.error(problem)
        return 2

    loop.install_signal_handlers()
    if args.once:
        loop.run_cycle()
    else:
        loop.run_forever()
    return 0


if __name__ == "__main__":
    sys.exit(main())
