"""
agent-mirror Core: Signal Source (nof1 account totals)

Fetches the simulated positions of the AI agents published by the nof1
leaderboard API and converts them into immutable Position snapshots.

The adapter owns a small TTL cache keyed by request URL. It is explicit
state: callers can `invalidate()` it and inspect it with `stats()`.
"""

import time
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlencode
import logging

import requests

from core.exceptions import SignalSourceError
from core.models import ExitPlan, Position
from infra.symbols import canonical_base

logger = logging.getLogger(__name__)

NOF1_BASE = "https://nof1.ai/api"


def _opt_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    return float(value)


def _opt_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    return int(value)


def parse_position(symbol: str, raw: Dict[str, Any]) -> Position:
    """Convert one raw agent position into a Position; raises on malformed data."""
    if not isinstance(raw, dict):
        raise SignalSourceError(f"position {symbol} is not an object")
    try:
        plan_raw = raw.get("exit_plan") or {}
        exit_plan = ExitPlan(
            profit_target=_opt_float(plan_raw.get("profit_target")),
            stop_loss=_opt_float(plan_raw.get("stop_loss")),
            invalidation_condition=str(plan_raw.get("invalidation_condition") or ""),
        )
        return Position(
            symbol=canonical_base(raw.get("symbol") or symbol),
            entry_price=float(raw["entry_price"]),
            quantity=float(raw["quantity"]),
            leverage=float(raw.get("leverage") or 1.0),
            current_price=float(raw.get("current_price") or 0.0),
            unrealized_pnl=float(raw.get("unrealized_pnl") or 0.0),
            entry_oid=_opt_int(raw.get("entry_oid")),
            tp_oid=_opt_int(raw.get("tp_oid")),
            sl_oid=_opt_int(raw.get("sl_oid")),
            margin=float(raw.get("margin") or 0.0),
            exit_plan=exit_plan,
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise SignalSourceError(f"malformed position {symbol}: {exc}", exc) from exc


class Nof1SignalSource:
    """
    Signal source backed by the nof1 `account-totals` endpoint.

    Every agent account in the response looks like:
        {"id": ..., "model_id": "<agent>", "since_inception_hourly_marker": N,
         "positions": {"BTC": {...}, ...}}
    """

    def __init__(self, base_url: str = NOF1_BASE, timeout: float = 10.0,
                 cache_ttl_seconds: float = 0.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = float(timeout)
        self.cache_ttl_seconds = max(float(cache_ttl_seconds), 0.0)
        self._cache: Dict[str, Tuple[float, Any]] = {}
        logger.info(f"Initialized Nof1SignalSource at {self.base_url} (cache_ttl={self.cache_ttl_seconds}s)")

    def _url(self, marker: Optional[int]) -> str:
        url = f"{self.base_url}/account-totals"
        if marker is not None:
            url = f"{url}?{urlencode({'lastHourlyMarker': int(marker)})}"
        return url

    def _get_json(self, url: str) -> Any:
        cached = self._cache.get(url)
        if cached and self.cache_ttl_seconds > 0:
            fetched_at, payload = cached
            if time.monotonic() - fetched_at < self.cache_ttl_seconds:
                logger.debug(f"Cache hit for {url}")
                return payload

        try:
            response = requests.get(url, timeout=self.timeout, headers={"Accept": "application/json"})
            response.raise_for_status()
            payload = response.json()
        except (requests.exceptions.RequestException, ValueError) as exc:
            raise SignalSourceError(f"failed to fetch {url}: {exc}", exc) from exc

        if self.cache_ttl_seconds > 0:
            self._cache[url] = (time.monotonic(), payload)
        return payload

    def fetch_account_totals(self, marker: Optional[int] = None) -> List[Dict[str, Any]]:
        """Return every agent account, keeping only the latest marker per agent."""
        payload = self._get_json(self._url(marker))
        accounts = payload.get("accountTotals") if isinstance(payload, dict) else None
        if not isinstance(accounts, list):
            raise SignalSourceError("response has no accountTotals list")

        latest: Dict[str, Dict[str, Any]] = {}
        for account in accounts:
            if not isinstance(account, dict) or not account.get("model_id"):
                continue
            agent_id = account["model_id"]
            current = latest.get(agent_id)
            marker_value = account.get("since_inception_hourly_marker") or 0
            if current is None or marker_value >= (current.get("since_inception_hourly_marker") or 0):
                latest[agent_id] = account
        return list(latest.values())

    def list_agents(self) -> List[str]:
        """Unique agent ids in first-seen order."""
        return [account["model_id"] for account in self.fetch_account_totals()]

    def fetch_snapshot(self, agent_id: str, marker: Optional[int] = None) -> Dict[str, Position]:
        """
        Return the agent's open positions keyed by canonical ticker.

        Raises:
            SignalSourceError: agent unknown, network failure or malformed payload
        """
        for account in self.fetch_account_totals(marker):
            if account.get("model_id") != agent_id:
                continue
            raw_positions = account.get("positions") or {}
            if not isinstance(raw_positions, dict):
                raise SignalSourceError(f"positions for {agent_id} is not an object")

            snapshot: Dict[str, Position] = {}
            for symbol, raw in raw_positions.items():
                position = parse_position(symbol, raw)
                if position.is_open:
                    snapshot[position.symbol] = position
            logger.debug(f"Snapshot for {agent_id}: {sorted(snapshot)}")
            return snapshot

        raise SignalSourceError(f"agent {agent_id} not found")

    def invalidate(self) -> None:
        self._cache.clear()

    def stats(self) -> Dict[str, Any]:
        """Cache size and per-URL entry age in milliseconds."""
        now = time.monotonic()
        return {
            "size": len(self._cache),
            "entries": [
                {"url": url, "age_ms": (now - fetched_at) * 1000.0}
                for url, (fetched_at, _) in self._cache.items()
            ],
        }
