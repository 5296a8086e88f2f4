"""
agent-mirror Infrastructure: Order History Store

Durable per-symbol record of the last entry/TP/SL order identifiers and the
follow state. This file is the single source of truth that prevents the
same agent entry from being executed twice, including across restarts.

Writes are atomic (temp file + fsync + rename) and every mutation is flushed
before the call returns. There is exactly one writer (the follow tick), so no
locking is done here.
"""

import json
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional
import logging

from core.exceptions import StateStoreError, StateStoreWriteError
from core.models import FollowState, OrderHistoryRecord
from infra.symbols import canonical_base

logger = logging.getLogger(__name__)


DEFAULT_STATE = {
    "version": 1,
    "agent": None,
    "records": {},  # symbol -> OrderHistoryRecord dict
    "last_tick_at": None,
}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class OrderHistoryStore:
    """
    Key-value store of OrderHistoryRecord keyed by symbol.

    Operations:
    - get: read the current record (None if the symbol was never seen)
    - upsert: atomically replace a record
    - reset: clear identifiers and tag, keep accumulated metadata
    - mark_pending: remember an entry order that is about to be placed
    """

    def __init__(self, history_file: Optional[str] = None):
        """
        Initialize the store.

        Args:
            history_file: Path to the JSON document (default: data/order_history.json)
        """
        if history_file:
            self.history_file = Path(history_file)
        else:
            self.history_file = Path(os.getenv("ORDER_HISTORY_FILE", "data/order_history.json"))

        self.history_file.parent.mkdir(parents=True, exist_ok=True)

        self._state: Optional[Dict[str, Any]] = None
        logger.info(f"Initialized OrderHistoryStore at {self.history_file}")

    def load(self) -> Dict[str, Any]:
        """
        Load the document from disk once; later calls return the cached copy.

        A document that exists but cannot be parsed raises StateStoreError:
        starting with empty history would re-enter every followed position.
        """
        if self._state is not None:
            return self._state

        if not self.history_file.exists():
            logger.debug("No order history file found, starting empty")
            self._state = json.loads(json.dumps(DEFAULT_STATE))
            return self._state

        try:
            with open(self.history_file, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as exc:
            raise StateStoreError(f"unreadable order history {self.history_file}: {exc}") from exc

        if not isinstance(data, dict):
            raise StateStoreError(f"invalid order history format in {self.history_file}")

        state = {**json.loads(json.dumps(DEFAULT_STATE)), **data}
        state.setdefault("records", {})
        self._state = state
        logger.debug(f"Loaded {len(state['records'])} order history record(s)")
        return state

    def save(self, state: Dict[str, Any]) -> None:
        """
        Persist the document atomically.

        Raises:
            StateStoreWriteError: the write could not be made durable
        """
        temp_path = None
        try:
            temp_fd, temp_path = tempfile.mkstemp(
                dir=self.history_file.parent,
                prefix=".order_history_",
                suffix=".json.tmp",
            )
            with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
                json.dump(state, f, indent=2, sort_keys=True)
                f.flush()
                os.fsync(f.fileno())

            os.replace(temp_path, self.history_file)
            temp_path = None
            self._state = state
            logger.debug("Saved order history")
        except OSError as exc:
            logger.error(f"Failed to save order history: {exc}")
            raise StateStoreWriteError(str(self.history_file), exc) from exc
        finally:
            if temp_path and os.path.exists(temp_path):
                os.unlink(temp_path)

    def get(self, symbol: str) -> Optional[OrderHistoryRecord]:
        """Return the current record for a symbol, or None if never followed."""
        key = canonical_base(symbol)
        raw = self.load()["records"].get(key)
        if raw is None:
            return None
        return OrderHistoryRecord.from_dict(raw)

    def all_records(self) -> Dict[str, OrderHistoryRecord]:
        records = self.load()["records"]
        return {symbol: OrderHistoryRecord.from_dict(raw) for symbol, raw in sorted(records.items())}

    def following_symbols(self) -> List[str]:
        """Symbols currently tagged FOLLOWING, in sorted order."""
        return [
            symbol
            for symbol, record in self.all_records().items()
            if record.is_following
        ]

    def upsert(self, record: OrderHistoryRecord) -> OrderHistoryRecord:
        """Replace the record for record.symbol and flush to disk."""
        state = self.load()
        record.symbol = canonical_base(record.symbol)
        record.updated_at = _now_iso()
        record.last_event_at = record.updated_at
        records = dict(state["records"])
        records[record.symbol] = record.to_dict()
        self.save({**state, "records": records})
        return record

    def reset(
        self,
        symbol: str,
        *,
        reason: str,
        state: FollowState = FollowState.UNFOLLOWED,
    ) -> OrderHistoryRecord:
        """
        Clear identifiers and follow tag without dropping the symbol.

        The closed entry OID is remembered in last_closed_entry_oid so an
        EXITED record can tell the agent's old position from a new one.
        """
        key = canonical_base(symbol)
        record = self.get(key) or OrderHistoryRecord(symbol=key)
        if record.entry_oid is not None:
            record.last_closed_entry_oid = record.entry_oid
        record.entry_oid = None
        record.tp_oid = None
        record.sl_oid = None
        record.pending_entry_oid = None
        record.state = state
        record.last_exit_reason = reason
        logger.info(f"Reset order history for {key} -> {state.value} ({reason})")
        return self.upsert(record)

    def mark_pending(self, symbol: str, entry_oid: Optional[int]) -> OrderHistoryRecord:
        """Durably note that an entry for entry_oid is about to hit the exchange."""
        key = canonical_base(symbol)
        record = self.get(key) or OrderHistoryRecord(symbol=key)
        record.pending_entry_oid = entry_oid
        return self.upsert(record)

    def restore(self, symbol: str, previous: Optional[OrderHistoryRecord]) -> None:
        """Put back a record exactly as it was; None drops the symbol."""
        key = canonical_base(symbol)
        state = self.load()
        records = dict(state["records"])
        if previous is None:
            records.pop(key, None)
        else:
            records[key] = previous.to_dict()
        self.save({**state, "records": records})

    def touch_tick(self, agent_id: Optional[str] = None) -> None:
        state = self.load()
        self.save({**state, "agent": agent_id or state.get("agent"), "last_tick_at": _now_iso()})
