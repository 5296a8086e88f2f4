"""
Exit Monitor: profit-target exits and manual-close detection

Runs after order issuance in the same tick over every FOLLOWING symbol.
Both paths reset the symbol to UNFOLLOWED; re-entry is never done here, it
happens on the next tick through the detector's ENTER rule.
"""
import logging
from typing import Callable, List, Mapping, Optional

from core.exceptions import ExchangeRejection
from core.execution import ExecutionMode, OrderExecutor
from core.models import EventKind, FollowEvent, FollowState, OrderHistoryRecord, Position

logger = logging.getLogger(__name__)


def compute_pnl_percent(entry_price: float, mark_price: float, leverage: float, side: str) -> float:
    """Leveraged PnL in percent, positive when the position is in profit."""
    if not entry_price or entry_price <= 0:
        return 0.0
    direction = -1.0 if (side or "").upper() == "SHORT" else 1.0
    return (mark_price - entry_price) * (leverage or 1.0) * 100.0 / entry_price * direction


class ExitMonitor:
    """
    Checks followed positions for exits the agent did not initiate.

    - Profit target: only when profit_target_percent is set
    - Manual close: only when auto_refollow is enabled, and only in LIVE
      mode (a dry run never holds exchange positions to compare against)
    """

    def __init__(
        self,
        executor: OrderExecutor,
        profit_target_percent: Optional[float] = None,
        auto_refollow: bool = False,
        on_event: Optional[Callable[[FollowEvent], None]] = None,
    ):
        self.executor = executor
        self.exchange = executor.exchange
        self.history_store = executor.history_store
        self.profit_target_percent = profit_target_percent
        self.auto_refollow = auto_refollow
        self._on_event = on_event

        logger.info(
            f"ExitMonitor initialized: profit_target={profit_target_percent}, auto_refollow={auto_refollow}"
        )

    @property
    def enabled(self) -> bool:
        return self.profit_target_percent is not None or self.auto_refollow

    def check(self, snapshot: Mapping[str, Position]) -> List[FollowEvent]:
        """
        Evaluate all FOLLOWING symbols against the agent snapshot.

        Args:
            snapshot: The agent positions fetched at the start of this tick

        Returns:
            Exit events recorded this tick
        """
        if not self.enabled:
            return []

        events: List[FollowEvent] = []
        live_mode = self.executor.mode == ExecutionMode.LIVE

        for symbol in self.history_store.following_symbols():
            record = self.history_store.get(symbol)
            if record is None or record.state != FollowState.FOLLOWING:
                continue

            live_position = None
            if live_mode:
                try:
                    live_position = self.exchange.get_open_position(symbol)
                except ExchangeRejection as exc:
                    logger.warning(f"Exit check skipped for {symbol}: {exc.reason}")
                    continue

            if self.profit_target_percent is not None and (live_position is not None or not live_mode):
                event = self._check_profit_target(record, live_position)
                if event is not None:
                    events.append(event)
                    continue

            if self.auto_refollow and live_mode and live_position is None:
                event = self._check_manual_close(record, snapshot)
                if event is not None:
                    events.append(event)

        return events

    def _check_profit_target(self, record: OrderHistoryRecord,
                             live_position: Optional[Position]) -> Optional[FollowEvent]:
        symbol = record.symbol
        entry_price = live_position.entry_price if live_position else record.entry_price
        leverage = live_position.leverage if live_position else record.leverage
        side = live_position.side if live_position else record.side
        if not entry_price:
            logger.debug(f"No entry price for {symbol}, skipping profit check")
            return None

        try:
            mark_price = self.exchange.get_mark_price(symbol)
        except ExchangeRejection as exc:
            logger.warning(f"Profit check skipped for {symbol}: {exc.reason}")
            return None

        pnl_pct = compute_pnl_percent(entry_price, mark_price, leverage, side)
        if pnl_pct < self.profit_target_percent:
            logger.debug(f"{symbol} PnL {pnl_pct:.2f}% below target {self.profit_target_percent}%")
            return None

        logger.info(f"Profit target reached for {symbol}: {pnl_pct:.2f}% >= {self.profit_target_percent}%")
        try:
            order_id = self.executor.close(symbol)
        except ExchangeRejection as exc:
            logger.warning(f"Profit exit failed for {symbol}: {exc.reason}")
            return None

        self.history_store.reset(symbol, reason="profit_target", state=FollowState.UNFOLLOWED)
        return self._emit(FollowEvent(
            kind=EventKind.PROFIT_EXIT,
            symbol=symbol,
            basis=f"pnl {pnl_pct:.4f}% >= target {self.profit_target_percent}%",
            trigger_price=mark_price,
            context={
                "entry_price": entry_price,
                "leverage": leverage,
                "side": side,
                "pnl_percent": pnl_pct,
                "order_id": order_id,
                "entry_oid": record.entry_oid,
            },
        ))

    def _check_manual_close(self, record: OrderHistoryRecord,
                            snapshot: Mapping[str, Position]) -> Optional[FollowEvent]:
        symbol = record.symbol
        agent_position = snapshot.get(symbol)
        if agent_position is None or not agent_position.is_open:
            return None

        logger.warning(f"Manual close detected for {symbol}: agent still open, exchange flat")
        self.history_store.reset(symbol, reason="manual_close", state=FollowState.UNFOLLOWED)
        return self._emit(FollowEvent(
            kind=EventKind.MANUAL_CLOSE,
            symbol=symbol,
            basis="agent position open, exchange position flat",
            trigger_price=agent_position.current_price or None,
            context={
                "entry_oid": record.entry_oid,
                "agent_entry_oid": agent_position.entry_oid,
                "side": record.side,
            },
        ))

    def _emit(self, event: FollowEvent) -> FollowEvent:
        if self._on_event is not None:
            self._on_event(event)
        return event
