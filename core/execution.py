"""
agent-mirror Core: Order Executor

Turns one FollowPlan plus its allocated margin into exchange calls and
records the outcome in the order history store.

Modes:
- LIVE: leverage, margin type and market orders go to the exchange
- DRY_RUN: no exchange-mutating call is made; the intent is logged and the
  order history is updated exactly as in LIVE so deduplication is exercised

Exchange rejections are caught per symbol and leave the symbol's follow
state untouched. Order history write failures propagate and abort the tick.
"""

import logging
from enum import Enum
from typing import Callable, Dict, Optional

from core.exceptions import (
    ExchangeOutcomeUnknown,
    ExchangeRejection,
    InsufficientCapital,
    PriceToleranceExceeded,
)
from core.models import (
    EventKind,
    ExecutionResult,
    FollowAction,
    FollowEvent,
    FollowPlan,
    FollowState,
    OrderHistoryRecord,
    Position,
)
from core.interfaces import Exchange
from infra.state_store import OrderHistoryStore
from infra.symbols import contract_multiplier

logger = logging.getLogger(__name__)


class ExecutionMode(Enum):
    LIVE = "LIVE"
    DRY_RUN = "DRY_RUN"

    @classmethod
    def from_risk_only(cls, risk_only: bool) -> "ExecutionMode":
        return cls.DRY_RUN if risk_only else cls.LIVE


def price_deviation_percent(reference_price: float, mark_price: float) -> float:
    """Absolute deviation of mark price from the reference price, in percent."""
    if not reference_price or reference_price <= 0:
        return 0.0
    return abs(mark_price - reference_price) * 100.0 / reference_price


class OrderExecutor:
    """
    Executes follow plans against the exchange.

    Responsibilities:
    - Set leverage and margin type before every entry
    - Size the order from margin x leverage / mark price
    - Reject entries whose mark price is outside the tolerance band
    - Execute REPLACE as close-old then open-new
    - Update order history only after the exchange accepted the action
    """

    def __init__(
        self,
        mode: ExecutionMode,
        exchange: Exchange,
        history_store: OrderHistoryStore,
        margin_type: str = "ISOLATED",
        price_tolerance_percent: Optional[float] = 1.0,
        auto_refollow: bool = False,
        on_event: Optional[Callable[[FollowEvent], None]] = None,
    ):
        self.mode = mode
        self.exchange = exchange
        self.history_store = history_store
        self.margin_type = margin_type.upper()
        self.price_tolerance_percent = price_tolerance_percent
        self.auto_refollow = auto_refollow
        self._on_event = on_event
        self._margin_modes: Dict[str, str] = {}

        logger.info(
            f"OrderExecutor initialized: mode={mode.value}, margin_type={self.margin_type}, "
            f"price_tolerance={price_tolerance_percent}%, auto_refollow={auto_refollow}"
        )

    @property
    def is_live(self) -> bool:
        return self.mode == ExecutionMode.LIVE

    def _emit(self, event: FollowEvent) -> None:
        if self._on_event is not None:
            self._on_event(event)

    def execute(self, plan: FollowPlan, margin: float = 0.0) -> ExecutionResult:
        """Dispatch a plan; NONE plans are a no-op."""
        if plan.action == FollowAction.ENTER:
            return self._execute_enter(plan, margin)
        if plan.action == FollowAction.EXIT:
            return self._execute_close(plan, reason="agent_closed", state=FollowState.UNFOLLOWED,
                                       kind=EventKind.EXIT)
        if plan.action == FollowAction.TP_SL_CLOSE:
            state = FollowState.UNFOLLOWED if self.auto_refollow else FollowState.EXITED
            return self._execute_close(plan, reason="tp_sl", state=state, kind=EventKind.TP_SL_CLOSE)
        if plan.action == FollowAction.REPLACE:
            return self._execute_replace(plan, margin)
        return ExecutionResult(symbol=plan.symbol, action=plan.action, success=True,
                               dry_run=not self.is_live)

    # ========== Entry ==========

    def _execute_enter(self, plan: FollowPlan, margin: float) -> ExecutionResult:
        try:
            result = self._open(plan, margin)
        except ExchangeRejection as exc:
            return self._rejected(plan, exc, margin)

        self._emit(FollowEvent(
            kind=EventKind.ENTER,
            symbol=plan.symbol,
            basis=plan.reason,
            trigger_price=result.price,
            context=self._context(plan, result),
        ))
        return result

    def _open(self, plan: FollowPlan, margin: float) -> ExecutionResult:
        """
        Open the agent's position on the exchange and mark the symbol FOLLOWING.

        Raises:
            ExchangeRejection: sizing, tolerance or exchange failure
        """
        position = plan.position
        symbol = plan.symbol
        if position is None:
            raise ExchangeRejection(symbol, "no position to enter")

        if self.is_live:
            adopted = self._adopt_pending(plan)
            if adopted is not None:
                return adopted

        if margin <= 0:
            raise InsufficientCapital(symbol, "no margin allocated this tick")

        mark_price = self.exchange.get_mark_price(symbol)
        self._check_price_tolerance(position, mark_price)

        leverage = max(int(round(position.leverage)), 1)
        quantity = margin * leverage / mark_price

        if self.is_live:
            self.exchange.set_leverage(symbol, leverage)
            if self._margin_modes.get(symbol) != self.margin_type:
                self.exchange.set_margin_mode(symbol, self.margin_type)
                self._margin_modes[symbol] = self.margin_type
            previous = self.history_store.get(symbol)
            self.history_store.mark_pending(symbol, position.entry_oid)
            try:
                order_id = self.exchange.place_market_order(symbol, position.order_side, quantity)
            except ExchangeOutcomeUnknown:
                # order may have filled; the pending marker lets the next tick adopt it
                raise
            except ExchangeRejection:
                self.history_store.restore(symbol, previous)
                raise
        else:
            logger.info(
                f"RISK_ONLY: Would {position.order_side} {quantity:.6f} {symbol} "
                f"@ ~{mark_price} ({leverage}x, margin {margin:.2f}, {self.margin_type})"
            )
            order_id = f"DRY-{symbol}-{position.entry_oid}"

        self._record_following(position, mark_price, leverage, quantity, order_id)
        return ExecutionResult(
            symbol=symbol,
            action=plan.action,
            success=True,
            order_id=order_id,
            quantity=quantity,
            price=mark_price,
            margin=margin,
            dry_run=not self.is_live,
        )

    def _adopt_pending(self, plan: FollowPlan) -> Optional[ExecutionResult]:
        """
        Adopt a position opened on a previous run whose history write never landed.

        A pending marker for the same entry OID plus a live exchange position
        means the order was filled; placing it again would double the position.
        """
        record = plan.previous or self.history_store.get(plan.symbol)
        position = plan.position
        if record is None or record.pending_entry_oid is None:
            return None
        if record.pending_entry_oid != position.entry_oid:
            return None

        live = self.exchange.get_open_position(plan.symbol)
        if live is None:
            return None

        logger.warning(f"Adopting existing {live.side} position on {plan.symbol} for entry oid {position.entry_oid}")
        order_id = record.exchange_order_id or "adopted"
        self._record_following(position, live.entry_price, live.leverage, abs(live.quantity), order_id)
        return ExecutionResult(
            symbol=plan.symbol,
            action=plan.action,
            success=True,
            order_id=order_id,
            quantity=abs(live.quantity),
            price=live.entry_price,
        )

    def _check_price_tolerance(self, position: Position, mark_price: float) -> None:
        if self.price_tolerance_percent is None:
            return
        # mark is quoted per contract unit (1000PEPEUSDT is 1000 PEPE)
        reference = position.entry_price * contract_multiplier(position.symbol)
        deviation = price_deviation_percent(reference, mark_price)
        if deviation > self.price_tolerance_percent:
            raise PriceToleranceExceeded(
                position.symbol,
                f"mark {mark_price} deviates {deviation:.2f}% from agent entry {reference} "
                f"(tolerance {self.price_tolerance_percent}%)",
            )

    def _record_following(self, position: Position, entry_price: float, leverage: float,
                          quantity: float, order_id: str) -> OrderHistoryRecord:
        record = self.history_store.get(position.symbol) or OrderHistoryRecord(symbol=position.symbol)
        record.entry_oid = position.entry_oid
        record.tp_oid = position.tp_oid
        record.sl_oid = position.sl_oid
        record.state = FollowState.FOLLOWING
        record.side = position.side
        record.entry_price = entry_price
        record.leverage = leverage
        record.quantity = quantity
        record.exchange_order_id = order_id
        record.pending_entry_oid = None
        return self.history_store.upsert(record)

    # ========== Exits ==========

    def close(self, symbol: str) -> Optional[str]:
        """Close the live position (LIVE) or log the intent (DRY_RUN)."""
        if self.is_live:
            return self.exchange.close_position(symbol)
        logger.info(f"RISK_ONLY: Would close position {symbol}")
        return f"DRY-CLOSE-{symbol}"

    def _execute_close(self, plan: FollowPlan, *, reason: str, state: FollowState,
                       kind: EventKind) -> ExecutionResult:
        try:
            order_id = self.close(plan.symbol)
        except ExchangeRejection as exc:
            return self._rejected(plan, exc)

        self.history_store.reset(plan.symbol, reason=reason, state=state)
        result = ExecutionResult(
            symbol=plan.symbol,
            action=plan.action,
            success=True,
            order_id=order_id,
            price=plan.position.current_price if plan.position else 0.0,
            dry_run=not self.is_live,
            close_succeeded=True,
        )
        self._emit(FollowEvent(
            kind=kind,
            symbol=plan.symbol,
            basis=plan.reason,
            trigger_price=result.price or None,
            context=self._context(plan, result),
        ))
        return result

    # ========== Replace ==========

    def _execute_replace(self, plan: FollowPlan, margin: float) -> ExecutionResult:
        """
        Close the old position, then open the new one.

        History is reset only after the close leg succeeds; a failed close
        keeps the old entry OID so the close is retried next tick. A failed
        open leaves the symbol UNFOLLOWED (flat) for a fresh ENTER later.
        """
        try:
            close_order_id = self.close(plan.symbol)
        except ExchangeRejection as exc:
            return self._rejected(plan, exc, margin)

        self.history_store.reset(plan.symbol, reason="replaced", state=FollowState.UNFOLLOWED)

        try:
            result = self._open(plan, margin)
        except ExchangeRejection as exc:
            logger.warning(f"REPLACE partially failed for {plan.symbol}: closed old position, entry failed: {exc}")
            result = ExecutionResult(
                symbol=plan.symbol,
                action=plan.action,
                success=False,
                order_id=close_order_id,
                margin=margin,
                dry_run=not self.is_live,
                error=str(exc),
                close_succeeded=True,
            )
            self._emit(FollowEvent(
                kind=EventKind.REPLACE_PARTIAL,
                symbol=plan.symbol,
                basis=str(exc),
                context=self._context(plan, result),
            ))
            return result

        result.close_succeeded = True
        self._emit(FollowEvent(
            kind=EventKind.REPLACE,
            symbol=plan.symbol,
            basis=plan.reason,
            trigger_price=result.price,
            context=self._context(plan, result),
        ))
        return result

    # ========== Helpers ==========

    def _rejected(self, plan: FollowPlan, exc: ExchangeRejection, margin: float = 0.0) -> ExecutionResult:
        logger.warning(f"{plan.action.value.upper()} rejected for {plan.symbol}: {exc.reason}")
        result = ExecutionResult(
            symbol=plan.symbol,
            action=plan.action,
            success=False,
            margin=margin,
            dry_run=not self.is_live,
            error=exc.reason,
        )
        self._emit(FollowEvent(
            kind=EventKind.REJECTED,
            symbol=plan.symbol,
            basis=exc.reason,
            context={"action": plan.action.value, "error_type": type(exc).__name__, "code": exc.code},
        ))
        return result

    def _context(self, plan: FollowPlan, result: ExecutionResult) -> Dict:
        position = plan.position
        return {
            "action": plan.action.value,
            "mode": self.mode.value,
            "order_id": result.order_id,
            "quantity": result.quantity,
            "margin": result.margin,
            "side": position.side if position else None,
            "leverage": position.leverage if position else None,
            "entry_oid": position.entry_oid if position else None,
            "previous_entry_oid": plan.previous.entry_oid if plan.previous else None,
        }
