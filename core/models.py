"""
agent-mirror Core: Follow Models

Value types shared by the reconciliation tick.

Position snapshots are immutable and replaced wholesale on every poll.
Order history records are the only mutable state and live in the
OrderHistoryStore; the dataclass here is just their in-memory shape.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class FollowState(Enum):
    """Follow-state tag of an order history record"""
    UNFOLLOWED = "unfollowed"
    FOLLOWING = "following"
    EXITED = "exited"


class FollowAction(Enum):
    """Action produced by the signal detector for one symbol"""
    ENTER = "enter"
    EXIT = "exit"
    REPLACE = "replace"
    TP_SL_CLOSE = "tp_sl_close"
    NONE = "none"


class EventKind(Enum):
    """Kinds of follow events emitted to the event log and notifier"""
    ENTER = "enter"
    EXIT = "exit"
    REPLACE = "replace"
    TP_SL_CLOSE = "tp_sl_close"
    PROFIT_EXIT = "profit_exit"
    MANUAL_CLOSE = "manual_close"
    REPLACE_PARTIAL = "replace_partial"
    REJECTED = "rejected"


@dataclass(frozen=True)
class ExitPlan:
    profit_target: Optional[float] = None
    stop_loss: Optional[float] = None
    invalidation_condition: str = ""


@dataclass(frozen=True)
class Position:
    """Agent position as reported by the signal source (or the exchange)"""
    symbol: str
    entry_price: float
    quantity: float
    leverage: float = 1.0
    current_price: float = 0.0
    unrealized_pnl: float = 0.0
    entry_oid: Optional[int] = None
    tp_oid: Optional[int] = None
    sl_oid: Optional[int] = None
    margin: float = 0.0
    exit_plan: ExitPlan = field(default_factory=ExitPlan)

    @property
    def side(self) -> str:
        """LONG for positive quantity, SHORT for negative"""
        return "LONG" if self.quantity > 0 else "SHORT"

    @property
    def order_side(self) -> str:
        """Exchange order side that opens this position"""
        return "BUY" if self.quantity > 0 else "SELL"

    @property
    def is_open(self) -> bool:
        return self.quantity != 0

    def crossed_exit_plan(self) -> bool:
        """Has current price crossed the profit target or stop loss?"""
        price = self.current_price
        plan = self.exit_plan
        if not price or price <= 0:
            return False
        if self.side == "LONG":
            if plan.profit_target and price >= plan.profit_target:
                return True
            if plan.stop_loss and price <= plan.stop_loss:
                return True
        else:
            if plan.profit_target and price <= plan.profit_target:
                return True
            if plan.stop_loss and price >= plan.stop_loss:
                return True
        return False


@dataclass
class OrderHistoryRecord:
    """
    Last-seen order identifiers and follow state for one symbol.

    Metadata fields (side, entry_price, leverage, ...) survive a reset so the
    exit monitor and audit trail keep their context.
    """
    symbol: str
    entry_oid: Optional[int] = None
    tp_oid: Optional[int] = None
    sl_oid: Optional[int] = None
    state: FollowState = FollowState.UNFOLLOWED
    updated_at: Optional[str] = None

    side: Optional[str] = None
    entry_price: Optional[float] = None
    leverage: Optional[float] = None
    quantity: Optional[float] = None
    exchange_order_id: Optional[str] = None
    last_closed_entry_oid: Optional[int] = None
    last_exit_reason: Optional[str] = None
    last_event_at: Optional[str] = None
    pending_entry_oid: Optional[int] = None

    @property
    def is_following(self) -> bool:
        return self.state == FollowState.FOLLOWING

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OrderHistoryRecord":
        known = {name for name in cls.__dataclass_fields__}
        values = {k: v for k, v in data.items() if k in known}
        values["state"] = FollowState(values.get("state") or FollowState.UNFOLLOWED.value)
        return cls(**values)


@dataclass(frozen=True)
class FollowPlan:
    """Instruction for one symbol, consumed within the same tick"""
    symbol: str
    action: FollowAction
    position: Optional[Position] = None
    previous: Optional[OrderHistoryRecord] = None
    reason: str = ""

    @property
    def target_side(self) -> Optional[str]:
        return self.position.order_side if self.position else None

    @property
    def leverage(self) -> float:
        return self.position.leverage if self.position else 1.0

    @property
    def exit_plan(self) -> Optional[ExitPlan]:
        return self.position.exit_plan if self.position else None

    @property
    def needs_capital(self) -> bool:
        return self.action in (FollowAction.ENTER, FollowAction.REPLACE)

    def notional(self, margin: float) -> float:
        """Target notional derived from allocated margin x leverage"""
        return margin * self.leverage


@dataclass(frozen=True)
class CapitalAllocation:
    """Margin per symbol for the current tick only"""
    mode: str
    amounts: Dict[str, float] = field(default_factory=dict)
    available: Optional[float] = None

    def margin_for(self, symbol: str) -> float:
        return self.amounts.get(symbol, 0.0)

    @property
    def total(self) -> float:
        return sum(self.amounts.values())


@dataclass
class ExecutionResult:
    """Outcome of executing one follow plan"""
    symbol: str
    action: FollowAction
    success: bool
    order_id: Optional[str] = None
    quantity: float = 0.0
    price: float = 0.0
    margin: float = 0.0
    dry_run: bool = False
    error: Optional[str] = None
    close_succeeded: bool = False
    timestamp: datetime = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = datetime.now(timezone.utc)


@dataclass(frozen=True)
class FollowEvent:
    """Append-only record of a completed action; never mutated"""
    kind: EventKind
    symbol: str
    basis: str = ""
    trigger_price: Optional[float] = None
    context: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "symbol": self.symbol,
            "basis": self.basis,
            "trigger_price": self.trigger_price,
            "context": dict(self.context),
            "timestamp": self.timestamp,
        }
