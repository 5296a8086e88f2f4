"""
agent-mirror Core: Signal Detector

Compares the agent's latest position snapshot with the order history and
classifies every symbol into a FollowPlan.

Classification is a pure function of (history record, position): the same
pair always yields the same action, which is what makes re-polling safe.
"""

import logging
from typing import Dict, List, Mapping, Optional

from core.models import (
    FollowAction,
    FollowPlan,
    FollowState,
    OrderHistoryRecord,
    Position,
)
from infra.symbols import canonical_base

logger = logging.getLogger(__name__)


def classify(record: Optional[OrderHistoryRecord], position: Optional[Position]) -> FollowPlan:
    """
    Classify one symbol.

    Precedence:
    1. no position, no history                         -> NONE
    2. position, no history / UNFOLLOWED               -> ENTER
    3. position, FOLLOWING, entry OID changed          -> REPLACE
    4. position, FOLLOWING, price past TP/SL           -> TP_SL_CLOSE
    5. FOLLOWING, position gone                        -> EXIT
    6. otherwise                                       -> NONE

    An EXITED record (closed at the agent's own TP/SL) only re-enters when
    the agent opens a position with a different entry OID.
    """
    if position is not None and not position.is_open:
        position = None

    symbol = canonical_base(position.symbol if position else record.symbol if record else "")

    if position is None and record is None:
        return FollowPlan(symbol, FollowAction.NONE, reason="nothing held")

    state = record.state if record else FollowState.UNFOLLOWED

    if position is not None and state == FollowState.UNFOLLOWED:
        return FollowPlan(symbol, FollowAction.ENTER, position, record, reason="new agent position")

    if position is not None and state == FollowState.EXITED:
        if record.last_closed_entry_oid is not None and position.entry_oid == record.last_closed_entry_oid:
            return FollowPlan(symbol, FollowAction.NONE, position, record, reason="already exited this entry")
        return FollowPlan(symbol, FollowAction.ENTER, position, record, reason="new entry after exit")

    if state == FollowState.FOLLOWING:
        if position is None:
            return FollowPlan(symbol, FollowAction.EXIT, None, record, reason="agent closed position")
        if position.entry_oid != record.entry_oid:
            return FollowPlan(
                symbol,
                FollowAction.REPLACE,
                position,
                record,
                reason=f"entry oid {record.entry_oid} -> {position.entry_oid}",
            )
        if position.crossed_exit_plan():
            return FollowPlan(
                symbol,
                FollowAction.TP_SL_CLOSE,
                position,
                record,
                reason=f"price {position.current_price} crossed exit plan",
            )

    return FollowPlan(symbol, FollowAction.NONE, position, record, reason="unchanged")


class SignalDetector:
    """Classifies a full snapshot against the order history store."""

    def __init__(self, history_store):
        self.history_store = history_store

    def detect(self, snapshot: Mapping[str, Position]) -> List[FollowPlan]:
        """
        Produce one plan per symbol seen in the snapshot or the history.

        Plans come back in sorted symbol order so capital allocation and
        history writes are reproducible.
        """
        positions: Dict[str, Position] = {}
        for raw_symbol, position in snapshot.items():
            if position is None or not position.is_open:
                continue
            positions[canonical_base(raw_symbol)] = position

        records = self.history_store.all_records()
        symbols = sorted(set(positions) | set(records))

        plans = []
        for symbol in symbols:
            plan = classify(records.get(symbol), positions.get(symbol))
            if plan.action != FollowAction.NONE:
                logger.info(f"Detected {plan.action.value.upper()} for {symbol}: {plan.reason}")
            else:
                logger.debug(f"No action for {symbol}: {plan.reason}")
            plans.append(plan)
        return plans
