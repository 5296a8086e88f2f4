"""
Follow Cycle Pipeline - one reconciliation tick

Implements the core flow:
1. Fetch the agent snapshot (signal source)
2. Classify every symbol (signal detector)
3. Size ENTER/REPLACE plans (capital allocator)
4. Act and record (order executor + order history store)
5. Check profit targets and manual closes (exit monitor)

Symbols are processed one at a time in sorted order. A signal source
failure propagates before any state change; an order history write failure
propagates before the exit monitor runs.
"""

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional
import logging

from core.capital_allocator import CapitalAllocator
from core.exceptions import ExchangeRejection
from core.execution import OrderExecutor
from core.exit_monitor import ExitMonitor
from core.interfaces import SignalSource
from core.models import CapitalAllocation, ExecutionResult, FollowAction, FollowEvent, FollowPlan, Position
from core.signal_detector import SignalDetector
from infra.state_store import OrderHistoryStore

logger = logging.getLogger(__name__)


@dataclass
class CycleResult:
    """Result of one follow tick"""
    started_at: datetime
    snapshot: Dict[str, Position]
    plans: List[FollowPlan]
    allocation: CapitalAllocation
    executions: List[ExecutionResult]
    exit_events: List[FollowEvent] = field(default_factory=list)

    def action_counts(self) -> Dict[str, int]:
        counts = Counter(plan.action.value for plan in self.plans if plan.action != FollowAction.NONE)
        return dict(sorted(counts.items()))

    @property
    def rejected(self) -> List[ExecutionResult]:
        return [result for result in self.executions if not result.success]


class FollowCyclePipeline:
    """
    Reusable follow tick.

    Used by the polling loop (runner/main_loop.py) for both live and
    risk-only runs.
    """

    def __init__(self,
                 agent_id: str,
                 signal_source: SignalSource,
                 history_store: OrderHistoryStore,
                 allocator: CapitalAllocator,
                 executor: OrderExecutor,
                 exit_monitor: ExitMonitor,
                 marker: Optional[int] = None):
        self.agent_id = agent_id
        self.signal_source = signal_source
        self.history_store = history_store
        self.detector = SignalDetector(history_store)
        self.allocator = allocator
        self.executor = executor
        self.exit_monitor = exit_monitor
        self.marker = marker

    def run(self) -> CycleResult:
        started_at = datetime.now(timezone.utc)

        snapshot = self.signal_source.fetch_snapshot(self.agent_id, self.marker)
        logger.info(f"Agent {self.agent_id} holds {len(snapshot)} position(s): {sorted(snapshot)}")

        plans = self.detector.detect(snapshot)
        allocation = self._allocate(plans)

        executions: List[ExecutionResult] = []
        for plan in plans:
            if plan.action == FollowAction.NONE:
                continue
            result = self.executor.execute(plan, allocation.margin_for(plan.symbol))
            executions.append(result)

        exit_events = self.exit_monitor.check(snapshot)
        self.history_store.touch_tick(self.agent_id)

        result = CycleResult(
            started_at=started_at,
            snapshot=dict(snapshot),
            plans=plans,
            allocation=allocation,
            executions=executions,
            exit_events=exit_events,
        )
        logger.info(
            f"Tick complete: actions={result.action_counts()} rejected={len(result.rejected)} "
            f"exits={len(exit_events)}"
        )
        return result

    def _allocate(self, plans: List[FollowPlan]) -> CapitalAllocation:
        if not any(plan.needs_capital for plan in plans):
            return CapitalAllocation(mode=self.allocator.mode)

        balance = None
        if self.allocator.needs_balance:
            try:
                balance = self.executor.exchange.get_available_balance()
            except ExchangeRejection as exc:
                if self.executor.is_live:
                    logger.warning(f"Available balance unavailable ({exc.reason}); entries unfunded this tick")
                    balance = 0.0
                else:
                    requested = sum(1 for plan in plans if plan.needs_capital)
                    balance = requested * (self.allocator.fixed_amount_per_coin or 0.0)
                    logger.info(f"RISK_ONLY: balance unavailable ({exc.reason}); assuming {balance:.2f}")
        return self.allocator.allocate(plans, balance)
