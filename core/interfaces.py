"""
agent-mirror Core: Collaborator Contracts

The engine only talks to the outside world through these two capability
sets. Concrete adapters live in core/signal_source.py and
core/exchange_binance.py; tests use in-memory fakes.

Both contracts must fail fast (raise) rather than hang, or the scheduler
stalls.
"""

from typing import Dict, List, Optional, Protocol

from core.models import Position


class SignalSource(Protocol):
    def fetch_snapshot(self, agent_id: str, marker: Optional[int] = None) -> Dict[str, Position]:
        ...

    def list_agents(self) -> List[str]:
        ...


class Exchange(Protocol):
    def set_leverage(self, symbol: str, leverage: int) -> None:
        ...

    def set_margin_mode(self, symbol: str, mode: str) -> None:
        ...

    def place_market_order(self, symbol: str, side: str, quantity: float) -> str:
        ...

    def close_position(self, symbol: str) -> Optional[str]:
        ...

    def get_mark_price(self, symbol: str) -> float:
        ...

    def get_open_position(self, symbol: str) -> Optional[Position]:
        ...

    def get_available_balance(self) -> float:
        ...
