"""Shared exception types for the follow engine."""

from typing import Optional


class FollowerError(RuntimeError):
    """Base class for follower errors."""


class ConfigurationError(FollowerError):
    """Raised before the loop starts when the configuration is unusable."""

    def __init__(self, problems):
        if isinstance(problems, str):
            problems = [problems]
        self.problems = list(problems)
        super().__init__("; ".join(self.problems))


class SignalSourceError(FollowerError):
    """Raised when the agent snapshot cannot be fetched safely."""

    def __init__(self, source: str, original: Optional[Exception] = None):
        super().__init__(source)
        self.source = source
        self.original = original


class ExchangeRejection(FollowerError):
    """Raised when the exchange refuses an action for a single symbol."""

    def __init__(self, symbol: str, reason: str, code: Optional[int] = None):
        super().__init__(f"{symbol}: {reason}")
        self.symbol = symbol
        self.reason = reason
        self.code = code


class ExchangeOutcomeUnknown(ExchangeRejection):
    """The request may have reached the exchange but its effect is unknown."""


class PriceToleranceExceeded(ExchangeRejection):
    """Mark price drifted too far from the agent's entry price."""


class InsufficientCapital(ExchangeRejection):
    """No margin was allocated to the symbol this tick."""


class StateStoreError(FollowerError):
    """Order history could not be read."""


class StateStoreWriteError(StateStoreError):
    """Order history could not be made durable; the tick must abort."""

    def __init__(self, path: str, original: Optional[Exception] = None):
        super().__init__(f"failed to persist order history to {path}: {original}")
        self.path = path
        self.original = original
