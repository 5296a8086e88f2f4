"""Test helpers for the agent-mirror test suite"""

from tests.helpers.fakes import (
    FakeExchange,
    FakeSignalSource,
    make_position,
)

__all__ = [
    "FakeExchange",
    "FakeSignalSource",
    "make_position",
]
