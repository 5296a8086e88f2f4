"""
Pytest configuration and fixtures for agent-mirror tests.

Every fixture writes under pytest's tmp_path, so no test touches data/ or
logs/ in the working tree.
"""
import pytest

from core.execution import ExecutionMode, OrderExecutor
from infra.state_store import OrderHistoryStore
from tests.helpers import FakeExchange, FakeSignalSource


@pytest.fixture
def history_file(tmp_path):
    return tmp_path / "order_history.json"


@pytest.fixture
def store(history_file):
    return OrderHistoryStore(str(history_file))


@pytest.fixture
def exchange():
    return FakeExchange()


@pytest.fixture
def source():
    return FakeSignalSource()


@pytest.fixture
def events():
    """Collects events emitted through on_event callbacks."""
    return []


@pytest.fixture
def live_executor(exchange, store, events):
    return OrderExecutor(ExecutionMode.LIVE, exchange, store, on_event=events.append)


@pytest.fixture
def dry_executor(exchange, store, events):
    return OrderExecutor(ExecutionMode.DRY_RUN, exchange, store, on_event=events.append)
