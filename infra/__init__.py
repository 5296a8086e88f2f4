"""Infrastructure modules for agent-mirror"""

from .alerting import AlertService, AlertSeverity  # noqa: F401
from .metrics import MetricsRecorder, TickStats  # noqa: F401
from .state_store import OrderHistoryStore  # noqa: F401

__all__ = [
	"AlertService",
	"AlertSeverity",
	"MetricsRecorder",
	"TickStats",
	"OrderHistoryStore",
]
