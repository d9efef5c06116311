"""Infrastructure modules for lp-autopilot"""

from .alerting import AlertService, AlertSeverity  # noqa: F401
from .metrics import MetricsRecorder  # noqa: F401
from .position_store import SqlitePositionStore  # noqa: F401

__all__ = [
	"AlertService",
	"AlertSeverity",
	"MetricsRecorder",
	"SqlitePositionStore",
]
