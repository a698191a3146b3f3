"""
Monitoring and observability package.

Alerting, Prometheus metrics, health probes and the loop status board.
"""

from keeper.monitoring.alerting import (
    Alert,
    AlertConfig,
    AlertManager,
    AlertSeverity,
    AlertType,
    configure_alerts,
    get_alert_manager,
)
from keeper.monitoring.metrics import HealthChecker, HealthStatus, start_metrics_server
from keeper.monitoring.metrics_rich import KeeperMetrics
from keeper.monitoring.status import StatusBoard

__all__ = [
    "Alert",
    "AlertConfig",
    "AlertManager",
    "AlertSeverity",
    "AlertType",
    "configure_alerts",
    "get_alert_manager",
    "HealthChecker",
    "HealthStatus",
    "start_metrics_server",
    "KeeperMetrics",
    "StatusBoard",
]
