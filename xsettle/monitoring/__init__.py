"""Prometheus metrics and health state for the settlement server."""

from xsettle.monitoring.health import HealthChecker, HealthStatus
from xsettle.monitoring.metrics import SettlementMetrics

__all__ = ["HealthChecker", "HealthStatus", "SettlementMetrics"]
