"""Unit tests for settlement metrics and health tracking."""

from xsettle.monitoring import HealthChecker, HealthStatus, SettlementMetrics


def test_metrics_registries_are_isolated():
    """Two instances never share samples."""
    a = SettlementMetrics()
    b = SettlementMetrics()
    a.runs_started.labels(mode="simulate").inc()
    assert a.registry.get_sample_value("settlement_runs_started_total", {"mode": "simulate"}) == 1.0
    assert b.registry.get_sample_value("settlement_runs_started_total", {"mode": "simulate"}) is None


def test_metrics_render():
    metrics = SettlementMetrics()
    metrics.step_duration_sec.labels(mode="testnet", step="deposit").observe(4.2)
    metrics.confirmations.labels(result="confirmed").inc()
    text = metrics.render().decode()
    assert 'settlement_step_duration_sec_count{mode="testnet",step="deposit"} 1.0' in text
    assert 'settlement_confirmations_total{result="confirmed"} 1.0' in text


def test_health_defaults():
    checker = HealthChecker()
    assert checker.is_healthy()
    assert not checker.is_ready()
    assert isinstance(checker.get_status(), HealthStatus)


def test_health_components():
    checker = HealthChecker()
    checker.set_ready(True)
    checker.set_component_health("config", True, "Configuration validated")
    assert checker.is_ready()

    checker.set_component_health("rpc", False, "base unreachable")
    data = checker.to_dict()
    assert data["healthy"] is False
    assert data["ready"] is False
    assert data["components"] == {"config": True, "rpc": False}
    assert data["details"]["rpc"] == "base unreachable"
