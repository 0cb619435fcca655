"""
Tests for Prometheus metrics.
"""

from adapt_remediate.metrics import (
    MetricsCollector,
    get_metrics_text,
    metrics,
    track_active_attempts,
    track_deployment,
    track_remediation_duration,
    track_remediation_total,
    track_rollback,
)


def test_collector_is_singleton():
    assert MetricsCollector() is metrics


def test_counters_by_label():
    track_remediation_total("fixed")
    track_remediation_total("fixed")
    track_remediation_total("failed", "NoMatch")

    assert metrics.get_counter(
        "adapt_remediation_total", {"disposition": "fixed", "reason": "none"}
    ) == 2
    assert metrics.get_counter(
        "adapt_remediation_total", {"disposition": "failed", "reason": "NoMatch"}
    ) == 1


def test_rollback_counts_restored_backups():
    track_rollback(3)

    assert metrics.get_counter("adapt_remediation_rollbacks_total") == 1
    assert metrics.get_counter("adapt_remediation_backups_restored_total") == 3


def test_prometheus_text():
    track_active_attempts(2)
    track_deployment("staged", True)
    track_remediation_duration(1.5, "fixed")
    track_remediation_duration(0.5, "fixed")

    text = get_metrics_text()

    assert "# TYPE adapt_remediation_active_attempts gauge" in text
    assert 'adapt_remediation_deployments_total{healthy="true",strategy="staged"} 1' in text
    assert 'adapt_remediation_duration_seconds_count{disposition="fixed"} 2' in text
    assert 'adapt_remediation_duration_seconds_sum{disposition="fixed"} 2.0' in text


def test_reset():
    track_rollback(1)
    metrics.reset()

    assert get_metrics_text() == ""


def test_unlabelled_series_and_help_text():
    track_rollback(2)

    text = get_metrics_text()

    assert "# HELP adapt_remediation_rollbacks_total Rollbacks performed" in text
    assert "\nadapt_remediation_rollbacks_total 1" in text
    assert "adapt_remediation_backups_restored_total 2" in text
