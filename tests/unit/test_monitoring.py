"""Tests for the metrics aggregator and alerts."""

import asyncio

import pytest

from flowcore.monitoring import AlertSeverity, EventType, MetricsAggregator, MonitoringEvent


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def _done(ok=True, elapsed=0.5, job_id="j"):
    return MonitoringEvent(
        type=EventType.JOB_SUCCEEDED if ok else EventType.JOB_FAILED,
        job_id=job_id,
        data={"elapsed": elapsed},
    )


def test_snapshot_rates_and_latency():
    clock = FakeClock()
    aggregator = MetricsAggregator(window_seconds=60, clock=clock)
    clock.now = 10.0
    for _ in range(3):
        aggregator.publish(_done(ok=True, elapsed=1.0))
    aggregator.publish(_done(ok=False, elapsed=3.0))

    snap = aggregator.snapshot()
    assert snap["jobs_completed"] == 4
    assert snap["jobs_succeeded"] == 3
    assert snap["success_rate"] == pytest.approx(0.75)
    assert snap["failure_rate"] == pytest.approx(0.25)
    assert snap["average_latency"] == pytest.approx(1.5)
    assert snap["throughput"] == pytest.approx(0.4)
    assert snap["totals"] == {"job_succeeded": 3, "job_failed": 1}


def test_window_drops_old_completions():
    clock = FakeClock()
    aggregator = MetricsAggregator(window_seconds=60, clock=clock)
    aggregator.publish(_done())
    aggregator.flush()

    clock.now = 120.0
    snap = aggregator.snapshot()
    assert snap["jobs_completed"] == 0
    assert snap["totals"]["job_succeeded"] == 1


def test_full_buffer_drops_events():
    aggregator = MetricsAggregator(buffer_size=2)
    for _ in range(5):
        aggregator.publish(_done())
    assert aggregator.dropped == 3
    assert aggregator.flush() == 2
    assert aggregator.snapshot()["events_dropped"] == 3


def test_queue_stats_update_gauges():
    aggregator = MetricsAggregator()
    aggregator.publish(
        MonitoringEvent(
            type=EventType.QUEUE_STATS,
            data={"depth": 7, "utilization": 0.5, "workers": {"idle": 1, "busy": 1}},
        )
    )
    snap = aggregator.snapshot()
    assert snap["queue_depth"] == 7
    assert snap["worker_utilization"] == 0.5
    assert snap["workers"] == {"idle": 1, "busy": 1}


def test_alert_lifecycle():
    aggregator = MetricsAggregator(long_execution_threshold=300)
    aggregator.publish(_done(elapsed=301, job_id="slow"))
    aggregator.publish(
        MonitoringEvent(type=EventType.JOB_DEADLETTERED, job_id="dead", data={"reason": "timeout"})
    )
    aggregator.publish(
        MonitoringEvent(type=EventType.WORKER_HEALTH, worker_id="w1", data={"status": "offline"})
    )
    aggregator.flush()

    alerts = {a.alert_type: a for a in aggregator.alerts()}
    assert set(alerts) == {"long_execution", "job_deadlettered", "worker_offline"}
    assert alerts["long_execution"].severity == AlertSeverity.WARNING
    assert alerts["job_deadlettered"].severity == AlertSeverity.ERROR
    assert aggregator.system_health() == "healthy"

    acked = aggregator.acknowledge_alert(alerts["worker_offline"].id, by="oncall")
    assert acked.acknowledged_by == "oncall"
    aggregator.resolve_alert(alerts["worker_offline"].id)
    assert len(aggregator.alerts()) == 2
    assert len(aggregator.alerts(include_resolved=True)) == 3
    assert aggregator.acknowledge_alert("missing") is None


def test_system_health_levels():
    aggregator = MetricsAggregator()
    for i in range(6):
        aggregator.raise_alert("custom", AlertSeverity.WARNING, "t", f"m{i}")
    assert aggregator.system_health() == "warning"

    critical = aggregator.raise_alert("custom", AlertSeverity.CRITICAL, "t", "down")
    assert aggregator.system_health() == "critical"
    aggregator.resolve_alert(critical.id)
    assert aggregator.system_health() == "warning"


def test_subscriber_errors_do_not_propagate():
    aggregator = MetricsAggregator()
    seen = []

    def broken(event):
        raise RuntimeError("subscriber bug")

    aggregator.subscribe(broken)
    aggregator.subscribe(seen.append)
    aggregator.publish(_done())
    assert aggregator.flush() == 1
    assert len(seen) == 1


@pytest.mark.asyncio
async def test_background_flush():
    aggregator = MetricsAggregator(flush_interval=0.01)
    await aggregator.start()
    aggregator.publish(_done())
    await asyncio.sleep(0.1)
    assert aggregator.recent_events()[0].type == EventType.JOB_SUCCEEDED
    await aggregator.stop()


def test_alert_store_is_bounded_and_evicts_resolved_first():
    aggregator = MetricsAggregator(max_alerts=10)
    first = aggregator.raise_alert("job_deadlettered", AlertSeverity.ERROR, "Dead", "job 0")
    for n in range(1, 10):
        alert = aggregator.raise_alert("job_deadlettered", AlertSeverity.ERROR, "Dead", f"job {n}")
        if n == 5:
            aggregator.resolve_alert(alert.id)
            resolved_id = alert.id

    aggregator.raise_alert("worker_offline", AlertSeverity.WARNING, "Offline", "w1")
    stored = aggregator.alerts(include_resolved=True)
    assert len(stored) == 10
    assert resolved_id not in {a.id for a in stored}
    assert first.id in {a.id for a in stored}

    for n in range(5000):
        alert = aggregator.raise_alert("job_deadlettered", AlertSeverity.ERROR, "Dead", f"job {n}")
        aggregator.resolve_alert(alert.id)
    assert len(aggregator.alerts(include_resolved=True)) == 10
