"""Monitoring & metrics aggregation for the orchestration core.

Components publish :class:`MonitoringEvent` records into the aggregator's
buffer without waiting; the aggregator folds them into rolling counters and
alerts on its own schedule. Nothing in here may block or fail the pipeline:
a full buffer drops the event, a failing subscriber is logged and skipped.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections import Counter, OrderedDict, deque
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Protocol, Tuple

from pydantic import BaseModel, Field

from .contracts import new_id, utcnow

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    TRIGGER_RECEIVED = "trigger_received"
    WORKFLOW_CREATED = "workflow_created"
    TRANSITION_APPLIED = "transition_applied"
    TRANSITION_REJECTED = "transition_rejected"
    JOB_ENQUEUED = "job_enqueued"
    JOB_ASSIGNED = "job_assigned"
    JOB_SUCCEEDED = "job_succeeded"
    JOB_FAILED = "job_failed"
    JOB_RETRY_SCHEDULED = "job_retry_scheduled"
    JOB_REQUEUED = "job_requeued"
    JOB_DEADLETTERED = "job_deadlettered"
    WORKER_HEALTH = "worker_health"
    QUEUE_STATS = "queue_stats"
    DISPATCH_HALTED = "dispatch_halted"


class MonitoringEvent(BaseModel):
    """One lifecycle event observed somewhere in the pipeline."""

    type: EventType
    timestamp: datetime = Field(default_factory=utcnow)
    workflow_id: Optional[str] = None
    job_id: Optional[str] = None
    worker_id: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)


class AlertSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class Alert(BaseModel):
    id: str = Field(default_factory=new_id)
    alert_type: str
    severity: AlertSeverity
    title: str
    message: str
    workflow_id: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    acknowledged_at: Optional[datetime] = None
    acknowledged_by: Optional[str] = None
    resolved_at: Optional[datetime] = None

    @property
    def resolved(self) -> bool:
        return self.resolved_at is not None


class EventSink(Protocol):
    def publish(self, event: MonitoringEvent) -> None: ...


class NullSink:
    """Sink used when a component runs without an aggregator."""

    def publish(self, event: MonitoringEvent) -> None:
        pass


class MetricsAggregator:
    """Consumes lifecycle events and maintains rolling counters and alerts."""

    def __init__(
        self,
        window_seconds: float = 300.0,
        buffer_size: int = 10_000,
        long_execution_threshold: float = 300.0,
        max_events: int = 1_000,
        max_alerts: int = 1_000,
        flush_interval: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.window_seconds = window_seconds
        self.buffer_size = buffer_size
        self.long_execution_threshold = long_execution_threshold
        self.max_alerts = max_alerts
        self.flush_interval = flush_interval
        self._clock = clock
        self._started_at = clock()

        self._buffer: Deque[MonitoringEvent] = deque()
        self._buffer_lock = threading.Lock()
        self.dropped = 0

        self._completions: Deque[Tuple[float, bool, float]] = deque()
        self._transitions: Deque[float] = deque()
        self._totals: Counter[str] = Counter()
        self._recent: Deque[MonitoringEvent] = deque(maxlen=max_events)
        self._alerts: "OrderedDict[str, Alert]" = OrderedDict()
        self._subscribers: List[Callable[[MonitoringEvent], Any]] = []
        self.queue_depth = 0
        self.worker_utilization = 0.0
        self.worker_counts: Dict[str, int] = {}

        self._task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Lifecycle
    async def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name="metrics-aggregator")
            logger.info("Metrics aggregator started")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self.flush()
        logger.info("Metrics aggregator stopped")

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.flush_interval)
            self.flush()

    # ------------------------------------------------------------------
    # Ingestion
    def publish(self, event: MonitoringEvent) -> None:
        """Buffer ``event`` without blocking; drops it when the buffer is full."""
        with self._buffer_lock:
            if len(self._buffer) >= self.buffer_size:
                self.dropped += 1
                logger.warning(
                    f"Monitoring buffer full, dropping {event.type.value} event "
                    f"(dropped={self.dropped})"
                )
                return
            self._buffer.append(event)

    def subscribe(self, callback: Callable[[MonitoringEvent], Any]) -> None:
        """Register a live listener called for every processed event."""
        self._subscribers.append(callback)

    def flush(self) -> int:
        """Fold all buffered events into the counters. Returns the count."""
        with self._buffer_lock:
            events = list(self._buffer)
            self._buffer.clear()
        for event in events:
            try:
                self._apply(event)
            except Exception:
                logger.exception(f"Failed to aggregate {event.type.value} event")
            for callback in self._subscribers:
                try:
                    callback(event)
                except Exception:
                    logger.exception("Monitoring subscriber raised; continuing")
        return len(events)

    def _apply(self, event: MonitoringEvent) -> None:
        now = self._clock()
        self._totals[event.type.value] += 1
        self._recent.append(event)

        if event.type in (EventType.JOB_SUCCEEDED, EventType.JOB_FAILED):
            elapsed = float(event.data.get("elapsed", 0.0))
            self._completions.append((now, event.type == EventType.JOB_SUCCEEDED, elapsed))
            if elapsed > self.long_execution_threshold:
                self.raise_alert(
                    "long_execution",
                    AlertSeverity.WARNING,
                    "Long Execution Time",
                    f"Job {event.job_id} ran for {elapsed:.0f}s, exceeding the "
                    f"{self.long_execution_threshold:.0f}s threshold",
                    workflow_id=event.workflow_id,
                    data={"job_id": event.job_id, "elapsed": elapsed},
                )
        elif event.type == EventType.TRANSITION_APPLIED:
            self._transitions.append(now)
        elif event.type == EventType.TRANSITION_REJECTED:
            self.raise_alert(
                "illegal_transition",
                AlertSeverity.CRITICAL,
                "Illegal Transition",
                event.data.get("error", "Illegal transition attempted"),
                workflow_id=event.workflow_id,
                data=dict(event.data),
            )
        elif event.type == EventType.JOB_DEADLETTERED:
            self.raise_alert(
                "job_deadlettered",
                AlertSeverity.ERROR,
                "Job Deadlettered",
                f"Job {event.job_id} was deadlettered: {event.data.get('reason')}",
                workflow_id=event.workflow_id,
                data={"job_id": event.job_id, **event.data},
            )
        elif event.type == EventType.WORKER_HEALTH:
            if event.data.get("status") == "offline":
                self.raise_alert(
                    "worker_offline",
                    AlertSeverity.WARNING,
                    "Worker Offline",
                    event.data.get(
                        "error", f"Worker {event.worker_id} missed its heartbeat deadline"
                    ),
                    data={"worker_id": event.worker_id, "job_id": event.job_id},
                )
        elif event.type == EventType.QUEUE_STATS:
            self.queue_depth = int(event.data.get("depth", self.queue_depth))
            self.worker_utilization = float(
                event.data.get("utilization", self.worker_utilization)
            )
            self.worker_counts = dict(event.data.get("workers", self.worker_counts))
        elif event.type == EventType.DISPATCH_HALTED:
            self.raise_alert(
                "dispatch_halted",
                AlertSeverity.CRITICAL,
                "Dispatch Halted",
                event.data.get("error", "Dispatcher stopped after an infrastructure error"),
            )

        self._prune(now)

    def _prune(self, now: float) -> None:
        horizon = now - self.window_seconds
        while self._completions and self._completions[0][0] < horizon:
            self._completions.popleft()
        while self._transitions and self._transitions[0] < horizon:
            self._transitions.popleft()

    # ------------------------------------------------------------------
    # Alerts
    def raise_alert(
        self,
        alert_type: str,
        severity: AlertSeverity,
        title: str,
        message: str,
        workflow_id: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> Alert:
        alert = Alert(
            alert_type=alert_type,
            severity=severity,
            title=title,
            message=message,
            workflow_id=workflow_id,
            data=data or {},
        )
        self._alerts[alert.id] = alert
        self._evict_alerts()
        log = logger.error if severity == AlertSeverity.CRITICAL else logger.warning
        log(f"ALERT [{severity.value}] {title}: {message}")
        return alert

    def _evict_alerts(self) -> None:
        """Keep at most ``max_alerts``, dropping the oldest resolved ones first."""
        excess = len(self._alerts) - self.max_alerts
        if excess <= 0:
            return
        resolved = [key for key, a in self._alerts.items() if a.resolved][:excess]
        for key in resolved:
            del self._alerts[key]
        excess -= len(resolved)
        if excess > 0:
            logger.warning(f"Alert store full; dropping {excess} oldest open alert(s)")
            for _ in range(excess):
                self._alerts.popitem(last=False)

    def alerts(
        self,
        include_resolved: bool = False,
        severity: Optional[AlertSeverity] = None,
    ) -> List[Alert]:
        found = [
            a
            for a in self._alerts.values()
            if (include_resolved or not a.resolved)
            and (severity is None or a.severity == severity)
        ]
        return sorted(found, key=lambda a: a.created_at, reverse=True)

    def acknowledge_alert(self, alert_id: str, by: Optional[str] = None) -> Optional[Alert]:
        alert = self._alerts.get(alert_id)
        if alert is None:
            return None
        alert.acknowledged_at = utcnow()
        alert.acknowledged_by = by
        return alert

    def resolve_alert(self, alert_id: str) -> Optional[Alert]:
        alert = self._alerts.get(alert_id)
        if alert is None:
            return None
        alert.resolved_at = utcnow()
        return alert

    def system_health(self) -> str:
        open_alerts = self.alerts()
        if any(a.severity == AlertSeverity.CRITICAL for a in open_alerts):
            return "critical"
        if len(open_alerts) > 5:
            return "warning"
        return "healthy"

    # ------------------------------------------------------------------
    # Queries
    def recent_events(self, limit: int = 20) -> List[MonitoringEvent]:
        return list(self._recent)[-limit:]

    def snapshot(self) -> Dict[str, Any]:
        """Return the current rolling metrics for dashboards."""
        self.flush()
        now = self._clock()
        self._prune(now)
        span = max(min(self.window_seconds, now - self._started_at), 1e-9)
        completed = len(self._completions)
        succeeded = sum(1 for _, ok, _ in self._completions if ok)
        failed = completed - succeeded
        latency = (
            sum(elapsed for _, _, elapsed in self._completions) / completed
            if completed
            else 0.0
        )
        return {
            "window_seconds": self.window_seconds,
            "throughput": completed / span,
            "jobs_completed": completed,
            "jobs_succeeded": succeeded,
            "jobs_failed": failed,
            "success_rate": succeeded / completed if completed else 1.0,
            "failure_rate": failed / completed if completed else 0.0,
            "average_latency": latency,
            "transitions_applied": len(self._transitions),
            "queue_depth": self.queue_depth,
            "worker_utilization": self.worker_utilization,
            "workers": dict(self.worker_counts),
            "totals": dict(self._totals),
            "events_dropped": self.dropped,
            "open_alerts": len(self.alerts()),
            "system_health": self.system_health(),
        }
