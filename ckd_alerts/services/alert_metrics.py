"""
Prometheus metrics for the alert engine.
"""

import logging
from typing import Optional

from prometheus_client import Counter, Histogram, Gauge, CollectorRegistry, generate_latest

logger = logging.getLogger(__name__)


class AlertEngineMetrics:
    """Collects alert engine metrics on an injectable registry."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()
        self._setup_prometheus_metrics()

    def _setup_prometheus_metrics(self):
        """Initialize Prometheus metrics."""
        # Evaluation
        self.alerts_created = Counter(
            'ckd_alerts_created_total',
            'Alerts opened by the evaluator',
            ['rule_id', 'severity'],
            registry=self.registry
        )

        self.alerts_suppressed = Counter(
            'ckd_alerts_suppressed_total',
            'Rule triggers suppressed because an alert was already open',
            ['rule_id'],
            registry=self.registry
        )

        self.rule_errors = Counter(
            'ckd_rule_evaluation_errors_total',
            'Rule evaluations that raised',
            ['rule_id'],
            registry=self.registry
        )

        self.evaluation_duration = Histogram(
            'ckd_evaluation_duration_seconds',
            'Time spent evaluating one data point',
            buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0),
            registry=self.registry
        )

        # Lifecycle
        self.transitions = Counter(
            'ckd_alert_transitions_total',
            'Alert status transitions',
            ['transition'],
            registry=self.registry
        )

        self.cas_conflicts = Counter(
            'ckd_alert_cas_conflicts_total',
            'Compare-and-set conflicts on alert writes',
            ['operation'],
            registry=self.registry
        )

        # Notifications
        self.notifications = Counter(
            'ckd_notifications_total',
            'Notification attempts by outcome',
            ['status'],
            registry=self.registry
        )

        self.send_duration = Histogram(
            'ckd_notification_send_duration_seconds',
            'Time spent in the email transport',
            buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.0, 5.0, 10.0),
            registry=self.registry
        )

        self.queue_depth = Gauge(
            'ckd_notification_queue_depth',
            'Pending notification jobs',
            registry=self.registry
        )

        # Escalation
        self.escalations = Counter(
            'ckd_alert_escalations_total',
            'Escalation level increments',
            ['severity', 'level'],
            registry=self.registry
        )

        self.escalation_ticks = Counter(
            'ckd_escalation_ticks_total',
            'Escalation ticks by result',
            ['result'],
            registry=self.registry
        )

        self.tick_duration = Histogram(
            'ckd_escalation_tick_duration_seconds',
            'Duration of escalation ticks',
            buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 30.0),
            registry=self.registry
        )

        self.open_alerts = Gauge(
            'ckd_open_alerts',
            'OPEN alerts seen by the last escalation tick',
            registry=self.registry
        )

    def record_alert_created(self, rule_id: str, severity: str):
        self.alerts_created.labels(rule_id=rule_id, severity=severity).inc()

    def record_suppressed(self, rule_id: str):
        self.alerts_suppressed.labels(rule_id=rule_id).inc()

    def record_rule_error(self, rule_id: str):
        self.rule_errors.labels(rule_id=rule_id).inc()

    def record_transition(self, transition: str):
        self.transitions.labels(transition=transition).inc()

    def record_conflict(self, operation: str):
        self.cas_conflicts.labels(operation=operation).inc()

    def record_notification(self, status: str, duration_seconds: Optional[float] = None):
        self.notifications.labels(status=status).inc()
        if duration_seconds is not None:
            self.send_duration.observe(duration_seconds)

    def record_escalation(self, severity: str, level: int):
        self.escalations.labels(severity=severity, level=str(level)).inc()

    def record_tick(self, result: str, duration_seconds: Optional[float] = None, open_alerts: Optional[int] = None):
        self.escalation_ticks.labels(result=result).inc()
        if duration_seconds is not None:
            self.tick_duration.observe(duration_seconds)
        if open_alerts is not None:
            self.open_alerts.set(open_alerts)

    def sample(self, name: str, labels: Optional[dict] = None) -> float:
        """Current value of a sample, 0.0 if it has not been recorded."""
        value = self.registry.get_sample_value(name, labels or {})
        return value or 0.0

    def export(self) -> bytes:
        """Prometheus text exposition of the registry."""
        return generate_latest(self.registry)
