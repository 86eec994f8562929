"""
Alert Evaluator

Runs the applicable catalog rules for a new data point over the patient's
recent history and opens alerts. A rule that fails is logged and skipped;
the remaining rules still run and evaluation itself never raises for rule
failures. Duplicate triggers for an already-open (patient, rule) are
suppressed and recorded as a result, not an error.
"""

import asyncio
import time
import logging
from datetime import datetime, timezone
from typing import List, Optional, Sequence, Callable
from dataclasses import dataclass, field
from uuid import uuid4

from ..models.alerts import Alert, AlertStatus, RuleEvaluationError
from ..models.measurements import Measurement, DataPoint
from .alert_store import InMemoryAlertStore
from .alert_metrics import AlertEngineMetrics
from .audit import AuditLogger
from .rule_catalog import RuleCatalog, AlertRule


@dataclass(frozen=True)
class SuppressedTrigger:
    """A rule fired while an alert for the same (patient, rule) was already OPEN."""
    rule_id: str
    existing_alert_id: str


@dataclass(frozen=True)
class RuleFailure:
    rule_id: str
    error: str


@dataclass
class EvaluationResult:
    """Per-rule outcome of one evaluation."""
    created: List[Alert] = field(default_factory=list)
    suppressed: List[SuppressedTrigger] = field(default_factory=list)
    rule_errors: List[RuleFailure] = field(default_factory=list)
    not_triggered: List[str] = field(default_factory=list)

    @property
    def alert(self) -> Optional[Alert]:
        return self.created[0] if self.created else None


class AlertEvaluator:
    """Evaluates data points against the rule catalog and opens alerts."""

    def __init__(
        self,
        store: InMemoryAlertStore,
        catalog: RuleCatalog,
        audit_logger: Optional[AuditLogger] = None,
        metrics: Optional[AlertEngineMetrics] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.store = store
        self.catalog = catalog
        self.audit_logger = audit_logger
        self.metrics = metrics
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._alert_created_callback: Optional[Callable] = None
        self.logger = logging.getLogger(__name__)

    def set_alert_created_callback(self, callback: Callable):
        """Set callback invoked with each newly opened alert (sync or async)."""
        self._alert_created_callback = callback

    async def evaluate(self, data_point: DataPoint, recent_history: Sequence[Measurement]) -> Optional[Alert]:
        """Evaluate one data point. Returns the first alert opened, or None."""
        result = await self.evaluate_detailed(data_point, recent_history)
        return result.alert

    async def evaluate_detailed(self, data_point: DataPoint,
                                recent_history: Sequence[Measurement]) -> EvaluationResult:
        start_time = time.perf_counter()
        result = EvaluationResult()

        for rule in self.catalog.rules_for(data_point):
            history = [m for m in recent_history
                       if not isinstance(m, Measurement) or m.type == rule.measurement_type]
            try:
                trigger = rule.evaluate(data_point, history)
            except RuleEvaluationError as e:
                self._record_rule_failure(result, rule, str(e))
                continue
            except Exception as e:
                self._record_rule_failure(result, rule, f"unexpected {type(e).__name__}: {e}")
                continue

            if trigger is None:
                result.not_triggered.append(rule.rule_id)
                continue

            alert = Alert(
                alert_id=str(uuid4()),
                patient_id=data_point.patient_id,
                rule_id=rule.rule_id,
                rule_name=rule.rule_name,
                severity=trigger.severity,
                inputs=trigger.inputs,
                triggered_at=self._clock(),
                status=AlertStatus.OPEN
            )

            stored, created = await self.store.create_if_no_open(alert)
            if not created:
                result.suppressed.append(SuppressedTrigger(rule.rule_id, stored.alert_id))
                self.logger.info(
                    f"Duplicate alert suppressed for rule {rule.rule_id}: "
                    f"alert {stored.alert_id} already open"
                )
                if self.metrics:
                    self.metrics.record_suppressed(rule.rule_id)
                continue

            result.created.append(stored)
            self.logger.info(
                f"Alert {stored.alert_id} opened: {rule.rule_id} {stored.severity.value}"
            )
            if self.metrics:
                self.metrics.record_alert_created(rule.rule_id, stored.severity.value)
            self._audit_alert_created(stored)
            await self._notify_created(stored)

        if self.metrics:
            self.metrics.evaluation_duration.observe(time.perf_counter() - start_time)
        return result

    def _record_rule_failure(self, result: EvaluationResult, rule: AlertRule, message: str):
        self.logger.error(f"Rule {rule.rule_id} evaluation failed: {message}")
        result.rule_errors.append(RuleFailure(rule.rule_id, message))
        if self.metrics:
            self.metrics.record_rule_error(rule.rule_id)

    def _audit_alert_created(self, alert: Alert):
        if not self.audit_logger:
            return
        try:
            self.audit_logger.audit_alert_created(alert)
        except Exception as e:
            # Don't fail alert creation due to audit issues
            self.logger.error(f"Failed to audit alert creation {alert.alert_id}: {str(e)}")

    async def _notify_created(self, alert: Alert):
        if not self._alert_created_callback:
            return
        try:
            outcome = self._alert_created_callback(alert)
            if asyncio.iscoroutine(outcome):
                await outcome
        except Exception as e:
            self.logger.error(f"Alert created callback failed for {alert.alert_id}: {str(e)}")
