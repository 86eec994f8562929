"""
Unit tests for the alert evaluator.

Tests cover:
- Alert creation with literal inputs
- Duplicate suppression while an alert is open
- Suppression reset after acknowledge/dismiss
- Rule failure containment
- Alert created callback and audit
"""

import pytest
from datetime import datetime, timezone, timedelta
from unittest.mock import Mock, AsyncMock

from ckd_alerts.models import (
    MeasurementType, AlertSeverity, AlertStatus, WeightGainInputs, RuleEvaluationError,
    SymptomCheckin
)
from ckd_alerts.services.alert_engine_config import AlertEngineConfig
from ckd_alerts.services.alert_evaluator import AlertEvaluator
from ckd_alerts.services.alert_store import InMemoryAlertStore
from ckd_alerts.services.audit import AuditAction
from ckd_alerts.services.rule_catalog import RuleCatalog, ThresholdRule

T0 = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)


class ExplodingRule(ThresholdRule):
    def __init__(self, error):
        super().__init__("exploding", "Exploding", MeasurementType.BP_SYSTOLIC, "above", 0, 0)
        self.error = error

    def evaluate(self, data_point, history):
        raise self.error


@pytest.fixture
def store():
    return InMemoryAlertStore()


@pytest.fixture
def evaluator(store, audit_logger, metrics, clock):
    return AlertEvaluator(store, RuleCatalog.from_config(AlertEngineConfig()), audit_logger, metrics, clock)


class TestAlertEvaluator:

    async def test_weight_gain_opens_alert_with_inputs(self, evaluator, make_measurement, clock):
        """70.0 kg then 72.0 kg within 24h opens one WARNING alert."""
        first = make_measurement(70.0, T0)
        second = make_measurement(72.0, T0 + timedelta(hours=24))

        alert = await evaluator.evaluate(second, [first, second])

        assert alert.rule_id == "weight_gain_48h"
        assert alert.rule_name == "Rapid Weight Gain"
        assert alert.severity == AlertSeverity.WARNING
        assert alert.status == AlertStatus.OPEN
        assert alert.escalation_level == 0
        assert alert.triggered_at == clock()
        assert isinstance(alert.inputs, WeightGainInputs)
        assert alert.inputs.delta == pytest.approx(2.0)

    async def test_no_trigger_returns_none(self, evaluator, make_measurement):
        reading = make_measurement(120, measurement_type=MeasurementType.BP_SYSTOLIC)
        result = await evaluator.evaluate_detailed(reading, [])

        assert result.alert is None
        assert result.not_triggered == ["bp_systolic_high", "bp_systolic_low"]

    async def test_repeated_breach_is_suppressed(self, evaluator, store, make_measurement, metrics):
        first = await evaluator.evaluate(make_measurement(182, measurement_type=MeasurementType.BP_SYSTOLIC), [])
        result = await evaluator.evaluate_detailed(
            make_measurement(185, measurement_type=MeasurementType.BP_SYSTOLIC), []
        )

        assert result.alert is None
        assert result.suppressed[0].rule_id == "bp_systolic_high"
        assert result.suppressed[0].existing_alert_id == first.alert_id
        assert len(await store.list_open()) == 1
        assert metrics.sample("ckd_alerts_suppressed_total", {"rule_id": "bp_systolic_high"}) == 1

    async def test_suppression_resets_after_close(self, evaluator, store, make_measurement):
        """A new breach after acknowledgment opens a new alert."""
        first = await evaluator.evaluate(make_measurement(182, measurement_type=MeasurementType.BP_SYSTOLIC), [])
        await store.compare_and_set(first.alert_id, first.version, first.copy(status=AlertStatus.ACKNOWLEDGED))

        second = await evaluator.evaluate(make_measurement(183, measurement_type=MeasurementType.BP_SYSTOLIC), [])

        assert second is not None
        assert second.alert_id != first.alert_id

    async def test_failing_rule_does_not_block_others(self, store, make_measurement, metrics):
        catalog = RuleCatalog([
            ExplodingRule(RuleEvaluationError("exploding", "bad history")),
            RuleCatalog.from_config(AlertEngineConfig()).get("bp_systolic_high"),
        ])
        evaluator = AlertEvaluator(store, catalog, metrics=metrics)

        result = await evaluator.evaluate_detailed(
            make_measurement(190, measurement_type=MeasurementType.BP_SYSTOLIC), []
        )

        assert result.alert.rule_id == "bp_systolic_high"
        assert result.rule_errors[0].rule_id == "exploding"
        assert metrics.sample("ckd_rule_evaluation_errors_total", {"rule_id": "exploding"}) == 1

    async def test_unexpected_exception_is_contained(self, store, make_measurement):
        evaluator = AlertEvaluator(store, RuleCatalog([ExplodingRule(ZeroDivisionError("boom"))]))

        result = await evaluator.evaluate_detailed(
            make_measurement(190, measurement_type=MeasurementType.BP_SYSTOLIC), []
        )

        assert result.alert is None
        assert "ZeroDivisionError" in result.rule_errors[0].error

    async def test_checkin_produces_no_alert(self, evaluator):
        assert await evaluator.evaluate(SymptomCheckin("c1", "patient-1", T0), []) is None

    async def test_callback_receives_new_alert(self, evaluator, make_measurement):
        callback = AsyncMock()
        evaluator.set_alert_created_callback(callback)

        alert = await evaluator.evaluate(make_measurement(85, measurement_type=MeasurementType.SPO2), [])

        callback.assert_awaited_once_with(alert)
        assert alert.severity == AlertSeverity.CRITICAL

    async def test_callback_failure_does_not_fail_evaluation(self, evaluator, make_measurement):
        evaluator.set_alert_created_callback(Mock(side_effect=RuntimeError("queue down")))

        alert = await evaluator.evaluate(make_measurement(85, measurement_type=MeasurementType.SPO2), [])
        assert alert is not None

    async def test_creation_is_audited(self, evaluator, make_measurement, audit_logger):
        alert = await evaluator.evaluate(make_measurement(85, measurement_type=MeasurementType.SPO2), [])

        entries = audit_logger.entries(resource_id=alert.alert_id, action=AuditAction.ALERT_CREATED)
        assert len(entries) == 1
        assert entries[0].details["inputs"]["measurement"]["value"] == 85

    async def test_audit_failure_does_not_fail_evaluation(self, store, make_measurement):
        broken_audit = Mock()
        broken_audit.audit_alert_created.side_effect = RuntimeError("audit store down")
        evaluator = AlertEvaluator(store, RuleCatalog.from_config(AlertEngineConfig()), broken_audit)

        alert = await evaluator.evaluate(make_measurement(85, measurement_type=MeasurementType.SPO2), [])
        assert alert is not None
