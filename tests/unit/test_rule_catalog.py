"""
Unit tests for the rule catalog.

Tests cover:
- Weight gain window, delta and severity bands
- Single-reading threshold rules in both directions
- Malformed history handling
- Catalog selection and lookback windows
"""

import pytest
from datetime import datetime, timezone, timedelta
from hypothesis import given, strategies as st, settings

from ckd_alerts.models import (
    Measurement, MeasurementType, AlertSeverity, RuleEvaluationError, SymptomCheckin
)
from ckd_alerts.services.alert_engine_config import AlertEngineConfig
from ckd_alerts.services.rule_catalog import RuleCatalog, WeightGainRule, ThresholdRule

T0 = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)


def weight(value, hours=0.0, mid=None):
    ts = T0 + timedelta(hours=hours)
    return Measurement(mid or f"w-{value}-{hours}", "p1", MeasurementType.WEIGHT, value, ts)


def reading(value, measurement_type=MeasurementType.BP_SYSTOLIC):
    return Measurement(f"r-{value}", "p1", measurement_type, value, T0)


@pytest.fixture
def catalog():
    return RuleCatalog.from_config(AlertEngineConfig())


class TestWeightGainRule:

    def setup_method(self):
        self.rule = WeightGainRule()

    def test_warning_band(self):
        """70.0 kg then 72.0 kg a day later raises a WARNING with delta 2.0."""
        trigger = self.rule.evaluate(weight(72.0, 24), [weight(70.0, 0)])

        assert trigger.severity == AlertSeverity.WARNING
        assert trigger.inputs.delta == pytest.approx(2.0)
        assert trigger.inputs.oldest_value == 70.0
        assert trigger.inputs.newest_value == 72.0
        assert trigger.inputs.window_hours == 48
        assert [m.value for m in trigger.inputs.measurements] == [70.0, 72.0]

    def test_critical_band(self):
        trigger = self.rule.evaluate(weight(72.5, 40), [weight(70.0, 0)])
        assert trigger.severity == AlertSeverity.CRITICAL

    def test_exact_threshold_fires(self):
        trigger = self.rule.evaluate(weight(71.36, 10), [weight(70.0, 0)])
        assert trigger is not None
        assert trigger.severity == AlertSeverity.WARNING

    def test_below_threshold_does_not_fire(self):
        assert self.rule.evaluate(weight(71.3, 10), [weight(70.0, 0)]) is None

    def test_weight_loss_never_fires(self):
        assert self.rule.evaluate(weight(65.0, 10), [weight(70.0, 0)]) is None

    def test_single_reading_does_not_fire(self):
        assert self.rule.evaluate(weight(90.0, 0), []) is None

    def test_readings_outside_window_ignored(self):
        """The 48h window is anchored at the new reading, not the wall clock."""
        old = weight(60.0, -1)
        assert self.rule.evaluate(weight(72.0, 48), [old, weight(71.9, 1)]) is None

    def test_future_readings_ignored(self):
        future = weight(80.0, 5)
        assert self.rule.evaluate(weight(70.5, 0), [weight(70.0, -2), future]) is None

    def test_new_reading_already_in_history_counted_once(self):
        new = weight(72.0, 24, mid="same")
        trigger = self.rule.evaluate(new, [weight(70.0, 0), new])
        assert len(trigger.inputs.measurements) == 2

    def test_wrong_type_in_history_raises(self):
        bad = Measurement("bp", "p1", MeasurementType.BP_SYSTOLIC, 120, T0)
        with pytest.raises(RuleEvaluationError):
            self.rule.evaluate(weight(72.0, 24), [bad])

    def test_non_measurement_in_history_raises(self):
        with pytest.raises(RuleEvaluationError) as exc_info:
            self.rule.evaluate(weight(72.0, 24), [{"value": 70.0}])
        assert exc_info.value.rule_id == "weight_gain_48h"

    @settings(max_examples=75, deadline=None)
    @given(
        oldest=st.floats(min_value=40.0, max_value=150.0, allow_nan=False),
        gain=st.floats(min_value=0.0, max_value=6.0, allow_nan=False),
        hours=st.floats(min_value=0.5, max_value=48.0, allow_nan=False),
    )
    def test_delta_matches_newest_minus_oldest(self, oldest, gain, hours):
        """Whenever the rule fires, inputs.delta is exactly newest minus oldest."""
        first = weight(oldest, 0, mid="first")
        second = weight(oldest + gain, hours, mid="second")
        trigger = self.rule.evaluate(second, [first])

        expected = round(second.value - first.value, 4)
        if expected >= 1.36:
            assert trigger is not None
            assert trigger.inputs.delta == expected
            expected_severity = AlertSeverity.CRITICAL if expected >= 2.27 else AlertSeverity.WARNING
            assert trigger.severity == expected_severity
        else:
            assert trigger is None


class TestThresholdRules:

    def test_bp_high_warning_quotes_measurement(self, catalog):
        rule = catalog.get("bp_systolic_high")
        trigger = rule.evaluate(reading(182), [])

        assert trigger.severity == AlertSeverity.WARNING
        assert trigger.inputs.measurement.value == 182
        assert trigger.inputs.threshold == 180
        assert trigger.inputs.unit == "mmHg"

    @pytest.mark.parametrize("value,expected", [
        (179, None),
        (180, AlertSeverity.WARNING),
        (199, AlertSeverity.WARNING),
        (200, AlertSeverity.CRITICAL),
    ])
    def test_bp_high_bands(self, catalog, value, expected):
        trigger = catalog.get("bp_systolic_high").evaluate(reading(value), [])
        assert (trigger.severity if trigger else None) == expected

    @pytest.mark.parametrize("value,expected", [
        (90, None),
        (89, AlertSeverity.WARNING),
        (80, AlertSeverity.WARNING),
        (79, AlertSeverity.CRITICAL),
    ])
    def test_bp_low_bands(self, catalog, value, expected):
        trigger = catalog.get("bp_systolic_low").evaluate(reading(value), [])
        assert (trigger.severity if trigger else None) == expected

    @pytest.mark.parametrize("value,expected", [
        (92, None),
        (91, AlertSeverity.WARNING),
        (88, AlertSeverity.WARNING),
        (87, AlertSeverity.CRITICAL),
    ])
    def test_spo2_bands(self, catalog, value, expected):
        trigger = catalog.get("spo2_low").evaluate(reading(value, MeasurementType.SPO2), [])
        assert (trigger.severity if trigger else None) == expected

    def test_invalid_direction_rejected(self):
        with pytest.raises(ValueError):
            ThresholdRule("x", "X", MeasurementType.SPO2, "sideways", 1, 2)


class TestRuleCatalog:

    def test_rules_for_systolic_reading(self, catalog):
        ids = [rule.rule_id for rule in catalog.rules_for(reading(120))]
        assert ids == ["bp_systolic_high", "bp_systolic_low"]

    def test_no_rules_for_checkins_or_unmonitored_types(self, catalog):
        checkin = SymptomCheckin("c1", "p1", T0)
        assert catalog.rules_for(checkin) == []
        assert catalog.rules_for(reading(70, MeasurementType.HEART_RATE)) == []

    def test_lookback_windows(self, catalog):
        assert catalog.lookback_for(MeasurementType.WEIGHT) == timedelta(hours=48)
        assert catalog.lookback_for(MeasurementType.SPO2) == timedelta(0)

    def test_thresholds_follow_config(self):
        catalog = RuleCatalog.from_config(AlertEngineConfig(bp_systolic_high_warning=170))
        assert catalog.get("bp_systolic_high").evaluate(reading(172), []) is not None

    def test_duplicate_rule_ids_rejected(self):
        with pytest.raises(ValueError):
            RuleCatalog([WeightGainRule(), WeightGainRule()])
