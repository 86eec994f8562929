"""
Unit tests for measurement, unit conversion and alert models.
"""

import math
import pytest
from datetime import datetime, timezone

from ckd_alerts.models import (
    Measurement, MeasurementType, MeasurementSource, MeasurementValidationError,
    SymptomCheckin, SymptomEntry, SymptomSeverity, UnsupportedUnitError,
    to_canonical, from_canonical, is_valid_unit, canonical_unit,
    Alert, AlertSeverity, AlertStatus, InvalidAlertError, WeightGainInputs,
    MeasurementThresholdInputs, MeasurementSnapshot, UnknownRuleInputs, parse_alert_inputs
)

NOW = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)


class TestUnitConversion:

    def test_pounds_converted_to_kg(self):
        assert to_canonical(MeasurementType.WEIGHT, 150, "lbs") == pytest.approx(68.0388)
        assert to_canonical(MeasurementType.WEIGHT, 150, "lb") == to_canonical(MeasurementType.WEIGHT, 150, "pounds")

    def test_canonical_unit_passes_through_rounded(self):
        assert to_canonical(MeasurementType.WEIGHT, 72.123456, "kg") == 72.1235
        assert to_canonical(MeasurementType.BP_SYSTOLIC, 182, "mmHg") == 182

    def test_from_canonical_rounds_to_two_decimals(self):
        assert from_canonical(MeasurementType.WEIGHT, 68.0388, "lbs") == 150.0
        assert from_canonical(MeasurementType.SPO2, 91.4567, "%") == 91.46

    def test_invalid_unit_rejected(self):
        assert not is_valid_unit(MeasurementType.SPO2, "lbs")
        with pytest.raises(UnsupportedUnitError):
            to_canonical(MeasurementType.BP_SYSTOLIC, 120, "kPa")

    def test_body_composition_units(self):
        assert canonical_unit(MeasurementType.FAT_RATIO) == "%"
        assert canonical_unit(MeasurementType.HYDRATION) == "kg"
        assert is_valid_unit(MeasurementType.MUSCLE_MASS, "lbs")


class TestMeasurement:

    def test_from_reading_stores_canonical_value(self):
        m = Measurement.from_reading("p1", MeasurementType.WEIGHT, 160, "lbs", NOW,
                                     source=MeasurementSource.WITHINGS, external_id="w-1")

        assert m.unit == "kg"
        assert m.value == pytest.approx(72.5747)
        assert m.dedup_key == ("withings", "w-1")

    def test_unit_defaults_to_canonical(self):
        m = Measurement("m1", "p1", MeasurementType.HEART_RATE, 70, NOW)
        assert m.unit == "bpm"
        assert m.dedup_key is None

    @pytest.mark.parametrize("value", [math.nan, math.inf, "72", True])
    def test_rejects_non_finite_or_non_numeric_values(self, value):
        with pytest.raises(MeasurementValidationError):
            Measurement("m1", "p1", MeasurementType.WEIGHT, value, NOW)

    def test_rejects_naive_timestamp(self):
        with pytest.raises(MeasurementValidationError):
            Measurement("m1", "p1", MeasurementType.WEIGHT, 70.0, datetime(2026, 1, 1))

    def test_measurements_are_immutable(self):
        m = Measurement("m1", "p1", MeasurementType.WEIGHT, 70.0, NOW)
        with pytest.raises(AttributeError):
            m.value = 71.0


class TestSymptomCheckin:

    def test_reported_symptoms(self):
        checkin = SymptomCheckin(
            checkin_id="c1",
            patient_id="p1",
            timestamp=NOW,
            symptoms={
                "edema": SymptomEntry(SymptomSeverity.MODERATE, location="ankles"),
                "fatigue": SymptomEntry(SymptomSeverity.NONE),
                "shortness_of_breath": SymptomEntry(SymptomSeverity.MILD, at_rest=False),
            }
        )

        assert checkin.reported_symptoms() == ["edema", "shortness_of_breath"]
        assert checkin.to_dict()["symptoms"]["edema"] == {"severity": 2, "location": "ankles"}

    def test_unknown_symptom_rejected(self):
        with pytest.raises(MeasurementValidationError):
            SymptomCheckin("c1", "p1", NOW, symptoms={"headache": SymptomEntry(SymptomSeverity.MILD)})


class TestAlertModel:

    def _inputs(self):
        return MeasurementThresholdInputs(
            measurement=MeasurementSnapshot("m1", 182, NOW),
            threshold=180,
            critical_threshold=200,
            direction="above",
            unit="mmHg"
        )

    def test_alert_requires_inputs(self):
        with pytest.raises(InvalidAlertError):
            Alert("a1", "p1", "bp_systolic_high", "High Systolic Blood Pressure",
                  AlertSeverity.WARNING, None, NOW)

    def test_severity_rank_orders_critical_first(self):
        ranked = sorted(AlertSeverity, key=lambda s: s.rank, reverse=True)
        assert ranked == [AlertSeverity.CRITICAL, AlertSeverity.WARNING, AlertSeverity.INFO]

    def test_dict_round_trip_keeps_typed_inputs(self):
        alert = Alert("a1", "p1", "bp_systolic_high", "High Systolic Blood Pressure",
                      AlertSeverity.WARNING, self._inputs(), NOW)
        restored = Alert.from_dict(alert.to_dict())

        assert restored == alert
        assert isinstance(restored.inputs, MeasurementThresholdInputs)
        assert restored.status == AlertStatus.OPEN

    def test_details_text_prefers_summary(self):
        alert = Alert("a1", "p1", "bp_systolic_high", "High Systolic Blood Pressure",
                      AlertSeverity.WARNING, self._inputs(), NOW)
        assert "182 mmHg" in alert.details_text()
        assert alert.copy(summary_text="Custom").details_text() == "Custom"

    def test_unknown_rule_inputs_kept_raw(self):
        inputs = parse_alert_inputs("potassium_high", {"value": 6.1, "threshold": 5.5})

        assert isinstance(inputs, UnknownRuleInputs)
        assert inputs.to_dict() == {"value": 6.1, "threshold": 5.5}
        assert inputs.describe() == "threshold=5.5, value=6.1"

    def test_weight_inputs_describe_quotes_values(self):
        inputs = WeightGainInputs(
            measurements=[], oldest_value=70.0, newest_value=72.0, delta=2.0,
            threshold_kg=1.36, critical_threshold_kg=2.27, window_hours=48
        )
        assert inputs.describe() == (
            "Weight increased by 2.00 kg within 48 hours (70.00 kg to 72.00 kg, threshold 1.36 kg)"
        )

    def test_malformed_known_inputs_fall_back_to_raw(self):
        inputs = parse_alert_inputs("weight_gain_48h", {"delta": 2.0})
        assert isinstance(inputs, UnknownRuleInputs)
