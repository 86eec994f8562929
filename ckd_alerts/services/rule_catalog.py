"""
Deterministic alert rules for CKD remote monitoring.

Each rule is a pure function of the new data point and the patient's recent
history. Windows are anchored at the new data point's timestamp so that a
given set of readings always produces the same decision.
"""

import math
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Dict, List, Optional, Sequence
from dataclasses import dataclass

from ..models.alerts import (
    AlertSeverity, AlertInputs, WeightGainInputs, MeasurementThresholdInputs,
    MeasurementSnapshot, RuleEvaluationError
)
from ..models.measurements import Measurement, MeasurementType, DataPoint
from ..models.units import canonical_unit


@dataclass(frozen=True)
class RuleTrigger:
    """Positive rule decision."""
    severity: AlertSeverity
    inputs: AlertInputs


class AlertRule(ABC):
    """Base class for catalog rules."""
    rule_id: str
    rule_name: str
    description: str
    measurement_type: MeasurementType
    window: timedelta = timedelta(0)

    def applies_to(self, data_point: DataPoint) -> bool:
        return isinstance(data_point, Measurement) and data_point.type == self.measurement_type

    @abstractmethod
    def evaluate(self, data_point: DataPoint, history: Sequence[Measurement]) -> Optional[RuleTrigger]:
        """Return a trigger if the rule fires for this data point, otherwise None."""

    def _check_reading(self, reading) -> Measurement:
        if not isinstance(reading, Measurement):
            raise RuleEvaluationError(self.rule_id, f"expected a Measurement, got {type(reading).__name__}")
        if reading.timestamp.tzinfo is None:
            raise RuleEvaluationError(self.rule_id, f"reading {reading.measurement_id} has a naive timestamp")
        if not math.isfinite(reading.value):
            raise RuleEvaluationError(self.rule_id, f"reading {reading.measurement_id} has a non-finite value")
        return reading

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.rule_id})"


class WeightGainRule(AlertRule):
    """
    Rapid weight gain over a trailing window.

    Fluid retention shows up as weight gain before other symptoms. The rule
    compares the newest and oldest weights in the window and fires on the
    absolute increase.
    """

    measurement_type = MeasurementType.WEIGHT

    def __init__(self, window_hours: int = 48, warning_kg: float = 1.36, critical_kg: float = 2.27,
                 rule_id: str = "weight_gain_48h", rule_name: str = "Rapid Weight Gain"):
        self.rule_id = rule_id
        self.rule_name = rule_name
        self.window_hours = window_hours
        self.window = timedelta(hours=window_hours)
        self.warning_kg = warning_kg
        self.critical_kg = critical_kg
        self.description = (
            f"Weight gain of {warning_kg} kg or more within {window_hours} hours"
        )

    def evaluate(self, data_point: DataPoint, history: Sequence[Measurement]) -> Optional[RuleTrigger]:
        anchor = self._check_reading(data_point).timestamp
        window_start = anchor - self.window

        readings: Dict[str, Measurement] = {}
        for reading in list(history) + [data_point]:
            reading = self._check_reading(reading)
            if reading.type != MeasurementType.WEIGHT:
                raise RuleEvaluationError(self.rule_id, f"unexpected {reading.type.value} reading in weight history")
            if window_start <= reading.timestamp <= anchor:
                readings[reading.measurement_id] = reading

        if len(readings) < 2:
            return None

        ordered = sorted(readings.values(), key=lambda m: m.timestamp)
        oldest, newest = ordered[0], ordered[-1]
        # Canonical values carry 4 decimals
        delta = round(newest.value - oldest.value, 4)

        if delta >= self.critical_kg:
            severity = AlertSeverity.CRITICAL
        elif delta >= self.warning_kg:
            severity = AlertSeverity.WARNING
        else:
            return None

        return RuleTrigger(
            severity=severity,
            inputs=WeightGainInputs(
                measurements=[MeasurementSnapshot.of(m) for m in ordered],
                oldest_value=oldest.value,
                newest_value=newest.value,
                delta=delta,
                threshold_kg=self.warning_kg,
                critical_threshold_kg=self.critical_kg,
                window_hours=self.window_hours
            )
        )


class ThresholdRule(AlertRule):
    """Single-reading rule comparing the new value against fixed thresholds."""

    def __init__(self, rule_id: str, rule_name: str, measurement_type: MeasurementType,
                 direction: str, warning: float, critical: float):
        if direction not in ("above", "below"):
            raise ValueError(f"direction must be 'above' or 'below', got {direction!r}")
        self.rule_id = rule_id
        self.rule_name = rule_name
        self.measurement_type = measurement_type
        self.direction = direction
        self.warning = warning
        self.critical = critical
        comparison = "at or above" if direction == "above" else "below"
        self.description = f"{measurement_type.value} reading {comparison} {warning:g}"

    def evaluate(self, data_point: DataPoint, history: Sequence[Measurement]) -> Optional[RuleTrigger]:
        reading = self._check_reading(data_point)
        value = reading.value

        if self.direction == "above":
            if value >= self.critical:
                severity = AlertSeverity.CRITICAL
            elif value >= self.warning:
                severity = AlertSeverity.WARNING
            else:
                return None
        else:
            if value < self.critical:
                severity = AlertSeverity.CRITICAL
            elif value < self.warning:
                severity = AlertSeverity.WARNING
            else:
                return None

        return RuleTrigger(
            severity=severity,
            inputs=MeasurementThresholdInputs(
                measurement=MeasurementSnapshot.of(reading),
                threshold=self.warning,
                critical_threshold=self.critical,
                direction=self.direction,
                unit=canonical_unit(self.measurement_type)
            )
        )


class RuleCatalog:
    """Fixed, ordered set of alert rules."""

    def __init__(self, rules: Sequence[AlertRule]):
        ids = [rule.rule_id for rule in rules]
        if len(ids) != len(set(ids)):
            raise ValueError(f"Duplicate rule ids in catalog: {ids}")
        self._rules: List[AlertRule] = list(rules)

    @property
    def rules(self) -> List[AlertRule]:
        return list(self._rules)

    def get(self, rule_id: str) -> Optional[AlertRule]:
        for rule in self._rules:
            if rule.rule_id == rule_id:
                return rule
        return None

    def rules_for(self, data_point: DataPoint) -> List[AlertRule]:
        """Rules that apply to this data point, in catalog order."""
        return [rule for rule in self._rules if rule.applies_to(data_point)]

    def lookback_for(self, measurement_type: MeasurementType) -> timedelta:
        """Largest history window any rule needs for a measurement type."""
        windows = [rule.window for rule in self._rules if rule.measurement_type == measurement_type]
        return max(windows, default=timedelta(0))

    @classmethod
    def from_config(cls, config) -> 'RuleCatalog':
        """Build the standard catalog with thresholds from AlertEngineConfig."""
        return cls([
            WeightGainRule(
                window_hours=config.weight_gain_window_hours,
                warning_kg=config.weight_gain_warning_kg,
                critical_kg=config.weight_gain_critical_kg
            ),
            ThresholdRule(
                rule_id="bp_systolic_high",
                rule_name="High Systolic Blood Pressure",
                measurement_type=MeasurementType.BP_SYSTOLIC,
                direction="above",
                warning=config.bp_systolic_high_warning,
                critical=config.bp_systolic_high_critical
            ),
            ThresholdRule(
                rule_id="bp_systolic_low",
                rule_name="Low Systolic Blood Pressure",
                measurement_type=MeasurementType.BP_SYSTOLIC,
                direction="below",
                warning=config.bp_systolic_low_warning,
                critical=config.bp_systolic_low_critical
            ),
            ThresholdRule(
                rule_id="spo2_low",
                rule_name="Low Oxygen Saturation",
                measurement_type=MeasurementType.SPO2,
                direction="below",
                warning=config.spo2_low_warning,
                critical=config.spo2_low_critical
            ),
        ])
