"""
Alert Models for CKD Remote Monitoring

This module defines the alert record, its lifecycle states, the literal rule
inputs captured at trigger time, and the exception taxonomy shared by the
alert engine components.
"""

from datetime import datetime
from typing import Dict, List, Optional, Any, Union
from dataclasses import dataclass, field, replace
from enum import Enum


class AlertSeverity(Enum):
    """Alert severity levels assigned by the rule catalog."""
    INFO = "INFO"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    AlertSeverity.INFO: 0,
    AlertSeverity.WARNING: 1,
    AlertSeverity.CRITICAL: 2,
}


class AlertStatus(Enum):
    """Lifecycle status of an alert. Nothing returns to OPEN."""
    OPEN = "OPEN"
    ACKNOWLEDGED = "ACKNOWLEDGED"
    DISMISSED = "DISMISSED"


class AlertEngineError(Exception):
    """Base class for alert engine failures."""
    pass


class RuleEvaluationError(AlertEngineError):
    """Raised by a rule on malformed history or an unexpected input."""

    def __init__(self, rule_id: str, message: str):
        super().__init__(f"Rule {rule_id} failed: {message}")
        self.rule_id = rule_id


class InvalidAlertError(AlertEngineError):
    """Raised when an alert record fails validation."""
    pass


class AlertNotFoundError(AlertEngineError):
    pass


class AlertAccessDeniedError(AlertEngineError):
    """Raised when a clinician is not actively enrolled with the alert's patient."""
    pass


class InvalidAlertTransitionError(AlertEngineError):
    pass


class ConcurrentStateConflictError(AlertEngineError):
    """Raised when a compare-and-set write finds a newer version."""

    def __init__(self, alert_id: str, expected_version: int, actual_version: Optional[int] = None):
        super().__init__(
            f"Alert {alert_id} changed concurrently "
            f"(expected version {expected_version}, found {actual_version})"
        )
        self.alert_id = alert_id
        self.expected_version = expected_version
        self.actual_version = actual_version


class NotificationTransportError(AlertEngineError):
    """Raised by email transports. Converted to a FAILED log row by the dispatcher."""
    pass


class DuplicateMeasurementError(AlertEngineError):
    """Raised when a (source, external_id) pair has already been recorded."""
    pass


@dataclass(frozen=True)
class MeasurementSnapshot:
    """Literal copy of a reading that contributed to a trigger."""
    measurement_id: str
    value: float
    timestamp: datetime

    @classmethod
    def of(cls, measurement) -> 'MeasurementSnapshot':
        return cls(
            measurement_id=measurement.measurement_id,
            value=measurement.value,
            timestamp=measurement.timestamp
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "measurement_id": self.measurement_id,
            "value": self.value,
            "timestamp": self.timestamp.isoformat()
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'MeasurementSnapshot':
        timestamp = data["timestamp"]
        if isinstance(timestamp, str):
            timestamp = datetime.fromisoformat(timestamp)
        return cls(
            measurement_id=data["measurement_id"],
            value=data["value"],
            timestamp=timestamp
        )


@dataclass(frozen=True)
class WeightGainInputs:
    """Inputs captured by the trailing-window weight gain rule."""
    measurements: List[MeasurementSnapshot]
    oldest_value: float
    newest_value: float
    delta: float
    threshold_kg: float
    critical_threshold_kg: float
    window_hours: int

    kind = "weight_gain"

    def describe(self) -> str:
        return (
            f"Weight increased by {self.delta:.2f} kg within {self.window_hours} hours "
            f"({self.oldest_value:.2f} kg to {self.newest_value:.2f} kg, "
            f"threshold {self.threshold_kg:.2f} kg)"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "measurements": [m.to_dict() for m in self.measurements],
            "oldest_value": self.oldest_value,
            "newest_value": self.newest_value,
            "delta": self.delta,
            "threshold_kg": self.threshold_kg,
            "critical_threshold_kg": self.critical_threshold_kg,
            "window_hours": self.window_hours
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WeightGainInputs':
        return cls(
            measurements=[MeasurementSnapshot.from_dict(m) for m in data.get("measurements", [])],
            oldest_value=data["oldest_value"],
            newest_value=data["newest_value"],
            delta=data["delta"],
            threshold_kg=data["threshold_kg"],
            critical_threshold_kg=data.get("critical_threshold_kg", data["threshold_kg"]),
            window_hours=data["window_hours"]
        )


@dataclass(frozen=True)
class MeasurementThresholdInputs:
    """Inputs captured by single-reading threshold rules."""
    measurement: MeasurementSnapshot
    threshold: float
    critical_threshold: float
    direction: str  # "above" or "below"
    unit: str = ""

    kind = "measurement_threshold"

    def describe(self) -> str:
        comparison = "at or above" if self.direction == "above" else "below"
        unit = f" {self.unit}" if self.unit else ""
        return (
            f"Reading of {self.measurement.value:g}{unit} is {comparison} "
            f"the threshold of {self.threshold:g}{unit}"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "measurement": self.measurement.to_dict(),
            "threshold": self.threshold,
            "critical_threshold": self.critical_threshold,
            "direction": self.direction,
            "unit": self.unit
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'MeasurementThresholdInputs':
        return cls(
            measurement=MeasurementSnapshot.from_dict(data["measurement"]),
            threshold=data["threshold"],
            critical_threshold=data.get("critical_threshold", data["threshold"]),
            direction=data["direction"],
            unit=data.get("unit", "")
        )


@dataclass(frozen=True)
class UnknownRuleInputs:
    """Raw inputs for a rule this build does not recognise."""
    raw: Dict[str, Any]

    kind = "unknown"

    def describe(self) -> str:
        return ", ".join(f"{key}={value}" for key, value in sorted(self.raw.items()))

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.raw)


AlertInputs = Union[WeightGainInputs, MeasurementThresholdInputs, UnknownRuleInputs]

_INPUT_PARSERS = {
    "weight_gain_48h": WeightGainInputs.from_dict,
    "bp_systolic_high": MeasurementThresholdInputs.from_dict,
    "bp_systolic_low": MeasurementThresholdInputs.from_dict,
    "spo2_low": MeasurementThresholdInputs.from_dict,
}


def parse_alert_inputs(rule_id: str, data: Dict[str, Any]) -> AlertInputs:
    """Rebuild typed inputs from their stored form. Unknown rules keep the raw mapping."""
    parser = _INPUT_PARSERS.get(rule_id)
    if parser is None:
        return UnknownRuleInputs(raw=dict(data))
    try:
        return parser(data)
    except (KeyError, TypeError, ValueError):
        return UnknownRuleInputs(raw=dict(data))


@dataclass
class Alert:
    """Clinical alert raised by a rule for one patient."""
    alert_id: str
    patient_id: str
    rule_id: str
    rule_name: str
    severity: AlertSeverity
    inputs: AlertInputs
    triggered_at: datetime
    status: AlertStatus = AlertStatus.OPEN
    summary_text: Optional[str] = None
    escalation_level: int = 0
    last_notified_at: Optional[datetime] = None
    escalated_at: Optional[datetime] = None
    acknowledged_by: Optional[str] = None
    acknowledged_at: Optional[datetime] = None
    dismissed_by: Optional[str] = None
    dismissed_at: Optional[datetime] = None
    version: int = 1

    def __post_init__(self):
        if self.inputs is None:
            raise InvalidAlertError(f"Alert {self.alert_id} requires the rule inputs that triggered it")
        if self.escalation_level < 0:
            raise InvalidAlertError(f"Alert {self.alert_id} has negative escalation level")
        if not self.rule_id:
            raise InvalidAlertError("Alert requires a rule_id")

    @property
    def is_open(self) -> bool:
        return self.status == AlertStatus.OPEN

    def details_text(self) -> str:
        """Human-readable detail line: stored summary, or a description of the inputs."""
        if self.summary_text:
            return self.summary_text
        return self.inputs.describe()

    def copy(self, **changes) -> 'Alert':
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage."""
        def _iso(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        return {
            "alert_id": self.alert_id,
            "patient_id": self.patient_id,
            "rule_id": self.rule_id,
            "rule_name": self.rule_name,
            "severity": self.severity.value,
            "status": self.status.value,
            "inputs": self.inputs.to_dict(),
            "summary_text": self.summary_text,
            "triggered_at": self.triggered_at.isoformat(),
            "escalation_level": self.escalation_level,
            "last_notified_at": _iso(self.last_notified_at),
            "escalated_at": _iso(self.escalated_at),
            "acknowledged_by": self.acknowledged_by,
            "acknowledged_at": _iso(self.acknowledged_at),
            "dismissed_by": self.dismissed_by,
            "dismissed_at": _iso(self.dismissed_at),
            "version": self.version
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Alert':
        def _dt(value):
            if value is None or isinstance(value, datetime):
                return value
            return datetime.fromisoformat(value)

        return cls(
            alert_id=data["alert_id"],
            patient_id=data["patient_id"],
            rule_id=data["rule_id"],
            rule_name=data["rule_name"],
            severity=AlertSeverity(data["severity"]),
            status=AlertStatus(data.get("status", "OPEN")),
            inputs=parse_alert_inputs(data["rule_id"], data["inputs"]),
            summary_text=data.get("summary_text"),
            triggered_at=_dt(data["triggered_at"]),
            escalation_level=data.get("escalation_level", 0),
            last_notified_at=_dt(data.get("last_notified_at")),
            escalated_at=_dt(data.get("escalated_at")),
            acknowledged_by=data.get("acknowledged_by"),
            acknowledged_at=_dt(data.get("acknowledged_at")),
            dismissed_by=data.get("dismissed_by"),
            dismissed_at=_dt(data.get("dismissed_at")),
            version=data.get("version", 1)
        )
