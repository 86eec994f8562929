from .units import UnsupportedUnitError, to_canonical, from_canonical, is_valid_unit, canonical_unit
from .measurements import (
    Measurement, MeasurementType, MeasurementSource, SymptomCheckin, SymptomEntry,
    SymptomSeverity, MeasurementValidationError, DataPoint
)
from .alerts import (
    Alert, AlertSeverity, AlertStatus, AlertInputs, WeightGainInputs, MeasurementThresholdInputs,
    UnknownRuleInputs, MeasurementSnapshot, parse_alert_inputs,
    AlertEngineError, RuleEvaluationError, InvalidAlertError, AlertNotFoundError,
    AlertAccessDeniedError, InvalidAlertTransitionError, ConcurrentStateConflictError,
    NotificationTransportError, DuplicateMeasurementError
)
from .notifications import (
    NotificationPreference, NotificationLog, NotificationStatus, NotificationChannel, ClinicianContact
)

__all__ = [
    'UnsupportedUnitError',
    'to_canonical',
    'from_canonical',
    'is_valid_unit',
    'canonical_unit',
    'Measurement',
    'MeasurementType',
    'MeasurementSource',
    'SymptomCheckin',
    'SymptomEntry',
    'SymptomSeverity',
    'MeasurementValidationError',
    'DataPoint',
    'Alert',
    'AlertSeverity',
    'AlertStatus',
    'AlertInputs',
    'WeightGainInputs',
    'MeasurementThresholdInputs',
    'UnknownRuleInputs',
    'MeasurementSnapshot',
    'parse_alert_inputs',
    'AlertEngineError',
    'RuleEvaluationError',
    'InvalidAlertError',
    'AlertNotFoundError',
    'AlertAccessDeniedError',
    'InvalidAlertTransitionError',
    'ConcurrentStateConflictError',
    'NotificationTransportError',
    'DuplicateMeasurementError',
    'NotificationPreference',
    'NotificationLog',
    'NotificationStatus',
    'NotificationChannel',
    'ClinicianContact'
]
