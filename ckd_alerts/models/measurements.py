"""
Measurement and symptom check-in models.

Data points are immutable once recorded. Values are held in the canonical
unit for their type (see units.py).
"""

import math
from datetime import datetime
from typing import Dict, List, Optional, Any, Union
from dataclasses import dataclass, field
from enum import Enum
from uuid import uuid4

from .units import canonical_unit, to_canonical


class MeasurementType(Enum):
    """Physiologic measurement types accepted by the platform."""
    WEIGHT = "WEIGHT"
    BP_SYSTOLIC = "BP_SYSTOLIC"
    BP_DIASTOLIC = "BP_DIASTOLIC"
    SPO2 = "SPO2"
    HEART_RATE = "HEART_RATE"
    # Body composition (smart scales)
    FAT_FREE_MASS = "FAT_FREE_MASS"
    FAT_RATIO = "FAT_RATIO"
    FAT_MASS = "FAT_MASS"
    MUSCLE_MASS = "MUSCLE_MASS"
    HYDRATION = "HYDRATION"


class MeasurementSource(Enum):
    """Origin of a measurement."""
    MANUAL = "manual"
    WITHINGS = "withings"


class SymptomSeverity(Enum):
    NONE = 0
    MILD = 1
    MODERATE = 2
    SEVERE = 3


class MeasurementValidationError(ValueError):
    """Raised when a measurement or check-in is malformed."""
    pass


@dataclass(frozen=True)
class Measurement:
    """A single physiologic reading in canonical units."""
    measurement_id: str
    patient_id: str
    type: MeasurementType
    value: float
    timestamp: datetime
    source: MeasurementSource = MeasurementSource.MANUAL
    unit: Optional[str] = None
    external_id: Optional[str] = None

    def __post_init__(self):
        if not self.patient_id:
            raise MeasurementValidationError("Measurement requires a patient_id")
        if not isinstance(self.type, MeasurementType):
            raise MeasurementValidationError(f"Invalid measurement type: {self.type!r}")
        if isinstance(self.value, bool) or not isinstance(self.value, (int, float)) \
                or not math.isfinite(self.value):
            raise MeasurementValidationError(f"Measurement value must be a finite number: {self.value!r}")
        if self.timestamp.tzinfo is None:
            raise MeasurementValidationError("Measurement timestamp must be timezone-aware")
        if self.unit is None:
            object.__setattr__(self, "unit", canonical_unit(self.type))

    @classmethod
    def from_reading(
        cls,
        patient_id: str,
        measurement_type: MeasurementType,
        value: float,
        unit: str,
        timestamp: datetime,
        source: MeasurementSource = MeasurementSource.MANUAL,
        external_id: Optional[str] = None,
        measurement_id: Optional[str] = None
    ) -> 'Measurement':
        """Build a measurement from a raw reading, converting to the canonical unit."""
        return cls(
            measurement_id=measurement_id or str(uuid4()),
            patient_id=patient_id,
            type=measurement_type,
            value=to_canonical(measurement_type, value, unit),
            timestamp=timestamp,
            source=source,
            unit=canonical_unit(measurement_type),
            external_id=external_id
        )

    @property
    def dedup_key(self) -> Optional[tuple]:
        """(source, external_id) uniqueness key, if the source supplied one."""
        if self.external_id is None:
            return None
        return (self.source.value, self.external_id)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage."""
        return {
            "measurement_id": self.measurement_id,
            "patient_id": self.patient_id,
            "type": self.type.value,
            "value": self.value,
            "unit": self.unit,
            "timestamp": self.timestamp.isoformat(),
            "source": self.source.value,
            "external_id": self.external_id
        }


@dataclass(frozen=True)
class SymptomEntry:
    """Severity of one reported symptom, with optional detail."""
    severity: SymptomSeverity
    location: Optional[str] = None
    at_rest: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"severity": self.severity.value}
        if self.location is not None:
            data["location"] = self.location
        if self.at_rest is not None:
            data["at_rest"] = self.at_rest
        return data


KNOWN_SYMPTOMS = ("edema", "fatigue", "shortness_of_breath", "nausea", "appetite", "pain")


@dataclass(frozen=True)
class SymptomCheckin:
    """Patient-reported symptom check-in."""
    checkin_id: str
    patient_id: str
    timestamp: datetime
    symptoms: Dict[str, SymptomEntry] = field(default_factory=dict)
    notes: Optional[str] = None

    def __post_init__(self):
        if not self.patient_id:
            raise MeasurementValidationError("Check-in requires a patient_id")
        if self.timestamp.tzinfo is None:
            raise MeasurementValidationError("Check-in timestamp must be timezone-aware")
        unknown = set(self.symptoms) - set(KNOWN_SYMPTOMS)
        if unknown:
            raise MeasurementValidationError(f"Unknown symptoms: {sorted(unknown)}")

    def reported_symptoms(self) -> List[str]:
        """Symptoms with a severity above NONE."""
        return [name for name, entry in self.symptoms.items()
                if entry.severity != SymptomSeverity.NONE]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "checkin_id": self.checkin_id,
            "patient_id": self.patient_id,
            "timestamp": self.timestamp.isoformat(),
            "symptoms": {name: entry.to_dict() for name, entry in self.symptoms.items()},
            "notes": self.notes
        }


DataPoint = Union[Measurement, SymptomCheckin]
