"""
Unit conversion for patient measurements.

Measurements are stored in one canonical unit per type so that rule
thresholds can be compared directly. Conversions here are used on ingestion
(to canonical) and for display (from canonical).
"""

from typing import Dict


class UnsupportedUnitError(ValueError):
    """Raised when a unit is not accepted for a measurement type."""
    pass


LBS_TO_KG = 0.453592

# Canonical unit per measurement type value
CANONICAL_UNITS: Dict[str, str] = {
    "WEIGHT": "kg",
    "BP_SYSTOLIC": "mmHg",
    "BP_DIASTOLIC": "mmHg",
    "SPO2": "%",
    "HEART_RATE": "bpm",
    "FAT_FREE_MASS": "kg",
    "FAT_RATIO": "%",
    "FAT_MASS": "kg",
    "MUSCLE_MASS": "kg",
    "HYDRATION": "kg",
}

_MASS_TYPES = {"WEIGHT", "FAT_FREE_MASS", "FAT_MASS", "MUSCLE_MASS", "HYDRATION"}
_POUND_ALIASES = {"lb", "lbs", "pounds"}


def _type_key(measurement_type) -> str:
    return getattr(measurement_type, "value", measurement_type)


def canonical_unit(measurement_type) -> str:
    """Return the canonical storage unit for a measurement type."""
    key = _type_key(measurement_type)
    if key not in CANONICAL_UNITS:
        raise UnsupportedUnitError(f"Unknown measurement type: {key}")
    return CANONICAL_UNITS[key]


def is_valid_unit(measurement_type, unit: str) -> bool:
    key = _type_key(measurement_type)
    if key not in CANONICAL_UNITS:
        return False
    normalized = unit.strip().lower()
    if normalized == CANONICAL_UNITS[key].lower():
        return True
    return key in _MASS_TYPES and normalized in _POUND_ALIASES


def to_canonical(measurement_type, value: float, unit: str) -> float:
    """
    Convert a reading to the canonical unit for its type.

    Args:
        measurement_type: MeasurementType (or its string value)
        value: Reading in the input unit
        unit: Input unit as reported by the source

    Returns:
        Value in the canonical unit, rounded to 4 decimals

    Raises:
        UnsupportedUnitError: If the unit is not accepted for the type
    """
    key = _type_key(measurement_type)
    if not is_valid_unit(key, unit):
        raise UnsupportedUnitError(f"Unit '{unit}' is not valid for {key}")

    if key in _MASS_TYPES and unit.strip().lower() in _POUND_ALIASES:
        return round(value * LBS_TO_KG, 4)
    return round(value, 4)


def from_canonical(measurement_type, value: float, target_unit: str) -> float:
    """Convert a canonical value to a display unit, rounded to 2 decimals."""
    key = _type_key(measurement_type)
    if not is_valid_unit(key, target_unit):
        raise UnsupportedUnitError(f"Unit '{target_unit}' is not valid for {key}")

    if key in _MASS_TYPES and target_unit.strip().lower() in _POUND_ALIASES:
        return round(value / LBS_TO_KG, 2)
    return round(value, 2)
