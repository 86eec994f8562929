"""
Interfaces to the platform services the alert engine depends on, with
in-memory implementations used by tests and the demo.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from ..models.alerts import DuplicateMeasurementError
from ..models.measurements import Measurement, MeasurementType, SymptomCheckin
from ..models.notifications import ClinicianContact

logger = logging.getLogger(__name__)


class MeasurementRepository(ABC):
    """Append-only store of measurements and check-ins."""

    @abstractmethod
    async def insert_measurement(self, measurement: Measurement) -> Measurement:
        ...

    @abstractmethod
    async def get_measurements(self, patient_id: str, measurement_type: MeasurementType,
                               since: datetime) -> List[Measurement]:
        """Measurements at or after `since`, ordered by timestamp ascending."""

    @abstractmethod
    async def insert_checkin(self, checkin: SymptomCheckin) -> SymptomCheckin:
        ...

    @abstractmethod
    async def get_checkins(self, patient_id: str, since: datetime) -> List[SymptomCheckin]:
        ...


class CareTeamDirectory(ABC):
    """Enrollment lookups for patients and clinicians."""

    @abstractmethod
    async def get_active_clinicians(self, patient_id: str) -> List[ClinicianContact]:
        ...

    @abstractmethod
    async def is_actively_enrolled(self, patient_id: str, clinician_id: str) -> bool:
        ...

    @abstractmethod
    async def get_patient_name(self, patient_id: str) -> str:
        ...

    @abstractmethod
    async def get_patients_for_clinician(self, clinician_id: str) -> List[str]:
        ...


class InMemoryMeasurementRepository(MeasurementRepository):
    """Measurement store (replace with database in production)."""

    def __init__(self):
        self._measurements: Dict[str, List[Measurement]] = {}
        self._checkins: Dict[str, List[SymptomCheckin]] = {}
        self._external_ids: Dict[Tuple[str, str], str] = {}
        self._mutex = asyncio.Lock()

    async def insert_measurement(self, measurement: Measurement) -> Measurement:
        async with self._mutex:
            key = measurement.dedup_key
            if key is not None and key in self._external_ids:
                raise DuplicateMeasurementError(
                    f"Measurement {key[1]} from {key[0]} already recorded as {self._external_ids[key]}"
                )
            self._measurements.setdefault(measurement.patient_id, []).append(measurement)
            if key is not None:
                self._external_ids[key] = measurement.measurement_id
        return measurement

    async def get_measurements(self, patient_id: str, measurement_type: MeasurementType,
                               since: datetime) -> List[Measurement]:
        rows = [m for m in self._measurements.get(patient_id, [])
                if m.type == measurement_type and m.timestamp >= since]
        return sorted(rows, key=lambda m: m.timestamp)

    async def insert_checkin(self, checkin: SymptomCheckin) -> SymptomCheckin:
        self._checkins.setdefault(checkin.patient_id, []).append(checkin)
        return checkin

    async def get_checkins(self, patient_id: str, since: datetime) -> List[SymptomCheckin]:
        rows = [c for c in self._checkins.get(patient_id, []) if c.timestamp >= since]
        return sorted(rows, key=lambda c: c.timestamp)


class InMemoryCareTeamDirectory(CareTeamDirectory):
    """Enrollment directory (replace with enrollment service in production)."""

    def __init__(self):
        self._enrollments: Dict[str, Dict[str, Tuple[ClinicianContact, bool]]] = {}
        self._patient_names: Dict[str, str] = {}

    def add_patient(self, patient_id: str, name: str):
        self._patient_names[patient_id] = name

    def enroll(self, patient_id: str, clinician: ClinicianContact, active: bool = True):
        self._enrollments.setdefault(patient_id, {})[clinician.clinician_id] = (clinician, active)

    def discharge(self, patient_id: str, clinician_id: str):
        enrollment = self._enrollments.get(patient_id, {}).get(clinician_id)
        if enrollment:
            self._enrollments[patient_id][clinician_id] = (enrollment[0], False)

    async def get_active_clinicians(self, patient_id: str) -> List[ClinicianContact]:
        return [contact for contact, active in self._enrollments.get(patient_id, {}).values() if active]

    async def is_actively_enrolled(self, patient_id: str, clinician_id: str) -> bool:
        enrollment = self._enrollments.get(patient_id, {}).get(clinician_id)
        return bool(enrollment and enrollment[1])

    async def get_patient_name(self, patient_id: str) -> str:
        return self._patient_names.get(patient_id, patient_id)

    async def get_patients_for_clinician(self, clinician_id: str) -> List[str]:
        return [patient_id for patient_id, enrollments in self._enrollments.items()
                if clinician_id in enrollments and enrollments[clinician_id][1]]
