"""
Global pytest configuration for the CKD alert engine.

Shared fixtures: a controllable clock, mock Redis, audit logger, and
builders for measurements and a fully wired in-memory engine.
"""

import pytest
from datetime import datetime, timezone, timedelta
from unittest.mock import AsyncMock

from prometheus_client import CollectorRegistry

from ckd_alerts.models import (
    Measurement, MeasurementType, MeasurementSource, ClinicianContact
)
from ckd_alerts.services.alert_engine import AlertEngine
from ckd_alerts.services.alert_engine_config import EnvironmentConfigBuilder
from ckd_alerts.services.alert_metrics import AlertEngineMetrics
from ckd_alerts.services.audit import AuditLogger
from ckd_alerts.services.collaborators import InMemoryMeasurementRepository, InMemoryCareTeamDirectory
from ckd_alerts.services.email_transport import RecordingEmailTransport
from ckd_alerts.services.preferences import InMemoryPreferenceStore


T0 = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def pytest_collection_modifyitems(config, items):
    """Modify test collection to add automatic markers."""
    for item in items:
        if "integration" in item.nodeid:
            item.add_marker(pytest.mark.integration)
        if "unit" in item.nodeid:
            item.add_marker(pytest.mark.unit)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def mock_redis():
    """Mock Redis client for testing."""
    mock = AsyncMock()
    mock.get.return_value = None
    mock.set.return_value = True
    mock.delete.return_value = 1
    mock.eval.return_value = 1
    return mock


@pytest.fixture
def audit_logger(clock):
    return AuditLogger(clock=clock, salt="test_salt")


@pytest.fixture
def metrics():
    return AlertEngineMetrics(CollectorRegistry())


@pytest.fixture
def make_measurement():
    """Factory for canonical-unit measurements."""
    counter = {"n": 0}

    def _make(value, timestamp=T0, measurement_type=MeasurementType.WEIGHT, patient_id="patient-1",
              external_id=None):
        counter["n"] += 1
        return Measurement(
            measurement_id=f"m-{counter['n']}",
            patient_id=patient_id,
            type=measurement_type,
            value=value,
            timestamp=timestamp,
            source=MeasurementSource.MANUAL,
            external_id=external_id
        )

    return _make


@pytest.fixture
def primary_clinician():
    return ClinicianContact("clin-primary", "Dr. Ada Okafor", "ada@clinic.test", is_primary=True)


@pytest.fixture
def secondary_clinician():
    return ClinicianContact("clin-second", "Dr. Lee Park", "lee@clinic.test", is_primary=False)


@pytest.fixture
def directory(primary_clinician, secondary_clinician):
    directory = InMemoryCareTeamDirectory()
    directory.add_patient("patient-1", "Jordan Rivera")
    directory.enroll("patient-1", primary_clinician)
    directory.enroll("patient-1", secondary_clinician)
    return directory


@pytest.fixture
def transport():
    return RecordingEmailTransport()


@pytest.fixture
def preference_store():
    return InMemoryPreferenceStore()


@pytest.fixture
def engine_config():
    return EnvironmentConfigBuilder.testing_config()


@pytest.fixture
def engine(engine_config, directory, preference_store, transport, audit_logger, metrics, clock):
    """Fully wired engine with in-memory collaborators and inline dispatch."""
    return AlertEngine(
        config=engine_config,
        repository=InMemoryMeasurementRepository(),
        directory=directory,
        preference_store=preference_store,
        transport=transport,
        audit_logger=audit_logger,
        metrics=metrics,
        clock=clock
    )
