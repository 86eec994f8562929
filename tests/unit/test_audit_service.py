import pytest
from datetime import datetime, timezone
from uuid import UUID

from ckd_alerts.models.alerts import (
    Alert, AlertSeverity, MeasurementThresholdInputs, MeasurementSnapshot
)
from ckd_alerts.services.audit import AuditLogger, AuditEntry, AuditAction, AuditException


def make_alert():
    return Alert(
        alert_id="alert-1",
        patient_id="P001",
        rule_id="bp_systolic_high",
        rule_name="High Systolic Blood Pressure",
        severity=AlertSeverity.WARNING,
        inputs=MeasurementThresholdInputs(
            measurement=MeasurementSnapshot("m-1", 182, datetime(2026, 1, 1, tzinfo=timezone.utc)),
            threshold=180,
            critical_threshold=200,
            direction="above",
            unit="mmHg"
        ),
        triggered_at=datetime(2026, 1, 1, tzinfo=timezone.utc)
    )


class TestAuditLogger:
    """Unit tests for AuditLogger service."""

    def setup_method(self):
        """Set up test fixtures before each test method."""
        self.audit_logger = AuditLogger(salt="unit_salt")

    def test_create_audit_entry_basic(self):
        """Test creating a basic audit entry."""
        entry = self.audit_logger.create_audit_entry(
            action=AuditAction.ALERT_ACKNOWLEDGED,
            actor_id="clin-1",
            resource_type="alert",
            resource_id="alert-1",
            patient_id="P001"
        )

        assert isinstance(entry, AuditEntry)
        assert isinstance(entry.audit_id, UUID)
        assert entry.action == AuditAction.ALERT_ACKNOWLEDGED
        assert entry.actor_id == "clin-1"
        assert entry.patient_id == "P001"
        assert entry.timestamp.tzinfo is not None

    def test_alert_created_entry_serializes_inputs(self):
        """Alert creation records the literal rule inputs."""
        entry = self.audit_logger.audit_alert_created(make_alert())

        assert entry.actor_id == "system"
        assert entry.details["severity"] == "WARNING"
        assert entry.details["inputs"]["measurement"]["value"] == 182
        assert entry.details["inputs"]["measurement"]["timestamp"] == "2026-01-01T00:00:00+00:00"

    def test_entries_filtered_by_resource_and_action(self):
        alert = make_alert()
        self.audit_logger.audit_alert_created(alert)
        self.audit_logger.audit_alert_acknowledged(alert, "clin-1")
        self.audit_logger.create_audit_entry(AuditAction.ALERT_CREATED, "system", "alert", "other")

        assert len(self.audit_logger.entries(resource_id="alert-1")) == 2
        acks = self.audit_logger.entries(action=AuditAction.ALERT_ACKNOWLEDGED)
        assert [e.actor_id for e in acks] == ["clin-1"]

    def test_missing_actor_rejected(self):
        with pytest.raises(AuditException):
            self.audit_logger.create_audit_entry(AuditAction.ALERT_CREATED, "", "alert", "alert-1")

    def test_patient_id_hashing_consistent(self):
        """Patient hashes are stable and do not leak the ID."""
        first = self.audit_logger._hash_patient_id("P001")
        second = self.audit_logger._hash_patient_id("P001")

        assert first == second
        assert len(first) == 16
        assert "P001" not in first
        assert first != self.audit_logger._hash_patient_id("P002")

    def test_json_serialization_of_nested_values(self):
        data = {"when": datetime(2026, 1, 1, tzinfo=timezone.utc), "levels": (1, 2),
                "severity": AlertSeverity.CRITICAL, "obj": object}
        result = self.audit_logger._ensure_json_serializable(data)

        assert result["when"] == "2026-01-01T00:00:00+00:00"
        assert result["levels"] == [1, 2]
        assert result["severity"] == "CRITICAL"
        assert isinstance(result["obj"], str)

    def test_to_dict(self):
        entry = self.audit_logger.audit_alert_escalated(make_alert().copy(escalation_level=1), 0)
        data = entry.to_dict()

        assert data["action"] == "ALERT_ESCALATED"
        assert data["details"]["previous_level"] == 0
        assert data["details"]["escalation_level"] == 1
