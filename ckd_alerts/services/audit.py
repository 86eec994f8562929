import os
import logging
import hashlib
from datetime import datetime, timezone
from typing import Dict, List, Optional, Any, Callable
from dataclasses import dataclass, field
from uuid import uuid4, UUID
from enum import Enum

from ..models.alerts import Alert
from ..models.notifications import NotificationLog


class AuditAction(Enum):
    ALERT_CREATED = "ALERT_CREATED"
    ALERT_ACKNOWLEDGED = "ALERT_ACKNOWLEDGED"
    ALERT_DISMISSED = "ALERT_DISMISSED"
    ALERT_ESCALATED = "ALERT_ESCALATED"
    NOTIFICATION_DISPATCHED = "NOTIFICATION_DISPATCHED"


SYSTEM_ACTOR = "system"


@dataclass(frozen=True)
class AuditEntry:
    audit_id: UUID
    action: AuditAction
    actor_id: str
    resource_type: str
    resource_id: str
    patient_id: Optional[str]
    timestamp: datetime
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert audit entry to dictionary for storage."""
        return {
            "audit_id": str(self.audit_id),
            "action": self.action.value,
            "actor_id": self.actor_id,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "patient_id": self.patient_id,
            "timestamp": self.timestamp.isoformat(),
            "details": self.details
        }


class AuditException(Exception):
    """Exception raised when audit operations fail."""
    pass


class AuditLogger:
    """
    Audit logging service that keeps an immutable trail of alert actions.

    - Every alert state change and notification attempt is audited
    - Audit entries are immutable
    - Patient IDs are hashed for privacy in logs
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None, salt: Optional[str] = None):
        self.logger = logging.getLogger(__name__)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._salt = salt or os.getenv("CKD_AUDIT_SALT", "ckd_alerts_audit_salt")
        self._entries: List[AuditEntry] = []

    def create_audit_entry(
        self,
        action: AuditAction,
        actor_id: str,
        resource_type: str,
        resource_id: str,
        patient_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ) -> AuditEntry:
        """
        Create and retain an audit entry.

        Args:
            action: What happened
            actor_id: Clinician ID, or "system" for engine actions
            resource_type: Kind of record affected ("alert", "notification")
            resource_id: ID of the record affected
            patient_id: Patient the record belongs to
            details: Extra context, made JSON serializable

        Returns:
            The stored AuditEntry
        """
        if not actor_id:
            raise AuditException("Audit entry must specify actor_id")
        if not resource_id:
            raise AuditException("Audit entry must specify resource_id")

        try:
            entry = AuditEntry(
                audit_id=uuid4(),
                action=action,
                actor_id=actor_id,
                resource_type=resource_type,
                resource_id=resource_id,
                patient_id=patient_id,
                timestamp=self._clock(),
                details=self._ensure_json_serializable(details or {})
            )
        except Exception as e:
            self.logger.error(f"Failed to create audit entry: {str(e)}")
            raise AuditException(f"Audit entry creation failed: {str(e)}") from e

        self._entries.append(entry)

        patient_hash = self._hash_patient_id(patient_id) if patient_id else "N/A"
        self.logger.info(
            f"Audit entry created - ID: {entry.audit_id}, Action: {action.value}, "
            f"Resource: {resource_type}/{resource_id}, Patient: {patient_hash}, Actor: {actor_id}"
        )
        return entry

    def audit_alert_created(self, alert: Alert) -> AuditEntry:
        return self.create_audit_entry(
            action=AuditAction.ALERT_CREATED,
            actor_id=SYSTEM_ACTOR,
            resource_type="alert",
            resource_id=alert.alert_id,
            patient_id=alert.patient_id,
            details={
                "rule_id": alert.rule_id,
                "severity": alert.severity,
                "inputs": alert.inputs.to_dict()
            }
        )

    def audit_alert_acknowledged(self, alert: Alert, clinician_id: str) -> AuditEntry:
        return self.create_audit_entry(
            action=AuditAction.ALERT_ACKNOWLEDGED,
            actor_id=clinician_id,
            resource_type="alert",
            resource_id=alert.alert_id,
            patient_id=alert.patient_id,
            details={"escalation_level": alert.escalation_level}
        )

    def audit_alert_dismissed(self, alert: Alert, clinician_id: str, previous_status) -> AuditEntry:
        return self.create_audit_entry(
            action=AuditAction.ALERT_DISMISSED,
            actor_id=clinician_id,
            resource_type="alert",
            resource_id=alert.alert_id,
            patient_id=alert.patient_id,
            details={"previous_status": previous_status}
        )

    def audit_alert_escalated(self, alert: Alert, previous_level: int) -> AuditEntry:
        return self.create_audit_entry(
            action=AuditAction.ALERT_ESCALATED,
            actor_id=SYSTEM_ACTOR,
            resource_type="alert",
            resource_id=alert.alert_id,
            patient_id=alert.patient_id,
            details={
                "previous_level": previous_level,
                "escalation_level": alert.escalation_level,
                "severity": alert.severity
            }
        )

    def audit_notification(self, row: NotificationLog) -> AuditEntry:
        return self.create_audit_entry(
            action=AuditAction.NOTIFICATION_DISPATCHED,
            actor_id=SYSTEM_ACTOR,
            resource_type="notification",
            resource_id=row.log_id,
            patient_id=row.patient_id,
            details={
                "alert_id": row.alert_id,
                "clinician_id": row.clinician_id,
                "status": row.status,
                "escalation_level": row.escalation_level,
                "error_message": row.error_message
            }
        )

    def entries(self, resource_id: Optional[str] = None,
                action: Optional[AuditAction] = None) -> List[AuditEntry]:
        """Audit trail, optionally filtered, in creation order."""
        return [e for e in self._entries
                if (resource_id is None or e.resource_id == resource_id)
                and (action is None or e.action == action)]

    def _ensure_json_serializable(self, obj: Any) -> Any:
        """
        Ensure all values in the object are JSON serializable.

        Args:
            obj: Object to make JSON serializable

        Returns:
            JSON serializable version of the object
        """
        if isinstance(obj, dict):
            return {key: self._ensure_json_serializable(value) for key, value in obj.items()}
        elif isinstance(obj, (list, tuple)):
            return [self._ensure_json_serializable(item) for item in obj]
        elif isinstance(obj, datetime):
            return obj.isoformat()
        elif isinstance(obj, UUID):
            return str(obj)
        elif isinstance(obj, Enum):
            return obj.value
        elif obj is None or isinstance(obj, (str, int, float, bool)):
            return obj
        else:
            return str(obj)

    def _hash_patient_id(self, patient_id: str) -> str:
        """
        Create a privacy-preserving hash of patient ID for logging.

        Args:
            patient_id: The patient ID to hash

        Returns:
            Hashed patient ID for secure logging
        """
        return hashlib.sha256(f"{self._salt}{patient_id}".encode()).hexdigest()[:16]
