"""
Notification models: clinician preferences, contacts and the delivery log.
"""

from datetime import datetime
from typing import Dict, Optional, Any
from dataclasses import dataclass, asdict
from enum import Enum

from .alerts import AlertSeverity


class NotificationChannel(Enum):
    EMAIL = "EMAIL"


class NotificationStatus(Enum):
    """Outcome of a single delivery attempt."""
    SENT = "SENT"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


@dataclass(frozen=True)
class ClinicianContact:
    """Clinician enrolled with a patient, as reported by the care team directory."""
    clinician_id: str
    name: str
    email: str
    is_primary: bool = False


@dataclass
class NotificationPreference:
    """Per-clinician notification settings."""
    clinician_id: str
    email_enabled: bool = True
    notify_on_critical: bool = True
    notify_on_warning: bool = True
    notify_on_info: bool = False

    def allows_severity(self, severity: AlertSeverity) -> bool:
        if severity == AlertSeverity.CRITICAL:
            return self.notify_on_critical
        if severity == AlertSeverity.WARNING:
            return self.notify_on_warning
        return self.notify_on_info

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'NotificationPreference':
        return cls(**data)


@dataclass(frozen=True)
class NotificationLog:
    """One row per delivery attempt. Append-only."""
    log_id: str
    clinician_id: str
    patient_id: str
    alert_id: str
    channel: NotificationChannel
    status: NotificationStatus
    recipient: str
    subject: str
    sent_at: datetime
    escalation_level: int = 0
    attempt: int = 1
    error_message: Optional[str] = None
    message_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "log_id": self.log_id,
            "clinician_id": self.clinician_id,
            "patient_id": self.patient_id,
            "alert_id": self.alert_id,
            "channel": self.channel.value,
            "status": self.status.value,
            "recipient": self.recipient,
            "subject": self.subject,
            "sent_at": self.sent_at.isoformat(),
            "escalation_level": self.escalation_level,
            "attempt": self.attempt,
            "error_message": self.error_message,
            "message_id": self.message_id
        }
