"""
Alert lifecycle: clinician acknowledge/dismiss transitions and read access.

Transitions are written with compare-and-set. A version conflict causes one
re-read and re-decision; a second conflict is raised to the caller.
"""

import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional
from dataclasses import dataclass

from ..models.alerts import (
    Alert, AlertStatus, AlertNotFoundError, AlertAccessDeniedError,
    InvalidAlertTransitionError, ConcurrentStateConflictError
)
from ..models.notifications import NotificationLog
from .alert_store import InMemoryAlertStore, NotificationLogStore
from .alert_metrics import AlertEngineMetrics
from .audit import AuditLogger
from .collaborators import CareTeamDirectory

DEFAULT_PAGE_SIZE = 50


@dataclass(frozen=True)
class TransitionResult:
    """Outcome of acknowledge/dismiss. changed is False for idempotent no-ops."""
    alert: Alert
    changed: bool


class AlertLifecycleService:
    """Applies clinician actions to alerts."""

    def __init__(
        self,
        store: InMemoryAlertStore,
        log_store: NotificationLogStore,
        directory: CareTeamDirectory,
        audit_logger: Optional[AuditLogger] = None,
        metrics: Optional[AlertEngineMetrics] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.store = store
        self.log_store = log_store
        self.directory = directory
        self.audit_logger = audit_logger
        self.metrics = metrics
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.logger = logging.getLogger(__name__)

    async def acknowledge(self, alert_id: str, clinician_id: str) -> TransitionResult:
        """
        Acknowledge an OPEN alert.

        Acknowledging an already acknowledged alert is a no-op that keeps the
        original acknowledged_at and acknowledged_by.

        Raises:
            AlertNotFoundError: unknown alert
            AlertAccessDeniedError: clinician not actively enrolled with the patient
            InvalidAlertTransitionError: alert was dismissed
            ConcurrentStateConflictError: alert kept changing underneath the write
        """
        def decide(current: Alert) -> Optional[Alert]:
            if current.status == AlertStatus.ACKNOWLEDGED:
                return None
            if current.status == AlertStatus.DISMISSED:
                raise InvalidAlertTransitionError(f"Alert {alert_id} is dismissed and cannot be acknowledged")
            return current.copy(
                status=AlertStatus.ACKNOWLEDGED,
                acknowledged_by=clinician_id,
                acknowledged_at=self._clock()
            )

        result = await self._transition(alert_id, clinician_id, "acknowledge", decide)
        if result.changed:
            self.logger.info(f"Alert {alert_id} acknowledged by {clinician_id}")
            self._audit(lambda: self.audit_logger.audit_alert_acknowledged(result.alert, clinician_id))
        return result

    async def dismiss(self, alert_id: str, clinician_id: str) -> TransitionResult:
        """Dismiss an OPEN or ACKNOWLEDGED alert. Dismissing twice is a no-op."""
        previous = {}

        def decide(current: Alert) -> Optional[Alert]:
            if current.status == AlertStatus.DISMISSED:
                return None
            previous["status"] = current.status
            return current.copy(
                status=AlertStatus.DISMISSED,
                dismissed_by=clinician_id,
                dismissed_at=self._clock()
            )

        result = await self._transition(alert_id, clinician_id, "dismiss", decide)
        if result.changed:
            self.logger.info(f"Alert {alert_id} dismissed by {clinician_id}")
            self._audit(lambda: self.audit_logger.audit_alert_dismissed(
                result.alert, clinician_id, previous.get("status")
            ))
        return result

    async def _transition(self, alert_id: str, clinician_id: str, operation: str,
                          decide: Callable[[Alert], Optional[Alert]]) -> TransitionResult:
        for attempt in range(2):
            current = await self.store.get(alert_id)
            if current is None:
                raise AlertNotFoundError(f"Alert {alert_id} not found")

            if attempt == 0 and not await self.directory.is_actively_enrolled(current.patient_id, clinician_id):
                raise AlertAccessDeniedError(
                    f"Clinician {clinician_id} is not actively enrolled with the alert's patient"
                )

            updated = decide(current)
            if updated is None:
                return TransitionResult(alert=current, changed=False)

            try:
                stored = await self.store.compare_and_set(alert_id, current.version, updated)
            except ConcurrentStateConflictError:
                if self.metrics:
                    self.metrics.record_conflict(operation)
                if attempt == 1:
                    self.logger.warning(f"Giving up {operation} on alert {alert_id} after repeated conflicts")
                    raise
                self.logger.info(f"Conflict on {operation} for alert {alert_id}, re-reading")
                continue

            if self.metrics:
                self.metrics.record_transition(f"{current.status.value}->{stored.status.value}")
            return TransitionResult(alert=stored, changed=True)

        raise ConcurrentStateConflictError(alert_id, -1)

    def _audit(self, record: Callable):
        if not self.audit_logger:
            return
        try:
            record()
        except Exception as e:
            self.logger.error(f"Failed to audit alert transition: {str(e)}")

    async def get_alert(self, alert_id: str) -> Alert:
        alert = await self.store.get(alert_id)
        if alert is None:
            raise AlertNotFoundError(f"Alert {alert_id} not found")
        return alert

    async def list_alerts_for_patient(self, patient_id: str, status: Optional[AlertStatus] = None,
                                      limit: int = DEFAULT_PAGE_SIZE, offset: int = 0) -> List[Alert]:
        """Alerts for one patient, newest first."""
        return await self.store.list_by_patient(patient_id, status, limit, offset)

    async def list_alerts_for_clinician(self, clinician_id: str, status: Optional[AlertStatus] = None,
                                        limit: int = DEFAULT_PAGE_SIZE, offset: int = 0) -> List[Alert]:
        """Worklist across the clinician's active patients, most severe first, then newest."""
        patient_ids = await self.directory.get_patients_for_clinician(clinician_id)
        if not patient_ids:
            return []
        return await self.store.list_for_patients(patient_ids, status, limit, offset)

    async def list_notification_logs(self, alert_id: str) -> List[NotificationLog]:
        return await self.log_store.list_for_alert(alert_id)
