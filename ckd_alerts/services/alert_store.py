"""
Alert state and notification log storage.

The alert store is the single writer of alert state. Every mutation goes
through compare_and_set keyed by (alert_id, version), and creation is atomic
with respect to the (patient, rule) open index so that at most one OPEN
alert exists per pair. Callers always receive copies.
"""

import asyncio
import logging
from datetime import datetime
from typing import Dict, List, Optional, Tuple, Iterable

from ..models.alerts import (
    Alert, AlertStatus, ConcurrentStateConflictError, AlertNotFoundError,
    InvalidAlertTransitionError
)
from ..models.notifications import NotificationLog, NotificationStatus

logger = logging.getLogger(__name__)


class InMemoryAlertStore:
    """Alert state store (replace with database in production)."""

    def __init__(self):
        self._alerts: Dict[str, Alert] = {}
        self._open_index: Dict[Tuple[str, str], str] = {}
        self._order: List[str] = []
        self._mutex = asyncio.Lock()

    async def create_if_no_open(self, alert: Alert) -> Tuple[Alert, bool]:
        """
        Insert an alert unless one is already OPEN for its (patient, rule).

        Returns:
            (stored alert, True) when created, or (existing open alert, False)
        """
        if alert.status != AlertStatus.OPEN:
            raise InvalidAlertTransitionError("New alerts must be OPEN")

        key = (alert.patient_id, alert.rule_id)
        async with self._mutex:
            existing_id = self._open_index.get(key)
            if existing_id is not None:
                return self._alerts[existing_id].copy(), False

            if alert.alert_id in self._alerts:
                raise InvalidAlertTransitionError(f"Alert {alert.alert_id} already exists")

            stored = alert.copy(version=1)
            self._alerts[stored.alert_id] = stored
            self._open_index[key] = stored.alert_id
            self._order.append(stored.alert_id)
            return stored.copy(), True

    async def get(self, alert_id: str) -> Optional[Alert]:
        alert = self._alerts.get(alert_id)
        return alert.copy() if alert else None

    async def compare_and_set(self, alert_id: str, expected_version: int, updated: Alert) -> Alert:
        """
        Replace an alert if its stored version still equals expected_version.

        Raises:
            AlertNotFoundError: unknown alert id
            ConcurrentStateConflictError: stored version differs
            InvalidAlertTransitionError: the update breaks a lifecycle invariant
        """
        async with self._mutex:
            current = self._alerts.get(alert_id)
            if current is None:
                raise AlertNotFoundError(f"Alert {alert_id} not found")
            if current.version != expected_version:
                raise ConcurrentStateConflictError(alert_id, expected_version, current.version)

            self._check_update(current, updated)

            stored = updated.copy(version=current.version + 1)
            self._alerts[alert_id] = stored
            if current.is_open and not stored.is_open:
                self._open_index.pop((stored.patient_id, stored.rule_id), None)
            return stored.copy()

    def _check_update(self, current: Alert, updated: Alert):
        if updated.alert_id != current.alert_id or updated.patient_id != current.patient_id \
                or updated.rule_id != current.rule_id:
            raise InvalidAlertTransitionError("Alert identity fields are immutable")
        if not current.is_open and updated.is_open:
            raise InvalidAlertTransitionError(f"Alert {current.alert_id} cannot return to OPEN")
        if updated.escalation_level < current.escalation_level:
            raise InvalidAlertTransitionError(f"Alert {current.alert_id} escalation level cannot decrease")
        if updated.escalation_level != current.escalation_level and not current.is_open:
            raise InvalidAlertTransitionError(
                f"Alert {current.alert_id} is {current.status.value} and cannot escalate"
            )

    async def record_notified(self, alert_id: str, notified_at: datetime) -> Optional[Alert]:
        """Advance last_notified_at. Never moves it backwards."""
        async with self._mutex:
            current = self._alerts.get(alert_id)
            if current is None:
                return None
            if current.last_notified_at is not None and current.last_notified_at >= notified_at:
                return current.copy()
            stored = current.copy(last_notified_at=notified_at, version=current.version + 1)
            self._alerts[alert_id] = stored
            return stored.copy()

    async def list_open(self) -> List[Alert]:
        """Snapshot of all OPEN alerts, oldest first."""
        return [self._alerts[alert_id].copy() for alert_id in self._order
                if self._alerts[alert_id].is_open]

    async def list_by_patient(self, patient_id: str, status: Optional[AlertStatus] = None,
                              limit: int = 50, offset: int = 0) -> List[Alert]:
        """Alerts for one patient, newest first."""
        alerts = [a for a in self._alerts.values()
                  if a.patient_id == patient_id and (status is None or a.status == status)]
        alerts.sort(key=lambda a: a.triggered_at, reverse=True)
        return [a.copy() for a in alerts[offset:offset + limit]]

    async def list_for_patients(self, patient_ids: Iterable[str], status: Optional[AlertStatus] = None,
                                limit: int = 50, offset: int = 0) -> List[Alert]:
        """Alerts across patients, most severe first, then newest first."""
        wanted = set(patient_ids)
        alerts = [a for a in self._alerts.values()
                  if a.patient_id in wanted and (status is None or a.status == status)]
        alerts.sort(key=lambda a: (a.severity.rank, a.triggered_at), reverse=True)
        return [a.copy() for a in alerts[offset:offset + limit]]

    def __len__(self) -> int:
        return len(self._alerts)


class NotificationLogStore:
    """Append-only notification log (replace with database in production)."""

    def __init__(self):
        self._rows: List[NotificationLog] = []

    async def append(self, row: NotificationLog) -> NotificationLog:
        self._rows.append(row)
        logger.debug(f"Notification log {row.log_id} recorded: {row.status.value} for alert {row.alert_id}")
        return row

    async def list_for_alert(self, alert_id: str) -> List[NotificationLog]:
        """Rows for an alert in insertion order."""
        return [row for row in self._rows if row.alert_id == alert_id]

    async def last_sent(self, clinician_id: str, patient_id: str, since: datetime) -> Optional[NotificationLog]:
        """Most recent SENT row for a clinician and patient at or after `since`."""
        for row in reversed(self._rows):
            if row.clinician_id == clinician_id and row.patient_id == patient_id \
                    and row.status == NotificationStatus.SENT and row.sent_at >= since:
                return row
        return None
