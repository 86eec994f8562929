"""
Clinician notification preferences: storage and the delivery gate.
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, Optional
from dataclasses import dataclass, fields, replace

from ..models.alerts import AlertSeverity
from ..models.notifications import NotificationPreference, NotificationChannel

logger = logging.getLogger(__name__)


class PreferenceStore(ABC):

    @abstractmethod
    async def get(self, clinician_id: str) -> Optional[NotificationPreference]:
        ...

    @abstractmethod
    async def save(self, preference: NotificationPreference) -> NotificationPreference:
        ...


class InMemoryPreferenceStore(PreferenceStore):
    """Preference store (replace with database in production)."""

    def __init__(self):
        self._preferences: Dict[str, NotificationPreference] = {}

    async def get(self, clinician_id: str) -> Optional[NotificationPreference]:
        preference = self._preferences.get(clinician_id)
        return replace(preference) if preference else None

    async def save(self, preference: NotificationPreference) -> NotificationPreference:
        self._preferences[preference.clinician_id] = replace(preference)
        return replace(preference)


@dataclass(frozen=True)
class PreferenceDecision:
    allowed: bool
    reason: Optional[str] = None


class NotificationPreferenceResolver:
    """Resolves a clinician's effective preferences and applies them to an alert."""

    def __init__(self, store: PreferenceStore):
        self.store = store

    async def resolve(self, clinician_id: str) -> NotificationPreference:
        """Stored preference, or the defaults when none is stored."""
        preference = await self.store.get(clinician_id)
        return preference or NotificationPreference(clinician_id=clinician_id)

    async def update(self, clinician_id: str, **changes) -> NotificationPreference:
        """Partial update. Fields left out (or None) keep their stored or default values."""
        allowed = {f.name for f in fields(NotificationPreference)} - {"clinician_id"}
        unknown = set(changes) - allowed
        if unknown:
            raise ValueError(f"Unknown preference fields: {sorted(unknown)}")

        current = await self.resolve(clinician_id)
        updated = replace(current, **{k: v for k, v in changes.items() if v is not None})
        saved = await self.store.save(updated)
        logger.info(f"Notification preferences updated for clinician {clinician_id}: {sorted(changes)}")
        return saved

    def evaluate(self, preference: NotificationPreference, severity: AlertSeverity,
                 channel: NotificationChannel = NotificationChannel.EMAIL) -> PreferenceDecision:
        if channel == NotificationChannel.EMAIL and not preference.email_enabled:
            return PreferenceDecision(False, "Clinician preferences: email notifications disabled")
        if not preference.allows_severity(severity):
            return PreferenceDecision(
                False, f"Clinician preferences: severity {severity.value} notifications disabled"
            )
        return PreferenceDecision(True)

    async def should_notify(self, clinician_id: str, severity: AlertSeverity,
                            channel: NotificationChannel = NotificationChannel.EMAIL) -> PreferenceDecision:
        preference = await self.resolve(clinician_id)
        return self.evaluate(preference, severity, channel)
