"""
Escalation Engine for CKD Alerts

Periodically scans OPEN alerts and raises the escalation level of those that
have gone unacknowledged for longer than the interval for their severity and
current level, re-notifying a wider set of clinicians each time.

Ticks are single-flight: an in-process lock prevents overlap within one
process and an optional Redis claim prevents overlap across processes.
Every escalation is a compare-and-set on a fresh read, so an alert that was
acknowledged or dismissed mid-tick is left untouched.
"""

import asyncio
import time
import logging
from datetime import datetime, timezone, timedelta
from typing import Dict, List, Optional, Callable, Sequence
from dataclasses import dataclass, field

from ..models.alerts import (
    Alert, AlertSeverity, ConcurrentStateConflictError, InvalidAlertTransitionError
)
from ..models.notifications import ClinicianContact
from .alert_store import InMemoryAlertStore
from .alert_metrics import AlertEngineMetrics
from .audit import AuditLogger
from .collaborators import CareTeamDirectory
from .concurrency import RedisTickClaim, ClaimOutcome


class EscalationPolicy:
    """Per-severity escalation intervals (minutes per level) and level caps."""

    def __init__(self, intervals_minutes: Dict[AlertSeverity, Sequence[int]],
                 max_levels: Dict[AlertSeverity, int]):
        for severity in AlertSeverity:
            intervals = list(intervals_minutes.get(severity, []))
            if not intervals:
                raise ValueError(f"No escalation intervals configured for {severity.value}")
            if any(later < earlier for earlier, later in zip(intervals, intervals[1:])):
                raise ValueError(f"Escalation intervals for {severity.value} must be non-decreasing")
        self._intervals = {s: [timedelta(minutes=m) for m in intervals_minutes[s]] for s in AlertSeverity}
        self._max_levels = {s: max_levels.get(s, len(self._intervals[s])) for s in AlertSeverity}

    @classmethod
    def from_config(cls, config) -> 'EscalationPolicy':
        return cls(
            intervals_minutes={
                AlertSeverity.CRITICAL: config.critical_escalation_minutes,
                AlertSeverity.WARNING: config.warning_escalation_minutes,
                AlertSeverity.INFO: config.info_escalation_minutes,
            },
            max_levels={
                AlertSeverity.CRITICAL: config.critical_max_escalation_level,
                AlertSeverity.WARNING: config.warning_max_escalation_level,
                AlertSeverity.INFO: config.info_max_escalation_level,
            }
        )

    def interval_for(self, severity: AlertSeverity, level: int) -> timedelta:
        """Wait before leaving `level`. The last configured interval repeats."""
        intervals = self._intervals[severity]
        return intervals[min(level, len(intervals) - 1)]

    def max_level(self, severity: AlertSeverity) -> int:
        return self._max_levels[severity]

    def next_due_at(self, alert: Alert) -> datetime:
        reference = alert.last_notified_at or alert.triggered_at
        return reference + self.interval_for(alert.severity, alert.escalation_level)

    def is_due(self, alert: Alert, now: datetime) -> bool:
        return alert.escalation_level < self.max_level(alert.severity) and now >= self.next_due_at(alert)


async def resolve_recipients(directory: CareTeamDirectory, patient_id: str, level: int) -> List[ClinicianContact]:
    """Level 0 goes to primary clinicians (all active if none is primary), higher levels to all active."""
    active = await directory.get_active_clinicians(patient_id)
    if level >= 1:
        return active
    primary = [c for c in active if c.is_primary]
    return primary or active


@dataclass
class EscalationTickResult:
    """Summary of one escalation tick."""
    scanned: int = 0
    escalated: List[str] = field(default_factory=list)
    skipped_not_due: int = 0
    skipped_state_changed: int = 0
    skipped_max_level: int = 0
    errors: List[str] = field(default_factory=list)
    duration_ms: float = 0.0
    skipped: bool = False
    skip_reason: Optional[str] = None


class EscalationScheduler:
    """
    Owns the escalation tick and its background task.

    Responsibilities:
    - Decide which OPEN alerts are due
    - Apply level increments with compare-and-set
    - Hand escalated alerts to the delivery callback
    """

    def __init__(
        self,
        store: InMemoryAlertStore,
        directory: CareTeamDirectory,
        policy: EscalationPolicy,
        tick_seconds: float = 60.0,
        tick_claim: Optional[RedisTickClaim] = None,
        audit_logger: Optional[AuditLogger] = None,
        metrics: Optional[AlertEngineMetrics] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.store = store
        self.directory = directory
        self.policy = policy
        self.tick_seconds = tick_seconds
        self.tick_claim = tick_claim
        self.audit_logger = audit_logger
        self.metrics = metrics
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.logger = logging.getLogger(__name__)

        self._delivery_callback: Optional[Callable] = None
        self._tick_lock = asyncio.Lock()
        self._escalation_task: Optional[asyncio.Task] = None
        self._running = False

    def set_delivery_callback(self, callback: Callable):
        """Set async callback(alert, clinicians, escalation_level) used for re-notification."""
        self._delivery_callback = callback

    @property
    def running(self) -> bool:
        return self._running

    async def start(self):
        """Start background escalation processing."""
        if self._running:
            self.logger.warning("Escalation processing already running")
            return

        self._running = True
        self._escalation_task = asyncio.create_task(self._escalation_processing_loop())
        self.logger.info("Started escalation processing engine")

    async def stop(self):
        """Stop background escalation processing."""
        if not self._running:
            return

        self._running = False
        if self._escalation_task:
            self._escalation_task.cancel()
            try:
                await self._escalation_task
            except asyncio.CancelledError:
                pass
            self._escalation_task = None

        self.logger.info("Stopped escalation processing engine")

    async def _escalation_processing_loop(self):
        """Background loop running one tick per period."""
        self.logger.info("Starting escalation processing loop")

        while self._running:
            try:
                await self.run_escalation_tick()
                await asyncio.sleep(self.tick_seconds)
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.logger.error(f"Error in escalation processing loop: {str(e)}")
                await asyncio.sleep(self.tick_seconds)

        self.logger.info("Escalation processing loop stopped")

    async def run_escalation_tick(self) -> EscalationTickResult:
        """Run one escalation pass. Skipped if another tick is in progress."""
        if self._tick_lock.locked():
            self.logger.info("Escalation tick skipped: previous tick still running")
            if self.metrics:
                self.metrics.record_tick("skipped_busy")
            return EscalationTickResult(skipped=True, skip_reason="tick already running")

        async with self._tick_lock:
            token = None
            if self.tick_claim:
                outcome, token = await self.tick_claim.acquire()
                if outcome == ClaimOutcome.HELD_ELSEWHERE:
                    self.logger.info("Escalation tick skipped: claimed by another process")
                    if self.metrics:
                        self.metrics.record_tick("skipped_claimed")
                    return EscalationTickResult(skipped=True, skip_reason="claimed by another process")
                if outcome == ClaimOutcome.UNAVAILABLE:
                    self.logger.error("Tick claim unavailable, running escalation tick under local lock only")

            try:
                return await self._run_tick()
            finally:
                if token:
                    await self.tick_claim.release(token)

    async def _run_tick(self) -> EscalationTickResult:
        start_time = time.perf_counter()
        result = EscalationTickResult()
        now = self._clock()

        open_alerts = await self.store.list_open()
        result.scanned = len(open_alerts)

        for snapshot in open_alerts:
            try:
                await self._process_alert(snapshot, now, result)
            except Exception as e:
                self.logger.error(f"Failed to process escalation for alert {snapshot.alert_id}: {str(e)}")
                result.errors.append(snapshot.alert_id)

        result.duration_ms = (time.perf_counter() - start_time) * 1000
        if result.escalated:
            self.logger.info(f"Escalation tick escalated {len(result.escalated)} of {result.scanned} open alerts")
        if self.metrics:
            self.metrics.record_tick("completed", result.duration_ms / 1000, open_alerts=result.scanned)
        return result

    async def _process_alert(self, snapshot: Alert, now: datetime, result: EscalationTickResult):
        if snapshot.escalation_level >= self.policy.max_level(snapshot.severity):
            result.skipped_max_level += 1
            return
        if not self.policy.is_due(snapshot, now):
            result.skipped_not_due += 1
            return

        current = await self.store.get(snapshot.alert_id)
        if current is None or not current.is_open or not self.policy.is_due(current, now):
            result.skipped_state_changed += 1
            return

        updated = current.copy(
            escalation_level=current.escalation_level + 1,
            escalated_at=now,
            last_notified_at=now
        )
        try:
            escalated = await self.store.compare_and_set(current.alert_id, current.version, updated)
        except (ConcurrentStateConflictError, InvalidAlertTransitionError) as e:
            self.logger.info(f"Escalation of alert {current.alert_id} abandoned: {str(e)}")
            if self.metrics:
                self.metrics.record_conflict("escalate")
            result.skipped_state_changed += 1
            return

        result.escalated.append(escalated.alert_id)
        self.logger.warning(
            f"Alert {escalated.alert_id} escalated to level {escalated.escalation_level} "
            f"({escalated.severity.value}, {escalated.rule_id})"
        )
        if self.metrics:
            self.metrics.record_escalation(escalated.severity.value, escalated.escalation_level)
        self._audit_escalation(escalated, current.escalation_level)

        await self._deliver(escalated)

    async def _deliver(self, alert: Alert):
        if not self._delivery_callback:
            self.logger.warning(f"No delivery callback set, escalation of {alert.alert_id} not notified")
            return
        try:
            clinicians = await resolve_recipients(self.directory, alert.patient_id, alert.escalation_level)
            await self._delivery_callback(alert, clinicians, alert.escalation_level)
        except Exception as e:
            self.logger.error(f"Failed to deliver escalation for alert {alert.alert_id}: {str(e)}")

    def _audit_escalation(self, alert: Alert, previous_level: int):
        if not self.audit_logger:
            return
        try:
            self.audit_logger.audit_alert_escalated(alert, previous_level)
        except Exception as e:
            self.logger.error(f"Failed to audit escalation of {alert.alert_id}: {str(e)}")
