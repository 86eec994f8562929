"""
Alert Engine

Entry point for the alerting subsystem. Wires rule evaluation, alert
lifecycle, notification dispatch and escalation together and exposes the
operations used by ingestion, dashboards and the scheduler host process.

Data flow on ingestion:
    data point -> per-patient lock -> history fetch -> rule catalog
    -> alert store (create if none open) -> notification queue -> email
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional, Callable, Sequence, Set

from ..models.alerts import Alert, AlertStatus
from ..models.measurements import Measurement, SymptomCheckin, DataPoint
from ..models.notifications import ClinicianContact, NotificationLog, NotificationPreference
from .alert_engine_config import AlertEngineConfig
from .alert_evaluator import AlertEvaluator, EvaluationResult
from .alert_lifecycle import AlertLifecycleService, TransitionResult, DEFAULT_PAGE_SIZE
from .alert_metrics import AlertEngineMetrics
from .alert_store import InMemoryAlertStore, NotificationLogStore
from .audit import AuditLogger
from .collaborators import (
    MeasurementRepository, CareTeamDirectory, InMemoryMeasurementRepository, InMemoryCareTeamDirectory
)
from .concurrency import KeyedLockManager, LockTimeoutError, RetryConfig, RedisTickClaim, retry_with_backoff
from .email_transport import EmailTransport, build_email_transport
from .escalation_engine import (
    EscalationScheduler, EscalationPolicy, EscalationTickResult, resolve_recipients
)
from .notification_dispatcher import NotificationDispatcher, NotificationQueue
from .preferences import PreferenceStore, InMemoryPreferenceStore, NotificationPreferenceResolver
from .rule_catalog import RuleCatalog


class AlertEngine:
    """Facade over the alert evaluator, lifecycle, dispatcher and escalation scheduler."""

    def __init__(
        self,
        config: AlertEngineConfig,
        repository: MeasurementRepository,
        directory: CareTeamDirectory,
        preference_store: PreferenceStore,
        transport: EmailTransport,
        store: Optional[InMemoryAlertStore] = None,
        log_store: Optional[NotificationLogStore] = None,
        catalog: Optional[RuleCatalog] = None,
        audit_logger: Optional[AuditLogger] = None,
        metrics: Optional[AlertEngineMetrics] = None,
        tick_claim: Optional[RedisTickClaim] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.config = config
        self.repository = repository
        self.directory = directory
        self.store = store or InMemoryAlertStore()
        self.log_store = log_store or NotificationLogStore()
        self.catalog = catalog or RuleCatalog.from_config(config)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.audit_logger = audit_logger or AuditLogger(clock=self._clock)
        self.metrics = metrics or AlertEngineMetrics()
        self.logger = logging.getLogger(__name__)

        self.locks = KeyedLockManager()
        self._history_retry = RetryConfig(max_attempts=3, base_delay=0.05, max_delay=0.5)
        self._queued_alert_ids: Set[str] = set()
        self.preferences = NotificationPreferenceResolver(preference_store)

        self.evaluator = AlertEvaluator(
            self.store, self.catalog, self.audit_logger, self.metrics, self._clock
        )
        self.lifecycle = AlertLifecycleService(
            self.store, self.log_store, directory, self.audit_logger, self.metrics, self._clock
        )
        self.dispatcher = NotificationDispatcher(
            store=self.store,
            log_store=self.log_store,
            directory=directory,
            preference_resolver=self.preferences,
            transport=transport,
            dashboard_url=config.dashboard_url,
            rate_limit_minutes=config.notification_rate_limit_minutes,
            email_timeout_seconds=config.email_timeout_seconds,
            audit_logger=self.audit_logger,
            metrics=self.metrics,
            clock=self._clock
        )
        self.queue = NotificationQueue(
            self.dispatcher,
            self.store,
            max_retries=config.notification_max_retries,
            retry_config=RetryConfig(
                base_delay=config.notification_retry_base_delay,
                max_delay=config.notification_retry_max_delay
            ),
            metrics=self.metrics
        )
        self.scheduler = EscalationScheduler(
            self.store,
            directory,
            EscalationPolicy.from_config(config),
            tick_seconds=config.escalation_tick_seconds,
            tick_claim=tick_claim,
            audit_logger=self.audit_logger,
            metrics=self.metrics,
            clock=self._clock
        )

        self.evaluator.set_alert_created_callback(self._on_alert_created)
        self.scheduler.set_delivery_callback(self._deliver_escalation)

    @classmethod
    def build(
        cls,
        config: Optional[AlertEngineConfig] = None,
        repository: Optional[MeasurementRepository] = None,
        directory: Optional[CareTeamDirectory] = None,
        preference_store: Optional[PreferenceStore] = None,
        transport: Optional[EmailTransport] = None,
        **kwargs
    ) -> 'AlertEngine':
        """Build an engine with in-memory collaborators wherever none is given."""
        config = config or AlertEngineConfig()
        tick_claim = kwargs.pop("tick_claim", None)
        if tick_claim is None and config.tick_claim_enabled and config.redis_url:
            tick_claim = RedisTickClaim.from_url(
                config.redis_url, config.tick_claim_key, config.tick_claim_ttl_seconds
            )
        return cls(
            config=config,
            repository=repository or InMemoryMeasurementRepository(),
            directory=directory or InMemoryCareTeamDirectory(),
            preference_store=preference_store or InMemoryPreferenceStore(),
            transport=transport or build_email_transport(config),
            tick_claim=tick_claim,
            **kwargs
        )

    # Ingestion and evaluation

    async def ingest(self, data_point: DataPoint) -> Optional[Alert]:
        """Record a data point, then evaluate it."""
        if isinstance(data_point, Measurement):
            await self.repository.insert_measurement(data_point)
        else:
            await self.repository.insert_checkin(data_point)
        return await self.evaluate(data_point)

    async def evaluate(self, data_point: DataPoint) -> Optional[Alert]:
        """Evaluate a recorded data point. Returns the alert opened, if any."""
        result = await self.evaluate_detailed(data_point)
        return result.alert

    async def evaluate_detailed(self, data_point: DataPoint) -> EvaluationResult:
        try:
            async with self.locks.hold(data_point.patient_id, "evaluate", self.config.lock_timeout_seconds):
                result = await self._evaluate_unlocked(data_point)
        except LockTimeoutError as e:
            # The store's open index still prevents duplicate alerts
            self.logger.warning(f"{e}; evaluating without the patient lock")
            result = await self._evaluate_unlocked(data_point)

        # Inline sends happen after the patient lock is released
        for alert in result.created:
            if alert.alert_id in self._queued_alert_ids:
                self._queued_alert_ids.discard(alert.alert_id)
                continue
            await self._notify_initial(alert)
        return result

    async def _evaluate_unlocked(self, data_point: DataPoint) -> EvaluationResult:
        history = await self._fetch_history(data_point)
        return await self.evaluator.evaluate_detailed(data_point, history)

    async def _fetch_history(self, data_point: DataPoint) -> List[Measurement]:
        if isinstance(data_point, SymptomCheckin):
            return []
        lookback = self.catalog.lookback_for(data_point.type)
        if not lookback:
            return []
        try:
            return await retry_with_backoff(
                lambda: self.repository.get_measurements(
                    data_point.patient_id, data_point.type, data_point.timestamp - lookback
                ),
                f"history fetch for patient {data_point.patient_id}",
                self._history_retry
            )
        except Exception as e:
            self.logger.error(f"Failed to load history for patient {data_point.patient_id}: {str(e)}")
            return []

    # Notification wiring

    async def _on_alert_created(self, alert: Alert):
        """Queue the first notification. Without a running queue it is sent after evaluation."""
        if self.queue.running:
            self._queued_alert_ids.add(alert.alert_id)
            await self._notify_initial(alert)

    async def _notify_initial(self, alert: Alert):
        clinicians = await resolve_recipients(self.directory, alert.patient_id, 0)
        await self._send(alert, clinicians, escalation_level=0, bypass_rate_limit=False)

    async def _deliver_escalation(self, alert: Alert, clinicians: Sequence[ClinicianContact], level: int):
        await self._send(alert, clinicians, escalation_level=level, bypass_rate_limit=True)

    async def _send(self, alert: Alert, clinicians: Sequence[ClinicianContact],
                    escalation_level: int, bypass_rate_limit: bool):
        if self.queue.running:
            await self.queue.enqueue(alert, clinicians, escalation_level, bypass_rate_limit)
        else:
            await self.dispatcher.dispatch(
                alert, clinicians, escalation_level=escalation_level, bypass_rate_limit=bypass_rate_limit
            )

    # Clinician actions and reads

    async def acknowledge(self, alert_id: str, clinician_id: str) -> TransitionResult:
        return await self.lifecycle.acknowledge(alert_id, clinician_id)

    async def dismiss(self, alert_id: str, clinician_id: str) -> TransitionResult:
        return await self.lifecycle.dismiss(alert_id, clinician_id)

    async def get_alert(self, alert_id: str) -> Alert:
        return await self.lifecycle.get_alert(alert_id)

    async def list_alerts_for_patient(self, patient_id: str, status: Optional[AlertStatus] = None,
                                      limit: int = DEFAULT_PAGE_SIZE, offset: int = 0) -> List[Alert]:
        return await self.lifecycle.list_alerts_for_patient(patient_id, status, limit, offset)

    async def list_alerts_for_clinician(self, clinician_id: str, status: Optional[AlertStatus] = None,
                                        limit: int = DEFAULT_PAGE_SIZE, offset: int = 0) -> List[Alert]:
        return await self.lifecycle.list_alerts_for_clinician(clinician_id, status, limit, offset)

    async def list_notification_logs(self, alert_id: str) -> List[NotificationLog]:
        return await self.lifecycle.list_notification_logs(alert_id)

    async def get_notification_preferences(self, clinician_id: str) -> NotificationPreference:
        return await self.preferences.resolve(clinician_id)

    async def update_notification_preferences(self, clinician_id: str, **changes) -> NotificationPreference:
        return await self.preferences.update(clinician_id, **changes)

    # Escalation and lifecycle of the engine itself

    async def run_escalation_tick(self) -> EscalationTickResult:
        return await self.scheduler.run_escalation_tick()

    async def start(self):
        await self.queue.start()
        await self.scheduler.start()

    async def stop(self):
        await self.scheduler.stop()
        await self.queue.stop()
        if self.scheduler.tick_claim:
            await self.scheduler.tick_claim.close()

    async def drain(self):
        """Wait for queued notifications, including scheduled retries."""
        await self.queue.join()
