"""
Notification Dispatcher

Delivers alert emails to clinicians and records one NotificationLog row per
attempt, skips included. The dispatcher never raises for delivery problems:
preference opt-outs and rate limiting produce SKIPPED rows, transport errors
and timeouts produce FAILED rows. A cancelled dispatch logs FAILED rows for
the recipients it did not reach before re-raising.
"""

import asyncio
import time
import logging
from datetime import datetime, timezone, timedelta
from typing import Dict, List, Optional, Callable, Sequence
from dataclasses import dataclass, replace
from uuid import uuid4

from ..models.alerts import Alert, NotificationTransportError
from ..models.notifications import (
    ClinicianContact, NotificationLog, NotificationStatus, NotificationChannel
)
from .alert_store import InMemoryAlertStore, NotificationLogStore
from .alert_metrics import AlertEngineMetrics
from .audit import AuditLogger
from .collaborators import CareTeamDirectory
from .concurrency import RetryConfig
from .email_templates import render_alert_email, render_subject
from .email_transport import EmailTransport, SendResult
from .preferences import NotificationPreferenceResolver

RATE_LIMITED_REASON = "Rate limited: notification sent within last hour"
STOPPED_REASON = "Dispatcher stopped before delivery"


class NotificationDispatcher:
    """Sends alert emails and writes the notification log."""

    def __init__(
        self,
        store: InMemoryAlertStore,
        log_store: NotificationLogStore,
        directory: CareTeamDirectory,
        preference_resolver: NotificationPreferenceResolver,
        transport: EmailTransport,
        dashboard_url: str = "http://localhost:3000",
        rate_limit_minutes: int = 60,
        email_timeout_seconds: float = 10.0,
        audit_logger: Optional[AuditLogger] = None,
        metrics: Optional[AlertEngineMetrics] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.store = store
        self.log_store = log_store
        self.directory = directory
        self.preference_resolver = preference_resolver
        self.transport = transport
        self.dashboard_url = dashboard_url
        self.rate_limit = timedelta(minutes=rate_limit_minutes)
        self.email_timeout_seconds = email_timeout_seconds
        self.audit_logger = audit_logger
        self.metrics = metrics
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.logger = logging.getLogger(__name__)

    async def dispatch(
        self,
        alert: Alert,
        clinicians: Sequence[ClinicianContact],
        *,
        escalation_level: Optional[int] = None,
        bypass_rate_limit: bool = False,
        attempt: int = 1
    ) -> List[NotificationLog]:
        """
        Notify each clinician in order.

        Args:
            alert: Alert to notify about
            clinicians: Recipients, processed sequentially
            escalation_level: Level shown in the message (defaults to the alert's)
            bypass_rate_limit: Escalations skip the per-clinician rate limit
            attempt: 1 for the first delivery, higher for retries

        Returns:
            One NotificationLog row per clinician, in send order
        """
        level = alert.escalation_level if escalation_level is None else escalation_level
        patient_name = await self._patient_name(alert.patient_id)

        if not clinicians:
            self.logger.warning(f"No active clinicians to notify for alert {alert.alert_id}")

        rows = []
        try:
            for clinician in clinicians:
                row = await self._dispatch_one(alert, clinician, patient_name, level, bypass_rate_limit, attempt)
                rows.append(row)
        except asyncio.CancelledError:
            remaining = clinicians[len(rows):]
            self.logger.warning(
                f"Dispatch for alert {alert.alert_id} cancelled with {len(remaining)} recipient(s) outstanding"
            )
            await self._fail_all(alert, remaining, patient_name, level, attempt, STOPPED_REASON)
            await self._record_sent(alert, rows)
            raise

        await self._record_sent(alert, rows)
        return rows

    async def record_undelivered(
        self,
        alert: Alert,
        clinicians: Sequence[ClinicianContact],
        *,
        escalation_level: Optional[int] = None,
        attempt: int = 1,
        reason: str = STOPPED_REASON
    ) -> List[NotificationLog]:
        """Write a FAILED row for each clinician that was never contacted."""
        level = alert.escalation_level if escalation_level is None else escalation_level
        patient_name = await self._patient_name(alert.patient_id)
        return await self._fail_all(alert, clinicians, patient_name, level, attempt, reason)

    async def _fail_all(self, alert: Alert, clinicians: Sequence[ClinicianContact], patient_name: str,
                        level: int, attempt: int, reason: str) -> List[NotificationLog]:
        subject = render_subject(alert, patient_name, level)
        rows = []
        for clinician in clinicians:
            rows.append(await self._record(alert, clinician, subject, level, attempt, NotificationStatus.FAILED,
                                           error_message=reason))
        return rows

    async def _record_sent(self, alert: Alert, rows: List[NotificationLog]):
        sent_times = [row.sent_at for row in rows if row.status == NotificationStatus.SENT]
        if sent_times:
            await self.store.record_notified(alert.alert_id, max(sent_times))

    async def _patient_name(self, patient_id: str) -> str:
        try:
            return await self.directory.get_patient_name(patient_id)
        except Exception as e:
            self.logger.error(f"Failed to resolve patient name for {patient_id}: {str(e)}")
            return patient_id

    async def _dispatch_one(
        self,
        alert: Alert,
        clinician: ClinicianContact,
        patient_name: str,
        level: int,
        bypass_rate_limit: bool,
        attempt: int
    ) -> NotificationLog:
        subject = render_subject(alert, patient_name, level)

        try:
            decision = await self.preference_resolver.should_notify(clinician.clinician_id, alert.severity)
        except Exception as e:
            self.logger.error(f"Preference lookup failed for clinician {clinician.clinician_id}: {str(e)}")
            return await self._record(alert, clinician, subject, level, attempt, NotificationStatus.FAILED,
                                      error_message=f"Preference lookup failed: {str(e)}")

        if not decision.allowed:
            return await self._record(alert, clinician, subject, level, attempt, NotificationStatus.SKIPPED,
                                      error_message=decision.reason)

        if not bypass_rate_limit and attempt == 1 and self.rate_limit > timedelta(0):
            since = self._clock() - self.rate_limit
            recent = await self.log_store.last_sent(clinician.clinician_id, alert.patient_id, since)
            if recent is not None:
                return await self._record(alert, clinician, subject, level, attempt, NotificationStatus.SKIPPED,
                                          error_message=RATE_LIMITED_REASON)

        email = render_alert_email(alert, patient_name, clinician.name, self.dashboard_url, level)

        start_time = time.perf_counter()
        try:
            result = await asyncio.wait_for(
                self.transport.send(clinician.email, email.subject, email.html_body, email.text_body),
                timeout=self.email_timeout_seconds
            )
        except asyncio.TimeoutError:
            result = SendResult(success=False, error=f"Email send timed out after {self.email_timeout_seconds}s")
        except NotificationTransportError as e:
            result = SendResult(success=False, error=str(e))
        except Exception as e:
            self.logger.error(f"Unexpected transport error for alert {alert.alert_id}: {str(e)}")
            result = SendResult(success=False, error=f"Unexpected transport error: {str(e)}")
        duration = time.perf_counter() - start_time

        if result.success:
            self.logger.info(
                f"Alert {alert.alert_id} notification sent to clinician {clinician.clinician_id} (level {level})"
            )
            return await self._record(alert, clinician, email.subject, level, attempt, NotificationStatus.SENT,
                                      message_id=result.message_id, duration=duration)

        self.logger.warning(
            f"Alert {alert.alert_id} notification to clinician {clinician.clinician_id} failed: {result.error}"
        )
        return await self._record(alert, clinician, email.subject, level, attempt, NotificationStatus.FAILED,
                                  error_message=result.error or "Unknown transport error", duration=duration)

    async def _record(
        self,
        alert: Alert,
        clinician: ClinicianContact,
        subject: str,
        level: int,
        attempt: int,
        status: NotificationStatus,
        error_message: Optional[str] = None,
        message_id: Optional[str] = None,
        duration: Optional[float] = None
    ) -> NotificationLog:
        row = NotificationLog(
            log_id=str(uuid4()),
            clinician_id=clinician.clinician_id,
            patient_id=alert.patient_id,
            alert_id=alert.alert_id,
            channel=NotificationChannel.EMAIL,
            status=status,
            recipient=clinician.email,
            subject=subject,
            sent_at=self._clock(),
            escalation_level=level,
            attempt=attempt,
            error_message=error_message,
            message_id=message_id
        )
        await self.log_store.append(row)

        if self.metrics:
            self.metrics.record_notification(status.value, duration)
        if self.audit_logger:
            try:
                self.audit_logger.audit_notification(row)
            except Exception as e:
                self.logger.error(f"Failed to audit notification {row.log_id}: {str(e)}")
        return row


@dataclass(frozen=True)
class NotificationJob:
    alert_id: str
    clinicians: tuple
    escalation_level: Optional[int] = None
    bypass_rate_limit: bool = False
    attempt: int = 1


class NotificationQueue:
    """
    FIFO dispatch queue with a single worker.

    FAILED recipients are retried with exponential backoff up to max_retries
    times, and only while the alert is still OPEN.

    stop() takes no new work and gives the job in flight a grace period
    (email_timeout_seconds per recipient unless shutdown_grace_seconds is
    set). Anything left undelivered after that gets a FAILED row.
    """

    def __init__(
        self,
        dispatcher: NotificationDispatcher,
        store: InMemoryAlertStore,
        max_retries: int = 2,
        retry_config: Optional[RetryConfig] = None,
        metrics: Optional[AlertEngineMetrics] = None,
        shutdown_grace_seconds: Optional[float] = None
    ):
        self.dispatcher = dispatcher
        self.store = store
        self.max_retries = max_retries
        self.retry_config = retry_config or RetryConfig(base_delay=30.0, max_delay=300.0)
        self.metrics = metrics
        self.shutdown_grace_seconds = shutdown_grace_seconds
        self.logger = logging.getLogger(__name__)

        self._queue: asyncio.Queue = asyncio.Queue()
        self._worker_task: Optional[asyncio.Task] = None
        self._retry_jobs: Dict[asyncio.Task, NotificationJob] = {}
        self._current_job: Optional[NotificationJob] = None
        self._idle = asyncio.Event()
        self._idle.set()
        self._closed = False
        self._dropped: List[NotificationJob] = []

    @property
    def running(self) -> bool:
        return self._worker_task is not None and not self._worker_task.done()

    async def start(self):
        if self.running:
            self.logger.warning("Notification queue already running")
            return
        self._closed = False
        self._dropped = []
        self._worker_task = asyncio.create_task(self._worker_loop())
        self.logger.info("Started notification queue worker")

    async def stop(self):
        self._closed = True

        while not self._queue.empty():
            self._dropped.append(self._queue.get_nowait())
            self._queue.task_done()

        in_flight = self._current_job
        if self.running and in_flight is not None:
            grace = self._grace_for(in_flight)
            try:
                await asyncio.wait_for(self._idle.wait(), timeout=grace)
            except asyncio.TimeoutError:
                self.logger.warning(
                    f"Notification job for alert {in_flight.alert_id} still running after {grace:.2f}s, cancelling"
                )

        if self._worker_task:
            self._worker_task.cancel()
            try:
                await self._worker_task
            except asyncio.CancelledError:
                pass
            self._worker_task = None

        retries = list(self._retry_jobs.items())
        for task, job in retries:
            if not task.done():
                task.cancel()
                self._dropped.append(job)
        if retries:
            await asyncio.gather(*[task for task, _ in retries], return_exceptions=True)
        self._retry_jobs.clear()

        dropped, self._dropped = self._dropped, []
        for job in dropped:
            await self._abandon(job)
        if dropped:
            self.logger.warning(f"Dropped {len(dropped)} notification job(s) on shutdown")
        if self.metrics:
            self.metrics.queue_depth.set(0)
        self.logger.info("Stopped notification queue worker")

    def _grace_for(self, job: NotificationJob) -> float:
        if self.shutdown_grace_seconds is not None:
            return self.shutdown_grace_seconds
        return self.dispatcher.email_timeout_seconds * max(1, len(job.clinicians))

    async def enqueue(self, alert: Alert, clinicians: Sequence[ClinicianContact],
                      escalation_level: Optional[int] = None, bypass_rate_limit: bool = False):
        job = NotificationJob(
            alert_id=alert.alert_id,
            clinicians=tuple(clinicians),
            escalation_level=escalation_level,
            bypass_rate_limit=bypass_rate_limit
        )
        if self._closed:
            self.logger.warning(f"Notification queue is stopping, not queueing alert {alert.alert_id}")
            await self._abandon(job)
            return
        await self._put(job)

    async def _put(self, job: NotificationJob):
        await self._queue.put(job)
        if self.metrics:
            self.metrics.queue_depth.set(self._queue.qsize())

    async def join(self):
        """Wait until queued jobs and scheduled retries have been processed."""
        while True:
            await self._queue.join()
            pending = [task for task in self._retry_jobs if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    def pending(self) -> int:
        return self._queue.qsize() + len(self._retry_jobs)

    async def _worker_loop(self):
        while True:
            job = await self._queue.get()
            if self._closed:
                self._dropped.append(job)
                self._queue.task_done()
                continue

            self._current_job = job
            self._idle.clear()
            try:
                await self._process(job)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.logger.error(f"Notification job for alert {job.alert_id} failed: {str(e)}")
            finally:
                self._current_job = None
                self._idle.set()
                self._queue.task_done()
                if self.metrics:
                    self.metrics.queue_depth.set(self._queue.qsize())

    async def _process(self, job: NotificationJob):
        alert = await self.store.get(job.alert_id)
        if alert is None:
            self.logger.warning(f"Dropping notification job for unknown alert {job.alert_id}")
            return
        if job.attempt > 1 and not alert.is_open:
            self.logger.info(
                f"Dropping retry {job.attempt} for alert {job.alert_id}: status is {alert.status.value}"
            )
            return

        rows = await self.dispatcher.dispatch(
            alert,
            job.clinicians,
            escalation_level=job.escalation_level,
            bypass_rate_limit=job.bypass_rate_limit,
            attempt=job.attempt
        )

        failed = tuple(clinician for clinician, row in zip(job.clinicians, rows)
                       if row.status == NotificationStatus.FAILED)
        if not failed:
            return
        if job.attempt > self.max_retries:
            self.logger.error(
                f"Giving up on {len(failed)} notification(s) for alert {job.alert_id} "
                f"after {job.attempt} attempts"
            )
            return

        retry = replace(job, clinicians=failed, attempt=job.attempt + 1)
        if self._closed:
            self._dropped.append(retry)
            return

        delay = self.retry_config.delay_for(job.attempt - 1)
        self.logger.info(f"Retrying {len(failed)} notification(s) for alert {job.alert_id} in {delay:.2f}s")
        task = asyncio.create_task(self._delayed_put(retry, delay))
        self._retry_jobs[task] = retry
        task.add_done_callback(lambda done: self._retry_jobs.pop(done, None))

    async def _delayed_put(self, job: NotificationJob, delay: float):
        await asyncio.sleep(delay)
        if self._closed:
            self._dropped.append(job)
            return
        await self._put(job)

    async def _abandon(self, job: NotificationJob):
        """Log FAILED rows for a job that will not be sent. Closed alerts need no retry rows."""
        try:
            alert = await self.store.get(job.alert_id)
            if alert is None or (job.attempt > 1 and not alert.is_open):
                return
            await self.dispatcher.record_undelivered(
                alert, job.clinicians, escalation_level=job.escalation_level, attempt=job.attempt
            )
        except Exception as e:
            self.logger.error(f"Failed to record undelivered notifications for alert {job.alert_id}: {str(e)}")
