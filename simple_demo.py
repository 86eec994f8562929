#!/usr/bin/env python3
"""
Simple CKD Alerts Demo - Scripted Scenario with Console Output
==============================================================

This demo runs automatically and shows:
1. Weight, blood pressure and SpO2 readings flowing through the rule catalog
2. Alert emails rendered to the console
3. Escalation of an unacknowledged CRITICAL alert
4. Summary of alerts and notification outcomes

Time is simulated, so the whole scenario finishes in well under a second.
"""

import asyncio
import logging
from datetime import datetime, timezone, timedelta
from collections import Counter

from ckd_alerts.models import Measurement, MeasurementType, ClinicianContact
from ckd_alerts.services.alert_engine import AlertEngine
from ckd_alerts.services.alert_engine_config import EnvironmentConfigBuilder, configure_logging
from ckd_alerts.services.collaborators import InMemoryCareTeamDirectory
from ckd_alerts.services.email_transport import ConsoleEmailTransport


class SimulatedClock:

    def __init__(self):
        self.now = datetime.now(timezone.utc).replace(microsecond=0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class CKDSimpleDemo:
    """Scripted console demonstration of the alert engine."""

    def __init__(self):
        self.clock = SimulatedClock()
        self.directory = InMemoryCareTeamDirectory()
        self.directory.add_patient("patient-001", "Jordan Rivera")
        self.directory.enroll("patient-001", ClinicianContact("clin-001", "Dr. Ada Okafor", "ada@clinic.test", True))
        self.directory.enroll("patient-001", ClinicianContact("clin-002", "Dr. Lee Park", "lee@clinic.test"))

        self.engine = AlertEngine.build(
            config=EnvironmentConfigBuilder.development_config(),
            directory=self.directory,
            transport=ConsoleEmailTransport(),
            clock=self.clock
        )
        self.counter = 0

    def reading(self, measurement_type: MeasurementType, value: float) -> Measurement:
        self.counter += 1
        return Measurement(f"demo-{self.counter}", "patient-001", measurement_type, value, self.clock())

    async def submit(self, measurement_type: MeasurementType, value: float):
        alert = await self.engine.ingest(self.reading(measurement_type, value))
        outcome = f"ALERT {alert.severity.value}: {alert.details_text()}" if alert else "no alert"
        print(f"{self.clock().strftime('%a %H:%M')}  {measurement_type.value:<12} {value:>7}  -> {outcome}")
        return alert

    async def run_demo(self):
        print("\nCKD ALERTS DEMO")
        print("=" * 60)

        print("\nDay 1: baseline readings")
        await self.submit(MeasurementType.WEIGHT, 70.0)
        await self.submit(MeasurementType.BP_SYSTOLIC, 138)
        await self.submit(MeasurementType.SPO2, 96)

        print("\nDay 2: fluid retention")
        self.clock.advance(hours=24)
        await self.submit(MeasurementType.WEIGHT, 72.0)

        print("\nDay 2: oxygen saturation drops")
        self.clock.advance(hours=1)
        critical = await self.submit(MeasurementType.SPO2, 86)

        print("\nNo acknowledgment for 16 minutes, running escalation tick")
        self.clock.advance(minutes=16)
        tick = await self.engine.run_escalation_tick()
        print(f"Escalated {len(tick.escalated)} of {tick.scanned} open alerts")

        print("\nDr. Park acknowledges the SpO2 alert")
        await self.engine.acknowledge(critical.alert_id, "clin-002")
        self.clock.advance(hours=2)
        tick = await self.engine.run_escalation_tick()
        print(f"Escalated {len(tick.escalated)} of {tick.scanned} open alerts")

        await self.print_summary()

    async def print_summary(self):
        alerts = await self.engine.list_alerts_for_patient("patient-001")
        statuses = Counter()
        for alert in alerts:
            for log in await self.engine.list_notification_logs(alert.alert_id):
                statuses[log.status.value] += 1

        print("\n" + "=" * 60)
        print("SUMMARY")
        print("=" * 60)
        for alert in alerts:
            print(f"{alert.rule_name:<28} {alert.severity.value:<9} {alert.status.value:<13} "
                  f"level {alert.escalation_level}")
        print(f"Notifications: {dict(statuses)}")


async def main():
    configure_logging("WARNING")
    logging.getLogger("ckd_alerts.services.email_transport").setLevel(logging.INFO)
    await CKDSimpleDemo().run_demo()


if __name__ == "__main__":
    asyncio.run(main())
