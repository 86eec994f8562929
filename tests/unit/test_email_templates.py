from datetime import datetime, timezone

from ckd_alerts.models import (
    Alert, AlertSeverity, MeasurementThresholdInputs, MeasurementSnapshot
)
from ckd_alerts.services.email_templates import render_alert_email, render_subject

T0 = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)


def make_alert(severity=AlertSeverity.WARNING, **changes):
    alert = Alert(
        alert_id="a1",
        patient_id="patient-1",
        rule_id="bp_systolic_high",
        rule_name="High Systolic Blood Pressure",
        severity=severity,
        inputs=MeasurementThresholdInputs(MeasurementSnapshot("m1", 182, T0), 180, 200, "above", "mmHg"),
        triggered_at=T0
    )
    return alert.copy(**changes) if changes else alert


class TestSubject:

    def test_plain_warning(self):
        assert render_subject(make_alert(), "Jordan Rivera") == "High Systolic Blood Pressure - Jordan Rivera"

    def test_critical_prefix(self):
        subject = render_subject(make_alert(AlertSeverity.CRITICAL), "Jordan Rivera")
        assert subject == "[CRITICAL] High Systolic Blood Pressure - Jordan Rivera"

    def test_escalation_prefix_follows_critical(self):
        subject = render_subject(make_alert(AlertSeverity.CRITICAL), "Jordan Rivera", escalation_level=2)
        assert subject.startswith("[CRITICAL] [ESCALATION L2] ")


class TestAlertEmail:

    def test_text_body_fields(self):
        email = render_alert_email(make_alert(), "Jordan Rivera", "Dr. Ada Okafor", "https://ckd.example.org/")

        assert "Hello Dr. Ada Okafor," in email.text_body
        assert "Patient: Jordan Rivera" in email.text_body
        assert "Alert type: High Systolic Blood Pressure" in email.text_body
        assert "Details: Reading of 182 mmHg is at or above the threshold of 180 mmHg" in email.text_body
        assert "View patient dashboard: https://ckd.example.org/patients/patient-1" in email.text_body
        assert "Escalation level" not in email.text_body

    def test_escalated_email_mentions_level(self):
        email = render_alert_email(make_alert(escalation_level=1), "Jordan Rivera", "Dr. Lee Park",
                                   "https://ckd.example.org")
        assert "Escalation level 1" in email.text_body
        assert "[ESCALATION L1]" in email.subject

    def test_html_escapes_names(self):
        email = render_alert_email(make_alert(), "<script>alert(1)</script>", "Dr. O'Neil & Co",
                                   "https://ckd.example.org")

        assert "<script>" not in email.html_body
        assert "&lt;script&gt;" in email.html_body
        assert "O&#x27;Neil &amp; Co" in email.html_body

    def test_summary_text_used_as_details(self):
        email = render_alert_email(make_alert(summary_text="Check fluid intake"), "Jordan Rivera",
                                   "Dr. Ada Okafor", "https://ckd.example.org")
        assert "Details: Check fluid intake" in email.text_body
