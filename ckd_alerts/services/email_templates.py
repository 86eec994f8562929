"""
Email rendering for alert notifications.
"""

from datetime import datetime
from html import escape
from typing import Optional
from dataclasses import dataclass

from ..models.alerts import Alert, AlertSeverity

SEVERITY_COLORS = {
    AlertSeverity.CRITICAL: "#dc2626",
    AlertSeverity.WARNING: "#d97706",
    AlertSeverity.INFO: "#2563eb",
}

SEVERITY_LABELS = {
    AlertSeverity.CRITICAL: "Critical Alert",
    AlertSeverity.WARNING: "Warning Alert",
    AlertSeverity.INFO: "Information",
}

FOOTER = "CKD Patient Management Platform"


@dataclass(frozen=True)
class RenderedEmail:
    subject: str
    html_body: str
    text_body: str


def render_subject(alert: Alert, patient_name: str, escalation_level: int = 0) -> str:
    prefix = ""
    if alert.severity == AlertSeverity.CRITICAL:
        prefix += "[CRITICAL] "
    if escalation_level > 0:
        prefix += f"[ESCALATION L{escalation_level}] "
    return f"{prefix}{alert.rule_name} - {patient_name}"


def _format_time(value: datetime) -> str:
    return value.strftime("%Y-%m-%d %H:%M %Z").strip()


def render_alert_email(
    alert: Alert,
    patient_name: str,
    clinician_name: str,
    dashboard_url: str,
    escalation_level: Optional[int] = None
) -> RenderedEmail:
    """Render subject, HTML and plain text bodies for one recipient."""
    level = alert.escalation_level if escalation_level is None else escalation_level
    subject = render_subject(alert, patient_name, level)
    label = SEVERITY_LABELS[alert.severity]
    color = SEVERITY_COLORS[alert.severity]
    details = alert.details_text()
    triggered = _format_time(alert.triggered_at)
    link = f"{dashboard_url.rstrip('/')}/patients/{alert.patient_id}"
    escalation_line = f"Escalation level {level}: this alert has not been acknowledged." if level > 0 else ""

    escalation_html = f'<p style="font-weight:bold;">{escape(escalation_line)}</p>' if escalation_line else ""
    html_body = f"""<!DOCTYPE html>
<html>
<body style="font-family: Arial, sans-serif; color: #111827;">
  <div style="border-left: 4px solid {color}; padding: 12px 16px;">
    <h2 style="color: {color}; margin: 0 0 8px 0;">{escape(label)}</h2>
    <p>Hello {escape(clinician_name)},</p>
    <p>An alert has been raised for one of your patients.</p>
    {escalation_html}
    <table style="border-collapse: collapse;">
      <tr><td><strong>Patient:</strong></td><td>{escape(patient_name)}</td></tr>
      <tr><td><strong>Alert type:</strong></td><td>{escape(alert.rule_name)}</td></tr>
      <tr><td><strong>Details:</strong></td><td>{escape(details)}</td></tr>
      <tr><td><strong>Time:</strong></td><td>{escape(triggered)}</td></tr>
    </table>
    <p><a href="{escape(link, quote=True)}" style="color: {color};">View patient dashboard</a></p>
  </div>
  <p style="font-size: 12px; color: #6b7280;">{FOOTER}</p>
</body>
</html>
"""

    text_lines = [
        label.upper(),
        "",
        f"Hello {clinician_name},",
        "",
        "An alert has been raised for one of your patients.",
    ]
    if escalation_line:
        text_lines.append(escalation_line)
    text_lines += [
        "",
        f"Patient: {patient_name}",
        f"Alert type: {alert.rule_name}",
        f"Details: {details}",
        f"Time: {triggered}",
        "",
        f"View patient dashboard: {link}",
        "",
        "--",
        FOOTER,
    ]

    return RenderedEmail(subject=subject, html_body=html_body, text_body="\n".join(text_lines))
