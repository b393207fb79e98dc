"""Message bodies for pastor alerts, pushes and mandatory-report emails.

Submitted text only ever appears here as a truncated excerpt, and every
user-supplied value is HTML-escaped.
"""
from dataclasses import dataclass
from datetime import datetime
from html import escape
from typing import TYPE_CHECKING, Optional

from keepwatch.shared.models import SafetyEvent, SubmissionSource
from keepwatch.shared.utils import truncate_excerpt

if TYPE_CHECKING:
    from keepwatch.services.mandatory_report.capture import MandatoryReportRecord

CRISIS_LIFELINE = "988 (Suicide & Crisis Lifeline)"
CPS_HOTLINE = "1-855-4LA-KIDS (1-855-452-5437)"

# SNS caps email-protocol subjects at 100 characters
PUSH_SUBJECT_LIMIT = 100


@dataclass(frozen=True)
class RenderedMessage:
    subject: str
    text: str
    html: str = ""


def record_link(admin_base_url: str, source: SubmissionSource, record_id: str) -> str:
    """Direct link to the record in the admin UI."""
    base = admin_base_url.rstrip("/")
    if source == SubmissionSource.GUIDANCE:
        return f"{base}/admin/guidance-logs?session={record_id}"
    if source == SubmissionSource.PRAYER_JOURNAL:
        return f"{base}/admin/moderation?entry={record_id}"
    return f"{base}/admin/prayer-moderation?item={record_id}"


def _category_lines(event: SafetyEvent):
    for category, words in event.categories.matches.items():
        yield category.value, ", ".join(words)


def render_pastor_alert(event: SafetyEvent, admin_base_url: str) -> RenderedMessage:
    """Email payload: contact, categories with keywords, excerpt, id, link."""
    categories = ", ".join(sorted(c.value for c in event.categories))
    subject = f"URGENT: Safety alert ({categories}) from {event.source.value.replace('_', ' ')}"
    
    excerpt = truncate_excerpt(event.raw_text)
    link = record_link(admin_base_url, event.source, event.record_id)
    contact = event.contact
    name = contact.name or "Anonymous"
    submitted = event.timestamp.strftime("%Y-%m-%d %H:%M UTC")
    
    text_lines = [
        "SAFETY ALERT - urgent attention needed",
        "",
        f"From: {name}",
    ]
    if contact.email:
        text_lines.append(f"Email: {contact.email}")
    if contact.location:
        text_lines.append(f"Location: {contact.location}")
    text_lines += [
        f"Submitted: {submitted}",
        f"Record: {event.record_id}",
        "",
        "Signals detected:",
    ]
    text_lines += [f"  - {cat}: {words}" for cat, words in _category_lines(event)]
    text_lines += [
        "",
        "Excerpt:",
        excerpt,
        "",
        f"Open the full record: {link}",
        "",
        "If you believe this person is in immediate danger, contact emergency services.",
        f"Crisis hotline: {CRISIS_LIFELINE}",
    ]
    
    contact_rows = f"<p><strong>From:</strong> {escape(name)}</p>"
    if contact.email:
        contact_rows += f"<p><strong>Email:</strong> {escape(contact.email)}</p>"
    if contact.location:
        contact_rows += f"<p><strong>Location:</strong> {escape(contact.location)}</p>"
    signal_items = "".join(
        f"<li><strong>{escape(cat)}</strong>: {escape(words)}</li>"
        for cat, words in _category_lines(event)
    )
    html = f"""
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
  <div style="background: #dc2626; color: white; padding: 20px; text-align: center;">
    <h1 style="margin: 0;">SAFETY ALERT</h1>
    <p style="margin: 10px 0 0 0;">Urgent attention needed</p>
  </div>
  <div style="padding: 24px; background: #f9fafb;">
    {contact_rows}
    <p><strong>Submitted:</strong> {submitted}</p>
    <p><strong>Record:</strong> {escape(event.record_id)}</p>
    <h3>Signals detected</h3>
    <ul>{signal_items}</ul>
    <h3>Excerpt</h3>
    <blockquote>{escape(excerpt)}</blockquote>
    <p><a href="{escape(link, quote=True)}">Open the full record</a></p>
  </div>
  <div style="padding: 16px; background: #1f2937; color: #d1d5db; text-align: center; font-size: 12px;">
    If you believe this person is in immediate danger, contact emergency services.<br/>
    Crisis hotline: {CRISIS_LIFELINE}
  </div>
</div>
"""
    return RenderedMessage(subject=subject, text="\n".join(text_lines), html=html)


def render_push(event: SafetyEvent, admin_base_url: str) -> RenderedMessage:
    """Short push body; carries no submitted text."""
    categories = ", ".join(sorted(c.value for c in event.categories))
    subject = truncate_excerpt(f"Safety alert: {categories}", PUSH_SUBJECT_LIMIT)
    link = record_link(admin_base_url, event.source, event.record_id)
    return RenderedMessage(
        subject=subject,
        text=f"New {categories} signal on a {event.source.value.replace('_', ' ')}. Review: {link}",
    )


def render_mandatory_report(
    record: "MandatoryReportRecord",
    admin_base_url: str,
    submitted_at: Optional[datetime] = None,
) -> RenderedMessage:
    """High-priority email asking the pastor to file a CPS report."""
    submitted_at = submitted_at or record.report_timestamp or datetime.utcnow()
    link = record_link(admin_base_url, SubmissionSource.GUIDANCE, record.session_id)
    subject = "URGENT: MANDATORY REPORT - Child Abuse (Under 18)"
    
    fields = [
        ("Full Name", record.full_name),
        ("Age", record.age),
        ("Phone", record.phone),
        ("Address", record.address),
        ("Contact Email", record.contact_email),
        ("Session ID", record.session_id),
        ("Timestamp", submitted_at.strftime("%Y-%m-%d %H:%M UTC")),
    ]
    
    text_lines = [
        "MANDATORY REPORT REQUIRED",
        "A minor (under 18) has disclosed abuse in the pastoral guidance conversation.",
        "You must report this to Child Protective Services immediately.",
        "",
    ]
    text_lines += [f"{label}: {value or 'not provided'}" for label, value in fields]
    text_lines += [
        "",
        "Required actions:",
        "  1. Contact the minor using the details above, if provided",
        f"  2. Report to Child Protective Services: {CPS_HOTLINE} (24/7)",
        "  3. Document everything in your pastoral records",
        "  4. Follow up to ensure the minor's safety",
        "",
        f"View full conversation: {link}",
    ]
    
    rows = "".join(
        f'<tr><td style="font-weight: bold; color: #991b1b; padding: 6px 12px 6px 0;">{label}:</td>'
        f"<td>{escape(value) if value else '<em>not provided</em>'}</td></tr>"
        for label, value in fields
    )
    html = f"""
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
  <div style="background: #dc2626; color: white; padding: 20px;">
    <h1 style="margin: 0;">MANDATORY REPORT REQUIRED</h1>
    <p>A minor (under 18) has disclosed abuse in the pastoral guidance conversation.<br/>
    <strong>You must report this to Child Protective Services immediately.</strong></p>
  </div>
  <div style="border: 3px solid #dc2626; border-top: none; padding: 20px;">
    <table>{rows}</table>
    <ol>
      <li>Contact the minor using the details above, if provided</li>
      <li>Report to Child Protective Services: <strong>{CPS_HOTLINE}</strong> (24/7)</li>
      <li>Document everything in your pastoral records</li>
      <li>Follow up to ensure the minor's safety</li>
    </ol>
    <p style="text-align: center;"><a href="{escape(link, quote=True)}">View Full Conversation</a></p>
  </div>
</div>
"""
    return RenderedMessage(subject=subject, text="\n".join(text_lines), html=html)


def render_ops_alert(session_id: str, error: str) -> RenderedMessage:
    """Plain-text alert to operations when a report could not be stored."""
    return RenderedMessage(
        subject="CRITICAL: mandatory report write failed",
        text=(
            "A mandatory-report record could not be written to the database.\n"
            f"Session ID: {session_id}\n"
            f"Error: {truncate_excerpt(error)}\n\n"
            "Record the report manually and check database health."
        ),
    )
