"""
Atelier Platform
Email Service — participant notifications.

Sends workshop emails (cancellation, date/location change, refund) and
records the outcome in the workshop history as ``email_sent``.
When SMTP is not configured, emails are logged but not sent (dev/test mode).
Lifecycle services call ``queue_notification`` so mail only leaves once the
blueprint commit has succeeded.

Configuration (env vars):
    MAIL_SERVER     SMTP host (default: None → log-only mode)
    MAIL_PORT       SMTP port (default: 587)
    MAIL_USE_TLS    Use TLS (default: true)
    MAIL_USERNAME   SMTP username
    MAIL_PASSWORD   SMTP password
    MAIL_DEFAULT_SENDER  Default from address
"""

from __future__ import annotations

import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any

from flask import current_app
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from atelier.models import db
from atelier.models.history import write_history
from atelier.models.participation import Participation
from atelier.models.workshop import Workshop
from atelier.utils.helpers import run_after_commit

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Email Templates
# ═══════════════════════════════════════════════════════════════════════════

_TEMPLATES: dict[str, dict[str, str]] = {
    "workshop_canceled": {
        "subject": "Atelier annulé : {title}",
        "html": """
        <p>Bonjour {first_name},</p>
        <p>L'atelier <strong>{title}</strong> prévu le {start_at} est annulé.</p>
        <p>Si vous aviez réglé votre place, vous serez remboursé(e).</p>
        """,
    },
    "date_change": {
        "subject": "Changement de date : {title}",
        "html": """
        <p>Bonjour {first_name},</p>
        <p>L'atelier <strong>{title}</strong> a été déplacé du {old_start} au {new_start}.</p>
        <p>Merci de confirmer votre présence ou de demander un remboursement.</p>
        """,
    },
    "location_change": {
        "subject": "Changement de lieu : {title}",
        "html": """
        <p>Bonjour {first_name},</p>
        <p>Le lieu de l'atelier <strong>{title}</strong> a changé : {new_location}.</p>
        <p>Merci de confirmer votre présence ou de demander un remboursement.</p>
        """,
    },
    "refund": {
        "subject": "Remboursement : {title}",
        "html": """
        <p>Bonjour {first_name},</p>
        <p>Votre inscription à <strong>{title}</strong> a été remboursée ({amount} €).</p>
        """,
    },
}


class _SafeDict(dict):
    """Dict that returns {key} for missing keys instead of raising."""

    def __missing__(self, key):
        return f"{{{key}}}"


def is_configured() -> bool:
    return bool(current_app.config.get("MAIL_SERVER"))


def render_template(template_name: str, context: dict[str, Any]) -> tuple[str, str] | None:
    template = _TEMPLATES.get(template_name)
    if not template:
        logger.warning("Email template not found: %s", template_name)
        return None
    safe = _SafeDict(context)
    return template["subject"].format_map(safe), template["html"].format_map(safe)


def send_workshop_email(recipients: list[str], subject: str, html: str) -> dict[str, bool]:
    """
    Send one email per recipient.

    Returns ``{email: success}``. A failed recipient never stops the
    others. In log-only mode every recipient counts as sent.
    """
    results: dict[str, bool] = {}
    if not is_configured():
        for email in recipients:
            logger.info("Email (dev mode): to=%s subject='%s'", email, subject)
            results[email] = True
        return results

    for email in recipients:
        try:
            _send_smtp(to_email=email, subject=subject, html_body=html)
            results[email] = True
            logger.info("Email sent: to=%s subject='%s'", email, subject)
        except (smtplib.SMTPException, OSError) as exc:
            results[email] = False
            logger.error("Email failed: to=%s error=%s", email, exc)
    return results


def notify_participants(
    workshop,
    participations,
    template_name: str,
    context: dict[str, Any] | None = None,
    *,
    actor_user_id: str | None = None,
) -> dict[str, bool]:
    """
    Render ``template_name`` per participant, send it, and log one
    ``email_sent`` history row with the per-recipient outcome.
    """
    results: dict[str, bool] = {}
    base = {
        "title": workshop.title,
        "start_at": workshop.start_at.strftime("%d/%m/%Y %H:%M") if workshop.start_at else "",
    }
    base.update(context or {})

    for p in participations:
        user = p.user
        if user is None or not user.email:
            continue
        rendered = render_template(template_name, {**base, "first_name": user.first_name or ""})
        if rendered is None:
            return results
        subject, html = rendered
        results.update(send_workshop_email([user.email], subject, html))

    if not results:
        return results

    sent = sum(1 for ok in results.values() if ok)
    db.session.flush()
    try:
        with db.session.begin_nested():
            write_history(
                workshop_id=workshop.id,
                log_type="email_sent",
                description=f"Email '{template_name}' sent to {sent}/{len(results)} participant(s)",
                actor_user_id=actor_user_id,
                metadata={"template": template_name, "results": results},
            )
    except Exception:
        logger.warning("History log failed for email_sent — main flow unaffected", exc_info=True)
    return results


def queue_notification(
    workshop,
    participations,
    template_name: str,
    context: dict[str, Any] | None = None,
    *,
    actor_user_id: str | None = None,
) -> int:
    """
    Defer ``notify_participants`` until the current transaction commits.

    Participants must never hear about a change or refund that was rolled
    back. Returns the number of recipients queued.
    """
    recipients = [p.id for p in participations if p.user is not None and p.user.email]
    if not recipients:
        return 0
    workshop_id = workshop.id
    context = dict(context or {})

    def _deliver():
        target = db.session.get(Workshop, workshop_id)
        rows = db.session.execute(
            select(Participation).where(Participation.id.in_(recipients))
        ).scalars().all()
        notify_participants(target, rows, template_name, context, actor_user_id=actor_user_id)
        try:
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            logger.warning("Could not store email_sent history for workshop %s", workshop_id,
                           exc_info=True)

    run_after_commit(_deliver)
    return len(recipients)


def _send_smtp(*, to_email: str, subject: str, html_body: str) -> None:
    """Actually send via SMTP."""
    cfg = current_app.config
    server = cfg.get("MAIL_SERVER")
    port = cfg.get("MAIL_PORT", 587)
    use_tls = cfg.get("MAIL_USE_TLS", True)
    username = cfg.get("MAIL_USERNAME")
    password = cfg.get("MAIL_PASSWORD")
    sender = cfg.get("MAIL_DEFAULT_SENDER", f"noreply@{server}")

    msg = MIMEMultipart("alternative")
    msg["Subject"] = subject
    msg["From"] = sender
    msg["To"] = to_email
    msg.attach(MIMEText(html_body, "html"))

    with smtplib.SMTP(server, port, timeout=30) as smtp:
        if use_tls:
            smtp.starttls()
        if username and password:
            smtp.login(username, password)
        smtp.send_message(msg)
