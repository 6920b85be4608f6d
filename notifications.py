"""
Email notifications for issue events.

``dispatch`` is the only entry point routes use. It runs after the write
it reports on has been stored and never raises: delivery problems are
logged and dropped.
"""

import smtplib
from email.message import EmailMessage
from typing import Optional

import config
from errors import DependencyFailure
from log import get_logger

logger = get_logger("notifications")

ISSUE_CREATED = "issue_created"
STATUS_CHANGED = "status_changed"
COMMENT_ADDED = "comment_added"

STATUS_LABELS = {
    "pending": "Pending Review",
    "in-progress": "In Progress",
    "resolved": "Resolved",
    "rejected": "Rejected",
}


def build_message(event: str, recipient: dict, issue: dict, note: Optional[str] = None, comment: Optional[dict] = None):
    name = recipient.get("name") or "there"
    title = issue.get("title", "")
    link = f"{config.FRONTEND_URL}/issues/{issue.get('id') or issue.get('_id')}"

    if event == ISSUE_CREATED:
        subject = f"Issue Reported: {title}"
        lines = [
            f"Hello {name},",
            "",
            "Thank you for reporting an issue in your community. Your report will be reviewed by our team.",
            "",
            f"Title: {title}",
            f"Category: {issue.get('category', '').capitalize()}",
            f"Priority: {issue.get('priority', '').capitalize()}",
            f"Location: {issue.get('location', {}).get('address', '')}",
            f"Status: {STATUS_LABELS['pending']}",
        ]
    elif event == STATUS_CHANGED:
        subject = f"Status Update: {title}"
        lines = [
            f"Hello {name},",
            "",
            f"The status of your issue \"{title}\" is now {STATUS_LABELS.get(issue.get('status'), issue.get('status'))}.",
        ]
        if note:
            lines += ["", f"Note from the team: {note}"]
    elif event == COMMENT_ADDED:
        subject = f"New Comment on Issue: {title}"
        author = (comment or {}).get("author") or {}
        lines = [
            f"Hello {name},",
            "",
            f"{author.get('name', 'Someone')} commented on your issue \"{title}\":",
            "",
            (comment or {}).get("content", ""),
        ]
    else:
        raise ValueError(f"Unknown notification event: {event}")

    lines += ["", f"View the issue: {link}", "", "Urban Issue Reporter Team"]
    return subject, "\n".join(lines)


def send_email(to: str, subject: str, body: str) -> bool:
    """Send one plain-text email. Returns False when mail is not configured."""
    if not (config.MAIL_USER and config.MAIL_PASS):
        logger.info("email_disabled", to=to, subject=subject)
        return False

    message = EmailMessage()
    message["From"] = config.MAIL_FROM
    message["To"] = to
    message["Subject"] = subject
    message.set_content(body)

    try:
        with smtplib.SMTP(config.MAIL_HOST, config.MAIL_PORT, timeout=10) as smtp:
            smtp.starttls()
            smtp.login(config.MAIL_USER, config.MAIL_PASS)
            smtp.send_message(message)
    except (smtplib.SMTPException, OSError) as exc:
        raise DependencyFailure(f"Email delivery failed: {exc}") from exc

    logger.info("email_sent", to=to, subject=subject)
    return True


def dispatch(event: str, recipient: Optional[dict], issue: dict, **context) -> None:
    if not recipient or not recipient.get("email"):
        logger.debug("notification_skipped", notification=event, reason="no recipient")
        return
    try:
        subject, body = build_message(event, recipient, issue, **context)
        send_email(recipient["email"], subject, body)
    except Exception as exc:
        logger.warning(
            "notification_failed",
            notification=event,
            error=str(exc),
            error_type=type(exc).__name__,
        )
