"""
Email notifications for Group Flatten Sync.

Notifications are optional and off by default. Sending never raises into
the run: a failed email is logged and the run carries on.
"""

import smtplib
import logging
from email.mime.text import MIMEText
from typing import Any, Dict, List, Mapping, Optional
from datetime import datetime

logger = logging.getLogger(__name__)


def send_email(subject: str, body: str, config: Mapping[str, Any]) -> bool:
    """
    Send a plain-text email over SMTP.

    Args:
        subject: Email subject line
        body: Email body content
        config: Notification configuration dictionary

    Returns:
        True if the email was sent
    """
    if not config.get('enable_email', False):
        logger.debug("Email notifications disabled")
        return False

    smtp_server = config.get('smtp_server')
    smtp_port = config.get('smtp_port', 587)
    smtp_username = config.get('smtp_username')
    smtp_password = config.get('smtp_password')
    email_from = config.get('email_from', smtp_username)
    email_to = config.get('email_to', [])

    if isinstance(email_to, str):
        email_to = [email_to]

    if not smtp_server or not email_to:
        logger.error("Email notifications enabled but smtp_server or email_to is not configured")
        return False

    msg = MIMEText(body, 'plain')
    msg['From'] = email_from
    msg['To'] = ', '.join(email_to)
    msg['Subject'] = subject

    try:
        if smtp_port == 465:
            server = smtplib.SMTP_SSL(smtp_server, smtp_port)
        else:
            server = smtplib.SMTP(smtp_server, smtp_port)
            if config.get('smtp_tls', True):
                server.starttls()

        try:
            if smtp_username and smtp_password:
                server.login(smtp_username, smtp_password)
            server.sendmail(email_from, email_to, msg.as_string())
        finally:
            server.quit()

    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"Failed to send email notification: {e}")
        return False

    logger.info(f"Email notification sent: {subject}")
    return True


def send_failure_notification(title: str, error_message: str, config: Mapping[str, Any],
                              additional_info: Optional[Dict[str, Any]] = None) -> bool:
    """Send a failure report, unless failure emails are turned off."""
    if not config.get('email_on_failure', True):
        return False

    body_lines = [
        "Group Flatten Sync Failure Report",
        f"Timestamp: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
        "",
        f"Failure Type: {title}",
        f"Error Message: {error_message}",
        "",
    ]

    if additional_info:
        body_lines.append("Additional Information:")
        body_lines.extend(f"  {key}: {value}" for key, value in additional_info.items())
        body_lines.append("")

    body_lines.append("Changes applied before the failure are kept; the next run picks up the rest. "
                      "See the application log for details.")

    return send_email(f"Group Flatten Sync Alert: {title}", '\n'.join(body_lines), config)


def format_runtime(runtime_seconds: float) -> str:
    if runtime_seconds > 60:
        minutes = int(runtime_seconds // 60)
        return f"{minutes}m {runtime_seconds % 60:.1f}s"
    return f"{runtime_seconds:.2f} seconds"


def send_run_summary(stats: Mapping[str, Any], failures: List[str], config: Mapping[str, Any]) -> bool:
    """
    Send the end-of-run summary.

    Sent when email_on_success is set, or when the run finished with
    per-target failures and email_on_failure is set.
    """
    has_failures = bool(failures)
    if has_failures and not config.get('email_on_failure', True):
        return False
    if not has_failures and not config.get('email_on_success', False):
        logger.debug("Success email notifications disabled")
        return False

    mode = "dry run" if stats.get('dry_run') else "applied"
    body_lines = [
        "Group Flatten Sync Summary Report",
        f"Timestamp: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
        f"Mode: {mode}",
        "",
        f"  Total runtime: {format_runtime(stats.get('runtime_seconds', 0))}",
        f"  Pairs processed: {stats.get('pairs_processed', 0)}",
        f"  Sources skipped: {stats.get('sources_skipped', 0)}",
        f"  Targets processed: {stats.get('targets_processed', 0)}",
        f"  Targets failed: {stats.get('targets_failed', 0)}",
        f"  Members added: {stats.get('members_added', 0)}",
        f"  Members removed: {stats.get('members_removed', 0)}",
        f"  Changes planned: {stats.get('changes_planned', 0)}",
        f"  Mutation failures: {stats.get('mutations_failed', 0)}",
        "",
    ]

    if has_failures:
        body_lines.append("Failures:")
        body_lines.extend(f"  {i}. {failure}" for i, failure in enumerate(failures[:10], 1))
        if len(failures) > 10:
            body_lines.append(f"  ... and {len(failures) - 10} more")

    subject = "Group Flatten Sync: Completed with failures" if has_failures else "Group Flatten Sync: Successful Completion"
    return send_email(subject, '\n'.join(body_lines), config)
