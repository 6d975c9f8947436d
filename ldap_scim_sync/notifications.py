"""
Email notification utilities for LDAP SCIM Sync.

This module provides functionality to send email notifications for
sync failures, errors, and operational events. Sending failures are logged
and reported through the return value; they never end a run.
"""

import smtplib
import logging
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import Dict, List, Any, Optional
from datetime import datetime

logger = logging.getLogger(__name__)

MAX_LISTED_ERRORS = 10

FOOTER = "This is an automated message from LDAP SCIM Sync."


def send_email(subject: str, body: str, config: Dict[str, Any]) -> bool:
    """
    Send email notification using SMTP.

    Args:
        subject: Email subject line
        body: Email body content
        config: Notification configuration dictionary

    Returns:
        True if email sent successfully, False otherwise
    """
    if not config.get('enable_email', False):
        logger.debug("Email notifications disabled")
        return False

    smtp_server = config.get('smtp_server')
    smtp_port = config.get('smtp_port', 587)
    smtp_username = config.get('smtp_username')
    smtp_password = config.get('smtp_password')
    smtp_tls = config.get('smtp_tls', True)

    email_from = config.get('email_from', smtp_username)
    email_to = config.get('email_to', [])

    if not smtp_server:
        logger.error("SMTP server not configured")
        return False

    if not email_to:
        logger.error("No email recipients configured")
        return False

    if isinstance(email_to, str):
        email_to = [email_to]

    logger.debug(f"Sending email to {len(email_to)} recipients via {smtp_server}:{smtp_port}")

    msg = MIMEMultipart()
    msg['From'] = email_from
    msg['To'] = ', '.join(email_to)
    msg['Subject'] = subject
    msg.attach(MIMEText(body, 'plain'))

    try:
        if smtp_port == 465:
            server = smtplib.SMTP_SSL(smtp_server, smtp_port)
        else:
            server = smtplib.SMTP(smtp_server, smtp_port)
            if smtp_tls:
                server.starttls()

        if smtp_username and smtp_password:
            server.login(smtp_username, smtp_password)

        server.sendmail(email_from, email_to, msg.as_string())
        server.quit()

    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"Failed to send email notification: {e}")
        return False

    logger.info(f"Email notification sent successfully: {subject}")
    return True


def _format_runtime(runtime_seconds: float) -> str:
    if runtime_seconds > 60:
        minutes = int(runtime_seconds // 60)
        seconds = runtime_seconds % 60
        return f"{minutes}m {seconds:.1f}s"
    return f"{runtime_seconds:.2f} seconds"


def send_failure_notification(
    title: str,
    error_message: str,
    config: Dict[str, Any],
    additional_info: Optional[Dict[str, Any]] = None
) -> bool:
    """
    Send notification for a failed run.

    Args:
        title: Failure title/type
        error_message: Error description
        config: Notification configuration
        additional_info: Optional additional context

    Returns:
        True if notification sent successfully
    """
    if not config.get('email_on_failure', True):
        logger.debug("Failure email notifications disabled")
        return False

    timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')

    body_lines = [
        "LDAP SCIM Sync Failure Report",
        f"Timestamp: {timestamp}",
        "",
        f"Failure Type: {title}",
        f"Error Message: {error_message}",
        ""
    ]

    if additional_info:
        body_lines.append("Additional Information:")
        for key, value in additional_info.items():
            body_lines.append(f"  {key}: {value}")
        body_lines.append("")

    body_lines.extend([
        "Please check the application logs for more detailed information.",
        "",
        FOOTER
    ])

    return send_email(f"LDAP SCIM Sync Alert: {title}", '\n'.join(body_lines), config)


def send_sync_errors_notification(
    errors: List[str],
    config: Dict[str, Any],
    aborted: bool = False
) -> bool:
    """
    Send notification listing the mutations that failed during a run.

    Args:
        errors: Error messages in the order they occurred
        config: Notification configuration
        aborted: True when the run stopped because of the errors

    Returns:
        True if notification sent successfully
    """
    if not config.get('email_on_failure', True):
        logger.debug("Failure email notifications disabled")
        return False

    timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')

    body_lines = [
        "LDAP SCIM Sync Error Report",
        f"Timestamp: {timestamp}",
        "",
        f"Error Count: {len(errors)}",
        "",
        "Error Details:"
    ]

    for i, error in enumerate(errors[:MAX_LISTED_ERRORS], 1):
        body_lines.append(f"  {i}. {error}")

    if len(errors) > MAX_LISTED_ERRORS:
        body_lines.append(f"  ... and {len(errors) - MAX_LISTED_ERRORS} more errors")

    body_lines.append("")
    if aborted:
        body_lines.append("The sync was aborted. Changes applied before the failure were kept.")
    else:
        body_lines.append("The sync completed; the failed changes will be retried on the next run.")

    body_lines.extend([
        "",
        "Check the application logs for complete error details.",
        "",
        FOOTER
    ])

    return send_email("LDAP SCIM Sync Alert: Sync Errors", '\n'.join(body_lines), config)


def send_success_summary(
    sync_stats: Dict[str, Any],
    config: Dict[str, Any]
) -> bool:
    """
    Send summary notification for successful sync.

    Args:
        sync_stats: Dictionary containing sync statistics
        config: Notification configuration

    Returns:
        True if notification sent successfully
    """
    if not config.get('email_on_success', False):
        logger.debug("Success email notifications disabled")
        return False

    timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')

    subject = "LDAP SCIM Sync: Successful Completion"
    if sync_stats.get('dry_run'):
        subject += " (dry run)"

    body_lines = [
        "LDAP SCIM Sync Summary Report",
        f"Timestamp: {timestamp}",
        "",
        "Sync completed successfully!",
        "",
        "Overall Statistics:",
        f"  Sync method: {sync_stats.get('method', 'groups')}",
        f"  Dry run: {sync_stats.get('dry_run', False)}",
        f"  Total runtime: {_format_runtime(sync_stats.get('runtime_seconds', 0))}",
        f"  Users created: {sync_stats.get('users_created', 0)}",
        f"  Users updated: {sync_stats.get('users_updated', 0)}",
        f"  Users deleted: {sync_stats.get('users_deleted', 0)}",
        f"  Groups created: {sync_stats.get('groups_created', 0)}",
        f"  Groups renamed: {sync_stats.get('groups_renamed', 0)}",
        f"  Groups deleted: {sync_stats.get('groups_deleted', 0)}",
        f"  Members added: {sync_stats.get('members_added', 0)}",
        f"  Members removed: {sync_stats.get('members_removed', 0)}",
        f"  Total errors: {sync_stats.get('errors', 0)}",
        "",
        FOOTER
    ]

    return send_email(subject, '\n'.join(body_lines), config)


def send_ldap_connection_failure(
    error_message: str,
    config: Dict[str, Any],
    retry_count: int = 0
) -> bool:
    """
    Send notification for LDAP connection failures.

    Args:
        error_message: LDAP error description
        config: Notification configuration
        retry_count: Number of retries attempted

    Returns:
        True if notification sent successfully
    """
    additional_info = {
        'Component': 'LDAP Connection',
        'Retry Attempts': retry_count,
        'Impact': 'Sync operation aborted - target not modified'
    }

    return send_failure_notification(
        "LDAP Connection Failed",
        error_message,
        config,
        additional_info
    )


def test_notification_config(config: Dict[str, Any]) -> bool:
    """
    Test email notification configuration by sending a test email.

    Args:
        config: Notification configuration to test

    Returns:
        True if test email sent successfully
    """
    recipients = config.get('email_to', [])
    if isinstance(recipients, str):
        recipients = [recipients]

    test_body = """This is a test email from LDAP SCIM Sync.

If you receive this message, your email notification configuration is working correctly.

Test details:
- SMTP Server: {}
- SMTP Port: {}
- From Address: {}
- Recipients: {}

This is an automated test message.""".format(
        config.get('smtp_server', 'not configured'),
        config.get('smtp_port', 'not configured'),
        config.get('email_from', 'not configured'),
        ', '.join(recipients)
    )

    result = send_email("LDAP SCIM Sync: Configuration Test", test_body, config)
    if result:
        logger.info("Test notification sent successfully")
    else:
        logger.error("Test notification failed")
    return result
