"""
Email notification utilities for LDAP User Watch.

Operators are told by email when an account could not be handled (so it can
be reconciled by hand) and when the change subscription is lost.
"""

import smtplib
import logging
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import Dict, Any, Optional
from datetime import datetime

logger = logging.getLogger(__name__)

FOOTER = "This is an automated message from LDAP User Watch."


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

        try:
            if smtp_username and smtp_password:
                server.login(smtp_username, smtp_password)
            server.sendmail(email_from, email_to, msg.as_string())
        finally:
            server.quit()

        logger.info(f"Email notification sent successfully: {subject}")
        return True

    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"Failed to send email notification: {e}")
        return False


def send_failure_notification(
    title: str,
    error_message: str,
    config: Dict[str, Any],
    additional_info: Optional[Dict[str, Any]] = None
) -> bool:
    """
    Send a generic failure report.

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
        "LDAP User Watch Failure Report",
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

    return send_email(f"LDAP User Watch Alert: {title}", '\n'.join(body_lines), config)


def send_account_failure(account_id: str, error: Exception, config: Dict[str, Any]) -> bool:
    """
    Report an account whose new-account handling failed.

    The account is not retried automatically, so the message asks for manual
    reconciliation.
    """
    additional_info = {
        'Account': account_id,
        'Error Type': type(error).__name__,
        'Impact': 'The downstream action was not recorded for this account and will not be retried automatically'
    }
    return send_failure_notification(f"Account {account_id} Not Handled", str(error), config, additional_info)


def send_subscription_failure(error_message: str, config: Dict[str, Any], attempts: int = 0) -> bool:
    """Report that the change subscription could not be (re-)established."""
    additional_info = {
        'Component': 'Change Notification Subscription',
        'Attempts': attempts,
        'Impact': 'New accounts are not being detected'
    }
    return send_failure_notification("Change Subscription Lost", error_message, config, additional_info)


def test_notification_config(config: Dict[str, Any]) -> bool:
    """
    Test email notification configuration by sending a test email.

    Args:
        config: Notification configuration to test

    Returns:
        True if test email sent successfully
    """
    body = "\n".join([
        "This is a test email from LDAP User Watch.",
        "",
        "If you receive this message, your email notification configuration is working correctly.",
        "",
        f"SMTP Server: {config.get('smtp_server', 'not configured')}",
        f"SMTP Port: {config.get('smtp_port', 'not configured')}",
        f"From Address: {config.get('email_from', 'not configured')}",
        "",
        FOOTER
    ])

    result = send_email("LDAP User Watch: Configuration Test", body, config)
    if result:
        logger.info("Test notification sent successfully")
    else:
        logger.error("Test notification failed")
    return result
