import requests
import logging
import smtplib
import time
from datetime import datetime, timezone
from email.message import EmailMessage
from typing import Dict, Any, List, Optional

from detection.models import SigmaDetectionMatch

logger = logging.getLogger(__name__)


class DeliveryError(RuntimeError):
    """A notification channel failed to deliver."""


def build_sigma_notifications(grouped_matches: Dict[str, List[SigmaDetectionMatch]], rules: Any,
                              organization_id: str, project_id: Optional[str] = None) -> List[Dict[str, Any]]:
    """
    Turn Sigma matches grouped by rule into notification payloads.

    Sigma matches use the same payload shape as threshold alerts, as a
    threshold-1 trigger over a 1 minute window. Rules with neither email
    recipients nor a webhook are detection-only and produce no payload.
    """
    payloads: List[Dict[str, Any]] = []

    for sigma_rule_id, matches in grouped_matches.items():
        if not matches:
            continue
        first_match = matches[0]

        rule = rules.get(sigma_rule_id, organization_id)
        if rule is None:
            logger.warning(f"Sigma rule not found: {sigma_rule_id}")
            continue

        logger.info(f"Sigma rule matched: {first_match.rule_title} ({len(matches)} matches, level: {first_match.rule_level})")

        if not rule.email_recipients and not rule.webhook_url:
            logger.info(f"Sigma rule {first_match.rule_title!r} matched but has no notification settings (detection-only mode)")
            continue

        payloads.append({
            'historyId': None,
            'rule_id': rule.id,
            'rule_name': f"[Sigma] {first_match.rule_title}",
            'organization_id': organization_id,
            'project_id': project_id,
            'log_count': len(matches),
            'threshold': 1,
            'time_window': 1,
            'email_recipients': list(rule.email_recipients),
            'webhook_url': rule.webhook_url,
        })

    return payloads


class AlertManager:
    """
    Delivers trigger payloads over email and webhook and records the outcome
    on the alert history entry.
    """
    def __init__(self, config: Dict[str, Any], history: Any):
        self.history = history
        self.smtp_config = config.get('smtp') or {}
        self.webhook_timeout = config.get('webhook_timeout', 10)
        self.max_retries = max(1, int(config.get('max_retries', 3)))
        self.retry_delay = config.get('retry_delay', 1)
        self.sent_count = 0
        self.failed_count = 0

        smtp_status = "configured" if self.smtp_config.get('host') else "not configured"
        logger.info(f"Alert manager initialized (SMTP: {smtp_status}, webhook retries: {self.max_retries})")

    def _format_text(self, data: Dict[str, Any], triggered_at: datetime) -> str:
        return (
            f"Alert Triggered: {data['rule_name']}\n\n"
            f"Alert Details:\n"
            f"- Log Count: {data['log_count']}\n"
            f"- Threshold: {data['threshold']}\n"
            f"- Time Window: {data['time_window']} minutes\n"
            f"- Triggered At: {triggered_at.isoformat()}\n\n"
            f"{data['log_count']} logs were generated in the last {data['time_window']} minutes, "
            f"reaching the threshold of {data['threshold']}."
        )

    def send_email(self, data: Dict[str, Any]) -> None:
        host = self.smtp_config.get('host')
        if not host:
            raise DeliveryError("SMTP not configured")

        message = EmailMessage()
        message['Subject'] = f"Alert: {data['rule_name']}"
        message['From'] = self.smtp_config.get('from') or self.smtp_config.get('user') or 'alerts@localhost'
        message['To'] = ", ".join(data['email_recipients'])
        message.set_content(self._format_text(data, datetime.now(timezone.utc)))

        try:
            with smtplib.SMTP(host, self.smtp_config.get('port', 587), timeout=self.smtp_config.get('timeout', 10)) as smtp:
                if self.smtp_config.get('starttls', True):
                    smtp.starttls()
                if self.smtp_config.get('user'):
                    smtp.login(self.smtp_config['user'], self.smtp_config.get('password', ''))
                smtp.send_message(message)
        except (smtplib.SMTPException, OSError) as e:
            raise DeliveryError(str(e)) from e

        logger.info(f"Email sent to: {message['To']}")

    def send_webhook(self, data: Dict[str, Any]) -> None:
        """
        POST the alert to the rule's webhook with exponential backoff retry.

        Raises:
            DeliveryError: after a 4xx response or once retries are exhausted
        """
        payload = {
            'alert_name': data['rule_name'],
            'log_count': data['log_count'],
            'threshold': data['threshold'],
            'time_window': data['time_window'],
            'timestamp': datetime.now(timezone.utc).isoformat(),
        }
        url = data['webhook_url']
        retry_delay = self.retry_delay
        last_error = "unknown error"

        for attempt in range(self.max_retries):
            try:
                logger.debug(f"Sending webhook (attempt {attempt + 1}/{self.max_retries}): {data['rule_name']}")
                response = requests.post(
                    url,
                    json=payload,
                    headers={'Content-Type': 'application/json'},
                    timeout=self.webhook_timeout
                )

                if 200 <= response.status_code < 300:
                    logger.info(f"Webhook notification sent to: {url}")
                    return

                last_error = f"HTTP {response.status_code} {response.reason or ''}".strip()
                logger.warning(f"Webhook failed with status {response.status_code}: {response.text}")

                # Don't retry on 4xx errors (client errors)
                if 400 <= response.status_code < 500:
                    raise DeliveryError(last_error)

            except requests.exceptions.Timeout:
                last_error = "timeout"
                logger.warning(f"Webhook timeout (attempt {attempt + 1}/{self.max_retries}): {data['rule_name']}")
            except requests.exceptions.ConnectionError as e:
                last_error = f"connection error: {e}"
                logger.warning(f"Connection error (attempt {attempt + 1}/{self.max_retries}): {data['rule_name']}")
            except requests.exceptions.RequestException as e:
                raise DeliveryError(str(e)) from e

            # Retry with exponential backoff
            if attempt < self.max_retries - 1:
                logger.info(f"Retrying in {retry_delay} seconds...")
                time.sleep(retry_delay)
                retry_delay *= 2

        raise DeliveryError(f"{last_error} after {self.max_retries} attempts")

    def process_notification(self, data: Dict[str, Any]) -> List[str]:
        """
        Deliver one trigger over every configured channel.

        A failing channel never prevents the next one from being attempted.
        The history entry is marked notified either way, with the joined
        channel errors (or None).

        Returns:
            The channel error messages (empty on full success)
        """
        logger.info(f"Processing alert notification: {data.get('rule_name')}")
        errors: List[str] = []

        if data.get('email_recipients'):
            try:
                self.send_email(data)
            except DeliveryError as e:
                errors.append(f"Email failed: {e}")
                logger.error(f"Email failed for {data.get('rule_name')}: {e}")
        else:
            logger.debug(f"No email recipients configured for: {data.get('rule_name')}")

        if data.get('webhook_url'):
            try:
                self.send_webhook(data)
            except DeliveryError as e:
                errors.append(f"Webhook failed: {e}")
                logger.error(f"Webhook failed for {data.get('rule_name')}: {e}")
        else:
            logger.debug(f"No webhook configured for: {data.get('rule_name')}")

        if errors:
            self.failed_count += 1
        else:
            self.sent_count += 1

        self.history.mark_as_notified(data.get('historyId'), "; ".join(errors) if errors else None)
        return errors

    def get_stats(self) -> Dict[str, Any]:
        """Get alert manager statistics."""
        return {
            'notifications_sent': self.sent_count,
            'notifications_failed': self.failed_count,
        }
