"""Alerting for high priority complaints."""
import logging
import httpx
from config import config
from models import Complaint

logger = logging.getLogger(__name__)


class AlertService:
    """Service to notify staff about high priority complaints.

    Posts a Slack-compatible payload to the configured webhook. When
    alerting is disabled or no webhook is configured the alert is only
    logged.
    """

    def __init__(self, webhook_url: str = None, enabled: bool = None):
        """Initialize alert service."""
        self.webhook_url = config.ALERT_WEBHOOK_URL if webhook_url is None else webhook_url
        self.enabled = config.ALERT_ENABLED if enabled is None else enabled

    async def send_alert(self, complaint: Complaint, reason: str) -> bool:
        """Send alert for a high priority complaint.

        Args:
            complaint: The complaint that needs attention
            reason: Why the alert fired ("created" or "escalated")

        Returns:
            True if alert sent (or logged) successfully, False otherwise
        """
        if not self.enabled:
            logger.info(
                f"Alert would be sent for complaint {complaint.id} "
                f"(alerting disabled in config)"
            )
            return True

        alert_payload = self._build_alert_payload(complaint, reason)

        try:
            if self.webhook_url:
                await self._send_webhook(alert_payload)
            else:
                # Log alert since webhook not configured
                logger.warning(
                    f"ALERT: Complaint {complaint.id} {reason} with {complaint.priority} priority - "
                    f"Category: {complaint.category}, Center: {complaint.center}"
                )

            return True

        except httpx.HTTPError as e:
            logger.error(f"Failed to send alert for complaint {complaint.id}: {e}")
            return False

    def _build_alert_payload(self, complaint: Complaint, reason: str) -> dict:
        """Build alert payload for webhook.

        Creator identity is never included, anonymous or not.
        """
        # Slack-compatible format
        return {
            "text": f"High priority complaint {reason}",
            "blocks": [
                {
                    "type": "header",
                    "text": {
                        "type": "plain_text",
                        "text": f"High priority complaint {reason}"
                    }
                },
                {
                    "type": "section",
                    "fields": [
                        {
                            "type": "mrkdwn",
                            "text": f"*Complaint ID:*\n{complaint.id}"
                        },
                        {
                            "type": "mrkdwn",
                            "text": f"*Category:*\n{complaint.category}"
                        },
                        {
                            "type": "mrkdwn",
                            "text": f"*Center:*\n{complaint.center}"
                        },
                        {
                            "type": "mrkdwn",
                            "text": f"*Status:*\n{complaint.status}"
                        }
                    ]
                },
                {
                    "type": "section",
                    "text": {
                        "type": "mrkdwn",
                        "text": f"*{complaint.title}*\n{complaint.description[:500]}"
                    }
                }
            ]
        }

    async def _send_webhook(self, payload: dict) -> None:
        """Send webhook notification.

        Raises:
            httpx.HTTPError: If webhook delivery fails
        """
        async with httpx.AsyncClient(timeout=5.0) as client:
            response = await client.post(
                self.webhook_url,
                json=payload
            )
            response.raise_for_status()
            logger.info(f"Alert sent successfully to {self.webhook_url}")
