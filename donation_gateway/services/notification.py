"""
HTTP client for Notification Service communication
"""
from typing import Any, Dict, Optional

import httpx
import structlog

from donation_gateway.core.config import Settings
from donation_gateway.middleware.metrics import notifications_total
from donation_gateway.models.donation import Donation

logger = structlog.get_logger(__name__)


class NotificationError(Exception):
    """Notification service rejected or did not receive the email"""
    pass


class NotificationClient:
    """Sends donation receipts through the notification service"""

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        self.enabled = settings.notification_enabled
        self.base_url = settings.notification_service_url.rstrip("/")
        self.timeout = httpx.Timeout(settings.notification_timeout_seconds, connect=5.0)
        self._transport = transport

    def build_receipt(self, donation: Donation) -> Dict[str, Any]:
        org = self.settings.organization_name
        currency = self.settings.currency_label
        date = donation.updated_at.strftime("%d/%m/%Y") if donation.updated_at else ""
        subject = f"Thank you for your donation - {org}"

        body = (
            f"Dear {donation.full_name},\n\n"
            f"Thank you for your generous donation of {currency} {donation.amount}.\n\n"
            f"Your donation reference number is: {donation.donation_ref}\n"
            f"Transaction ID: {donation.processor_transaction_ref}\n\n"
            f"Your support helps us continue our mission.\n\n"
            f"With gratitude,\n{org}"
        )
        html = f"""
            <div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
              <h2>Thank You for Your Donation</h2>
              <p>Dear <strong>{donation.full_name}</strong>,</p>
              <p>Thank you for your generous donation of <strong>{currency} {donation.amount}</strong>.</p>
              <div style="background-color: #f5f5f5; padding: 15px; margin: 20px 0;">
                <p style="margin: 5px 0;"><strong>Donation Reference:</strong> {donation.donation_ref}</p>
                <p style="margin: 5px 0;"><strong>Transaction ID:</strong> {donation.processor_transaction_ref}</p>
                <p style="margin: 5px 0;"><strong>Amount:</strong> {currency} {donation.amount}</p>
                <p style="margin: 5px 0;"><strong>Date:</strong> {date}</p>
              </div>
              <p style="margin-top: 30px;">With gratitude,<br><strong>{org}</strong></p>
            </div>
        """

        return {
            "to": donation.email,
            "subject": subject,
            "body": body,
            "html": html,
            "user_id": donation.donation_ref,
        }

    async def send_donation_receipt(self, donation: Donation) -> bool:
        """
        Queue a thank-you email for a successful donation

        Returns False when notifications are disabled.

        Raises:
            NotificationError: the notification service could not be reached
                or answered with an error status
        """
        if not self.enabled:
            logger.info("Notifications disabled, skipping receipt", donation_ref=donation.donation_ref)
            notifications_total.labels(status="skipped").inc()
            return False

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    f"{self.base_url}/notifications/email",
                    json=self.build_receipt(donation)
                )
        except httpx.HTTPError as e:
            notifications_total.labels(status="failed").inc()
            raise NotificationError(f"Notification service unavailable: {e}") from e

        if response.status_code >= 400:
            notifications_total.labels(status="failed").inc()
            raise NotificationError(f"Notification service returned {response.status_code}")

        notifications_total.labels(status="sent").inc()
        logger.info("Donation receipt queued", donation_ref=donation.donation_ref)
        return True
