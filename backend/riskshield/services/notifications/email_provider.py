"""
Email delivery via the SendGrid v3 REST API.

When no API key is configured the DevEmailProvider logs the message and
reports a simulated success, so local runs exercise the full flow.
"""
import logging
from uuid import uuid4

import httpx

from .base import DeliveryResult, EmailProvider


logger = logging.getLogger(__name__)

SENDGRID_SEND_URL = "https://api.sendgrid.com/v3/mail/send"


class SendGridEmailProvider(EmailProvider):
    name = "sendgrid"

    def __init__(self, api_key: str, from_email: str, from_name: str, timeout: float = 10.0):
        self.api_key = api_key
        self.from_email = from_email
        self.from_name = from_name
        self.timeout = timeout

    def send_email(self, to: str, subject: str, body: str) -> DeliveryResult:
        payload = {
            "personalizations": [{"to": [{"email": to}]}],
            "from": {"email": self.from_email, "name": self.from_name},
            "subject": subject,
            "content": [{"type": "text/plain", "value": body}],
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}

        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(SENDGRID_SEND_URL, json=payload, headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"SendGrid request failed for {to}: {e}")
            return DeliveryResult(success=False, error=f"SendGrid unreachable: {e}")

        if response.status_code >= 300:
            logger.error(f"SendGrid error {response.status_code} for {to}: {response.text[:200]}")
            return DeliveryResult(
                success=False,
                error=f"SendGrid error {response.status_code}: {response.text[:200]}",
            )

        return DeliveryResult(success=True, message_id=response.headers.get("X-Message-Id"))


class DevEmailProvider(EmailProvider):
    """Simulates delivery when SendGrid is not configured."""

    name = "dev_email"

    def send_email(self, to: str, subject: str, body: str) -> DeliveryResult:
        logger.info(f"[DEV] Email to {to}: {subject}")
        logger.debug(body)
        return DeliveryResult(success=True, message_id=f"dev-{uuid4()}", simulated=True)
