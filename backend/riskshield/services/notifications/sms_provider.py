"""
SMS delivery via the Twilio Messages REST API (form POST, basic auth).
"""
import logging
from uuid import uuid4

import httpx

from .base import DeliveryResult, SmsProvider


logger = logging.getLogger(__name__)

TWILIO_MESSAGES_URL = "https://api.twilio.com/2010-04-01/Accounts/{account_sid}/Messages.json"


def normalize_phone(phone: str) -> str:
    """Australian numbers to E.164; anything already prefixed is kept."""
    cleaned = "".join(ch for ch in phone if ch.isdigit() or ch == "+")
    if cleaned.startswith("+"):
        return cleaned
    if cleaned.startswith("0"):
        return "+61" + cleaned[1:]
    if cleaned.startswith("61"):
        return "+" + cleaned
    return "+" + cleaned


class TwilioSmsProvider(SmsProvider):
    name = "twilio"

    def __init__(self, account_sid: str, auth_token: str, from_number: str, timeout: float = 10.0):
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.timeout = timeout

    def send_sms(self, to: str, body: str) -> DeliveryResult:
        url = TWILIO_MESSAGES_URL.format(account_sid=self.account_sid)
        data = {"To": normalize_phone(to), "From": self.from_number, "Body": body}

        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(url, data=data, auth=(self.account_sid, self.auth_token))
        except httpx.HTTPError as e:
            logger.error(f"Twilio request failed for {to}: {e}")
            return DeliveryResult(success=False, error=f"Twilio unreachable: {e}")

        if response.status_code >= 300:
            try:
                message = response.json().get("message", response.text[:200])
            except ValueError:
                message = response.text[:200]
            logger.error(f"Twilio error {response.status_code} for {to}: {message}")
            return DeliveryResult(success=False, error=f"Twilio error {response.status_code}: {message}")

        return DeliveryResult(success=True, message_id=response.json().get("sid"))


class DevSmsProvider(SmsProvider):
    name = "dev_sms"

    def send_sms(self, to: str, body: str) -> DeliveryResult:
        logger.info(f"[DEV] SMS to {to}: {body[:80]}")
        return DeliveryResult(success=True, message_id=f"dev-{uuid4()}", simulated=True)
