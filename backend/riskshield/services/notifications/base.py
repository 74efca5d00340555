"""
Provider contracts for outbound email and SMS.

Providers never raise for a failed send; they return a DeliveryResult with
success=False so the dispatcher can record the failure and move on.
"""
from dataclasses import dataclass
from typing import Optional


@dataclass
class DeliveryResult:
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None
    simulated: bool = False


class EmailProvider:
    name = "email"

    def send_email(self, to: str, subject: str, body: str) -> DeliveryResult:
        raise NotImplementedError


class SmsProvider:
    name = "sms"

    def send_sms(self, to: str, body: str) -> DeliveryResult:
        raise NotImplementedError
