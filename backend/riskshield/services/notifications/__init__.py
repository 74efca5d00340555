"""
RiskShield - Notification providers (SendGrid email, Twilio SMS)
"""
import logging
from typing import Tuple

from ...config import Settings
from .base import DeliveryResult, EmailProvider, SmsProvider
from .email_provider import SendGridEmailProvider, DevEmailProvider
from .sms_provider import TwilioSmsProvider, DevSmsProvider


logger = logging.getLogger(__name__)


def build_providers(settings: Settings) -> Tuple[EmailProvider, SmsProvider]:
    """Real providers when credentials are configured, dev simulators otherwise."""
    if settings.sendgrid_configured:
        email = SendGridEmailProvider(
            api_key=settings.sendgrid_api_key,
            from_email=settings.sendgrid_from_email,
            from_name=settings.sendgrid_from_name,
            timeout=settings.provider_timeout_seconds,
        )
    else:
        logger.warning("SendGrid not configured - email sends are simulated")
        email = DevEmailProvider()

    if settings.twilio_configured:
        sms = TwilioSmsProvider(
            account_sid=settings.twilio_account_sid,
            auth_token=settings.twilio_auth_token,
            from_number=settings.twilio_phone_number,
            timeout=settings.provider_timeout_seconds,
        )
    else:
        logger.warning("Twilio not configured - SMS sends are simulated")
        sms = DevSmsProvider()

    return email, sms


__all__ = [
    "DeliveryResult", "EmailProvider", "SmsProvider",
    "SendGridEmailProvider", "DevEmailProvider", "TwilioSmsProvider", "DevSmsProvider",
    "build_providers",
]
