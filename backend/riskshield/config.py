"""
RiskShield - Runtime Configuration

All settings come from environment variables. Services receive a Settings
instance explicitly; nothing in the engine reads the environment directly.
A malformed numeric variable raises ConfigError naming the variable.
"""
import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional


class ConfigError(ValueError):
    """An environment variable holds a value the settings cannot use."""


def _int_env(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")
    if value < minimum:
        raise ConfigError(f"{name} must be at least {minimum}, got {value}")
    return value


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}")
    if not value > 0:  # also rejects nan
        raise ConfigError(f"{name} must be greater than 0, got {value}")
    return value


@dataclass(frozen=True)
class Settings:
    """Runtime settings for the API, the sweeps and the providers."""

    # Persistence
    database_url: str

    # Auth
    jwt_secret_key: str = "riskshield-secret-key-change-in-production"
    jwt_algorithm: str = "HS256"
    internal_api_key: str = "scheduler-internal-key-change-in-production"
    webhook_shared_secret: Optional[str] = None

    # Email (SendGrid)
    sendgrid_api_key: Optional[str] = None
    sendgrid_from_email: str = "noreply@riskshield.ai"
    sendgrid_from_name: str = "RiskShield AI"

    # SMS (Twilio)
    twilio_account_sid: Optional[str] = None
    twilio_auth_token: Optional[str] = None
    twilio_phone_number: Optional[str] = None

    # Links embedded in messages
    app_url: str = "https://riskshield.ai"

    # Escalation defaults
    escalation_min_days_waiting: int = 2
    escalation_max_followups: int = 10

    # Dispatch fan-out
    dispatch_max_workers: int = 4
    provider_timeout_seconds: float = 10.0

    log_level: str = "INFO"

    @property
    def sendgrid_configured(self) -> bool:
        return bool(self.sendgrid_api_key)

    @property
    def twilio_configured(self) -> bool:
        return bool(self.twilio_account_sid and self.twilio_auth_token and self.twilio_phone_number)

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the process environment."""
        return cls(
            database_url=os.getenv(
                "DATABASE_URL",
                f"postgresql://{os.getenv('USER', 'postgres')}@localhost:5432/riskshield"
            ),
            jwt_secret_key=os.getenv("JWT_SECRET_KEY", cls.jwt_secret_key),
            internal_api_key=os.getenv("INTERNAL_API_KEY", cls.internal_api_key),
            webhook_shared_secret=os.getenv("WEBHOOK_SHARED_SECRET") or None,
            sendgrid_api_key=os.getenv("SENDGRID_API_KEY") or None,
            sendgrid_from_email=os.getenv("SENDGRID_FROM_EMAIL", cls.sendgrid_from_email),
            sendgrid_from_name=os.getenv("SENDGRID_FROM_NAME", cls.sendgrid_from_name),
            twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID") or None,
            twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN") or None,
            twilio_phone_number=os.getenv("TWILIO_PHONE_NUMBER") or None,
            app_url=os.getenv("APP_URL", cls.app_url),
            escalation_min_days_waiting=_int_env("ESCALATION_MIN_DAYS_WAITING", 2),
            escalation_max_followups=_int_env("ESCALATION_MAX_FOLLOWUPS", 10),
            dispatch_max_workers=_int_env("DISPATCH_MAX_WORKERS", 4, minimum=1),
            provider_timeout_seconds=_float_env("PROVIDER_TIMEOUT_SECONDS", 10.0),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )


@lru_cache
def get_settings() -> Settings:
    """Dependency for FastAPI - settings are read once per process."""
    return Settings.from_env()
