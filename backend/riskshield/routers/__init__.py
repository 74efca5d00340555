"""RiskShield - API Routers"""
from .verifications import router as verifications_router
from .exceptions import router as exceptions_router
from .scheduler import router as scheduler_router
from .webhooks import router as webhooks_router
from .audit_logs import router as audit_logs_router
from .admin import router as admin_router

__all__ = [
    "verifications_router",
    "exceptions_router",
    "scheduler_router",
    "webhooks_router",
    "audit_logs_router",
    "admin_router",
]
