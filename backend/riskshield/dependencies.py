"""
FastAPI dependencies that build engine services per request.
"""
from fastapi import Depends
from sqlalchemy.orm import Session

from .config import Settings, get_settings
from .database import get_db
from .services.compliance import ComplianceService


def get_compliance_service(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> ComplianceService:
    return ComplianceService(db, settings)
