"""
Webhook API Routes

Delivery status callbacks from the notification providers.
"""
from datetime import datetime, timezone
from typing import List, Optional
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..auth import verify_webhook_secret
from ..database import get_db
from ..dependencies import get_compliance_service
from ..services.compliance import ComplianceService


router = APIRouter(prefix="/webhooks", tags=["webhooks"])


class DeliveryEventRequest(BaseModel):
    communication_id: str = Field(..., description="Communication the event is about")
    status: str = Field(..., description="sent, delivered, opened or failed")
    timestamp: Optional[datetime] = Field(None, description="When the provider observed the event")
    error_message: Optional[str] = Field(None, description="Provider error for failed events")


@router.post("/delivery", response_model=dict)
async def delivery_event(
    request: DeliveryEventRequest,
    db: Session = Depends(get_db),
    service: ComplianceService = Depends(get_compliance_service),
    _: bool = Depends(verify_webhook_secret),
):
    """Generic delivery callback. Downgrades are ignored, not rejected."""
    timestamp = request.timestamp
    if timestamp is not None and timestamp.tzinfo is not None:
        timestamp = timestamp.astimezone(timezone.utc).replace(tzinfo=None)
    result = service.on_delivery_event(
        request.communication_id, request.status, timestamp, request.error_message,
    )
    db.commit()
    return result


@router.post("/sendgrid", response_model=dict)
async def sendgrid_events(
    events: List[dict],
    db: Session = Depends(get_db),
    service: ComplianceService = Depends(get_compliance_service),
    _: bool = Depends(verify_webhook_secret),
):
    """SendGrid event webhook (batched JSON array)."""
    result = service.on_sendgrid_events(events)
    db.commit()
    return result
