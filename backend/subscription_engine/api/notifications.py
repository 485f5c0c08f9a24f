"""
Billing notification inbox endpoints.

WHAT: Lists the renewal, expiry and payment notifications sent to an
organization, and marks them read.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field

from subscription_engine.core.deps import get_notification_service
from subscription_engine.models.notification import NotificationType
from subscription_engine.services.notification_service import NotificationService

router = APIRouter(prefix="/organizations/{org_id}/notifications", tags=["Notifications"])


class NotificationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: int
    notification_type: NotificationType
    title: str
    message: str
    metadata: Optional[Dict[str, Any]] = Field(default=None, validation_alias="extra_data")
    is_read: bool
    created_at: datetime


class NotificationsResponse(BaseModel):
    org_id: str
    notifications: List[NotificationResponse]


class MarkReadResponse(BaseModel):
    org_id: str
    marked_read: int


@router.get("", response_model=NotificationsResponse, summary="List notifications")
async def list_notifications(
    org_id: str,
    unread_only: bool = Query(default=False),
    limit: int = Query(default=50, ge=1, le=200),
    service: NotificationService = Depends(get_notification_service),
):
    notifications = await service.list_notifications(org_id, unread_only, limit)
    return NotificationsResponse(
        org_id=org_id,
        notifications=[NotificationResponse.model_validate(n) for n in notifications],
    )


@router.post("/read", response_model=MarkReadResponse, summary="Mark all notifications read")
async def mark_all_read(
    org_id: str,
    service: NotificationService = Depends(get_notification_service),
):
    count = await service.mark_all_read(org_id)
    return MarkReadResponse(org_id=org_id, marked_read=count)
