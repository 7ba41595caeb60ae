# alerts router: danger and tag alerts for the therapist dashboard

import logging
from typing import Optional
from fastapi import APIRouter, Depends, Query

from therapy_chat.dependencies import get_services, require_role
from therapy_chat.models.alert import AlertResponse, TagResponse
from therapy_chat.routers.converters import doc_to_alert, doc_to_tag
from therapy_chat.services.registry import TherapyServices

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/alerts", tags=["alerts"])

staff = require_role("therapist", "admin")


@router.get("", response_model=list[AlertResponse])
async def list_alerts(
    unread_only: bool = Query(False, alias="unreadOnly"),
    alert_type: Optional[str] = Query(None, alias="alertType"),
    conversation_id: Optional[int] = Query(None, alias="conversationId"),
    limit: int = Query(100, ge=1, le=500),
    current_user: dict = Depends(staff),
    services: TherapyServices = Depends(get_services),
):
    """alerts in the caller's scope, most severe and unread first"""
    alerts = await services.alerts.list_for_therapist(
        current_user,
        unread_only=unread_only,
        alert_type=alert_type,
        conversation_id=conversation_id,
        limit=limit,
    )
    return [doc_to_alert(a) for a in alerts]


@router.post("/read-all")
async def mark_all_alerts_read(
    conversation_id: Optional[int] = Query(None, alias="conversationId"),
    current_user: dict = Depends(staff),
    services: TherapyServices = Depends(get_services),
):
    count = await services.alerts.mark_all_read(current_user, conversation_id)
    return {"success": True, "count": count}


@router.post("/{alert_id}/read", response_model=AlertResponse)
async def mark_alert_read(
    alert_id: int,
    current_user: dict = Depends(staff),
    services: TherapyServices = Depends(get_services),
):
    alert = await services.alerts.mark_read(current_user, alert_id)
    return doc_to_alert(alert)


@router.get("/tags", response_model=list[TagResponse])
async def list_tags(
    pending_only: bool = Query(True, alias="pendingOnly"),
    conversation_id: Optional[int] = Query(None, alias="conversationId"),
    current_user: dict = Depends(staff),
    services: TherapyServices = Depends(get_services),
):
    tags = await services.alerts.list_tags(current_user, pending_only=pending_only, conversation_id=conversation_id)
    return [doc_to_tag(t) for t in tags]


@router.post("/tags/{tag_id}/acknowledge", response_model=TagResponse)
async def acknowledge_tag(
    tag_id: int,
    current_user: dict = Depends(staff),
    services: TherapyServices = Depends(get_services),
):
    tag = await services.alerts.acknowledge_tag(current_user, tag_id)
    return doc_to_tag(tag)
