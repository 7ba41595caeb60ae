# dashboard router: therapist polling, unread counts, stats and groups
# phase 1 polling endpoints return ids and counts only

import logging
from fastapi import APIRouter, Depends

from therapy_chat.dependencies import get_services, require_role
from therapy_chat.models.conversation import StatsResponse, TherapistUpdatesResponse, UnreadCountsResponse
from therapy_chat.models.user import GroupResponse
from therapy_chat.services.registry import TherapyServices

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/dashboard", tags=["dashboard"])

staff = require_role("therapist", "admin")


@router.get("/config")
async def get_config(
    current_user: dict = Depends(staff),
    services: TherapyServices = Depends(get_services),
):
    """feature flags and polling interval for the dashboard client"""
    config = services.settings
    return {
        "features": {
            "ai": config.ENABLE_AI,
            "drafts": config.ENABLE_DRAFTS,
            "tagging": config.ENABLE_TAGGING,
            "dangerDetection": config.ENABLE_DANGER_DETECTION,
        },
        "defaultMode": config.DEFAULT_MODE,
        "tagReasons": [r.model_dump() for r in services.tagging.reasons],
        "pollingInterval": config.POLLING_INTERVAL_SECONDS,
    }


@router.get("/updates", response_model=TherapistUpdatesResponse)
async def check_updates(
    current_user: dict = Depends(staff),
    services: TherapyServices = Depends(get_services),
):
    updates = await services.sync.check_updates_therapist(current_user)
    return TherapistUpdatesResponse(
        latestMessageId=updates["latest_message_id"],
        unreadMessages=updates["unread_messages"],
        unreadAlerts=updates["unread_alerts"],
    )


@router.get("/unread-counts", response_model=UnreadCountsResponse)
async def get_unread_counts(
    current_user: dict = Depends(staff),
    services: TherapyServices = Depends(get_services),
):
    """unread patient and therapist messages per patient and group"""
    counts = await services.sync.unread_counts(current_user)
    return UnreadCountsResponse(
        total=counts["total"],
        totalAlerts=counts["total_alerts"],
        bySubject=counts["by_subject"],
        byGroup=counts["by_group"],
    )


@router.get("/stats", response_model=StatsResponse)
async def get_stats(
    current_user: dict = Depends(staff),
    services: TherapyServices = Depends(get_services),
):
    stats = await services.sync.stats(current_user)
    return StatsResponse(
        total=stats["total"],
        active=stats["active"],
        paused=stats["paused"],
        riskCritical=stats["risk_critical"],
        riskHigh=stats["risk_high"],
        unreadAlerts=stats["unread_alerts"],
    )


@router.get("/groups", response_model=list[GroupResponse])
async def get_groups(
    current_user: dict = Depends(staff),
    services: TherapyServices = Depends(get_services),
):
    groups = await services.sync.groups_for(current_user)
    return [GroupResponse(id=g["id"], name=g["name"], patientCount=g["patient_count"]) for g in groups]
