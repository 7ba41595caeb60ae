# assignments router: admin management of therapist group assignments

import logging
from fastapi import APIRouter, Depends

from therapy_chat.dependencies import get_services, require_role
from therapy_chat.models.user import AssignmentsResponse, AssignmentsUpdate
from therapy_chat.services.registry import TherapyServices

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/assignments", tags=["assignments"])


@router.get("/{therapist_id}", response_model=AssignmentsResponse)
async def get_assignments(
    therapist_id: str,
    current_user: dict = Depends(require_role("admin")),
    services: TherapyServices = Depends(get_services),
):
    group_ids = await services.access.therapist_groups(therapist_id)
    return AssignmentsResponse(therapistId=therapist_id, groupIds=group_ids)


@router.put("/{therapist_id}", response_model=AssignmentsResponse)
async def set_assignments(
    therapist_id: str,
    body: AssignmentsUpdate,
    current_user: dict = Depends(require_role("admin")),
    services: TherapyServices = Depends(get_services),
):
    """replace the therapist's group assignments"""
    group_ids = await services.access.set_assignments(therapist_id, body.group_ids)
    await services.audit.record(
        "update", "therapist_assignments", 0, current_user["id"],
        f"Assignments for therapist {therapist_id} set to {', '.join(group_ids) or 'none'}",
    )
    return AssignmentsResponse(therapistId=therapist_id, groupIds=group_ids)
