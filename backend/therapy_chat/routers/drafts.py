# drafts router: ai-suggested therapist replies and clinical summaries
# drafts are private to the therapist that generated them

import logging
from fastapi import APIRouter, Depends

from therapy_chat.dependencies import get_services, require_role
from therapy_chat.models.draft import (
    DiscardResponse,
    DraftResponse,
    DraftUpdate,
    SummaryResponse,
    UndoResponse,
)
from therapy_chat.models.message import MessageResponse
from therapy_chat.routers.converters import doc_to_draft, doc_to_message
from therapy_chat.services.registry import TherapyServices

logger = logging.getLogger(__name__)
router = APIRouter(tags=["drafts"])

staff = require_role("therapist", "admin")


@router.post("/conversations/{conversation_id}/drafts", response_model=DraftResponse)
async def generate_draft(
    conversation_id: int,
    current_user: dict = Depends(staff),
    services: TherapyServices = Depends(get_services),
):
    """generate a reply draft. replaces the caller's active draft, keeping its text for undo"""
    draft = await services.drafts.generate(current_user, conversation_id)
    return doc_to_draft(draft)


@router.get("/conversations/{conversation_id}/drafts", response_model=DraftResponse | None)
async def get_active_draft(
    conversation_id: int,
    current_user: dict = Depends(staff),
    services: TherapyServices = Depends(get_services),
):
    draft = await services.drafts.get_active(current_user, conversation_id)
    return doc_to_draft(draft) if draft else None


@router.post("/conversations/{conversation_id}/summary", response_model=SummaryResponse)
async def generate_summary(
    conversation_id: int,
    current_user: dict = Depends(staff),
    services: TherapyServices = Depends(get_services),
):
    """clinical summary of the conversation. not stored until saved as a note"""
    result = await services.drafts.generate_summary(current_user, conversation_id)
    return SummaryResponse(
        summary=result["summary"],
        tokensUsed=result["tokens_used"],
        auditConversationId=result["audit_conversation_id"],
    )


@router.patch("/drafts/{draft_id}", response_model=DraftResponse)
async def update_draft(
    draft_id: int,
    body: DraftUpdate,
    current_user: dict = Depends(staff),
    services: TherapyServices = Depends(get_services),
):
    draft = await services.drafts.update(current_user, draft_id, body.edited_content)
    return doc_to_draft(draft)


@router.post("/drafts/{draft_id}/regenerate", response_model=DraftResponse)
async def regenerate_draft(
    draft_id: int,
    current_user: dict = Depends(staff),
    services: TherapyServices = Depends(get_services),
):
    draft = await services.drafts.regenerate(current_user, draft_id)
    return doc_to_draft(draft)


@router.post("/drafts/{draft_id}/undo", response_model=UndoResponse)
async def undo_draft(
    draft_id: int,
    current_user: dict = Depends(staff),
    services: TherapyServices = Depends(get_services),
):
    undone, draft = await services.drafts.undo(current_user, draft_id)
    return UndoResponse(
        undone=undone,
        draft=doc_to_draft(draft),
        message=None if undone else "Nothing to undo",
    )


@router.post("/drafts/{draft_id}/send", response_model=MessageResponse)
async def send_draft(
    draft_id: int,
    current_user: dict = Depends(staff),
    services: TherapyServices = Depends(get_services),
):
    """post the draft to the patient as the therapist"""
    _, message = await services.drafts.send(current_user, draft_id)
    return doc_to_message(message, {current_user["id"]: current_user.get("name", "")})


@router.post("/drafts/{draft_id}/discard", response_model=DiscardResponse)
async def discard_draft(
    draft_id: int,
    current_user: dict = Depends(staff),
    services: TherapyServices = Depends(get_services),
):
    changed = await services.drafts.discard(current_user, draft_id)
    return DiscardResponse(changed=changed)
