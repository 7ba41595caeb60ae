# notes router: therapist-private clinical notes on a conversation
# patients never reach these endpoints

import logging
from fastapi import APIRouter, Depends

from therapy_chat.dependencies import get_services, require_role
from therapy_chat.models.note import NoteCreate, NoteResponse, NoteUpdate
from therapy_chat.routers.converters import doc_to_note
from therapy_chat.services.registry import TherapyServices

logger = logging.getLogger(__name__)
router = APIRouter(tags=["notes"])

staff = require_role("therapist", "admin")


@router.post("/conversations/{conversation_id}/notes", response_model=NoteResponse, status_code=201)
async def create_note(
    conversation_id: int,
    body: NoteCreate,
    current_user: dict = Depends(staff),
    services: TherapyServices = Depends(get_services),
):
    """add a manual note, or save an ai summary as a note"""
    note = await services.notes.add(
        current_user,
        conversation_id,
        body.content,
        note_type=body.note_type,
        ai_original_content=body.ai_original_content,
    )
    return doc_to_note(note)


@router.get("/conversations/{conversation_id}/notes", response_model=list[NoteResponse])
async def list_notes(
    conversation_id: int,
    current_user: dict = Depends(staff),
    services: TherapyServices = Depends(get_services),
):
    notes = await services.notes.list_for_conversation(current_user, conversation_id)
    return [doc_to_note(n) for n in notes]


@router.patch("/notes/{note_id}", response_model=NoteResponse)
async def update_note(
    note_id: int,
    body: NoteUpdate,
    current_user: dict = Depends(staff),
    services: TherapyServices = Depends(get_services),
):
    note = await services.notes.edit(current_user, note_id, body.content)
    return doc_to_note(note)


@router.delete("/notes/{note_id}")
async def delete_note(
    note_id: int,
    current_user: dict = Depends(staff),
    services: TherapyServices = Depends(get_services),
):
    await services.notes.delete(current_user, note_id)
    return {"success": True}
