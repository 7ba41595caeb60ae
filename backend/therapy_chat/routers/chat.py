# patient chat router: conversation, messages, tagging, voice input and polling
# patient-only endpoints, the conversation is created lazily on first use

import logging
from typing import Optional
from fastapi import APIRouter, Depends, File, Query, UploadFile

from therapy_chat.dependencies import get_services, require_role
from therapy_chat.models.conversation import PatientUpdatesResponse
from therapy_chat.models.message import (
    MessageListResponse,
    SendMessageRequest,
    SendMessageResponse,
    TagTherapistRequest,
)
from therapy_chat.models.user import UserSummary
from therapy_chat.routers.converters import doc_to_conversation, doc_to_message
from therapy_chat.services.chat_service import SendOutcome
from therapy_chat.services.registry import TherapyServices

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/chat", tags=["chat"])


async def _outcome_response(services: TherapyServices, outcome: SendOutcome, patient: dict) -> SendMessageResponse:
    messages = [outcome.message] + ([outcome.ai_message] if outcome.ai_message else [])
    labels = await services.chat.sender_labels(messages, patient["id"])
    return SendMessageResponse(
        conversationId=outcome.conversation["_id"],
        message=doc_to_message(outcome.message, labels),
        aiMessage=doc_to_message(outcome.ai_message, labels) if outcome.ai_message else None,
        tagged=outcome.tagged,
        blocked=outcome.blocked,
        safetyMessage=outcome.safety_message,
    )


@router.get("/config")
async def get_config(
    group_id: Optional[str] = Query(None, alias="groupId"),
    current_user: dict = Depends(require_role("patient")),
    services: TherapyServices = Depends(get_services),
):
    """everything the chat client needs on load. patient-only."""
    conversation = await services.chat.patient_conversation(current_user, group_id=group_id)
    therapists = await services.access.therapists_for_patient(current_user)
    config = services.settings
    return {
        "conversation": doc_to_conversation(conversation, current_user.get("name")).model_dump(by_alias=True),
        "therapists": [UserSummary(id=t["id"], name=t.get("name", ""), role=t["role"]).model_dump() for t in therapists],
        "tagReasons": [r.model_dump() for r in services.tagging.reasons],
        "features": {
            "ai": config.ENABLE_AI,
            "tagging": config.ENABLE_TAGGING,
            "dangerDetection": config.ENABLE_DANGER_DETECTION,
            "speechToText": services.speech.enabled,
        },
        "pollingInterval": config.POLLING_INTERVAL_SECONDS,
    }


@router.get("/conversation")
async def get_conversation(
    group_id: Optional[str] = Query(None, alias="groupId"),
    current_user: dict = Depends(require_role("patient")),
    services: TherapyServices = Depends(get_services),
):
    """the patient's open conversation. patient-only."""
    conversation = await services.chat.patient_conversation(current_user, group_id=group_id)
    return doc_to_conversation(conversation, current_user.get("name")).model_dump(by_alias=True)


@router.get("/therapists", response_model=list[UserSummary])
async def get_therapists(
    current_user: dict = Depends(require_role("patient")),
    services: TherapyServices = Depends(get_services),
):
    """therapists assigned to the patient's groups, for @mentions. patient-only."""
    therapists = await services.access.therapists_for_patient(current_user)
    return [UserSummary(id=t["id"], name=t.get("name", ""), role=t["role"]) for t in therapists]


@router.get("/messages", response_model=MessageListResponse)
async def get_messages(
    after_id: Optional[int] = Query(None, alias="afterId", ge=0, description="polling cursor"),
    current_user: dict = Depends(require_role("patient")),
    services: TherapyServices = Depends(get_services),
):
    """messages after the cursor, in log order. marks them seen. patient-only."""
    conversation = await services.conversations.get_open_for_patient(current_user["id"])
    if conversation is None:
        return MessageListResponse(messages=[], latestMessageId=0)

    messages, cursor = await services.chat.read_messages(current_user, conversation["_id"], after_id)
    labels = await services.chat.sender_labels(messages, current_user["id"])
    return MessageListResponse(
        messages=[doc_to_message(m, labels) for m in messages],
        latestMessageId=cursor,
    )


@router.post("/messages", response_model=SendMessageResponse)
async def send_message(
    body: SendMessageRequest,
    current_user: dict = Depends(require_role("patient")),
    services: TherapyServices = Depends(get_services),
):
    """send a patient message through tagging, danger screening and the ai. patient-only."""
    outcome = await services.chat.send_patient_message(
        current_user,
        body.content,
        conversation_id=body.conversation_id,
        group_id=body.group_id,
        client_message_id=body.client_message_id,
    )
    return await _outcome_response(services, outcome, current_user)


@router.post("/tag", response_model=SendMessageResponse)
async def tag_therapist(
    body: TagTherapistRequest,
    current_user: dict = Depends(require_role("patient")),
    services: TherapyServices = Depends(get_services),
):
    """ask assigned therapists for attention with an optional reason. patient-only."""
    outcome = await services.chat.tag_therapist(
        current_user,
        reason_code=body.reason,
        note=body.note,
        conversation_id=body.conversation_id,
        group_id=body.group_id,
    )
    return await _outcome_response(services, outcome, current_user)


@router.get("/updates", response_model=PatientUpdatesResponse)
async def check_updates(
    current_user: dict = Depends(require_role("patient")),
    services: TherapyServices = Depends(get_services),
):
    """phase 1 poll: latest message id and unread count only. patient-only."""
    updates = await services.sync.check_updates_patient(current_user)
    return PatientUpdatesResponse(
        latestMessageId=updates["latest_message_id"],
        unreadCount=updates["unread_count"],
    )


@router.post("/read")
async def mark_messages_read(
    current_user: dict = Depends(require_role("patient")),
    services: TherapyServices = Depends(get_services),
):
    """mark the patient's conversation as seen. patient-only."""
    conversation = await services.conversations.get_open_for_patient(current_user["id"])
    if conversation is None:
        return {"success": True, "lastSeenMessageId": 0}
    cursor = await services.sync.mark_seen(current_user, conversation["_id"])
    return {"success": True, "lastSeenMessageId": cursor}


@router.post("/transcribe")
async def transcribe_speech(
    audio: Optional[UploadFile] = File(default=None),
    current_user: dict = Depends(require_role("patient")),
    services: TherapyServices = Depends(get_services),
):
    """voice clip to text for the message box. the text is sent separately. patient-only."""
    data = None
    mime_type = None
    if audio is not None:
        # one byte past the cap is enough to reject an oversized clip
        data = await audio.read(services.settings.MAX_AUDIO_BYTES + 1)
        mime_type = audio.content_type
    text = await services.speech.transcribe(current_user, data, mime_type)
    return {"success": True, "text": text}
