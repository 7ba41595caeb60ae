# conversations router: dashboard list, state transitions and the message log
# therapist and admin endpoints, every conversation is checked against assignment scope

import logging
from typing import Optional
from fastapi import APIRouter, Depends, Query

from therapy_chat.dependencies import get_services, require_role
from therapy_chat.models.conversation import (
    ConversationListItem,
    ConversationResponse,
    InitializeConversationRequest,
    SetModeRequest,
    SetRiskRequest,
    SetStatusRequest,
    ToggleAIRequest,
)
from therapy_chat.models.enums import ConversationStatus, RiskLevel
from therapy_chat.models.message import EditMessageRequest, MessageListResponse, MessageResponse, SendMessageRequest
from therapy_chat.routers.converters import doc_to_conversation, doc_to_message
from therapy_chat.services.registry import TherapyServices

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/conversations", tags=["conversations"])

staff = require_role("therapist", "admin")


async def _with_patient_name(services: TherapyServices, conversation: dict) -> ConversationResponse:
    patient = await services.access.get_user(conversation["patient_id"])
    return doc_to_conversation(conversation, patient.get("name") if patient else None)


async def _message_in(services: TherapyServices, user: dict, conversation_id: int, message_id: int) -> int:
    """message id when it belongs to an accessible conversation, -1 otherwise"""
    await services.conversations.get_for_user(user, conversation_id)
    message = await services.messages.get(message_id)
    if message is None or message["conversation_id"] != conversation_id:
        return -1
    return message_id


@router.get("", response_model=list[ConversationListItem])
async def list_conversations(
    group_id: Optional[str] = Query(None, alias="groupId"),
    status: Optional[ConversationStatus] = Query(None),
    risk_level: Optional[RiskLevel] = Query(None, alias="riskLevel"),
    current_user: dict = Depends(staff),
    services: TherapyServices = Depends(get_services),
):
    """patients in the caller's groups with their open conversation, riskiest first."""
    items = await services.sync.list_for_therapist(
        current_user,
        group_id=group_id,
        status=status.value if status else None,
        risk_level=risk_level.value if risk_level else None,
    )
    return [
        ConversationListItem(
            patientId=item["patient"]["id"],
            patientName=item["patient"].get("name", ""),
            groupIds=item["patient"].get("group_ids", []),
            conversation=doc_to_conversation(item["conversation"], item["patient"].get("name"))
            if item["conversation"] else None,
            unreadCount=item["unread_count"],
            unreadAlerts=item["unread_alerts"],
        )
        for item in items
    ]


@router.post("", response_model=ConversationResponse)
async def initialize_conversation(
    body: InitializeConversationRequest,
    current_user: dict = Depends(staff),
    services: TherapyServices = Depends(get_services),
):
    """open (or return) a patient's conversation from the dashboard."""
    conversation = await services.conversations.initialize_for_patient(current_user, body.patient_id, body.group_id)
    return await _with_patient_name(services, conversation)


@router.get("/{conversation_id}", response_model=ConversationResponse)
async def get_conversation(
    conversation_id: int,
    current_user: dict = Depends(staff),
    services: TherapyServices = Depends(get_services),
):
    conversation = await services.conversations.get_for_user(current_user, conversation_id)
    return await _with_patient_name(services, conversation)


# message log

@router.get("/{conversation_id}/messages", response_model=MessageListResponse)
async def get_messages(
    conversation_id: int,
    after_id: Optional[int] = Query(None, alias="afterId", ge=0, description="polling cursor"),
    current_user: dict = Depends(staff),
    services: TherapyServices = Depends(get_services),
):
    """messages after the cursor, in log order. marks them seen for the caller."""
    messages, cursor = await services.chat.read_messages(current_user, conversation_id, after_id)
    conversation = await services.conversations.get(conversation_id)
    labels = await services.chat.sender_labels(messages, conversation["patient_id"])
    return MessageListResponse(
        messages=[doc_to_message(m, labels) for m in messages],
        latestMessageId=cursor,
    )


@router.post("/{conversation_id}/messages", response_model=MessageResponse)
async def send_message(
    conversation_id: int,
    body: SendMessageRequest,
    current_user: dict = Depends(staff),
    services: TherapyServices = Depends(get_services),
):
    """therapist message straight to the patient, notifies the patient."""
    message = await services.chat.send_therapist_message(current_user, conversation_id, body.content)
    labels = {current_user["id"]: current_user.get("name", "")}
    return doc_to_message(message, labels)


@router.patch("/{conversation_id}/messages/{message_id}", response_model=MessageResponse)
async def edit_message(
    conversation_id: int,
    message_id: int,
    body: EditMessageRequest,
    current_user: dict = Depends(staff),
    services: TherapyServices = Depends(get_services),
):
    target = await _message_in(services, current_user, conversation_id, message_id)
    updated = await services.messages.edit(target, current_user, body.content)
    return doc_to_message(updated, {current_user["id"]: current_user.get("name", "")})


@router.delete("/{conversation_id}/messages/{message_id}")
async def delete_message(
    conversation_id: int,
    message_id: int,
    current_user: dict = Depends(staff),
    services: TherapyServices = Depends(get_services),
):
    target = await _message_in(services, current_user, conversation_id, message_id)
    await services.messages.soft_delete(target, current_user)
    return {"success": True}


@router.post("/{conversation_id}/read")
async def mark_messages_read(
    conversation_id: int,
    current_user: dict = Depends(staff),
    services: TherapyServices = Depends(get_services),
):
    await services.conversations.get_for_user(current_user, conversation_id)
    cursor = await services.sync.mark_seen(current_user, conversation_id)
    return {"success": True, "lastSeenMessageId": cursor}


# state transitions

@router.post("/{conversation_id}/ai", response_model=ConversationResponse)
async def toggle_ai(
    conversation_id: int,
    body: ToggleAIRequest,
    current_user: dict = Depends(staff),
    services: TherapyServices = Depends(get_services),
):
    """enable or disable ai replies. enabling also lifts a danger block."""
    conversation = await services.conversations.toggle_ai(current_user, conversation_id, body.enabled)
    return await _with_patient_name(services, conversation)


@router.post("/{conversation_id}/risk", response_model=ConversationResponse)
async def set_risk(
    conversation_id: int,
    body: SetRiskRequest,
    current_user: dict = Depends(staff),
    services: TherapyServices = Depends(get_services),
):
    conversation = await services.conversations.set_risk_level(current_user, conversation_id, body.risk_level)
    return await _with_patient_name(services, conversation)


@router.post("/{conversation_id}/status", response_model=ConversationResponse)
async def set_status(
    conversation_id: int,
    body: SetStatusRequest,
    current_user: dict = Depends(staff),
    services: TherapyServices = Depends(get_services),
):
    conversation = await services.conversations.set_status(current_user, conversation_id, body.status)
    return await _with_patient_name(services, conversation)


@router.post("/{conversation_id}/mode", response_model=ConversationResponse)
async def set_mode(
    conversation_id: int,
    body: SetModeRequest,
    current_user: dict = Depends(staff),
    services: TherapyServices = Depends(get_services),
):
    conversation = await services.conversations.set_mode(current_user, conversation_id, body.mode)
    return await _with_patient_name(services, conversation)


@router.post("/{conversation_id}/unblock", response_model=ConversationResponse)
async def unblock(
    conversation_id: int,
    current_user: dict = Depends(staff),
    services: TherapyServices = Depends(get_services),
):
    conversation = await services.conversations.unblock(current_user, conversation_id)
    return await _with_patient_name(services, conversation)
