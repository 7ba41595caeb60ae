# document -> response model converters shared by the routers

from typing import Optional

from therapy_chat.models.alert import AlertResponse, TagResponse
from therapy_chat.models.conversation import ConversationResponse
from therapy_chat.models.draft import DraftResponse
from therapy_chat.models.message import MessageResponse, SenderResponse
from therapy_chat.models.note import NoteResponse
from therapy_chat.services.clock import isoformat
from therapy_chat.services.drafts import draft_content


def doc_to_conversation(doc: dict, patient_name: Optional[str] = None) -> ConversationResponse:
    """convert a mongodb conversation document to response model"""
    return ConversationResponse(
        id=doc["_id"],
        patientId=doc["patient_id"],
        patientName=patient_name,
        groupId=doc["group_id"],
        mode=doc["mode"],
        status=doc["status"],
        riskLevel=doc["risk_level"],
        aiEnabled=doc.get("ai_enabled", False),
        blocked=doc.get("blocked", False),
        blockedReason=doc.get("blocked_reason"),
        therapistLastSeen=isoformat(doc.get("therapist_last_seen")),
        subjectLastSeen=isoformat(doc.get("subject_last_seen")),
        lastMessageId=doc.get("last_message_id", 0),
        createdAt=isoformat(doc.get("created_at")),
        updatedAt=isoformat(doc.get("updated_at")),
    )


def doc_to_message(doc: dict, labels: Optional[dict] = None) -> MessageResponse:
    """convert a message document, labelling the sender when names are known"""
    labels = labels or {}
    sender = doc["sender"]
    label = labels.get(sender.get("id") or sender.get("type"), labels.get(sender.get("type"), ""))
    return MessageResponse(
        id=doc["_id"],
        conversationId=doc["conversation_id"],
        role=doc["role"],
        sender=SenderResponse(type=sender["type"], id=sender.get("id"), label=label),
        content=doc.get("content", ""),
        isEdited=doc.get("is_edited", False),
        isDeleted=doc.get("is_deleted", False),
        createdAt=isoformat(doc.get("created_at")),
        editedAt=isoformat(doc.get("edited_at")),
    )


def doc_to_alert(doc: dict) -> AlertResponse:
    metadata = {
        k: isoformat(v) if hasattr(v, "isoformat") else v
        for k, v in (doc.get("metadata") or {}).items()
    }
    return AlertResponse(
        id=doc["_id"],
        conversationId=doc["conversation_id"],
        patientId=doc.get("patient_id"),
        targetTherapistId=doc.get("target_therapist_id"),
        alertType=doc["alert_type"],
        severity=doc["severity"],
        message=doc["message"],
        metadata=metadata,
        isRead=doc.get("is_read", False),
        readAt=isoformat(doc.get("read_at")),
        createdAt=isoformat(doc.get("created_at")),
    )


def doc_to_tag(doc: dict) -> TagResponse:
    return TagResponse(
        id=doc["_id"],
        conversationId=doc["conversation_id"],
        messageId=doc["message_id"],
        therapistId=doc.get("therapist_id"),
        reason=doc.get("reason"),
        urgency=doc["urgency"],
        acknowledged=doc.get("acknowledged", False),
        acknowledgedAt=isoformat(doc.get("acknowledged_at")),
        createdAt=isoformat(doc.get("created_at")),
    )


def doc_to_note(doc: dict) -> NoteResponse:
    return NoteResponse(
        id=doc["_id"],
        conversationId=doc["conversation_id"],
        content=doc["content"],
        noteType=doc["note_type"],
        status=doc["status"],
        createdBy=doc["created_by"],
        lastEditedBy=doc.get("last_edited_by"),
        aiOriginalContent=doc.get("ai_original_content"),
        createdAt=isoformat(doc.get("created_at")),
        updatedAt=isoformat(doc.get("updated_at")),
    )


def doc_to_draft(doc: dict) -> DraftResponse:
    return DraftResponse(
        id=doc["_id"],
        conversationId=doc["conversation_id"],
        therapistId=doc["therapist_id"],
        aiGeneratedContent=doc["ai_generated_content"],
        editedContent=doc.get("edited_content"),
        content=draft_content(doc),
        status=doc["status"],
        undoDepth=len(doc.get("undo_stack", [])),
        sentMessageId=doc.get("sent_message_id"),
        createdAt=isoformat(doc.get("created_at")),
        updatedAt=isoformat(doc.get("updated_at")),
    )
