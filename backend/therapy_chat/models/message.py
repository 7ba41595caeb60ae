# message models: sender variants, request and response schemas
# the sender variant is stored on the message document as {"type", "id"}

from typing import Annotated, Literal, Optional, Union
from pydantic import BaseModel, Field, TypeAdapter

from therapy_chat.models.enums import MessageRole, SenderType


# sender variants

class SubjectSender(BaseModel):
    """the patient the conversation belongs to"""
    type: Literal["subject"] = "subject"
    id: str


class TherapistSender(BaseModel):
    type: Literal["therapist"] = "therapist"
    id: str


class AISender(BaseModel):
    type: Literal["ai"] = "ai"
    id: Optional[str] = None


class SystemSender(BaseModel):
    type: Literal["system"] = "system"
    id: Optional[str] = None


Sender = Annotated[
    Union[SubjectSender, TherapistSender, AISender, SystemSender],
    Field(discriminator="type"),
]

_sender_adapter = TypeAdapter(Sender)

_ROLE_BY_SENDER = {
    SenderType.SUBJECT.value: MessageRole.USER,
    SenderType.THERAPIST.value: MessageRole.USER,
    SenderType.AI.value: MessageRole.ASSISTANT,
    SenderType.SYSTEM.value: MessageRole.SYSTEM,
}


def role_for_sender(sender) -> MessageRole:
    """coarse llm role derived from the sender variant"""
    return _ROLE_BY_SENDER[sender.type]


def parse_sender(data: dict):
    """rebuild a sender variant from its stored form"""
    return _sender_adapter.validate_python(data)


# requests

class SendMessageRequest(BaseModel):
    """patient or therapist message payload"""
    content: str = Field(..., min_length=1, max_length=10000, description="message text")
    conversation_id: Optional[int] = Field(None, alias="conversationId")
    group_id: Optional[str] = Field(None, alias="groupId", description="patient group for a new conversation")
    client_message_id: Optional[str] = Field(
        None, alias="clientMessageId", max_length=64, description="idempotency key for client retries"
    )

    model_config = {"populate_by_name": True}


class TagTherapistRequest(BaseModel):
    """structured @therapist request from the patient chat"""
    reason: Optional[str] = Field(None, description="tag reason code")
    note: Optional[str] = Field(None, max_length=2000, description="optional free text from the patient")
    conversation_id: Optional[int] = Field(None, alias="conversationId")
    group_id: Optional[str] = Field(None, alias="groupId")

    model_config = {"populate_by_name": True}


class EditMessageRequest(BaseModel):
    content: str = Field(..., min_length=1, max_length=10000)


# responses

class SenderResponse(BaseModel):
    type: str
    id: Optional[str] = None
    label: str = ""


class MessageResponse(BaseModel):
    """a message as shown in the chat and dashboard"""
    id: int
    conversation_id: int = Field(..., alias="conversationId")
    role: str
    sender: SenderResponse
    content: str
    is_edited: bool = Field(False, alias="isEdited")
    is_deleted: bool = Field(False, alias="isDeleted")
    created_at: str = Field(..., alias="createdAt")
    edited_at: Optional[str] = Field(None, alias="editedAt")

    model_config = {"populate_by_name": True}


class MessageListResponse(BaseModel):
    messages: list[MessageResponse]
    latest_message_id: int = Field(0, alias="latestMessageId")

    model_config = {"populate_by_name": True}


class SendMessageResponse(BaseModel):
    """outcome of a patient send, including what the safety and tag checks decided"""
    success: bool = True
    conversation_id: int = Field(..., alias="conversationId")
    message: MessageResponse
    ai_message: Optional[MessageResponse] = Field(None, alias="aiMessage")
    tagged: bool = False
    blocked: bool = False
    safety_message: Optional[str] = Field(None, alias="safetyMessage")

    model_config = {"populate_by_name": True}
