# draft models: ai-suggested therapist replies and clinical summaries

from typing import Optional
from pydantic import BaseModel, Field


class DraftUpdate(BaseModel):
    edited_content: str = Field(..., alias="editedContent", max_length=10000)

    model_config = {"populate_by_name": True}


class DraftResponse(BaseModel):
    """an active or terminated draft. content is the edited text when present"""
    id: int
    conversation_id: int = Field(..., alias="conversationId")
    therapist_id: str = Field(..., alias="therapistId")
    ai_generated_content: str = Field(..., alias="aiGeneratedContent")
    edited_content: Optional[str] = Field(None, alias="editedContent")
    content: str
    status: str
    undo_depth: int = Field(0, alias="undoDepth")
    sent_message_id: Optional[int] = Field(None, alias="sentMessageId")
    created_at: str = Field(..., alias="createdAt")
    updated_at: str = Field(..., alias="updatedAt")

    model_config = {"populate_by_name": True}


class UndoResponse(BaseModel):
    undone: bool
    draft: Optional[DraftResponse] = None
    message: Optional[str] = None


class DiscardResponse(BaseModel):
    success: bool = True
    changed: bool


class SummaryResponse(BaseModel):
    summary: str
    tokens_used: int = Field(0, alias="tokensUsed")
    audit_conversation_id: int = Field(..., alias="auditConversationId")

    model_config = {"populate_by_name": True}
