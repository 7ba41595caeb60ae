# note models: therapist-private clinical notes on a conversation

from typing import Optional
from pydantic import BaseModel, Field

from therapy_chat.models.enums import NoteType


class NoteCreate(BaseModel):
    content: str = Field(..., min_length=1, max_length=20000)
    note_type: NoteType = Field(NoteType.MANUAL, alias="noteType")
    ai_original_content: Optional[str] = Field(None, alias="aiOriginalContent")

    model_config = {"populate_by_name": True}


class NoteUpdate(BaseModel):
    content: str = Field(..., min_length=1, max_length=20000)


class NoteResponse(BaseModel):
    id: int
    conversation_id: int = Field(..., alias="conversationId")
    content: str
    note_type: str = Field(..., alias="noteType")
    status: str
    created_by: str = Field(..., alias="createdBy")
    last_edited_by: Optional[str] = Field(None, alias="lastEditedBy")
    ai_original_content: Optional[str] = Field(None, alias="aiOriginalContent")
    created_at: str = Field(..., alias="createdAt")
    updated_at: str = Field(..., alias="updatedAt")

    model_config = {"populate_by_name": True}
