# alert and tag models: response schemas for the therapist alert feed

from typing import Any, Optional
from pydantic import BaseModel, Field


class AlertResponse(BaseModel):
    id: int
    conversation_id: int = Field(..., alias="conversationId")
    patient_id: Optional[str] = Field(None, alias="patientId")
    target_therapist_id: Optional[str] = Field(None, alias="targetTherapistId")
    alert_type: str = Field(..., alias="alertType")
    severity: str
    message: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    is_read: bool = Field(False, alias="isRead")
    read_at: Optional[str] = Field(None, alias="readAt")
    created_at: str = Field(..., alias="createdAt")

    model_config = {"populate_by_name": True}


class TagResponse(BaseModel):
    id: int
    conversation_id: int = Field(..., alias="conversationId")
    message_id: int = Field(..., alias="messageId")
    therapist_id: Optional[str] = Field(None, alias="therapistId", description="null means all assigned therapists")
    reason: Optional[str] = None
    urgency: str
    acknowledged: bool = False
    acknowledged_at: Optional[str] = Field(None, alias="acknowledgedAt")
    created_at: str = Field(..., alias="createdAt")

    model_config = {"populate_by_name": True}


class TagReason(BaseModel):
    code: str
    label: str
    urgency: str = "normal"
