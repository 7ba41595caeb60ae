# conversation models: state change requests and response schemas
# mirrors the dashboard and patient chat conversation views

from typing import Optional
from pydantic import BaseModel, Field

from therapy_chat.models.enums import ConversationMode, ConversationStatus, RiskLevel


class ConversationResponse(BaseModel):
    """one patient's conversation and its current state"""
    id: int
    patient_id: str = Field(..., alias="patientId")
    patient_name: Optional[str] = Field(None, alias="patientName")
    group_id: str = Field(..., alias="groupId")
    mode: str
    status: str
    risk_level: str = Field(..., alias="riskLevel")
    ai_enabled: bool = Field(..., alias="aiEnabled")
    blocked: bool = False
    blocked_reason: Optional[str] = Field(None, alias="blockedReason")
    therapist_last_seen: Optional[str] = Field(None, alias="therapistLastSeen")
    subject_last_seen: Optional[str] = Field(None, alias="subjectLastSeen")
    last_message_id: int = Field(0, alias="lastMessageId")
    created_at: str = Field(..., alias="createdAt")
    updated_at: str = Field(..., alias="updatedAt")

    model_config = {"populate_by_name": True}


class ConversationListItem(BaseModel):
    """dashboard row: a patient in the therapist's groups and their open conversation"""
    patient_id: str = Field(..., alias="patientId")
    patient_name: str = Field(..., alias="patientName")
    group_ids: list[str] = Field(default_factory=list, alias="groupIds")
    conversation: Optional[ConversationResponse] = None
    unread_count: int = Field(0, alias="unreadCount")
    unread_alerts: int = Field(0, alias="unreadAlerts")

    model_config = {"populate_by_name": True}


class InitializeConversationRequest(BaseModel):
    patient_id: str = Field(..., alias="patientId")
    group_id: Optional[str] = Field(None, alias="groupId")

    model_config = {"populate_by_name": True}


class ToggleAIRequest(BaseModel):
    enabled: bool


class SetRiskRequest(BaseModel):
    risk_level: RiskLevel = Field(..., alias="riskLevel")

    model_config = {"populate_by_name": True}


class SetStatusRequest(BaseModel):
    status: ConversationStatus


class SetModeRequest(BaseModel):
    mode: ConversationMode


class StatsResponse(BaseModel):
    """counts for the therapist dashboard header"""
    total: int = 0
    active: int = 0
    paused: int = 0
    risk_critical: int = Field(0, alias="riskCritical")
    risk_high: int = Field(0, alias="riskHigh")
    unread_alerts: int = Field(0, alias="unreadAlerts")

    model_config = {"populate_by_name": True}


class UnreadCountsResponse(BaseModel):
    """human-authored unread messages per patient and group, ai messages excluded"""
    total: int = 0
    total_alerts: int = Field(0, alias="totalAlerts")
    by_subject: dict[str, int] = Field(default_factory=dict, alias="bySubject")
    by_group: dict[str, int] = Field(default_factory=dict, alias="byGroup")

    model_config = {"populate_by_name": True}


class PatientUpdatesResponse(BaseModel):
    latest_message_id: int = Field(0, alias="latestMessageId")
    unread_count: int = Field(0, alias="unreadCount")

    model_config = {"populate_by_name": True}


class TherapistUpdatesResponse(BaseModel):
    latest_message_id: int = Field(0, alias="latestMessageId")
    unread_messages: int = Field(0, alias="unreadMessages")
    unread_alerts: int = Field(0, alias="unreadAlerts")

    model_config = {"populate_by_name": True}
