# enumerations shared by the chat models and services
# values are the strings stored in mongodb

from enum import Enum


class ConversationMode(str, Enum):
    AI_HYBRID = "ai_hybrid"
    HUMAN_ONLY = "human_only"


class ConversationStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    CLOSED = "closed"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _RISK_ORDER.index(self)

    def lower_levels(self) -> list["RiskLevel"]:
        """levels strictly below this one, used for escalate-only updates"""
        return list(_RISK_ORDER[: self.rank])


_RISK_ORDER = (RiskLevel.LOW, RiskLevel.MEDIUM, RiskLevel.HIGH, RiskLevel.CRITICAL)


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class SenderType(str, Enum):
    SUBJECT = "subject"
    THERAPIST = "therapist"
    AI = "ai"
    SYSTEM = "system"


class AlertType(str, Enum):
    DANGER_DETECTED = "danger_detected"
    TAG_RECEIVED = "tag_received"
    HIGH_RISK = "high_risk"
    NEW_MESSAGE = "new_message"


class AlertSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"
    EMERGENCY = "emergency"


# listing order, most severe first
SEVERITY_ORDER = {
    AlertSeverity.EMERGENCY.value: 0,
    AlertSeverity.CRITICAL.value: 1,
    AlertSeverity.WARNING.value: 2,
    AlertSeverity.INFO.value: 3,
}


class TagUrgency(str, Enum):
    NORMAL = "normal"
    URGENT = "urgent"
    EMERGENCY = "emergency"


URGENCY_SEVERITY = {
    TagUrgency.EMERGENCY: AlertSeverity.EMERGENCY,
    TagUrgency.URGENT: AlertSeverity.CRITICAL,
    TagUrgency.NORMAL: AlertSeverity.WARNING,
}


class NoteType(str, Enum):
    MANUAL = "manual"
    AI_SUMMARY = "ai_summary"


class NoteStatus(str, Enum):
    ACTIVE = "active"
    DELETED = "deleted"


class DraftStatus(str, Enum):
    DRAFT = "draft"
    SENT = "sent"
    DISCARDED = "discarded"
