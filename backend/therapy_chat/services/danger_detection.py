# danger detection pipeline: three detectors feeding one idempotent escalation
#
# screening order for every patient message:
#   1. moderation classifier (primary, when configured). errors and timeouts
#      mean "unavailable", never "no danger"
#   2. keyword scan (fallback), runs whenever moderation did not flag
# after an ai reply:
#   3. structured safety block of the reply, critical/emergency escalates
#
# escalate() claims the triggering message once, then: emergency alert,
# risk -> critical, ai off, block, one notification batch, and marks the claim
# completed. a second layer tripping on the same message finds the claim taken
# and does nothing, a claim left incomplete by a failed write is finished by the
# next attempt

import logging
import re
import unicodedata
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from pymongo import ReturnDocument

from therapy_chat.config import Settings, settings as default_settings
from therapy_chat.errors import GatewayError
from therapy_chat.models.enums import AlertSeverity, AlertType, RiskLevel
from therapy_chat.services.ai_gateway import AIGateway, ModerationVerdict
from therapy_chat.services.alert_service import AlertService
from therapy_chat.services.clock import utcnow
from therapy_chat.services.conversation_service import ConversationService
from therapy_chat.services.db import Database
from therapy_chat.services.notifications import NotificationOrchestrator
from therapy_chat.services.structured_response import extract_safety

logger = logging.getLogger(__name__)

EXCERPT_LENGTH = 100
ESCALATING_DANGER_LEVELS = frozenset({"critical", "emergency"})

_KEYWORD_SPLIT_RE = re.compile(r"[,;\n]+")
_WS_RE = re.compile(r"\s+")
_ZERO_WIDTH = dict.fromkeys(map(ord, "\u200b\u200c\u200d\u2060\ufeff"))


class DetectionLayer(str, Enum):
    KEYWORD = "keyword"
    MODERATION = "moderation"
    RESPONSE_ASSESSMENT = "response_assessment"


@dataclass(frozen=True)
class Detection:
    """one layer's positive finding, immutable once produced"""
    layer: DetectionLayer
    concerns: tuple[str, ...] = ()
    detail: str = ""
    detected_at: Any = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {
            "layer": self.layer.value,
            "concerns": list(self.concerns),
            "detail": self.detail,
            "detected_at": self.detected_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Detection":
        return cls(
            layer=DetectionLayer(data["layer"]),
            concerns=tuple(data.get("concerns") or ()),
            detail=data.get("detail", ""),
            detected_at=data.get("detected_at") or utcnow(),
        )


def normalize_text(text: str) -> str:
    """case-fold, unicode-normalize and collapse whitespace for matching"""
    folded = unicodedata.normalize("NFKC", text or "").translate(_ZERO_WIDTH).casefold()
    return _WS_RE.sub(" ", folded).strip()


def parse_keywords(raw: str) -> list[str]:
    """split the configured keyword list on comma, semicolon or newline"""
    seen = []
    for part in _KEYWORD_SPLIT_RE.split(raw or ""):
        keyword = normalize_text(part)
        if keyword and keyword not in seen:
            seen.append(keyword)
    return seen


class Detector(ABC):
    layer: DetectionLayer

    @abstractmethod
    async def inspect(self, text: str) -> Optional[Detection]:
        """return a Detection when the text trips this layer"""


class KeywordDetector(Detector):
    """case-insensitive substring containment, no word boundaries.

    false positives on short keywords are accepted; tune the keyword list instead.
    """
    layer = DetectionLayer.KEYWORD

    def __init__(self, keywords: list[str]):
        self.keywords = keywords

    async def inspect(self, text: str) -> Optional[Detection]:
        if not self.keywords:
            return None
        normalized = normalize_text(text)
        matched = tuple(k for k in self.keywords if k in normalized)
        if not matched:
            return None
        return Detection(self.layer, matched, f"Danger keywords detected: {', '.join(matched)}")


class ModerationDetector(Detector):
    layer = DetectionLayer.MODERATION

    def __init__(self, gateway: AIGateway):
        self.gateway = gateway

    async def inspect(self, text: str) -> Optional[Detection]:
        if not self.gateway.moderation_available:
            return None
        try:
            result = await self.gateway.moderate(text)
        except GatewayError as e:
            logger.warning(f"Moderation layer unavailable, falling back to keywords: {e.message}")
            return None
        if result.verdict == ModerationVerdict.FLAGGED:
            reason = result.reason or "moderation flagged the message"
            return Detection(self.layer, (reason,), f"Danger detected by moderation: {reason}")
        if result.verdict == ModerationVerdict.UNKNOWN:
            logger.info(f"Moderation returned an ambiguous verdict, falling back to keywords: {result.reason!r}")
        return None


class StructuredSafetyDetector(Detector):
    """reads the safety block the chat model returns with its reply"""
    layer = DetectionLayer.RESPONSE_ASSESSMENT

    async def inspect(self, text: str) -> Optional[Detection]:
        safety = extract_safety(text)
        if not safety:
            return None
        level = str(safety.get("danger_level") or "").lower()
        if level not in ESCALATING_DANGER_LEVELS:
            return None
        concerns = safety.get("detected_concerns") or []
        if not isinstance(concerns, list):
            concerns = [str(concerns)]
        concerns = tuple(str(c) for c in concerns) or (level,)
        return Detection(
            self.layer,
            concerns,
            f"AI safety assessment reported {level} danger: {', '.join(concerns)}",
        )


def _excerpt(text: str) -> str:
    if len(text) <= EXCERPT_LENGTH:
        return text
    return text[:EXCERPT_LENGTH] + "..."


class DangerPipeline:
    def __init__(
        self,
        db: Database,
        conversations: ConversationService,
        alerts: AlertService,
        notifier: NotificationOrchestrator,
        gateway: AIGateway,
        config: Settings = default_settings,
    ):
        self.db = db
        self.conversations = conversations
        self.alerts = alerts
        self.notifier = notifier
        self.settings = config
        self.screening = [
            ModerationDetector(gateway),
            KeywordDetector(parse_keywords(config.DANGER_KEYWORDS)),
        ]
        self.response_detector = StructuredSafetyDetector()

    @property
    def enabled(self) -> bool:
        return self.settings.ENABLE_DANGER_DETECTION

    async def screen(self, text: str) -> Optional[Detection]:
        """run the pre-send layers in priority order, first hit wins"""
        if not self.enabled:
            return None
        for detector in self.screening:
            detection = await detector.inspect(text)
            if detection:
                return detection
        return None

    async def assess_response(self, response_text: str) -> Optional[Detection]:
        if not self.enabled:
            return None
        return await self.response_detector.inspect(response_text)

    def _alert_text(self, detection: Detection, message: dict) -> str:
        if detection.layer == DetectionLayer.KEYWORD:
            header = f"Danger keywords detected: {', '.join(detection.concerns)}"
        else:
            header = detection.detail
        return f'{header}\nFull message: "{message["content"]}"'

    async def escalate(self, conversation: dict, message: dict, patient: dict, detection: Detection) -> bool:
        """run the shared escalation once per triggering message.

        returns False when the message was already escalated by another layer.
        the claim records progress: a claim left incomplete by a failed write is
        picked up again by the next call, which reruns every step (each one is
        conditional or keyed, so nothing happens twice).
        """
        state = {**detection.to_dict(), "completed": False}
        claimed = await self.db.messages.find_one_and_update(
            {"_id": message["_id"], "danger_escalation": {"$exists": False}},
            {"$set": {"danger_escalation": state}},
            return_document=ReturnDocument.AFTER,
        )
        if claimed is None:
            current = await self.db.messages.find_one({"_id": message["_id"]}) or {}
            state = current.get("danger_escalation") or {}
            if state.get("completed", True):
                logger.info(f"Message {message['_id']} already escalated, skipping {detection.layer.value} layer")
                return False
            logger.warning(f"Resuming interrupted escalation of message {message['_id']}")
            detection = Detection.from_dict(state)

        conversation_id = conversation["_id"]
        logger.warning(
            f"Danger detected in conversation {conversation_id} by {detection.layer.value} layer",
            extra={
                "conversation_id": conversation_id,
                "message_id": message["_id"],
                "layer": detection.layer.value,
                "concerns": list(detection.concerns),
            },
        )

        alert = await self.alerts.create(
            conversation,
            AlertType.DANGER_DETECTED,
            AlertSeverity.EMERGENCY,
            self._alert_text(detection, message),
            metadata={
                "layer": detection.layer.value,
                "detected_keywords": list(detection.concerns),
                "message_id": message["_id"],
                "message_excerpt": _excerpt(message["content"]),
            },
            dedupe_key=f"message:{message['_id']}:{AlertType.DANGER_DETECTED.value}",
        )
        await self.conversations.escalate_risk(conversation_id, RiskLevel.CRITICAL)
        await self.conversations.disable_ai(conversation_id)
        await self.conversations.block(conversation_id, f"Danger detected ({detection.layer.value})")
        await self.notifier.notify_danger(conversation, patient, message, alert)

        await self.db.messages.update_one(
            {"_id": message["_id"]},
            {"$set": {"danger_escalation.completed": True, "danger_escalation.completed_at": utcnow()}},
        )
        return True

    async def resume(self, conversation: dict, message: dict, patient: dict) -> bool:
        """finish an escalation a failed write left incomplete. False when there is none"""
        state = message.get("danger_escalation")
        if not state or state.get("completed", True):
            return False
        return await self.escalate(conversation, message, patient, Detection.from_dict(state))
