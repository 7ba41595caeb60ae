# tagging engine: @therapist / @Name mentions in patient messages
# a detected tag routes the message to therapists only, the ai never answers it

import json
import logging
import re
from dataclasses import dataclass
from typing import Optional

from therapy_chat.config import DEFAULT_TAG_REASONS, Settings, settings as default_settings
from therapy_chat.models.alert import TagReason
from therapy_chat.models.enums import AlertType, RiskLevel, TagUrgency, URGENCY_SEVERITY
from therapy_chat.services.alert_service import AlertService
from therapy_chat.services.clock import utcnow
from therapy_chat.services.conversation_service import ConversationService
from therapy_chat.services.db import Database, next_id

logger = logging.getLogger(__name__)

GENERIC_MARKER = "therapist"
DEFAULT_TAG_REQUEST = "I would like to speak with my therapist"

_GENERIC_RE = re.compile(r"(?<![\w@])@therapist(?!\w)", re.IGNORECASE)
_MENTION_RE = re.compile(r"(?<![\w@])@([\w][\w.\-]*)", re.IGNORECASE)
_REASON_RE = re.compile(r"#([a-z0-9_]+)", re.IGNORECASE)


@dataclass(frozen=True)
class TagMention:
    """resolved tag target. no therapist ids means every assigned therapist"""
    therapist_ids: tuple[str, ...] = ()
    reason_code: Optional[str] = None

    @property
    def targets_all(self) -> bool:
        return not self.therapist_ids


def parse_tag_reasons(raw: str) -> list[TagReason]:
    """configured reasons as json [{code, label, urgency}], defaults on bad config"""
    try:
        items = json.loads(raw or "[]")
        reasons = [TagReason(**item) for item in items]
        for reason in reasons:
            TagUrgency(reason.urgency)
        return reasons
    except (ValueError, TypeError) as e:
        logger.warning(f"Invalid tag reason configuration, using defaults: {e}")
        return [TagReason(**item) for item in json.loads(DEFAULT_TAG_REASONS)]


def _name_patterns(therapist: dict) -> list[re.Pattern]:
    name = (therapist.get("name") or "").strip()
    if not name:
        return []
    variants = {name, name.replace(" ", "")}
    return [
        re.compile(r"(?<![\w@])@" + re.escape(v) + r"(?!\w)", re.IGNORECASE)
        for v in sorted(variants, key=len, reverse=True)
    ]


class TaggingEngine:
    def __init__(
        self,
        db: Database,
        conversations: ConversationService,
        alerts: AlertService,
        config: Settings = default_settings,
    ):
        self.db = db
        self.conversations = conversations
        self.alerts = alerts
        self.settings = config
        self.reasons = parse_tag_reasons(config.TAG_REASONS)

    @property
    def enabled(self) -> bool:
        return self.settings.ENABLE_TAGGING

    def reason_for(self, code: Optional[str]) -> Optional[TagReason]:
        if not code:
            return None
        for reason in self.reasons:
            if reason.code.lower() == code.lower():
                return reason
        return None

    def compose_tag_message(self, reason_code: Optional[str], note: Optional[str] = None) -> str:
        """the chat text a structured tag request turns into"""
        text = f"@{GENERIC_MARKER} {(note or '').strip() or DEFAULT_TAG_REQUEST}"
        reason = self.reason_for(reason_code)
        if reason:
            text += f" #{reason.code}: {reason.label}"
        return text

    def detect(self, text: str, therapists: list[dict], reason_code: Optional[str] = None) -> Optional[TagMention]:
        """find a tag in the message text.

        specific names resolve against the patient's assigned therapists. the
        generic marker, or any @mention that matches nobody, targets everyone.
        """
        if not self.enabled or not text or "@" not in text:
            return None

        matched_ids = []
        matched_spans = []
        for therapist in therapists:
            for pattern in _name_patterns(therapist):
                found = pattern.search(text)
                if found:
                    matched_ids.append(therapist["id"])
                    matched_spans.append(found.span())
                    break

        generic = bool(_GENERIC_RE.search(text))
        unmatched = any(
            not any(start <= m.start() < end for start, end in matched_spans)
            for m in _MENTION_RE.finditer(text)
            if m.group(1).lower() != GENERIC_MARKER
        )
        if not (matched_ids or generic or unmatched):
            return None

        if not reason_code:
            for m in _REASON_RE.finditer(text):
                if self.reason_for(m.group(1)):
                    reason_code = m.group(1).lower()
                    break

        if generic or unmatched:
            return TagMention((), reason_code)
        return TagMention(tuple(dict.fromkeys(matched_ids)), reason_code)

    async def apply(self, conversation: dict, message: dict, mention: TagMention) -> list[dict]:
        """create tag rows and alerts, then escalate risk by urgency"""
        reason = self.reason_for(mention.reason_code)
        urgency = TagUrgency(reason.urgency) if reason else TagUrgency.NORMAL
        severity = URGENCY_SEVERITY[urgency]
        label = reason.label if reason else message["content"][:100]

        tags = []
        targets = list(mention.therapist_ids) or [None]
        for therapist_id in targets:
            tag_id = await next_id(self.db, "tags")
            tag = {
                "_id": tag_id,
                "conversation_id": conversation["_id"],
                "message_id": message["_id"],
                "therapist_id": therapist_id,
                "reason": reason.code if reason else None,
                "urgency": urgency.value,
                "acknowledged": False,
                "acknowledged_at": None,
                "created_at": utcnow(),
            }
            await self.db.tags.insert_one(tag)
            await self.alerts.create(
                conversation,
                AlertType.TAG_RECEIVED,
                severity,
                f'Patient tagged therapist: "{label}"',
                metadata={
                    "tag_id": tag_id,
                    "urgency": urgency.value,
                    "reason": tag["reason"],
                    "message_id": message["_id"],
                },
                target_therapist_id=therapist_id,
            )
            tags.append(tag)

        if urgency == TagUrgency.EMERGENCY:
            await self.conversations.escalate_risk(conversation["_id"], RiskLevel.CRITICAL)
        elif urgency == TagUrgency.URGENT:
            await self.conversations.escalate_risk(conversation["_id"], RiskLevel.MEDIUM)

        logger.info(
            f"Tag on message {message['_id']}: urgency {urgency.value}, "
            f"targets {'all' if mention.targets_all else list(mention.therapist_ids)}"
        )
        return tags
