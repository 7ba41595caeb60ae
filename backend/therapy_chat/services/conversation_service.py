# conversation state machine: lifecycle, status, mode, risk, ai flag and blocking
# every write is a single conditional update so concurrent requests cannot skip a check
#
# transitions:
#   status   active <-> paused, active|paused -> closed (terminal)
#   risk     automatic paths only escalate (escalate_risk), therapists may set any level
#   ai       toggle_ai(True) also clears a block, disable_ai is the system path
#   block    set by danger detection, a second block is a no-op so the audit log stays meaningful

import logging
from typing import Optional

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from therapy_chat.config import Settings, settings as default_settings
from therapy_chat.errors import AccessDeniedError, ValidationError
from therapy_chat.models.enums import ConversationMode, ConversationStatus, RiskLevel
from therapy_chat.models.message import SystemSender
from therapy_chat.services.access import AccessResolver, is_therapist
from therapy_chat.services.audit import AuditLog
from therapy_chat.services.clock import utcnow
from therapy_chat.services.db import Database, next_id
from therapy_chat.services.message_service import MessageService

logger = logging.getLogger(__name__)

NOT_FOUND = "Conversation not found or access denied"


def _enum_value(enum_cls, value, label: str) -> str:
    """validate an enum input before anything is written"""
    try:
        return enum_cls(value).value
    except ValueError:
        allowed = ", ".join(e.value for e in enum_cls)
        raise ValidationError(f"Invalid {label} '{value}'. Allowed: {allowed}")


def ai_active(conversation: dict) -> bool:
    """whether the ai should answer the next patient message"""
    return (
        conversation.get("ai_enabled", False)
        and not conversation.get("blocked", False)
        and conversation.get("mode") == ConversationMode.AI_HYBRID.value
        and conversation.get("status") == ConversationStatus.ACTIVE.value
    )


class ConversationService:
    def __init__(
        self,
        db: Database,
        access: AccessResolver,
        audit: AuditLog,
        messages: MessageService,
        config: Settings = default_settings,
    ):
        self.db = db
        self.access = access
        self.audit = audit
        self.messages = messages
        self.settings = config

    # reads

    async def get(self, conversation_id: int) -> Optional[dict]:
        return await self.db.conversations.find_one({"_id": conversation_id})

    async def get_for_user(self, user: dict, conversation_id: int) -> dict:
        """load a conversation the caller may see. missing and forbidden look the same"""
        conversation = await self.get(conversation_id)
        if conversation is None or not await self.access.can_access_conversation(user, conversation):
            raise AccessDeniedError(NOT_FOUND)
        return conversation

    async def get_open_for_patient(self, patient_id: str) -> Optional[dict]:
        return await self.db.conversations.find_one({"patient_id": patient_id, "is_open": True})

    # lifecycle

    async def get_or_create_for_patient(
        self,
        patient: dict,
        group_id: Optional[str] = None,
        created_by: Optional[str] = None,
        within_groups: Optional[list[str]] = None,
    ) -> tuple[dict, bool]:
        """return the patient's open conversation, creating it if needed.

        safe under concurrent first contact: the partial unique index on
        (patient_id, is_open) rejects the second insert and the loser reads the
        winner's row.
        """
        existing = await self.get_open_for_patient(patient["id"])
        if existing:
            return existing, False

        resolved_group = await self.access.resolve_group(patient, group_id, within=within_groups)
        now = utcnow()
        conversation_id = await next_id(self.db, "conversations")
        doc = {
            "_id": conversation_id,
            "patient_id": patient["id"],
            "group_id": resolved_group,
            "mode": _enum_value(ConversationMode, self.settings.DEFAULT_MODE, "mode"),
            "status": ConversationStatus.ACTIVE.value,
            "is_open": True,
            "risk_level": RiskLevel.LOW.value,
            "ai_enabled": self.settings.ENABLE_AI,
            "blocked": False,
            "blocked_reason": None,
            "therapist_last_seen": None,
            "subject_last_seen": None,
            "read_cursors": {},
            "read_seqs": {},
            "message_seq": 0,
            "last_message_id": 0,
            "model": self.settings.GEMINI_MODEL,
            "created_by": created_by or patient["id"],
            "created_at": now,
            "updated_at": now,
        }
        try:
            await self.db.conversations.insert_one(doc)
        except DuplicateKeyError:
            winner = await self.get_open_for_patient(patient["id"])
            if winner is None:
                raise
            logger.info(f"Concurrent conversation creation for patient {patient['id']}, using {winner['_id']}")
            return winner, False

        logger.info(f"Created conversation {conversation_id} for patient {patient['id']} in group {resolved_group}")
        await self.audit.record("create", "conversations", conversation_id, created_by or patient["id"], "Conversation created")

        if self.settings.AUTO_START and self.settings.AUTO_START_CONTEXT.strip():
            await self.messages.append(conversation_id, SystemSender(), self.settings.AUTO_START_CONTEXT.strip())
            doc = await self.get(conversation_id)
        return doc, True

    async def initialize_for_patient(self, therapist: dict, patient_id: str, group_id: Optional[str] = None) -> dict:
        """explicit creation from the dashboard, restricted to the therapist's groups"""
        patient = await self.access.get_user(patient_id)
        if patient is None or patient.get("role") != "patient":
            raise AccessDeniedError("Patient not found or access denied")

        within = None
        if is_therapist(therapist):
            if not await self.access.therapist_can_access_patient(therapist["id"], patient_id):
                raise AccessDeniedError("Patient not found or access denied")
            within = await self.access.therapist_groups(therapist["id"])

        conversation, _ = await self.get_or_create_for_patient(
            patient, group_id, created_by=therapist["id"], within_groups=within
        )
        return conversation

    # therapist transitions

    async def set_status(self, user: dict, conversation_id: int, status) -> dict:
        value = _enum_value(ConversationStatus, status, "status")
        await self.get_for_user(user, conversation_id)

        update = {"status": value, "updated_at": utcnow()}
        if value == ConversationStatus.CLOSED.value:
            update["is_open"] = False
            update["closed_at"] = update["updated_at"]

        updated = await self.db.conversations.find_one_and_update(
            {"_id": conversation_id, "status": {"$ne": ConversationStatus.CLOSED.value}},
            {"$set": update},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise ValidationError("Conversation is closed")

        await self.audit.record("update", "conversations", conversation_id, user["id"], f"Status changed to: {value}")
        return updated

    async def set_risk_level(self, user: dict, conversation_id: int, risk) -> dict:
        """explicit therapist decision, the only path allowed to lower risk"""
        value = _enum_value(RiskLevel, risk, "risk level")
        await self.get_for_user(user, conversation_id)

        updated = await self.db.conversations.find_one_and_update(
            {"_id": conversation_id},
            {"$set": {"risk_level": value, "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        await self.audit.record("update", "conversations", conversation_id, user["id"], f"Risk level changed to: {value}")
        return updated

    async def set_mode(self, user: dict, conversation_id: int, mode) -> dict:
        value = _enum_value(ConversationMode, mode, "mode")
        await self.get_for_user(user, conversation_id)

        updated = await self.db.conversations.find_one_and_update(
            {"_id": conversation_id},
            {"$set": {"mode": value, "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        await self.audit.record("update", "conversations", conversation_id, user["id"], f"Mode changed to: {value}")
        return updated

    async def toggle_ai(self, user: dict, conversation_id: int, enabled: bool) -> dict:
        if not isinstance(enabled, bool):
            raise ValidationError("enabled must be a boolean")
        await self.get_for_user(user, conversation_id)

        update = {"ai_enabled": enabled, "updated_at": utcnow()}
        if enabled:
            update.update({"blocked": False, "blocked_reason": None, "blocked_at": None, "blocked_by": None})

        updated = await self.db.conversations.find_one_and_update(
            {"_id": conversation_id},
            {"$set": update},
            return_document=ReturnDocument.AFTER,
        )
        description = "AI enabled (conversation unblocked)" if enabled else "AI disabled"
        await self.audit.record("update", "conversations", conversation_id, user["id"], description)
        logger.info(f"Conversation {conversation_id}: {description} by {user['id']}")
        return updated

    async def unblock(self, user: dict, conversation_id: int) -> dict:
        await self.get_for_user(user, conversation_id)
        updated = await self.db.conversations.find_one_and_update(
            {"_id": conversation_id},
            {"$set": {
                "blocked": False,
                "blocked_reason": None,
                "blocked_at": None,
                "blocked_by": None,
                "updated_at": utcnow(),
            }},
            return_document=ReturnDocument.AFTER,
        )
        await self.audit.record("update", "conversations", conversation_id, user["id"], "Conversation unblocked")
        return updated

    # system transitions (danger detection, tagging)

    async def block(self, conversation_id: int, reason: str, actor_id: Optional[str] = None) -> bool:
        """block further ai calls. returns False when the conversation was already blocked"""
        now = utcnow()
        result = await self.db.conversations.update_one(
            {"_id": conversation_id, "blocked": {"$ne": True}},
            {"$set": {
                "blocked": True,
                "blocked_reason": reason,
                "blocked_at": now,
                "blocked_by": actor_id,
                "updated_at": now,
            }},
        )
        if result.modified_count == 0:
            return False
        logger.warning(f"Conversation {conversation_id} blocked", extra={"conversation_id": conversation_id, "reason": reason})
        await self.audit.record("update", "conversations", conversation_id, actor_id, f"Conversation blocked: {reason}")
        return True

    async def escalate_risk(self, conversation_id: int, level) -> bool:
        """raise risk to `level` only if it is currently lower"""
        target = RiskLevel(level)
        lower = [r.value for r in target.lower_levels()]
        if not lower:
            return False
        result = await self.db.conversations.update_one(
            {"_id": conversation_id, "risk_level": {"$in": lower}},
            {"$set": {"risk_level": target.value, "updated_at": utcnow()}},
        )
        if result.modified_count == 0:
            return False
        logger.warning(
            f"Conversation {conversation_id} risk escalated to {target.value}",
            extra={"conversation_id": conversation_id, "risk_level": target.value},
        )
        await self.audit.record("update", "conversations", conversation_id, None, f"Risk level changed to: {target.value}")
        return True

    async def disable_ai(self, conversation_id: int, actor_id: Optional[str] = None) -> bool:
        result = await self.db.conversations.update_one(
            {"_id": conversation_id, "ai_enabled": True},
            {"$set": {"ai_enabled": False, "updated_at": utcnow()}},
        )
        if result.modified_count == 0:
            return False
        await self.audit.record("update", "conversations", conversation_id, actor_id, "AI disabled")
        return True
