# draft workflow: ai-suggested therapist replies, regenerate/undo, send and discard
# also generates clinical summaries. both log their llm exchange in a therapist-scoped
# tool conversation, never in the patient-visible message log
#
# draft states: draft -> sent | discarded (both terminal)
# one active draft per (conversation, therapist), enforced by a partial unique index

import logging
from typing import Optional

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from therapy_chat.config import Settings, settings as default_settings
from therapy_chat.errors import AccessDeniedError, GatewayError, ValidationError
from therapy_chat.models.enums import ConversationStatus, DraftStatus, SenderType
from therapy_chat.models.message import TherapistSender
from therapy_chat.services.ai_gateway import AIGateway
from therapy_chat.services.audit import AuditLog
from therapy_chat.services.clock import utcnow
from therapy_chat.services.conversation_service import ConversationService
from therapy_chat.services.db import Database, next_id
from therapy_chat.services.message_service import MessageService
from therapy_chat.services.notifications import NotificationOrchestrator
from therapy_chat.services.structured_response import RESPONSE_SCHEMA_INSTRUCTION, extract_display_content

logger = logging.getLogger(__name__)

DRAFT_INSTRUCTION = (
    "Generate a thoughtful, empathetic therapeutic response draft for the therapist to review "
    "and edit before sending to the patient. Focus on being supportive and clinically appropriate."
)
NO_CONTENT_ERROR = "AI did not generate a response. Please try again."

SUMMARY_INSTRUCTION = (
    "You are a clinical summarization assistant. Your task is to produce a concise, professional "
    "therapeutic summary of the conversation below.\n\n"
)
SUMMARY_CHECKLIST = (
    "Include: key topics discussed, patient emotional state, therapeutic interventions used, "
    "progress indicators, risk flags if any, and recommended next steps."
)
SUMMARY_REQUEST = "Please generate a clinical summary of the above therapy conversation."

SENDER_LABELS = {
    SenderType.SUBJECT.value: "[Patient]",
    SenderType.THERAPIST.value: "[Therapist]",
    SenderType.AI.value: "[AI Assistant]",
    SenderType.SYSTEM.value: "[System]",
}

MAX_INSERT_ATTEMPTS = 3


def draft_content(draft: dict) -> str:
    """what the therapist currently sees: edited text when present"""
    edited = draft.get("edited_content")
    return edited if edited is not None else draft.get("ai_generated_content", "")


class DraftService:
    def __init__(
        self,
        db: Database,
        conversations: ConversationService,
        messages: MessageService,
        notifier: NotificationOrchestrator,
        gateway: AIGateway,
        audit: AuditLog,
        config: Settings = default_settings,
    ):
        self.db = db
        self.conversations = conversations
        self.messages = messages
        self.notifier = notifier
        self.gateway = gateway
        self.audit = audit
        self.settings = config

    async def _owned_draft(self, therapist: dict, draft_id: int) -> dict:
        draft = await self.db.drafts.find_one({"_id": draft_id})
        if draft is None or draft["therapist_id"] != therapist["id"]:
            raise AccessDeniedError("Draft not found or access denied")
        await self.conversations.get_for_user(therapist, draft["conversation_id"])
        return draft

    async def _active_draft(self, therapist: dict, draft_id: int) -> dict:
        draft = await self._owned_draft(therapist, draft_id)
        if draft["status"] != DraftStatus.DRAFT.value:
            raise ValidationError(f"Draft is already {draft['status']}")
        return draft

    async def _open_conversation(self, therapist: dict, conversation_id: int) -> dict:
        conversation = await self.conversations.get_for_user(therapist, conversation_id)
        if conversation["status"] == ConversationStatus.CLOSED.value:
            raise ValidationError("Conversation is closed")
        return conversation

    async def get_active(self, therapist: dict, conversation_id: int) -> Optional[dict]:
        await self.conversations.get_for_user(therapist, conversation_id)
        return await self.db.drafts.find_one({
            "conversation_id": conversation_id,
            "therapist_id": therapist["id"],
            "status": DraftStatus.DRAFT.value,
        })

    def _draft_prompt(self) -> str:
        prompt = DRAFT_INSTRUCTION
        extra = (self.settings.DRAFT_CONTEXT or "").strip()
        if extra:
            prompt += "\n\nAdditional context and instructions from the therapist:\n" + extra
        return prompt

    async def generate(self, therapist: dict, conversation_id: int) -> dict:
        """ask the ai for a reply draft and make it the therapist's active draft.

        the ai is called before anything is written, so a failed call leaves the
        current draft and its undo stack untouched.
        """
        if not self.settings.ENABLE_DRAFTS:
            raise ValidationError("Drafts are disabled")
        await self._open_conversation(therapist, conversation_id)

        context = await self.messages.build_ai_context(conversation_id, self.settings.CONVERSATION_CONTEXT)
        context.append({"role": "system", "content": self._draft_prompt()})
        context.append({"role": "system", "content": RESPONSE_SCHEMA_INSTRUCTION})

        completion = await self.gateway.complete(context)
        text = extract_display_content(completion.content)
        if not text:
            logger.warning(f"Empty draft generation for conversation {conversation_id}")
            raise GatewayError(NO_CONTENT_ERROR)

        tool_conversation_id = await self.audit.open_tool_conversation(therapist["id"], "draft", conversation_id)
        await self.audit.log_tool_exchange(
            tool_conversation_id, conversation_id, context, completion.content, completion.tokens_used
        )

        draft = await self._replace_active(therapist["id"], conversation_id, text, completion.tokens_used)
        logger.info(f"Draft {draft['_id']} generated for conversation {conversation_id} by {therapist['id']}")
        return draft

    async def _replace_active(self, therapist_id: str, conversation_id: int, text: str, tokens_used: int) -> dict:
        """discard the current draft and insert the new one, carrying the undo stack.

        if the insert fails for any reason but a concurrent winner, the discarded
        draft is put back so the therapist keeps their last good draft.
        """
        for attempt in range(1, MAX_INSERT_ATTEMPTS + 1):
            now = utcnow()
            prior = await self.db.drafts.find_one_and_update(
                {"conversation_id": conversation_id, "therapist_id": therapist_id, "status": DraftStatus.DRAFT.value},
                {"$set": {"status": DraftStatus.DISCARDED.value, "discarded_at": now, "updated_at": now}},
                return_document=ReturnDocument.BEFORE,
            )
            undo_stack = []
            if prior is not None:
                undo_stack = list(prior.get("undo_stack", [])) + [draft_content(prior)]
                undo_stack = undo_stack[-self.settings.DRAFT_UNDO_DEPTH:]

            try:
                draft_id = await next_id(self.db, "drafts")
                doc = {
                    "_id": draft_id,
                    "conversation_id": conversation_id,
                    "therapist_id": therapist_id,
                    "ai_generated_content": text,
                    "edited_content": None,
                    "status": DraftStatus.DRAFT.value,
                    "undo_stack": undo_stack,
                    "replaces": prior["_id"] if prior else None,
                    "tokens_used": tokens_used,
                    "sent_message_id": None,
                    "created_at": now,
                    "updated_at": now,
                }
                await self.db.drafts.insert_one(doc)
                return doc
            except DuplicateKeyError:
                # a concurrent generate won the slot, discard it and retry
                logger.info(f"Concurrent draft generation for conversation {conversation_id}, retrying")
                if attempt == MAX_INSERT_ATTEMPTS:
                    await self._restore(prior)
            except PyMongoError:
                await self._restore(prior)
                raise
        raise ValidationError("Draft is being generated by another request, please retry")

    async def _restore(self, prior: Optional[dict]):
        """make a draft discarded by a failed replacement active again"""
        if prior is None:
            return
        try:
            await self.db.drafts.update_one(
                {"_id": prior["_id"], "status": DraftStatus.DISCARDED.value},
                {"$set": {"status": DraftStatus.DRAFT.value, "updated_at": utcnow()}, "$unset": {"discarded_at": ""}},
            )
        except DuplicateKeyError:
            # another request already holds the active slot
            logger.warning(f"Draft {prior['_id']} not restored, a newer draft is active")

    async def regenerate(self, therapist: dict, draft_id: int) -> dict:
        """replace an active draft, pushing its text onto the undo stack"""
        draft = await self._active_draft(therapist, draft_id)
        return await self.generate(therapist, draft["conversation_id"])

    async def undo(self, therapist: dict, draft_id: int) -> tuple[bool, dict]:
        """restore the most recent prior text. (False, draft) when there is nothing to undo"""
        draft = await self._active_draft(therapist, draft_id)
        stack = list(draft.get("undo_stack", []))
        if not stack:
            return False, draft

        restored = stack.pop()
        updated = await self.db.drafts.find_one_and_update(
            {"_id": draft_id, "status": DraftStatus.DRAFT.value, "undo_stack": draft.get("undo_stack", [])},
            {"$set": {"edited_content": restored, "undo_stack": stack, "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise ValidationError("Draft changed concurrently, reload and try again")
        return True, updated

    async def update(self, therapist: dict, draft_id: int, edited_content: str) -> dict:
        await self._active_draft(therapist, draft_id)
        updated = await self.db.drafts.find_one_and_update(
            {"_id": draft_id, "status": DraftStatus.DRAFT.value},
            {"$set": {"edited_content": edited_content, "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise ValidationError("Draft is no longer active")
        return updated

    async def send(self, therapist: dict, draft_id: int) -> tuple[dict, dict]:
        """post the draft as a therapist message and notify the patient"""
        draft = await self._active_draft(therapist, draft_id)
        content = draft_content(draft).strip()
        if not content:
            raise ValidationError("Draft is empty")
        await self._open_conversation(therapist, draft["conversation_id"])

        now = utcnow()
        claimed = await self.db.drafts.find_one_and_update(
            {"_id": draft_id, "status": DraftStatus.DRAFT.value},
            {"$set": {"status": DraftStatus.SENT.value, "sent_at": now, "updated_at": now}},
            return_document=ReturnDocument.AFTER,
        )
        if claimed is None:
            raise ValidationError("Draft is no longer active")

        conversation_id = draft["conversation_id"]
        try:
            message = await self.messages.append(conversation_id, TherapistSender(id=therapist["id"]), content)
        except Exception:
            await self.db.drafts.update_one(
                {"_id": draft_id, "status": DraftStatus.SENT.value},
                {"$set": {"status": DraftStatus.DRAFT.value, "sent_at": None}},
            )
            raise

        claimed = await self.db.drafts.find_one_and_update(
            {"_id": draft_id},
            {"$set": {"sent_message_id": message["_id"]}},
            return_document=ReturnDocument.AFTER,
        )
        conversation = await self.conversations.get(conversation_id)
        await self.notifier.notify_patient_new_message(conversation, therapist, message)
        logger.info(f"Draft {draft_id} sent as message {message['_id']}")
        return claimed, message

    async def discard(self, therapist: dict, draft_id: int) -> bool:
        """discard an active draft. an already terminal draft is left as is"""
        await self._owned_draft(therapist, draft_id)
        now = utcnow()
        result = await self.db.drafts.update_one(
            {"_id": draft_id, "status": DraftStatus.DRAFT.value},
            {"$set": {"status": DraftStatus.DISCARDED.value, "discarded_at": now, "updated_at": now}},
        )
        return result.modified_count > 0

    # summaries

    async def generate_summary(self, therapist: dict, conversation_id: int) -> dict:
        await self.conversations.get_for_user(therapist, conversation_id)
        history = await self.messages.recent(conversation_id, self.settings.SUMMARY_MESSAGE_LIMIT)
        if not history:
            raise ValidationError("Conversation has no messages to summarize")

        system_prompt = SUMMARY_INSTRUCTION
        extra = (self.settings.SUMMARY_CONTEXT or "").strip()
        if extra:
            system_prompt += extra + "\n\n"
        system_prompt += SUMMARY_CHECKLIST

        transcript = "\n".join(
            f"{SENDER_LABELS.get(m['sender'].get('type'), '[System]')} {m['content']}"
            for m in history
            if m.get("content")
        )
        context = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": transcript},
            {"role": "user", "content": SUMMARY_REQUEST},
        ]
        completion = await self.gateway.complete(context)
        summary = extract_display_content(completion.content)
        if not summary:
            raise GatewayError(NO_CONTENT_ERROR)

        tool_conversation_id = await self.audit.open_tool_conversation(
            therapist["id"], "summary", conversation_id, reuse=False
        )
        await self.audit.log_tool_exchange(
            tool_conversation_id, conversation_id, context, completion.content, completion.tokens_used
        )
        logger.info(f"Summary generated for conversation {conversation_id} ({completion.tokens_used} tokens)")
        return {
            "summary": summary,
            "tokens_used": completion.tokens_used,
            "audit_conversation_id": tool_conversation_id or 0,
        }
