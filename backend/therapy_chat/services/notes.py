# clinical notes: therapist-private annotations on a conversation
# never shown to patients and never included in ai context

import logging
from typing import Optional

from pymongo import ReturnDocument

from therapy_chat.errors import AccessDeniedError, ValidationError
from therapy_chat.models.enums import NoteStatus, NoteType
from therapy_chat.services.access import is_patient
from therapy_chat.services.audit import AuditLog
from therapy_chat.services.clock import utcnow
from therapy_chat.services.conversation_service import ConversationService
from therapy_chat.services.db import Database, next_id

logger = logging.getLogger(__name__)


class NoteService:
    def __init__(self, db: Database, conversations: ConversationService, audit: AuditLog):
        self.db = db
        self.conversations = conversations
        self.audit = audit

    async def _conversation(self, user: dict, conversation_id: int) -> dict:
        if is_patient(user):
            raise AccessDeniedError("Conversation not found or access denied")
        return await self.conversations.get_for_user(user, conversation_id)

    async def _active_note(self, user: dict, note_id: int) -> dict:
        note = await self.db.notes.find_one({"_id": note_id, "status": NoteStatus.ACTIVE.value})
        if note is None:
            raise AccessDeniedError("Note not found or access denied")
        await self._conversation(user, note["conversation_id"])
        return note

    async def add(
        self,
        user: dict,
        conversation_id: int,
        content: str,
        note_type=NoteType.MANUAL,
        ai_original_content: Optional[str] = None,
    ) -> dict:
        content = (content or "").strip()
        if not content:
            raise ValidationError("Note content cannot be empty")
        try:
            note_type = NoteType(note_type)
        except ValueError:
            raise ValidationError(f"Invalid note type '{note_type}'")
        await self._conversation(user, conversation_id)

        now = utcnow()
        doc = {
            "_id": await next_id(self.db, "notes"),
            "conversation_id": conversation_id,
            "content": content,
            "note_type": note_type.value,
            "status": NoteStatus.ACTIVE.value,
            "created_by": user["id"],
            "last_edited_by": None,
            "ai_original_content": ai_original_content if note_type == NoteType.AI_SUMMARY else None,
            "created_at": now,
            "updated_at": now,
        }
        await self.db.notes.insert_one(doc)
        await self.audit.record("insert", "notes", doc["_id"], user["id"], f"Note added ({note_type.value})")
        return doc

    async def list_for_conversation(self, user: dict, conversation_id: int) -> list[dict]:
        await self._conversation(user, conversation_id)
        return await (
            self.db.notes.find({"conversation_id": conversation_id, "status": NoteStatus.ACTIVE.value})
            .sort("_id", -1)
            .to_list(length=1000)
        )

    async def edit(self, user: dict, note_id: int, content: str) -> dict:
        content = (content or "").strip()
        if not content:
            raise ValidationError("Note content cannot be empty")
        await self._active_note(user, note_id)
        updated = await self.db.notes.find_one_and_update(
            {"_id": note_id, "status": NoteStatus.ACTIVE.value},
            {"$set": {"content": content, "last_edited_by": user["id"], "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise AccessDeniedError("Note not found or access denied")
        await self.audit.record("update", "notes", note_id, user["id"], "Note edited")
        return updated

    async def delete(self, user: dict, note_id: int) -> dict:
        await self._active_note(user, note_id)
        updated = await self.db.notes.find_one_and_update(
            {"_id": note_id},
            {"$set": {"status": NoteStatus.DELETED.value, "last_edited_by": user["id"], "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        await self.audit.record("delete", "notes", note_id, user["id"], "Note deleted")
        return updated
