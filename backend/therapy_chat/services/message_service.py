# message log: append, cursor reads, edits and soft deletes
# messages carry a global monotonic _id and a dense per-conversation seq
#
# polling reads stop at the first missing seq, so a client cursor never moves
# past a message whose insert is still in flight

import logging
from typing import Optional

from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import PyMongoError

from therapy_chat.config import Settings, settings as default_settings
from therapy_chat.errors import AccessDeniedError, ValidationError
from therapy_chat.models.enums import SenderType
from therapy_chat.models.message import role_for_sender
from therapy_chat.services.access import is_admin
from therapy_chat.services.clock import utcnow
from therapy_chat.services.db import Database, next_id

logger = logging.getLogger(__name__)

THERAPIST_PREFIX = "[Therapist]: "


class MessageService:
    def __init__(self, db: Database, config: Settings = default_settings):
        self.db = db
        self.settings = config

    async def get(self, message_id: int) -> Optional[dict]:
        return await self.db.messages.find_one({"_id": message_id})

    async def find_by_client_id(self, conversation_id: int, client_message_id: str) -> Optional[dict]:
        return await self.db.messages.find_one(
            {"conversation_id": conversation_id, "client_message_id": client_message_id}
        )

    async def append(
        self,
        conversation_id: int,
        sender,
        content: str,
        raw: Optional[dict] = None,
        client_message_id: Optional[str] = None,
        reply_to: Optional[int] = None,
    ) -> dict:
        """append a message to the log. role and sender never change afterwards"""
        now = utcnow()
        conversation = await self.db.conversations.find_one_and_update(
            {"_id": conversation_id},
            {"$inc": {"message_seq": 1}, "$set": {"updated_at": now}},
            return_document=ReturnDocument.AFTER,
        )
        if conversation is None:
            raise ValidationError("Conversation does not exist")

        seq = conversation["message_seq"]
        message_id = await next_id(self.db, "messages")
        doc = {
            "_id": message_id,
            "seq": seq,
            "conversation_id": conversation_id,
            "role": role_for_sender(sender).value,
            "sender": sender.model_dump(),
            "content": content,
            "raw": raw,
            "reply_to": reply_to,
            "is_edited": False,
            "is_deleted": False,
            "edit_history": [],
            "seen_by": [sender.id] if sender.id else [],
            "created_at": now,
        }
        if client_message_id:
            doc["client_message_id"] = client_message_id

        try:
            await self.db.messages.insert_one(doc)
        except PyMongoError:
            # keep seq dense so pollers are not stalled behind a hole forever
            await self._fill_hole(conversation_id, seq, message_id)
            raise

        await self.db.conversations.update_one(
            {"_id": conversation_id},
            {"$max": {"last_message_id": message_id}},
        )
        return doc

    async def _fill_hole(self, conversation_id: int, seq: int, message_id: int):
        try:
            await self.db.messages.insert_one({
                "_id": message_id,
                "seq": seq,
                "conversation_id": conversation_id,
                "role": "system",
                "sender": {"type": SenderType.SYSTEM.value, "id": None},
                "content": "",
                "is_edited": False,
                "is_deleted": True,
                "placeholder": True,
                "edit_history": [],
                "seen_by": [],
                "created_at": utcnow(),
            })
        except PyMongoError as e:
            logger.error(f"Could not fill message seq {seq} in conversation {conversation_id}: {e}")

    async def list_after(
        self,
        conversation_id: int,
        after_id: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> tuple[list[dict], int]:
        """visible messages after a cursor in log order, plus the new cursor.

        the new cursor is the id of the last contiguous message read (deleted
        ones included), or the given cursor when nothing new is available.
        """
        limit = limit or self.settings.MESSAGE_PAGE_LIMIT
        after_seq = 0
        if after_id:
            anchor = await self.db.messages.find_one({"_id": after_id, "conversation_id": conversation_id})
            if anchor is None:
                raise ValidationError("Unknown message cursor")
            after_seq = anchor["seq"]

        docs = await (
            self.db.messages.find({"conversation_id": conversation_id, "seq": {"$gt": after_seq}})
            .sort("seq", ASCENDING)
            .limit(limit)
            .to_list(length=limit)
        )

        visible = []
        cursor = after_id or 0
        expected = after_seq + 1
        for doc in docs:
            if doc["seq"] != expected:
                logger.debug(f"Conversation {conversation_id}: seq {expected} not yet visible, stopping read")
                break
            expected += 1
            cursor = doc["_id"]
            if not doc.get("is_deleted"):
                visible.append(doc)
        return visible, cursor

    async def recent(self, conversation_id: int, limit: int) -> list[dict]:
        """last `limit` visible messages in log order"""
        docs = await (
            self.db.messages.find({"conversation_id": conversation_id, "is_deleted": False})
            .sort("seq", DESCENDING)
            .limit(limit)
            .to_list(length=limit)
        )
        return list(reversed(docs))

    async def latest_id(self, conversation_id: int) -> int:
        conversation = await self.db.conversations.find_one({"_id": conversation_id})
        return conversation.get("last_message_id", 0) if conversation else 0

    async def link_ai_reply(self, message_id: int, ai_message_id: int):
        await self.db.messages.update_one({"_id": message_id}, {"$set": {"ai_reply_id": ai_message_id}})

    def _check_author(self, message: Optional[dict], user: dict):
        if message is None or message.get("is_deleted"):
            raise AccessDeniedError("Message not found or access denied")
        if is_admin(user):
            return
        sender = message["sender"]
        if sender.get("type") != SenderType.THERAPIST.value or sender.get("id") != user["id"]:
            raise AccessDeniedError("Only the therapist who sent a message can change it")

    async def edit(self, message_id: int, editor: dict, content: str) -> dict:
        """replace content, keeping the prior text in edit_history"""
        content = (content or "").strip()
        if not content:
            raise ValidationError("Message content cannot be empty")
        message = await self.get(message_id)
        self._check_author(message, editor)

        now = utcnow()
        updated = await self.db.messages.find_one_and_update(
            {"_id": message_id, "is_deleted": False, "content": message["content"]},
            {
                "$set": {"content": content, "is_edited": True, "edited_at": now, "edited_by": editor["id"]},
                "$push": {"edit_history": {"content": message["content"], "edited_at": now, "edited_by": editor["id"]}},
            },
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise ValidationError("Message changed concurrently, reload and try again")
        logger.info(f"Message {message_id} edited by {editor['id']}")
        return updated

    async def soft_delete(self, message_id: int, user: dict) -> dict:
        message = await self.get(message_id)
        self._check_author(message, user)
        updated = await self.db.messages.find_one_and_update(
            {"_id": message_id},
            {"$set": {"is_deleted": True, "deleted_at": utcnow(), "deleted_by": user["id"]}},
            return_document=ReturnDocument.AFTER,
        )
        logger.info(f"Message {message_id} deleted by {user['id']}")
        return updated

    async def build_ai_context(self, conversation_id: int, system_prompt: Optional[str] = None) -> list[dict]:
        """role-tagged history for the llm, newest window only"""
        context = []
        if system_prompt:
            context.append({"role": "system", "content": system_prompt})
        for message in await self.recent(conversation_id, self.settings.AI_CONTEXT_WINDOW):
            content = message.get("content", "")
            if not content:
                continue
            if message["sender"].get("type") == SenderType.THERAPIST.value:
                content = THERAPIST_PREFIX + content
            context.append({"role": message["role"], "content": content})
        return context

    async def set_flags(self, message_id: int, fields: dict):
        """processing markers (screened, tagged) used to resume an interrupted send"""
        await self.db.messages.update_one({"_id": message_id}, {"$set": fields})
