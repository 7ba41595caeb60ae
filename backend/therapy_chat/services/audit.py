# audit log: conversation control transitions and ai tool conversations
# writes are fire-and-forget, a failed audit write is logged and never reaches the caller

import logging
from typing import Optional

from pymongo.errors import PyMongoError

from therapy_chat.services.clock import utcnow
from therapy_chat.services.db import Database, next_id

logger = logging.getLogger(__name__)


class AuditLog:
    def __init__(self, db: Database):
        self.db = db

    async def record(
        self,
        action: str,
        table: str,
        entry_id,
        user_id: Optional[str],
        description: str,
    ):
        """append a human-readable transaction entry"""
        try:
            await self.db.transactions.insert_one({
                "action": action,
                "table": table,
                "entry_id": entry_id,
                "user_id": user_id,
                "description": description,
                "created_at": utcnow(),
            })
        except PyMongoError as e:
            logger.warning(f"Audit write failed for {table}:{entry_id} ({action}): {e}")

    async def open_tool_conversation(
        self,
        therapist_id: str,
        purpose: str,
        subject_conversation_id: int,
        reuse: bool = True,
    ) -> Optional[int]:
        """find or create the therapist-scoped conversation that records ai tool calls"""
        try:
            if reuse:
                existing = await self.db.tool_conversations.find_one(
                    {"therapist_id": therapist_id, "purpose": purpose}
                )
                if existing:
                    return existing["_id"]
            conv_id = await next_id(self.db, "tool_conversations")
            await self.db.tool_conversations.insert_one({
                "_id": conv_id,
                "therapist_id": therapist_id,
                "purpose": purpose,
                "subject_conversation_id": subject_conversation_id,
                "created_at": utcnow(),
            })
            return conv_id
        except PyMongoError as e:
            logger.warning(f"Could not open {purpose} tool conversation for therapist {therapist_id}: {e}")
            return None

    async def log_tool_exchange(
        self,
        tool_conversation_id: Optional[int],
        subject_conversation_id: int,
        request_messages: list[dict],
        response_text: str,
        tokens_used: int = 0,
    ):
        """store one request/response pair so ai tool use never touches the patient log"""
        if tool_conversation_id is None:
            return
        try:
            now = utcnow()
            await self.db.tool_messages.insert_one({
                "tool_conversation_id": tool_conversation_id,
                "subject_conversation_id": subject_conversation_id,
                "role": "user",
                "content": request_messages[-1]["content"] if request_messages else "",
                "context_size": len(request_messages),
                "created_at": now,
            })
            await self.db.tool_messages.insert_one({
                "tool_conversation_id": tool_conversation_id,
                "subject_conversation_id": subject_conversation_id,
                "role": "assistant",
                "content": response_text,
                "tokens_used": tokens_used,
                "created_at": now,
            })
        except PyMongoError as e:
            logger.warning(f"Tool exchange not logged for tool conversation {tool_conversation_id}: {e}")
