# async mongodb client for the therapy chat api
# uses motor for non-blocking operations, owns indexes and integer id counters

import logging
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from therapy_chat.config import settings

logger = logging.getLogger(__name__)


class Database:
    """async mongodb connection manager"""

    def __init__(self):
        self.client: Optional[AsyncIOMotorClient] = None
        self.db: Optional[AsyncIOMotorDatabase] = None

    async def connect(self):
        """establish connection to mongodb"""
        if self.client is not None:
            return

        logger.info(f"Connecting to MongoDB database: {settings.MONGODB_DATABASE}")
        self.client = AsyncIOMotorClient(settings.MONGODB_URI)
        self.db = self.client[settings.MONGODB_DATABASE]

        # verify connection
        await self.client.admin.command("ping")
        logger.info("MongoDB connection established")

    async def close(self):
        """close mongodb connection"""
        if self.client:
            self.client.close()
            self.client = None
            self.db = None
            logger.info("MongoDB connection closed")

    # collection accessors

    @property
    def users(self):
        return self.db["users"]

    @property
    def groups(self):
        return self.db["groups"]

    @property
    def therapist_assignments(self):
        return self.db["therapist_assignments"]

    @property
    def conversations(self):
        return self.db["conversations"]

    @property
    def messages(self):
        return self.db["messages"]

    @property
    def alerts(self):
        return self.db["alerts"]

    @property
    def tags(self):
        return self.db["tags"]

    @property
    def notes(self):
        return self.db["notes"]

    @property
    def drafts(self):
        return self.db["drafts"]

    @property
    def scheduled_jobs(self):
        return self.db["scheduled_jobs"]

    @property
    def notification_batches(self):
        return self.db["notification_batches"]

    @property
    def transactions(self):
        return self.db["transactions"]

    @property
    def tool_conversations(self):
        return self.db["tool_conversations"]

    @property
    def tool_messages(self):
        return self.db["tool_messages"]

    @property
    def counters(self):
        return self.db["counters"]


async def next_id(db: Database, name: str) -> int:
    """allocate the next integer id for a collection. ids are monotonic and never reused"""
    doc = await db.counters.find_one_and_update(
        {"_id": name},
        {"$inc": {"seq": 1}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    return doc["seq"]


async def ensure_indexes(db: Database):
    """create the indexes the chat core relies on for its store-level invariants"""
    # one non-closed conversation per patient
    await db.conversations.create_index(
        [("patient_id", ASCENDING)],
        unique=True,
        partialFilterExpression={"is_open": True},
        name="one_open_conversation_per_patient",
    )
    await db.conversations.create_index([("group_id", ASCENDING), ("status", ASCENDING)])

    await db.messages.create_index([("conversation_id", ASCENDING), ("_id", ASCENDING)])
    await db.messages.create_index(
        [("conversation_id", ASCENDING), ("client_message_id", ASCENDING)],
        unique=True,
        partialFilterExpression={"client_message_id": {"$type": "string"}},
        name="message_idempotency_key",
    )

    # one active draft per (conversation, therapist)
    await db.drafts.create_index(
        [("conversation_id", ASCENDING), ("therapist_id", ASCENDING)],
        unique=True,
        partialFilterExpression={"status": "draft"},
        name="one_active_draft",
    )

    await db.alerts.create_index([("conversation_id", ASCENDING), ("is_read", ASCENDING)])
    await db.alerts.create_index(
        [("dedupe_key", ASCENDING)],
        unique=True,
        partialFilterExpression={"dedupe_key": {"$type": "string"}},
        name="alert_dedupe_key",
    )
    await db.tags.create_index([("conversation_id", ASCENDING), ("acknowledged", ASCENDING)])
    await db.notes.create_index([("conversation_id", ASCENDING), ("created_at", DESCENDING)])
    await db.therapist_assignments.create_index(
        [("therapist_id", ASCENDING), ("group_id", ASCENDING)],
        unique=True,
    )
    await db.scheduled_jobs.create_index([("status", ASCENDING), ("created_at", ASCENDING)])
    logger.info("MongoDB indexes ensured")


# singleton instance
db = Database()


async def get_db() -> Database:
    """dependency injection for database access"""
    return db
