# alerts and tags: therapist-facing records created by danger detection and tagging
# an alert targets one therapist or, with target_therapist_id None, everyone assigned

import logging
from typing import Optional

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from therapy_chat.errors import AccessDeniedError, ValidationError
from therapy_chat.models.enums import AlertSeverity, AlertType, SEVERITY_ORDER
from therapy_chat.services.access import AccessResolver, is_admin
from therapy_chat.services.clock import utcnow
from therapy_chat.services.db import Database, next_id

logger = logging.getLogger(__name__)


def _visible_to(therapist: dict) -> dict:
    if is_admin(therapist):
        return {}
    return {"$or": [{"target_therapist_id": None}, {"target_therapist_id": therapist["id"]}]}


def sort_alerts(alerts: list[dict]) -> list[dict]:
    """severity first, then unread before read, then newest first"""
    by_newest = sorted(alerts, key=lambda a: a["_id"], reverse=True)
    return sorted(by_newest, key=lambda a: (SEVERITY_ORDER.get(a.get("severity"), 99), bool(a.get("is_read"))))


class AlertService:
    def __init__(self, db: Database, access: AccessResolver):
        self.db = db
        self.access = access

    async def create(
        self,
        conversation: dict,
        alert_type: AlertType,
        severity: AlertSeverity,
        message: str,
        metadata: Optional[dict] = None,
        target_therapist_id: Optional[str] = None,
        dedupe_key: Optional[str] = None,
    ) -> dict:
        """insert an alert. with a dedupe_key, a second create returns the first alert"""
        alert_id = await next_id(self.db, "alerts")
        doc = {
            "_id": alert_id,
            "conversation_id": conversation["_id"],
            "patient_id": conversation["patient_id"],
            "target_therapist_id": target_therapist_id,
            "alert_type": AlertType(alert_type).value,
            "severity": AlertSeverity(severity).value,
            "message": message,
            "metadata": metadata or {},
            "is_read": False,
            "read_at": None,
            "created_at": utcnow(),
        }
        if dedupe_key:
            doc["dedupe_key"] = dedupe_key
        try:
            await self.db.alerts.insert_one(doc)
        except DuplicateKeyError:
            existing = await self.db.alerts.find_one({"dedupe_key": dedupe_key}) if dedupe_key else None
            if existing is None:
                raise
            logger.info(f"Alert {dedupe_key} already exists as {existing['_id']}")
            return existing
        logger.info(
            f"Alert {alert_id} ({doc['alert_type']}/{doc['severity']}) on conversation {conversation['_id']}",
            extra={"conversation_id": conversation["_id"], "alert_type": doc["alert_type"]},
        )
        return doc

    async def _scope(self, therapist: dict, conversation_id: Optional[int] = None) -> dict:
        conversation_ids = await self.access.conversation_ids_for(therapist)
        if conversation_id is not None:
            if conversation_id not in conversation_ids:
                raise AccessDeniedError("Conversation not found or access denied")
            conversation_ids = [conversation_id]
        query = {"conversation_id": {"$in": conversation_ids}}
        query.update(_visible_to(therapist))
        return query

    async def list_for_therapist(
        self,
        therapist: dict,
        unread_only: bool = False,
        alert_type: Optional[str] = None,
        conversation_id: Optional[int] = None,
        limit: int = 100,
    ) -> list[dict]:
        query = await self._scope(therapist, conversation_id)
        if unread_only:
            query["is_read"] = False
        if alert_type:
            try:
                query["alert_type"] = AlertType(alert_type).value
            except ValueError:
                raise ValidationError(f"Unknown alert type '{alert_type}'")
        alerts = await self.db.alerts.find(query).to_list(length=5000)
        return sort_alerts(alerts)[:limit]

    async def unread_count(self, therapist: dict, conversation_id: Optional[int] = None) -> int:
        query = await self._scope(therapist, conversation_id)
        query["is_read"] = False
        return await self.db.alerts.count_documents(query)

    async def mark_read(self, therapist: dict, alert_id: int) -> dict:
        alert = await self.db.alerts.find_one({"_id": alert_id})
        if alert is None:
            raise AccessDeniedError("Alert not found or access denied")
        scope = await self._scope(therapist)
        if alert["conversation_id"] not in scope["conversation_id"]["$in"]:
            raise AccessDeniedError("Alert not found or access denied")
        target = alert.get("target_therapist_id")
        if target is not None and target != therapist["id"] and not is_admin(therapist):
            raise AccessDeniedError("Alert not found or access denied")

        if alert.get("is_read"):
            return alert
        return await self.db.alerts.find_one_and_update(
            {"_id": alert_id},
            {"$set": {"is_read": True, "read_at": utcnow(), "read_by": therapist["id"]}},
            return_document=ReturnDocument.AFTER,
        )

    async def mark_all_read(self, therapist: dict, conversation_id: Optional[int] = None) -> int:
        query = await self._scope(therapist, conversation_id)
        query["is_read"] = False
        result = await self.db.alerts.update_many(
            query,
            {"$set": {"is_read": True, "read_at": utcnow(), "read_by": therapist["id"]}},
        )
        return result.modified_count

    # tags

    async def list_tags(self, therapist: dict, pending_only: bool = True, conversation_id: Optional[int] = None) -> list[dict]:
        scope = await self._scope(therapist, conversation_id)
        query = {"conversation_id": scope["conversation_id"]}
        if not is_admin(therapist):
            query["$or"] = [{"therapist_id": None}, {"therapist_id": therapist["id"]}]
        if pending_only:
            query["acknowledged"] = False
        tags = await self.db.tags.find(query).sort("_id", -1).to_list(length=1000)
        return tags

    async def acknowledge_tag(self, therapist: dict, tag_id: int) -> dict:
        tag = await self.db.tags.find_one({"_id": tag_id})
        if tag is None:
            raise AccessDeniedError("Tag not found or access denied")
        scope = await self._scope(therapist)
        target = tag.get("therapist_id")
        if tag["conversation_id"] not in scope["conversation_id"]["$in"] or (
            target is not None and target != therapist["id"] and not is_admin(therapist)
        ):
            raise AccessDeniedError("Tag not found or access denied")

        if tag.get("acknowledged"):
            return tag
        return await self.db.tags.find_one_and_update(
            {"_id": tag_id},
            {"$set": {"acknowledged": True, "acknowledged_at": utcnow(), "acknowledged_by": therapist["id"]}},
            return_document=ReturnDocument.AFTER,
        )
