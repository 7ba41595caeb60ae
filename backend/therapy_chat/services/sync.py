# unread/polling synchronizer: read cursors, unread counts and cheap update checks
#
# phase 1 (check_updates) returns only ids and counts, clients fetch messages
# (phase 2) when those differ from what they last saw.
# therapist unread counts only include patient and therapist messages, ai
# replies never raise a therapist's badge.
# read cursors are kept as per-conversation seq, the message id is returned to clients

import logging
from collections import defaultdict
from typing import Optional

from pymongo import ASCENDING

from therapy_chat.models.enums import ConversationStatus, RiskLevel, SenderType
from therapy_chat.services.access import AccessResolver, is_admin, is_patient
from therapy_chat.services.alert_service import AlertService
from therapy_chat.services.clock import utcnow
from therapy_chat.services.db import Database

logger = logging.getLogger(__name__)

THERAPIST_UNREAD_SENDERS = [SenderType.SUBJECT.value, SenderType.THERAPIST.value]
PATIENT_UNREAD_SENDERS = [SenderType.THERAPIST.value, SenderType.AI.value]


def _sort_key(item: dict):
    conversation = item.get("conversation")
    if conversation is None:
        return (1, 0, 0.0, item["patient"].get("name", ""))
    risk_rank = RiskLevel(conversation.get("risk_level", "low")).rank
    updated = conversation.get("updated_at")
    timestamp = updated.timestamp() if hasattr(updated, "timestamp") else 0.0
    return (0, -risk_rank, -timestamp, item["patient"].get("name", ""))


class SyncService:
    def __init__(self, db: Database, access: AccessResolver, alerts: AlertService):
        self.db = db
        self.access = access
        self.alerts = alerts

    async def _contiguous_end(self, conversation_id: int, after_seq: int) -> tuple[int, int]:
        """(seq, id) of the last message in the unbroken run after `after_seq`.

        a seq whose insert is still in flight ends the run, so the cursor never
        skips a message that has not landed yet. (after_seq, 0) when nothing new.
        """
        docs = await (
            self.db.messages.find({"conversation_id": conversation_id, "seq": {"$gt": after_seq}}, {"seq": 1})
            .sort("seq", ASCENDING)
            .to_list(length=None)
        )
        seq, message_id = after_seq, 0
        for doc in docs:
            if doc["seq"] != seq + 1:
                break
            seq, message_id = doc["seq"], doc["_id"]
        return seq, message_id

    async def mark_seen(self, user: dict, conversation_id: int) -> int:
        """move the caller's read cursor past every landed message. returns the cursor message id"""
        conversation = await self.db.conversations.find_one({"_id": conversation_id})
        if conversation is None:
            return 0
        user_id = user["id"]
        prior_seq = (conversation.get("read_seqs") or {}).get(user_id, 0)
        seq, latest = await self._contiguous_end(conversation_id, prior_seq)
        seen_field = "subject_last_seen" if is_patient(user) else "therapist_last_seen"

        # cursor and last-seen move in one document update
        update = {"$set": {seen_field: utcnow()}}
        if latest:
            update["$max"] = {f"read_seqs.{user_id}": seq, f"read_cursors.{user_id}": latest}
        await self.db.conversations.update_one({"_id": conversation_id}, update)
        if latest:
            await self.db.messages.update_many(
                {"conversation_id": conversation_id, "seq": {"$lte": seq}, "seen_by": {"$ne": user_id}},
                {"$addToSet": {"seen_by": user_id}},
            )
            return latest
        return (conversation.get("read_cursors") or {}).get(user_id, 0)

    async def unread_count(self, conversation: dict, user: dict) -> int:
        user_id = user["id"]
        cursor = (conversation.get("read_seqs") or {}).get(user_id, 0)
        senders = PATIENT_UNREAD_SENDERS if is_patient(user) else THERAPIST_UNREAD_SENDERS
        return await self.db.messages.count_documents({
            "conversation_id": conversation["_id"],
            "seq": {"$gt": cursor},
            "is_deleted": False,
            "sender.type": {"$in": senders},
            "sender.id": {"$ne": user_id},
        })

    async def _monitored_conversations(self, therapist: dict, open_only: bool = True) -> list[dict]:
        query = await self.access.conversation_filter(therapist)
        if open_only:
            query["is_open"] = True
        return await self.db.conversations.find(query).to_list(length=10000)

    # phase 1

    async def check_updates_patient(self, patient: dict) -> dict:
        conversation = await self.db.conversations.find_one({"patient_id": patient["id"], "is_open": True})
        if conversation is None:
            return {"latest_message_id": 0, "unread_count": 0}
        return {
            "latest_message_id": conversation.get("last_message_id", 0),
            "unread_count": await self.unread_count(conversation, patient),
        }

    async def check_updates_therapist(self, therapist: dict) -> dict:
        conversations = await self._monitored_conversations(therapist)
        unread = 0
        for conversation in conversations:
            unread += await self.unread_count(conversation, therapist)
        return {
            "latest_message_id": max((c.get("last_message_id", 0) for c in conversations), default=0),
            "unread_messages": unread,
            "unread_alerts": await self.alerts.unread_count(therapist),
        }

    async def unread_counts(self, therapist: dict) -> dict:
        by_subject: dict[str, int] = {}
        by_group: dict[str, int] = defaultdict(int)
        total = 0
        for conversation in await self._monitored_conversations(therapist):
            count = await self.unread_count(conversation, therapist)
            by_subject[conversation["patient_id"]] = count
            by_group[conversation["group_id"]] += count
            total += count
        return {
            "total": total,
            "total_alerts": await self.alerts.unread_count(therapist),
            "by_subject": by_subject,
            "by_group": dict(by_group),
        }

    # dashboard views

    async def list_for_therapist(
        self,
        therapist: dict,
        group_id: Optional[str] = None,
        status: Optional[str] = None,
        risk_level: Optional[str] = None,
    ) -> list[dict]:
        """every patient in scope with their open conversation, riskiest first"""
        if is_admin(therapist):
            patients = await self.access.all_patients()
            if group_id:
                patients = [p for p in patients if group_id in p.get("group_ids", [])]
        else:
            patients = await self.access.patients_for_therapist(therapist["id"], group_id)

        conversations = await self.db.conversations.find(
            {"patient_id": {"$in": [p["id"] for p in patients]}, "is_open": True}
        ).to_list(length=10000)
        by_patient = {c["patient_id"]: c for c in conversations}

        items = []
        for patient in patients:
            conversation = by_patient.get(patient["id"])
            if (status or risk_level) and conversation is None:
                continue
            if status and conversation.get("status") != status:
                continue
            if risk_level and conversation.get("risk_level") != risk_level:
                continue
            item = {"patient": patient, "conversation": conversation, "unread_count": 0, "unread_alerts": 0}
            if conversation is not None:
                item["unread_count"] = await self.unread_count(conversation, therapist)
                item["unread_alerts"] = await self.alerts.unread_count(therapist, conversation["_id"])
            items.append(item)
        return sorted(items, key=_sort_key)

    async def stats(self, therapist: dict) -> dict:
        conversations = await self._monitored_conversations(therapist)
        return {
            "total": len(conversations),
            "active": sum(1 for c in conversations if c.get("status") == ConversationStatus.ACTIVE.value),
            "paused": sum(1 for c in conversations if c.get("status") == ConversationStatus.PAUSED.value),
            "risk_critical": sum(1 for c in conversations if c.get("risk_level") == RiskLevel.CRITICAL.value),
            "risk_high": sum(1 for c in conversations if c.get("risk_level") == RiskLevel.HIGH.value),
            "unread_alerts": await self.alerts.unread_count(therapist),
        }

    async def groups_for(self, user: dict) -> list[dict]:
        if is_admin(user):
            group_ids = [g["_id"] for g in await self.db.groups.find({}).to_list(length=1000)]
        else:
            group_ids = await self.access.groups_of(user)
        groups = []
        for group_id in group_ids:
            doc = await self.db.groups.find_one({"_id": group_id})
            patient_count = await self.db.users.count_documents({"role": "patient", "group_ids": group_id})
            groups.append({
                "id": group_id,
                "name": doc.get("name", group_id) if doc else group_id,
                "patient_count": patient_count,
            })
        return groups
