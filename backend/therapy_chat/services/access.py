# access resolver: roles, patient groups and therapist monitoring scope
# therapist scope comes from therapist_assignments (therapist_id, group_id), patients carry group_ids

import logging
from typing import Optional

from bson import ObjectId
from bson.errors import InvalidId

from therapy_chat.errors import AccessDeniedError, NoAccessibleGroupError, ValidationError
from therapy_chat.services.db import Database

logger = logging.getLogger(__name__)

PATIENT = "patient"
THERAPIST = "therapist"
ADMIN = "admin"


def is_patient(user: dict) -> bool:
    return user.get("role") == PATIENT


def is_therapist(user: dict) -> bool:
    return user.get("role") == THERAPIST


def is_admin(user: dict) -> bool:
    return user.get("role") == ADMIN


def _with_id(doc: dict) -> dict:
    """copy a user document with its ObjectId exposed as a string id"""
    user = dict(doc)
    user["id"] = str(user.pop("_id"))
    return user


class AccessResolver:
    """answers who may see which patient and conversation"""

    def __init__(self, db: Database):
        self.db = db

    async def get_user(self, user_id: str) -> Optional[dict]:
        try:
            oid = ObjectId(user_id)
        except (InvalidId, TypeError):
            return None
        doc = await self.db.users.find_one({"_id": oid})
        return _with_id(doc) if doc else None

    async def get_users(self, user_ids: list[str]) -> list[dict]:
        oids = []
        for uid in user_ids:
            try:
                oids.append(ObjectId(uid))
            except (InvalidId, TypeError):
                continue
        if not oids:
            return []
        docs = await self.db.users.find({"_id": {"$in": oids}}).to_list(length=len(oids))
        return [_with_id(d) for d in docs]

    async def therapist_groups(self, therapist_id: str) -> list[str]:
        rows = await self.db.therapist_assignments.find({"therapist_id": therapist_id}).to_list(length=1000)
        return sorted({r["group_id"] for r in rows})

    async def groups_of(self, user: dict) -> list[str]:
        """groups a patient belongs to, or groups a therapist monitors"""
        if is_therapist(user):
            return await self.therapist_groups(user["id"])
        return list(user.get("group_ids", []))

    async def therapist_can_access_patient(self, therapist_id: str, patient_id: str) -> bool:
        patient = await self.get_user(patient_id)
        if not patient or not is_patient(patient):
            return False
        therapist_groups = set(await self.therapist_groups(therapist_id))
        return bool(therapist_groups.intersection(patient.get("group_ids", [])))

    async def therapists_for_patient(self, patient: dict) -> list[dict]:
        """therapists assigned to any group containing the patient, sorted by name"""
        group_ids = patient.get("group_ids", [])
        if not group_ids:
            return []
        rows = await self.db.therapist_assignments.find({"group_id": {"$in": group_ids}}).to_list(length=1000)
        therapist_ids = sorted({r["therapist_id"] for r in rows})
        therapists = [u for u in await self.get_users(therapist_ids) if is_therapist(u)]
        return sorted(therapists, key=lambda u: u.get("name", ""))

    async def patients_for_therapist(self, therapist_id: str, group_id: Optional[str] = None) -> list[dict]:
        group_ids = await self.therapist_groups(therapist_id)
        if group_id is not None:
            if group_id not in group_ids:
                raise AccessDeniedError("Group not assigned to this therapist")
            group_ids = [group_id]
        if not group_ids:
            return []
        docs = await self.db.users.find({"role": PATIENT, "group_ids": {"$in": group_ids}}).to_list(length=5000)
        return sorted((_with_id(d) for d in docs), key=lambda u: u.get("name", ""))

    async def all_patients(self) -> list[dict]:
        docs = await self.db.users.find({"role": PATIENT}).to_list(length=5000)
        return sorted((_with_id(d) for d in docs), key=lambda u: u.get("name", ""))

    async def can_access_conversation(self, user: dict, conversation: dict) -> bool:
        """owner patient, therapist whose assignment covers the patient's group, or admin"""
        if is_admin(user):
            return True
        if is_patient(user):
            return conversation.get("patient_id") == user["id"]
        if is_therapist(user):
            return await self.therapist_can_access_patient(user["id"], conversation["patient_id"])
        return False

    async def conversation_filter(self, user: dict) -> dict:
        """mongo filter matching the conversations a therapist or admin may monitor"""
        if is_admin(user):
            return {}
        if not is_therapist(user):
            return {"patient_id": user["id"]}
        patients = await self.patients_for_therapist(user["id"])
        return {"patient_id": {"$in": [p["id"] for p in patients]}}

    async def conversation_ids_for(self, user: dict) -> list[int]:
        docs = await self.db.conversations.find(await self.conversation_filter(user)).to_list(length=10000)
        return [d["_id"] for d in docs]

    async def resolve_group(
        self,
        patient: dict,
        requested_group_id: Optional[str] = None,
        within: Optional[list[str]] = None,
    ) -> str:
        """pick the group a new conversation belongs to.

        an explicit group must be one of the patient's groups. without one, the
        patient (restricted to `within` when given) must have exactly one group.
        """
        candidates = list(patient.get("group_ids", []))
        if within is not None:
            candidates = [g for g in candidates if g in within]

        if requested_group_id is not None:
            if requested_group_id not in candidates:
                raise NoAccessibleGroupError(f"Group {requested_group_id} is not accessible for this patient")
            return requested_group_id

        if len(candidates) == 1:
            return candidates[0]
        if not candidates:
            raise NoAccessibleGroupError("Patient has no accessible group")
        raise NoAccessibleGroupError("Patient belongs to several groups, groupId is required")

    # admin assignment management

    async def set_assignments(self, therapist_id: str, group_ids: list[str]) -> list[str]:
        therapist = await self.get_user(therapist_id)
        if not therapist or not is_therapist(therapist):
            raise ValidationError("User is not a therapist")
        wanted = sorted(set(group_ids))
        await self.db.therapist_assignments.delete_many(
            {"therapist_id": therapist_id, "group_id": {"$nin": wanted}}
        )
        for group_id in wanted:
            await self.db.therapist_assignments.update_one(
                {"therapist_id": therapist_id, "group_id": group_id},
                {"$setOnInsert": {"therapist_id": therapist_id, "group_id": group_id}},
                upsert=True,
            )
        logger.info(f"Therapist {therapist_id} assigned to groups {wanted}")
        return wanted
