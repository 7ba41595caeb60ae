# seed script: creates groups, a therapist team, patients and an admin in mongodb
# prints a development access token per user since login is owned by the host platform
# run once: python -m therapy_chat.seed

import asyncio
import logging
from datetime import timedelta

from therapy_chat.services.auth_service import create_access_token
from therapy_chat.services.db import db, ensure_indexes

logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)

DEV_TOKEN_LIFETIME = timedelta(days=7)

GROUPS = [
    {"_id": "anxiety-support", "name": "Anxiety Support"},
    {"_id": "mood-recovery", "name": "Mood Recovery"},
]

THERAPISTS = [
    {"name": "Dr. Sarah Chen", "email": "dr.chen@therapychat.com", "groups": ["anxiety-support", "mood-recovery"]},
    {"name": "Dr. Omar Haddad", "email": "dr.haddad@therapychat.com", "groups": ["mood-recovery"]},
]

PATIENTS = [
    {"name": "Alex Rivera", "email": "alex.rivera@email.com", "groups": ["anxiety-support"]},
    {"name": "Jordan Kim", "email": "jordan.kim@email.com", "groups": ["anxiety-support"]},
    {"name": "Sam Patel", "email": "sam.patel@email.com", "groups": ["mood-recovery"]},
    {"name": "Morgan Blake", "email": "morgan.blake@email.com", "groups": ["mood-recovery"]},
    {"name": "Riley Nguyen", "email": "riley.nguyen@email.com", "groups": ["anxiety-support", "mood-recovery"]},
]

ADMIN = {"name": "Clinic Admin", "email": "admin@therapychat.com"}


async def _upsert_user(email: str, doc: dict) -> str:
    """insert a user unless the email already exists, returns the user id"""
    existing = await db.users.find_one({"email": email})
    if existing:
        logger.info(f"User already exists: {email} (id: {existing['_id']})")
        return str(existing["_id"])
    result = await db.users.insert_one({"email": email, **doc})
    logger.info(f"Created {doc['role']}: {doc['name']} (id: {result.inserted_id})")
    return str(result.inserted_id)


async def seed():
    """create groups, users and assignments, skips existing"""
    await db.connect()
    await ensure_indexes(db)

    for group in GROUPS:
        await db.groups.update_one({"_id": group["_id"]}, {"$setOnInsert": group}, upsert=True)
    logger.info(f"Ensured {len(GROUPS)} groups")

    tokens = {}
    for t in THERAPISTS:
        therapist_id = await _upsert_user(t["email"], {"name": t["name"], "role": "therapist", "group_ids": []})
        for group_id in t["groups"]:
            await db.therapist_assignments.update_one(
                {"therapist_id": therapist_id, "group_id": group_id},
                {"$setOnInsert": {"therapist_id": therapist_id, "group_id": group_id}},
                upsert=True,
            )
        tokens[t["email"]] = create_access_token({"sub": therapist_id}, DEV_TOKEN_LIFETIME)

    for p in PATIENTS:
        patient_id = await _upsert_user(p["email"], {"name": p["name"], "role": "patient", "group_ids": p["groups"]})
        tokens[p["email"]] = create_access_token({"sub": patient_id}, DEV_TOKEN_LIFETIME)

    admin_id = await _upsert_user(ADMIN["email"], {"name": ADMIN["name"], "role": "admin", "group_ids": []})
    tokens[ADMIN["email"]] = create_access_token({"sub": admin_id}, DEV_TOKEN_LIFETIME)

    await db.users.create_index("email", unique=True)
    await db.users.create_index("role")
    await db.users.create_index("group_ids")
    logger.info("Created indexes on users collection")

    for email, token in tokens.items():
        logger.info(f"Dev token for {email}: {token}")

    logger.info("Seed complete!")
    await db.close()


if __name__ == "__main__":
    asyncio.run(seed())
