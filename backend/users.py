import logging
from typing import List, Optional, Tuple

from pymongo.errors import DuplicateKeyError, PyMongoError

from errors import AlreadyLinkedError, InternalError, NotFoundError, ValidationError
from models import ROLES, User, generate_link_code, to_iso, utc_now

logger = logging.getLogger(__name__)

LINK_CODE_ATTEMPTS = 5

async def ensure_user_indexes(db):
    await db.users.create_index("id", unique=True)
    await db.users.create_index("link_code", unique=True)

async def get_user(db, user_id: Optional[str]) -> dict:
    if not user_id:
        raise ValidationError("userId is required")
    user = await db.users.find_one({"id": user_id}, {"_id": 0})
    if not user:
        raise NotFoundError("User not found")
    return user

async def populate_linked_users(db, user: dict) -> dict:
    """Replace linked user ids with {id, name, role} summaries."""
    linked_ids = user.get("linked_users") or []
    summaries = []
    if linked_ids:
        summaries = await db.users.find(
            {"id": {"$in": linked_ids}},
            {"_id": 0, "id": 1, "name": 1, "role": 1}
        ).to_list(len(linked_ids))
    return {**user, "linked_users": summaries}

async def create_user(
    db,
    name: Optional[str],
    role: Optional[str],
    country: Optional[str] = None,
    timezone: Optional[str] = None,
    language: Optional[str] = None
) -> dict:
    name = (name or "").strip()
    role = (role or "").strip().lower()
    if not name or not role:
        raise ValidationError("Name and role are required")
    if role not in ROLES:
        raise ValidationError("Role must be 'patient' or 'caregiver'")

    optional_fields = {
        k: v.strip() for k, v in {"country": country, "timezone": timezone, "language": language}.items()
        if v and v.strip()
    }

    for attempt in range(1, LINK_CODE_ATTEMPTS + 1):
        user_obj = User(name=name, role=role, link_code=generate_link_code(), **optional_fields)
        doc = user_obj.model_dump()
        try:
            await db.users.insert_one(doc)
        except DuplicateKeyError:
            logger.warning(f"Link code collision on attempt {attempt}: {doc['link_code']}")
            continue
        doc.pop("_id", None)
        logger.info(f"Created {role} user {doc['id']} with link code {doc['link_code']}")
        return doc

    raise InternalError("Could not allocate a unique link code")

async def link_users(db, requester_id: Optional[str], link_code: Optional[str]) -> Tuple[dict, dict]:
    """
    Link the requester with the owner of link_code in both directions.

    The requester write is conditional so a concurrent duplicate is rejected.
    If the second write fails the first one is rolled back with $pull.
    """
    if not requester_id or not link_code:
        raise ValidationError("requesterId and linkCode are required")

    target = await db.users.find_one({"link_code": link_code.strip().upper()}, {"_id": 0})
    if not target:
        raise NotFoundError("Link code not found")

    requester = await db.users.find_one({"id": requester_id}, {"_id": 0})
    if not requester:
        raise NotFoundError("Requester not found")

    if requester["id"] == target["id"]:
        raise ValidationError("You cannot link to your own code")

    if target["id"] in (requester.get("linked_users") or []):
        logger.warning(f"Duplicate link attempt {requester['id']} -> {target['id']}")
        raise AlreadyLinkedError()

    now_iso = to_iso(utc_now())
    result = await db.users.update_one(
        {"id": requester["id"], "linked_users": {"$ne": target["id"]}},
        {"$addToSet": {"linked_users": target["id"]}, "$set": {"updated_at": now_iso}}
    )
    if result.modified_count == 0:
        logger.warning(f"Duplicate link attempt {requester['id']} -> {target['id']}")
        raise AlreadyLinkedError()

    try:
        target_result = await db.users.update_one(
            {"id": target["id"]},
            {"$addToSet": {"linked_users": requester["id"]}, "$set": {"updated_at": now_iso}}
        )
    except PyMongoError as exc:
        logger.error(f"Linking {requester['id']} -> {target['id']} failed on target write: {exc}")
        await _unlink_requester(db, requester["id"], target["id"])
        raise InternalError("Could not link users") from exc
    if target_result.matched_count == 0:
        await _unlink_requester(db, requester["id"], target["id"])
        raise NotFoundError("Link code not found")

    logger.info(f"Linked users {requester['id']} <-> {target['id']}")
    updated_requester = await db.users.find_one({"id": requester["id"]}, {"_id": 0})
    updated_target = await db.users.find_one({"id": target["id"]}, {"_id": 0})
    return updated_requester, updated_target

async def _unlink_requester(db, requester_id: str, target_id: str):
    await db.users.update_one({"id": requester_id}, {"$pull": {"linked_users": target_id}})

async def find_linked_caregivers(db, patient: dict) -> List[dict]:
    linked_ids = patient.get("linked_users") or []
    if not linked_ids:
        return []
    return await db.users.find(
        {"id": {"$in": linked_ids}, "role": "caregiver"},
        {"_id": 0}
    ).to_list(len(linked_ids))
