import logging
from typing import List, Optional

from errors import NotFoundError, ValidationError
from models import Notification
from users import find_linked_caregivers

logger = logging.getLogger(__name__)

async def ensure_notification_indexes(db):
    await db.notifications.create_index("id", unique=True)
    await db.notifications.create_index([("user_id", 1), ("created_at", -1)])

def missed_dose_message(patient_name: str, medicine_name: str, time_utc: Optional[str]) -> str:
    return f"{patient_name} missed the {time_utc or 'scheduled'} dose of {medicine_name}"

async def notify_missed_dose(db, patient: dict, medicine: dict, time_utc: Optional[str]) -> List[dict]:
    """
    Write one notification per caregiver linked to the patient.

    Writes are sequential and not transactional: if one fails, the ones
    already written stay and the error propagates. Repeated reports for the
    same dose produce repeated notifications.
    """
    caregivers = await find_linked_caregivers(db, patient)
    message = missed_dose_message(patient.get("name", ""), medicine.get("name", ""), time_utc)

    created = []
    for caregiver in caregivers:
        doc = Notification(
            user_id=caregiver["id"],
            medicine_id=medicine["id"],
            patient_id=patient["id"],
            message=message
        ).model_dump()
        await db.notifications.insert_one(doc)
        doc.pop("_id", None)
        created.append(doc)

    logger.info(f"Missed dose of {medicine['id']} by {patient['id']}: notified {len(created)} caregiver(s)")
    return created

async def list_notifications(db, user_id: Optional[str]) -> List[dict]:
    if not user_id:
        raise ValidationError("userId is required")
    return await db.notifications.find({"user_id": user_id}, {"_id": 0}).sort("created_at", -1).to_list(None)

async def mark_notification_read(db, notification_id: str) -> dict:
    result = await db.notifications.update_one({"id": notification_id}, {"$set": {"read": True}})
    if result.matched_count == 0:
        raise NotFoundError("Notification not found")
    return await db.notifications.find_one({"id": notification_id}, {"_id": 0})
