import logging
from typing import List, Optional

from errors import NotFoundError, ValidationError
from models import (
    DoseEntry,
    Medicine,
    MedicineCreate,
    MedicineUpdate,
    end_of_day_iso,
    is_valid_hhmm,
    normalize_hhmm,
    parse_calendar_date,
    start_of_day_iso,
    to_iso,
    utc_now,
)
from users import get_user

logger = logging.getLogger(__name__)

async def ensure_medicine_indexes(db):
    await db.medicines.create_index("id", unique=True)
    await db.medicines.create_index([("patient_id", 1), ("status", 1)])

def clean_dose_times(times: List[str]) -> List[str]:
    """Normalize to HH:MM, drop blanks and repeats, keep the caller's order."""
    cleaned = []
    for raw in times or []:
        value = normalize_hhmm(raw)
        if not value:
            continue
        if not is_valid_hhmm(value):
            raise ValidationError(f"Invalid dose time '{raw}', expected HH:MM")
        if value not in cleaned:
            cleaned.append(value)
    return cleaned

def reconcile_doses(existing: List[dict], times: List[str]) -> List[dict]:
    """
    Rebuild the dose list for a new set of times.

    Times already on the schedule keep their entry (status and timestamps);
    new times start pending; times not in the new list are dropped.
    """
    by_time = {entry.get("time_utc"): entry for entry in existing or []}
    doses = []
    for t in times:
        if t in by_time:
            doses.append(by_time[t])
        else:
            doses.append(DoseEntry(time_utc=t).model_dump())
    return doses

def _validate_quantity(value: Optional[int]) -> Optional[int]:
    if value is None:
        return None
    if value < 0:
        raise ValidationError("totalQuantity cannot be negative")
    return value

def _parse_day(value: Optional[str], field: str):
    if not value:
        return None
    day = parse_calendar_date(value)
    if day is None:
        raise ValidationError(f"Invalid {field}, expected YYYY-MM-DD")
    return day

async def _find_user(db, user_id: str, missing_message: str) -> dict:
    try:
        return await get_user(db, user_id)
    except NotFoundError:
        raise NotFoundError(missing_message) from None

async def get_medicine(db, medicine_id: Optional[str]) -> dict:
    if not medicine_id:
        raise ValidationError("medicineId is required")
    medicine = await db.medicines.find_one({"id": medicine_id}, {"_id": 0})
    if not medicine:
        raise NotFoundError("Medicine not found")
    return medicine

async def create_medicine(db, payload: MedicineCreate) -> dict:
    name = (payload.name or "").strip()
    if not name:
        raise ValidationError("name is required")
    if not payload.patient_id or not payload.created_by:
        raise ValidationError("patientId and createdBy are required")
    times = clean_dose_times(payload.dose_times())
    if not times:
        raise ValidationError("At least one dose time is required")

    scheduled_day = _parse_day(payload.scheduled_date, "scheduledDate") or utc_now().date()
    start_day = _parse_day(payload.start_date, "startDate")
    end_day = _parse_day(payload.end_date, "endDate")
    total_quantity = _validate_quantity(payload.total_quantity)

    patient = await _find_user(db, payload.patient_id, "Patient not found")
    if patient.get("role") != "patient":
        raise ValidationError("patientId must belong to a patient")
    await _find_user(db, payload.created_by, "Creator not found")

    med_obj = Medicine(
        name=name,
        doses=[DoseEntry(time_utc=t) for t in times],
        patient_id=payload.patient_id,
        created_by=payload.created_by,
        scheduled_date=scheduled_day.isoformat(),
        total_quantity=total_quantity,
        start_date=start_of_day_iso(start_day) if start_day else None,
        end_date=end_of_day_iso(end_day) if end_day else None,
    )
    doc = med_obj.model_dump()
    await db.medicines.insert_one(doc)
    doc.pop("_id", None)
    logger.info(f"Added medicine {doc['id']} ({name}) for patient {doc['patient_id']} at {times}")
    return doc

async def update_medicine(db, medicine_id: str, changes: MedicineUpdate) -> dict:
    medicine = await get_medicine(db, medicine_id)
    fields = changes.model_dump(exclude_unset=True)
    update_data = {}

    if fields.get("name") and fields["name"].strip():
        update_data["name"] = fields["name"].strip()
    if fields.get("total_quantity") is not None:
        update_data["total_quantity"] = _validate_quantity(fields["total_quantity"])
    if "image_url" in fields:
        update_data["image_url"] = fields["image_url"]
    if fields.get("times") is not None:
        times = clean_dose_times(fields["times"])
        if not times:
            raise ValidationError("At least one dose time is required")
        update_data["doses"] = reconcile_doses(medicine.get("doses") or [], times)

    update_data["updated_at"] = to_iso(utc_now())
    result = await db.medicines.update_one({"id": medicine_id}, {"$set": update_data})
    if result.matched_count == 0:
        raise NotFoundError("Medicine not found")
    logger.info(f"Updated medicine {medicine_id}: {sorted(k for k in update_data if k != 'updated_at')}")
    return await db.medicines.find_one({"id": medicine_id}, {"_id": 0})

async def delete_medicine(db, medicine_id: Optional[str]):
    if not medicine_id:
        raise ValidationError("medicineId is required")
    result = await db.medicines.delete_one({"id": medicine_id})
    if result.deleted_count == 0:
        raise NotFoundError("Medicine not found")
    logger.info(f"Deleted medicine {medicine_id}")

async def expire_medicines(db, patient_id: str) -> int:
    """Move the patient's active medicines whose end date has passed to completed."""
    now_iso = to_iso(utc_now())
    result = await db.medicines.update_many(
        {
            "patient_id": patient_id,
            "end_date": {"$exists": True, "$ne": None, "$lt": now_iso},
            "status": "active"
        },
        {"$set": {"status": "completed", "updated_at": now_iso}}
    )
    if result.modified_count:
        logger.info(f"Expired {result.modified_count} medicine(s) for patient {patient_id}")
    return result.modified_count

async def list_medicines(db, patient_id: Optional[str]) -> List[dict]:
    if not patient_id:
        raise ValidationError("patientId is required")
    # The sweep must finish before the read so no expired medicine is returned as active.
    await expire_medicines(db, patient_id)
    return await db.medicines.find({"patient_id": patient_id}, {"_id": 0}).sort("created_at", -1).to_list(None)

async def mark_completed(db, medicine_id: Optional[str]) -> dict:
    if not medicine_id:
        raise ValidationError("medicineId is required")
    result = await db.medicines.update_one(
        {"id": medicine_id},
        {"$set": {"status": "completed", "updated_at": to_iso(utc_now())}}
    )
    if result.matched_count == 0:
        raise NotFoundError("Medicine not found")
    logger.info(f"Medicine {medicine_id} marked completed")
    return await db.medicines.find_one({"id": medicine_id}, {"_id": 0})

async def attach_image(db, medicine_id: str, image_url: str) -> dict:
    result = await db.medicines.update_one(
        {"id": medicine_id},
        {"$set": {"image_url": image_url, "updated_at": to_iso(utc_now())}}
    )
    if result.matched_count == 0:
        raise NotFoundError("Medicine not found")
    return await db.medicines.find_one({"id": medicine_id}, {"_id": 0})
