"""
Dose status transitions for the entries embedded in a medicine.

    pending -> taken | missed | snoozed
    snoozed -> taken | missed | snoozed
    missed  -> taken
    taken   -> (none)

A request for a time that is not on the schedule, or for a transition not
listed above, leaves the medicine untouched and is reported through
DoseUpdateResult.outcome instead of raising. Strict mode turns an unknown
time into NotFoundError.
"""

import logging
from datetime import timedelta
from typing import List, Optional

from errors import NotFoundError, ValidationError
from medicines import get_medicine
from models import DoseUpdateResult, normalize_hhmm, to_iso, utc_now
from notifications import notify_missed_dose
from users import get_user

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    "pending": {"taken", "missed", "snoozed"},
    "snoozed": {"taken", "missed", "snoozed"},
    "missed": {"taken"},
    "taken": set(),
}

MIN_SNOOZE_MINUTES = 1
MAX_SNOOZE_MINUTES = 240

def can_transition(current: str, new_status: str) -> bool:
    return new_status in ALLOWED_TRANSITIONS.get(current, set())

def _find_entry(medicine: dict, time_utc: str) -> Optional[dict]:
    for entry in medicine.get("doses") or []:
        if entry.get("time_utc") == time_utc:
            return entry
    return None

def _previous_statuses(new_status: str) -> List[str]:
    return [status for status, targets in ALLOWED_TRANSITIONS.items() if new_status in targets]

def _unchanged(medicine: dict, time_utc: Optional[str], outcome: str, status: Optional[str] = None) -> DoseUpdateResult:
    return DoseUpdateResult(
        medicine_id=medicine["id"],
        time_utc=time_utc,
        outcome=outcome,
        previous_status=status,
        status=status,
        total_quantity=medicine.get("total_quantity"),
    )

async def _apply_transition(
    db,
    medicine: dict,
    time_utc: Optional[str],
    new_status: str,
    entry_fields: dict,
    strict: bool = False,
    decrement_quantity: bool = False
) -> DoseUpdateResult:
    """
    Move one dose entry to new_status.

    Only the matched entry is written, through the positional operator, and
    only while it is still in a status that may move to new_status. Updates
    to other entries of the same medicine never overwrite each other.
    """
    time_utc = normalize_hhmm(time_utc) or None
    entry = _find_entry(medicine, time_utc) if time_utc else None

    if entry is None:
        if strict:
            raise NotFoundError(f"No dose scheduled at {time_utc or 'the given time'}")
        logger.warning(f"Medicine {medicine['id']} has no dose at {time_utc}; {new_status} not recorded")
        return _unchanged(medicine, time_utc, "entry_not_found")

    previous = entry.get("status", "pending")
    if not can_transition(previous, new_status):
        logger.warning(f"Medicine {medicine['id']} dose {time_utc}: {previous} -> {new_status} not allowed")
        return _unchanged(medicine, time_utc, "transition_not_allowed", previous)

    now_iso = to_iso(utc_now())
    update_data = {f"doses.$.{field}": value for field, value in entry_fields.items()}
    update_data["doses.$.status"] = new_status
    update_data["updated_at"] = now_iso
    result = await db.medicines.update_one(
        {
            "id": medicine["id"],
            "doses": {"$elemMatch": {"time_utc": time_utc, "status": {"$in": _previous_statuses(new_status)}}}
        },
        {"$set": update_data}
    )

    if result.matched_count == 0:
        # The entry changed (or the medicine went away) since it was read.
        current = await db.medicines.find_one({"id": medicine["id"]}, {"_id": 0})
        if not current:
            raise NotFoundError("Medicine not found")
        entry = _find_entry(current, time_utc)
        if entry is None:
            return _unchanged(current, time_utc, "entry_not_found")
        logger.warning(f"Medicine {medicine['id']} dose {time_utc}: {entry.get('status')} -> {new_status} not allowed")
        return _unchanged(current, time_utc, "transition_not_allowed", entry.get("status"))

    if decrement_quantity:
        # null and 0 never match $gt, so untracked stock stays untracked and counts stop at 0.
        await db.medicines.update_one(
            {"id": medicine["id"], "total_quantity": {"$gt": 0}},
            {"$inc": {"total_quantity": -1}}
        )
    stored = await db.medicines.find_one({"id": medicine["id"]}, {"_id": 0, "total_quantity": 1})

    logger.info(f"Medicine {medicine['id']} dose {time_utc}: {previous} -> {new_status}")
    return DoseUpdateResult(
        medicine_id=medicine["id"],
        time_utc=time_utc,
        outcome="updated",
        previous_status=previous,
        status=new_status,
        total_quantity=(stored or {}).get("total_quantity"),
    )

async def mark_taken(db, medicine_id: Optional[str], time_utc: Optional[str], strict: bool = False) -> DoseUpdateResult:
    medicine = await get_medicine(db, medicine_id)
    return await _apply_transition(
        db,
        medicine,
        time_utc,
        "taken",
        {"dismissed_at": to_iso(utc_now())},
        strict=strict,
        decrement_quantity=True,
    )

async def mark_missed(
    db,
    medicine_id: Optional[str],
    time_utc: Optional[str],
    patient_id: Optional[str],
    strict: bool = False
) -> DoseUpdateResult:
    """Record a missed dose and notify the patient's linked caregivers."""
    medicine = await get_medicine(db, medicine_id)
    if not patient_id:
        raise ValidationError("patientId is required")
    try:
        patient = await get_user(db, patient_id)
    except NotFoundError:
        raise NotFoundError("Patient not found") from None

    result = await _apply_transition(
        db,
        medicine,
        time_utc,
        "missed",
        {"missed_at": to_iso(utc_now())},
        strict=strict,
    )
    # Caregivers hear about the report even when the entry was not updated.
    notifications = await notify_missed_dose(db, patient, medicine, result.time_utc)
    result.notifications = notifications
    return result

async def mark_snoozed(
    db,
    medicine_id: Optional[str],
    time_utc: Optional[str],
    minutes: int = 15,
    strict: bool = False
) -> DoseUpdateResult:
    if minutes < MIN_SNOOZE_MINUTES or minutes > MAX_SNOOZE_MINUTES:
        raise ValidationError(f"minutes must be between {MIN_SNOOZE_MINUTES} and {MAX_SNOOZE_MINUTES}")
    medicine = await get_medicine(db, medicine_id)
    until = utc_now() + timedelta(minutes=minutes)
    return await _apply_transition(
        db,
        medicine,
        time_utc,
        "snoozed",
        {"snoozed_until": to_iso(until)},
        strict=strict,
    )
