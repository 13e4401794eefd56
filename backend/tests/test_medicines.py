"""
Tests for the medicine schedule store: creation, dose-time reconciliation,
deletion, completion and the expiry sweep run by list_medicines.
"""

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
import pytest_asyncio

from errors import NotFoundError, ValidationError
from medicines import (
    attach_image,
    clean_dose_times,
    create_medicine,
    delete_medicine,
    get_medicine,
    list_medicines,
    mark_completed,
    reconcile_doses,
    update_medicine,
)
from models import MedicineCreate, MedicineUpdate, User


def today():
    return datetime.now(timezone.utc).date()


@pytest_asyncio.fixture
async def people(db):
    """The users the medicines below are created for."""
    await db.users.insert_many([
        User(id="user_patient", name="Asha", role="patient").model_dump(),
        User(id="user_other", name="Meera", role="patient").model_dump(),
        User(id="user_caregiver", name="Ravi", role="caregiver").model_dump(),
    ])


def new_medicine(**overrides) -> MedicineCreate:
    fields = {
        "name": "Metformin",
        "times": ["08:00", "20:00"],
        "patientId": "user_patient",
        "createdBy": "user_patient",
    }
    fields.update(overrides)
    return MedicineCreate(**fields)


@pytest.mark.asyncio
async def test_create_medicine_builds_pending_doses(db, people):
    medicine = await create_medicine(db, new_medicine(totalQuantity=30))

    assert medicine["id"].startswith("med_")
    assert medicine["status"] == "active"
    assert medicine["total_quantity"] == 30
    assert medicine["scheduled_date"] == today().isoformat()
    assert [d["time_utc"] for d in medicine["doses"]] == ["08:00", "20:00"]
    assert all(d["status"] == "pending" for d in medicine["doses"])
    assert all(d["dismissed_at"] is None and d["missed_at"] is None for d in medicine["doses"])


@pytest.mark.asyncio
async def test_create_medicine_accepts_single_time(db, people):
    medicine = await create_medicine(db, MedicineCreate(
        name="Aspirin", timeUTC="7:30", patientId="user_patient", createdBy="user_caregiver"
    ))
    assert [d["time_utc"] for d in medicine["doses"]] == ["07:30"]
    assert medicine["created_by"] == "user_caregiver"
    assert medicine["total_quantity"] is None


@pytest.mark.asyncio
async def test_end_date_covers_whole_day(db, people):
    medicine = await create_medicine(db, new_medicine(startDate="2026-10-01", endDate="2026-10-31"))

    assert medicine["start_date"] == "2026-10-01T00:00:00.000000+00:00"
    assert medicine["end_date"] == "2026-10-31T23:59:59.999000+00:00"


@pytest.mark.asyncio
async def test_blank_quantity_means_untracked(db, people):
    medicine = await create_medicine(db, new_medicine(totalQuantity=""))
    assert medicine["total_quantity"] is None


@pytest.mark.asyncio
@pytest.mark.parametrize("overrides", [
    {"name": ""},
    {"patientId": None},
    {"createdBy": None},
    {"times": []},
    {"times": ["25:00"]},
    {"totalQuantity": -1},
    {"endDate": "not-a-date"},
])
async def test_create_medicine_validation(db, people, overrides):
    with pytest.raises(ValidationError):
        await create_medicine(db, new_medicine(**overrides))


@pytest.mark.asyncio
@pytest.mark.parametrize("overrides,message", [
    ({"patientId": "user_ghost"}, "Patient not found"),
    ({"createdBy": "user_ghost"}, "Creator not found"),
])
async def test_create_medicine_requires_existing_users(db, people, overrides, message):
    with pytest.raises(NotFoundError, match=message):
        await create_medicine(db, new_medicine(**overrides))
    assert await db.medicines.count_documents({}) == 0


@pytest.mark.asyncio
async def test_create_medicine_owner_must_be_patient(db, people):
    with pytest.raises(ValidationError, match="must belong to a patient"):
        await create_medicine(db, new_medicine(patientId="user_caregiver"))
    assert await db.medicines.count_documents({}) == 0


def test_clean_dose_times_normalizes_and_dedupes():
    assert clean_dose_times(["8:00", "08:00", " 20:00 ", ""]) == ["08:00", "20:00"]


def test_reconcile_doses_keeps_matching_entries():
    existing = [
        {"time_utc": "08:00", "status": "taken", "dismissed_at": "2026-10-19T08:01:00.000000+00:00", "missed_at": None},
        {"time_utc": "14:00", "status": "missed", "dismissed_at": None, "missed_at": "2026-10-19T15:00:00.000000+00:00"},
    ]
    doses = reconcile_doses(existing, ["08:00", "20:00"])

    assert doses[0] == existing[0]
    assert doses[1]["time_utc"] == "20:00"
    assert doses[1]["status"] == "pending"
    assert len(doses) == 2


@pytest.mark.asyncio
async def test_update_reconciles_dose_times(db, people):
    medicine = await create_medicine(db, new_medicine(times=["08:00", "14:00"]))
    taken_at = "2026-10-19T08:02:00.000000+00:00"
    doses = medicine["doses"]
    doses[0].update({"status": "taken", "dismissed_at": taken_at})
    await db.medicines.update_one({"id": medicine["id"]}, {"$set": {"doses": doses}})

    updated = await update_medicine(db, medicine["id"], MedicineUpdate(times=["08:00", "20:00"]))

    by_time = {d["time_utc"]: d for d in updated["doses"]}
    assert set(by_time) == {"08:00", "20:00"}
    assert by_time["08:00"]["status"] == "taken"
    assert by_time["08:00"]["dismissed_at"] == taken_at
    assert by_time["20:00"]["status"] == "pending"


@pytest.mark.asyncio
async def test_update_fields(db, people):
    medicine = await create_medicine(db, new_medicine(totalQuantity=10))
    updated = await update_medicine(db, medicine["id"], MedicineUpdate(
        name="Metformin XR", totalQuantity=5, imageUrl="/api/files/pill.png"
    ))

    assert updated["name"] == "Metformin XR"
    assert updated["total_quantity"] == 5
    assert updated["image_url"] == "/api/files/pill.png"
    assert [d["time_utc"] for d in updated["doses"]] == ["08:00", "20:00"]


@pytest.mark.asyncio
@pytest.mark.parametrize("times", [[], ["", " "]])
async def test_update_rejects_empty_schedule(db, people, times):
    medicine = await create_medicine(db, new_medicine())

    with pytest.raises(ValidationError, match="At least one dose time"):
        await update_medicine(db, medicine["id"], MedicineUpdate(times=times))

    stored = await get_medicine(db, medicine["id"])
    assert [d["time_utc"] for d in stored["doses"]] == ["08:00", "20:00"]


@pytest.mark.asyncio
async def test_update_unknown_medicine(db):
    with pytest.raises(NotFoundError):
        await update_medicine(db, "med_missing", MedicineUpdate(name="x"))


@pytest.mark.asyncio
async def test_update_rejects_negative_quantity(db, people):
    medicine = await create_medicine(db, new_medicine())
    with pytest.raises(ValidationError):
        await update_medicine(db, medicine["id"], MedicineUpdate(totalQuantity=-3))


@pytest.mark.asyncio
async def test_delete_medicine(db, people):
    medicine = await create_medicine(db, new_medicine())
    await delete_medicine(db, medicine["id"])

    with pytest.raises(NotFoundError):
        await get_medicine(db, medicine["id"])
    with pytest.raises(NotFoundError):
        await delete_medicine(db, medicine["id"])


@pytest.mark.asyncio
async def test_delete_keeps_notifications(db, people):
    medicine = await create_medicine(db, new_medicine())
    await db.notifications.insert_one({"id": "notif_1", "medicine_id": medicine["id"], "user_id": "user_c"})

    await delete_medicine(db, medicine["id"])
    assert await db.notifications.count_documents({"medicine_id": medicine["id"]}) == 1


@pytest.mark.asyncio
async def test_list_medicines_expires_past_end_date(db, people):
    yesterday = (today() - timedelta(days=1)).isoformat()
    tomorrow = (today() + timedelta(days=1)).isoformat()
    expired = await create_medicine(db, new_medicine(name="Old", endDate=yesterday))
    ending_today = await create_medicine(db, new_medicine(name="Today", endDate=today().isoformat()))
    running = await create_medicine(db, new_medicine(name="New", endDate=tomorrow))
    open_ended = await create_medicine(db, new_medicine(name="Open"))
    other_patient = await create_medicine(db, new_medicine(name="Other", patientId="user_other", endDate=yesterday))

    medicines = await list_medicines(db, "user_patient")
    status = {m["id"]: m["status"] for m in medicines}

    assert status == {
        expired["id"]: "completed",
        ending_today["id"]: "active",
        running["id"]: "active",
        open_ended["id"]: "active",
    }
    assert (await get_medicine(db, other_patient["id"]))["status"] == "active"


class RecordingMedicines:
    """Collection double that remembers the length passed to to_list."""

    def __init__(self, docs):
        self.docs = docs
        self.lengths = []

    async def update_many(self, filter, update):
        return SimpleNamespace(modified_count=0)

    def find(self, *args, **kwargs):
        return self

    def sort(self, *args):
        return self

    async def to_list(self, length):
        self.lengths.append(length)
        return self.docs if length is None else self.docs[:length]


@pytest.mark.asyncio
async def test_list_medicines_returns_every_record():
    medicines = RecordingMedicines([{"id": f"med_{i}", "patient_id": "user_patient"} for i in range(600)])

    listed = await list_medicines(SimpleNamespace(medicines=medicines), "user_patient")

    assert len(listed) == 600
    assert medicines.lengths == [None]


@pytest.mark.asyncio
async def test_list_medicines_requires_patient(db):
    with pytest.raises(ValidationError):
        await list_medicines(db, None)


@pytest.mark.asyncio
async def test_mark_completed(db, people):
    medicine = await create_medicine(db, new_medicine(endDate=(today() + timedelta(days=30)).isoformat()))
    completed = await mark_completed(db, medicine["id"])
    assert completed["status"] == "completed"

    # Never flips back to active on read.
    medicines = await list_medicines(db, "user_patient")
    assert medicines[0]["status"] == "completed"

    with pytest.raises(NotFoundError):
        await mark_completed(db, "med_missing")


@pytest.mark.asyncio
async def test_attach_image(db, people):
    medicine = await create_medicine(db, new_medicine())
    updated = await attach_image(db, medicine["id"], "/api/files/medrem_images_x.png")
    assert updated["image_url"] == "/api/files/medrem_images_x.png"

    with pytest.raises(NotFoundError):
        await attach_image(db, "med_missing", "/api/files/x.png")
