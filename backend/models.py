import re
import secrets
import uuid
from datetime import datetime, timezone, timedelta, date
from typing import List, Optional, Literal, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

ROLES = {"patient", "caregiver"}

DEFAULT_COUNTRY = "India"
DEFAULT_TIMEZONE = "Asia/Kolkata"
DEFAULT_LANGUAGE = "en"

# ==================== HELPERS ====================

def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"

def generate_link_code() -> str:
    """Six upper-case hex characters from three random bytes."""
    return secrets.token_hex(3).upper()

def utc_now() -> datetime:
    return datetime.now(timezone.utc)

def to_iso(dt: datetime) -> str:
    """UTC ISO string with fixed microsecond precision so stored values sort as strings."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")

def normalize_hhmm(value: Optional[str]) -> str:
    """Normalize time values into HH:MM."""
    if not value:
        return ""
    value = str(value).strip()
    match = re.match(r"^(\d{1,2}):(\d{2})$", value)
    if not match:
        return value
    hour = int(match.group(1))
    minute = int(match.group(2))
    if hour < 0 or hour > 23 or minute < 0 or minute > 59:
        return value
    return f"{hour:02d}:{minute:02d}"

def is_valid_hhmm(value: str) -> bool:
    return bool(re.match(r"^([01]\d|2[0-3]):[0-5]\d$", value or ""))

def parse_calendar_date(value: Optional[str]) -> Optional[date]:
    """Accept YYYY-MM-DD or a full ISO timestamp and return the UTC calendar date."""
    if not value:
        return None
    text = str(value).strip()
    try:
        return datetime.strptime(text, "%Y-%m-%d").date()
    except ValueError:
        pass
    try:
        dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).date()

def start_of_day_iso(day: date) -> str:
    return to_iso(datetime(day.year, day.month, day.day, tzinfo=timezone.utc))

def end_of_day_iso(day: date) -> str:
    """Last instant (23:59:59.999) of the given UTC calendar day."""
    start = datetime(day.year, day.month, day.day, tzinfo=timezone.utc)
    return to_iso(start + timedelta(days=1) - timedelta(milliseconds=1))

def strip_mongo_id(doc: Optional[dict]) -> Optional[dict]:
    if doc and "_id" in doc:
        del doc["_id"]
    return doc

# ==================== STORED RECORDS ====================

class User(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: str = Field(default_factory=lambda: new_id("user"))
    name: str
    role: Literal["patient", "caregiver"]
    link_code: str = Field(default_factory=generate_link_code)
    linked_users: List[str] = []
    country: str = DEFAULT_COUNTRY
    timezone: str = DEFAULT_TIMEZONE
    language: str = DEFAULT_LANGUAGE
    created_at: str = Field(default_factory=lambda: to_iso(utc_now()))
    updated_at: str = Field(default_factory=lambda: to_iso(utc_now()))

class DoseEntry(BaseModel):
    model_config = ConfigDict(extra="ignore")
    time_utc: str  # HH:MM
    status: Literal["pending", "taken", "missed", "snoozed"] = "pending"
    dismissed_at: Optional[str] = None
    missed_at: Optional[str] = None
    snoozed_until: Optional[str] = None

class Medicine(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: str = Field(default_factory=lambda: new_id("med"))
    name: str
    doses: List[DoseEntry] = []
    patient_id: str
    created_by: str
    scheduled_date: str  # YYYY-MM-DD
    total_quantity: Optional[int] = Field(default=None, ge=0)
    image_url: Optional[str] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    status: Literal["active", "completed"] = "active"
    created_at: str = Field(default_factory=lambda: to_iso(utc_now()))
    updated_at: str = Field(default_factory=lambda: to_iso(utc_now()))

class Notification(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: str = Field(default_factory=lambda: new_id("notif"))
    user_id: str
    medicine_id: str
    patient_id: str
    message: str
    read: bool = False
    created_at: str = Field(default_factory=lambda: to_iso(utc_now()))

class DoseUpdateResult(BaseModel):
    medicine_id: str
    time_utc: Optional[str] = None
    outcome: Literal["updated", "entry_not_found", "transition_not_allowed"]
    previous_status: Optional[str] = None
    status: Optional[str] = None
    total_quantity: Optional[int] = None
    notifications: List[dict] = []

# ==================== REQUESTS ====================
# Clients send camelCase keys (patientId, linkCode); snake_case is accepted too.

class RequestModel(BaseModel):
    model_config = ConfigDict(extra="ignore", alias_generator=to_camel, populate_by_name=True)

class UserCreate(RequestModel):
    name: Optional[str] = None
    role: Optional[str] = None
    country: Optional[str] = None
    timezone: Optional[str] = None
    language: Optional[str] = None

class LinkRequest(RequestModel):
    requester_id: Optional[str] = None
    link_code: Optional[str] = None

def _blank_to_none(v: Any) -> Any:
    if isinstance(v, str) and v.strip() == "":
        return None
    return v

class MedicineCreate(RequestModel):
    name: Optional[str] = None
    time_utc: Optional[str] = Field(default=None, alias="timeUTC")
    time: Optional[str] = None
    times: Optional[List[str]] = None
    patient_id: Optional[str] = None
    created_by: Optional[str] = None
    scheduled_date: Optional[str] = None
    total_quantity: Optional[int] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None

    @field_validator("total_quantity", mode="before")
    @classmethod
    def blank_quantity_is_unset(cls, v):
        return _blank_to_none(v)

    def dose_times(self) -> List[str]:
        if self.times:
            return list(self.times)
        single = self.time_utc or self.time
        return [single] if single else []

class MedicineUpdate(RequestModel):
    name: Optional[str] = None
    times: Optional[List[str]] = None
    total_quantity: Optional[int] = None
    image_url: Optional[str] = None

    @field_validator("total_quantity", mode="before")
    @classmethod
    def blank_quantity_is_unset(cls, v):
        return _blank_to_none(v)

class MedicineRef(RequestModel):
    medicine_id: Optional[str] = None

class DoseStatusRequest(RequestModel):
    medicine_id: Optional[str] = None
    patient_id: Optional[str] = None
    time_utc: Optional[str] = Field(default=None, alias="timeUTC")

class SnoozeRequest(DoseStatusRequest):
    minutes: int = 15
