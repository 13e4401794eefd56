"""
Clients for the outside services the reminder backend calls:
the Twilio voice API for reminder calls, and GridFS for medicine photos.

Both are built once at startup and handed to the routes as dependencies.
"""

import io
import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Tuple

import httpx
from pymongo.errors import PyMongoError

from config import Settings
from errors import ExternalServiceError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

ALLOWED_IMAGE_FORMATS = {"jpg", "jpeg", "png", "webp"}
IMAGE_FILENAME_PREFIX = "medrem_images"

REMINDER_CALL_TWIML = """<Response>
  <Pause length="1"/>
  <Say language="en-IN" voice="alice">
    नमस्कार.
    तुमची औषधे घेण्याची वेळ झाली आहे.
    कृपया आता औषध घ्या.
  </Say>
  <Pause length="1"/>
  <Say language="en-IN" voice="alice">
    जर तुम्ही औषध घेतले असेल तर १ दाबा, जर तुम्ही औषध घेतले नसेल तर २ दाबा.
  </Say>
  <Pause length="1"/>
  <Say language="en-IN" voice="alice">
    धन्यवाद.
  </Say>
</Response>"""

# ==================== TELEPHONY ====================

class CallDispatcher:
    """Places the scripted medicine reminder call through Twilio."""

    def __init__(
        self,
        account_sid: Optional[str],
        auth_token: Optional[str],
        from_number: Optional[str],
        to_number: Optional[str],
        api_base: str = "https://api.twilio.com",
        timeout: float = 8.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.to_number = to_number
        self.api_base = api_base.rstrip("/")
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    @classmethod
    def from_settings(cls, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> "CallDispatcher":
        return cls(
            account_sid=settings.twilio_account_sid,
            auth_token=settings.twilio_auth_token,
            from_number=settings.twilio_number,
            to_number=settings.call_to_number,
            api_base=settings.twilio_api_base,
            timeout=settings.telephony_timeout_seconds,
            transport=transport,
        )

    @property
    def configured(self) -> bool:
        return all([self.account_sid, self.auth_token, self.from_number, self.to_number])

    async def trigger_call(self) -> str:
        if not self.configured:
            raise ExternalServiceError("Telephony is not configured")

        url = f"{self.api_base}/2010-04-01/Accounts/{self.account_sid}/Calls.json"
        try:
            response = await self._client.post(
                url,
                data={"From": self.from_number, "To": self.to_number, "Twiml": REMINDER_CALL_TWIML},
                auth=(self.account_sid, self.auth_token),
            )
        except httpx.HTTPError as exc:
            logger.error(f"Twilio call request failed: {exc}")
            raise ExternalServiceError("Failed to trigger call") from exc

        if not 200 <= response.status_code < 300:
            logger.error(f"Twilio rejected call ({response.status_code}): {(response.text or '')[:240]}")
            raise ExternalServiceError("Failed to trigger call")

        try:
            sid = response.json().get("sid")
        except ValueError:
            sid = None
        if not sid:
            raise ExternalServiceError("Telephony provider returned no call id")
        logger.info(f"Reminder call placed: {sid}")
        return sid

    async def aclose(self):
        await self._client.aclose()

# ==================== IMAGE STORAGE (MongoDB GridFS) ====================

def image_extension(filename: Optional[str], content_type: Optional[str]) -> str:
    ext = Path(filename).suffix.lstrip(".").lower() if filename else ""
    if not ext and content_type and content_type.startswith("image/"):
        ext = content_type.split("/", 1)[1].lower()
    if ext not in ALLOWED_IMAGE_FORMATS:
        raise ValidationError("Image must be one of: jpg, jpeg, png, webp")
    return ext

class MedicineImageStore:
    """Stores medicine photos in GridFS and hands back the URL that serves them."""

    def __init__(self, bucket, public_base_url: str = ""):
        self.bucket = bucket
        self.public_base_url = public_base_url.rstrip("/")

    def url_for(self, filename: str) -> str:
        return f"{self.public_base_url}/api/files/{filename}"

    async def save(self, medicine_id: str, filename: Optional[str], content: bytes, content_type: Optional[str]) -> str:
        if not content:
            raise ValidationError("No image uploaded")
        ext = image_extension(filename, content_type)
        stored_name = f"{IMAGE_FILENAME_PREFIX}_{medicine_id}_{uuid.uuid4().hex[:8]}.{ext}"
        try:
            await self.bucket.upload_from_stream(
                stored_name,
                io.BytesIO(content),
                metadata={
                    "medicine_id": medicine_id,
                    "content_type": content_type or f"image/{ext}",
                    "original_filename": filename,
                    "uploaded_at": datetime.now(timezone.utc).isoformat()
                }
            )
        except PyMongoError as exc:
            logger.error(f"Storing image for medicine {medicine_id} failed: {exc}")
            raise ExternalServiceError("Image upload failed") from exc
        logger.info(f"Stored image {stored_name} for medicine {medicine_id}")
        return self.url_for(stored_name)

    async def open(self, filename: str) -> Tuple[bytes, str]:
        try:
            grid_out = await self.bucket.open_download_stream_by_name(filename)
            content = await grid_out.read()
        except PyMongoError as exc:
            logger.error(f"Error retrieving file {filename}: {exc}")
            raise NotFoundError("File not found") from exc
        metadata = grid_out.metadata or {}
        return content, metadata.get("content_type", "application/octet-stream")
