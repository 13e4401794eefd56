from fastapi import FastAPI, APIRouter, Depends, UploadFile, File, Form, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorGridFSBucket
import io
import logging
from typing import Optional

from config import get_settings
from doses import mark_missed, mark_snoozed, mark_taken
from errors import ReminderError, ValidationError
from integrations import CallDispatcher, MedicineImageStore
from medicines import (
    attach_image,
    create_medicine,
    delete_medicine,
    ensure_medicine_indexes,
    get_medicine,
    list_medicines,
    mark_completed,
    update_medicine,
)
from models import (
    DoseStatusRequest,
    LinkRequest,
    MedicineCreate,
    MedicineRef,
    MedicineUpdate,
    SnoozeRequest,
    UserCreate,
)
from notifications import ensure_notification_indexes, list_notifications, mark_notification_read
from users import create_user, ensure_user_indexes, get_user, link_users, populate_linked_users

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=settings.log_level,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# MongoDB connection
client = AsyncIOMotorClient(settings.mongo_url)
db = client[settings.db_name]

# GridFS for medicine photos
fs_bucket = AsyncIOMotorGridFSBucket(db)

# External service clients, built once and shared by every request
call_dispatcher = CallDispatcher.from_settings(settings)
image_store = MedicineImageStore(fs_bucket, settings.public_base_url)

app = FastAPI(title="Medicine Reminder API")

# Create a router with the /api prefix
api_router = APIRouter(prefix="/api")

# ==================== DEPENDENCIES ====================

def get_db():
    return db

def get_call_dispatcher() -> CallDispatcher:
    return call_dispatcher

def get_image_store() -> MedicineImageStore:
    return image_store

# ==================== ERROR RESPONSES ====================

def failure(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message})

@app.exception_handler(ReminderError)
async def reminder_error_handler(request: Request, exc: ReminderError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return failure(exc.status_code, exc.message)

@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if errors:
        first = errors[0]
        field = ".".join(str(p) for p in first.get("loc", []) if p != "body")
        message = f"{field}: {first.get('msg')}" if field else first.get("msg", "Invalid request")
    else:
        message = "Invalid request"
    return failure(400, message)

@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return failure(exc.status_code, str(exc.detail))

@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
    return failure(500, "Internal Server Error")

# ==================== USERS & LINKING ====================

@api_router.post("/create-user")
async def create_user_route(payload: UserCreate, db=Depends(get_db)):
    user = await create_user(
        db,
        payload.name,
        payload.role,
        country=payload.country,
        timezone=payload.timezone,
        language=payload.language
    )
    return {"success": True, "user": user}

@api_router.get("/users/{user_id}")
async def get_user_route(user_id: str, db=Depends(get_db)):
    user = await get_user(db, user_id)
    return {"success": True, "user": await populate_linked_users(db, user)}

@api_router.post("/link-user")
async def link_user_route(payload: LinkRequest, db=Depends(get_db)):
    requester, target = await link_users(db, payload.requester_id, payload.link_code)
    return {
        "success": True,
        "message": f"Successfully linked to {target['name']}",
        "linked_user": target,
        "requester": await populate_linked_users(db, requester)
    }

# ==================== MEDICINE IMAGES (MongoDB GridFS) ====================

@api_router.post("/upload-medicine-image")
async def upload_medicine_image(
    medicine_id: Optional[str] = Form(None, alias="medicineId"),
    image: Optional[UploadFile] = File(None),
    db=Depends(get_db),
    store: MedicineImageStore = Depends(get_image_store)
):
    """Store a medicine photo and attach its URL to the medicine"""
    if not medicine_id:
        raise ValidationError("medicineId is required")
    if image is None:
        raise ValidationError("No image uploaded")

    await get_medicine(db, medicine_id)
    content = await image.read()
    image_url = await store.save(medicine_id, image.filename, content, image.content_type)
    medicine = await attach_image(db, medicine_id, image_url)
    return {"success": True, "medicine": medicine}

@api_router.get("/files/{filename}")
async def get_file(filename: str, store: MedicineImageStore = Depends(get_image_store)):
    """Retrieve a stored medicine photo"""
    content, content_type = await store.open(filename)
    return StreamingResponse(
        io.BytesIO(content),
        media_type=content_type,
        headers={
            "Content-Disposition": f"inline; filename={filename}",
            "Cache-Control": "public, max-age=31536000"
        }
    )

# ==================== MEDICINES ====================

@api_router.post("/add-medicine")
async def add_medicine(payload: MedicineCreate, db=Depends(get_db)):
    medicine = await create_medicine(db, payload)
    return {"success": True, "medicine": medicine}

@api_router.get("/medicines")
async def get_medicines(patient_id: Optional[str] = Query(None, alias="patientId"), db=Depends(get_db)):
    medicines = await list_medicines(db, patient_id)
    return {"success": True, "medicines": medicines}

@api_router.put("/medicines/{medicine_id}")
async def update_medicine_route(medicine_id: str, payload: MedicineUpdate, db=Depends(get_db)):
    medicine = await update_medicine(db, medicine_id, payload)
    return {"success": True, "medicine": medicine}

@api_router.delete("/medicines/{medicine_id}")
async def delete_medicine_route(medicine_id: str, db=Depends(get_db)):
    await delete_medicine(db, medicine_id)
    return {"success": True, "message": "Medicine deleted successfully"}

@api_router.post("/mark-completed")
async def mark_completed_route(payload: MedicineRef, db=Depends(get_db)):
    medicine = await mark_completed(db, payload.medicine_id)
    return {"success": True, "medicine": medicine}

# ==================== DOSE STATUS ====================

@api_router.post("/mark-taken")
async def mark_taken_route(payload: DoseStatusRequest, db=Depends(get_db)):
    result = await mark_taken(db, payload.medicine_id, payload.time_utc, strict=settings.strict_dose_times)
    return {"success": True, "message": "Medicine marked as taken", "result": result.model_dump()}

@api_router.post("/mark-missed")
async def mark_missed_route(payload: DoseStatusRequest, db=Depends(get_db)):
    result = await mark_missed(
        db,
        payload.medicine_id,
        payload.time_utc,
        payload.patient_id,
        strict=settings.strict_dose_times
    )
    return {"success": True, "message": "Medicine marked as missed, caregiver notified", "result": result.model_dump()}

@api_router.post("/mark-snoozed")
async def mark_snoozed_route(payload: SnoozeRequest, db=Depends(get_db)):
    result = await mark_snoozed(
        db,
        payload.medicine_id,
        payload.time_utc,
        minutes=payload.minutes,
        strict=settings.strict_dose_times
    )
    return {"success": True, "message": "Medicine snoozed", "result": result.model_dump()}

# ==================== NOTIFICATIONS ====================

@api_router.get("/notifications")
async def get_notifications(user_id: Optional[str] = Query(None, alias="userId"), db=Depends(get_db)):
    notifications = await list_notifications(db, user_id)
    return {"success": True, "notifications": notifications}

@api_router.post("/notifications/{notification_id}/read")
async def read_notification(notification_id: str, db=Depends(get_db)):
    notification = await mark_notification_read(db, notification_id)
    return {"success": True, "notification": notification}

# ==================== ALERT CALLS ====================

@api_router.post("/trigger-call")
async def trigger_call(dispatcher: CallDispatcher = Depends(get_call_dispatcher)):
    sid = await dispatcher.trigger_call()
    return {"success": True, "sid": sid}

@api_router.get("/")
async def root():
    return {"message": "Medicine Reminder API"}

# Include the router in the main app
app.include_router(api_router)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=settings.cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.on_event("startup")
async def create_indexes():
    await ensure_user_indexes(db)
    await ensure_medicine_indexes(db)
    await ensure_notification_indexes(db)

@app.on_event("shutdown")
async def shutdown_clients():
    await call_dispatcher.aclose()
    client.close()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.port)
