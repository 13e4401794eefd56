"""
Configuration loaded from environment variables (and backend/.env when present).

Values are validated once at startup; a malformed value fails fast.
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')


class Settings(BaseModel):
    """Runtime settings for the medicine reminder backend."""

    mongo_url: str = Field(default="mongodb://localhost:27017", description="MongoDB connection string")
    db_name: str = Field(default="medrem", description="MongoDB database name")
    port: int = Field(default=5000, gt=0, lt=65536, description="HTTP port")
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])
    log_level: str = Field(default="INFO")
    public_base_url: str = Field(default="", description="Prefix for stored image URLs")

    twilio_account_sid: Optional[str] = None
    twilio_auth_token: Optional[str] = None
    twilio_number: Optional[str] = None
    call_to_number: Optional[str] = None
    twilio_api_base: str = Field(default="https://api.twilio.com")
    telephony_timeout_seconds: float = Field(default=8.0, gt=0.0)

    strict_dose_times: bool = Field(
        default=False,
        description="Reject dose updates for times that are not on the medicine's schedule"
    )

    @field_validator("cors_origins", mode="before")
    @classmethod
    def split_origins(cls, v):
        if isinstance(v, str):
            return [o.strip() for o in v.split(",") if o.strip()] or ["*"]
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unsupported log level: {v}")
        return level

    @field_validator("public_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")


ENV_NAMES = {
    "mongo_url": "MONGO_URL",
    "db_name": "DB_NAME",
    "port": "PORT",
    "cors_origins": "CORS_ORIGINS",
    "log_level": "LOG_LEVEL",
    "public_base_url": "PUBLIC_BASE_URL",
    "twilio_account_sid": "TWILIO_ACCOUNT_SID",
    "twilio_auth_token": "TWILIO_AUTH_TOKEN",
    "twilio_number": "TWILIO_NUMBER",
    "call_to_number": "CALL_TO_NUMBER",
    "twilio_api_base": "TWILIO_API_BASE",
    "telephony_timeout_seconds": "TELEPHONY_TIMEOUT_SECONDS",
    "strict_dose_times": "STRICT_DOSE_TIMES",
}


def load_settings() -> Settings:
    values = {}
    for field_name, env_name in ENV_NAMES.items():
        raw = os.environ.get(env_name)
        if raw is not None and raw.strip() != "":
            values[field_name] = raw.strip()
    return Settings(**values)


@lru_cache()
def get_settings() -> Settings:
    return load_settings()
