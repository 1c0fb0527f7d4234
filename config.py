"""Environment configuration.

All settings come from environment variables. Missing optional values stay
``None``; endpoints that need them call :func:`require`, which raises a
ConfigurationError naming the variable.
"""

import os
from functools import lru_cache
from typing import List, Optional

from pydantic import BaseModel, Field

from errors import ConfigurationError

DEFAULT_SHEET_NAME = "Sheet1"


def _env(key: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(key)
    if value is None or not value.strip():
        return default
    return value


def _split_list(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseModel):
    database_url: Optional[str] = None
    database_name: str = "forms_app"

    default_spreadsheet_id: Optional[str] = None
    google_service_account_json: Optional[str] = None  # JSON string or path
    google_service_account_email: Optional[str] = None
    google_private_key: Optional[str] = None

    firebase_service_account_json: Optional[str] = None
    admin_emails: List[str] = Field(default_factory=list)

    public_base_url: str = "http://localhost:3000"
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])
    log_level: str = "INFO"
    port: int = 8000

    @property
    def has_google_credentials(self) -> bool:
        return bool(
            self.google_service_account_json
            or (self.google_service_account_email and self.google_private_key)
        )


def load_settings() -> Settings:
    private_key = _env("GOOGLE_PRIVATE_KEY")
    if private_key:
        # keys pasted into .env files keep their newlines escaped
        private_key = private_key.replace("\\n", "\n")

    return Settings(
        database_url=_env("DATABASE_URL"),
        database_name=_env("DATABASE_NAME", "forms_app"),
        default_spreadsheet_id=_env("DEFAULT_SPREADSHEET_ID"),
        google_service_account_json=_env("GOOGLE_SERVICE_ACCOUNT_JSON"),
        google_service_account_email=_env("GOOGLE_SERVICE_ACCOUNT_EMAIL"),
        google_private_key=private_key,
        firebase_service_account_json=_env("FIREBASE_SERVICE_ACCOUNT_JSON"),
        admin_emails=[e.lower() for e in _split_list(_env("ADMIN_EMAILS"))],
        public_base_url=_env("PUBLIC_BASE_URL", "http://localhost:3000"),
        cors_origins=_split_list(_env("CORS_ORIGINS")) or ["*"],
        log_level=_env("LOG_LEVEL", "INFO"),
        port=int(_env("PORT", "8000")),
    )


@lru_cache()
def get_settings() -> Settings:
    return load_settings()


def require(value: Optional[str], name: str) -> str:
    if not value:
        raise ConfigurationError(f"{name} not set")
    return value
