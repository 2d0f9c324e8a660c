import json

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_ALLOWED_ORIGINS = [
    "http://localhost:5173",
    "http://127.0.0.1:5173",
    "http://localhost:4173",
    "http://127.0.0.1:4173",
]


class Settings(BaseSettings):
    database_url: str
    secret_key: str
    algorithm: str = "HS256"
    allowed_origins: list[str] = DEFAULT_ALLOWED_ORIGINS
    admin_emails: list[str] = []
    auto_create_tables: bool = False
    auto_run_migrations: bool = False
    log_level: str = "INFO"

    # Shared secret presented by the external scheduler; the cron endpoint is disabled when unset.
    cron_secret: str | None = None

    store_timeout_seconds: float = 10.0
    cancellation_min_days: int = 3
    deletion_retention_days: int = 28

    maintenance_mode_registrations_disabled: bool = False

    # `allowed_origins` and `admin_emails` accept comma-separated strings or JSON lists; disable
    # pydantic-settings JSON decoding so our validators can handle both formats.
    model_config = SettingsConfigDict(
        env_file=".topsecret",
        extra="ignore",
        case_sensitive=False,
        enable_decoding=False,
        env_ignore_empty=True,
    )

    @field_validator("allowed_origins", mode="before")
    @classmethod
    def parse_allowed_origins(cls, value):
        if value is None or value == "":
            return list(DEFAULT_ALLOWED_ORIGINS)
        return [origin for origin in _split_list(value, "allowed_origins") if origin]

    @field_validator("admin_emails", mode="before")
    @classmethod
    def parse_admin_emails(cls, value):
        if value is None or value == "":
            return []
        return [str(email).strip().lower() for email in _split_list(value, "admin_emails") if str(email).strip()]


def _split_list(value, field_name: str) -> list:
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
            if isinstance(parsed, list):
                return parsed
        except json.JSONDecodeError:
            pass
        return [item.strip() for item in value.split(",")]

    if isinstance(value, (list, tuple)):
        return list(value)

    raise ValueError(f"{field_name} must be a list or comma-separated string")


settings = Settings()
