import json
from typing import List, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Journey Engine"
    env: str = "dev"
    default_timezone: str = "UTC"

    # DATABASE
    database_url: str
    db_pool_size: int = Field(default=10, ge=1, le=100)
    db_max_overflow: int = Field(default=20, ge=0, le=200)
    db_pool_timeout_seconds: int = Field(default=30, ge=1, le=300)
    db_pool_recycle_seconds: int = Field(default=1800, ge=30, le=86_400)

    # ENGINE
    engine_tick_batch_size: int = Field(default=200, ge=1, le=5000)
    engine_lease_seconds: int = Field(default=60, ge=5, le=3600)
    engine_max_steps_per_claim: int = Field(default=25, ge=1, le=500)
    engine_worker_interval_seconds: float = Field(default=5.0, gt=0, le=3600)
    engine_default_retry_count: int = Field(default=3, ge=0, le=20)
    engine_retry_base_seconds: int = Field(default=60, ge=1, le=86_400)
    engine_retry_max_seconds: int = Field(default=3600, ge=1, le=604_800)
    action_outcome_timeout_hours: int = Field(default=72, ge=1, le=720)
    attribute_poll_minutes: int = Field(default=15, ge=1, le=1440)
    goal_poll_minutes: int = Field(default=60, ge=1, le=1440)
    snapshot_event_lookback_days: int = Field(default=90, ge=1, le=365)
    snapshot_event_limit: int = Field(default=1000, ge=10, le=100_000)

    # MESSAGING
    messaging_provider_default: str = "whatsapp_stub"
    whatsapp_api_base_url: str = "https://graph.facebook.com/v19.0"
    whatsapp_access_token: str | None = None
    whatsapp_phone_number_id: str | None = None
    messaging_request_timeout_seconds: float = Field(default=10.0, gt=0, le=120)
    customer_daily_message_cap: int = Field(default=0, ge=0, le=1000)

    log_level: str = "INFO"

    # CORS
    cors_origins: List[str] = Field(default_factory=lambda: ["http://localhost:3000"])
    cors_origin_regex: str | None = None

    @field_validator("cors_origins", mode="before")
    @classmethod
    def assemble_cors_origins(cls, v: Union[str, List[str]]) -> List[str]:
        if v is None:
            return []
        if isinstance(v, str):
            if not v.strip():
                return []
            if v.startswith("["):
                parsed = json.loads(v)
                if not isinstance(parsed, list):
                    raise ValueError("CORS_ORIGINS JSON value must be a list")
                return [str(i).strip() for i in parsed if str(i).strip()]
            return [i.strip() for i in v.split(",") if i.strip()]
        if isinstance(v, list):
            return [str(i).strip() for i in v if str(i).strip()]
        raise ValueError(v)

    @field_validator(
        "whatsapp_access_token",
        "whatsapp_phone_number_id",
        "cors_origin_regex",
        mode="before",
    )
    @classmethod
    def normalize_optional_strings(cls, value: str | None) -> str | None:
        if value is None:
            return None
        cleaned = str(value).strip()
        return cleaned or None

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        cleaned = value.strip().upper()
        if cleaned not in {"DEBUG", "INFO", "WARNING", "ERROR"}:
            raise ValueError("LOG_LEVEL must be one of DEBUG, INFO, WARNING, ERROR")
        return cleaned

    @field_validator("default_timezone")
    @classmethod
    def validate_default_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown timezone '{value}'") from exc
        return value

    @model_validator(mode="after")
    def validate_production_safety(self) -> "Settings":
        env_value = self.env.lower().strip()
        if env_value not in {"prod", "production"}:
            return self

        if "*" in self.cors_origins:
            raise ValueError("CORS_ORIGINS cannot contain '*' in production")
        if self.cors_origin_regex:
            raise ValueError("CORS_ORIGIN_REGEX cannot be set in production")

        if self.messaging_provider_default.strip().lower() == "whatsapp_cloud" and not (
            self.whatsapp_access_token and self.whatsapp_phone_number_id
        ):
            raise ValueError(
                "WHATSAPP_ACCESS_TOKEN and WHATSAPP_PHONE_NUMBER_ID are required for whatsapp_cloud in production"
            )

        return self

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        enable_decoding=False,
    )


settings = Settings()
