from datetime import datetime
from typing import Any, Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


EventType = Literal["segment_joined", "segment_exited", "shopify_event", "schedule_tick", "manual"]
WebhookOutcome = Literal["delivered", "read", "replied", "failed", "unreachable", "button_clicked"]


class EventIn(BaseModel):
    type: EventType
    customer_id: str | None = Field(default=None, min_length=1, max_length=64)
    event_name: str | None = Field(default=None, min_length=1, max_length=120)
    payload: dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime | None = None
    idempotency_key: str | None = Field(default=None, min_length=1, max_length=160)

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "type": "shopify_event",
                "customerId": "cus-123",
                "eventName": "order_placed",
                "payload": {"order": {"id": "1001", "total_price": 129.5}},
                "occurredAt": "2026-10-18T09:30:00Z",
                "idempotencyKey": "shopify-order-1001",
            }
        },
    )


class EventIngestOut(BaseModel):
    event_id: str
    duplicate: bool
    enrollments_created: int
    enrollments_skipped: int
    resumed: int
    enrollment_ids: list[str] = []


class MessagingWebhookIn(BaseModel):
    message_id: str = Field(min_length=1, max_length=120)
    outcome: WebhookOutcome
    button_id: str | None = Field(default=None, min_length=1, max_length=64)

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class MessagingWebhookOut(BaseModel):
    message_id: str
    outcome: str | None = None
    recorded: bool
    enrollment_id: str


class CustomerUpsertIn(BaseModel):
    phone: str | None = Field(default=None, max_length=40)
    email: str | None = Field(default=None, max_length=255)
    timezone: str | None = Field(default=None, max_length=64)
    opted_out: bool | None = None
    attributes: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, value: str | None) -> str | None:
        if value is None:
            return None
        try:
            ZoneInfo(value.strip())
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown timezone '{value}'") from exc
        return value.strip()


class CustomerOut(BaseModel):
    id: str
    phone: str | None = None
    email: str | None = None
    timezone: str | None = None
    opted_out: bool
    attributes: dict[str, Any]
    resumed: int = 0
