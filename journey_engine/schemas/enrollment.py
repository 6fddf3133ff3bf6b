from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from journey_engine.schemas.common import PaginationMeta


EnrollmentStatus = Literal["active", "waiting", "completed", "failed", "exited"]


class NodeFailureOut(BaseModel):
    attempts: int
    last_error: str | None = None
    last_failed_at: datetime | None = None


class EnrollmentOut(BaseModel):
    id: str
    journey_id: str
    journey_version: int
    customer_id: str
    status: EnrollmentStatus
    current_node_id: str
    node_entered_at: datetime
    entered_at: datetime
    last_activity_at: datetime
    wake_at: datetime | None = None
    exit_reason: str | None = None
    last_error: str | None = None
    completed_at: datetime | None = None
    trigger_event_key: str | None = None
    failures: dict[str, NodeFailureOut] = {}


class EnrollmentListOut(BaseModel):
    items: list[EnrollmentOut]
    pagination: PaginationMeta
    status: EnrollmentStatus | None = None


class ActivityOut(BaseModel):
    id: str
    journey_id: str
    enrollment_id: str
    customer_id: str
    node_id: str | None = None
    event_type: str
    timestamp: datetime
    data: dict[str, Any] | None = None


class ActivityListOut(BaseModel):
    items: list[ActivityOut]
    pagination: PaginationMeta


class ManualEnrollIn(BaseModel):
    customer_id: str = Field(min_length=1, max_length=64)
    payload: dict[str, Any] = Field(default_factory=dict)
    idempotency_key: str | None = Field(default=None, min_length=1, max_length=160)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "customer_id": "cus-123",
                "payload": {"source": "support_console"},
                "idempotency_key": "manual-cus-123-2026-10-18",
            }
        }
    )


class ManualEnrollOut(BaseModel):
    enrolled: bool
    skipped_reason: str | None = None
    enrollment: EnrollmentOut | None = None
