from datetime import datetime
from typing import Any, Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from journey_engine.schemas.common import PaginationMeta


JourneyStatus = Literal["draft", "active", "paused"]


def _validate_timezone(value: str | None) -> str | None:
    if value is None:
        return None
    cleaned = value.strip()
    try:
        ZoneInfo(cleaned)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"Unknown timezone '{value}'") from exc
    return cleaned


class JourneySettingsIn(BaseModel):
    max_enrollments: int | None = Field(default=None, ge=1)

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class JourneyCreateIn(BaseModel):
    id: str | None = Field(default=None, min_length=1, max_length=64, pattern=r"^[A-Za-z0-9_.:-]+$")
    name: str = Field(min_length=1, max_length=120)
    description: str | None = Field(default=None, max_length=255)
    timezone: str | None = Field(default=None, max_length=64)
    nodes: list[dict[str, Any]] = Field(default_factory=list)
    edges: list[dict[str, Any]] = Field(default_factory=list)
    settings: JourneySettingsIn = Field(default_factory=JourneySettingsIn)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "name": "Win-back",
                "timezone": "America/New_York",
                "nodes": [
                    {
                        "id": "t1",
                        "type": "trigger",
                        "subtype": "segment_joined",
                        "config": {"segmentId": "lapsed"},
                    },
                    {
                        "id": "c1",
                        "type": "condition",
                        "config": {
                            "type": "rules",
                            "rootGroup": {
                                "logicalOperator": "AND",
                                "conditions": [
                                    {
                                        "property": "lifetime_value",
                                        "operator": "greater_than",
                                        "value": 500,
                                        "valueType": "number",
                                    }
                                ],
                            },
                        },
                    },
                    {"id": "g1", "type": "goal", "config": {"name": "Converted"}},
                    {"id": "g2", "type": "goal", "config": {"name": "Low value"}},
                ],
                "edges": [
                    {"sourceNodeId": "t1", "targetNodeId": "c1"},
                    {"sourceNodeId": "c1", "sourceHandle": "true", "targetNodeId": "g1"},
                    {"sourceNodeId": "c1", "sourceHandle": "false", "targetNodeId": "g2"},
                ],
                "settings": {"maxEnrollments": 10000},
            }
        }
    )

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, value: str | None) -> str | None:
        return _validate_timezone(value)


class JourneyUpdateIn(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=120)
    description: str | None = Field(default=None, max_length=255)
    timezone: str | None = Field(default=None, max_length=64)
    nodes: list[dict[str, Any]] | None = None
    edges: list[dict[str, Any]] | None = None
    settings: JourneySettingsIn | None = None

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, value: str | None) -> str | None:
        return _validate_timezone(value)

    @model_validator(mode="after")
    def validate_has_updates(self) -> "JourneyUpdateIn":
        if (
            self.name is None
            and self.description is None
            and self.timezone is None
            and self.nodes is None
            and self.edges is None
            and self.settings is None
        ):
            raise ValueError("At least one field must be provided")
        return self


class JourneyOut(BaseModel):
    id: str
    name: str
    description: str | None = None
    status: JourneyStatus
    timezone: str | None = None
    version: int
    published_at: datetime | None = None
    nodes: list[dict[str, Any]]
    edges: list[dict[str, Any]]
    settings: dict[str, Any]
    created_at: datetime
    updated_at: datetime


class JourneyListOut(BaseModel):
    items: list[JourneyOut]
    pagination: PaginationMeta
    status: JourneyStatus | None = None


class AudiencePreviewOut(BaseModel):
    journey_id: str
    node_id: str
    total: int
    matched: int
    unmatched: int
    data_errors: int


class NodeFlowOut(BaseModel):
    entered: int
    exited: int
    current: dict[str, int]


class JourneyAnalyticsOut(BaseModel):
    journey_id: str
    total_enrollments: int
    by_status: dict[str, int]
    nodes: dict[str, NodeFlowOut]
    messages: dict[str, int]
    conversion_rate: float
