from typing import Any

from pydantic import BaseModel, ConfigDict


class PaginationMeta(BaseModel):
    total: int
    limit: int
    offset: int
    count: int
    has_next: bool

    model_config = ConfigDict(
        json_schema_extra={"example": {"total": 42, "limit": 10, "offset": 0, "count": 10, "has_next": True}}
    )

    @classmethod
    def for_page(cls, items: list[Any], *, total: int, limit: int, offset: int) -> "PaginationMeta":
        count = len(items)
        return cls(total=total, limit=limit, offset=offset, count=count, has_next=(offset + count) < total)


class IssueOut(BaseModel):
    field: str
    message: str
    type: str | None = None


class ErrorDetailOut(BaseModel):
    code: str
    message: str
    request_id: str
    path: str
    details: list[IssueOut] | None = None


class ErrorOut(BaseModel):
    error: ErrorDetailOut
