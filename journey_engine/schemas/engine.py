from datetime import datetime

from pydantic import BaseModel, Field


class EngineTickIn(BaseModel):
    now: datetime | None = None
    limit: int | None = Field(default=None, ge=1, le=5000)


class EngineTickOut(BaseModel):
    worker_id: str
    claimed: int
    steps: int
    advanced: int
    waiting: int
    completed: int
    exited: int
    failed: int
    retried: int
    stale: int
