from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Index, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from journey_engine.db.base import Base


class RateLimitScope(Base):
    __tablename__ = "rate_limit_scopes"

    scope_key: Mapped[str] = mapped_column(String(200), primary_key=True)
    lock_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class RateLimitPermit(Base):
    __tablename__ = "rate_limit_permits"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    scope_key: Mapped[str] = mapped_column(String(200), nullable=False)
    enrollment_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    granted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_rate_limit_permits_scope_granted_at", "scope_key", "granted_at"),
    )
