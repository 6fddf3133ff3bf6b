from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Integer, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from journey_engine.db.base import Base


ENROLLMENT_STATUSES = ("active", "waiting", "completed", "failed", "exited")
TERMINAL_STATUSES = ("completed", "failed", "exited")


class JourneyEnrollment(Base):
    __tablename__ = "journey_enrollments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    journey_id: Mapped[str] = mapped_column(String(64), ForeignKey("journeys.id"), nullable=False, index=True)
    journey_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    customer_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active", server_default="active")
    current_node_id: Mapped[str] = mapped_column(String(64), nullable=False)
    node_entered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    entered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_activity_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    wake_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    lease_owner: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    lease_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    context_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    trigger_event_key: Mapped[Optional[str]] = mapped_column(String(160), nullable=True)
    exit_reason: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        UniqueConstraint(
            "journey_id",
            "customer_id",
            "trigger_event_key",
            name="uq_journey_enrollments_journey_customer_trigger",
        ),
        Index("ix_journey_enrollments_status_wake_at", "status", "wake_at"),
        Index("ix_journey_enrollments_journey_status_entered_at", "journey_id", "status", "entered_at"),
        Index("ix_journey_enrollments_journey_customer", "journey_id", "customer_id"),
    )

    @property
    def failures(self) -> dict[str, dict[str, Any]]:
        metadata = self.metadata_json if isinstance(self.metadata_json, dict) else {}
        failures = metadata.get("failures")
        return failures if isinstance(failures, dict) else {}

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class JourneyActivityLog(Base):
    __tablename__ = "journey_activity_logs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    journey_id: Mapped[str] = mapped_column(String(64), ForeignKey("journeys.id"), nullable=False, index=True)
    enrollment_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("journey_enrollments.id"),
        nullable=False,
        index=True,
    )
    customer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    node_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    event_type: Mapped[str] = mapped_column(String(60), nullable=False)
    data_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        Index("ix_journey_activity_logs_enrollment_created_at", "enrollment_id", "created_at"),
        Index("ix_journey_activity_logs_journey_created_at", "journey_id", "created_at"),
        Index("ix_journey_activity_logs_journey_node_event", "journey_id", "node_id", "event_type"),
    )
