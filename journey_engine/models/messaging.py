from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from journey_engine.db.base import Base


class OutboundMessage(Base):
    __tablename__ = "outbound_messages"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    journey_id: Mapped[str] = mapped_column(String(64), ForeignKey("journeys.id"), nullable=False, index=True)
    enrollment_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("journey_enrollments.id"),
        nullable=False,
        index=True,
    )
    node_id: Mapped[str] = mapped_column(String(64), nullable=False)
    customer_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    provider: Mapped[str] = mapped_column(String(40), nullable=False)
    provider_message_id: Mapped[Optional[str]] = mapped_column(String(120), nullable=True, unique=True)
    template_id: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    recipient: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="queued", server_default="queued")
    outcome: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    button_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    error_message: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    outcome_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        Index("ix_outbound_messages_enrollment_node", "enrollment_id", "node_id"),
        Index("ix_outbound_messages_customer_outcome_at", "customer_id", "outcome_at"),
    )
