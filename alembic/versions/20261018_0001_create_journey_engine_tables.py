"""create journey engine tables

Revision ID: 20261018_0001
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "20261018_0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "journeys",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("description", sa.String(length=255), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="draft"),
        sa.Column("timezone", sa.String(length=64), nullable=True),
        sa.Column("definition_json", sa.JSON(), nullable=False),
        sa.Column("settings_json", sa.JSON(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("published_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_journeys_status_updated_at", "journeys", ["status", "updated_at"], unique=False)

    op.create_table(
        "journey_versions",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("journey_id", sa.String(length=64), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("definition_json", sa.JSON(), nullable=False),
        sa.Column("published_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["journey_id"], ["journeys.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("journey_id", "version", name="uq_journey_versions_journey_version"),
    )
    op.create_index("ix_journey_versions_journey_id", "journey_versions", ["journey_id"], unique=False)

    op.create_table(
        "journey_enrollments",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("journey_id", sa.String(length=64), nullable=False),
        sa.Column("journey_version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("customer_id", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="active"),
        sa.Column("current_node_id", sa.String(length=64), nullable=False),
        sa.Column("node_entered_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("entered_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_activity_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("wake_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("lease_owner", sa.String(length=64), nullable=True),
        sa.Column("lease_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("metadata_json", sa.JSON(), nullable=True),
        sa.Column("context_json", sa.JSON(), nullable=True),
        sa.Column("trigger_event_key", sa.String(length=160), nullable=True),
        sa.Column("exit_reason", sa.String(length=255), nullable=True),
        sa.Column("last_error", sa.String(length=255), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["journey_id"], ["journeys.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "journey_id",
            "customer_id",
            "trigger_event_key",
            name="uq_journey_enrollments_journey_customer_trigger",
        ),
    )
    op.create_index("ix_journey_enrollments_journey_id", "journey_enrollments", ["journey_id"], unique=False)
    op.create_index("ix_journey_enrollments_customer_id", "journey_enrollments", ["customer_id"], unique=False)
    op.create_index(
        "ix_journey_enrollments_status_wake_at",
        "journey_enrollments",
        ["status", "wake_at"],
        unique=False,
    )
    op.create_index(
        "ix_journey_enrollments_journey_status_entered_at",
        "journey_enrollments",
        ["journey_id", "status", "entered_at"],
        unique=False,
    )
    op.create_index(
        "ix_journey_enrollments_journey_customer",
        "journey_enrollments",
        ["journey_id", "customer_id"],
        unique=False,
    )

    op.create_table(
        "journey_activity_logs",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("journey_id", sa.String(length=64), nullable=False),
        sa.Column("enrollment_id", sa.String(length=36), nullable=False),
        sa.Column("customer_id", sa.String(length=64), nullable=False),
        sa.Column("node_id", sa.String(length=64), nullable=True),
        sa.Column("event_type", sa.String(length=60), nullable=False),
        sa.Column("data_json", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["journey_id"], ["journeys.id"]),
        sa.ForeignKeyConstraint(["enrollment_id"], ["journey_enrollments.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_journey_activity_logs_journey_id", "journey_activity_logs", ["journey_id"], unique=False)
    op.create_index(
        "ix_journey_activity_logs_enrollment_id",
        "journey_activity_logs",
        ["enrollment_id"],
        unique=False,
    )
    op.create_index(
        "ix_journey_activity_logs_enrollment_created_at",
        "journey_activity_logs",
        ["enrollment_id", "created_at"],
        unique=False,
    )
    op.create_index(
        "ix_journey_activity_logs_journey_created_at",
        "journey_activity_logs",
        ["journey_id", "created_at"],
        unique=False,
    )
    op.create_index(
        "ix_journey_activity_logs_journey_node_event",
        "journey_activity_logs",
        ["journey_id", "node_id", "event_type"],
        unique=False,
    )

    op.create_table(
        "customer_profiles",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("phone", sa.String(length=40), nullable=True),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("timezone", sa.String(length=64), nullable=True),
        sa.Column("opted_out", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("attributes_json", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "segment_memberships",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("segment_id", sa.String(length=64), nullable=False),
        sa.Column("customer_id", sa.String(length=64), nullable=False),
        sa.Column("joined_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("segment_id", "customer_id", name="uq_segment_memberships_segment_customer"),
    )
    op.create_index("ix_segment_memberships_segment_id", "segment_memberships", ["segment_id"], unique=False)
    op.create_index("ix_segment_memberships_customer_id", "segment_memberships", ["customer_id"], unique=False)

    op.create_table(
        "customer_events",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("customer_id", sa.String(length=64), nullable=True),
        sa.Column("event_type", sa.String(length=30), nullable=False),
        sa.Column("event_name", sa.String(length=120), nullable=True),
        sa.Column("payload_json", sa.JSON(), nullable=True),
        sa.Column("idempotency_key", sa.String(length=160), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("idempotency_key"),
    )
    op.create_index("ix_customer_events_customer_id", "customer_events", ["customer_id"], unique=False)
    op.create_index(
        "ix_customer_events_customer_name_occurred_at",
        "customer_events",
        ["customer_id", "event_name", "occurred_at"],
        unique=False,
    )

    op.create_table(
        "outbound_messages",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("journey_id", sa.String(length=64), nullable=False),
        sa.Column("enrollment_id", sa.String(length=36), nullable=False),
        sa.Column("node_id", sa.String(length=64), nullable=False),
        sa.Column("customer_id", sa.String(length=64), nullable=False),
        sa.Column("provider", sa.String(length=40), nullable=False),
        sa.Column("provider_message_id", sa.String(length=120), nullable=True),
        sa.Column("template_id", sa.String(length=120), nullable=True),
        sa.Column("recipient", sa.String(length=40), nullable=True),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="queued"),
        sa.Column("outcome", sa.String(length=20), nullable=True),
        sa.Column("button_id", sa.String(length=64), nullable=True),
        sa.Column("attempt", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("error_message", sa.String(length=255), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("outcome_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["journey_id"], ["journeys.id"]),
        sa.ForeignKeyConstraint(["enrollment_id"], ["journey_enrollments.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("provider_message_id"),
    )
    op.create_index("ix_outbound_messages_journey_id", "outbound_messages", ["journey_id"], unique=False)
    op.create_index("ix_outbound_messages_enrollment_id", "outbound_messages", ["enrollment_id"], unique=False)
    op.create_index("ix_outbound_messages_customer_id", "outbound_messages", ["customer_id"], unique=False)
    op.create_index(
        "ix_outbound_messages_enrollment_node",
        "outbound_messages",
        ["enrollment_id", "node_id"],
        unique=False,
    )
    op.create_index(
        "ix_outbound_messages_customer_outcome_at",
        "outbound_messages",
        ["customer_id", "outcome_at"],
        unique=False,
    )

    op.create_table(
        "rate_limit_scopes",
        sa.Column("scope_key", sa.String(length=200), nullable=False),
        sa.Column("lock_version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("scope_key"),
    )

    op.create_table(
        "rate_limit_permits",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("scope_key", sa.String(length=200), nullable=False),
        sa.Column("enrollment_id", sa.String(length=36), nullable=True),
        sa.Column("granted_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_rate_limit_permits_scope_granted_at",
        "rate_limit_permits",
        ["scope_key", "granted_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_rate_limit_permits_scope_granted_at", table_name="rate_limit_permits")
    op.drop_table("rate_limit_permits")
    op.drop_table("rate_limit_scopes")

    op.drop_index("ix_outbound_messages_customer_outcome_at", table_name="outbound_messages")
    op.drop_index("ix_outbound_messages_enrollment_node", table_name="outbound_messages")
    op.drop_index("ix_outbound_messages_customer_id", table_name="outbound_messages")
    op.drop_index("ix_outbound_messages_enrollment_id", table_name="outbound_messages")
    op.drop_index("ix_outbound_messages_journey_id", table_name="outbound_messages")
    op.drop_table("outbound_messages")

    op.drop_index("ix_customer_events_customer_name_occurred_at", table_name="customer_events")
    op.drop_index("ix_customer_events_customer_id", table_name="customer_events")
    op.drop_table("customer_events")

    op.drop_index("ix_segment_memberships_customer_id", table_name="segment_memberships")
    op.drop_index("ix_segment_memberships_segment_id", table_name="segment_memberships")
    op.drop_table("segment_memberships")

    op.drop_table("customer_profiles")

    op.drop_index("ix_journey_activity_logs_journey_node_event", table_name="journey_activity_logs")
    op.drop_index("ix_journey_activity_logs_journey_created_at", table_name="journey_activity_logs")
    op.drop_index("ix_journey_activity_logs_enrollment_created_at", table_name="journey_activity_logs")
    op.drop_index("ix_journey_activity_logs_enrollment_id", table_name="journey_activity_logs")
    op.drop_index("ix_journey_activity_logs_journey_id", table_name="journey_activity_logs")
    op.drop_table("journey_activity_logs")

    op.drop_index("ix_journey_enrollments_journey_customer", table_name="journey_enrollments")
    op.drop_index("ix_journey_enrollments_journey_status_entered_at", table_name="journey_enrollments")
    op.drop_index("ix_journey_enrollments_status_wake_at", table_name="journey_enrollments")
    op.drop_index("ix_journey_enrollments_customer_id", table_name="journey_enrollments")
    op.drop_index("ix_journey_enrollments_journey_id", table_name="journey_enrollments")
    op.drop_table("journey_enrollments")

    op.drop_index("ix_journey_versions_journey_id", table_name="journey_versions")
    op.drop_table("journey_versions")

    op.drop_index("ix_journeys_status_updated_at", table_name="journeys")
    op.drop_table("journeys")
