import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.orm import Session

from journey_engine.core.config import settings
from journey_engine.core.errors import short_error
from journey_engine.core.observability import log_event
from journey_engine.db.upsert import insert_ignoring_conflicts
from journey_engine.models.enrollment import TERMINAL_STATUSES, JourneyEnrollment
from journey_engine.services.activity_logger import append_activity
from journey_engine.services.transitions import Advance, Complete, Exit, Fail, Transition, Wait


@dataclass(frozen=True)
class Claim:
    enrollment_id: str
    version: int


def due_condition(now: datetime):
    return and_(
        or_(
            JourneyEnrollment.status == "active",
            and_(JourneyEnrollment.status == "waiting", JourneyEnrollment.wake_at <= now),
        ),
        or_(JourneyEnrollment.lease_expires_at.is_(None), JourneyEnrollment.lease_expires_at <= now),
    )


def create_enrollment(
    db: Session,
    *,
    journey_id: str,
    journey_version: int,
    customer_id: str,
    trigger_node_id: str,
    trigger_event_key: str,
    context: dict[str, Any],
    now: datetime,
) -> JourneyEnrollment | None:
    """Insert an active enrollment at the trigger node; None when this trigger event already enrolled."""
    enrollment_id = str(uuid.uuid4())
    written = insert_ignoring_conflicts(
        db,
        JourneyEnrollment,
        {
            "id": enrollment_id,
            "journey_id": journey_id,
            "journey_version": journey_version,
            "customer_id": customer_id,
            "status": "active",
            "current_node_id": trigger_node_id,
            "node_entered_at": now,
            "entered_at": now,
            "last_activity_at": now,
            "version": 1,
            "metadata_json": {"failures": {}},
            "context_json": context,
            "trigger_event_key": trigger_event_key,
        },
        index_elements=["journey_id", "customer_id", "trigger_event_key"],
    )
    if not written:
        return None
    enrollment = db.get(JourneyEnrollment, enrollment_id)
    append_activity(
        db,
        enrollment=enrollment,
        node_id=trigger_node_id,
        event_type="entered",
        data={"trigger_event_key": trigger_event_key},
        at=now,
    )
    return enrollment


def claim_due(db: Session, *, worker_id: str, now: datetime, limit: int) -> list[Claim]:
    """Lease up to `limit` due enrollments for this worker.

    Each lease is a conditional update on the row version, so two workers racing for the
    same row cannot both win. Commits before returning.
    """
    stmt = (
        select(JourneyEnrollment.id, JourneyEnrollment.version)
        .where(due_condition(now))
        .order_by(JourneyEnrollment.last_activity_at.asc(), JourneyEnrollment.id.asc())
        .limit(limit)
    )
    if db.get_bind().dialect.name == "postgresql":
        stmt = stmt.with_for_update(skip_locked=True)
    rows = db.execute(stmt).all()

    lease_until = now + timedelta(seconds=settings.engine_lease_seconds)
    claims: list[Claim] = []
    for enrollment_id, version in rows:
        result = db.execute(
            update(JourneyEnrollment)
            .where(
                JourneyEnrollment.id == enrollment_id,
                JourneyEnrollment.version == version,
                due_condition(now),
            )
            .values(lease_owner=worker_id, lease_expires_at=lease_until, version=version + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            claims.append(Claim(enrollment_id=enrollment_id, version=version + 1))
    db.commit()
    return claims


def apply_transition(
    db: Session,
    enrollment: JourneyEnrollment,
    transition: Transition,
    *,
    expected_version: int,
    now: datetime,
    worker_id: str | None = None,
    failure: str | None = None,
    reset_failures: bool = True,
) -> int | None:
    """Write a computed transition if the enrollment is still the one it was computed for.

    The update requires the expected version, a non-terminal status and, for workers, the
    lease. Returns the new version, or None when the transition was discarded as stale.
    `failure` records one more attempt against the current node; an Advance otherwise clears
    the node's attempts unless reset_failures is False.
    """
    node_id = enrollment.current_node_id
    context = dict(enrollment.context_json or {})
    metadata = dict(enrollment.metadata_json or {})
    failures = dict(enrollment.failures)
    values: dict[str, Any] = {"last_activity_at": now, "version": expected_version + 1}

    if failure is not None:
        entry = dict(failures.get(node_id) or {})
        entry["attempts"] = int(entry.get("attempts", 0)) + 1
        entry["last_error"] = short_error(failure)
        entry["last_failed_at"] = now.isoformat()
        failures[node_id] = entry
        values["last_error"] = entry["last_error"]

    keep_lease = False
    if isinstance(transition, Advance):
        if failure is None and reset_failures:
            failures.pop(node_id, None)
        context.pop("node_state", None)
        context.pop("resume", None)
        metadata.update(transition.metadata_updates)
        values.update(
            status="active",
            current_node_id=transition.next_node_id,
            node_entered_at=now,
            wake_at=None,
        )
        keep_lease = worker_id is not None
    elif isinstance(transition, Wait):
        if transition.node_state is not None:
            context["node_state"] = {**transition.node_state, "node_id": node_id}
        values.update(status="waiting", wake_at=transition.wake_at)
    elif isinstance(transition, Complete):
        values.update(status="completed", completed_at=now, wake_at=None, exit_reason=transition.reason)
    elif isinstance(transition, Exit):
        values.update(status="exited", completed_at=now, wake_at=None, exit_reason=short_error(transition.reason))
    elif isinstance(transition, Fail):
        values.update(
            status="failed",
            completed_at=now,
            wake_at=None,
            exit_reason="failed",
            last_error=short_error(transition.reason),
        )

    metadata["failures"] = failures
    values["metadata_json"] = metadata
    values["context_json"] = context
    if not keep_lease:
        values.update(lease_owner=None, lease_expires_at=None)

    conditions = [
        JourneyEnrollment.id == enrollment.id,
        JourneyEnrollment.version == expected_version,
        JourneyEnrollment.status.not_in(TERMINAL_STATUSES),
    ]
    if worker_id is not None:
        conditions.append(JourneyEnrollment.lease_owner == worker_id)
    result = db.execute(
        update(JourneyEnrollment)
        .where(*conditions)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        log_event(
            "stale_transition_discarded",
            level=logging.WARNING,
            enrollment_id=enrollment.id,
            node_id=node_id,
            transition=type(transition).__name__,
            expected_version=expected_version,
            worker_id=worker_id,
        )
        return None

    _append_transition_activity(db, enrollment, node_id=node_id, transition=transition, now=now, failure=failure)
    log_event(
        "enrollment_transition",
        enrollment_id=enrollment.id,
        journey_id=enrollment.journey_id,
        node_id=node_id,
        transition=type(transition).__name__,
        status=values.get("status"),
        next_node_id=values.get("current_node_id", node_id),
    )
    if isinstance(transition, Fail):
        log_event(
            "enrollment_failed",
            level=logging.ERROR,
            enrollment_id=enrollment.id,
            journey_id=enrollment.journey_id,
            node_id=node_id,
            reason=transition.reason,
        )
    db.expire(enrollment)
    return expected_version + 1


def release_lease(db: Session, *, enrollment_id: str, worker_id: str) -> None:
    db.execute(
        update(JourneyEnrollment)
        .where(JourneyEnrollment.id == enrollment_id, JourneyEnrollment.lease_owner == worker_id)
        .values(lease_owner=None, lease_expires_at=None)
        .execution_options(synchronize_session=False)
    )


def get_enrollment(db: Session, enrollment_id: str) -> JourneyEnrollment | None:
    return db.get(JourneyEnrollment, enrollment_id)


def list_enrollments(
    db: Session,
    *,
    journey_id: str,
    status: str | None,
    limit: int,
    offset: int,
) -> tuple[list[JourneyEnrollment], int]:
    filters = [JourneyEnrollment.journey_id == journey_id]
    if status:
        filters.append(JourneyEnrollment.status == status)
    total = int(db.execute(select(func.count(JourneyEnrollment.id)).where(*filters)).scalar_one() or 0)
    rows = db.execute(
        select(JourneyEnrollment)
        .where(*filters)
        .order_by(JourneyEnrollment.entered_at.desc(), JourneyEnrollment.id.desc())
        .offset(offset)
        .limit(limit)
    ).scalars().all()
    return list(rows), total


def cancel_enrollment(db: Session, enrollment: JourneyEnrollment, *, now: datetime) -> JourneyEnrollment:
    """Exit the enrollment wherever it is. Already-terminal enrollments are returned unchanged."""
    if enrollment.is_terminal:
        return enrollment
    result = db.execute(
        update(JourneyEnrollment)
        .where(
            JourneyEnrollment.id == enrollment.id,
            JourneyEnrollment.status.not_in(TERMINAL_STATUSES),
        )
        .values(
            status="exited",
            exit_reason="manual_cancel",
            completed_at=now,
            wake_at=None,
            lease_owner=None,
            lease_expires_at=None,
            last_activity_at=now,
            version=JourneyEnrollment.version + 1,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 1:
        append_activity(
            db,
            enrollment=enrollment,
            event_type="manual_cancel",
            data={"previous_status": enrollment.status},
            at=now,
        )
        log_event(
            "enrollment_transition",
            enrollment_id=enrollment.id,
            journey_id=enrollment.journey_id,
            node_id=enrollment.current_node_id,
            transition="Cancel",
            status="exited",
        )
    db.expire(enrollment)
    return enrollment


def _append_transition_activity(
    db: Session,
    enrollment: JourneyEnrollment,
    *,
    node_id: str,
    transition: Transition,
    now: datetime,
    failure: str | None,
) -> None:
    extra: dict[str, Any] = {"error": short_error(failure)} if failure is not None else {}
    if isinstance(transition, Advance):
        append_activity(
            db,
            enrollment=enrollment,
            node_id=node_id,
            event_type=transition.event_type,
            data={"handle": transition.handle, "next_node_id": transition.next_node_id, **transition.data, **extra},
            at=now,
        )
        append_activity(
            db,
            enrollment=enrollment,
            node_id=transition.next_node_id,
            event_type="node_entered",
            data={"from_node_id": node_id, "handle": transition.handle},
            at=now,
        )
    elif isinstance(transition, Wait):
        append_activity(
            db,
            enrollment=enrollment,
            node_id=node_id,
            event_type=transition.event_type,
            data={"wake_at": transition.wake_at.isoformat(), **transition.data, **extra},
            at=now,
        )
    elif isinstance(transition, Complete):
        append_activity(
            db,
            enrollment=enrollment,
            node_id=node_id,
            event_type="completed",
            data={"reason": transition.reason, **transition.data},
            at=now,
        )
    elif isinstance(transition, Exit):
        append_activity(
            db,
            enrollment=enrollment,
            node_id=node_id,
            event_type="exited",
            data={"reason": transition.reason, **transition.data, **extra},
            at=now,
        )
    elif isinstance(transition, Fail):
        append_activity(
            db,
            enrollment=enrollment,
            node_id=node_id,
            event_type="failed",
            data={"reason": short_error(transition.reason), **transition.data, **extra},
            at=now,
        )
