import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from journey_engine.models.enrollment import (
    ENROLLMENT_STATUSES,
    TERMINAL_STATUSES,
    JourneyActivityLog,
    JourneyEnrollment,
)
from journey_engine.models.messaging import OutboundMessage
from journey_engine.services.transitions import ADVANCE_EVENT_TYPES


def append_activity(
    db: Session,
    *,
    enrollment: JourneyEnrollment,
    event_type: str,
    at: datetime,
    node_id: str | None = None,
    data: dict[str, Any] | None = None,
) -> JourneyActivityLog:
    record = JourneyActivityLog(
        id=str(uuid.uuid4()),
        journey_id=enrollment.journey_id,
        enrollment_id=enrollment.id,
        customer_id=enrollment.customer_id,
        node_id=node_id if node_id is not None else enrollment.current_node_id,
        event_type=event_type,
        data_json=data or None,
        created_at=at,
    )
    db.add(record)
    return record


def list_enrollment_activity(
    db: Session,
    *,
    enrollment_id: str,
    limit: int,
    offset: int,
) -> tuple[list[JourneyActivityLog], int]:
    return _page(db, JourneyActivityLog.enrollment_id == enrollment_id, limit=limit, offset=offset)


def list_journey_activity(
    db: Session,
    *,
    journey_id: str,
    limit: int,
    offset: int,
    event_type: str | None = None,
) -> tuple[list[JourneyActivityLog], int]:
    filters = [JourneyActivityLog.journey_id == journey_id]
    if event_type:
        filters.append(JourneyActivityLog.event_type == event_type)
    return _page(db, *filters, limit=limit, offset=offset)


def _page(db: Session, *filters, limit: int, offset: int) -> tuple[list[JourneyActivityLog], int]:
    total = int(db.execute(select(func.count(JourneyActivityLog.id)).where(*filters)).scalar_one() or 0)
    rows = db.execute(
        select(JourneyActivityLog)
        .where(*filters)
        # newest first; id breaks ties between records written in the same step
        .order_by(JourneyActivityLog.created_at.desc(), JourneyActivityLog.id.desc())
        .offset(offset)
        .limit(limit)
    ).scalars().all()
    return list(rows), total


def aggregate_journey_analytics(db: Session, *, journey_id: str) -> dict[str, Any]:
    status_rows = db.execute(
        select(JourneyEnrollment.status, func.count(JourneyEnrollment.id))
        .where(JourneyEnrollment.journey_id == journey_id)
        .group_by(JourneyEnrollment.status)
    ).all()
    by_status = {status: 0 for status in ENROLLMENT_STATUSES}
    for status, count in status_rows:
        by_status[status] = int(count or 0)
    total = sum(by_status.values())

    nodes: dict[str, dict[str, Any]] = {}

    def _node(node_id: str) -> dict[str, Any]:
        return nodes.setdefault(node_id, {"entered": 0, "exited": 0, "current": {}})

    flow_rows = db.execute(
        select(JourneyActivityLog.node_id, JourneyActivityLog.event_type, func.count(JourneyActivityLog.id))
        .where(
            JourneyActivityLog.journey_id == journey_id,
            JourneyActivityLog.event_type.in_(["entered", "node_entered", *ADVANCE_EVENT_TYPES]),
        )
        .group_by(JourneyActivityLog.node_id, JourneyActivityLog.event_type)
    ).all()
    for node_id, event_type, count in flow_rows:
        if not node_id:
            continue
        key = "entered" if event_type in ("entered", "node_entered") else "exited"
        _node(node_id)[key] += int(count or 0)

    # enrollments that ended on a node also left it
    current_rows = db.execute(
        select(JourneyEnrollment.current_node_id, JourneyEnrollment.status, func.count(JourneyEnrollment.id))
        .where(JourneyEnrollment.journey_id == journey_id)
        .group_by(JourneyEnrollment.current_node_id, JourneyEnrollment.status)
    ).all()
    for node_id, status, count in current_rows:
        stats = _node(node_id)
        stats["current"][status] = int(count or 0)
        if status in TERMINAL_STATUSES:
            stats["exited"] += int(count or 0)

    message_rows = db.execute(
        select(func.coalesce(OutboundMessage.outcome, OutboundMessage.status), func.count(OutboundMessage.id))
        .where(OutboundMessage.journey_id == journey_id)
        .group_by(func.coalesce(OutboundMessage.outcome, OutboundMessage.status))
    ).all()
    messages = {str(outcome): int(count or 0) for outcome, count in message_rows}

    return {
        "journey_id": journey_id,
        "total_enrollments": total,
        "by_status": by_status,
        "nodes": nodes,
        "messages": messages,
        "conversion_rate": round(by_status["completed"] / total, 4) if total else 0.0,
    }
