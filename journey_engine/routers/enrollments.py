from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from journey_engine.core.api_docs import error_responses
from journey_engine.core.clock import ensure_utc, utcnow
from journey_engine.core.deps import get_db
from journey_engine.models.enrollment import JourneyActivityLog, JourneyEnrollment
from journey_engine.schemas.common import PaginationMeta
from journey_engine.schemas.enrollment import ActivityListOut, ActivityOut, EnrollmentOut, NodeFailureOut
from journey_engine.services.activity_logger import list_enrollment_activity
from journey_engine.services.engine import ManualInterventionError, skip_node
from journey_engine.services.enrollment_store import cancel_enrollment, get_enrollment

router = APIRouter(prefix="/enrollments", tags=["enrollments"])


def _enrollment_or_404(db: Session, enrollment_id: str) -> JourneyEnrollment:
    enrollment = get_enrollment(db, enrollment_id)
    if not enrollment:
        raise HTTPException(status_code=404, detail="Enrollment not found")
    return enrollment


def enrollment_out(enrollment: JourneyEnrollment) -> EnrollmentOut:
    failures = {
        node_id: NodeFailureOut(
            attempts=int(entry.get("attempts", 0)),
            last_error=entry.get("last_error"),
            last_failed_at=entry.get("last_failed_at"),
        )
        for node_id, entry in enrollment.failures.items()
        if isinstance(entry, dict)
    }
    return EnrollmentOut(
        id=enrollment.id,
        journey_id=enrollment.journey_id,
        journey_version=enrollment.journey_version,
        customer_id=enrollment.customer_id,
        status=enrollment.status,
        current_node_id=enrollment.current_node_id,
        node_entered_at=ensure_utc(enrollment.node_entered_at),
        entered_at=ensure_utc(enrollment.entered_at),
        last_activity_at=ensure_utc(enrollment.last_activity_at),
        wake_at=ensure_utc(enrollment.wake_at),
        exit_reason=enrollment.exit_reason,
        last_error=enrollment.last_error,
        completed_at=ensure_utc(enrollment.completed_at),
        trigger_event_key=enrollment.trigger_event_key,
        failures=failures,
    )


def activity_out(record: JourneyActivityLog) -> ActivityOut:
    return ActivityOut(
        id=record.id,
        journey_id=record.journey_id,
        enrollment_id=record.enrollment_id,
        customer_id=record.customer_id,
        node_id=record.node_id,
        event_type=record.event_type,
        timestamp=ensure_utc(record.created_at),
        data=record.data_json if isinstance(record.data_json, dict) else None,
    )


def activity_page(rows: list[JourneyActivityLog], *, total: int, limit: int, offset: int) -> ActivityListOut:
    items = [activity_out(row) for row in rows]
    return ActivityListOut(
        items=items,
        pagination=PaginationMeta.for_page(items, total=total, limit=limit, offset=offset),
    )


def _conflict(exc: ManualInterventionError) -> HTTPException:
    return HTTPException(status_code=409, detail={"message": exc.message, "reason": exc.reason})


@router.get(
    "/{enrollment_id}",
    response_model=EnrollmentOut,
    summary="Get enrollment",
    responses=error_responses(404, 500),
)
def get_enrollment_detail(enrollment_id: str, db: Session = Depends(get_db)):
    return enrollment_out(_enrollment_or_404(db, enrollment_id))


@router.get(
    "/{enrollment_id}/activity",
    response_model=ActivityListOut,
    summary="List enrollment activity, newest first",
    responses=error_responses(404, 422, 500),
)
def list_activity(
    enrollment_id: str,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    _enrollment_or_404(db, enrollment_id)
    rows, total = list_enrollment_activity(db, enrollment_id=enrollment_id, limit=limit, offset=offset)
    return activity_page(rows, total=total, limit=limit, offset=offset)


@router.post(
    "/{enrollment_id}/skip-node",
    response_model=EnrollmentOut,
    summary="Move the enrollment past its current node",
    responses=error_responses(404, 409, 500),
)
def skip_current_node(enrollment_id: str, db: Session = Depends(get_db)):
    enrollment = _enrollment_or_404(db, enrollment_id)
    try:
        skip_node(db, enrollment, now=utcnow())
    except ManualInterventionError as exc:
        db.rollback()
        raise _conflict(exc) from None
    db.commit()
    db.refresh(enrollment)
    return enrollment_out(enrollment)


@router.post(
    "/{enrollment_id}/cancel",
    response_model=EnrollmentOut,
    summary="Cancel enrollment",
    responses=error_responses(404, 500),
)
def cancel(enrollment_id: str, db: Session = Depends(get_db)):
    enrollment = _enrollment_or_404(db, enrollment_id)
    cancel_enrollment(db, enrollment, now=utcnow())
    db.commit()
    db.refresh(enrollment)
    return enrollment_out(enrollment)
