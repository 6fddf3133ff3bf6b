import uuid

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from journey_engine.core.api_docs import error_responses
from journey_engine.core.clock import ensure_utc, utcnow
from journey_engine.core.deps import get_db
from journey_engine.core.id_utils import generate_shortuuid
from journey_engine.models.customer import CustomerProfile
from journey_engine.models.journey import Journey
from journey_engine.routers.enrollments import activity_page, enrollment_out
from journey_engine.schemas.common import PaginationMeta
from journey_engine.schemas.enrollment import (
    ActivityListOut,
    EnrollmentListOut,
    EnrollmentStatus,
    ManualEnrollIn,
    ManualEnrollOut,
)
from journey_engine.schemas.journey import (
    AudiencePreviewOut,
    JourneyAnalyticsOut,
    JourneyCreateIn,
    JourneyListOut,
    JourneyOut,
    JourneyStatus,
    JourneyUpdateIn,
)
from journey_engine.schemas.journey_config import ExperimentConditionConfig
from journey_engine.services.activity_logger import aggregate_journey_analytics, list_journey_activity
from journey_engine.services.condition_evaluator import audience_split
from journey_engine.services.customer_snapshot import build_snapshot, event_scope
from journey_engine.services.enrollment_store import list_enrollments
from journey_engine.services.journey_graph import compile_journey
from journey_engine.services.journey_service import publish_journey, published_graph
from journey_engine.services.trigger_evaluator import NormalizedEvent, try_enroll

router = APIRouter(prefix="/journeys", tags=["journeys"])

_EDITABLE_STATUSES = {"draft", "paused"}


def _journey_or_404(db: Session, journey_id: str) -> Journey:
    journey = db.get(Journey, journey_id)
    if not journey:
        raise HTTPException(status_code=404, detail="Journey not found")
    return journey


def _journey_out(journey: Journey) -> JourneyOut:
    definition = journey.definition_json if isinstance(journey.definition_json, dict) else {}
    nodes = definition.get("nodes")
    edges = definition.get("edges")
    return JourneyOut(
        id=journey.id,
        name=journey.name,
        description=journey.description,
        status=journey.status,
        timezone=journey.timezone,
        version=journey.version,
        published_at=ensure_utc(journey.published_at),
        nodes=nodes if isinstance(nodes, list) else [],
        edges=edges if isinstance(edges, list) else [],
        settings=journey.settings_json if isinstance(journey.settings_json, dict) else {},
        created_at=ensure_utc(journey.created_at),
        updated_at=ensure_utc(journey.updated_at),
    )


@router.post(
    "",
    response_model=JourneyOut,
    status_code=201,
    summary="Create draft journey",
    responses=error_responses(409, 422, 500),
)
def create_journey(payload: JourneyCreateIn, db: Session = Depends(get_db)):
    journey = Journey(
        id=payload.id or generate_shortuuid(),
        name=payload.name.strip(),
        description=payload.description,
        status="draft",
        timezone=payload.timezone,
        definition_json={"nodes": payload.nodes, "edges": payload.edges},
        settings_json=payload.settings.model_dump(by_alias=True, exclude_none=True),
        version=0,
    )
    db.add(journey)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=409, detail="Journey id already exists") from None
    db.refresh(journey)
    return _journey_out(journey)


@router.get(
    "",
    response_model=JourneyListOut,
    summary="List journeys",
    responses=error_responses(422, 500),
)
def list_journeys(
    status: JourneyStatus | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    count_stmt = select(func.count(Journey.id))
    stmt = select(Journey)
    if status:
        count_stmt = count_stmt.where(Journey.status == status)
        stmt = stmt.where(Journey.status == status)

    total = int(db.execute(count_stmt).scalar_one())
    rows = db.execute(
        stmt.order_by(Journey.updated_at.desc(), Journey.id.asc()).offset(offset).limit(limit)
    ).scalars().all()
    items = [_journey_out(row) for row in rows]
    return JourneyListOut(
        items=items,
        pagination=PaginationMeta.for_page(items, total=total, limit=limit, offset=offset),
        status=status,
    )


@router.get(
    "/{journey_id}",
    response_model=JourneyOut,
    summary="Get journey",
    responses=error_responses(404, 500),
)
def get_journey(journey_id: str, db: Session = Depends(get_db)):
    return _journey_out(_journey_or_404(db, journey_id))


@router.put(
    "/{journey_id}",
    response_model=JourneyOut,
    summary="Update draft or paused journey",
    responses=error_responses(404, 409, 422, 500),
)
def update_journey(journey_id: str, payload: JourneyUpdateIn, db: Session = Depends(get_db)):
    journey = _journey_or_404(db, journey_id)
    if journey.status not in _EDITABLE_STATUSES:
        raise HTTPException(status_code=409, detail="Pause the journey before editing it")

    if payload.name is not None:
        journey.name = payload.name.strip()
    if payload.description is not None:
        journey.description = payload.description
    if payload.timezone is not None:
        journey.timezone = payload.timezone
    if payload.nodes is not None or payload.edges is not None:
        definition = dict(journey.definition_json or {})
        if payload.nodes is not None:
            definition["nodes"] = payload.nodes
        if payload.edges is not None:
            definition["edges"] = payload.edges
        journey.definition_json = definition
    if payload.settings is not None:
        journey.settings_json = payload.settings.model_dump(by_alias=True, exclude_none=True)

    db.commit()
    db.refresh(journey)
    return _journey_out(journey)


@router.post(
    "/{journey_id}/publish",
    response_model=JourneyOut,
    summary="Validate and publish journey",
    responses=error_responses(404, 409, 422, 500),
)
def publish(journey_id: str, db: Session = Depends(get_db)):
    journey = _journey_or_404(db, journey_id)
    if journey.status == "active":
        raise HTTPException(status_code=409, detail="Journey is already published and active")
    # JourneyValidationError surfaces as a 422 with one detail per issue
    publish_journey(db, journey, now=utcnow())
    db.commit()
    db.refresh(journey)
    return _journey_out(journey)


@router.post(
    "/{journey_id}/pause",
    response_model=JourneyOut,
    summary="Pause journey",
    responses=error_responses(404, 409, 500),
)
def pause(journey_id: str, db: Session = Depends(get_db)):
    journey = _journey_or_404(db, journey_id)
    if journey.status != "active":
        raise HTTPException(status_code=409, detail="Only active journeys can be paused")
    journey.status = "paused"
    db.commit()
    db.refresh(journey)
    return _journey_out(journey)


@router.post(
    "/{journey_id}/resume",
    response_model=JourneyOut,
    summary="Resume paused journey",
    responses=error_responses(404, 409, 500),
)
def resume(journey_id: str, db: Session = Depends(get_db)):
    journey = _journey_or_404(db, journey_id)
    if journey.status != "paused" or journey.version < 1:
        raise HTTPException(status_code=409, detail="Only paused, published journeys can be resumed")
    journey.status = "active"
    db.commit()
    db.refresh(journey)
    return _journey_out(journey)


@router.post(
    "/{journey_id}/enroll",
    response_model=ManualEnrollOut,
    summary="Enroll one customer manually",
    responses=error_responses(404, 409, 422, 500),
)
def enroll_customer(journey_id: str, payload: ManualEnrollIn, db: Session = Depends(get_db)):
    journey = _journey_or_404(db, journey_id)
    if journey.status != "active":
        raise HTTPException(status_code=409, detail="Journey is not accepting enrollments")

    now = utcnow()
    graph = published_graph(db, journey_id=journey.id, version=journey.version)
    event = NormalizedEvent(
        type="manual",
        occurred_at=now,
        customer_id=payload.customer_id,
        payload={**payload.payload, "journeyId": journey.id},
        idempotency_key=payload.idempotency_key,
    )
    decision = try_enroll(
        db,
        journey=journey,
        graph=graph,
        customer_id=payload.customer_id,
        trigger_key=payload.idempotency_key or f"manual:{uuid.uuid4()}",
        event=event,
        now=now,
    )
    db.commit()
    if decision.enrollment is None:
        return ManualEnrollOut(enrolled=False, skipped_reason=decision.skipped_reason)
    db.refresh(decision.enrollment)
    return ManualEnrollOut(enrolled=True, enrollment=enrollment_out(decision.enrollment))


@router.post(
    "/{journey_id}/nodes/{node_id}/audience-preview",
    response_model=AudiencePreviewOut,
    summary="Count known customers matching a condition node",
    responses=error_responses(400, 404, 422, 500),
)
def audience_preview(journey_id: str, node_id: str, db: Session = Depends(get_db)):
    journey = _journey_or_404(db, journey_id)
    graph = compile_journey(journey.definition_json)
    node = graph.nodes.get(node_id)
    if node is None:
        raise HTTPException(status_code=404, detail="Node not found")
    if node.type != "condition":
        raise HTTPException(status_code=400, detail="Audience preview is only available for condition nodes")
    if isinstance(node.config, ExperimentConditionConfig):
        raise HTTPException(status_code=400, detail="A/B test nodes split by assignment, not by customer data")

    now = utcnow()
    scope = event_scope(node.config, now=now)
    customer_ids = db.execute(select(CustomerProfile.id).order_by(CustomerProfile.id.asc())).scalars().all()
    split = audience_split(
        node.config,
        (build_snapshot(db, customer_id=customer_id, now=now, scope=scope) for customer_id in customer_ids),
        now=now,
    )
    return AudiencePreviewOut(
        journey_id=journey.id,
        node_id=node.id,
        total=split.total,
        matched=split.matched,
        unmatched=split.unmatched,
        data_errors=split.data_errors,
    )


@router.get(
    "/{journey_id}/enrollments",
    response_model=EnrollmentListOut,
    summary="List journey enrollments",
    responses=error_responses(404, 422, 500),
)
def list_journey_enrollments(
    journey_id: str,
    status: EnrollmentStatus | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    _journey_or_404(db, journey_id)
    rows, total = list_enrollments(db, journey_id=journey_id, status=status, limit=limit, offset=offset)
    items = [enrollment_out(row) for row in rows]
    return EnrollmentListOut(
        items=items,
        pagination=PaginationMeta.for_page(items, total=total, limit=limit, offset=offset),
        status=status,
    )


@router.get(
    "/{journey_id}/activity",
    response_model=ActivityListOut,
    summary="List journey activity, newest first",
    responses=error_responses(404, 422, 500),
)
def list_activity(
    journey_id: str,
    event_type: str | None = Query(default=None, max_length=60),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    _journey_or_404(db, journey_id)
    rows, total = list_journey_activity(
        db,
        journey_id=journey_id,
        limit=limit,
        offset=offset,
        event_type=event_type.strip() if event_type else None,
    )
    return activity_page(rows, total=total, limit=limit, offset=offset)


@router.get(
    "/{journey_id}/analytics",
    response_model=JourneyAnalyticsOut,
    summary="Journey analytics",
    responses=error_responses(404, 500),
)
def analytics(journey_id: str, db: Session = Depends(get_db)):
    _journey_or_404(db, journey_id)
    return JourneyAnalyticsOut(**aggregate_journey_analytics(db, journey_id=journey_id))
