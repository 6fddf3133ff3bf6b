import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from journey_engine.core.clock import ensure_utc
from journey_engine.core.errors import ConfigurationError
from journey_engine.core.observability import log_event
from journey_engine.db.upsert import insert_ignoring_conflicts
from journey_engine.models.customer import CustomerEvent, SegmentMembership
from journey_engine.models.enrollment import JourneyEnrollment
from journey_engine.models.journey import Journey
from journey_engine.schemas.journey_config import (
    ManualTriggerConfig,
    ScheduleTriggerConfig,
    SegmentTriggerConfig,
    ShopifyEventTriggerConfig,
    WaitForAttributeDelay,
    WaitForEventDelay,
    parse_hhmm,
)
from journey_engine.services.condition_evaluator import evaluate
from journey_engine.services.customer_snapshot import profile_fields_from_payload, upsert_profile
from journey_engine.services.delay_scheduler import resolve_timezone
from journey_engine.services.enrollment_store import create_enrollment
from journey_engine.services.journey_graph import JourneyGraph
from journey_engine.services.journey_service import active_journeys, max_enrollments, published_graph


EVENT_TYPES = ("segment_joined", "segment_exited", "shopify_event", "schedule_tick", "manual")


@dataclass(frozen=True)
class NormalizedEvent:
    type: str
    occurred_at: datetime
    customer_id: str | None = None
    event_name: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    idempotency_key: str | None = None

    @property
    def name(self) -> str:
        return str(self.event_name or self.payload.get("eventName") or self.payload.get("event_name") or self.type).strip()


@dataclass(frozen=True)
class EnrollDecision:
    enrollment: JourneyEnrollment | None
    skipped_reason: str | None = None


@dataclass(frozen=True)
class IngestResult:
    event_id: str
    duplicate: bool
    enrollments_created: int
    enrollments_skipped: int
    resumed: int
    enrollment_ids: tuple[str, ...] = ()


def trigger_matches(pattern: str, event_name: str) -> bool:
    trigger = (pattern or "").strip().lower()
    event = (event_name or "").strip().lower()
    if not trigger or not event:
        return False
    if trigger == "*" or trigger == event:
        return True
    if "*" in trigger:
        regex = "^" + re.escape(trigger).replace("\\*", ".*") + "$"
        return re.match(regex, event) is not None
    return False


def schedule_is_due(config: ScheduleTriggerConfig, moment: datetime, *, journey_timezone: str | None = None) -> bool:
    zone = resolve_timezone(config.timezone, None, journey_timezone)
    local = moment.astimezone(zone)
    hour, minute = parse_hhmm(config.time_of_day)
    if (local.hour, local.minute) != (hour, minute):
        return False
    if config.cadence == "weekly":
        # daysOfWeek counts from 0 = Sunday
        return (local.weekday() + 1) % 7 in config.days_of_week
    if config.cadence == "monthly":
        return local.day == config.day_of_month
    return True


def journey_trigger_matches(journey: Journey, graph: JourneyGraph, event: NormalizedEvent) -> bool:
    config = graph.trigger.config
    payload = event.payload
    if isinstance(config, SegmentTriggerConfig):
        segment_id = payload.get("segmentId", payload.get("segment_id"))
        return event.type == config.trigger_type and str(segment_id or "") == config.segment_id
    if isinstance(config, ShopifyEventTriggerConfig):
        if event.type != "shopify_event" or not trigger_matches(config.event_name, event.name):
            return False
        if config.filters is None or config.filters.is_empty():
            return True
        # bare filter properties read from the event payload
        return evaluate(config.filters, {"customer": payload, "event": payload})
    if isinstance(config, ScheduleTriggerConfig):
        return event.type == "schedule_tick" and schedule_is_due(
            config, event.occurred_at, journey_timezone=journey.timezone
        )
    if isinstance(config, ManualTriggerConfig):
        target = payload.get("journeyId", payload.get("journey_id"))
        return event.type == "manual" and str(target or "") == journey.id
    raise ConfigurationError(f"Unsupported trigger config {type(config).__name__}")


def trigger_audience(db: Session, journey: Journey, graph: JourneyGraph, event: NormalizedEvent) -> list[str]:
    listed = event.payload.get("customerIds", event.payload.get("customer_ids"))
    if isinstance(listed, list) and listed:
        return list(dict.fromkeys(str(item) for item in listed if str(item).strip()))
    config = graph.trigger.config
    if isinstance(config, ScheduleTriggerConfig) and config.segment_id:
        return list(
            db.execute(
                select(SegmentMembership.customer_id)
                .where(SegmentMembership.segment_id == config.segment_id)
                .order_by(SegmentMembership.customer_id.asc())
            ).scalars().all()
        )
    return [event.customer_id] if event.customer_id else []


def trigger_event_key(journey: Journey, graph: JourneyGraph, event: NormalizedEvent, *, event_id: str) -> str:
    config = graph.trigger.config
    if isinstance(config, ScheduleTriggerConfig):
        zone = resolve_timezone(config.timezone, None, journey.timezone)
        return f"schedule:{journey.id}:{event.occurred_at.astimezone(zone).date().isoformat()}"[:160]
    return (event.idempotency_key or event_id)[:160]


def try_enroll(
    db: Session,
    *,
    journey: Journey,
    graph: JourneyGraph,
    customer_id: str,
    trigger_key: str,
    event: NormalizedEvent,
    now: datetime,
) -> EnrollDecision:
    config = graph.trigger.config
    occurred_at = event.occurred_at

    window = config.entry_window
    starts_at = ensure_utc(window.starts_at)
    ends_at = ensure_utc(window.ends_at)
    if (starts_at and occurred_at < starts_at) or (ends_at and occurred_at > ends_at):
        return EnrollDecision(enrollment=None, skipped_reason="outside_entry_window")

    existing = db.execute(
        select(JourneyEnrollment.status, JourneyEnrollment.entered_at, JourneyEnrollment.trigger_event_key).where(
            JourneyEnrollment.journey_id == journey.id,
            JourneyEnrollment.customer_id == customer_id,
        )
    ).all()
    if any(row.trigger_event_key == trigger_key for row in existing):
        return EnrollDecision(enrollment=None, skipped_reason="duplicate_trigger_event")

    frequency = config.entry_frequency
    if not frequency.allow_reentry and any(row.status != "exited" for row in existing):
        return EnrollDecision(enrollment=None, skipped_reason="already_enrolled")
    if frequency.allow_reentry and frequency.cooldown and existing:
        latest = max(ensure_utc(row.entered_at) for row in existing)
        if occurred_at - latest < frequency.cooldown.to_timedelta():
            return EnrollDecision(enrollment=None, skipped_reason="cooldown")
    if frequency.entry_limit and len(existing) >= frequency.entry_limit:
        return EnrollDecision(enrollment=None, skipped_reason="entry_limit_reached")

    capacity = max_enrollments(journey)
    if capacity is not None:
        total = int(
            db.execute(
                select(func.count(JourneyEnrollment.id)).where(JourneyEnrollment.journey_id == journey.id)
            ).scalar_one()
            or 0
        )
        if total >= capacity:
            return EnrollDecision(enrollment=None, skipped_reason="journey_capacity_reached")

    enrollment = create_enrollment(
        db,
        journey_id=journey.id,
        journey_version=journey.version,
        customer_id=customer_id,
        trigger_node_id=graph.trigger_node_id,
        trigger_event_key=trigger_key,
        context={
            "trigger": {
                "type": event.type,
                "name": event.name,
                "payload": event.payload,
                "occurred_at": occurred_at.isoformat(),
            }
        },
        now=now,
    )
    if enrollment is None:
        return EnrollDecision(enrollment=None, skipped_reason="duplicate_trigger_event")
    return EnrollDecision(enrollment=enrollment)


def enroll_for_event(
    db: Session,
    event: NormalizedEvent,
    *,
    event_id: str,
    now: datetime,
    journeys: list[Journey] | None = None,
) -> tuple[list[str], int]:
    """Create enrollments in every active journey whose trigger matches. Returns (ids, skipped)."""
    created: list[str] = []
    skipped = 0
    for journey in journeys if journeys is not None else active_journeys(db):
        graph = published_graph(db, journey_id=journey.id, version=journey.version)
        if not journey_trigger_matches(journey, graph, event):
            continue
        key = trigger_event_key(journey, graph, event, event_id=event_id)
        for customer_id in trigger_audience(db, journey, graph, event):
            decision = try_enroll(
                db,
                journey=journey,
                graph=graph,
                customer_id=customer_id,
                trigger_key=key,
                event=event,
                now=now,
            )
            if decision.enrollment is None:
                skipped += 1
                log_event(
                    "enrollment_skipped",
                    level=logging.DEBUG,
                    journey_id=journey.id,
                    customer_id=customer_id,
                    reason=decision.skipped_reason,
                )
                continue
            created.append(decision.enrollment.id)
    return created, skipped


def ingest_event(db: Session, event: NormalizedEvent, *, now: datetime) -> IngestResult:
    """Store one normalized event and apply every side effect it has.

    Duplicate idempotency keys are no-ops. The caller commits.
    """
    if event.idempotency_key:
        existing_id = db.execute(
            select(CustomerEvent.id).where(CustomerEvent.idempotency_key == event.idempotency_key)
        ).scalar_one_or_none()
        if existing_id is not None:
            return IngestResult(
                event_id=existing_id,
                duplicate=True,
                enrollments_created=0,
                enrollments_skipped=0,
                resumed=0,
            )

    event_id = str(uuid.uuid4())
    written = insert_ignoring_conflicts(
        db,
        CustomerEvent,
        {
            "id": event_id,
            "customer_id": event.customer_id,
            "event_type": event.type,
            "event_name": event.name[:120],
            "payload_json": event.payload,
            "idempotency_key": event.idempotency_key,
            "occurred_at": event.occurred_at,
        },
        index_elements=["idempotency_key"],
    )
    if not written:
        existing_id = db.execute(
            select(CustomerEvent.id).where(CustomerEvent.idempotency_key == event.idempotency_key)
        ).scalar_one()
        return IngestResult(event_id=existing_id, duplicate=True, enrollments_created=0, enrollments_skipped=0, resumed=0)

    profile_changed = False
    customer_block = event.payload.get("customer")
    if event.customer_id and isinstance(customer_block, dict):
        _, profile_changed = upsert_profile(db, event.customer_id, **profile_fields_from_payload(customer_block))

    if event.customer_id and event.type in ("segment_joined", "segment_exited"):
        _apply_segment_change(db, event, now=now)

    created, skipped = enroll_for_event(db, event, event_id=event_id, now=now)

    resumed = 0
    if event.customer_id:
        resumed = wake_waiting_enrollments(
            db,
            customer_id=event.customer_id,
            now=now,
            event=event,
            event_id=event_id,
            profile_changed=profile_changed,
        )

    return IngestResult(
        event_id=event_id,
        duplicate=False,
        enrollments_created=len(created),
        enrollments_skipped=skipped,
        resumed=resumed,
        enrollment_ids=tuple(created),
    )


def wake_waiting_enrollments(
    db: Session,
    *,
    customer_id: str,
    now: datetime,
    event: NormalizedEvent | None = None,
    event_id: str | None = None,
    profile_changed: bool = False,
) -> int:
    """Wake this customer's enrollments parked on wait_for_event / wait_for_attribute delays or pending goals."""
    waiting = db.execute(
        select(JourneyEnrollment).where(
            JourneyEnrollment.customer_id == customer_id,
            JourneyEnrollment.status.in_(("active", "waiting")),
        )
    ).scalars().all()

    woken = 0
    for enrollment in waiting:
        graph = published_graph(db, journey_id=enrollment.journey_id, version=enrollment.journey_version)
        node = graph.nodes.get(enrollment.current_node_id)
        if node is None or node.type not in ("delay", "goal"):
            continue
        context = dict(enrollment.context_json or {})
        if node.type == "goal":
            # goal criteria read events and profile state, so any change is worth a re-check
            if node.config.goal_type == "journey_completion" or (event is None and not profile_changed):
                continue
        elif isinstance(node.config, WaitForEventDelay):
            if event is None or not _event_satisfies_wait(node.config, event, enrollment):
                continue
            context["resume"] = {
                "node_id": node.id,
                "event_id": event_id,
                "occurred_at": event.occurred_at.isoformat(),
            }
        elif isinstance(node.config, WaitForAttributeDelay):
            if not profile_changed:
                continue
        else:
            continue

        result = db.execute(
            update(JourneyEnrollment)
            .where(
                JourneyEnrollment.id == enrollment.id,
                JourneyEnrollment.version == enrollment.version,
                JourneyEnrollment.status.in_(("active", "waiting")),
            )
            .values(wake_at=now, context_json=context, version=JourneyEnrollment.version + 1)
            .execution_options(synchronize_session=False)
        )
        woken += int(result.rowcount or 0)
    return woken


def _event_satisfies_wait(config: WaitForEventDelay, event: NormalizedEvent, enrollment: JourneyEnrollment) -> bool:
    if not trigger_matches(config.event_name, event.name):
        return False
    entered = ensure_utc(enrollment.node_entered_at)
    if entered is not None:
        if event.occurred_at < entered:
            return False
        if event.occurred_at > entered + config.max_wait_time.to_timedelta():
            return False
    if config.event_filters is None or config.event_filters.is_empty():
        return True
    return evaluate(config.event_filters, {"customer": event.payload, "event": event.payload})


def _apply_segment_change(db: Session, event: NormalizedEvent, *, now: datetime) -> None:
    segment_id = str(event.payload.get("segmentId", event.payload.get("segment_id")) or "").strip()
    if not segment_id:
        return
    if event.type == "segment_joined":
        insert_ignoring_conflicts(
            db,
            SegmentMembership,
            {
                "id": str(uuid.uuid4()),
                "segment_id": segment_id,
                "customer_id": event.customer_id,
                "joined_at": event.occurred_at or now,
            },
            index_elements=["segment_id", "customer_id"],
        )
    else:
        db.execute(
            delete(SegmentMembership).where(
                SegmentMembership.segment_id == segment_id,
                SegmentMembership.customer_id == event.customer_id,
            )
        )
