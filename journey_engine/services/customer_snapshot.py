import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.orm import Session

from journey_engine.core.clock import ensure_utc
from journey_engine.core.config import settings
from journey_engine.core.observability import log_event
from journey_engine.models.customer import CustomerEvent, CustomerProfile, SegmentMembership
from journey_engine.models.enrollment import JourneyEnrollment
from journey_engine.models.messaging import OutboundMessage
from journey_engine.schemas.journey_config import EventConditionConfig, FormulaConditionConfig, GoalConfig
from journey_engine.services.delay_scheduler import CustomerContext
from journey_engine.services.formula import counted_events


_ENGAGED_OUTCOMES = ("read", "replied", "button_clicked")


@dataclass(frozen=True)
class EventScope:
    """Which stored events a snapshot loads: everything since `since`, optionally only some names."""

    since: datetime
    names: tuple[str, ...] | None = None


def event_scope(config: Any, *, now: datetime, entered_at: datetime | None = None) -> EventScope:
    if isinstance(config, EventConditionConfig):
        rule = config.event_config
        return EventScope(since=now - rule.time_window.to_timedelta(), names=(rule.event_name,))
    if isinstance(config, FormulaConditionConfig):
        names, days = counted_events(config.formula_expression)
        return EventScope(since=now - timedelta(days=days), names=tuple(sorted(names)))
    if isinstance(config, GoalConfig) and entered_at is not None:
        return EventScope(since=min(ensure_utc(entered_at), now))
    return EventScope(since=now - timedelta(days=settings.snapshot_event_lookback_days))


def get_profile(db: Session, customer_id: str) -> CustomerProfile | None:
    return db.get(CustomerProfile, customer_id)


def customer_attributes(profile: CustomerProfile | None, customer_id: str) -> dict[str, Any]:
    attributes = dict(profile.attributes_json or {}) if profile else {}
    attributes.update(
        {
            "id": customer_id,
            "phone": profile.phone if profile else None,
            "email": profile.email if profile else None,
            "timezone": profile.timezone if profile else None,
            "opted_out": bool(profile.opted_out) if profile else False,
        }
    )
    return attributes


def build_snapshot(
    db: Session,
    *,
    customer_id: str,
    now: datetime,
    trigger_payload: dict[str, Any] | None = None,
    scope: EventScope | None = None,
) -> dict[str, Any]:
    scope = scope or event_scope(None, now=now)
    profile = get_profile(db, customer_id)
    segments = db.execute(
        select(SegmentMembership.segment_id).where(SegmentMembership.customer_id == customer_id)
    ).scalars().all()
    query = select(CustomerEvent).where(
        CustomerEvent.customer_id == customer_id,
        CustomerEvent.occurred_at >= scope.since,
    )
    if scope.names is not None:
        query = query.where(CustomerEvent.event_name.in_(scope.names))
    limit = settings.snapshot_event_limit
    rows = db.execute(query.order_by(CustomerEvent.occurred_at.desc()).limit(limit)).scalars().all()
    if len(rows) >= limit:
        # the oldest events in scope are missing from this evaluation
        log_event(
            "snapshot_events_truncated",
            level=logging.WARNING,
            customer_id=customer_id,
            limit=limit,
            since=scope.since,
            names=list(scope.names) if scope.names is not None else None,
        )

    events = []
    latest_order: dict[str, Any] | None = None
    for row in rows:
        payload = row.payload_json if isinstance(row.payload_json, dict) else {}
        events.append(
            {
                "name": row.event_name,
                "type": row.event_type,
                "occurred_at": ensure_utc(row.occurred_at),
                "payload": payload,
            }
        )
        if latest_order is None and isinstance(payload.get("order"), dict):
            latest_order = payload["order"]

    trigger = trigger_payload if isinstance(trigger_payload, dict) else {}
    if isinstance(trigger.get("order"), dict):
        latest_order = trigger["order"]

    product = trigger.get("product") if isinstance(trigger.get("product"), dict) else None
    if product is None and latest_order:
        line_items = latest_order.get("line_items") or latest_order.get("lineItems")
        if isinstance(line_items, list) and line_items and isinstance(line_items[0], dict):
            product = line_items[0]

    return {
        "customer_id": customer_id,
        "customer": customer_attributes(profile, customer_id),
        "segments": list(segments),
        "events": events,
        "order": latest_order,
        "product": product,
        "event": trigger,
        "custom": trigger,
    }


def snapshot_for_enrollment(
    db: Session,
    enrollment: JourneyEnrollment,
    *,
    now: datetime,
    scope: EventScope | None = None,
) -> dict[str, Any]:
    return build_snapshot(
        db,
        customer_id=enrollment.customer_id,
        now=now,
        trigger_payload=trigger_payload(enrollment),
        scope=scope,
    )


def trigger_payload(enrollment: JourneyEnrollment) -> dict[str, Any]:
    context = enrollment.context_json if isinstance(enrollment.context_json, dict) else {}
    trigger = context.get("trigger") if isinstance(context.get("trigger"), dict) else {}
    payload = trigger.get("payload")
    return payload if isinstance(payload, dict) else {}


def delay_context(
    db: Session,
    enrollment: JourneyEnrollment,
    *,
    event_matched: bool = False,
    event_at: datetime | None = None,
    engaged_hours: tuple[int, ...] = (),
) -> CustomerContext:
    profile = get_profile(db, enrollment.customer_id)
    return CustomerContext(
        timezone=profile.timezone if profile else None,
        attributes=customer_attributes(profile, enrollment.customer_id),
        engaged_hours=engaged_hours,
        event_matched=event_matched,
        event_at=event_at,
    )


def engaged_hours(
    db: Session,
    *,
    customer_id: str,
    journey_id: str,
    zone: ZoneInfo,
    since: datetime,
) -> tuple[int, ...]:
    """Local hours of past engagement, for the customer or else journey-wide."""
    customer_rows = db.execute(
        select(OutboundMessage.outcome_at).where(
            OutboundMessage.customer_id == customer_id,
            OutboundMessage.outcome.in_(_ENGAGED_OUTCOMES),
            OutboundMessage.outcome_at >= since,
        )
    ).scalars().all()
    rows = customer_rows
    if not rows:
        rows = db.execute(
            select(OutboundMessage.outcome_at)
            .where(
                OutboundMessage.journey_id == journey_id,
                OutboundMessage.outcome.in_(_ENGAGED_OUTCOMES),
                OutboundMessage.outcome_at >= since,
            )
            .limit(5000)
        ).scalars().all()
    hours = []
    for value in rows:
        moment = ensure_utc(value)
        if moment is not None:
            hours.append(moment.astimezone(zone).hour)
    return tuple(hours)


def upsert_profile(
    db: Session,
    customer_id: str,
    *,
    phone: str | None = None,
    email: str | None = None,
    timezone: str | None = None,
    opted_out: bool | None = None,
    attributes: dict[str, Any] | None = None,
) -> tuple[CustomerProfile, bool]:
    """Create or merge a profile. Attributes merge key by key; returns (profile, changed)."""
    profile = get_profile(db, customer_id)
    created = profile is None
    if profile is None:
        profile = CustomerProfile(id=customer_id, opted_out=False, attributes_json={})
        db.add(profile)

    changed = created
    for field_name, value in (("phone", phone), ("email", email), ("timezone", timezone)):
        if value is not None and getattr(profile, field_name) != value:
            setattr(profile, field_name, value)
            changed = True
    if opted_out is not None and bool(profile.opted_out) != opted_out:
        profile.opted_out = opted_out
        changed = True
    if attributes:
        merged = dict(profile.attributes_json or {})
        if any(merged.get(key) != value for key, value in attributes.items()):
            merged.update(attributes)
            profile.attributes_json = merged
            changed = True
    db.flush()
    return profile, changed


def profile_fields_from_payload(customer: dict[str, Any]) -> dict[str, Any]:
    """Map an event's `customer` block onto upsert_profile keyword arguments."""
    opted_out = customer.get("optedOut", customer.get("opted_out"))
    attributes = customer.get("attributes") if isinstance(customer.get("attributes"), dict) else {}
    return {
        "phone": customer.get("phone"),
        "email": customer.get("email"),
        "timezone": customer.get("timezone"),
        "opted_out": bool(opted_out) if opted_out is not None else None,
        "attributes": attributes,
    }
