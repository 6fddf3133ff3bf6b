from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from journey_engine.models.customer import CustomerEvent, CustomerProfile, SegmentMembership
from journey_engine.models.enrollment import JourneyEnrollment
from journey_engine.models.journey import Journey
from journey_engine.services.customer_snapshot import upsert_profile
from journey_engine.services.engine import EngineScheduler
from journey_engine.services.journey_graph import parse_node_config
from journey_engine.services.journey_service import publish_journey, published_graph
from journey_engine.services.trigger_evaluator import (
    NormalizedEvent,
    ingest_event,
    schedule_is_due,
    trigger_matches,
    try_enroll,
    wake_waiting_enrollments,
)

# Monday
T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def _publish(
    db,
    trigger: dict,
    *,
    journey_id: str = "j-trigger",
    settings_json: dict | None = None,
    extra_nodes: list[dict] | None = None,
    extra_edges: list[dict] | None = None,
) -> Journey:
    nodes = [{"id": "t1", "type": "trigger", **trigger}, *(extra_nodes or [{"id": "g1", "type": "goal"}])]
    edges = extra_edges or [{"sourceNodeId": "t1", "targetNodeId": "g1"}]
    journey = Journey(
        id=journey_id,
        name=journey_id,
        status="draft",
        timezone="UTC",
        definition_json={"nodes": nodes, "edges": edges},
        settings_json=settings_json or {},
        version=0,
    )
    db.add(journey)
    db.flush()
    publish_journey(db, journey, now=T0 - timedelta(days=1))
    db.commit()
    return journey


def _segment_event(
    event_type: str,
    customer_id: str,
    *,
    at: datetime = T0,
    segment_id: str = "lapsed",
    payload: dict | None = None,
    idempotency_key: str | None = None,
) -> NormalizedEvent:
    return NormalizedEvent(
        type=event_type,
        occurred_at=at,
        customer_id=customer_id,
        payload={"segmentId": segment_id, **(payload or {})},
        idempotency_key=idempotency_key,
    )


def _enroll(db, journey: Journey, customer_id: str, key: str, *, at: datetime):
    graph = published_graph(db, journey_id=journey.id, version=journey.version)
    decision = try_enroll(
        db,
        journey=journey,
        graph=graph,
        customer_id=customer_id,
        trigger_key=key,
        event=_segment_event("segment_joined", customer_id, at=at),
        now=at,
    )
    db.commit()
    return decision


@pytest.mark.parametrize(
    ("pattern", "event_name", "expected"),
    [
        ("*", "anything", True),
        ("order_placed", "order_placed", True),
        ("Order_Placed", " order_placed ", True),
        ("order_*", "order_refunded", True),
        ("*_abandoned", "cart_abandoned", True),
        ("order_*", "cart_created", False),
        ("order.placed", "orderXplaced", False),
        ("", "order_placed", False),
    ],
)
def test_trigger_matches(pattern, event_name, expected):
    assert trigger_matches(pattern, event_name) is expected


def test_schedule_is_due_by_cadence():
    weekly = parse_node_config(
        "trigger", "schedule", {"cadence": "weekly", "daysOfWeek": [1, 3], "timeOfDay": "09:00", "timezone": "UTC"}
    )
    assert schedule_is_due(weekly, T0) is True
    assert schedule_is_due(weekly, T0 + timedelta(minutes=1)) is False
    assert schedule_is_due(weekly, T0 + timedelta(days=1)) is False
    assert schedule_is_due(weekly, T0 + timedelta(days=2)) is True

    monthly = parse_node_config("trigger", "schedule", {"cadence": "monthly", "dayOfMonth": 2, "timeOfDay": "09:00"})
    assert schedule_is_due(monthly, T0) is True
    assert schedule_is_due(monthly, T0 + timedelta(days=1)) is False

    lagos = parse_node_config("trigger", "schedule", {"timeOfDay": "10:00", "timezone": "Africa/Lagos"})
    assert schedule_is_due(lagos, T0) is True


def test_segment_joined_enrolls_and_records_membership(db):
    journey = _publish(db, {"subtype": "segment_joined", "config": {"segmentId": "lapsed"}})
    result = ingest_event(db, _segment_event("segment_joined", "cus-1"), now=T0)
    db.commit()

    assert result.duplicate is False
    assert result.enrollments_created == 1
    enrollment = db.get(JourneyEnrollment, result.enrollment_ids[0])
    assert enrollment.journey_id == journey.id
    assert enrollment.journey_version == 1
    assert enrollment.status == "active"
    assert enrollment.current_node_id == "t1"
    assert enrollment.context_json["trigger"]["payload"] == {"segmentId": "lapsed"}
    membership = db.execute(select(SegmentMembership)).scalar_one()
    assert (membership.segment_id, membership.customer_id) == ("lapsed", "cus-1")

    other_segment = ingest_event(db, _segment_event("segment_joined", "cus-2", segment_id="vip"), now=T0)
    assert other_segment.enrollments_created == 0


def test_segment_exited_removes_membership_and_triggers_exit_journeys(db):
    _publish(db, {"subtype": "segment_exited", "config": {"segmentId": "lapsed"}})
    ingest_event(db, _segment_event("segment_joined", "cus-1"), now=T0)
    db.commit()
    assert db.execute(select(SegmentMembership)).scalars().all() != []

    exited_at = T0 + timedelta(days=1)
    result = ingest_event(db, _segment_event("segment_exited", "cus-1", at=exited_at), now=exited_at)
    db.commit()
    assert result.enrollments_created == 1
    assert db.execute(select(SegmentMembership)).scalars().all() == []


def test_duplicate_idempotency_key_is_a_no_op(db):
    _publish(db, {"subtype": "segment_joined", "config": {"segmentId": "lapsed"}})
    first = ingest_event(db, _segment_event("segment_joined", "cus-1", idempotency_key="evt-1"), now=T0)
    db.commit()
    second = ingest_event(db, _segment_event("segment_joined", "cus-1", idempotency_key="evt-1"), now=T0)
    db.commit()

    assert first.enrollments_created == 1
    assert second.duplicate is True
    assert second.event_id == first.event_id
    assert second.enrollments_created == 0
    assert len(db.execute(select(CustomerEvent)).scalars().all()) == 1
    assert len(db.execute(select(JourneyEnrollment)).scalars().all()) == 1


def test_customer_already_in_journey_is_not_enrolled_again(db):
    journey = _publish(db, {"subtype": "segment_joined", "config": {"segmentId": "lapsed"}})
    assert _enroll(db, journey, "cus-1", "k1", at=T0).enrollment is not None
    assert _enroll(db, journey, "cus-1", "k1", at=T0).skipped_reason == "duplicate_trigger_event"
    assert _enroll(db, journey, "cus-1", "k2", at=T0 + timedelta(days=30)).skipped_reason == "already_enrolled"

    rejoined_at = T0 + timedelta(days=31)
    result = ingest_event(db, _segment_event("segment_joined", "cus-1", at=rejoined_at), now=rejoined_at)
    assert result.enrollments_created == 0
    assert result.enrollments_skipped == 1


def test_reentry_cooldown_and_entry_limit(db):
    journey = _publish(
        db,
        {
            "subtype": "segment_joined",
            "config": {
                "segmentId": "lapsed",
                "entryFrequency": {"allowReentry": True, "cooldown": {"value": 7, "unit": "days"}, "entryLimit": 2},
            },
        },
    )
    assert _enroll(db, journey, "cus-1", "k1", at=T0).enrollment is not None
    assert _enroll(db, journey, "cus-1", "k2", at=T0 + timedelta(days=1)).skipped_reason == "cooldown"
    assert _enroll(db, journey, "cus-1", "k3", at=T0 + timedelta(days=8)).enrollment is not None
    assert _enroll(db, journey, "cus-1", "k4", at=T0 + timedelta(days=20)).skipped_reason == "entry_limit_reached"


def test_journey_capacity_and_entry_window(db):
    journey = _publish(
        db,
        {
            "subtype": "segment_joined",
            "config": {"segmentId": "lapsed", "entryWindow": {"endsAt": "2026-03-10T00:00:00Z"}},
        },
        settings_json={"maxEnrollments": 1},
    )
    assert _enroll(db, journey, "cus-1", "k1", at=T0).enrollment is not None
    assert _enroll(db, journey, "cus-2", "k2", at=T0).skipped_reason == "journey_capacity_reached"
    assert _enroll(db, journey, "cus-3", "k3", at=T0 + timedelta(days=9)).skipped_reason == "outside_entry_window"


def test_shopify_event_trigger_wildcard_and_filters(db):
    _publish(
        db,
        {
            "subtype": "shopify_event",
            "config": {
                "eventName": "order_*",
                "filters": {
                    "conditions": [{"property": "total", "operator": "greater_than", "value": 50, "valueType": "number"}]
                },
            },
        },
    )
    small = ingest_event(
        db,
        NormalizedEvent(type="shopify_event", occurred_at=T0, customer_id="cus-1", event_name="order_placed", payload={"total": 20}),
        now=T0,
    )
    large = ingest_event(
        db,
        NormalizedEvent(type="shopify_event", occurred_at=T0, customer_id="cus-2", event_name="order_placed", payload={"total": 80}),
        now=T0,
    )
    db.commit()
    assert small.enrollments_created == 0
    assert large.enrollments_created == 1


def test_event_customer_block_updates_profile(db):
    ingest_event(
        db,
        _segment_event(
            "segment_joined",
            "cus-9",
            payload={"customer": {"phone": "+447700900123", "optedOut": True, "attributes": {"tier": "gold"}}},
        ),
        now=T0,
    )
    db.commit()
    profile = db.get(CustomerProfile, "cus-9")
    assert profile.phone == "+447700900123"
    assert profile.opted_out is True
    assert profile.attributes_json == {"tier": "gold"}


def test_schedule_tick_enrolls_segment_once_per_day(db):
    for customer_id in ("cus-1", "cus-2"):
        ingest_event(db, _segment_event("segment_joined", customer_id, segment_id="newsletter"), now=T0)
    _publish(
        db,
        {
            "subtype": "schedule",
            "config": {
                "cadence": "daily",
                "timeOfDay": "09:00",
                "segmentId": "newsletter",
                "entryFrequency": {"allowReentry": True},
            },
        },
    )

    tick = NormalizedEvent(type="schedule_tick", occurred_at=T0)
    first = ingest_event(db, tick, now=T0)
    second = ingest_event(db, tick, now=T0)
    off_schedule = ingest_event(db, NormalizedEvent(type="schedule_tick", occurred_at=T0 + timedelta(hours=1)), now=T0)
    db.commit()

    assert first.enrollments_created == 2
    assert second.enrollments_created == 0
    assert second.enrollments_skipped == 2
    assert off_schedule.enrollments_created == 0
    assert off_schedule.enrollments_skipped == 0


def test_manual_trigger_targets_one_journey(db):
    _publish(db, {"subtype": "manual", "config": {}}, journey_id="j-manual")
    _publish(db, {"subtype": "manual", "config": {}}, journey_id="j-other")
    result = ingest_event(
        db,
        NormalizedEvent(type="manual", occurred_at=T0, customer_id="cus-1", payload={"journeyId": "j-manual"}),
        now=T0,
    )
    db.commit()
    assert result.enrollments_created == 1
    assert db.get(JourneyEnrollment, result.enrollment_ids[0]).journey_id == "j-manual"


def test_profile_change_wakes_attribute_wait(db):
    _publish(
        db,
        {"subtype": "segment_joined", "config": {"segmentId": "lapsed"}},
        extra_nodes=[
            {
                "id": "d1",
                "type": "delay",
                "subtype": "wait_for_attribute",
                "config": {"attributePath": "tier", "targetValue": "gold", "maxWaitTime": {"value": 2, "unit": "days"}},
            },
            {"id": "g1", "type": "goal"},
        ],
        extra_edges=[
            {"sourceNodeId": "t1", "targetNodeId": "d1"},
            {"sourceNodeId": "d1", "targetNodeId": "g1"},
        ],
    )
    upsert_profile(db, "cus-1", attributes={"tier": "silver"})
    result = ingest_event(db, _segment_event("segment_joined", "cus-1"), now=T0)
    db.commit()
    scheduler = EngineScheduler(worker_id="worker-a")
    scheduler.tick(db, now=T0)

    # unrelated updates leave the wait alone
    assert wake_waiting_enrollments(db, customer_id="cus-1", now=T0 + timedelta(minutes=1)) == 0

    changed_at = T0 + timedelta(minutes=2)
    _, changed = upsert_profile(db, "cus-1", attributes={"tier": "gold"})
    assert changed is True
    assert wake_waiting_enrollments(db, customer_id="cus-1", now=changed_at, profile_changed=True) == 1
    db.commit()

    scheduler.tick(db, now=changed_at)
    db.expire_all()
    enrollment = db.get(JourneyEnrollment, result.enrollment_ids[0])
    assert enrollment.status == "completed"
    assert enrollment.current_node_id == "g1"
