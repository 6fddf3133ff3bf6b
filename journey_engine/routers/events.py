from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from journey_engine.core.api_docs import error_responses
from journey_engine.core.clock import ensure_utc, utcnow
from journey_engine.core.deps import get_db
from journey_engine.core.observability import log_event
from journey_engine.models.customer import CustomerProfile
from journey_engine.schemas.event import (
    CustomerOut,
    CustomerUpsertIn,
    EventIn,
    EventIngestOut,
    MessagingWebhookIn,
    MessagingWebhookOut,
)
from journey_engine.services.action_dispatcher import record_delivery_outcome
from journey_engine.services.customer_snapshot import upsert_profile
from journey_engine.services.trigger_evaluator import NormalizedEvent, ingest_event, wake_waiting_enrollments

router = APIRouter(prefix="/events", tags=["events"])
webhooks_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
customers_router = APIRouter(prefix="/customers", tags=["customers"])


def _customer_out(profile: CustomerProfile, *, resumed: int = 0) -> CustomerOut:
    return CustomerOut(
        id=profile.id,
        phone=profile.phone,
        email=profile.email,
        timezone=profile.timezone,
        opted_out=bool(profile.opted_out),
        attributes=profile.attributes_json if isinstance(profile.attributes_json, dict) else {},
        resumed=resumed,
    )


@router.post(
    "",
    response_model=EventIngestOut,
    summary="Ingest a customer event",
    responses=error_responses(422, 500),
)
def ingest(payload: EventIn, db: Session = Depends(get_db)):
    now = utcnow()
    event = NormalizedEvent(
        type=payload.type,
        occurred_at=ensure_utc(payload.occurred_at) or now,
        customer_id=payload.customer_id,
        event_name=payload.event_name,
        payload=payload.payload,
        idempotency_key=payload.idempotency_key,
    )
    result = ingest_event(db, event, now=now)
    db.commit()
    log_event(
        "event_ingested",
        event_id=result.event_id,
        event_type=event.type,
        event_name=event.name,
        duplicate=result.duplicate,
        enrollments_created=result.enrollments_created,
        resumed=result.resumed,
    )
    return EventIngestOut(
        event_id=result.event_id,
        duplicate=result.duplicate,
        enrollments_created=result.enrollments_created,
        enrollments_skipped=result.enrollments_skipped,
        resumed=result.resumed,
        enrollment_ids=list(result.enrollment_ids),
    )


@webhooks_router.post(
    "/messaging",
    response_model=MessagingWebhookOut,
    summary="Receive a messaging provider delivery outcome",
    responses=error_responses(404, 422, 500),
)
def messaging_webhook(payload: MessagingWebhookIn, db: Session = Depends(get_db)):
    message, changed = record_delivery_outcome(
        db,
        provider_message_id=payload.message_id,
        outcome=payload.outcome,
        now=utcnow(),
        button_id=payload.button_id,
    )
    if message is None:
        raise HTTPException(status_code=404, detail="Outbound message not found")
    db.commit()
    return MessagingWebhookOut(
        message_id=payload.message_id,
        outcome=message.outcome,
        recorded=changed,
        enrollment_id=message.enrollment_id,
    )


@customers_router.put(
    "/{customer_id}",
    response_model=CustomerOut,
    summary="Create or update a customer profile",
    responses=error_responses(422, 500),
)
def upsert_customer(customer_id: str, payload: CustomerUpsertIn, db: Session = Depends(get_db)):
    now = utcnow()
    profile, changed = upsert_profile(
        db,
        customer_id,
        phone=payload.phone,
        email=payload.email,
        timezone=payload.timezone,
        opted_out=payload.opted_out,
        attributes=payload.attributes,
    )
    resumed = 0
    if changed:
        resumed = wake_waiting_enrollments(db, customer_id=customer_id, now=now, profile_changed=True)
    db.commit()
    db.refresh(profile)
    return _customer_out(profile, resumed=resumed)
