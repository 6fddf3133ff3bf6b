import logging
import uuid
from datetime import datetime, time, timedelta
from typing import Any
from zoneinfo import ZoneInfo

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from journey_engine.core.clock import ensure_utc
from journey_engine.core.config import settings
from journey_engine.core.errors import ConfigurationError, short_error
from journey_engine.core.observability import log_event
from journey_engine.models.enrollment import JourneyEnrollment
from journey_engine.models.journey import Journey
from journey_engine.models.messaging import OutboundMessage
from journey_engine.schemas.journey_config import (
    TEMPLATE_VAR_RE,
    AddTagActionConfig,
    SendWindow,
    UpdatePropertyActionConfig,
    WhatsAppActionConfig,
    parse_hhmm,
    placeholder_names,
)
from journey_engine.services.activity_logger import append_activity
from journey_engine.services.condition_evaluator import resolve_path
from journey_engine.services.customer_snapshot import get_profile, snapshot_for_enrollment, upsert_profile
from journey_engine.services.delay_scheduler import CustomerContext, at_local, resolve_timezone
from journey_engine.services.journey_graph import JourneyGraph, JourneyNode
from journey_engine.services.messaging_provider import MessageSendRequest, get_messaging_provider
from journey_engine.services.rate_limiter import (
    customer_send_limits,
    journey_send_limits,
    release_permits,
    try_acquire,
)
from journey_engine.services.transitions import Advance, Exit, Transition, Wait
from journey_engine.services.trigger_evaluator import wake_waiting_enrollments


# Later outcomes supersede earlier ones; a webhook never moves a message backward.
OUTCOME_RANK = {
    "sent": 0,
    "delivered": 1,
    "read": 2,
    "replied": 3,
    "button_clicked": 3,
    "failed": 3,
    "unreachable": 3,
}
WEBHOOK_OUTCOMES = ("delivered", "read", "replied", "failed", "unreachable", "button_clicked")
_FINAL_OUTCOMES = frozenset({"failed", "unreachable", "replied", "button_clicked"})


def resolve_variables(config: WhatsAppActionConfig, snapshot: dict[str, Any]) -> dict[str, str]:
    """Concrete value for every mapped variable, falling back when the source is empty."""
    values: dict[str, str] = {}
    for mapping in config.variables:
        value: Any = None
        if mapping.data_source != "static" and mapping.property.strip():
            value = resolve_path(snapshot.get(mapping.data_source), mapping.property.strip())
        if value is None or (isinstance(value, str) and not value.strip()) or isinstance(value, (dict, list)):
            value = mapping.fallback_value
        values[mapping.variable] = str(value)
    return values


def render_message(body: str, values: dict[str, str]) -> str:
    missing = sorted({name for name in placeholder_names(body) if name not in values})
    if missing:
        raise ConfigurationError(f"Template variables without a value: {', '.join(missing)}")
    return TEMPLATE_VAR_RE.sub(lambda match: values[match.group(1)], body)


def send_window_opening(window: SendWindow, now: datetime, zone: ZoneInfo) -> datetime:
    """Earliest moment at or after now inside the send window."""
    if not window.enabled:
        return now
    start = time(*parse_hhmm(window.start_time))
    end = time(*parse_hhmm(window.end_time))
    local_today = now.astimezone(zone).date()
    for offset in range(8):
        day = local_today + timedelta(days=offset)
        # daysOfWeek counts from 0 = Sunday
        if (day.weekday() + 1) % 7 not in window.days_of_week:
            continue
        opening = at_local(day, start.hour, start.minute, zone)
        closing = at_local(day, end.hour, end.minute, zone)
        if opening <= now < closing:
            return now
        if opening > now:
            return opening
    raise ConfigurationError("sendWindow has no opening in the next week")


def outcome_resolves_wait(config: WhatsAppActionConfig, outcome: str, button_id: str | None = None) -> bool:
    if outcome in _FINAL_OUTCOMES:
        return True
    path = config.exit_paths.for_outcome(outcome, button_id)
    if path is not None and path.enabled:
        return True
    paths = config.exit_paths
    buttons = any(item.enabled for item in paths.button_clicked)
    if outcome == "delivered":
        return not (paths.read.enabled or paths.replied.enabled or buttons)
    if outcome == "read":
        return not (paths.replied.enabled or buttons)
    return False


def outcome_transition(
    graph: JourneyGraph,
    node: JourneyNode,
    config: WhatsAppActionConfig,
    outcome: str,
    *,
    button_id: str | None = None,
    data: dict[str, Any] | None = None,
) -> Transition:
    payload: dict[str, Any] = {"outcome": outcome, **(data or {})}
    if button_id:
        payload["button_id"] = button_id

    path = config.exit_paths.for_outcome(outcome, button_id)
    if path is None or not path.enabled:
        # no enabled exit path: the default continue edge
        return Advance(
            handle="delivered",
            next_node_id=graph.require_target(node.id, "delivered"),
            event_type="message_outcome",
            data=payload,
        )
    if path.action.type == "exit":
        return Exit(reason=f"exit_path:{outcome}", data=payload)
    if path.action.type == "branch":
        handle = (path.action.branch_id or "").strip()
    else:
        handle = f"button:{button_id}" if outcome == "button_clicked" else outcome
        if graph.target(node.id, handle) is None:
            handle = "delivered"
    return Advance(
        handle=handle,
        next_node_id=graph.require_target(node.id, handle),
        event_type="message_outcome",
        data=payload,
    )


def fallback_transition(
    graph: JourneyGraph,
    node: JourneyNode,
    config: WhatsAppActionConfig | AddTagActionConfig | UpdatePropertyActionConfig,
    *,
    data: dict[str, Any] | None = None,
) -> Transition:
    payload = {"fallback_action": config.failure_handling.fallback_action, **(data or {})}
    fallback = config.failure_handling.fallback_action
    if fallback == "exit":
        return Exit(reason="retries_exhausted", data=payload)
    handle = "failed" if fallback == "branch" else "delivered"
    return Advance(
        handle=handle,
        next_node_id=graph.require_target(node.id, handle),
        event_type="retry_fallback",
        data=payload,
    )


def current_node_state(enrollment: JourneyEnrollment) -> dict[str, Any]:
    context = enrollment.context_json if isinstance(enrollment.context_json, dict) else {}
    state = context.get("node_state")
    if isinstance(state, dict) and state.get("node_id") == enrollment.current_node_id:
        return state
    return {}


def run_action_step(
    db: Session,
    *,
    journey: Journey,
    graph: JourneyGraph,
    enrollment: JourneyEnrollment,
    node: JourneyNode,
    now: datetime,
) -> Transition:
    """One pass over an action node: send, defer, or route a known outcome.

    The permit and a pending message row are committed before the provider call and the
    result in a second commit, so a stale transition never loses a send and a re-run of
    the same visit routes the existing message instead of sending again. When the provider
    raises, the message is marked `error` and its permit returned before the error propagates.
    """
    config: WhatsAppActionConfig = node.config
    state = current_node_state(enrollment)
    if state.get("outbound_message_id"):
        return _await_outcome(db, graph=graph, node=node, config=config, state=state, now=now)

    previous = _message_for_visit(db, enrollment, node)
    if previous is not None:
        return _resume_visit(db, graph=graph, node=node, config=config, message=previous, now=now)

    snapshot = snapshot_for_enrollment(db, enrollment, now=now)
    customer = snapshot["customer"]
    if customer.get("opted_out") and config.skip_if_opted_out:
        return Advance(
            handle="delivered",
            next_node_id=graph.require_target(node.id, "delivered"),
            event_type="message_skipped",
            data={"reason": "opted_out"},
        )

    if config.send_window.enabled:
        zone = resolve_timezone(
            config.send_window.timezone,
            CustomerContext(timezone=customer.get("timezone")),
            journey.timezone,
        )
        opening = send_window_opening(config.send_window, now, zone)
        if opening > now:
            return Wait(
                wake_at=opening,
                event_type="send_deferred",
                data={"reason": "outside_send_window", "opens_at": opening.isoformat()},
            )

    values = resolve_variables(config, snapshot)
    content = render_message(config.body, values)
    provider = get_messaging_provider(config.provider)
    attempt = int(enrollment.failures.get(node.id, {}).get("attempts", 0)) + 1

    recipient = str(customer.get("phone") or "").strip()
    if not recipient:
        message = _record_message(
            db,
            enrollment=enrollment,
            node=node,
            config=config,
            provider=provider.name,
            recipient=None,
            content=content,
            status="not_sent",
            attempt=attempt,
            now=now,
        )
        message.outcome = "unreachable"
        message.outcome_at = now
        return outcome_transition(
            graph,
            node,
            config,
            "unreachable",
            data={"outbound_message_id": message.id, "reason": "missing_phone"},
        )

    limits = journey_send_limits(
        journey.id,
        max_per_day=config.rate_limiting.max_per_day,
        max_per_week=config.rate_limiting.max_per_week,
    ) + customer_send_limits(enrollment.customer_id, max_per_day=settings.customer_daily_message_cap)
    decision = try_acquire(db, limits, now=now, enrollment_id=enrollment.id)
    if not decision.granted:
        log_event(
            "rate_limit_denied",
            journey_id=journey.id,
            enrollment_id=enrollment.id,
            node_id=node.id,
            scope_key=decision.scope_key,
            window=decision.window,
            retry_at=decision.retry_at,
        )
        return Wait(
            wake_at=decision.retry_at or now + timedelta(hours=1),
            event_type="rate_limited",
            data={"scope_key": decision.scope_key, "window": decision.window},
        )

    message = _record_message(
        db,
        enrollment=enrollment,
        node=node,
        config=config,
        provider=provider.name,
        recipient=recipient,
        content=content,
        status="pending",
        attempt=attempt,
        now=now,
    )
    message_id = message.id
    # releases the rate-limit scope locks before the provider call
    db.commit()

    try:
        result = provider.send_message(
            MessageSendRequest(
                recipient=recipient,
                template_id=config.template_id,
                content=content,
                variables=values,
                reference=enrollment.id,
            )
        )
    except Exception as exc:
        db.rollback()
        message = db.get(OutboundMessage, message_id)
        message.status = "error"
        message.error_message = short_error(exc)
        release_permits(db, decision.permit_ids)
        db.commit()
        raise

    message = db.get(OutboundMessage, message_id)
    message.provider = result.provider
    message.provider_message_id = result.message_id
    message.status = result.status
    message.error_message = short_error(result.error) if result.error else None
    if result.status == "failed":
        message.outcome = "failed"
        message.outcome_at = now
    db.commit()

    if result.status == "failed":
        log_event(
            "message_send_failed",
            level=logging.WARNING,
            journey_id=journey.id,
            enrollment_id=enrollment.id,
            node_id=node.id,
            provider=result.provider,
            error=result.error,
        )
        return outcome_transition(
            graph,
            node,
            config,
            "failed",
            data={"outbound_message_id": message.id, "error": short_error(result.error or "send failed")},
        )

    if config.exit_paths.sent.enabled:
        return outcome_transition(graph, node, config, "sent", data={"outbound_message_id": message.id})

    deadline = now + timedelta(hours=settings.action_outcome_timeout_hours)
    return Wait(
        wake_at=deadline,
        event_type="message_sent",
        data={
            "outbound_message_id": message.id,
            "provider": result.provider,
            "provider_message_id": result.message_id,
        },
        node_state={"outbound_message_id": message.id, "deadline": deadline.isoformat()},
    )


def run_profile_action(
    db: Session,
    *,
    graph: JourneyGraph,
    enrollment: JourneyEnrollment,
    node: JourneyNode,
    now: datetime,
) -> Transition:
    """Write a tag or a property onto the customer's profile and continue on the delivered edge.

    Both writes are idempotent. A change wakes this customer's enrollments that wait on the profile.
    """
    config = node.config
    if isinstance(config, AddTagActionConfig):
        profile = get_profile(db, enrollment.customer_id)
        tags = _profile_tags(profile.attributes_json if profile else None)
        if config.tag_name not in tags:
            tags.append(config.tag_name)
        _, changed = upsert_profile(db, enrollment.customer_id, attributes={"tags": tags})
        event_type = "tag_added"
        data: dict[str, Any] = {"tag_name": config.tag_name, "changed": changed}
    elif isinstance(config, UpdatePropertyActionConfig):
        _, changed = upsert_profile(
            db, enrollment.customer_id, attributes={config.property_key: config.property_value}
        )
        event_type = "property_updated"
        data = {"property_key": config.property_key, "property_value": config.property_value, "changed": changed}
    else:
        raise ConfigurationError(f"Unsupported action config {type(config).__name__}")

    if changed:
        data["resumed"] = wake_waiting_enrollments(db, customer_id=enrollment.customer_id, now=now, profile_changed=True)
    return Advance(
        handle="delivered",
        next_node_id=graph.require_target(node.id, "delivered"),
        event_type=event_type,
        data=data,
    )


def record_delivery_outcome(
    db: Session,
    *,
    provider_message_id: str,
    outcome: str,
    now: datetime,
    button_id: str | None = None,
) -> tuple[OutboundMessage | None, bool]:
    """Store a webhook outcome and wake the enrollment waiting on it.

    Returns the message (None when unknown) and whether the stored outcome changed.
    """
    message = db.execute(
        select(OutboundMessage).where(OutboundMessage.provider_message_id == provider_message_id)
    ).scalar_one_or_none()
    if message is None:
        return None, False

    current_rank = OUTCOME_RANK.get(message.outcome or "sent", 0)
    if outcome != "button_clicked" and message.outcome and OUTCOME_RANK[outcome] <= current_rank:
        return message, False

    message.outcome = outcome
    message.outcome_at = now
    if button_id:
        message.button_id = button_id

    enrollment = db.get(JourneyEnrollment, message.enrollment_id)
    if enrollment is None:
        return message, True

    if enrollment.status == "waiting" and enrollment.current_node_id == message.node_id:
        # the version bump makes an in-flight computation for the old outcome stale
        db.execute(
            update(JourneyEnrollment)
            .where(
                JourneyEnrollment.id == enrollment.id,
                JourneyEnrollment.status == "waiting",
                JourneyEnrollment.current_node_id == message.node_id,
            )
            .values(wake_at=now, version=JourneyEnrollment.version + 1)
            .execution_options(synchronize_session=False)
        )
    append_activity(
        db,
        enrollment=enrollment,
        node_id=message.node_id,
        event_type="message_outcome_received",
        data={"outcome": outcome, "button_id": button_id, "outbound_message_id": message.id},
        at=now,
    )
    return message, True


def _await_outcome(
    db: Session,
    *,
    graph: JourneyGraph,
    node: JourneyNode,
    config: WhatsAppActionConfig,
    state: dict[str, Any],
    now: datetime,
) -> Transition:
    message = db.get(OutboundMessage, state["outbound_message_id"])
    if message is None:
        raise ConfigurationError(f"Outbound message '{state['outbound_message_id']}' is missing")

    data = {"outbound_message_id": message.id}
    if message.outcome and outcome_resolves_wait(config, message.outcome, message.button_id):
        return outcome_transition(graph, node, config, message.outcome, button_id=message.button_id, data=data)

    deadline = ensure_utc(datetime.fromisoformat(state["deadline"]))
    if now >= deadline:
        if message.outcome and message.outcome != "sent":
            data["timed_out"] = True
            return outcome_transition(graph, node, config, message.outcome, button_id=message.button_id, data=data)
        return outcome_transition(graph, node, config, "timeout", data=data)

    return Wait(
        wake_at=deadline,
        event_type="awaiting_outcome",
        data={**data, "outcome": message.outcome},
        node_state=state,
    )


def _message_for_visit(db: Session, enrollment: JourneyEnrollment, node: JourneyNode) -> OutboundMessage | None:
    """The message already sent (or being sent) during the current visit to this node."""
    entered_at = ensure_utc(enrollment.node_entered_at)
    return db.execute(
        select(OutboundMessage)
        .where(
            OutboundMessage.enrollment_id == enrollment.id,
            OutboundMessage.node_id == node.id,
            OutboundMessage.sent_at >= entered_at,
            OutboundMessage.status != "error",
        )
        .order_by(OutboundMessage.sent_at.desc(), OutboundMessage.created_at.desc())
        .limit(1)
    ).scalar_one_or_none()


def _resume_visit(
    db: Session,
    *,
    graph: JourneyGraph,
    node: JourneyNode,
    config: WhatsAppActionConfig,
    message: OutboundMessage,
    now: datetime,
) -> Transition:
    deadline = ensure_utc(message.sent_at) + timedelta(hours=settings.action_outcome_timeout_hours)
    data = {"outbound_message_id": message.id}
    if message.status == "pending":
        # another worker is mid-send, or crashed there; never send twice
        if now >= deadline:
            return outcome_transition(graph, node, config, "timeout", data=data)
        return Wait(
            wake_at=min(now + timedelta(seconds=settings.engine_lease_seconds), deadline),
            event_type="awaiting_send",
            data=data,
        )
    if not message.outcome and config.exit_paths.sent.enabled:
        return outcome_transition(graph, node, config, "sent", data=data)
    state = {"outbound_message_id": message.id, "deadline": deadline.isoformat()}
    return _await_outcome(db, graph=graph, node=node, config=config, state=state, now=now)


def _record_message(
    db: Session,
    *,
    enrollment: JourneyEnrollment,
    node: JourneyNode,
    config: WhatsAppActionConfig,
    provider: str,
    recipient: str | None,
    content: str,
    status: str,
    attempt: int,
    now: datetime,
    provider_message_id: str | None = None,
    error: str | None = None,
) -> OutboundMessage:
    message = OutboundMessage(
        id=str(uuid.uuid4()),
        journey_id=enrollment.journey_id,
        enrollment_id=enrollment.id,
        node_id=node.id,
        customer_id=enrollment.customer_id,
        provider=provider,
        provider_message_id=provider_message_id,
        template_id=config.template_id,
        recipient=recipient,
        content=content,
        status=status,
        attempt=attempt,
        error_message=short_error(error) if error else None,
        sent_at=now,
    )
    db.add(message)
    db.flush()
    return message


def _profile_tags(attributes: dict[str, Any] | None) -> list[str]:
    value = (attributes or {}).get("tags")
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    if isinstance(value, list):
        return [str(item) for item in value]
    return []
