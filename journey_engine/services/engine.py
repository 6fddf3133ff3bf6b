import logging
import traceback
from dataclasses import dataclass, replace
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from journey_engine.core.clock import ensure_utc, utcnow
from journey_engine.core.config import settings
from journey_engine.core.errors import ConfigurationError, TransientError, short_error
from journey_engine.core.id_utils import generate_shortuuid, generate_worker_id
from journey_engine.core.observability import correlation_scope, get_correlation_id, log_event
from journey_engine.models.enrollment import JourneyEnrollment
from journey_engine.models.journey import Journey
from journey_engine.schemas.journey_config import (
    ExperimentConditionConfig,
    GoalConfig,
    OptimalSendTimeDelay,
    WhatsAppActionConfig,
)
from journey_engine.services.action_dispatcher import fallback_transition, run_action_step, run_profile_action
from journey_engine.services.activity_logger import append_activity
from journey_engine.services.condition_evaluator import (
    evaluate_condition_node,
    goal_achieved,
    pick_variant,
    select_branch_handle,
)
from journey_engine.services.customer_snapshot import (
    delay_context,
    engaged_hours,
    event_scope,
    snapshot_for_enrollment,
)
from journey_engine.services.delay_scheduler import ResumeNow, TimeoutBranch, WakeAt, next_wake, resolve_timezone
from journey_engine.services.enrollment_store import Claim, apply_transition, claim_due, release_lease
from journey_engine.services.journey_graph import JourneyGraph, JourneyNode, variant_handle
from journey_engine.services.journey_service import published_graph
from journey_engine.services.rate_limiter import node_throttle_limits, try_acquire
from journey_engine.services.transitions import Advance, Complete, Exit, Fail, Transition, Wait


@dataclass(frozen=True)
class TickSummary:
    claimed: int
    steps: int
    advanced: int
    waiting: int
    completed: int
    exited: int
    failed: int
    retried: int
    stale: int


class ManualInterventionError(Exception):
    def __init__(self, reason: str, message: str):
        self.reason = reason
        self.message = message
        super().__init__(message)


class EngineScheduler:
    """Advances every due enrollment by one due occurrence per tick.

    Advances chain within a claim (trigger -> condition -> delay in one tick) up to
    engine_max_steps_per_claim; a Wait or a terminal transition ends the chain.
    """

    def __init__(self, worker_id: str | None = None):
        self.worker_id = worker_id or generate_worker_id()

    def tick(self, db: Session, *, now: datetime | None = None, limit: int | None = None) -> TickSummary:
        # API ticks keep the request id; worker ticks get their own
        correlation_id = get_correlation_id()
        if correlation_id == "-":
            correlation_id = f"tick-{generate_shortuuid()}"
        with correlation_scope(correlation_id):
            return self._tick(db, now=now, limit=limit)

    def _tick(self, db: Session, *, now: datetime | None, limit: int | None) -> TickSummary:
        now = ensure_utc(now) if now is not None else utcnow()
        counts = {
            "claimed": 0,
            "steps": 0,
            "advanced": 0,
            "waiting": 0,
            "completed": 0,
            "exited": 0,
            "failed": 0,
            "retried": 0,
            "stale": 0,
        }
        claims = claim_due(db, worker_id=self.worker_id, now=now, limit=limit or settings.engine_tick_batch_size)
        counts["claimed"] = len(claims)
        for claim in claims:
            self._run_claim(db, claim, now=now, counts=counts)

        summary = TickSummary(**counts)
        log_event("engine_tick", worker_id=self.worker_id, now=now, **counts)
        return summary

    def _run_claim(self, db: Session, claim: Claim, *, now: datetime, counts: dict[str, int]) -> None:
        version = claim.version
        for _ in range(settings.engine_max_steps_per_claim):
            enrollment = db.get(JourneyEnrollment, claim.enrollment_id)
            if enrollment is None or enrollment.is_terminal:
                return

            transition, failure = self._compute(db, enrollment, now=now)
            new_version = apply_transition(
                db,
                enrollment,
                transition,
                expected_version=version,
                now=now,
                worker_id=self.worker_id,
                failure=failure,
            )
            if new_version is None:
                db.rollback()
                counts["stale"] += 1
                release_lease(db, enrollment_id=claim.enrollment_id, worker_id=self.worker_id)
                db.commit()
                return
            db.commit()
            counts["steps"] += 1
            _count(counts, transition, failure=failure)
            if not isinstance(transition, Advance):
                return
            version = new_version

        # step limit reached; the enrollment stays active for the next tick
        release_lease(db, enrollment_id=claim.enrollment_id, worker_id=self.worker_id)
        db.commit()

    def _compute(self, db: Session, enrollment: JourneyEnrollment, *, now: datetime) -> tuple[Transition, str | None]:
        enrollment_id = enrollment.id
        graph: JourneyGraph | None = None
        node: JourneyNode | None = None
        try:
            journey = db.get(Journey, enrollment.journey_id)
            if journey is None:
                raise ConfigurationError(f"Journey '{enrollment.journey_id}' no longer exists")
            graph = published_graph(db, journey_id=enrollment.journey_id, version=enrollment.journey_version)
            node = graph.node(enrollment.current_node_id)
            return self._dispatch(db, journey=journey, graph=graph, enrollment=enrollment, node=node, now=now), None
        except ConfigurationError as exc:
            db.rollback()
            return Fail(reason=f"configuration_error: {exc}"), None
        except TransientError as exc:
            db.rollback()
            return self._after_failure(db, enrollment_id, graph, node, exc, now=now)
        except Exception as exc:  # noqa: BLE001
            db.rollback()
            log_event(
                "enrollment_step_error",
                level=logging.ERROR,
                enrollment_id=enrollment_id,
                error=str(exc),
                traceback=traceback.format_exc(limit=10),
            )
            if graph is None or node is None:
                return Fail(reason=f"step_error: {exc}"), None
            return self._after_failure(db, enrollment_id, graph, node, exc, now=now)

    def _after_failure(
        self,
        db: Session,
        enrollment_id: str,
        graph: JourneyGraph,
        node: JourneyNode,
        exc: Exception,
        *,
        now: datetime,
    ) -> tuple[Transition, str | None]:
        try:
            return self._failure_transition(db, enrollment_id, graph, node, exc, now=now), str(exc)
        except ConfigurationError as config_exc:
            # the fallback edge itself is missing
            return Fail(reason=f"configuration_error: {config_exc}"), str(exc)

    def _dispatch(
        self,
        db: Session,
        *,
        journey: Journey,
        graph: JourneyGraph,
        enrollment: JourneyEnrollment,
        node: JourneyNode,
        now: datetime,
    ) -> Transition:
        if node.type == "trigger":
            return Advance(handle="next", next_node_id=graph.require_target(node.id, "next"), event_type="trigger_fired")
        if node.type == "condition":
            return self._condition_step(db, graph=graph, enrollment=enrollment, node=node, now=now)
        if node.type == "delay":
            return self._delay_step(db, journey=journey, graph=graph, enrollment=enrollment, node=node, now=now)
        if node.type == "action" and isinstance(node.config, WhatsAppActionConfig):
            return run_action_step(db, journey=journey, graph=graph, enrollment=enrollment, node=node, now=now)
        if node.type == "action":
            return run_profile_action(db, graph=graph, enrollment=enrollment, node=node, now=now)
        if node.type == "goal":
            return self._goal_step(db, enrollment=enrollment, node=node, now=now)
        raise ConfigurationError(f"Unsupported node type '{node.type}'")

    def _condition_step(
        self,
        db: Session,
        *,
        graph: JourneyGraph,
        enrollment: JourneyEnrollment,
        node: JourneyNode,
        now: datetime,
    ) -> Transition:
        if isinstance(node.config, ExperimentConditionConfig):
            return self._experiment_step(db, graph=graph, enrollment=enrollment, node=node, now=now)
        snapshot = snapshot_for_enrollment(db, enrollment, now=now, scope=event_scope(node.config, now=now))
        result = evaluate_condition_node(node.config, snapshot, now=now)
        if result.issues:
            log_event(
                "condition_data_error",
                level=logging.WARNING,
                enrollment_id=enrollment.id,
                journey_id=enrollment.journey_id,
                node_id=node.id,
                issues=list(result.issues),
            )
        handle = select_branch_handle(result, node.config, graph.outgoing(node.id).keys())
        data = {"matched": result.matched}
        if result.issues:
            data["data_errors"] = list(result.issues)
        return Advance(
            handle=handle,
            next_node_id=graph.require_target(node.id, handle),
            event_type="condition_evaluated",
            data=data,
        )

    def _experiment_step(
        self,
        db: Session,
        *,
        graph: JourneyGraph,
        enrollment: JourneyEnrollment,
        node: JourneyNode,
        now: datetime,
    ) -> Transition:
        config: ExperimentConditionConfig = node.config
        experiment = config.experiment_name or node.id
        metadata = enrollment.metadata_json if isinstance(enrollment.metadata_json, dict) else {}
        experiments = dict(metadata.get("experiments") or {})
        variants = {variant.id: variant for variant in config.variants}
        variant = variants.get(experiments.get(node.id))
        if variant is None:
            variant = pick_variant(config, f"{enrollment.id}:{node.id}")
            experiments[node.id] = variant.id
            append_activity(
                db,
                enrollment=enrollment,
                node_id=node.id,
                event_type="experiment_assigned",
                data={"experiment": experiment, "variant_id": variant.id, "variant_label": variant.label},
                at=now,
            )
        handle = variant_handle(variant.id)
        return Advance(
            handle=handle,
            next_node_id=graph.require_target(node.id, handle),
            event_type="experiment_variant_selected",
            data={"experiment": experiment, "variant_id": variant.id},
            metadata_updates={"experiments": experiments},
        )

    def _goal_step(self, db: Session, *, enrollment: JourneyEnrollment, node: JourneyNode, now: datetime) -> Transition:
        """Complete once the goal is met; wait for it until the attribution window closes."""
        config: GoalConfig = node.config
        data = {"goal": config.name or node.id, "goal_type": config.goal_type}
        if config.goal_type == "journey_completion":
            return Complete(reason="goal_reached", data=data)

        entered_at = ensure_utc(enrollment.entered_at)
        snapshot = snapshot_for_enrollment(
            db, enrollment, now=now, scope=event_scope(config, now=now, entered_at=entered_at)
        )
        if goal_achieved(config, snapshot, since=entered_at):
            return Complete(reason="goal_reached", data=data)

        deadline = ensure_utc(enrollment.node_entered_at) + config.attribution_window.to_timedelta()
        if now >= deadline:
            return Exit(reason="goal_not_achieved", data=data)
        return Wait(
            wake_at=min(now + timedelta(minutes=settings.goal_poll_minutes), deadline),
            event_type="goal_pending",
            data={**data, "deadline": deadline.isoformat()},
        )

    def _delay_step(
        self,
        db: Session,
        *,
        journey: Journey,
        graph: JourneyGraph,
        enrollment: JourneyEnrollment,
        node: JourneyNode,
        now: datetime,
    ) -> Transition:
        config = node.config
        resume = (enrollment.context_json or {}).get("resume")
        event_matched = isinstance(resume, dict) and resume.get("node_id") == node.id
        event_at = _resume_event_time(resume) if event_matched else None
        customer = delay_context(db, enrollment, event_matched=event_matched, event_at=event_at)
        if isinstance(config, OptimalSendTimeDelay):
            zone = resolve_timezone(config.timezone, customer, journey.timezone)
            hours = engaged_hours(
                db,
                customer_id=enrollment.customer_id,
                journey_id=enrollment.journey_id,
                zone=zone,
                since=now - timedelta(days=config.lookback_days),
            )
            customer = replace(customer, engaged_hours=hours)

        entered_at = ensure_utc(enrollment.node_entered_at)
        decision = next_wake(config, entered_at, now, customer, journey_timezone=journey.timezone)

        if isinstance(decision, WakeAt):
            data = {"delay_type": config.delay_type}
            if decision.adjusted_from is not None:
                data["adjusted_from"] = decision.adjusted_from.isoformat()
            return Wait(wake_at=decision.at, event_type="delay_scheduled", data=data)

        if isinstance(decision, TimeoutBranch):
            if decision.on_timeout == "exit":
                return Exit(reason="delay_timeout", data={"delay_type": config.delay_type})
            handle = "timeout" if decision.on_timeout == "branch_to_timeout_path" else "resumed"
            return Advance(
                handle=handle,
                next_node_id=graph.require_target(node.id, handle),
                event_type="delay_timeout",
                data={"on_timeout": decision.on_timeout},
            )

        if isinstance(decision, ResumeNow):
            if config.throttling.enabled:
                limits = node_throttle_limits(
                    journey.id,
                    node.id,
                    max_per_hour=config.throttling.max_users_per_hour,
                    max_per_day=config.throttling.max_users_per_day,
                )
                permit = try_acquire(db, limits, now=now, enrollment_id=enrollment.id)
                if not permit.granted:
                    log_event(
                        "rate_limit_denied",
                        journey_id=journey.id,
                        enrollment_id=enrollment.id,
                        node_id=node.id,
                        scope_key=permit.scope_key,
                        window=permit.window,
                        retry_at=permit.retry_at,
                    )
                    return Wait(
                        wake_at=permit.retry_at or now + timedelta(hours=1),
                        event_type="throttled",
                        data={"scope_key": permit.scope_key, "window": permit.window},
                    )
            if decision.warning:
                append_activity(
                    db,
                    enrollment=enrollment,
                    node_id=node.id,
                    event_type="delay_time_passed",
                    data={"warning": decision.warning},
                    at=now,
                )
            data = {"delay_type": config.delay_type}
            if event_matched:
                data["event_id"] = resume.get("event_id")
            return Advance(
                handle="resumed",
                next_node_id=graph.require_target(node.id, "resumed"),
                event_type="delay_resumed",
                data=data,
            )

        raise ConfigurationError(f"Unsupported delay decision {type(decision).__name__}")

    def _failure_transition(
        self,
        db: Session,
        enrollment_id: str,
        graph: JourneyGraph,
        node: JourneyNode,
        exc: Exception,
        *,
        now: datetime,
    ) -> Transition:
        """Retry while attempts stay within the node's retry count, then fall back."""
        enrollment = db.get(JourneyEnrollment, enrollment_id)
        attempts = int(enrollment.failures.get(node.id, {}).get("attempts", 0)) + 1
        if node.type == "action":
            retry_count = node.config.failure_handling.retry_count
            delay = timedelta(minutes=node.config.failure_handling.retry_delay)
        else:
            retry_count = settings.engine_default_retry_count
            delay = timedelta(
                seconds=min(
                    settings.engine_retry_base_seconds * (2 ** (attempts - 1)),
                    settings.engine_retry_max_seconds,
                )
            )
        error = short_error(exc)
        if attempts <= retry_count:
            return Wait(
                wake_at=now + delay,
                event_type="retry_scheduled",
                data={"attempt": attempts, "retry_count": retry_count, "error": error},
            )
        if node.type == "action":
            return fallback_transition(graph, node, node.config, data={"attempts": attempts, "error": error})
        return Fail(reason=f"retries_exhausted: {error}", data={"attempts": attempts})


def skip_node(db: Session, enrollment: JourneyEnrollment, *, now: datetime) -> JourneyEnrollment:
    """Leave the current node through its primary edge without evaluating it.

    Goal nodes complete the enrollment. Attempt counters are left as they are. The caller commits.
    """
    if enrollment.is_terminal:
        raise ManualInterventionError("enrollment_terminal", f"Enrollment is already {enrollment.status}")
    graph = published_graph(db, journey_id=enrollment.journey_id, version=enrollment.journey_version)
    node = graph.node(enrollment.current_node_id)
    if node.type == "goal":
        transition: Transition = Complete(reason="manual_skip", data={"manual": True})
    else:
        handle = node.primary_handle()
        target = graph.target(node.id, handle) if handle else None
        if target is None:
            raise ManualInterventionError(
                "no_primary_edge",
                f"Node '{node.id}' has no outgoing '{handle}' edge to skip along",
            )
        transition = Advance(handle=handle, next_node_id=target, event_type="manual_skip", data={"manual": True})

    applied = apply_transition(
        db,
        enrollment,
        transition,
        expected_version=enrollment.version,
        now=now,
        reset_failures=False,
    )
    if applied is None:
        raise ManualInterventionError("concurrent_update", "Enrollment changed while skipping; retry the request")
    db.refresh(enrollment)
    return enrollment


def _count(counts: dict[str, int], transition: Transition, *, failure: str | None) -> None:
    if failure is not None and isinstance(transition, Wait):
        counts["retried"] += 1
    elif isinstance(transition, Advance):
        counts["advanced"] += 1
    elif isinstance(transition, Wait):
        counts["waiting"] += 1
    elif isinstance(transition, Complete):
        counts["completed"] += 1
    elif isinstance(transition, Exit):
        counts["exited"] += 1
    elif isinstance(transition, Fail):
        counts["failed"] += 1


def _resume_event_time(resume: dict) -> datetime | None:
    raw = resume.get("occurred_at")
    if not raw:
        return None
    try:
        return ensure_utc(datetime.fromisoformat(str(raw)))
    except ValueError:
        return None
