import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from journey_engine.core.clock import ensure_utc
from journey_engine.db.upsert import insert_ignoring_conflicts
from journey_engine.models.rate_limit import RateLimitPermit, RateLimitScope


WINDOWS: dict[str, timedelta] = {
    "hour": timedelta(hours=1),
    "day": timedelta(days=1),
    "week": timedelta(days=7),
}


@dataclass(frozen=True)
class LimitRequest:
    scope_key: str
    window: str
    limit: int


@dataclass(frozen=True)
class PermitDecision:
    granted: bool
    retry_at: datetime | None = None
    scope_key: str | None = None
    window: str | None = None
    permit_ids: tuple[str, ...] = ()


def journey_send_limits(journey_id: str, *, max_per_day: int | None, max_per_week: int | None) -> list[LimitRequest]:
    scope = f"journey:{journey_id}:sends"
    limits: list[LimitRequest] = []
    if max_per_day:
        limits.append(LimitRequest(scope_key=scope, window="day", limit=max_per_day))
    if max_per_week:
        limits.append(LimitRequest(scope_key=scope, window="week", limit=max_per_week))
    return limits


def customer_send_limits(customer_id: str, *, max_per_day: int) -> list[LimitRequest]:
    if max_per_day <= 0:
        return []
    return [LimitRequest(scope_key=f"customer:{customer_id}:sends", window="day", limit=max_per_day)]


def node_throttle_limits(
    journey_id: str,
    node_id: str,
    *,
    max_per_hour: int | None,
    max_per_day: int | None,
) -> list[LimitRequest]:
    scope = f"throttle:{journey_id}:{node_id}"
    limits: list[LimitRequest] = []
    if max_per_hour:
        limits.append(LimitRequest(scope_key=scope, window="hour", limit=max_per_hour))
    if max_per_day:
        limits.append(LimitRequest(scope_key=scope, window="day", limit=max_per_day))
    return limits


def try_acquire(
    db: Session,
    limits: list[LimitRequest],
    *,
    now: datetime,
    enrollment_id: str | None = None,
) -> PermitDecision:
    """Grant one permit against every limit, or none.

    Each scope row is updated first, which holds a row lock until the caller's transaction
    ends; concurrent workers on the same scope serialize on it before counting permits.
    Callers commit before any blocking I/O so the lock never spans a provider call.
    Windows are rolling: a permit counts for exactly window-length after it was granted.
    """
    if not limits:
        return PermitDecision(granted=True)

    scope_keys = sorted({item.scope_key for item in limits})
    for scope_key in scope_keys:
        _lock_scope(db, scope_key, now=now)

    for item in limits:
        window = WINDOWS[item.window]
        since = now - window
        used = int(
            db.execute(
                select(func.count(RateLimitPermit.id)).where(
                    RateLimitPermit.scope_key == item.scope_key,
                    RateLimitPermit.granted_at > since,
                )
            ).scalar_one()
            or 0
        )
        if used < item.limit:
            continue
        # a slot frees up when the (used - limit + 1)th oldest permit leaves the window
        oldest_blocking = db.execute(
            select(RateLimitPermit.granted_at)
            .where(
                RateLimitPermit.scope_key == item.scope_key,
                RateLimitPermit.granted_at > since,
            )
            .order_by(RateLimitPermit.granted_at.asc())
            .offset(used - item.limit)
            .limit(1)
        ).scalar_one_or_none()
        retry_at = (ensure_utc(oldest_blocking) or now) + window
        return PermitDecision(granted=False, retry_at=retry_at, scope_key=item.scope_key, window=item.window)

    permit_ids = []
    for scope_key in scope_keys:
        permit_id = str(uuid.uuid4())
        db.add(
            RateLimitPermit(
                id=permit_id,
                scope_key=scope_key,
                enrollment_id=enrollment_id,
                granted_at=now,
            )
        )
        permit_ids.append(permit_id)
    db.flush()
    return PermitDecision(granted=True, permit_ids=tuple(permit_ids))


def release_permits(db: Session, permit_ids: tuple[str, ...]) -> int:
    """Return permits for work that never happened."""
    if not permit_ids:
        return 0
    result = db.execute(delete(RateLimitPermit).where(RateLimitPermit.id.in_(permit_ids)))
    return int(result.rowcount or 0)


def usage(db: Session, *, scope_key: str, window: str, now: datetime) -> int:
    since = now - WINDOWS[window]
    return int(
        db.execute(
            select(func.count(RateLimitPermit.id)).where(
                RateLimitPermit.scope_key == scope_key,
                RateLimitPermit.granted_at > since,
            )
        ).scalar_one()
        or 0
    )


def prune_expired_permits(db: Session, *, now: datetime) -> int:
    cutoff = now - max(WINDOWS.values())
    result = db.execute(delete(RateLimitPermit).where(RateLimitPermit.granted_at <= cutoff))
    return int(result.rowcount or 0)


def _lock_scope(db: Session, scope_key: str, *, now: datetime) -> None:
    insert_ignoring_conflicts(
        db,
        RateLimitScope,
        {"scope_key": scope_key, "lock_version": 0, "updated_at": now},
        index_elements=["scope_key"],
    )
    db.execute(
        update(RateLimitScope)
        .where(RateLimitScope.scope_key == scope_key)
        .values(lock_version=RateLimitScope.lock_version + 1, updated_at=now)
        .execution_options(synchronize_session=False)
    )
