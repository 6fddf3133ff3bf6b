from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from functools import lru_cache
from typing import Any, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from journey_engine.core.config import settings
from journey_engine.core.errors import ConfigurationError
from journey_engine.schemas.journey_config import (
    FixedTimeDelay,
    HolidaySettings,
    OptimalSendTimeDelay,
    QuietHours,
    WaitForAttributeDelay,
    WaitForEventDelay,
    WaitUntilTimeDelay,
    parse_hhmm,
)
from journey_engine.services.condition_evaluator import resolve_path


_MAX_ADJUST_PASSES = 400


@dataclass(frozen=True)
class WakeAt:
    at: datetime
    adjusted_from: datetime | None = None


@dataclass(frozen=True)
class ResumeNow:
    warning: str | None = None


@dataclass(frozen=True)
class TimeoutBranch:
    on_timeout: str


DelayDecision = Union[WakeAt, ResumeNow, TimeoutBranch]


@dataclass(frozen=True)
class CustomerContext:
    timezone: str | None = None
    attributes: dict[str, Any] = field(default_factory=dict)
    engaged_hours: tuple[int, ...] = ()
    event_matched: bool = False
    event_at: datetime | None = None


def resolve_timezone(name: str | None, customer: CustomerContext | None = None, fallback: str | None = None) -> ZoneInfo:
    candidates: list[str | None] = []
    if name and name != "customer":
        candidates.append(name)
    else:
        candidates.append(customer.timezone if customer else None)
    candidates.extend([fallback, settings.default_timezone, "UTC"])
    for candidate in candidates:
        if not candidate:
            continue
        try:
            return ZoneInfo(candidate)
        except (ZoneInfoNotFoundError, ValueError):
            if candidate == name:
                raise ConfigurationError(f"Unknown timezone '{name}'")
            continue
    return ZoneInfo("UTC")


def next_wake(
    policy: Any,
    entered_at: datetime,
    now: datetime,
    customer: CustomerContext,
    *,
    journey_timezone: str | None = None,
    poll_interval: timedelta | None = None,
) -> DelayDecision:
    """Decide when a waiting enrollment should next run.

    entered_at is when the enrollment reached the delay node. The result depends only on
    the arguments, so re-evaluating after a wake-up converges on ResumeNow or TimeoutBranch.
    """
    if isinstance(policy, FixedTimeDelay):
        target = entered_at + policy.duration.to_timedelta()
        return _wake_or_resume(adjust_for_calendar(target, policy, customer, journey_timezone), target, now)

    if isinstance(policy, WaitUntilTimeDelay):
        zone = resolve_timezone(policy.timezone, customer, journey_timezone)
        hour, minute = parse_hhmm(policy.time)
        local_entered = entered_at.astimezone(zone)
        candidate = at_local(local_entered.date(), hour, minute, zone)
        if candidate < entered_at:
            if policy.if_passed == "skip_wait":
                return ResumeNow()
            if policy.if_passed == "continue_immediately":
                return ResumeNow(warning="target_time_passed")
            candidate = at_local(local_entered.date() + timedelta(days=1), hour, minute, zone)
        return _wake_or_resume(adjust_for_calendar(candidate, policy, customer, journey_timezone), candidate, now)

    if isinstance(policy, WaitForEventDelay):
        expires_at = entered_at + policy.max_wait_time.to_timedelta()
        # an event counts only if it happened within maxWaitTime, whenever the tick runs
        if customer.event_matched and (customer.event_at or now) <= expires_at:
            return ResumeNow()
        deadline = adjust_for_calendar(expires_at, policy, customer, journey_timezone)
        if now >= deadline:
            return TimeoutBranch(on_timeout=policy.on_timeout)
        return WakeAt(at=deadline)

    if isinstance(policy, WaitForAttributeDelay):
        expires_at = entered_at + policy.max_wait_time.to_timedelta()
        current = resolve_path(customer.attributes, policy.attribute_path)
        if now <= expires_at and _attribute_equals(current, policy.target_value):
            return ResumeNow()
        deadline = adjust_for_calendar(expires_at, policy, customer, journey_timezone)
        if now >= deadline:
            return TimeoutBranch(on_timeout=policy.on_timeout)
        interval = poll_interval or timedelta(minutes=settings.attribute_poll_minutes)
        return WakeAt(at=min(now + interval, deadline))

    if isinstance(policy, OptimalSendTimeDelay):
        zone = resolve_timezone(policy.timezone, customer, journey_timezone)
        hour, minute = best_send_time(policy, customer.engaged_hours)
        local_entered = entered_at.astimezone(zone)
        candidate = at_local(local_entered.date(), hour, minute, zone)
        if candidate < entered_at:
            candidate = at_local(local_entered.date() + timedelta(days=1), hour, minute, zone)
        return _wake_or_resume(adjust_for_calendar(candidate, policy, customer, journey_timezone), candidate, now)

    raise ConfigurationError(f"Unsupported delay policy {type(policy).__name__}")


def best_send_time(policy: OptimalSendTimeDelay, engaged_hours: tuple[int, ...]) -> tuple[int, int]:
    start_hour, _ = parse_hhmm(policy.window.start)
    end_hour, end_minute = parse_hhmm(policy.window.end)
    last_hour = end_hour if end_minute > 0 else end_hour - 1
    in_window = [hour for hour in engaged_hours if start_hour <= hour <= last_hour]
    if not in_window:
        return policy.fallback_time.hour, policy.fallback_time.minute
    counts = Counter(in_window)
    best = max(counts.values())
    return min(hour for hour, count in counts.items() if count == best), 0


def adjust_for_calendar(
    when: datetime,
    policy: Any,
    customer: CustomerContext | None = None,
    journey_timezone: str | None = None,
) -> datetime:
    """Push a wake time forward past quiet hours, weekends and holidays.

    Runs as a final pass and repeats until no exclusion moves the time. Never moves backward.
    """
    quiet: QuietHours | None = getattr(policy, "quiet_hours", None)
    holidays: HolidaySettings | None = getattr(policy, "holiday_settings", None)
    quiet_active = bool(quiet and quiet.enabled and quiet.start != quiet.end)
    days_active = bool(holidays and (holidays.skip_weekends or holidays.skip_holidays))
    if not quiet_active and not days_active:
        return when

    quiet_zone = resolve_timezone(quiet.timezone, customer, journey_timezone) if quiet_active else None
    day_zone = quiet_zone or resolve_timezone("customer", customer, journey_timezone)

    current = when
    for _ in range(_MAX_ADJUST_PASSES):
        moved = current
        if quiet_active:
            moved = _skip_quiet_hours(moved, quiet, quiet_zone)
        if days_active:
            moved = _skip_excluded_days(moved, holidays, day_zone)
        if moved <= current:
            return current
        current = moved
    raise ConfigurationError("Calendar exclusions leave no allowed time within a year")


def is_excluded_day(day: date, holidays: HolidaySettings) -> bool:
    if holidays.skip_weekends and day.weekday() >= 5:
        return True
    if holidays.skip_holidays and day in holiday_dates(holidays, day.year):
        return True
    return False


def holiday_dates(holidays: HolidaySettings, year: int) -> frozenset[date]:
    if holidays.holiday_calendar == "custom":
        return frozenset(item for item in holidays.custom_holiday_dates if item.year == year)
    if holidays.holiday_calendar == "uk":
        return uk_holidays(year)
    return us_holidays(year)


@lru_cache(maxsize=64)
def us_holidays(year: int) -> frozenset[date]:
    return frozenset(
        {
            date(year, 1, 1),
            date(year, 7, 4),
            _nth_weekday(year, 11, weekday=3, n=4),
            date(year, 12, 25),
        }
    )


@lru_cache(maxsize=64)
def uk_holidays(year: int) -> frozenset[date]:
    return frozenset(
        {
            date(year, 1, 1),
            easter_sunday(year) - timedelta(days=2),
            _nth_weekday(year, 5, weekday=0, n=1),
            date(year, 12, 25),
        }
    )


def easter_sunday(year: int) -> date:
    # Anonymous Gregorian algorithm
    a = year % 19
    b, c = divmod(year, 100)
    d, e = divmod(b, 4)
    f = (b + 8) // 25
    g = (b - f + 1) // 3
    h = (19 * a + b - d - g + 15) % 30
    i, k = divmod(c, 4)
    l = (32 + 2 * e + 2 * i - h - k) % 7  # noqa: E741
    m = (a + 11 * h + 22 * l) // 451
    month, day = divmod(h + l - 7 * m + 114, 31)
    return date(year, month, day + 1)


def _nth_weekday(year: int, month: int, *, weekday: int, n: int) -> date:
    first = date(year, month, 1)
    offset = (weekday - first.weekday()) % 7
    return first + timedelta(days=offset + 7 * (n - 1))


def _skip_quiet_hours(when: datetime, quiet: QuietHours, zone: ZoneInfo) -> datetime:
    local = when.astimezone(zone)
    start = time(*parse_hhmm(quiet.start))
    end = time(*parse_hhmm(quiet.end))
    clock = local.time().replace(tzinfo=None)
    if start < end:
        if start <= clock < end:
            return at_local(local.date(), end.hour, end.minute, zone)
        return when
    # window wraps midnight, e.g. 21:00-09:00
    if clock >= start:
        return at_local(local.date() + timedelta(days=1), end.hour, end.minute, zone)
    if clock < end:
        return at_local(local.date(), end.hour, end.minute, zone)
    return when


def _skip_excluded_days(when: datetime, holidays: HolidaySettings, zone: ZoneInfo) -> datetime:
    local = when.astimezone(zone)
    day = local.date()
    if not is_excluded_day(day, holidays):
        return when
    while is_excluded_day(day, holidays):
        day += timedelta(days=1)
        if day.year > local.year + 1:
            raise ConfigurationError("Calendar exclusions leave no allowed day within a year")
    # keep the local time of day, only the date moves
    return at_local(day, local.hour, local.minute, zone, second=local.second)


def at_local(day: date, hour: int, minute: int, zone: ZoneInfo, *, second: int = 0) -> datetime:
    return datetime(day.year, day.month, day.day, hour, minute, second, tzinfo=zone).astimezone(timezone.utc)


def _wake_or_resume(adjusted: datetime, original: datetime, now: datetime) -> DelayDecision:
    if adjusted <= now:
        return ResumeNow()
    return WakeAt(at=adjusted, adjusted_from=original if adjusted != original else None)


def _attribute_equals(current: Any, target: Any) -> bool:
    if current is None:
        return target is None
    if isinstance(current, bool) or isinstance(target, bool):
        return str(current).strip().lower() == str(target).strip().lower()
    if current == target:
        return True
    return str(current).strip() == str(target).strip()
