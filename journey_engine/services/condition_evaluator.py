import hashlib
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Iterable

from journey_engine.core.errors import ConfigurationError, DataError
from journey_engine.schemas.journey_config import (
    ConditionGroup,
    ConditionRule,
    EventConditionConfig,
    ExperimentConditionConfig,
    ExperimentVariant,
    FormulaConditionConfig,
    GoalConfig,
    ProductOrderConditionConfig,
    RulesConditionConfig,
    SegmentConditionConfig,
    between_bounds,
)
from journey_engine.services.formula import FormulaError, evaluate_formula


_TRUE_STRINGS = {"true", "1", "yes", "y", "on"}
_FALSE_STRINGS = {"false", "0", "no", "n", "off"}


@dataclass(frozen=True)
class ConditionResult:
    matched: bool
    issues: tuple[str, ...] = ()


@dataclass(frozen=True)
class AudienceSplit:
    total: int
    matched: int
    unmatched: int
    data_errors: int


@dataclass
class _Collector:
    issues: list[str] = field(default_factory=list)

    def add(self, message: str) -> None:
        if message not in self.issues:
            self.issues.append(message)


def evaluate(group: ConditionGroup, snapshot: dict[str, Any]) -> bool:
    return evaluate_group(group, snapshot).matched


def evaluate_group(group: ConditionGroup, snapshot: dict[str, Any]) -> ConditionResult:
    collector = _Collector()
    matched = _evaluate_group(group, snapshot, collector)
    return ConditionResult(matched=matched, issues=tuple(collector.issues))


def evaluate_condition_node(config: Any, snapshot: dict[str, Any], *, now: datetime) -> ConditionResult:
    """Evaluate any condition-node mode to the same boolean contract.

    The snapshot carries everything the evaluation may read: customer attributes,
    segment ids, recent events and the latest order. Nothing is fetched here.
    """
    if isinstance(config, ExperimentConditionConfig):
        raise ConfigurationError("A/B test nodes assign variants; they have no boolean result")
    collector = _Collector()
    if isinstance(config, RulesConditionConfig):
        matched = _evaluate_group(config.root_group, snapshot, collector)
    elif isinstance(config, ProductOrderConditionConfig):
        order = snapshot.get("order")
        if not isinstance(order, dict):
            collector.add("No order available for product/order condition")
            matched = False
        else:
            scoped = dict(snapshot)
            scoped["customer"] = {**_as_dict(snapshot.get("customer")), **order}
            matched = _evaluate_group(config.root_group, scoped, collector)
    elif isinstance(config, SegmentConditionConfig):
        segments = set(snapshot.get("segments") or [])
        in_any = any(segment_id in segments for segment_id in config.segment_config.segment_ids)
        matched = in_any if config.segment_config.match_type == "is_in" else not in_any
    elif isinstance(config, EventConditionConfig):
        matched = _evaluate_event_occurrence(config, snapshot, now=now, collector=collector)
    elif isinstance(config, FormulaConditionConfig):
        try:
            matched = evaluate_formula(config.formula_expression, _formula_helpers(snapshot, now=now))
        except FormulaError as exc:
            collector.add(f"Formula evaluation failed: {exc}")
            matched = False
    else:
        raise ConfigurationError(f"Unsupported condition config {type(config).__name__}")
    return ConditionResult(matched=matched, issues=tuple(collector.issues))


def select_branch_handle(result: ConditionResult, config: Any, available_handles: Iterable[str]) -> str:
    handles = set(available_handles)
    preferred = "true" if result.matched else "false"
    if preferred in handles:
        return preferred
    if getattr(config, "add_else_branch", False) and "else" in handles:
        return "else"
    raise ConfigurationError(f"No outgoing edge for condition result '{preferred}' and no else branch configured")


def pick_variant(config: ExperimentConditionConfig, assignment_key: str) -> ExperimentVariant:
    """Weighted variant for a key; the same key always gets the same variant.

    All-zero weights split evenly.
    """
    weights = [variant.weight for variant in config.variants]
    if sum(weights) <= 0:
        weights = [1.0] * len(config.variants)
    digest = hashlib.sha256(assignment_key.encode("utf-8")).digest()
    point = int.from_bytes(digest[:8], "big") / 2**64 * sum(weights)
    cumulative = 0.0
    for variant, weight in zip(config.variants, weights):
        cumulative += weight
        if point < cumulative:
            return variant
    return config.variants[-1]


def audience_split(config: Any, snapshots: Iterable[dict[str, Any]], *, now: datetime) -> AudienceSplit:
    total = 0
    matched = 0
    data_errors = 0
    for snapshot in snapshots:
        total += 1
        result = evaluate_condition_node(config, snapshot, now=now)
        if result.matched:
            matched += 1
        if result.issues:
            data_errors += 1
    return AudienceSplit(total=total, matched=matched, unmatched=total - matched, data_errors=data_errors)


def goal_achieved(config: GoalConfig, snapshot: dict[str, Any], *, since: datetime) -> bool:
    """Whether the customer met the goal, counting events after `since` (the journey entry)."""
    goal_type = config.goal_type
    if goal_type == "journey_completion":
        return True
    if goal_type == "tag_added":
        return config.tag_name in _tags(resolve_property(snapshot, "tags"))
    if goal_type == "segment_entry":
        return config.segment_id in set(snapshot.get("segments") or [])

    events = [event for event in _recent_events(snapshot) if _after(event.get("occurred_at"), since)]
    if goal_type == "custom_event":
        return any(event.get("name") == config.event_name for event in events)
    if goal_type == "link_clicked":
        return any(
            event.get("name") == "link_clicked" and _link_matches(config.link_tracking, _as_dict(event.get("payload")))
            for event in events
        )

    orders = [_as_dict(event.get("payload")).get("order") for event in events]
    orders = [order for order in orders if isinstance(order, dict)]
    if goal_type == "order_any":
        return bool(orders)
    if goal_type == "order_value":
        total = 0.0
        for order in orders:
            try:
                total += _coerce(_order_total(order), "number", normalize=False)
            except DataError:
                continue
        return total >= (config.order_threshold or 0)
    if goal_type == "product_purchased":
        wanted = str(config.product_id)
        return any(wanted in _product_ids(order) for order in orders)
    raise ConfigurationError(f"Unsupported goal type '{goal_type}'")


def resolve_property(snapshot: dict[str, Any], path: str) -> Any:
    normalized = (path or "").strip()
    if normalized.startswith("$."):
        normalized = normalized[2:]
    elif normalized.startswith("$"):
        normalized = normalized[1:]
    if not normalized:
        return None
    head = normalized.split(".", 1)[0]
    if head in snapshot:
        return resolve_path(snapshot, normalized)
    return resolve_path(_as_dict(snapshot.get("customer")), normalized)


def resolve_path(container: Any, path: str) -> Any:
    current: Any = container
    for part in [item for item in (path or "").split(".") if item]:
        if isinstance(current, dict):
            if part not in current:
                return None
            current = current[part]
            continue
        if isinstance(current, list):
            if not part.isdigit():
                return None
            index = int(part)
            if index < 0 or index >= len(current):
                return None
            current = current[index]
            continue
        return None
    return current


def _evaluate_group(group: ConditionGroup, snapshot: dict[str, Any], collector: _Collector) -> bool:
    is_and = group.logical_operator == "AND"
    if not group.conditions and not group.nested_groups:
        return is_and

    # nested groups resolve first, then combine with the leaf conditions
    for nested in group.nested_groups:
        value = _evaluate_group(nested, snapshot, collector)
        if is_and and not value:
            return False
        if not is_and and value:
            return True
    for rule in group.conditions:
        value = _evaluate_rule(rule, snapshot, collector)
        if is_and and not value:
            return False
        if not is_and and value:
            return True
    return is_and


def _evaluate_rule(rule: ConditionRule, snapshot: dict[str, Any], collector: _Collector) -> bool:
    if not rule.is_complete():
        collector.add(f"Incomplete condition on '{rule.property or '<missing property>'}'")
        return False

    operator = rule.operator
    actual = resolve_property(snapshot, rule.property)
    if operator == "is_set":
        return _has_value(actual)
    if operator == "is_not_set":
        return not _has_value(actual)

    if actual is None:
        collector.add(f"Missing attribute '{rule.property}'")
        return False

    try:
        if operator in {"greater_than", "less_than", "between"}:
            kind = "date" if rule.value_type == "date" else "number"
            left = _coerce(actual, kind, normalize=False)
            if operator == "between":
                low, high = between_bounds(rule.value) or (None, None)
                low_value = _coerce(low, kind, normalize=False)
                high_value = _coerce(high, kind, normalize=False)
                return low_value <= left <= high_value
            right = _coerce(rule.value, kind, normalize=False)
            return left > right if operator == "greater_than" else left < right

        if operator in {"equals", "not_equals"}:
            left = _coerce(actual, rule.value_type, normalize=rule.normalize)
            right = _coerce(rule.value, rule.value_type, normalize=rule.normalize)
            return (left == right) if operator == "equals" else (left != right)

        if operator in {"contains", "not_contains"}:
            found = _contains(actual, rule.value, rule=rule)
            return found if operator == "contains" else not found

        if operator in {"starts_with", "ends_with"}:
            left = _coerce(actual, "string", normalize=rule.normalize)
            right = _coerce(rule.value, "string", normalize=rule.normalize)
            return left.startswith(right) if operator == "starts_with" else left.endswith(right)

        if operator in {"in_list", "not_in_list"}:
            options = _list_value(rule.value)
            left = _coerce(actual, rule.value_type, normalize=rule.normalize)
            members = [_coerce(item, rule.value_type, normalize=rule.normalize) for item in options]
            found = left in members
            return found if operator == "in_list" else not found
    except DataError as exc:
        collector.add(f"Cannot compare '{rule.property}' as {rule.value_type}: {exc}")
        return False

    collector.add(f"Unsupported operator '{operator}'")
    return False


def _contains(actual: Any, expected: Any, *, rule: ConditionRule) -> bool:
    if isinstance(actual, (list, tuple, set)):
        members = [_coerce(item, rule.value_type, normalize=rule.normalize) for item in actual]
        return _coerce(expected, rule.value_type, normalize=rule.normalize) in members
    left = _coerce(actual, "string", normalize=rule.normalize)
    right = _coerce(expected, "string", normalize=rule.normalize)
    return right in left


def _coerce(value: Any, kind: str, *, normalize: bool) -> Any:
    if value is None:
        raise DataError("value is empty")
    if kind == "number":
        if isinstance(value, bool):
            raise DataError(f"{value!r} is not a number")
        try:
            return float(value)
        except (TypeError, ValueError) as exc:
            raise DataError(f"{value!r} is not a number") from exc
    if kind == "boolean":
        if isinstance(value, bool):
            return value
        if isinstance(value, (int, float)) and value in (0, 1):
            return bool(value)
        text = str(value).strip().lower()
        if text in _TRUE_STRINGS:
            return True
        if text in _FALSE_STRINGS:
            return False
        raise DataError(f"{value!r} is not a boolean")
    if kind == "date":
        return _to_datetime(value)
    if isinstance(value, (dict, list)):
        raise DataError(f"{value!r} is not a string")
    text = str(value)
    return text.casefold() if normalize else text


def _to_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError as exc:
            raise DataError(f"{value!r} is not an ISO date") from exc
    else:
        raise DataError(f"{value!r} is not a date")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _list_value(value: Any) -> list[Any]:
    if isinstance(value, (list, tuple, set)):
        return list(value)
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    if value is None:
        return []
    return [value]


def _has_value(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (list, tuple, set, dict)):
        return len(value) > 0
    return True


def _evaluate_event_occurrence(
    config: EventConditionConfig,
    snapshot: dict[str, Any],
    *,
    now: datetime,
    collector: _Collector,
) -> bool:
    event_rule = config.event_config
    since = now - event_rule.time_window.to_timedelta()
    count = 0
    for event in _recent_events(snapshot):
        if event.get("name") != event_rule.event_name:
            continue
        occurred_at = event.get("occurred_at")
        if not isinstance(occurred_at, datetime) or occurred_at < since or occurred_at > now:
            continue
        if event_rule.event_filters is not None and not event_rule.event_filters.is_empty():
            scoped = dict(snapshot)
            scoped["event"] = _as_dict(event.get("payload"))
            if not _evaluate_group(event_rule.event_filters, scoped, collector):
                continue
        count += 1

    target = event_rule.occurrence_count.value
    if event_rule.occurrence_count.operator == "at_least":
        return count >= target
    if event_rule.occurrence_count.operator == "exactly":
        return count == target
    return count <= target


def _formula_helpers(snapshot: dict[str, Any], *, now: datetime) -> dict[str, Any]:
    def attr(path: str) -> Any:
        return resolve_property(snapshot, str(path))

    def count(event_name: str, days: float | None = None) -> int:
        since = now - timedelta(days=float(days)) if days is not None else None
        total = 0
        for event in _recent_events(snapshot):
            if event.get("name") != event_name:
                continue
            occurred_at = event.get("occurred_at")
            if since is not None and (not isinstance(occurred_at, datetime) or occurred_at < since):
                continue
            total += 1
        return total

    def in_segment(segment_id: str) -> bool:
        return str(segment_id) in set(snapshot.get("segments") or [])

    return {"attr": attr, "count": count, "in_segment": in_segment}


def _recent_events(snapshot: dict[str, Any]) -> list[dict[str, Any]]:
    events = snapshot.get("events")
    if not isinstance(events, list):
        return []
    return [event for event in events if isinstance(event, dict)]


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _after(occurred_at: Any, since: datetime) -> bool:
    return isinstance(occurred_at, datetime) and occurred_at > since


def _tags(value: Any) -> list[str]:
    if isinstance(value, (list, tuple, set)):
        return [str(item).strip() for item in value if str(item).strip()]
    return _list_value(value) if isinstance(value, str) else []


def _link_matches(tracking: str | None, payload: dict[str, Any]) -> bool:
    if not tracking:
        return True
    if tracking in (payload.get("tracking"), payload.get("trackingId")):
        return True
    return tracking in str(payload.get("url") or "")


def _order_total(order: dict[str, Any]) -> Any:
    for key in ("total_price", "totalPrice", "total"):
        if order.get(key) is not None:
            return order[key]
    return None


def _product_ids(order: dict[str, Any]) -> set[str]:
    items = order.get("line_items") or order.get("lineItems") or []
    ids: set[str] = set()
    for item in items if isinstance(items, list) else []:
        if not isinstance(item, dict):
            continue
        for key in ("product_id", "productId"):
            if item.get(key) is not None:
                ids.add(str(item[key]))
    return ids
