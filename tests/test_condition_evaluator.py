import copy
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from journey_engine.core.errors import ConfigurationError
from journey_engine.schemas.journey_config import ConditionGroup, GoalConfig
from journey_engine.services.condition_evaluator import (
    ConditionResult,
    audience_split,
    evaluate,
    evaluate_condition_node,
    evaluate_group,
    goal_achieved,
    pick_variant,
    resolve_property,
    select_branch_handle,
)
from journey_engine.services.journey_graph import parse_node_config

NOW = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)


def _group(*conditions: dict, operator: str = "AND", nested: list[dict] | None = None) -> ConditionGroup:
    return ConditionGroup.model_validate(
        {"logicalOperator": operator, "conditions": list(conditions), "nestedGroups": nested or []}
    )


def _snapshot(**customer) -> dict:
    return {
        "customer_id": "cus-1",
        "customer": customer,
        "segments": [],
        "events": [],
        "order": None,
        "product": None,
        "event": {},
        "custom": {},
    }


def _condition(config: dict, subtype: str | None = None):
    return parse_node_config("condition", subtype, config)


@pytest.mark.parametrize(
    ("value", "expected"),
    [(9, False), (10, True), (15, True), (20, True), (21, False)],
)
def test_between_is_inclusive_on_both_bounds(value, expected):
    group = _group({"property": "age", "operator": "between", "value": {"min": 10, "max": 20}, "valueType": "number"})
    assert evaluate(group, _snapshot(age=value)) is expected


def test_between_accepts_two_item_list():
    group = _group({"property": "score", "operator": "between", "value": [1.5, 2.5], "valueType": "number"})
    assert evaluate(group, _snapshot(score="2")) is True


def test_and_group_stops_at_first_false_rule():
    group = _group(
        {"property": "tier", "operator": "equals", "value": "gold"},
        # would record a coercion issue if it were evaluated
        {"property": "age", "operator": "greater_than", "value": 18, "valueType": "number"},
    )
    result = evaluate_group(group, _snapshot(tier="silver", age="unknown"))
    assert result.matched is False
    assert result.issues == ()


def test_or_group_stops_at_first_true_rule():
    group = _group(
        {"property": "tier", "operator": "equals", "value": "gold"},
        {"property": "age", "operator": "greater_than", "value": 18, "valueType": "number"},
        operator="OR",
    )
    result = evaluate_group(group, _snapshot(tier="gold", age="unknown"))
    assert result.matched is True
    assert result.issues == ()


def test_nested_groups_combine_with_parent_operator():
    group = _group(
        {"property": "country", "operator": "equals", "value": "US"},
        nested=[
            {
                "logicalOperator": "OR",
                "conditions": [
                    {"property": "orders", "operator": "greater_than", "value": 3, "valueType": "number"},
                    {"property": "vip", "operator": "equals", "value": True, "valueType": "boolean"},
                ],
            }
        ],
    )
    assert evaluate(group, _snapshot(country="US", orders=1, vip="yes")) is True
    assert evaluate(group, _snapshot(country="US", orders=1, vip=False)) is False
    assert evaluate(group, _snapshot(country="GB", orders=9, vip=True)) is False


def test_empty_groups_follow_operator_identity():
    assert evaluate(_group(), _snapshot()) is True
    assert evaluate(_group(operator="OR"), _snapshot()) is False


def test_uncoercible_number_is_false_with_issue():
    group = _group({"property": "lifetime_value", "operator": "greater_than", "value": 500, "valueType": "number"})
    result = evaluate_group(group, _snapshot(lifetime_value="lots"))
    assert result.matched is False
    assert len(result.issues) == 1
    assert "lifetime_value" in result.issues[0]


def test_uncoercible_date_bound_is_a_data_issue_not_an_error():
    group = _group(
        {"property": "signed_up_at", "operator": "between", "value": ["someday", "2026-01-01"], "valueType": "date"}
    )
    result = evaluate_group(group, _snapshot(signed_up_at="2025-06-01"))
    assert result.matched is False
    assert result.issues == ("Cannot compare 'signed_up_at' as date: 'someday' is not an ISO date",)


def test_missing_attribute_is_false_with_issue():
    group = _group({"property": "lifetime_value", "operator": "less_than", "value": 500, "valueType": "number"})
    result = evaluate_group(group, _snapshot())
    assert result.matched is False
    assert result.issues == ("Missing attribute 'lifetime_value'",)


def test_is_set_and_is_not_set():
    is_set = _group({"property": "email", "operator": "is_set"})
    is_not_set = _group({"property": "email", "operator": "is_not_set"})
    assert evaluate(is_set, _snapshot(email="ada@example.com")) is True
    assert evaluate(is_set, _snapshot(email="  ")) is False
    assert evaluate(is_not_set, _snapshot()) is True


def test_normalize_compares_case_insensitively():
    strict = _group({"property": "city", "operator": "equals", "value": "lagos"})
    relaxed = _group({"property": "city", "operator": "equals", "value": "lagos", "normalize": True})
    assert evaluate(strict, _snapshot(city="Lagos")) is False
    assert evaluate(relaxed, _snapshot(city="Lagos")) is True


def test_string_operators_and_lists():
    snapshot = _snapshot(email="ada@example.com", tags=["vip", "newsletter"], plan="pro")
    assert evaluate(_group({"property": "email", "operator": "ends_with", "value": "@example.com"}), snapshot)
    assert evaluate(_group({"property": "email", "operator": "starts_with", "value": "ada"}), snapshot)
    assert evaluate(_group({"property": "tags", "operator": "contains", "value": "vip"}), snapshot)
    assert evaluate(_group({"property": "tags", "operator": "not_contains", "value": "churned"}), snapshot)
    assert evaluate(_group({"property": "plan", "operator": "in_list", "value": "basic, pro"}), snapshot)
    assert not evaluate(_group({"property": "plan", "operator": "not_in_list", "value": ["pro"]}), snapshot)


def test_date_comparison():
    group = _group(
        {"property": "last_order_at", "operator": "less_than", "value": "2026-01-01T00:00:00Z", "valueType": "date"}
    )
    assert evaluate(group, _snapshot(last_order_at="2025-11-20T08:00:00+00:00")) is True
    assert evaluate(group, _snapshot(last_order_at="2026-02-01")) is False


def test_resolve_property_prefers_snapshot_roots_then_customer():
    snapshot = _snapshot(first_name="Ada", address={"city": "Leeds"})
    snapshot["order"] = {"total": 42}
    assert resolve_property(snapshot, "first_name") == "Ada"
    assert resolve_property(snapshot, "$.address.city") == "Leeds"
    assert resolve_property(snapshot, "order.total") == 42
    assert resolve_property(snapshot, "address.zip") is None


def test_segment_condition_modes():
    snapshot = _snapshot()
    snapshot["segments"] = ["lapsed", "newsletter"]
    is_in = _condition({"segmentConfig": {"segmentIds": ["vip", "lapsed"]}}, subtype="segment")
    is_not_in = _condition({"type": "segment", "segmentConfig": {"segmentIds": ["vip"], "matchType": "is_not_in"}})
    assert evaluate_condition_node(is_in, snapshot, now=NOW).matched is True
    assert evaluate_condition_node(is_not_in, snapshot, now=NOW).matched is True


def test_event_condition_counts_within_window_and_filters():
    config = _condition(
        {
            "type": "event",
            "eventConfig": {
                "eventName": "order_placed",
                "timeWindow": {"value": 30, "unit": "days"},
                "occurrenceCount": {"operator": "at_least", "value": 2},
                "eventFilters": {
                    "conditions": [{"property": "event.total", "operator": "greater_than", "value": 20, "valueType": "number"}]
                },
            },
        }
    )
    snapshot = _snapshot()
    snapshot["events"] = [
        {"name": "order_placed", "occurred_at": NOW - timedelta(days=2), "payload": {"total": 50}},
        {"name": "order_placed", "occurred_at": NOW - timedelta(days=10), "payload": {"total": 35}},
        {"name": "order_placed", "occurred_at": NOW - timedelta(days=12), "payload": {"total": 5}},
        {"name": "order_placed", "occurred_at": NOW - timedelta(days=45), "payload": {"total": 90}},
    ]
    assert evaluate_condition_node(config, snapshot, now=NOW).matched is True

    snapshot["events"] = snapshot["events"][1:]
    assert evaluate_condition_node(config, snapshot, now=NOW).matched is False


def test_formula_condition_uses_helpers():
    config = _condition(
        {"type": "formula", "formulaExpression": 'attr("lifetime_value") > 100 and in_segment("vip")'}
    )
    snapshot = _snapshot(lifetime_value=250)
    snapshot["segments"] = ["vip"]
    assert evaluate_condition_node(config, snapshot, now=NOW).matched is True

    snapshot["segments"] = []
    assert evaluate_condition_node(config, snapshot, now=NOW).matched is False


def test_formula_evaluation_error_is_a_data_issue():
    config = _condition({"type": "formula", "formulaExpression": 'attr("lifetime_value") > 100'})
    result = evaluate_condition_node(config, _snapshot(), now=NOW)
    assert result.matched is False
    assert result.issues and result.issues[0].startswith("Formula evaluation failed")


def test_formula_rejects_attribute_access_at_parse_time():
    with pytest.raises(ValidationError):
        _condition({"type": "formula", "formulaExpression": "__import__('os').system('true')"})


def test_select_branch_handle_prefers_result_edge_then_else():
    rules = _condition({"rootGroup": {"conditions": [{"property": "a", "operator": "is_set"}]}, "addElseBranch": True})
    assert select_branch_handle(ConditionResult(matched=True), rules, ["true", "false"]) == "true"
    assert select_branch_handle(ConditionResult(matched=False), rules, ["true", "else"]) == "else"


def test_select_branch_handle_without_else_raises_configuration_error():
    rules = _condition({"rootGroup": {"conditions": [{"property": "a", "operator": "is_set"}]}})
    with pytest.raises(ConfigurationError):
        select_branch_handle(ConditionResult(matched=False), rules, ["true", "else"])


def test_audience_split_counts_matches_and_data_errors():
    config = _condition(
        {
            "rootGroup": {
                "conditions": [
                    {"property": "lifetime_value", "operator": "greater_than", "value": 500, "valueType": "number"}
                ]
            }
        }
    )
    snapshots = [
        _snapshot(lifetime_value=900),
        _snapshot(lifetime_value=100),
        _snapshot(lifetime_value="n/a"),
        _snapshot(),
    ]
    split = audience_split(config, snapshots, now=NOW)
    assert split.total == 4
    assert split.matched == 1
    assert split.unmatched == 3
    assert split.data_errors == 2


def test_evaluation_is_deterministic_and_leaves_snapshot_untouched():
    rules = _condition(
        {
            "rootGroup": {
                "conditions": [
                    {"property": "tier", "operator": "equals", "value": "GOLD", "normalize": True},
                    {"property": "age", "operator": "greater_than", "value": 18, "valueType": "number"},
                ],
                "logicalOperator": "OR",
            }
        }
    )
    event = _condition(
        {
            "type": "event",
            "eventConfig": {
                "eventName": "order_placed",
                "timeWindow": {"value": 7, "unit": "days"},
                "eventFilters": {"conditions": [{"property": "event.total", "operator": "is_set"}]},
            },
        }
    )
    snapshot = _snapshot(tier="gold", age="unknown", address={"city": "Leeds"})
    snapshot["events"] = [{"name": "order_placed", "occurred_at": NOW - timedelta(days=1), "payload": {"total": 12}}]
    before = copy.deepcopy(snapshot)

    for config in (rules, event):
        first = evaluate_condition_node(config, snapshot, now=NOW)
        second = evaluate_condition_node(config, snapshot, now=NOW)
        assert first == second
        assert first.matched is True
    assert snapshot == before


def _goal(**config) -> GoalConfig:
    return parse_node_config("goal", None, config)


def _order_event(at: datetime, total, *product_ids: str) -> dict:
    order = {"total_price": total, "line_items": [{"product_id": product_id} for product_id in product_ids]}
    return {"name": "order_placed", "occurred_at": at, "payload": {"order": order}}


def test_order_goals_only_count_orders_after_entry():
    entered = NOW - timedelta(days=5)
    snapshot = _snapshot()
    snapshot["events"] = [
        _order_event(NOW - timedelta(days=1), "60.00", "sku-1"),
        _order_event(NOW - timedelta(days=2), 45, "sku-2"),
        _order_event(NOW - timedelta(days=9), 500, "sku-3"),
    ]
    assert goal_achieved(_goal(goalType="order_any"), snapshot, since=entered) is True
    assert goal_achieved(_goal(goalType="order_value", orderThreshold=100), snapshot, since=entered) is True
    assert goal_achieved(_goal(goalType="order_value", orderThreshold=120), snapshot, since=entered) is False
    assert goal_achieved(_goal(goalType="product_purchased", productId="sku-2"), snapshot, since=entered) is True
    assert goal_achieved(_goal(goalType="product_purchased", productId="sku-3"), snapshot, since=entered) is False
    assert goal_achieved(_goal(goalType="order_any"), snapshot, since=NOW) is False


def test_profile_and_event_goals():
    entered = NOW - timedelta(days=1)
    snapshot = _snapshot(tags=["vip", "newsletter"])
    snapshot["segments"] = ["repeat_buyers"]
    snapshot["events"] = [
        {"name": "link_clicked", "occurred_at": NOW, "payload": {"url": "https://shop.example/?utm=winback"}},
        {"name": "review_left", "occurred_at": NOW, "payload": {}},
    ]
    assert goal_achieved(_goal(goalType="tag_added", tagName="vip"), snapshot, since=entered) is True
    assert goal_achieved(_goal(goalType="tag_added", tagName="churned"), snapshot, since=entered) is False
    assert goal_achieved(_goal(goalType="segment_entry", segmentId="repeat_buyers"), snapshot, since=entered) is True
    assert goal_achieved(_goal(goalType="link_clicked", linkTracking="utm=winback"), snapshot, since=entered) is True
    assert goal_achieved(_goal(goalType="link_clicked", linkTracking="utm=spring"), snapshot, since=entered) is False
    assert goal_achieved(_goal(goalType="custom_event", eventName="review_left"), snapshot, since=entered) is True
    assert goal_achieved(_goal(), snapshot, since=entered) is True


def test_pick_variant_is_stable_and_follows_weights():
    config = _condition(
        {"type": "ab_test", "variants": [{"id": "control", "weight": 0}, {"id": "treatment", "weight": 3}]}
    )
    assert {pick_variant(config, f"enr-{index}:x1").id for index in range(50)} == {"treatment"}

    even = _condition({"type": "ab_test", "variants": [{"id": "a", "weight": 0}, {"id": "b", "weight": 0}]})
    picks = [pick_variant(even, f"enr-{index}:x1").id for index in range(200)]
    assert set(picks) == {"a", "b"}
    assert picks == [pick_variant(even, f"enr-{index}:x1").id for index in range(200)]


def test_ab_test_has_no_boolean_evaluation():
    config = _condition({"type": "ab_test", "variants": [{"id": "a"}]})
    with pytest.raises(ConfigurationError):
        evaluate_condition_node(config, _snapshot(), now=NOW)
