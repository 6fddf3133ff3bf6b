import pytest

from journey_engine.core.errors import ConfigurationError, JourneyValidationError
from journey_engine.schemas.journey_config import (
    AddTagActionConfig,
    ExperimentConditionConfig,
    FixedTimeDelay,
    GoalConfig,
    SegmentTriggerConfig,
    UpdatePropertyActionConfig,
    WhatsAppActionConfig,
)
from journey_engine.services.journey_graph import compile_journey, load_published_graph


def _definition(nodes: list[dict], edges: list[dict]) -> dict:
    return {"nodes": nodes, "edges": edges}


def _trigger(node_id: str = "t1") -> dict:
    return {"id": node_id, "type": "trigger", "subtype": "segment_joined", "config": {"segmentId": "lapsed"}}


def _issues(definition: dict) -> list[dict]:
    with pytest.raises(JourneyValidationError) as exc_info:
        compile_journey(definition)
    return exc_info.value.issues


def _messages(issues: list[dict]) -> list[str]:
    return [issue["message"] for issue in issues]


def test_compile_resolves_default_handles_and_configs():
    graph = compile_journey(
        _definition(
            [
                _trigger(),
                {"id": "d1", "type": "delay", "subtype": "fixed_time", "config": {"duration": {"value": 1, "unit": "days"}}},
                {
                    "id": "a1",
                    "type": "action",
                    "config": {"templateId": "welcome", "body": "Welcome!"},
                },
                {"id": "g1", "type": "goal", "config": {}},
            ],
            [
                {"sourceNodeId": "t1", "targetNodeId": "d1"},
                {"sourceNodeId": "d1", "targetNodeId": "a1"},
                {"sourceNodeId": "a1", "targetNodeId": "g1"},
            ],
        )
    )
    assert graph.trigger_node_id == "t1"
    assert graph.target("t1", "next") == "d1"
    assert graph.target("d1", "resumed") == "a1"
    assert graph.target("a1", "delivered") == "g1"
    assert isinstance(graph.trigger.config, SegmentTriggerConfig)
    assert isinstance(graph.node("d1").config, FixedTimeDelay)
    assert isinstance(graph.node("a1").config, WhatsAppActionConfig)
    assert graph.order == ["t1", "d1", "a1", "g1"]


def test_require_target_and_unknown_node_raise_configuration_error():
    graph = compile_journey(
        _definition(
            [_trigger(), {"id": "g1", "type": "goal"}],
            [{"sourceNodeId": "t1", "targetNodeId": "g1"}],
        )
    )
    with pytest.raises(ConfigurationError):
        graph.node("missing")
    with pytest.raises(ConfigurationError):
        graph.require_target("g1", "next")


def test_button_handles_are_valid_for_action_nodes():
    graph = compile_journey(
        _definition(
            [
                _trigger(),
                {
                    "id": "a1",
                    "type": "action",
                    "config": {
                        "templateId": "offer",
                        "body": "Want 10% off?",
                        "exitPaths": {
                            "buttonClicked": [
                                {"buttonId": "yes", "enabled": True, "action": {"type": "continue"}},
                            ]
                        },
                    },
                },
                {"id": "g_yes", "type": "goal"},
                {"id": "g_other", "type": "goal"},
            ],
            [
                {"sourceNodeId": "t1", "targetNodeId": "a1"},
                {"sourceNodeId": "a1", "sourceHandle": "button:yes", "targetNodeId": "g_yes"},
                {"sourceNodeId": "a1", "targetNodeId": "g_other"},
            ],
        )
    )
    assert graph.outgoing("a1") == {"button:yes": "g_yes", "delivered": "g_other"}


def test_publish_validation_reports_every_problem():
    issues = _issues(
        _definition(
            [
                _trigger(),
                {"id": "c1", "type": "condition", "config": {"rootGroup": {"conditions": [{"property": "age"}]}}},
                {"id": "g1", "type": "goal"},
                {"id": "orphan", "type": "goal"},
            ],
            [
                {"sourceNodeId": "t1", "targetNodeId": "c1"},
                {"sourceNodeId": "c1", "targetNodeId": "g1"},
                {"sourceNodeId": "g1", "sourceHandle": "next", "targetNodeId": "g1"},
                {"sourceNodeId": "c1", "sourceHandle": "true", "targetNodeId": "ghost"},
            ],
        )
    )
    messages = _messages(issues)
    assert "Condition is incomplete" in messages
    assert "Edges leaving condition node 'c1' need a handle" in messages
    assert "Handle 'next' is not valid for goal node 'g1'" in messages
    assert "Unknown node 'ghost'" in messages
    assert "Node 'orphan' is not reachable from the trigger" in messages
    assert all(issue["type"] == "journey_definition" for issue in issues)


def test_exactly_one_trigger_is_required():
    issues = _issues(_definition([{"id": "g1", "type": "goal"}], []))
    assert _messages(issues) == ["Journey must have exactly one trigger node, found 0"]

    issues = _issues(
        _definition(
            [_trigger("t1"), _trigger("t2"), {"id": "g1", "type": "goal"}],
            [{"sourceNodeId": "t1", "targetNodeId": "g1"}, {"sourceNodeId": "t2", "targetNodeId": "g1"}],
        )
    )
    assert "Journey must have exactly one trigger node, found 2" in _messages(issues)


def test_self_links_and_incoming_trigger_edges_are_rejected():
    issues = _issues(
        _definition(
            [
                _trigger(),
                {"id": "d1", "type": "delay", "subtype": "fixed_time", "config": {"duration": {"value": 1}}},
            ],
            [
                {"sourceNodeId": "t1", "targetNodeId": "d1"},
                {"sourceNodeId": "d1", "sourceHandle": "timeout", "targetNodeId": "d1"},
                {"sourceNodeId": "d1", "targetNodeId": "t1"},
            ],
        )
    )
    messages = _messages(issues)
    assert "Node 'd1' cannot link to itself" in messages
    assert "Trigger node cannot have incoming edges" in messages


def test_invalid_node_config_is_reported_with_path():
    issues = _issues(
        _definition(
            [
                _trigger(),
                {"id": "a1", "type": "action", "config": {"templateId": "t", "body": "Hi {{name}}"}},
            ],
            [{"sourceNodeId": "t1", "targetNodeId": "a1"}],
        )
    )
    assert any(issue["field"].startswith("nodes.a1.config") for issue in issues)
    assert any("name" in issue["message"] for issue in issues)


def test_else_branch_flag_needs_else_edge():
    issues = _issues(
        _definition(
            [
                _trigger(),
                {
                    "id": "c1",
                    "type": "condition",
                    "config": {
                        "addElseBranch": True,
                        "rootGroup": {"conditions": [{"property": "age", "operator": "is_set"}]},
                    },
                },
                {"id": "g1", "type": "goal"},
            ],
            [
                {"sourceNodeId": "t1", "targetNodeId": "c1"},
                {"sourceNodeId": "c1", "sourceHandle": "true", "targetNodeId": "g1"},
            ],
        )
    )
    assert _messages(issues) == ["addElseBranch is set but no 'else' edge exists"]


def test_branch_exit_path_must_name_a_real_handle():
    issues = _issues(
        _definition(
            [
                _trigger(),
                {
                    "id": "a1",
                    "type": "action",
                    "config": {
                        "templateId": "t",
                        "body": "Hello",
                        "exitPaths": {"read": {"enabled": True, "action": {"type": "branch", "branchId": "nowhere"}}},
                    },
                },
            ],
            [{"sourceNodeId": "t1", "targetNodeId": "a1"}],
        )
    )
    assert _messages(issues) == ["branchId 'nowhere' is not a handle of action node 'a1'"]


def test_published_graph_that_no_longer_compiles_is_a_configuration_error():
    with pytest.raises(ConfigurationError):
        load_published_graph("j-broken", 1, _definition([], []))


def _ab_test(node_id: str = "x1") -> dict:
    return {
        "id": node_id,
        "type": "condition",
        "subtype": "ab_test",
        "config": {
            "experimentName": "subject line",
            "variants": [{"id": "a", "label": "Short", "weight": 50}, {"id": "b", "label": "Long", "weight": 50}],
        },
    }


def test_ab_test_variants_are_handles_and_each_needs_an_edge():
    graph = compile_journey(
        _definition(
            [_trigger(), _ab_test(), {"id": "g1", "type": "goal"}, {"id": "g2", "type": "goal"}],
            [
                {"sourceNodeId": "t1", "targetNodeId": "x1"},
                {"sourceNodeId": "x1", "sourceHandle": "variant:a", "targetNodeId": "g1"},
                {"sourceNodeId": "x1", "sourceHandle": "variant:b", "targetNodeId": "g2"},
            ],
        )
    )
    assert isinstance(graph.node("x1").config, ExperimentConditionConfig)
    assert graph.node("x1").allowed_handles() == frozenset({"variant:a", "variant:b"})
    assert graph.node("x1").primary_handle() == "variant:a"

    messages = _messages(
        _issues(
            _definition(
                [_trigger(), _ab_test(), {"id": "g1", "type": "goal"}],
                [
                    {"sourceNodeId": "t1", "targetNodeId": "x1"},
                    {"sourceNodeId": "x1", "sourceHandle": "variant:a", "targetNodeId": "g1"},
                    {"sourceNodeId": "x1", "sourceHandle": "true", "targetNodeId": "g1"},
                ],
            )
        )
    )
    assert "Handle 'true' is not valid for condition node 'x1'" in messages
    assert "Experiment variant 'b' has no outgoing edge" in messages


def test_ab_test_variant_ids_must_be_unique():
    node = _ab_test()
    node["config"]["variants"] = [{"id": "a"}, {"id": "a"}]
    messages = _messages(
        _issues(_definition([_trigger(), node], [{"sourceNodeId": "t1", "targetNodeId": "x1"}]))
    )
    assert any("Experiment variant ids must be unique" in message for message in messages)


def test_profile_actions_parse_by_action_type_and_only_continue_or_fail():
    graph = compile_journey(
        _definition(
            [
                _trigger(),
                {"id": "a1", "type": "action", "config": {"actionType": "add_tag", "tagName": " vip "}},
                {
                    "id": "a2",
                    "type": "action",
                    "subtype": "update_property",
                    "config": {"propertyKey": "winback_stage", "propertyValue": 2},
                },
                {"id": "g1", "type": "goal"},
                {"id": "g2", "type": "goal"},
            ],
            [
                {"sourceNodeId": "t1", "targetNodeId": "a1"},
                {"sourceNodeId": "a1", "targetNodeId": "a2"},
                {"sourceNodeId": "a1", "sourceHandle": "failed", "targetNodeId": "g2"},
                {"sourceNodeId": "a2", "targetNodeId": "g1"},
            ],
        )
    )
    tag = graph.node("a1").config
    assert isinstance(tag, AddTagActionConfig)
    assert tag.tag_name == "vip"
    assert isinstance(graph.node("a2").config, UpdatePropertyActionConfig)
    assert graph.node("a2").allowed_handles() == frozenset({"delivered", "failed"})

    messages = _messages(
        _issues(
            _definition(
                [
                    _trigger(),
                    {"id": "a1", "type": "action", "config": {"actionType": "add_tag", "tagName": "vip"}},
                    {"id": "g1", "type": "goal"},
                ],
                [
                    {"sourceNodeId": "t1", "targetNodeId": "a1"},
                    {"sourceNodeId": "a1", "sourceHandle": "read", "targetNodeId": "g1"},
                ],
            )
        )
    )
    assert "Handle 'read' is not valid for action node 'a1'" in messages


def test_update_property_cannot_write_contact_fields():
    messages = _messages(
        _issues(
            _definition(
                [
                    _trigger(),
                    {"id": "a1", "type": "action", "config": {"actionType": "update_property", "propertyKey": "phone"}},
                ],
                [{"sourceNodeId": "t1", "targetNodeId": "a1"}],
            )
        )
    )
    assert any("propertyKey 'phone' cannot be written by a journey" in message for message in messages)


def test_goal_types_require_their_criteria():
    graph = compile_journey(
        _definition(
            [_trigger(), {"id": "g1", "type": "goal", "config": {"goalType": "order_value", "minValue": 100}}],
            [{"sourceNodeId": "t1", "targetNodeId": "g1"}],
        )
    )
    goal = graph.node("g1").config
    assert isinstance(goal, GoalConfig)
    assert goal.order_threshold == 100
    assert goal.attribution_window.to_timedelta().days == 30

    messages = _messages(
        _issues(
            _definition(
                [_trigger(), {"id": "g1", "type": "goal", "config": {"goalType": "product_purchased"}}],
                [{"sourceNodeId": "t1", "targetNodeId": "g1"}],
            )
        )
    )
    assert any("productId is required for product_purchased goals" in message for message in messages)


def test_event_lookback_windows_are_capped_at_a_year():
    long_window = {
        "id": "c1",
        "type": "condition",
        "config": {
            "type": "event",
            "eventConfig": {"eventName": "order_placed", "timeWindow": {"value": 400, "unit": "days"}},
        },
    }
    long_count = {
        "id": "c2",
        "type": "condition",
        "config": {"type": "formula", "formulaExpression": 'count("order_placed", 500) > 1'},
    }
    issues = _issues(
        _definition(
            [_trigger(), long_window, long_count],
            [
                {"sourceNodeId": "t1", "targetNodeId": "c1"},
                {"sourceNodeId": "c1", "sourceHandle": "true", "targetNodeId": "c2"},
            ],
        )
    )
    messages = _messages(issues)
    assert any("timeWindow cannot exceed 365 days" in message for message in messages)
    assert any("count_days_out_of_range" in message for message in messages)
