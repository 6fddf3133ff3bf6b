import json
from collections import deque
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any

from pydantic import TypeAdapter, ValidationError

from journey_engine.core.errors import ConfigurationError, JourneyValidationError
from journey_engine.schemas.journey_config import (
    ActionConfig,
    ConditionConfig,
    DelayConfig,
    ExperimentConditionConfig,
    GoalConfig,
    JourneyDefinitionIn,
    RulesConditionConfig,
    ProductOrderConditionConfig,
    TriggerConfig,
    WhatsAppActionConfig,
)


_CONDITION_ADAPTER = TypeAdapter(ConditionConfig)
_DELAY_ADAPTER = TypeAdapter(DelayConfig)
_TRIGGER_ADAPTER = TypeAdapter(TriggerConfig)
_ACTION_ADAPTER = TypeAdapter(ActionConfig)

# Discriminator key inside each node type's config; the node subtype fills it when absent.
_DISCRIMINATORS = {
    "condition": ("type", "rules"),
    "delay": ("delayType", None),
    "trigger": ("triggerType", None),
    "action": ("actionType", "whatsapp_send"),
}
_ACTION_TYPES = {"whatsapp_send", "add_tag", "update_property"}

_STATIC_HANDLES: dict[str, frozenset[str]] = {
    "trigger": frozenset({"next"}),
    "condition": frozenset({"true", "false", "else"}),
    "delay": frozenset({"resumed", "timeout"}),
    "action": frozenset({"delivered", "read", "replied", "failed", "unreachable"}),
    "goal": frozenset(),
}

DEFAULT_HANDLES = {
    "trigger": "next",
    "action": "delivered",
    "delay": "resumed",
}

PRIMARY_HANDLES = {
    "trigger": "next",
    "condition": "true",
    "delay": "resumed",
    "action": "delivered",
}

# add_tag and update_property actions have no delivery lifecycle
_PROFILE_ACTION_HANDLES = frozenset({"delivered", "failed"})


def variant_handle(variant_id: str) -> str:
    return f"variant:{variant_id}"


@dataclass(frozen=True)
class JourneyNode:
    id: str
    type: str
    subtype: str | None
    config: Any

    def allowed_handles(self) -> frozenset[str]:
        handles = _STATIC_HANDLES[self.type]
        if isinstance(self.config, ExperimentConditionConfig):
            return frozenset(variant_handle(variant.id) for variant in self.config.variants)
        if self.type == "action" and isinstance(self.config, WhatsAppActionConfig):
            buttons = {f"button:{path.button_id}" for path in self.config.exit_paths.button_clicked}
            return handles | frozenset(buttons)
        if self.type == "action":
            return _PROFILE_ACTION_HANDLES
        return handles

    def primary_handle(self) -> str | None:
        if isinstance(self.config, ExperimentConditionConfig):
            return variant_handle(self.config.variants[0].id)
        return PRIMARY_HANDLES.get(self.type)


@dataclass
class JourneyGraph:
    nodes: dict[str, JourneyNode]
    edges: dict[tuple[str, str], str]
    trigger_node_id: str
    order: list[str] = field(default_factory=list)

    @property
    def trigger(self) -> JourneyNode:
        return self.nodes[self.trigger_node_id]

    def node(self, node_id: str) -> JourneyNode:
        found = self.nodes.get(node_id)
        if found is None:
            raise ConfigurationError(f"Node '{node_id}' does not exist in the journey")
        return found

    def target(self, node_id: str, handle: str) -> str | None:
        return self.edges.get((node_id, handle))

    def require_target(self, node_id: str, handle: str) -> str:
        target = self.target(node_id, handle)
        if target is None:
            raise ConfigurationError(f"Node '{node_id}' has no outgoing edge for handle '{handle}'")
        return target

    def outgoing(self, node_id: str) -> dict[str, str]:
        return {handle: target for (source, handle), target in self.edges.items() if source == node_id}


def parse_node_config(node_type: str, subtype: str | None, config: dict[str, Any]) -> Any:
    payload = dict(config or {})
    discriminator = _DISCRIMINATORS.get(node_type)
    if discriminator:
        key, default = discriminator
        snake_key = "".join(f"_{c.lower()}" if c.isupper() else c for c in key)
        if key not in payload and snake_key in payload:
            payload[key] = payload.pop(snake_key)
        if node_type == "action" and subtype not in _ACTION_TYPES:
            subtype = None
        if key not in payload and (subtype or default):
            payload[key] = subtype or default

    if node_type == "condition":
        return _CONDITION_ADAPTER.validate_python(payload)
    if node_type == "delay":
        return _DELAY_ADAPTER.validate_python(payload)
    if node_type == "trigger":
        return _TRIGGER_ADAPTER.validate_python(payload)
    if node_type == "action":
        return _ACTION_ADAPTER.validate_python(payload)
    return GoalConfig.model_validate(payload)


def compile_journey(definition: dict[str, Any]) -> JourneyGraph:
    """Validate a builder definition and build the node arena and edge map.

    Raises JourneyValidationError with one issue per problem found.
    """
    issues: list[dict[str, Any]] = []
    try:
        parsed = JourneyDefinitionIn.model_validate(definition or {})
    except ValidationError as exc:
        raise JourneyValidationError(_pydantic_issues(exc, prefix="definition")) from exc

    nodes: dict[str, JourneyNode] = {}
    order: list[str] = []
    for index, raw in enumerate(parsed.nodes):
        if raw.id in nodes:
            issues.append(_issue(f"nodes.{index}.id", f"Duplicate node id '{raw.id}'"))
            continue
        try:
            config = parse_node_config(raw.type, raw.subtype, raw.config)
        except ValidationError as exc:
            issues.extend(_pydantic_issues(exc, prefix=f"nodes.{raw.id}.config"))
            continue
        issues.extend(_completeness_issues(raw.id, config))
        nodes[raw.id] = JourneyNode(id=raw.id, type=raw.type, subtype=raw.subtype, config=config)
        order.append(raw.id)

    triggers = [node_id for node_id in order if nodes[node_id].type == "trigger"]
    if len(triggers) != 1:
        issues.append(_issue("nodes", f"Journey must have exactly one trigger node, found {len(triggers)}"))

    edges: dict[tuple[str, str], str] = {}
    for index, edge in enumerate(parsed.edges):
        source = nodes.get(edge.source_node_id)
        if edge.source_node_id not in nodes and not _node_declared(parsed, edge.source_node_id):
            issues.append(_issue(f"edges.{index}.sourceNodeId", f"Unknown node '{edge.source_node_id}'"))
            continue
        if edge.target_node_id not in nodes and not _node_declared(parsed, edge.target_node_id):
            issues.append(_issue(f"edges.{index}.targetNodeId", f"Unknown node '{edge.target_node_id}'"))
            continue
        if source is None:
            continue
        handle = (edge.source_handle or "").strip() or DEFAULT_HANDLES.get(source.type)
        if handle is None:
            issues.append(
                _issue(f"edges.{index}.sourceHandle", f"Edges leaving {source.type} node '{source.id}' need a handle")
            )
            continue
        if handle not in source.allowed_handles():
            issues.append(
                _issue(
                    f"edges.{index}.sourceHandle",
                    f"Handle '{handle}' is not valid for {source.type} node '{source.id}'",
                )
            )
            continue
        key = (source.id, handle)
        if key in edges and edges[key] != edge.target_node_id:
            issues.append(
                _issue(f"edges.{index}", f"Node '{source.id}' has more than one edge for handle '{handle}'")
            )
            continue
        if edge.target_node_id == source.id:
            issues.append(_issue(f"edges.{index}", f"Node '{source.id}' cannot link to itself"))
            continue
        edges[key] = edge.target_node_id

    targets = set(edges.values())
    for node_id in order:
        node = nodes[node_id]
        if node.type == "condition" and node.config.add_else_branch and (node_id, "else") not in edges:
            issues.append(_issue(f"nodes.{node_id}", "addElseBranch is set but no 'else' edge exists"))
        if isinstance(node.config, ExperimentConditionConfig):
            for variant in node.config.variants:
                if (node_id, variant_handle(variant.id)) not in edges:
                    issues.append(
                        _issue(f"nodes.{node_id}", f"Experiment variant '{variant.id}' has no outgoing edge")
                    )
        if isinstance(node.config, WhatsAppActionConfig):
            issues.extend(_exit_path_issues(node))
        if node.type == "trigger" and node_id in targets:
            issues.append(_issue(f"nodes.{node_id}", "Trigger node cannot have incoming edges"))

    if len(triggers) == 1:
        reachable = _reachable_from(triggers[0], edges)
        for node_id in order:
            if node_id not in reachable:
                issues.append(_issue(f"nodes.{node_id}", f"Node '{node_id}' is not reachable from the trigger"))

    if issues:
        raise JourneyValidationError(issues)
    return JourneyGraph(nodes=nodes, edges=edges, trigger_node_id=triggers[0], order=order)


@lru_cache(maxsize=256)
def _compile_cached(journey_id: str, version: int, definition_key: str) -> JourneyGraph:
    return compile_journey(json.loads(definition_key))


def load_published_graph(journey_id: str, version: int, definition: dict[str, Any]) -> JourneyGraph:
    """Compiled graph for a published journey version.

    Published definitions are immutable, so the compiled form is cached per (journey, version).
    """
    try:
        return _compile_cached(journey_id, version, json.dumps(definition, sort_keys=True, default=str))
    except JourneyValidationError as exc:
        raise ConfigurationError(f"Published journey '{journey_id}' is invalid: {exc}") from exc


def _reachable_from(start: str, edges: dict[tuple[str, str], str]) -> set[str]:
    adjacency: dict[str, list[str]] = {}
    for (source, _handle), target in edges.items():
        adjacency.setdefault(source, []).append(target)
    seen = {start}
    queue = deque([start])
    while queue:
        current = queue.popleft()
        for target in adjacency.get(current, []):
            if target not in seen:
                seen.add(target)
                queue.append(target)
    return seen


def _completeness_issues(node_id: str, config: Any) -> list[dict[str, Any]]:
    if isinstance(config, (RulesConditionConfig, ProductOrderConditionConfig)):
        if config.root_group.is_empty():
            return [_issue(f"nodes.{node_id}.config.rootGroup", "Condition group has no conditions")]
        return [
            _issue(f"nodes.{node_id}.config.{path}", "Condition is incomplete")
            for path in config.root_group.incomplete_paths()
        ]
    return []


def _exit_path_issues(node: JourneyNode) -> list[dict[str, Any]]:
    config: WhatsAppActionConfig = node.config
    issues: list[dict[str, Any]] = []
    allowed = node.allowed_handles()
    for outcome, path in config.exit_paths.enabled_paths():
        if path.action.type != "branch":
            continue
        branch_id = (path.action.branch_id or "").strip()
        if not branch_id:
            issues.append(_issue(f"nodes.{node.id}.config.exitPaths.{outcome}", "Branch exit path needs a branchId"))
        elif branch_id not in allowed:
            issues.append(
                _issue(
                    f"nodes.{node.id}.config.exitPaths.{outcome}",
                    f"branchId '{branch_id}' is not a handle of action node '{node.id}'",
                )
            )
    return issues


def _node_declared(parsed: JourneyDefinitionIn, node_id: str) -> bool:
    return any(node.id == node_id for node in parsed.nodes)


def _pydantic_issues(exc: ValidationError, *, prefix: str) -> list[dict[str, Any]]:
    issues = []
    for err in exc.errors():
        location = ".".join(str(part) for part in err.get("loc", ()))
        issues.append(_issue(f"{prefix}.{location}" if location else prefix, err.get("msg", "Invalid value")))
    return issues


def _issue(field_name: str, message: str) -> dict[str, Any]:
    return {"field": field_name, "message": message, "type": "journey_definition"}
