from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Union


# Activity types written on the node an enrollment leaves when it advances.
ADVANCE_EVENT_TYPES = frozenset(
    {
        "node_exited",
        "trigger_fired",
        "condition_evaluated",
        "experiment_variant_selected",
        "delay_resumed",
        "delay_timeout",
        "message_outcome",
        "message_skipped",
        "tag_added",
        "property_updated",
        "retry_fallback",
        "manual_skip",
    }
)


@dataclass(frozen=True)
class Advance:
    handle: str
    next_node_id: str
    event_type: str = "node_exited"
    data: dict[str, Any] = field(default_factory=dict)
    # top-level enrollment metadata keys replaced on advance
    metadata_updates: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Wait:
    wake_at: datetime
    event_type: str = "waiting"
    data: dict[str, Any] = field(default_factory=dict)
    node_state: dict[str, Any] | None = None


@dataclass(frozen=True)
class Complete:
    reason: str = "goal_reached"
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Exit:
    reason: str
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Fail:
    reason: str
    data: dict[str, Any] = field(default_factory=dict)


Transition = Union[Advance, Wait, Complete, Exit, Fail]
