import re
from datetime import date, datetime, timedelta
from typing import Annotated, Any, Literal, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from journey_engine.services.formula import MAX_LOOKBACK_DAYS, validate_formula


NodeType = Literal["trigger", "condition", "delay", "action", "goal"]
DurationUnit = Literal["minutes", "hours", "days", "weeks"]
ConditionOperator = Literal[
    "equals",
    "not_equals",
    "contains",
    "not_contains",
    "starts_with",
    "ends_with",
    "greater_than",
    "less_than",
    "between",
    "is_set",
    "is_not_set",
    "in_list",
    "not_in_list",
]
ValueType = Literal["string", "number", "boolean", "date"]
TimeoutBehavior = Literal["continue", "exit", "branch_to_timeout_path"]
MessageOutcome = Literal["sent", "delivered", "read", "replied", "failed", "unreachable", "button_clicked", "timeout"]

_HHMM_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")
_UNIT_SECONDS = {"minutes": 60, "hours": 3600, "days": 86400, "weeks": 604800}
TEMPLATE_VAR_RE = re.compile(r"{{\s*([a-zA-Z0-9_.]+)\s*}}")
# Profile fields set by the customer API, never by an update_property action.
PROTECTED_PROFILE_KEYS = frozenset({"id", "phone", "email", "timezone", "opted_out"})


def parse_hhmm(value: str) -> tuple[int, int]:
    match = _HHMM_RE.match((value or "").strip())
    if not match:
        raise ValueError(f"Invalid time '{value}', expected HH:MM")
    return int(match.group(1)), int(match.group(2))


def placeholder_names(template: str) -> list[str]:
    return [match.group(1) for match in TEMPLATE_VAR_RE.finditer(template or "")]


def _validate_timezone_name(value: str) -> str:
    cleaned = (value or "").strip()
    if cleaned == "customer":
        return cleaned
    try:
        ZoneInfo(cleaned)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"Unknown timezone '{value}'") from exc
    return cleaned


class _ConfigModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class DurationValue(_ConfigModel):
    value: float = Field(ge=0)
    unit: DurationUnit = "hours"

    def to_timedelta(self) -> timedelta:
        return timedelta(seconds=self.value * _UNIT_SECONDS[self.unit])


class ConditionRule(_ConfigModel):
    property: str = ""
    operator: ConditionOperator | None = None
    value: Any = None
    value_type: ValueType = "string"
    normalize: bool = False

    def is_complete(self) -> bool:
        if not self.property.strip() or self.operator is None:
            return False
        if self.operator == "between":
            bounds = between_bounds(self.value)
            return bounds is not None
        return True


class ConditionGroup(_ConfigModel):
    logical_operator: Literal["AND", "OR"] = "AND"
    conditions: list[ConditionRule] = Field(default_factory=list)
    nested_groups: list["ConditionGroup"] = Field(default_factory=list)

    def incomplete_paths(self, prefix: str = "rootGroup") -> list[str]:
        issues: list[str] = []
        for index, rule in enumerate(self.conditions):
            if not rule.is_complete():
                issues.append(f"{prefix}.conditions.{index}")
        for index, group in enumerate(self.nested_groups):
            issues.extend(group.incomplete_paths(f"{prefix}.nestedGroups.{index}"))
        return issues

    def is_empty(self) -> bool:
        return not self.conditions and all(group.is_empty() for group in self.nested_groups)


def between_bounds(value: Any) -> tuple[Any, Any] | None:
    if isinstance(value, dict):
        low = value.get("min", value.get("from"))
        high = value.get("max", value.get("to"))
    elif isinstance(value, (list, tuple)) and len(value) == 2:
        low, high = value
    else:
        return None
    if low is None or high is None or str(low).strip() == "" or str(high).strip() == "":
        return None
    return low, high


# CONDITION NODES


class _ConditionBase(_ConfigModel):
    add_else_branch: bool = False


class RulesConditionConfig(_ConditionBase):
    type: Literal["rules"] = "rules"
    root_group: ConditionGroup


class SegmentMatch(_ConfigModel):
    segment_ids: list[str] = Field(min_length=1)
    match_type: Literal["is_in", "is_not_in"] = "is_in"


class SegmentConditionConfig(_ConditionBase):
    type: Literal["segment"]
    segment_config: SegmentMatch


class OccurrenceCount(_ConfigModel):
    operator: Literal["at_least", "exactly", "at_most"] = "at_least"
    value: int = Field(default=1, ge=0)


class EventOccurrence(_ConfigModel):
    event_name: str = Field(min_length=1)
    time_window: DurationValue
    occurrence_count: OccurrenceCount = Field(default_factory=OccurrenceCount)
    event_filters: ConditionGroup | None = None

    @field_validator("time_window")
    @classmethod
    def validate_time_window(cls, value: DurationValue) -> DurationValue:
        if value.to_timedelta() > timedelta(days=MAX_LOOKBACK_DAYS):
            raise ValueError(f"timeWindow cannot exceed {MAX_LOOKBACK_DAYS} days")
        return value


class EventConditionConfig(_ConditionBase):
    type: Literal["event"]
    event_config: EventOccurrence


class FormulaConditionConfig(_ConditionBase):
    type: Literal["formula"]
    formula_expression: str

    @field_validator("formula_expression")
    @classmethod
    def validate_expression(cls, value: str) -> str:
        ok, reason = validate_formula(value)
        if not ok:
            raise ValueError(f"Invalid formula expression: {reason}")
        return value.strip()


class ProductOrderConditionConfig(_ConditionBase):
    type: Literal["product_order"]
    root_group: ConditionGroup


class ExperimentVariant(_ConfigModel):
    id: str = Field(min_length=1, max_length=48)
    label: str | None = None
    weight: float = Field(default=1, ge=0)


class ExperimentConditionConfig(_ConditionBase):
    type: Literal["ab_test"]
    experiment_name: str | None = None
    variants: list[ExperimentVariant] = Field(min_length=1)

    @field_validator("variants")
    @classmethod
    def validate_variant_ids(cls, value: list[ExperimentVariant]) -> list[ExperimentVariant]:
        ids = [variant.id for variant in value]
        if len(set(ids)) != len(ids):
            raise ValueError("Experiment variant ids must be unique")
        return value


ConditionConfig = Annotated[
    Union[
        RulesConditionConfig,
        SegmentConditionConfig,
        EventConditionConfig,
        FormulaConditionConfig,
        ProductOrderConditionConfig,
        ExperimentConditionConfig,
    ],
    Field(discriminator="type"),
]


# DELAY NODES


class QuietHours(_ConfigModel):
    enabled: bool = False
    start: str = "21:00"
    end: str = "09:00"
    timezone: str = "customer"

    @field_validator("start", "end")
    @classmethod
    def validate_time(cls, value: str) -> str:
        parse_hhmm(value)
        return value

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, value: str) -> str:
        return _validate_timezone_name(value)


class HolidaySettings(_ConfigModel):
    skip_weekends: bool = False
    skip_holidays: bool = False
    holiday_calendar: Literal["us", "uk", "custom"] = "us"
    custom_holiday_dates: list[date] = Field(default_factory=list)


class Throttling(_ConfigModel):
    enabled: bool = False
    max_users_per_hour: int | None = Field(default=None, ge=1)
    max_users_per_day: int | None = Field(default=None, ge=1)


class _DelayBase(_ConfigModel):
    quiet_hours: QuietHours = Field(default_factory=QuietHours)
    holiday_settings: HolidaySettings = Field(default_factory=HolidaySettings)
    throttling: Throttling = Field(default_factory=Throttling)


class FixedTimeDelay(_DelayBase):
    delay_type: Literal["fixed_time"]
    duration: DurationValue


class WaitUntilTimeDelay(_DelayBase):
    delay_type: Literal["wait_until_time"]
    time: str
    timezone: str = "customer"
    if_passed: Literal["wait_until_tomorrow", "skip_wait", "continue_immediately"] = "wait_until_tomorrow"

    @field_validator("time")
    @classmethod
    def validate_time(cls, value: str) -> str:
        parse_hhmm(value)
        return value

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, value: str) -> str:
        return _validate_timezone_name(value)


class WaitForEventDelay(_DelayBase):
    delay_type: Literal["wait_for_event"]
    event_name: str = Field(min_length=1)
    event_filters: ConditionGroup | None = None
    max_wait_time: DurationValue
    on_timeout: TimeoutBehavior = "continue"


class SendHourWindow(_ConfigModel):
    start: str = "09:00"
    end: str = "20:00"

    @model_validator(mode="after")
    def validate_window(self) -> "SendHourWindow":
        if parse_hhmm(self.start) >= parse_hhmm(self.end):
            raise ValueError("Optimal send window start must be before end")
        return self


class FallbackTime(_ConfigModel):
    hour: int = Field(default=11, ge=0, le=23)
    minute: int = Field(default=0, ge=0, le=59)


class OptimalSendTimeDelay(_DelayBase):
    delay_type: Literal["optimal_send_time"]
    window: SendHourWindow = Field(default_factory=SendHourWindow)
    fallback_time: FallbackTime = Field(default_factory=FallbackTime)
    timezone: str = "customer"
    lookback_days: int = Field(default=90, ge=1, le=365)

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, value: str) -> str:
        return _validate_timezone_name(value)


class WaitForAttributeDelay(_DelayBase):
    delay_type: Literal["wait_for_attribute"]
    attribute_path: str = Field(min_length=1)
    target_value: Any = None
    max_wait_time: DurationValue
    on_timeout: TimeoutBehavior = "continue"


DelayConfig = Annotated[
    Union[
        FixedTimeDelay,
        WaitUntilTimeDelay,
        WaitForEventDelay,
        OptimalSendTimeDelay,
        WaitForAttributeDelay,
    ],
    Field(discriminator="delay_type"),
]


# ACTION NODES


class VariableMapping(_ConfigModel):
    variable: str = Field(min_length=1)
    data_source: Literal["customer", "order", "product", "custom", "static"] = "customer"
    property: str = ""
    fallback_value: str


class SendWindow(_ConfigModel):
    enabled: bool = False
    days_of_week: list[int] = Field(default_factory=lambda: [0, 1, 2, 3, 4, 5, 6])
    start_time: str = "09:00"
    end_time: str = "21:00"
    timezone: str = "customer"

    @field_validator("days_of_week")
    @classmethod
    def validate_days(cls, value: list[int]) -> list[int]:
        if any(day < 0 or day > 6 for day in value):
            raise ValueError("daysOfWeek values must be between 0 (Sunday) and 6 (Saturday)")
        return sorted(set(value))

    @field_validator("start_time", "end_time")
    @classmethod
    def validate_time(cls, value: str) -> str:
        parse_hhmm(value)
        return value

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, value: str) -> str:
        return _validate_timezone_name(value)

    @model_validator(mode="after")
    def validate_window(self) -> "SendWindow":
        if self.enabled:
            if not self.days_of_week:
                raise ValueError("sendWindow requires at least one allowed day")
            if parse_hhmm(self.start_time) >= parse_hhmm(self.end_time):
                raise ValueError("sendWindow startTime must be before endTime")
        return self


class RateLimiting(_ConfigModel):
    max_per_day: int | None = Field(default=None, ge=1)
    max_per_week: int | None = Field(default=None, ge=1)


class FailureHandling(_ConfigModel):
    retry_count: int = Field(default=1, ge=0, le=10)
    retry_delay: int = Field(default=15, ge=0, le=10080)
    fallback_action: Literal["continue", "exit", "branch"] = "continue"


class ExitPathAction(_ConfigModel):
    type: Literal["continue", "branch", "exit"] = "continue"
    branch_id: str | None = None


class ExitPath(_ConfigModel):
    enabled: bool = False
    action: ExitPathAction = Field(default_factory=ExitPathAction)


class ButtonExitPath(ExitPath):
    button_id: str = Field(min_length=1)


class ExitPaths(_ConfigModel):
    sent: ExitPath = Field(default_factory=ExitPath)
    delivered: ExitPath = Field(default_factory=ExitPath)
    read: ExitPath = Field(default_factory=ExitPath)
    replied: ExitPath = Field(default_factory=ExitPath)
    failed: ExitPath = Field(default_factory=ExitPath)
    unreachable: ExitPath = Field(default_factory=ExitPath)
    timeout: ExitPath = Field(default_factory=ExitPath)
    button_clicked: list[ButtonExitPath] = Field(default_factory=list)

    def for_outcome(self, outcome: str, button_id: str | None = None) -> ExitPath | None:
        if outcome == "button_clicked":
            for path in self.button_clicked:
                if path.button_id == button_id:
                    return path
            return None
        return getattr(self, outcome, None)

    def enabled_paths(self) -> list[tuple[str, ExitPath]]:
        paths: list[tuple[str, ExitPath]] = []
        for outcome in ("sent", "delivered", "read", "replied", "failed", "unreachable", "timeout"):
            path = getattr(self, outcome)
            if path.enabled:
                paths.append((outcome, path))
        paths.extend((f"button:{path.button_id}", path) for path in self.button_clicked if path.enabled)
        return paths


class _ActionBase(_ConfigModel):
    failure_handling: FailureHandling = Field(default_factory=FailureHandling)


class WhatsAppActionConfig(_ActionBase):
    action_type: Literal["whatsapp_send"] = "whatsapp_send"
    template_id: str = Field(min_length=1)
    body: str = Field(min_length=1)
    provider: str | None = None
    variables: list[VariableMapping] = Field(default_factory=list)
    send_window: SendWindow = Field(default_factory=SendWindow)
    rate_limiting: RateLimiting = Field(default_factory=RateLimiting)
    exit_paths: ExitPaths = Field(default_factory=ExitPaths)
    skip_if_opted_out: bool = True

    @model_validator(mode="after")
    def validate_placeholders(self) -> "WhatsAppActionConfig":
        mapped = {item.variable for item in self.variables}
        missing = sorted(name for name in placeholder_names(self.body) if name not in mapped)
        if missing:
            raise ValueError(f"Template variables without a mapping: {', '.join(missing)}")
        return self


class AddTagActionConfig(_ActionBase):
    action_type: Literal["add_tag"]
    tag_name: str = Field(min_length=1, max_length=120)

    @field_validator("tag_name")
    @classmethod
    def strip_tag(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("tagName cannot be blank")
        return cleaned


class UpdatePropertyActionConfig(_ActionBase):
    action_type: Literal["update_property"]
    property_key: str = Field(min_length=1, max_length=120)
    property_value: Any = None

    @field_validator("property_key")
    @classmethod
    def validate_key(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned or cleaned in PROTECTED_PROFILE_KEYS:
            raise ValueError(f"propertyKey '{value}' cannot be written by a journey")
        return cleaned


ActionConfig = Annotated[
    Union[WhatsAppActionConfig, AddTagActionConfig, UpdatePropertyActionConfig],
    Field(discriminator="action_type"),
]


# TRIGGER NODES


class EntryFrequency(_ConfigModel):
    allow_reentry: bool = False
    cooldown: DurationValue | None = None
    entry_limit: int | None = Field(default=None, ge=1)


class EntryWindow(_ConfigModel):
    starts_at: datetime | None = None
    ends_at: datetime | None = None

    @model_validator(mode="after")
    def validate_range(self) -> "EntryWindow":
        if self.starts_at and self.ends_at and self.ends_at <= self.starts_at:
            raise ValueError("entryWindow.endsAt must be after startsAt")
        return self


class _TriggerBase(_ConfigModel):
    entry_frequency: EntryFrequency = Field(default_factory=EntryFrequency)
    entry_window: EntryWindow = Field(default_factory=EntryWindow)


class SegmentTriggerConfig(_TriggerBase):
    trigger_type: Literal["segment_joined", "segment_exited"]
    segment_id: str = Field(min_length=1)


class ShopifyEventTriggerConfig(_TriggerBase):
    trigger_type: Literal["shopify_event"]
    event_name: str = Field(min_length=1)
    filters: ConditionGroup | None = None


class ScheduleTriggerConfig(_TriggerBase):
    trigger_type: Literal["schedule"]
    cadence: Literal["daily", "weekly", "monthly"] = "daily"
    days_of_week: list[int] = Field(default_factory=list)
    day_of_month: int | None = Field(default=None, ge=1, le=31)
    time_of_day: str = "09:00"
    timezone: str = "UTC"
    segment_id: str | None = None

    @field_validator("time_of_day")
    @classmethod
    def validate_time(cls, value: str) -> str:
        parse_hhmm(value)
        return value

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, value: str) -> str:
        return _validate_timezone_name(value)

    @model_validator(mode="after")
    def validate_cadence(self) -> "ScheduleTriggerConfig":
        if self.cadence == "weekly" and not self.days_of_week:
            raise ValueError("weekly schedules require daysOfWeek")
        if self.cadence == "monthly" and self.day_of_month is None:
            raise ValueError("monthly schedules require dayOfMonth")
        return self


class ManualTriggerConfig(_TriggerBase):
    trigger_type: Literal["manual"]


TriggerConfig = Annotated[
    Union[
        SegmentTriggerConfig,
        ShopifyEventTriggerConfig,
        ScheduleTriggerConfig,
        ManualTriggerConfig,
    ],
    Field(discriminator="trigger_type"),
]


GoalType = Literal[
    "journey_completion",
    "order_any",
    "order_value",
    "product_purchased",
    "tag_added",
    "link_clicked",
    "segment_entry",
    "custom_event",
]

# goal types and the field each one cannot do without
_GOAL_REQUIRED_FIELDS = {
    "order_value": "order_threshold",
    "product_purchased": "product_id",
    "tag_added": "tag_name",
    "segment_entry": "segment_id",
    "custom_event": "event_name",
}


class GoalConfig(_ConfigModel):
    name: str | None = None
    goal_type: GoalType = "journey_completion"
    order_threshold: float | None = Field(
        default=None, ge=0, validation_alias=AliasChoices("orderThreshold", "minValue", "order_threshold")
    )
    product_id: str | None = None
    tag_name: str | None = None
    link_tracking: str | None = None
    segment_id: str | None = None
    event_name: str | None = None
    attribution_window: DurationValue = Field(default_factory=lambda: DurationValue(value=30, unit="days"))

    @model_validator(mode="after")
    def validate_goal_fields(self) -> "GoalConfig":
        required = _GOAL_REQUIRED_FIELDS.get(self.goal_type)
        if required is not None:
            value = getattr(self, required)
            if value is None or (isinstance(value, str) and not value.strip()):
                raise ValueError(f"{to_camel(required)} is required for {self.goal_type} goals")
        if self.attribution_window.to_timedelta() > timedelta(days=MAX_LOOKBACK_DAYS):
            raise ValueError(f"attributionWindow cannot exceed {MAX_LOOKBACK_DAYS} days")
        return self


# GRAPH


class JourneyNodeIn(_ConfigModel):
    id: str = Field(min_length=1, max_length=64)
    type: NodeType
    subtype: str | None = None
    config: dict[str, Any] = Field(default_factory=dict)


class JourneyEdgeIn(_ConfigModel):
    id: str | None = None
    source_node_id: str = Field(min_length=1)
    source_handle: str | None = None
    target_node_id: str = Field(min_length=1)


class JourneyDefinitionIn(_ConfigModel):
    nodes: list[JourneyNodeIn] = Field(default_factory=list)
    edges: list[JourneyEdgeIn] = Field(default_factory=list)
