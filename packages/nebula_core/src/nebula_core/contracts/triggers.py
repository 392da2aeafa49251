"""
Trigger configurations, one variant per event type.

`EventTemplate.trigger_config` is stored without its type; `parse_trigger_config`
joins it with the template's `type` column and validates the matching variant.
"""

import re
from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
    model_validator,
)

from nebula_core.contracts.effects import MetricPredicate
from nebula_core.contracts.types import EventType
from nebula_core.errors import InvalidArgument
from nebula_core.timeutil import ensure_utc

_INTERVAL_RE = re.compile(r"^(\d+)([dhms])$")
_UNIT_SECONDS = {"d": 86400, "h": 3600, "m": 60, "s": 1}


def parse_interval(value: Any) -> int:
    """
    Parse an interval into seconds.

    Accepts integers (seconds) or strings such as "30s", "15m", "24h", "7d".
    """
    if isinstance(value, bool):
        raise ValueError(f"invalid interval: {value!r}")
    if isinstance(value, (int, float)):
        if value <= 0:
            raise ValueError(f"interval must be positive: {value!r}")
        return int(value)
    match = _INTERVAL_RE.match(str(value).strip())
    if not match:
        raise ValueError(f"invalid interval: {value!r}")
    seconds = int(match.group(1)) * _UNIT_SECONDS[match.group(2)]
    if seconds <= 0:
        raise ValueError(f"interval must be positive: {value!r}")
    return seconds


class _TriggerBase(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    # Applied when the instance is completed
    cooldown_seconds: int | None = Field(default=None, gt=0)

    @model_validator(mode="before")
    @classmethod
    def _parse_cooldown(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("cooldown") is not None:
            data = dict(data)
            data["cooldown_seconds"] = parse_interval(data.pop("cooldown"))
        return data


class RandomTrigger(_TriggerBase):
    type: Literal[EventType.RANDOM] = EventType.RANDOM
    chance_per_second: float = Field(ge=0)

    @model_validator(mode="before")
    @classmethod
    def _per_hour(cls, data: Any) -> Any:
        if isinstance(data, dict) and "chance_per_second" not in data:
            data = dict(data)
            if "chancePerSecond" in data:
                data["chance_per_second"] = data.pop("chancePerSecond")
            elif "chancePerHour" in data:
                data["chance_per_second"] = float(data.pop("chancePerHour")) / 3600
        return data


class PeriodicTrigger(_TriggerBase):
    type: Literal[EventType.PERIODIC] = EventType.PERIODIC
    interval_seconds: int = Field(gt=0)

    @model_validator(mode="before")
    @classmethod
    def _interval(cls, data: Any) -> Any:
        if isinstance(data, dict) and "interval" in data:
            data = dict(data)
            data["interval_seconds"] = parse_interval(data.pop("interval"))
        return data


class OneTimeTrigger(_TriggerBase):
    type: Literal[EventType.ONE_TIME] = EventType.ONE_TIME


class ConditionalTrigger(_TriggerBase):
    type: Literal[EventType.CONDITIONAL] = EventType.CONDITIONAL
    condition: MetricPredicate


class ChainedTrigger(_TriggerBase):
    type: Literal[EventType.CHAINED] = EventType.CHAINED
    after: str = Field(min_length=1)


class GlobalTimedTrigger(_TriggerBase):
    type: Literal[EventType.GLOBAL_TIMED] = EventType.GLOBAL_TIMED
    at: datetime

    @field_validator("at")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class LimitedRepeatableTrigger(_TriggerBase):
    type: Literal[EventType.LIMITED_REPEATABLE] = EventType.LIMITED_REPEATABLE
    limit: int = Field(gt=0)


class SeasonalTrigger(_TriggerBase):
    type: Literal[EventType.SEASONAL] = EventType.SEASONAL
    start: datetime
    end: datetime

    @field_validator("start", "end")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @model_validator(mode="after")
    def _window(self) -> "SeasonalTrigger":
        if self.end <= self.start:
            raise ValueError("season end must be after start")
        return self


class ActionTrigger(_TriggerBase):
    type: Literal[EventType.TRIGGERED_BY_ACTION] = EventType.TRIGGERED_BY_ACTION
    action: str | None = None


class PassiveTrigger(_TriggerBase):
    type: Literal[EventType.PASSIVE] = EventType.PASSIVE


TriggerConfig = Annotated[
    Union[
        RandomTrigger,
        PeriodicTrigger,
        OneTimeTrigger,
        ConditionalTrigger,
        ChainedTrigger,
        GlobalTimedTrigger,
        LimitedRepeatableTrigger,
        SeasonalTrigger,
        ActionTrigger,
        PassiveTrigger,
    ],
    Field(discriminator="type"),
]

_trigger_adapter = TypeAdapter(TriggerConfig)


def parse_trigger_config(event_type: str, raw: dict[str, Any] | None, slug: str | None = None):
    """Validate a stored trigger config for the given event type."""
    try:
        return _trigger_adapter.validate_python({**(raw or {}), "type": EventType(event_type)})
    except (ValidationError, ValueError) as e:
        raise InvalidArgument(
            f"Malformed trigger config for {event_type} event: {e}",
            template_slug=slug,
        ) from e
