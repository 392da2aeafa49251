"""
Trigger rule evaluation.

Pure functions: everything a rule needs is passed in through TriggerContext,
and randomness comes from an injected draw function.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Mapping

from pydantic import TypeAdapter, ValidationError

from nebula_core.contracts.effects import MetricPredicate
from nebula_core.contracts.triggers import (
    ActionTrigger,
    ChainedTrigger,
    ConditionalTrigger,
    GlobalTimedTrigger,
    LimitedRepeatableTrigger,
    OneTimeTrigger,
    PassiveTrigger,
    PeriodicTrigger,
    RandomTrigger,
    SeasonalTrigger,
)
from nebula_core.errors import InvalidArgument
from nebula_core.timeutil import ensure_utc

_conditions_adapter = TypeAdapter(list[MetricPredicate])


@dataclass
class TriggerContext:
    """Player state a trigger rule is evaluated against."""

    now: datetime
    # Seconds since the player's previous evaluation
    elapsed_seconds: float = 0.0
    metrics: Mapping[str, float] = field(default_factory=dict)
    instance_count: int = 0
    last_triggered_at: datetime | None = None
    completed_slugs: frozenset[str] | set[str] = frozenset()


def should_trigger(config, ctx: TriggerContext, draw: Callable[[], float]) -> bool:
    """Apply the rule for the config's event type."""
    if isinstance(config, RandomTrigger):
        probability = ctx.elapsed_seconds * config.chance_per_second
        return probability > 0 and draw() < probability
    if isinstance(config, PeriodicTrigger):
        if ctx.last_triggered_at is None:
            return True
        elapsed = ctx.now - ctx.last_triggered_at
        return elapsed >= timedelta(seconds=config.interval_seconds)
    if isinstance(config, OneTimeTrigger):
        return ctx.instance_count == 0
    if isinstance(config, ConditionalTrigger):
        return config.condition.holds(ctx.metrics)
    if isinstance(config, ChainedTrigger):
        return config.after in ctx.completed_slugs
    if isinstance(config, GlobalTimedTrigger):
        return ctx.now >= config.at
    if isinstance(config, LimitedRepeatableTrigger):
        return ctx.instance_count < config.limit
    if isinstance(config, SeasonalTrigger):
        return config.start <= ctx.now < config.end
    if isinstance(config, (ActionTrigger, PassiveTrigger)):
        return False
    raise InvalidArgument(f"Unsupported trigger config: {type(config).__name__}")


def parse_event_conditions(raw: Any, slug: str | None = None) -> list[MetricPredicate]:
    """Typed view of `EventTemplate.conditions` (a list of comparisons)."""
    if not raw:
        return []
    if isinstance(raw, dict):
        raw = [raw]
    try:
        return _conditions_adapter.validate_python(raw)
    except ValidationError as e:
        raise InvalidArgument(f"Malformed event conditions: {e}", template_slug=slug) from e


def conditions_hold(predicates: list[MetricPredicate], metrics: Mapping[str, float]) -> bool:
    return all(predicate.holds(metrics) for predicate in predicates)


def cooldown_active(cooldowns: Mapping[str, str], slug: str, now: datetime) -> bool:
    until = cooldowns.get(slug)
    if not until:
        return False
    return now < ensure_utc(datetime.fromisoformat(until))
