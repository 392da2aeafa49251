"""
Typed effect and condition payloads.

Catalog JSON columns (`modifiers`, `conditions`, `effect`) are parsed into these
tagged unions before any engine reads them, so evaluators only ever see a closed
set of operation kinds. The `payload` fields are presentation data the engines
never interpret.
"""

import operator
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Literal, Mapping, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator

from nebula_core.contracts.types import Currency

# Base multiplier set every player starts from
BASE_MULTIPLIERS: dict[str, float] = {
    "production": 1.0,
    "chaos": 1.0,
    "stability": 1.0,
    "entropy": 1.0,
    "rewards": 1.0,
}


class ComparisonOp(str, Enum):
    GT = ">"
    GTE = ">="
    LT = "<"
    LTE = "<="
    EQ = "=="
    NE = "!="


_OPERATORS = {
    ComparisonOp.GT: operator.gt,
    ComparisonOp.GTE: operator.ge,
    ComparisonOp.LT: operator.lt,
    ComparisonOp.LTE: operator.le,
    ComparisonOp.EQ: operator.eq,
    ComparisonOp.NE: operator.ne,
}


class _Payload(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True, use_enum_values=False)


# --- Modifiers ---


class RateBonus(_Payload):
    """Additive bonus to a named rate (e.g. +0.1 production per level)."""

    kind: Literal["rate_bonus"] = "rate_bonus"
    target: str
    amount: float


class Multiplier(_Payload):
    """Multiplicative factor on a named rate."""

    kind: Literal["multiplier"] = "multiplier"
    target: str
    factor: float = Field(gt=0)


class FlatReward(_Payload):
    """One-off ledger credit."""

    kind: Literal["flat_reward"] = "flat_reward"
    currency: Currency
    amount: Decimal = Field(gt=0)


Modifier = Annotated[Union[RateBonus, Multiplier, FlatReward], Field(discriminator="kind")]


# --- Predicates ---


class MetricPredicate(_Payload):
    """`metric <op> value` against the player's state metrics."""

    kind: Literal["metric"] = "metric"
    metric: str
    op: ComparisonOp
    value: float

    @model_validator(mode="before")
    @classmethod
    def _accept_aliases(cls, data: Any) -> Any:
        # Catalog authors also write {resource, operator, threshold}
        if isinstance(data, dict):
            data = dict(data)
            if "operator" in data and "op" not in data:
                data["op"] = data.pop("operator")
            if "threshold" in data and "value" not in data:
                data["value"] = data.pop("threshold")
            if "resource" in data and "metric" not in data:
                data["metric"] = data.pop("resource")
        return data

    def holds(self, metrics: Mapping[str, float]) -> bool:
        """Missing metrics never satisfy a predicate."""
        current = metrics.get(self.metric)
        if current is None:
            return False
        return _OPERATORS[self.op](float(current), self.value)


class RequiresNode(_Payload):
    """Another upgrade node must be completed at or above a level."""

    kind: Literal["requires_node"] = "requires_node"
    slug: str
    min_level: int = Field(default=0, ge=0)


UnlockPredicate = Annotated[Union[RequiresNode, MetricPredicate], Field(discriminator="kind")]


class UnlockConditions(_Payload):
    """
    Parsed `UpgradeNodeTemplate.conditions`.

    A template without predicates is a root of the upgrade tree.
    `target_progress` only sizes the progress bar and is not a predicate.
    """

    target_progress: int | None = Field(default=None, gt=0)
    requires: list[UnlockPredicate] = Field(default_factory=list)

    @property
    def is_root(self) -> bool:
        return not self.requires


class EventEffect(_Payload):
    """
    Parsed `EventTemplate.effect`.

    Also accepts the legacy shape `{"multipliers": {...}, "rewards": {...}}`.
    """

    modifiers: list[Modifier] = Field(default_factory=list)
    duration: int = Field(default=0, ge=0)
    payload: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _expand_legacy_maps(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        modifiers = list(data.get("modifiers") or [])
        for target, factor in (data.pop("multipliers", None) or {}).items():
            modifiers.append({"kind": "multiplier", "target": target, "factor": factor})
        for currency, amount in (data.pop("rewards", None) or {}).items():
            modifiers.append({"kind": "flat_reward", "currency": currency, "amount": amount})
        data["modifiers"] = modifiers
        return data

    @property
    def rewards(self) -> list[FlatReward]:
        return [m for m in self.modifiers if isinstance(m, FlatReward)]


modifier_list_adapter = TypeAdapter(list[Modifier])


def aggregate_multipliers(snapshots: list[list[dict[str, Any]]]) -> dict[str, float]:
    """
    Replay effect snapshots over the base multiplier set.

    Multipliers compound, rate bonuses add on top. Flat rewards do not
    contribute to the aggregate.
    """
    products: dict[str, float] = dict(BASE_MULTIPLIERS)
    bonuses: dict[str, float] = {}
    for snapshot in snapshots:
        for modifier in modifier_list_adapter.validate_python(snapshot):
            if isinstance(modifier, Multiplier):
                products[modifier.target] = products.get(modifier.target, 1.0) * modifier.factor
            elif isinstance(modifier, RateBonus):
                bonuses[modifier.target] = bonuses.get(modifier.target, 0.0) + modifier.amount

    result = dict(products)
    for target, bonus in bonuses.items():
        result[target] = result.get(target, 1.0) + bonus
    return {target: round(value, 10) for target, value in result.items()}


def dump_modifiers(modifiers: list[Any]) -> list[dict[str, Any]]:
    """Serialize modifiers for a JSON column."""
    return [m.model_dump(mode="json") for m in modifiers]
