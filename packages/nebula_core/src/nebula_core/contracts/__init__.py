"""Contracts - enums, typed catalog payloads and result snapshots."""

from nebula_core.contracts.effects import (
    BASE_MULTIPLIERS,
    EventEffect,
    FlatReward,
    MetricPredicate,
    Modifier,
    Multiplier,
    RateBonus,
    RequiresNode,
    UnlockConditions,
    aggregate_multipliers,
)
from nebula_core.contracts.triggers import TriggerConfig, parse_interval, parse_trigger_config
from nebula_core.contracts.types import (
    AUTO_TRIGGER_TYPES,
    Currency,
    EventType,
    ItemType,
    OfferStatus,
    OfferType,
    TxType,
    UserEventStatus,
)

__all__ = [
    "AUTO_TRIGGER_TYPES",
    "BASE_MULTIPLIERS",
    "Currency",
    "EventEffect",
    "EventType",
    "FlatReward",
    "ItemType",
    "MetricPredicate",
    "Modifier",
    "Multiplier",
    "OfferStatus",
    "OfferType",
    "RateBonus",
    "RequiresNode",
    "TriggerConfig",
    "TxType",
    "UnlockConditions",
    "UserEventStatus",
    "aggregate_multipliers",
    "parse_interval",
    "parse_trigger_config",
]
