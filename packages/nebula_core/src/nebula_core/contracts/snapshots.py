"""
Plain data snapshots returned by the engines.

Nothing here references the ORM session: rows are copied out before the
transaction ends so callers can use the results after commit.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID


def _jsonable(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (UUID, Decimal)):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    return value


class _Snapshot:
    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-ready dictionary."""
        return _jsonable(asdict(self))


# --- Upgrades ---


@dataclass
class UpgradeNodeView(_Snapshot):
    """One node of a player's tree, template and progress merged."""

    slug: str
    name: str
    category: str
    currency: str
    max_level: int
    level: int
    progress: int
    target_progress: int
    completed: bool
    next_price: Decimal | None
    stability: float = 0.0
    instability: float = 0.0
    unlocked: bool = True
    last_progress_update: datetime | None = None


@dataclass
class TreeSnapshot(_Snapshot):
    player_id: int
    upgrades: list[UpgradeNodeView] = field(default_factory=list)


@dataclass
class ProgressResult(_Snapshot):
    """Outcome of `advance_progress`."""

    player_id: int
    upgrade: UpgradeNodeView
    unlocked: list[str] = field(default_factory=list)


@dataclass
class PurchaseResult(_Snapshot):
    player_id: int
    upgrade: UpgradeNodeView
    price: Decimal
    currency: str
    balance: Decimal


@dataclass
class UpgradeStats(_Snapshot):
    player_id: int
    total: int
    completed: int
    in_progress: int
    completion_percentage: float
    by_category: dict[str, dict[str, Any]] = field(default_factory=dict)


# --- Events ---


@dataclass
class EventView(_Snapshot):
    id: UUID
    slug: str
    name: str
    type: str
    status: str
    triggered_at: datetime
    expires_at: datetime | None
    completed_at: datetime | None
    effects: list[dict[str, Any]] = field(default_factory=list)
    progress: dict[str, Any] = field(default_factory=dict)


@dataclass
class EvaluationResult(_Snapshot):
    """Outcome of one `evaluate` pass."""

    player_id: int
    active_events: list[EventView] = field(default_factory=list)
    triggered_events: list[EventView] = field(default_factory=list)
    expired_events: list[EventView] = field(default_factory=list)
    aggregated_multipliers: dict[str, float] = field(default_factory=dict)


@dataclass
class EventSettingsView(_Snapshot):
    player_id: int
    event_multipliers: dict[str, float]
    event_cooldowns: dict[str, str]
    enabled_types: list[str]
    disabled_events: list[str]
    priority_events: list[str]
    last_event_check: datetime | None


@dataclass
class EventStats(_Snapshot):
    player_id: int
    total: int
    by_status: dict[str, int]
    aggregated_multipliers: dict[str, float]


# --- Market ---


@dataclass
class OfferView(_Snapshot):
    id: UUID
    seller_id: int
    item_type: str
    item_id: int | None
    amount: Decimal
    resource: str | None
    price: Decimal
    currency: str
    status: str
    offer_type: str
    is_item_locked: bool
    expires_at: datetime | None
    created_at: datetime | None


@dataclass
class PaymentLineView(_Snapshot):
    from_account: int
    to_account: int
    amount: Decimal
    currency: str
    tx_type: str
    status: str


@dataclass
class TradeResult(_Snapshot):
    """Outcome of `execute_trade`."""

    transaction_id: UUID
    offer_id: UUID
    buyer_id: int
    seller_id: int
    status: str
    offer_status: str
    price: Decimal
    commission: Decimal
    seller_amount: Decimal
    currency: str
    completed_at: datetime | None
    payments: list[PaymentLineView] = field(default_factory=list)
