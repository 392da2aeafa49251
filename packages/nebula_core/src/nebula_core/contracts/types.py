"""
Closed enumerations shared by the engines and the persistence layer.

Values are stored as plain strings in the database, so every enum is a
`str` subclass and compares equal to its stored value. The membership sets
below hold the plain values so they can be tested against column values.
"""

from enum import Enum


class _StrEnum(str, Enum):
    def __str__(self) -> str:
        return self.value


class EventType(_StrEnum):
    """
    Event template types.

    Only the types listed in AUTO_TRIGGER_TYPES fire from `evaluate()`;
    the rest are activated through an explicit trigger call.
    """

    RANDOM = "RANDOM"
    PERIODIC = "PERIODIC"
    ONE_TIME = "ONE_TIME"
    CONDITIONAL = "CONDITIONAL"
    CHAINED = "CHAINED"
    TRIGGERED_BY_ACTION = "TRIGGERED_BY_ACTION"
    GLOBAL_TIMED = "GLOBAL_TIMED"
    LIMITED_REPEATABLE = "LIMITED_REPEATABLE"
    SEASONAL = "SEASONAL"
    PASSIVE = "PASSIVE"


AUTO_TRIGGER_TYPES = frozenset(
    t.value
    for t in (
        EventType.RANDOM,
        EventType.PERIODIC,
        EventType.ONE_TIME,
        EventType.CONDITIONAL,
        EventType.CHAINED,
        EventType.GLOBAL_TIMED,
        EventType.LIMITED_REPEATABLE,
        EventType.SEASONAL,
    )
)


class UserEventStatus(_StrEnum):
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class UpgradeCategory(_StrEnum):
    PRODUCTION = "production"
    ECONOMY = "economy"
    SPECIAL = "special"
    CHANCE = "chance"
    STORAGE = "storage"
    MULTIPLIER = "multiplier"


class Currency(_StrEnum):
    """Ledger currencies. Game resources are a subset (see RESOURCES)."""

    STARDUST = "stardust"
    DARK_MATTER = "darkMatter"
    STARS = "stars"
    TG_STARS = "tgStars"
    TON_TOKEN = "tonToken"


RESOURCES = frozenset(c.value for c in (Currency.STARDUST, Currency.DARK_MATTER, Currency.STARS))


class ItemType(_StrEnum):
    """What a market offer sells."""

    RESOURCE = "resource"
    ARTIFACT = "artifact"
    GALAXY = "galaxy"
    PACKAGE = "package"


# Items held in custody by PlayerItem rows rather than by the ledger
CUSTODY_ITEM_TYPES = frozenset(t.value for t in (ItemType.ARTIFACT, ItemType.GALAXY))


class OfferStatus(_StrEnum):
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


class OfferType(_StrEnum):
    SYSTEM = "SYSTEM"
    P2P = "P2P"
    PERSONAL = "PERSONAL"


class TransactionStatus(_StrEnum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class PaymentStatus(_StrEnum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class TxType(_StrEnum):
    """Reasons a ledger line can be recorded for."""

    BUYER_TO_CONTRACT = "BUYER_TO_CONTRACT"
    CONTRACT_TO_SELLER = "CONTRACT_TO_SELLER"
    CONTRACT_TO_BUYER = "CONTRACT_TO_BUYER"
    FEE = "FEE"
    RESOURCE_TRANSFER = "RESOURCE_TRANSFER"
    UPGRADE_PURCHASE = "UPGRADE_PURCHASE"
    EVENT_REWARD = "EVENT_REWARD"
    PACKAGE_REWARD = "PACKAGE_REWARD"
