"""
Engine-owned persistence: catalog and player tables, repositories, ledger.

Catalog tables are written only by catalog seeding; engines read them
through `TemplateStore` and mutate player rows inside `unit_of_work`.
"""

from nebula_core.persistence.ledger import Ledger
from nebula_core.persistence.models import (
    EventTemplate,
    MarketCommission,
    MarketOffer,
    MarketTransaction,
    NebulaBase,
    PaymentTransaction,
    PlayerBalance,
    PlayerItem,
    PlayerState,
    UpgradeNodeTemplate,
    UserEvent,
    UserEventSettings,
    UserUpgrade,
)
from nebula_core.persistence.repo import TemplateStore
from nebula_core.persistence.session import find_or_create, unit_of_work

__all__ = [
    "EventTemplate",
    "Ledger",
    "MarketCommission",
    "MarketOffer",
    "MarketTransaction",
    "NebulaBase",
    "PaymentTransaction",
    "PlayerBalance",
    "PlayerItem",
    "PlayerState",
    "TemplateStore",
    "UpgradeNodeTemplate",
    "UserEvent",
    "UserEventSettings",
    "UserUpgrade",
    "find_or_create",
    "unit_of_work",
]
