"""
Engine implementations.

Each engine call runs in one transaction (see persistence.session.unit_of_work)
and returns plain snapshots from contracts.snapshots.
"""

from nebula_core.engines.events import EventTriggerEngine
from nebula_core.engines.market import MarketTransactionEngine
from nebula_core.engines.settlement import plan_settlement
from nebula_core.engines.upgrades import UpgradeTreeEngine

__all__ = [
    "EventTriggerEngine",
    "MarketTransactionEngine",
    "UpgradeTreeEngine",
    "plan_settlement",
]
