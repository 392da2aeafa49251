"""
Pytest fixtures for the Nebula engines.

Every test gets its own in-memory SQLite database with all engine tables.
"""

import logging
import os
from decimal import Decimal

import pytest

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("LOG_JSON", "false")

from sqlalchemy.orm import sessionmaker  # noqa: E402

from basecore.db import create_db_engine  # noqa: E402
from nebula_core.catalog import seed_catalog  # noqa: E402
from nebula_core.persistence.ledger import Ledger  # noqa: E402
from nebula_core.persistence.models import NebulaBase  # noqa: E402


CATALOG = {
    "upgrades": [
        {
            "slug": "stardust_production",
            "name": "Stardust Production",
            "max_level": 5,
            "base_price": "100",
            "price_multiplier": 1.5,
            "currency": "stardust",
            "category": "production",
            "stability": 0.2,
            "instability": 0.1,
            "modifiers": [{"kind": "rate_bonus", "target": "production", "amount": 0.1}],
            "conditions": {"target_progress": 1000},
            "children": ["stardust_storage", "dark_matter_extraction"],
            "weight": 10,
        },
        {
            "slug": "research_lab",
            "name": "Research Lab",
            "max_level": 0,
            "category": "special",
            "modifiers": [{"kind": "multiplier", "target": "stability", "factor": 1.1}],
        },
        {
            "slug": "stardust_storage",
            "name": "Stardust Storage",
            "max_level": 3,
            "base_price": "50",
            "price_multiplier": 2,
            "category": "storage",
            "effect_per_level": 0.05,
            "conditions": {"requires": [{"kind": "requires_node", "slug": "stardust_production"}]},
        },
        {
            "slug": "dark_matter_extraction",
            "name": "Dark Matter Extraction",
            "max_level": 2,
            "base_price": "10",
            "currency": "darkMatter",
            "category": "production",
            "modifiers": [{"kind": "multiplier", "target": "production", "factor": 1.2}],
            "conditions": {
                "target_progress": 200,
                "requires": [
                    {"kind": "requires_node", "slug": "stardust_production"},
                    {"kind": "metric", "metric": "stardust", "op": ">=", "value": 500},
                ],
            },
        },
        {
            "slug": "delayed_node",
            "name": "Delayed Node",
            "category": "chance",
            "delayed_until": "2099-01-01T00:00:00Z",
        },
        {
            "slug": "inactive_node",
            "name": "Inactive Node",
            "active": False,
        },
    ],
    "commissions": [
        {"currency": "stardust", "rate": "0.1", "description": "Standard stardust fee"},
    ],
}


@pytest.fixture
def engine():
    """Fresh in-memory database with all engine tables."""
    engine = create_db_engine("sqlite://")
    NebulaBase.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    """Database session."""
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture
def catalog_document():
    return CATALOG


@pytest.fixture
def catalog(db, catalog_document):
    """Seed the standard catalog."""
    seed_catalog(db, catalog_document)
    return catalog_document


@pytest.fixture
def fund(db):
    """Credit a player's ledger and commit."""

    def _fund(player_id: int, currency: str, amount) -> None:
        Ledger(db).credit(player_id, currency, Decimal(str(amount)))
        db.commit()

    return _fund


@pytest.fixture
def balance(db):
    """Read a player's committed balance."""

    def _balance(player_id: int, currency: str) -> Decimal:
        db.expire_all()
        return Ledger(db).balance(player_id, currency)

    return _balance


@pytest.fixture(autouse=True)
def engine_logging(caplog):
    """Build every engine log record, as the adapters do with INFO enabled."""
    caplog.set_level(logging.DEBUG, logger="nebula_core")
    return caplog
