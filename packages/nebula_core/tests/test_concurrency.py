"""
Tests for concurrent engine calls.

Each call runs on its own thread with its own session against a file-backed
database, the way separate API requests would.
"""

import threading
from decimal import Decimal

import pytest
from sqlalchemy.orm import sessionmaker

from basecore.db import create_db_engine
from nebula_core.catalog import seed_catalog
from nebula_core.engines.market import MarketTransactionEngine
from nebula_core.engines.upgrades import UpgradeTreeEngine
from nebula_core.errors import NebulaError
from nebula_core.persistence.ledger import Ledger
from nebula_core.persistence.models import (
    MarketTransaction,
    NebulaBase,
    PlayerBalance,
    PlayerItem,
    PlayerState,
    UserUpgrade,
)

PLAYER = 1
SELLER = 10
BUYER = 20
OTHER_BUYER = 30


@pytest.fixture
def session_factory(tmp_path, catalog_document):
    """Sessions on a seeded SQLite file shared by every thread."""
    engine = create_db_engine(f"sqlite:///{tmp_path / 'nebula.db'}")
    NebulaBase.metadata.create_all(engine)
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    db = SessionLocal()
    seed_catalog(db, catalog_document)
    db.close()

    yield SessionLocal
    engine.dispose()


def run_together(session_factory, calls):
    """
    Start every call at the same moment and wait for all of them.

    Returns one outcome per call: "ok", the engine error kind, or the name of
    any other exception type.
    """
    barrier = threading.Barrier(len(calls))
    outcomes = [None] * len(calls)

    def worker(index, call):
        db = session_factory()
        try:
            barrier.wait()
            call(db)
            outcomes[index] = "ok"
        except NebulaError as e:
            outcomes[index] = e.kind
        except Exception as e:
            outcomes[index] = type(e).__name__
        finally:
            db.close()

    threads = [threading.Thread(target=worker, args=(index, call)) for index, call in enumerate(calls)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)
    return outcomes


def total_stardust(db) -> Decimal:
    rows = db.query(PlayerBalance).filter(PlayerBalance.currency == "stardust").all()
    return sum((Decimal(str(row.amount)) for row in rows), Decimal("0"))


class TestConcurrentInitializeTree:
    """Tests for initialize_tree racing itself."""

    def test_one_row_per_root(self, session_factory):
        outcomes = run_together(
            session_factory,
            [lambda db: UpgradeTreeEngine(db).initialize_tree(PLAYER) for _ in range(4)],
        )

        assert outcomes == ["ok"] * 4
        db = session_factory()
        try:
            rows = db.query(UserUpgrade).filter(UserUpgrade.player_id == PLAYER).all()
            assert sorted(row.template.slug for row in rows) == [
                "delayed_node",
                "research_lab",
                "stardust_production",
            ]
            assert db.query(PlayerState).filter(PlayerState.player_id == PLAYER).count() == 1
        finally:
            db.close()


class TestConcurrentTrade:
    """Tests for two buyers racing for one offer."""

    @pytest.fixture
    def offer_id(self, session_factory):
        """Artifact 1 listed by the seller for 100 stardust, both buyers funded."""
        db = session_factory()
        try:
            db.add(PlayerItem(item_type="artifact", item_id=1, owner_id=SELLER))
            ledger = Ledger(db)
            ledger.credit(BUYER, "stardust", Decimal("500"))
            ledger.credit(OTHER_BUYER, "stardust", Decimal("500"))
            db.commit()

            offer = MarketTransactionEngine(db).create_offer(
                seller_id=SELLER,
                item_type="artifact",
                item_id=1,
                amount=1,
                price="100",
                currency="stardust",
            )
            return offer.id
        finally:
            db.close()

    def test_exactly_one_buyer_wins(self, session_factory, offer_id):
        outcomes = run_together(
            session_factory,
            [
                lambda db: MarketTransactionEngine(db).execute_trade(BUYER, offer_id),
                lambda db: MarketTransactionEngine(db).execute_trade(OTHER_BUYER, offer_id),
            ],
        )

        assert sorted(outcomes) == ["conflict", "ok"]
        winner = BUYER if outcomes[0] == "ok" else OTHER_BUYER

        db = session_factory()
        try:
            assert db.query(MarketTransaction).count() == 1
            item = db.query(PlayerItem).filter(PlayerItem.item_id == 1).one()
            assert item.owner_id == winner

            ledger = Ledger(db)
            loser = OTHER_BUYER if winner == BUYER else BUYER
            assert ledger.balance(winner, "stardust") == Decimal("400")
            assert ledger.balance(loser, "stardust") == Decimal("500")
            assert ledger.balance(SELLER, "stardust") == Decimal("90")
            assert total_stardust(db) == Decimal("1000")
        finally:
            db.close()
