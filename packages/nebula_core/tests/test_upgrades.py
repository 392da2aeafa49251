"""
Tests for the upgrade tree engine.
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Query

from nebula_core.engines.upgrades import UpgradeTreeEngine, level_price
from nebula_core.errors import AlreadyCompleted, InsufficientFunds, Internal, InvalidArgument, NotFound
from nebula_core.persistence.ledger import Ledger
from nebula_core.persistence.models import PlayerState, UpgradeNodeTemplate, UserUpgrade
from nebula_core.persistence.repo import ProgressRepository, TemplateStore
from nebula_core.persistence.session import find_or_create

PLAYER = 1
NOW = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def engine_(db, catalog):
    return UpgradeTreeEngine(db)


def _rows(db, player_id=PLAYER):
    db.expire_all()
    return db.query(UserUpgrade).filter(UserUpgrade.player_id == player_id).all()


class TestInitializeTree:
    """Tests for initialize_tree."""

    def test_creates_root_rows_at_zero_progress(self, engine_):
        """Every active root gets one row at progress 0."""
        snapshot = engine_.initialize_tree(PLAYER)

        by_slug = {node.slug: node for node in snapshot.upgrades}
        assert set(by_slug) == {"stardust_production", "research_lab", "delayed_node"}
        assert all(node.progress == 0 and not node.completed for node in snapshot.upgrades)
        assert by_slug["stardust_production"].target_progress == 1000
        assert by_slug["research_lab"].target_progress == 100

    def test_is_idempotent(self, db, engine_):
        """Calling twice yields exactly one row per root template."""
        engine_.initialize_tree(PLAYER)
        engine_.initialize_tree(PLAYER)

        assert len(_rows(db)) == 3

    def test_players_are_isolated(self, db, engine_):
        """Each player gets their own rows."""
        engine_.initialize_tree(1)
        engine_.initialize_tree(2)

        assert len(_rows(db, 1)) == 3
        assert len(_rows(db, 2)) == 3

    def test_log_record_carries_row_counts(self, engine_, engine_logging):
        """The initialization record is built with its structured fields."""
        engine_.initialize_tree(PLAYER)

        record = next(r for r in engine_logging.records if r.getMessage().startswith("Upgrade tree initialized"))
        assert record.rows_created == 3
        assert record.total == 3

    def test_creates_player_state_lock_row(self, db, engine_):
        """The serialization anchor exists after initialization."""
        engine_.initialize_tree(PLAYER)

        assert db.query(PlayerState).filter(PlayerState.player_id == PLAYER).count() == 1


class TestFindOrCreate:
    """Tests for the find-or-create helper under a lost race."""

    def test_lost_race_returns_existing_row(self, db, monkeypatch):
        """An IntegrityError from the unique constraint is a no-op read."""
        db.add(PlayerState(player_id=7))
        db.commit()

        original_first = Query.first
        calls = {"count": 0}

        def first_misses_once(self):
            calls["count"] += 1
            if calls["count"] == 1:
                return None
            return original_first(self)

        monkeypatch.setattr(Query, "first", first_misses_once)

        row, created = find_or_create(db, PlayerState, player_id=7)

        assert created is False
        assert row.player_id == 7
        assert db.query(PlayerState).filter(PlayerState.player_id == 7).count() == 1

    def test_unique_constraint_guards_duplicates(self, db):
        """The table itself rejects a second row for the same key."""
        db.add(PlayerState(player_id=8))
        db.commit()
        db.add(PlayerState(player_id=8))

        with pytest.raises(IntegrityError):
            db.flush()
        db.rollback()


class TestAdvanceProgress:
    """Tests for advance_progress."""

    def test_completes_node_and_unlocks_children(self, engine_):
        """Reaching the target completes the node and seeds its children."""
        engine_.initialize_tree(PLAYER)

        result = engine_.advance_progress(PLAYER, "stardust_production", 1000, now=NOW)

        assert result.upgrade.completed is True
        assert result.upgrade.progress == 1000
        assert result.unlocked == ["stardust_storage", "dark_matter_extraction"]
        assert result.upgrade.stability == pytest.approx(0.2)
        assert result.upgrade.instability == pytest.approx(0.1)

    def test_unlocked_children_use_their_own_target(self, db, engine_):
        """Child rows take target_progress from their own conditions."""
        engine_.initialize_tree(PLAYER)
        engine_.advance_progress(PLAYER, "stardust_production", 1000, now=NOW)

        rows = {row.template.slug: row for row in _rows(db)}
        assert rows["dark_matter_extraction"].target_progress == 200
        assert rows["stardust_storage"].target_progress == 100
        assert rows["dark_matter_extraction"].progress == 0

    def test_progress_is_capped_at_target(self, db, engine_):
        """Progress never exceeds the target."""
        engine_.initialize_tree(PLAYER)

        first = engine_.advance_progress(PLAYER, "stardust_production", 600, now=NOW)
        second = engine_.advance_progress(PLAYER, "stardust_production", 600, now=NOW)

        assert first.upgrade.progress == 600
        assert first.upgrade.completed is False
        assert second.upgrade.progress == 1000
        assert second.upgrade.completed is True

    def test_history_appends_one_entry_per_call(self, db, engine_):
        """Each call appends one history entry and progress never decreases."""
        engine_.initialize_tree(PLAYER)
        for delta in (10, 20, 30):
            engine_.advance_progress(PLAYER, "stardust_production", delta, now=NOW)

        row = next(r for r in _rows(db) if r.template.slug == "stardust_production")
        history = row.progress_history
        assert [entry["delta"] for entry in history] == [10, 20, 30]
        assert [entry["progress"] for entry in history] == [10, 30, 60]
        assert history[0]["timestamp"] == NOW.isoformat()
        assert row.last_progress_update == NOW

    @pytest.mark.parametrize("delta", [0, -5, True, 1.5])
    def test_rejects_invalid_delta(self, engine_, delta):
        """Delta must be a positive integer."""
        engine_.initialize_tree(PLAYER)

        with pytest.raises(InvalidArgument):
            engine_.advance_progress(PLAYER, "stardust_production", delta)

    def test_locked_node_is_not_found(self, engine_):
        """A node without a row for the player cannot be advanced."""
        engine_.initialize_tree(PLAYER)

        with pytest.raises(NotFound) as exc_info:
            engine_.advance_progress(PLAYER, "stardust_storage", 10)

        assert exc_info.value.context["player_id"] == PLAYER
        assert exc_info.value.context["template_slug"] == "stardust_storage"

    def test_unknown_template_is_not_found(self, engine_):
        engine_.initialize_tree(PLAYER)

        with pytest.raises(NotFound):
            engine_.advance_progress(PLAYER, "no_such_node", 10)

    def test_completed_node_rejects_progress(self, engine_):
        """Further progress on a completed node fails with AlreadyCompleted."""
        engine_.initialize_tree(PLAYER)
        engine_.advance_progress(PLAYER, "stardust_production", 1000)

        with pytest.raises(AlreadyCompleted):
            engine_.advance_progress(PLAYER, "stardust_production", 1)

    def test_existing_children_are_not_reported_or_duplicated(self, db, engine_):
        """Unlocking a child that already has a row is a no-op."""
        engine_.initialize_tree(PLAYER)
        storage = TemplateStore(db).get_upgrade_template("stardust_storage")
        ProgressRepository(db, PLAYER).find_or_create_upgrade(storage, 100)
        db.commit()

        result = engine_.advance_progress(PLAYER, "stardust_production", 1000)

        assert result.unlocked == ["dark_matter_extraction"]
        slugs = [row.template.slug for row in _rows(db)]
        assert slugs.count("stardust_storage") == 1

    def test_failed_call_leaves_no_partial_state(self, db, engine_):
        """An error rolls back the whole call."""
        engine_.initialize_tree(PLAYER)

        with pytest.raises(InvalidArgument):
            engine_.advance_progress(PLAYER, "stardust_production", 0)

        row = next(r for r in _rows(db) if r.template.slug == "stardust_production")
        assert row.progress == 0
        assert row.progress_history == []


class TestAvailableUpgrades:
    """Tests for get_available_upgrades."""

    def test_roots_are_available_without_rows(self, engine_):
        """Roots show up with zero progress even before initialization."""
        available = engine_.get_available_upgrades(PLAYER, now=NOW)

        assert {node.slug for node in available} == {"stardust_production", "research_lab"}
        assert all(node.progress == 0 and node.unlocked is False for node in available)

    def test_children_appear_after_completion(self, engine_):
        engine_.initialize_tree(PLAYER)
        engine_.advance_progress(PLAYER, "stardust_production", 1000, now=NOW)

        available = {node.slug: node for node in engine_.get_available_upgrades(PLAYER, now=NOW)}

        assert "stardust_storage" in available
        assert "dark_matter_extraction" in available
        assert available["stardust_production"].completed is True

    def test_delayed_templates_appear_once_due(self, engine_):
        """delayed_until hides a template until it has passed."""
        later = datetime(2099, 6, 1, tzinfo=timezone.utc)

        slugs = {node.slug for node in engine_.get_available_upgrades(PLAYER, now=later)}

        assert "delayed_node" in slugs
        assert "inactive_node" not in slugs


class TestPurchaseLevel:
    """Tests for purchase_level."""

    def test_level_price_formula(self, db, catalog):
        """floor(base_price * multiplier ** level)"""
        template = TemplateStore(db).get_upgrade_template("stardust_production")

        assert level_price(template, 0) == Decimal("100")
        assert level_price(template, 1) == Decimal("150")
        assert level_price(template, 2) == Decimal("225")
        assert level_price(template, 3) == Decimal("337")

    def test_purchase_debits_ledger_and_levels_up(self, engine_, fund, balance):
        fund(PLAYER, "stardust", 1000)
        engine_.initialize_tree(PLAYER)

        first = engine_.purchase_level(PLAYER, "stardust_production")
        second = engine_.purchase_level(PLAYER, "stardust_production")

        assert first.price == Decimal("100")
        assert second.price == Decimal("150")
        assert second.upgrade.level == 2
        assert second.upgrade.next_price == Decimal("225")
        assert balance(PLAYER, "stardust") == Decimal("750")

    def test_purchase_leaves_progress_untouched(self, engine_, fund):
        fund(PLAYER, "stardust", 1000)
        engine_.initialize_tree(PLAYER)
        engine_.advance_progress(PLAYER, "stardust_production", 50)

        result = engine_.purchase_level(PLAYER, "stardust_production")

        assert result.upgrade.progress == 50

    def test_insufficient_funds_keeps_level(self, db, engine_, fund, balance):
        fund(PLAYER, "stardust", 99)
        engine_.initialize_tree(PLAYER)

        with pytest.raises(InsufficientFunds):
            engine_.purchase_level(PLAYER, "stardust_production")

        row = next(r for r in _rows(db) if r.template.slug == "stardust_production")
        assert row.level == 0
        assert balance(PLAYER, "stardust") == Decimal("99")

    def test_max_level_zero_cannot_level(self, engine_):
        """A node with max_level 0 only completes; leveling is rejected."""
        engine_.initialize_tree(PLAYER)

        with pytest.raises(InvalidArgument):
            engine_.purchase_level(PLAYER, "research_lab")

    def test_leveling_beyond_max_is_rejected(self, engine_, fund):
        fund(PLAYER, "stardust", 100000)
        engine_.initialize_tree(PLAYER)
        for _ in range(5):
            engine_.purchase_level(PLAYER, "stardust_production")

        with pytest.raises(InvalidArgument):
            engine_.purchase_level(PLAYER, "stardust_production")

    def test_unexpected_failure_is_internal(self, db, catalog):
        """A crashing collaborator surfaces as Internal and writes nothing."""

        class OfflineLedger(Ledger):
            def debit(self, player_id, currency, amount):
                raise RuntimeError("ledger offline")

        engine = UpgradeTreeEngine(db, ledger=OfflineLedger(db))
        engine.initialize_tree(PLAYER)

        with pytest.raises(Internal) as exc_info:
            engine.purchase_level(PLAYER, "stardust_production")

        assert exc_info.value.context == {"player_id": PLAYER, "template_slug": "stardust_production"}
        assert isinstance(exc_info.value.__cause__, RuntimeError)
        row = next(r for r in _rows(db) if r.template.slug == "stardust_production")
        assert row.level == 0

    def test_unlock_predicates_are_checked(self, engine_, fund, balance):
        """Metric predicates must hold at purchase time."""
        engine_.initialize_tree(PLAYER)
        engine_.advance_progress(PLAYER, "stardust_production", 1000)
        fund(PLAYER, "darkMatter", 100)

        with pytest.raises(InvalidArgument):
            engine_.purchase_level(PLAYER, "dark_matter_extraction")

        fund(PLAYER, "stardust", 500)
        result = engine_.purchase_level(PLAYER, "dark_matter_extraction")

        assert result.currency == "darkMatter"
        assert result.upgrade.level == 1
        assert balance(PLAYER, "darkMatter") == Decimal("90")

    def test_unknown_row_is_not_found(self, engine_):
        with pytest.raises(NotFound):
            engine_.purchase_level(PLAYER, "stardust_production")


class TestStatsAndEffects:
    """Tests for get_upgrade_stats and get_upgrade_effects."""

    def test_stats(self, engine_):
        engine_.initialize_tree(PLAYER)
        engine_.advance_progress(PLAYER, "stardust_production", 1000)
        engine_.advance_progress(PLAYER, "research_lab", 10)

        stats = engine_.get_upgrade_stats(PLAYER)

        assert stats.total == 5
        assert stats.completed == 1
        assert stats.in_progress == 1
        assert stats.completion_percentage == 20.0
        assert stats.by_category["production"]["total"] == 2
        assert stats.by_category["production"]["completed"] == 1

    def test_stats_for_unknown_player(self, engine_):
        stats = engine_.get_upgrade_stats(999)

        assert stats.total == 0
        assert stats.completion_percentage == 0.0

    def test_effects_replay_modifiers_over_levels(self, engine_, fund):
        """Rate bonuses scale with level; completed no-level nodes count once."""
        fund(PLAYER, "stardust", 1000)
        engine_.initialize_tree(PLAYER)
        engine_.purchase_level(PLAYER, "stardust_production")
        engine_.purchase_level(PLAYER, "stardust_production")
        engine_.advance_progress(PLAYER, "research_lab", 100)

        effects = engine_.get_upgrade_effects(PLAYER)

        assert effects["production"] == pytest.approx(1.2)
        assert effects["stability"] == pytest.approx(1.1)
        assert effects["chaos"] == pytest.approx(1.0)

    def test_effects_default_to_base_set(self, engine_):
        effects = engine_.get_upgrade_effects(PLAYER)

        assert effects == {
            "production": 1.0,
            "chaos": 1.0,
            "stability": 1.0,
            "entropy": 1.0,
            "rewards": 1.0,
        }


class TestCatalogIntegrity:
    """The catalog fixture produces the expected template rows."""

    def test_inactive_template_is_stored(self, db, catalog):
        template = db.query(UpgradeNodeTemplate).filter(UpgradeNodeTemplate.slug == "inactive_node").one()

        assert template.active is False
