"""
Tests for catalog validation and seeding.
"""

import json
from decimal import Decimal
from pathlib import Path

import pytest

from nebula_core.catalog import load_catalog_file, seed_catalog
from nebula_core.errors import InvalidArgument
from nebula_core.persistence.models import EventTemplate, MarketCommission, UpgradeNodeTemplate
from nebula_core.persistence.repo import TemplateStore

SAMPLE_CATALOG = Path(__file__).resolve().parents[3] / "catalog" / "nebula_catalog.json"


def node(slug, **fields):
    return {"slug": slug, "name": slug.title(), **fields}


class TestSeedCatalog:
    """Tests for seed_catalog."""

    def test_counts_on_first_seed(self, db, catalog):
        assert db.query(UpgradeNodeTemplate).count() == 6
        assert db.query(MarketCommission).count() == 1

    def test_reseed_updates_in_place(self, db, catalog):
        counts = seed_catalog(
            db,
            {"upgrades": [node("research_lab", max_level=3, base_price="25")]},
        )

        assert counts["upgrades_created"] == 0
        assert counts["upgrades_updated"] == 1
        template = TemplateStore(db).get_upgrade_template("research_lab")
        assert template.max_level == 3
        assert Decimal(template.base_price) == Decimal("25")
        assert db.query(UpgradeNodeTemplate).count() == 6

    def test_children_may_reference_existing_templates(self, db, catalog):
        seed_catalog(db, {"upgrades": [node("observatory", children=["research_lab"])]})

        assert TemplateStore(db).get_upgrade_template("observatory").children == ["research_lab"]

    def test_required_nodes_may_reference_existing_templates(self, db, catalog):
        requires = [{"kind": "requires_node", "slug": "research_lab"}]
        seed_catalog(db, {"upgrades": [node("observatory", conditions={"requires": requires})]})

        assert TemplateStore(db).get_upgrade_template("observatory").conditions["requires"][0]["slug"] == "research_lab"

    def test_events_are_stored_with_typed_shapes(self, db):
        counts = seed_catalog(
            db,
            {
                "events": [
                    {
                        "slug": "comet_shower",
                        "name": "Comet Shower",
                        "type": "RANDOM",
                        "trigger_config": {"chancePerHour": 2},
                        "effect": {"multipliers": {"production": 2}, "duration": 600},
                        "conditions": [{"resource": "stardust", "operator": ">", "threshold": 0}],
                    }
                ]
            },
        )

        template = db.query(EventTemplate).one()
        assert counts["events_created"] == 1
        assert template.effect["modifiers"] == [{"kind": "multiplier", "target": "production", "factor": 2.0}]
        assert template.effect["duration"] == 600
        assert template.conditions == [{"kind": "metric", "metric": "stardust", "op": ">", "value": 0.0}]

    def test_commission_rate_is_read_back(self, db, catalog):
        assert TemplateStore(db).get_commission_rate("stardust") == Decimal("0.1")
        assert TemplateStore(db, default_commission_rate=Decimal("0.02")).get_commission_rate("stars") == Decimal(
            "0.02"
        )


class TestCatalogValidation:
    """Malformed documents are rejected before anything is written."""

    @pytest.mark.parametrize(
        "document",
        [
            {"upgrades": [node("a", currency="gold")]},
            {"upgrades": [node("a", category="weapons")]},
            {"upgrades": [node("a", max_level=-1)]},
            {"upgrades": [node("a", modifiers=[{"kind": "teleport"}])]},
            {"upgrades": [node("a", colour="red")]},
            {"events": [{"slug": "e", "name": "E", "type": "RANDOM", "trigger_config": {}}]},
            {"events": [{"slug": "e", "name": "E", "type": "HOURLY"}]},
            {"commissions": [{"currency": "stardust", "rate": "1.5"}]},
            {"items": []},
        ],
    )
    def test_malformed_documents(self, db, document):
        with pytest.raises(InvalidArgument):
            seed_catalog(db, document)

        assert db.query(UpgradeNodeTemplate).count() == 0
        assert db.query(EventTemplate).count() == 0

    def test_unknown_child(self, db):
        with pytest.raises(InvalidArgument) as exc_info:
            seed_catalog(db, {"upgrades": [node("a", children=["missing"])]})

        assert exc_info.value.context["template_slug"] == "a"
        assert db.query(UpgradeNodeTemplate).count() == 0

    def test_cycle(self, db):
        document = {
            "upgrades": [
                node("a", children=["b"]),
                node("b", children=["c"]),
                node("c", children=["a"]),
            ]
        }

        with pytest.raises(InvalidArgument):
            seed_catalog(db, document)

        assert db.query(UpgradeNodeTemplate).count() == 0

    def test_unknown_required_node(self, db):
        requires = [{"kind": "requires_node", "slug": "missing"}]

        with pytest.raises(InvalidArgument) as exc_info:
            seed_catalog(db, {"upgrades": [node("a", conditions={"requires": requires})]})

        assert exc_info.value.context["template_slug"] == "a"
        assert db.query(UpgradeNodeTemplate).count() == 0

    def test_cycle_through_stored_templates(self, db, catalog):
        """A reseed may not close a loop with edges already in the database."""
        with pytest.raises(InvalidArgument):
            seed_catalog(db, {"upgrades": [node("stardust_storage", children=["stardust_production"])]})

        db.expire_all()
        assert TemplateStore(db).get_upgrade_template("stardust_storage").children == []


class TestSampleCatalog:
    """The bundled catalog file seeds cleanly."""

    def test_load_and_seed(self, db):
        document = load_catalog_file(SAMPLE_CATALOG)

        counts = seed_catalog(db, document)

        assert counts["upgrades_created"] == len(document["upgrades"])
        assert counts["events_created"] == len(document["events"])

    def test_load_catalog_file(self, tmp_path):
        path = tmp_path / "catalog.json"
        path.write_text(json.dumps({"upgrades": [node("a")]}), encoding="utf-8")

        assert load_catalog_file(path) == {"upgrades": [{"slug": "a", "name": "A"}]}
