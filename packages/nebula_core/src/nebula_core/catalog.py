"""
Catalog seeding.

The only write path into the template tables. A catalog document is
validated as a whole before anything is written, then upgrade nodes, event
templates and commission rates are upserted by slug or currency.
"""

import json
import logging
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from sqlalchemy.orm import Session

from nebula_core.contracts.effects import (
    EventEffect,
    MetricPredicate,
    Modifier,
    RequiresNode,
    UnlockConditions,
    dump_modifiers,
)
from nebula_core.contracts.triggers import parse_trigger_config
from nebula_core.contracts.types import Currency, EventType, UpgradeCategory
from nebula_core.errors import InvalidArgument
from nebula_core.persistence.models import EventTemplate, MarketCommission, UpgradeNodeTemplate
from nebula_core.persistence.session import unit_of_work
from nebula_core.timeutil import ensure_utc

logger = logging.getLogger(__name__)


class UpgradeNodeDocument(BaseModel):
    model_config = ConfigDict(extra="forbid")

    slug: str = Field(min_length=1, max_length=100)
    name: str
    description: dict[str, Any] = Field(default_factory=dict)
    max_level: int = Field(default=0, ge=0)
    base_price: Decimal = Field(default=Decimal("0"), ge=0)
    price_multiplier: float = Field(default=1.0, gt=0)
    effect_per_level: float = 0.0
    currency: Currency = Currency.STARDUST
    category: UpgradeCategory = UpgradeCategory.PRODUCTION
    stability: float = 0.0
    instability: float = 0.0
    modifiers: list[Modifier] = Field(default_factory=list)
    conditions: UnlockConditions = Field(default_factory=UnlockConditions)
    children: list[str] = Field(default_factory=list)
    weight: int = 1
    active: bool = True
    delayed_until: datetime | None = None


class EventTemplateDocument(BaseModel):
    model_config = ConfigDict(extra="forbid")

    slug: str = Field(min_length=1, max_length=100)
    name: str
    description: dict[str, Any] = Field(default_factory=dict)
    type: EventType
    trigger_config: dict[str, Any] = Field(default_factory=dict)
    effect: EventEffect = Field(default_factory=EventEffect)
    frequency: dict[str, Any] = Field(default_factory=dict)
    conditions: list[MetricPredicate] = Field(default_factory=list)
    active: bool = True


class CommissionDocument(BaseModel):
    model_config = ConfigDict(extra="forbid")

    currency: Currency
    rate: Decimal = Field(ge=0, le=1)
    description: str | None = None


class CatalogDocument(BaseModel):
    model_config = ConfigDict(extra="forbid")

    upgrades: list[UpgradeNodeDocument] = Field(default_factory=list)
    events: list[EventTemplateDocument] = Field(default_factory=list)
    commissions: list[CommissionDocument] = Field(default_factory=list)


def load_catalog_file(path: str | Path) -> dict[str, Any]:
    with open(path, encoding="utf-8") as f:
        return json.load(f)


def _check_upgrade_graph(upgrades: list[UpgradeNodeDocument], stored_edges: dict[str, list[str]]) -> None:
    """
    Children and required nodes must exist, and the children edges must not
    form a cycle. Edges already in the database count: the incoming nodes
    replace their own stored edges and keep everyone else's.
    """
    edges = {**stored_edges, **{node.slug: list(node.children) for node in upgrades}}
    for node in upgrades:
        for child in node.children:
            if child not in edges:
                raise InvalidArgument(
                    f"Upgrade {node.slug} lists unknown child {child}",
                    template_slug=node.slug,
                )
        for predicate in node.conditions.requires:
            if isinstance(predicate, RequiresNode) and predicate.slug not in edges:
                raise InvalidArgument(
                    f"Upgrade {node.slug} requires unknown node {predicate.slug}",
                    template_slug=node.slug,
                )

    visiting: set[str] = set()
    done: set[str] = set()

    def visit(slug: str) -> None:
        if slug in done:
            return
        if slug in visiting:
            raise InvalidArgument(f"Upgrade graph has a cycle through {slug}", template_slug=slug)
        visiting.add(slug)
        for child in edges.get(slug, []):
            visit(child)
        visiting.discard(slug)
        done.add(slug)

    for slug in edges:
        visit(slug)


def _upsert(db: Session, model, key: str, values: dict[str, Any]) -> bool:
    """Insert or update by a unique column. Returns True when inserted."""
    existing = db.query(model).filter(getattr(model, key) == values[key]).first()
    if existing is not None:
        for field_name, value in values.items():
            setattr(existing, field_name, value)
        return False
    db.add(model(**values))
    return True


def seed_catalog(db: Session, document: dict[str, Any]) -> dict[str, int]:
    """
    Validate and upsert a catalog document.

    Raises InvalidArgument for any malformed entry; nothing is written then.
    """
    try:
        catalog = CatalogDocument.model_validate(document)
    except ValidationError as e:
        raise InvalidArgument(f"Malformed catalog document: {e}") from e

    for event in catalog.events:
        parse_trigger_config(event.type.value, event.trigger_config, event.slug)

    counts = {"upgrades_created": 0, "upgrades_updated": 0, "events_created": 0, "events_updated": 0, "commissions": 0}

    with unit_of_work(db, "seed_catalog"):
        stored_edges = {
            slug: list(children or [])
            for slug, children in db.query(UpgradeNodeTemplate.slug, UpgradeNodeTemplate.children).all()
        }
        _check_upgrade_graph(catalog.upgrades, stored_edges)

        for node in catalog.upgrades:
            created = _upsert(
                db,
                UpgradeNodeTemplate,
                "slug",
                {
                    "slug": node.slug,
                    "name": node.name,
                    "description": node.description,
                    "max_level": node.max_level,
                    "base_price": node.base_price,
                    "price_multiplier": node.price_multiplier,
                    "effect_per_level": node.effect_per_level,
                    "currency": node.currency.value,
                    "category": node.category.value,
                    "stability": node.stability,
                    "instability": node.instability,
                    "modifiers": dump_modifiers(node.modifiers),
                    "conditions": node.conditions.model_dump(mode="json", exclude_none=True),
                    "children": list(node.children),
                    "weight": node.weight,
                    "active": node.active,
                    "delayed_until": ensure_utc(node.delayed_until),
                },
            )
            counts["upgrades_created" if created else "upgrades_updated"] += 1

        for event in catalog.events:
            created = _upsert(
                db,
                EventTemplate,
                "slug",
                {
                    "slug": event.slug,
                    "name": event.name,
                    "description": event.description,
                    "type": event.type.value,
                    "trigger_config": event.trigger_config,
                    "effect": event.effect.model_dump(mode="json"),
                    "frequency": event.frequency,
                    "conditions": [c.model_dump(mode="json") for c in event.conditions],
                    "active": event.active,
                },
            )
            counts["events_created" if created else "events_updated"] += 1

        for commission in catalog.commissions:
            _upsert(
                db,
                MarketCommission,
                "currency",
                {
                    "currency": commission.currency.value,
                    "rate": commission.rate,
                    "description": commission.description,
                },
            )
            counts["commissions"] += 1

        db.flush()

    logger.info("Catalog seeded", extra=counts)
    return counts
