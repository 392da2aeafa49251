"""
Upgrade Tree Engine

Per-player progress through the upgrade graph. Templates form a DAG through
their `children` lists; a node is available when it is a root (no unlock
predicates) or when a completed node lists it as a child.

Every mutating call locks the player's PlayerState row first, so two calls
for the same player never interleave their find-or-create steps.
"""

import logging
from datetime import datetime
from decimal import ROUND_FLOOR, Decimal
from typing import Any

from pydantic import ValidationError
from sqlalchemy.orm import Session

from basecore.settings import get_settings
from nebula_core.contracts.effects import (
    BASE_MULTIPLIERS,
    MetricPredicate,
    Multiplier,
    RateBonus,
    RequiresNode,
    UnlockConditions,
    modifier_list_adapter,
)
from nebula_core.contracts.snapshots import (
    ProgressResult,
    PurchaseResult,
    TreeSnapshot,
    UpgradeNodeView,
    UpgradeStats,
)
from nebula_core.contracts.types import TxType
from nebula_core.errors import AlreadyCompleted, InvalidArgument, NotFound
from nebula_core.persistence.ledger import Ledger
from nebula_core.persistence.models import UpgradeNodeTemplate, UserUpgrade
from nebula_core.persistence.repo import ProgressRepository, TemplateStore, load_player_metrics
from nebula_core.persistence.session import unit_of_work
from nebula_core.timeutil import ensure_utc, utcnow

logger = logging.getLogger(__name__)

DEFAULT_TARGET_PROGRESS = 100


def parse_unlock_conditions(template: UpgradeNodeTemplate) -> UnlockConditions:
    """Typed view of a template's `conditions` column."""
    raw = template.conditions or {}
    if isinstance(raw, list):
        raw = {"requires": raw}
    try:
        return UnlockConditions.model_validate(raw)
    except ValidationError as e:
        raise InvalidArgument(
            f"Malformed unlock conditions on {template.slug}: {e}",
            template_slug=template.slug,
        ) from e


def target_progress_for(template: UpgradeNodeTemplate) -> int:
    return parse_unlock_conditions(template).target_progress or DEFAULT_TARGET_PROGRESS


def level_price(template: UpgradeNodeTemplate, level: int) -> Decimal:
    """floor(base_price * price_multiplier ** level)"""
    base = Decimal(str(template.base_price or 0))
    multiplier = Decimal(str(template.price_multiplier or 1))
    return (base * multiplier**level).to_integral_value(rounding=ROUND_FLOOR)


def _effective_level(template: UpgradeNodeTemplate, row: UserUpgrade) -> int:
    # Nodes without leveling count once they are complete
    if template.max_level == 0:
        return 1 if row.completed else 0
    return row.level


def _view(template: UpgradeNodeTemplate, row: UserUpgrade | None) -> UpgradeNodeView:
    level = row.level if row else 0
    can_level = template.max_level > 0 and level < template.max_level
    return UpgradeNodeView(
        slug=template.slug,
        name=template.name,
        category=template.category,
        currency=template.currency,
        max_level=template.max_level,
        level=level,
        progress=row.progress if row else 0,
        target_progress=row.target_progress if row else target_progress_for(template),
        completed=bool(row.completed) if row else False,
        next_price=level_price(template, level) if can_level else None,
        stability=row.stability if row else 0.0,
        instability=row.instability if row else 0.0,
        unlocked=row is not None,
        last_progress_update=row.last_progress_update if row else None,
    )


class UpgradeTreeEngine:
    """
    Upgrade Tree Engine.

    Operations:
    - initialize_tree: seed root nodes (idempotent)
    - advance_progress: fill a node, complete it, unlock its children
    - get_available_upgrades: roots plus children of completed nodes
    - purchase_level: buy the next level through the ledger
    """

    def __init__(self, db: Session, store: TemplateStore | None = None, ledger: Ledger | None = None):
        self.db = db
        self.store = store or TemplateStore(db)
        self.ledger = ledger or Ledger(db, system_player_id=get_settings().SYSTEM_PLAYER_ID)

    def initialize_tree(self, player_id: int) -> TreeSnapshot:
        """Create a zero-progress row for every active root template."""
        repo = ProgressRepository(self.db, player_id)
        with unit_of_work(self.db, "initialize_tree", player_id=player_id):
            repo.lock_player()

            created = 0
            for template in self.store.list_upgrade_templates(active_only=True):
                conditions = parse_unlock_conditions(template)
                if not conditions.is_root:
                    continue
                _, was_created = repo.find_or_create_upgrade(
                    template, conditions.target_progress or DEFAULT_TARGET_PROGRESS
                )
                created += int(was_created)

            snapshot = self._snapshot(repo, player_id)

        logger.info(
            f"Upgrade tree initialized: player_id={player_id}",
            extra={"player_id": player_id, "rows_created": created, "total": len(snapshot.upgrades)},
        )
        return snapshot

    def get_tree(self, player_id: int) -> TreeSnapshot:
        return self._snapshot(ProgressRepository(self.db, player_id), player_id)

    def advance_progress(
        self,
        player_id: int,
        node_slug: str,
        delta: int,
        now: datetime | None = None,
    ) -> ProgressResult:
        """
        Add `delta` to a node's progress, capped at its target.

        Reaching the target completes the node and find-or-creates a row for
        each child slug. Only children that did not exist yet are reported.
        """
        if isinstance(delta, bool) or not isinstance(delta, int) or delta <= 0:
            raise InvalidArgument(
                f"Progress delta must be a positive integer, got {delta!r}",
                player_id=player_id,
                template_slug=node_slug,
            )
        now = ensure_utc(now) or utcnow()
        repo = ProgressRepository(self.db, player_id)

        with unit_of_work(self.db, "advance_progress", player_id=player_id, template_slug=node_slug):
            repo.lock_player()
            template = self.store.get_upgrade_template(node_slug)
            row = repo.get_upgrade(template)
            if row is None:
                raise NotFound(
                    f"Upgrade {node_slug} is not unlocked for player",
                    player_id=player_id,
                    template_slug=node_slug,
                )
            if row.completed:
                raise AlreadyCompleted(
                    f"Upgrade {node_slug} is already completed",
                    player_id=player_id,
                    template_slug=node_slug,
                )

            row.progress = min(row.progress + delta, row.target_progress)
            row.progress_history = [
                *(row.progress_history or []),
                {
                    "timestamp": now.isoformat(),
                    "delta": delta,
                    "progress": row.progress,
                    "level": row.level,
                },
            ]
            row.last_progress_update = now

            unlocked: list[str] = []
            if row.progress >= row.target_progress:
                row.completed = True
                row.stability = template.stability
                row.instability = template.instability
                unlocked = self._unlock_children(repo, template)

            self.db.flush()
            result = ProgressResult(player_id=player_id, upgrade=_view(template, row), unlocked=unlocked)

        logger.info(
            f"Upgrade progress advanced: {node_slug} -> {result.upgrade.progress}/{result.upgrade.target_progress}",
            extra={
                "player_id": player_id,
                "template_slug": node_slug,
                "delta": delta,
                "completed": result.upgrade.completed,
                "unlocked": unlocked,
            },
        )
        return result

    def _unlock_children(self, repo: ProgressRepository, template: UpgradeNodeTemplate) -> list[str]:
        children = list(template.children or [])
        templates = self.store.get_upgrade_templates(children)
        unlocked = []
        for slug in children:
            child = templates.get(slug)
            if child is None:
                logger.warning(
                    f"Upgrade {template.slug} lists unknown child {slug}",
                    extra={"template_slug": template.slug, "child_slug": slug},
                )
                continue
            _, created = repo.find_or_create_upgrade(child, target_progress_for(child))
            if created:
                unlocked.append(slug)
        return unlocked

    def get_available_upgrades(self, player_id: int, now: datetime | None = None) -> list[UpgradeNodeView]:
        """
        Roots plus children of the player's completed nodes.

        Active templates only; templates delayed past `now` are hidden. Nodes
        the player has no row for yet are reported with zero progress.
        """
        now = ensure_utc(now) or utcnow()
        repo = ProgressRepository(self.db, player_id)
        rows = {row.template_id: row for row in repo.list_upgrades()}

        unlocked_by_parent: set[str] = set()
        for row in rows.values():
            if row.completed:
                unlocked_by_parent.update(row.template.children or [])

        available = []
        for template in self.store.list_upgrade_templates(active_only=True):
            if template.delayed_until is not None and template.delayed_until > now:
                continue
            if parse_unlock_conditions(template).is_root or template.slug in unlocked_by_parent:
                available.append(_view(template, rows.get(template.id)))
        return available

    def purchase_level(self, player_id: int, node_slug: str) -> PurchaseResult:
        """
        Buy the next level of an unlocked node.

        Price is floor(base_price * price_multiplier ** level) in the template
        currency. The template's unlock predicates must hold at purchase time.
        """
        repo = ProgressRepository(self.db, player_id)
        with unit_of_work(self.db, "purchase_level", player_id=player_id, template_slug=node_slug):
            repo.lock_player()
            template = self.store.get_upgrade_template(node_slug)
            row = repo.get_upgrade(template)
            if row is None:
                raise NotFound(
                    f"Upgrade {node_slug} is not unlocked for player",
                    player_id=player_id,
                    template_slug=node_slug,
                )
            if row.level >= template.max_level:
                raise InvalidArgument(
                    f"Upgrade {node_slug} is at max level {template.max_level}",
                    player_id=player_id,
                    template_slug=node_slug,
                )

            self._check_predicates(repo, player_id, template)

            price = level_price(template, row.level)
            if price > 0:
                balance = self.ledger.debit(player_id, template.currency, price)
            else:
                balance = self.ledger.balance(player_id, template.currency)
            row.level += 1
            self.db.flush()

            result = PurchaseResult(
                player_id=player_id,
                upgrade=_view(template, row),
                price=price,
                currency=template.currency,
                balance=balance,
            )

        logger.info(
            f"Upgrade level purchased: {node_slug} -> level {result.upgrade.level}",
            extra={
                "player_id": player_id,
                "template_slug": node_slug,
                "price": str(price),
                "currency": template.currency,
                "reason": TxType.UPGRADE_PURCHASE.value,
            },
        )
        return result

    def _check_predicates(self, repo: ProgressRepository, player_id: int, template: UpgradeNodeTemplate) -> None:
        conditions = parse_unlock_conditions(template)
        if conditions.is_root:
            return

        metrics: dict[str, float] | None = None
        for predicate in conditions.requires:
            if isinstance(predicate, RequiresNode):
                required = self.store.get_upgrade_templates([predicate.slug]).get(predicate.slug)
                required_row = repo.get_upgrade(required) if required is not None else None
                satisfied = (
                    required_row is not None
                    and required_row.completed
                    and required_row.level >= predicate.min_level
                )
            elif isinstance(predicate, MetricPredicate):
                if metrics is None:
                    metrics = load_player_metrics(self.db, player_id)
                satisfied = predicate.holds(metrics)
            else:
                satisfied = False

            if not satisfied:
                raise InvalidArgument(
                    f"Unlock requirement not met for {template.slug}: {predicate.model_dump(mode='json')}",
                    player_id=player_id,
                    template_slug=template.slug,
                )

    def get_upgrade_stats(self, player_id: int) -> UpgradeStats:
        rows = ProgressRepository(self.db, player_id).list_upgrades()
        total = len(rows)
        completed = sum(1 for row in rows if row.completed)
        in_progress = sum(1 for row in rows if not row.completed and row.progress > 0)

        by_category: dict[str, dict[str, Any]] = {}
        for row in rows:
            bucket = by_category.setdefault(
                row.template.category, {"total": 0, "completed": 0, "levels": 0}
            )
            bucket["total"] += 1
            bucket["completed"] += int(row.completed)
            bucket["levels"] += row.level
        for bucket in by_category.values():
            bucket["completion_percentage"] = round(bucket["completed"] * 100 / bucket["total"], 2)

        return UpgradeStats(
            player_id=player_id,
            total=total,
            completed=completed,
            in_progress=in_progress,
            completion_percentage=round(completed * 100 / total, 2) if total else 0.0,
            by_category=by_category,
        )

    def get_upgrade_effects(self, player_id: int) -> dict[str, float]:
        """
        Replay template modifiers over the player's levels.

        Multipliers compound once per level, rate bonuses scale linearly with
        level. `effect_per_level` is a rate bonus on the template's category.
        """
        products: dict[str, float] = dict(BASE_MULTIPLIERS)
        bonuses: dict[str, float] = {}

        for row in ProgressRepository(self.db, player_id).list_upgrades():
            template = row.template
            level = _effective_level(template, row)
            if level <= 0:
                continue
            if template.effect_per_level:
                bonuses[template.category] = (
                    bonuses.get(template.category, 0.0) + template.effect_per_level * level
                )
            try:
                modifiers = modifier_list_adapter.validate_python(template.modifiers or [])
            except ValidationError as e:
                raise InvalidArgument(
                    f"Malformed modifiers on {template.slug}: {e}",
                    player_id=player_id,
                    template_slug=template.slug,
                ) from e
            for modifier in modifiers:
                if isinstance(modifier, Multiplier):
                    products[modifier.target] = products.get(modifier.target, 1.0) * modifier.factor**level
                elif isinstance(modifier, RateBonus):
                    bonuses[modifier.target] = bonuses.get(modifier.target, 0.0) + modifier.amount * level

        effects = dict(products)
        for target, bonus in bonuses.items():
            effects[target] = effects.get(target, 1.0) + bonus
        return {target: round(value, 10) for target, value in effects.items()}

    def _snapshot(self, repo: ProgressRepository, player_id: int) -> TreeSnapshot:
        return TreeSnapshot(
            player_id=player_id,
            upgrades=[_view(row.template, row) for row in repo.list_upgrades()],
        )
