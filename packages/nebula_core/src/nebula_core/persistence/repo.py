"""
Repository helpers for engine-owned tables.

`TemplateStore` is the read-only view over the catalog. The player
repositories wrap the queries each engine needs; none of them commit.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Iterable
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.orm import Session

from basecore.settings import get_settings
from nebula_core.contracts.types import OfferStatus, TransactionStatus, UserEventStatus
from nebula_core.errors import NotFound
from nebula_core.persistence.models import (
    EventTemplate,
    MarketCommission,
    MarketOffer,
    MarketTransaction,
    PlayerBalance,
    PlayerItem,
    PlayerState,
    UpgradeNodeTemplate,
    UserEvent,
    UserEventSettings,
    UserUpgrade,
)
from nebula_core.persistence.session import find_or_create
from nebula_core.timeutil import ensure_utc

logger = logging.getLogger(__name__)


class TemplateStore:
    """Read-only access to upgrade nodes, event templates and commission rates."""

    def __init__(self, db: Session, default_commission_rate: Decimal | None = None):
        self.db = db
        if default_commission_rate is None:
            default_commission_rate = Decimal(get_settings().DEFAULT_COMMISSION_RATE)
        self.default_commission_rate = default_commission_rate
        self._commission_rates: dict[str, Decimal] = {}

    # --- Upgrade nodes ---

    def get_upgrade_template(self, slug: str) -> UpgradeNodeTemplate:
        template = (
            self.db.query(UpgradeNodeTemplate)
            .filter(UpgradeNodeTemplate.slug == slug)
            .first()
        )
        if template is None:
            raise NotFound(f"Upgrade template not found: {slug}", template_slug=slug)
        return template

    def get_upgrade_templates(self, slugs: Iterable[str]) -> dict[str, UpgradeNodeTemplate]:
        slugs = list(set(slugs))
        if not slugs:
            return {}
        rows = self.db.query(UpgradeNodeTemplate).filter(UpgradeNodeTemplate.slug.in_(slugs)).all()
        return {row.slug: row for row in rows}

    def list_upgrade_templates(self, active_only: bool = True) -> list[UpgradeNodeTemplate]:
        query = self.db.query(UpgradeNodeTemplate)
        if active_only:
            query = query.filter(UpgradeNodeTemplate.active.is_(True))
        return query.order_by(UpgradeNodeTemplate.weight.desc(), UpgradeNodeTemplate.slug).all()

    # --- Events ---

    def list_active_event_templates(self) -> list[EventTemplate]:
        return (
            self.db.query(EventTemplate)
            .filter(EventTemplate.active.is_(True))
            .order_by(EventTemplate.slug)
            .all()
        )

    def get_event_template(self, slug: str) -> EventTemplate:
        template = self.db.query(EventTemplate).filter(EventTemplate.slug == slug).first()
        if template is None:
            raise NotFound(f"Event template not found: {slug}", template_slug=slug)
        return template

    # --- Commissions ---

    def get_commission_rate(self, currency: str) -> Decimal:
        """Rate for the currency, or the default when none is configured."""
        currency = str(currency)
        if currency not in self._commission_rates:
            row = (
                self.db.query(MarketCommission)
                .filter(MarketCommission.currency == currency)
                .first()
            )
            self._commission_rates[currency] = (
                Decimal(str(row.rate)) if row else self.default_commission_rate
            )
        return self._commission_rates[currency]


class ProgressRepository:
    """Player rows of the upgrade tree."""

    def __init__(self, db: Session, player_id: int):
        self.db = db
        self.player_id = player_id

    def lock_player(self) -> PlayerState:
        """Serialize every upgrade operation for this player on its state row."""
        find_or_create(self.db, PlayerState, player_id=self.player_id)
        return (
            self.db.query(PlayerState)
            .filter(PlayerState.player_id == self.player_id)
            .with_for_update()
            .one()
        )

    def get_state(self) -> PlayerState | None:
        return self.db.query(PlayerState).filter(PlayerState.player_id == self.player_id).first()

    def list_upgrades(self) -> list[UserUpgrade]:
        return (
            self.db.query(UserUpgrade)
            .join(UpgradeNodeTemplate)
            .filter(UserUpgrade.player_id == self.player_id)
            .order_by(UpgradeNodeTemplate.slug)
            .all()
        )

    def get_upgrade(self, template: UpgradeNodeTemplate) -> UserUpgrade | None:
        return (
            self.db.query(UserUpgrade)
            .filter(
                UserUpgrade.player_id == self.player_id,
                UserUpgrade.template_id == template.id,
            )
            .first()
        )

    def find_or_create_upgrade(self, template: UpgradeNodeTemplate, target_progress: int) -> tuple[UserUpgrade, bool]:
        return find_or_create(
            self.db,
            UserUpgrade,
            defaults={
                "level": 0,
                "progress": 0,
                "target_progress": target_progress,
                "completed": False,
                "progress_history": [],
            },
            player_id=self.player_id,
            template_id=template.id,
        )


class EventRepository:
    """Player rows of the event system."""

    def __init__(self, db: Session, player_id: int):
        self.db = db
        self.player_id = player_id

    def lock_settings(self, default_enabled_types: list[str]) -> UserEventSettings:
        find_or_create(
            self.db,
            UserEventSettings,
            defaults={
                "event_multipliers": {},
                "event_cooldowns": {},
                "enabled_types": list(default_enabled_types),
                "disabled_events": [],
                "priority_events": [],
            },
            player_id=self.player_id,
        )
        return (
            self.db.query(UserEventSettings)
            .filter(UserEventSettings.player_id == self.player_id)
            .with_for_update()
            .one()
        )

    def get_settings(self) -> UserEventSettings | None:
        return (
            self.db.query(UserEventSettings)
            .filter(UserEventSettings.player_id == self.player_id)
            .first()
        )

    def list_events(self, status: str | None = None) -> list[UserEvent]:
        query = self.db.query(UserEvent).filter(UserEvent.player_id == self.player_id)
        if status:
            query = query.filter(UserEvent.status == status)
        return query.order_by(UserEvent.triggered_at.desc()).all()

    def get_active_event(self, template: EventTemplate) -> UserEvent | None:
        return (
            self.db.query(UserEvent)
            .filter(
                UserEvent.player_id == self.player_id,
                UserEvent.template_id == template.id,
                UserEvent.status == UserEventStatus.ACTIVE.value,
            )
            .first()
        )

    def expire_due(self, now: datetime) -> list[UserEvent]:
        """Move ACTIVE instances whose expiry has passed to EXPIRED."""
        due = (
            self.db.query(UserEvent)
            .filter(
                UserEvent.player_id == self.player_id,
                UserEvent.status == UserEventStatus.ACTIVE.value,
                UserEvent.expires_at.isnot(None),
                UserEvent.expires_at <= now,
            )
            .all()
        )
        for event in due:
            event.status = UserEventStatus.EXPIRED.value
        self.db.flush()
        return due

    def instance_counts(self) -> dict[UUID, int]:
        rows = (
            self.db.query(UserEvent.template_id, func.count(UserEvent.id))
            .filter(UserEvent.player_id == self.player_id)
            .group_by(UserEvent.template_id)
            .all()
        )
        return {template_id: count for template_id, count in rows}

    def last_triggered(self) -> dict[UUID, datetime]:
        rows = (
            self.db.query(UserEvent.template_id, func.max(UserEvent.triggered_at))
            .filter(UserEvent.player_id == self.player_id)
            .group_by(UserEvent.template_id)
            .all()
        )
        # Aggregates bypass the column type, so normalise here
        return {template_id: _as_utc(value) for template_id, value in rows if value is not None}

    def completed_slugs(self) -> set[str]:
        rows = (
            self.db.query(EventTemplate.slug)
            .join(UserEvent, UserEvent.template_id == EventTemplate.id)
            .filter(
                UserEvent.player_id == self.player_id,
                UserEvent.status == UserEventStatus.COMPLETED.value,
            )
            .distinct()
            .all()
        )
        return {slug for (slug,) in rows}

    def status_counts(self) -> dict[str, int]:
        rows = (
            self.db.query(UserEvent.status, func.count(UserEvent.id))
            .filter(UserEvent.player_id == self.player_id)
            .group_by(UserEvent.status)
            .all()
        )
        return {status: count for status, count in rows}


class MarketRepository:
    """Offers, trades and item custody."""

    def __init__(self, db: Session):
        self.db = db

    def lock_offer(self, offer_id: UUID) -> MarketOffer:
        offer = (
            self.db.query(MarketOffer)
            .filter(MarketOffer.id == offer_id)
            .with_for_update()
            .populate_existing()
            .first()
        )
        if offer is None:
            raise NotFound(f"Offer not found: {offer_id}", offer_id=offer_id)
        return offer

    def lock_item(self, item_type: str, item_id: int) -> PlayerItem | None:
        return (
            self.db.query(PlayerItem)
            .filter(PlayerItem.item_type == item_type, PlayerItem.item_id == item_id)
            .with_for_update()
            .first()
        )

    def has_locked_offer_for_item(self, item_type: str, item_id: int) -> bool:
        return (
            self.db.query(MarketOffer.id)
            .filter(
                MarketOffer.item_type == item_type,
                MarketOffer.item_id == item_id,
                MarketOffer.status == OfferStatus.ACTIVE.value,
                MarketOffer.is_item_locked.is_(True),
            )
            .first()
            is not None
        )

    def has_pending_transaction(self, offer_id: UUID) -> bool:
        return (
            self.db.query(MarketTransaction.id)
            .filter(
                MarketTransaction.offer_id == offer_id,
                MarketTransaction.status == TransactionStatus.PENDING.value,
            )
            .first()
            is not None
        )

    def list_active_offers(self, item_type: str | None = None, now: datetime | None = None) -> list[MarketOffer]:
        query = self.db.query(MarketOffer).filter(MarketOffer.status == OfferStatus.ACTIVE.value)
        if item_type:
            query = query.filter(MarketOffer.item_type == item_type)
        if now is not None:
            query = query.filter((MarketOffer.expires_at.is_(None)) | (MarketOffer.expires_at > now))
        return query.order_by(MarketOffer.created_at.desc()).all()

    def lock_expired_offers(self, now: datetime) -> list[MarketOffer]:
        return (
            self.db.query(MarketOffer)
            .filter(
                MarketOffer.status == OfferStatus.ACTIVE.value,
                MarketOffer.expires_at.isnot(None),
                MarketOffer.expires_at <= now,
            )
            .order_by(MarketOffer.id)
            .with_for_update()
            .all()
        )

    def list_player_transactions(self, player_id: int, limit: int = 50) -> list[MarketTransaction]:
        return (
            self.db.query(MarketTransaction)
            .filter(
                (MarketTransaction.buyer_id == player_id) | (MarketTransaction.seller_id == player_id)
            )
            .order_by(MarketTransaction.created_at.desc())
            .limit(limit)
            .all()
        )


def _as_utc(value):
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    return ensure_utc(value)


def load_player_metrics(db: Session, player_id: int) -> dict[str, float]:
    """
    Metrics that catalog predicates compare against.

    Player state gauges plus one entry per ledger balance, keyed by currency.
    """
    metrics: dict[str, float] = {}
    state = db.query(PlayerState).filter(PlayerState.player_id == player_id).first()
    if state is not None:
        metrics["chaos_level"] = float(state.chaos_level or 0)
        metrics["stability_level"] = float(state.stability_level or 0)
        metrics["entropy_velocity"] = float(state.entropy_velocity or 0)
    for balance in db.query(PlayerBalance).filter(PlayerBalance.player_id == player_id).all():
        metrics[balance.currency] = float(balance.amount)
    return metrics
