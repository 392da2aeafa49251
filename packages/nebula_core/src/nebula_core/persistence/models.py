"""
Catalog and player-state tables owned by the engines.

Catalog tables (templates, commissions) are written only by catalog seeding.
Player tables are mutated by the engines inside one transaction per call.
"""

from datetime import datetime
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base, relationship

from nebula_core.contracts.types import OfferStatus, UserEventStatus
from nebula_core.timeutil import ensure_utc, utcnow

NebulaBase = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JsonColumn = JSON().with_variant(JSONB(), "postgresql")

# Ledger precision
Money = Numeric(30, 8)


class UTCDateTime(TypeDecorator):
    """Stores naive UTC, returns aware UTC on every backend."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect):
        if value is None:
            return None
        return ensure_utc(value).replace(tzinfo=None)

    def process_result_value(self, value: datetime | None, dialect):
        return ensure_utc(value)


class NebulaModelMixin:
    """Common fields for all engine-owned models."""

    id = Column(Uuid, primary_key=True, default=uuid4)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)


# =============================================================================
# Catalog
# =============================================================================


class UpgradeNodeTemplate(NebulaBase, NebulaModelMixin):
    """
    Immutable catalog entry for one node of the upgrade tree.

    `children` is the ordered list of slugs unlocked when a player completes
    this node. `conditions` and `modifiers` are parsed into typed payloads
    (see contracts.effects) before the engines read them.
    """

    __tablename__ = "upgrade_node_templates"

    slug = Column(String(100), nullable=False, unique=True)
    name = Column(String(255), nullable=False)
    description = Column(JsonColumn, nullable=False, default=dict)  # presentation only
    max_level = Column(Integer, nullable=False, default=0)
    base_price = Column(Money, nullable=False, default=Decimal("0"))
    price_multiplier = Column(Float, nullable=False, default=1.0)
    effect_per_level = Column(Float, nullable=False, default=0.0)
    currency = Column(String(20), nullable=False, default="stardust")
    category = Column(String(20), nullable=False, default="production")
    stability = Column(Float, nullable=False, default=0.0)
    instability = Column(Float, nullable=False, default=0.0)
    modifiers = Column(JsonColumn, nullable=False, default=list)
    conditions = Column(JsonColumn, nullable=False, default=dict)
    children = Column(JsonColumn, nullable=False, default=list)
    weight = Column(Integer, nullable=False, default=1)
    active = Column(Boolean, nullable=False, default=True)
    delayed_until = Column(UTCDateTime, nullable=True)

    __table_args__ = (
        CheckConstraint("max_level >= 0", name="ck_upgrade_templates_max_level"),
        Index("idx_upgrade_templates_active", "active"),
    )


class EventTemplate(NebulaBase, NebulaModelMixin):
    """Immutable catalog entry for a gameplay event."""

    __tablename__ = "event_templates"

    slug = Column(String(100), nullable=False, unique=True)
    name = Column(String(255), nullable=False)
    description = Column(JsonColumn, nullable=False, default=dict)  # presentation only
    type = Column(String(30), nullable=False)
    trigger_config = Column(JsonColumn, nullable=False, default=dict)
    effect = Column(JsonColumn, nullable=False, default=dict)
    frequency = Column(JsonColumn, nullable=False, default=dict)  # presentation only
    conditions = Column(JsonColumn, nullable=False, default=list)
    active = Column(Boolean, nullable=False, default=True)

    __table_args__ = (
        Index("idx_event_templates_active_type", "active", "type"),
    )


class MarketCommission(NebulaBase, NebulaModelMixin):
    """Commission rate charged on trades settled in one currency."""

    __tablename__ = "market_commissions"

    currency = Column(String(20), nullable=False, unique=True)
    rate = Column(Numeric(6, 4), nullable=False)
    description = Column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint("rate >= 0 AND rate <= 1", name="ck_market_commissions_rate"),
    )


# =============================================================================
# Player state
# =============================================================================


class PlayerState(NebulaBase, NebulaModelMixin):
    """
    One row per player.

    Locked FOR UPDATE by the upgrade engine so concurrent calls for the same
    player serialize. Also holds the metrics CONDITIONAL triggers compare against.
    """

    __tablename__ = "player_states"

    player_id = Column(BigInteger, nullable=False, unique=True)
    chaos_level = Column(Float, nullable=False, default=0.0)
    stability_level = Column(Float, nullable=False, default=0.0)
    entropy_velocity = Column(Float, nullable=False, default=0.0)


class PlayerBalance(NebulaBase, NebulaModelMixin):
    """Ledger row: one balance per player and currency."""

    __tablename__ = "player_balances"

    player_id = Column(BigInteger, nullable=False)
    currency = Column(String(20), nullable=False)
    amount = Column(Money, nullable=False, default=Decimal("0"))

    __table_args__ = (
        UniqueConstraint("player_id", "currency", name="uq_player_balances_player_currency"),
        CheckConstraint("amount >= 0", name="ck_player_balances_non_negative"),
    )


class PlayerItem(NebulaBase, NebulaModelMixin):
    """Custody record for a non-fungible item (artifact, galaxy)."""

    __tablename__ = "player_items"

    item_type = Column(String(20), nullable=False)
    item_id = Column(BigInteger, nullable=False)
    owner_id = Column(BigInteger, nullable=False, index=True)
    tradable = Column(Boolean, nullable=False, default=True)

    __table_args__ = (
        UniqueConstraint("item_type", "item_id", name="uq_player_items_item"),
    )


class UserUpgrade(NebulaBase, NebulaModelMixin):
    """Per-player progress through one upgrade node."""

    __tablename__ = "user_upgrades"

    player_id = Column(BigInteger, nullable=False)
    template_id = Column(
        Uuid, ForeignKey("upgrade_node_templates.id", ondelete="CASCADE"), nullable=False
    )
    level = Column(Integer, nullable=False, default=0)
    progress = Column(Integer, nullable=False, default=0)
    target_progress = Column(Integer, nullable=False, default=100)
    completed = Column(Boolean, nullable=False, default=False)
    progress_history = Column(JsonColumn, nullable=False, default=list)
    last_progress_update = Column(UTCDateTime, nullable=True)
    stability = Column(Float, nullable=False, default=0.0)
    instability = Column(Float, nullable=False, default=0.0)

    template = relationship(UpgradeNodeTemplate)

    __table_args__ = (
        UniqueConstraint("player_id", "template_id", name="uq_user_upgrades_player_template"),
        CheckConstraint(
            "progress >= 0 AND progress <= target_progress",
            name="ck_user_upgrades_progress_bounds",
        ),
        Index("idx_user_upgrades_player_completed", "player_id", "completed"),
    )


class UserEvent(NebulaBase, NebulaModelMixin):
    """Per-player activation of an event template."""

    __tablename__ = "user_events"

    player_id = Column(BigInteger, nullable=False)
    template_id = Column(Uuid, ForeignKey("event_templates.id", ondelete="CASCADE"), nullable=False)
    status = Column(String(20), nullable=False, default=UserEventStatus.ACTIVE.value)
    triggered_at = Column(UTCDateTime, nullable=False, default=utcnow)
    expires_at = Column(UTCDateTime, nullable=True)
    completed_at = Column(UTCDateTime, nullable=True)
    effects = Column(JsonColumn, nullable=False, default=list)  # snapshot at trigger time
    progress = Column(JsonColumn, nullable=False, default=dict)

    template = relationship(EventTemplate)

    __table_args__ = (
        CheckConstraint(
            "expires_at IS NULL OR expires_at >= triggered_at",
            name="ck_user_events_expiry_after_trigger",
        ),
        Index("idx_user_events_player_status", "player_id", "status"),
        Index("idx_user_events_player_template", "player_id", "template_id"),
        Index("idx_user_events_expires_at", "expires_at"),
    )


class UserEventSettings(NebulaBase, NebulaModelMixin):
    """Per-player singleton holding the aggregated event multipliers."""

    __tablename__ = "user_event_settings"

    player_id = Column(BigInteger, nullable=False, unique=True)
    event_multipliers = Column(JsonColumn, nullable=False, default=dict)
    event_cooldowns = Column(JsonColumn, nullable=False, default=dict)  # slug -> ISO datetime
    enabled_types = Column(JsonColumn, nullable=False, default=list)
    disabled_events = Column(JsonColumn, nullable=False, default=list)
    priority_events = Column(JsonColumn, nullable=False, default=list)
    last_event_check = Column(UTCDateTime, nullable=True)


# =============================================================================
# Market
# =============================================================================


class MarketOffer(NebulaBase, NebulaModelMixin):
    """
    A listing on the market.

    `is_item_locked` is true while the listed item or resource is held in
    custody by this offer; it is released on cancel or expiry.
    """

    __tablename__ = "market_offers"

    seller_id = Column(BigInteger, nullable=False)
    item_type = Column(String(20), nullable=False)
    item_id = Column(BigInteger, nullable=True)
    amount = Column(Money, nullable=False)
    resource = Column(String(20), nullable=True)
    price = Column(Money, nullable=False)
    currency = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False, default=OfferStatus.ACTIVE.value)
    offer_type = Column(String(20), nullable=False, default="P2P")
    is_item_locked = Column(Boolean, nullable=False, default=False)
    expires_at = Column(UTCDateTime, nullable=True)
    cancelled_at = Column(UTCDateTime, nullable=True)
    cancel_reason = Column(String(255), nullable=True)

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_market_offers_amount_positive"),
        CheckConstraint("price > 0", name="ck_market_offers_price_positive"),
        Index("idx_market_offers_seller", "seller_id"),
        Index("idx_market_offers_status_item_type", "status", "item_type"),
        Index("idx_market_offers_item", "item_type", "item_id"),
    )


class MarketTransaction(NebulaBase, NebulaModelMixin):
    """A buyer's trade against one offer."""

    __tablename__ = "market_transactions"

    offer_id = Column(Uuid, ForeignKey("market_offers.id", ondelete="CASCADE"), nullable=False)
    buyer_id = Column(BigInteger, nullable=False)
    seller_id = Column(BigInteger, nullable=False)
    status = Column(String(20), nullable=False, default="PENDING")
    completed_at = Column(UTCDateTime, nullable=True)

    offer = relationship(MarketOffer)
    payments = relationship(
        "PaymentTransaction",
        back_populates="market_transaction",
        order_by="PaymentTransaction.created_at",
    )

    __table_args__ = (
        # At most one PENDING transaction per offer
        Index(
            "uq_market_transactions_pending_offer",
            "offer_id",
            unique=True,
            postgresql_where=text("status = 'PENDING'"),
            sqlite_where=text("status = 'PENDING'"),
        ),
        Index("idx_market_transactions_buyer", "buyer_id"),
        Index("idx_market_transactions_seller", "seller_id"),
    )


class PaymentTransaction(NebulaBase, NebulaModelMixin):
    """Append-only ledger line belonging to a market transaction."""

    __tablename__ = "payment_transactions"

    market_transaction_id = Column(
        Uuid, ForeignKey("market_transactions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    from_account = Column(BigInteger, nullable=False)
    to_account = Column(BigInteger, nullable=False)
    price_or_amount = Column(Money, nullable=False)
    currency_or_resource = Column(String(20), nullable=False)
    tx_type = Column(String(30), nullable=False)
    status = Column(String(20), nullable=False, default="PENDING")
    confirmed_at = Column(UTCDateTime, nullable=True)
    details = Column("metadata", JsonColumn, nullable=True)

    market_transaction = relationship(MarketTransaction, back_populates="payments")

    __table_args__ = (
        CheckConstraint("price_or_amount > 0", name="ck_payment_transactions_amount_positive"),
    )
