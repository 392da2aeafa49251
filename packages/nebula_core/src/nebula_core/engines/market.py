"""
Market Transaction Engine

Offers, trades and the escrow ledger trail. The escrow account is the
configured system player id.

Locks taken per call: the MarketOffer row, the custody row for artifact and
galaxy offers, then every balance row the trade touches in ascending
(player_id, currency) order.
"""

import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation
from uuid import UUID

from sqlalchemy.orm import Session

from basecore.settings import get_settings
from nebula_core.contracts.snapshots import OfferView, PaymentLineView, TradeResult
from nebula_core.contracts.types import (
    CUSTODY_ITEM_TYPES,
    RESOURCES,
    Currency,
    ItemType,
    OfferStatus,
    OfferType,
    PaymentStatus,
    TransactionStatus,
    TxType,
)
from nebula_core.engines.settlement import OfferTerms, plan_settlement
from nebula_core.errors import Conflict, InvalidArgument, NotFound
from nebula_core.persistence.ledger import Ledger
from nebula_core.persistence.models import MarketOffer, MarketTransaction, PaymentTransaction
from nebula_core.persistence.repo import MarketRepository, TemplateStore
from nebula_core.persistence.session import unit_of_work
from nebula_core.timeutil import ensure_utc, utcnow

logger = logging.getLogger(__name__)


def _decimal(value, name: str, **context) -> Decimal:
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise InvalidArgument(f"{name} must be a number, got {value!r}", **context) from e
    if not result.is_finite() or result <= 0:
        raise InvalidArgument(f"{name} must be positive, got {value!r}", **context)
    return result


def _choice(enum_cls, value, name: str, **context) -> str:
    try:
        return enum_cls(value).value
    except ValueError as e:
        raise InvalidArgument(f"Unknown {name}: {value!r}", **context) from e


def _as_uuid(value, **context) -> UUID:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError as e:
        raise InvalidArgument(f"Malformed offer id: {value!r}", **context) from e


def _offer_view(offer: MarketOffer) -> OfferView:
    return OfferView(
        id=offer.id,
        seller_id=offer.seller_id,
        item_type=offer.item_type,
        item_id=offer.item_id,
        amount=Decimal(offer.amount),
        resource=offer.resource,
        price=Decimal(offer.price),
        currency=offer.currency,
        status=offer.status,
        offer_type=offer.offer_type,
        is_item_locked=bool(offer.is_item_locked),
        expires_at=offer.expires_at,
        created_at=offer.created_at,
    )


def _trade_result(transaction: MarketTransaction, offer: MarketOffer) -> TradeResult:
    payments = list(transaction.payments)
    by_type = {payment.tx_type: Decimal(payment.price_or_amount) for payment in payments}
    return TradeResult(
        transaction_id=transaction.id,
        offer_id=offer.id,
        buyer_id=transaction.buyer_id,
        seller_id=transaction.seller_id,
        status=transaction.status,
        offer_status=offer.status,
        price=Decimal(offer.price),
        commission=by_type.get(TxType.FEE.value, Decimal("0")),
        seller_amount=by_type.get(TxType.CONTRACT_TO_SELLER.value, Decimal("0")),
        currency=offer.currency,
        completed_at=transaction.completed_at,
        payments=[
            PaymentLineView(
                from_account=payment.from_account,
                to_account=payment.to_account,
                amount=Decimal(payment.price_or_amount),
                currency=payment.currency_or_resource,
                tx_type=payment.tx_type,
                status=payment.status,
            )
            for payment in payments
        ],
    )


class MarketTransactionEngine:
    """
    Market Transaction Engine.

    Operations:
    - create_offer: list a resource, item or package and take it into escrow
    - execute_trade: settle one offer for a buyer
    - cancel_offer / expire_offers: return escrow to the seller
    """

    def __init__(
        self,
        db: Session,
        store: TemplateStore | None = None,
        ledger: Ledger | None = None,
        system_player_id: int | None = None,
    ):
        self.db = db
        if system_player_id is None:
            system_player_id = get_settings().SYSTEM_PLAYER_ID
        self.system_player_id = system_player_id
        self.store = store or TemplateStore(db)
        self.ledger = ledger or Ledger(db, system_player_id=system_player_id)
        self.repo = MarketRepository(db)

    def create_offer(
        self,
        seller_id: int,
        item_type: str,
        amount,
        price,
        currency: str,
        offer_type: str = OfferType.P2P.value,
        item_id: int | None = None,
        resource: str | None = None,
        expires_at: datetime | None = None,
        now: datetime | None = None,
    ) -> OfferView:
        """
        Create an ACTIVE offer and take the listed goods into escrow.

        - resource: `amount` of `resource` is debited from the seller now
        - artifact/galaxy: the seller's custody row is locked to this offer
        - package: SYSTEM offers only, nothing to escrow
        """
        context = {"player_id": seller_id, "item_id": item_id}
        amount = _decimal(amount, "amount", **context)
        price = _decimal(price, "price", **context)
        item_type = _choice(ItemType, item_type, "item type", **context)
        currency = _choice(Currency, currency, "currency", **context)
        offer_type = _choice(OfferType, offer_type, "offer type", **context)
        now = ensure_utc(now) or utcnow()
        expires_at = ensure_utc(expires_at)
        if expires_at is not None and expires_at <= now:
            raise InvalidArgument("Offer expiry must be in the future", **context)

        is_system = seller_id == self.system_player_id
        if offer_type == OfferType.SYSTEM.value and not is_system:
            raise InvalidArgument("Only the system account can create SYSTEM offers", **context)
        if item_type == ItemType.PACKAGE.value and offer_type != OfferType.SYSTEM.value:
            raise InvalidArgument("Packages can only be sold through SYSTEM offers", **context)

        with unit_of_work(self.db, "create_offer", **context):
            is_item_locked = False

            if item_type == ItemType.RESOURCE.value or item_type == ItemType.PACKAGE.value:
                if resource not in RESOURCES:
                    raise InvalidArgument(f"Unknown resource: {resource!r}", **context)

            if item_type == ItemType.RESOURCE.value:
                self.ledger.lock_accounts([(seller_id, resource), (self.system_player_id, resource)])
                self.ledger.debit(seller_id, resource, amount)
                self.ledger.credit(self.system_player_id, resource, amount)
                logger.debug(
                    f"Resource escrowed: {amount} {resource}",
                    extra={"player_id": seller_id, "resource": resource, "amount": str(amount)},
                )
            elif item_type in CUSTODY_ITEM_TYPES:
                if item_id is None:
                    raise InvalidArgument(f"{item_type} offers need an item_id", **context)
                item = self.repo.lock_item(item_type, item_id)
                if item is None:
                    raise NotFound(f"{item_type} {item_id} not found", **context)
                if item.owner_id != seller_id:
                    raise Conflict(f"{item_type} {item_id} is not owned by seller", **context)
                if not item.tradable:
                    raise Conflict(f"{item_type} {item_id} is not tradable", **context)
                if self.repo.has_locked_offer_for_item(item_type, item_id):
                    raise Conflict(f"{item_type} {item_id} is already listed", **context)
                is_item_locked = True

            offer = MarketOffer(
                seller_id=seller_id,
                item_type=item_type,
                item_id=item_id,
                amount=amount,
                resource=resource,
                price=price,
                currency=currency,
                status=OfferStatus.ACTIVE.value,
                offer_type=offer_type,
                is_item_locked=is_item_locked,
                expires_at=expires_at,
            )
            self.db.add(offer)
            self.db.flush()
            view = _offer_view(offer)

        logger.info(
            f"Offer created: {item_type} for {price} {currency}",
            extra={"player_id": seller_id, "offer_id": str(view.id), "offer_type": offer_type},
        )
        return view

    def execute_trade(self, buyer_id: int, offer_id: UUID, now: datetime | None = None) -> TradeResult:
        """
        Settle one offer for a buyer, all or nothing.

        The offer row lock makes concurrent buyers serialize: the loser sees
        a non-ACTIVE offer and fails with Conflict. An insufficient buyer
        balance rolls everything back and leaves the offer ACTIVE.
        """
        offer_id = _as_uuid(offer_id, player_id=buyer_id)
        now = ensure_utc(now) or utcnow()
        context = {"player_id": buyer_id, "offer_id": offer_id}

        with unit_of_work(self.db, "execute_trade", **context):
            offer = self.repo.lock_offer(offer_id)
            if self.repo.has_pending_transaction(offer.id):
                raise Conflict("Offer has a trade in flight", **context)

            is_package = offer.item_type == ItemType.PACKAGE.value
            rate = Decimal("0") if is_package else self.store.get_commission_rate(offer.currency)
            settlement = plan_settlement(
                OfferTerms.from_offer(offer),
                buyer_id=buyer_id,
                commission_rate=rate,
                escrow_id=self.system_player_id,
                now=now,
            )

            item = None
            if settlement.transfers_custody:
                item = self.repo.lock_item(offer.item_type, offer.item_id)
                if item is None or item.owner_id != offer.seller_id:
                    raise Conflict(f"{offer.item_type} {offer.item_id} is no longer held by seller", **context)

            self.ledger.lock_accounts(settlement.accounts)

            # Buyer debit first: InsufficientFunds aborts before anything else is written
            for move in settlement.moves:
                if move.debit:
                    self.ledger.debit(move.player_id, move.currency, move.amount)
                else:
                    self.ledger.credit(move.player_id, move.currency, move.amount)

            transaction = MarketTransaction(
                offer=offer,
                buyer_id=buyer_id,
                seller_id=offer.seller_id,
                status=TransactionStatus.PENDING.value,
            )
            self.db.add(transaction)
            for line in settlement.payments:
                self.db.add(
                    PaymentTransaction(
                        market_transaction=transaction,
                        from_account=line.from_account,
                        to_account=line.to_account,
                        price_or_amount=line.amount,
                        currency_or_resource=line.currency,
                        tx_type=line.tx_type.value,
                        status=PaymentStatus.PENDING.value,
                    )
                )
            self.db.flush()

            if item is not None:
                item.owner_id = buyer_id

            # Flip every status in the same transaction
            for payment in transaction.payments:
                payment.status = PaymentStatus.CONFIRMED.value
                payment.confirmed_at = now
            transaction.status = TransactionStatus.COMPLETED.value
            transaction.completed_at = now
            offer.status = settlement.offer_status.value
            if settlement.transfers_custody:
                offer.is_item_locked = False
            self.db.flush()

            result = _trade_result(transaction, offer)

        logger.info(
            f"Trade executed: offer_id={offer_id}",
            extra={
                "player_id": buyer_id,
                "seller_id": result.seller_id,
                "offer_id": str(offer_id),
                "price": str(result.price),
                "commission": str(result.commission),
                "currency": result.currency,
            },
        )
        return result

    def cancel_offer(
        self,
        seller_id: int,
        offer_id: UUID,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> OfferView:
        """Cancel an ACTIVE offer and hand escrow back to the seller."""
        offer_id = _as_uuid(offer_id, player_id=seller_id)
        now = ensure_utc(now) or utcnow()
        context = {"player_id": seller_id, "offer_id": offer_id}

        with unit_of_work(self.db, "cancel_offer", **context):
            offer = self.repo.lock_offer(offer_id)
            if seller_id not in (offer.seller_id, self.system_player_id):
                raise Conflict("Only the seller can cancel this offer", **context)
            if offer.status != OfferStatus.ACTIVE.value:
                raise Conflict(f"Offer is {offer.status}", **context)
            if self.repo.has_pending_transaction(offer.id):
                raise Conflict("Offer has a trade in flight", **context)

            self._release_escrow(offer)
            offer.status = OfferStatus.CANCELLED.value
            offer.cancelled_at = now
            offer.cancel_reason = reason
            self.db.flush()
            view = _offer_view(offer)

        logger.info(
            f"Offer cancelled: offer_id={offer_id}",
            extra={"player_id": seller_id, "offer_id": str(offer_id), "reason": reason},
        )
        return view

    def expire_offers(self, now: datetime | None = None) -> list[OfferView]:
        """Move ACTIVE offers past their expiry to EXPIRED, returning escrow."""
        now = ensure_utc(now) or utcnow()
        with unit_of_work(self.db, "expire_offers"):
            expired = []
            for offer in self.repo.lock_expired_offers(now):
                self._release_escrow(offer)
                offer.status = OfferStatus.EXPIRED.value
                expired.append(offer)
            self.db.flush()
            views = [_offer_view(offer) for offer in expired]

        if views:
            logger.info(f"Expired {len(views)} offers", extra={"expired": len(views)})
        return views

    def _release_escrow(self, offer: MarketOffer) -> None:
        if offer.item_type == ItemType.RESOURCE.value:
            amount = Decimal(offer.amount)
            self.ledger.lock_accounts([(offer.seller_id, offer.resource), (self.system_player_id, offer.resource)])
            self.ledger.debit(self.system_player_id, offer.resource, amount)
            self.ledger.credit(offer.seller_id, offer.resource, amount)
        elif offer.is_item_locked:
            offer.is_item_locked = False

    # --- Read models ---

    def get_offer(self, offer_id: UUID) -> OfferView:
        offer_id = _as_uuid(offer_id)
        offer = self.db.query(MarketOffer).filter(MarketOffer.id == offer_id).first()
        if offer is None:
            raise NotFound(f"Offer not found: {offer_id}", offer_id=offer_id)
        return _offer_view(offer)

    def list_active_offers(self, item_type: str | None = None, now: datetime | None = None) -> list[OfferView]:
        if item_type is not None:
            item_type = _choice(ItemType, item_type, "item type")
        offers = self.repo.list_active_offers(item_type=item_type, now=ensure_utc(now) or utcnow())
        return [_offer_view(offer) for offer in offers]

    def get_player_transactions(self, player_id: int, limit: int = 50) -> list[TradeResult]:
        transactions = self.repo.list_player_transactions(player_id, limit=limit)
        return [_trade_result(transaction, transaction.offer) for transaction in transactions]
