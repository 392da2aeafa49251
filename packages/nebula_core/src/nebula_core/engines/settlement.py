"""
Trade settlement planning.

`plan_settlement` is the whole escrow state transition for one trade,
computed without touching the database. The market engine applies the
returned plan inside a single transaction, so a failure part way through is
never observable.

Escrow flow for player-to-player trades:

    buyer  --price-->          escrow   BUYER_TO_CONTRACT
    escrow --price-commission--> seller CONTRACT_TO_SELLER
    escrow --commission-->     escrow   FEE (commission stays in escrow)
    escrow --amount/item-->    buyer    RESOURCE_TRANSFER (resources only)

SYSTEM package offers mint `amount` of `resource` to the buyer with a
CONTRACT_TO_BUYER line and stay ACTIVE.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_FLOOR, Decimal
from typing import Any
from uuid import UUID

from nebula_core.contracts.types import CUSTODY_ITEM_TYPES, ItemType, OfferStatus, OfferType, TxType
from nebula_core.errors import Conflict, InvalidArgument

CENT = Decimal("0.01")


def compute_commission(price: Decimal, rate: Decimal) -> Decimal:
    """floor(price * rate) to two decimal places."""
    return (Decimal(price) * Decimal(rate)).quantize(CENT, rounding=ROUND_FLOOR)


@dataclass(frozen=True)
class OfferTerms:
    """The fields of an offer that settlement depends on."""

    id: UUID
    seller_id: int
    item_type: str
    item_id: int | None
    amount: Decimal
    resource: str | None
    price: Decimal
    currency: str
    status: str
    offer_type: str
    expires_at: datetime | None = None

    @classmethod
    def from_offer(cls, offer: Any) -> "OfferTerms":
        return cls(
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
            expires_at=offer.expires_at,
        )


@dataclass(frozen=True)
class LedgerMove:
    player_id: int
    currency: str
    amount: Decimal
    debit: bool


@dataclass(frozen=True)
class PaymentLine:
    from_account: int
    to_account: int
    amount: Decimal
    currency: str
    tx_type: TxType


@dataclass(frozen=True)
class TradeSettlement:
    offer_id: UUID
    buyer_id: int
    seller_id: int
    price: Decimal
    commission: Decimal
    seller_amount: Decimal
    currency: str
    offer_status: OfferStatus
    # Ordered: the buyer debit always comes first
    moves: tuple[LedgerMove, ...] = field(default_factory=tuple)
    payments: tuple[PaymentLine, ...] = field(default_factory=tuple)
    # Custody row (artifact/galaxy) changes owner from seller to buyer
    transfers_custody: bool = False

    @property
    def accounts(self) -> set[tuple[int, str]]:
        return {(move.player_id, move.currency) for move in self.moves}


def plan_settlement(
    offer: OfferTerms,
    buyer_id: int,
    commission_rate: Decimal,
    escrow_id: int,
    now: datetime,
) -> TradeSettlement:
    """
    Plan the trade of `offer` to `buyer_id`.

    Raises Conflict when the offer cannot be traded (not ACTIVE, expired, or
    bought by its own seller) and InvalidArgument for a rate outside [0, 1].
    """
    context = {"player_id": buyer_id, "offer_id": offer.id}
    if offer.status != OfferStatus.ACTIVE.value:
        raise Conflict(f"Offer is {offer.status}", **context)
    if offer.expires_at is not None and offer.expires_at <= now:
        raise Conflict("Offer has expired", **context)
    if buyer_id == offer.seller_id:
        raise Conflict("Seller cannot buy their own offer", **context)

    rate = Decimal(commission_rate)
    if rate < 0 or rate > 1:
        raise InvalidArgument(f"Commission rate out of range: {rate}", currency=offer.currency, **context)

    price = Decimal(offer.price)
    moves = [
        LedgerMove(buyer_id, offer.currency, price, debit=True),
        LedgerMove(escrow_id, offer.currency, price, debit=False),
    ]
    payments = [PaymentLine(buyer_id, escrow_id, price, offer.currency, TxType.BUYER_TO_CONTRACT)]

    if offer.item_type == ItemType.PACKAGE.value:
        if offer.offer_type != OfferType.SYSTEM.value or not offer.resource:
            raise InvalidArgument("Package offers must be SYSTEM offers with a resource", **context)
        moves.append(LedgerMove(buyer_id, offer.resource, Decimal(offer.amount), debit=False))
        payments.append(
            PaymentLine(escrow_id, buyer_id, Decimal(offer.amount), offer.resource, TxType.CONTRACT_TO_BUYER)
        )
        return TradeSettlement(
            offer_id=offer.id,
            buyer_id=buyer_id,
            seller_id=offer.seller_id,
            price=price,
            commission=Decimal("0"),
            seller_amount=Decimal("0"),
            currency=offer.currency,
            offer_status=OfferStatus.ACTIVE,
            moves=tuple(moves),
            payments=tuple(payments),
        )

    commission = compute_commission(price, rate)
    seller_amount = price - commission

    if seller_amount > 0:
        moves.append(LedgerMove(escrow_id, offer.currency, seller_amount, debit=True))
        moves.append(LedgerMove(offer.seller_id, offer.currency, seller_amount, debit=False))
        payments.append(
            PaymentLine(escrow_id, offer.seller_id, seller_amount, offer.currency, TxType.CONTRACT_TO_SELLER)
        )
    if commission > 0:
        payments.append(PaymentLine(escrow_id, escrow_id, commission, offer.currency, TxType.FEE))

    if offer.item_type == ItemType.RESOURCE.value:
        amount = Decimal(offer.amount)
        moves.append(LedgerMove(escrow_id, offer.resource, amount, debit=True))
        moves.append(LedgerMove(buyer_id, offer.resource, amount, debit=False))
        payments.append(PaymentLine(escrow_id, buyer_id, amount, offer.resource, TxType.RESOURCE_TRANSFER))

    return TradeSettlement(
        offer_id=offer.id,
        buyer_id=buyer_id,
        seller_id=offer.seller_id,
        price=price,
        commission=commission,
        seller_amount=seller_amount,
        currency=offer.currency,
        offer_status=OfferStatus.COMPLETED,
        moves=tuple(moves),
        payments=tuple(payments),
        transfers_custody=offer.item_type in CUSTODY_ITEM_TYPES,
    )
