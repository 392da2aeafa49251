"""
Player ledger over `PlayerBalance` rows.

Every mutation locks the balance row FOR UPDATE. Callers that touch several
accounts in one transaction lock them up front with `lock_accounts`, which
always acquires rows in ascending (player_id, currency) order.
"""

import logging
from decimal import Decimal
from typing import Iterable

from sqlalchemy.orm import Session

from nebula_core.errors import InsufficientFunds, InvalidArgument
from nebula_core.persistence.models import PlayerBalance
from nebula_core.persistence.session import find_or_create

logger = logging.getLogger(__name__)


class Ledger:
    """Debit/credit/balance for (player, currency) accounts."""

    def __init__(self, db: Session, system_player_id: int = 0):
        self.db = db
        # Escrow account for market trades
        self.system_player_id = system_player_id

    def _account(self, player_id: int, currency: str) -> PlayerBalance:
        find_or_create(self.db, PlayerBalance, defaults={"amount": Decimal("0")}, player_id=player_id, currency=currency)
        return (
            self.db.query(PlayerBalance)
            .filter(PlayerBalance.player_id == player_id, PlayerBalance.currency == currency)
            .with_for_update()
            .populate_existing()
            .one()
        )

    def lock_accounts(self, accounts: Iterable[tuple[int, str]]) -> None:
        """Lock several accounts in a deadlock-free order."""
        for player_id, currency in sorted(set(accounts), key=lambda a: (a[0], str(a[1]))):
            self._account(player_id, str(currency))

    def balance(self, player_id: int, currency: str) -> Decimal:
        row = (
            self.db.query(PlayerBalance)
            .filter(PlayerBalance.player_id == player_id, PlayerBalance.currency == str(currency))
            .first()
        )
        return Decimal(row.amount) if row else Decimal("0")

    def balances(self, player_id: int) -> dict[str, Decimal]:
        rows = self.db.query(PlayerBalance).filter(PlayerBalance.player_id == player_id).all()
        return {row.currency: Decimal(row.amount) for row in rows}

    def debit(self, player_id: int, currency: str, amount: Decimal) -> Decimal:
        """Remove `amount` from the account. Never goes below zero."""
        amount = _positive(amount, player_id=player_id, currency=currency)
        account = self._account(player_id, str(currency))
        current = Decimal(account.amount)
        if current < amount:
            raise InsufficientFunds(
                f"Insufficient {currency}: balance {current}, required {amount}",
                player_id=player_id,
                currency=str(currency),
            )
        account.amount = current - amount
        self.db.flush()
        logger.debug(
            f"Ledger debit {amount} {currency}",
            extra={"player_id": player_id, "currency": str(currency), "amount": str(amount)},
        )
        return Decimal(account.amount)

    def credit(self, player_id: int, currency: str, amount: Decimal) -> Decimal:
        amount = _positive(amount, player_id=player_id, currency=currency)
        account = self._account(player_id, str(currency))
        account.amount = Decimal(account.amount) + amount
        self.db.flush()
        logger.debug(
            f"Ledger credit {amount} {currency}",
            extra={"player_id": player_id, "currency": str(currency), "amount": str(amount)},
        )
        return Decimal(account.amount)


def _positive(amount, **context) -> Decimal:
    value = Decimal(str(amount))
    if value <= 0:
        raise InvalidArgument(f"Ledger amount must be positive, got {value}", **context)
    return value
