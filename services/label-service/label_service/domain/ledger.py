"""Transaction ledger types and role-scoped read access."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING

from .account import Account
from .errors import NotFoundError
from .policy import Operation, VisibilityScope, require, visibility_scope

if TYPE_CHECKING:
    from ..repository import AccountRepository, LedgerRepository
    from .contracts import Page, TransactionQuery


class TransactionKind(str, Enum):
    CREDIT_ASSIGN = "CREDIT_ASSIGN"
    CREDIT_REVOKE = "CREDIT_REVOKE"
    LABEL_PURCHASE = "LABEL_PURCHASE"
    LABEL_REFUND = "LABEL_REFUND"


@dataclass(frozen=True, slots=True)
class Transaction:
    """Immutable ledger row. ``amount`` is a positive magnitude; ``kind`` implies the sign."""

    transaction_id: str
    account_id: str
    kind: TransactionKind
    amount: Decimal
    description: str | None
    reference_id: str | None
    created_by_id: str
    created_at: datetime

    @property
    def signed_amount(self) -> Decimal:
        if self.kind in (TransactionKind.CREDIT_ASSIGN, TransactionKind.LABEL_REFUND):
            return self.amount
        return -self.amount


class LedgerService:
    """Read side of the ledger, filtered through the actor's visibility scope."""

    def __init__(self, accounts: AccountRepository, ledger: LedgerRepository) -> None:
        self._accounts = accounts
        self._ledger = ledger

    def list_transactions(self, actor: Account, query: TransactionQuery) -> Page[Transaction]:
        """Page through the ledger entries visible to ``actor``, newest first."""
        scope: VisibilityScope = visibility_scope(actor)
        if query.account_id and query.account_id != actor.account_id:
            owner = self._accounts.get_account(query.account_id)
            if owner is None:
                raise NotFoundError("User not found")
            require(actor, Operation.VIEW_TRANSACTIONS, owner)
        return self._ledger.list_transactions(scope, query)
