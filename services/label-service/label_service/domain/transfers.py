"""Credit transfer engine.

Assign and revoke run as one database transaction each: the participating
account rows are locked, every balance change is a conditional update that
cannot drive a balance negative, and the matching ledger rows are appended
before commit. Super Admins mint on assign and destroy on revoke; resellers
move funds to and from their own pool.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any

from ..metrics import CREDIT_OPERATIONS
from .account import Account, Role
from .contracts import NewTransaction
from .errors import InsufficientBalanceError, InvalidAmountError, TargetNotFoundError
from .ledger import Transaction, TransactionKind
from .policy import Operation, ensure_allowed, require, role_permits

if TYPE_CHECKING:
    from ..repository import AccountRepository, LedgerRepository, LedgerUnit

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
DEFAULT_MAX_AMOUNT = Decimal("10000")


@dataclass(slots=True)
class TransferResult:
    """Outcome of a committed transfer.

    ``transaction`` is the ledger row written against the target account;
    ``entries`` holds every row written by the operation.
    """

    transaction: Transaction
    target_balance: Decimal
    actor_balance: Decimal
    entries: list[Transaction] = field(default_factory=list)


def parse_amount(raw: Any, maximum: Decimal | None = None) -> Decimal:
    """Coerce ``raw`` to a positive two-decimal amount, raising :class:`InvalidAmountError`."""
    if raw is None or isinstance(raw, bool) or raw == "":
        raise InvalidAmountError("Invalid input. A positive amount is required.")
    try:
        amount = raw if isinstance(raw, Decimal) else Decimal(str(raw).strip())
    except (InvalidOperation, ValueError) as exc:
        raise InvalidAmountError("Amount must be numeric") from exc
    if not amount.is_finite() or amount <= 0:
        raise InvalidAmountError("Amount must be a positive number")
    if maximum is not None and amount > maximum:
        raise InvalidAmountError(f"Amount may not exceed {maximum}")
    try:
        cents = amount.quantize(CENT)
    except InvalidOperation as exc:
        raise InvalidAmountError("Amount is out of range") from exc
    if amount != cents:
        raise InvalidAmountError("Amount may have at most two decimal places")
    return cents


def _debits_own_pool(actor: Account) -> bool:
    """Resellers spend from their own balance; Super Admins issue credit."""
    if actor.role is Role.RESELLER:
        return True
    if actor.role is Role.SUPER_ADMIN:
        return False
    raise AssertionError(f"role {actor.role!r} cannot transfer credit")


class CreditTransferEngine:
    """Moves credit between accounts along the creator hierarchy.

    A Super Admin mints and burns credit; a Reseller funds its users out of its
    own balance and takes revoked credit back. Each transfer locks both
    accounts, rewrites the balances and appends one ledger entry in a single
    unit of work.
    """

    def __init__(
        self,
        accounts: AccountRepository,
        ledger: LedgerRepository,
        max_amount: Decimal = DEFAULT_MAX_AMOUNT,
    ) -> None:
        """
        Parameters
        ----------
        accounts:
            Read access to accounts for the up-front permission check.
        ledger:
            Opens the units of work transfers run in.
        max_amount:
            Largest amount a single assign or revoke may move.
        """
        self._accounts = accounts
        self._ledger = ledger
        self._max_amount = max_amount

    def assign(self, actor: Account, target_id: str, amount: Any, description: str | None = None) -> TransferResult:
        """Move ``amount`` credits onto ``target_id``."""
        value = self._prepare(actor, Operation.ASSIGN_CREDITS, target_id, amount)
        with self._ledger.unit_of_work() as unit:
            locked_actor, locked_target = self._lock_pair(unit, actor, target_id, Operation.ASSIGN_CREDITS)
            result = self._apply_assign(unit, locked_actor, locked_target, value, description)
        self._committed("assign", actor, target_id, value)
        return result

    def revoke(self, actor: Account, target_id: str, amount: Any, description: str | None = None) -> TransferResult:
        """Remove ``amount`` credits from ``target_id``."""
        value = self._prepare(actor, Operation.REVOKE_CREDITS, target_id, amount)
        with self._ledger.unit_of_work() as unit:
            locked_actor, locked_target = self._lock_pair(unit, actor, target_id, Operation.REVOKE_CREDITS)
            result = self._apply_revoke(unit, locked_actor, locked_target, value, description)
        self._committed("revoke", actor, target_id, value)
        return result

    def assign_within(
        self,
        unit: LedgerUnit,
        actor: Account,
        target: Account,
        amount: Any,
        description: str | None = None,
    ) -> TransferResult:
        """Assign inside a unit of work the caller already holds.

        Used when an account is inserted and funded in the same transaction, so
        ``target`` may not be visible outside ``unit`` yet.
        """
        value = parse_amount(amount, self._max_amount)
        ensure_allowed(role_permits(actor, Operation.ASSIGN_CREDITS), actor, Operation.ASSIGN_CREDITS, target.account_id)
        locked = unit.lock_accounts([actor.account_id, target.account_id])
        locked_actor = locked[actor.account_id]
        locked_target = locked.get(target.account_id, target)
        require(locked_actor, Operation.ASSIGN_CREDITS, locked_target)
        result = self._apply_assign(unit, locked_actor, locked_target, value, description)
        logger.info(
            "credits assigned in unit: actor=%s target=%s amount=%s",
            actor.account_id,
            target.account_id,
            value,
        )
        return result

    def _prepare(self, actor: Account, operation: Operation, target_id: str, amount: Any) -> Decimal:
        # Permission errors win over amount validation.
        ensure_allowed(role_permits(actor, operation), actor, operation, target_id)
        target = self._accounts.get_account(target_id)
        if target is None:
            raise TargetNotFoundError("User not found")
        require(actor, operation, target)
        return parse_amount(amount, self._max_amount)

    def _lock_pair(
        self, unit: LedgerUnit, actor: Account, target_id: str, operation: Operation
    ) -> tuple[Account, Account]:
        locked = unit.lock_accounts([actor.account_id, target_id])
        locked_actor = locked.get(actor.account_id)
        locked_target = locked.get(target_id)
        if locked_target is None:
            raise TargetNotFoundError("User not found")
        # Role and creator chain are re-checked against the locked rows.
        require(locked_actor, operation, locked_target)
        return locked_actor, locked_target

    def _apply_assign(
        self,
        unit: LedgerUnit,
        actor: Account,
        target: Account,
        amount: Decimal,
        description: str | None,
    ) -> TransferResult:
        entries: list[Transaction] = []
        actor_balance = actor.credit_balance
        if _debits_own_pool(actor):
            if actor.credit_balance < amount:
                raise InsufficientBalanceError("Insufficient credit balance")
            actor_balance = unit.adjust_balance(actor.account_id, -amount)
            entries.append(
                unit.append_transaction(
                    NewTransaction(
                        account_id=actor.account_id,
                        kind=TransactionKind.CREDIT_REVOKE,
                        amount=amount,
                        description=f"Credits assigned to {target.name} ({target.email})",
                        created_by_id=actor.account_id,
                    )
                )
            )
        target_balance = unit.adjust_balance(target.account_id, amount)
        if target.account_id == actor.account_id:
            actor_balance = target_balance
        transaction = unit.append_transaction(
            NewTransaction(
                account_id=target.account_id,
                kind=TransactionKind.CREDIT_ASSIGN,
                amount=amount,
                description=description or "Credit assignment",
                created_by_id=actor.account_id,
            )
        )
        entries.append(transaction)
        return TransferResult(transaction, target_balance, actor_balance, entries)

    def _apply_revoke(
        self,
        unit: LedgerUnit,
        actor: Account,
        target: Account,
        amount: Decimal,
        description: str | None,
    ) -> TransferResult:
        if target.credit_balance < amount:
            raise InsufficientBalanceError("User has insufficient credit balance")
        entries: list[Transaction] = []
        target_balance = unit.adjust_balance(target.account_id, -amount)
        transaction = unit.append_transaction(
            NewTransaction(
                account_id=target.account_id,
                kind=TransactionKind.CREDIT_REVOKE,
                amount=amount,
                description=description or "Credit revocation",
                created_by_id=actor.account_id,
            )
        )
        entries.append(transaction)
        actor_balance = target_balance if target.account_id == actor.account_id else actor.credit_balance
        if _debits_own_pool(actor):
            actor_balance = unit.adjust_balance(actor.account_id, amount)
            entries.append(
                unit.append_transaction(
                    NewTransaction(
                        account_id=actor.account_id,
                        kind=TransactionKind.CREDIT_ASSIGN,
                        amount=amount,
                        description=f"Credits reclaimed from {target.name} ({target.email})",
                        created_by_id=actor.account_id,
                    )
                )
            )
        return TransferResult(transaction, target_balance, actor_balance, entries)

    def _committed(self, operation: str, actor: Account, target_id: str, amount: Decimal) -> None:
        CREDIT_OPERATIONS.labels(operation=operation, actor_role=actor.role.value).inc()
        logger.info(
            "credit %s committed: actor=%s role=%s target=%s amount=%s",
            operation,
            actor.account_id,
            actor.role.value,
            target_id,
            amount,
        )
