"""Label purchase and refund orchestration.

The provider call always happens outside any open database transaction. A
balance change is applied only after the provider has confirmed the purchase
or refund, and the ledger's unique ``(kind, reference_id)`` index keeps one
provider transaction from being debited or credited twice.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from tenacity import Retrying, retry_if_not_exception_type, stop_after_attempt, wait_fixed

from shipping_schemas import Address, AddressValidation, LabelFormat, Parcel, PurchasedLabel, Rate

from ..metrics import LABEL_OPERATIONS, RECONCILIATION_ALERTS
from ..providers.base import ShippingProvider, ShippingProviderError, ShippingProviderTimeout
from .account import Account
from .contracts import NewShipment, NewTransaction, Page, ShipmentQuery
from .errors import (
    ConflictError,
    InsufficientBalanceError,
    InternalError,
    NotFoundError,
    ProviderError,
    ServiceError,
    ValidationError,
)
from .ledger import Transaction, TransactionKind
from .policy import Operation, require, visibility_scope
from .shipment import Shipment, ShipmentStatus
from .transfers import CENT

if TYPE_CHECKING:
    from ..repository import AccountRepository, LedgerRepository, LedgerUnit, ShipmentRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class LabelResult:
    shipment: Shipment
    transaction: Transaction
    credit_balance: Decimal


def _parse_format(label_format: str | LabelFormat | None) -> LabelFormat:
    if label_format is None:
        return LabelFormat.pdf
    try:
        return LabelFormat(str(getattr(label_format, "value", label_format)).upper())
    except ValueError as exc:
        raise ValidationError("Invalid label format") from exc


class LabelOrchestrator:
    """Turns credit into purchased labels and refunds them back into credit."""

    def __init__(
        self,
        accounts: AccountRepository,
        ledger: LedgerRepository,
        shipments: ShipmentRepository,
        provider: ShippingProvider,
        ledger_attempts: int = 2,
    ) -> None:
        """Store collaborators; ``ledger_attempts`` caps tries of each ledger write that follows a provider call."""
        self._accounts = accounts
        self._ledger = ledger
        self._shipments = shipments
        self._provider = provider
        self._ledger_attempts = ledger_attempts

    def get_rates(self, actor: Account, from_address: Address, to_address: Address, parcel: Parcel) -> list[Rate]:
        """Quote rates for a parcel; quoting spends no credit."""
        require(actor, Operation.PURCHASE_LABEL, actor)
        try:
            rates = self._provider.get_rates(from_address, to_address, parcel)
        except ShippingProviderError as exc:
            raise ProviderError(exc.message) from exc
        if not rates:
            raise ProviderError("No shipping options available for this route.")
        return sorted(rates, key=lambda rate: rate.amount)

    def validate_address(self, actor: Account, address: Address) -> AddressValidation:
        require(actor, Operation.PURCHASE_LABEL, actor)
        try:
            return self._provider.validate_address(address)
        except ShippingProviderError as exc:
            raise ProviderError(exc.message) from exc

    def purchase(
        self,
        actor: Account,
        rate_id: str,
        label_format: str | LabelFormat | None = None,
        *,
        batch_id: str | None = None,
        from_address: dict[str, Any] | None = None,
        to_address: dict[str, Any] | None = None,
        parcel: dict[str, Any] | None = None,
    ) -> LabelResult:
        """Buy the label for a quoted rate and debit its cost from ``actor``."""
        require(actor, Operation.PURCHASE_LABEL, actor)
        if not rate_id:
            raise ValidationError("Rate ID is required")
        fmt = _parse_format(label_format)

        try:
            rate = self._provider.get_rate(rate_id)
        except ShippingProviderError as exc:
            LABEL_OPERATIONS.labels(operation="purchase", outcome="provider_error").inc()
            raise ProviderError(exc.message) from exc
        cost = rate.amount.quantize(CENT)
        if cost <= 0:
            raise ProviderError("Shipping provider returned an invalid rate amount")

        current = self._accounts.get_account(actor.account_id)
        if current is None or current.credit_balance < cost:
            raise InsufficientBalanceError("Insufficient credits. Please add more credits to your account.")

        pending = self._shipments.create_shipment(
            NewShipment(
                account_id=actor.account_id,
                rate_id=rate_id,
                cost=cost,
                carrier=rate.carrier,
                service_level=rate.service_level,
                label_format=fmt.value,
                from_address=from_address,
                to_address=to_address,
                parcel=parcel,
                batch_id=batch_id,
            )
        )

        try:
            label = self._provider.purchase(rate_id, fmt)
        except ShippingProviderTimeout as exc:
            LABEL_OPERATIONS.labels(operation="purchase", outcome="ambiguous").inc()
            logger.warning(
                "label purchase outcome unknown, shipment %s left PENDING for reconciliation: rate=%s",
                pending.shipment_id,
                rate_id,
            )
            raise ProviderError(
                "The shipping provider did not confirm the purchase; it will be reconciled before any charge",
                shipment_id=pending.shipment_id,
            ) from exc
        except ShippingProviderError as exc:
            LABEL_OPERATIONS.labels(operation="purchase", outcome="provider_error").inc()
            self._shipments.mark_shipment_error(pending.shipment_id, exc.message)
            raise ProviderError(exc.message) from exc

        try:
            result = self._run_ledger(
                lambda unit: self._record_purchase(unit, actor, pending, label, rate, cost)
            )
        except ConflictError:
            logger.warning(
                "provider transaction %s already recorded; shipment %s not charged",
                label.transaction_id,
                pending.shipment_id,
            )
            self._shipments.mark_shipment_error(pending.shipment_id, "duplicate provider transaction")
            LABEL_OPERATIONS.labels(operation="purchase", outcome="conflict").inc()
            raise
        except Exception as exc:
            self._compensate_purchase(pending, label, exc)
            raise InternalError(
                "The label could not be recorded against your balance and is being reversed",
                shipment_id=pending.shipment_id,
            ) from exc

        LABEL_OPERATIONS.labels(operation="purchase", outcome="success").inc()
        logger.info(
            "label purchased: account=%s shipment=%s provider_txn=%s cost=%s",
            actor.account_id,
            result.shipment.shipment_id,
            label.transaction_id,
            cost,
        )
        return result

    def _record_purchase(
        self,
        unit: LedgerUnit,
        actor: Account,
        pending: Shipment,
        label: PurchasedLabel,
        rate: Rate,
        cost: Decimal,
    ) -> LabelResult:
        unit.lock_accounts([actor.account_id])
        balance = unit.adjust_balance(actor.account_id, -cost)
        transaction = unit.append_transaction(
            NewTransaction(
                account_id=actor.account_id,
                kind=TransactionKind.LABEL_PURCHASE,
                amount=cost,
                description=f"{rate.carrier} - {rate.service_level}",
                created_by_id=actor.account_id,
                reference_id=label.transaction_id,
            )
        )
        shipment = unit.update_shipment(
            pending.shipment_id,
            status=ShipmentStatus.PURCHASED,
            provider_transaction_id=label.transaction_id,
            provider_object_id=label.transaction_id,
            tracking_number=label.tracking_number,
            label_url=label.label_url,
            from_address=pending.from_address or label.from_address,
            to_address=pending.to_address or label.to_address,
            parcel=pending.parcel or label.parcel,
        )
        return LabelResult(shipment=shipment, transaction=transaction, credit_balance=balance)

    def _compensate_purchase(self, pending: Shipment, label: PurchasedLabel, cause: Exception) -> None:
        """Undo a provider purchase whose debit could not be written."""
        RECONCILIATION_ALERTS.labels(operation="purchase").inc()
        LABEL_OPERATIONS.labels(operation="purchase", outcome="unrecorded").inc()
        logger.critical(
            "label %s purchased at provider but ledger write failed for shipment %s: %s",
            label.transaction_id,
            pending.shipment_id,
            cause,
        )
        note = f"ledger write failed: {cause}"
        try:
            self._provider.refund(label.transaction_id)
            note += "; provider refund requested"
            logger.critical("compensating refund requested for label %s", label.transaction_id)
        except ShippingProviderError as refund_exc:
            note += f"; compensating refund failed: {refund_exc.message}"
            logger.critical(
                "MANUAL RECONCILIATION REQUIRED: label %s purchased without debit, refund failed: %s",
                label.transaction_id,
                refund_exc.message,
            )
        try:
            self._shipments.mark_shipment_error(pending.shipment_id, note)
        except Exception:
            logger.critical("could not flag shipment %s for reconciliation", pending.shipment_id, exc_info=True)

    def refund(self, actor: Account, provider_transaction_id: str) -> LabelResult:
        """Refund a purchased label and credit its cost back to the owner."""
        if not provider_transaction_id:
            raise ValidationError("Transaction ID is required")
        shipment = self._shipments.get_shipment_by_provider_id(provider_transaction_id)
        if shipment is None:
            raise NotFoundError("Shipment not found")
        owner = self._accounts.get_account(shipment.account_id)
        if owner is None:
            raise NotFoundError("Shipment owner not found")
        require(actor, Operation.REFUND_LABEL, owner)
        self._ensure_refundable(shipment)

        try:
            refund = self._provider.refund(provider_transaction_id)
        except ShippingProviderTimeout as exc:
            LABEL_OPERATIONS.labels(operation="refund", outcome="ambiguous").inc()
            logger.warning("refund outcome unknown for %s; no credit applied", provider_transaction_id)
            raise ProviderError("The shipping provider did not confirm the refund; please retry later") from exc
        except ShippingProviderError as exc:
            LABEL_OPERATIONS.labels(operation="refund", outcome="provider_error").inc()
            if exc.code == "ALREADY_REFUNDED":
                raise ConflictError(exc.message) from exc
            raise ProviderError(exc.message) from exc

        try:
            result = self._run_ledger(
                lambda unit: self._record_refund(unit, actor, owner, provider_transaction_id, refund.refund_id)
            )
        except ConflictError:
            LABEL_OPERATIONS.labels(operation="refund", outcome="conflict").inc()
            raise
        except Exception as exc:
            RECONCILIATION_ALERTS.labels(operation="refund").inc()
            logger.critical(
                "MANUAL RECONCILIATION REQUIRED: label %s refunded at provider (refund %s) "
                "but credit to account %s failed: %s",
                provider_transaction_id,
                refund.refund_id,
                owner.account_id,
                exc,
            )
            raise InternalError("The refund was accepted but could not be credited; support has been alerted") from exc

        LABEL_OPERATIONS.labels(operation="refund", outcome="success").inc()
        logger.info(
            "label refunded: owner=%s actor=%s provider_txn=%s amount=%s",
            owner.account_id,
            actor.account_id,
            provider_transaction_id,
            result.transaction.amount,
        )
        return result

    def _ensure_refundable(self, shipment: Shipment) -> None:
        if shipment.status is ShipmentStatus.REFUNDED:
            raise ConflictError("This label has already been refunded.")
        if shipment.status is not ShipmentStatus.PURCHASED:
            raise ConflictError(f"Label in status {shipment.status.value} cannot be refunded")

    def _record_refund(
        self,
        unit: LedgerUnit,
        actor: Account,
        owner: Account,
        provider_transaction_id: str,
        refund_id: str,
    ) -> LabelResult:
        shipment = unit.lock_shipment(provider_transaction_id)
        if shipment is None:
            raise NotFoundError("Shipment not found")
        self._ensure_refundable(shipment)
        amount = (shipment.cost or Decimal("0")).quantize(CENT)
        unit.lock_accounts([owner.account_id])
        balance = unit.adjust_balance(owner.account_id, amount)
        transaction = unit.append_transaction(
            NewTransaction(
                account_id=owner.account_id,
                kind=TransactionKind.LABEL_REFUND,
                amount=amount,
                description=f"Label refund ({refund_id})",
                created_by_id=actor.account_id,
                reference_id=provider_transaction_id,
            )
        )
        updated = unit.update_shipment(shipment.shipment_id, status=ShipmentStatus.REFUNDED)
        return LabelResult(shipment=updated, transaction=transaction, credit_balance=balance)

    def _run_ledger(self, work):
        """Run ``work`` in a unit of work, retrying transient storage failures."""
        for attempt in Retrying(
            stop=stop_after_attempt(self._ledger_attempts),
            wait=wait_fixed(0.2),
            retry=retry_if_not_exception_type(ServiceError),
            reraise=True,
        ):
            with attempt:
                with self._ledger.unit_of_work() as unit:
                    return work(unit)

    def list_shipments(
        self,
        actor: Account,
        *,
        owner_id: str | None = None,
        status: ShipmentStatus | None = None,
        batch_id: str | None = None,
        page: int = 1,
        limit: int = 10,
    ) -> Page[Shipment]:
        if owner_id and owner_id != actor.account_id:
            owner = self._accounts.get_account(owner_id)
            if owner is None:
                raise NotFoundError("User not found")
            require(actor, Operation.VIEW_SHIPMENTS, owner)
        query = ShipmentQuery(account_id=owner_id, status=status, batch_id=batch_id, page=page, limit=limit)
        return self._shipments.list_shipments(visibility_scope(actor), query)

    def get_shipment(self, actor: Account, shipment_id: str) -> Shipment:
        """Return a shipment whose owner ``actor`` may view."""
        shipment = self._shipments.get_shipment(shipment_id)
        if shipment is None:
            raise NotFoundError("Shipment not found")
        if shipment.account_id != actor.account_id:
            owner = self._accounts.get_account(shipment.account_id)
            if owner is None:
                raise NotFoundError("Shipment not found")
            require(actor, Operation.VIEW_SHIPMENTS, owner)
        return shipment
