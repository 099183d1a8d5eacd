"""Bulk label purchases from pre-parsed rows."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from shipping_schemas import Address, LabelFormat, Parcel, Rate

from .account import Account
from .errors import ConflictError, NotFoundError, ProviderError, ServiceError, ValidationError
from .labels import LabelOrchestrator
from .policy import Operation, require, visibility_scope
from .shipment import Batch, BatchStatus

if TYPE_CHECKING:
    from ..repository import AccountRepository, ShipmentRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class BatchRow:
    from_address: Address
    to_address: Address
    parcel: Parcel
    carrier: str | None = None
    service_level: str | None = None


def select_rate(rates: list[Rate], carrier: str | None, service_level: str | None) -> Rate:
    """Pick the rate matching the requested carrier and service level, else the cheapest."""
    if not rates:
        raise ProviderError("No shipping options available for this route.")
    if carrier or service_level:
        for rate in rates:
            if carrier and rate.carrier.lower() != carrier.lower():
                continue
            if service_level and service_level.lower() not in (rate.service_level or "").lower():
                continue
            return rate
    return min(rates, key=lambda rate: rate.amount)


class BatchService:
    """Bulk label purchases, one `LabelOrchestrator.purchase` per row."""

    def __init__(
        self,
        accounts: AccountRepository,
        shipments: ShipmentRepository,
        orchestrator: LabelOrchestrator,
        max_rows: int = 1000,
    ) -> None:
        self._accounts = accounts
        self._shipments = shipments
        self._orchestrator = orchestrator
        self._max_rows = max_rows

    def start(self, actor: Account, filename: str | None, rows: list[BatchRow]) -> Batch:
        """Validate the upload and open a PROCESSING batch for it."""
        require(actor, Operation.PURCHASE_LABEL, actor)
        if not rows:
            raise ValidationError("Batch contains no rows")
        if len(rows) > self._max_rows:
            raise ValidationError(f"Batch may contain at most {self._max_rows} rows")
        batch = self._shipments.create_batch(actor.account_id, filename, len(rows))
        logger.info("batch %s opened by %s with %s rows", batch.batch_id, actor.account_id, len(rows))
        return batch

    def process(
        self,
        actor: Account,
        batch_id: str,
        rows: list[BatchRow],
        label_format: str | LabelFormat | None = None,
    ) -> Batch:
        """Purchase one label per row, stopping early if the batch is cancelled.

        A failure outside the service error taxonomy (storage or driver errors)
        aborts the run; the batch is closed as FAILED before the error is
        re-raised so it never stays PROCESSING.
        """
        errors: list[str] = []
        successful = 0
        index = 0
        try:
            for index, row in enumerate(rows, start=1):
                current = self._shipments.get_batch(batch_id)
                if current is None:
                    raise NotFoundError("Batch not found")
                if current.status is BatchStatus.CANCELLED:
                    logger.info("batch %s cancelled before row %s", batch_id, index)
                    return current
                try:
                    self._purchase_row(actor, batch_id, row, label_format)
                except ServiceError as exc:
                    errors.append(f"Error in row {index}: {exc.message}")
                    self._shipments.record_batch_row(batch_id, success=False)
                    continue
                successful += 1
                self._shipments.record_batch_row(batch_id, success=True)
        except NotFoundError:
            raise
        except Exception as exc:
            logger.exception("batch %s aborted at row %s", batch_id, index)
            errors.append(f"Error in row {index}: processing aborted ({exc})")
            try:
                self._shipments.finish_batch(batch_id, BatchStatus.FAILED, "\n".join(errors))
            except Exception:
                logger.exception("could not close batch %s after abort", batch_id)
            raise

        status = BatchStatus.COMPLETED if successful or not errors else BatchStatus.FAILED
        batch = self._shipments.finish_batch(batch_id, status, "\n".join(errors) or None)
        logger.info(
            "batch %s finished: status=%s successful=%s failed=%s",
            batch_id,
            batch.status.value,
            successful,
            len(errors),
        )
        return batch

    def _purchase_row(
        self,
        actor: Account,
        batch_id: str,
        row: BatchRow,
        label_format: str | LabelFormat | None,
    ) -> None:
        rates = self._orchestrator.get_rates(actor, row.from_address, row.to_address, row.parcel)
        rate = select_rate(rates, row.carrier, row.service_level)
        self._orchestrator.purchase(
            actor,
            rate.rate_id,
            label_format,
            batch_id=batch_id,
            from_address=row.from_address.model_dump(),
            to_address=row.to_address.model_dump(),
            parcel=row.parcel.model_dump(),
        )

    def submit(
        self,
        actor: Account,
        filename: str | None,
        rows: list[BatchRow],
        label_format: str | LabelFormat | None = None,
    ) -> Batch:
        """Open a batch and process it synchronously."""
        batch = self.start(actor, filename, rows)
        return self.process(actor, batch.batch_id, rows, label_format)

    def get_batch(self, actor: Account, batch_id: str) -> Batch:
        """Return a batch whose owner ``actor`` may view."""
        batch = self._load(batch_id)
        self._require_on_owner(actor, Operation.VIEW_SHIPMENTS, batch)
        return batch

    def list_batches(self, actor: Account, limit: int = 100) -> list[Batch]:
        """List the most recent batches inside the caller's visibility scope."""
        return self._shipments.list_batches(visibility_scope(actor), limit=max(1, min(limit, 100)))

    def cancel(self, actor: Account, batch_id: str) -> Batch:
        """Cancel a PROCESSING batch.

        Rows already purchased keep their labels and charges; the running
        ``process`` call notices the new status before its next row.
        """
        batch = self._load(batch_id)
        self._require_on_owner(actor, Operation.CANCEL_BATCH, batch)
        cancelled = self._shipments.cancel_batch(batch_id)
        if cancelled is None:
            raise ConflictError(f"Batch in status {batch.status.value} cannot be cancelled")
        logger.info("batch %s cancelled by %s", batch_id, actor.account_id)
        return cancelled

    def _load(self, batch_id: str) -> Batch:
        batch = self._shipments.get_batch(batch_id)
        if batch is None:
            raise NotFoundError("Batch not found")
        return batch

    def _require_on_owner(self, actor: Account, operation: Operation, batch: Batch) -> None:
        owner = self._accounts.get_account(batch.account_id)
        if owner is None:
            raise NotFoundError("Batch not found")
        require(actor, operation, owner)
