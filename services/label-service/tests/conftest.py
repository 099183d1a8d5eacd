from __future__ import annotations

import itertools
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from shipping_schemas import Address, AddressValidation, LabelFormat, Parcel, PurchasedLabel, Rate, RefundResult

from label_service.api import routes
from label_service.api.deps import install_error_handlers
from label_service.domain.account import Account, Role
from label_service.domain.batches import BatchService
from label_service.domain.contracts import NewAccount, NewShipment, NewTransaction, Page, ShipmentQuery, TransactionQuery, clamp_page
from label_service.domain.errors import ConflictError, InsufficientBalanceError, NotFoundError
from label_service.domain.labels import LabelOrchestrator
from label_service.domain.ledger import LedgerService, Transaction
from label_service.domain.policy import ScopeKind, VisibilityScope
from label_service.domain.service import AccountService
from label_service.domain.shipment import Batch, BatchStatus, Shipment, ShipmentStatus
from label_service.domain.transfers import CreditTransferEngine
from label_service.providers.base import ShippingProviderError
from label_service.security.login_throttle import SlidingWindowLoginThrottle
from label_service.security.passwords import hash_password
from label_service.security.tokens import issue_session_token

PASSWORD = "correct-horse"
PASSWORD_HASH = hash_password(PASSWORD)

_EPOCH = datetime(2024, 1, 1, tzinfo=timezone.utc)


class InMemoryStore:
    """In-memory tables mimicking the Postgres schema and its constraints."""

    def __init__(self) -> None:
        self.accounts: dict[str, Account] = {}
        self.passwords: dict[str, str] = {}
        self.transactions: list[Transaction] = []
        self.shipments: dict[str, Shipment] = {}
        self.batches: dict[str, Batch] = {}
        self._clock = itertools.count(1)
        # Consumed one per ledger append: an exception fails that append, None lets it through.
        self.fail_appends: list[Exception | None] = []

    def now(self) -> datetime:
        return _EPOCH + timedelta(seconds=next(self._clock))

    def snapshot(self) -> tuple:
        return (
            dict(self.accounts),
            dict(self.passwords),
            list(self.transactions),
            dict(self.shipments),
            dict(self.batches),
        )

    def restore(self, state: tuple) -> None:
        self.accounts, self.passwords, self.transactions, self.shipments, self.batches = (
            dict(state[0]),
            dict(state[1]),
            list(state[2]),
            dict(state[3]),
            dict(state[4]),
        )

    def owner_visible(self, scope: VisibilityScope, account_id: str) -> bool:
        if scope.kind is ScopeKind.ALL:
            return True
        if scope.kind is ScopeKind.CREATED:
            owner = self.accounts.get(account_id)
            return account_id == scope.account_id or (owner is not None and owner.creator_id == scope.account_id)
        return account_id == scope.account_id

    def add_account(
        self,
        *,
        role: Role,
        balance: str = "0",
        creator: Account | None = None,
        name: str | None = None,
        email: str | None = None,
        legacy_admin: bool = False,
        is_active: bool = True,
    ) -> Account:
        account_id = str(uuid.uuid4())
        label = name or f"{role.value.lower()}-{account_id[:8]}"
        account = Account(
            account_id=account_id,
            name=label,
            email=email or f"{label}@example.com",
            role=role,
            credit_balance=Decimal(balance),
            creator_id=creator.account_id if creator else None,
            created_at=self.now(),
            is_active=is_active,
            legacy_admin=legacy_admin,
        )
        self.accounts[account_id] = account
        self.passwords[account_id] = PASSWORD_HASH
        return replace(account)

    def balance(self, account: Account | str) -> Decimal:
        account_id = account if isinstance(account, str) else account.account_id
        return self.accounts[account_id].credit_balance


class FakeLedgerUnit:
    def __init__(self, store: InMemoryStore) -> None:
        self._store = store

    def lock_accounts(self, account_ids):
        return {
            account_id: replace(self._store.accounts[account_id])
            for account_id in sorted(set(account_ids))
            if account_id in self._store.accounts
        }

    def adjust_balance(self, account_id: str, delta: Decimal) -> Decimal:
        account = self._store.accounts[account_id]
        if account.credit_balance + delta < 0:
            raise InsufficientBalanceError("Insufficient credit balance")
        self._store.accounts[account_id] = replace(account, credit_balance=account.credit_balance + delta)
        return account.credit_balance + delta

    def append_transaction(self, entry: NewTransaction) -> Transaction:
        if self._store.fail_appends:
            failure = self._store.fail_appends.pop(0)
            if failure is not None:
                raise failure
        if entry.reference_id is not None and any(
            row.kind is entry.kind and row.reference_id == entry.reference_id for row in self._store.transactions
        ):
            raise ConflictError(f"{entry.kind.value} already recorded for reference {entry.reference_id}")
        row = Transaction(
            transaction_id=str(uuid.uuid4()),
            account_id=entry.account_id,
            kind=entry.kind,
            amount=entry.amount,
            description=entry.description,
            reference_id=entry.reference_id,
            created_by_id=entry.created_by_id,
            created_at=self._store.now(),
        )
        self._store.transactions.append(row)
        return row

    def insert_account(self, payload: NewAccount) -> Account:
        if any(existing.email.lower() == payload.email.lower() for existing in self._store.accounts.values()):
            raise ConflictError("Email already in use")
        account = Account(
            account_id=payload.account_id,
            name=payload.name,
            email=payload.email,
            role=payload.role,
            credit_balance=Decimal("0"),
            creator_id=payload.creator_id,
            created_at=payload.created_at,
        )
        self._store.accounts[account.account_id] = account
        self._store.passwords[account.account_id] = payload.password_hash
        return replace(account)

    def lock_shipment(self, provider_transaction_id: str):
        for shipment in self._store.shipments.values():
            if shipment.provider_transaction_id == provider_transaction_id:
                return replace(shipment)
        return None

    def update_shipment(self, shipment_id: str, **fields: Any) -> Shipment:
        shipment = self._store.shipments.get(shipment_id)
        if shipment is None:
            raise NotFoundError("Shipment not found")
        updated = replace(shipment, updated_at=self._store.now(), **fields)
        self._store.shipments[shipment_id] = updated
        return replace(updated)


class FakeAccountRepository:
    def __init__(self, store: InMemoryStore) -> None:
        self._store = store

    def get_account(self, account_id: str):
        account = self._store.accounts.get(account_id)
        return replace(account) if account else None

    def get_credentials(self, email: str):
        for account in self._store.accounts.values():
            if account.email.lower() == email.lower():
                return replace(account), self._store.passwords[account.account_id]
        return None

    def get_password_hash(self, account_id: str):
        return self._store.passwords.get(account_id)

    def list_accounts(self, scope: VisibilityScope, *, search=None, page=1, limit=10) -> Page[Account]:
        page, limit = clamp_page(page, limit)
        rows = [
            account
            for account in self._store.accounts.values()
            if account.is_active and self._store.owner_visible(scope, account.account_id)
        ]
        if scope.kind is ScopeKind.CREATED:
            rows = [a for a in rows if a.account_id == scope.account_id or a.creator_id == scope.account_id]
        if search:
            term = search.lower()
            rows = [a for a in rows if term in a.name.lower() or term in a.email.lower()]
        rows.sort(key=lambda a: a.created_at, reverse=True)
        start = (page - 1) * limit
        return Page(items=[replace(a) for a in rows[start : start + limit]], page=page, limit=limit, total=len(rows))

    def update_password(self, account_id: str, password_hash: str) -> None:
        if account_id not in self._store.accounts:
            raise NotFoundError("User not found")
        self._store.passwords[account_id] = password_hash

    def update_preferences(self, account_id: str, *, email_notifications=None, marketing_emails=None) -> Account:
        account = self._store.accounts[account_id]
        updated = replace(
            account,
            email_notifications=account.email_notifications if email_notifications is None else email_notifications,
            marketing_emails=account.marketing_emails if marketing_emails is None else marketing_emails,
        )
        self._store.accounts[account_id] = updated
        return replace(updated)

    def update_profile(self, account_id: str, *, name: str, email: str) -> Account:
        if account_id not in self._store.accounts:
            raise NotFoundError("User not found")
        for other in self._store.accounts.values():
            if other.account_id != account_id and other.email.lower() == email.lower():
                raise ConflictError("Email already in use")
        updated = replace(self._store.accounts[account_id], name=name, email=email)
        self._store.accounts[account_id] = updated
        return replace(updated)


class FakeLedgerRepository:
    def __init__(self, store: InMemoryStore) -> None:
        self._store = store
        self.units_opened = 0

    @contextmanager
    def unit_of_work(self):
        self.units_opened += 1
        state = self._store.snapshot()
        try:
            yield FakeLedgerUnit(self._store)
        except Exception:
            self._store.restore(state)
            raise

    def list_transactions(self, scope: VisibilityScope, query: TransactionQuery) -> Page[Transaction]:
        page, limit = clamp_page(query.page, query.limit)
        rows = [row for row in self._store.transactions if self._store.owner_visible(scope, row.account_id)]
        if query.account_id:
            rows = [row for row in rows if row.account_id == query.account_id]
        if query.kind:
            rows = [row for row in rows if row.kind is query.kind]
        if query.created_after:
            rows = [row for row in rows if row.created_at >= query.created_after]
        if query.created_before:
            rows = [row for row in rows if row.created_at <= query.created_before]
        rows.sort(key=lambda row: row.created_at, reverse=True)
        start = (page - 1) * limit
        return Page(items=rows[start : start + limit], page=page, limit=limit, total=len(rows))


class FakeShipmentRepository:
    def __init__(self, store: InMemoryStore) -> None:
        self._store = store

    def create_shipment(self, payload: NewShipment) -> Shipment:
        now = self._store.now()
        shipment = Shipment(
            shipment_id=str(uuid.uuid4()),
            account_id=payload.account_id,
            status=payload.status,
            rate_id=payload.rate_id,
            cost=payload.cost,
            carrier=payload.carrier,
            service_level=payload.service_level,
            label_format=payload.label_format,
            created_at=now,
            updated_at=now,
            batch_id=payload.batch_id,
            from_address=payload.from_address,
            to_address=payload.to_address,
            parcel=payload.parcel,
        )
        self._store.shipments[shipment.shipment_id] = shipment
        return replace(shipment)

    def get_shipment(self, shipment_id: str):
        shipment = self._store.shipments.get(shipment_id)
        return replace(shipment) if shipment else None

    def get_shipment_by_provider_id(self, provider_transaction_id: str):
        return FakeLedgerUnit(self._store).lock_shipment(provider_transaction_id)

    def mark_shipment_error(self, shipment_id: str, message: str) -> Shipment:
        return FakeLedgerUnit(self._store).update_shipment(
            shipment_id, status=ShipmentStatus.ERROR, error_message=message
        )

    def list_shipments(self, scope: VisibilityScope, query: ShipmentQuery) -> Page[Shipment]:
        page, limit = clamp_page(query.page, query.limit)
        rows = [s for s in self._store.shipments.values() if self._store.owner_visible(scope, s.account_id)]
        if query.account_id:
            rows = [s for s in rows if s.account_id == query.account_id]
        if query.status:
            rows = [s for s in rows if s.status is query.status]
        if query.batch_id:
            rows = [s for s in rows if s.batch_id == query.batch_id]
        rows.sort(key=lambda s: s.created_at, reverse=True)
        start = (page - 1) * limit
        return Page(items=[replace(s) for s in rows[start : start + limit]], page=page, limit=limit, total=len(rows))

    def create_batch(self, account_id: str, filename, total_rows: int) -> Batch:
        batch = Batch(
            batch_id=str(uuid.uuid4()),
            account_id=account_id,
            filename=filename,
            total_rows=total_rows,
            status=BatchStatus.PROCESSING,
            created_at=self._store.now(),
        )
        self._store.batches[batch.batch_id] = batch
        return replace(batch)

    def get_batch(self, batch_id: str):
        batch = self._store.batches.get(batch_id)
        return replace(batch) if batch else None

    def list_batches(self, scope: VisibilityScope, limit: int = 100) -> list[Batch]:
        rows = [b for b in self._store.batches.values() if self._store.owner_visible(scope, b.account_id)]
        rows.sort(key=lambda b: b.created_at, reverse=True)
        return [replace(b) for b in rows[:limit]]

    def record_batch_row(self, batch_id: str, *, success: bool) -> Batch:
        batch = self._store.batches[batch_id]
        updated = replace(
            batch,
            processed_rows=batch.processed_rows + 1,
            successful_rows=batch.successful_rows + (1 if success else 0),
            failed_rows=batch.failed_rows + (0 if success else 1),
        )
        self._store.batches[batch_id] = updated
        return replace(updated)

    def finish_batch(self, batch_id: str, status: BatchStatus, error_log) -> Batch:
        batch = self._store.batches[batch_id]
        if batch.status is BatchStatus.PROCESSING:
            batch = replace(batch, status=status, error_log=error_log, completed_at=self._store.now())
            self._store.batches[batch_id] = batch
        return replace(batch)

    def cancel_batch(self, batch_id: str):
        batch = self._store.batches[batch_id]
        if batch.status is not BatchStatus.PROCESSING:
            return None
        batch = replace(batch, status=BatchStatus.CANCELLED, completed_at=self._store.now())
        self._store.batches[batch_id] = batch
        return replace(batch)


@dataclass
class FakeShippingProvider:
    """Scriptable provider: rates are fixed, failures are injected per call type."""

    rates: dict[str, Rate] = field(
        default_factory=lambda: {
            "rate_usps_priority": Rate(
                rate_id="rate_usps_priority", carrier="USPS", service_level="Priority Mail", amount=Decimal("12.34")
            ),
            "rate_ups_ground": Rate(
                rate_id="rate_ups_ground", carrier="UPS", service_level="Ground", amount=Decimal("25.00")
            ),
        }
    )
    rate_errors: list[Exception] = field(default_factory=list)
    purchase_errors: list[Exception] = field(default_factory=list)
    refund_errors: list[Exception] = field(default_factory=list)
    purchases: list[str] = field(default_factory=list)
    refunds: list[str] = field(default_factory=list)
    next_transaction_id: str | None = None
    _counter: itertools.count = field(default_factory=lambda: itertools.count(1))

    def get_rates(self, from_address: Address, to_address: Address, parcel: Parcel) -> list[Rate]:
        if self.rate_errors:
            raise self.rate_errors.pop(0)
        return list(self.rates.values())

    def get_rate(self, rate_id: str) -> Rate:
        try:
            return self.rates[rate_id]
        except KeyError:
            raise ShippingProviderError("Shipping rate has expired. Please recalculate.", code="RATE_EXPIRED") from None

    def purchase(self, rate_id: str, label_format: LabelFormat) -> PurchasedLabel:
        if self.purchase_errors:
            raise self.purchase_errors.pop(0)
        transaction_id = self.next_transaction_id or f"txn_{next(self._counter)}"
        self.purchases.append(transaction_id)
        return PurchasedLabel(
            transaction_id=transaction_id,
            rate_id=rate_id,
            tracking_number=f"TRACK-{transaction_id}",
            label_url=f"https://labels.example.com/{transaction_id}.pdf",
        )

    def refund(self, transaction_id: str) -> RefundResult:
        if self.refund_errors:
            raise self.refund_errors.pop(0)
        if transaction_id in self.refunds:
            raise ShippingProviderError("This label has already been refunded.", code="ALREADY_REFUNDED")
        self.refunds.append(transaction_id)
        return RefundResult(refund_id=f"refund_{transaction_id}", transaction_id=transaction_id, status="QUEUED")

    def validate_address(self, address: Address) -> AddressValidation:
        if address.zip == "00000":
            return AddressValidation(is_valid=False, messages=["Address not found"])
        return AddressValidation(is_valid=True)


@dataclass
class Services:
    store: InMemoryStore
    provider: FakeShippingProvider
    ledger: FakeLedgerRepository
    engine: CreditTransferEngine
    accounts: AccountService
    ledger_service: LedgerService
    labels: LabelOrchestrator
    batches: BatchService


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def provider() -> FakeShippingProvider:
    return FakeShippingProvider()


@pytest.fixture
def services(store: InMemoryStore, provider: FakeShippingProvider) -> Services:
    account_repo = FakeAccountRepository(store)
    ledger_repo = FakeLedgerRepository(store)
    shipment_repo = FakeShipmentRepository(store)
    engine = CreditTransferEngine(account_repo, ledger_repo)
    orchestrator = LabelOrchestrator(account_repo, ledger_repo, shipment_repo, provider)
    return Services(
        store=store,
        provider=provider,
        ledger=ledger_repo,
        engine=engine,
        accounts=AccountService(
            account_repo,
            ledger_repo,
            engine,
            SlidingWindowLoginThrottle(max_failures=3, window_seconds=60),
        ),
        ledger_service=LedgerService(account_repo, ledger_repo),
        labels=orchestrator,
        batches=BatchService(account_repo, shipment_repo, orchestrator, max_rows=5),
    )


@pytest.fixture
def api_client(services: Services):
    """Provide a FastAPI test client with isolated state."""
    app = FastAPI()
    app.include_router(routes.router)
    install_error_handlers(app)
    app.state.account_service = services.accounts
    app.state.transfer_engine = services.engine
    app.state.ledger_service = services.ledger_service
    app.state.label_orchestrator = services.labels
    app.state.batch_service = services.batches

    with TestClient(app) as client:
        yield client


def auth_headers(account: Account) -> dict[str, str]:
    token, _ = issue_session_token(account.account_id)
    return {"Authorization": f"Bearer {token}"}


def sample_address(**overrides: Any) -> Address:
    data = {
        "name": "Jane Doe",
        "street1": "215 Clayton St.",
        "city": "San Francisco",
        "state": "CA",
        "zip": "94117",
        "country": "US",
    }
    data.update(overrides)
    return Address(**data)


def sample_parcel() -> Parcel:
    return Parcel(length=10, width=8, height=4, distance_unit="in", weight=2, mass_unit="lb")
