"""Domain-level request contracts shared by multiple layers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Generic, TypeVar

from .account import Role
from .ledger import TransactionKind
from .shipment import ShipmentStatus

T = TypeVar("T")


@dataclass(slots=True)
class CreateAccountInput:
    """Validated inputs required to create an account under an actor."""

    name: str
    email: str
    password: str
    role: Role
    initial_credit: Any = None


@dataclass(slots=True)
class NewAccount:
    account_id: str
    name: str
    email: str
    password_hash: str
    role: Role
    creator_id: str | None
    created_at: datetime


@dataclass(slots=True)
class NewTransaction:
    account_id: str
    kind: TransactionKind
    amount: Decimal
    description: str
    created_by_id: str
    reference_id: str | None = None


@dataclass(slots=True)
class NewShipment:
    account_id: str
    rate_id: str
    cost: Decimal
    carrier: str | None
    service_level: str | None
    label_format: str
    from_address: dict[str, Any] | None = None
    to_address: dict[str, Any] | None = None
    parcel: dict[str, Any] | None = None
    batch_id: str | None = None
    status: ShipmentStatus = ShipmentStatus.PENDING


@dataclass(slots=True)
class TransactionQuery:
    account_id: str | None = None
    kind: TransactionKind | None = None
    created_after: datetime | None = None
    created_before: datetime | None = None
    page: int = 1
    limit: int = 10


@dataclass(slots=True)
class ShipmentQuery:
    account_id: str | None = None
    status: ShipmentStatus | None = None
    batch_id: str | None = None
    page: int = 1
    limit: int = 10


@dataclass(slots=True)
class Page(Generic[T]):
    items: list[T] = field(default_factory=list)
    page: int = 1
    limit: int = 10
    total: int = 0

    @property
    def total_pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit if self.limit else 0


def clamp_page(page: int, limit: int) -> tuple[int, int]:
    """Normalise pagination input to ``page >= 1`` and ``1 <= limit <= 100``."""
    return max(1, page), max(1, min(limit, 100))
