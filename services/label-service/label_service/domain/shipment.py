from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any


class ShipmentStatus(str, Enum):
    PENDING = "PENDING"
    PURCHASED = "PURCHASED"
    REFUNDED = "REFUNDED"
    ERROR = "ERROR"


class BatchStatus(str, Enum):
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


@dataclass(slots=True)
class Shipment:
    """A label owned by an account, from rate selection through refund."""

    shipment_id: str
    account_id: str
    status: ShipmentStatus
    rate_id: str | None
    cost: Decimal | None
    carrier: str | None
    service_level: str | None
    label_format: str | None
    created_at: datetime
    updated_at: datetime
    batch_id: str | None = None
    provider_transaction_id: str | None = None
    provider_object_id: str | None = None
    tracking_number: str | None = None
    label_url: str | None = None
    from_address: dict[str, Any] | None = None
    to_address: dict[str, Any] | None = None
    parcel: dict[str, Any] | None = None
    error_message: str | None = None


@dataclass(slots=True)
class Batch:
    batch_id: str
    account_id: str
    filename: str | None
    total_rows: int
    status: BatchStatus
    created_at: datetime
    processed_rows: int = 0
    successful_rows: int = 0
    failed_rows: int = 0
    error_log: str | None = None
    completed_at: datetime | None = None
