"""Rate and label contracts returned by shipping providers."""

from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class LabelFormat(str, Enum):
    pdf = "PDF"
    png = "PNG"
    zpl = "ZPL"


class Rate(BaseModel):
    rate_id: str
    carrier: str
    service_level: str
    amount: Decimal
    currency: str = "USD"
    estimated_days: int | None = None


class PurchasedLabel(BaseModel):
    """A label materialised from a quoted rate."""

    transaction_id: str
    rate_id: str
    tracking_number: str | None = None
    label_url: str | None = None
    status: str = "SUCCESS"
    from_address: dict[str, Any] | None = None
    to_address: dict[str, Any] | None = None
    parcel: dict[str, Any] | None = None


class RefundResult(BaseModel):
    refund_id: str
    transaction_id: str
    status: str = Field(..., description="QUEUED, PENDING, SUCCESS or ERROR as reported by the provider")
