"""Contract between the label orchestrator and an external shipping provider."""

from __future__ import annotations

from typing import Protocol

from shipping_schemas import Address, AddressValidation, LabelFormat, Parcel, PurchasedLabel, Rate, RefundResult


class ShippingProviderError(Exception):
    """The provider answered and refused or failed the request."""

    def __init__(self, message: str, *, code: str | None = None, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code


class ShippingProviderTimeout(ShippingProviderError):
    """The outcome is unknown: the request may or may not have been applied."""


class ShippingProvider(Protocol):
    def get_rates(self, from_address: Address, to_address: Address, parcel: Parcel) -> list[Rate]: ...

    def get_rate(self, rate_id: str) -> Rate: ...

    def purchase(self, rate_id: str, label_format: LabelFormat) -> PurchasedLabel: ...

    def refund(self, transaction_id: str) -> RefundResult: ...

    def validate_address(self, address: Address) -> AddressValidation: ...
