"""
Shippo REST client used to quote rates, buy labels and request refunds.

Read-style calls (rate quotes, address validation) are retried on transport
errors. Purchases and refunds move money at the provider and are sent exactly
once: an answer that does not settle the outcome is reported as ambiguous
rather than retried.
"""

from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation
from typing import Any

import requests
from pydantic import BaseModel, Field, ValidationError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from shipping_schemas import Address, AddressValidation, LabelFormat, Parcel, PurchasedLabel, Rate, RefundResult

from .base import ShippingProviderError, ShippingProviderTimeout

logger = logging.getLogger(__name__)

# Provider error codes mapped to messages safe to show to end users.
ERROR_MESSAGES: dict[str, str] = {
    "INVALID_ADDRESS": "Please verify the address and try again.",
    "UNDELIVERABLE_ADDRESS": "This address cannot receive shipments.",
    "MISSING_STREET": "Street address is required.",
    "NO_RATES_AVAILABLE": "No shipping options available for this route.",
    "WEIGHT_EXCEEDS_LIMIT": "Package weight exceeds carrier limits.",
    "DIMENSIONS_INVALID": "Package dimensions are invalid.",
    "INSUFFICIENT_FUNDS": "Insufficient credits for this purchase.",
    "RATE_EXPIRED": "Shipping rate has expired. Please recalculate.",
    "TRANSACTION_FAILED": "Label purchase failed. Please try again.",
    "REFUND_NOT_ELIGIBLE": "This label is not eligible for refund.",
    "REFUND_EXPIRED": "Refund period has expired.",
    "ALREADY_REFUNDED": "This label has already been refunded.",
}
DEFAULT_ERROR_MESSAGE = "An error occurred with the shipping provider."

_TRANSPORT_ERRORS = (requests.exceptions.ConnectionError, requests.exceptions.Timeout)


class ShippoConfig(BaseModel):
    """Shippo API configuration."""

    api_key: str = Field(..., description="Shippo API token")
    base_url: str = Field(default="https://api.goshippo.com/v1")
    timeout: float = Field(default=30, gt=0)

    @classmethod
    def from_settings(cls, settings) -> "ShippoConfig":
        return cls(
            api_key=settings.shippo_api_key,
            base_url=settings.shippo_api_url,
            timeout=settings.shippo_timeout_seconds,
        )


class ShippoClient:
    """Shipping provider backed by the Shippo API."""

    def __init__(self, config: ShippoConfig, session: requests.Session | None = None) -> None:
        self.config = config
        self.session = session or requests.Session()
        self.session.headers.update(
            {
                "Authorization": f"ShippoToken {config.api_key}",
                "Content-Type": "application/json",
            }
        )

    def close(self) -> None:
        """Release the pooled HTTP connections."""
        self.session.close()

    def _send(
        self,
        method: str,
        endpoint: str,
        payload: dict[str, Any] | None = None,
        *,
        ambiguous: bool = False,
    ) -> dict[str, Any]:
        """Send one request and decode its JSON body.

        With ``ambiguous`` set, server errors and unreadable bodies raise
        :class:`ShippingProviderTimeout`: the provider may have applied the
        request before failing to answer.
        """
        url = f"{self.config.base_url.rstrip('/')}{endpoint}"
        logger.debug("shippo request: %s %s", method, url)
        response = self.session.request(method, url, json=payload, timeout=self.config.timeout)
        unknown_outcome = ShippingProviderTimeout if ambiguous else ShippingProviderError
        try:
            body = response.json()
        except ValueError as exc:
            raise unknown_outcome(
                "Shipping provider returned an unreadable response", status_code=response.status_code
            ) from exc

        if response.status_code >= 500 and ambiguous:
            logger.error("shippo error %s on %s, outcome unknown: %s", response.status_code, endpoint, body)
            raise ShippingProviderTimeout(
                "Shipping provider did not confirm the request", status_code=response.status_code
            )
        if response.status_code >= 400:
            detail = body.get("detail") if isinstance(body, dict) else None
            code = detail if detail in ERROR_MESSAGES else None
            logger.error("shippo error %s on %s: %s", response.status_code, endpoint, body)
            raise ShippingProviderError(
                ERROR_MESSAGES.get(code or "", DEFAULT_ERROR_MESSAGE),
                code=code,
                status_code=response.status_code,
            )
        if not isinstance(body, dict):
            raise unknown_outcome("Shipping provider returned an unexpected payload")
        return body

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        retry=retry_if_exception_type(_TRANSPORT_ERRORS),
        reraise=True,
    )
    def _send_with_retry(self, method: str, endpoint: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        return self._send(method, endpoint, payload)

    def _read(self, method: str, endpoint: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        try:
            return self._send_with_retry(method, endpoint, payload)
        except _TRANSPORT_ERRORS as exc:
            raise ShippingProviderError("Shipping provider is unreachable") from exc

    def _write_once(self, endpoint: str, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            return self._send("POST", endpoint, payload, ambiguous=True)
        except _TRANSPORT_ERRORS as exc:
            logger.warning("shippo %s outcome unknown: %s", endpoint, exc)
            raise ShippingProviderTimeout("Shipping provider did not confirm the request") from exc

    def get_rates(self, from_address: Address, to_address: Address, parcel: Parcel) -> list[Rate]:
        """Create a shipment at Shippo and return the rates it quotes."""
        body = self._read(
            "POST",
            "/shipments/",
            {
                "address_from": from_address.model_dump(exclude_none=True),
                "address_to": to_address.model_dump(exclude_none=True),
                "parcels": [parcel.model_dump()],
                "async": False,
            },
        )
        return [self._map_rate(item) for item in body.get("rates", [])]

    def get_rate(self, rate_id: str) -> Rate:
        """Re-read a single rate; used to price a purchase before charging credit."""
        return self._map_rate(self._read("GET", f"/rates/{rate_id}/"))

    def purchase(self, rate_id: str, label_format: LabelFormat) -> PurchasedLabel:
        """Buy the label for ``rate_id``.

        Sent exactly once. A timeout or an answer that does not settle the
        outcome raises `ShippingProviderTimeout`; a ``status`` other than
        SUCCESS raises `ShippingProviderError` with the provider's messages.
        """
        body = self._write_once(
            "/transactions/",
            {"rate": rate_id, "label_file_type": LabelFormat(label_format).value, "async": False},
        )
        if body.get("status") != "SUCCESS" or not body.get("object_id"):
            messages = "; ".join(m.get("text", "") for m in body.get("messages") or [] if isinstance(m, dict))
            raise ShippingProviderError(messages or ERROR_MESSAGES["TRANSACTION_FAILED"], code="TRANSACTION_FAILED")
        return PurchasedLabel(
            transaction_id=body["object_id"],
            rate_id=body.get("rate") or rate_id,
            tracking_number=body.get("tracking_number"),
            label_url=body.get("label_url"),
            status=body["status"],
            from_address=body.get("address_from") if isinstance(body.get("address_from"), dict) else None,
            to_address=body.get("address_to") if isinstance(body.get("address_to"), dict) else None,
            parcel=body.get("parcel") if isinstance(body.get("parcel"), dict) else None,
        )

    def refund(self, transaction_id: str) -> RefundResult:
        """Request a refund for a purchased label; sent exactly once."""
        body = self._write_once("/refunds/", {"transaction": transaction_id, "async": False})
        status = str(body.get("status", "")).upper()
        if status == "ERROR" or not body.get("object_id"):
            raise ShippingProviderError(ERROR_MESSAGES["REFUND_NOT_ELIGIBLE"], code="REFUND_NOT_ELIGIBLE")
        return RefundResult(refund_id=body["object_id"], transaction_id=transaction_id, status=status)

    def validate_address(self, address: Address) -> AddressValidation:
        body = self._read("POST", "/addresses/", {**address.model_dump(exclude_none=True), "validate": True})
        results = body.get("validation_results") or {}
        messages = [m.get("text", "") for m in results.get("messages") or [] if isinstance(m, dict)]
        return AddressValidation(is_valid=bool(results.get("is_valid")), messages=messages)

    def _map_rate(self, item: dict[str, Any]) -> Rate:
        try:
            amount = Decimal(str(item["amount"]))
            return Rate(
                rate_id=item["object_id"],
                carrier=item.get("provider", ""),
                service_level=(item.get("servicelevel") or {}).get("name", ""),
                amount=amount,
                currency=item.get("currency", "USD"),
                estimated_days=item.get("estimated_days"),
            )
        except (KeyError, InvalidOperation, TypeError, ValidationError) as exc:
            raise ShippingProviderError("Shipping provider returned an invalid rate") from exc
