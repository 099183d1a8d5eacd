"""Shared schema exports."""

from .address import Address, AddressValidation, DistanceUnit, MassUnit, Parcel
from .labels import LabelFormat, PurchasedLabel, Rate, RefundResult

__all__ = [
    "Address",
    "AddressValidation",
    "DistanceUnit",
    "MassUnit",
    "Parcel",
    "LabelFormat",
    "PurchasedLabel",
    "Rate",
    "RefundResult",
]
