"""Address and parcel contracts shared by the provider client and the HTTP layer."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, EmailStr, Field


class DistanceUnit(str, Enum):
    inches = "in"
    centimeters = "cm"


class MassUnit(str, Enum):
    pounds = "lb"
    kilograms = "kg"


class Address(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    company: str | None = Field(default=None, max_length=100)
    street1: str = Field(..., min_length=1, max_length=100)
    street2: str | None = Field(default=None, max_length=100)
    city: str = Field(..., min_length=1, max_length=50)
    state: str = Field(..., min_length=2, max_length=50)
    zip: str = Field(..., min_length=3, max_length=20)
    country: str = Field(..., min_length=2, max_length=2, description="ISO 3166 alpha-2")
    phone: str | None = Field(default=None, max_length=20)
    email: EmailStr | None = None


class Parcel(BaseModel):
    length: float = Field(..., gt=0, le=200)
    width: float = Field(..., gt=0, le=200)
    height: float = Field(..., gt=0, le=200)
    distance_unit: DistanceUnit
    weight: float = Field(..., gt=0, le=150)
    mass_unit: MassUnit

    class Config:
        use_enum_values = True


class AddressValidation(BaseModel):
    """Outcome of a provider-side address verification."""

    is_valid: bool
    messages: list[str] = Field(default_factory=list)
