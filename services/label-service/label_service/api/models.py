"""Request and response bodies for the HTTP API.

Wire names are camelCase; Python attributes stay snake_case and are mapped
through field aliases. Monetary values leave the service as JSON numbers.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from shipping_schemas import Address, Parcel, Rate

from ..domain.account import Account, Role
from ..domain.contracts import Page
from ..domain.ledger import Transaction
from ..domain.shipment import Batch, Shipment


class ApiModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class Pagination(ApiModel):
    page: int
    limit: int
    total: int
    total_pages: int = Field(..., alias="totalPages")

    @classmethod
    def from_page(cls, page: Page[Any]) -> "Pagination":
        return cls(page=page.page, limit=page.limit, total=page.total, total_pages=page.total_pages)


class AccountResponse(ApiModel):
    """Serialised representation of an `Account` aggregate."""

    id: str
    name: str
    email: str
    role: Role
    credit_balance: float = Field(..., alias="creditBalance")
    creator_id: str | None = Field(default=None, alias="creatorId")
    created_at: datetime = Field(..., alias="createdAt")
    is_active: bool = Field(default=True, alias="isActive")
    email_notifications: bool = Field(default=True, alias="emailNotifications")
    marketing_emails: bool = Field(default=False, alias="marketingEmails")

    @classmethod
    def from_domain(cls, account: Account) -> "AccountResponse":
        return cls(
            id=account.account_id,
            name=account.name,
            email=account.email,
            role=account.role,
            credit_balance=float(account.credit_balance),
            creator_id=account.creator_id,
            created_at=account.created_at,
            is_active=account.is_active,
            email_notifications=account.email_notifications,
            marketing_emails=account.marketing_emails,
        )


class LoginRequest(ApiModel):
    email: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)


class SessionResponse(ApiModel):
    user: AccountResponse
    expires_in: int | None = Field(default=None, alias="expiresIn")


class CreateAccountRequest(ApiModel):
    name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    password: str
    role: Role = Role.USER
    initial_credit: Any = Field(default=None, alias="initialCredit")


class AccountListResponse(ApiModel):
    users: list[AccountResponse]
    pagination: Pagination


class ChangePasswordRequest(ApiModel):
    current_password: str = Field(..., alias="currentPassword")
    new_password: str = Field(..., alias="newPassword")


class ResetPasswordRequest(ApiModel):
    new_password: str = Field(..., alias="newPassword")


class ProfileRequest(ApiModel):
    name: str = Field(..., min_length=1)
    email: EmailStr


class PreferencesRequest(ApiModel):
    email_notifications: bool | None = Field(default=None, alias="emailNotifications")
    marketing_emails: bool | None = Field(default=None, alias="marketingEmails")


class SuccessResponse(ApiModel):
    success: bool = True
    message: str | None = None


class CreditRequest(ApiModel):
    """Body of an assign or revoke call; ``amount`` is parsed by the transfer engine."""

    user_id: str = Field(..., alias="userId", min_length=1)
    amount: Any = None
    description: str | None = Field(default=None, max_length=500)


class TransactionResponse(ApiModel):
    id: str
    user_id: str = Field(..., alias="userId")
    type: str
    amount: float
    description: str | None = None
    reference_id: str | None = Field(default=None, alias="referenceId")
    created_by_id: str = Field(..., alias="createdById")
    created_at: datetime = Field(..., alias="createdAt")

    @classmethod
    def from_domain(cls, transaction: Transaction) -> "TransactionResponse":
        return cls(
            id=transaction.transaction_id,
            user_id=transaction.account_id,
            type=transaction.kind.value,
            amount=float(transaction.amount),
            description=transaction.description,
            reference_id=transaction.reference_id,
            created_by_id=transaction.created_by_id,
            created_at=transaction.created_at,
        )


class CreditResponse(ApiModel):
    success: bool = True
    transaction: TransactionResponse
    credit_balance: float = Field(..., alias="creditBalance")


class BalanceResponse(ApiModel):
    user_id: str = Field(..., alias="userId")
    credit_balance: float = Field(..., alias="creditBalance")


class TransactionListResponse(ApiModel):
    transactions: list[TransactionResponse]
    pagination: Pagination


class RatesRequest(ApiModel):
    from_address: Address = Field(..., alias="fromAddress")
    to_address: Address = Field(..., alias="toAddress")
    parcel: Parcel


class RateResponse(ApiModel):
    rate_id: str = Field(..., alias="rateId")
    carrier: str
    service_level: str = Field(..., alias="serviceLevel")
    amount: float
    currency: str
    estimated_days: int | None = Field(default=None, alias="estimatedDays")

    @classmethod
    def from_rate(cls, rate: Rate) -> "RateResponse":
        return cls(
            rate_id=rate.rate_id,
            carrier=rate.carrier,
            service_level=rate.service_level,
            amount=float(rate.amount),
            currency=rate.currency,
            estimated_days=rate.estimated_days,
        )


class RatesResponse(ApiModel):
    rates: list[RateResponse]


class PurchaseRequest(ApiModel):
    rate_id: str = Field(..., alias="rateId", min_length=1)
    label_format: str = Field(default="PDF", alias="labelFormat")
    from_address: Address | None = Field(default=None, alias="fromAddress")
    to_address: Address | None = Field(default=None, alias="toAddress")
    parcel: Parcel | None = None


class RefundRequest(ApiModel):
    transaction_id: str = Field(..., alias="transactionId", min_length=1)


class ShipmentResponse(ApiModel):
    id: str
    user_id: str = Field(..., alias="userId")
    status: str
    batch_id: str | None = Field(default=None, alias="batchId")
    transaction_id: str | None = Field(default=None, alias="transactionId")
    tracking_number: str | None = Field(default=None, alias="trackingNumber")
    label_url: str | None = Field(default=None, alias="labelUrl")
    label_format: str | None = Field(default=None, alias="labelFormat")
    cost: float | None = None
    carrier: str | None = None
    service_level: str | None = Field(default=None, alias="serviceLevel")
    from_address: dict[str, Any] | None = Field(default=None, alias="fromAddress")
    to_address: dict[str, Any] | None = Field(default=None, alias="toAddress")
    parcel: dict[str, Any] | None = None
    error_message: str | None = Field(default=None, alias="errorMessage")
    created_at: datetime = Field(..., alias="createdAt")
    updated_at: datetime = Field(..., alias="updatedAt")

    @classmethod
    def from_domain(cls, shipment: Shipment) -> "ShipmentResponse":
        return cls(
            id=shipment.shipment_id,
            user_id=shipment.account_id,
            status=shipment.status.value,
            batch_id=shipment.batch_id,
            transaction_id=shipment.provider_transaction_id,
            tracking_number=shipment.tracking_number,
            label_url=shipment.label_url,
            label_format=shipment.label_format,
            cost=float(shipment.cost) if shipment.cost is not None else None,
            carrier=shipment.carrier,
            service_level=shipment.service_level,
            from_address=shipment.from_address,
            to_address=shipment.to_address,
            parcel=shipment.parcel,
            error_message=shipment.error_message,
            created_at=shipment.created_at,
            updated_at=shipment.updated_at,
        )


class LabelResponse(ApiModel):
    success: bool = True
    shipment: ShipmentResponse
    transaction: TransactionResponse
    credit_balance: float = Field(..., alias="creditBalance")


class ShipmentListResponse(ApiModel):
    shipments: list[ShipmentResponse]
    pagination: Pagination


class BatchRowRequest(ApiModel):
    from_address: Address = Field(..., alias="fromAddress")
    to_address: Address = Field(..., alias="toAddress")
    parcel: Parcel
    carrier: str | None = None
    service_level: str | None = Field(default=None, alias="serviceLevel")


class BatchRequest(ApiModel):
    filename: str | None = Field(default=None, max_length=255)
    label_format: str = Field(default="PDF", alias="labelFormat")
    rows: list[BatchRowRequest] = Field(..., min_length=1)


class BatchResponse(ApiModel):
    id: str
    user_id: str = Field(..., alias="userId")
    filename: str | None = None
    status: str
    total_rows: int = Field(..., alias="totalRows")
    processed_rows: int = Field(..., alias="processedRows")
    successful_rows: int = Field(..., alias="successfulRows")
    failed_rows: int = Field(..., alias="failedRows")
    error_log: str | None = Field(default=None, alias="errorLog")
    created_at: datetime = Field(..., alias="createdAt")
    completed_at: datetime | None = Field(default=None, alias="completedAt")

    @classmethod
    def from_domain(cls, batch: Batch) -> "BatchResponse":
        return cls(
            id=batch.batch_id,
            user_id=batch.account_id,
            filename=batch.filename,
            status=batch.status.value,
            total_rows=batch.total_rows,
            processed_rows=batch.processed_rows,
            successful_rows=batch.successful_rows,
            failed_rows=batch.failed_rows,
            error_log=batch.error_log,
            created_at=batch.created_at,
            completed_at=batch.completed_at,
        )


class BatchListResponse(ApiModel):
    batches: list[BatchResponse]
