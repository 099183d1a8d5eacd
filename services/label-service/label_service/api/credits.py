"""Credit transfer, balance and ledger history endpoints."""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query

from ..domain.account import Account
from ..domain.contracts import TransactionQuery, clamp_page
from ..domain.ledger import LedgerService, TransactionKind
from ..domain.service import AccountService
from ..domain.transfers import CreditTransferEngine, TransferResult
from .deps import current_account, get_account_service, get_ledger_service, get_transfer_engine
from .models import (
    BalanceResponse,
    CreditRequest,
    CreditResponse,
    Pagination,
    TransactionListResponse,
    TransactionResponse,
)

router = APIRouter()


def _credit_response(result: TransferResult) -> CreditResponse:
    return CreditResponse(
        transaction=TransactionResponse.from_domain(result.transaction),
        credit_balance=float(result.target_balance),
    )


@router.post("/credits/assign", response_model=CreditResponse, tags=["credits"])
def assign_credits(
    payload: CreditRequest,
    actor: Account = Depends(current_account),
    engine: CreditTransferEngine = Depends(get_transfer_engine),
) -> CreditResponse:
    """Add credits to an account; resellers fund the transfer from their own balance."""
    return _credit_response(engine.assign(actor, payload.user_id, payload.amount, payload.description))


@router.post("/credits/revoke", response_model=CreditResponse, tags=["credits"])
def revoke_credits(
    payload: CreditRequest,
    actor: Account = Depends(current_account),
    engine: CreditTransferEngine = Depends(get_transfer_engine),
) -> CreditResponse:
    """Remove credits from an account; resellers receive the revoked amount back."""
    return _credit_response(engine.revoke(actor, payload.user_id, payload.amount, payload.description))


@router.get("/credits/balance/{user_id}", response_model=BalanceResponse, tags=["credits"])
def get_balance(
    user_id: str,
    actor: Account = Depends(current_account),
    service: AccountService = Depends(get_account_service),
) -> BalanceResponse:
    return BalanceResponse(user_id=user_id, credit_balance=float(service.get_balance(actor, user_id)))


@router.get("/transactions", response_model=TransactionListResponse, tags=["transactions"])
def list_transactions(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    kind: TransactionKind | None = Query(default=None, alias="type"),
    start_date: datetime | None = Query(default=None, alias="startDate"),
    end_date: datetime | None = Query(default=None, alias="endDate"),
    user_id: str | None = Query(default=None, alias="userId"),
    actor: Account = Depends(current_account),
    service: LedgerService = Depends(get_ledger_service),
) -> TransactionListResponse:
    """Return ledger rows visible to the caller, newest first."""
    page, limit = clamp_page(page, limit)
    result = service.list_transactions(
        actor,
        TransactionQuery(
            account_id=user_id,
            kind=kind,
            created_after=start_date,
            created_before=end_date,
            page=page,
            limit=limit,
        ),
    )
    return TransactionListResponse(
        transactions=[TransactionResponse.from_domain(item) for item in result.items],
        pagination=Pagination.from_page(result),
    )
