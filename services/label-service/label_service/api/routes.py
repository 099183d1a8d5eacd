"""HTTP route definitions for the label service: sessions and accounts."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Response, status

from ..config import get_settings
from ..domain.account import Account
from ..domain.contracts import CreateAccountInput
from ..domain.service import AccountService
from . import credits, labels
from .deps import current_account, get_account_service
from .models import (
    AccountListResponse,
    AccountResponse,
    ChangePasswordRequest,
    CreateAccountRequest,
    LoginRequest,
    Pagination,
    PreferencesRequest,
    ProfileRequest,
    ResetPasswordRequest,
    SessionResponse,
    SuccessResponse,
)

router = APIRouter(prefix="/v1")


@router.post("/auth/login", response_model=SessionResponse, tags=["auth"])
def login(
    response: Response,
    payload: LoginRequest,
    service: AccountService = Depends(get_account_service),
) -> SessionResponse:
    """Verify credentials and set the session cookie."""
    bundle = service.authenticate(payload.email, payload.password)
    settings = get_settings()
    response.set_cookie(
        key=settings.session_cookie_name,
        value=bundle.token,
        max_age=bundle.expires_in,
        httponly=True,
        secure=settings.session_cookie_secure,
        samesite="lax",
        path="/",
    )
    return SessionResponse(user=AccountResponse.from_domain(bundle.account), expires_in=bundle.expires_in)


@router.post("/auth/logout", response_model=SuccessResponse, tags=["auth"])
def logout(response: Response) -> SuccessResponse:
    response.delete_cookie(get_settings().session_cookie_name, path="/")
    return SuccessResponse(message="Logged out")


@router.get("/auth/session", response_model=SessionResponse, tags=["auth"])
def session(actor: Account = Depends(current_account)) -> SessionResponse:
    """Return the caller as currently persisted."""
    return SessionResponse(user=AccountResponse.from_domain(actor))


@router.get("/users", response_model=AccountListResponse, tags=["users"])
def list_users(
    search: str | None = Query(default=None, max_length=100),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    actor: Account = Depends(current_account),
    service: AccountService = Depends(get_account_service),
) -> AccountListResponse:
    result = service.list_accounts(actor, search=search, page=page, limit=limit)
    return AccountListResponse(
        users=[AccountResponse.from_domain(account) for account in result.items],
        pagination=Pagination.from_page(result),
    )


@router.post("/users", response_model=AccountResponse, status_code=status.HTTP_201_CREATED, tags=["users"])
def create_user(
    payload: CreateAccountRequest,
    actor: Account = Depends(current_account),
    service: AccountService = Depends(get_account_service),
) -> AccountResponse:
    """Create an account under the caller, optionally funded with an initial credit."""
    account = service.create_account(
        actor,
        CreateAccountInput(
            name=payload.name,
            email=payload.email,
            password=payload.password,
            role=payload.role,
            initial_credit=payload.initial_credit,
        ),
    )
    return AccountResponse.from_domain(account)


@router.get("/users/{user_id}", response_model=AccountResponse, tags=["users"])
def get_user(
    user_id: str,
    actor: Account = Depends(current_account),
    service: AccountService = Depends(get_account_service),
) -> AccountResponse:
    return AccountResponse.from_domain(service.get_account(actor, user_id))


@router.post("/users/{user_id}/password", response_model=SuccessResponse, tags=["users"])
def change_password(
    user_id: str,
    payload: ChangePasswordRequest,
    actor: Account = Depends(current_account),
    service: AccountService = Depends(get_account_service),
) -> SuccessResponse:
    """Change the caller's own password; the current password is required."""
    service.change_password(actor, user_id, payload.current_password, payload.new_password)
    return SuccessResponse(message="Password updated successfully")


@router.put("/users/{user_id}/password", response_model=SuccessResponse, tags=["users"])
def reset_password(
    user_id: str,
    payload: ResetPasswordRequest,
    actor: Account = Depends(current_account),
    service: AccountService = Depends(get_account_service),
) -> SuccessResponse:
    service.reset_password(actor, user_id, payload.new_password)
    return SuccessResponse(message="Password reset successfully")


@router.patch("/users/{user_id}", response_model=AccountResponse, tags=["users"])
def update_profile(
    user_id: str,
    payload: ProfileRequest,
    actor: Account = Depends(current_account),
    service: AccountService = Depends(get_account_service),
) -> AccountResponse:
    account = service.update_profile(actor, user_id, name=payload.name, email=payload.email)
    return AccountResponse.from_domain(account)


@router.patch("/users/{user_id}/preferences", response_model=AccountResponse, tags=["users"])
def update_preferences(
    user_id: str,
    payload: PreferencesRequest,
    actor: Account = Depends(current_account),
    service: AccountService = Depends(get_account_service),
) -> AccountResponse:
    account = service.update_preferences(
        actor,
        user_id,
        email_notifications=payload.email_notifications,
        marketing_emails=payload.marketing_emails,
    )
    return AccountResponse.from_domain(account)


router.include_router(credits.router)
router.include_router(labels.router)
