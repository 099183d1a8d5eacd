"""Request-scoped dependencies and error rendering shared by every router."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from ..config import get_settings
from ..domain.account import Account
from ..domain.batches import BatchService
from ..domain.errors import ServiceError
from ..domain.labels import LabelOrchestrator
from ..domain.ledger import LedgerService
from ..domain.service import AccountService
from ..domain.transfers import CreditTransferEngine

logger = logging.getLogger(__name__)


def get_account_service(request: Request) -> AccountService:
    """Resolve the `AccountService` stored on the FastAPI application state."""
    service: AccountService = request.app.state.account_service
    return service


def get_transfer_engine(request: Request) -> CreditTransferEngine:
    engine: CreditTransferEngine = request.app.state.transfer_engine
    return engine


def get_ledger_service(request: Request) -> LedgerService:
    service: LedgerService = request.app.state.ledger_service
    return service


def get_label_orchestrator(request: Request) -> LabelOrchestrator:
    orchestrator: LabelOrchestrator = request.app.state.label_orchestrator
    return orchestrator


def get_batch_service(request: Request) -> BatchService:
    service: BatchService = request.app.state.batch_service
    return service


def session_token_from(request: Request) -> str | None:
    """Read the session token from a Bearer header, falling back to the session cookie."""
    header = request.headers.get("Authorization", "")
    scheme, _, credentials = header.partition(" ")
    if scheme.lower() == "bearer" and credentials.strip():
        return credentials.strip()
    return request.cookies.get(get_settings().session_cookie_name) or None


def current_account(request: Request) -> Account:
    """Authenticate the caller; the account is re-read from storage on every request."""
    service = get_account_service(request)
    return service.resolve_session(session_token_from(request))


def _service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.message, exc.code)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def _validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = [
        {"loc": [str(part) for part in error.get("loc", ())], "msg": error.get("msg", "")}
        for error in exc.errors()
    ]
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": "Invalid request", "code": "VALIDATION_ERROR", "details": details},
    )


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ServiceError, _service_error_handler)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)
