"""Account service orchestrating persistence, session issuance and password flows."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any

import jwt

from .account import Account
from .contracts import CreateAccountInput, NewAccount, Page, clamp_page
from .errors import AuthError, NotFoundError, RateLimitedError, ValidationError
from .policy import Operation, can_create_role, ensure_allowed, require, visibility_scope
from .transfers import CreditTransferEngine, parse_amount
from ..security.login_throttle import LoginThrottle
from ..security.passwords import MIN_PASSWORD_LENGTH, hash_password, verify_password
from ..security.tokens import decode_session_token, issue_session_token

if TYPE_CHECKING:
    from ..repository import AccountRepository, LedgerRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SessionBundle:
    """Session token handed back to the HTTP layer after a successful login."""

    token: str
    expires_in: int
    account: Account


def _normalise_email(email: str) -> str:
    return email.strip().lower()


def _initial_credit(raw: Any) -> Decimal | None:
    """Zero or absent initial credit means the account starts empty."""
    if raw is None or raw == "":
        return None
    try:
        if Decimal(str(raw).strip()) == 0:
            return None
    except (InvalidOperation, ValueError):
        pass
    return parse_amount(raw)


def _check_password_strength(password: str) -> None:
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")


class AccountService:
    """Account workflows backed by Postgres storage."""

    def __init__(
        self,
        accounts: AccountRepository,
        ledger: LedgerRepository,
        engine: CreditTransferEngine,
        throttle: LoginThrottle,
    ) -> None:
        self._accounts = accounts
        self._ledger = ledger
        self._engine = engine
        self._throttle = throttle

    def authenticate(self, email: str, password: str) -> SessionBundle:
        """Check credentials and issue a session token.

        Failed attempts are counted per email; once the throttle trips, further
        attempts are refused until the window slides past the failures.
        """
        key = _normalise_email(email or "")
        if not key or not password:
            raise ValidationError("Email and password are required")
        if self._throttle.is_blocked(key):
            logger.warning("login throttled for %s", key)
            raise RateLimitedError("Too many failed login attempts. Please try again later.")

        record = self._accounts.get_credentials(key)
        if record is None or not record[0].is_active or not verify_password(password, record[1]):
            failures = self._throttle.record_failure(key)
            logger.info("login failed for %s (%s recent failures)", key, failures)
            raise AuthError("Invalid email or password")

        account = record[0]
        self._throttle.reset(key)
        token, expires_in = issue_session_token(account.account_id)
        logger.info("session issued for account %s", account.account_id)
        return SessionBundle(token=token, expires_in=expires_in, account=account)

    def resolve_session(self, token: str | None) -> Account:
        """Return the live account behind ``token``; the account is always re-read."""
        if not token:
            raise AuthError("Authentication required")
        try:
            account_id = decode_session_token(token)
        except jwt.PyJWTError as exc:
            raise AuthError("Invalid or expired session") from exc
        account = self._accounts.get_account(account_id)
        if account is None or not account.is_active:
            raise AuthError("Account not found or inactive")
        return account

    def create_account(self, actor: Account, payload: CreateAccountInput) -> Account:
        """Create an account under ``actor``, funding it in the same transaction."""
        ensure_allowed(can_create_role(actor, payload.role), actor, Operation.CREATE_ACCOUNT, payload.email)
        name = (payload.name or "").strip()
        email = _normalise_email(payload.email or "")
        if not name or not email:
            raise ValidationError("Name and email are required")
        _check_password_strength(payload.password)
        initial_credit = _initial_credit(payload.initial_credit)

        new_account = NewAccount(
            account_id=str(uuid.uuid4()),
            name=name,
            email=email,
            password_hash=hash_password(payload.password),
            role=payload.role,
            creator_id=actor.account_id,
            created_at=datetime.now(timezone.utc),
        )
        with self._ledger.unit_of_work() as unit:
            account = unit.insert_account(new_account)
            if initial_credit is not None:
                result = self._engine.assign_within(unit, actor, account, initial_credit, "Initial credit allocation")
                account.credit_balance = result.target_balance
        logger.info(
            "account %s created by %s with role %s",
            account.account_id,
            actor.account_id,
            account.role.value,
        )
        return account

    def get_account(self, actor: Account, account_id: str) -> Account:
        """Load an account and check that ``actor`` may view it."""
        account = self._accounts.get_account(account_id)
        if account is None:
            raise NotFoundError("User not found")
        require(actor, Operation.VIEW_ACCOUNT, account)
        return account

    def get_balance(self, actor: Account, account_id: str) -> Decimal:
        """Return the stored balance of an account visible to ``actor``."""
        return self.get_account(actor, account_id).credit_balance

    def list_accounts(
        self, actor: Account, *, search: str | None = None, page: int = 1, limit: int = 10
    ) -> Page[Account]:
        """Search the accounts ``actor`` can see by name or email."""
        page, limit = clamp_page(page, limit)
        term = search.strip() if search else None
        return self._accounts.list_accounts(visibility_scope(actor), search=term or None, page=page, limit=limit)

    def change_password(self, actor: Account, account_id: str, current_password: str, new_password: str) -> None:
        """Change the caller's own password after checking the current one."""
        target = self._accounts.get_account(account_id)
        if target is None:
            raise NotFoundError("User not found")
        require(actor, Operation.CHANGE_OWN_PASSWORD, target)
        _check_password_strength(new_password)
        stored = self._accounts.get_password_hash(account_id)
        if stored is None or not verify_password(current_password or "", stored):
            raise ValidationError("Current password is incorrect")
        self._accounts.update_password(account_id, hash_password(new_password))
        logger.info("password changed for account %s", account_id)

    def reset_password(self, actor: Account, account_id: str, new_password: str) -> None:
        """Set a new password for an account down the creator chain; no current password needed."""
        target = self._accounts.get_account(account_id)
        if target is None:
            raise NotFoundError("User not found")
        require(actor, Operation.RESET_PASSWORD, target)
        _check_password_strength(new_password)
        self._accounts.update_password(account_id, hash_password(new_password))
        logger.info("password for account %s reset by %s", account_id, actor.account_id)

    def update_preferences(
        self,
        actor: Account,
        account_id: str,
        *,
        email_notifications: bool | None = None,
        marketing_emails: bool | None = None,
    ) -> Account:
        """Toggle notification settings; ``None`` leaves a flag unchanged."""
        target = self._accounts.get_account(account_id)
        if target is None:
            raise NotFoundError("User not found")
        require(actor, Operation.UPDATE_PREFERENCES, target)
        return self._accounts.update_preferences(
            account_id,
            email_notifications=email_notifications,
            marketing_emails=marketing_emails,
        )

    def update_profile(self, actor: Account, account_id: str, *, name: str, email: str) -> Account:
        """Replace the display name and login email of an account.

        Parameters
        ----------
        actor:
            The caller; a Super Admin may edit anyone, everyone else only themselves.
        account_id:
            Identifier of the account being edited.
        name, email:
            New values. Both are required; the email is stored lower-cased and
            must not belong to another account.

        Returns
        -------
        Account
            The account as stored after the update.
        """
        target = self._accounts.get_account(account_id)
        if target is None:
            raise NotFoundError("User not found")
        require(actor, Operation.UPDATE_PROFILE, target)
        name = (name or "").strip()
        email = _normalise_email(email or "")
        if not name or not email:
            raise ValidationError("Name and email are required")
        account = self._accounts.update_profile(account_id, name=name, email=email)
        logger.info("profile of account %s updated by %s", account_id, actor.account_id)
        return account
