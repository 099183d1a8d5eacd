"""Hierarchical authorization rules for the resale hierarchy.

Decisions are pure functions of ``(actor, operation, target)``; nothing here
touches storage. Roles are dispatched exhaustively over :class:`Role` so a new
role cannot slip through without an explicit rule.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from .account import Account, Role
from .errors import AuthError, ForbiddenError

logger = logging.getLogger(__name__)


class Operation(str, Enum):
    VIEW_ACCOUNT = "view_account"
    VIEW_TRANSACTIONS = "view_transactions"
    VIEW_SHIPMENTS = "view_shipments"
    CHANGE_OWN_PASSWORD = "change_own_password"
    UPDATE_PREFERENCES = "update_preferences"
    UPDATE_PROFILE = "update_profile"
    RESET_PASSWORD = "reset_password"
    ASSIGN_CREDITS = "assign_credits"
    REVOKE_CREDITS = "revoke_credits"
    PURCHASE_LABEL = "purchase_label"
    REFUND_LABEL = "refund_label"
    CANCEL_BATCH = "cancel_batch"
    CREATE_ACCOUNT = "create_account"


class DenialReason(str, Enum):
    UNAUTHENTICATED = "UNAUTHENTICATED"
    FORBIDDEN_ROLE = "FORBIDDEN_ROLE"
    FORBIDDEN_NOT_OWNER = "FORBIDDEN_NOT_OWNER"


class ScopeKind(str, Enum):
    ALL = "all"
    CREATED = "created"
    SELF = "self"


@dataclass(frozen=True, slots=True)
class Decision:
    allowed: bool
    reason: DenialReason | None = None

    def __bool__(self) -> bool:
        return self.allowed


@dataclass(frozen=True, slots=True)
class VisibilityScope:
    """Owner filter applied to every list query issued on behalf of an actor.

    ``CREATED`` covers the actor plus every account whose creator is the actor.
    """

    kind: ScopeKind
    account_id: str


ALLOW = Decision(True)

_VIEW_OPERATIONS = frozenset(
    {Operation.VIEW_ACCOUNT, Operation.VIEW_TRANSACTIONS, Operation.VIEW_SHIPMENTS}
)
_SELF_OPERATIONS = _VIEW_OPERATIONS | {
    Operation.CHANGE_OWN_PASSWORD,
    Operation.UPDATE_PREFERENCES,
    Operation.UPDATE_PROFILE,
    Operation.PURCHASE_LABEL,
    Operation.REFUND_LABEL,
    Operation.CANCEL_BATCH,
}
_SELF_ONLY_OPERATIONS = frozenset(
    {Operation.CHANGE_OWN_PASSWORD, Operation.UPDATE_PREFERENCES, Operation.PURCHASE_LABEL}
)
_CREATOR_CHAIN_OPERATIONS = frozenset(
    {Operation.ASSIGN_CREDITS, Operation.REVOKE_CREDITS, Operation.RESET_PASSWORD}
)
# Only a Super Admin may perform these on someone else's account.
_SUPER_ADMIN_OPERATIONS = frozenset({Operation.UPDATE_PROFILE})


def _deny(reason: DenialReason) -> Decision:
    return Decision(False, reason)


def authorize(actor: Account | None, operation: Operation, target: Account) -> Decision:
    """Return whether ``actor`` may perform ``operation`` on ``target``."""
    if actor is None or not actor.is_active:
        return _deny(DenialReason.UNAUTHENTICATED)

    if target.account_id == actor.account_id and operation in _SELF_OPERATIONS:
        return ALLOW
    if operation in _SELF_ONLY_OPERATIONS:
        return _deny(DenialReason.FORBIDDEN_NOT_OWNER)

    if actor.role is Role.SUPER_ADMIN:
        if actor.legacy_admin and operation not in _VIEW_OPERATIONS:
            return _deny(DenialReason.FORBIDDEN_ROLE)
        return ALLOW
    if actor.role is Role.RESELLER:
        if operation in _SUPER_ADMIN_OPERATIONS:
            return _deny(DenialReason.FORBIDDEN_ROLE)
        if target.creator_id != actor.account_id:
            return _deny(DenialReason.FORBIDDEN_NOT_OWNER)
        if operation in _CREATOR_CHAIN_OPERATIONS and target.role is not Role.USER:
            return _deny(DenialReason.FORBIDDEN_ROLE)
        return ALLOW
    if actor.role is Role.USER:
        if operation in _CREATOR_CHAIN_OPERATIONS or operation in _SUPER_ADMIN_OPERATIONS:
            return _deny(DenialReason.FORBIDDEN_ROLE)
        return _deny(DenialReason.FORBIDDEN_NOT_OWNER)
    raise AssertionError(f"unhandled role {actor.role!r}")


def can_create_role(actor: Account | None, role: Role) -> Decision:
    """Return whether ``actor`` may create a new account holding ``role``."""
    if actor is None or not actor.is_active:
        return _deny(DenialReason.UNAUTHENTICATED)
    if actor.role is Role.SUPER_ADMIN:
        if actor.legacy_admin:
            return _deny(DenialReason.FORBIDDEN_ROLE)
        return ALLOW
    if actor.role is Role.RESELLER:
        return ALLOW if role is Role.USER else _deny(DenialReason.FORBIDDEN_ROLE)
    if actor.role is Role.USER:
        return _deny(DenialReason.FORBIDDEN_ROLE)
    raise AssertionError(f"unhandled role {actor.role!r}")


def visibility_scope(actor: Account) -> VisibilityScope:
    """Return the owner filter used by list queries for ``actor``."""
    if actor.role is Role.SUPER_ADMIN:
        return VisibilityScope(ScopeKind.ALL, actor.account_id)
    if actor.role is Role.RESELLER:
        return VisibilityScope(ScopeKind.CREATED, actor.account_id)
    if actor.role is Role.USER:
        return VisibilityScope(ScopeKind.SELF, actor.account_id)
    raise AssertionError(f"unhandled role {actor.role!r}")


def ensure_allowed(decision: Decision, actor: Account | None, operation: Operation, target_id: str) -> None:
    """Raise the matching service error when ``decision`` is a denial."""
    if decision.allowed:
        return
    actor_id = actor.account_id if actor else None
    logger.warning(
        "permission denied: actor=%s operation=%s target=%s reason=%s",
        actor_id,
        operation.value,
        target_id,
        decision.reason.value if decision.reason else None,
    )
    if decision.reason is DenialReason.UNAUTHENTICATED:
        raise AuthError("authentication required")
    reason = decision.reason or DenialReason.FORBIDDEN_ROLE
    raise ForbiddenError(_DENIAL_MESSAGES[reason], reason=reason.value)


def require(actor: Account | None, operation: Operation, target: Account) -> None:
    """Authorise ``operation`` or raise :class:`AuthError` / :class:`ForbiddenError`."""
    ensure_allowed(authorize(actor, operation, target), actor, operation, target.account_id)


_DENIAL_MESSAGES = {
    DenialReason.FORBIDDEN_ROLE: "your role does not permit this operation",
    DenialReason.FORBIDDEN_NOT_OWNER: "you can only act on your own accounts or accounts you created",
    DenialReason.UNAUTHENTICATED: "authentication required",
}


def role_permits(actor: Account | None, operation: Operation) -> Decision:
    """Coarse role gate for creator-chain operations, checked before the target is loaded."""
    if actor is None or not actor.is_active:
        return _deny(DenialReason.UNAUTHENTICATED)
    if operation not in _CREATOR_CHAIN_OPERATIONS:
        return ALLOW
    if actor.role is Role.SUPER_ADMIN:
        return _deny(DenialReason.FORBIDDEN_ROLE) if actor.legacy_admin else ALLOW
    if actor.role is Role.RESELLER:
        return ALLOW
    if actor.role is Role.USER:
        return _deny(DenialReason.FORBIDDEN_ROLE)
    raise AssertionError(f"unhandled role {actor.role!r}")
