from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum


class Role(str, Enum):
    """Closed set of roles in the resale hierarchy."""

    SUPER_ADMIN = "SUPER_ADMIN"
    RESELLER = "RESELLER"
    USER = "USER"


# Stored role strings accepted at the load boundary. ADMIN is the legacy alias.
_STORED_ROLES: dict[str, tuple[Role, bool]] = {
    "SUPER_ADMIN": (Role.SUPER_ADMIN, False),
    "ADMIN": (Role.SUPER_ADMIN, True),
    "RESELLER": (Role.RESELLER, False),
    "USER": (Role.USER, False),
}


def normalize_role(raw: str) -> tuple[Role, bool]:
    """Map a stored role string to ``(role, is_legacy_admin)``."""
    try:
        return _STORED_ROLES[raw.strip().upper()]
    except KeyError as exc:
        raise ValueError(f"unknown role {raw!r}") from exc


@dataclass(slots=True)
class Account:
    """Aggregate root for a credit-holding account."""

    account_id: str
    name: str
    email: str
    role: Role
    credit_balance: Decimal
    creator_id: str | None
    created_at: datetime
    is_active: bool = True
    legacy_admin: bool = False
    email_notifications: bool = True
    marketing_emails: bool = False

    @property
    def is_root(self) -> bool:
        return self.creator_id is None
