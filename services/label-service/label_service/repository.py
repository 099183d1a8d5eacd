"""Database repositories for accounts, the transaction ledger, shipments and batches."""

from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Iterable, Iterator, Protocol

from psycopg import Cursor, errors
from psycopg.rows import tuple_row
from psycopg.types.json import Json
from psycopg_pool import ConnectionPool

from .domain.account import Account, normalize_role
from .domain.contracts import NewAccount, NewShipment, NewTransaction, Page, ShipmentQuery, TransactionQuery, clamp_page
from .domain.errors import ConflictError, InsufficientBalanceError, NotFoundError
from .domain.ledger import Transaction, TransactionKind
from .domain.policy import ScopeKind, VisibilityScope
from .domain.shipment import Batch, BatchStatus, Shipment, ShipmentStatus

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).with_name("schema.sql")

_ACCOUNT_COLUMNS = (
    "account_id, name, email, role, credit_balance, creator_id, created_at, "
    "is_active, email_notifications, marketing_emails"
)
_TRANSACTION_COLUMNS = (
    "transaction_id, account_id, kind, amount, description, reference_id, created_by_id, created_at"
)
_SHIPMENT_COLUMNS = (
    "shipment_id, account_id, status, rate_id, cost, carrier, service_level, label_format, "
    "created_at, updated_at, batch_id, provider_transaction_id, provider_object_id, "
    "tracking_number, label_url, from_address, to_address, parcel, error_message"
)
_BATCH_COLUMNS = (
    "batch_id, account_id, filename, total_rows, status, created_at, processed_rows, "
    "successful_rows, failed_rows, error_log, completed_at"
)
_SHIPMENT_UPDATABLE = frozenset(
    {
        "status",
        "provider_transaction_id",
        "provider_object_id",
        "tracking_number",
        "label_url",
        "from_address",
        "to_address",
        "parcel",
        "error_message",
    }
)
_JSON_COLUMNS = frozenset({"from_address", "to_address", "parcel"})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def apply_schema(pool: ConnectionPool) -> None:
    """Create tables and indexes if they do not exist yet."""
    ddl = SCHEMA_PATH.read_text(encoding="utf-8")
    with pool.connection() as conn:
        conn.execute(ddl)
    logger.info("database schema applied from %s", SCHEMA_PATH.name)


def _map_account(row: tuple) -> Account:
    role, legacy_admin = normalize_role(row[3])
    return Account(
        account_id=row[0],
        name=row[1],
        email=row[2],
        role=role,
        credit_balance=Decimal(row[4]),
        creator_id=row[5],
        created_at=row[6],
        is_active=row[7],
        legacy_admin=legacy_admin,
        email_notifications=row[8],
        marketing_emails=row[9],
    )


def _map_transaction(row: tuple) -> Transaction:
    return Transaction(
        transaction_id=row[0],
        account_id=row[1],
        kind=TransactionKind(row[2]),
        amount=Decimal(row[3]),
        description=row[4],
        reference_id=row[5],
        created_by_id=row[6],
        created_at=row[7],
    )


def _map_shipment(row: tuple) -> Shipment:
    return Shipment(
        shipment_id=row[0],
        account_id=row[1],
        status=ShipmentStatus(row[2]),
        rate_id=row[3],
        cost=Decimal(row[4]) if row[4] is not None else None,
        carrier=row[5],
        service_level=row[6],
        label_format=row[7],
        created_at=row[8],
        updated_at=row[9],
        batch_id=row[10],
        provider_transaction_id=row[11],
        provider_object_id=row[12],
        tracking_number=row[13],
        label_url=row[14],
        from_address=row[15],
        to_address=row[16],
        parcel=row[17],
        error_message=row[18],
    )


def _map_batch(row: tuple) -> Batch:
    return Batch(
        batch_id=row[0],
        account_id=row[1],
        filename=row[2],
        total_rows=row[3],
        status=BatchStatus(row[4]),
        created_at=row[5],
        processed_rows=row[6],
        successful_rows=row[7],
        failed_rows=row[8],
        error_log=row[9],
        completed_at=row[10],
    )


def _owner_clause(scope: VisibilityScope, column: str = "account_id") -> tuple[str, list[Any]]:
    """Translate a visibility scope into a SQL predicate on an owner column."""
    if scope.kind is ScopeKind.ALL:
        return "TRUE", []
    if scope.kind is ScopeKind.CREATED:
        return (
            f"({column} = %s OR {column} IN (SELECT account_id FROM accounts WHERE creator_id = %s))",
            [scope.account_id, scope.account_id],
        )
    return f"{column} = %s", [scope.account_id]


class LedgerUnit(Protocol):
    """Operations available inside one database transaction."""

    def lock_accounts(self, account_ids: Iterable[str]) -> dict[str, Account]: ...

    def adjust_balance(self, account_id: str, delta: Decimal) -> Decimal: ...

    def append_transaction(self, entry: NewTransaction) -> Transaction: ...

    def insert_account(self, payload: NewAccount) -> Account: ...

    def lock_shipment(self, provider_transaction_id: str) -> Shipment | None: ...

    def update_shipment(self, shipment_id: str, **fields: Any) -> Shipment: ...


class PostgresLedgerUnit:
    """Unit of work bound to a cursor whose connection is inside ``conn.transaction()``."""

    def __init__(self, cursor: Cursor) -> None:
        self._cur = cursor

    def lock_accounts(self, account_ids: Iterable[str]) -> dict[str, Account]:
        """Lock the given account rows ``FOR UPDATE`` in primary-key order."""
        ids = sorted(set(account_ids))
        self._cur.execute(
            f"""
            SELECT {_ACCOUNT_COLUMNS}
            FROM accounts
            WHERE account_id = ANY(%s)
            ORDER BY account_id
            FOR UPDATE
            """,
            (ids,),
        )
        return {row[0]: _map_account(row) for row in self._cur.fetchall()}

    def adjust_balance(self, account_id: str, delta: Decimal) -> Decimal:
        """Apply ``delta`` only if the resulting balance stays non-negative."""
        self._cur.execute(
            """
            UPDATE accounts
            SET credit_balance = credit_balance + %s, updated_at = %s
            WHERE account_id = %s AND credit_balance + %s >= 0
            RETURNING credit_balance
            """,
            (delta, _utcnow(), account_id, delta),
        )
        row = self._cur.fetchone()
        if row is None:
            raise InsufficientBalanceError("Insufficient credit balance")
        return Decimal(row[0])

    def append_transaction(self, entry: NewTransaction) -> Transaction:
        try:
            self._cur.execute(
                f"""
                INSERT INTO transactions ({_TRANSACTION_COLUMNS})
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING {_TRANSACTION_COLUMNS}
                """,
                (
                    str(uuid.uuid4()),
                    entry.account_id,
                    entry.kind.value,
                    entry.amount,
                    entry.description,
                    entry.reference_id,
                    entry.created_by_id,
                    _utcnow(),
                ),
            )
        except errors.UniqueViolation as exc:
            raise ConflictError(
                f"{entry.kind.value} already recorded for reference {entry.reference_id}"
            ) from exc
        return _map_transaction(self._cur.fetchone())

    def insert_account(self, payload: NewAccount) -> Account:
        try:
            self._cur.execute(
                f"""
                INSERT INTO accounts (account_id, name, email, password_hash, role, creator_id, created_at, updated_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING {_ACCOUNT_COLUMNS}
                """,
                (
                    payload.account_id,
                    payload.name,
                    payload.email,
                    payload.password_hash,
                    payload.role.value,
                    payload.creator_id,
                    payload.created_at,
                    payload.created_at,
                ),
            )
        except errors.UniqueViolation as exc:
            raise ConflictError("Email already in use") from exc
        return _map_account(self._cur.fetchone())

    def lock_shipment(self, provider_transaction_id: str) -> Shipment | None:
        self._cur.execute(
            f"""
            SELECT {_SHIPMENT_COLUMNS}
            FROM shipments
            WHERE provider_transaction_id = %s
            FOR UPDATE
            """,
            (provider_transaction_id,),
        )
        row = self._cur.fetchone()
        return _map_shipment(row) if row else None

    def update_shipment(self, shipment_id: str, **fields: Any) -> Shipment:
        return _update_shipment(self._cur, shipment_id, fields)


def _update_shipment(cur: Cursor, shipment_id: str, fields: dict[str, Any]) -> Shipment:
    unknown = set(fields) - _SHIPMENT_UPDATABLE
    if unknown:
        raise ValueError(f"cannot update shipment columns {sorted(unknown)}")
    assignments = ["updated_at = %s"]
    params: list[Any] = [_utcnow()]
    for column, value in fields.items():
        assignments.append(f"{column} = %s")
        if column in _JSON_COLUMNS and value is not None:
            value = Json(value)
        elif isinstance(value, ShipmentStatus):
            value = value.value
        params.append(value)
    params.append(shipment_id)
    cur.execute(
        f"""
        UPDATE shipments
        SET {", ".join(assignments)}
        WHERE shipment_id = %s
        RETURNING {_SHIPMENT_COLUMNS}
        """,
        params,
    )
    row = cur.fetchone()
    if row is None:
        raise NotFoundError("Shipment not found")
    return _map_shipment(row)


class AccountRepository:
    """Postgres-backed account persistence."""

    def __init__(self, pool: ConnectionPool) -> None:
        """Store the connection pool used for all database interactions."""
        self._pool = pool

    def get_account(self, account_id: str) -> Account | None:
        """Fetch the current persisted state of an account or return ``None``."""
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    f"SELECT {_ACCOUNT_COLUMNS} FROM accounts WHERE account_id = %s",
                    (account_id,),
                )
                row = cur.fetchone()
        return _map_account(row) if row else None

    def get_credentials(self, email: str) -> tuple[Account, str] | None:
        """Return the account and password hash for a login email."""
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    f"SELECT {_ACCOUNT_COLUMNS}, password_hash FROM accounts WHERE lower(email) = lower(%s)",
                    (email,),
                )
                row = cur.fetchone()
        if not row:
            return None
        return _map_account(row[:-1]), row[-1]

    def get_password_hash(self, account_id: str) -> str | None:
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute("SELECT password_hash FROM accounts WHERE account_id = %s", (account_id,))
                row = cur.fetchone()
        return row[0] if row else None

    def list_accounts(
        self,
        scope: VisibilityScope,
        *,
        search: str | None = None,
        page: int = 1,
        limit: int = 10,
    ) -> Page[Account]:
        """Return active accounts visible within ``scope``, newest first."""
        page, limit = clamp_page(page, limit)
        if scope.kind is ScopeKind.ALL:
            clauses, params = ["TRUE"], []
        elif scope.kind is ScopeKind.CREATED:
            clauses, params = ["(account_id = %s OR creator_id = %s)"], [scope.account_id, scope.account_id]
        else:
            clauses, params = ["account_id = %s"], [scope.account_id]
        clauses.append("is_active")
        if search:
            clauses.append("(name ILIKE %s OR email ILIKE %s)")
            params.extend([f"%{search}%", f"%{search}%"])
        where_sql = " AND ".join(clauses)

        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(f"SELECT COUNT(*) FROM accounts WHERE {where_sql}", params)
                total = cur.fetchone()[0]
                cur.execute(
                    f"""
                    SELECT {_ACCOUNT_COLUMNS}
                    FROM accounts
                    WHERE {where_sql}
                    ORDER BY created_at DESC, account_id
                    LIMIT %s OFFSET %s
                    """,
                    [*params, limit, (page - 1) * limit],
                )
                items = [_map_account(row) for row in cur.fetchall()]
        return Page(items=items, page=page, limit=limit, total=total)

    def update_password(self, account_id: str, password_hash: str) -> None:
        with self._pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "UPDATE accounts SET password_hash = %s, updated_at = %s WHERE account_id = %s",
                    (password_hash, _utcnow(), account_id),
                )
                if cur.rowcount == 0:
                    raise NotFoundError("User not found")

    def update_preferences(
        self,
        account_id: str,
        *,
        email_notifications: bool | None = None,
        marketing_emails: bool | None = None,
    ) -> Account:
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    f"""
                    UPDATE accounts
                    SET email_notifications = COALESCE(%s, email_notifications),
                        marketing_emails = COALESCE(%s, marketing_emails),
                        updated_at = %s
                    WHERE account_id = %s
                    RETURNING {_ACCOUNT_COLUMNS}
                    """,
                    (email_notifications, marketing_emails, _utcnow(), account_id),
                )
                row = cur.fetchone()
        if row is None:
            raise NotFoundError("User not found")
        return _map_account(row)

    def update_profile(self, account_id: str, *, name: str, email: str) -> Account:
        """Rename an account; the unique index on ``lower(email)`` rejects duplicates."""
        try:
            with self._pool.connection() as conn:
                with conn.cursor(row_factory=tuple_row) as cur:
                    cur.execute(
                        f"""
                        UPDATE accounts
                        SET name = %s, email = %s, updated_at = %s
                        WHERE account_id = %s
                        RETURNING {_ACCOUNT_COLUMNS}
                        """,
                        (name, email, _utcnow(), account_id),
                    )
                    row = cur.fetchone()
        except errors.UniqueViolation as exc:
            raise ConflictError("Email already in use") from exc
        if row is None:
            raise NotFoundError("User not found")
        return _map_account(row)


class LedgerRepository:
    """Transactional writes and scoped reads over the append-only ledger."""

    def __init__(self, pool: ConnectionPool) -> None:
        self._pool = pool

    @contextmanager
    def unit_of_work(self) -> Iterator[PostgresLedgerUnit]:
        """Yield a unit whose statements commit together or not at all."""
        with self._pool.connection() as conn:
            with conn.transaction():
                with conn.cursor(row_factory=tuple_row) as cur:
                    yield PostgresLedgerUnit(cur)

    def list_transactions(self, scope: VisibilityScope, query: TransactionQuery) -> Page[Transaction]:
        page, limit = clamp_page(query.page, query.limit)
        owner_sql, params = _owner_clause(scope)
        clauses = [owner_sql]
        if query.account_id:
            clauses.append("account_id = %s")
            params.append(query.account_id)
        if query.kind:
            clauses.append("kind = %s")
            params.append(query.kind.value)
        if query.created_after:
            clauses.append("created_at >= %s")
            params.append(query.created_after)
        if query.created_before:
            clauses.append("created_at <= %s")
            params.append(query.created_before)
        where_sql = " AND ".join(clauses)

        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(f"SELECT COUNT(*) FROM transactions WHERE {where_sql}", params)
                total = cur.fetchone()[0]
                cur.execute(
                    f"""
                    SELECT {_TRANSACTION_COLUMNS}
                    FROM transactions
                    WHERE {where_sql}
                    ORDER BY created_at DESC, transaction_id DESC
                    LIMIT %s OFFSET %s
                    """,
                    [*params, limit, (page - 1) * limit],
                )
                items = [_map_transaction(row) for row in cur.fetchall()]
        return Page(items=items, page=page, limit=limit, total=total)


class ShipmentRepository:
    """Persistence for shipments and the batches that produce them."""

    def __init__(self, pool: ConnectionPool) -> None:
        self._pool = pool

    def create_shipment(self, payload: NewShipment) -> Shipment:
        now = _utcnow()
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    f"""
                    INSERT INTO shipments (
                        shipment_id, account_id, batch_id, status, rate_id, cost, carrier,
                        service_level, label_format, from_address, to_address, parcel,
                        created_at, updated_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING {_SHIPMENT_COLUMNS}
                    """,
                    (
                        str(uuid.uuid4()),
                        payload.account_id,
                        payload.batch_id,
                        payload.status.value,
                        payload.rate_id,
                        payload.cost,
                        payload.carrier,
                        payload.service_level,
                        payload.label_format,
                        Json(payload.from_address) if payload.from_address is not None else None,
                        Json(payload.to_address) if payload.to_address is not None else None,
                        Json(payload.parcel) if payload.parcel is not None else None,
                        now,
                        now,
                    ),
                )
                row = cur.fetchone()
        return _map_shipment(row)

    def get_shipment(self, shipment_id: str) -> Shipment | None:
        return self._fetch_shipment("shipment_id", shipment_id)

    def get_shipment_by_provider_id(self, provider_transaction_id: str) -> Shipment | None:
        return self._fetch_shipment("provider_transaction_id", provider_transaction_id)

    def _fetch_shipment(self, column: str, value: str) -> Shipment | None:
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(f"SELECT {_SHIPMENT_COLUMNS} FROM shipments WHERE {column} = %s", (value,))
                row = cur.fetchone()
        return _map_shipment(row) if row else None

    def mark_shipment_error(self, shipment_id: str, message: str) -> Shipment:
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                return _update_shipment(
                    cur,
                    shipment_id,
                    {"status": ShipmentStatus.ERROR, "error_message": message[:1000]},
                )

    def list_shipments(self, scope: VisibilityScope, query: ShipmentQuery) -> Page[Shipment]:
        page, limit = clamp_page(query.page, query.limit)
        owner_sql, params = _owner_clause(scope)
        clauses = [owner_sql]
        if query.account_id:
            clauses.append("account_id = %s")
            params.append(query.account_id)
        if query.status:
            clauses.append("status = %s")
            params.append(query.status.value)
        if query.batch_id:
            clauses.append("batch_id = %s")
            params.append(query.batch_id)
        where_sql = " AND ".join(clauses)

        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(f"SELECT COUNT(*) FROM shipments WHERE {where_sql}", params)
                total = cur.fetchone()[0]
                cur.execute(
                    f"""
                    SELECT {_SHIPMENT_COLUMNS}
                    FROM shipments
                    WHERE {where_sql}
                    ORDER BY created_at DESC, shipment_id
                    LIMIT %s OFFSET %s
                    """,
                    [*params, limit, (page - 1) * limit],
                )
                items = [_map_shipment(row) for row in cur.fetchall()]
        return Page(items=items, page=page, limit=limit, total=total)

    def create_batch(self, account_id: str, filename: str | None, total_rows: int) -> Batch:
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    f"""
                    INSERT INTO batches (batch_id, account_id, filename, total_rows, status, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING {_BATCH_COLUMNS}
                    """,
                    (str(uuid.uuid4()), account_id, filename, total_rows, BatchStatus.PROCESSING.value, _utcnow()),
                )
                row = cur.fetchone()
        return _map_batch(row)

    def get_batch(self, batch_id: str) -> Batch | None:
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(f"SELECT {_BATCH_COLUMNS} FROM batches WHERE batch_id = %s", (batch_id,))
                row = cur.fetchone()
        return _map_batch(row) if row else None

    def list_batches(self, scope: VisibilityScope, limit: int = 100) -> list[Batch]:
        owner_sql, params = _owner_clause(scope)
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    f"""
                    SELECT {_BATCH_COLUMNS}
                    FROM batches
                    WHERE {owner_sql}
                    ORDER BY created_at DESC
                    LIMIT %s
                    """,
                    [*params, limit],
                )
                return [_map_batch(row) for row in cur.fetchall()]

    def record_batch_row(self, batch_id: str, *, success: bool) -> Batch:
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    f"""
                    UPDATE batches
                    SET processed_rows = processed_rows + 1,
                        successful_rows = successful_rows + %s,
                        failed_rows = failed_rows + %s
                    WHERE batch_id = %s
                    RETURNING {_BATCH_COLUMNS}
                    """,
                    (1 if success else 0, 0 if success else 1, batch_id),
                )
                row = cur.fetchone()
        if row is None:
            raise NotFoundError("Batch not found")
        return _map_batch(row)

    def finish_batch(self, batch_id: str, status: BatchStatus, error_log: str | None) -> Batch:
        """Close a PROCESSING batch; a batch cancelled meanwhile keeps its status."""
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    """
                    UPDATE batches
                    SET status = %s, error_log = %s, completed_at = %s
                    WHERE batch_id = %s AND status = %s
                    """,
                    (status.value, error_log, _utcnow(), batch_id, BatchStatus.PROCESSING.value),
                )
                cur.execute(f"SELECT {_BATCH_COLUMNS} FROM batches WHERE batch_id = %s", (batch_id,))
                row = cur.fetchone()
        if row is None:
            raise NotFoundError("Batch not found")
        return _map_batch(row)

    def cancel_batch(self, batch_id: str) -> Batch | None:
        """Move a PROCESSING batch to CANCELLED; ``None`` when it was not processing."""
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    f"""
                    UPDATE batches
                    SET status = %s, completed_at = %s
                    WHERE batch_id = %s AND status = %s
                    RETURNING {_BATCH_COLUMNS}
                    """,
                    (BatchStatus.CANCELLED.value, _utcnow(), batch_id, BatchStatus.PROCESSING.value),
                )
                row = cur.fetchone()
        return _map_batch(row) if row else None
