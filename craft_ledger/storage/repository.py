"""
Repository pattern for data access.

Handles database operations and data persistence logic. Balances are never
written here: ``users.account_balance`` belongs to the Ledger, which shares
the schema and row mappers defined in this module.
"""

import json
import sqlite3
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence

from craft_ledger.core.exceptions import UserNotFound

from .db import (
    DEFAULT_DB_PATH,
    from_db_decimal,
    from_db_time,
    get_connection,
    to_db_decimal,
    to_db_time,
    utcnow,
)
from .models import (
    AIUsageRecord,
    BalanceTransaction,
    MonitoredResource,
    ResourceKind,
    ResourceStatus,
    TransactionType,
    UserAccount,
)


USER_COLUMNS = "id, email, plan, account_balance, created_at, low_balance_warned_at"

TRANSACTION_COLUMNS = (
    "id, user_id, type, amount, balance_before, balance_after, description, "
    "created_at, metadata, idempotency_key, expired, expired_at, expired_amount"
)

RESOURCE_COLUMNS = (
    "id, user_id, kind, name, status, created_at, external_ref, paused_at, "
    "last_active_at, database_storage_gb, file_storage_gb"
)

USAGE_COLUMNS = (
    "user_id, model_id, provider, usage, breakdown, total_cost, created_at, "
    "transaction_id, project_id, request_id"
)


def row_to_user(row: Sequence) -> UserAccount:
    return UserAccount(
        id=row[0],
        email=row[1],
        plan=row[2],
        account_balance=Decimal(row[3]),
        created_at=from_db_time(row[4]),
        low_balance_warned_at=from_db_time(row[5]),
    )


def row_to_transaction(row: Sequence) -> BalanceTransaction:
    return BalanceTransaction(
        id=row[0],
        user_id=row[1],
        type=TransactionType(row[2]),
        amount=Decimal(row[3]),
        balance_before=Decimal(row[4]),
        balance_after=Decimal(row[5]),
        description=row[6],
        created_at=from_db_time(row[7]),
        metadata=json.loads(row[8]) if row[8] else {},
        idempotency_key=row[9],
        expired=bool(row[10]),
        expired_at=from_db_time(row[11]),
        expired_amount=from_db_decimal(row[12]),
    )


def row_to_resource(row: Sequence) -> MonitoredResource:
    return MonitoredResource(
        id=row[0],
        user_id=row[1],
        kind=ResourceKind(row[2]),
        name=row[3],
        status=ResourceStatus(row[4]),
        created_at=from_db_time(row[5]),
        external_ref=row[6],
        paused_at=from_db_time(row[7]),
        last_active_at=from_db_time(row[8]),
        database_storage_gb=from_db_decimal(row[9]),
        file_storage_gb=from_db_decimal(row[10]),
    )


def row_to_usage_record(row: Sequence) -> AIUsageRecord:
    return AIUsageRecord(
        user_id=row[0],
        model_id=row[1],
        provider=row[2],
        usage=json.loads(row[3]),
        breakdown=json.loads(row[4]),
        total_cost=Decimal(row[5]),
        created_at=from_db_time(row[6]),
        transaction_id=row[7],
        project_id=row[8],
        request_id=row[9],
    )


def new_id() -> str:
    return uuid.uuid4().hex


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create all tables if they don't exist.

    ``balance_transactions`` is an append-only ledger: rows are never
    deleted, and only the expiry columns of top-ups are updated after insert.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.executescript("""
            PRAGMA journal_mode = WAL;

            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                email TEXT NOT NULL UNIQUE,
                plan TEXT NOT NULL DEFAULT 'FREE',
                account_balance TEXT NOT NULL DEFAULT '0',
                created_at TEXT NOT NULL,
                low_balance_warned_at TEXT
            );

            CREATE TABLE IF NOT EXISTS balance_transactions (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL REFERENCES users(id),
                type TEXT NOT NULL,
                amount TEXT NOT NULL,
                balance_before TEXT NOT NULL,
                balance_after TEXT NOT NULL,
                description TEXT NOT NULL,
                created_at TEXT NOT NULL,
                metadata TEXT NOT NULL DEFAULT '{}',
                idempotency_key TEXT UNIQUE,
                expired INTEGER NOT NULL DEFAULT 0,
                expired_at TEXT,
                expired_amount TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_transactions_user_created
                ON balance_transactions (user_id, created_at);
            CREATE INDEX IF NOT EXISTS idx_transactions_expiry
                ON balance_transactions (type, expired, created_at);

            CREATE TABLE IF NOT EXISTS resources (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL REFERENCES users(id),
                kind TEXT NOT NULL,
                name TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'active',
                created_at TEXT NOT NULL,
                external_ref TEXT,
                paused_at TEXT,
                last_active_at TEXT,
                database_storage_gb TEXT,
                file_storage_gb TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_resources_kind_status
                ON resources (kind, status);

            CREATE TABLE IF NOT EXISTS ai_usage_records (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL REFERENCES users(id),
                model_id TEXT NOT NULL,
                provider TEXT NOT NULL,
                usage TEXT NOT NULL,
                breakdown TEXT NOT NULL,
                total_cost TEXT NOT NULL,
                created_at TEXT NOT NULL,
                transaction_id TEXT REFERENCES balance_transactions(id),
                project_id TEXT,
                request_id TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_ai_usage_user_created
                ON ai_usage_records (user_id, created_at);
        """)
    finally:
        conn.close()


def insert_ai_usage_record(conn: sqlite3.Connection, record: AIUsageRecord) -> None:
    """Append an AI usage audit row on an open connection.

    Runs inside the caller's transaction so the audit row commits or rolls
    back together with the ledger debit.
    """
    conn.execute(
        f"INSERT INTO ai_usage_records ({USAGE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
        (
            record.user_id,
            record.model_id,
            record.provider,
            json.dumps(record.usage, sort_keys=True),
            json.dumps(record.breakdown, sort_keys=True),
            to_db_decimal(record.total_cost),
            to_db_time(record.created_at),
            record.transaction_id,
            record.project_id,
            record.request_id,
        ),
    )


class AccountRepository:
    """Read access to accounts plus the non-balance account fields."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def create_user(
        self,
        email: str,
        plan: str = "FREE",
        user_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> UserAccount:
        """Create an account with a zero balance.

        Initial funds must enter through ``Ledger.credit`` so that the
        balance always equals the sum of its transactions.
        """
        if not email or "@" not in email:
            raise ValueError(f"Invalid email: {email}")
        user = UserAccount(
            id=user_id or new_id(),
            email=email,
            plan=plan.upper(),
            account_balance=Decimal("0"),
            created_at=now or utcnow(),
        )
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                f"INSERT INTO users ({USER_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?)",
                (
                    user.id,
                    user.email,
                    user.plan,
                    "0",
                    to_db_time(user.created_at),
                    None,
                ),
            )
        finally:
            conn.close()
        return user

    def get_user(self, user_id: str) -> Optional[UserAccount]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                f"SELECT {USER_COLUMNS} FROM users WHERE id = ?", (user_id,)
            ).fetchone()
            return row_to_user(row) if row else None
        finally:
            conn.close()

    def get_user_by_email(self, email: str) -> Optional[UserAccount]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                f"SELECT {USER_COLUMNS} FROM users WHERE email = ?", (email,)
            ).fetchone()
            return row_to_user(row) if row else None
        finally:
            conn.close()

    def get_balance(self, user_id: str) -> Decimal:
        """Current stored balance.

        Raises:
            UserNotFound: If the user does not exist
        """
        user = self.get_user(user_id)
        if user is None:
            raise UserNotFound(user_id)
        return user.account_balance

    def list_users(self) -> List[UserAccount]:
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(
                f"SELECT {USER_COLUMNS} FROM users ORDER BY created_at, id"
            ).fetchall()
            return [row_to_user(row) for row in rows]
        finally:
            conn.close()

    def set_low_balance_warned_at(self, user_id: str, at: datetime) -> None:
        self._set_warned_at(user_id, to_db_time(at))

    def clear_low_balance_warned_at(self, user_id: str) -> None:
        self._set_warned_at(user_id, None)

    def _set_warned_at(self, user_id: str, value: Optional[str]) -> None:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "UPDATE users SET low_balance_warned_at = ? WHERE id = ?", (value, user_id)
            )
            if cursor.rowcount == 0:
                raise UserNotFound(user_id)
        finally:
            conn.close()


class ResourceRepository:
    """Billable resources (sandboxes, databases, deployments)."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def add_resource(
        self,
        user_id: str,
        kind: ResourceKind,
        name: str,
        external_ref: Optional[str] = None,
        database_storage_gb: Optional[Decimal] = None,
        file_storage_gb: Optional[Decimal] = None,
        resource_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> MonitoredResource:
        created = now or utcnow()
        resource = MonitoredResource(
            id=resource_id or new_id(),
            user_id=user_id,
            kind=kind,
            name=name,
            status=ResourceStatus.ACTIVE,
            created_at=created,
            external_ref=external_ref,
            last_active_at=created,
            database_storage_gb=database_storage_gb,
            file_storage_gb=file_storage_gb,
        )
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                f"INSERT INTO resources ({RESOURCE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    resource.id,
                    resource.user_id,
                    resource.kind.value,
                    resource.name,
                    resource.status.value,
                    to_db_time(resource.created_at),
                    resource.external_ref,
                    None,
                    to_db_time(resource.last_active_at),
                    to_db_decimal(resource.database_storage_gb),
                    to_db_decimal(resource.file_storage_gb),
                ),
            )
        except sqlite3.IntegrityError as e:
            if "FOREIGN KEY" in str(e):
                raise UserNotFound(user_id)
            raise
        finally:
            conn.close()
        return resource

    def get_resource(self, resource_id: str) -> Optional[MonitoredResource]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                f"SELECT {RESOURCE_COLUMNS} FROM resources WHERE id = ?", (resource_id,)
            ).fetchone()
            return row_to_resource(row) if row else None
        finally:
            conn.close()

    def list_for_user(self, user_id: str) -> List[MonitoredResource]:
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(
                f"SELECT {RESOURCE_COLUMNS} FROM resources WHERE user_id = ? ORDER BY id",
                (user_id,),
            ).fetchall()
            return [row_to_resource(row) for row in rows]
        finally:
            conn.close()

    def list_billable(
        self,
        kinds: Iterable[ResourceKind],
        paused_since: Optional[datetime] = None,
        after_id: Optional[str] = None,
    ) -> List[MonitoredResource]:
        """Resources to bill, ordered by id.

        Args:
            kinds: Resource kinds to include
            paused_since: Also include resources paused at or after this time,
                so the part of the window before the pause is still billed
            after_id: Resume checkpoint; only ids greater than this are returned

        Returns:
            Active resources (plus recently paused ones) in id order
        """
        kind_values = [k.value for k in kinds]
        if not kind_values:
            return []
        query = f"SELECT {RESOURCE_COLUMNS} FROM resources WHERE kind IN ({', '.join('?' * len(kind_values))})"
        params: List = list(kind_values)

        if paused_since is not None:
            query += " AND (status = ? OR (status IN (?, ?) AND paused_at >= ?))"
            params.extend([
                ResourceStatus.ACTIVE.value,
                ResourceStatus.PAUSED.value,
                ResourceStatus.PAUSED_LOW_BALANCE.value,
                to_db_time(paused_since),
            ])
        else:
            query += " AND status = ?"
            params.append(ResourceStatus.ACTIVE.value)

        if after_id is not None:
            query += " AND id > ?"
            params.append(after_id)

        query += " ORDER BY id"

        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(query, params).fetchall()
            return [row_to_resource(row) for row in rows]
        finally:
            conn.close()

    def mark_paused(
        self,
        resource_id: str,
        at: datetime,
        status: ResourceStatus = ResourceStatus.PAUSED_LOW_BALANCE,
    ) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                "UPDATE resources SET status = ?, paused_at = ? WHERE id = ?",
                (status.value, to_db_time(at), resource_id),
            )
        finally:
            conn.close()

    def resume(self, resource_id: str, at: datetime) -> bool:
        """Reactivate a paused resource; billing restarts from ``at``.

        Returns:
            False if the resource is unknown or not paused
        """
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "UPDATE resources SET status = ?, paused_at = NULL, last_active_at = ? "
                "WHERE id = ? AND status IN (?, ?)",
                (
                    ResourceStatus.ACTIVE.value,
                    to_db_time(at),
                    resource_id,
                    ResourceStatus.PAUSED.value,
                    ResourceStatus.PAUSED_LOW_BALANCE.value,
                ),
            )
            return cursor.rowcount == 1
        finally:
            conn.close()


class TransactionRepository:
    """Read-only queries over the balance ledger."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def _query(self, where: str, params: Sequence, suffix: str = "") -> List[BalanceTransaction]:
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(
                f"SELECT {TRANSACTION_COLUMNS} FROM balance_transactions WHERE {where} {suffix}",
                params,
            ).fetchall()
            return [row_to_transaction(row) for row in rows]
        finally:
            conn.close()

    def get_transactions(
        self,
        user_id: str,
        limit: int = 50,
        type: Optional[TransactionType] = None,
    ) -> List[BalanceTransaction]:
        """Transactions of a user, newest first."""
        where = "user_id = ?"
        params: List = [user_id]
        if type is not None:
            where += " AND type = ?"
            params.append(type.value)
        params.append(limit)
        return self._query(where, params, "ORDER BY created_at DESC, rowid DESC LIMIT ?")

    def list_expirable_topups(self, cutoff: datetime) -> List[BalanceTransaction]:
        """Unexpired top-ups created at or before ``cutoff``, oldest first."""
        return self._query(
            "type = ? AND expired = 0 AND created_at <= ?",
            [TransactionType.TOPUP.value, to_db_time(cutoff)],
            "ORDER BY created_at, id",
        )

    def list_unexpired_topups(
        self,
        created_after: datetime,
        created_before: datetime,
        user_id: Optional[str] = None,
    ) -> List[BalanceTransaction]:
        """Unexpired top-ups created in ``(created_after, created_before]``."""
        where = "type = ? AND expired = 0 AND created_at > ? AND created_at <= ?"
        params: List = [
            TransactionType.TOPUP.value,
            to_db_time(created_after),
            to_db_time(created_before),
        ]
        if user_id is not None:
            where += " AND user_id = ?"
            params.append(user_id)
        return self._query(where, params, "ORDER BY created_at, id")

    def list_expired_since(self, since: datetime) -> List[BalanceTransaction]:
        return self._query(
            "type = ? AND expired = 1 AND expired_at >= ?",
            [TransactionType.TOPUP.value, to_db_time(since)],
            "ORDER BY expired_at",
        )


class UsageRepository:
    """Repository for accessing AI usage audit records.

    This class provides a higher-level interface to the database operations,
    making it easier to work with usage data in a type-safe manner.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def add_record(self, record: AIUsageRecord) -> bool:
        """Store an audit row that has no ledger transaction.

        Returns:
            False if a record with the same ``request_id`` already exists

        Raises:
            UserNotFound: If the user does not exist
        """
        conn = get_connection(self.db_path)
        try:
            if record.request_id is not None and conn.execute(
                "SELECT 1 FROM ai_usage_records WHERE request_id = ?", (record.request_id,)
            ).fetchone():
                return False
            insert_ai_usage_record(conn, record)
            return True
        except sqlite3.IntegrityError as e:
            if "FOREIGN KEY" in str(e):
                raise UserNotFound(record.user_id)
            raise
        finally:
            conn.close()

    def get_recent_records(
        self,
        user_id: Optional[str] = None,
        model_id: Optional[str] = None,
        days: Optional[int] = None,
        limit: int = 1000,
        now: Optional[datetime] = None,
    ) -> List[AIUsageRecord]:
        """Get recent usage records with optional filtering.

        Args:
            user_id: Optional filter for a specific user
            model_id: Optional filter for a specific model
            days: Optional number of days to look back
            limit: Maximum number of records to return

        Returns:
            List of usage records ordered by time (newest first)
        """
        conn = get_connection(self.db_path)
        try:
            query = f"SELECT {USAGE_COLUMNS} FROM ai_usage_records"
            params: List = []
            conditions = []

            if user_id:
                conditions.append("user_id = ?")
                params.append(user_id)
            if model_id:
                conditions.append("model_id = ?")
                params.append(model_id)
            if days is not None:
                cutoff = (now or utcnow()) - timedelta(days=days)
                conditions.append("created_at >= ?")
                params.append(to_db_time(cutoff))

            if conditions:
                query += " WHERE " + " AND ".join(conditions)

            query += " ORDER BY created_at DESC, id DESC LIMIT ?"
            params.append(limit)

            return [row_to_usage_record(row) for row in conn.execute(query, params).fetchall()]
        finally:
            conn.close()

    def get_usage_stats(
        self,
        user_id: Optional[str] = None,
        model_id: Optional[str] = None,
        days: int = 30,
        now: Optional[datetime] = None,
    ) -> Dict[str, object]:
        """Get usage statistics for the specified time period.

        Returns:
            Dictionary with ``total_requests``, ``total_cost``, ``avg_cost``
            and ``total_tokens``
        """
        records = self.get_recent_records(
            user_id=user_id, model_id=model_id, days=days, limit=-1, now=now
        )
        total_cost = sum((r.total_cost for r in records), Decimal("0"))
        total_tokens = sum(
            r.usage.get("input_tokens", 0)
            + r.usage.get("output_tokens", 0)
            + r.usage.get("reasoning_tokens", 0)
            for r in records
        )
        return {
            "total_requests": len(records),
            "total_cost": total_cost,
            "avg_cost": total_cost / len(records) if records else Decimal("0"),
            "total_tokens": total_tokens,
        }
