"""
Balance ledger.

The single writer of ``users.account_balance``. Every balance change is one
SQLite ``BEGIN IMMEDIATE`` transaction that checks the idempotency key,
reads the balance, writes the new balance and appends a BalanceTransaction,
so that a user's balance always equals the sum of their transaction amounts.
"""

import json
import sqlite3
import time
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Callable, Dict, List, Optional, Union

import structlog

from craft_ledger.storage.db import DEFAULT_DB_PATH, get_connection, to_db_decimal, to_db_time, utcnow
from craft_ledger.storage.models import BalanceTransaction, TransactionType
from craft_ledger.storage.repository import (
    TRANSACTION_COLUMNS,
    TransactionRepository,
    new_id,
    row_to_transaction,
)

from .exceptions import LedgerConflictError, UserNotFound

logger = structlog.get_logger(__name__)

MONEY_QUANTUM = Decimal("0.000001")

Amount = Union[Decimal, int, str]
TransactionHook = Callable[[sqlite3.Connection, str], None]


def quantize_money(value: Amount) -> Decimal:
    """Round a USD amount to micro-dollars, half-up."""
    if isinstance(value, float):
        value = str(value)
    return Decimal(value).quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class RetryPolicy:
    """Retry settings for transactions that hit a locked database."""
    attempts: int = 5
    base_delay: float = 0.05
    max_delay: float = 1.0

    def __post_init__(self):
        """Validate retry settings."""
        if self.attempts < 1:
            raise ValueError("attempts must be >= 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("retry delays cannot be negative")

    def delay(self, attempt: int) -> float:
        """Exponential backoff for the given zero-based attempt."""
        return min(self.base_delay * (2 ** attempt), self.max_delay)


@dataclass(frozen=True)
class LedgerResult:
    """Outcome of a debit or credit.

    ``amount`` is signed as recorded (debits negative). ``duplicate`` is True
    when the idempotency key had already been used; the snapshot is then the
    original transaction's and nothing was written.
    """
    transaction_id: str
    balance_before: Decimal
    balance_after: Decimal
    amount: Decimal
    duplicate: bool = False


@dataclass(frozen=True)
class ExpirationResult:
    """Outcome of expiring one top-up."""
    topup_id: str
    user_id: str
    expired_amount: Decimal
    balance_before: Decimal
    balance_after: Decimal
    transaction_id: Optional[str] = None


@dataclass(frozen=True)
class ReconciliationResult:
    """Stored balance compared with the sum of a user's transactions."""
    user_id: str
    stored_balance: Decimal
    computed_balance: Decimal
    transaction_count: int

    @property
    def difference(self) -> Decimal:
        return self.stored_balance - self.computed_balance

    @property
    def is_consistent(self) -> bool:
        return self.difference == 0


def _is_lock_error(error: sqlite3.Error) -> bool:
    message = str(error).lower()
    return "locked" in message or "busy" in message


class Ledger:
    """Atomic balance operations over the SQLite store."""

    def __init__(
        self,
        db_path: str = DEFAULT_DB_PATH,
        retry: RetryPolicy = RetryPolicy(),
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.db_path = db_path
        self.retry = retry
        self._clock = clock
        self._sleep = sleep
        self._transactions = TransactionRepository(db_path)

    def debit(
        self,
        user_id: str,
        amount: Amount,
        type: TransactionType,
        description: str,
        metadata: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
        within_transaction: Optional[TransactionHook] = None,
        now: Optional[datetime] = None,
    ) -> LedgerResult:
        """Subtract ``amount`` from a user's balance.

        Debits never check the balance: it may go negative. Callers decide
        beforehand whether usage may start.

        Args:
            user_id: Account to debit
            amount: Non-negative USD amount
            type: Transaction type
            description: Human-readable description
            metadata: JSON-serializable details stored with the transaction
            idempotency_key: Optional unique key; a repeat returns the original
                result with ``duplicate=True``
            within_transaction: Called with ``(conn, transaction_id)`` inside
                the same database transaction, e.g. to write an audit row

        Raises:
            ValueError: If amount is negative
            UserNotFound: If the user does not exist
            LedgerConflictError: If the database stays locked after all retries
        """
        value = self._validate_amount(amount)
        return self._apply(
            "ledger_debit", user_id, -value, type, description, metadata, idempotency_key,
            within_transaction, now,
        )

    def credit(
        self,
        user_id: str,
        amount: Amount,
        type: TransactionType,
        description: str,
        metadata: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
        within_transaction: Optional[TransactionHook] = None,
        now: Optional[datetime] = None,
    ) -> LedgerResult:
        """Add ``amount`` to a user's balance. Same contract as ``debit``."""
        value = self._validate_amount(amount)
        return self._apply(
            "ledger_credit", user_id, value, type, description, metadata, idempotency_key,
            within_transaction, now,
        )

    def expire_topup(self, topup_id: str, now: Optional[datetime] = None) -> Optional[ExpirationResult]:
        """Expire a top-up in one atomic unit.

        Debits ``min(topup amount, max(balance, 0))`` so the balance never
        goes negative because of expiration, then flags the top-up as
        expired. The ``expired = 0`` filter is re-checked inside the
        transaction, so concurrent sweeps expire each top-up once.

        Returns:
            ExpirationResult, or None if the top-up was already expired

        Raises:
            ValueError: If no top-up with this id exists
        """
        at = now or self._clock()

        def operation(conn: sqlite3.Connection) -> Optional[ExpirationResult]:
            row = conn.execute(
                f"SELECT {TRANSACTION_COLUMNS} FROM balance_transactions WHERE id = ? AND type = ?",
                (topup_id, TransactionType.TOPUP.value),
            ).fetchone()
            if row is None:
                raise ValueError(f"Top-up {topup_id} not found")
            topup = row_to_transaction(row)
            if topup.expired:
                return None

            balance = self._read_balance(conn, topup.user_id)
            expired_amount = quantize_money(min(topup.amount, max(balance, Decimal("0"))))
            balance_after = balance
            transaction_id = None

            if expired_amount > 0:
                transaction_id = new_id()
                balance_after = quantize_money(balance - expired_amount)
                self._insert(
                    conn,
                    transaction_id=transaction_id,
                    user_id=topup.user_id,
                    type=TransactionType.EXPIRATION,
                    amount=-expired_amount,
                    balance_before=balance,
                    balance_after=balance_after,
                    description="Token expiration",
                    metadata={
                        "reason": "expiration",
                        "originalTopupId": topup.id,
                        "originalAmount": str(topup.amount),
                    },
                    idempotency_key=f"expire:{topup.id}",
                    created_at=at,
                )

            topup_metadata = dict(topup.metadata)
            topup_metadata.update({
                "expiredAt": to_db_time(at),
                "expiredAmount": str(expired_amount),
            })
            conn.execute(
                """
                UPDATE balance_transactions
                SET expired = 1, expired_at = ?, expired_amount = ?, metadata = ?
                WHERE id = ? AND expired = 0
                """,
                (
                    to_db_time(at),
                    to_db_decimal(expired_amount),
                    json.dumps(topup_metadata, sort_keys=True),
                    topup.id,
                ),
            )
            return ExpirationResult(
                topup_id=topup.id,
                user_id=topup.user_id,
                expired_amount=expired_amount,
                balance_before=balance,
                balance_after=balance_after,
                transaction_id=transaction_id,
            )

        result = self._run("expire_topup", operation)
        if result is not None:
            logger.info(
                "ledger_topup_expired",
                topup_id=topup_id,
                user_id=result.user_id,
                amount=str(result.expired_amount),
                balance_after=str(result.balance_after),
            )
        return result

    def reconcile(self, user_id: str) -> ReconciliationResult:
        """Compare the stored balance with the sum of the user's transactions.

        Raises:
            UserNotFound: If the user does not exist
        """
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN")
            try:
                stored = self._read_balance(conn, user_id)
                rows = conn.execute(
                    "SELECT amount FROM balance_transactions WHERE user_id = ?", (user_id,)
                ).fetchall()
            finally:
                conn.execute("ROLLBACK")
        finally:
            conn.close()

        computed = sum((Decimal(row[0]) for row in rows), Decimal("0"))
        result = ReconciliationResult(
            user_id=user_id,
            stored_balance=stored,
            computed_balance=computed,
            transaction_count=len(rows),
        )
        if not result.is_consistent:
            logger.error(
                "ledger_reconciliation_mismatch",
                user_id=user_id,
                stored=str(stored),
                computed=str(computed),
            )
        return result

    def get_balance(self, user_id: str) -> Decimal:
        conn = get_connection(self.db_path)
        try:
            return self._read_balance(conn, user_id)
        finally:
            conn.close()

    def get_transactions(
        self,
        user_id: str,
        limit: int = 50,
        type: Optional[TransactionType] = None,
    ) -> List[BalanceTransaction]:
        """Transactions of a user, newest first."""
        return self._transactions.get_transactions(user_id, limit=limit, type=type)

    def find_by_idempotency_key(self, key: str) -> Optional[BalanceTransaction]:
        conn = get_connection(self.db_path)
        try:
            return self._find_by_key(conn, key)
        finally:
            conn.close()

    @staticmethod
    def _validate_amount(amount: Amount) -> Decimal:
        value = quantize_money(amount)
        if value < 0:
            raise ValueError("amount cannot be negative")
        return value

    def _apply(
        self,
        event: str,
        user_id: str,
        signed_amount: Decimal,
        type: TransactionType,
        description: str,
        metadata: Optional[Dict[str, Any]],
        idempotency_key: Optional[str],
        within_transaction: Optional[TransactionHook],
        now: Optional[datetime],
    ) -> LedgerResult:
        at = now or self._clock()

        def operation(conn: sqlite3.Connection) -> LedgerResult:
            if idempotency_key is not None:
                existing = self._find_by_key(conn, idempotency_key)
                if existing is not None:
                    return LedgerResult(
                        transaction_id=existing.id,
                        balance_before=existing.balance_before,
                        balance_after=existing.balance_after,
                        amount=existing.amount,
                        duplicate=True,
                    )

            balance_before = self._read_balance(conn, user_id)
            balance_after = quantize_money(balance_before + signed_amount)
            transaction_id = new_id()
            self._insert(
                conn,
                transaction_id=transaction_id,
                user_id=user_id,
                type=type,
                amount=signed_amount,
                balance_before=balance_before,
                balance_after=balance_after,
                description=description,
                metadata=metadata or {},
                idempotency_key=idempotency_key,
                created_at=at,
            )
            if within_transaction is not None:
                within_transaction(conn, transaction_id)
            return LedgerResult(
                transaction_id=transaction_id,
                balance_before=balance_before,
                balance_after=balance_after,
                amount=signed_amount,
            )

        result = self._run(type.value.lower(), operation)
        if result.duplicate:
            logger.info(
                "ledger_duplicate",
                user_id=user_id,
                idempotency_key=idempotency_key,
                transaction_id=result.transaction_id,
            )
        else:
            logger.info(
                event,
                user_id=user_id,
                type=type.value,
                amount=str(signed_amount),
                balance_after=str(result.balance_after),
                transaction_id=result.transaction_id,
            )
        return result

    def _run(self, operation_name: str, operation: Callable[[sqlite3.Connection], Any]) -> Any:
        """Run ``operation`` in a ``BEGIN IMMEDIATE`` transaction with lock retries."""
        for attempt in range(self.retry.attempts):
            conn = get_connection(self.db_path)
            try:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    result = operation(conn)
                    conn.execute("COMMIT")
                    return result
                except BaseException:
                    if conn.in_transaction:
                        conn.execute("ROLLBACK")
                    raise
            except sqlite3.OperationalError as e:
                if not _is_lock_error(e):
                    raise
                if attempt == self.retry.attempts - 1:
                    logger.error(
                        "ledger_conflict", operation=operation_name, attempts=self.retry.attempts
                    )
                    raise LedgerConflictError(
                        f"{operation_name} failed after {self.retry.attempts} attempts: {e}"
                    ) from e
                delay = self.retry.delay(attempt)
                logger.warning(
                    "ledger_retry", operation=operation_name, attempt=attempt + 1, delay=delay
                )
                self._sleep(delay)
            finally:
                conn.close()
        raise LedgerConflictError(f"{operation_name} could not be attempted")

    @staticmethod
    def _read_balance(conn: sqlite3.Connection, user_id: str) -> Decimal:
        row = conn.execute(
            "SELECT account_balance FROM users WHERE id = ?", (user_id,)
        ).fetchone()
        if row is None:
            raise UserNotFound(user_id)
        return Decimal(row[0])

    @staticmethod
    def _find_by_key(conn: sqlite3.Connection, key: str) -> Optional[BalanceTransaction]:
        row = conn.execute(
            f"SELECT {TRANSACTION_COLUMNS} FROM balance_transactions WHERE idempotency_key = ?",
            (key,),
        ).fetchone()
        return row_to_transaction(row) if row else None

    @staticmethod
    def _insert(
        conn: sqlite3.Connection,
        transaction_id: str,
        user_id: str,
        type: TransactionType,
        amount: Decimal,
        balance_before: Decimal,
        balance_after: Decimal,
        description: str,
        metadata: Dict[str, Any],
        idempotency_key: Optional[str],
        created_at: datetime,
    ) -> None:
        conn.execute(
            "UPDATE users SET account_balance = ? WHERE id = ?",
            (to_db_decimal(balance_after), user_id),
        )
        conn.execute(
            f"""
            INSERT INTO balance_transactions ({TRANSACTION_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, NULL, NULL)
            """,
            (
                transaction_id,
                user_id,
                type.value,
                to_db_decimal(amount),
                to_db_decimal(balance_before),
                to_db_decimal(balance_after),
                description,
                to_db_time(created_at),
                json.dumps(metadata, sort_keys=True, default=str),
                idempotency_key,
            ),
        )
