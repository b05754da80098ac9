"""
Database connection management.

Provides SQLite connection for data persistence, plus the timestamp and
decimal encodings every table uses.
"""

import sqlite3
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Optional

DEFAULT_DB_PATH = "craft_ledger.db"

# Seconds a writer waits on a locked database before sqlite raises
BUSY_TIMEOUT = 5.0


def get_connection(db_path: str = DEFAULT_DB_PATH, timeout: float = BUSY_TIMEOUT) -> sqlite3.Connection:
    """Create and return a SQLite database connection with foreign keys enabled.

    The connection runs in autocommit mode; multi-statement units open
    their own ``BEGIN``/``BEGIN IMMEDIATE`` explicitly.

    Args:
        db_path: Path to SQLite database file
        timeout: Busy timeout in seconds

    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=timeout, isolation_level=None)
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_db_time(value: Optional[datetime]) -> Optional[str]:
    """Encode a timezone-aware datetime as a sortable UTC ISO string."""
    if value is None:
        return None
    if value.tzinfo is None:
        raise ValueError("datetime must be timezone-aware")
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_time(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)


def to_db_decimal(value: Optional[Decimal]) -> Optional[str]:
    """Decimals are stored as TEXT so no precision is lost."""
    if value is None:
        return None
    return str(value)


def from_db_decimal(value: Optional[str]) -> Optional[Decimal]:
    if value is None:
        return None
    return Decimal(value)
