"""
Data models for storage layer.

Defines database entities and data structures.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional


class TransactionType(Enum):
    """Kinds of balance movements recorded in the ledger."""
    TOPUP = "TOPUP"
    AI_USAGE = "AI_USAGE"
    SANDBOX_USAGE = "SANDBOX_USAGE"
    DATABASE_USAGE = "DATABASE_USAGE"
    STORAGE_USAGE = "STORAGE_USAGE"
    RUNTIME_USAGE = "RUNTIME_USAGE"
    DEPLOYMENT = "DEPLOYMENT"
    EXPIRATION = "EXPIRATION"
    REFERRAL_CREDIT = "REFERRAL_CREDIT"
    ADJUSTMENT = "ADJUSTMENT"


class ResourceKind(Enum):
    SANDBOX = "sandbox"
    DATABASE = "database"
    DEPLOYMENT = "deployment"


class ResourceStatus(Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    PAUSED_LOW_BALANCE = "paused_low_balance"
    DELETED = "deleted"


@dataclass(frozen=True)
class UserAccount:
    """A prepaid account. ``account_balance`` is only ever written by the Ledger."""
    id: str
    email: str
    plan: str
    account_balance: Decimal
    created_at: datetime
    low_balance_warned_at: Optional[datetime] = None


@dataclass(frozen=True)
class BalanceTransaction:
    """Immutable record of a balance movement.

    Append-only: once written, only the expiry columns of a TOPUP row are
    ever updated. ``amount`` is signed (credits positive, debits negative).
    """
    id: str
    user_id: str
    type: TransactionType
    amount: Decimal
    balance_before: Decimal
    balance_after: Decimal
    description: str
    created_at: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)
    idempotency_key: Optional[str] = None
    expired: bool = False
    expired_at: Optional[datetime] = None
    expired_amount: Optional[Decimal] = None


@dataclass(frozen=True)
class MonitoredResource:
    """A billable resource owned by a user."""
    id: str
    user_id: str
    kind: ResourceKind
    name: str
    status: ResourceStatus
    created_at: datetime
    external_ref: Optional[str] = None
    paused_at: Optional[datetime] = None
    last_active_at: Optional[datetime] = None  # created or last resumed
    database_storage_gb: Optional[Decimal] = None
    file_storage_gb: Optional[Decimal] = None


@dataclass(frozen=True)
class AIUsageRecord:
    """Audit row for one billed AI call."""
    user_id: str
    model_id: str
    provider: str
    usage: Dict[str, Any]
    breakdown: Dict[str, Any]
    total_cost: Decimal
    created_at: datetime
    transaction_id: Optional[str] = None
    project_id: Optional[str] = None
    request_id: Optional[str] = None
