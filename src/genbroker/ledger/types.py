"""
Ledger types for credit accounting.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class OwnerKind(str, Enum):
    """Who holds a credit account."""
    GUEST = "guest"            # Anonymous session
    REGISTERED = "registered"  # Signed-up user


class TransactionReason(str, Enum):
    """Why a credit transaction was written."""
    GENERATION = "GENERATION"
    REFUND = "REFUND"
    SIGNUP_BONUS = "SIGNUP_BONUS"
    MIGRATION = "MIGRATION"
    PURCHASE = "PURCHASE"
    ADMIN_ADJUSTMENT = "ADMIN_ADJUSTMENT"


@dataclass(frozen=True)
class Owner:
    """Identity that holds a credit account and issues jobs.

    The key is namespaced by kind so a session id and a user id with the
    same value never share an account.
    """
    key: str
    kind: OwnerKind = OwnerKind.GUEST

    @classmethod
    def guest(cls, session_id: str) -> Owner:
        return cls(key=f"session:{session_id}", kind=OwnerKind.GUEST)

    @classmethod
    def registered(cls, user_id: str) -> Owner:
        return cls(key=f"user:{user_id}", kind=OwnerKind.REGISTERED)

    @classmethod
    def from_key(cls, key: str) -> Owner:
        """Rebuild an owner from a stored key."""
        kind = OwnerKind.REGISTERED if key.startswith("user:") else OwnerKind.GUEST
        return cls(key=key, kind=kind)

    @property
    def is_registered(self) -> bool:
        return self.kind == OwnerKind.REGISTERED


@dataclass
class CreditAccount:
    """Balance row for one owner key."""
    owner_key: str
    owner_kind: OwnerKind = OwnerKind.GUEST
    balance: int = 0
    total_used: int = 0
    account_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "account_id": self.account_id,
            "owner_key": self.owner_key,
            "owner_kind": self.owner_kind.value,
            "balance": self.balance,
            "total_used": self.total_used,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass(frozen=True)
class CreditTransaction:
    """Append-only ledger entry. Never updated or deleted."""
    owner_key: str
    amount: int
    reason: TransactionReason
    job_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    transaction_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "owner_key": self.owner_key,
            "amount": self.amount,
            "reason": self.reason.value,
            "job_id": self.job_id,
            "metadata": dict(self.metadata),
            "created_at": self.created_at,
        }


@dataclass(frozen=True)
class BalanceCheck:
    has_credits: bool
    balance: int


@dataclass(frozen=True)
class DebitResult:
    ok: bool
    new_balance: int
    reason: str | None = None


@dataclass(frozen=True)
class RefundResult:
    new_balance: int
    applied: bool = True  # False when the job had already been refunded


@dataclass(frozen=True)
class MigrationResult:
    migrated_amount: int
    to_balance: int


__all__ = [
    "OwnerKind",
    "TransactionReason",
    "Owner",
    "CreditAccount",
    "CreditTransaction",
    "BalanceCheck",
    "DebitResult",
    "RefundResult",
    "MigrationResult",
]
