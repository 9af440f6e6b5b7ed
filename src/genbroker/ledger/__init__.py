"""
Credit ledger.

This package provides:
- Credit accounts and append-only transactions
- Store implementations (in-memory, PostgreSQL)
- The Ledger service: check, debit, refund, grant, migrate
"""

from .ledger import Ledger
from .postgres import PostgresLedgerStore
from .store import InMemoryLedgerStore, LedgerStore
from .types import (
    BalanceCheck,
    CreditAccount,
    CreditTransaction,
    DebitResult,
    MigrationResult,
    Owner,
    OwnerKind,
    RefundResult,
    TransactionReason,
)

__all__ = [
    "Owner",
    "OwnerKind",
    "TransactionReason",
    "CreditAccount",
    "CreditTransaction",
    "BalanceCheck",
    "DebitResult",
    "RefundResult",
    "MigrationResult",
    "LedgerStore",
    "InMemoryLedgerStore",
    "PostgresLedgerStore",
    "Ledger",
]
