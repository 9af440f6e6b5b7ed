"""
Ledger store implementations.

This module provides the LedgerStore interface and an in-memory
implementation. Every mutating method is one atomic unit: the balance
change and its transaction row are applied together or not at all.
"""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Any

from .types import CreditAccount, CreditTransaction, Owner, TransactionReason


class LedgerStore(ABC):
    """Abstract interface for credit persistence.

    Implementations must serialise mutations of a single account at the
    storage layer (conditional updates), so callers never hold a lock
    across round trips.
    """

    @abstractmethod
    async def get_account(self, owner_key: str) -> CreditAccount | None:
        """Get the account for an owner key, if one exists."""
        ...

    @abstractmethod
    async def create_account(
        self,
        owner: Owner,
        initial_grant: int,
        reason: TransactionReason = TransactionReason.SIGNUP_BONUS,
        metadata: dict[str, Any] | None = None,
    ) -> tuple[CreditAccount, bool]:
        """Create the account with its starting grant if it does not exist.

        The grant is written as a transaction so the account balance always
        equals the sum of its transactions.

        Returns:
            Tuple of (account, created).
        """
        ...

    @abstractmethod
    async def conditional_debit(self, owner_key: str, job_id: str) -> int | None:
        """Decrement balance by one only if it is at least one.

        Appends a GENERATION transaction in the same unit.

        Returns:
            The new balance, or None if the balance was insufficient.
        """
        ...

    @abstractmethod
    async def refund(self, owner_key: str, job_id: str) -> tuple[int, bool]:
        """Increment balance by one unless a REFUND for job_id already exists.

        Returns:
            Tuple of (balance, applied).
        """
        ...

    @abstractmethod
    async def credit(
        self,
        owner_key: str,
        amount: int,
        reason: TransactionReason,
        metadata: dict[str, Any] | None = None,
    ) -> int:
        """Add a positive amount and append its transaction. Returns the new balance."""
        ...

    @abstractmethod
    async def migrate(self, from_key: str, to_owner: Owner, to_initial_grant: int) -> tuple[int, int]:
        """Move the whole balance of from_key into to_owner's account.

        Creates the destination account with its grant if missing. A zero
        source balance is a no-op.

        Returns:
            Tuple of (migrated_amount, destination_balance).
        """
        ...

    @abstractmethod
    async def list_transactions(self, owner_key: str, limit: int | None = None) -> list[CreditTransaction]:
        """Transactions for an owner, newest first."""
        ...

    @abstractmethod
    async def has_debit(self, job_id: str) -> bool:
        """Whether a GENERATION transaction references job_id."""
        ...

    @abstractmethod
    async def has_refund(self, job_id: str) -> bool:
        """Whether a REFUND transaction references job_id."""
        ...

    async def transaction_sum(self, owner_key: str) -> int:
        return sum(tx.amount for tx in await self.list_transactions(owner_key))


class InMemoryLedgerStore(LedgerStore):
    """In-memory ledger store.

    Suitable for testing and single-process deployments. The asyncio.Lock
    stands in for the row-level atomicity a relational store provides;
    it is held only for the duration of one mutation.
    """

    def __init__(self):
        self._accounts: dict[str, CreditAccount] = {}
        self._transactions: list[CreditTransaction] = []
        self._refunded_jobs: set[str] = set()
        self._lock = asyncio.Lock()

    async def get_account(self, owner_key: str) -> CreditAccount | None:
        async with self._lock:
            account = self._accounts.get(owner_key)
            return replace(account) if account is not None else None

    async def create_account(
        self,
        owner: Owner,
        initial_grant: int,
        reason: TransactionReason = TransactionReason.SIGNUP_BONUS,
        metadata: dict[str, Any] | None = None,
    ) -> tuple[CreditAccount, bool]:
        async with self._lock:
            existing = self._accounts.get(owner.key)
            if existing is not None:
                return replace(existing), False
            return replace(self._create_locked(owner, initial_grant, reason, metadata)), True

    async def conditional_debit(self, owner_key: str, job_id: str) -> int | None:
        async with self._lock:
            account = self._accounts.get(owner_key)
            if account is None or account.balance < 1:
                return None
            account.balance -= 1
            account.total_used += 1
            account.updated_at = time.time()
            self._append(owner_key, -1, TransactionReason.GENERATION, job_id=job_id)
            return account.balance

    async def refund(self, owner_key: str, job_id: str) -> tuple[int, bool]:
        async with self._lock:
            account = self._accounts.get(owner_key)
            if account is None:
                raise KeyError(f"No credit account for {owner_key}")
            if job_id in self._refunded_jobs:
                return account.balance, False
            account.balance += 1
            account.updated_at = time.time()
            self._append(owner_key, 1, TransactionReason.REFUND, job_id=job_id)
            self._refunded_jobs.add(job_id)
            return account.balance, True

    async def credit(
        self,
        owner_key: str,
        amount: int,
        reason: TransactionReason,
        metadata: dict[str, Any] | None = None,
    ) -> int:
        async with self._lock:
            account = self._accounts.get(owner_key)
            if account is None:
                raise KeyError(f"No credit account for {owner_key}")
            account.balance += amount
            account.updated_at = time.time()
            self._append(owner_key, amount, reason, metadata=metadata)
            return account.balance

    async def migrate(self, from_key: str, to_owner: Owner, to_initial_grant: int) -> tuple[int, int]:
        async with self._lock:
            source = self._accounts.get(from_key)
            target = self._accounts.get(to_owner.key)
            if source is None or source.balance <= 0:
                return 0, target.balance if target else 0

            if target is None:
                target = self._create_locked(to_owner, to_initial_grant, TransactionReason.SIGNUP_BONUS, None)

            amount = source.balance
            now = time.time()
            source.balance = 0
            source.updated_at = now
            target.balance += amount
            target.total_used += source.total_used
            target.updated_at = now
            self._append(from_key, -amount, TransactionReason.MIGRATION, metadata={"to": to_owner.key})
            self._append(to_owner.key, amount, TransactionReason.MIGRATION, metadata={"from": from_key})
            return amount, target.balance

    async def list_transactions(self, owner_key: str, limit: int | None = None) -> list[CreditTransaction]:
        async with self._lock:
            rows = [tx for tx in reversed(self._transactions) if tx.owner_key == owner_key]
            return rows[:limit] if limit is not None else rows

    async def has_debit(self, job_id: str) -> bool:
        async with self._lock:
            return any(
                tx.job_id == job_id and tx.reason == TransactionReason.GENERATION for tx in self._transactions
            )

    async def has_refund(self, job_id: str) -> bool:
        async with self._lock:
            return job_id in self._refunded_jobs

    def _create_locked(
        self,
        owner: Owner,
        initial_grant: int,
        reason: TransactionReason,
        metadata: dict[str, Any] | None,
    ) -> CreditAccount:
        account = CreditAccount(owner_key=owner.key, owner_kind=owner.kind, balance=initial_grant)
        self._accounts[owner.key] = account
        if initial_grant:
            self._append(
                owner.key,
                initial_grant,
                reason,
                metadata={"owner_kind": owner.kind.value, **(metadata or {})},
            )
        return account

    def _append(
        self,
        owner_key: str,
        amount: int,
        reason: TransactionReason,
        *,
        job_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        self._transactions.append(
            CreditTransaction(
                owner_key=owner_key,
                amount=amount,
                reason=reason,
                job_id=job_id,
                metadata=dict(metadata or {}),
            )
        )


__all__ = ["LedgerStore", "InMemoryLedgerStore"]
