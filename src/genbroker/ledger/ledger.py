"""
Credit ledger service.

The Ledger is the only component that mutates balances. It owns the
starting-grant policy and turns store results into typed outcomes.
"""

from __future__ import annotations

from typing import Any

from ..config import CreditsConfig
from ..errors import ErrorContext, InsufficientCreditsError, ValidationFailedError
from ..logging import LedgerLog, StructuredLogger, get_logger
from .store import LedgerStore
from .types import (
    BalanceCheck,
    CreditTransaction,
    DebitResult,
    MigrationResult,
    Owner,
    RefundResult,
    TransactionReason,
)


class Ledger:
    """Credit balances plus their append-only transaction log.

    Example:
        ```python
        ledger = Ledger(InMemoryLedgerStore())
        owner = Owner.guest("sess_1")

        check = await ledger.check_balance(owner)   # creates the account with its grant
        result = await ledger.debit(owner, job_id)
        if generation_failed:
            await ledger.refund(owner, job_id)
        ```
    """

    def __init__(
        self,
        store: LedgerStore,
        config: CreditsConfig | None = None,
        *,
        logger: StructuredLogger | None = None,
    ) -> None:
        self._store = store
        self._config = config or CreditsConfig()
        self._logger = logger or get_logger()

    @property
    def store(self) -> LedgerStore:
        return self._store

    def initial_grant_for(self, owner: Owner) -> int:
        if owner.is_registered:
            return self._config.registered_initial_credits
        return self._config.guest_initial_credits

    async def check_balance(self, owner: Owner) -> BalanceCheck:
        """Return (has_credits, balance), creating the account on first sight."""
        account = await self._store.get_account(owner.key)
        if account is None:
            balance = await self.initial_grant(owner)
        else:
            balance = account.balance
        return BalanceCheck(has_credits=balance > 0, balance=balance)

    async def get_balance(self, owner: Owner) -> int:
        """Current balance without creating an account."""
        account = await self._store.get_account(owner.key)
        return account.balance if account is not None else 0

    async def initial_grant(
        self,
        owner: Owner,
        reason: TransactionReason = TransactionReason.SIGNUP_BONUS,
    ) -> int:
        """Create the account with its starting grant. Idempotent per owner."""
        grant = self.initial_grant_for(owner)
        account, created = await self._store.create_account(owner, grant, reason)
        if created:
            self._log(owner.key, reason, grant, account.balance)
        return account.balance

    async def debit(self, owner: Owner, job_id: str) -> DebitResult:
        """Take one credit for job_id if the balance covers it.

        Two concurrent debits against a balance of one yield exactly one
        success; the store applies the check and the decrement together.
        """
        new_balance = await self._store.conditional_debit(owner.key, job_id)
        if new_balance is None:
            current = await self.get_balance(owner)
            self._logger.info(
                "Debit rejected: insufficient credits",
                owner_key=owner.key,
                job_id=job_id,
                balance=current,
            )
            return DebitResult(ok=False, new_balance=current, reason="insufficient_credits")
        self._log(owner.key, TransactionReason.GENERATION, -1, new_balance, job_id=job_id)
        return DebitResult(ok=True, new_balance=new_balance)

    async def debit_or_raise(self, owner: Owner, job_id: str) -> int:
        result = await self.debit(owner, job_id)
        if not result.ok:
            raise InsufficientCreditsError(
                balance=result.new_balance,
                context=ErrorContext(job_id=job_id, owner_key=owner.key, operation="debit"),
            )
        return result.new_balance

    async def refund(self, owner: Owner, job_id: str) -> RefundResult:
        """Return the credit spent on job_id. A second refund for the same job is a no-op."""
        balance, applied = await self._store.refund(owner.key, job_id)
        if applied:
            self._log(owner.key, TransactionReason.REFUND, 1, balance, job_id=job_id)
        else:
            self._logger.debug("Refund already applied", owner_key=owner.key, job_id=job_id)
        return RefundResult(new_balance=balance, applied=applied)

    async def was_charged(self, job_id: str) -> bool:
        """Whether a GENERATION debit was recorded for job_id."""
        return await self._store.has_debit(job_id)

    async def migrate(self, from_owner: Owner, to_owner: Owner) -> MigrationResult:
        """Move a guest balance into a registered account in one atomic unit."""
        amount, to_balance = await self._store.migrate(
            from_owner.key,
            to_owner,
            self.initial_grant_for(to_owner),
        )
        if amount:
            self._log(from_owner.key, TransactionReason.MIGRATION, -amount, 0)
            self._log(to_owner.key, TransactionReason.MIGRATION, amount, to_balance)
        return MigrationResult(migrated_amount=amount, to_balance=to_balance)

    async def add_credits(
        self,
        owner: Owner,
        amount: int,
        reason: TransactionReason = TransactionReason.PURCHASE,
        metadata: dict[str, Any] | None = None,
    ) -> int:
        """Grant purchased or adjusted credits. Returns the new balance."""
        if amount <= 0:
            raise ValidationFailedError("Amount must be positive")
        if reason in (TransactionReason.GENERATION, TransactionReason.REFUND, TransactionReason.MIGRATION):
            raise ValidationFailedError(f"{reason.value} credits are written by the broker only")
        await self.check_balance(owner)
        balance = await self._store.credit(owner.key, amount, reason, metadata)
        self._log(owner.key, reason, amount, balance)
        return balance

    async def history(self, owner: Owner, limit: int | None = None) -> list[CreditTransaction]:
        """Most recent transactions first."""
        return await self._store.list_transactions(
            owner.key,
            limit if limit is not None else self._config.history_limit,
        )

    async def reconcile(self, owner: Owner) -> bool:
        """True when the balance equals the sum of the account's transactions."""
        account = await self._store.get_account(owner.key)
        if account is None:
            return True
        total = await self._store.transaction_sum(owner.key)
        if total != account.balance:
            self._logger.error(
                "Ledger out of balance",
                owner_key=owner.key,
                balance=account.balance,
                transaction_sum=total,
            )
            return False
        return True

    def _log(
        self,
        owner_key: str,
        reason: TransactionReason,
        amount: int,
        balance: int,
        *,
        job_id: str | None = None,
    ) -> None:
        self._logger.log_ledger(
            LedgerLog(owner_key=owner_key, reason=reason.value, amount=amount, balance=balance, job_id=job_id)
        )


__all__ = ["Ledger"]
