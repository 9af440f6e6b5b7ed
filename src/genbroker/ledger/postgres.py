"""
PostgreSQL ledger store backed by asyncpg.

Balance changes are single conditional UPDATE statements executed in the
same transaction as the ledger row they produce; no row is read and then
written back in a separate round trip.
"""

from __future__ import annotations

import json
import uuid
from typing import Any

import asyncpg

from .store import LedgerStore
from .types import CreditAccount, CreditTransaction, Owner, OwnerKind, TransactionReason


class PostgresLedgerStore(LedgerStore):
    def __init__(self, pool: asyncpg.Pool, *, schema: str = "genbroker") -> None:
        self._pool = pool
        self._schema = schema

    async def ensure_schema(self) -> None:
        s = self._schema
        async with self._pool.acquire() as conn:
            await conn.execute(f"CREATE SCHEMA IF NOT EXISTS {s};")
            await conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {s}.credit_accounts (
                  owner_key TEXT PRIMARY KEY,
                  owner_kind TEXT NOT NULL,
                  account_id UUID NOT NULL,
                  balance INTEGER NOT NULL CHECK (balance >= 0),
                  total_used INTEGER NOT NULL DEFAULT 0,
                  created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                  updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                );
                """
            )
            await conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {s}.credit_transactions (
                  transaction_id UUID PRIMARY KEY,
                  owner_key TEXT NOT NULL REFERENCES {s}.credit_accounts (owner_key),
                  amount INTEGER NOT NULL,
                  reason TEXT NOT NULL,
                  job_id TEXT,
                  metadata JSONB NOT NULL DEFAULT '{{}}'::jsonb,
                  created_at TIMESTAMPTZ NOT NULL DEFAULT now()
                );
                """
            )
            await conn.execute(
                f"CREATE INDEX IF NOT EXISTS credit_transactions_owner_created "
                f"ON {s}.credit_transactions (owner_key, created_at DESC);"
            )
            # At most one refund per job.
            await conn.execute(
                f"CREATE UNIQUE INDEX IF NOT EXISTS credit_transactions_refund_uq "
                f"ON {s}.credit_transactions (job_id) WHERE reason = 'REFUND';"
            )

    async def get_account(self, owner_key: str) -> CreditAccount | None:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT owner_key, owner_kind, account_id, balance, total_used, created_at, updated_at
                FROM {self._schema}.credit_accounts
                WHERE owner_key=$1;
                """,
                owner_key,
            )
        return _account_from_row(row) if row is not None else None

    async def create_account(
        self,
        owner: Owner,
        initial_grant: int,
        reason: TransactionReason = TransactionReason.SIGNUP_BONUS,
        metadata: dict[str, Any] | None = None,
    ) -> tuple[CreditAccount, bool]:
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                created = await self._insert_account(conn, owner, initial_grant, reason, metadata)
                row = await conn.fetchrow(
                    f"""
                    SELECT owner_key, owner_kind, account_id, balance, total_used, created_at, updated_at
                    FROM {self._schema}.credit_accounts
                    WHERE owner_key=$1;
                    """,
                    owner.key,
                )
                assert row is not None
                return _account_from_row(row), created

    async def conditional_debit(self, owner_key: str, job_id: str) -> int | None:
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                balance = await conn.fetchval(
                    f"""
                    UPDATE {self._schema}.credit_accounts
                    SET balance = balance - 1,
                        total_used = total_used + 1,
                        updated_at = now()
                    WHERE owner_key=$1 AND balance >= 1
                    RETURNING balance;
                    """,
                    owner_key,
                )
                if balance is None:
                    return None
                await self._insert_transaction(conn, owner_key, -1, TransactionReason.GENERATION, job_id=job_id)
                return int(balance)

    async def refund(self, owner_key: str, job_id: str) -> tuple[int, bool]:
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                # Claim the refund slot first; the partial unique index rejects a second claim.
                claimed = await conn.fetchval(
                    f"""
                    INSERT INTO {self._schema}.credit_transactions (
                      transaction_id, owner_key, amount, reason, job_id, metadata
                    ) VALUES ($1,$2,1,'REFUND',$3,'{{}}'::jsonb)
                    ON CONFLICT (job_id) WHERE reason = 'REFUND' DO NOTHING
                    RETURNING transaction_id;
                    """,
                    uuid.uuid4(),
                    owner_key,
                    job_id,
                )
                if claimed is None:
                    balance = await conn.fetchval(
                        f"SELECT balance FROM {self._schema}.credit_accounts WHERE owner_key=$1;",
                        owner_key,
                    )
                    return int(balance or 0), False

                balance = await conn.fetchval(
                    f"""
                    UPDATE {self._schema}.credit_accounts
                    SET balance = balance + 1,
                        updated_at = now()
                    WHERE owner_key=$1
                    RETURNING balance;
                    """,
                    owner_key,
                )
                if balance is None:
                    raise KeyError(f"No credit account for {owner_key}")
                return int(balance), True

    async def credit(
        self,
        owner_key: str,
        amount: int,
        reason: TransactionReason,
        metadata: dict[str, Any] | None = None,
    ) -> int:
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                balance = await conn.fetchval(
                    f"""
                    UPDATE {self._schema}.credit_accounts
                    SET balance = balance + $2,
                        updated_at = now()
                    WHERE owner_key=$1
                    RETURNING balance;
                    """,
                    owner_key,
                    int(amount),
                )
                if balance is None:
                    raise KeyError(f"No credit account for {owner_key}")
                await self._insert_transaction(conn, owner_key, int(amount), reason, metadata=metadata)
                return int(balance)

    async def migrate(self, from_key: str, to_owner: Owner, to_initial_grant: int) -> tuple[int, int]:
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                # Lock whichever rows exist in key order so opposing migrations cannot deadlock.
                rows = await conn.fetch(
                    f"""
                    SELECT owner_key, balance, total_used
                    FROM {self._schema}.credit_accounts
                    WHERE owner_key = ANY($1::text[])
                    ORDER BY owner_key
                    FOR UPDATE;
                    """,
                    [from_key, to_owner.key],
                )
                by_key = {str(r["owner_key"]): r for r in rows}
                source = by_key.get(from_key)
                target = by_key.get(to_owner.key)
                if source is None or int(source["balance"]) <= 0:
                    return 0, int(target["balance"]) if target is not None else 0

                if target is None:
                    await self._insert_account(conn, to_owner, to_initial_grant, TransactionReason.SIGNUP_BONUS, None)

                amount = int(source["balance"])
                await conn.execute(
                    f"""
                    UPDATE {self._schema}.credit_accounts
                    SET balance = 0, updated_at = now()
                    WHERE owner_key=$1;
                    """,
                    from_key,
                )
                to_balance = await conn.fetchval(
                    f"""
                    UPDATE {self._schema}.credit_accounts
                    SET balance = balance + $2,
                        total_used = total_used + $3,
                        updated_at = now()
                    WHERE owner_key=$1
                    RETURNING balance;
                    """,
                    to_owner.key,
                    amount,
                    int(source["total_used"]),
                )
                await self._insert_transaction(
                    conn, from_key, -amount, TransactionReason.MIGRATION, metadata={"to": to_owner.key}
                )
                await self._insert_transaction(
                    conn, to_owner.key, amount, TransactionReason.MIGRATION, metadata={"from": from_key}
                )
                return amount, int(to_balance)

    async def list_transactions(self, owner_key: str, limit: int | None = None) -> list[CreditTransaction]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT transaction_id, owner_key, amount, reason, job_id, metadata, created_at
                FROM {self._schema}.credit_transactions
                WHERE owner_key=$1
                ORDER BY created_at DESC
                LIMIT $2;
                """,
                owner_key,
                limit,
            )
        return [_transaction_from_row(r) for r in rows]

    async def transaction_sum(self, owner_key: str) -> int:
        async with self._pool.acquire() as conn:
            total = await conn.fetchval(
                f"""
                SELECT COALESCE(SUM(amount), 0)
                FROM {self._schema}.credit_transactions
                WHERE owner_key=$1;
                """,
                owner_key,
            )
        return int(total or 0)

    async def has_debit(self, job_id: str) -> bool:
        async with self._pool.acquire() as conn:
            found = await conn.fetchval(
                f"""
                SELECT 1 FROM {self._schema}.credit_transactions
                WHERE job_id=$1 AND reason='GENERATION'
                LIMIT 1;
                """,
                job_id,
            )
        return found is not None

    async def has_refund(self, job_id: str) -> bool:
        async with self._pool.acquire() as conn:
            found = await conn.fetchval(
                f"""
                SELECT 1 FROM {self._schema}.credit_transactions
                WHERE job_id=$1 AND reason='REFUND'
                LIMIT 1;
                """,
                job_id,
            )
        return found is not None

    async def _insert_account(
        self,
        conn,
        owner: Owner,
        initial_grant: int,
        reason: TransactionReason,
        metadata: dict[str, Any] | None,
    ) -> bool:
        inserted = await conn.fetchval(
            f"""
            INSERT INTO {self._schema}.credit_accounts (
              owner_key, owner_kind, account_id, balance, total_used
            ) VALUES ($1,$2,$3,$4,0)
            ON CONFLICT (owner_key) DO NOTHING
            RETURNING account_id;
            """,
            owner.key,
            owner.kind.value,
            uuid.uuid4(),
            int(initial_grant),
        )
        if inserted is None:
            return False
        if initial_grant:
            await self._insert_transaction(
                conn,
                owner.key,
                int(initial_grant),
                reason,
                metadata={"owner_kind": owner.kind.value, **(metadata or {})},
            )
        return True

    async def _insert_transaction(
        self,
        conn,
        owner_key: str,
        amount: int,
        reason: TransactionReason,
        *,
        job_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        await conn.execute(
            f"""
            INSERT INTO {self._schema}.credit_transactions (
              transaction_id, owner_key, amount, reason, job_id, metadata
            ) VALUES ($1,$2,$3,$4,$5,$6::jsonb);
            """,
            uuid.uuid4(),
            owner_key,
            int(amount),
            reason.value,
            job_id,
            json.dumps(metadata or {}),
        )


def _account_from_row(row) -> CreditAccount:
    return CreditAccount(
        owner_key=str(row["owner_key"]),
        owner_kind=OwnerKind(str(row["owner_kind"])),
        balance=int(row["balance"]),
        total_used=int(row["total_used"] or 0),
        account_id=str(row["account_id"]),
        created_at=row["created_at"].timestamp(),
        updated_at=row["updated_at"].timestamp(),
    )


def _transaction_from_row(row) -> CreditTransaction:
    metadata = row["metadata"]
    if isinstance(metadata, str):
        metadata = json.loads(metadata)
    return CreditTransaction(
        owner_key=str(row["owner_key"]),
        amount=int(row["amount"]),
        reason=TransactionReason(str(row["reason"])),
        job_id=row["job_id"],
        metadata=dict(metadata or {}),
        transaction_id=str(row["transaction_id"]),
        created_at=row["created_at"].timestamp(),
    )


__all__ = ["PostgresLedgerStore"]
