"""
PostgreSQL job store and settlement outbox backed by asyncpg.
"""

from __future__ import annotations

import json
import uuid
from typing import Any

import asyncpg

from .outbox import OutboxEntry, OutboxStatus, SettleAction, SettlementOutbox
from .store import JobFilter, JobStore, job_conflict
from .types import GenerationJob, JobKind, JobStatus

_JOB_COLUMNS = (
    "job_id, owner_key, kind, status, provider, provider_job_id, input, output, "
    "error_message, error_code, created_at, updated_at, started_at, completed_at, needs_reconciliation"
)


class PostgresJobStore(JobStore):
    def __init__(self, pool: asyncpg.Pool, *, schema: str = "genbroker") -> None:
        self._pool = pool
        self._schema = schema

    async def ensure_schema(self) -> None:
        s = self._schema
        async with self._pool.acquire() as conn:
            await conn.execute(f"CREATE SCHEMA IF NOT EXISTS {s};")
            await conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {s}.generation_jobs (
                  job_id TEXT PRIMARY KEY,
                  owner_key TEXT NOT NULL,
                  kind TEXT NOT NULL,
                  status TEXT NOT NULL,
                  provider TEXT,
                  provider_job_id TEXT,
                  input JSONB NOT NULL DEFAULT '{{}}'::jsonb,
                  output JSONB,
                  error_message TEXT,
                  error_code TEXT,
                  created_at DOUBLE PRECISION NOT NULL,
                  updated_at DOUBLE PRECISION NOT NULL,
                  started_at DOUBLE PRECISION,
                  completed_at DOUBLE PRECISION,
                  needs_reconciliation BOOLEAN NOT NULL DEFAULT false
                );
                """
            )
            await conn.execute(
                f"CREATE INDEX IF NOT EXISTS generation_jobs_owner_created "
                f"ON {s}.generation_jobs (owner_key, created_at DESC);"
            )
            await conn.execute(
                f"CREATE INDEX IF NOT EXISTS generation_jobs_active "
                f"ON {s}.generation_jobs (status, started_at) WHERE status IN ('PENDING', 'PROCESSING');"
            )

    async def create(self, job: GenerationJob) -> GenerationJob:
        async with self._pool.acquire() as conn:
            try:
                await conn.execute(
                    f"""
                    INSERT INTO {self._schema}.generation_jobs ({_JOB_COLUMNS})
                    VALUES ($1,$2,$3,$4,$5,$6,$7::jsonb,$8::jsonb,$9,$10,$11,$12,$13,$14,$15);
                    """,
                    *_job_params(job),
                )
            except asyncpg.UniqueViolationError as exc:
                raise ValueError(f"Job {job.job_id} already exists") from exc
        return job

    async def get(self, job_id: str) -> GenerationJob | None:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {_JOB_COLUMNS} FROM {self._schema}.generation_jobs WHERE job_id=$1;",
                job_id,
            )
        return _job_from_row(row) if row is not None else None

    async def update(self, job: GenerationJob, *, expected_status: JobStatus | None = None) -> GenerationJob:
        params = list(_job_params(job))
        guard = ""
        if expected_status is not None:
            params.append(expected_status.value)
            guard = f" AND status=${len(params)}"
        async with self._pool.acquire() as conn:
            result = await conn.execute(
                f"""
                UPDATE {self._schema}.generation_jobs
                SET owner_key=$2, kind=$3, status=$4, provider=$5, provider_job_id=$6,
                    input=$7::jsonb, output=$8::jsonb, error_message=$9, error_code=$10,
                    created_at=$11, updated_at=$12, started_at=$13, completed_at=$14,
                    needs_reconciliation=$15
                WHERE job_id=$1{guard};
                """,
                *params,
            )
            if result == "UPDATE 0":
                status = await conn.fetchval(
                    f"SELECT status FROM {self._schema}.generation_jobs WHERE job_id=$1;",
                    job.job_id,
                )
                if status is None or expected_status is None:
                    raise ValueError(f"Job {job.job_id} not found")
                raise job_conflict(job.job_id, expected_status, JobStatus(status))
        return job

    async def delete(self, job_id: str) -> bool:
        async with self._pool.acquire() as conn:
            result = await conn.execute(
                f"DELETE FROM {self._schema}.generation_jobs WHERE job_id=$1;",
                job_id,
            )
        return result != "DELETE 0"

    async def list(self, filter: JobFilter | None = None) -> list[GenerationJob]:
        filter = filter or JobFilter()
        clauses: list[str] = []
        args: list[Any] = []

        def arg(value: Any) -> str:
            args.append(value)
            return f"${len(args)}"

        if filter.owner_key:
            clauses.append(f"owner_key={arg(filter.owner_key)}")
        if filter.kind:
            clauses.append(f"kind={arg(filter.kind.value)}")
        if filter.status:
            statuses = filter.status if isinstance(filter.status, set) else {filter.status}
            clauses.append(f"status = ANY({arg([s.value for s in statuses])}::text[])")
        if filter.started_before is not None:
            clauses.append(f"started_at < {arg(filter.started_before)}")
        if filter.created_before is not None:
            clauses.append(f"created_at < {arg(filter.created_before)}")
        if filter.needs_reconciliation is not None:
            clauses.append(f"needs_reconciliation={arg(filter.needs_reconciliation)}")

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        order = "DESC" if filter.order_desc else "ASC"
        sql = (
            f"SELECT {_JOB_COLUMNS} FROM {self._schema}.generation_jobs {where} "
            f"ORDER BY created_at {order} LIMIT {arg(filter.limit)} OFFSET {arg(filter.offset)};"
        )
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(sql, *args)
        return [_job_from_row(r) for r in rows]


class PostgresSettlementOutbox(SettlementOutbox):
    def __init__(self, pool: asyncpg.Pool, *, schema: str = "genbroker") -> None:
        self._pool = pool
        self._schema = schema

    async def ensure_schema(self) -> None:
        s = self._schema
        async with self._pool.acquire() as conn:
            await conn.execute(f"CREATE SCHEMA IF NOT EXISTS {s};")
            await conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {s}.settlement_outbox (
                  outbox_id UUID PRIMARY KEY,
                  job_id TEXT NOT NULL,
                  owner_key TEXT NOT NULL,
                  action TEXT NOT NULL,
                  payload JSONB NOT NULL DEFAULT '{{}}'::jsonb,
                  status TEXT NOT NULL DEFAULT 'pending',
                  attempt_count INTEGER NOT NULL DEFAULT 0,
                  next_attempt_at DOUBLE PRECISION NOT NULL,
                  last_error TEXT,
                  created_at DOUBLE PRECISION NOT NULL
                );
                """
            )
            await conn.execute(
                f"CREATE UNIQUE INDEX IF NOT EXISTS settlement_outbox_pending_job "
                f"ON {s}.settlement_outbox (job_id) WHERE status = 'pending';"
            )

    async def enqueue(self, entry: OutboxEntry) -> str:
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"""
                    SELECT outbox_id
                    FROM {self._schema}.settlement_outbox
                    WHERE job_id=$1 AND status='pending'
                    LIMIT 1
                    FOR UPDATE;
                    """,
                    entry.job_id,
                )
                if row is not None:
                    await conn.execute(
                        f"""
                        UPDATE {self._schema}.settlement_outbox
                        SET action=$2, payload=$3::jsonb, next_attempt_at=$4, last_error=$5
                        WHERE outbox_id=$1;
                        """,
                        row["outbox_id"],
                        entry.action.value,
                        json.dumps(entry.payload),
                        entry.next_attempt_at,
                        entry.last_error,
                    )
                    return str(row["outbox_id"])

                await conn.execute(
                    f"""
                    INSERT INTO {self._schema}.settlement_outbox (
                      outbox_id, job_id, owner_key, action, payload, status,
                      attempt_count, next_attempt_at, last_error, created_at
                    ) VALUES ($1,$2,$3,$4,$5::jsonb,'pending',$6,$7,$8,$9);
                    """,
                    uuid.UUID(entry.outbox_id),
                    entry.job_id,
                    entry.owner_key,
                    entry.action.value,
                    json.dumps(entry.payload),
                    entry.attempt_count,
                    entry.next_attempt_at,
                    entry.last_error,
                    entry.created_at,
                )
                return entry.outbox_id

    async def due(self, now: float, limit: int = 20) -> list[OutboxEntry]:
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    f"""
                    SELECT outbox_id, job_id, owner_key, action, payload, status,
                           attempt_count, next_attempt_at, last_error, created_at
                    FROM {self._schema}.settlement_outbox
                    WHERE status='pending' AND next_attempt_at <= $1
                    ORDER BY next_attempt_at ASC
                    LIMIT $2
                    FOR UPDATE SKIP LOCKED;
                    """,
                    now,
                    int(limit),
                )
        return [_entry_from_row(r) for r in rows]

    async def mark_settled(self, outbox_id: str) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute(
                f"""
                UPDATE {self._schema}.settlement_outbox
                SET status='settled', last_error=NULL
                WHERE outbox_id=$1;
                """,
                uuid.UUID(outbox_id),
            )

    async def reschedule(self, outbox_id: str, attempt_count: int, next_attempt_at: float, error: str | None) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute(
                f"""
                UPDATE {self._schema}.settlement_outbox
                SET status='pending', attempt_count=$2, next_attempt_at=$3, last_error=$4
                WHERE outbox_id=$1;
                """,
                uuid.UUID(outbox_id),
                attempt_count,
                next_attempt_at,
                error,
            )

    async def mark_failed(self, outbox_id: str, attempt_count: int, error: str | None) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute(
                f"""
                UPDATE {self._schema}.settlement_outbox
                SET status='failed', attempt_count=$2, last_error=$3
                WHERE outbox_id=$1;
                """,
                uuid.UUID(outbox_id),
                attempt_count,
                error,
            )

    async def list(self, status: OutboxStatus | None = None) -> list[OutboxEntry]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT outbox_id, job_id, owner_key, action, payload, status,
                       attempt_count, next_attempt_at, last_error, created_at
                FROM {self._schema}.settlement_outbox
                WHERE $1::text IS NULL OR status=$1
                ORDER BY created_at ASC;
                """,
                status.value if status else None,
            )
        return [_entry_from_row(r) for r in rows]


def _json(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value)
    return value


def _job_params(job: GenerationJob) -> tuple[Any, ...]:
    return (
        job.job_id,
        job.owner_key,
        job.kind.value,
        job.status.value,
        job.provider,
        job.provider_job_id,
        json.dumps(job.input),
        json.dumps(job.output) if job.output is not None else None,
        job.error_message,
        job.error_code,
        job.created_at,
        job.updated_at,
        job.started_at,
        job.completed_at,
        job.needs_reconciliation,
    )


def _job_from_row(row) -> GenerationJob:
    output = _json(row["output"])
    return GenerationJob(
        job_id=str(row["job_id"]),
        owner_key=str(row["owner_key"]),
        kind=JobKind(str(row["kind"])),
        status=JobStatus(str(row["status"])),
        provider=row["provider"],
        provider_job_id=row["provider_job_id"],
        input=dict(_json(row["input"]) or {}),
        output=dict(output) if output is not None else None,
        error_message=row["error_message"],
        error_code=row["error_code"],
        created_at=float(row["created_at"]),
        updated_at=float(row["updated_at"]),
        started_at=float(row["started_at"]) if row["started_at"] is not None else None,
        completed_at=float(row["completed_at"]) if row["completed_at"] is not None else None,
        needs_reconciliation=bool(row["needs_reconciliation"]),
    )


def _entry_from_row(row) -> OutboxEntry:
    return OutboxEntry(
        outbox_id=str(row["outbox_id"]),
        job_id=str(row["job_id"]),
        owner_key=str(row["owner_key"]),
        action=SettleAction(str(row["action"])),
        payload=dict(_json(row["payload"]) or {}),
        status=OutboxStatus(str(row["status"])),
        attempt_count=int(row["attempt_count"] or 0),
        next_attempt_at=float(row["next_attempt_at"]),
        last_error=row["last_error"],
        created_at=float(row["created_at"]),
    )


__all__ = ["PostgresJobStore", "PostgresSettlementOutbox"]
