"""
Shared test fixtures and fakes for genbroker tests.

This module provides:
- Scripted image providers (sync and fire-and-poll) and a story generator
- A fake downloader and flaky job store for settlement tests
- A fake asyncpg pool/connection that understands the ledger statements
- An orchestrator factory wired entirely in memory
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any

import pytest

from genbroker.admission import AdmissionController
from genbroker.config import AdmissionConfig, CreditsConfig, OrchestratorConfig, RoutingConfig
from genbroker.errors import StorageError
from genbroker.jobs import GenerationJob, InMemoryJobStore, InMemorySettlementOutbox, JobKind, JobStatus
from genbroker.ledger import InMemoryLedgerStore, Ledger, Owner
from genbroker.orchestrator import GenerationOrchestrator
from genbroker.providers import (
    ExecutionMode,
    ImageRequest,
    ImageResult,
    RemoteJobStatus,
    RemoteState,
    Story,
    StoryPage,
    StoryRequest,
)
from genbroker.storage import InMemoryBlobStorage

# =============================================================================
# Fake Providers
# =============================================================================


def make_image_result(provider: str = "replicate", url: str | None = None, **kwargs: Any) -> ImageResult:
    """Create an ImageResult as a provider would return it."""
    return ImageResult(
        image_url=url or f"https://cdn.example.com/{provider}/out.png",
        width=kwargs.pop("width", 1024),
        height=kwargs.pop("height", 1024),
        provider=provider,
        provider_job_id=kwargs.pop("provider_job_id", None),
        metadata=kwargs.pop("metadata", {}),
    )


class FakeImageProvider:
    """
    Scripted image provider.

    Each call to generate_image consumes the next scripted outcome: an
    ImageResult is returned, an exception is raised. ``delay`` makes the
    call slow enough to trip deadlines or be cancelled.
    """

    def __init__(
        self,
        name: str,
        outcomes: list[ImageResult | BaseException] | None = None,
        *,
        mode: ExecutionMode = ExecutionMode.SYNC,
        available: bool = True,
        delay: float = 0.0,
        estimated_seconds: int = 30,
    ):
        self._name = name
        self.mode = mode
        self.available = available
        self.delay = delay
        self.estimated_seconds = estimated_seconds
        self.outcomes = list(outcomes or [])
        self.calls: list[ImageRequest] = []
        self.started = asyncio.Event()

    @property
    def name(self) -> str:
        return self._name

    def is_available(self) -> bool:
        return self.available

    def estimated_duration_seconds(self) -> int:
        return self.estimated_seconds

    async def generate_image(self, request: ImageRequest, *, on_submitted=None) -> ImageResult:
        self.calls.append(request)
        if self.mode == ExecutionMode.POLL and on_submitted is not None:
            await on_submitted(f"{self._name}-remote-{len(self.calls)}")
        self.started.set()
        if self.delay:
            await asyncio.sleep(self.delay)
        outcome = self.outcomes.pop(0) if self.outcomes else make_image_result(self._name)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class FakePollingProvider(FakeImageProvider):
    """Fire-and-poll provider whose remote status is set by the test."""

    def __init__(self, name: str = "replicate", outcomes=None, **kwargs: Any):
        super().__init__(name, outcomes, mode=ExecutionMode.POLL, **kwargs)
        self.remote_status = RemoteJobStatus(state=RemoteState.PROCESSING)
        self.status_error: BaseException | None = None
        self.status_calls: list[str] = []

    async def get_job_status(self, remote_id: str) -> RemoteJobStatus:
        self.status_calls.append(remote_id)
        if self.status_error is not None:
            raise self.status_error
        return self.remote_status


def make_story(title: str = "Emma and the Dragon", pages: int = 4, model: str | None = None) -> Story:
    return Story(
        title=title,
        pages=[
            StoryPage(page_number=i + 1, text=f"Page {i + 1} text.", illustration_prompt=f"Illustration {i + 1}")
            for i in range(pages)
        ],
        model=model,
    )


class FakeStoryGenerator:
    """Scripted story generator sharing outcomes across with_model() copies."""

    def __init__(
        self,
        model: str = "gpt-4-turbo-preview",
        outcomes: list[Story | BaseException] | None = None,
        *,
        available: bool = True,
        calls: list[tuple[str, StoryRequest]] | None = None,
    ):
        self._model = model
        self.available = available
        self.outcomes = outcomes if outcomes is not None else []
        self.calls = calls if calls is not None else []

    @property
    def name(self) -> str:
        return "openai"

    @property
    def model(self) -> str:
        return self._model

    def is_available(self) -> bool:
        return self.available

    def estimated_duration_seconds(self) -> int:
        return 20

    def with_model(self, model: str) -> FakeStoryGenerator:
        return FakeStoryGenerator(model, self.outcomes, available=self.available, calls=self.calls)

    async def generate(self, request: StoryRequest) -> Story:
        self.calls.append((self._model, request))
        outcome = self.outcomes.pop(0) if self.outcomes else make_story(model=self._model)
        if isinstance(outcome, BaseException):
            raise outcome
        return Story(title=outcome.title, pages=outcome.pages, model=self._model)


class FakeDownloader:
    def __init__(self, body: bytes = b"\x89PNG fake image", content_type: str = "image/png", error: Exception | None = None):
        self.body = body
        self.content_type = content_type
        self.error = error
        self.urls: list[str] = []

    async def fetch(self, url: str) -> tuple[bytes, str]:
        self.urls.append(url)
        if self.error is not None:
            raise self.error
        return self.body, self.content_type


class FailingBlobStorage:
    async def put(self, data: bytes, content_type: str):
        raise StorageError("Failed to write blob")


class FlakyJobStore(InMemoryJobStore):
    """Job store whose start or terminal updates fail a set number of times."""

    def __init__(self, terminal_failures: int = 0, start_failures: int = 0):
        super().__init__()
        self.terminal_failures = terminal_failures
        self.start_failures = start_failures

    async def update(self, job: GenerationJob, *, expected_status: JobStatus | None = None) -> GenerationJob:
        if job.status.is_terminal and self.terminal_failures > 0:
            self.terminal_failures -= 1
            raise ConnectionError("database connection lost")
        if expected_status == JobStatus.PENDING and self.start_failures > 0:
            self.start_failures -= 1
            raise ConnectionError("database connection lost")
        return await super().update(job, expected_status=expected_status)


# =============================================================================
# Clock
# =============================================================================


@dataclass
class FakeClock:
    now: float = 1_700_000_000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# =============================================================================
# Broker Factory
# =============================================================================


@dataclass
class Broker:
    orchestrator: GenerationOrchestrator
    ledger: Ledger
    admission: AdmissionController
    jobs: InMemoryJobStore
    outbox: InMemorySettlementOutbox
    storage: InMemoryBlobStorage
    downloader: FakeDownloader
    clock: FakeClock
    providers: dict[str, Any] = field(default_factory=dict)


def make_broker(
    providers: dict[str, Any] | None = None,
    *,
    story_generator: Any = None,
    jobs: InMemoryJobStore | None = None,
    storage: Any = None,
    downloader: FakeDownloader | None = None,
    credits: CreditsConfig | None = None,
    admission: AdmissionConfig | None = None,
    routing: RoutingConfig | None = None,
    config: OrchestratorConfig | None = None,
    clock: FakeClock | None = None,
) -> Broker:
    """Orchestrator wired to in-memory stores and fakes."""
    clock = clock or FakeClock()
    providers = providers if providers is not None else {"replicate": FakeImageProvider("replicate")}
    ledger = Ledger(InMemoryLedgerStore(), credits or CreditsConfig())
    admission_controller = AdmissionController(
        admission or AdmissionConfig(abuse_requests_per_second=100),
        clock=clock,
    )
    jobs = jobs or InMemoryJobStore()
    outbox = InMemorySettlementOutbox()
    blob_storage = storage if storage is not None else InMemoryBlobStorage()
    downloader = downloader or FakeDownloader()
    orchestrator = GenerationOrchestrator(
        ledger=ledger,
        admission=admission_controller,
        jobs=jobs,
        storage=blob_storage,
        image_providers=providers,
        story_generator=story_generator,
        downloader=downloader,
        outbox=outbox,
        routing=routing or RoutingConfig(),
        config=config or OrchestratorConfig(generation_timeout=5.0, settle_attempts=3, settle_backoff=0.0),
        clock=clock,
    )
    return Broker(
        orchestrator=orchestrator,
        ledger=ledger,
        admission=admission_controller,
        jobs=jobs,
        outbox=outbox,
        storage=blob_storage,
        downloader=downloader,
        clock=clock,
        providers=providers,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def guest() -> Owner:
    return Owner.guest("sess_test")


@pytest.fixture
def user() -> Owner:
    return Owner.registered("user_test")


@pytest.fixture
def ledger() -> Ledger:
    return Ledger(InMemoryLedgerStore(), CreditsConfig(guest_initial_credits=5, registered_initial_credits=10))


@pytest.fixture
def broker_factory() -> Callable[..., Broker]:
    return make_broker


async def make_processing_job(
    jobs: InMemoryJobStore,
    owner: Owner,
    *,
    provider: str = "replicate",
    started_at: float | None = None,
    **kwargs: Any,
) -> GenerationJob:
    """Store a job that is already PROCESSING."""
    job = GenerationJob(owner_key=owner.key, kind=kwargs.pop("kind", JobKind.IMAGE), provider=provider, **kwargs)
    job = job.transition_to(JobStatus.PROCESSING)
    if started_at is not None:
        job = replace(job, started_at=started_at)
    return await jobs.create(job)


# =============================================================================
# Fake asyncpg
# =============================================================================


class _Tx:
    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        _ = (exc_type, exc, tb)
        return False


class _Acquire:
    def __init__(self, conn) -> None:
        self._conn = conn

    async def __aenter__(self):
        return self._conn

    async def __aexit__(self, exc_type, exc, tb):
        _ = (exc_type, exc, tb)
        return False


def _ts() -> datetime:
    return datetime.now(timezone.utc)


class FakeLedgerConn:
    """Interprets the statements PostgresLedgerStore issues."""

    def __init__(self) -> None:
        self.accounts: dict[str, dict[str, Any]] = {}
        self.transactions: list[dict[str, Any]] = []
        self.statements: list[str] = []

    def transaction(self):
        return _Tx()

    def _tx(self, transaction_id, owner_key, amount, reason, job_id, metadata) -> dict[str, Any]:
        row = {
            "transaction_id": transaction_id,
            "owner_key": owner_key,
            "amount": int(amount),
            "reason": reason,
            "job_id": job_id,
            "metadata": metadata,
            "created_at": _ts(),
        }
        self.transactions.append(row)
        return row

    async def execute(self, sql: str, *args):
        self.statements.append(sql)
        if "INSERT INTO" in sql and "credit_transactions" in sql:
            self._tx(args[0], args[1], args[2], args[3], args[4], args[5])
        elif "SET balance = 0" in sql:
            self.accounts[args[0]]["balance"] = 0
        return "OK"

    async def fetchrow(self, sql: str, *args):
        self.statements.append(sql)
        if "FROM" in sql and "credit_accounts" in sql:
            return self.accounts.get(args[0])
        return None

    async def fetch(self, sql: str, *args):
        self.statements.append(sql)
        if "FOR UPDATE" in sql:
            keys = sorted(k for k in args[0] if k in self.accounts)
            return [self.accounts[k] for k in keys]
        if "FROM" in sql and "credit_transactions" in sql:
            rows = [r for r in reversed(self.transactions) if r["owner_key"] == args[0]]
            limit = args[1]
            return rows[:limit] if limit is not None else rows
        return []

    async def fetchval(self, sql: str, *args):
        self.statements.append(sql)
        if "INSERT INTO" in sql and "credit_accounts" in sql:
            if args[0] in self.accounts:
                return None
            self.accounts[args[0]] = {
                "owner_key": args[0],
                "owner_kind": args[1],
                "account_id": args[2],
                "balance": int(args[3]),
                "total_used": 0,
                "created_at": _ts(),
                "updated_at": _ts(),
            }
            return args[2]
        if "INSERT INTO" in sql and "ON CONFLICT (job_id)" in sql:
            if any(r["job_id"] == args[2] and r["reason"] == "REFUND" for r in self.transactions):
                return None
            row = self._tx(args[0], args[1], 1, "REFUND", args[2], "{}")
            return row["transaction_id"]
        if "balance >= 1" in sql:
            account = self.accounts.get(args[0])
            if account is None or account["balance"] < 1:
                return None
            account["balance"] -= 1
            account["total_used"] += 1
            return account["balance"]
        if "total_used = total_used + $3" in sql:
            account = self.accounts[args[0]]
            account["balance"] += int(args[1])
            account["total_used"] += int(args[2])
            return account["balance"]
        if "balance = balance + 1" in sql:
            account = self.accounts.get(args[0])
            if account is None:
                return None
            account["balance"] += 1
            return account["balance"]
        if "balance = balance + $2" in sql:
            account = self.accounts.get(args[0])
            if account is None:
                return None
            account["balance"] += int(args[1])
            return account["balance"]
        if "SUM(amount)" in sql:
            return sum(r["amount"] for r in self.transactions if r["owner_key"] == args[0])
        if "SELECT balance" in sql:
            account = self.accounts.get(args[0])
            return account["balance"] if account else None
        if "reason='REFUND'" in sql:
            return 1 if any(r["job_id"] == args[0] and r["reason"] == "REFUND" for r in self.transactions) else None
        if "reason='GENERATION'" in sql:
            return 1 if any(r["job_id"] == args[0] and r["reason"] == "GENERATION" for r in self.transactions) else None
        if "reason='GENERATION'" in sql:
            return 1 if any(r["job_id"] == args[0] and r["reason"] == "GENERATION" for r in self.transactions) else None
        return None

    def metadata_of(self, row: dict[str, Any]) -> dict[str, Any]:
        metadata = row["metadata"]
        return json.loads(metadata) if isinstance(metadata, str) else dict(metadata or {})


class FakePool:
    def __init__(self, conn) -> None:
        self._conn = conn

    def acquire(self):
        return _Acquire(self._conn)


@pytest.fixture
def ledger_conn() -> FakeLedgerConn:
    return FakeLedgerConn()


@pytest.fixture
def fake_pool(ledger_conn: FakeLedgerConn) -> FakePool:
    return FakePool(ledger_conn)


# =============================================================================
# Fake Redis
# =============================================================================


class FakePipeline:
    """Buffers redis commands and runs them on execute()."""

    def __init__(self, redis: FakeRedis):
        self._redis = redis
        self._ops: list[tuple[str, tuple[Any, ...], dict[str, Any]]] = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        _ = (exc_type, exc, tb)
        return False

    def __getattr__(self, name: str):
        def queue(*args: Any, **kwargs: Any) -> FakePipeline:
            self._ops.append((name, args, kwargs))
            return self

        return queue

    async def execute(self) -> list[Any]:
        results = []
        for name, args, kwargs in self._ops:
            results.append(await getattr(self._redis, name)(*args, **kwargs))
        self._ops.clear()
        return results


class FakeRedis:
    """Just enough of redis.asyncio.Redis for the admission state."""

    def __init__(self) -> None:
        self.zsets: dict[str, dict[str, float]] = {}
        self.sets: dict[str, set[str]] = {}
        self.strings: dict[str, str] = {}
        self.ttls: dict[str, int] = {}

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        _ = transaction
        return FakePipeline(self)

    async def zremrangebyscore(self, name: str, min: float, max: float) -> int:
        zset = self.zsets.get(name, {})
        doomed = [m for m, s in zset.items() if float(min) <= s <= float(max)]
        for member in doomed:
            del zset[member]
        return len(doomed)

    async def zadd(self, name: str, mapping: dict[str, float]) -> int:
        zset = self.zsets.setdefault(name, {})
        added = sum(1 for m in mapping if m not in zset)
        zset.update(mapping)
        return added

    async def zcard(self, name: str) -> int:
        return len(self.zsets.get(name, {}))

    async def zrange(self, name: str, start: int, end: int, withscores: bool = False):
        items = sorted(self.zsets.get(name, {}).items(), key=lambda kv: kv[1])
        end = len(items) if end == -1 else end + 1
        items = items[start:end]
        if withscores:
            return [(m.encode(), s) for m, s in items]
        return [m.encode() for m, _ in items]

    async def expire(self, name: str, seconds: int) -> bool:
        self.ttls[name] = int(seconds)
        return True

    async def set(self, name: str, value: Any, ex: int | None = None, px: int | None = None) -> bool:
        self.strings[name] = str(value)
        if ex is not None:
            self.ttls[name] = int(ex)
        return True

    async def get(self, name: str):
        value = self.strings.get(name)
        return value.encode() if value is not None else None

    async def delete(self, *names: str) -> int:
        removed = 0
        for name in names:
            for store in (self.zsets, self.sets, self.strings):
                if name in store:
                    del store[name]
                    removed += 1
        return removed

    async def sadd(self, name: str, *values: str) -> int:
        members = self.sets.setdefault(name, set())
        added = sum(1 for v in values if v not in members)
        members.update(values)
        return added

    async def srem(self, name: str, *values: str) -> int:
        members = self.sets.get(name, set())
        removed = sum(1 for v in values if v in members)
        members.difference_update(values)
        if not members:
            self.sets.pop(name, None)
        return removed

    async def smembers(self, name: str) -> set[bytes]:
        return {m.encode() for m in self.sets.get(name, set())}

    async def scard(self, name: str) -> int:
        return len(self.sets.get(name, set()))

    async def scan_iter(self, match: str | None = None):
        import fnmatch

        for name in list(self.zsets) + list(self.strings) + list(self.sets):
            if match is None or fnmatch.fnmatch(name, match):
                yield name


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()
