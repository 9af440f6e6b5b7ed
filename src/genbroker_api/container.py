from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

import asyncpg
import redis.asyncio as redis

from genbroker.admission import AdmissionController, InMemoryAdmissionState, RedisAdmissionState
from genbroker.config import Settings
from genbroker.jobs import InMemoryJobStore, InMemorySettlementOutbox, PostgresJobStore, PostgresSettlementOutbox
from genbroker.ledger import InMemoryLedgerStore, Ledger, PostgresLedgerStore
from genbroker.logging import StructuredLogger, get_logger
from genbroker.orchestrator import GenerationOrchestrator
from genbroker.providers import ImageProvider, OpenAIImageProvider, ReplicateImageProvider, StoryGenerator
from genbroker.status import JobStatusReader
from genbroker.storage import BlobStorage, HttpDownloader, LocalBlobStorage

from .settings import ApiSettings


@dataclass
class BrokerContainer:
    settings: Settings
    ledger: Ledger
    admission: AdmissionController
    orchestrator: GenerationOrchestrator
    status_reader: JobStatusReader
    closers: list[Callable[[], Awaitable[None]]] = field(default_factory=list)

    async def close(self) -> None:
        logger = get_logger()
        for close in reversed(self.closers):
            try:
                await close()
            except Exception as e:
                logger.log_error(e, "Shutdown step failed")


def build_image_providers(settings: Settings, logger: StructuredLogger | None = None) -> dict[str, ImageProvider]:
    return {
        "replicate": ReplicateImageProvider(settings.replicate, logger=logger),
        "openai": OpenAIImageProvider(settings.openai, logger=logger),
    }


def assemble(
    settings: Settings,
    *,
    ledger: Ledger,
    admission: AdmissionController,
    orchestrator_kwargs: dict,
    logger: StructuredLogger | None = None,
) -> BrokerContainer:
    """Wire the orchestrator and status reader over already-built stores."""
    orchestrator = GenerationOrchestrator(
        ledger=ledger,
        admission=admission,
        routing=settings.routing,
        config=settings.orchestrator,
        logger=logger,
        **orchestrator_kwargs,
    )
    status_reader = JobStatusReader(
        orchestrator.jobs,
        image_providers=orchestrator.image_providers,
        story_generator=orchestrator.story_generator,
        logger=logger,
    )
    return BrokerContainer(
        settings=settings,
        ledger=ledger,
        admission=admission,
        orchestrator=orchestrator,
        status_reader=status_reader,
    )


def build_memory_container(
    settings: Settings,
    *,
    storage: BlobStorage,
    image_providers: dict[str, ImageProvider] | None = None,
    story_generator: StoryGenerator | None = None,
    downloader=None,
    logger: StructuredLogger | None = None,
) -> BrokerContainer:
    """Single-process broker with every store in memory."""
    logger = logger or get_logger()
    return assemble(
        settings,
        ledger=Ledger(InMemoryLedgerStore(), settings.credits, logger=logger),
        admission=AdmissionController(settings.admission, state=InMemoryAdmissionState(), logger=logger),
        orchestrator_kwargs={
            "jobs": InMemoryJobStore(),
            "outbox": InMemorySettlementOutbox(),
            "storage": storage,
            "image_providers": image_providers if image_providers is not None else build_image_providers(settings, logger),
            "story_generator": story_generator if story_generator is not None else StoryGenerator(settings.openai, logger=logger),
            "downloader": downloader,
        },
        logger=logger,
    )


async def build_container(settings: Settings, api: ApiSettings, *, logger: StructuredLogger | None = None) -> BrokerContainer:
    """Broker for the API process, backed by Postgres and Redis when configured."""
    logger = logger or get_logger()
    logger.info(
        "Building broker",
        backend=api.backend,
        replicate_api_key=settings.replicate.api_key,
        openai_api_key=settings.openai.api_key,
    )
    providers = build_image_providers(settings, logger)
    story_generator = StoryGenerator(settings.openai, logger=logger)
    downloader = HttpDownloader()
    storage = LocalBlobStorage(api.storage_dir, api.storage_base_url)
    closers: list[Callable[[], Awaitable[None]]] = [downloader.close]
    closers.extend(provider.close for provider in providers.values())

    if api.backend == "postgres":
        pool = await asyncpg.create_pool(dsn=api.pg_dsn, min_size=api.pg_pool_min, max_size=api.pg_pool_max)
        closers.insert(0, pool.close)
        ledger_store = PostgresLedgerStore(pool)
        job_store = PostgresJobStore(pool)
        outbox = PostgresSettlementOutbox(pool)
        await ledger_store.ensure_schema()
        await job_store.ensure_schema()
        await outbox.ensure_schema()
    else:
        ledger_store = InMemoryLedgerStore()
        job_store = InMemoryJobStore()
        outbox = InMemorySettlementOutbox()

    if api.redis_url:
        client = redis.Redis.from_url(api.redis_url)
        closers.insert(0, client.aclose)
        admission_state = RedisAdmissionState(client, key_ttl_seconds=settings.admission.key_ttl_seconds)
    else:
        admission_state = InMemoryAdmissionState()

    container = assemble(
        settings,
        ledger=Ledger(ledger_store, settings.credits, logger=logger),
        admission=AdmissionController(settings.admission, state=admission_state, logger=logger),
        orchestrator_kwargs={
            "jobs": job_store,
            "outbox": outbox,
            "storage": storage,
            "image_providers": providers,
            "story_generator": story_generator,
            "downloader": downloader,
        },
        logger=logger,
    )
    container.closers = closers
    return container
