"""
Generation orchestrator.

Drives one job through validation, admission, debit, provider call (with
fallback), settlement and the terminal transition. This is the only
component that writes GenerationJob rows and the only place provider
errors are turned into a FAILED job plus a refund.

From the moment a job is PROCESSING every exit path settles it: success,
provider failure, deadline, storage failure and task cancellation all end
in COMPLETED or FAILED with the ledger squared. A settle step that keeps
failing is handed to the settlement outbox and the job is flagged for
reconciliation instead of being dropped.

Job writes are conditional on the status the writer last saw. Whoever moves
a row off PROCESSING owns its refund, so a job the stale sweep has failed is
never completed afterwards.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any, TypeVar

from .admission import UNKNOWN_ORIGIN, AdmissionController
from .config import OrchestratorConfig, RoutingConfig, check_stale_cutoff
from .errors import (
    BrokerError,
    ContentPolicyError,
    ErrorCode,
    ErrorContext,
    FailureKind,
    GenerationFailedError,
    InsufficientCreditsError,
    InternalError,
    JobConflictError,
    ProviderError,
    ProviderTimeoutError,
    ProviderUnavailableError,
    ValidationFailedError,
    classify_failure,
    should_fallback,
)
from .jobs import (
    GenerationJob,
    InMemorySettlementOutbox,
    JobFilter,
    JobKind,
    JobStatus,
    JobStore,
    OutboxEntry,
    SettleAction,
    SettlementOutbox,
    outbox_retry_delay_seconds,
)
from .ledger import Ledger, Owner
from .logging import GenerationLog, SettlementLog, StructuredLogger, get_logger, timed, truncate_for_log
from .providers import (
    ImageProvider,
    ImageResult,
    Selection,
    StoryGenerator,
    StoryRequest,
    select_image_providers,
    select_story_generators,
    validate_image_request,
    validate_story_request,
)
from .storage import BlobStorage, Downloader, HttpDownloader

T = TypeVar("T")

CANCELLED_MESSAGE = "Generation was cancelled"


@dataclass(frozen=True)
class GenerationOutcome:
    """What the request boundary reports back for one job."""

    success: bool
    job_id: str
    status: JobStatus
    credits_remaining: int
    output: dict[str, Any] | None = None
    error: str | None = None
    error_code: ErrorCode | None = None
    provider: str | None = None
    failure_kind: FailureKind | None = None
    estimated_seconds: int | None = None
    needs_reconciliation: bool = False

    @property
    def http_status(self) -> int:
        if self.success:
            return 200
        if self.failure_kind == FailureKind.CONTENT_POLICY:
            return ContentPolicyError.http_status
        return 500


@dataclass(frozen=True)
class ReconcileReport:
    outbox_settled: int = 0
    outbox_rescheduled: int = 0
    outbox_failed: int = 0
    stale_jobs_failed: int = 0
    pending_jobs_cleared: int = 0
    slots_released: int = 0


class GenerationOrchestrator:
    """
    Composes the ledger, admission control and providers into jobs.

    Example:
        ```python
        orchestrator = GenerationOrchestrator(
            ledger=Ledger(InMemoryLedgerStore()),
            admission=AdmissionController(),
            jobs=InMemoryJobStore(),
            image_providers={"replicate": replicate, "openai": openai_provider},
            story_generator=StoryGenerator(settings.openai),
            storage=LocalBlobStorage("/var/genbroker"),
        )
        outcome = await orchestrator.generate_image(owner, prompt="a red fox", style="watercolour")
        ```
    """

    def __init__(
        self,
        *,
        ledger: Ledger,
        admission: AdmissionController,
        jobs: JobStore,
        storage: BlobStorage,
        image_providers: Mapping[str, ImageProvider] | None = None,
        story_generator: StoryGenerator | None = None,
        downloader: Downloader | None = None,
        outbox: SettlementOutbox | None = None,
        routing: RoutingConfig | None = None,
        config: OrchestratorConfig | None = None,
        logger: StructuredLogger | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.ledger = ledger
        self.admission = admission
        self.jobs = jobs
        self.storage = storage
        self.image_providers = dict(image_providers or {})
        self.story_generator = story_generator
        self.downloader = downloader or HttpDownloader()
        self.outbox = outbox or InMemorySettlementOutbox()
        self.routing = routing or RoutingConfig()
        self.config = config or OrchestratorConfig()
        check_stale_cutoff(self.admission.config, self.config)
        self._logger = logger or get_logger()
        self._clock = clock

    # =========================================================================
    # Entry points
    # =========================================================================

    async def generate_image(
        self,
        owner: Owner,
        *,
        prompt: str | None,
        style: str = "photorealistic",
        width: int = 1024,
        height: int = 1024,
        negative_prompt: str | None = None,
        seed: int | None = None,
        origin: str = UNKNOWN_ORIGIN,
    ) -> GenerationOutcome:
        """
        Generate one image for owner.

        Raises:
            ValidationFailedError, RateLimitedError, ConcurrencyLimitedError,
            InsufficientCreditsError, ProviderUnavailableError: Rejected
                before any credit was taken
        """
        request = validate_image_request(
            prompt,
            style=style,
            width=width,
            height=height,
            negative_prompt=negative_prompt,
            seed=seed,
        )
        selection = select_image_providers(self.routing, self.image_providers)

        async def attempt(provider: ImageProvider, job_ref: _JobRef) -> dict[str, Any]:
            async def remember_remote_id(remote_id: str) -> None:
                await job_ref.save(job_ref.job.with_updates(provider_job_id=remote_id))

            result = await provider.generate_image(request, on_submitted=remember_remote_id)
            return await self._store_image(result)

        return await self._run(owner, JobKind.IMAGE, request.to_dict(), origin, selection, attempt)

    async def generate_story(
        self,
        owner: Owner,
        *,
        subject_name: str,
        theme: str = "adventure",
        page_count: int = 8,
        subject_age: int | None = None,
        custom_elements: str | None = None,
        origin: str = UNKNOWN_ORIGIN,
    ) -> GenerationOutcome:
        """Write one story for owner. Raises the same rejections as generate_image."""
        request = StoryRequest(
            subject_name=(subject_name or "").strip(),
            theme=theme,
            page_count=page_count,
            subject_age=subject_age,
            custom_elements=custom_elements or None,
        )
        errors = validate_story_request(request)
        if errors:
            raise ValidationFailedError(errors=errors)

        if self.story_generator is None:
            selection: Selection[StoryGenerator] = Selection(primary=None)
        else:
            selection = select_story_generators(self.routing, self.story_generator)

        async def attempt(generator: StoryGenerator, job_ref: _JobRef) -> dict[str, Any]:
            story = await generator.generate(request)
            return {
                **story.to_dict(),
                "pageCount": len(story.pages),
                "model": story.model,
            }

        return await self._run(owner, JobKind.STORY, request.to_dict(), origin, selection, attempt)

    # =========================================================================
    # Pipeline
    # =========================================================================

    async def _run(
        self,
        owner: Owner,
        kind: JobKind,
        job_input: dict[str, Any],
        origin: str,
        selection: Selection[Any],
        attempt: Callable[[Any, _JobRef], Awaitable[dict[str, Any]]],
    ) -> GenerationOutcome:
        await self.admission.admit(owner.key, origin)

        check = await self.ledger.check_balance(owner)
        if not check.has_credits:
            raise InsufficientCreditsError(
                "Insufficient credits. Please purchase more credits to continue.",
                balance=check.balance,
                context=ErrorContext(owner_key=owner.key, operation="check_balance"),
            )

        if not selection.available:
            raise ProviderUnavailableError(
                "AI generation service unavailable",
                context=ErrorContext(owner_key=owner.key, operation=f"generate_{kind.value.lower()}"),
            )

        job = await self.jobs.create(
            GenerationJob(owner_key=owner.key, kind=kind, input=job_input, provider=selection.primary.name)
        )

        # Until the job is PROCESSING no settle path owns it, so any exit undoes the debit here.
        try:
            debit = await self.ledger.debit(owner, job.job_id)
            if not debit.ok:
                await self.jobs.delete(job.job_id)
                raise InsufficientCreditsError(
                    "Insufficient credits. Please purchase more credits to continue.",
                    balance=debit.new_balance,
                    context=ErrorContext(job_id=job.job_id, owner_key=owner.key, operation="debit"),
                )
            started = await self.jobs.update(job.transition_to(JobStatus.PROCESSING), expected_status=JobStatus.PENDING)
        except InsufficientCreditsError:
            raise
        except BaseException as e:
            await asyncio.shield(self._abort_pending(owner, job, e))
            if not isinstance(e, Exception):
                raise
            raise InternalError(
                "Failed to start generation",
                context=ErrorContext(job_id=job.job_id, owner_key=owner.key, operation="start"),
                cause=e,
            ) from e
        job_ref = _JobRef(self.jobs, started)

        with self._logger.job_context(job.job_id, owner.key, operation=f"generate_{kind.value.lower()}"):
            try:
                await self._track_started(owner.key, job.job_id)
                output, provider_name, error = await self._attempt_all(selection, attempt, job_ref)
                if output is not None:
                    return await self._settle_success(owner, job_ref, output, provider_name, debit.new_balance)
                return await self._settle_failure(owner, job_ref, error, debit.new_balance)
            except asyncio.CancelledError:
                if not job_ref.job.status.is_terminal:
                    await asyncio.shield(
                        self._settle_failure(owner, job_ref, GenerationFailedError(CANCELLED_MESSAGE), debit.new_balance)
                    )
                raise
            finally:
                await self._release(owner.key, job.job_id)

    async def _attempt_all(
        self,
        selection: Selection[Any],
        attempt: Callable[[Any, _JobRef], Awaitable[dict[str, Any]]],
        job_ref: _JobRef,
    ) -> tuple[dict[str, Any] | None, str | None, BaseException | None]:
        """Primary, then fallback when the failure is worth a second try."""
        last_error: BaseException | None = None
        candidates = selection.candidates()

        for index, provider in enumerate(candidates):
            is_fallback = index > 0
            if is_fallback:
                kind = classify_failure(last_error) if last_error else FailureKind.UNKNOWN
                if not should_fallback(kind):
                    self._logger.info("Fallback skipped", provider=provider.name, failure_kind=kind.value)
                    break
                if not provider.is_available():
                    break
                try:
                    await job_ref.save(job_ref.job.with_updates(provider=provider.name, provider_job_id=None))
                except JobConflictError as e:
                    last_error = e
                    break

            with timed() as timer:
                try:
                    output = await asyncio.wait_for(
                        attempt(provider, job_ref),
                        timeout=self.config.generation_timeout,
                    )
                except asyncio.TimeoutError as e:
                    last_error = ProviderTimeoutError(
                        "Generation timeout - please try again",
                        timeout=self.config.generation_timeout,
                        context=ErrorContext(job_id=job_ref.job.job_id, provider=provider.name),
                        cause=e,
                    )
                except Exception as e:
                    last_error = e
                else:
                    last_error = None

            self._logger.log_generation(
                GenerationLog(
                    job_id=job_ref.job.job_id,
                    provider=provider.name,
                    kind=job_ref.job.kind.value,
                    attempt=index + 1,
                    duration_ms=timer.elapsed_ms,
                    success=last_error is None,
                    failure_kind=classify_failure(last_error).value if last_error else None,
                    error=truncate_for_log(str(last_error)) if last_error else None,
                    fallback=is_fallback,
                )
            )
            if last_error is None:
                return output, provider.name, None
            if not _is_provider_failure(last_error):
                # Storage and other post-provider failures are not helped by another provider.
                break

        return None, None, last_error

    async def _store_image(self, result: ImageResult) -> dict[str, Any]:
        body, content_type = await self.downloader.fetch(result.image_url)
        blob = await self.storage.put(body, content_type or "image/png")
        return {
            "imageUrl": blob.url,
            "width": result.width,
            "height": result.height,
            "size": blob.size,
            "provider": result.provider,
            "providerJobId": result.provider_job_id,
            "metadata": dict(result.metadata),
        }

    # =========================================================================
    # Settlement
    # =========================================================================

    async def _settle_success(
        self,
        owner: Owner,
        job_ref: _JobRef,
        output: dict[str, Any],
        provider_name: str | None,
        balance: int,
    ) -> GenerationOutcome:
        job = job_ref.job

        async def complete() -> GenerationJob:
            if job_ref.job.status.is_terminal:
                return job_ref.job
            try:
                return await job_ref.save(job_ref.job.complete(output, provider_name))
            except JobConflictError as e:
                self._logger.warning("Job settled elsewhere", job_id=job.job_id, found=e.current_status)
                return job_ref.job

        settled, attempts = await self._with_settle_retry(complete, job.job_id)
        if settled is not None and settled.status == JobStatus.FAILED:
            # Failed by the stale sweep while the provider was still working; the output is dropped.
            return await self._settle_failure(owner, job_ref, None, balance)

        needs_reconciliation = settled is None
        if needs_reconciliation:
            await self._defer(owner, job_ref, SettleAction.COMPLETE, {"output": output, "provider": provider_name})

        self._logger.log_settlement(
            SettlementLog(
                job_id=job.job_id,
                owner_key=owner.key,
                status=JobStatus.COMPLETED.value,
                balance=balance,
                attempts=attempts,
                needs_reconciliation=needs_reconciliation,
            )
        )
        return GenerationOutcome(
            success=True,
            job_id=job.job_id,
            status=JobStatus.COMPLETED if settled else JobStatus.PROCESSING,
            credits_remaining=balance,
            output=output,
            provider=provider_name,
            estimated_seconds=self._estimate_for(provider_name, job.kind),
            needs_reconciliation=needs_reconciliation,
        )

    async def _settle_failure(
        self,
        owner: Owner,
        job_ref: _JobRef,
        error: BaseException | None,
        balance: int,
    ) -> GenerationOutcome:
        """Fail the job, then refund it. The refund is only written for a row that ended FAILED."""
        job = job_ref.job
        message, code = _describe(error)
        kind = classify_failure(error) if error else FailureKind.UNKNOWN

        async def fail_and_refund() -> tuple[GenerationJob, int | None]:
            if not job_ref.job.status.is_terminal:
                try:
                    await job_ref.save(job_ref.job.fail(message, code.value))
                except JobConflictError as e:
                    self._logger.warning("Job settled elsewhere", job_id=job.job_id, found=e.current_status)
            if job_ref.job.status != JobStatus.FAILED:
                return job_ref.job, None
            refund = await self.ledger.refund(owner, job.job_id)
            return job_ref.job, refund.new_balance

        settled, attempts = await self._with_settle_retry(fail_and_refund, job.job_id)
        row, refunded_balance = settled if settled is not None else (job_ref.job, None)

        if row.status == JobStatus.COMPLETED:
            return GenerationOutcome(
                success=True,
                job_id=row.job_id,
                status=row.status,
                credits_remaining=balance,
                output=row.output,
                provider=row.provider,
                estimated_seconds=self._estimate_for(row.provider, row.kind),
            )
        if row.status == JobStatus.FAILED and (row.error_message, row.error_code) != (message, code.value):
            message, code = row.error_message or message, _code_of(row.error_code)
            kind = FailureKind.TIMEOUT if code == ErrorCode.PROVIDER_TIMEOUT else FailureKind.UNKNOWN

        needs_reconciliation = refunded_balance is None
        if needs_reconciliation:
            await self._defer(
                owner,
                job_ref,
                SettleAction.REFUND_AND_FAIL,
                {"error_message": message, "error_code": code.value},
            )

        self._logger.log_settlement(
            SettlementLog(
                job_id=job.job_id,
                owner_key=owner.key,
                status=JobStatus.FAILED.value,
                refunded=not needs_reconciliation,
                balance=refunded_balance,
                attempts=attempts,
                needs_reconciliation=needs_reconciliation,
            )
        )
        return GenerationOutcome(
            success=False,
            job_id=job.job_id,
            status=row.status if row.status.is_terminal else JobStatus.PROCESSING,
            credits_remaining=refunded_balance if refunded_balance is not None else balance,
            error=message,
            error_code=code,
            provider=row.provider,
            failure_kind=kind,
            needs_reconciliation=needs_reconciliation,
        )

    async def _with_settle_retry(self, step: Callable[[], Awaitable[T]], job_id: str) -> tuple[T | None, int]:
        """Run a settle step up to settle_attempts times. None means it never succeeded."""
        attempts = self.config.settle_attempts
        for attempt in range(1, attempts + 1):
            try:
                return await step(), attempt
            except Exception as e:
                self._logger.log_error(e, "Settle step failed", job_id=job_id, attempt=attempt)
                if attempt < attempts:
                    await asyncio.sleep(self.config.settle_backoff * (2 ** (attempt - 1)))
        return None, attempts

    async def _defer(self, owner: Owner, job_ref: _JobRef, action: SettleAction, payload: dict[str, Any]) -> None:
        job_id = job_ref.job.job_id
        try:
            await self.outbox.enqueue(
                OutboxEntry(
                    job_id=job_id,
                    owner_key=owner.key,
                    action=action,
                    payload=payload,
                    next_attempt_at=self._clock() + outbox_retry_delay_seconds(0),
                )
            )
        except Exception as e:
            # A PROCESSING row left unflagged is picked up by the stale-job sweep.
            self._logger.log_error(e, "Could not enqueue settlement", job_id=job_id, action=action.value)
            return
        try:
            await job_ref.save(job_ref.job.with_updates(needs_reconciliation=True))
        except Exception as e:
            self._logger.log_error(e, "Could not flag job for reconciliation", job_id=job_id)

    async def _abort_pending(self, owner: Owner, job: GenerationJob, error: BaseException) -> None:
        """Undo a debit whose job never reached PROCESSING."""
        self._logger.log_error(error, "Could not start job", job_id=job.job_id)
        try:
            if await self.ledger.was_charged(job.job_id):
                await self.ledger.refund(owner, job.job_id)
            await self.jobs.delete(job.job_id)
        except Exception as e:
            # The row stays PENDING until the reconciliation sweep clears it.
            self._logger.log_error(e, "Could not undo debit for unstarted job", job_id=job.job_id)

    async def _track_started(self, owner_key: str, job_id: str) -> None:
        try:
            await self.admission.job_started(owner_key, job_id)
        except Exception as e:
            # The in-flight gauge is advisory; the job is already paid for and PROCESSING.
            self._logger.log_error(e, "Could not record job start", job_id=job_id)

    async def _release(self, owner_key: str, job_id: str) -> None:
        try:
            await self.admission.job_finished(owner_key, job_id)
        except Exception as e:
            # The reconciliation sweep releases the slot later.
            self._logger.log_error(e, "Could not release concurrency slot", job_id=job_id)

    # =========================================================================
    # Reconciliation
    # =========================================================================

    async def reconcile(self, *, stale_after: float | None = None, outbox_limit: int = 50) -> ReconcileReport:
        """
        Crash recovery sweep.

        Replays due outbox entries, fails and refunds PROCESSING jobs that
        have been running longer than ``stale_after``, clears PENDING rows
        whose run died before the job started (refunding any debit), and
        releases concurrency slots held by finished, missing or stale jobs.
        """
        now = self._clock()
        stale_after = stale_after if stale_after is not None else self.admission.config.stale_job_seconds
        settled = rescheduled = failed = 0

        for entry in await self.outbox.due(now, outbox_limit):
            attempt_count = entry.attempt_count + 1
            try:
                await self._apply_outbox_entry(entry)
            except Exception as e:
                if attempt_count >= self.config.outbox_max_retries:
                    await self.outbox.mark_failed(entry.outbox_id, attempt_count, str(e))
                    self._logger.error(
                        "Settlement needs manual reconciliation",
                        job_id=entry.job_id,
                        owner_key=entry.owner_key,
                        action=entry.action.value,
                        attempts=attempt_count,
                    )
                    failed += 1
                else:
                    next_at = now + outbox_retry_delay_seconds(attempt_count)
                    await self.outbox.reschedule(entry.outbox_id, attempt_count, next_at, str(e))
                    rescheduled += 1
                continue
            await self.outbox.mark_settled(entry.outbox_id)
            await self._release(entry.owner_key, entry.job_id)
            settled += 1

        stale_failed = await self._fail_stale_jobs(now, stale_after)
        pending_cleared = await self._clear_orphaned_pending(now, stale_after)
        released = await self.admission.reconcile(self.jobs, stale_after=stale_after)

        report = ReconcileReport(
            outbox_settled=settled,
            outbox_rescheduled=rescheduled,
            outbox_failed=failed,
            stale_jobs_failed=stale_failed,
            pending_jobs_cleared=pending_cleared,
            slots_released=released,
        )
        if any((settled, rescheduled, failed, stale_failed, pending_cleared, released)):
            self._logger.info("Reconciliation sweep", **vars(report))
        return report

    async def _apply_outbox_entry(self, entry: OutboxEntry) -> None:
        job = await self.jobs.get(entry.job_id)
        owner = Owner.from_key(entry.owner_key)
        refund_owed = entry.action == SettleAction.REFUND_AND_FAIL

        if job is not None and not job.status.is_terminal:
            if refund_owed:
                settled = job.fail(
                    entry.payload.get("error_message") or "Generation failed",
                    entry.payload.get("error_code"),
                )
            else:
                settled = job.complete(entry.payload.get("output") or {}, entry.payload.get("provider"))
            try:
                job = await self.jobs.update(settled, expected_status=job.status)
            except JobConflictError:
                job = await self.jobs.get(entry.job_id)

        if refund_owed:
            if job is None:
                if await self.ledger.was_charged(entry.job_id):
                    await self.ledger.refund(owner, entry.job_id)
            elif job.status == JobStatus.FAILED:
                await self.ledger.refund(owner, entry.job_id)

        if job is not None and job.needs_reconciliation:
            await self.jobs.update(job.with_updates(needs_reconciliation=False), expected_status=job.status)

    async def _fail_stale_jobs(self, now: float, stale_after: float) -> int:
        stale = await self.jobs.list(
            JobFilter(
                status=JobStatus.PROCESSING,
                started_before=now - stale_after,
                needs_reconciliation=False,
                limit=100,
            )
        )
        count = 0
        for job in stale:
            # Fail first: only the writer that moves the row off PROCESSING may refund it.
            try:
                await self.jobs.update(
                    job.fail("Generation timed out", ErrorCode.PROVIDER_TIMEOUT.value),
                    expected_status=JobStatus.PROCESSING,
                )
            except JobConflictError:
                self._logger.debug("Stale job settled by its own run", job_id=job.job_id)
                continue
            except Exception as e:
                self._logger.log_error(e, "Could not settle stale job", job_id=job.job_id)
                continue
            await self._refund_stale(job, now)
            await self._release(job.owner_key, job.job_id)
            count += 1
        return count

    async def _refund_stale(self, job: GenerationJob, now: float) -> None:
        try:
            await self.ledger.refund(Owner.from_key(job.owner_key), job.job_id)
            return
        except Exception as e:
            self._logger.log_error(e, "Could not refund stale job", job_id=job.job_id)
        try:
            await self.outbox.enqueue(
                OutboxEntry(
                    job_id=job.job_id,
                    owner_key=job.owner_key,
                    action=SettleAction.REFUND_AND_FAIL,
                    payload={"error_message": "Generation timed out", "error_code": ErrorCode.PROVIDER_TIMEOUT.value},
                    next_attempt_at=now + outbox_retry_delay_seconds(0),
                )
            )
        except Exception as e:
            self._logger.log_error(e, "Refund for stale job needs manual reconciliation", job_id=job.job_id)

    async def _clear_orphaned_pending(self, now: float, stale_after: float) -> int:
        """Remove PENDING rows left by a run that died between its debit and the start of the job."""
        orphans = await self.jobs.list(
            JobFilter(status=JobStatus.PENDING, created_before=now - stale_after, limit=100)
        )
        count = 0
        for job in orphans:
            try:
                if await self.ledger.was_charged(job.job_id):
                    await self.ledger.refund(Owner.from_key(job.owner_key), job.job_id)
                await self.jobs.delete(job.job_id)
            except Exception as e:
                self._logger.log_error(e, "Could not clear unstarted job", job_id=job.job_id)
                continue
            count += 1
        return count

    def _estimate_for(self, provider_name: str | None, kind: JobKind) -> int | None:
        if kind == JobKind.STORY and self.story_generator is not None:
            return self.story_generator.estimated_duration_seconds()
        provider = self.image_providers.get(provider_name or "")
        return provider.estimated_duration_seconds() if provider else None


class _JobRef:
    """Latest persisted copy of the job being run."""

    def __init__(self, store: JobStore, job: GenerationJob):
        self._store = store
        self.job = job

    async def save(self, job: GenerationJob) -> GenerationJob:
        """Write job only while the row still has the status this run last saw.

        On a conflict the reference is refreshed to the stored row before
        the JobConflictError propagates.
        """
        try:
            self.job = await self._store.update(job, expected_status=self.job.status)
        except JobConflictError:
            current = await self._store.get(self.job.job_id)
            if current is not None:
                self.job = current
            raise
        return self.job


def _is_provider_failure(error: BaseException) -> bool:
    return isinstance(error, ProviderError) or not isinstance(error, BrokerError)


def _code_of(value: str | None) -> ErrorCode:
    try:
        return ErrorCode(value)
    except ValueError:
        return ErrorCode.GENERATION_FAILED


def _describe(error: BaseException | None) -> tuple[str, ErrorCode]:
    if isinstance(error, BrokerError):
        return error.message, error.code
    if error is None:
        return "Generation failed", ErrorCode.GENERATION_FAILED
    return f"Generation failed: {error}", ErrorCode.GENERATION_FAILED


__all__ = ["GenerationOrchestrator", "GenerationOutcome", "ReconcileReport"]
