from __future__ import annotations

import asyncio
from typing import Any

from fastapi import APIRouter, FastAPI, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from genbroker import __version__
from genbroker.admission import client_origin
from genbroker.config import Settings, load_env
from genbroker.errors import (
    BrokerError,
    ConcurrencyLimitedError,
    ErrorContext,
    InsufficientCreditsError,
    RateLimitedError,
    SessionRequiredError,
    UnauthorisedError,
    ValidationFailedError,
)
from genbroker.logging import configure_logging, get_logger
from genbroker.orchestrator import GenerationOutcome
from genbroker.providers import SUPPORTED_DIMENSIONS, available_styles, available_themes

from .auth import read_identity, resolve_owner
from .container import BrokerContainer, build_container
from .settings import ApiSettings


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ImageGenerateRequest(ApiModel):
    prompt: str | None = None
    style: str = "photorealistic"
    width: int = 1024
    height: int = 1024
    negative_prompt: str | None = None
    seed: int | None = None


class StoryGenerateRequest(ApiModel):
    child_name: str = ""
    child_age: int | None = None
    theme: str = "adventure"
    page_count: int = 8
    custom_elements: str | None = None


class GenerationResponse(ApiModel):
    success: bool
    job_id: str
    status: str
    credits_remaining: int
    provider: str | None = None
    result: dict[str, Any] | None = None
    error: str | None = None
    error_code: str | None = None
    estimated_seconds: int | None = None


class CreditsResponse(ApiModel):
    success: bool = True
    balance: int
    owner_kind: str
    rate_limit_remaining: int
    rate_limit_reset_in: int


class MigrateResponse(ApiModel):
    success: bool = True
    migrated_amount: int
    balance: int


def _container(request: Request) -> BrokerContainer:
    return request.app.state.container


def _api_settings(request: Request) -> ApiSettings:
    return request.app.state.api_settings or ApiSettings()


def _origin(request: Request) -> str:
    return client_origin(request.headers, request.client.host if request.client else None)


def _generation_response(outcome: GenerationOutcome, response: Response) -> GenerationResponse:
    response.status_code = outcome.http_status
    return GenerationResponse(
        success=outcome.success,
        job_id=outcome.job_id,
        status=outcome.status.external,
        credits_remaining=outcome.credits_remaining,
        provider=outcome.provider,
        result=outcome.output,
        error=outcome.error,
        error_code=outcome.error_code.value if outcome.error_code else None,
        estimated_seconds=outcome.estimated_seconds,
    )


def error_body(exc: BrokerError) -> dict[str, Any]:
    body: dict[str, Any] = {"success": False, "error": exc.message, "errorCode": exc.code.value}
    if isinstance(exc, ValidationFailedError) and exc.errors:
        body["errors"] = exc.errors
    if isinstance(exc, (RateLimitedError, ConcurrencyLimitedError)):
        body["retryAfter"] = exc.retry_after
    if isinstance(exc, InsufficientCreditsError):
        body["creditsRemaining"] = exc.balance
    return body


async def broker_error_handler(request: Request, exc: BrokerError) -> JSONResponse:
    headers = None
    if isinstance(exc, (RateLimitedError, ConcurrencyLimitedError)):
        headers = {"Retry-After": str(exc.retry_after)}
    if exc.http_status >= 500:
        get_logger().log_error(exc, "Request failed", path=request.url.path)
    return JSONResponse(status_code=exc.http_status, content=error_body(exc), headers=headers)


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [f"{'.'.join(str(p) for p in err.get('loc', ())[1:])}: {err.get('msg')}" for err in exc.errors()]
    return await broker_error_handler(request, ValidationFailedError(errors=errors))


router = APIRouter()


@router.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"ok": "true"}


@router.post("/v1/generate/image", response_model=GenerationResponse, response_model_exclude_none=True)
async def generate_image(req: ImageGenerateRequest, request: Request, response: Response) -> GenerationResponse:
    container = _container(request)
    owner = resolve_owner(request, _api_settings(request))
    outcome = await container.orchestrator.generate_image(
        owner,
        prompt=req.prompt,
        style=req.style,
        width=req.width,
        height=req.height,
        negative_prompt=req.negative_prompt,
        seed=req.seed,
        origin=_origin(request),
    )
    return _generation_response(outcome, response)


@router.post("/v1/generate/story", response_model=GenerationResponse, response_model_exclude_none=True)
async def generate_story(req: StoryGenerateRequest, request: Request, response: Response) -> GenerationResponse:
    container = _container(request)
    owner = resolve_owner(request, _api_settings(request))
    outcome = await container.orchestrator.generate_story(
        owner,
        subject_name=req.child_name,
        theme=req.theme,
        page_count=req.page_count,
        subject_age=req.child_age,
        custom_elements=req.custom_elements,
        origin=_origin(request),
    )
    return _generation_response(outcome, response)


@router.get("/v1/generate/jobs/{job_id}")
async def job_status(job_id: str, request: Request) -> dict[str, Any]:
    container = _container(request)
    owner = resolve_owner(request, _api_settings(request))
    view = await container.status_reader.get_status(job_id, owner)
    return {"success": True, **view.to_dict()}


@router.get("/v1/credits", response_model=CreditsResponse)
async def credits(request: Request) -> CreditsResponse:
    container = _container(request)
    owner = resolve_owner(request, _api_settings(request))
    check = await container.ledger.check_balance(owner)
    rate = await container.admission.rate_limit_status(owner.key)
    return CreditsResponse(
        balance=check.balance,
        owner_kind=owner.kind.value,
        rate_limit_remaining=rate.remaining,
        rate_limit_reset_in=rate.reset_in,
    )


@router.get("/v1/credits/history")
async def credit_history(request: Request, limit: int | None = Query(default=None, ge=1, le=200)) -> dict[str, Any]:
    container = _container(request)
    owner = resolve_owner(request, _api_settings(request))
    transactions = await container.ledger.history(owner, limit)
    return {
        "success": True,
        "transactions": [
            {
                "id": tx.transaction_id,
                "amount": tx.amount,
                "reason": tx.reason.value,
                "jobId": tx.job_id,
                "metadata": tx.metadata,
                "createdAt": tx.created_at,
            }
            for tx in transactions
        ],
    }


@router.post("/v1/credits/migrate", response_model=MigrateResponse)
async def migrate_credits(request: Request) -> MigrateResponse:
    container = _container(request)
    identity = read_identity(request, _api_settings(request))
    guest = identity.guest
    user = identity.registered
    if guest is None:
        raise SessionRequiredError(context=ErrorContext(operation="migrate_credits"))
    if user is None:
        raise UnauthorisedError(
            "Sign in to keep your credits",
            context=ErrorContext(operation="migrate_credits"),
        )
    result = await container.ledger.migrate(guest, user)
    return MigrateResponse(migrated_amount=result.migrated_amount, balance=result.to_balance)


@router.get("/v1/styles")
async def styles() -> dict[str, Any]:
    return {
        "styles": available_styles(),
        "dimensions": [{"width": w, "height": h, "label": label} for w, h, label in SUPPORTED_DIMENSIONS],
    }


@router.get("/v1/story/themes")
async def story_themes() -> dict[str, Any]:
    return {"themes": available_themes()}


async def _reconcile_loop(container: BrokerContainer, interval: float) -> None:
    logger = get_logger()
    while True:
        await asyncio.sleep(interval)
        try:
            await container.orchestrator.reconcile()
            await container.admission.cleanup_expired()
        except Exception as e:
            logger.log_error(e, "Reconciliation sweep failed")


def create_app(
    container: BrokerContainer | None = None,
    *,
    settings: Settings | None = None,
    api_settings: ApiSettings | None = None,
) -> FastAPI:
    """
    Build the HTTP app.

    With no container the broker is assembled on startup from the
    environment (and `.env` when enabled).
    """
    app = FastAPI(title="genbroker", version=__version__)
    app.state.container = container
    app.state.api_settings = api_settings
    app.state.reconcile_task = None
    app.include_router(router)
    app.add_exception_handler(BrokerError, broker_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)

    @app.on_event("startup")
    async def _startup() -> None:
        if app.state.api_settings is None:
            if ApiSettings().load_dotenv:
                load_env()
            app.state.api_settings = ApiSettings()
        api: ApiSettings = app.state.api_settings

        if app.state.container is None:
            broker_settings = settings or Settings.from_env()
            configure_logging(
                level=broker_settings.logging.level,
                json_output=broker_settings.logging.format == "json",
                redact_keys=broker_settings.logging.redact_api_keys,
                admission_events=broker_settings.logging.log_admission,
                ledger_events=broker_settings.logging.log_ledger,
            )
            app.state.container = await build_container(broker_settings, api)

        if api.reconcile_interval_sec > 0:
            app.state.reconcile_task = asyncio.create_task(
                _reconcile_loop(app.state.container, api.reconcile_interval_sec)
            )

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        task: asyncio.Task | None = app.state.reconcile_task
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        kc: BrokerContainer | None = app.state.container
        if kc is not None:
            await kc.close()

    return app


app = create_app()
