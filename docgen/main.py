import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from docgen.api.deps import require_api_key
from docgen.api.v1.admin import router as admin_router
from docgen.api.v1.generate import router as generate_router
from docgen.api.v1.metrics import router as metrics_router
from docgen.api.v1.worker import router as worker_router
from docgen.commands.enqueue_job import JobEnqueuer
from docgen.domain.errors import ConfigurationError, JobStoreError
from docgen.domain.retry import RetryPolicy
from docgen.logging_config import configure_logging, correlation_id_var
from docgen.rendering.filestore import RecordStoreFileStore
from docgen.rendering.http import RenderServiceClient
from docgen.scheduler.processor import JobProcessor
from docgen.scheduler.service import PollerConfig, PollerService
from docgen.settings import Settings, settings as default_settings
from docgen.store.base import JobStore
from docgen.store.memory import InMemoryJobStore
from docgen.store.remote import RemoteJobStore
from docgen.store.sql import SqlJobStore
from recordstore import RecordStoreClient, TokenProvider

logger = logging.getLogger(__name__)

CORRELATION_HEADER = "x-correlation-id"


@dataclass
class Components:
    store: JobStore
    poller: PollerService
    enqueuer: JobEnqueuer
    closers: list[Any] = field(default_factory=list)


def build_record_store_client(settings: Settings) -> RecordStoreClient:
    """Needed by every backend: artifacts are always uploaded to the record store."""
    login_url = settings.SF_LOGIN_URL or (f"https://{settings.SF_DOMAIN}" if settings.SF_DOMAIN else None)
    if not login_url or not settings.SF_CLIENT_ID:
        raise ConfigurationError(
            "SF_LOGIN_URL (or SF_DOMAIN) and SF_CLIENT_ID are required; "
            "generated files are uploaded to the record store whatever JOB_STORE_BACKEND is"
        )
    try:
        tokens = TokenProvider(
            login_url=login_url,
            client_id=settings.SF_CLIENT_ID,
            client_secret=settings.SF_CLIENT_SECRET,
            username=settings.SF_USERNAME,
            private_key=settings.SF_PRIVATE_KEY,
        )
    except ValueError as e:
        raise ConfigurationError(f"Invalid record store credentials: {e}") from e
    return RecordStoreClient(tokens, api_version=settings.SF_API_VERSION)


def build_components(settings: Settings) -> Components:
    """Wires store, collaborators and poller from settings."""
    client = build_record_store_client(settings)
    closers: list[Any] = [client]

    if settings.JOB_STORE_BACKEND == "remote":
        store: JobStore = RemoteJobStore(client, priority_field=settings.JOB_PRIORITY_FIELD)
    elif settings.JOB_STORE_BACKEND == "sql":
        store = SqlJobStore.from_uri(settings.SQLALCHEMY_DATABASE_URI)
        closers.append(store)
    else:
        store = InMemoryJobStore()

    renderer = RenderServiceClient(settings.RENDER_SERVICE_URL, timeout=settings.RENDER_TIMEOUT_SECONDS)
    closers.append(renderer)

    policy = RetryPolicy(
        max_attempts=settings.MAX_ATTEMPTS,
        base_delay_seconds=settings.BACKOFF_BASE_SECONDS,
        max_delay_seconds=settings.BACKOFF_MAX_SECONDS,
        jitter=settings.BACKOFF_JITTER,
    )
    processor = JobProcessor(store, renderer, RecordStoreFileStore(client), policy=policy)
    poller = PollerService(store, processor, PollerConfig.from_settings(settings))
    return Components(store=store, poller=poller, enqueuer=JobEnqueuer(store), closers=closers)


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Binds the caller's x-correlation-id (or a fresh one) to the request's logs."""

    async def dispatch(self, request: Request, call_next):
        correlation_id = request.headers.get(CORRELATION_HEADER) or str(uuid.uuid4())
        request.state.correlation_id = correlation_id
        token = correlation_id_var.set(correlation_id)
        try:
            response = await call_next(request)
        finally:
            correlation_id_var.reset(token)
        response.headers[CORRELATION_HEADER] = correlation_id
        return response


def _correlation_id(request: Request) -> str:
    return getattr(request.state, "correlation_id", None) or correlation_id_var.get() or str(uuid.uuid4())


def _error(request: Request, status_code: int, message: str) -> JSONResponse:
    correlation_id = _correlation_id(request)
    return JSONResponse(
        status_code=status_code,
        content={"error": message, "correlationId": correlation_id},
        headers={CORRELATION_HEADER: correlation_id},
    )


def _describe_validation_error(exc: RequestValidationError) -> str:
    problems = []
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ()) if part != "body"]
        name = ".".join(loc) or "body"
        if err.get("type") == "missing":
            problems.append(f"missing required field '{name}'")
        else:
            problems.append(f"invalid field '{name}': {err.get('msg')}")
    return "Invalid request: " + "; ".join(problems)


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        return _error(request, exc.status_code, str(exc.detail))

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        return _error(request, 400, _describe_validation_error(exc))

    @app.exception_handler(JobStoreError)
    async def store_error(request: Request, exc: JobStoreError):
        logger.error("Job store request failed: %s", exc)
        return _error(request, 503, f"Job store unavailable: {exc}")

    @app.exception_handler(Exception)
    async def unexpected_error(request: Request, exc: Exception):
        logger.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
        return _error(request, 500, "Internal server error")


def create_app(
    poller: Optional[PollerService] = None,
    enqueuer: Optional[JobEnqueuer] = None,
    settings: Settings = default_settings,
) -> FastAPI:
    configure_logging(settings.LOG_LEVEL)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        components = None
        if poller is None:
            components = build_components(settings)
            if isinstance(components.store, SqlJobStore):
                await components.store.create_schema()
            app.state.poller = components.poller
            app.state.store = components.store
            app.state.enqueuer = enqueuer or components.enqueuer
        else:
            app.state.poller = poller
            app.state.store = poller.store
            app.state.enqueuer = enqueuer or JobEnqueuer(poller.store)

        if not app.state.api_keys:
            logger.warning("API_KEYS is empty; control endpoints are unauthenticated")

        if settings.AUTOSTART_POLLER:
            await app.state.poller.start()

        yield

        # Drain the in-flight cycle before closing its collaborators
        await app.state.poller.stop()
        if components:
            for closer in components.closers:
                await closer.close()

    app = FastAPI(title=settings.PROJECT_NAME, lifespan=lifespan)
    app.state.api_keys = list(settings.API_KEYS)
    app.state.max_attempts = settings.MAX_ATTEMPTS

    app.add_middleware(CorrelationIdMiddleware)
    install_error_handlers(app)

    auth = [Depends(require_api_key)]
    app.include_router(worker_router, prefix="/worker", tags=["worker"], dependencies=auth)
    app.include_router(generate_router, tags=["generate"], dependencies=auth)
    app.include_router(admin_router, prefix="/admin", tags=["admin"], dependencies=auth)
    app.include_router(metrics_router, tags=["metrics"])

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app


app = create_app()
