"""
Generation worker entry point.

    python -m stefna.main

Everything long-lived (store, ledger, provider chains, HTTP clients,
orchestrator, metrics, job slots) is built in the lifespan from `Settings`
and hung on `app.state`; routes reach it through dependencies.
"""

import logging
import os
import tempfile
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Callable, Optional

import httpx
import requests
import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from supabase import create_client

from .auth_middleware import WorkerAuthMiddleware
from .config import Settings
from .errors import ErrorCode
from .job_slots import JobSlots
from .metrics import Metrics
from .pipeline.compositor import Compositor
from .pipeline.credits import InMemoryCreditLedger, SupabaseCreditLedger
from .pipeline.job_store import InMemoryJobStore, SupabaseJobStore
from .pipeline.orchestrator import GenerationService
from .pipeline.routes import credits_router, jobs_router
from .pipeline.storage import LocalAssetStore, R2AssetStore, download_to, new_r2_client
from .providers import ProviderFactory

logger = logging.getLogger(__name__)


@dataclass
class Services:
    service: GenerationService
    ledger: object
    metrics: Metrics
    slots: JobSlots
    closers: list = field(default_factory=list)


def build_services(settings: Settings) -> Services:
    metrics = Metrics()
    if settings.work_dir:
        os.makedirs(settings.work_dir, exist_ok=True)

    if settings.backend == "supabase":
        sb = settings.supabase
        if not sb.url or not sb.service_role_key:
            raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
        client = create_client(sb.url, sb.service_role_key)
        store = SupabaseJobStore(client, sb.jobs_table)
        ledger = SupabaseCreditLedger(client, settings.credits)
        logger.info(f"Using Supabase job store ({sb.jobs_table}) and credit ledger")
    else:
        store = InMemoryJobStore()
        ledger = InMemoryCreditLedger(settings.credits)
        logger.info("Using in-memory job store and credit ledger")

    session = requests.Session()
    http = httpx.Client(timeout=settings.providers.request_timeout)
    chains = ProviderFactory(settings.providers, session).build_chains()

    if settings.storage.r2_account_id:
        assets = R2AssetStore(new_r2_client(settings.storage), settings.storage, http)
    else:
        root = os.path.join(settings.work_dir or tempfile.gettempdir(), "stefna-assets")
        logger.warning(f"R2 not configured, storing outputs under {root}")
        assets = LocalAssetStore(root, http)

    service = GenerationService(
        store,
        ledger,
        chains,
        assets,
        Compositor(temp_root=settings.work_dir or None),
        download=lambda url, path: download_to(http, url, path),
        credits=settings.credits,
        polling=settings.polling,
        metrics=metrics,
        work_dir=settings.work_dir or None,
    )
    return Services(
        service=service,
        ledger=ledger,
        metrics=metrics,
        slots=JobSlots(settings.max_concurrent_jobs),
        closers=[session.close, http.close],
    )


def create_app(
    settings: Optional[Settings] = None,
    services_factory: Callable[[Settings], Services] = build_services,
) -> FastAPI:
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Worker starting up ({settings.environment}, backend={settings.backend})")
        services = services_factory(settings)
        app.state.settings = settings
        app.state.service = services.service
        app.state.ledger = services.ledger
        app.state.metrics = services.metrics
        app.state.slots = services.slots
        yield
        logger.info("Worker shutting down...")
        for close in services.closers:
            close()

    app = FastAPI(title="Stefna generation worker", lifespan=lifespan)
    app.add_middleware(
        WorkerAuthMiddleware,
        secret=settings.worker_secret,
        environment=settings.environment,
        max_skew_seconds=settings.auth_max_skew_seconds,
    )
    app.include_router(jobs_router)
    app.include_router(credits_router)

    @app.exception_handler(RequestValidationError)
    async def validation_failed(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=422,
            content={"detail": {
                "error": ErrorCode.VALIDATION_FAILED.value,
                "message": "Request validation failed",
                "fields": [
                    {"loc": list(err.get("loc", ())), "msg": err.get("msg", "")}
                    for err in exc.errors()
                ],
            }},
        )

    @app.get("/health")
    def health_check(request: Request):
        """Verify the worker is running and which collaborators are configured."""
        cfg = request.app.state.settings
        return {
            "status": "ok",
            "backend": cfg.backend,
            "supabase_url_set": bool(cfg.supabase.url),
            "r2_configured": bool(cfg.storage.r2_account_id),
            "providers": {
                "aiml": bool(cfg.providers.aiml_api_key),
                "fal": bool(cfg.providers.fal_api_key),
                "replicate": bool(cfg.providers.replicate_api_key),
            },
        }

    @app.get("/metrics")
    def metrics_endpoint(request: Request):
        """Return a snapshot of all worker metrics."""
        metrics = request.app.state.metrics
        metrics.set_gauge("active_jobs", request.app.state.slots.active)
        return metrics.snapshot()

    return app


logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = create_app()


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    uvicorn.run("stefna.main:app", host="0.0.0.0", port=port, reload=True)
