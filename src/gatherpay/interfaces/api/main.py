# src/gatherpay/interfaces/api/main.py
import logging
import time
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from gatherpay.config import settings
from gatherpay.logging_conf import setup_logging
from gatherpay.boot import build_services, close_services
from gatherpay.domain.errors import PipelineError
from gatherpay.infrastructure.monitoring.metrics import REQUESTS, LATENCY
from gatherpay.interfaces.api.metrics import router as metrics_router
from gatherpay.interfaces.api.routers import participation as participation_router
from gatherpay.interfaces.api.routers import payments as payments_router
from gatherpay.interfaces.api.routers import discounts as discounts_router
from gatherpay.interfaces.api.routers import refunds as refunds_router
from gatherpay.interfaces.api.routers import escrow as escrow_router
from gatherpay.interfaces.webhook import ledger as ledger_webhook

log = logging.getLogger(__name__)


def create_app(services: Optional[Dict[str, Any]] = None) -> FastAPI:
    """
    Build the API. With `services` given (tests) the container is used as is
    and startup wires nothing; otherwise it is built from settings on startup.
    """
    app = FastAPI(title="GatherPay API", version="1.0.0")
    app.state.services = services
    app.state.owns_services = services is None

    origins = [o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins or ["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def record_metrics(request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        LATENCY.observe(time.perf_counter() - started)
        REQUESTS.labels(method=request.method, status=str(response.status_code)).inc()
        return response

    @app.exception_handler(PipelineError)
    async def pipeline_error_handler(request: Request, exc: PipelineError):
        if exc.status_code >= 500:
            log.error(f"{request.method} {request.url.path} failed upstream: {exc}")
        return JSONResponse(status_code=exc.status_code, content={"detail": str(exc)})

    @app.on_event("startup")
    async def on_startup():
        log.info("Application startup sequence initiated...")
        if app.state.services is None:
            app.state.services = build_services()
        scheduler = app.state.services.get("scheduler")
        if scheduler is not None:
            scheduler.start()
        log.info("Application startup complete.")

    @app.on_event("shutdown")
    async def on_shutdown():
        if app.state.services and app.state.owns_services:
            await close_services(app.state.services)

    @app.get("/")
    def root():
        return {"message": "GatherPay API Running"}

    @app.get("/health")
    def health_check(request: Request):
        monitor = (request.app.state.services or {}).get("system_monitor")
        if monitor is None:
            return {"status": "starting"}
        health = monitor.check_system_health()
        return JSONResponse(status_code=200 if health["status"] == "ok" else 503, content=health)

    app.include_router(participation_router.router)
    app.include_router(payments_router.router)
    app.include_router(discounts_router.router)
    app.include_router(refunds_router.router)
    app.include_router(escrow_router.router)
    app.include_router(ledger_webhook.router)
    if settings.METRICS_ENABLED:
        app.include_router(metrics_router)
    return app


setup_logging()
app = create_app()
