"""FastAPI application wiring for the account service."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from psycopg_pool import ConnectionPool

from .api.routes import router as rpc_router
from .api.status import RPCError
from .config import Settings, get_settings
from .domain.service import AccountService
from .repository import AccountRepository
from .telemetry.metrics import Metrics
from .telemetry.tracing import init_tracing

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s level=%(levelname)s logger=%(name)s %(message)s"


def configure_logging(level: str) -> None:
    """Send every log record to stderr as a single key=value line."""
    logging.basicConfig(level=level, format=LOG_FORMAT, force=True)


async def rpc_error_handler(request: Request, exc: RPCError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.code.http_status,
        content={"code": exc.code.value, "msg": exc.message},
    )


def create_app(settings: Settings | None = None, metrics: Metrics | None = None) -> FastAPI:
    """Build the application; the Postgres pool only opens inside the lifespan."""
    settings = settings or get_settings()
    metrics = metrics or Metrics()
    shutdown_tracing = init_tracing(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Open the Postgres pool for the app lifecycle and close it once serving stops."""
        pool = ConnectionPool(
            settings.database_url,
            min_size=settings.pool_min_size,
            max_size=settings.pool_max_size,
            open=False,
        )
        pool.open(wait=True)
        logger.info("database connected")
        metrics.bind_pool_stats(pool.get_stats)
        app.state.pool = pool
        app.state.account_service = AccountService(AccountRepository(pool, metrics))
        try:
            yield
        finally:
            pool.close()
            logger.info("database pool closed")
            shutdown_tracing()

    app = FastAPI(title=settings.app_name, version=settings.version, lifespan=lifespan)
    app.state.metrics = metrics
    app.add_exception_handler(RPCError, rpc_error_handler)

    @app.get("/healthz", tags=["health"])
    def healthz() -> dict[str, str]:
        """Return a minimal readiness indicator used by orchestration systems."""
        return {"status": "ok"}

    @app.get("/metrics", include_in_schema=False)
    def prometheus_metrics() -> Response:
        return Response(content=generate_latest(metrics.registry), media_type=CONTENT_TYPE_LATEST)

    app.include_router(rpc_router)

    if settings.tracing_enabled:
        FastAPIInstrumentor.instrument_app(app)

    return app


def run() -> None:
    """Serve the application until SIGINT/SIGTERM.

    On shutdown uvicorn stops accepting connections and gives in-flight
    requests ``shutdown_grace_seconds`` before cancelling them; the lifespan
    then closes the pool.
    """
    import uvicorn

    settings = get_settings()
    configure_logging(settings.log_level)
    logger.info("starting account service addr=%s:%d", settings.http_host, settings.http_port)
    uvicorn.run(
        create_app(settings),
        host=settings.http_host,
        port=settings.http_port,
        timeout_graceful_shutdown=max(int(settings.shutdown_grace_seconds), 1),
        log_config=None,
    )
    logger.info("shutdown complete")


if __name__ == "__main__":
    run()
