import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy import text
from starlette.responses import Response

from app.api.analytics import router as analytics_router
from app.config import settings
from app.db import SessionLocal
from app.errors import register_error_handlers
from app.logging import configure_logging

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    runtime = None
    if settings.embedded_scheduler:
        from app.services.scheduler import MeteringRuntime

        runtime = MeteringRuntime()
        runtime.start()
    app.state.metering_runtime = runtime
    try:
        yield
    finally:
        if runtime is not None:
            runtime.stop()


app = FastAPI(title="Outline Metering API", lifespan=lifespan)

configure_logging()
register_error_handlers(app)


def _include_api_router(router, dependencies=None):
    app.include_router(router, dependencies=dependencies)
    app.include_router(router, prefix="/api/v1", dependencies=dependencies)


_include_api_router(analytics_router)


@app.get("/health")
def health_check():
    checks = {"db": False, "redis": False}

    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
        checks["db"] = True
    except Exception:
        logger.warning("Health check: database unreachable", exc_info=True)

    try:
        import redis as redis_lib

        r = redis_lib.from_url(settings.celery_broker_url, socket_timeout=2)
        r.ping()
        checks["redis"] = True
    except Exception:
        logger.warning("Health check: redis unreachable", exc_info=True)

    all_ok = all(checks.values())
    return {
        "status": "ok" if all_ok else "degraded",
        "checks": checks,
    }


@app.get("/metrics")
def metrics():
    data = generate_latest()
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)
