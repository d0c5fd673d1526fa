from contextlib import asynccontextmanager
import asyncio
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.core.config import get_outbox_settings
from app.core.logging import configure_logging
from app import models  # noqa: F401  (registers outbox watches on domain models)
from app.routers.outbox import router as outbox_router
from app.services.broadcast import build_broadcaster
from app.services.outbox_worker import start_outbox_worker_task

logger = logging.getLogger(__name__)

VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()

    settings = get_outbox_settings()
    broadcaster = build_broadcaster(settings)
    app.state.broadcaster = broadcaster

    worker = start_outbox_worker_task(settings, broadcaster)
    try:
        yield
    finally:
        if worker is not None:
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.exception("Outbox worker exited with an error during shutdown")
        # Worker is gone; nothing else publishes through this client.
        broadcaster.close()


app = FastAPI(
    title="Event Outbox",
    version=VERSION,
    lifespan=lifespan,
)


@app.middleware("http")
async def catch_unhandled_exceptions(request: Request, call_next):
    try:
        return await call_next(request)
    except Exception:
        logger.exception(
            "Unhandled exception",
            extra={"method": request.method, "path": request.url.path},
        )
        return JSONResponse(status_code=500, content={"detail": "Internal Server Error"})


app.include_router(outbox_router)


@app.get("/")
def root():
    return {"status": "Event outbox running"}


@app.get("/health")
def health():
    settings = get_outbox_settings()
    return {
        "status": "ok",
        "version": VERSION,
        "processor_name": settings.processor_name,
        "broadcast_backend": settings.broadcast_backend,
        "worker_enabled": settings.worker_enabled,
    }
