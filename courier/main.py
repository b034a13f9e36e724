import asyncio
import os

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from courier import __version__
from courier.config import settings
from courier.database import init_db
from courier.dependencies import get_batcher, get_delivery_queue, get_poster, get_transport_registry
from courier.logging_config import get_logger, setup_logging
from courier.redis_client import close_redis
from courier.routers import admin, bots, clients, send, webhook
from courier.services.delivery_worker import DeliveryWorkerPool
from courier.services.forward_service import build_job_handlers

setup_logging(settings.log_level, settings.log_format)
logger = get_logger("main")

app = FastAPI(
    title="Courier",
    description="Messaging gateway relaying conversations to automation webhooks",
    version=__version__,
)

cors_origins = [origin.strip() for origin in settings.cors_allow_origins.split(",") if origin.strip()]
if not cors_origins:
    cors_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(webhook.router)
app.include_router(send.router)
app.include_router(bots.router)
app.include_router(clients.router)
app.include_router(admin.router)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = f"{field}: {first.get('msg', 'invalid request')}" if field else first.get("msg", "invalid request")
    return JSONResponse(status_code=400, content={"error": message})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error(
        "Unhandled error",
        extra={"context": {"path": request.url.path, "error": str(exc)}},
        exc_info=exc,
    )
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


_worker_pool: DeliveryWorkerPool | None = None
_sweep_task: asyncio.Task | None = None


def _is_background_enabled() -> bool:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return False
    return settings.delivery_worker_enabled


@app.on_event("startup")
async def start_background_workers() -> None:
    global _worker_pool, _sweep_task
    init_db()
    if not _is_background_enabled():
        return

    queue = get_delivery_queue()
    await queue.recover_stalled()

    if _worker_pool is None or not _worker_pool.running:
        _worker_pool = DeliveryWorkerPool(queue, build_job_handlers(get_poster()))
        _worker_pool.start()

    if _sweep_task is None or _sweep_task.done():
        _sweep_task = asyncio.create_task(get_batcher().run_sweep_loop())
        logger.info("Batch sweep loop started")


@app.on_event("shutdown")
async def stop_background_workers() -> None:
    global _worker_pool, _sweep_task
    if _sweep_task is not None:
        _sweep_task.cancel()
        try:
            await _sweep_task
        except asyncio.CancelledError:
            pass
        _sweep_task = None

    if _worker_pool is not None:
        await _worker_pool.stop()
        _worker_pool = None

    await get_batcher().close()
    await close_redis()


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/info")
async def info(
    queue=Depends(get_delivery_queue),
    batcher=Depends(get_batcher),
    registry=Depends(get_transport_registry),
):
    try:
        queue_stats = await queue.stats()
    except Exception as exc:
        logger.warning("Queue stats unavailable", extra={"context": {"error": str(exc)}})
        queue_stats = None
    return {
        "service": "courier",
        "version": __version__,
        "queue": queue_stats,
        "activeBatchTimers": batcher.active_timers,
        "transports": len(registry),
        "workersRunning": bool(_worker_pool and _worker_pool.running),
    }
