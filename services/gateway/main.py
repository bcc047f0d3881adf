# services/gateway/main.py - PodPulse backend: health, sync status and manual trigger
import asyncio
import logging
import datetime
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError
import uvicorn

from shared.config import Config
from shared.utils import create_postgres_pool, get_redis_client, setup_logging
from services.prpc.client import PrpcClient
from services.scheduler.main import Scheduler
from services.sync.fleet import FleetReader
from services.sync.service import SyncService
from services.sync.store import MetricsCache, PostgresStore

# Configure logging
setup_logging(Config.from_env().LOG_LEVEL)
logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat()


async def _connect_metrics_cache(config: Config) -> Optional[MetricsCache]:
    if not config.REDIS_URL:
        logger.info("REDIS_URL not set, metrics cache disabled")
        return None

    redis_client = get_redis_client(config.REDIS_URL)
    try:
        await redis_client.ping()
    except (RedisError, OSError) as e:
        logger.warning(f"Redis unavailable, continuing without metrics cache: {e}")
        await redis_client.aclose()
        return None

    logger.info("✅ Connected to Redis")
    return MetricsCache(redis_client)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if app.state.scheduler is not None:
        # Components injected by the caller, nothing to build or tear down
        yield
        return

    config = Config.from_env()
    config.validate()

    pool = await create_postgres_pool(config.POSTGRES_URL)
    store = PostgresStore(pool)
    await store.ensure_schema()

    metrics_cache = await _connect_metrics_cache(config)

    client = PrpcClient.from_config(config)
    sync_service = SyncService(client, FleetReader(client), store, metrics_cache)
    scheduler = Scheduler(sync_service, config.SYNC_INTERVAL_SECONDS)

    app.state.sync_service = sync_service
    app.state.scheduler = scheduler
    app.state.metrics_cache = metrics_cache

    scheduler.start()
    logger.info(f"🚀 PodPulse backend started (env={config.ENVIRONMENT}, sync every {config.SYNC_INTERVAL_SECONDS}s)")

    yield

    # Shutdown
    scheduler.stop()
    await client.close()
    if metrics_cache:
        await metrics_cache.close()
    await store.close()
    app.state.scheduler = None
    logger.info("PodPulse backend shutdown complete")


def create_app(sync_service=None, scheduler=None, metrics_cache=None) -> FastAPI:
    app = FastAPI(
        title="PodPulse Backend",
        version="1.0.0",
        lifespan=lifespan
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.sync_service = sync_service
    app.state.scheduler = scheduler
    app.state.metrics_cache = metrics_cache
    app.state.background = set()

    @app.get("/")
    async def root():
        return {
            "name": "PodPulse Backend",
            "version": "1.0.0",
            "description": "pRPC to PostgreSQL sync service",
            "endpoints": {
                "health": "GET /health",
                "syncStatus": "GET /sync/status",
                "triggerSync": "POST /sync/trigger",
                "metrics": "GET /metrics",
            },
        }

    @app.get("/health")
    async def health_check(request: Request):
        report = await request.app.state.sync_service.health_check()
        body = {
            "status": "healthy" if report.healthy else "unhealthy",
            "timestamp": _now_iso(),
            "sync": request.app.state.scheduler.get_status(),
        }
        if report.reason:
            body["reason"] = report.reason
        return JSONResponse(status_code=200 if report.healthy else 503, content=jsonable_encoder(body))

    @app.get("/sync/status")
    async def sync_status(request: Request):
        return jsonable_encoder(request.app.state.scheduler.get_status())

    @app.post("/sync/trigger")
    async def trigger_sync(request: Request):
        # Fire and forget; failures show up in /sync/status and the logs
        task = asyncio.create_task(request.app.state.scheduler.trigger_sync())
        background = request.app.state.background
        background.add(task)
        task.add_done_callback(background.discard)
        task.add_done_callback(_log_trigger_failure)

        return {
            "message": "Sync triggered",
            "timestamp": _now_iso(),
        }

    @app.get("/metrics")
    async def get_metrics(request: Request):
        cache = request.app.state.metrics_cache
        if cache is None:
            return {}
        return await cache.latest() or {}

    return app


def _log_trigger_failure(task: asyncio.Task):
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.error(f"Manual sync failed: {error}")


app = create_app()

if __name__ == "__main__":
    config = Config.from_env()
    uvicorn.run(
        app,
        host=config.GATEWAY_HOST,
        port=config.GATEWAY_PORT,
        log_level=config.LOG_LEVEL.lower()
    )
