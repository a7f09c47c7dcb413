from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from fastapi import Depends, FastAPI
from starlette.middleware.cors import CORSMiddleware

ROOT_DIR = Path(__file__).parent

# Load .env only if exists (development fallback)
# Production: secrets are injected as env vars directly
env_path = ROOT_DIR / ".env"
if env_path.exists():
    load_dotenv(env_path)

from channel_hub.config import APP_NAME, APP_VERSION  # noqa: E402
from channel_hub.db import close_mongo, connect_mongo, ping_mongo  # noqa: E402
from channel_hub.exception_handlers import register_exception_handlers  # noqa: E402
from channel_hub.indexes.channel_indexes import ensure_channel_indexes  # noqa: E402
from channel_hub.routers.channel_webhooks import router as channel_webhooks_router  # noqa: E402
from channel_hub.routers.channels import router as channels_router  # noqa: E402
from channel_hub.routers.direct_bookings import router as direct_bookings_router  # noqa: E402
from channel_hub.runtime import get_orchestrator, init_orchestrator  # noqa: E402
from channel_hub.scheduler import get_scheduler_status, start_scheduler, stop_scheduler  # noqa: E402
from channel_hub.services.channels.orchestrator import ChannelOrchestrator  # noqa: E402
from channel_hub.sync_worker import channel_sync_loop, webhook_inbox_loop  # noqa: E402

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("channel-hub")

app = FastAPI(title=APP_NAME, version=APP_VERSION)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get("CORS_ORIGINS", "*").split(","),
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)

# Routers (/api prefix is on each router)
app.include_router(channel_webhooks_router)
app.include_router(direct_bookings_router)
app.include_router(channels_router)

_background_tasks: list[asyncio.Task] = []


@app.get("/api/health")
async def health(orch: ChannelOrchestrator = Depends(get_orchestrator)) -> dict[str, Any]:
    """Main health check with database ping"""
    return {
        "ok": await ping_mongo(orch.db),
        "service": "channel-hub",
        "channels": orch.registry.channel_types(),
        "scheduler": get_scheduler_status(),
    }


@app.get("/health")
@app.get("/health/")
async def deployment_health() -> dict[str, Any]:
    """Simple health check for deployment platforms"""
    return {"ok": True, "service": "channel-hub", "status": "healthy"}


@app.on_event("startup")
async def _startup() -> None:
    db = await connect_mongo()
    await ensure_channel_indexes(db)
    init_orchestrator(db)
    logger.info("Startup complete")

    start_scheduler()
    _background_tasks.append(asyncio.create_task(channel_sync_loop()))
    _background_tasks.append(asyncio.create_task(webhook_inbox_loop()))


@app.on_event("shutdown")
async def _shutdown() -> None:
    stop_scheduler()
    for task in _background_tasks:
        task.cancel()
    _background_tasks.clear()
    await close_mongo()
    logger.info("Shutdown complete")
