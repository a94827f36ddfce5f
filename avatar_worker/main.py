"""
Avatar worker — FastAPI entry point.

Startup wires the task store, provider client, asset storage and runner into
one AvatarTaskService, then marks tasks left mid-routine by a previous
process as interrupted. Shutdown cancels running routines and closes the
provider client; the cancelled tasks keep their leases, so the next startup
marks them FAILED / INTERRUPTED and their owners can retry them.

Run locally:
    TASK_STORE=memory python -m avatar_worker.main
"""

import os
import time
import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI

from . import metrics
from .auth_middleware import WorkerAuthMiddleware
from .pipeline.assets import AssetPreparer
from .pipeline.errors import ConfigurationError
from .pipeline.orchestrator import AvatarTaskService
from .pipeline.routes import avatar_router
from .pipeline.runner import TaskRunner
from .pipeline.storage import R2Storage
from .pipeline.task_store import InMemoryTaskStore, SupabaseTaskStore, fetch_provider_credentials
from .pipeline.vision_client import create_vision_client

load_dotenv()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

TASK_STORE = os.getenv("TASK_STORE", "supabase")
PROVIDER_SLUG = os.getenv("AVATAR_PROVIDER_SLUG", "jimeng")


def build_service() -> Optional[AvatarTaskService]:
    """Assemble the service from the environment; None when provider credentials are missing."""
    if TASK_STORE == "memory":
        store = InMemoryTaskStore()
        source = None
    else:
        store = SupabaseTaskStore()
        try:
            source = fetch_provider_credentials(store.client, PROVIDER_SLUG)
        except Exception as e:
            logger.warning(f"Could not read provider credentials from database: {e}")
            source = None

    try:
        client = create_vision_client(source)
    except ConfigurationError as e:
        logger.error(f"Avatar service disabled: {e}")
        return None

    assets = AssetPreparer(R2Storage(), shots=store)
    return AvatarTaskService(store, client, assets, runner=TaskRunner())


def create_app(service: Optional[AvatarTaskService] = None, auto_build: bool = True) -> FastAPI:

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Avatar worker starting up...")
        metrics.set_gauge("start_time", time.time())

        if app.state.avatar_service is None and auto_build:
            app.state.avatar_service = build_service()

        active = app.state.avatar_service
        if active is not None:
            recovered = await active.recover_interrupted()
            if recovered:
                logger.info(f"Marked {recovered} interrupted task(s) as failed")
        yield

        logger.info("Avatar worker shutting down...")
        if active is not None:
            await active.runner.shutdown()
            await active.close()

    app = FastAPI(lifespan=lifespan)
    app.state.avatar_service = service
    app.add_middleware(WorkerAuthMiddleware)
    app.include_router(avatar_router)

    @app.get("/health")
    def health_check():
        """Verify the worker is running and configured."""
        return {
            "status": "ok",
            "avatar_service": app.state.avatar_service is not None,
            "task_store": TASK_STORE,
            "supabase_url_set": bool(os.getenv("SUPABASE_URL", "")),
        }

    @app.get("/metrics")
    def metrics_endpoint():
        """Return a snapshot of all worker metrics."""
        return metrics.get_snapshot()

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run("avatar_worker.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8080")))
