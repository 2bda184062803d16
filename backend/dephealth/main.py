# backend/dephealth/main.py
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from dephealth.api.connectivity import router as connectivity_router
from dephealth.api.metrics import router as metrics_router
from dephealth.config import settings
from dephealth.connectivity.setup import (
    build_services,
    create_clients,
    start_services,
    stop_services,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown events."""
    # Startup
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    # Clients connect lazily, so startup succeeds with every dependency down
    engine, redis_client, admin_client = create_clients(settings)
    services = build_services(
        settings, engine=engine, redis_client=redis_client, admin_client=admin_client
    )
    app.state.connectivity = services
    await start_services(services)
    yield
    # Shutdown
    await stop_services(services)
    app.state.connectivity = None


app = FastAPI(title="Dependency Health", version="0.1.0", lifespan=lifespan)

# Include routers
app.include_router(connectivity_router)
app.include_router(metrics_router)


@app.get("/health")
async def health():
    return {"status": "healthy"}
