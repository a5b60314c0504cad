"""
subathon.api.main — FastAPI application entry point
====================================================

Run with::

    uvicorn subathon.api.main:app --port 8080

or ``python -m subathon`` which reads host/port from ``config.yaml``.
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

load_dotenv()

from subathon.api.deps import get_config, get_jwt_secret  # noqa: E402
from subathon.api.routes.public import router as public_router  # noqa: E402
from subathon.api.routes.timer import router as timer_router  # noqa: E402
from subathon.services.registry import TenantRegistry  # noqa: E402

logger = logging.getLogger(__name__)


def _cors_origins() -> list[str]:
    """Resolve allowed CORS origins from ``CORS_ALLOW_ORIGINS`` (comma-separated)."""
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if raw:
        return [origin.strip().rstrip("/") for origin in raw.split(",") if origin.strip()]
    return []


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle: check the secret, own the tenant registry."""
    get_jwt_secret()
    if getattr(app.state, "registry", None) is None:
        app.state.registry = TenantRegistry.from_config(get_config())
    registry: TenantRegistry = app.state.registry
    logger.info("Subathon API started — data dir %s", registry.data_dir)
    yield
    logger.info("Subathon API shutting down — flushing %d timers", len(registry.tenants()))
    await registry.close_all()
    app.state.registry = None


app = FastAPI(
    title="Subathon Timer API",
    version="0.1.0",
    lifespan=lifespan,
)

# Overlays are usually served from another origin (OBS browser source)
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(public_router, prefix="/api")
app.include_router(timer_router, prefix="/api")


@app.get("/api/health")
def health():
    return {"status": "ok"}
