"""
keygate.api.main — FastAPI application entry point
===================================================

Run with::

    uvicorn keygate.api.main:app --port 8000
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

load_dotenv()

from keygate.api.auth import router as auth_router  # noqa: E402
from keygate.api.deps import get_engine  # noqa: E402
from keygate.api.routes.admin import router as admin_router  # noqa: E402
from keygate.api.routes.funnels import router as funnels_router  # noqa: E402
from keygate.api.routes.relay import router as relay_router  # noqa: E402

logger = logging.getLogger(__name__)


def _cors_origins() -> list[str]:
    """Resolve allowed CORS origins from ``CORS_ALLOW_ORIGINS`` (comma-separated)."""
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if raw:
        return [origin.strip().rstrip("/") for origin in raw.split(",") if origin.strip()]
    return []


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle — warm the DB engine."""
    engine = get_engine()
    logger.info("KeyGate API started — engine ready (%s)", engine.url.database)
    yield
    logger.info("KeyGate API shutting down")


app = FastAPI(
    title="KeyGate API",
    version="0.1.0",
    lifespan=lifespan,
)


def configure_cors(app: FastAPI, origins: list[str]) -> None:
    """Allow browser callers from *origins*; no origins means no CORS at all.

    Admin calls carry a bearer token, never cookies, so credentials stay off.
    """
    if not origins:
        return
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=False,
        allow_methods=["GET", "POST"],
        allow_headers=["Authorization", "Content-Type"],
    )


configure_cors(app, _cors_origins())


@app.exception_handler(SQLAlchemyError)
async def store_unavailable(request: Request, exc: SQLAlchemyError):
    """A store failure is transient: 503, never a denial or a 500."""
    logger.exception(
        "Store failure on %s %s", request.method, request.url.path, exc_info=exc,
    )
    return JSONResponse(
        status_code=503,
        content={"detail": "Service temporarily unavailable, try again later"},
    )


# Mount routers
app.include_router(auth_router, prefix="/api")
app.include_router(relay_router, prefix="/api")
app.include_router(funnels_router, prefix="/api")
app.include_router(admin_router, prefix="/api")


@app.get("/api/health")
def health():
    return {"status": "ok"}
