"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api import open_finance
from config import settings
from database import get_session_local
from logging_config import setup_logging
from services.connection_registry import ConnectionRegistry
from services.oauth_service import OAuthContinuation

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Report registry state on startup."""
    SessionLocal = get_session_local()
    db = SessionLocal()
    try:
        connections = ConnectionRegistry.list_connections(db)
        logger.info("Connection registry: %d connections", len(connections))
        context = OAuthContinuation.peek(db)
        if context is not None:
            logger.info(
                "OAuth flow pending for connection %s (resume target %s)",
                context.connection_id or "-", context.target,
            )
    except Exception:
        logger.warning("Registry check failed on startup", exc_info=True)
    finally:
        db.close()

    if not (settings.PLUGGY_CLIENT_ID and settings.PLUGGY_CLIENT_SECRET):
        logger.warning(
            "Pluggy credentials not configured. Run 'python scripts/setup_pluggy.py'."
        )
    if not (settings.BELVO_SECRET_ID and settings.BELVO_SECRET_PASSWORD):
        logger.info(
            "Belvo secrets not configured. Run 'python scripts/setup_belvo.py' to enable it."
        )
    yield


app = FastAPI(
    title="Open Finance Sync",
    description="Bank connection and synchronization through Open Finance",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS configuration for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://localhost:8081"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API routers
app.include_router(open_finance.router)


@app.get("/health")
def health_check():
    """Health check endpoint."""
    return {"status": "ok"}
