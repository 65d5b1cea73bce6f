"""Relay Backend Application.

This is the main entry point for the conversation relay service. The relay
keeps connected clients of a messaging product in sync: message fan-out,
delivery/read receipts with unread counters, typing indicators, presence
and group membership changes.

Modules:
    - chat: WebSocket endpoint and the real-time synchronization engine
    - store: DuckDB-backed conversations, messages and identities
    - auth: Bearer token verification for the handshake
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from app.chat.engine import RelayEngine, set_engine
from app.chat.router import router as chat_router
from app.config import get_config
from app.store.service import RelayStore

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence verbose third-party loggers.
# uvicorn.access logs every handshake; websockets logs every frame at DEBUG.
for _noisy in (
    "uvicorn.access",
    "websockets",
    "httpx",
    "httpcore",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config = get_config()

    # Apply configured log level to root logger so that
    # `logging.level: "debug"` in relay.settings.yaml activates DEBUG output.
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    store = RelayStore.get_instance(db_path=config.store.db_path)
    engine = RelayEngine(store, config.realtime)
    set_engine(engine)
    await engine.start()
    logger.info(
        f"Relay ready on ws://{config.server.host}:{config.server.port}/ws "
        f"(store={config.store.db_path})"
    )

    yield  # Application runs here

    # Shutdown
    await engine.stop()
    set_engine(None)
    RelayStore.reset_instance()
    logger.info("Application shutdown complete")


# Create FastAPI application with metadata
app = FastAPI(
    title="Relay API",
    description="Real-time conversation relay for a messaging backend",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(chat_router)


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Status object indicating the server is running.
    """
    return {"status": "ok"}
