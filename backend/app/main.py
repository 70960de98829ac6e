"""roomchat Backend Application.

This is the main entry point for the roomchat service: an in-memory,
real-time messaging server with rooms, presence, contacts and direct
messages.

Modules:
    - chat: WebSocket transport and the messaging core

Run with:
    uvicorn app.main:app --app-dir backend --port 3000
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from app.chat.dispatcher import Dispatcher
from app.chat.router import router as chat_router
from app.config import get_config

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# uvicorn/websockets log every frame at DEBUG, which drowns out the chat core
for _noisy in (
    "websockets",
    "websockets.protocol",
    "uvicorn.access",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config = get_config()

    # Apply configured log level to root logger so that
    # `logging.level: "debug"` in roomchat.settings.yaml activates DEBUG output.
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    Dispatcher.get_instance()
    logger.info(
        f"Chat core ready on http://{config.server.host}:{config.server.port} "
        "(WebSocket rooms at /chat/{room_id})"
    )

    yield  # Application runs here

    # Shutdown
    logger.info("Application shutdown complete")


# Create FastAPI application with metadata
app = FastAPI(
    title="roomchat API",
    description="In-memory real-time chat: rooms, presence, contacts and direct messages",
    version="0.1.0",
    lifespan=lifespan,
)

# Register all routers
app.include_router(chat_router)


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Status object indicating the server is running.
    """
    return {"status": "ok"}
