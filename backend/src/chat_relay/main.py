"""FastAPI application entry point for Chat Relay"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from chat_relay.api.chat import close_relay
from chat_relay.api.chat import router as chat_router
from chat_relay.core.config import settings
from chat_relay.core.logging import configure_logging, get_logger
from chat_relay.db import init_db

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan context manager for startup/shutdown."""
    # Startup
    configure_logging()
    # Initialize database
    init_db(settings.database_path)
    logger.info("database_initialized", path=str(settings.database_path))
    yield
    # Shutdown
    await close_relay()


app = FastAPI(
    title="Chat Relay API",
    description="Streaming chat-completion relay with conversation persistence",
    version="0.1.0",
    lifespan=lifespan,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID", "X-User-Id", "X-Api-Key"],
)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Report malformed request bodies as 400 in the relay's error shape."""
    first = exc.errors()[0] if exc.errors() else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "Invalid request")
    logger.info("request_rejected", path=request.url.path, location=location, error=message)
    return JSONResponse(
        {
            "error": {
                "message": f"{location}: {message}" if location else message,
                "code": "INVALID_REQUEST",
                "requestId": None,
            }
        },
        status_code=400,
    )


# Include chat router
app.include_router(chat_router)


@app.get("/api/v1/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint.

    Returns:
        dict with status "ok" if the service is healthy.
    """
    return {"status": "ok"}
