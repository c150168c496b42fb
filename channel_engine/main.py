from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from contextlib import asynccontextmanager
import logging
import time
import uuid

from .config import settings
from .database import create_tables
from .services.engine import ChannelEngine
from .services.errors import ChannelEngineError
from .utils.logging_config import clear_request_context, get_logger, set_request_context, setup_logging

from .routers import channel_manager

logger = logging.getLogger(__name__)
access_logger = get_logger("channel_engine.access")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    setup_logging(level=settings.log_level, json_format=settings.log_json)
    logger.info(f"Starting channel-engine ({settings.environment}, provider={settings.channel_provider})")

    create_tables()
    app.state.engine = ChannelEngine()
    logger.info("Database ready")

    yield

    logger.info("Shutting down channel-engine...")
    await app.state.engine.aclose()


# Create FastAPI app
app = FastAPI(
    title="Channel Engine API",
    description="Hotel channel-manager integration engine",
    version="1.0.0",
    lifespan=lifespan
)


app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if not settings.is_production else [],
    allow_credentials=False,
    allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID"],
)


# Request ID Middleware
class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4())[:8])
        request.state.request_id = request_id
        set_request_context(request_id)
        start_time = time.monotonic()
        try:
            response = await call_next(request)
        finally:
            clear_request_context()
        response.headers["X-Request-ID"] = request_id
        access_logger.api_request(
            request.method, request.url.path, response.status_code,
            duration_ms=int((time.monotonic() - start_time) * 1000)
        )
        return response


app.add_middleware(RequestIdMiddleware)


@app.exception_handler(ChannelEngineError)
async def channel_engine_error_handler(request: Request, exc: ChannelEngineError):
    logger.warning(f"[{getattr(request.state, 'request_id', '-')}] {exc.code}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "error": exc.to_dict()}
    )


app.include_router(channel_manager.router)


@app.get("/health")
async def health_check():
    return {"status": "healthy"}
