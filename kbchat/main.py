"""
Knowledge-base chat BFF
Main FastAPI application: streamed RAG chat turns and backend proxy
"""
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import structlog
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from starlette.responses import Response

from kbchat.routers import chat, proxy
from kbchat.services.chat_stream import ChatStreamService
from kbchat.services.config import Settings
from kbchat.services.config_store import create_config_store
from kbchat.services.errors import KBChatError, KnowledgeBaseNotFound
from kbchat.services.knowledge_base import KnowledgeBaseClient
from kbchat.services.relay import TransportRelay
from kbchat.utils.logging import setup_logging
from kbchat.utils.metrics import active_connections, request_counter, request_duration

# Configure structured logging
logger = structlog.get_logger()

# Load settings
settings = Settings()
setup_logging(settings)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle"""
    # Startup
    logger.info("Starting knowledge-base chat BFF",
                version=settings.API_VERSION,
                **settings.masked())

    relay = TransportRelay(settings)
    config_store = create_config_store(settings)

    if settings.OTEL_ENABLED:
        from kbchat.utils.telemetry import setup_tracing
        setup_tracing(app, settings)

    # Set services in app state
    app.state.settings = settings
    app.state.relay = relay
    app.state.chat_service = ChatStreamService(relay, settings)
    app.state.knowledge_base_client = KnowledgeBaseClient(relay, settings)
    app.state.config_store = config_store

    logger.info("API initialization complete")

    yield

    # Shutdown
    logger.info("Shutting down knowledge-base chat BFF")
    await relay.close()
    await config_store.close()
    logger.info("Shutdown complete")

# Create FastAPI app
app = FastAPI(
    title="Knowledge-Base Chat BFF",
    description="Streaming RAG chat turns with think/answer splitting, plus a backend proxy",
    version=settings.API_VERSION,
    lifespan=lifespan,
    docs_url="/docs" if settings.ENVIRONMENT == "development" else None,
    redoc_url="/redoc" if settings.ENVIRONMENT == "development" else None,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID"],
)

# Middleware for request tracking
@app.middleware("http")
async def track_requests(request: Request, call_next):
    """Track request metrics and add request ID"""
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))

    active_connections.inc()
    start_time = time.time()

    # Add request ID to logger context
    structlog.contextvars.bind_contextvars(request_id=request_id)

    try:
        response = await call_next(request)

        duration = time.time() - start_time
        request_counter.labels(
            method=request.method,
            endpoint=request.url.path,
            status=response.status_code
        ).inc()
        request_duration.labels(
            method=request.method,
            endpoint=request.url.path
        ).observe(duration)

        response.headers["X-Request-ID"] = request_id

        logger.info(
            "Request completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration=duration
        )

        return response

    except Exception as e:
        logger.error(
            "Request failed",
            method=request.method,
            path=request.url.path,
            error=str(e)
        )
        request_counter.labels(
            method=request.method,
            endpoint=request.url.path,
            status=500
        ).inc()
        raise

    finally:
        active_connections.dec()
        structlog.contextvars.unbind_contextvars("request_id")

# Include routers
app.include_router(chat.router, prefix="/api/v1")
app.include_router(proxy.router)

# Health check endpoints
@app.get("/health")
async def health_check():
    """Basic health check"""
    return {"status": "healthy", "version": settings.API_VERSION}

@app.get("/health/ready")
async def readiness_check():
    """Readiness probe - checks the chat config store"""
    checks = {
        "api": "healthy",
        "config_store": "unknown",
    }

    if await app.state.config_store.ping():
        checks["config_store"] = "healthy"
    else:
        checks["config_store"] = "unhealthy"
        return JSONResponse(
            status_code=503,
            content={"status": "not ready", "checks": checks}
        )

    return {"status": "ready", "checks": checks}

@app.get("/health/live")
async def liveness_check():
    """Liveness probe - checks if the application is running"""
    return {"status": "alive"}

@app.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint"""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

@app.get("/")
async def root():
    """Root endpoint with API information"""
    return {
        "name": "Knowledge-Base Chat BFF",
        "version": settings.API_VERSION,
        "environment": settings.ENVIRONMENT,
        "docs": "/docs" if settings.ENVIRONMENT == "development" else None,
        "health": "/health",
        "metrics": "/metrics"
    }

# Error handlers
@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle HTTP exceptions"""
    logger.warning(
        "HTTP exception",
        status_code=exc.status_code,
        detail=exc.detail,
        path=request.url.path
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail, "status_code": exc.status_code}
    )

@app.exception_handler(KnowledgeBaseNotFound)
async def knowledge_base_not_found_handler(request: Request, exc: KnowledgeBaseNotFound):
    logger.warning("Knowledge base not found", kb_id=exc.kb_id, path=request.url.path)
    return JSONResponse(
        status_code=404,
        content={"error": str(exc), "status_code": 404}
    )

@app.exception_handler(KBChatError)
async def chat_error_handler(request: Request, exc: KBChatError):
    """Handle backend failures outside a stream"""
    logger.error("Backend error", error=str(exc), path=request.url.path)
    return JSONResponse(
        status_code=502,
        content={"error": str(exc), "status_code": 502}
    )

@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    """Handle validation errors"""
    logger.error("Validation error", error=str(exc), path=request.url.path)
    return JSONResponse(
        status_code=400,
        content={"error": str(exc), "status_code": 400}
    )

@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle general exceptions"""
    logger.error(
        "Unhandled exception",
        error=str(exc),
        path=request.url.path,
        exc_info=True
    )
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "status_code": 500,
            "request_id": request.headers.get("X-Request-ID")
        }
    )

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "kbchat.main:app",
        host="0.0.0.0",
        port=settings.PORT,
        reload=settings.ENVIRONMENT == "development",
        log_config=None,  # Use structlog instead
        access_log=False,  # Handled by middleware
    )
