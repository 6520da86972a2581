"""
FastAPI Application Entry Point

Model Compare API
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded

from app.core.config import settings
from app.core.dependencies import (
    get_cache,
    get_comparison_service,
    get_registry,
    get_scheduler,
)
from app.core.exceptions import (
    InvalidStateError,
    QueryNotFoundError,
    UnknownProviderError,
    UnsupportedModelError,
)
from app.core.logging import get_logger, setup_logging
from app.core.rate_limit import limiter, rate_limit_exceeded_handler
from app.api.providers import router as providers_router, users_router
from app.api.queries import router as queries_router
from app.services.scheduler import ORCHESTRATION_QUEUE, SCORING_QUEUE

setup_logging(settings.LOG_LEVEL)
logger = get_logger(__name__)

VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Building the service registers the queue handlers
    get_comparison_service()
    scheduler = get_scheduler()
    await scheduler.start()
    logger.info(f"{settings.PROJECT_NAME} {VERSION} started, providers: {get_registry().provider_names()}")
    try:
        yield
    finally:
        await scheduler.stop()
        logger.info("Shutdown complete")


app = FastAPI(
    title=settings.PROJECT_NAME,
    description="Send one prompt to several LLM providers at once and score how much the answers agree",
    version=VERSION,
    lifespan=lifespan
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)


@app.exception_handler(QueryNotFoundError)
async def query_not_found_handler(request: Request, exc: QueryNotFoundError):
    return JSONResponse(status_code=404, content={"error": "Query not found", "detail": str(exc)})


@app.exception_handler(UnknownProviderError)
async def unknown_provider_handler(request: Request, exc: UnknownProviderError):
    return JSONResponse(status_code=404, content={"error": "Unknown provider", "detail": str(exc)})


@app.exception_handler(UnsupportedModelError)
async def unsupported_model_handler(request: Request, exc: UnsupportedModelError):
    return JSONResponse(status_code=422, content={"error": "Unsupported model", "detail": str(exc)})


@app.exception_handler(InvalidStateError)
async def invalid_state_handler(request: Request, exc: InvalidStateError):
    return JSONResponse(status_code=409, content={"error": "Invalid state", "detail": str(exc)})


app.include_router(queries_router)
app.include_router(providers_router)
app.include_router(users_router)

origins = [
    "http://localhost:4200",
    "http://localhost:3000",
    "*"
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"]
)


@app.get("/")
async def health_check():
    """Root endpoint to verify the server is running."""
    cache = get_cache()
    scheduler = get_scheduler()
    return {
        "status": "active",
        "project": settings.PROJECT_NAME,
        "version": VERSION,
        "cache": {
            "type": "redis" if cache.is_connected else "in-memory",
            "connected": cache.is_connected
        },
        "queues": {
            "running": scheduler.is_running,
            ORCHESTRATION_QUEUE: scheduler.stats(ORCHESTRATION_QUEUE).model_dump(),
            SCORING_QUEUE: scheduler.stats(SCORING_QUEUE).model_dump()
        },
        "providers": get_registry().provider_names(),
        "endpoints": {
            "submit_query": "/api/queries/",
            "get_query": "/api/queries/{query_id}",
            "query_events": "/api/queries/{query_id}/events",
            "supported_models": "/api/queries/models/supported"
        }
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
