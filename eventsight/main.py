# ============================================================================
# Eventsight - FastAPI Application Entry Point
# ============================================================================
"""
Main FastAPI application module for Eventsight, a behavioral analytics
question-answering API over PostHog events.

This module sets up the FastAPI application with:
- CORS middleware configuration for cross-origin requests
- Startup: logging, vector store collections (fatal on failure)
- Error handlers returning the ErrorResponse envelope
- API router integration under /api/v1

Usage:
    Direct: python -m eventsight.main
    Server: uvicorn eventsight.main:app --host 0.0.0.0 --port 8000
"""

import logging
from datetime import datetime
from typing import Any, Dict

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from eventsight.api.v1 import api_router
from eventsight.api.v1.models import ErrorResponse
from eventsight.config import settings
from eventsight.core.exceptions import PromptTooLongError
from eventsight.dependencies import get_container

logger = logging.getLogger("eventsight.main")

# ============================================================================
# APPLICATION INITIALIZATION
# ============================================================================

app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    description=(
        "Eventsight - behavioral analytics over PostHog events\n\n"
        "Ingests raw product events into per-user profiles and answers "
        "natural-language questions about those users."
    ),
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

# ============================================================================
# MIDDLEWARE CONFIGURATION
# ============================================================================

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)

# ============================================================================
# APPLICATION EVENT HANDLERS
# ============================================================================


@app.on_event("startup")
async def startup_event() -> None:
    """
    Application startup event handler.

    Ensures the vector store collections exist. A failure here aborts
    startup: the query path and the workers both depend on them.
    """
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info("Starting %s %s (debug=%s)", settings.api_title, settings.api_version, settings.debug)

    container = get_container()
    await container.vector_store.ensure_collections(container.settings.collection_names)
    logger.info("Vector store collections ready: %s", ", ".join(container.settings.collection_names))

    llm_status = "available" if container.llm.is_available else "unavailable"
    logger.info("LLM service: %s", llm_status)


@app.on_event("shutdown")
async def shutdown_event() -> None:
    logger.info("Shutting down %s", settings.api_title)
    try:
        await get_container().close()
    except Exception as e:
        logger.warning("Shutdown cleanup warning: %s", e)


# ============================================================================
# ERROR HANDLERS
# ============================================================================


@app.exception_handler(PromptTooLongError)
async def prompt_too_long_handler(request: Request, exc: PromptTooLongError) -> JSONResponse:
    error_response = ErrorResponse(error="Prompt Too Long", detail=str(exc))
    return JSONResponse(status_code=400, content=error_response.model_dump(mode="json"))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    error_response = ErrorResponse(error=f"HTTP {exc.status_code}", detail=str(exc.detail))
    return JSONResponse(status_code=exc.status_code, content=error_response.model_dump(mode="json"))


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler; the error detail is only exposed in debug mode."""
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    error_response = ErrorResponse(
        error="Internal Server Error",
        detail=str(exc) if settings.debug else "An unexpected error occurred",
    )
    return JSONResponse(status_code=500, content=error_response.model_dump(mode="json"))


# ============================================================================
# ROUTER CONFIGURATION
# ============================================================================

app.include_router(api_router, prefix="/api/v1")


@app.get("/", tags=["root"])
async def root() -> Dict[str, Any]:
    return {
        "name": settings.api_title,
        "version": settings.api_version,
        "status": "running",
        "docs_url": "/docs",
        "health_check": "/api/v1/system/health",
        "timestamp": datetime.now(),
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "eventsight.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
