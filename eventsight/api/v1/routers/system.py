# eventsight/api/v1/routers/system.py
from datetime import datetime
from typing import List

from fastapi import APIRouter, Depends, HTTPException

from eventsight.api.v1.models import CollectionCountResponse, HealthStatus
from eventsight.core.models.llm_models import LLMConnectionStatus
from eventsight.core.search.vector_store import VectorStore
from eventsight.dependencies import ServiceContainer, get_container, get_vector_store

router = APIRouter(prefix="/system", tags=["System"])


@router.get("/health", response_model=HealthStatus)
async def health_check(container: ServiceContainer = Depends(get_container)):
    """Health check endpoint: database and vector store."""
    database = await container.database.health_check()
    vector_store = await container.vector_store.health()
    healthy = database.get("status") == "healthy" and vector_store.get("status") == "healthy"
    return HealthStatus(
        status="healthy" if healthy else "degraded",
        timestamp=datetime.now(),
        version=container.settings.api_version,
        database=database,
        vector_store=vector_store,
        llm_available=container.llm.is_available,
    )


@router.get("/llm/status", response_model=LLMConnectionStatus)
async def get_llm_status(container: ServiceContainer = Depends(get_container)):
    """Get LLM connection status."""
    return await container.llm.test_connection()


@router.get("/collections", response_model=List[str])
async def list_collections(vector_store: VectorStore = Depends(get_vector_store)):
    return await vector_store.get_collections()


@router.get("/collections/{name}/count", response_model=CollectionCountResponse)
async def get_collection_count(name: str, vector_store: VectorStore = Depends(get_vector_store)):
    if name not in await vector_store.get_collections():
        raise HTTPException(status_code=404, detail=f"Collection '{name}' not found")
    return CollectionCountResponse(collection=name, count=await vector_store.count(name))
