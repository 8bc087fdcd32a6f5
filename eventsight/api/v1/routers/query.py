# eventsight/api/v1/routers/query.py
"""
Natural-language query endpoint.

    POST /query  - buffered JSON answer, or a text stream when ``stream=true``

Over-long questions are rejected with 400 before any work starts; every other
failure degrades inside the router to a general answer or an apology.
"""

import asyncio
import logging

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from eventsight.core.llm.streaming import QueueSink
from eventsight.core.query.router import QueryRouter
from eventsight.core.query.schemas import QueryRequest, QueryResponse
from eventsight.dependencies import get_query_router

router = APIRouter(prefix="/query", tags=["Query"])

logger = logging.getLogger("eventsight.api.query")


@router.post("", response_model=QueryResponse)
async def query(request: QueryRequest, query_router: QueryRouter = Depends(get_query_router)):
    """Answer an analytics question about ingested users."""
    query_router.check_question(request.question)
    filters = request.filters.to_filter_map() if request.filters else None

    if not request.stream:
        return await query_router.answer(request.question, top_k=request.top_k, filters=filters)

    sink = QueueSink()

    async def _produce():
        try:
            await query_router.answer(
                request.question, top_k=request.top_k, filters=filters, stream=True, sink=sink
            )
        except Exception as e:
            logger.exception("Streamed query failed")
            await sink.close(error=e)
            return
        await sink.close()

    task = asyncio.create_task(_produce())

    async def _body():
        try:
            async for chunk in sink.consume():
                yield chunk
        finally:
            if not task.done():
                task.cancel()

    return StreamingResponse(_body(), media_type="text/plain; charset=utf-8")
