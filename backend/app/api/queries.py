"""
Query API Routes

FastAPI routes for submitting comparison queries, reading their
results and following their progress live.
"""
import asyncio
import json
from typing import Optional

from fastapi import APIRouter, Depends, Query as QueryParam, Request
from fastapi.responses import StreamingResponse

from app.core.dependencies import get_comparison_service, get_notifier, get_registry
from app.core.rate_limit import (
    QUERY_CANCEL_LIMIT,
    QUERY_GET_LIMIT,
    QUERY_SUBMIT_LIMIT,
    limiter,
)
from app.schemas.events import EventType, QueryEvent
from app.schemas.query import QueryCreate, QueryStatus, QueryView, SubmitResponse
from app.services.comparison import ComparisonService
from app.services.events import EventNotifier
from app.services.providers import ProviderRegistry

router = APIRouter(prefix="/api/queries", tags=["queries"])

KEEPALIVE_SECONDS = 15.0


def ends_stream(event: QueryEvent) -> bool:
    """True for the last event a query will publish."""
    if event.type == EventType.COMPARISON_COMPLETE:
        return True
    if event.type != EventType.QUERY_UPDATE:
        return False
    status = event.data.get("status")
    return status == "failed" or (status == "completed" and event.data.get("scoring") is False)


@router.post("/", response_model=SubmitResponse, status_code=201)
@limiter.limit(QUERY_SUBMIT_LIMIT)
async def submit_query(
    request: Request,
    body: QueryCreate,
    service: ComparisonService = Depends(get_comparison_service)
):
    """
    Start a new comparison. The prompt is sent to every model in the
    background; poll GET /{id} or follow GET /{id}/events.
    """
    query_id = await service.submit_query(
        prompt=body.prompt,
        model_ids=body.models,
        params=body.parameters,
        user_id=body.user_id,
        credentials=body.credentials
    )
    return SubmitResponse(id=query_id, status=QueryStatus.PENDING, models=body.models)


@router.get("/")
async def list_queries(
    user_id: Optional[str] = None,
    status: Optional[QueryStatus] = None,
    limit: int = QueryParam(default=10, ge=1, le=100),
    offset: int = QueryParam(default=0, ge=0),
    service: ComparisonService = Depends(get_comparison_service)
):
    """Query history, newest first."""
    page = await service.list_queries(user_id=user_id, status=status, limit=limit, offset=offset)
    return {
        "queries": [q.model_dump(mode="json") for q in page.queries],
        "pagination": {
            "total": page.total,
            "limit": page.limit,
            "offset": page.offset,
            "has_more": page.has_more
        }
    }


@router.get("/models/supported")
async def supported_models(registry: ProviderRegistry = Depends(get_registry)):
    """Model identifiers that can be requested, grouped by provider."""
    by_provider = registry.models_by_provider()
    return {
        "providers": by_provider,
        "models": sorted(registry.supported_models())
    }


@router.get("/{query_id}", response_model=QueryView)
@limiter.limit(QUERY_GET_LIMIT)
async def get_query(
    request: Request,
    query_id: str,
    service: ComparisonService = Depends(get_comparison_service)
):
    """Query, responses in requested order, metrics (once scored) and statistics."""
    return await service.get_query_view(query_id)


@router.post("/{query_id}/invalidate")
async def invalidate_query(
    query_id: str,
    service: ComparisonService = Depends(get_comparison_service)
):
    """Drop the cached view; the next read rebuilds it from the database."""
    removed = await service.invalidate(query_id)
    return {"query_id": query_id, "invalidated": removed}


@router.delete("/{query_id}", response_model=QueryView)
@limiter.limit(QUERY_CANCEL_LIMIT)
async def cancel_query(
    request: Request,
    query_id: str,
    service: ComparisonService = Depends(get_comparison_service)
):
    """Cancel a query that has not completed. 409 if it already has."""
    return await service.cancel_query(query_id)


@router.get("/{query_id}/events")
async def stream_query_events(
    request: Request,
    query_id: str,
    service: ComparisonService = Depends(get_comparison_service),
    notifier: EventNotifier = Depends(get_notifier)
):
    """
    Follow a query with Server-Sent Events.

    The first event is a snapshot of the current state. After that:
    - query_update: status and progress changes
    - response_received: one model finished
    - comparison_complete: metrics are ready (closes the stream)

    The stream also closes when the query fails or completes without
    scoring, or straight after the snapshot once nothing will change.
    """
    # Subscribe first so nothing published while the snapshot is read is lost
    subscription = notifier.subscribe(query_id)
    try:
        view = await service.get_query_view(query_id)
    except Exception:
        notifier.unsubscribe(subscription)
        raise

    def sse(event_type: str, data: dict) -> str:
        return f"event: {event_type}\ndata: {json.dumps(data)}\n\n"

    async def event_generator():
        try:
            status = view.query.status
            yield sse(EventType.QUERY_UPDATE.value, {
                "status": status.value.lower(),
                "progress": 100 if status.is_terminal else 0,
                "message": "snapshot"
            })

            if view.is_settled:
                return

            while True:
                try:
                    event: QueryEvent = await asyncio.wait_for(
                        subscription.get(), timeout=KEEPALIVE_SECONDS
                    )
                except asyncio.TimeoutError:
                    if await request.is_disconnected():
                        return
                    yield ": keep-alive\n\n"
                    continue

                yield sse(event.type.value, event.data)

                if ends_stream(event):
                    return
        finally:
            notifier.unsubscribe(subscription)

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        }
    )
