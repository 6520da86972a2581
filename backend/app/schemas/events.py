"""
Live Event Schemas

Pydantic models for events pushed to subscribers of a query.
These define the structure of progress updates sent to the frontend.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .query import ComparisonMetrics


class EventType(str, Enum):
    """All event types emitted per query."""
    QUERY_UPDATE = "query_update"
    RESPONSE_RECEIVED = "response_received"
    COMPARISON_COMPLETE = "comparison_complete"


class QueryUpdatePayload(BaseModel):
    """Lifecycle or progress change of a query."""
    status: str
    progress: Optional[int] = Field(default=None, ge=0, le=100)
    message: Optional[str] = None
    # On completion: whether a comparison_complete event will follow
    scoring: Optional[bool] = None


class ResponseReceivedPayload(BaseModel):
    """One provider call settled. Serialized with camelCase keys (modelId, latencyMs)."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    model_id: str
    status: str
    latency_ms: int


class ComparisonCompletePayload(BaseModel):
    """Scoring finished for a query."""
    metrics: ComparisonMetrics
    explanation: Optional[str] = None


class QueryEvent(BaseModel):
    """Envelope delivered to subscribers."""
    type: EventType
    query_id: str
    data: Dict[str, Any]
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


def progress_percent(completed: int, total: int) -> int:
    """Whole-number completion percentage, 0 when there is nothing to do."""
    if total <= 0:
        return 0
    return round(completed / total * 100)
