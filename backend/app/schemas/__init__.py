"""
Schemas Module

Contains all Pydantic models (DTOs) for:
- API request/response validation
- Query views served from the cache
- Live query events
"""
from .query import (
    QueryStatus,
    ResponseStatus,
    GenerationParams,
    TokenUsage,
    QueryCreate,
    QuerySummary,
    ModelResponseView,
    ComparisonMetrics,
    QueryStatistics,
    QueryView,
    SubmitResponse,
    QueryPage,
    CredentialRequest,
)
from .events import (
    EventType,
    QueryUpdatePayload,
    ResponseReceivedPayload,
    ComparisonCompletePayload,
    QueryEvent,
    progress_percent,
)

__all__ = [
    "QueryStatus",
    "ResponseStatus",
    "GenerationParams",
    "TokenUsage",
    "QueryCreate",
    "QuerySummary",
    "ModelResponseView",
    "ComparisonMetrics",
    "QueryStatistics",
    "QueryView",
    "SubmitResponse",
    "QueryPage",
    "CredentialRequest",
    "EventType",
    "QueryUpdatePayload",
    "ResponseReceivedPayload",
    "ComparisonCompletePayload",
    "QueryEvent",
    "progress_percent",
]
