"""
Query Schemas

Pydantic models for comparison queries, per-model responses,
comparison metrics and the aggregate view served to clients.
"""
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

# Scoring needs at least two usable responses
MIN_SCORABLE_RESPONSES = 2


class QueryStatus(str, Enum):
    """Lifecycle state of a comparison query."""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (QueryStatus.COMPLETED, QueryStatus.FAILED)


class ResponseStatus(str, Enum):
    """Terminal outcome of one provider call."""
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    TIMEOUT = "TIMEOUT"


class GenerationParams(BaseModel):
    """Generation parameters shared by every model in a query."""
    temperature: Optional[float] = Field(default=None, ge=0, le=2)
    max_tokens: Optional[int] = Field(default=None, ge=1, le=4000)
    system_prompt: Optional[str] = Field(default=None, max_length=1000)
    top_p: Optional[float] = Field(default=None, ge=0, le=1)
    top_k: Optional[int] = Field(default=None, ge=1, le=100)


class TokenUsage(BaseModel):
    """Token counts reported (or estimated) for one call."""
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class QueryCreate(BaseModel):
    """Request to start a new comparison"""
    user_id: str = Field(description="Owner of the query; used to resolve stored API keys")
    prompt: str = Field(min_length=1, max_length=4000)
    models: List[str] = Field(min_length=2, max_length=8, description="Model identifiers to compare")
    parameters: GenerationParams = Field(default_factory=GenerationParams)
    credentials: Optional[Dict[str, str]] = Field(
        default=None,
        description="Per-provider API keys supplied for this request only"
    )

    @field_validator("models")
    @classmethod
    def models_must_be_unique(cls, value: List[str]) -> List[str]:
        if len(set(value)) != len(value):
            raise ValueError("models must not contain duplicates")
        return value


class QuerySummary(BaseModel):
    """Query row as stored"""
    id: str
    user_id: str
    prompt: str
    models: List[str]
    parameters: GenerationParams
    status: QueryStatus
    failure_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class ModelResponseView(BaseModel):
    """Outcome of one provider call within a query"""
    model_id: str
    provider: Optional[str] = None
    position: int
    status: ResponseStatus
    content: str = ""
    latency_ms: int = 0
    usage: TokenUsage = Field(default_factory=TokenUsage)
    cost_usd: float = 0.0
    error: Optional[str] = None
    error_kind: Optional[str] = None
    finish_reason: Optional[str] = None
    model_version: Optional[str] = None

    @property
    def is_valid(self) -> bool:
        """Usable for comparison: completed with non-empty content."""
        return self.status == ResponseStatus.COMPLETED and bool(self.content)


class ComparisonMetrics(BaseModel):
    """Five similarity dimensions plus their weighted aggregate (all 0-100)"""
    semantic_similarity: int = Field(ge=0, le=100)
    length_consistency: int = Field(ge=0, le=100)
    sentiment_alignment: int = Field(ge=0, le=100)
    factual_consistency: int = Field(ge=0, le=100)
    timing_consistency: int = Field(ge=0, le=100)
    aggregate_score: float = Field(ge=0, le=100)
    explanation: Optional[str] = None


class QueryStatistics(BaseModel):
    """Derived totals over a query's responses"""
    total_responses: int = 0
    completed_responses: int = 0
    failed_responses: int = 0
    timed_out_responses: int = 0
    average_latency_ms: float = 0.0
    total_cost_usd: float = 0.0
    total_tokens: int = 0


class QueryView(BaseModel):
    """Everything a client needs to render one comparison"""
    query: QuerySummary
    responses: List[ModelResponseView] = Field(default_factory=list)
    comparison_metrics: Optional[ComparisonMetrics] = None
    statistics: QueryStatistics = Field(default_factory=QueryStatistics)

    @property
    def usable_responses(self) -> int:
        return sum(1 for r in self.responses if r.is_valid)

    @property
    def is_settled(self) -> bool:
        """
        True once nothing will change this view again: the query failed,
        or completed and was either scored or has too few usable
        responses to be scored.
        """
        status = self.query.status
        if status == QueryStatus.FAILED:
            return True
        if status == QueryStatus.COMPLETED:
            return self.comparison_metrics is not None or self.usable_responses < MIN_SCORABLE_RESPONSES
        return False


class SubmitResponse(BaseModel):
    """Acknowledgement returned when a query is accepted"""
    id: str
    status: QueryStatus
    models: List[str]


class QueryPage(BaseModel):
    """One page of query history"""
    queries: List[QuerySummary]
    total: int
    limit: int
    offset: int

    @property
    def has_more(self) -> bool:
        return self.offset + self.limit < self.total


class CredentialRequest(BaseModel):
    """Body for storing or validating a provider API key"""
    api_key: str = Field(min_length=1)
