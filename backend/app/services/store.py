"""
Query Store

The single writer-of-record for queries, model responses and comparison
metrics. All methods are synchronous; async callers run them through
asyncio.to_thread.
"""
from datetime import timedelta
from typing import Dict, List, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.orm import Session, sessionmaker

from app.core.exceptions import InvalidStateError, QueryNotFoundError
from app.core.logging import get_logger
from app.models.query import Comparison, ModelResponse, Query, User, utcnow
from app.schemas.query import (
    ComparisonMetrics,
    GenerationParams,
    ModelResponseView,
    QueryPage,
    QueryStatistics,
    QueryStatus,
    QuerySummary,
    QueryView,
    ResponseStatus,
    TokenUsage,
)

logger = get_logger(__name__)

# Allowed forward moves of Query.status
_TRANSITIONS = {
    QueryStatus.PENDING: {QueryStatus.PROCESSING, QueryStatus.FAILED},
    QueryStatus.PROCESSING: {QueryStatus.COMPLETED, QueryStatus.FAILED},
    QueryStatus.COMPLETED: set(),
    QueryStatus.FAILED: set(),
}

REOPENABLE_FAILURE = "orchestration"


class QueryStore:
    """SQLAlchemy-backed persistence for the comparison domain."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def _session(self) -> Session:
        return self._session_factory()

    # === Users ===

    def ensure_user(self, user_id: str, username: Optional[str] = None) -> str:
        with self._session() as session:
            user = session.get(User, user_id)
            if user is None:
                session.add(User(id=user_id, username=username or user_id, encrypted_api_keys={}))
                session.commit()
        return user_id

    def get_user_keys(self, user_id: str) -> Optional[Dict[str, str]]:
        """Encrypted API keys of the user, or None when the user does not exist."""
        with self._session() as session:
            user = session.get(User, user_id)
            if user is None:
                return None
            return dict(user.encrypted_api_keys or {})

    def set_user_key(self, user_id: str, provider: str, encrypted_key: Optional[str]) -> None:
        with self._session() as session:
            user = session.get(User, user_id)
            if user is None:
                user = User(id=user_id, username=user_id, encrypted_api_keys={})
                session.add(user)
            keys = dict(user.encrypted_api_keys or {})
            if encrypted_key is None:
                keys.pop(provider, None)
            else:
                keys[provider] = encrypted_key
            user.encrypted_api_keys = keys
            session.commit()

    # === Queries ===

    def create_query(
        self,
        user_id: str,
        prompt: str,
        model_ids: Sequence[str],
        params: GenerationParams
    ) -> str:
        with self._session() as session:
            query = Query(
                user_id=user_id,
                prompt=prompt,
                models_requested=list(model_ids),
                parameters=params.model_dump(exclude_none=True),
                status=QueryStatus.PENDING.value,
            )
            session.add(query)
            session.commit()
            return query.id

    def get_query(self, query_id: str) -> QuerySummary:
        with self._session() as session:
            query = session.get(Query, query_id)
            if query is None:
                raise QueryNotFoundError(query_id)
            return _summary(query)

    def begin_processing(self, query_id: str, retry: bool = False) -> bool:
        """
        Move a query to PROCESSING.

        A retry may reopen a query that failed on an orchestration fault.
        Returns False when the query is terminal and must not be re-run.
        """
        with self._session() as session:
            query = session.get(Query, query_id)
            if query is None:
                raise QueryNotFoundError(query_id)
            current = QueryStatus(query.status)

            if current == QueryStatus.PROCESSING:
                return True
            if current == QueryStatus.FAILED and retry and query.failure_reason == REOPENABLE_FAILURE:
                logger.info(f"Reopening query {query_id} for retry")
            elif current != QueryStatus.PENDING:
                return False

            query.status = QueryStatus.PROCESSING.value
            query.failure_reason = None
            session.commit()
            return True

    def set_status(
        self,
        query_id: str,
        status: QueryStatus,
        failure_reason: Optional[str] = None
    ) -> None:
        with self._session() as session:
            query = session.get(Query, query_id)
            if query is None:
                raise QueryNotFoundError(query_id)
            current = QueryStatus(query.status)
            if status == current:
                return
            if status not in _TRANSITIONS[current]:
                raise InvalidStateError(query_id, current.value, status.value)
            query.status = status.value
            query.failure_reason = failure_reason
            session.commit()

    def list_queries(
        self,
        user_id: Optional[str] = None,
        status: Optional[QueryStatus] = None,
        limit: int = 10,
        offset: int = 0
    ) -> QueryPage:
        conditions = []
        if user_id:
            conditions.append(Query.user_id == user_id)
        if status:
            conditions.append(Query.status == status.value)

        with self._session() as session:
            total = session.scalar(select(func.count()).select_from(Query).where(*conditions))
            rows = session.scalars(
                select(Query)
                .where(*conditions)
                .order_by(Query.created_at.desc())
                .limit(limit)
                .offset(offset)
            ).all()
            return QueryPage(
                queries=[_summary(q) for q in rows],
                total=total or 0,
                limit=limit,
                offset=offset,
            )

    # === Responses ===

    def save_responses(self, query_id: str, responses: Sequence[ModelResponseView]) -> None:
        """
        Write one row per provider outcome in a single transaction.

        Rows are immutable: a model that already has a response for this
        query keeps it and the new outcome is dropped.
        """
        with self._session() as session:
            existing = set(session.scalars(
                select(ModelResponse.model_id).where(ModelResponse.query_id == query_id)
            ).all())
            for response in responses:
                if response.model_id in existing:
                    logger.warning(f"Response for {response.model_id} already stored on query {query_id}")
                    continue
                session.add(ModelResponse(
                    query_id=query_id,
                    model_id=response.model_id,
                    provider=response.provider,
                    position=response.position,
                    status=response.status.value,
                    content=response.content,
                    latency_ms=response.latency_ms,
                    prompt_tokens=response.usage.prompt_tokens,
                    completion_tokens=response.usage.completion_tokens,
                    total_tokens=response.usage.total_tokens,
                    cost_usd=response.cost_usd,
                    error=response.error,
                    error_kind=response.error_kind,
                    finish_reason=response.finish_reason,
                    model_version=response.model_version,
                ))
            session.commit()

    def get_responses(self, query_id: str) -> List[ModelResponseView]:
        with self._session() as session:
            rows = session.scalars(
                select(ModelResponse)
                .where(ModelResponse.query_id == query_id)
                .order_by(ModelResponse.position)
            ).all()
            return [_response_view(r) for r in rows]

    # === Comparison metrics ===

    def upsert_metrics(self, query_id: str, metrics: ComparisonMetrics) -> None:
        with self._session() as session:
            row = session.get(Comparison, query_id)
            if row is None:
                row = Comparison(query_id=query_id)
                session.add(row)
            row.semantic_similarity = metrics.semantic_similarity
            row.length_consistency = metrics.length_consistency
            row.sentiment_alignment = metrics.sentiment_alignment
            row.factual_consistency = metrics.factual_consistency
            row.timing_consistency = metrics.timing_consistency
            row.aggregate_score = metrics.aggregate_score
            row.explanation = metrics.explanation
            row.computed_at = utcnow()
            session.commit()

    def get_metrics(self, query_id: str) -> Optional[ComparisonMetrics]:
        with self._session() as session:
            row = session.get(Comparison, query_id)
            if row is None:
                return None
            return ComparisonMetrics(
                semantic_similarity=row.semantic_similarity,
                length_consistency=row.length_consistency,
                sentiment_alignment=row.sentiment_alignment,
                factual_consistency=row.factual_consistency,
                timing_consistency=row.timing_consistency,
                aggregate_score=row.aggregate_score,
                explanation=row.explanation,
            )

    # === Views ===

    def build_view(self, query_id: str) -> QueryView:
        """Assemble the full view of a query from the authoritative tables."""
        query = self.get_query(query_id)
        responses = self.get_responses(query_id)
        return QueryView(
            query=query,
            responses=responses,
            comparison_metrics=self.get_metrics(query_id),
            statistics=compute_statistics(responses),
        )

    def usage_stats(self, user_id: str, days: int = 30) -> List[Dict]:
        """Per-model call counts, cost, tokens and latency for a user's recent queries."""
        since = utcnow() - timedelta(days=days)
        with self._session() as session:
            rows = session.execute(
                select(
                    ModelResponse.model_id,
                    func.count(ModelResponse.id),
                    func.sum(ModelResponse.cost_usd),
                    func.sum(ModelResponse.total_tokens),
                    func.avg(ModelResponse.latency_ms),
                )
                .join(Query, Query.id == ModelResponse.query_id)
                .where(Query.user_id == user_id, Query.created_at >= since)
                .group_by(ModelResponse.model_id)
                .order_by(ModelResponse.model_id)
            ).all()
        return [
            {
                "model": model_id,
                "queries": count,
                "total_cost_usd": round(cost or 0.0, 6),
                "total_tokens": tokens or 0,
                "average_latency_ms": float(latency or 0.0),
            }
            for model_id, count, cost, tokens, latency in rows
        ]


def compute_statistics(responses: Sequence[ModelResponseView]) -> QueryStatistics:
    total = len(responses)
    return QueryStatistics(
        total_responses=total,
        completed_responses=sum(1 for r in responses if r.status == ResponseStatus.COMPLETED),
        failed_responses=sum(1 for r in responses if r.status == ResponseStatus.FAILED),
        timed_out_responses=sum(1 for r in responses if r.status == ResponseStatus.TIMEOUT),
        average_latency_ms=(sum(r.latency_ms for r in responses) / total) if total else 0.0,
        total_cost_usd=round(sum(r.cost_usd for r in responses), 6),
        total_tokens=sum(r.usage.total_tokens for r in responses),
    )


def _summary(query: Query) -> QuerySummary:
    return QuerySummary(
        id=query.id,
        user_id=query.user_id,
        prompt=query.prompt,
        models=list(query.models_requested),
        parameters=GenerationParams(**(query.parameters or {})),
        status=QueryStatus(query.status),
        failure_reason=query.failure_reason,
        created_at=query.created_at,
        updated_at=query.updated_at,
    )


def _response_view(row: ModelResponse) -> ModelResponseView:
    return ModelResponseView(
        model_id=row.model_id,
        provider=row.provider,
        position=row.position,
        status=ResponseStatus(row.status),
        content=row.content or "",
        latency_ms=row.latency_ms,
        usage=TokenUsage(
            prompt_tokens=row.prompt_tokens,
            completion_tokens=row.completion_tokens,
            total_tokens=row.total_tokens,
        ),
        cost_usd=row.cost_usd,
        error=row.error,
        error_kind=row.error_kind,
        finish_reason=row.finish_reason,
        model_version=row.model_version,
    )
