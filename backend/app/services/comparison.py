"""
Comparison Service

Inbound interface of the comparison engine. Accepts queries, serves
their views (cache first), and hosts the two background job handlers:
orchestration and scoring.
"""
import asyncio
from typing import Any, Dict, List, Optional, Sequence

from app.core.config import Settings
from app.core.exceptions import (
    InsufficientDataError,
    InvalidStateError,
    UnsupportedModelError,
)
from app.core.logging import get_logger, query_context
from app.schemas.events import ComparisonCompletePayload, EventType, QueryUpdatePayload
from app.schemas.query import (
    ComparisonMetrics,
    GenerationParams,
    QueryPage,
    QueryStatus,
    QueryView,
)
from app.services import scoring
from app.services.cache import ResultCache
from app.services.events import EventNotifier
from app.services.orchestrator import Orchestrator
from app.services.providers import ProviderRegistry
from app.services.scheduler import ORCHESTRATION_QUEUE, SCORING_QUEUE, JobScheduler
from app.services.store import QueryStore

logger = get_logger(__name__)

CANCELLED = "cancelled"


class ComparisonService:
    """Facade over store, cache, scheduler and orchestrator."""

    def __init__(
        self,
        store: QueryStore,
        cache: ResultCache,
        notifier: EventNotifier,
        registry: ProviderRegistry,
        scheduler: JobScheduler,
        orchestrator: Orchestrator,
        settings: Settings
    ):
        self._store = store
        self._cache = cache
        self._notifier = notifier
        self._registry = registry
        self._scheduler = scheduler
        self._orchestrator = orchestrator
        self._settings = settings
        # Request-supplied keys stay in memory, out of job payloads
        self._request_credentials: Dict[str, Dict[str, str]] = {}

        orchestrator.set_scoring_hook(self._enqueue_scoring)
        scheduler.register(ORCHESTRATION_QUEUE, self.run_orchestration)
        scheduler.register(SCORING_QUEUE, self.run_scoring)

    # === Inbound operations ===

    async def submit_query(
        self,
        prompt: str,
        model_ids: Sequence[str],
        params: GenerationParams,
        user_id: str,
        credentials: Optional[Dict[str, str]] = None
    ) -> str:
        """
        Create a PENDING query and enqueue its orchestration.

        Raises:
            UnsupportedModelError: a model id no registered provider serves
        """
        for model_id in model_ids:
            if self._registry.adapter_for(model_id) is None:
                raise UnsupportedModelError(model_id)

        await asyncio.to_thread(self._store.ensure_user, user_id)
        query_id = await asyncio.to_thread(
            self._store.create_query, user_id, prompt, list(model_ids), params
        )
        if credentials:
            self._request_credentials[query_id] = {k.lower(): v for k, v in credentials.items()}

        await self._scheduler.enqueue(ORCHESTRATION_QUEUE, {"query_id": query_id})
        logger.info(f"Query {query_id} submitted for {len(model_ids)} models")
        return query_id

    async def get_query_view(self, query_id: str) -> QueryView:
        """
        Cached view if present, otherwise rebuilt from the store.

        Readers only cache settled views. A view still in flight is left to
        the writers, which re-cache after each write, so a slow read can never
        put an older snapshot back over a newer one.
        """
        cached = await asyncio.to_thread(self._cache.get, query_id)
        if cached is not None:
            logger.debug(f"Cache hit for query {query_id}")
            return cached

        view = await asyncio.to_thread(self._store.build_view, query_id)
        if view.is_settled:
            await asyncio.to_thread(
                self._cache.put, query_id, view, self._settings.RESULT_CACHE_TTL_SECONDS
            )
        return view

    async def invalidate(self, query_id: str) -> bool:
        return await asyncio.to_thread(self._cache.invalidate, query_id)

    async def cancel_query(self, query_id: str) -> QueryView:
        """
        Close a query that has not completed. Provider calls already in
        flight still finish, but the query stays FAILED.

        Raises:
            QueryNotFoundError: unknown query
            InvalidStateError: query already COMPLETED
        """
        query = await asyncio.to_thread(self._store.get_query, query_id)
        if query.status == QueryStatus.COMPLETED:
            raise InvalidStateError(query_id, query.status.value, QueryStatus.FAILED.value)

        if query.status != QueryStatus.FAILED:
            await asyncio.to_thread(self._store.set_status, query_id, QueryStatus.FAILED, CANCELLED)
            self._notifier.publish(
                query_id,
                EventType.QUERY_UPDATE,
                QueryUpdatePayload(status="failed", message="Query cancelled").model_dump(mode="json")
            )
            logger.info(f"Query {query_id} cancelled")

        self._request_credentials.pop(query_id, None)
        await self.invalidate(query_id)
        return await self.get_query_view(query_id)

    async def list_queries(
        self,
        user_id: Optional[str] = None,
        status: Optional[QueryStatus] = None,
        limit: int = 10,
        offset: int = 0
    ) -> QueryPage:
        return await asyncio.to_thread(self._store.list_queries, user_id, status, limit, offset)

    async def usage_stats(self, user_id: str, days: int = 30) -> List[Dict]:
        return await asyncio.to_thread(self._store.usage_stats, user_id, days)

    # === Job handlers ===

    async def run_orchestration(self, payload: Dict[str, Any], attempt: int = 1) -> None:
        query_id = payload["query_id"]
        last_attempt = attempt >= self._settings.orchestration_attempts
        try:
            await self._orchestrator.run(
                query_id,
                credentials=self._request_credentials.get(query_id),
                retry=attempt > 1
            )
        except Exception:
            if last_attempt:
                self._request_credentials.pop(query_id, None)
            raise
        self._request_credentials.pop(query_id, None)

    async def run_scoring(self, payload: Dict[str, Any], attempt: int = 1) -> Optional[ComparisonMetrics]:
        """Score a query's responses, store the metrics and announce them."""
        query_id = payload["query_id"]
        with query_context(query_id):
            return await self._score(query_id)

    async def _score(self, query_id: str) -> Optional[ComparisonMetrics]:
        responses = await asyncio.to_thread(self._store.get_responses, query_id)

        try:
            metrics = scoring.score(responses)
        except InsufficientDataError as e:
            logger.warning(f"Skipping scoring for query {query_id}: {e}")
            return None

        await asyncio.to_thread(self._store.upsert_metrics, query_id, metrics)
        await asyncio.to_thread(self._cache.invalidate, query_id)
        view = await asyncio.to_thread(self._store.build_view, query_id)
        await asyncio.to_thread(
            self._cache.put, query_id, view, self._settings.RESULT_CACHE_TTL_SECONDS
        )

        self._notifier.publish(
            query_id,
            EventType.COMPARISON_COMPLETE,
            ComparisonCompletePayload(
                metrics=metrics, explanation=metrics.explanation
            ).model_dump(mode="json")
        )
        logger.info(f"Query {query_id} scored: aggregate {metrics.aggregate_score}")
        return metrics

    async def _enqueue_scoring(self, query_id: str) -> None:
        await self._scheduler.enqueue(SCORING_QUEUE, {"query_id": query_id})
