"""
Query Orchestrator

Runs one comparison query: resolves credentials, fans the prompt out to
every requested model at once, waits for all of them, persists the
outcomes and moves the query to its terminal state.

Flow:
1. PENDING -> PROCESSING
2. Resolve one key per provider (request -> user -> system)
3. One task per model, joined wait-all
4. Persist every outcome in requested order
5. PROCESSING -> COMPLETED (or FAILED, see fail_on_total_provider_failure)
6. Enqueue scoring when at least two responses are usable
"""
import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional

from app.core.config import Settings
from app.core.exceptions import InvalidStateError, UserNotFoundError
from app.core.logging import get_logger, query_context
from app.schemas.events import (
    EventType,
    QueryUpdatePayload,
    ResponseReceivedPayload,
    progress_percent,
)
from app.schemas.query import (
    MIN_SCORABLE_RESPONSES,
    GenerationParams,
    ModelResponseView,
    QueryStatus,
    ResponseStatus,
    TokenUsage,
)
from app.services.cache import ResultCache
from app.services.credentials import CredentialResolver
from app.services.events import EventNotifier
from app.services.providers import BaseProvider, ProviderErrorKind, ProviderRegistry, ProviderResult
from app.services.store import REOPENABLE_FAILURE, QueryStore

logger = get_logger(__name__)

ScoringEnqueue = Callable[[str], Awaitable[Any]]

ALL_PROVIDERS_FAILED = "all_providers_failed"


class Orchestrator:
    """Fan-out/fan-in runner for comparison queries."""

    def __init__(
        self,
        store: QueryStore,
        registry: ProviderRegistry,
        credentials: CredentialResolver,
        cache: ResultCache,
        notifier: EventNotifier,
        settings: Settings,
        enqueue_scoring: Optional[ScoringEnqueue] = None
    ):
        self._store = store
        self._registry = registry
        self._credentials = credentials
        self._cache = cache
        self._notifier = notifier
        self._settings = settings
        self._enqueue_scoring = enqueue_scoring

    def set_scoring_hook(self, enqueue_scoring: ScoringEnqueue) -> None:
        self._enqueue_scoring = enqueue_scoring

    async def run(
        self,
        query_id: str,
        credentials: Optional[Dict[str, str]] = None,
        retry: bool = False
    ) -> Optional[QueryStatus]:
        """
        Process one query end to end.

        Args:
            query_id: Query to run
            credentials: Provider keys supplied with the original request
            retry: True on a scheduler retry; allows reopening a query that
                failed on an orchestration fault

        Returns:
            The terminal status written, or None when the run was skipped

        Raises:
            OrchestrationFault and anything else that aborts the run, after
            the query has been marked FAILED
        """
        with query_context(query_id):
            return await self._run(query_id, credentials, retry)

    async def _run(
        self,
        query_id: str,
        credentials: Optional[Dict[str, str]],
        retry: bool
    ) -> Optional[QueryStatus]:
        started = await asyncio.to_thread(self._store.begin_processing, query_id, retry)
        if not started:
            logger.info(f"Query {query_id} is already closed, skipping orchestration")
            return None

        await self._invalidate(query_id)
        self._publish_update(query_id, QueryStatus.PROCESSING, 0, "Dispatching to providers")

        try:
            responses = await self._collect(query_id, credentials)
            await asyncio.to_thread(self._store.save_responses, query_id, responses)
        except Exception as e:
            logger.error(f"Orchestration failed for query {query_id}: {e}")
            await self._mark_failed(query_id, REOPENABLE_FAILURE, str(e))
            raise

        valid = sum(1 for r in responses if r.is_valid)
        completed = sum(1 for r in responses if r.status == ResponseStatus.COMPLETED)

        if completed == 0 and self._settings.fail_on_total_provider_failure:
            final, reason = QueryStatus.FAILED, ALL_PROVIDERS_FAILED
        else:
            final, reason = QueryStatus.COMPLETED, None

        try:
            await asyncio.to_thread(self._store.set_status, query_id, final, reason)
        except InvalidStateError as e:
            # Cancelled while providers were running
            logger.info(f"Keeping closed state of query {query_id}: {e}")
            await self._refresh_view(query_id)
            return None

        await self._refresh_view(query_id)
        scoring = valid >= MIN_SCORABLE_RESPONSES and self._enqueue_scoring is not None
        if final == QueryStatus.COMPLETED:
            self._publish_update(
                query_id, final, 100, f"{completed}/{len(responses)} models responded", scoring=scoring
            )
        else:
            self._publish_update(query_id, final, None, "All providers failed")

        logger.info(
            f"Query {query_id} {final.value}: {completed}/{len(responses)} completed, {valid} usable"
        )

        if scoring:
            await self._enqueue_scoring(query_id)

        return final

    async def _collect(
        self,
        query_id: str,
        supplied: Optional[Dict[str, str]]
    ) -> List[ModelResponseView]:
        """Resolve keys, call every model concurrently, return outcomes in requested order."""
        query = await asyncio.to_thread(self._store.get_query, query_id)

        stored_keys = await asyncio.to_thread(self._store.get_user_keys, query.user_id)
        if stored_keys is None:
            raise UserNotFoundError(query_id, query.user_id)

        adapters = {model_id: self._registry.adapter_for(model_id) for model_id in query.models}
        needed = sorted({a.name for a in adapters.values() if a is not None})
        keys = self._credentials.resolve(needed, stored_keys, supplied)

        tasks = [
            asyncio.create_task(self._call(
                position,
                model_id,
                adapters[model_id],
                keys.get(adapters[model_id].name) if adapters[model_id] else None,
                query.prompt,
                query.parameters
            ))
            for position, model_id in enumerate(query.models)
        ]

        total = len(tasks)
        settled = 0
        try:
            for next_done in asyncio.as_completed(tasks):
                response = await next_done
                settled += 1
                self._notifier.publish(
                    query_id,
                    EventType.RESPONSE_RECEIVED,
                    ResponseReceivedPayload(
                        model_id=response.model_id,
                        status=response.status.value,
                        latency_ms=response.latency_ms
                    ).model_dump(mode="json", by_alias=True)
                )
                self._publish_update(
                    query_id,
                    QueryStatus.PROCESSING,
                    progress_percent(settled, total),
                    f"{response.model_id} {response.status.value.lower()}"
                )
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()

        return [task.result() for task in tasks]

    async def _call(
        self,
        position: int,
        model_id: str,
        adapter: Optional[BaseProvider],
        credential: Optional[str],
        prompt: str,
        params: GenerationParams
    ) -> ModelResponseView:
        if adapter is None:
            return _failed_view(position, model_id, None, ProviderErrorKind.UNKNOWN,
                                f"No provider found for model: {model_id}")
        if not credential:
            return _failed_view(position, model_id, adapter.name, ProviderErrorKind.AUTH,
                                f"No API key configured for {adapter.name}")

        result = await adapter.invoke(
            model_id, prompt, params, credential, timeout_ms=self._settings.PROVIDER_TIMEOUT_MS
        )
        return to_response_view(result, position)

    async def _mark_failed(self, query_id: str, reason: str, message: str) -> None:
        try:
            await asyncio.to_thread(self._store.set_status, query_id, QueryStatus.FAILED, reason)
        except Exception as e:
            logger.error(f"Could not mark query {query_id} as failed: {e}")
        await self._invalidate(query_id)
        self._publish_update(query_id, QueryStatus.FAILED, None, message)

    async def _invalidate(self, query_id: str) -> None:
        await asyncio.to_thread(self._cache.invalidate, query_id)

    async def _refresh_view(self, query_id: str) -> None:
        """Cache a view rebuilt after the last write, replacing any older one."""
        view = await asyncio.to_thread(self._store.build_view, query_id)
        await asyncio.to_thread(
            self._cache.put, query_id, view, self._settings.RESULT_CACHE_TTL_SECONDS
        )

    def _publish_update(
        self,
        query_id: str,
        status: QueryStatus,
        progress: Optional[int],
        message: Optional[str],
        scoring: Optional[bool] = None
    ) -> None:
        payload = QueryUpdatePayload(
            status=status.value.lower(), progress=progress, message=message, scoring=scoring
        )
        self._notifier.publish(
            query_id, EventType.QUERY_UPDATE, payload.model_dump(mode="json", exclude_none=True)
        )


def to_response_view(result: ProviderResult, position: int) -> ModelResponseView:
    """Normalize an adapter result into the stored response shape."""
    if result.ok:
        completion = result.completion
        return ModelResponseView(
            model_id=result.model_id,
            provider=result.provider,
            position=position,
            status=ResponseStatus.COMPLETED,
            content=completion.content,
            latency_ms=result.latency_ms,
            usage=completion.usage,
            cost_usd=completion.cost_usd,
            finish_reason=completion.finish_reason,
            model_version=completion.model_version,
        )

    error = result.error
    status = ResponseStatus.TIMEOUT if error.kind == ProviderErrorKind.TIMEOUT else ResponseStatus.FAILED
    return ModelResponseView(
        model_id=result.model_id,
        provider=result.provider,
        position=position,
        status=status,
        latency_ms=result.latency_ms,
        error=error.message,
        error_kind=error.kind.value,
    )


def _failed_view(
    position: int,
    model_id: str,
    provider: Optional[str],
    kind: ProviderErrorKind,
    message: str
) -> ModelResponseView:
    return ModelResponseView(
        model_id=model_id,
        provider=provider,
        position=position,
        status=ResponseStatus.FAILED,
        usage=TokenUsage(),
        error=message,
        error_kind=kind.value,
    )
