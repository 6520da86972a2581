"""Tests for services/orchestrator.py - Fan-out, persistence and state."""
import asyncio
from typing import List

import pytest

from app.schemas.events import EventType
from app.schemas.query import QueryStatus, ResponseStatus

KEYS = {"fake": "request-key"}


@pytest.fixture
def enqueued():
    """query ids handed to the scoring hook, with the response count seen at that moment."""
    return []


@pytest.fixture
def orchestrator(store, registry, resolver, cache, notifier, test_settings, enqueued):
    from app.services.orchestrator import Orchestrator

    async def enqueue_scoring(query_id: str):
        enqueued.append((query_id, len(store.get_responses(query_id))))

    return Orchestrator(
        store=store,
        registry=registry,
        credentials=resolver,
        cache=cache,
        notifier=notifier,
        settings=test_settings.model_copy(update={"provider_timeout_ms": 200}),
        enqueue_scoring=enqueue_scoring,
    )


@pytest.fixture
def make_query(store, default_params):
    def _make(models: List[str], user_id: str = "user-1", create_user: bool = True) -> str:
        if create_user:
            store.ensure_user(user_id)
        return store.create_query(user_id, "What is six times seven?", models, default_params)
    return _make


class TestFanOut:
    """Test that every requested model gets exactly one terminal response."""

    def test_one_row_per_model_whatever_the_outcome(self, orchestrator, store, fake_provider, make_query):
        fake_provider.replies["fake-b"] = RuntimeError("upstream exploded")
        fake_provider.delays["fake-c"] = 1.0
        query_id = make_query(["fake-a", "fake-b", "fake-c"])

        status = asyncio.run(orchestrator.run(query_id, credentials=KEYS))

        responses = store.get_responses(query_id)
        assert status == QueryStatus.COMPLETED
        assert [r.model_id for r in responses] == ["fake-a", "fake-b", "fake-c"]
        assert [r.status for r in responses] == [
            ResponseStatus.COMPLETED, ResponseStatus.FAILED, ResponseStatus.TIMEOUT
        ]
        assert responses[1].error == "upstream exploded"
        assert store.get_query(query_id).status == QueryStatus.COMPLETED

    def test_calls_run_concurrently(self, orchestrator, fake_provider, make_query):
        for model in ("fake-a", "fake-b", "fake-c"):
            fake_provider.delays[model] = 0.05
        query_id = make_query(["fake-a", "fake-b", "fake-c"])

        asyncio.run(orchestrator.run(query_id, credentials=KEYS))

        assert fake_provider.max_in_flight == 3

    def test_one_slow_model_does_not_fail_the_query(self, orchestrator, store, fake_provider, make_query, enqueued):
        """First model misses its deadline, second answers: query still COMPLETED, no scoring."""
        fake_provider.delays["fake-a"] = 1.0
        query_id = make_query(["fake-a", "fake-b"])

        asyncio.run(orchestrator.run(query_id, credentials=KEYS))

        timed_out, answered = store.get_responses(query_id)
        assert timed_out.status == ResponseStatus.TIMEOUT
        assert timed_out.error is not None
        assert timed_out.error_kind == "TIMEOUT"
        assert answered.status == ResponseStatus.COMPLETED
        assert store.get_query(query_id).status == QueryStatus.COMPLETED
        assert store.get_metrics(query_id) is None
        assert enqueued == []

    def test_usage_and_cost_are_stored(self, orchestrator, store, make_query):
        query_id = make_query(["fake-a", "fake-b"])

        asyncio.run(orchestrator.run(query_id, credentials=KEYS))

        response = store.get_responses(query_id)[0]
        assert response.usage.total_tokens == 30
        assert response.cost_usd == pytest.approx(0.00005)
        assert response.finish_reason == "stop"
        assert response.model_version == "fake-a-2024"
        assert response.provider == "fake"


class TestScoringHandoff:
    """Test that scoring is only queued after responses are stored."""

    def test_scoring_enqueued_after_persistence(self, orchestrator, make_query, enqueued):
        query_id = make_query(["fake-a", "fake-b"])

        asyncio.run(orchestrator.run(query_id, credentials=KEYS))

        assert enqueued == [(query_id, 2)]

    def test_no_scoring_with_single_valid_response(self, orchestrator, fake_provider, make_query, enqueued):
        fake_provider.replies["fake-b"] = ""
        query_id = make_query(["fake-a", "fake-b"])

        asyncio.run(orchestrator.run(query_id, credentials=KEYS))

        assert enqueued == []


class TestCredentials:
    """Test per-provider credential handling."""

    def test_request_keys_reach_the_provider(self, orchestrator, fake_provider, make_query):
        query_id = make_query(["fake-a", "fake-b"])

        asyncio.run(orchestrator.run(query_id, credentials=KEYS))

        assert fake_provider.credentials_seen == ["request-key", "request-key"]

    def test_stored_user_key_is_used(self, orchestrator, store, resolver, fake_provider, make_query):
        query_id = make_query(["fake-a", "fake-b"])
        store.set_user_key("user-1", "fake", resolver.encrypt("stored-key"))

        asyncio.run(orchestrator.run(query_id))

        assert set(fake_provider.credentials_seen) == {"stored-key"}

    def test_missing_key_is_an_auth_failure_per_model(self, orchestrator, store, fake_provider, make_query):
        query_id = make_query(["fake-a", "fake-b"])

        status = asyncio.run(orchestrator.run(query_id))

        responses = store.get_responses(query_id)
        assert status == QueryStatus.COMPLETED
        assert {r.error_kind for r in responses} == {"AUTH"}
        assert fake_provider.calls == []

    def test_unknown_model_becomes_failed_row(self, orchestrator, store, make_query):
        query_id = make_query(["fake-a", "retired-model"])

        asyncio.run(orchestrator.run(query_id, credentials=KEYS))

        responses = store.get_responses(query_id)
        assert responses[1].status == ResponseStatus.FAILED
        assert "retired-model" in responses[1].error


class TestQueryState:
    """Test lifecycle transitions driven by the orchestrator."""

    def test_missing_user_fails_query_and_raises(self, orchestrator, store, make_query):
        from app.core.exceptions import UserNotFoundError

        query_id = make_query(["fake-a", "fake-b"], user_id="ghost", create_user=False)

        with pytest.raises(UserNotFoundError):
            asyncio.run(orchestrator.run(query_id, credentials=KEYS))

        query = store.get_query(query_id)
        assert query.status == QueryStatus.FAILED
        assert query.failure_reason == "orchestration"
        assert store.get_responses(query_id) == []

    def test_total_failure_completes_by_default(self, orchestrator, store, fake_provider, make_query):
        fake_provider.replies["fake-a"] = RuntimeError("down")
        fake_provider.replies["fake-b"] = RuntimeError("down")
        query_id = make_query(["fake-a", "fake-b"])

        status = asyncio.run(orchestrator.run(query_id, credentials=KEYS))

        assert status == QueryStatus.COMPLETED

    def test_total_failure_can_fail_query(
        self, store, registry, resolver, cache, notifier, test_settings, fake_provider, make_query
    ):
        from app.services.orchestrator import Orchestrator

        orchestrator = Orchestrator(
            store, registry, resolver, cache, notifier,
            test_settings.model_copy(update={"fail_on_total_provider_failure": True}),
        )
        fake_provider.replies["fake-a"] = RuntimeError("down")
        fake_provider.replies["fake-b"] = RuntimeError("down")
        query_id = make_query(["fake-a", "fake-b"])

        status = asyncio.run(orchestrator.run(query_id, credentials=KEYS))

        query = store.get_query(query_id)
        assert status == QueryStatus.FAILED
        assert query.failure_reason == "all_providers_failed"
        assert len(store.get_responses(query_id)) == 2

    def test_closed_query_is_skipped(self, orchestrator, store, fake_provider, make_query):
        query_id = make_query(["fake-a", "fake-b"])
        store.set_status(query_id, QueryStatus.FAILED, "cancelled")

        assert asyncio.run(orchestrator.run(query_id, credentials=KEYS, retry=True)) is None
        assert fake_provider.calls == []

    def test_cancel_while_running_keeps_failed(self, orchestrator, store, fake_provider, make_query, enqueued):
        fake_provider.delays["fake-a"] = 0.1
        fake_provider.delays["fake-b"] = 0.1
        query_id = make_query(["fake-a", "fake-b"])

        async def scenario():
            task = asyncio.create_task(orchestrator.run(query_id, credentials=KEYS))
            await asyncio.sleep(0.03)
            store.set_status(query_id, QueryStatus.FAILED, "cancelled")
            return await task

        assert asyncio.run(scenario()) is None
        assert store.get_query(query_id).status == QueryStatus.FAILED
        assert enqueued == []

    def test_cache_holds_the_final_view(self, orchestrator, store, cache, make_query):
        """A stale PENDING entry is replaced by the view written after completion."""
        query_id = make_query(["fake-a", "fake-b"])
        cache.put(query_id, store.build_view(query_id))

        asyncio.run(orchestrator.run(query_id, credentials=KEYS))

        cached = cache.get(query_id)
        assert cached.query.status == QueryStatus.COMPLETED
        assert [r.model_id for r in cached.responses] == ["fake-a", "fake-b"]

    def test_cancelled_run_caches_failed_view(self, orchestrator, store, cache, fake_provider, make_query):
        fake_provider.delays["fake-a"] = 0.1
        query_id = make_query(["fake-a", "fake-b"])

        async def scenario():
            task = asyncio.create_task(orchestrator.run(query_id, credentials=KEYS))
            await asyncio.sleep(0.03)
            store.set_status(query_id, QueryStatus.FAILED, "cancelled")
            return await task

        asyncio.run(scenario())

        assert cache.get(query_id).query.status == QueryStatus.FAILED


class TestEvents:
    """Test the live events emitted during a run."""

    def test_event_sequence(self, orchestrator, notifier, make_query):
        query_id = make_query(["fake-a", "fake-b"])

        async def scenario():
            subscription = notifier.subscribe(query_id)
            await orchestrator.run(query_id, credentials=KEYS)
            events = []
            while not subscription.queue.empty():
                events.append(subscription.queue.get_nowait())
            return events

        events = asyncio.run(scenario())
        kinds = [e.type for e in events]

        assert kinds.count(EventType.RESPONSE_RECEIVED) == 2
        assert events[0].data["status"] == "processing"
        assert events[0].data["progress"] == 0
        assert events[-1].type == EventType.QUERY_UPDATE
        assert events[-1].data == {
            "status": "completed", "progress": 100, "message": "2/2 models responded", "scoring": True
        }

        received = [e.data for e in events if e.type == EventType.RESPONSE_RECEIVED]
        assert {r["modelId"] for r in received} == {"fake-a", "fake-b"}
        assert all("latencyMs" in r for r in received)

        progress = [e.data["progress"] for e in events if e.type == EventType.QUERY_UPDATE]
        assert progress == [0, 50, 100, 100]

    def test_failure_event(self, orchestrator, notifier, make_query):
        from app.core.exceptions import UserNotFoundError

        query_id = make_query(["fake-a", "fake-b"], user_id="ghost", create_user=False)

        async def scenario():
            subscription = notifier.subscribe(query_id)
            with pytest.raises(UserNotFoundError):
                await orchestrator.run(query_id, credentials=KEYS)
            events = []
            while not subscription.queue.empty():
                events.append(subscription.queue.get_nowait())
            return events

        events = asyncio.run(scenario())

        assert events[-1].type == EventType.QUERY_UPDATE
        assert events[-1].data["status"] == "failed"

    def test_completion_without_scoring_is_announced(self, orchestrator, notifier, fake_provider, make_query):
        """One usable response: the completed update says no comparison will follow."""
        fake_provider.replies["fake-b"] = RuntimeError("down")
        query_id = make_query(["fake-a", "fake-b"])

        async def scenario():
            subscription = notifier.subscribe(query_id)
            await orchestrator.run(query_id, credentials=KEYS)
            events = []
            while not subscription.queue.empty():
                events.append(subscription.queue.get_nowait())
            return events

        events = asyncio.run(scenario())

        assert events[-1].data["status"] == "completed"
        assert events[-1].data["scoring"] is False
