"""Tests for services/store.py - Relational store."""
import pytest

from app.schemas.query import ComparisonMetrics, QueryStatus, ResponseStatus, TokenUsage


@pytest.fixture
def query_id(store, default_params):
    store.ensure_user("user-1")
    return store.create_query("user-1", "What is 6 x 7?", ["fake-a", "fake-b"], default_params)


@pytest.fixture
def metrics():
    return ComparisonMetrics(
        semantic_similarity=80,
        length_consistency=90,
        sentiment_alignment=100,
        factual_consistency=70,
        timing_consistency=60,
        aggregate_score=80.5,
        explanation="The responses are very similar overall.",
    )


class TestUsers:
    """Test user records and stored keys."""

    def test_missing_user_has_no_keys(self, store):
        assert store.get_user_keys("ghost") is None

    def test_ensure_user_is_idempotent(self, store):
        store.ensure_user("user-1")
        store.ensure_user("user-1")
        assert store.get_user_keys("user-1") == {}

    def test_set_and_remove_user_key(self, store):
        store.set_user_key("user-1", "openai", "token-1")
        store.set_user_key("user-1", "cohere", "token-2")
        assert store.get_user_keys("user-1") == {"openai": "token-1", "cohere": "token-2"}

        store.set_user_key("user-1", "openai", None)
        assert store.get_user_keys("user-1") == {"cohere": "token-2"}


class TestQueryLifecycle:
    """Test query creation and state transitions."""

    def test_created_query_is_pending(self, store, query_id, default_params):
        query = store.get_query(query_id)

        assert query.status == QueryStatus.PENDING
        assert query.models == ["fake-a", "fake-b"]
        assert query.parameters == default_params
        assert query.user_id == "user-1"

    def test_get_missing_query_raises(self, store):
        from app.core.exceptions import QueryNotFoundError

        with pytest.raises(QueryNotFoundError):
            store.get_query("nope")

    def test_forward_transitions(self, store, query_id):
        assert store.begin_processing(query_id) is True
        store.set_status(query_id, QueryStatus.COMPLETED)

        assert store.get_query(query_id).status == QueryStatus.COMPLETED

    def test_terminal_state_never_regresses(self, store, query_id):
        from app.core.exceptions import InvalidStateError

        store.begin_processing(query_id)
        store.set_status(query_id, QueryStatus.COMPLETED)

        with pytest.raises(InvalidStateError):
            store.set_status(query_id, QueryStatus.FAILED)
        assert store.begin_processing(query_id, retry=True) is False
        assert store.get_query(query_id).status == QueryStatus.COMPLETED

    def test_retry_reopens_orchestration_failure(self, store, query_id):
        store.begin_processing(query_id)
        store.set_status(query_id, QueryStatus.FAILED, "orchestration")

        assert store.begin_processing(query_id, retry=False) is False
        assert store.begin_processing(query_id, retry=True) is True

        query = store.get_query(query_id)
        assert query.status == QueryStatus.PROCESSING
        assert query.failure_reason is None

    def test_cancelled_query_is_not_reopened(self, store, query_id):
        store.set_status(query_id, QueryStatus.FAILED, "cancelled")

        assert store.begin_processing(query_id, retry=True) is False
        assert store.get_query(query_id).failure_reason == "cancelled"


class TestResponsesAndMetrics:
    """Test response rows, metrics upsert and the assembled view."""

    def test_responses_come_back_in_requested_order(self, store, query_id, response_factory):
        second = response_factory("fake-b", "B", 700, position=1)
        first = response_factory("fake-a", "", 30000, status=ResponseStatus.TIMEOUT, position=0)
        first.error = "Request timed out after 30000ms"
        first.error_kind = "TIMEOUT"

        store.save_responses(query_id, [second, first])
        responses = store.get_responses(query_id)

        assert [r.model_id for r in responses] == ["fake-a", "fake-b"]
        assert responses[0].status == ResponseStatus.TIMEOUT
        assert responses[0].error_kind == "TIMEOUT"

    def test_stored_responses_are_immutable(self, store, query_id, response_factory):
        store.save_responses(query_id, [response_factory("fake-a", "first answer")])
        store.save_responses(query_id, [response_factory("fake-a", "second answer")])

        responses = store.get_responses(query_id)
        assert len(responses) == 1
        assert responses[0].content == "first answer"

    def test_metrics_are_upserted(self, store, query_id, metrics):
        assert store.get_metrics(query_id) is None

        store.upsert_metrics(query_id, metrics)
        store.upsert_metrics(query_id, metrics.model_copy(update={"aggregate_score": 75.25}))

        assert store.get_metrics(query_id).aggregate_score == 75.25

    def test_build_view_includes_statistics(self, store, query_id, response_factory, metrics):
        a = response_factory("fake-a", "A", 1000, position=0)
        a.usage = TokenUsage(prompt_tokens=10, completion_tokens=20, total_tokens=30)
        a.cost_usd = 0.00005
        b = response_factory("fake-b", "", 3000, status=ResponseStatus.FAILED, position=1)
        store.save_responses(query_id, [a, b])
        store.upsert_metrics(query_id, metrics)

        view = store.build_view(query_id)

        assert view.query.id == query_id
        assert view.comparison_metrics == metrics
        stats = view.statistics
        assert stats.total_responses == 2
        assert stats.completed_responses == 1
        assert stats.failed_responses == 1
        assert stats.average_latency_ms == 2000
        assert stats.total_tokens == 30
        assert stats.total_cost_usd == pytest.approx(0.00005)


class TestViewSettlement:
    """Test when a view can no longer change."""

    def test_in_flight_views_are_not_settled(self, store, query_id):
        assert store.build_view(query_id).is_settled is False
        store.begin_processing(query_id)
        assert store.build_view(query_id).is_settled is False

    def test_failed_view_is_settled(self, store, query_id):
        store.set_status(query_id, QueryStatus.FAILED, "cancelled")

        assert store.build_view(query_id).is_settled is True

    def test_completed_view_waits_for_metrics(self, store, query_id, response_factory, metrics):
        store.save_responses(query_id, [
            response_factory("fake-a", "A", position=0),
            response_factory("fake-b", "B", position=1),
        ])
        store.begin_processing(query_id)
        store.set_status(query_id, QueryStatus.COMPLETED)

        assert store.build_view(query_id).usable_responses == 2
        assert store.build_view(query_id).is_settled is False

        store.upsert_metrics(query_id, metrics)
        assert store.build_view(query_id).is_settled is True

    def test_completed_view_with_one_usable_response_is_settled(self, store, query_id, response_factory):
        store.save_responses(query_id, [
            response_factory("fake-a", "A", position=0),
            response_factory("fake-b", "", status=ResponseStatus.FAILED, position=1),
        ])
        store.begin_processing(query_id)
        store.set_status(query_id, QueryStatus.COMPLETED)

        view = store.build_view(query_id)
        assert view.usable_responses == 1
        assert view.is_settled is True


class TestHistory:
    """Test listing and usage aggregation."""

    def test_list_queries_filters_and_pages(self, store, default_params):
        store.ensure_user("alice")
        store.ensure_user("bob")
        for i in range(3):
            store.create_query("alice", f"prompt {i}", ["fake-a", "fake-b"], default_params)
        bob_query = store.create_query("bob", "bob prompt", ["fake-a", "fake-b"], default_params)
        store.set_status(bob_query, QueryStatus.FAILED, "cancelled")

        page = store.list_queries(user_id="alice", limit=2)
        assert page.total == 3
        assert len(page.queries) == 2
        assert page.has_more is True

        failed = store.list_queries(status=QueryStatus.FAILED)
        assert [q.id for q in failed.queries] == [bob_query]

    def test_usage_stats_grouped_by_model(self, store, query_id, response_factory):
        a = response_factory("fake-a", "A", 1000, position=0)
        a.cost_usd = 0.25
        a.usage = TokenUsage(total_tokens=100)
        b = response_factory("fake-b", "B", 3000, position=1)
        b.cost_usd = 0.5
        store.save_responses(query_id, [a, b])

        stats = store.usage_stats("user-1")

        assert [s["model"] for s in stats] == ["fake-a", "fake-b"]
        assert stats[0]["queries"] == 1
        assert stats[0]["total_cost_usd"] == 0.25
        assert stats[0]["total_tokens"] == 100
        assert stats[1]["average_latency_ms"] == 3000
        assert store.usage_stats("someone-else") == []
