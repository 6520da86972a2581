"""
Pytest fixtures and configuration for backend tests.

Provides reusable fixtures for testing API endpoints, services, and utilities.
Provider calls never leave the process: services run against FakeProvider,
adapters against httpx.MockTransport.
"""
import asyncio
import os
import sys
from typing import Any, Dict, List
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient
from pydantic import SecretStr

# Add backend to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ENCRYPTION_KEY", "test-encryption-secret-0123456789abcdef")

from app.core.config import Settings  # noqa: E402
from app.core.db import get_engine, get_session_factory  # noqa: E402
from app.schemas.query import GenerationParams, ModelResponseView, ResponseStatus, TokenUsage  # noqa: E402
from app.services.cache import ResultCache  # noqa: E402
from app.services.credentials import CredentialResolver  # noqa: E402
from app.services.events import EventNotifier  # noqa: E402
from app.services.providers import BaseProvider, ProviderRegistry, RawCompletion  # noqa: E402
from app.services.store import QueryStore  # noqa: E402

FAKE_MODELS = ("fake-a", "fake-b", "fake-c", "fake-d")


class FakeProvider(BaseProvider):
    """
    Scripted provider. Per model id, `replies` holds the content to return
    or an exception to raise; `delays` holds seconds to sleep first.
    """

    name = "fake"
    prices = {model: {"input": 0.001, "output": 0.002} for model in FAKE_MODELS}

    def __init__(self):
        super().__init__()
        self.replies: Dict[str, Any] = {}
        self.delays: Dict[str, float] = {}
        self.calls: List[str] = []
        self.credentials_seen: List[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def _complete(self, model_id, prompt, params, credential):
        self.calls.append(model_id)
        self.credentials_seen.append(credential)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            delay = self.delays.get(model_id)
            if delay:
                await asyncio.sleep(delay)
        finally:
            self.in_flight -= 1
        reply = self.replies.get(model_id, f"The answer from {model_id} is 42.")
        if isinstance(reply, Exception):
            raise reply
        return RawCompletion(
            content=reply,
            usage=TokenUsage(prompt_tokens=10, completion_tokens=20, total_tokens=30),
            finish_reason="stop",
            model_version=f"{model_id}-2024",
        )

    async def _ping(self, credential):
        if credential != "good-key":
            raise ValueError("invalid key")


def make_response(
    model_id: str,
    content: str,
    latency_ms: int = 1000,
    status: ResponseStatus = ResponseStatus.COMPLETED,
    position: int = 0
) -> ModelResponseView:
    return ModelResponseView(
        model_id=model_id,
        provider="fake",
        position=position,
        status=status,
        content=content,
        latency_ms=latency_ms,
    )


@pytest.fixture(scope="session", autouse=True)
def set_test_environment():
    """Set environment variables for testing."""
    os.environ["DATABASE_URL"] = "sqlite://"
    os.environ["ENCRYPTION_KEY"] = "test-encryption-secret-0123456789abcdef"
    os.environ["REDIS_HOST"] = "localhost"
    os.environ["REDIS_PORT"] = "6379"
    yield


@pytest.fixture
def test_settings():
    """Settings with fast retries and a short provider deadline."""
    return Settings(
        database_url="sqlite://",
        encryption_key=SecretStr("test-encryption-secret-0123456789abcdef"),
        openai_api_key=None,
        anthropic_api_key=None,
        google_api_key=None,
        cohere_api_key=None,
        provider_timeout_ms=2000,
        orchestration_backoff_ms=10,
        scoring_backoff_ms=10,
    )


@pytest.fixture
def store():
    """QueryStore over a fresh in-memory database."""
    return QueryStore(get_session_factory(get_engine("sqlite://")))


@pytest.fixture
def cache():
    """Result cache that never touches Redis."""
    return ResultCache(connect=False)


@pytest.fixture
def notifier():
    return EventNotifier(queue_size=100)


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def registry(fake_provider):
    return ProviderRegistry([fake_provider])


@pytest.fixture
def resolver(test_settings):
    return CredentialResolver(test_settings)


@pytest.fixture
def default_params():
    return GenerationParams(temperature=0.7, max_tokens=200)


@pytest.fixture
def sample_responses():
    """Three completed responses that broadly agree."""
    return [
        make_response("fake-a", "Paris is the capital of France. It has about 2.1 million residents.", 1200, position=0),
        make_response("fake-b", "The capital of France is Paris, with roughly 2.1 million residents.", 1500, position=1),
        make_response("fake-c", "Paris is France's capital city and has 2.1 million people.", 900, position=2),
    ]


def _clear_dependency_caches():
    from app.core import dependencies

    for getter in (
        dependencies.get_settings,
        dependencies.get_cache,
        dependencies.get_store,
        dependencies.get_notifier,
        dependencies.get_registry,
        dependencies.get_credential_resolver,
        dependencies.get_scheduler,
        dependencies.get_comparison_service,
    ):
        getter.cache_clear()


@pytest.fixture
def reset_dependencies():
    """Drop every cached dependency before and after the test."""
    _clear_dependency_caches()
    yield
    _clear_dependency_caches()


@pytest.fixture
def response_factory():
    """Build ModelResponseView objects for scorer and store tests."""
    return make_response


@pytest.fixture
def test_client(fake_provider):
    """
    Create a test client for API testing.

    Every component is rebuilt for the test; the provider registry only
    knows FakeProvider and rate limiting is switched off.
    """
    from app.core.rate_limit import limiter
    from app.main import app

    _clear_dependency_caches()
    limiter.enabled = False
    with patch(
        "app.core.dependencies.build_default_registry",
        return_value=ProviderRegistry([fake_provider])
    ):
        with TestClient(app) as client:
            yield client
    limiter.enabled = True
    app.dependency_overrides.clear()
    _clear_dependency_caches()
