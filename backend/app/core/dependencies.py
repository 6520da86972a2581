"""
FastAPI Dependencies

FastAPI dependency injection for services and configuration.
Every component is built once; tests swap any of them through
app.dependency_overrides or by clearing the lru_cache.
"""
from functools import lru_cache

from app.core.config import Settings
from app.core.db import get_engine, get_session_factory
from app.services.cache import ResultCache
from app.services.comparison import ComparisonService
from app.services.credentials import CredentialResolver
from app.services.events import EventNotifier
from app.services.orchestrator import Orchestrator
from app.services.providers import ProviderRegistry, build_default_registry
from app.services.scheduler import JobScheduler, default_policies
from app.services.store import QueryStore


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings.

    Uses lru_cache to ensure settings are only loaded once.
    Can be overridden in tests using app.dependency_overrides.

    Example test override:
        def get_settings_override():
            return Settings(openai_api_key=SecretStr("test-key"))

        app.dependency_overrides[get_settings] = get_settings_override
    """
    return Settings()


@lru_cache()
def get_cache() -> ResultCache:
    """Get the result cache instance (Redis, or in-memory fallback)."""
    settings = get_settings()
    return ResultCache(
        host=settings.REDIS_HOST,
        port=settings.REDIS_PORT,
        default_ttl=settings.RESULT_CACHE_TTL_SECONDS
    )


@lru_cache()
def get_store() -> QueryStore:
    engine = get_engine(get_settings().DATABASE_URL)
    return QueryStore(get_session_factory(engine))


@lru_cache()
def get_notifier() -> EventNotifier:
    return EventNotifier(queue_size=get_settings().event_queue_size)


@lru_cache()
def get_registry() -> ProviderRegistry:
    return build_default_registry()


@lru_cache()
def get_credential_resolver() -> CredentialResolver:
    return CredentialResolver(get_settings())


@lru_cache()
def get_scheduler() -> JobScheduler:
    settings = get_settings()
    return JobScheduler(default_policies(settings), dead_letter_limit=settings.dead_letter_limit)


@lru_cache()
def get_comparison_service() -> ComparisonService:
    """
    Get the comparison service, wired to every other component.

    Example test override:
        app.dependency_overrides[get_comparison_service] = lambda: service
    """
    settings = get_settings()
    orchestrator = Orchestrator(
        store=get_store(),
        registry=get_registry(),
        credentials=get_credential_resolver(),
        cache=get_cache(),
        notifier=get_notifier(),
        settings=settings,
    )
    return ComparisonService(
        store=get_store(),
        cache=get_cache(),
        notifier=get_notifier(),
        registry=get_registry(),
        scheduler=get_scheduler(),
        orchestrator=orchestrator,
        settings=settings,
    )
