"""
Provider and Credential Routes

Checking API keys against the real provider, and storing them
(encrypted) on a user record for later queries.
"""
import asyncio

from fastapi import APIRouter, Depends, HTTPException, Query as QueryParam, Request

from app.core.dependencies import (
    get_comparison_service,
    get_credential_resolver,
    get_registry,
    get_store,
)
from app.core.rate_limit import CREDENTIAL_LIMIT, limiter
from app.schemas.query import CredentialRequest
from app.services.comparison import ComparisonService
from app.services.credentials import CredentialResolver
from app.services.providers import ProviderRegistry
from app.services.store import QueryStore

router = APIRouter(prefix="/api/providers", tags=["providers"])
users_router = APIRouter(prefix="/api/users", tags=["users"])


@router.get("/")
async def list_providers(registry: ProviderRegistry = Depends(get_registry)):
    return {"providers": registry.provider_names()}


@router.post("/{provider}/validate")
@limiter.limit(CREDENTIAL_LIMIT)
async def validate_credential(
    request: Request,
    provider: str,
    body: CredentialRequest,
    registry: ProviderRegistry = Depends(get_registry)
):
    """Make a minimal call to the provider with the key. Never stores it."""
    valid = await registry.validate_credential(provider, body.api_key)
    return {"provider": provider.lower(), "valid": valid}


@users_router.put("/{user_id}/credentials/{provider}")
@limiter.limit(CREDENTIAL_LIMIT)
async def store_credential(
    request: Request,
    user_id: str,
    provider: str,
    body: CredentialRequest,
    validate: bool = QueryParam(default=True, description="Reject keys the provider refuses"),
    registry: ProviderRegistry = Depends(get_registry),
    resolver: CredentialResolver = Depends(get_credential_resolver),
    store: QueryStore = Depends(get_store)
):
    """Encrypt and save a provider key on the user (created if missing)."""
    name = registry.provider(provider).name

    if validate and not await registry.validate_credential(name, body.api_key):
        raise HTTPException(status_code=400, detail=f"API key rejected by {name}")

    await asyncio.to_thread(store.set_user_key, user_id, name, resolver.encrypt(body.api_key))
    return {"user_id": user_id, "provider": name, "stored": True}


@users_router.delete("/{user_id}/credentials/{provider}")
async def delete_credential(
    user_id: str,
    provider: str,
    registry: ProviderRegistry = Depends(get_registry),
    store: QueryStore = Depends(get_store)
):
    name = registry.provider(provider).name
    await asyncio.to_thread(store.set_user_key, user_id, name, None)
    return {"user_id": user_id, "provider": name, "stored": False}


@users_router.get("/{user_id}/usage")
async def usage_stats(
    user_id: str,
    days: int = QueryParam(default=30, ge=1, le=365),
    service: ComparisonService = Depends(get_comparison_service)
):
    """Per-model call counts, spend, tokens and latency over the last `days` days."""
    return {"user_id": user_id, "days": days, "models": await service.usage_stats(user_id, days)}
