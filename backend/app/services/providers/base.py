"""
Base types and interfaces for completion providers.

This module defines the normalized completion format and abstract base
class that all provider adapters implement for consistency.
"""
import asyncio
import time
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, Optional, Set

import httpx
from pydantic import BaseModel, Field

from app.core.logging import get_logger
from app.schemas.query import GenerationParams, TokenUsage

logger = get_logger(__name__)

DEFAULT_TIMEOUT_MS = 30000

_CONTENT_FILTER_MARKERS = ("content_filter", "content filter", "safety", "blocked", "moderation")


class ProviderErrorKind(str, Enum):
    AUTH = "AUTH"
    RATE_LIMIT = "RATE_LIMIT"
    TIMEOUT = "TIMEOUT"
    CONTENT_FILTERED = "CONTENT_FILTERED"
    UPSTREAM_ERROR = "UPSTREAM_ERROR"
    UNKNOWN = "UNKNOWN"


class ProviderError(BaseModel):
    """Classified failure of a single provider call."""
    kind: ProviderErrorKind
    message: str


class ContentFilteredError(Exception):
    """Upstream accepted the request but refused to produce content."""
    pass


class RawCompletion(BaseModel):
    """
    Standard completion format used across all providers.

    All adapter implementations return completions matching this schema,
    whatever shape the upstream API uses.
    """
    content: str = ""
    usage: TokenUsage = Field(default_factory=TokenUsage)
    cost_usd: float = 0.0
    finish_reason: Optional[str] = None
    model_version: Optional[str] = None


class ProviderResult(BaseModel):
    """Either a completion or an error, plus how long the call took."""
    model_id: str
    provider: str
    latency_ms: int = 0
    completion: Optional[RawCompletion] = None
    error: Optional[ProviderError] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.completion is not None


class BaseProvider(ABC):
    """
    Abstract base class for all completion providers.

    Subclasses implement `_complete` (one real call) and `_ping`
    (a minimal call used to validate a key). `invoke` wraps `_complete`
    with the per-call deadline and turns every failure into a
    ProviderError, so nothing escapes an adapter.

    To add a new provider:
    1. Create a class that inherits from BaseProvider
    2. Set name and the per-1K token price table
    3. Implement _complete and _ping
    4. Register it in build_default_registry()
    """

    name: str = ""
    # model id -> {"input": usd per 1K tokens, "output": usd per 1K tokens}
    prices: Dict[str, Dict[str, float]] = {}

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._transport = transport

    def supported_models(self) -> Set[str]:
        return set(self.prices)

    def estimate_cost(self, model_id: str, input_tokens: int, output_tokens: int) -> float:
        costs = self.prices.get(model_id)
        if not costs:
            return 0.0
        input_cost = (input_tokens / 1000) * costs["input"]
        output_cost = (output_tokens / 1000) * costs["output"]
        return round(input_cost + output_cost, 6)

    def normalize_parameters(self, params: GenerationParams) -> Dict[str, Any]:
        """Clamp generation parameters into the ranges every provider accepts."""
        normalized: Dict[str, Any] = {}
        if params.temperature is not None:
            normalized["temperature"] = max(0.0, min(2.0, params.temperature))
        if params.max_tokens is not None:
            normalized["max_tokens"] = max(1, min(4000, params.max_tokens))
        if params.top_p is not None:
            normalized["top_p"] = max(0.0, min(1.0, params.top_p))
        if params.top_k is not None:
            normalized["top_k"] = max(1, min(100, params.top_k))
        return normalized

    def http_client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self._transport)

    async def invoke(
        self,
        model_id: str,
        prompt: str,
        params: GenerationParams,
        credential: str,
        timeout_ms: int = DEFAULT_TIMEOUT_MS
    ) -> ProviderResult:
        """
        Run one completion under a deadline.

        Never raises: auth, quota, content-filter, network and deadline
        failures all come back as `ProviderResult.error`.
        """
        start = time.perf_counter()
        try:
            completion = await asyncio.wait_for(
                self._complete(model_id, prompt, params, credential),
                timeout=timeout_ms / 1000
            )
            completion.cost_usd = self.estimate_cost(
                model_id,
                completion.usage.prompt_tokens,
                completion.usage.completion_tokens
            )
            return ProviderResult(
                model_id=model_id,
                provider=self.name,
                latency_ms=_elapsed_ms(start),
                completion=completion
            )
        except asyncio.TimeoutError:
            logger.warning(f"{self.name}: {model_id} timed out after {timeout_ms}ms")
            error = ProviderError(
                kind=ProviderErrorKind.TIMEOUT,
                message=f"Request timed out after {timeout_ms}ms"
            )
        except Exception as e:
            error = self.classify_error(e)
            logger.error(f"{self.name} API error for {model_id}: {error.kind.value} {error.message}")
        return ProviderResult(
            model_id=model_id,
            provider=self.name,
            latency_ms=_elapsed_ms(start),
            error=error
        )

    async def validate_credential(self, credential: str) -> bool:
        """Make a minimal real call to confirm the key is usable."""
        try:
            await self._ping(credential)
            return True
        except Exception as e:
            logger.warning(f"{self.name} API key validation failed: {e}")
            return False

    def classify_error(self, exc: BaseException) -> ProviderError:
        """Map an exception raised during a call to a ProviderError."""
        message = str(exc) or exc.__class__.__name__

        if isinstance(exc, ContentFilteredError):
            return ProviderError(kind=ProviderErrorKind.CONTENT_FILTERED, message=message)

        if isinstance(exc, asyncio.TimeoutError) or isinstance(exc, httpx.TimeoutException):
            return ProviderError(kind=ProviderErrorKind.TIMEOUT, message=message)

        status = getattr(exc, "status_code", None)
        if isinstance(exc, httpx.HTTPStatusError):
            status = exc.response.status_code
            message = _response_detail(exc.response) or message

        if status is not None:
            return ProviderError(kind=_kind_for_status(status, message), message=message)

        if isinstance(exc, httpx.TransportError):
            return ProviderError(kind=ProviderErrorKind.UPSTREAM_ERROR, message=message)

        if any(marker in message.lower() for marker in _CONTENT_FILTER_MARKERS):
            return ProviderError(kind=ProviderErrorKind.CONTENT_FILTERED, message=message)

        return ProviderError(kind=ProviderErrorKind.UNKNOWN, message=message)

    @abstractmethod
    async def _complete(
        self,
        model_id: str,
        prompt: str,
        params: GenerationParams,
        credential: str
    ) -> RawCompletion:
        """Perform the upstream call; may raise anything."""
        pass

    @abstractmethod
    async def _ping(self, credential: str) -> None:
        """Smallest call that proves the credential works; raises on failure."""
        pass


def _kind_for_status(status: int, message: str) -> ProviderErrorKind:
    if status in (401, 403):
        return ProviderErrorKind.AUTH
    if status == 429:
        return ProviderErrorKind.RATE_LIMIT
    if status == 408:
        return ProviderErrorKind.TIMEOUT
    if status >= 500:
        return ProviderErrorKind.UPSTREAM_ERROR
    if status == 400 and "api key" in message.lower():
        return ProviderErrorKind.AUTH
    if any(marker in message.lower() for marker in _CONTENT_FILTER_MARKERS):
        return ProviderErrorKind.CONTENT_FILTERED
    return ProviderErrorKind.UNKNOWN


def _response_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return f"HTTP {response.status_code}: {response.text[:200]}"
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        detail = error.get("message") or error.get("type") or ""
    else:
        detail = (body.get("message") if isinstance(body, dict) else None) or str(error or "")
    return f"HTTP {response.status_code}: {detail}".rstrip(": ")


def _elapsed_ms(start: float) -> int:
    return int(round((time.perf_counter() - start) * 1000))


def estimate_tokens(text: str) -> int:
    """Rough token count (~4 characters per token) for providers without usage data."""
    if not text:
        return 0
    return -(-len(text) // 4)
