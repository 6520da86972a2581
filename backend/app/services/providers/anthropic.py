"""
Anthropic provider.

Calls the Messages API directly with httpx.AsyncClient.
Anthropic reports exact input/output token usage.
"""
from typing import Any, Dict

from app.schemas.query import GenerationParams, TokenUsage
from .base import BaseProvider, RawCompletion

API_URL = "https://api.anthropic.com/v1/messages"
API_VERSION = "2023-06-01"

# Public identifiers -> dated API model names
MODEL_NAMES = {
    "claude-3.5-sonnet": "claude-3-5-sonnet-20241022",
    "claude-3-haiku": "claude-3-haiku-20240307",
}


class AnthropicProvider(BaseProvider):
    name = "anthropic"
    prices = {
        "claude-3.5-sonnet": {"input": 0.003, "output": 0.015},
        "claude-3-haiku": {"input": 0.00025, "output": 0.00125},
    }

    def _headers(self, credential: str) -> Dict[str, str]:
        return {
            "x-api-key": credential,
            "anthropic-version": API_VERSION,
            "content-type": "application/json",
        }

    async def _complete(
        self,
        model_id: str,
        prompt: str,
        params: GenerationParams,
        credential: str
    ) -> RawCompletion:
        normalized = self.normalize_parameters(params)
        api_model = MODEL_NAMES.get(model_id, model_id)

        body: Dict[str, Any] = {
            "model": api_model,
            "max_tokens": normalized.get("max_tokens", 1000),
            "messages": [{"role": "user", "content": prompt}],
        }
        if params.system_prompt:
            body["system"] = params.system_prompt
        for key in ("temperature", "top_p", "top_k"):
            if key in normalized:
                body[key] = normalized[key]

        async with self.http_client(timeout=None) as client:
            response = await client.post(API_URL, json=body, headers=self._headers(credential))
            response.raise_for_status()
            data = response.json()

        content = "".join(
            block.get("text", "")
            for block in data.get("content", [])
            if block.get("type") == "text"
        )
        usage = data.get("usage") or {}
        input_tokens = usage.get("input_tokens", 0)
        output_tokens = usage.get("output_tokens", 0)

        return RawCompletion(
            content=content,
            usage=TokenUsage(
                prompt_tokens=input_tokens,
                completion_tokens=output_tokens,
                total_tokens=input_tokens + output_tokens,
            ),
            finish_reason=data.get("stop_reason"),
            model_version=data.get("model", api_model),
        )

    async def _ping(self, credential: str) -> None:
        body = {
            "model": MODEL_NAMES["claude-3-haiku"],
            "max_tokens": 1,
            "messages": [{"role": "user", "content": "Hi"}],
        }
        async with self.http_client(timeout=10.0) as client:
            response = await client.post(API_URL, json=body, headers=self._headers(credential))
            response.raise_for_status()
