"""
Cohere provider.

Calls the Chat API with httpx.AsyncClient. Token usage comes from
the billed units in the response metadata.
"""
from typing import Any, Dict

from app.schemas.query import GenerationParams, TokenUsage
from .base import BaseProvider, ContentFilteredError, RawCompletion

API_BASE = "https://api.cohere.com/v1"


class CohereProvider(BaseProvider):
    name = "cohere"
    prices = {
        "command-r-plus": {"input": 0.003, "output": 0.015},
        "command-r": {"input": 0.0005, "output": 0.0015},
    }

    def _headers(self, credential: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {credential}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    async def _complete(
        self,
        model_id: str,
        prompt: str,
        params: GenerationParams,
        credential: str
    ) -> RawCompletion:
        normalized = self.normalize_parameters(params)

        body: Dict[str, Any] = {"model": model_id, "message": prompt}
        if params.system_prompt:
            body["preamble"] = params.system_prompt
        if "temperature" in normalized:
            body["temperature"] = normalized["temperature"]
        if "max_tokens" in normalized:
            body["max_tokens"] = normalized["max_tokens"]
        if "top_p" in normalized:
            body["p"] = normalized["top_p"]
        if "top_k" in normalized:
            body["k"] = normalized["top_k"]

        async with self.http_client(timeout=None) as client:
            response = await client.post(f"{API_BASE}/chat", json=body, headers=self._headers(credential))
            response.raise_for_status()
            data = response.json()

        finish_reason = data.get("finish_reason")
        if finish_reason == "ERROR_TOXIC":
            raise ContentFilteredError("Generation stopped by content filter")

        billed = (data.get("meta") or {}).get("billed_units") or {}
        input_tokens = int(billed.get("input_tokens", 0))
        output_tokens = int(billed.get("output_tokens", 0))

        return RawCompletion(
            content=(data.get("text") or "").strip(),
            usage=TokenUsage(
                prompt_tokens=input_tokens,
                completion_tokens=output_tokens,
                total_tokens=input_tokens + output_tokens,
            ),
            finish_reason=finish_reason,
            model_version=model_id,
        )

    async def _ping(self, credential: str) -> None:
        async with self.http_client(timeout=10.0) as client:
            response = await client.post(f"{API_BASE}/check-api-key", headers=self._headers(credential))
            response.raise_for_status()
            if not response.json().get("valid", False):
                raise ValueError("Cohere reported the API key as invalid")
