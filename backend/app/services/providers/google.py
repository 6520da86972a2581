"""
Google Gemini provider.

Calls the Generative Language REST API with httpx.AsyncClient.
When the response carries no usageMetadata, token counts are rough
character-based estimates, so cost figures are approximate.
"""
from typing import Any, Dict

from app.schemas.query import GenerationParams, TokenUsage
from .base import BaseProvider, ContentFilteredError, RawCompletion, estimate_tokens

API_BASE = "https://generativelanguage.googleapis.com/v1beta/models"


class GoogleProvider(BaseProvider):
    name = "google"
    prices = {
        "gemini-1.5-pro": {"input": 0.0035, "output": 0.0105},
        "gemini-1.5-flash": {"input": 0.00035, "output": 0.00105},
    }

    async def _complete(
        self,
        model_id: str,
        prompt: str,
        params: GenerationParams,
        credential: str
    ) -> RawCompletion:
        normalized = self.normalize_parameters(params)

        generation_config: Dict[str, Any] = {}
        if "temperature" in normalized:
            generation_config["temperature"] = normalized["temperature"]
        if "top_p" in normalized:
            generation_config["topP"] = normalized["top_p"]
        if "top_k" in normalized:
            generation_config["topK"] = normalized["top_k"]
        if "max_tokens" in normalized:
            generation_config["maxOutputTokens"] = normalized["max_tokens"]

        body: Dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": generation_config,
        }
        if params.system_prompt:
            body["systemInstruction"] = {"parts": [{"text": params.system_prompt}]}

        async with self.http_client(timeout=None) as client:
            response = await client.post(
                f"{API_BASE}/{model_id}:generateContent",
                params={"key": credential},
                json=body,
            )
            response.raise_for_status()
            data = response.json()

        block_reason = (data.get("promptFeedback") or {}).get("blockReason")
        if block_reason:
            raise ContentFilteredError(f"Prompt blocked by safety filters: {block_reason}")

        candidates = data.get("candidates") or []
        candidate = candidates[0] if candidates else {}
        parts = (candidate.get("content") or {}).get("parts") or []
        text = "".join(part.get("text", "") for part in parts)
        finish_reason = candidate.get("finishReason")

        if not text and finish_reason == "SAFETY":
            raise ContentFilteredError("Response blocked by safety filters")

        usage = data.get("usageMetadata")
        if usage:
            prompt_tokens = usage.get("promptTokenCount", 0)
            completion_tokens = usage.get("candidatesTokenCount", 0)
            total_tokens = usage.get("totalTokenCount", prompt_tokens + completion_tokens)
        else:
            prompt_tokens = estimate_tokens(prompt)
            completion_tokens = estimate_tokens(text)
            total_tokens = prompt_tokens + completion_tokens

        return RawCompletion(
            content=text,
            usage=TokenUsage(
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                total_tokens=total_tokens,
            ),
            finish_reason=finish_reason,
            model_version=data.get("modelVersion", model_id),
        )

    async def _ping(self, credential: str) -> None:
        async with self.http_client(timeout=10.0) as client:
            response = await client.get(API_BASE, params={"key": credential, "pageSize": 1})
            response.raise_for_status()
