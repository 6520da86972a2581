"""
OpenAI provider.

Uses langchain's ChatOpenAI for completions so the async client,
message types and usage metadata match the rest of the LLM tooling.
OpenAI reports exact token usage.
"""
from typing import List

import openai
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI

from app.schemas.query import GenerationParams, TokenUsage
from .base import BaseProvider, ProviderError, ProviderErrorKind, RawCompletion


class OpenAIProvider(BaseProvider):
    name = "openai"
    prices = {
        "gpt-4": {"input": 0.03, "output": 0.06},
        "gpt-4-turbo": {"input": 0.01, "output": 0.03},
        "gpt-3.5-turbo": {"input": 0.0005, "output": 0.0015},
    }

    def _build_llm(self, model_id: str, params: GenerationParams, credential: str) -> ChatOpenAI:
        normalized = self.normalize_parameters(params)
        return ChatOpenAI(
            model=model_id,
            api_key=credential,
            temperature=normalized.get("temperature"),
            max_tokens=normalized.get("max_tokens"),
            top_p=normalized.get("top_p"),
            max_retries=0,
        )

    async def _complete(
        self,
        model_id: str,
        prompt: str,
        params: GenerationParams,
        credential: str
    ) -> RawCompletion:
        llm = self._build_llm(model_id, params, credential)

        messages: List[BaseMessage] = []
        if params.system_prompt:
            messages.append(SystemMessage(content=params.system_prompt))
        messages.append(HumanMessage(content=prompt))

        message = await llm.ainvoke(messages)

        usage = message.usage_metadata or {}
        metadata = message.response_metadata or {}
        content = message.content if isinstance(message.content, str) else ""

        return RawCompletion(
            content=content,
            usage=TokenUsage(
                prompt_tokens=usage.get("input_tokens", 0),
                completion_tokens=usage.get("output_tokens", 0),
                total_tokens=usage.get("total_tokens", 0),
            ),
            finish_reason=metadata.get("finish_reason"),
            model_version=metadata.get("model_name"),
        )

    async def _ping(self, credential: str) -> None:
        async with openai.AsyncOpenAI(api_key=credential, max_retries=0) as client:
            await client.models.list()

    def classify_error(self, exc: BaseException) -> ProviderError:
        if isinstance(exc, openai.APITimeoutError):
            return ProviderError(kind=ProviderErrorKind.TIMEOUT, message=str(exc))
        if isinstance(exc, openai.APIConnectionError):
            return ProviderError(kind=ProviderErrorKind.UPSTREAM_ERROR, message=str(exc))
        return super().classify_error(exc)
