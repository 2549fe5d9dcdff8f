from __future__ import annotations

from typing import AsyncIterator, Dict, List, Optional, Union

import openai
from openai import AsyncOpenAI

from ragcore.core.errors import ProviderError, ProviderTimeout
from ragcore.providers.protocols import CompletionOptions


def _translate(provider: str, exc: openai.OpenAIError, timeout: Optional[float]) -> Exception:
    if isinstance(exc, openai.APITimeoutError):
        return ProviderTimeout(provider, timeout or 0.0)
    if isinstance(exc, openai.APIStatusError):
        return ProviderError(provider, exc.message, status_code=exc.status_code)
    if isinstance(exc, openai.APIConnectionError):
        return ProviderError(provider, str(exc), retryable=True)
    return ProviderError(provider, str(exc), retryable=False)


class OpenAILLM:
    name = "openai-llm"

    def __init__(self, api_key: str, model: str, client: Optional[AsyncOpenAI] = None):
        self.client = client or AsyncOpenAI(api_key=api_key, max_retries=0)
        self.model = model

    async def complete(
        self, messages: List[Dict[str, str]], options: CompletionOptions
    ) -> Union[str, AsyncIterator[str]]:
        try:
            resp = await self.client.chat.completions.create(
                model=options.model or self.model,
                messages=messages,
                temperature=options.temperature,
                max_tokens=options.max_tokens,
                stream=options.stream,
                **options.extra,
            )
        except openai.OpenAIError as exc:
            raise _translate(self.name, exc, None) from exc

        if not options.stream:
            return resp.choices[0].message.content or ""
        return self._iter_stream(resp)

    async def _iter_stream(self, stream) -> AsyncIterator[str]:
        try:
            async for chunk in stream:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta.content
                if delta:
                    yield delta
        except openai.OpenAIError as exc:
            raise _translate(self.name, exc, None) from exc


class OpenAIEmbedder:
    name = "openai-embeddings"

    def __init__(self, api_key: str, model: str, client: Optional[AsyncOpenAI] = None):
        """
        Keep the client injectable so tests and other SDK-compatible
        endpoints can be swapped in.
        """
        self.client = client or AsyncOpenAI(api_key=api_key, max_retries=0)
        self.model = model

    async def embed(self, text: str) -> List[float]:
        try:
            r = await self.client.embeddings.create(model=self.model, input=text)
        except openai.OpenAIError as exc:
            raise _translate(self.name, exc, None) from exc
        return r.data[0].embedding
