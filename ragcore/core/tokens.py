from __future__ import annotations

import logging
from functools import lru_cache
from typing import List, Protocol

import tiktoken

logger = logging.getLogger(__name__)

# Total context window (input + output) per model family.
MODEL_TOKEN_LIMITS = {
    "gpt-3.5-turbo": 16385,
    "gpt-3.5-turbo-16k": 16385,
    "gpt-4": 8192,
    "gpt-4-32k": 32768,
    "gpt-4-turbo": 128000,
    "gpt-4o": 128000,
    "gpt-4o-mini": 128000,
    "default": 16385,
}


def model_token_limit(model: str) -> int:
    if model in MODEL_TOKEN_LIMITS:
        return MODEL_TOKEN_LIMITS[model]
    if "gpt-4-turbo" in model or "gpt-4o" in model or model.startswith("gpt-4.1"):
        return MODEL_TOKEN_LIMITS["gpt-4-turbo"]
    if "gpt-4-32k" in model:
        return MODEL_TOKEN_LIMITS["gpt-4-32k"]
    if "gpt-4" in model:
        return MODEL_TOKEN_LIMITS["gpt-4"]
    if "gpt-3.5-turbo" in model:
        return MODEL_TOKEN_LIMITS["gpt-3.5-turbo"]
    logger.warning("unknown model %s, using default token limit", model)
    return MODEL_TOKEN_LIMITS["default"]


class Encoding(Protocol):
    def encode(self, text: str) -> List[int]: ...

    def decode(self, tokens: List[int]) -> str: ...


@lru_cache(maxsize=16)
def _encoding_for(model: str):
    try:
        return tiktoken.encoding_for_model(model)
    except KeyError:
        logger.debug("no tiktoken mapping for %s, falling back to o200k_base", model)
        return tiktoken.get_encoding("o200k_base")


class TokenCounter:
    """Exact token accounting for one target model."""

    def __init__(self, model: str = "gpt-4o-mini", encoding: Encoding | None = None):
        self.model = model
        self.enc = encoding if encoding is not None else _encoding_for(model)

    def count(self, text: str) -> int:
        if not text:
            return 0
        return len(self.enc.encode(text))

    def truncate(self, text: str, max_tokens: int) -> str:
        if max_tokens <= 0:
            return ""
        ids = self.enc.encode(text)
        if len(ids) <= max_tokens:
            return text
        return self.enc.decode(ids[:max_tokens]).rstrip()
