from __future__ import annotations

from typing import Optional

INSUFFICIENT_INFORMATION = "insufficient information to answer"

_RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}


class RAGError(Exception):
    """Base class for every error raised by ragcore."""


class ProviderTimeout(RAGError):
    def __init__(self, provider: str, timeout: float):
        super().__init__(f"{provider} timed out after {timeout:.2f}s")
        self.provider = provider
        self.timeout = timeout


class ProviderError(RAGError):
    """Auth, rate-limit or server error reported by an external dependency."""

    def __init__(
        self,
        provider: str,
        message: str,
        status_code: Optional[int] = None,
        retryable: Optional[bool] = None,
    ):
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.status_code = status_code
        if retryable is None:
            retryable = status_code is None or status_code in _RETRYABLE_STATUS_CODES
        self.retryable = retryable


class CircuitOpenError(ProviderError):
    def __init__(self, provider: str, retry_in: float):
        super().__init__(provider, f"circuit open, retry in {retry_in:.1f}s", retryable=False)
        self.retry_in = retry_in


class PipelineCancelled(RAGError):
    pass


class EmptyResultSet(RAGError):
    def __init__(self, branch: str):
        super().__init__(f"{branch} returned no results")
        self.branch = branch


class BudgetExceeded(RAGError):
    def __init__(self, category: str, requested: int, remaining: int):
        super().__init__(f"{category}: {requested} tokens requested, {remaining} remaining")
        self.category = category
        self.requested = requested
        self.remaining = remaining


class CitationUnresolved(RAGError):
    def __init__(self, marker: str, label: str):
        super().__init__(f"Citation {marker} references non-existent source {label}")
        self.marker = marker
        self.label = label


class SummarizationFailure(RAGError):
    pass


class InsufficientInformationError(RAGError):
    """Raised to callers when every retrieval branch failed."""

    def __init__(self, causes: Optional[dict] = None):
        super().__init__(INSUFFICIENT_INFORMATION)
        self.causes = causes or {}
