import pytest
from pydantic import ValidationError

from ragcore.core.config import Settings


def _settings(**overrides):
    return Settings(_env_file=None, **overrides)


def test_defaults_map_onto_policies():
    s = _settings()
    assert s.fusion_config().weights.semantic == 0.6
    assert s.budget_allocation().document_pct == 0.5
    assert s.retry_policy().max_attempts == 3
    assert s.breaker_policy().reset_timeout == 30.0


def test_env_aliases_are_accepted():
    s = _settings(W_SEMANTIC=0.8, W_KEYWORD=0.2, HISTORY_WINDOW=3)
    assert s.fusion_config().weights.keyword == 0.2
    assert s.history_window == 3


def test_budget_ratios_over_one_are_rejected():
    with pytest.raises(ValidationError):
        _settings(BUDGET_DOCUMENT_PCT=0.7, BUDGET_WEB_PCT=0.3)


def test_zero_fusion_weights_are_rejected():
    with pytest.raises(ValidationError):
        _settings(W_SEMANTIC=0.0, W_KEYWORD=0.0)


def test_require_names_the_missing_setting():
    with pytest.raises(ValueError, match="TAVILY_API_KEY"):
        _settings(TAVILY_API_KEY=None).require("tavily_api_key")
