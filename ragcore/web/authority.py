from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple
from urllib.parse import urlsplit

logger = logging.getLogger(__name__)

_TLD_SCORES = {"gov": 90, "edu": 85, "org": 70}
_DEFAULT_SCORE = 0.5

AUTHORITY_DB_PATH = Path(__file__).resolve().parent.parent / "data" / "authoritative_domains.json"


@dataclass(frozen=True)
class AuthorityScore:
    score: float                 # 0-1
    raw_score: int               # 0-100
    source: str                  # exact | pattern | tld | default
    category: Optional[str] = None
    tier: Optional[str] = None


@dataclass(frozen=True)
class AuthorityConfig:
    high_threshold: float = 0.5
    high_boost: float = 1.2
    low_threshold: float = 0.3
    low_penalty: float = 0.9
    custom_scores: Mapping[str, int] = field(default_factory=dict)   # domain -> 0-100


@lru_cache(maxsize=1)
def load_authority_db() -> Dict[str, Any]:
    db = json.loads(AUTHORITY_DB_PATH.read_text(encoding="utf-8"))
    logger.debug(
        "loaded authority list v%s: %d domains, %d patterns",
        db.get("version"), len(db.get("domains", {})), len(db.get("domain_patterns", {})),
    )
    return db


def extract_domain(url: str) -> str:
    host = (urlsplit(url).hostname or "").lower()
    if host.startswith("www."):
        host = host[4:]
    return host


class DomainAuthority:
    def __init__(self, config: AuthorityConfig = AuthorityConfig(), db: Optional[Dict[str, Any]] = None):
        self.config = config
        db = db if db is not None else load_authority_db()
        self.domains: Dict[str, Dict[str, Any]] = db.get("domains", {})
        self.weights: Dict[str, float] = db.get("category_weights", {"default": _DEFAULT_SCORE})
        self.patterns: List[Tuple[re.Pattern, Dict[str, Any]]] = [
            (re.compile(p["pattern"]), p) for p in db.get("domain_patterns", {}).values()
        ]

    def _tier_weight(self, tier: Optional[str]) -> float:
        return self.weights.get(tier or "", self.weights.get("default", _DEFAULT_SCORE))

    def score(self, url: str) -> AuthorityScore:
        domain = extract_domain(url)
        if not domain:
            return AuthorityScore(_DEFAULT_SCORE, 50, "default")

        if domain in self.config.custom_scores:
            raw = self.config.custom_scores[domain]
            return AuthorityScore(raw / 100, raw, "exact")

        entry = self.domains.get(domain)
        if entry is not None:
            raw = entry["authority_score"]
            return AuthorityScore(
                raw / 100 * self._tier_weight(entry.get("tier")), raw, "exact",
                entry.get("category"), entry.get("tier"),
            )

        for regex, p in self.patterns:
            if regex.search(domain):
                raw = p["authority_score"]
                return AuthorityScore(
                    raw / 100 * self._tier_weight(p.get("tier")), raw, "pattern",
                    p.get("category"), p.get("tier"),
                )

        tld = domain.rsplit(".", 1)[-1]
        if tld in _TLD_SCORES:
            raw = _TLD_SCORES[tld]
            return AuthorityScore(raw / 100, raw, "tld")
        return AuthorityScore(_DEFAULT_SCORE, 50, "default")

    def adjust(self, base: float, authority: AuthorityScore) -> float:
        """Boost high-authority and penalize low-authority results, clamped to [0, 1]."""
        if authority.score >= self.config.high_threshold:
            base *= self.config.high_boost
        elif authority.score < self.config.low_threshold:
            base *= self.config.low_penalty
        return min(1.0, max(0.0, base))
