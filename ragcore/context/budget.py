from __future__ import annotations

import math
from dataclasses import dataclass, fields
from typing import Optional

from ragcore.core.tokens import model_token_limit


@dataclass(frozen=True)
class BudgetAllocation:
    document_pct: float = 0.50
    web_pct: float = 0.20
    system_pct: float = 0.05
    user_pct: float = 0.05
    response_pct: float = 0.15
    overhead_pct: float = 0.05

    def __post_init__(self):
        for f in fields(self):
            v = getattr(self, f.name)
            if not 0.0 <= v <= 1.0:
                raise ValueError(f"{f.name} must be within [0, 1], got {v}")
        total = sum(getattr(self, f.name) for f in fields(self))
        if total > 1.0 + 1e-9:
            raise ValueError(f"budget allocation sums to {total:.3f}, must be <= 1.0")


@dataclass(frozen=True)
class ContextBudget:
    model: str
    model_limit: int
    response_reserve: int
    overhead: int
    allocation: BudgetAllocation

    @property
    def available(self) -> int:
        return max(0, self.model_limit - self.response_reserve - self.overhead)

    def _share(self, pct: float) -> int:
        return math.floor(self.available * pct)

    @property
    def documents(self) -> int:
        return self._share(self.allocation.document_pct)

    @property
    def web(self) -> int:
        return self._share(self.allocation.web_pct)

    @property
    def system(self) -> int:
        return self._share(self.allocation.system_pct)

    @property
    def user(self) -> int:
        return self._share(self.allocation.user_pct)


def compute_budget(
    model: str,
    allocation: BudgetAllocation = BudgetAllocation(),
    model_limit: Optional[int] = None,
) -> ContextBudget:
    limit = model_limit if model_limit is not None else model_token_limit(model)
    return ContextBudget(
        model=model,
        model_limit=limit,
        response_reserve=math.floor(limit * allocation.response_pct),
        overhead=math.floor(limit * allocation.overhead_pct),
        allocation=allocation,
    )
