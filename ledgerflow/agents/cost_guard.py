from __future__ import annotations

import time
from typing import Callable, Optional

from .models import UsageTotals


class CostGuard:
    """Token, dollar and wall-clock budget for a single execution.

    Owned by one runner invocation and never persisted. ``check`` returns a
    human-readable reason once any limit has been reached, ``None`` otherwise.
    """

    def __init__(
        self,
        max_tokens: Optional[int] = None,
        max_cost_usd: Optional[float] = None,
        max_duration_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_tokens = max_tokens
        self.max_cost_usd = max_cost_usd
        self.max_duration_seconds = max_duration_seconds
        self._clock = clock
        self._started = clock()
        self.tokens_used = 0
        self.cost_usd = 0.0
        self.llm_calls = 0

    @property
    def elapsed_seconds(self) -> float:
        return self._clock() - self._started

    def check(self) -> Optional[str]:
        if self.max_tokens is not None and self.tokens_used >= self.max_tokens:
            return f"token budget exhausted ({self.tokens_used}/{self.max_tokens} tokens)"
        if self.max_cost_usd is not None and self.cost_usd >= self.max_cost_usd:
            return f"cost budget exhausted (${self.cost_usd:.4f}/${self.max_cost_usd:.4f})"
        if (
            self.max_duration_seconds is not None
            and self.elapsed_seconds >= self.max_duration_seconds
        ):
            return f"time budget exhausted ({self.elapsed_seconds:.1f}s/{self.max_duration_seconds:.1f}s)"
        return None

    def record(self, tokens: int, cost_usd: float = 0.0, llm_call: bool = False) -> None:
        self.tokens_used += max(tokens, 0)
        self.cost_usd += max(cost_usd, 0.0)
        if llm_call:
            self.llm_calls += 1

    def usage(self) -> UsageTotals:
        return UsageTotals(
            tokens_used=self.tokens_used,
            cost_usd=round(self.cost_usd, 6),
            duration_ms=int(self.elapsed_seconds * 1000),
            llm_calls=self.llm_calls,
        )
