from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any

from careerflow.config import Settings, get_settings
from careerflow.types import UsageMetrics

_PER_MILLION = 1_000_000


@dataclass(slots=True)
class CostQuote:
    cost_dollars: float
    credits: int
    source: str

    def as_cost_info(self, usage: UsageMetrics) -> dict[str, Any]:
        return {
            "source": self.source,
            "cost_dollars": round(self.cost_dollars, 8),
            "prompt_tokens": usage.prompt_tokens,
            "completion_tokens": usage.completion_tokens,
            "cached_tokens": usage.cached_tokens,
        }


class CreditPricing:
    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()

    def cost_to_credits(self, cost_dollars: float) -> int:
        if cost_dollars <= 0:
            return 0
        credits = math.ceil(
            cost_dollars * self.settings.credit_margin_multiplier / self.settings.credit_value_dollars
        )
        return max(credits, self.settings.min_credits_per_operation)

    def cost_for(self, usage: UsageMetrics) -> float:
        s = self.settings
        if usage.provider == "deepseek":
            cache_hit = max(0, usage.cached_tokens)
            cache_miss = max(0, usage.prompt_tokens - cache_hit)
            return (
                cache_hit * s.deepseek_input_cache_hit_per_million
                + cache_miss * s.deepseek_input_cache_miss_per_million
                + max(0, usage.completion_tokens) * s.deepseek_output_per_million
            ) / _PER_MILLION
        if usage.provider == "gemini":
            cached = max(0, usage.cached_tokens)
            uncached = max(0, usage.prompt_tokens - cached)
            return (
                uncached * s.gemini_input_per_million
                + cached * s.gemini_input_cached_per_million
                + max(0, usage.completion_tokens) * s.gemini_output_per_million
            ) / _PER_MILLION
        if usage.provider == "scraper":
            return s.job_scrape_cost_dollars
        return 0.0

    def quote(self, usage: UsageMetrics) -> CostQuote:
        cost = self.cost_for(usage)
        return CostQuote(cost_dollars=cost, credits=self.cost_to_credits(cost), source=usage.provider)
