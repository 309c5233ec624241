from __future__ import annotations

from dataclasses import dataclass

from bookmark_triage_core.models import RunProgress


@dataclass(frozen=True)
class ModelPrice:
    input_usd_per_1m: float
    output_usd_per_1m: float


MODEL_PRICES: dict[str, ModelPrice] = {
    "gpt-4.1-nano": ModelPrice(input_usd_per_1m=0.1, output_usd_per_1m=0.4),
    "gpt-4.1-mini": ModelPrice(input_usd_per_1m=0.4, output_usd_per_1m=1.6),
}


def estimate_cost_usd(
    model: str,
    prompt_tokens: int,
    completion_tokens: int,
    *,
    prices: dict[str, ModelPrice] | None = None,
) -> float:
    """Zero for models missing from the price table."""
    price = (prices if prices is not None else MODEL_PRICES).get(model)
    if price is None:
        return 0.0
    return (prompt_tokens / 1_000_000) * price.input_usd_per_1m + (
        completion_tokens / 1_000_000
    ) * price.output_usd_per_1m


@dataclass
class UsageCounters:
    api_calls: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    estimated_cost_usd: float = 0.0

    def record(self, model: str, prompt_tokens: int, completion_tokens: int) -> None:
        prompt_tokens = max(int(prompt_tokens), 0)
        completion_tokens = max(int(completion_tokens), 0)
        self.api_calls += 1
        self.prompt_tokens += prompt_tokens
        self.completion_tokens += completion_tokens
        self.estimated_cost_usd += estimate_cost_usd(model, prompt_tokens, completion_tokens)


@dataclass
class RunCounters:
    processed: int = 0
    cached: int = 0
    categorized: int = 0
    uncategorized: int = 0
    failed: int = 0

    def bump(
        self,
        *,
        processed: int = 0,
        cached: int = 0,
        categorized: int = 0,
        uncategorized: int = 0,
        failed: int = 0,
    ) -> None:
        self.processed += processed
        self.cached += cached
        self.categorized += categorized
        self.uncategorized += uncategorized
        self.failed += failed


def snapshot_progress(counters: RunCounters, usage: UsageCounters) -> RunProgress:
    return RunProgress(
        processed_count=counters.processed,
        cached_count=counters.cached,
        categorized_count=counters.categorized,
        uncategorized_count=counters.uncategorized,
        failed_count=counters.failed,
        api_calls=usage.api_calls,
        prompt_tokens=usage.prompt_tokens,
        completion_tokens=usage.completion_tokens,
        estimated_cost_usd=usage.estimated_cost_usd,
    )
