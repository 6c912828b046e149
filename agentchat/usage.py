"""Token usage to cost telemetry."""

from __future__ import annotations

from agentchat.models import TokenUsage, UsageRecord

# USD per million tokens for the default flash-class model.
INPUT_PRICE_PER_MILLION = 0.10
OUTPUT_PRICE_PER_MILLION = 0.40


def estimate_cost_usd(input_tokens: int | None, output_tokens: int | None) -> float | None:
    if input_tokens is None and output_tokens is None:
        return None
    cost = (input_tokens or 0) * INPUT_PRICE_PER_MILLION / 1_000_000
    cost += (output_tokens or 0) * OUTPUT_PRICE_PER_MILLION / 1_000_000
    return round(cost, 8)


def build_usage_record(
    usage: TokenUsage | None,
    latency_ms: int | None = None,
    error_code: str | None = None,
    error_message: str | None = None,
) -> UsageRecord:
    usage = usage or TokenUsage()
    return UsageRecord(
        input_tokens=usage.input_tokens,
        output_tokens=usage.output_tokens,
        total_tokens=usage.total_tokens,
        latency_ms=latency_ms,
        estimated_cost_usd=estimate_cost_usd(usage.input_tokens, usage.output_tokens),
        error_code=error_code,
        error_message=error_message,
    )
