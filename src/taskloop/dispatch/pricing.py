"""Model tier selection and token cost estimation for dispatch cycles."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

logger = logging.getLogger(__name__)

PRICING_ENV = "TASKLOOP_MODEL_PRICING"
HIGH_PRIORITY_CUTOFF = 3


@dataclass(slots=True, frozen=True)
class ModelPricing:
    """Per-model pricing in USD per 1M tokens."""

    input_per_1m: float
    output_per_1m: float
    cache_read_per_1m: float = 0.0
    cache_write_per_1m: float = 0.0


@dataclass(slots=True)
class TokenUsage:
    """Token counters reported by the worker's terminal result event."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_input_tokens: int = 0
    cache_creation_input_tokens: int = 0

    @property
    def total_input_tokens(self) -> int:
        """Input tokens including cache reads and cache writes."""

        return self.input_tokens + self.cache_read_input_tokens + self.cache_creation_input_tokens


MODEL_PRICING: dict[str, ModelPricing] = {
    "opus": ModelPricing(
        input_per_1m=15.0,
        output_per_1m=75.0,
        cache_read_per_1m=1.875,
        cache_write_per_1m=18.75,
    ),
    "sonnet": ModelPricing(
        input_per_1m=3.0,
        output_per_1m=15.0,
        cache_read_per_1m=0.30,
        cache_write_per_1m=3.75,
    ),
    "haiku": ModelPricing(
        input_per_1m=1.0,
        output_per_1m=5.0,
        cache_read_per_1m=0.10,
        cache_write_per_1m=1.25,
    ),
}


def select_model(priority: int) -> str:
    """Pick the model tier for a task: urgent work goes to the strongest model."""

    return "opus" if priority <= HIGH_PRIORITY_CUTOFF else "haiku"


def calculate_api_cost_usd(model: str, usage: TokenUsage) -> float:
    """Estimate the API cost of a cycle from token usage."""

    pricing = lookup_pricing(model)
    return (
        usage.input_tokens / 1_000_000 * pricing.input_per_1m
        + usage.output_tokens / 1_000_000 * pricing.output_per_1m
        + usage.cache_read_input_tokens / 1_000_000 * pricing.cache_read_per_1m
        + usage.cache_creation_input_tokens / 1_000_000 * pricing.cache_write_per_1m
    )


def lookup_pricing(model: str) -> ModelPricing:
    key = model.strip().lower()
    overrides = _parse_pricing_mapping(os.getenv(PRICING_ENV, ""))
    if key in overrides:
        return overrides[key]
    if key in MODEL_PRICING:
        return MODEL_PRICING[key]
    if "*" in overrides:
        return overrides["*"]
    logger.warning("No pricing for model %r, falling back to sonnet rates", model)
    return MODEL_PRICING["sonnet"]


def _parse_pricing_mapping(raw: str) -> dict[str, ModelPricing]:
    """Parse `TASKLOOP_MODEL_PRICING` mapping.

    Format:
    - `model:input_per_1m:output_per_1m[:cache_read_per_1m:cache_write_per_1m]`
    - multiple entries separated by `,`
    - `*` as model applies to any model without its own entry
    """

    parsed: dict[str, ModelPricing] = {}
    if not raw.strip():
        return parsed

    for entry in raw.split(","):
        value = entry.strip()
        if not value:
            continue
        parts = [part.strip() for part in value.split(":")]
        if len(parts) not in (3, 5):
            logger.warning("Ignoring malformed %s entry: %r", PRICING_ENV, value)
            continue
        model, *prices = parts
        try:
            numbers = [float(price) for price in prices]
        except ValueError:
            logger.warning("Ignoring malformed %s entry: %r", PRICING_ENV, value)
            continue
        parsed[model.lower()] = ModelPricing(*numbers)
    return parsed
