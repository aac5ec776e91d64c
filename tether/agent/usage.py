"""
tether.agent.usage — Per-session token and cost accounting.

Calculates running cost from reported usage and per-model pricing.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from tether.core.models import UsageStats


# Pricing per million tokens (input, output) in USD
MODEL_PRICING: dict[str, tuple[float, float]] = {
    # Anthropic
    "claude-opus-4-1":      (15.0, 75.0),
    "claude-opus-4":        (15.0, 75.0),
    "claude-sonnet-4-5":    (3.0, 15.0),
    "claude-sonnet-4":      (3.0, 15.0),
    "claude-haiku-4-5":     (1.0, 5.0),
    "claude-3-5-haiku":     (0.80, 4.0),
    # OpenAI
    "gpt-4.1":              (2.00, 8.00),
    "gpt-4.1-mini":         (0.40, 1.60),
    "gpt-4.1-nano":         (0.10, 0.40),
    "gpt-4o":               (2.50, 10.0),
    "gpt-4o-mini":          (0.15, 0.60),
}

# Default pricing if the model is unknown (conservative estimate)
DEFAULT_PRICING = (2.0, 8.0)

# Cache-read tokens cost ~10% of regular input
_CACHE_READ_FACTOR = 0.1


def get_pricing(model: str) -> tuple[float, float]:
    """(input_price_per_M, output_price_per_M) for a model."""
    if model in MODEL_PRICING:
        return MODEL_PRICING[model]
    # Longest prefix wins: "gpt-4.1-mini-2025..." -> "gpt-4.1-mini", not "gpt-4.1"
    for key in sorted(MODEL_PRICING, key=len, reverse=True):
        if model.startswith(key):
            return MODEL_PRICING[key]
    # Local models ("name:size") are free
    if ":" in model or model == "loaded-model":
        return (0.0, 0.0)
    return DEFAULT_PRICING


@dataclass
class UsageTracker:
    """Cumulative token usage and cost for one session."""
    model: str = ""
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_cache_read_tokens: int = 0
    total_cost_usd: float = 0.0
    turn_costs: list[float] = field(default_factory=list)

    def add_usage(self, usage: UsageStats | None, model: str | None = None) -> float:
        """Record one generation's usage and return its cost."""
        if usage is None:
            return 0.0
        self.total_input_tokens += usage.prompt_tokens
        self.total_output_tokens += usage.completion_tokens
        self.total_cache_read_tokens += usage.cache_read_tokens

        input_price, output_price = get_pricing(model or self.model)
        regular_input = max(0, usage.prompt_tokens - usage.cache_read_tokens)
        cost = (
            regular_input / 1_000_000 * input_price
            + usage.cache_read_tokens / 1_000_000 * input_price * _CACHE_READ_FACTOR
            + usage.completion_tokens / 1_000_000 * output_price
        )
        self.total_cost_usd += cost
        self.turn_costs.append(cost)
        return cost

    @property
    def total_tokens(self) -> int:
        return self.total_input_tokens + self.total_output_tokens

    def format_cost(self, turn_cost: float | None = None) -> str:
        if turn_cost is not None and turn_cost > 0:
            return f"Turn: ${turn_cost:.4f} | Session: ${self.total_cost_usd:.4f}"
        if self.total_cost_usd > 0:
            return f"Session cost: ${self.total_cost_usd:.4f}"
        return "Session cost: $0.00 (local model)"

    def format_summary(self) -> str:
        input_price, output_price = get_pricing(self.model)
        lines = [
            "Session Usage Summary",
            f"  Model:          {self.model}",
            f"  Input tokens:   {self.total_input_tokens:,}",
            f"  Output tokens:  {self.total_output_tokens:,}",
            f"  Cached tokens:  {self.total_cache_read_tokens:,}",
            f"  Generations:    {len(self.turn_costs)}",
            f"  Total cost:     ${self.total_cost_usd:.4f}",
        ]
        if input_price > 0:
            lines.append(f"  Rate:           ${input_price}/M in, ${output_price}/M out")
        return "\n".join(lines)
