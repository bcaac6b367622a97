"""Token cost estimates per provider.

Model names may carry a vendor prefix (``openai/gpt-4.1``). The longest
table entry that prefixes the bare name wins, so dated snapshots such as
``gpt-4.1-mini-2025-04-14`` price like their family.
"""

import logging
from typing import NamedTuple

logger = logging.getLogger(__name__)


class Price(NamedTuple):
    """USD per 1M tokens."""

    input: float
    output: float


# Updated 2025-06.
OPENAI_PRICING: dict[str, Price] = {
    "gpt-4.1": Price(2.00, 8.00),
    "gpt-4.1-mini": Price(0.40, 1.60),
    "gpt-4.1-nano": Price(0.10, 0.40),
    "gpt-4o": Price(2.50, 10.00),
    "gpt-4o-mini": Price(0.15, 0.60),
    "o3": Price(2.00, 8.00),
    "o3-mini": Price(1.10, 4.40),
    "o4-mini": Price(1.10, 4.40),
}

# OpenRouter passes OpenAI list prices through; Azure bills them per deployment.
PROVIDER_PRICING: dict[str, dict[str, Price]] = {
    "openai": OPENAI_PRICING,
    "azure": OPENAI_PRICING,
    "openrouter": OPENAI_PRICING,
}

SELF_HOSTED_PROVIDERS = frozenset({"ollama", "vllm", "lmstudio", "local"})

FREE = Price(0.0, 0.0)
DEFAULT_PRICE = Price(2.00, 8.00)


def resolve_price(model: str, provider: str = "openai") -> Price:
    provider = provider.lower()
    if provider in SELF_HOSTED_PROVIDERS:
        return FREE
    table = PROVIDER_PRICING.get(provider)
    if table is None:
        logger.debug("No price table for provider %s, using OpenAI prices", provider)
        table = OPENAI_PRICING

    name = model.lower().rsplit("/", 1)[-1]
    if name in table:
        return table[name]
    family = max((key for key in table if name.startswith(key)), key=len, default=None)
    return table[family] if family else DEFAULT_PRICE


def estimate_cost_usd(
    prompt_tokens: int,
    completion_tokens: int,
    model: str,
    provider: str = "openai",
) -> float:
    price = resolve_price(model, provider)
    cost = (prompt_tokens * price.input + completion_tokens * price.output) / 1_000_000
    return round(cost, 6)
