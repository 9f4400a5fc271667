"""
Static pricing table for vision-capable models.
Prices are USD per 1M tokens.
"""

from .models import PricingRule


# provider -> model -> (input_cost_per_1m, output_cost_per_1m)
# The first model listed for a provider is the fallback for unknown models.
PRICING: dict[str, dict[str, tuple[float, float]]] = {
    "openai": {
        "gpt-4o": (2.50, 10.00),
        "gpt-4o-mini": (0.15, 0.60),
    },
    "anthropic": {
        "claude-3-5-sonnet-20241022": (3.00, 15.00),
        "claude-3-opus-20240229": (15.00, 75.00),
        "claude-3-sonnet-20240229": (3.00, 15.00),
        "claude-3-haiku-20240307": (0.25, 1.25),
    },
    "google": {
        "gemini-1.5-pro": (1.25, 5.00),
        "gemini-1.5-flash": (0.075, 0.30),
    },
}


class PricingTable:
    """
    Immutable (provider, model) -> PricingRule lookup.

    Lookup order:
    1. Exact model match
    2. The provider's first listed model
    Unknown providers resolve to None.
    """

    def __init__(self, overrides: dict[str, dict[str, PricingRule]] | None = None):
        rules: dict[str, dict[str, PricingRule]] = {}
        for provider, models in PRICING.items():
            rules[provider] = {
                model: PricingRule(provider, model, prices[0], prices[1])
                for model, prices in models.items()
            }
        for provider, models in (overrides or {}).items():
            rules.setdefault(provider, {}).update(models)
        self._rules = rules

    def get(self, provider: str, model: str) -> PricingRule | None:
        models = self._rules.get(provider)
        if not models:
            return None
        if model in models:
            return models[model]
        return next(iter(models.values()))

    def providers(self) -> list[str]:
        return list(self._rules.keys())

    def models(self, provider: str) -> list[str]:
        return list(self._rules.get(provider, {}).keys())
