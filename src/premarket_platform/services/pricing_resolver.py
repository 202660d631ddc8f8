"""Pricing Resolver - decides whether an agent's grant is free or charged.

Pure policy: the decision depends only on the request, the agent and the
injected GrantAccessConfig. No database access, no network, no mutation.
"""

from dataclasses import dataclass
from typing import Optional

from premarket_platform.app.config import GrantAccessConfig
from premarket_platform.domain.errors import InvalidPricingConfig

SUPPORTED_CURRENCY = "USD"

# Ranking used when a request lists several bedroom counts: the largest tier wins.
BEDROOM_TIER_ORDER = ["Studio", "1BR", "2BR", "3BR", "4BR+"]


@dataclass(frozen=True)
class PricingDecision:
    """Result of pricing a grant. amount is 0 for free grants."""

    is_free: bool
    amount: float
    currency: str = SUPPORTED_CURRENCY
    reason: str = "default"

    @classmethod
    def free(cls, reason: str = "default") -> "PricingDecision":
        return cls(is_free=True, amount=0.0, reason=reason)

    @classmethod
    def charged(cls, amount: float, reason: str = "default") -> "PricingDecision":
        return cls(is_free=False, amount=round(amount, 2), reason=reason)


class PricingResolver:
    """Maps (request, agent) to a PricingDecision under the configured policy."""

    def __init__(self, config: GrantAccessConfig):
        self.config = config

    def validate_config(self) -> None:
        """Raise InvalidPricingConfig if any amount is negative or the currency is unsupported."""
        if self.config.currency != SUPPORTED_CURRENCY:
            raise InvalidPricingConfig(
                f"Unsupported currency {self.config.currency!r}; only {SUPPORTED_CURRENCY} is allowed"
            )
        if self.config.default_charge_amount < 0:
            raise InvalidPricingConfig(
                f"Default charge amount cannot be negative ({self.config.default_charge_amount})"
            )
        for tier, amount in self.config.tier_amounts.items():
            if amount < 0:
                raise InvalidPricingConfig(f"Tier {tier!r} amount cannot be negative ({amount})")

    def resolve(self, request, agent_id: str) -> PricingDecision:
        """Price a grant for agent_id on request.

        Args:
            request: Anything with a ``bedrooms`` list (ORM row or namespace).
            agent_id: The requesting agent.

        Returns:
            PricingDecision.free() or PricingDecision.charged(amount).
        """
        self.validate_config()

        if agent_id in self.config.promotional_free_agents:
            return PricingDecision.free(reason="promotion")

        amount = self._tier_amount(getattr(request, "bedrooms", None) or [])
        reason = "tier"
        if amount is None:
            amount = self.config.default_charge_amount
            reason = "default"

        if amount == 0:
            return PricingDecision.free(reason=reason)
        return PricingDecision.charged(amount, reason=reason)

    def _tier_amount(self, bedrooms: list) -> Optional[float]:
        if not self.config.tier_amounts:
            return None
        labels = [getattr(b, "value", b) for b in bedrooms]
        ranked = sorted(
            (label for label in labels if label in self.config.tier_amounts),
            key=lambda label: BEDROOM_TIER_ORDER.index(label) if label in BEDROOM_TIER_ORDER else -1,
        )
        if not ranked:
            return None
        return self.config.tier_amounts[ranked[-1]]
