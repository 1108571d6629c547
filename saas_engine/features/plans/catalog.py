"""
saas_engine/features/plans/catalog.py

Static mapping from billing-provider price ids to paid plan tiers.

The mapping is configuration (STRIPE_PRICE_PRO, STRIPE_PRICE_ENTERPRISE,
STRIPE_PRICE_MAP), never hard-coded. FREE has no price: it is the absence of
an active paid subscription. Unmapped ids resolve to None and callers must
not silently assign a plan for them.
"""

from typing import Dict, Mapping, Optional
import logging

from saas_engine.core.config import Settings, settings
from saas_engine.core.errors import ValidationError
from saas_engine.models.plan import PAID_PLANS, PlanTier

logger = logging.getLogger(__name__)


def parse_price_map(raw: Optional[str]) -> Dict[str, PlanTier]:
    """Parse "price_a:PRO,price_b:ENTERPRISE" into a mapping."""
    mapping: Dict[str, PlanTier] = {}
    if not raw:
        return mapping
    for chunk in raw.split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        price_id, sep, tier = chunk.partition(":")
        if not sep or not price_id.strip():
            raise ValidationError(f"Malformed STRIPE_PRICE_MAP entry: {chunk!r}")
        try:
            mapping[price_id.strip()] = PlanTier(tier.strip().upper())
        except ValueError:
            raise ValidationError(f"Unknown plan tier in STRIPE_PRICE_MAP: {tier!r}")
    return mapping


class PlanCatalog:
    """Pure price id -> plan tier lookup."""

    def __init__(self, prices: Optional[Mapping[str, PlanTier]] = None):
        self._prices: Dict[str, PlanTier] = {}
        for price_id, tier in (prices or {}).items():
            tier = PlanTier(tier)
            if tier not in PAID_PLANS:
                raise ValidationError(
                    f"Price {price_id!r} cannot map to {tier.value}; only paid plans have prices"
                )
            if not price_id:
                raise ValidationError("Empty price id in plan catalog")
            self._prices[price_id] = tier

    @classmethod
    def from_settings(cls, cfg: Optional[Settings] = None) -> "PlanCatalog":
        cfg = cfg or settings
        prices: Dict[str, PlanTier] = {}
        if cfg.STRIPE_PRICE_PRO:
            prices[cfg.STRIPE_PRICE_PRO] = PlanTier.PRO
        if cfg.STRIPE_PRICE_ENTERPRISE:
            prices[cfg.STRIPE_PRICE_ENTERPRISE] = PlanTier.ENTERPRISE
        prices.update(parse_price_map(cfg.STRIPE_PRICE_MAP))
        if not prices:
            logger.warning("[plans] plan catalog is empty; every paid price will be unmapped")
        return cls(prices)

    def price_id_to_plan(self, price_id: Optional[str]) -> Optional[PlanTier]:
        if not price_id:
            return None
        return self._prices.get(price_id)

    def __len__(self) -> int:
        return len(self._prices)
