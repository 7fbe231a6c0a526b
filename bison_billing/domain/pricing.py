"""Usage pricing - converts resource-hours into a monetary charge"""

from decimal import Decimal
from typing import Dict, Mapping

from bison_billing.domain.exceptions import ConfigError
from bison_billing.domain.ledger import quantize
from bison_billing.domain.models import ResourcePrice


def cost_breakdown(usage: Mapping[str, Decimal], pricing: Mapping[str, ResourcePrice]) -> Dict[str, Decimal]:
    """
    Per-resource cost for a usage report.

    Resources with no configured price contribute nothing. A used resource
    whose configured price is malformed (unparseable, negative) raises
    ConfigError so that only teams consuming it are held back.
    """
    costs: Dict[str, Decimal] = {}
    for resource, amount in usage.items():
        resource_price = pricing.get(resource)
        if resource_price is None:
            continue

        price = resource_price.price
        if price is None or not price.is_finite() or price < 0:
            if amount == 0:
                continue
            raise ConfigError(f"Invalid price configured for resource '{resource}'")

        costs[resource] = amount * price

    return costs


def compute_charge(usage: Mapping[str, Decimal], pricing: Mapping[str, ResourcePrice]) -> Decimal:
    """charge = sum(usage[resource] * price[resource]) over priced resources"""
    total = sum(cost_breakdown(usage, pricing).values(), Decimal("0"))
    return quantize(total)
