"""Unit tests for usage pricing"""

import pytest
from decimal import Decimal
from types import MappingProxyType
from bison_billing.domain.exceptions import ConfigError
from bison_billing.domain.models import BillingConfig, ResourcePrice
from bison_billing.domain.pricing import compute_charge, cost_breakdown


def test_compute_charge_cpu_example():
    """50 core-hours at 0.05 per core-hour costs 2.50"""
    pricing = {"cpu": ResourcePrice(price=Decimal("0.05"), unit="core-hour")}
    assert compute_charge({"cpu": Decimal("50")}, pricing) == Decimal("2.50")


def test_unpriced_resources_contribute_zero():
    pricing = {"cpu": ResourcePrice(price=Decimal("0.1"))}
    usage = {"cpu": Decimal("10"), "gpu": Decimal("4")}

    assert compute_charge(usage, pricing) == Decimal("1.0")
    assert set(cost_breakdown(usage, pricing)) == {"cpu"}


def test_default_pricing_sums_cpu_and_memory():
    config = BillingConfig()
    usage = {"cpu": Decimal("2"), "memory": Decimal("8")}
    # 2 * 0.1 + 8 * 0.05
    assert compute_charge(usage, config.pricing) == Decimal("0.6")


def test_invalid_price_for_used_resource_raises():
    pricing = {"gpu": ResourcePrice(price=None)}
    with pytest.raises(ConfigError):
        compute_charge({"gpu": Decimal("1")}, pricing)


def test_invalid_price_ignored_when_resource_unused():
    """Teams that do not use the misconfigured resource are billed normally"""
    pricing = {"gpu": ResourcePrice(price=None), "cpu": ResourcePrice(price=Decimal("1"))}
    assert compute_charge({"gpu": Decimal("0"), "cpu": Decimal("3")}, pricing) == Decimal("3")


def test_negative_price_is_a_config_error():
    with pytest.raises(ConfigError):
        compute_charge({"cpu": Decimal("1")}, {"cpu": ResourcePrice(price=Decimal("-0.1"))})


def test_snapshot_pricing_is_read_only():
    config = BillingConfig()
    assert isinstance(config.pricing, MappingProxyType)
    with pytest.raises(TypeError):
        config.pricing["cpu"] = ResourcePrice(price=Decimal("0"))
