"""Shared fixtures: a small catalog, its rate table and fast scheduler settings."""

from __future__ import annotations

from decimal import Decimal
from typing import List

import pytest

from tariffscope.config import Settings
from tariffscope.jobs.handlers import JobServices, build_services
from tariffscope.scenarios.catalog import InMemoryProductCatalog
from tariffscope.scenarios.models import ProductProfile, RateLookupResult, ScenarioConfiguration
from tariffscope.scenarios.providers import StaticRateProvider


@pytest.fixture()
def products() -> List[ProductProfile]:
    return [
        ProductProfile(
            product_id="tee-001",
            title="Cotton T-shirt",
            value=Decimal("100"),
            weight_kg=0.5,
            hs_code="6109.10.00.10",
            origin_country="CN",
            shipping_method="standard",
            alternative_origins=["VN"],
        ),
        ProductProfile(
            product_id="mug-002",
            title="Ceramic mug",
            value=Decimal("20"),
            weight_kg=0.4,
            hs_code="6912.00.48.00",
            origin_country="CN",
            shipping_method="standard",
            alternative_origins=["MX"],
        ),
    ]


@pytest.fixture()
def rate_table() -> StaticRateProvider:
    return StaticRateProvider(
        [
            RateLookupResult(hs_code="6109100010", origin_country="CN", destination_country="US", duty_percent=16.5),
            RateLookupResult(hs_code="6109100010", origin_country="VN", destination_country="US", duty_percent=0.0),
            RateLookupResult(hs_code="6912004800", origin_country="CN", destination_country="US", duty_percent=9.8),
            RateLookupResult(hs_code="6912004800", origin_country="MX", destination_country="US", duty_percent=0.0),
        ]
    )


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        max_concurrent=1,
        retry_base_seconds=0.0,
        starvation_seconds=0.0,
        rate_lookup_attempts=1,
    )


@pytest.fixture()
def services(settings, rate_table, products) -> JobServices:
    return build_services(settings, rate_provider=rate_table, catalog=InMemoryProductCatalog(products))


@pytest.fixture()
def origin_only() -> ScenarioConfiguration:
    """Only the origin axis, no pruning."""

    return ScenarioConfiguration(
        include_shipping_variations=False,
        include_classification_variations=False,
        include_trade_agreements=False,
        include_fulfillment_optimizations=False,
        min_saving_threshold=Decimal("0"),
    )


@pytest.fixture()
def baseline_only() -> ScenarioConfiguration:
    return ScenarioConfiguration(
        include_shipping_variations=False,
        include_origin_country_variations=False,
        include_classification_variations=False,
        include_trade_agreements=False,
        include_fulfillment_optimizations=False,
    )
