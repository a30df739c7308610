"""Shared test fixtures for Tally-Engine."""

import logging
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from tally_engine.common.config import TallySettings
from tally_engine.pools.models import (
    PRIMARY_POOL_SUB_KEY,
    Pool,
    Product,
    SourceSubscription,
)
from tally_engine.pools.rules import PoolRules


START = datetime(2026, 1, 1, tzinfo=timezone.utc)
END = datetime(2027, 1, 1, tzinfo=timezone.utc)


def make_settings(**overrides) -> TallySettings:
    defaults = {"environment": "development", "standalone": False}
    defaults.update(overrides)
    return TallySettings(**defaults)


def make_product(product_id: str = "prod-1", **kwargs) -> Product:
    return Product(id=product_id, name=kwargs.pop("name", product_id.upper()), **kwargs)


def make_pool(
    product: Product | None = None,
    subscription_id: str | None = "sub-1",
    sub_key: str = PRIMARY_POOL_SUB_KEY,
    **kwargs,
) -> Pool:
    defaults = {
        "quantity": 10,
        "start_date": START,
        "end_date": END,
        "account_number": "acct-1",
        "order_number": "order-1",
        "contract_number": "contract-1",
    }
    defaults.update(kwargs)
    pool = Pool(product=product or make_product(), **defaults)
    if subscription_id is not None:
        pool.source_subscription = SourceSubscription(subscription_id, sub_key)
    return pool


@pytest.fixture
def pool_manager():
    manager = MagicMock()
    manager.is_managed.return_value = True
    return manager


@pytest.fixture
def entitlement_lookup():
    lookup = MagicMock()
    lookup.find_by_stack_id.return_value = []
    lookup.find_by_stack_ids.return_value = []
    return lookup


@pytest.fixture
def rules(pool_manager, entitlement_lookup):
    return PoolRules(make_settings(), pool_manager, entitlement_lookup)


@pytest.fixture
def standalone_rules(pool_manager, entitlement_lookup):
    return PoolRules(make_settings(standalone=True), pool_manager, entitlement_lookup)


@pytest.fixture(autouse=True)
def reset_tally_logger():
    """The CLI reconfigures the tally_engine logger; undo that between tests."""
    yield
    root = logging.getLogger("tally_engine")
    for handler in list(root.handlers):
        root.removeHandler(handler)
    root.setLevel(logging.NOTSET)
    root.propagate = True
