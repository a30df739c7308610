"""Tally-Engine: subscription pool creation and reconciliation rules."""

from tally_engine.pools.accumulator import StackedSubPoolValueAccumulator
from tally_engine.pools.models import Consumer, Entitlement, Pool, PoolUpdate, Product, Subscription
from tally_engine.pools.quantity import calculate_quantity, get_virt_quantity, parse_quantity
from tally_engine.pools.rules import PoolRules

__all__ = [
    "PoolRules",
    "StackedSubPoolValueAccumulator",
    "Consumer",
    "Entitlement",
    "Pool",
    "PoolUpdate",
    "Product",
    "Subscription",
    "calculate_quantity",
    "get_virt_quantity",
    "parse_quantity",
]
__version__ = "0.1.0"
