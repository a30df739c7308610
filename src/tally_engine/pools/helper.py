"""Helpers for building pools from other pools and subscriptions."""

from typing import Optional

from tally_engine.pools.models import (
    PRIMARY_POOL_SUB_KEY,
    Pool,
    Product,
    SourceSubscription,
    Subscription,
)
from tally_engine.pools.quantity import parse_quantity


def clone_pool(
    source_pool: Pool,
    product: Optional[Product],
    quantity: str,
    attributes: dict[str, str],
    sub_key: str,
) -> Pool:
    """
    Create a new pool from a template pool.

    Dates and order metadata come from the template, as do its pool
    attributes; ``attributes`` is laid over them. The clone is linked to the
    template's subscription under ``sub_key``.
    """
    pool = Pool(
        quantity=parse_quantity(quantity),
        start_date=source_pool.start_date,
        end_date=source_pool.end_date,
        product=product,
        attributes=dict(source_pool.attributes),
        account_number=source_pool.account_number,
        order_number=source_pool.order_number,
        contract_number=source_pool.contract_number,
    )

    if source_pool.subscription_id is not None:
        pool.source_subscription = SourceSubscription(source_pool.subscription_id, sub_key)

    pool.attributes.update(attributes)
    return pool


def check_for_order_changes(existing_pool: Pool, pool: Pool) -> bool:
    """True if account, order or contract number differ between the two pools."""
    return (
        existing_pool.order_number != pool.order_number
        or existing_pool.account_number != pool.account_number
        or existing_pool.contract_number != pool.contract_number
    )


def convert_to_primary_pool(subscription: Subscription) -> Pool:
    """Build the (unsaved) primary pool for a subscription."""
    return Pool(
        quantity=subscription.quantity,
        start_date=subscription.start_date,
        end_date=subscription.end_date,
        product=subscription.product,
        source_subscription=SourceSubscription(subscription.id, PRIMARY_POOL_SUB_KEY),
        upstream_pool_id=subscription.upstream_pool_id,
        upstream_entitlement_id=subscription.upstream_entitlement_id,
        upstream_consumer_id=subscription.upstream_consumer_id,
        certificate=subscription.certificate,
        cdn=subscription.cdn,
        account_number=subscription.account_number,
        order_number=subscription.order_number,
        contract_number=subscription.contract_number,
    )
