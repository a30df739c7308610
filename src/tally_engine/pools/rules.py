"""Rules for creating and refreshing pools during a refresh pools operation.

Nothing here persists anything. Synthesis returns the pools that need to be
created; reconciliation updates the pools it is handed in place and
describes what it changed with a PoolUpdate. Deleting pools is left to the
pool manager.
"""

import logging
from datetime import datetime
from typing import Collection, Iterable, Mapping, Optional

from tally_engine.common.config import TallySettings
from tally_engine.common.exceptions import IllegalPoolStateError
from tally_engine.pools.accumulator import StackedSubPoolValueAccumulator
from tally_engine.pools.helper import (
    check_for_order_changes,
    clone_pool,
    convert_to_primary_pool,
)
from tally_engine.pools.interfaces import EntitlementLookup, PoolManager
from tally_engine.pools.models import (
    DERIVED_POOL_SUB_KEY,
    PRIMARY_POOL_SUB_KEY,
    UNLIMITED_QUANTITY,
    Consumer,
    Entitlement,
    Pool,
    PoolAttributes,
    PoolType,
    PoolUpdate,
    Product,
    ProductAttributes,
    Subscription,
    is_true,
    normalize_quantity,
)
from tally_engine.pools.quantity import (
    UNLIMITED,
    calculate_quantity,
    get_virt_quantity,
    parse_quantity,
)

logger = logging.getLogger(__name__)


def _has_pool_with_sub_key(pools: Optional[Iterable[Pool]], sub_key: str) -> bool:
    return any(pool.subscription_sub_key == sub_key for pool in pools or ())


def create_bonus_pool(
    primary_pool: Pool,
    existing_pools: Optional[list[Pool]],
    managed: bool,
    standalone: bool,
) -> Optional[Pool]:
    """
    Build the bonus pool for a primary pool whose product carries a virt_limit.

    Returns None when no bonus pool is needed: the pool is not managed (a
    custom pool has no subscription to link a bonus pool to), the virt_limit
    is missing or invalid, or a derived pool already exists.

    Host-limited products, and every product in standalone deployments, get
    a pool restricted to unmapped guests.
    """
    attributes = primary_pool.product_attributes
    virt_quantity = get_virt_quantity(
        attributes.get(ProductAttributes.VIRT_LIMIT), primary_pool.quantity
    )

    logger.info("Checking if bonus pools need to be created for pool: %s", primary_pool)

    if not managed or virt_quantity is None or _has_pool_with_sub_key(existing_pools, DERIVED_POOL_SUB_KEY):
        return None

    host_limited = attributes.get(ProductAttributes.HOST_LIMITED) == "true"
    virt_attributes = {
        PoolAttributes.VIRT_ONLY: "true",
        PoolAttributes.DERIVED_POOL: "true",
        PoolAttributes.PHYSICAL_ONLY: "false",
    }
    if host_limited or standalone:
        virt_attributes[PoolAttributes.UNMAPPED_GUESTS_ONLY] = "true"

    # A bonus pool must never carry a usable virt_limit of its own, or the
    # next refresh would spawn a bonus pool for the bonus pool.
    virt_attributes[ProductAttributes.VIRT_LIMIT] = "0"

    # Only one derived pool exists per subscription, so the derived product wins
    product = primary_pool.derived_product or primary_pool.product

    bonus_pool = clone_pool(
        primary_pool, product, virt_quantity, virt_attributes, DERIVED_POOL_SUB_KEY
    )
    logger.info(
        "Creating new derived pool: %s", bonus_pool,
        extra={"subscription_id": primary_pool.subscription_id},
    )
    return bonus_pool


def process_virt_limit_pools(
    existing_pools: list[Pool],
    attributes: Mapping[str, str],
    existing_pool: Pool,
    expected_quantity: int,
    standalone: bool,
) -> int:
    """
    Adjust the expected quantity of a virt-limited derived pool.

    ``attributes`` are the subscription's current product attributes. Only
    pools flagged derived and virt-only whose own attributes or product still
    mention virt_limit are affected; every other pool keeps
    ``expected_quantity``.

    May mark ``existing_pool`` for deletion when the subscription dropped its
    virt_limit.
    """
    # Derived products graduate to pool products and carry no virt_limit,
    # so the pool attribute is checked as well.
    if not (
        existing_pool.has_attribute(PoolAttributes.DERIVED_POOL)
        and is_true(existing_pool.get_attribute(PoolAttributes.VIRT_ONLY))
        and (
            existing_pool.has_attribute(ProductAttributes.VIRT_LIMIT)
            or existing_pool.has_product_attribute(ProductAttributes.VIRT_LIMIT)
        )
    ):
        return expected_quantity

    if ProductAttributes.VIRT_LIMIT not in attributes:
        logger.warning(
            "virt_limit attribute has been removed from subscription, "
            "flagging pool for deletion if supported: %s", existing_pool.id,
            extra={"pool_id": existing_pool.id},
        )
        existing_pool.marked_for_delete = True
        # Older peers ignore the delete flag; a zero quantity disables the pool there too
        return 0

    virt_limit_str = attributes[ProductAttributes.VIRT_LIMIT]

    if virt_limit_str == UNLIMITED:
        # 0 only happens when the rules disabled the pool; leave it disabled
        return 0 if existing_pool.quantity == 0 else UNLIMITED_QUANTITY

    try:
        virt_limit = int(virt_limit_str)
    except (TypeError, ValueError):
        logger.debug("Ignoring invalid virt_limit %r on pool %s", virt_limit_str, existing_pool.id)
        return expected_quantity

    if standalone and existing_pool.get_attribute(PoolAttributes.UNMAPPED_GUESTS_ONLY) != "true":
        # Upstream already accounted for virtualization
        return virt_limit

    # Assumes a single base (non-derived) pool per subscription: the amount
    # it exported downstream is taken off before applying the virt_limit.
    adjust = 0
    primary_unlimited = False
    for sibling in existing_pools:
        if sibling.get_attribute(PoolAttributes.DERIVED_POOL) is None:
            adjust = sibling.exported
            if sibling.quantity == UNLIMITED_QUANTITY:
                primary_unlimited = True

    if primary_unlimited and existing_pool.type in (PoolType.BONUS, PoolType.UNMAPPED_GUEST):
        return UNLIMITED_QUANTITY

    return (expected_quantity - adjust) * virt_limit


def check_for_date_change(
    start: Optional[datetime], end: Optional[datetime], existing_pool: Pool, force: bool
) -> bool:
    dates_changed = force or start != existing_pool.start_date or end != existing_pool.end_date

    if dates_changed:
        existing_pool.start_date = start
        existing_pool.end_date = end
        return True

    return False


def check_for_changed_products(
    incoming_product: Optional[Product],
    existing_pool: Pool,
    changed_products: Optional[Mapping[str, Product]],
    force: bool,
) -> bool:
    """Swap in ``incoming_product`` if it differs from the pool's product or was changed upstream."""
    existing_product = existing_pool.product
    pid = existing_product.id if existing_product is not None else None

    product_changed = False
    if not force:
        if pid is not None:
            product_changed = (
                incoming_product is None
                or pid != incoming_product.id
                or (changed_products is not None and pid in changed_products)
            )
        else:
            product_changed = incoming_product is not None

    if product_changed or force:
        existing_pool.product = incoming_product
        return True

    return False


def check_for_order_data_changes(pool: Pool, existing_pool: Pool, force: bool) -> bool:
    if force or check_for_order_changes(existing_pool, pool):
        existing_pool.account_number = pool.account_number
        existing_pool.order_number = pool.order_number
        existing_pool.contract_number = pool.contract_number
        return True

    return False


def _group_by_stack_id(entitlements: Iterable[Entitlement]) -> dict[str, list[Entitlement]]:
    grouped: dict[str, list[Entitlement]] = {}
    for ent in entitlements:
        if ent.pool is None:
            continue
        grouped.setdefault(ent.pool.stack_id, []).append(ent)
    return grouped


class PoolRules:
    """Creation and refresh rules for subscription and stack-derived pools."""

    def __init__(
        self,
        settings: TallySettings,
        pool_manager: PoolManager,
        entitlement_lookup: EntitlementLookup,
    ):
        self.settings = settings
        self.standalone = settings.standalone
        self.pool_manager = pool_manager
        self.entitlement_lookup = entitlement_lookup

    # ── Synthesis ──

    def create_and_enrich_pools_for_subscription(
        self, subscription: Subscription, existing_pools: Optional[list[Pool]] = None
    ) -> list[Pool]:
        return self.create_and_enrich_pools(convert_to_primary_pool(subscription), existing_pools)

    def create_and_enrich_pools(
        self, primary_pool: Pool, existing_pools: Optional[list[Pool]] = None
    ) -> list[Pool]:
        """
        Create any pools that need to be created for the given pool.

        Attribute changes can require new pools even when pools already exist
        for the subscription, so the existing pools are passed in to decide
        what is missing. For a genuinely new subscription the list is empty.

        Returns the pools to create: the primary pool, the bonus pool, both,
        or neither. Existing pools are never modified.
        """
        if primary_pool.product is None:
            raise IllegalPoolStateError(f"Pool {primary_pool!r} has no product")

        existing_pools = existing_pools or []
        pools: list[Pool] = []

        primary_pool.quantity = calculate_quantity(
            primary_pool.quantity if primary_pool.quantity is not None else 1,
            primary_pool.product,
            primary_pool.upstream_pool_id,
        )

        # Surface virt_only on the pool itself so downstream consumers see it
        virt_only = primary_pool.product_attributes.get(ProductAttributes.VIRT_ONLY)
        if virt_only:
            primary_pool.set_attribute(PoolAttributes.VIRT_ONLY, virt_only)
        else:
            primary_pool.remove_attribute(PoolAttributes.VIRT_ONLY)

        logger.info("Checking if pools need to be created for: %s", primary_pool)
        if primary_pool.subscription_id is not None:
            if not _has_pool_with_sub_key(existing_pools, PRIMARY_POOL_SUB_KEY):
                if primary_pool.subscription_sub_key == DERIVED_POOL_SUB_KEY:
                    # A bonus pool can come from a primary pool, never the reverse
                    raise IllegalPoolStateError("Cannot create primary pool from bonus pool")

                pools.append(primary_pool)
                logger.info(
                    "Creating new primary pool: %s", primary_pool,
                    extra={"subscription_id": primary_pool.subscription_id},
                )
        elif primary_pool.id is None:
            # Net-new pools with no subscription, e.g. custom pools
            pools.append(primary_pool)

        bonus_pool = create_bonus_pool(
            primary_pool,
            existing_pools,
            managed=self.pool_manager.is_managed(primary_pool),
            standalone=self.standalone,
        )
        if bonus_pool is not None:
            pools.append(bonus_pool)

        return pools

    # ── Subscription pool refresh ──

    def update_pools(
        self,
        primary_pool: Pool,
        existing_pools: list[Pool],
        original_quantity: int,
        changed_products: Optional[Mapping[str, Product]] = None,
        force: bool = False,
    ) -> list[PoolUpdate]:
        """
        Bring the existing pools of a subscription in line with its primary pool.

        ``original_quantity`` is the subscription quantity before multipliers.
        ``changed_products`` maps product ids changed by this refresh. With
        ``force`` every field is rewritten even when no change is detected.

        Returns an update for each pool that changed.
        """
        logger.debug("Refreshing pools for existing primary pool: %s", primary_pool)
        logger.debug("  existing pools: %d", len(existing_pools))

        updates: list[PoolUpdate] = []
        attributes = primary_pool.product_attributes

        product = primary_pool.product
        derived = primary_pool.derived_product

        for existing_pool in existing_pools:
            logger.debug("Checking pool: %s", existing_pool)

            # Upstream linkage on the primary pool is authoritative
            if (existing_pool.subscription_sub_key or "").lower() == PRIMARY_POOL_SUB_KEY:
                existing_pool.upstream_pool_id = primary_pool.upstream_pool_id
                existing_pool.upstream_entitlement_id = primary_pool.upstream_entitlement_id
                existing_pool.upstream_consumer_id = primary_pool.upstream_consumer_id
                existing_pool.cdn = primary_pool.cdn
                existing_pool.certificate = primary_pool.certificate

            update = PoolUpdate(existing_pool)

            update.dates_changed = check_for_date_change(
                primary_pool.start_date, primary_pool.end_date, existing_pool, force
            )
            update.quantity_changed = self._check_for_quantity_change(
                primary_pool, existing_pool, original_quantity, existing_pools, attributes, force
            )

            if not existing_pool.marked_for_delete:
                use_derived = derived is not None and is_true(
                    existing_pool.get_attribute(PoolAttributes.DERIVED_POOL)
                )
                update.products_changed = check_for_changed_products(
                    derived if use_derived else product, existing_pool, changed_products, force
                )
                update.order_changed = check_for_order_data_changes(primary_pool, existing_pool, force)

            if update.changed():
                updates.append(update)
            else:
                logger.debug("  no updates required")

        return updates

    def _check_for_quantity_change(
        self,
        pool: Pool,
        existing_pool: Pool,
        original_quantity: int,
        existing_pools: list[Pool],
        attributes: Mapping[str, str],
        force: bool,
    ) -> bool:
        # Normally the primary pool's quantity; virt-limited derived pools scale it
        expected_quantity = calculate_quantity(original_quantity, pool.product, pool.upstream_pool_id)
        expected_quantity = normalize_quantity(process_virt_limit_pools(
            existing_pools, attributes, existing_pool, expected_quantity, self.standalone
        ))

        if force or expected_quantity != existing_pool.quantity:
            existing_pool.quantity = expected_quantity
            return True

        return False

    # ── Floating / stack-derived pool refresh ──

    def update_floating_pools(
        self,
        floating_pools: Iterable[Pool],
        changed_products: Optional[Mapping[str, Product]] = None,
        force: bool = False,
    ) -> list[PoolUpdate]:
        """Refresh pools with no subscription tied directly to them."""
        updates: list[PoolUpdate] = []
        for pool in floating_pools:
            if pool.subscription_id is not None or pool.is_development_pool:
                continue

            if pool.source_stack is None:
                continue

            if pool.source_stack.source_consumer is None:
                logger.error(
                    "Stack derived pool has no source consumer: %s", pool.id,
                    extra={"pool_id": pool.id},
                )
                continue

            update = self.update_pool_from_stack(pool, changed_products, force)
            if update.changed():
                updates.append(update)

        return updates

    def update_pool_from_stack(
        self,
        pool: Pool,
        changed_products: Optional[Mapping[str, Product]] = None,
        force: bool = False,
    ) -> PoolUpdate:
        stacked_ents = self.entitlement_lookup.find_by_stack_id(
            pool.source_stack.source_consumer, pool.source_stack_id
        )
        return self.update_pool_from_stacked_entitlements(pool, stacked_ents, changed_products, force)

    def update_pools_from_stack(
        self,
        consumer: Consumer,
        pools: Collection[Pool],
        new_entitlements: Optional[Iterable[Entitlement]] = None,
        already_deleted_pool_ids: Optional[Collection[str]] = None,
        delete_if_no_stacked_ents: bool = False,
    ) -> list[PoolUpdate]:
        """
        Refresh the stack-derived pools of one consumer.

        ``new_entitlements`` are entitlements not yet visible to the lookup.
        Pools whose stack has no entitlements left are handed to the pool
        manager for deletion when ``delete_if_no_stacked_ents`` is set.
        """
        pools = list(pools)
        source_stack_ids = {pool.source_stack_id for pool in pools}

        all_entitlements = list(self.entitlement_lookup.find_by_stack_ids(consumer, source_stack_ids))
        if new_entitlements:
            all_entitlements.extend(new_entitlements)

        return self._update_pools_with_stacking_entitlements(
            pools,
            _group_by_stack_id(all_entitlements),
            already_deleted_pool_ids,
            delete_if_no_stacked_ents,
        )

    def bulk_update_pools_from_stack(
        self,
        consumers: Iterable[Consumer],
        pools: Collection[Pool],
        already_deleted_pool_ids: Optional[Collection[str]] = None,
        delete_if_no_stacked_ents: bool = False,
    ) -> list[PoolUpdate]:
        """Refresh stack-derived pools for many consumers with a single lookup."""
        pools = list(pools)
        consumer_uuids = {consumer.uuid for consumer in consumers}
        logger.debug("Bulk updating %d pools for %d consumers.", len(pools), len(consumer_uuids))

        source_stack_ids = {pool.source_stack_id for pool in pools}
        logger.debug("Found %d source stacks", len(source_stack_ids))

        stacking_entitlements = self.entitlement_lookup.find_by_stack_ids(None, source_stack_ids)
        logger.debug("found %d stacking entitlements.", len(stacking_entitlements))

        filtered = [
            ent for ent in stacking_entitlements
            if ent.consumer is not None and ent.consumer.uuid in consumer_uuids
        ]

        return self._update_pools_with_stacking_entitlements(
            pools,
            _group_by_stack_id(filtered),
            already_deleted_pool_ids,
            delete_if_no_stacked_ents,
        )

    def _update_pools_with_stacking_entitlements(
        self,
        pools: list[Pool],
        entitlements_by_stack_id: dict[str, list[Entitlement]],
        already_deleted_pool_ids: Optional[Collection[str]],
        delete_if_no_stacked_ents: bool,
    ) -> list[PoolUpdate]:
        updates: list[PoolUpdate] = []
        pools_to_delete: list[Pool] = []

        for pool in pools:
            entitlements = entitlements_by_stack_id.get(pool.source_stack_id)
            if entitlements:
                updates.append(self.update_pool_from_stacked_entitlements(pool, entitlements, {}, False))
            elif delete_if_no_stacked_ents:
                pools_to_delete.append(pool)

        if pools_to_delete:
            logger.info("Deleting %d stack derived pools with no stacked entitlements", len(pools_to_delete))
            self.pool_manager.delete_pools(pools_to_delete, already_deleted_pool_ids)

        return updates

    def update_pool_from_stacked_entitlements(
        self,
        pool: Pool,
        stacked_ents: Optional[Collection[Entitlement]],
        changed_products: Optional[Mapping[str, Product]] = None,
        force: bool = False,
    ) -> PoolUpdate:
        """
        Re-derive a stack-derived pool from the entitlements in its stack.

        Quantity follows the virt_limit of the eldest virt-limited
        entitlement (left alone when there is none), dates span every
        stacked pool, and product and order data come from the eldest
        entitlement. If anything changed, every entitlement drawing from the
        pool is marked dirty so it is regenerated on next check-in.
        """
        update = PoolUpdate(pool)

        stacked_ents = [ent for ent in stacked_ents or () if ent.pool is not None]
        if not stacked_ents:
            return update

        pool.source_entitlement = None
        pool.source_subscription = None

        acc = StackedSubPoolValueAccumulator(stacked_ents)

        eldest_with_virt_limit = acc.eldest_with_virt_limit
        if eldest_with_virt_limit is not None:
            virt_limit = eldest_with_virt_limit.pool.product_attributes.get(ProductAttributes.VIRT_LIMIT)
            quantity = parse_quantity(virt_limit)

            if force or quantity != pool.quantity:
                pool.quantity = quantity
                update.quantity_changed = True

        update.dates_changed = check_for_date_change(acc.start_date, acc.end_date, pool, force)

        eldest_pool = acc.eldest.pool
        product = eldest_pool.derived_product or eldest_pool.product

        product_attributes = product.attributes if product is not None else {}
        update.product_attributes_changed = force or pool.product_attributes != product_attributes

        update.products_changed = check_for_changed_products(product, pool, changed_products, force)
        update.order_changed = check_for_order_data_changes(eldest_pool, pool, force)

        if update.changed():
            for ent in pool.entitlements:
                ent.dirty = True

        return update
