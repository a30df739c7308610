"""Pool quantity arithmetic: multipliers, virt limits and unlimited handling."""

import logging
from typing import Optional

from tally_engine.common.exceptions import InvalidAttributeError
from tally_engine.pools.models import UNLIMITED_QUANTITY, Product, ProductAttributes

logger = logging.getLogger(__name__)

UNLIMITED = "unlimited"


def calculate_quantity(quantity: int, product: Product, upstream_pool_id: Optional[str]) -> int:
    """
    Compute a pool's base quantity from a raw subscription quantity.

    Any negative quantity is unlimited (-1) and is never multiplied.
    Otherwise the quantity is multiplied by the product multiplier and, when
    this deployment is the origin of the subscription (no upstream pool id),
    by the product's ``instance_multiplier``. Downstream copies already
    carry the multiplied quantity.

    Raises InvalidAttributeError if ``instance_multiplier`` is not an integer.
    """
    if quantity < 0:
        return UNLIMITED_QUANTITY

    result = quantity * (product.multiplier if product.multiplier is not None else 1)

    multiplier = product.get_attribute(ProductAttributes.INSTANCE_MULTIPLIER)
    if multiplier is not None and upstream_pool_id is None:
        try:
            instance_multiplier = int(multiplier)
        except (TypeError, ValueError) as exc:
            raise InvalidAttributeError(
                f"Product '{product.id}' has a non-integer instance_multiplier: {multiplier!r}",
                attribute=ProductAttributes.INSTANCE_MULTIPLIER,
            ) from exc

        logger.debug("Increasing pool quantity for instance multiplier: %s", instance_multiplier)
        result = result * instance_multiplier

    return result


def get_virt_quantity(virt_limit: Optional[str], primary_quantity: int) -> Optional[str]:
    """
    Resolve the quantity of the bonus pool implied by a ``virt_limit``.

    Returns the quantity as a string ("-1" for unlimited), or None when no
    bonus pool should exist: no virt_limit, a non-integer virt_limit, or a
    virt_limit of zero or less.
    """
    if virt_limit is None:
        return None

    if virt_limit == UNLIMITED or primary_quantity == UNLIMITED_QUANTITY:
        return str(UNLIMITED_QUANTITY)

    try:
        virt_limit_int = int(virt_limit)
    except (TypeError, ValueError):
        logger.debug("Invalid virt_limit attribute %r, assuming no virt_limit necessary", virt_limit)
        return None

    if virt_limit_int > 0:
        return str(virt_limit_int * primary_quantity)

    return None


def parse_quantity(value: Optional[str]) -> int:
    """
    Parse a quantity attribute value.

    "unlimited" and negative numbers map to -1; anything unparseable is 0.
    """
    if value is None:
        return 0

    if value.strip().lower() == UNLIMITED:
        return UNLIMITED_QUANTITY

    try:
        quantity = int(value)
    except (TypeError, ValueError):
        return 0

    return UNLIMITED_QUANTITY if quantity < 0 else quantity
