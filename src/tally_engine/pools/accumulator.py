"""Aggregate facts over entitlements that share a stack id."""

from datetime import datetime
from typing import Iterable, Optional

from tally_engine.pools.models import Entitlement, ProductAttributes


def _age_key(entitlement: Entitlement) -> tuple:
    # Entitlements with no start date sort last; equal start dates break on id.
    return (
        entitlement.start_date is None,
        entitlement.start_date or datetime.max,
        entitlement.id is None,
        entitlement.id or "",
    )


class StackedSubPoolValueAccumulator:
    """
    Reduce a stack's entitlements to the values a stack-derived pool needs.

    - start_date: earliest start of any entitlement's pool
    - end_date: latest end of any entitlement's pool
    - eldest: the entitlement with the earliest start date
    - eldest_with_virt_limit: the same, among entitlements whose pool's
      product carries a virt_limit (None when there are none)

    Entitlements with no pool are ignored. Ties on start date resolve to the lowest entitlement id; entitlements
    that still tie keep the first one seen.
    """

    def __init__(self, stacked_ents: Iterable[Entitlement]):
        self.start_date: Optional[datetime] = None
        self.end_date: Optional[datetime] = None
        self.eldest: Optional[Entitlement] = None
        self.eldest_with_virt_limit: Optional[Entitlement] = None

        for ent in stacked_ents:
            self._accumulate(ent)

        if self.eldest is None:
            raise ValueError("Cannot accumulate a stack with no pooled entitlements")

    def _accumulate(self, ent: Entitlement) -> None:
        pool = ent.pool
        if pool is None:
            return

        if self.eldest is None or _age_key(ent) < _age_key(self.eldest):
            self.eldest = ent

        if pool.has_product_attribute(ProductAttributes.VIRT_LIMIT):
            if self.eldest_with_virt_limit is None or _age_key(ent) < _age_key(self.eldest_with_virt_limit):
                self.eldest_with_virt_limit = ent

        if pool.start_date is not None and (self.start_date is None or pool.start_date < self.start_date):
            self.start_date = pool.start_date

        if pool.end_date is not None and (self.end_date is None or pool.end_date > self.end_date):
            self.end_date = pool.end_date
