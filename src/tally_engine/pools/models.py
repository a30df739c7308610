"""Domain models for pools, products and entitlements."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

UNLIMITED_QUANTITY = -1

PRIMARY_POOL_SUB_KEY = "primary"
DERIVED_POOL_SUB_KEY = "derived"


class ProductAttributes:
    """Product attribute names read by the pool rules."""

    INSTANCE_MULTIPLIER = "instance_multiplier"
    VIRT_LIMIT = "virt_limit"
    VIRT_ONLY = "virt_only"
    HOST_LIMITED = "host_limited"
    STACKING_ID = "stacking_id"


class PoolAttributes:
    """Pool attribute names written by the pool rules."""

    VIRT_ONLY = "virt_only"
    DERIVED_POOL = "derived_pool"
    PHYSICAL_ONLY = "physical_only"
    UNMAPPED_GUESTS_ONLY = "unmapped_guests_only"
    DEVELOPMENT_POOL = "dev_pool"


class PoolType(str, Enum):
    NORMAL = "normal"
    BONUS = "bonus"
    UNMAPPED_GUEST = "unmapped_guest"
    ENTITLEMENT_DERIVED = "entitlement_derived"
    STACK_DERIVED = "stack_derived"
    DEVELOPMENT = "development"


def is_true(value: Optional[str]) -> bool:
    return value is not None and value.strip().lower() == "true"


def normalize_quantity(quantity: Optional[int]) -> Optional[int]:
    """Collapse any quantity below -1 to unlimited."""
    if quantity is not None and quantity < UNLIMITED_QUANTITY:
        return UNLIMITED_QUANTITY
    return quantity


@dataclass
class Product:
    id: str
    name: str = ""
    multiplier: Optional[int] = None
    attributes: dict[str, str] = field(default_factory=dict)
    derived_product: Optional["Product"] = None
    provided_products: list["Product"] = field(default_factory=list)

    def get_attribute(self, key: str) -> Optional[str]:
        return self.attributes.get(key)

    def has_attribute(self, key: str) -> bool:
        return key in self.attributes


@dataclass(frozen=True)
class Consumer:
    uuid: str
    name: str = ""


@dataclass
class SourceSubscription:
    subscription_id: str
    subscription_sub_key: str = PRIMARY_POOL_SUB_KEY


@dataclass
class SourceStack:
    source_stack_id: str
    source_consumer: Optional[Consumer] = None


@dataclass(eq=False)
class Pool:
    """A quantity of consumable entitlement capacity.

    Pools compare by identity: two unsaved pools with equal fields are still
    different pools.
    """

    id: Optional[str] = None
    quantity: Optional[int] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    product: Optional[Product] = None
    attributes: dict[str, str] = field(default_factory=dict)

    source_subscription: Optional[SourceSubscription] = None
    source_stack: Optional[SourceStack] = None
    source_entitlement: Optional["Entitlement"] = None

    # Upstream linkage, authoritative when mirrored from a manifest
    upstream_pool_id: Optional[str] = None
    upstream_entitlement_id: Optional[str] = None
    upstream_consumer_id: Optional[str] = None
    certificate: Optional[str] = None
    cdn: Optional[str] = None

    account_number: Optional[str] = None
    order_number: Optional[str] = None
    contract_number: Optional[str] = None

    marked_for_delete: bool = False
    exported: int = 0
    entitlements: list["Entitlement"] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.quantity = normalize_quantity(self.quantity)

    # ── Attributes ──

    def get_attribute(self, key: str) -> Optional[str]:
        return self.attributes.get(key)

    def has_attribute(self, key: str) -> bool:
        return key in self.attributes

    def set_attribute(self, key: str, value: str) -> None:
        self.attributes[key] = value

    def remove_attribute(self, key: str) -> None:
        self.attributes.pop(key, None)

    @property
    def product_attributes(self) -> dict[str, str]:
        return self.product.attributes if self.product is not None else {}

    def has_product_attribute(self, key: str) -> bool:
        return key in self.product_attributes

    @property
    def derived_product(self) -> Optional[Product]:
        return self.product.derived_product if self.product is not None else None

    # ── Linkage ──

    @property
    def subscription_id(self) -> Optional[str]:
        if self.source_subscription is None:
            return None
        return self.source_subscription.subscription_id

    @property
    def subscription_sub_key(self) -> Optional[str]:
        if self.source_subscription is None:
            return None
        return self.source_subscription.subscription_sub_key

    @property
    def source_stack_id(self) -> Optional[str]:
        return self.source_stack.source_stack_id if self.source_stack is not None else None

    @property
    def stack_id(self) -> Optional[str]:
        """Stacking id of the pool's product, shared by stackable entitlements."""
        return self.product_attributes.get(ProductAttributes.STACKING_ID)

    # ── Derived state ──

    @property
    def is_unlimited(self) -> bool:
        return self.quantity == UNLIMITED_QUANTITY

    @property
    def is_development_pool(self) -> bool:
        return is_true(self.get_attribute(PoolAttributes.DEVELOPMENT_POOL))

    @property
    def is_unmapped_guest_pool(self) -> bool:
        return is_true(self.get_attribute(PoolAttributes.UNMAPPED_GUESTS_ONLY))

    @property
    def type(self) -> PoolType:
        if self.has_attribute(PoolAttributes.DERIVED_POOL):
            if self.source_entitlement is not None:
                return PoolType.ENTITLEMENT_DERIVED
            if self.source_stack is not None:
                return PoolType.STACK_DERIVED
            if self.is_unmapped_guest_pool:
                return PoolType.UNMAPPED_GUEST
            return PoolType.BONUS

        if self.is_development_pool:
            return PoolType.DEVELOPMENT

        return PoolType.NORMAL

    def __repr__(self) -> str:
        product_id = self.product.id if self.product is not None else None
        return (
            f"Pool(id={self.id!r}, product={product_id!r}, quantity={self.quantity!r}, "
            f"subscription={self.subscription_id!r}/{self.subscription_sub_key!r})"
        )


@dataclass(eq=False)
class Entitlement:
    id: Optional[str] = None
    pool: Optional[Pool] = None
    consumer: Optional[Consumer] = None
    quantity: int = 1
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    dirty: bool = False


@dataclass
class Subscription:
    """Upstream subscription facts used to build a primary pool."""

    id: str
    product: Product
    quantity: Optional[int] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    account_number: Optional[str] = None
    order_number: Optional[str] = None
    contract_number: Optional[str] = None
    upstream_pool_id: Optional[str] = None
    upstream_entitlement_id: Optional[str] = None
    upstream_consumer_id: Optional[str] = None
    certificate: Optional[str] = None
    cdn: Optional[str] = None


@dataclass
class PoolUpdate:
    """What changed on one pool during a refresh."""

    pool: Pool
    dates_changed: bool = False
    quantity_changed: bool = False
    products_changed: bool = False
    order_changed: bool = False
    # Attributes live on the product; tracked for callers that still key off it
    product_attributes_changed: bool = False

    def changed(self) -> bool:
        return (
            self.dates_changed
            or self.quantity_changed
            or self.products_changed
            or self.order_changed
            or self.product_attributes_changed
        )

    def summary(self) -> list[str]:
        """Names of the flags that are set, in a stable order."""
        flags = {
            "dates": self.dates_changed,
            "quantity": self.quantity_changed,
            "products": self.products_changed,
            "order": self.order_changed,
            "product_attributes": self.product_attributes_changed,
        }
        return [name for name, value in flags.items() if value]
