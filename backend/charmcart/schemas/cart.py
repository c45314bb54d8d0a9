"""
Cart value types.

Every type here is an immutable pydantic model. A CartState is always built
through CartState.build so its totals are a pure function of its lines and the
pricing rules; nothing updates a snapshot in place.
"""
from collections import Counter
from datetime import datetime, timezone
from decimal import Decimal
from typing import Annotated, Any, Dict, Iterable, List, Literal, Optional, Tuple, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from charmcart.config import Settings, settings
from charmcart.errors import ValidationError
from charmcart.utils.money import ZERO, percent_of, round_money, to_decimal


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_line_id() -> str:
    return uuid4().hex


class CatalogItem(BaseModel):
    """A catalog entry offered to the shopper; its price is captured when added."""

    model_config = ConfigDict(frozen=True)

    item_id: str
    title: str
    price: Decimal = Field(ge=0)


class DesignPayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    data: Dict[str, Any] = Field(default_factory=dict)
    # catalog ids consumed by one unit of the design; repeats count
    component_ids: Tuple[str, ...] = ()


class DesignMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: Optional[str] = None
    description: Optional[str] = None
    component_prices: Dict[str, Decimal] = Field(default_factory=dict)
    thumbnail_url: Optional[str] = None
    requires_consultation: bool = False


class _CartLine(BaseModel):
    model_config = ConfigDict(frozen=True)

    line_id: str = Field(default_factory=new_line_id)
    title: str
    quantity: int = Field(ge=1)
    unit_price: Decimal = Field(ge=0)
    added_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def line_total(self) -> Decimal:
        return round_money(self.unit_price * self.quantity)

    def with_quantity(self, quantity: int, now: Optional[datetime] = None):
        return self.model_copy(
            update={"quantity": quantity, "updated_at": now or utcnow()}
        )


class StandardItem(_CartLine):
    kind: Literal["standard"] = "standard"
    item_id: str


class CustomDesignItem(_CartLine):
    kind: Literal["custom_design"] = "custom_design"
    item_id: None = None
    design: DesignPayload
    metadata: DesignMetadata = Field(default_factory=DesignMetadata)


CartItem = Annotated[Union[StandardItem, CustomDesignItem], Field(discriminator="kind")]

_ITEMS = TypeAdapter(List[CartItem])


def items_equivalent(a: CartItem, b: CartItem) -> bool:
    """Two lines merge only when both are standard items for the same catalog id."""
    if isinstance(a, CustomDesignItem) or isinstance(b, CustomDesignItem):
        return False
    if isinstance(a, StandardItem) and isinstance(b, StandardItem):
        return a.item_id == b.item_id
    raise TypeError(f"Unknown cart line type: {type(a).__name__}/{type(b).__name__}")


def item_requirements(item: CartItem) -> Dict[str, int]:
    """Catalog units a line consumes from inventory."""
    if isinstance(item, StandardItem):
        return {item.item_id: item.quantity}
    if isinstance(item, CustomDesignItem):
        per_unit = Counter(item.design.component_ids)
        return {cid: n * item.quantity for cid, n in per_unit.items()}
    raise TypeError(f"Unknown cart line type: {type(item).__name__}")


class PricingRules(BaseModel):
    model_config = ConfigDict(frozen=True)

    currency: str = "USD"
    tax_rate: Decimal = Decimal("0.08")
    free_shipping_threshold: Decimal = Decimal("75")
    standard_shipping: Decimal = Decimal("12.99")
    max_cart_items: int = 50
    max_quantity_per_item: Optional[int] = None
    design_base_fee: Decimal = Decimal("25")

    @classmethod
    def from_settings(cls, s: Settings = settings) -> "PricingRules":
        return cls(
            currency=s.CURRENCY,
            tax_rate=s.TAX_RATE,
            free_shipping_threshold=s.FREE_SHIPPING_THRESHOLD,
            standard_shipping=s.STANDARD_SHIPPING,
            max_cart_items=s.MAX_CART_ITEMS,
            max_quantity_per_item=s.MAX_QUANTITY_PER_ITEM,
            design_base_fee=s.DESIGN_BASE_FEE,
        )

    def design_price(self, design: DesignPayload, metadata: DesignMetadata) -> Decimal:
        components = sum(
            (to_decimal(metadata.component_prices.get(cid)) for cid in design.component_ids),
            Decimal("0"),
        )
        complexity = max(Decimal("1"), Decimal(len(design.component_ids)) / Decimal("5"))
        return round_money(components + self.design_base_fee * complexity)

    def line_cap(self) -> int:
        """Most units a single line may hold."""
        if self.max_quantity_per_item is None:
            return self.max_cart_items
        return min(self.max_quantity_per_item, self.max_cart_items)

    def check_line(self, quantity: int) -> None:
        if quantity > self.line_cap():
            raise ValidationError(f"Maximum {self.line_cap()} units allowed per item")

    def check_cart(self, items: Iterable["CartItem"]) -> None:
        """Raise ValidationError if a line or the whole cart is over its limit."""
        total = 0
        for item in items:
            self.check_line(item.quantity)
            total += item.quantity
        if total > self.max_cart_items:
            raise ValidationError(f"Cart cannot hold more than {self.max_cart_items} items")


class CartSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    item_count: int
    subtotal: Decimal
    tax: Decimal
    shipping: Decimal
    discount: Decimal
    total: Decimal
    currency: str
    has_items: bool


class CartState(BaseModel):
    model_config = ConfigDict(frozen=True)

    items: Tuple[CartItem, ...] = ()
    currency: str = "USD"
    promo_code: Optional[str] = None
    discount_percent: Decimal = Field(default=Decimal("0"), ge=0, le=100)
    item_count: int = 0
    subtotal: Decimal = ZERO
    tax: Decimal = ZERO
    shipping: Decimal = ZERO
    discount: Decimal = ZERO
    total: Decimal = ZERO

    @classmethod
    def empty(cls, pricing: PricingRules) -> "CartState":
        return cls.build((), pricing)

    @classmethod
    def build(
        cls,
        items: Iterable[CartItem],
        pricing: PricingRules,
        promo_code: Optional[str] = None,
        discount_percent: Decimal = Decimal("0"),
    ) -> "CartState":
        items = tuple(items)
        subtotal = round_money(
            sum((i.unit_price * i.quantity for i in items), Decimal("0"))
        )
        tax = round_money(subtotal * pricing.tax_rate)
        if not items or subtotal >= pricing.free_shipping_threshold:
            shipping = ZERO
        else:
            shipping = round_money(pricing.standard_shipping)
        discount = percent_of(subtotal, discount_percent) if promo_code else ZERO
        return cls(
            items=items,
            currency=pricing.currency,
            promo_code=promo_code,
            discount_percent=to_decimal(discount_percent) if promo_code else Decimal("0"),
            item_count=sum(i.quantity for i in items),
            subtotal=subtotal,
            tax=tax,
            shipping=shipping,
            discount=discount,
            total=subtotal + tax + shipping - discount,
        )

    def with_items(self, items: Iterable[CartItem], pricing: PricingRules) -> "CartState":
        return CartState.build(items, pricing, self.promo_code, self.discount_percent)

    def with_promo(
        self, pricing: PricingRules, promo_code: Optional[str], discount_percent=Decimal("0")
    ) -> "CartState":
        return CartState.build(self.items, pricing, promo_code, to_decimal(discount_percent))

    def find_line(self, line_id: str) -> Optional[CartItem]:
        return next((i for i in self.items if i.line_id == line_id), None)

    @property
    def is_empty(self) -> bool:
        return not self.items

    def summary(self) -> CartSummary:
        return CartSummary(
            item_count=self.item_count,
            subtotal=self.subtotal,
            tax=self.tax,
            shipping=self.shipping,
            discount=self.discount,
            total=self.total,
            currency=self.currency,
            has_items=bool(self.items),
        )

    def to_payload(self) -> dict:
        return self.model_dump(mode="json")

    @classmethod
    def from_payload(cls, data: dict, pricing: PricingRules) -> "CartState":
        """Rebuild from stored JSON; stored totals are ignored and recomputed."""
        items = _ITEMS.validate_python(data.get("items") or [])
        return cls.build(
            items,
            pricing,
            data.get("promo_code"),
            to_decimal(data.get("discount_percent") or 0),
        )


class UserCartSummary(BaseModel):
    user_id: str
    item_count: int
    total_value: Decimal
    last_updated: datetime


class CartStatistics(BaseModel):
    active_user_carts: int
    active_guest_carts: int
    total_cart_value: Decimal
    average_cart_value: Decimal
