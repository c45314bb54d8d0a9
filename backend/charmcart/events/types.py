"""Closed set of event payloads published by the cart core."""
from typing import List, Optional

from pydantic import BaseModel, ConfigDict

from charmcart.schemas.cart import CartItem, CartState, CartSummary
from charmcart.schemas.inventory import InventoryRecord
from charmcart.schemas.sync import ValidationReport


class _Event(BaseModel):
    model_config = ConfigDict(frozen=True)


class CartUpdated(_Event):
    summary: CartSummary


class CartItemAdded(_Event):
    item: CartItem
    summary: CartSummary


class CartItemRemoved(_Event):
    item_id: Optional[str]
    line_id: str
    summary: CartSummary


class CartItemUpdated(_Event):
    item_id: Optional[str]
    line_id: str
    quantity: int
    summary: CartSummary


class CartCleared(_Event):
    summary: CartSummary


class CartUndone(_Event):
    state: CartState


class CartRedone(_Event):
    state: CartState


class CartSynced(_Event):
    summary: CartSummary


class CartValidationFailed(_Event):
    report: ValidationReport


class CartSaveFailed(_Event):
    message: str
    attempts: int


class InventoryUpdated(_Event):
    records: List[InventoryRecord]


class InventoryChanged(_Event):
    """Ledger-side notification, published after a committed change."""

    records: List[InventoryRecord]


# events that mean "the cart's contents changed and should be persisted"
CART_CHANGE_EVENTS = (
    CartUpdated,
    CartItemAdded,
    CartItemRemoved,
    CartItemUpdated,
    CartCleared,
    CartUndone,
    CartRedone,
)

EVENT_TYPES = CART_CHANGE_EVENTS + (
    CartSynced,
    CartValidationFailed,
    CartSaveFailed,
    InventoryUpdated,
    InventoryChanged,
)
