from charmcart.events.channel import EventChannel, Subscription
from charmcart.events.types import (
    CART_CHANGE_EVENTS,
    EVENT_TYPES,
    CartCleared,
    CartItemAdded,
    CartItemRemoved,
    CartItemUpdated,
    CartRedone,
    CartSaveFailed,
    CartSynced,
    CartUndone,
    CartUpdated,
    CartValidationFailed,
    InventoryChanged,
    InventoryUpdated,
)

__all__ = [
    "CART_CHANGE_EVENTS",
    "EVENT_TYPES",
    "CartCleared",
    "CartItemAdded",
    "CartItemRemoved",
    "CartItemUpdated",
    "CartRedone",
    "CartSaveFailed",
    "CartSynced",
    "CartUndone",
    "CartUpdated",
    "CartValidationFailed",
    "EventChannel",
    "InventoryChanged",
    "InventoryUpdated",
    "Subscription",
]
