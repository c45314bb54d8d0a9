"""
Error taxonomy for the cart core.

ValidationError is raised synchronously by CartManager and the ledger for bad
input; nothing changes when it is raised. InsufficientInventory travels inside
a ReservationResult rather than across the API. PersistenceError covers an
unreachable or failing store; CorruptedCartData is the unreadable-payload case
of it. MergeConflict describes a guest/user merge that had to drop a cart.
"""
from typing import List


class CartError(Exception):
    pass


class ValidationError(CartError, ValueError):
    pass


class InsufficientInventory(CartError):
    def __init__(self, shortfalls: List):
        self.shortfalls = list(shortfalls)
        detail = ", ".join(
            f"{s.item_id} short by {s.shortfall}" for s in self.shortfalls
        )
        super().__init__(f"Insufficient inventory: {detail}")


class PersistenceError(CartError):
    pass


class CorruptedCartData(PersistenceError):
    pass


class MergeConflict(CartError):
    def __init__(self, message: str, discarded: str):
        # discarded: "guest" or "user"
        self.discarded = discarded
        super().__init__(message)
