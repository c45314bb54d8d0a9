import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable, List, Optional, Tuple

from charmcart.config import settings
from charmcart.errors import ValidationError
from charmcart.events import (
    CartCleared,
    CartItemAdded,
    CartItemRemoved,
    CartItemUpdated,
    CartRedone,
    CartUndone,
    CartUpdated,
    EventChannel,
)
from charmcart.schemas.cart import (
    CartItem,
    CartState,
    CartSummary,
    CatalogItem,
    CustomDesignItem,
    DesignMetadata,
    DesignPayload,
    PricingRules,
    StandardItem,
    items_equivalent,
    utcnow,
)
from charmcart.utils.money import to_decimal

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class HistoryEntry:
    state: CartState
    seq: int


class CartManager:
    """
    Owns the shopper's working cart and its undo/redo history.

    The current state is an immutable CartState; every mutation builds a new
    one, pushes the previous one onto the undo stack and clears redo. Rejected
    input raises ValidationError and leaves state and history as they were.
    Not thread-safe: one manager per shopper session.
    """

    def __init__(
        self,
        pricing: Optional[PricingRules] = None,
        channel: Optional[EventChannel] = None,
        max_history: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.pricing = pricing or PricingRules.from_settings()
        self.channel = channel or EventChannel("cart")
        self.max_history = settings.MAX_HISTORY_SIZE if max_history is None else max_history
        self.clock = clock
        self._state = CartState.empty(self.pricing)
        self._undo: List[HistoryEntry] = []
        self._redo: List[HistoryEntry] = []
        self._seq = 0

    # -- read side --

    @property
    def state(self) -> CartState:
        return self._state

    @property
    def items(self) -> Tuple[CartItem, ...]:
        return self._state.items

    def get_item(self, line_id: str) -> Optional[CartItem]:
        return self._state.find_line(line_id)

    def get_summary(self) -> CartSummary:
        return self._state.summary()

    def can_undo(self) -> bool:
        return bool(self._undo)

    def can_redo(self) -> bool:
        return bool(self._redo)

    # -- internals --

    def _entry(self, state: CartState) -> HistoryEntry:
        self._seq += 1
        return HistoryEntry(state=state, seq=self._seq)

    def _commit(self, new_state: CartState) -> None:
        self._undo.append(self._entry(self._state))
        if len(self._undo) > self.max_history:
            # oldest entries fall off
            del self._undo[: len(self._undo) - self.max_history]
        self._redo.clear()
        self._state = new_state

    def _check_capacity(self, units: int) -> None:
        if units > self.pricing.max_cart_items:
            raise ValidationError(
                f"Cart cannot hold more than {self.pricing.max_cart_items} items"
            )

    def _units_excluding(self, line_id: Optional[str] = None) -> int:
        return sum(i.quantity for i in self._state.items if i.line_id != line_id)

    @staticmethod
    def _check_quantity(quantity) -> None:
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity < 1:
            raise ValidationError("Quantity must be a positive integer")

    # -- mutations --

    def add_item(self, item: CatalogItem, quantity: int = 1) -> CartItem:
        self._check_quantity(quantity)
        line = StandardItem(
            item_id=item.item_id,
            title=item.title,
            quantity=quantity,
            unit_price=to_decimal(item.price),
        )
        return self._add_line(line)

    def _add_line(self, line: CartItem) -> CartItem:
        self._check_capacity(self._units_excluding() + line.quantity)
        now = self.clock()
        items = list(self._state.items)
        for n, existing in enumerate(items):
            if items_equivalent(existing, line):
                line = existing.with_quantity(existing.quantity + line.quantity, now)
                items[n] = line
                break
        else:
            line = line.model_copy(update={"added_at": now, "updated_at": now})
            items.append(line)
        self.pricing.check_line(line.quantity)

        self._commit(self._state.with_items(items, self.pricing))
        log.debug("Added %s x%d", line.item_id or line.title, line.quantity)
        self.channel.publish(CartItemAdded(item=line, summary=self.get_summary()))
        return line

    def remove_item(self, line_id: str) -> bool:
        line = self._state.find_line(line_id)
        if line is None:
            return False
        items = [i for i in self._state.items if i.line_id != line_id]
        self._commit(self._state.with_items(items, self.pricing))
        self.channel.publish(
            CartItemRemoved(item_id=line.item_id, line_id=line_id, summary=self.get_summary())
        )
        return True

    def update_quantity(self, line_id: str, new_quantity: int) -> bool:
        if not isinstance(new_quantity, int) or isinstance(new_quantity, bool):
            raise ValidationError("Quantity must be an integer")
        line = self._state.find_line(line_id)
        if line is None:
            return False
        if new_quantity <= 0:
            return self.remove_item(line_id)
        if new_quantity == line.quantity:
            return True
        self.pricing.check_line(new_quantity)
        self._check_capacity(self._units_excluding(line_id) + new_quantity)

        updated = line.with_quantity(new_quantity, self.clock())
        items = [updated if i.line_id == line_id else i for i in self._state.items]
        self._commit(self._state.with_items(items, self.pricing))
        self.channel.publish(
            CartItemUpdated(
                item_id=line.item_id,
                line_id=line_id,
                quantity=new_quantity,
                summary=self.get_summary(),
            )
        )
        return True

    def clear_cart(self) -> None:
        if self._state.is_empty:
            return
        self._commit(self._state.with_items((), self.pricing))
        self.channel.publish(CartCleared(summary=self.get_summary()))

    def export_design_to_cart(
        self, design: DesignPayload, metadata: Optional[DesignMetadata] = None
    ) -> CartItem:
        """
        Price a custom design and add it as its own line.

        Unit price is the sum of the component prices listed in the metadata
        plus the design fee scaled by complexity (one step per five
        components, never below one).
        """
        metadata = metadata or DesignMetadata()
        if not design.component_ids and not design.data:
            raise ValidationError("Design is empty")
        line = CustomDesignItem(
            title=metadata.name or "Custom design",
            quantity=1,
            unit_price=self.pricing.design_price(design, metadata),
            design=design,
            metadata=metadata,
        )
        return self._add_line(line)

    def apply_promo_code(self, code: str, percent) -> None:
        code = (code or "").strip()
        if not code:
            raise ValidationError("Promo code is required")
        try:
            pct = to_decimal(percent)
        except ValueError as e:
            raise ValidationError(str(e)) from e
        if pct <= 0 or pct > 100:
            raise ValidationError("Discount percent must be in (0, 100]")
        if code == self._state.promo_code and pct == self._state.discount_percent:
            return
        self._commit(self._state.with_promo(self.pricing, code, pct))
        self.channel.publish(CartUpdated(summary=self.get_summary()))

    def remove_promo_code(self) -> bool:
        if not self._state.promo_code:
            return False
        self._commit(self._state.with_promo(self.pricing, None, Decimal("0")))
        self.channel.publish(CartUpdated(summary=self.get_summary()))
        return True

    # -- history --

    def undo(self) -> Optional[CartState]:
        if not self._undo:
            return None
        self._redo.append(self._entry(self._state))
        self._state = self._undo.pop().state
        self.channel.publish(CartUndone(state=self._state))
        return self._state

    def redo(self) -> Optional[CartState]:
        if not self._redo:
            return None
        self._undo.append(self._entry(self._state))
        self._state = self._redo.pop().state
        self.channel.publish(CartRedone(state=self._state))
        return self._state

    def replace_state(self, state: CartState) -> None:
        """Swap in a state loaded from elsewhere (e.g. after login). History is reset."""
        self._state = state.with_items(state.items, self.pricing)
        self._undo.clear()
        self._redo.clear()
        self.channel.publish(CartUpdated(summary=self.get_summary()))
