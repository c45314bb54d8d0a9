import logging
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, List, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from charmcart.config import settings
from charmcart.errors import CorruptedCartData, MergeConflict, PersistenceError
from charmcart.models.cart import GuestCart, UserCart
from charmcart.schemas.cart import (
    CartItem,
    CartState,
    CartStatistics,
    PricingRules,
    UserCartSummary,
    items_equivalent,
    utcnow,
)
from charmcart.schemas.session import GuestSession, SessionIdentity, UserSession, describe
from charmcart.schemas.sync import LoginSyncResult
from charmcart.utils.money import ZERO, round_money

log = logging.getLogger(__name__)


def _aware(dt: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything here is stored as UTC
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


class CartStore:
    """
    Durable cart snapshots keyed by session identity.

    Saves are full-snapshot upserts (last writer wins). Guest rows carry an
    expiry that slides forward on every save; an expired guest row loads as
    not found and is left for purge_expired_guests().
    """

    def __init__(
        self,
        db: Session,
        pricing: Optional[PricingRules] = None,
        guest_ttl: Optional[timedelta] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.pricing = pricing or PricingRules.from_settings()
        self.guest_ttl = guest_ttl or timedelta(seconds=settings.GUEST_CART_TTL_SECONDS)
        self.clock = clock

    @contextmanager
    def _guard(self, what: str):
        try:
            yield
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError(f"Failed to {what}: {e}") from e

    def _row(self, identity: SessionIdentity):
        if isinstance(identity, UserSession):
            return self.db.execute(
                select(UserCart).where(UserCart.user_id == identity.user_id)
            ).scalar_one_or_none()
        if isinstance(identity, GuestSession):
            return self.db.execute(
                select(GuestCart).where(GuestCart.session_id == identity.session_id)
            ).scalar_one_or_none()
        raise TypeError(f"Unknown session identity: {type(identity).__name__}")

    def load(self, identity: SessionIdentity) -> Optional[CartState]:
        """Return the stored cart, or None when absent or (for guests) expired."""
        with self._guard(f"load cart {describe(identity)}"):
            row = self._row(identity)
        if row is None:
            return None
        if isinstance(row, GuestCart) and self.clock() > _aware(row.expires_at):
            log.debug("Guest cart %s expired at %s", row.session_id, row.expires_at)
            return None
        try:
            return CartState.from_payload(row.cart_data or {}, self.pricing)
        except (PydanticValidationError, TypeError, ValueError, AttributeError) as e:
            raise CorruptedCartData(
                f"Unreadable cart payload for {describe(identity)}: {e}"
            ) from e

    def expires_at(self, identity: GuestSession) -> Optional[datetime]:
        with self._guard(f"load cart {describe(identity)}"):
            row = self._row(identity)
        return _aware(row.expires_at) if row is not None else None

    def save(self, identity: SessionIdentity, state: CartState) -> None:
        """Upsert the snapshot. Raises ValidationError for a cart over its limits."""
        self.pricing.check_cart(state.items)
        now = self.clock()
        with self._guard(f"save cart {describe(identity)}"):
            row = self._row(identity)
            if row is None:
                if isinstance(identity, UserSession):
                    row = UserCart(user_id=identity.user_id, created_at=now)
                else:
                    row = GuestCart(session_id=identity.session_id, created_at=now)
                self.db.add(row)
            row.cart_data = state.to_payload()
            row.item_count = state.item_count
            row.total_value = state.total
            row.last_updated = now
            if isinstance(row, GuestCart):
                row.expires_at = now + self.guest_ttl
            self.db.commit()

    def delete(self, identity: SessionIdentity) -> None:
        if isinstance(identity, UserSession):
            stmt = delete(UserCart).where(UserCart.user_id == identity.user_id)
        elif isinstance(identity, GuestSession):
            stmt = delete(GuestCart).where(GuestCart.session_id == identity.session_id)
        else:
            raise TypeError(f"Unknown session identity: {type(identity).__name__}")
        with self._guard(f"delete cart {describe(identity)}"):
            self.db.execute(stmt)
            self.db.commit()

    def list_abandoned(self, older_than: timedelta) -> List[UserCartSummary]:
        """Non-empty user carts not touched within `older_than`."""
        cutoff = self.clock() - older_than
        with self._guard("list abandoned carts"):
            rows = self.db.execute(
                select(UserCart)
                .where(UserCart.item_count > 0, UserCart.last_updated < cutoff)
                .order_by(UserCart.last_updated)
            ).scalars().all()
        return [
            UserCartSummary(
                user_id=r.user_id,
                item_count=r.item_count,
                total_value=r.total_value,
                last_updated=_aware(r.last_updated),
            )
            for r in rows
        ]

    def purge_expired_guests(self, now: Optional[datetime] = None) -> int:
        now = now or self.clock()
        with self._guard("purge guest carts"):
            result = self.db.execute(delete(GuestCart).where(GuestCart.expires_at < now))
            self.db.commit()
        if result.rowcount:
            log.info("Purged %d expired guest carts", result.rowcount)
        return result.rowcount

    def statistics(self) -> CartStatistics:
        now = self.clock()
        with self._guard("compute cart statistics"):
            user_count, user_value = self.db.execute(
                select(
                    func.count(UserCart.id), func.coalesce(func.sum(UserCart.total_value), 0)
                )
            ).one()
            guest_count, guest_value = self.db.execute(
                select(
                    func.count(GuestCart.id), func.coalesce(func.sum(GuestCart.total_value), 0)
                ).where(GuestCart.expires_at >= now)
            ).one()
        carts = user_count + guest_count
        total = round_money(Decimal(str(user_value)) + Decimal(str(guest_value)))
        return CartStatistics(
            active_user_carts=user_count,
            active_guest_carts=guest_count,
            total_cart_value=total,
            average_cart_value=round_money(total / carts) if carts else ZERO,
        )

    @staticmethod
    def merge(
        guest_state: Optional[CartState],
        user_state: Optional[CartState],
        pricing: PricingRules,
    ) -> CartState:
        """
        Fold a guest cart into a user cart.

        User lines keep their order; each guest line either tops up an
        equivalent standard line or is appended. The cart never exceeds
        pricing.max_cart_items units and no line exceeds pricing.line_cap():
        quantities are clamped and lines that would clamp to nothing are
        dropped. Totals are rebuilt from the merged lines; the user cart's
        promo code wins over the guest's.
        """
        if guest_state is None and user_state is None:
            return CartState.empty(pricing)
        merged: List[CartItem] = list(user_state.items) if user_state else []
        room = pricing.max_cart_items - sum(i.quantity for i in merged)
        cap = pricing.line_cap()
        now = utcnow()

        for guest_item in guest_state.items if guest_state else ():
            idx = next(
                (n for n, item in enumerate(merged) if items_equivalent(item, guest_item)),
                None,
            )
            held = merged[idx].quantity if idx is not None else 0
            take = min(guest_item.quantity, room, cap - held)
            if take <= 0:
                log.info("Cart full; dropping guest line %s", guest_item.line_id)
                continue
            if idx is None:
                merged.append(guest_item.with_quantity(take, now))
            else:
                merged[idx] = merged[idx].with_quantity(held + take, now)
            room -= take

        promo = user_state if user_state and user_state.promo_code else guest_state
        if promo is not None and promo.promo_code:
            return CartState.build(merged, pricing, promo.promo_code, promo.discount_percent)
        return CartState.build(merged, pricing)

    def transfer(
        self,
        guest: Optional[GuestSession],
        user: UserSession,
        guest_state: Optional[CartState] = None,
    ) -> LoginSyncResult:
        """
        Merge the guest cart into the user's, save it under the user and
        remove the guest record.

        `guest_state` is an in-memory guest cart that takes the place of the
        stored one. An unreadable cart on either side is dropped in favour of
        the other; the loss is logged and reported in `conflict`.
        """
        conflict = None
        if guest_state is None and guest is not None:
            try:
                guest_state = self.load(guest)
            except CorruptedCartData as e:
                err = MergeConflict(
                    f"Guest cart unreadable, keeping user cart: {e}", discarded="guest"
                )
                log.warning("%s", err)
                conflict = str(err)
        try:
            user_state = self.load(user)
        except CorruptedCartData as e:
            err = MergeConflict(f"User cart unreadable, keeping guest cart: {e}", discarded="user")
            log.warning("%s", err)
            conflict = str(err)
            user_state = None

        merged = self.merge(guest_state, user_state, self.pricing)
        self.save(user, merged)
        if guest is not None:
            self.delete(guest)
        return LoginSyncResult(
            state=merged,
            merged_guest_lines=len(guest_state.items) if guest_state else 0,
            conflict=conflict,
        )
