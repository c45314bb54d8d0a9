"""
Keeps a shopper's CartManager in step with the durable store and the ledger.

Edits are persisted through a debounced APScheduler `date` job: every change
event replaces the pending job, so a burst of edits produces one save once
the window has gone quiet. flush() writes immediately and close() is the
teardown path (cancel, flush, detach).
"""
import logging
import threading
import time
from collections import Counter
from datetime import timedelta
from decimal import Decimal
from typing import Callable, Dict, List, Optional
from uuid import uuid4

from apscheduler.jobstores.base import JobLookupError
from sqlalchemy.orm import sessionmaker

from charmcart.config import Settings, settings as default_settings
from charmcart.errors import PersistenceError, ValidationError
from charmcart.events import (
    CART_CHANGE_EVENTS,
    CartSaveFailed,
    CartSynced,
    CartValidationFailed,
    EventChannel,
    InventoryChanged,
    InventoryUpdated,
    Subscription,
)
from charmcart.repositories.cart_store import CartStore
from charmcart.schemas.cart import (
    CartState,
    CustomDesignItem,
    StandardItem,
    item_requirements,
    utcnow,
)
from charmcart.schemas.inventory import ReservationResult, Shortfall
from charmcart.schemas.session import GuestSession, SessionIdentity, UserSession, describe
from charmcart.schemas.sync import (
    LineStatus,
    LineValidation,
    LoginSyncResult,
    PriceChange,
    ValidationReport,
)
from charmcart.services.cart_manager import CartManager
from charmcart.services.inventory_ledger import InventoryLedger

log = logging.getLogger(__name__)

# captured prices may drift this much from the catalog before it counts
PRICE_TOLERANCE = Decimal("0.01")


def cart_requirements(state: CartState) -> Dict[str, int]:
    """Total catalog units a cart needs, standard lines and design components together."""
    totals: Counter = Counter()
    for item in state.items:
        totals.update(item_requirements(item))
    return dict(totals)


class SyncCoordinator:
    def __init__(
        self,
        manager: CartManager,
        session_factory: sessionmaker,
        ledger: InventoryLedger,
        identity: SessionIdentity,
        scheduler=None,
        inventory_channel: Optional[EventChannel] = None,
        settings: Settings = default_settings,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.manager = manager
        self.session_factory = session_factory
        self.ledger = ledger
        self.identity = identity
        self.scheduler = scheduler
        self.debounce_seconds = settings.SAVE_DEBOUNCE_SECONDS
        self.max_attempts = max(1, settings.SAVE_MAX_ATTEMPTS)
        self.retry_delay = settings.SAVE_RETRY_DELAY_SECONDS
        self._sleep = sleep

        self._job_id = f"cart-save-{uuid4().hex}"
        self._save_lock = threading.RLock()
        self._version = 0
        self._saved_version = 0
        self._muted = False

        self._subscriptions: List[Subscription] = manager.channel.subscribe_many(
            CART_CHANGE_EVENTS, self._on_change
        )
        if inventory_channel is not None:
            self._subscriptions.append(
                inventory_channel.subscribe(InventoryChanged, self._on_inventory_changed)
            )

    @property
    def channel(self) -> EventChannel:
        return self.manager.channel

    @property
    def dirty(self) -> bool:
        return self._version != self._saved_version

    def _store(self, db) -> CartStore:
        return CartStore(db, self.manager.pricing)

    # -- persistence --

    def _on_change(self, event) -> None:
        if self._muted:
            return
        self._version += 1
        self._schedule_save()

    def _schedule_save(self) -> None:
        if self.scheduler is None or self.debounce_seconds <= 0:
            self.flush()
            return
        self._cancel_job()
        self.scheduler.add_job(
            self.flush,
            "date",
            run_date=utcnow() + timedelta(seconds=self.debounce_seconds),
            id=self._job_id,
        )

    def _cancel_job(self) -> None:
        if self.scheduler is None:
            return
        try:
            self.scheduler.remove_job(self._job_id)
        except JobLookupError:
            pass

    def _save(self, identity: SessionIdentity, state: CartState) -> bool:
        attempt = 0
        while True:
            try:
                with self.session_factory() as db:
                    self._store(db).save(identity, state)
                return True
            except PersistenceError as e:
                attempt += 1
                if attempt >= self.max_attempts:
                    log.warning(
                        "Saving cart %s failed after %d attempts: %s",
                        describe(identity),
                        attempt,
                        e,
                    )
                    self.channel.publish(CartSaveFailed(message=str(e), attempts=attempt))
                    return False
                self._sleep(self.retry_delay * 2 ** (attempt - 1))

    def flush(self) -> bool:
        """Persist the current cart now if it has unsaved changes."""
        with self._save_lock:
            if not self.dirty:
                return True
            version, state, identity = self._version, self.manager.state, self.identity
            if not self._save(identity, state):
                return False
            self._saved_version = version
            log.debug("Saved cart %s (%d items)", describe(identity), state.item_count)
            return True

    def close(self) -> bool:
        self._cancel_job()
        ok = self.flush()
        for sub in self._subscriptions:
            sub.unsubscribe()
        self._subscriptions = []
        return ok

    def _replace_quietly(self, state: CartState) -> None:
        self._muted = True
        try:
            self.manager.replace_state(state)
        finally:
            self._muted = False

    # -- session transitions --

    def on_login(self, user_id: str, guest_session_id: Optional[str] = None) -> LoginSyncResult:
        """
        Fold the guest cart into the user's stored cart.

        The merged cart is saved under the user, the guest record is removed
        and the manager switches to the merged state. An unreadable cart on
        either side is dropped in favour of the other and reported as a
        conflict rather than failing the login.
        """
        if not user_id:
            raise ValidationError("user_id is required")
        if guest_session_id is None and isinstance(self.identity, GuestSession):
            guest_session_id = self.identity.session_id
        guest = GuestSession(session_id=guest_session_id) if guest_session_id else None
        user = UserSession(user_id=user_id)

        with self._save_lock:
            self._cancel_job()
            # pending guest edits must reach the store before they are merged
            in_memory = None
            if not self.flush():
                if guest is None or self.identity != guest:
                    raise PersistenceError(f"Could not save {describe(self.identity)} before login")
                log.warning(
                    "Could not save %s before login; merging the in-memory cart", describe(guest)
                )
                in_memory = self.manager.state

            with self.session_factory() as db:
                result = self._store(db).transfer(guest, user, guest_state=in_memory)

            self.identity = user
            self._replace_quietly(result.state)
            self._saved_version = self._version

        log.info("User %s logged in; merged %d guest lines", user_id, result.merged_guest_lines)
        self.channel.publish(CartSynced(summary=result.state.summary()))
        return result

    def on_logout(self, session_id: Optional[str] = None) -> GuestSession:
        """Continue as a guest: the current cart is saved under a fresh guest session."""
        guest = GuestSession(session_id=session_id) if session_id else GuestSession.new()
        with self._save_lock:
            self._cancel_job()
            self.flush()
            self.identity = guest
            self._version += 1
            self.flush()
        return guest

    # -- inventory --

    def validate_cart(self, state: Optional[CartState] = None) -> ValidationReport:
        """
        Check every line against current availability. Advisory only: the
        cart is never changed here, the caller decides whether to adjust.
        """
        state = state or self.manager.state
        needed = cart_requirements(state)
        if not needed:
            return ValidationReport()
        standard_ids = [i.item_id for i in state.items if isinstance(i, StandardItem)]
        try:
            availability = self.ledger.check_availability(list(needed.items()))
            records = {r.item_id: r for r in self.ledger.get_records(standard_ids)}
        except PersistenceError as e:
            report = ValidationReport(error=str(e))
            self.channel.publish(CartValidationFailed(report=report))
            return report

        avail = {line.item_id: line.available for line in availability.lines}
        lines = []
        price_changes = []
        for item in state.items:
            if isinstance(item, StandardItem):
                lines.append(self._validate_standard(item, avail.get(item.item_id, 0)))
                record = records.get(item.item_id)
                if record is not None and abs(record.price - item.unit_price) > PRICE_TOLERANCE:
                    price_changes.append(
                        PriceChange(
                            line_id=item.line_id,
                            item_id=item.item_id,
                            old_price=item.unit_price,
                            new_price=record.price,
                        )
                    )
            elif isinstance(item, CustomDesignItem):
                lines.append(self._validate_design(item, avail))
            else:
                raise TypeError(f"Unknown cart line type: {type(item).__name__}")

        # lines sharing a catalog id can each pass on their own and still over-ask together
        oversubscribed = [
            Shortfall(item_id=l.item_id, requested=l.requested, available=l.available)
            for l in availability.lines
            if not l.ok
        ]
        report = ValidationReport(
            lines=lines, price_changes=price_changes, oversubscribed=oversubscribed
        )
        if not report.ok:
            log.info(
                "Cart %s failed validation: %d lines, %d price changes, %d short items",
                describe(self.identity),
                len(report.problems()),
                len(price_changes),
                len(oversubscribed),
            )
            self.channel.publish(CartValidationFailed(report=report))
        return report

    @staticmethod
    def _status(requested: int, available: int) -> LineStatus:
        if available >= requested:
            return LineStatus.OK
        if available > 0:
            return LineStatus.QUANTITY_REDUCED
        return LineStatus.UNAVAILABLE

    def _validate_standard(self, item: StandardItem, available: int) -> LineValidation:
        return LineValidation(
            line_id=item.line_id,
            item_id=item.item_id,
            kind=item.kind,
            status=self._status(item.quantity, available),
            requested=item.quantity,
            available=min(available, item.quantity),
        )

    def _validate_design(self, item: CustomDesignItem, avail: Dict[str, int]) -> LineValidation:
        per_unit = Counter(item.design.component_ids)
        missing = sorted(cid for cid, n in per_unit.items() if avail.get(cid, 0) < n)
        if per_unit:
            buildable = min(avail.get(cid, 0) // n for cid, n in per_unit.items())
        else:
            buildable = item.quantity
        return LineValidation(
            line_id=item.line_id,
            kind=item.kind,
            status=self._status(item.quantity, buildable),
            requested=item.quantity,
            available=min(buildable, item.quantity),
            unavailable_components=missing,
        )

    def reserve_for_checkout(self, state: Optional[CartState] = None) -> ReservationResult:
        """
        Reserve everything the cart needs in one ledger call. On failure the
        shortfalls come back in the result and the cart is left as it is.
        """
        needed = cart_requirements(state or self.manager.state)
        if not needed:
            raise ValidationError("Cart is empty")
        try:
            result = self.ledger.reserve(list(needed.items()))
        except PersistenceError as e:
            log.warning("Reservation for %s failed: %s", describe(self.identity), e)
            return ReservationResult(ok=False, error=str(e))
        if not result.ok:
            log.info(
                "Reservation for %s short: %s",
                describe(self.identity),
                ", ".join(s.item_id for s in result.shortfalls),
            )
        return result

    def release_reservation(self, result: ReservationResult) -> None:
        if result.ok and result.reserved:
            self.ledger.release(result.reserved)

    def _on_inventory_changed(self, event: InventoryChanged) -> None:
        in_cart = set(cart_requirements(self.manager.state))
        records = [r for r in event.records if r.item_id in in_cart]
        if records:
            self.channel.publish(InventoryUpdated(records=records))
