import logging
from collections import OrderedDict
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

from sqlalchemy import case, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from charmcart.config import settings
from charmcart.errors import InsufficientInventory, PersistenceError, ValidationError
from charmcart.events import EventChannel, InventoryChanged
from charmcart.models.inventory import InventoryItem
from charmcart.schemas.inventory import (
    AvailabilityLine,
    AvailabilityReport,
    InventoryRecord,
    ItemQuantity,
    ReservationResult,
    Shortfall,
)

log = logging.getLogger(__name__)

Request = Union[ItemQuantity, Tuple[str, int]]


def normalize_requests(requests: Iterable[Request]) -> "OrderedDict[str, int]":
    """
    Sum quantities per item id, keeping first-seen order.
    Raises ValidationError for empty ids or non-positive quantities.
    """
    wanted: "OrderedDict[str, int]" = OrderedDict()
    for req in requests:
        if isinstance(req, ItemQuantity):
            item_id, qty = req.item_id, req.quantity
        else:
            item_id, qty = req
        if not item_id:
            raise ValidationError("item_id is required")
        if not isinstance(qty, int) or isinstance(qty, bool) or qty <= 0:
            raise ValidationError(f"Quantity must be a positive integer (item {item_id})")
        wanted[item_id] = wanted.get(item_id, 0) + qty
    return wanted


class InventoryLedger:
    """
    Authoritative on-hand / reserved bookkeeping.

    Each operation runs in its own short-lived session so a reservation is
    durable as soon as reserve() returns. Committed changes are announced on
    `channel` as InventoryChanged.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        channel: Optional[EventChannel] = None,
        low_stock_threshold: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.channel = channel
        self.low_stock_threshold = (
            settings.LOW_STOCK_THRESHOLD if low_stock_threshold is None else low_stock_threshold
        )

    def _records(self, db: Session, item_ids: Sequence[str]) -> List[InventoryRecord]:
        rows = db.execute(
            select(InventoryItem).where(InventoryItem.id.in_(list(item_ids)))
        ).scalars()
        by_id = {r.id: r for r in rows}
        return [
            by_id[i].to_record(self.low_stock_threshold) for i in item_ids if i in by_id
        ]

    def _notify(self, records: List[InventoryRecord]) -> None:
        if self.channel is not None and records:
            self.channel.publish(InventoryChanged(records=records))

    def get_record(self, item_id: str) -> Optional[InventoryRecord]:
        records = self.get_records([item_id])
        return records[0] if records else None

    def get_records(self, item_ids: Sequence[str]) -> List[InventoryRecord]:
        try:
            with self.session_factory() as db:
                return self._records(db, list(dict.fromkeys(item_ids)))
        except SQLAlchemyError as e:
            raise PersistenceError(f"Inventory unavailable: {e}") from e

    def check_availability(self, requests: Iterable[Request]) -> AvailabilityReport:
        """
        Advisory read: a later reserve() can still fail. Never mutates.
        """
        wanted = normalize_requests(requests)
        try:
            with self.session_factory() as db:
                rows = db.execute(
                    select(InventoryItem.id, InventoryItem.available_quantity).where(
                        InventoryItem.id.in_(list(wanted))
                    )
                ).all()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Inventory unavailable: {e}") from e

        available: Dict[str, int] = {item_id: max(0, avail) for item_id, avail in rows}
        return AvailabilityReport(
            lines=[
                AvailabilityLine(
                    item_id=item_id,
                    requested=qty,
                    available=available.get(item_id, 0),
                    found=item_id in available,
                )
                for item_id, qty in wanted.items()
            ]
        )

    def reserve(self, requests: Iterable[Request]) -> ReservationResult:
        """
        All-or-nothing reservation.

        Every item is claimed with one conditional UPDATE that only matches
        while enough stock is unreserved, so two concurrent callers can never
        both take the last unit. Any miss rolls the whole batch back and the
        result carries the shortfalls. Failures are terminal for this attempt.
        """
        wanted = normalize_requests(requests)
        # claim rows in a stable order so concurrent batches cannot deadlock
        ordered = sorted(wanted.items())
        try:
            with self.session_factory.begin() as db:
                shortfalls: List[Shortfall] = []
                for item_id, qty in ordered:
                    stmt = (
                        update(InventoryItem)
                        .where(
                            InventoryItem.id == item_id,
                            InventoryItem.quantity - InventoryItem.reserved_quantity >= qty,
                        )
                        .values(reserved_quantity=InventoryItem.reserved_quantity + qty)
                        .execution_options(synchronize_session=False)
                    )
                    if db.execute(stmt).rowcount == 1:
                        continue
                    avail = db.execute(
                        select(InventoryItem.available_quantity).where(
                            InventoryItem.id == item_id
                        )
                    ).scalar()
                    shortfalls.append(
                        Shortfall(item_id=item_id, requested=qty, available=max(0, avail or 0))
                    )
                if shortfalls:
                    # leaving the block with an exception rolls the batch back
                    raise InsufficientInventory(shortfalls)
                records = self._records(db, list(wanted))
        except InsufficientInventory as e:
            log.info("Reservation rejected: %s", e)
            return ReservationResult(ok=False, shortfalls=e.shortfalls)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Inventory unavailable: {e}") from e

        log.info("Reserved %s", dict(wanted))
        self._notify(records)
        return ReservationResult(
            ok=True,
            reserved=[ItemQuantity(item_id=i, quantity=q) for i, q in wanted.items()],
        )

    def release(self, requests: Iterable[Request]) -> None:
        """
        Return reserved units. Clamped at zero, so releasing more than is
        reserved (or releasing twice) is harmless. Unknown ids are ignored.
        """
        wanted = normalize_requests(requests)
        try:
            with self.session_factory.begin() as db:
                for item_id, qty in sorted(wanted.items()):
                    db.execute(
                        update(InventoryItem)
                        .where(InventoryItem.id == item_id)
                        .values(
                            reserved_quantity=case(
                                (
                                    InventoryItem.reserved_quantity > qty,
                                    InventoryItem.reserved_quantity - qty,
                                ),
                                else_=0,
                            )
                        )
                        .execution_options(synchronize_session=False)
                    )
                records = self._records(db, list(wanted))
        except SQLAlchemyError as e:
            raise PersistenceError(f"Inventory unavailable: {e}") from e

        log.info("Released %s", dict(wanted))
        self._notify(records)

    def restock(self, item_id: str, on_hand: int) -> InventoryRecord:
        """Set the on-hand count. It may not drop below what is currently reserved."""
        if not isinstance(on_hand, int) or on_hand < 0:
            raise ValidationError("on_hand must be a non-negative integer")
        try:
            with self.session_factory.begin() as db:
                result = db.execute(
                    update(InventoryItem)
                    .where(InventoryItem.id == item_id, InventoryItem.reserved_quantity <= on_hand)
                    .values(quantity=on_hand)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    item = db.get(InventoryItem, item_id)
                    if item is None:
                        raise ValidationError(f"Unknown inventory item: {item_id}")
                    raise ValidationError(
                        f"Cannot set on-hand to {on_hand}; {item.reserved_quantity} reserved"
                    )
                records = self._records(db, [item_id])
        except SQLAlchemyError as e:
            raise PersistenceError(f"Inventory unavailable: {e}") from e

        self._notify(records)
        return records[0]
