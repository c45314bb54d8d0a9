import logging
from datetime import timedelta
from decimal import Decimal

import pytest
from apscheduler.schedulers.background import BackgroundScheduler

from charmcart.config import Settings
from charmcart.errors import PersistenceError, ValidationError
from charmcart.events import (
    CartItemAdded,
    CartSaveFailed,
    CartSynced,
    CartValidationFailed,
    EventChannel,
    InventoryUpdated,
)
from charmcart.models.cart import GuestCart
from charmcart.repositories.cart_store import CartStore
from charmcart.schemas.cart import (
    CartState,
    CatalogItem,
    DesignMetadata,
    DesignPayload,
    StandardItem,
    utcnow,
)
from charmcart.schemas.session import GuestSession, UserSession
from charmcart.schemas.sync import LineStatus
from charmcart.services.cart_manager import CartManager
from charmcart.services.inventory_ledger import InventoryLedger
from charmcart.services.sync_coordinator import SyncCoordinator, cart_requirements

GUEST = GuestSession(session_id="guest_sync")

HEART = CatalogItem(item_id="charm-heart", title="Heart charm", price=Decimal("10.00"))
STAR = CatalogItem(item_id="charm-star", title="Star charm", price=Decimal("5.00"))
MOON = CatalogItem(item_id="charm-moon", title="Moon charm", price=Decimal("11.00"))


@pytest.fixture
def inventory_channel():
    return EventChannel("inventory")


@pytest.fixture
def ledger(session_factory, inventory_channel):
    return InventoryLedger(session_factory, inventory_channel)


@pytest.fixture
def manager(pricing):
    return CartManager(pricing)


@pytest.fixture
def make_coordinator(manager, session_factory, ledger, inventory_channel):
    created = []

    def _make(scheduler=None, identity=GUEST, sleeps=None, **overrides):
        settings = Settings(
            SAVE_DEBOUNCE_SECONDS=overrides.pop("debounce", 0),
            SAVE_MAX_ATTEMPTS=overrides.pop("attempts", 3),
            SAVE_RETRY_DELAY_SECONDS=0.5,
        )
        coordinator = SyncCoordinator(
            manager,
            session_factory,
            ledger,
            identity,
            scheduler=scheduler,
            inventory_channel=inventory_channel,
            settings=settings,
            sleep=(sleeps.append if sleeps is not None else lambda s: None),
        )
        created.append(coordinator)
        return coordinator

    yield _make
    for c in created:
        for sub in c._subscriptions:
            sub.unsubscribe()


def _load(session_factory, identity):
    with session_factory() as db:
        return CartStore(db).load(identity)


def _save(session_factory, identity, state):
    with session_factory() as db:
        CartStore(db).save(identity, state)


def _collect(channel, event_type):
    seen = []
    channel.subscribe(event_type, seen.append)
    return seen


def test_debounce_coalesces_rapid_edits(make_coordinator, manager, session_factory, monkeypatch):
    saves = []
    original = CartStore.save

    def spy(self, identity, state):
        saves.append(state.item_count)
        return original(self, identity, state)

    monkeypatch.setattr(CartStore, "save", spy)
    scheduler = BackgroundScheduler()  # not started: jobs stay pending
    coordinator = make_coordinator(scheduler=scheduler, debounce=1.0)

    manager.add_item(HEART, 1)
    manager.add_item(HEART, 1)
    manager.add_item(STAR, 1)

    jobs = scheduler.get_jobs()
    assert len(jobs) == 1
    assert jobs[0].id == coordinator._job_id
    assert saves == []
    assert coordinator.dirty

    assert coordinator.flush() is True
    assert saves == [3]
    assert not coordinator.dirty
    assert _load(session_factory, GUEST).item_count == 3

    # nothing new to write
    coordinator.flush()
    assert saves == [3]


def test_without_scheduler_every_edit_saves(make_coordinator, manager, session_factory):
    make_coordinator()
    manager.add_item(HEART, 2)
    assert _load(session_factory, GUEST).item_count == 2
    manager.undo()
    assert _load(session_factory, GUEST).is_empty


def test_close_cancels_flushes_and_detaches(make_coordinator, manager, session_factory):
    scheduler = BackgroundScheduler()
    coordinator = make_coordinator(scheduler=scheduler, debounce=5.0)
    manager.add_item(MOON, 1)

    assert coordinator.close() is True
    assert scheduler.get_jobs() == []
    assert _load(session_factory, GUEST).item_count == 1
    assert manager.channel.subscriber_count(CartItemAdded) == 0

    manager.add_item(MOON, 1)
    assert _load(session_factory, GUEST).item_count == 1


def test_failed_save_retries_then_reports(make_coordinator, manager, monkeypatch, caplog):
    attempts = []

    def broken(self, identity, state):
        attempts.append(1)
        raise PersistenceError("database is locked")

    monkeypatch.setattr(CartStore, "save", broken)
    sleeps = []
    failures = _collect(manager.channel, CartSaveFailed)
    make_coordinator(sleeps=sleeps)

    with caplog.at_level(logging.WARNING, logger="charmcart.services.sync_coordinator"):
        manager.add_item(HEART, 1)

    assert len(attempts) == 3
    assert sleeps == [0.5, 1.0]
    assert len(failures) == 1
    assert failures[0].attempts == 3
    assert "database is locked" in failures[0].message
    assert "failed after 3 attempts" in caplog.text
    # local state is untouched by the failure
    assert manager.get_summary().item_count == 1


def test_failed_save_stays_dirty_and_recovers(make_coordinator, manager, monkeypatch, session_factory):
    original = CartStore.save
    state = {"fail": True}

    def flaky(self, identity, cart):
        if state["fail"]:
            raise PersistenceError("offline")
        return original(self, identity, cart)

    monkeypatch.setattr(CartStore, "save", flaky)
    coordinator = make_coordinator(attempts=1)
    manager.add_item(HEART, 1)
    assert coordinator.dirty

    state["fail"] = False
    assert coordinator.flush() is True
    assert not coordinator.dirty
    assert _load(session_factory, GUEST).item_count == 1


def test_login_merges_guest_into_user(make_coordinator, manager, session_factory, pricing):
    user = UserSession(user_id="u-42")
    _save(
        session_factory,
        user,
        CartState.build(
            [
                StandardItem(item_id="charm-star", title="Star", quantity=1, unit_price=Decimal("5")),
                StandardItem(item_id="charm-heart", title="Heart", quantity=3, unit_price=Decimal("10")),
            ],
            pricing,
        ),
    )
    coordinator = make_coordinator()
    synced = _collect(manager.channel, CartSynced)
    manager.add_item(HEART, 2)

    result = coordinator.on_login("u-42")

    assert result.conflict is None
    assert result.merged_guest_lines == 1
    assert [(i.item_id, i.quantity) for i in result.state.items] == [
        ("charm-star", 1),
        ("charm-heart", 5),
    ]
    assert result.state.subtotal == Decimal("55.00")
    assert coordinator.identity == user
    assert manager.state == result.state
    assert not manager.can_undo()
    assert _load(session_factory, user) == result.state
    assert _load(session_factory, GUEST) is None
    assert len(synced) == 1 and synced[0].summary.item_count == 6


def test_login_with_corrupted_guest_keeps_user_cart(
    make_coordinator, manager, session_factory, pricing, caplog
):
    user = UserSession(user_id="u-7")
    user_state = CartState.build(
        [StandardItem(item_id="charm-moon", title="Moon", quantity=2, unit_price=Decimal("11"))],
        pricing,
    )
    _save(session_factory, user, user_state)
    with session_factory() as db:
        db.add(
            GuestCart(
                session_id="guest_broken",
                cart_data={"items": "not-a-list"},
                expires_at=utcnow() + timedelta(days=1),
            )
        )
        db.commit()
    coordinator = make_coordinator(identity=GuestSession(session_id="guest_broken"))

    with caplog.at_level(logging.WARNING):
        result = coordinator.on_login("u-7")

    assert result.conflict is not None
    assert "Guest cart unreadable" in result.conflict
    assert result.merged_guest_lines == 0
    assert [(i.item_id, i.quantity) for i in result.state.items] == [("charm-moon", 2)]
    assert "Guest cart unreadable" in caplog.text


def test_login_with_corrupted_user_cart_keeps_guest(make_coordinator, manager, session_factory):
    from charmcart.models.cart import UserCart

    with session_factory() as db:
        db.add(UserCart(user_id="u-9", cart_data={"items": [{"kind": "mystery"}]}))
        db.commit()
    coordinator = make_coordinator()
    manager.add_item(STAR, 2)

    result = coordinator.on_login("u-9")

    assert "User cart unreadable" in result.conflict
    assert [(i.item_id, i.quantity) for i in result.state.items] == [("charm-star", 2)]
    # the unreadable payload has been replaced
    assert _load(session_factory, UserSession(user_id="u-9")).item_count == 2


def test_login_after_failed_flush_merges_in_memory_guest(
    make_coordinator, manager, session_factory, monkeypatch, caplog
):
    original = CartStore.save

    def guest_writes_fail(self, identity, cart):
        if isinstance(identity, GuestSession):
            raise PersistenceError("guest table locked")
        return original(self, identity, cart)

    monkeypatch.setattr(CartStore, "save", guest_writes_fail)
    coordinator = make_coordinator(attempts=1)
    manager.add_item(HEART, 2)
    assert coordinator.dirty

    with caplog.at_level(logging.WARNING, logger="charmcart.services.sync_coordinator"):
        result = coordinator.on_login("u-5")

    assert result.merged_guest_lines == 1
    assert [(i.item_id, i.quantity) for i in result.state.items] == [("charm-heart", 2)]
    assert _load(session_factory, UserSession(user_id="u-5")).item_count == 2
    assert not coordinator.dirty
    assert "merging the in-memory cart" in caplog.text


def test_login_requires_user_id(make_coordinator):
    coordinator = make_coordinator()
    with pytest.raises(ValidationError):
        coordinator.on_login("")


def test_logout_moves_cart_to_new_guest_session(make_coordinator, manager, session_factory):
    coordinator = make_coordinator(identity=UserSession(user_id="u-1"))
    manager.add_item(HEART, 1)

    guest = coordinator.on_logout()

    assert guest.session_id.startswith("guest_")
    assert coordinator.identity == guest
    assert _load(session_factory, guest).item_count == 1
    assert _load(session_factory, UserSession(user_id="u-1")).item_count == 1


def test_validate_cart_statuses(make_coordinator, manager, stock):
    stock("charm-heart", 5)
    stock("charm-star", 1, "5.00")
    stock("charm-moon", 0, "11.00")
    failures = _collect(manager.channel, CartValidationFailed)
    coordinator = make_coordinator()
    heart = manager.add_item(HEART, 2)
    star = manager.add_item(STAR, 3)
    moon = manager.add_item(MOON, 1)
    before = manager.state

    report = coordinator.validate_cart()

    statuses = {l.line_id: (l.status, l.available) for l in report.lines}
    assert statuses[heart.line_id] == (LineStatus.OK, 2)
    assert statuses[star.line_id] == (LineStatus.QUANTITY_REDUCED, 1)
    assert statuses[moon.line_id] == (LineStatus.UNAVAILABLE, 0)
    assert not report.ok
    assert len(report.problems()) == 2
    assert len(failures) == 1
    assert manager.state is before


def test_validate_design_counts_repeated_components(make_coordinator, manager, stock):
    stock("charm-heart", 1)
    stock("chain-silver-18", 4)
    coordinator = make_coordinator()
    line = manager.export_design_to_cart(
        DesignPayload(component_ids=("chain-silver-18", "charm-heart", "charm-heart")),
        DesignMetadata(name="Double heart"),
    )

    report = coordinator.validate_cart()

    result = report.lines[0]
    assert result.line_id == line.line_id
    assert result.kind == "custom_design"
    assert result.status == LineStatus.UNAVAILABLE
    assert result.unavailable_components == ["charm-heart"]


def test_validate_ok_cart(make_coordinator, manager, stock):
    stock("charm-heart", 5)
    failures = _collect(manager.channel, CartValidationFailed)
    coordinator = make_coordinator()
    manager.add_item(HEART, 5)

    assert coordinator.validate_cart().ok
    assert failures == []


def test_validate_reports_price_changes(make_coordinator, manager, stock):
    stock("charm-heart", 5, "12.00")
    stock("charm-star", 5, "5.01")
    failures = _collect(manager.channel, CartValidationFailed)
    coordinator = make_coordinator()
    heart = manager.add_item(HEART, 1)
    manager.add_item(STAR, 1)

    report = coordinator.validate_cart()

    assert report.problems() == []
    assert [(c.line_id, c.item_id, c.old_price, c.new_price) for c in report.price_changes] == [
        (heart.line_id, "charm-heart", Decimal("10.00"), Decimal("12.00"))
    ]
    assert not report.ok
    assert len(failures) == 1


def test_validate_flags_stock_shared_between_lines(make_coordinator, manager, stock):
    stock("charm-heart", 2)
    coordinator = make_coordinator()
    manager.add_item(HEART, 2)
    manager.export_design_to_cart(DesignPayload(component_ids=("charm-heart",)))

    report = coordinator.validate_cart()

    # each line fits on its own
    assert report.problems() == []
    assert [(s.item_id, s.requested, s.available) for s in report.oversubscribed] == [
        ("charm-heart", 3, 2)
    ]
    assert not report.ok


def test_cart_requirements_aggregate_designs_and_lines(manager):
    manager.add_item(HEART, 1)
    design_line = manager.export_design_to_cart(
        DesignPayload(component_ids=("charm-heart", "chain-silver-18"))
    )
    manager.update_quantity(design_line.line_id, 2)

    assert cart_requirements(manager.state) == {"charm-heart": 3, "chain-silver-18": 2}


def test_reserve_for_checkout(make_coordinator, manager, ledger, stock):
    stock("charm-heart", 5)
    stock("chain-silver-18", 2)
    coordinator = make_coordinator()
    manager.add_item(HEART, 1)
    manager.export_design_to_cart(DesignPayload(component_ids=("charm-heart", "chain-silver-18")))

    result = coordinator.reserve_for_checkout()

    assert result.ok
    assert ledger.get_record("charm-heart").reserved == 2
    assert ledger.get_record("chain-silver-18").reserved == 1

    coordinator.release_reservation(result)
    assert ledger.get_record("charm-heart").reserved == 0


def test_failed_checkout_reservation_leaves_cart_alone(make_coordinator, manager, ledger, stock):
    stock("charm-heart", 5)
    stock("charm-moon", 1)
    coordinator = make_coordinator()
    manager.add_item(HEART, 2)
    manager.add_item(MOON, 2)
    before = manager.state

    result = coordinator.reserve_for_checkout()

    assert not result.ok
    assert [(s.item_id, s.shortfall) for s in result.shortfalls] == [("charm-moon", 1)]
    assert manager.state is before
    assert ledger.get_record("charm-heart").reserved == 0


def test_checkout_with_ledger_down_returns_error(make_coordinator, manager, ledger, monkeypatch):
    def down(requests):
        raise PersistenceError("connection refused")

    monkeypatch.setattr(ledger, "reserve", down)
    coordinator = make_coordinator()
    manager.add_item(HEART, 1)

    result = coordinator.reserve_for_checkout()
    assert not result.ok
    assert result.error == "connection refused"


def test_checkout_of_empty_cart_rejected(make_coordinator):
    with pytest.raises(ValidationError):
        make_coordinator().reserve_for_checkout()


def test_inventory_changes_fan_out_for_cart_items(make_coordinator, manager, ledger, stock):
    stock("charm-heart", 5)
    stock("charm-star", 5)
    updates = _collect(manager.channel, InventoryUpdated)
    make_coordinator()
    manager.add_item(HEART, 1)

    ledger.reserve([("charm-star", 1)])
    assert updates == []

    ledger.reserve([("charm-heart", 1), ("charm-star", 1)])
    assert len(updates) == 1
    assert [r.item_id for r in updates[0].records] == ["charm-heart"]
    assert updates[0].records[0].reserved == 1
