import os
import tempfile

# the app-level engine is built at import time; point it somewhere disposable first
_TMP = tempfile.mkdtemp(prefix="charmcart-tests-")
os.environ["DATABASE_URL"] = "sqlite:///" + os.path.join(_TMP, "app.db")
os.environ["LOCK_DIR"] = _TMP

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy.orm import sessionmaker

from charmcart.db import init_db, make_engine
from charmcart.models.inventory import InventoryItem
from charmcart.schemas.cart import PricingRules


class FakeClock:
    """Callable clock that tests can move forward by hand."""

    def __init__(self, start=None):
        self.now = start or datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def engine(tmp_path):
    eng = make_engine(f"sqlite:///{tmp_path / 'test.db'}")
    init_db(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def pricing():
    return PricingRules()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def stock(session_factory):
    """stock(item_id, quantity, price="10.00", reserved=0) inserts an inventory row."""

    def _stock(item_id, quantity, price="10.00", reserved=0, title=None):
        with session_factory.begin() as s:
            s.add(
                InventoryItem(
                    id=item_id,
                    title=title or item_id,
                    price=Decimal(price),
                    quantity=quantity,
                    reserved_quantity=reserved,
                )
            )

    return _stock
