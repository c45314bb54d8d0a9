from datetime import datetime, timedelta, timezone

from fastapi.testclient import TestClient

from charmcart.db import SessionLocal, init_db
from charmcart.main import app
from charmcart.models.cart import GuestCart

client = TestClient(app)


def setup_module(module):
    init_db()


def _line(item_id, qty, price="10.00"):
    return {
        "kind": "standard",
        "item_id": item_id,
        "title": item_id,
        "quantity": qty,
        "unit_price": price,
    }


def test_user_cart_crud():
    assert client.get("/api/carts/user/rt-user").status_code == 404

    res = client.put("/api/carts/user/rt-user", json={"items": [_line("charm-heart", 2)]})
    assert res.status_code == 200
    assert res.json()["subtotal"] == "20.00"

    body = client.get("/api/carts/user/rt-user").json()
    assert body["item_count"] == 2
    assert body["items"][0]["item_id"] == "charm-heart"

    assert client.delete("/api/carts/user/rt-user").status_code == 200
    assert client.get("/api/carts/user/rt-user").status_code == 404


def test_totals_are_recomputed_server_side():
    res = client.put(
        "/api/carts/guest/rt-guest-totals",
        json={"items": [_line("charm-heart", 1)], "total": "0.01"},
    )
    assert res.status_code == 200
    assert res.json()["total"] == "23.79"


def test_invalid_cart_is_400():
    res = client.put("/api/carts/guest/rt-bad", json={"items": [{"kind": "standard", "quantity": 0}]})
    assert res.status_code == 400


def test_transfer_merges_guest_into_user():
    client.put("/api/carts/guest/rt-guest", json={"items": [_line("charm-star", 3, "5.00")]})
    client.put("/api/carts/user/rt-buyer", json={"items": [_line("charm-star", 2, "5.00")]})

    res = client.post(
        "/api/carts/transfer", json={"guest_session_id": "rt-guest", "user_id": "rt-buyer"}
    )

    assert res.status_code == 200
    body = res.json()
    assert body["conflict"] is None
    assert body["merged_guest_lines"] == 1
    assert len(body["cart"]["items"]) == 1
    assert body["cart"]["items"][0]["quantity"] == 5
    assert client.get("/api/carts/guest/rt-guest").status_code == 404


def test_cart_over_item_limit_is_400():
    res = client.put("/api/carts/user/rt-bulk", json={"items": [_line("charm-heart", 5000)]})
    assert res.status_code == 400
    assert client.get("/api/carts/user/rt-bulk").status_code == 404


def test_transfer_with_corrupted_guest_keeps_user_cart():
    db = SessionLocal()
    try:
        db.add(
            GuestCart(
                session_id="rt-guest-broken",
                cart_data={"items": [{"kind": "bogus"}]},
                expires_at=datetime.now(timezone.utc) + timedelta(days=1),
            )
        )
        db.commit()
    finally:
        db.close()
    client.put("/api/carts/user/rt-keeper", json={"items": [_line("charm-moon", 2)]})

    res = client.post(
        "/api/carts/transfer",
        json={"guest_session_id": "rt-guest-broken", "user_id": "rt-keeper"},
    )

    assert res.status_code == 200
    body = res.json()
    assert "Guest cart unreadable" in body["conflict"]
    assert body["merged_guest_lines"] == 0
    assert [(i["item_id"], i["quantity"]) for i in body["cart"]["items"]] == [("charm-moon", 2)]
    assert client.get("/api/carts/guest/rt-guest-broken").status_code == 404
    assert client.get("/api/carts/user/rt-keeper").json()["item_count"] == 2


def test_abandoned_and_stats():
    client.put("/api/carts/user/rt-idle", json={"items": [_line("charm-moon", 1)]})

    res = client.get("/api/carts/abandoned", params={"hours": 0})
    assert res.status_code == 200
    assert "rt-idle" in [c["user_id"] for c in res.json()]

    stats = client.get("/api/carts/stats").json()
    assert stats["active_user_carts"] >= 1
    assert "average_cart_value" in stats
