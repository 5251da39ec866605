import pytest
from bson import ObjectId
from fastapi import HTTPException

import config
import fulfillment
from database import LISTINGS, ORDERS


def place_order(client, buyer, seller, listing, quantity, price=3000.0, **extra):
    body = {
        "listingId": listing["id"],
        "farmerId": seller["id"],
        "buyerName": buyer["name"],
        "buyerEmail": buyer["email"],
        "buyerPhone": buyer["phone"],
        "quantityWanted": quantity,
        "proposedPrice": price,
        "deliveryLocation": "Sangli mill gate",
    }
    body.update(extra)
    res = client.post("/api/orders/create", json=body, headers=buyer["headers"])
    assert res.status_code == 201, res.json()
    return res.json()["data"]["orderId"]


def set_status(client, seller, order_id, status):
    return client.put(f"/api/orders/{order_id}/status", json={"status": status}, headers=seller["headers"])


def listing_quantity(db, listing):
    doc = db[LISTINGS].find_one({"_id": listing["_id"]})
    return None if doc is None else doc["quantity_in_tons"]


def stored_order(db, order_id):
    return db[ORDERS].find_one({"_id": ObjectId(order_id)})


# ------------------------- Creating orders -------------------------

def test_create_order_stores_single_record_for_both_parties(client, db, seller, buyer, make_listing):
    listing = make_listing(seller, 75)
    order_id = place_order(client, buyer, seller, listing, 50, price=2800)

    order = stored_order(db, order_id)
    assert order["sellerId"] == seller["id"]
    assert order["buyerId"] == buyer["id"]
    assert order["status"] == "pending"
    assert order["orderDetails"]["totalAmount"] == 50 * 2800
    assert order["sellerDetails"]["name"] == seller["name"]
    assert db[ORDERS].count_documents({}) == 1


def test_cannot_order_from_yourself(client, seller, make_listing):
    listing = make_listing(seller, 10)
    res = client.post("/api/orders/create", json={
        "listingId": listing["id"], "farmerId": seller["id"], "buyerName": "x", "buyerEmail": "x@example.com",
        "buyerPhone": "12345", "quantityWanted": 1, "proposedPrice": 10, "deliveryLocation": "here",
    }, headers=seller["headers"])
    assert res.status_code == 400
    assert res.json()["success"] is False


def test_create_order_rejects_listing_of_another_farmer(client, seller, buyer, make_user, make_listing):
    other = make_user("Farmer", "suresh")
    listing = make_listing(other, 10)
    res = client.post("/api/orders/create", json={
        "listingId": listing["id"], "farmerId": seller["id"], "buyerName": "x", "buyerEmail": "x@example.com",
        "buyerPhone": "12345", "quantityWanted": 1, "proposedPrice": 10, "deliveryLocation": "here",
    }, headers=buyer["headers"])
    assert res.status_code == 400


def test_create_order_validates_quantity(client, seller, buyer, make_listing):
    listing = make_listing(seller, 10)
    res = client.post("/api/orders/create", json={
        "listingId": listing["id"], "farmerId": seller["id"], "buyerName": "x", "buyerEmail": "x@example.com",
        "buyerPhone": "12345", "quantityWanted": -4, "proposedPrice": 10, "deliveryLocation": "here",
    }, headers=buyer["headers"])
    assert res.status_code == 400
    assert res.json()["message"] == "Validation failed"


def test_create_order_with_malformed_ids(client, seller, buyer):
    res = client.post("/api/orders/create", json={
        "listingId": "nope", "farmerId": seller["id"], "buyerName": "x", "buyerEmail": "x@example.com",
        "buyerPhone": "12345", "quantityWanted": 1, "proposedPrice": 10, "deliveryLocation": "here",
    }, headers=buyer["headers"])
    assert res.status_code == 400
    assert res.json()["message"] == "Invalid listing ID or farmer ID format"


# ------------------------- Accepting orders -------------------------

def test_accept_within_available_quantity_decrements_listing(client, db, seller, buyer, make_listing):
    listing = make_listing(seller, 75)
    order_id = place_order(client, buyer, seller, listing, 50)

    res = set_status(client, seller, order_id, "accepted")

    assert res.status_code == 200
    body = res.json()
    assert body["success"] is True
    assert body["message"] == "Order accepted successfully"
    assert body["data"]["orderId"] == order_id
    assert "partialFulfillment" not in body["data"]
    assert listing_quantity(db, listing) == 25
    order = stored_order(db, order_id)
    assert order["status"] == "accepted"
    assert order["isPartialFulfillment"] is False
    assert order["orderDetails"]["quantityWanted"] == 50


def test_accept_more_than_available_is_partial_and_removes_listing(client, db, seller, buyer, make_listing):
    listing = make_listing(seller, 100)
    order_id = place_order(client, buyer, seller, listing, 120, price=2500)

    res = set_status(client, seller, order_id, "accepted")

    assert res.status_code == 200
    body = res.json()
    assert body["message"] == "Order accepted with partial fulfillment"
    assert body["data"]["partialFulfillment"] == {
        "originalQuantity": 120,
        "fulfilledQuantity": 100,
        "newTotalAmount": 100 * 2500,
    }
    order = stored_order(db, order_id)
    assert order["orderDetails"]["quantityWanted"] == 100
    assert order["orderDetails"]["totalAmount"] == 100 * 2500
    assert order["isPartialFulfillment"] is True
    assert order["originalQuantityRequested"] == 120
    assert listing_quantity(db, listing) is None


def test_accept_exact_quantity_removes_listing(client, db, seller, buyer, make_listing):
    listing = make_listing(seller, 25)
    order_id = place_order(client, buyer, seller, listing, 25)

    res = set_status(client, seller, order_id, "accepted")

    assert res.status_code == 200
    assert listing_quantity(db, listing) is None
    assert stored_order(db, order_id)["isPartialFulfillment"] is False


def test_buyer_and_seller_views_agree_after_acceptance(client, seller, buyer, make_listing):
    listing = make_listing(seller, 100)
    order_id = place_order(client, buyer, seller, listing, 120)
    set_status(client, seller, order_id, "accepted")

    received = client.get("/api/orders/received", headers=seller["headers"]).json()["data"]
    sent = client.get("/api/orders/sent", headers=buyer["headers"]).json()["data"]

    assert [o["id"] for o in received] == [order_id]
    assert [o["id"] for o in sent] == [order_id]
    for key in ("status", "isPartialFulfillment", "originalQuantityRequested"):
        assert received[0][key] == sent[0][key]
    assert received[0]["orderDetails"] == sent[0]["orderDetails"]


def test_accepting_twice_does_not_decrement_again(client, db, seller, buyer, make_listing):
    listing = make_listing(seller, 75)
    order_id = place_order(client, buyer, seller, listing, 20)
    assert set_status(client, seller, order_id, "accepted").status_code == 200

    res = set_status(client, seller, order_id, "accepted")

    assert res.status_code == 400
    assert listing_quantity(db, listing) == 55


def test_rejecting_an_accepted_order_is_refused(client, db, seller, buyer, make_listing):
    listing = make_listing(seller, 75)
    order_id = place_order(client, buyer, seller, listing, 20)
    set_status(client, seller, order_id, "accepted")

    assert set_status(client, seller, order_id, "rejected").status_code == 400
    assert stored_order(db, order_id)["status"] == "accepted"


def test_accepted_order_can_be_completed(client, db, seller, buyer, make_listing):
    listing = make_listing(seller, 75)
    order_id = place_order(client, buyer, seller, listing, 20)
    set_status(client, seller, order_id, "accepted")

    res = set_status(client, seller, order_id, "completed")

    assert res.status_code == 200
    assert stored_order(db, order_id)["status"] == "completed"
    assert listing_quantity(db, listing) == 55


def test_reject_leaves_listing_untouched(client, db, seller, buyer, make_listing):
    listing = make_listing(seller, 40)
    order_id = place_order(client, buyer, seller, listing, 10)

    res = set_status(client, seller, order_id, "rejected")

    assert res.status_code == 200
    assert res.json()["message"] == "Order rejected successfully"
    assert listing_quantity(db, listing) == 40
    assert set_status(client, seller, order_id, "accepted").status_code == 400


def test_out_of_stock_listing_is_rejected_without_changes(client, db, seller, buyer, make_listing):
    listing = make_listing(seller, 30)
    order_id = place_order(client, buyer, seller, listing, 10)
    db[LISTINGS].update_one({"_id": listing["_id"]}, {"$set": {"quantity_in_tons": 0}})

    res = set_status(client, seller, order_id, "accepted")

    assert res.status_code == 400
    assert res.json()["message"] == "This listing is out of stock and cannot fulfill any orders"
    assert listing_quantity(db, listing) == 0
    assert stored_order(db, order_id)["status"] == "pending"


def test_missing_listing_is_not_found(client, db, seller, buyer, make_listing):
    listing = make_listing(seller, 30)
    order_id = place_order(client, buyer, seller, listing, 10)
    db[LISTINGS].delete_one({"_id": listing["_id"]})

    res = set_status(client, seller, order_id, "accepted")

    assert res.status_code == 404
    assert res.json()["message"] == "Associated listing not found"
    assert stored_order(db, order_id)["status"] == "pending"


@pytest.mark.parametrize("order_id, status, code", [
    ("not-an-id", "accepted", 400),
    (str(ObjectId()), "shipped", 400),
    (str(ObjectId()), "accepted", 404),
])
def test_status_request_validation(client, seller, order_id, status, code):
    res = set_status(client, seller, order_id, status)
    assert res.status_code == code
    assert res.json()["success"] is False


def test_only_the_seller_can_change_status(client, db, seller, buyer, make_listing):
    listing = make_listing(seller, 30)
    order_id = place_order(client, buyer, seller, listing, 10)

    assert set_status(client, buyer, order_id, "accepted").status_code == 404
    assert listing_quantity(db, listing) == 30


def test_non_farmers_cannot_touch_orders(client, make_user):
    worker = make_user("Worker", "kiran")
    res = client.get("/api/orders/received", headers=worker["headers"])
    assert res.status_code == 403


# ------------------------- Failure policy -------------------------

def _failing_save(*args, **kwargs):
    raise RuntimeError("write concern timeout")


def test_failed_order_write_restores_listing_quantity(lenient_client, db, monkeypatch, seller, buyer, make_listing):
    listing = make_listing(seller, 75)
    order_id = place_order(lenient_client, buyer, seller, listing, 50)
    monkeypatch.setattr(fulfillment, "_save_order", _failing_save)

    res = set_status(lenient_client, seller, order_id, "accepted")

    assert res.status_code == 500
    assert res.json()["success"] is False
    assert res.json()["error"]["message"] == "write concern timeout"
    assert listing_quantity(db, listing) == 75
    assert stored_order(db, order_id)["status"] == "pending"


def test_failed_order_write_reinserts_exhausted_listing(lenient_client, db, monkeypatch, seller, buyer, make_listing):
    listing = make_listing(seller, 25)
    order_id = place_order(lenient_client, buyer, seller, listing, 25)
    monkeypatch.setattr(fulfillment, "_save_order", _failing_save)

    res = set_status(lenient_client, seller, order_id, "accepted")

    assert res.status_code == 500
    assert listing_quantity(db, listing) == 25
    assert stored_order(db, order_id)["status"] == "pending"


def test_stale_listing_quantity_is_a_conflict(db, seller, make_listing):
    listing = make_listing(seller, 75)
    plan = fulfillment.plan_fulfillment(50, 75)
    db[LISTINGS].update_one({"_id": listing["_id"]}, {"$set": {"quantity_in_tons": 60}})

    with pytest.raises(HTTPException) as exc:
        fulfillment._take_from_listing(db, listing, plan, None)

    assert exc.value.status_code == 409
    assert listing_quantity(db, listing) == 60


def test_stale_order_status_is_a_conflict(client, db, seller, buyer, make_listing):
    listing = make_listing(seller, 75)
    order_id = place_order(client, buyer, seller, listing, 10)
    order = stored_order(db, order_id)
    db[ORDERS].update_one({"_id": order["_id"]}, {"$set": {"status": "rejected"}})

    with pytest.raises(HTTPException) as exc:
        fulfillment._save_order(db, order, {"status": "accepted"}, None)

    assert exc.value.status_code == 409


# ------------------------- Planning -------------------------

def test_plan_fulfillment():
    full = fulfillment.plan_fulfillment(50, 75)
    assert (full.quantity, full.partial, full.remaining, full.exhausts_listing) == (50, False, 25, False)

    partial = fulfillment.plan_fulfillment(120, 100)
    assert (partial.quantity, partial.partial, partial.remaining, partial.exhausts_listing) == (100, True, 0, True)

    with pytest.raises(HTTPException):
        fulfillment.plan_fulfillment(10, 0)


def test_marketplace_scenario(client, db, seller, buyer, make_listing):
    l1 = make_listing(seller, 75)
    o1 = place_order(client, buyer, seller, l1, 50)
    set_status(client, seller, o1, "accepted")
    assert listing_quantity(db, l1) == 25
    assert stored_order(db, o1)["isPartialFulfillment"] is False

    l2 = make_listing(seller, 25)
    o2 = place_order(client, buyer, seller, l2, 25)
    set_status(client, seller, o2, "accepted")
    assert listing_quantity(db, l2) is None

    l3 = make_listing(seller, 100)
    o3 = place_order(client, buyer, seller, l3, 120)
    set_status(client, seller, o3, "accepted")
    order = stored_order(db, o3)
    assert order["orderDetails"]["quantityWanted"] == 100
    assert order["isPartialFulfillment"] is True
    assert order["originalQuantityRequested"] == 120
    assert listing_quantity(db, l3) is None


# ------------------------- Listing orders -------------------------

def test_orders_for_listing_include_buyer_contact(client, seller, buyer, make_listing):
    listing = make_listing(seller, 75)
    place_order(client, buyer, seller, listing, 5)
    place_order(client, buyer, seller, listing, 7)

    res = client.get(f"/api/orders/listing/{listing['id']}", headers=seller["headers"])

    body = res.json()
    assert res.status_code == 200
    assert body["totalOrders"] == 2
    assert {o["buyer"]["email"] for o in body["data"]} == {buyer["email"]}


def test_received_orders_filter_and_paginate(client, seller, buyer, make_listing):
    listing = make_listing(seller, 500)
    ids = [place_order(client, buyer, seller, listing, q, urgency="high" if q > 2 else "normal") for q in (1, 2, 3, 4)]
    set_status(client, seller, ids[0], "rejected")

    pending = client.get("/api/orders/received?status=pending", headers=seller["headers"]).json()
    assert pending["pagination"]["totalOrders"] == 3

    urgent = client.get("/api/orders/received?urgency=high", headers=seller["headers"]).json()
    assert len(urgent["data"]) == 2

    page = client.get("/api/orders/received?limit=3&page=2", headers=seller["headers"]).json()
    assert len(page["data"]) == 1
    assert page["pagination"]["hasPrevPage"] is True
    assert page["pagination"]["hasNextPage"] is False


# ------------------------- Transactions -------------------------

class FakeTransaction:
    def __init__(self):
        self.committed = False
        self.aborted = False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is None:
            self.committed = True
        else:
            self.aborted = True
        return False


class FakeSession:
    def __init__(self):
        self.transaction = FakeTransaction()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def start_transaction(self):
        return self.transaction


@pytest.fixture
def transactional(db, monkeypatch):
    """Turn on MONGO_TRANSACTIONS with a stand-in session, recording which session each write received.

    mongomock has no sessions, so the recorded helpers run the real write without one.
    """
    session = FakeSession()
    seen = {"restored": []}
    monkeypatch.setattr(config, "MONGO_TRANSACTIONS", True)
    monkeypatch.setattr(db.client, "start_session", lambda: session)

    real_get, real_take, real_save = fulfillment.get_by_id, fulfillment._take_from_listing, fulfillment._save_order

    def get_by_id(database, collection, id_str, extra=None, session=None):
        seen["get_by_id"] = session
        return real_get(database, collection, id_str, extra)

    def take(database, listing, plan, session):
        seen["take"] = session
        real_take(database, listing, plan, None)

    def save(database, order, fields, session):
        seen["save"] = session
        real_save(database, order, fields, None)

    monkeypatch.setattr(fulfillment, "get_by_id", get_by_id)
    monkeypatch.setattr(fulfillment, "_take_from_listing", take)
    monkeypatch.setattr(fulfillment, "_save_order", save)
    monkeypatch.setattr(fulfillment, "_restore_listing", lambda *args: seen["restored"].append(args))
    return session, seen


def test_accept_with_transactions_shares_one_session(client, db, transactional, seller, buyer, make_listing):
    session, seen = transactional
    listing = make_listing(seller, 75)
    order_id = place_order(client, buyer, seller, listing, 50)

    res = set_status(client, seller, order_id, "accepted")

    assert res.status_code == 200
    assert seen["get_by_id"] is session
    assert seen["take"] is session
    assert seen["save"] is session
    assert session.transaction.committed
    assert listing_quantity(db, listing) == 25
    assert stored_order(db, order_id)["status"] == "accepted"


def test_failed_write_inside_transaction_aborts_without_compensation(lenient_client, db, monkeypatch, transactional,
                                                                     seller, buyer, make_listing):
    session, seen = transactional
    listing = make_listing(seller, 75)
    order_id = place_order(lenient_client, buyer, seller, listing, 50)

    def failing_save(database, order, fields, session):
        seen["save"] = session
        raise RuntimeError("write concern timeout")

    monkeypatch.setattr(fulfillment, "_save_order", failing_save)

    res = set_status(lenient_client, seller, order_id, "accepted")

    assert res.status_code == 500
    assert seen["take"] is session
    assert seen["save"] is session
    assert session.transaction.aborted
    assert seen["restored"] == []
