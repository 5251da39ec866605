from datetime import datetime, timedelta, timezone

from conftest import future
from database import LISTINGS


def listing_body(**overrides):
    body = {
        "title": "Fresh sugarcane",
        "crop_variety": "Co 0238",
        "quantity_in_tons": 40,
        "expected_price_per_ton": 3100,
        "harvest_availability_date": future(20),
        "location": "Kolhapur, Maharashtra",
        "description": "  Irrigated, ready in three weeks  ",
    }
    body.update(overrides)
    return body


def test_farmer_creates_listing(client, db, seller):
    res = client.post("/api/listings/create", json=listing_body(), headers=seller["headers"])

    assert res.status_code == 201
    data = res.json()["data"]
    assert data["farmer_id"] == seller["id"]
    assert data["status"] == "active"
    assert data["description"] == "Irrigated, ready in three weeks"
    assert db[LISTINGS].count_documents({"farmer_id": seller["id"]}) == 1


def test_only_farmers_create_listings(client, make_user):
    hhm = make_user("HHM", "manager")
    res = client.post("/api/listings/create", json=listing_body(), headers=hhm["headers"])
    assert res.status_code == 403


def test_listing_rejects_past_harvest_date(client, seller):
    past = (datetime.now(timezone.utc) - timedelta(days=3)).isoformat()
    res = client.post("/api/listings/create", json=listing_body(harvest_availability_date=past),
                      headers=seller["headers"])
    assert res.status_code == 400
    assert res.json()["message"] == "Harvest availability date cannot be in the past"


def test_listing_rejects_non_positive_quantity(client, seller):
    res = client.post("/api/listings/create", json=listing_body(quantity_in_tons=0), headers=seller["headers"])
    assert res.status_code == 400


def test_marketplace_filters_and_sorts(client, seller, buyer, make_listing):
    make_listing(seller, 10, price=2900, location="Kolhapur")
    make_listing(seller, 60, price=3300, location="Sangli")
    make_listing(buyer, 30, price=3100, location="Satara", crop_variety="CoM 0265")
    make_listing(buyer, 80, price=2000, location="Satara", status="sold")

    res = client.get("/api/listings/marketplace?sort=price_high")
    body = res.json()
    assert res.status_code == 200
    assert [l["expected_price_per_ton"] for l in body["data"]] == [3300, 3100, 2900]
    assert body["pagination"]["totalListings"] == 3
    assert body["data"][0]["farmer"]["name"] == seller["name"]

    cheap = client.get("/api/listings/marketplace?max_price=3000").json()["data"]
    assert [l["location"] for l in cheap] == ["Kolhapur"]

    variety = client.get("/api/listings/marketplace?crop_variety=com").json()["data"]
    assert [l["location"] for l in variety] == ["Satara"]

    big = client.get("/api/listings/marketplace?min_quantity=20&sort=quantity_low").json()["data"]
    assert [l["quantity_in_tons"] for l in big] == [30, 60]

    paged = client.get("/api/listings/marketplace?limit=2&page=2").json()
    assert len(paged["data"]) == 1
    assert paged["pagination"]["totalPages"] == 2


def test_get_listing(client, seller, make_listing):
    listing = make_listing(seller, 12)

    assert client.get(f"/api/listings/{listing['id']}").json()["data"]["quantity_in_tons"] == 12
    assert client.get("/api/listings/123").status_code == 400
    assert client.get("/api/listings/" + "a" * 24).status_code == 404


def test_my_listings_counts_pending_orders(client, db, seller, buyer, make_listing):
    listing = make_listing(seller, 12)
    make_listing(buyer, 5)
    client.post("/api/orders/create", json={
        "listingId": listing["id"], "farmerId": seller["id"], "buyerName": "P", "buyerEmail": "p@example.com",
        "buyerPhone": "12345", "quantityWanted": 2, "proposedPrice": 10, "deliveryLocation": "mill",
    }, headers=buyer["headers"])

    data = client.get("/api/listings/my-listings", headers=seller["headers"]).json()["data"]

    assert len(data) == 1
    assert data[0]["pendingOrders"] == 1


def test_owner_updates_and_deletes(client, db, seller, make_listing):
    listing = make_listing(seller, 12)

    res = client.put(f"/api/listings/{listing['id']}", json={"quantity_in_tons": 15, "title": " Updated "},
                     headers=seller["headers"])
    assert res.status_code == 200
    assert res.json()["data"]["quantity_in_tons"] == 15
    assert res.json()["data"]["title"] == "Updated"

    res = client.put(f"/api/listings/{listing['id']}/status", json={"status": "sold"}, headers=seller["headers"])
    assert res.status_code == 200
    assert db[LISTINGS].find_one({"_id": listing["_id"]})["status"] == "sold"

    assert client.delete(f"/api/listings/{listing['id']}", headers=seller["headers"]).status_code == 200
    assert db[LISTINGS].count_documents({}) == 0


def test_other_farmers_cannot_modify(client, db, seller, buyer, make_listing):
    listing = make_listing(seller, 12)

    assert client.put(f"/api/listings/{listing['id']}", json={"quantity_in_tons": 1},
                      headers=buyer["headers"]).status_code == 403
    assert client.delete(f"/api/listings/{listing['id']}", headers=buyer["headers"]).status_code == 403
    assert db[LISTINGS].find_one({"_id": listing["_id"]})["quantity_in_tons"] == 12


def test_empty_update_is_rejected(client, seller, make_listing):
    listing = make_listing(seller, 12)
    res = client.put(f"/api/listings/{listing['id']}", json={}, headers=seller["headers"])
    assert res.status_code == 400
