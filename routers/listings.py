import re
from datetime import datetime, time
from typing import Literal, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from database import (LISTINGS, ORDERS, USERS, as_utc, get_by_id, get_db, insert_with_id, list_many, now_utc,
                      paginate, require_oid, serialize)
from routers.common import ok, page_window
from schemas import CropListing
from security import require_roles

log = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/listings", tags=["listings"])

SORTS = {
    "price_low": [("expected_price_per_ton", 1)],
    "price_high": [("expected_price_per_ton", -1)],
    "quantity_low": [("quantity_in_tons", 1)],
    "quantity_high": [("quantity_in_tons", -1)],
    "newest": [("createdAt", -1)],
    "oldest": [("createdAt", 1)],
}
EDITABLE = ("title", "crop_variety", "quantity_in_tons", "expected_price_per_ton",
            "harvest_availability_date", "location", "description")


def _start_of_today():
    today = now_utc()
    return datetime.combine(today.date(), time.min, tzinfo=today.tzinfo)


def _check_harvest_date(value: datetime) -> datetime:
    value = as_utc(value)
    if value < _start_of_today():
        raise HTTPException(status_code=400, detail="Harvest availability date cannot be in the past")
    return value


def _farmer_summary(db, farmer_id):
    farmer = get_by_id(db, USERS, farmer_id)
    if not farmer:
        return None
    return {"id": farmer.get("id") or str(farmer["_id"]), "name": farmer.get("name"),
            "email": farmer.get("email"), "phone": farmer.get("phone"), "location": farmer.get("location")}


def _owned_listing(db, listing_id: str, user: dict) -> dict:
    oid = require_oid(listing_id, "listing ID")
    listing = db[LISTINGS].find_one({"_id": oid})
    if not listing:
        raise HTTPException(status_code=404, detail="Listing not found")
    if listing.get("farmer_id") != user["id"]:
        raise HTTPException(status_code=403, detail="You can only modify your own listings")
    return listing


class ListingIn(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    crop_variety: str = Field(..., min_length=1)
    quantity_in_tons: float = Field(..., gt=0)
    expected_price_per_ton: float = Field(..., gt=0)
    harvest_availability_date: datetime
    location: str = Field(..., min_length=1)
    description: Optional[str] = Field(None, max_length=1000)


class ListingUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=200)
    crop_variety: Optional[str] = Field(None, min_length=1)
    quantity_in_tons: Optional[float] = Field(None, gt=0)
    expected_price_per_ton: Optional[float] = Field(None, gt=0)
    harvest_availability_date: Optional[datetime] = None
    location: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = Field(None, max_length=1000)


class ListingStatusIn(BaseModel):
    status: Literal["active", "sold", "expired"]


# ------------------------- Public -------------------------

@router.get("/marketplace")
def marketplace(crop_variety: Optional[str] = None, location: Optional[str] = None,
                min_price: Optional[float] = None, max_price: Optional[float] = None,
                min_quantity: Optional[float] = None, max_quantity: Optional[float] = None,
                farmer_id: Optional[str] = None, page: int = 1, limit: int = 20, sort: str = "newest",
                db=Depends(get_db)):
    query = {"status": "active"}
    if crop_variety:
        query["crop_variety"] = {"$regex": re.escape(crop_variety), "$options": "i"}
    if location:
        query["location"] = {"$regex": re.escape(location), "$options": "i"}
    if farmer_id:
        query["farmer_id"] = farmer_id
    if min_price is not None or max_price is not None:
        query["expected_price_per_ton"] = {}
        if min_price is not None:
            query["expected_price_per_ton"]["$gte"] = min_price
        if max_price is not None:
            query["expected_price_per_ton"]["$lte"] = max_price
    if min_quantity is not None or max_quantity is not None:
        query["quantity_in_tons"] = {}
        if min_quantity is not None:
            query["quantity_in_tons"]["$gte"] = min_quantity
        if max_quantity is not None:
            query["quantity_in_tons"]["$lte"] = max_quantity

    page, limit, skip = page_window(page, limit)
    total = db[LISTINGS].count_documents(query)
    listings = list_many(db, LISTINGS, query, sort=SORTS.get(sort, SORTS["newest"]), skip=skip, limit=limit)
    for listing in listings:
        listing["farmer"] = _farmer_summary(db, listing.get("farmer_id"))

    return ok(
        listings,
        pagination=paginate(page, limit, total, "totalListings"),
        filters={"crop_variety": crop_variety, "location": location, "min_price": min_price,
                 "max_price": max_price, "min_quantity": min_quantity, "max_quantity": max_quantity,
                 "farmer_id": farmer_id, "sort": sort},
    )


# ------------------------- Farmer -------------------------

@router.post("/create", status_code=201)
def create_listing(body: ListingIn, user=Depends(require_roles("Farmer")), db=Depends(get_db)):
    listing = CropListing(
        farmer_id=user["id"],
        title=body.title.strip(),
        crop_variety=body.crop_variety.strip(),
        quantity_in_tons=body.quantity_in_tons,
        expected_price_per_ton=body.expected_price_per_ton,
        harvest_availability_date=_check_harvest_date(body.harvest_availability_date),
        location=body.location.strip(),
        description=body.description.strip() if body.description else None,
    ).model_dump()
    insert_with_id(db, LISTINGS, listing)
    log.info("listing_created", listing_id=listing["id"], quantity=listing["quantity_in_tons"])
    return JSONResponse(status_code=201, content=ok(serialize(listing), "Crop listing created successfully"))


@router.get("/my-listings")
def my_listings(status: Optional[str] = None, page: int = 1, limit: int = 20,
                user=Depends(require_roles("Farmer")), db=Depends(get_db)):
    query = {"farmer_id": user["id"]}
    if status:
        query["status"] = status
    page, limit, skip = page_window(page, limit)
    total = db[LISTINGS].count_documents(query)
    listings = list_many(db, LISTINGS, query, sort=SORTS["newest"], skip=skip, limit=limit)
    for listing in listings:
        listing["pendingOrders"] = db[ORDERS].count_documents({"listingId": listing["id"], "status": "pending"})
    return ok(listings, pagination=paginate(page, limit, total, "totalListings"))


@router.get("/{listing_id}")
def get_listing(listing_id: str, db=Depends(get_db)):
    oid = require_oid(listing_id, "listing ID")
    listing = db[LISTINGS].find_one({"_id": oid})
    if not listing:
        raise HTTPException(status_code=404, detail="Listing not found")
    data = serialize(listing)
    data["farmer"] = _farmer_summary(db, listing.get("farmer_id"))
    return ok(data)


@router.put("/{listing_id}")
def update_listing(listing_id: str, body: ListingUpdate, user=Depends(require_roles("Farmer")), db=Depends(get_db)):
    listing = _owned_listing(db, listing_id, user)
    update = {k: v for k, v in body.model_dump(exclude_unset=True).items() if k in EDITABLE and v is not None}
    if not update:
        raise HTTPException(status_code=400, detail="No valid fields provided for update")
    for key, value in update.items():
        if isinstance(value, str):
            update[key] = value.strip()
    if "harvest_availability_date" in update:
        update["harvest_availability_date"] = _check_harvest_date(update["harvest_availability_date"])
    update["updatedAt"] = now_utc()
    db[LISTINGS].update_one({"_id": listing["_id"]}, {"$set": update})
    return ok(serialize(db[LISTINGS].find_one({"_id": listing["_id"]})), "Listing updated successfully")


@router.delete("/{listing_id}")
def delete_listing(listing_id: str, user=Depends(require_roles("Farmer")), db=Depends(get_db)):
    listing = _owned_listing(db, listing_id, user)
    db[LISTINGS].delete_one({"_id": listing["_id"]})
    log.info("listing_deleted", listing_id=listing_id)
    return ok({"id": listing_id}, "Listing deleted successfully")


@router.put("/{listing_id}/status")
def update_listing_status(listing_id: str, body: ListingStatusIn, user=Depends(require_roles("Farmer")),
                          db=Depends(get_db)):
    listing = _owned_listing(db, listing_id, user)
    db[LISTINGS].update_one({"_id": listing["_id"]}, {"$set": {"status": body.status, "updatedAt": now_utc()}})
    return ok({"id": listing_id, "status": body.status}, f"Listing marked as {body.status}")
