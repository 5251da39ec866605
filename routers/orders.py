from typing import Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from database import (LISTINGS, ORDERS, USERS, get_by_id, get_db, insert_with_id, list_many, paginate, require_oid,
                      serialize)
from fulfillment import update_order_status
from routers.common import ok, page_window
from schemas import BuyerDetails, Order, OrderDetails, SellerDetails, Urgency
from security import require_roles

log = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/orders", tags=["orders"])


class OrderIn(BaseModel):
    listingId: str
    farmerId: str
    buyerName: str = Field(..., min_length=1)
    buyerEmail: str = Field(..., min_length=3)
    buyerPhone: str = Field(..., min_length=3)
    quantityWanted: float = Field(..., gt=0)
    proposedPrice: float = Field(..., gt=0)
    deliveryLocation: str = Field(..., min_length=1)
    message: Optional[str] = None
    urgency: Urgency = "normal"
    totalAmount: Optional[float] = None


class OrderStatusIn(BaseModel):
    status: str


def _list_orders(db, party_field: str, user: dict, status: Optional[str], urgency: Optional[str],
                 page: int, limit: int):
    query = {party_field: user["id"]}
    if status:
        query["status"] = status
    if urgency:
        query["orderDetails.urgency"] = urgency
    page, limit, skip = page_window(page, limit)
    total = db[ORDERS].count_documents(query)
    orders = list_many(db, ORDERS, query, sort=[("createdAt", -1)], skip=skip, limit=limit)
    return orders, paginate(page, limit, total, "totalOrders")


@router.post("/create", status_code=201)
def create_order(body: OrderIn, user=Depends(require_roles("Farmer")), db=Depends(get_db)):
    listing_oid = require_oid(body.listingId, "listing ID or farmer ID")
    require_oid(body.farmerId, "listing ID or farmer ID")

    seller = get_by_id(db, USERS, body.farmerId, extra={"role": "Farmer"})
    if not seller:
        raise HTTPException(status_code=404, detail="Target farmer not found")
    if body.farmerId == user["id"]:
        raise HTTPException(status_code=400, detail="You cannot place buy orders for your own listings")

    listing = db[LISTINGS].find_one({"_id": listing_oid})
    if not listing:
        raise HTTPException(status_code=404, detail="Listing not found")
    if listing.get("farmer_id") != body.farmerId:
        raise HTTPException(status_code=400, detail="Listing does not belong to the selected farmer")
    if listing.get("status") != "active":
        raise HTTPException(status_code=400, detail="Listing is not accepting orders")

    order = Order(
        listingId=body.listingId,
        sellerId=body.farmerId,
        buyerId=user["id"],
        buyerDetails=BuyerDetails(name=body.buyerName.strip(), email=body.buyerEmail.strip(),
                                  phone=body.buyerPhone.strip()),
        sellerDetails=SellerDetails(name=seller.get("name"), email=seller.get("email")),
        orderDetails=OrderDetails(
            quantityWanted=body.quantityWanted,
            proposedPrice=body.proposedPrice,
            totalAmount=body.totalAmount or body.quantityWanted * body.proposedPrice,
            deliveryLocation=body.deliveryLocation.strip(),
            message=(body.message or "").strip(),
            urgency=body.urgency,
        ),
    ).model_dump()
    order_id = insert_with_id(db, ORDERS, order)
    log.info("order_created", order_id=order_id, listing_id=body.listingId, quantity=body.quantityWanted)

    data = {
        "orderId": order_id,
        "status": order["status"],
        "seller": {"id": body.farmerId, "name": seller.get("name"), "email": seller.get("email")},
        "orderSummary": {
            "quantity": order["orderDetails"]["quantityWanted"],
            "pricePerTon": order["orderDetails"]["proposedPrice"],
            "totalAmount": order["orderDetails"]["totalAmount"],
            "deliveryLocation": order["orderDetails"]["deliveryLocation"],
            "urgency": order["orderDetails"]["urgency"],
        },
        "createdAt": order["createdAt"],
    }
    return JSONResponse(status_code=201, content=ok(data, "Buy order submitted successfully! The farmer will be notified."))


@router.get("/received")
def received_orders(status: Optional[str] = None, urgency: Optional[str] = None, page: int = 1, limit: int = 20,
                    user=Depends(require_roles("Farmer")), db=Depends(get_db)):
    orders, pagination = _list_orders(db, "sellerId", user, status, urgency, page, limit)
    return ok(orders, "Received orders retrieved successfully", pagination=pagination)


@router.get("/sent")
def sent_orders(status: Optional[str] = None, urgency: Optional[str] = None, page: int = 1, limit: int = 20,
                user=Depends(require_roles("Farmer")), db=Depends(get_db)):
    orders, pagination = _list_orders(db, "buyerId", user, status, urgency, page, limit)
    return ok(orders, "Sent orders retrieved successfully", pagination=pagination)


@router.get("/listing/{listing_id}")
def listing_orders(listing_id: str, user=Depends(require_roles("Farmer")), db=Depends(get_db)):
    require_oid(listing_id, "listing ID")
    orders = list_many(db, ORDERS, {"listingId": listing_id, "sellerId": user["id"]}, sort=[("createdAt", -1)])
    for order in orders:
        buyer = get_by_id(db, USERS, order.get("buyerId"))
        order["buyer"] = buyer and {
            "id": str(buyer["_id"]),
            "name": buyer.get("name"),
            "email": buyer.get("email"),
            "phone": buyer.get("phone"),
            "username": buyer.get("username"),
            "location": buyer.get("location"),
        }
    return ok(serialize(orders), f"Found {len(orders)} orders for this listing", totalOrders=len(orders))


@router.put("/{order_id}/status")
def change_order_status(order_id: str, body: OrderStatusIn, user=Depends(require_roles("Farmer")),
                        db=Depends(get_db)):
    message, data = update_order_status(db, user, order_id, body.status)
    return ok(data, message)
