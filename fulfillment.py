"""Order status changes, including the quantity reconciliation done when a seller accepts an order.

Accepting an order reads the listing's current quantity, fulfils as much of the
request as the listing can cover, and writes the listing and the order together:

* the listing write is a compare-and-set on the quantity that was read, so two
  concurrent acceptances cannot both consume the same stock;
* the order write is a compare-and-set on the previous status, so an order is
  only ever accepted once;
* with ``MONGO_TRANSACTIONS`` enabled both writes share one transaction,
  otherwise a failed order write restores the listing before the error
  propagates.

Buyer and seller read the same order document, so there is no second copy to
keep in sync.
"""

from dataclasses import dataclass

import structlog
from fastapi import HTTPException
from pymongo.errors import PyMongoError

from database import LISTINGS, ORDERS, get_by_id, now_utc, require_oid, transaction
from schemas import ORDER_TRANSITIONS

log = structlog.get_logger(__name__)

STATUS_CHOICES = ("accepted", "rejected", "completed", "cancelled")


@dataclass(frozen=True)
class Fulfillment:
    requested: float
    available: float
    quantity: float
    partial: bool

    @property
    def remaining(self) -> float:
        return self.available - self.quantity

    @property
    def exhausts_listing(self) -> bool:
        return self.remaining <= 0


def plan_fulfillment(requested: float, available: float) -> Fulfillment:
    if available <= 0:
        raise HTTPException(status_code=400, detail="This listing is out of stock and cannot fulfill any orders")
    return Fulfillment(
        requested=requested,
        available=available,
        quantity=min(requested, available),
        partial=requested > available,
    )


def check_transition(current: str, target: str) -> None:
    if target not in ORDER_TRANSITIONS.get(current, set()):
        raise HTTPException(
            status_code=400,
            detail=f"Order is already {current} and cannot be changed to {target}",
        )


def _take_from_listing(db, listing: dict, plan: Fulfillment, session) -> None:
    guard = {"_id": listing["_id"], "quantity_in_tons": plan.available}
    if plan.exhausts_listing:
        changed = db[LISTINGS].delete_one(guard, session=session).deleted_count
    else:
        changed = db[LISTINGS].update_one(
            guard,
            {"$set": {"quantity_in_tons": plan.remaining, "updatedAt": now_utc()}},
            session=session,
        ).matched_count
    if not changed:
        raise HTTPException(status_code=409, detail="Listing quantity changed while the order was being processed. Please retry.")


def _restore_listing(db, listing: dict, plan: Fulfillment) -> None:
    try:
        if plan.exhausts_listing:
            db[LISTINGS].insert_one(listing)
        else:
            db[LISTINGS].update_one({"_id": listing["_id"]}, {"$inc": {"quantity_in_tons": plan.quantity}})
    except PyMongoError:
        log.exception("listing_restore_failed", listing_id=str(listing["_id"]), quantity=plan.quantity)
        return
    log.warning("listing_restored", listing_id=str(listing["_id"]), quantity=plan.quantity)


def _save_order(db, order: dict, fields: dict, session) -> None:
    res = db[ORDERS].update_one(
        {"_id": order["_id"], "status": order["status"]},
        {"$set": fields},
        session=session,
    )
    if not res.matched_count:
        raise HTTPException(status_code=409, detail="Order was updated by another request. Please refresh and retry.")


def update_order_status(db, seller: dict, order_id: str, status: str):
    """Apply a seller's status change to one of their received orders.

    Returns ``(message, data)`` for the response envelope.
    """
    if status not in STATUS_CHOICES:
        raise HTTPException(
            status_code=400,
            detail="Invalid status. Allowed values: " + ", ".join(STATUS_CHOICES),
        )
    oid = require_oid(order_id, "order ID")

    order = db[ORDERS].find_one({"_id": oid, "sellerId": seller["id"]})
    if not order:
        raise HTTPException(status_code=404, detail="Order not found or you do not have permission to update this order")
    check_transition(order["status"], status)

    updated_at = now_utc()
    fields = {"status": status, "updatedAt": updated_at}
    plan = None

    if status == "accepted":
        with transaction(db) as session:
            listing = get_by_id(db, LISTINGS, order.get("listingId"), session=session)
            if not listing:
                raise HTTPException(status_code=404, detail="Associated listing not found")

            details = order["orderDetails"]
            plan = plan_fulfillment(details["quantityWanted"], listing.get("quantity_in_tons", 0))
            fields.update({
                "orderDetails.quantityWanted": plan.quantity,
                "orderDetails.totalAmount": plan.quantity * details["proposedPrice"],
                "isPartialFulfillment": plan.partial,
            })
            if plan.partial:
                fields["originalQuantityRequested"] = plan.requested

            _take_from_listing(db, listing, plan, session)
            try:
                _save_order(db, order, fields, session)
            except Exception:
                if session is None:
                    _restore_listing(db, listing, plan)
                raise

        log.info(
            "order_accepted",
            order_id=order_id,
            listing_id=order.get("listingId"),
            requested=plan.requested,
            fulfilled=plan.quantity,
            remaining=max(plan.remaining, 0),
            listing_removed=plan.exhausts_listing,
        )
    else:
        _save_order(db, order, fields, None)
        log.info("order_status_updated", order_id=order_id, status=status)

    data = {"orderId": order_id, "status": status, "updatedAt": updated_at}
    message = f"Order {status} successfully"
    if plan is not None and plan.partial:
        message = "Order accepted with partial fulfillment"
        data["partialFulfillment"] = {
            "originalQuantity": plan.requested,
            "fulfilledQuantity": plan.quantity,
            "newTotalAmount": fields["orderDetails.totalAmount"],
        }
    return message, data
