from datetime import datetime, timedelta
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from database import (APPLICATIONS, BILLS, INVITATIONS, SCHEDULES, USERS, get_by_id, get_db, insert_with_id, list_many,
                      now_utc, paginate, require_oid, serialize)
from routers.common import ok, page_window
from routers.hhm import ReviewIn, ScheduleIn
from schemas import Bill, Invitation
from security import require_roles
from staffing import new_schedule, review_application

log = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/factory", tags=["factory"])

INVITATION_TTL = timedelta(days=30)


class BillIn(BaseModel):
    farmerId: str
    cropQuantity: float = Field(..., gt=0)
    totalAmount: float = Field(..., gt=0)
    billDate: Optional[datetime] = None


class HHMInviteIn(BaseModel):
    hhmId: str
    message: Optional[str] = Field(None, max_length=500)


# ------------------------- Bills -------------------------

@router.post("/bills", status_code=201)
def create_bill(body: BillIn, user=Depends(require_roles("Factory")), db=Depends(get_db)):
    require_oid(body.farmerId, "farmer ID")
    farmer = get_by_id(db, USERS, body.farmerId, extra={"role": "Farmer"})
    if not farmer:
        raise HTTPException(status_code=404, detail="Farmer not found")
    bill = Bill(
        factoryId=user["id"],
        farmerId=body.farmerId,
        cropQuantity=body.cropQuantity,
        totalAmount=body.totalAmount,
        billDate=body.billDate or now_utc(),
    ).model_dump()
    insert_with_id(db, BILLS, bill)
    log.info("bill_created", bill_id=bill["id"], farmer_id=body.farmerId, amount=body.totalAmount)
    return JSONResponse(status_code=201, content=ok(serialize(bill), "Bill created successfully"))


@router.get("/bills")
def list_bills(status: Optional[str] = None, user=Depends(require_roles("Factory")), db=Depends(get_db)):
    query = {"factoryId": user["id"]}
    if status:
        query["status"] = status
    bills = list_many(db, BILLS, query, sort=[("billDate", -1)])
    for bill in bills:
        farmer = get_by_id(db, USERS, bill.get("farmerId"))
        bill["farmer"] = farmer and {"id": farmer["id"], "name": farmer.get("name"), "phone": farmer.get("phone")}
    return ok(bills)


@router.put("/bills/{bill_id}/status")
def mark_bill_paid(bill_id: str, user=Depends(require_roles("Factory")), db=Depends(get_db)):
    oid = require_oid(bill_id, "bill ID")
    bill = db[BILLS].find_one({"_id": oid, "factoryId": user["id"]})
    if not bill:
        raise HTTPException(status_code=404, detail="Bill not found")
    if bill["status"] == "paid":
        raise HTTPException(status_code=400, detail="Bill is already paid")
    db[BILLS].update_one({"_id": oid, "status": "pending"}, {"$set": {"status": "paid", "updatedAt": now_utc()}})
    return ok(serialize(db[BILLS].find_one({"_id": oid})), "Bill marked as paid")


# ------------------------- HHM association -------------------------

@router.post("/invitations", status_code=201)
def invite_hhm(body: HHMInviteIn, user=Depends(require_roles("Factory")), db=Depends(get_db)):
    require_oid(body.hhmId, "HHM ID")
    hhm = get_by_id(db, USERS, body.hhmId, extra={"role": "HHM"})
    if not hhm:
        raise HTTPException(status_code=404, detail="HHM not found")
    if body.hhmId in user.get("associatedHHMs", []):
        raise HTTPException(status_code=400, detail="This HHM is already associated with your factory")
    pending = {"invitationType": "factory-to-hhm", "factoryId": user["id"], "hhmId": body.hhmId, "status": "pending"}
    if db[INVITATIONS].find_one(pending):
        raise HTTPException(status_code=400, detail="A pending invitation already exists for this HHM")

    invitation = Invitation(
        invitationType="factory-to-hhm",
        factoryId=user["id"],
        hhmId=body.hhmId,
        message=body.message,
        expiresAt=now_utc() + INVITATION_TTL,
    ).model_dump()
    insert_with_id(db, INVITATIONS, invitation)
    log.info("hhm_invited", invitation_id=invitation["id"], hhm_id=body.hhmId)
    return JSONResponse(status_code=201, content=ok(serialize(invitation), "Invitation sent successfully"))


@router.get("/invitations")
def sent_invitations(status: Optional[str] = None, user=Depends(require_roles("Factory")), db=Depends(get_db)):
    query = {"invitationType": "factory-to-hhm", "factoryId": user["id"]}
    if status:
        query["status"] = status
    return ok(list_many(db, INVITATIONS, query, sort=[("createdAt", -1)]))


@router.get("/associated-hhms")
def associated_hhms(user=Depends(require_roles("Factory")), db=Depends(get_db)):
    ids = user.get("associatedHHMs", [])
    return ok(list_many(db, USERS, {"id": {"$in": ids}, "role": "HHM"}, sort=[("name", 1)]))


# ------------------------- Maintenance jobs -------------------------

@router.post("/maintenance-jobs", status_code=201)
def post_maintenance_job(body: ScheduleIn, user=Depends(require_roles("Factory")), db=Depends(get_db)):
    schedule = new_schedule(db, user["id"], body.model_dump(), "maintenance")
    return JSONResponse(status_code=201, content=ok(serialize(schedule), "Maintenance job posted successfully"))


@router.get("/maintenance-applications")
def maintenance_applications(status: Optional[str] = None, page: int = 1, limit: int = 10,
                             user=Depends(require_roles("Factory")), db=Depends(get_db)):
    schedule_ids = [s["id"] for s in db[SCHEDULES].find({"hhmId": user["id"], "jobType": "maintenance"}, {"id": 1})]
    query = {"scheduleId": {"$in": schedule_ids}}
    if status:
        query["status"] = status
    page, limit, skip = page_window(page, limit)
    total = db[APPLICATIONS].count_documents(query)
    applications = list_many(db, APPLICATIONS, query, sort=[("createdAt", -1)], skip=skip, limit=limit)
    for application in applications:
        worker = get_by_id(db, USERS, application.get("workerId"))
        application["worker"] = worker and {"id": worker["id"], "name": worker.get("name"),
                                            "email": worker.get("email"), "phone": worker.get("phone")}
    return ok(applications, pagination=paginate(page, limit, total, "totalApplications"))


@router.put("/maintenance-applications/{application_id}")
def review_maintenance_application(application_id: str, body: ReviewIn, user=Depends(require_roles("Factory")),
                                   db=Depends(get_db)):
    oid = require_oid(application_id, "application ID")
    application = db[APPLICATIONS].find_one({"_id": oid})
    if not application:
        raise HTTPException(status_code=404, detail="Application not found")
    schedule = get_by_id(db, SCHEDULES, application.get("scheduleId"))
    if not schedule or schedule.get("hhmId") != user["id"] or schedule.get("jobType") != "maintenance":
        raise HTTPException(status_code=403, detail="You can only update applications for your own maintenance jobs")
    reviewed = review_application(db, application, body.status, body.reviewNotes)
    return ok(serialize(reviewed), f"Application {body.status} successfully")
