import re
from datetime import datetime, timedelta
from typing import List, Literal, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from database import (APPLICATIONS, INVITATIONS, SCHEDULES, USERS, get_by_id, get_db, insert_with_id, list_many,
                      now_utc, require_oid, serialize)
from routers.common import ok
from schemas import Invitation
from security import require_roles
from staffing import (associate_factory_and_hhm, capacity_status, check_schedule_dates, clean_skills,
                      close_invitation, is_full, load_pending_invitation, new_schedule, review_application)

log = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/hhm", tags=["hhm"])

INVITATION_TTL = timedelta(days=7)


class ScheduleIn(BaseModel):
    title: Optional[str] = Field(None, max_length=200)
    description: Optional[str] = Field(None, max_length=1000)
    location: Optional[str] = Field(None, max_length=200)
    requiredSkills: List[str] = Field(..., min_length=1)
    workerCount: int = Field(..., ge=1, le=1000)
    wageOffered: float = Field(..., ge=0)
    startDate: datetime
    endDate: Optional[datetime] = None
    jobType: Literal["harvesting", "maintenance"] = "harvesting"


class ScheduleUpdate(BaseModel):
    title: Optional[str] = Field(None, max_length=200)
    description: Optional[str] = Field(None, max_length=1000)
    location: Optional[str] = Field(None, max_length=200)
    requiredSkills: Optional[List[str]] = Field(None, min_length=1)
    workerCount: Optional[int] = Field(None, ge=1, le=1000)
    wageOffered: Optional[float] = Field(None, ge=0)
    startDate: Optional[datetime] = None
    endDate: Optional[datetime] = None
    status: Optional[Literal["open", "closed"]] = None


class ReviewIn(BaseModel):
    status: Literal["approved", "rejected"]
    reviewNotes: Optional[str] = Field(None, max_length=300)


class WorkerInviteIn(BaseModel):
    workerId: str
    scheduleId: str
    message: Optional[str] = Field(None, max_length=500)


class InvitationReplyIn(BaseModel):
    status: Literal["accepted", "declined"]
    responseMessage: Optional[str] = Field(None, max_length=500)


class AvailabilityIn(BaseModel):
    availability: Literal["Available", "Unavailable"]


def _own_schedule(db, schedule_id: str, user: dict) -> dict:
    require_oid(schedule_id, "schedule ID")
    schedule = get_by_id(db, SCHEDULES, schedule_id, extra={"hhmId": user["id"]})
    if not schedule:
        raise HTTPException(status_code=404, detail="Schedule not found or unauthorized")
    return schedule


def schedule_changes(schedule: dict, body: ScheduleUpdate) -> dict:
    """Validated `$set` fields for a schedule update, keeping status in step with capacity."""
    update = {k: v for k, v in body.model_dump(exclude_unset=True).items() if v is not None}
    if not update:
        raise HTTPException(status_code=400, detail="No valid fields provided for update")
    if "requiredSkills" in update:
        update["requiredSkills"] = clean_skills(update["requiredSkills"])
    if "startDate" in update or "endDate" in update:
        start, end = check_schedule_dates(update.get("startDate", schedule["startDate"]),
                                          update.get("endDate", schedule.get("endDate")),
                                          start_changed="startDate" in update)
        update["startDate"] = start
        if end is not None:
            update["endDate"] = end
    accepted = schedule.get("acceptedWorkersCount", 0)
    if "workerCount" in update:
        if update["workerCount"] < accepted:
            raise HTTPException(status_code=400,
                                detail="Worker count cannot be lower than the number of accepted workers")
        update.setdefault("status", capacity_status(accepted, update["workerCount"]))
    update["updatedAt"] = now_utc()
    return update


# ------------------------- Schedules -------------------------

@router.post("/schedules", status_code=201)
def create_schedule(body: ScheduleIn, user=Depends(require_roles("HHM")), db=Depends(get_db)):
    schedule = new_schedule(db, user["id"], body.model_dump(), body.jobType)
    return JSONResponse(status_code=201, content=ok(serialize(schedule), "Schedule created successfully"))


@router.get("/schedules")
def my_schedules(status: Optional[str] = None, user=Depends(require_roles("HHM")), db=Depends(get_db)):
    query = {"hhmId": user["id"]}
    if status:
        query["status"] = status
    return ok(list_many(db, SCHEDULES, query, sort=[("startDate", 1)]))


@router.get("/schedules/{schedule_id}")
def get_schedule(schedule_id: str, user=Depends(require_roles("HHM")), db=Depends(get_db)):
    schedule = _own_schedule(db, schedule_id, user)
    data = serialize(schedule)
    data["isFull"] = is_full(schedule)
    return ok(data)


@router.put("/schedules/{schedule_id}")
def update_schedule(schedule_id: str, body: ScheduleUpdate, user=Depends(require_roles("HHM")), db=Depends(get_db)):
    schedule = _own_schedule(db, schedule_id, user)
    db[SCHEDULES].update_one({"_id": schedule["_id"]}, {"$set": schedule_changes(schedule, body)})
    return ok(serialize(db[SCHEDULES].find_one({"_id": schedule["_id"]})), "Schedule updated successfully")


@router.delete("/schedules/{schedule_id}")
def delete_schedule(schedule_id: str, user=Depends(require_roles("HHM")), db=Depends(get_db)):
    schedule = _own_schedule(db, schedule_id, user)
    db[SCHEDULES].delete_one({"_id": schedule["_id"]})
    removed_apps = db[APPLICATIONS].delete_many({"scheduleId": schedule_id, "status": "pending"}).deleted_count
    removed_invites = db[INVITATIONS].delete_many({"scheduleId": schedule_id, "status": "pending"}).deleted_count
    log.info("schedule_deleted", schedule_id=schedule_id, applications=removed_apps, invitations=removed_invites)
    return ok({"id": schedule_id}, "Schedule deleted successfully")


@router.get("/schedules/{schedule_id}/applications")
def schedule_applications(schedule_id: str, status: Optional[str] = None, user=Depends(require_roles("HHM")),
                          db=Depends(get_db)):
    _own_schedule(db, schedule_id, user)
    query = {"scheduleId": schedule_id}
    if status:
        query["status"] = status
    return ok(list_many(db, APPLICATIONS, query, sort=[("createdAt", -1)]))


# ------------------------- Applications -------------------------

@router.get("/applications")
def my_applications(status: Optional[str] = None, user=Depends(require_roles("HHM")), db=Depends(get_db)):
    query = {"hhmId": user["id"]}
    if status:
        query["status"] = status
    applications = list_many(db, APPLICATIONS, query, sort=[("createdAt", -1)])
    for application in applications:
        worker = get_by_id(db, USERS, application.get("workerId"))
        application["worker"] = worker and {"id": worker["id"], "name": worker.get("name"),
                                            "phone": worker.get("phone"), "skills": worker.get("skills", [])}
    return ok(applications)


@router.put("/applications/{application_id}")
def review(application_id: str, body: ReviewIn, user=Depends(require_roles("HHM")), db=Depends(get_db)):
    require_oid(application_id, "application ID")
    application = get_by_id(db, APPLICATIONS, application_id, extra={"hhmId": user["id"]})
    if not application:
        raise HTTPException(status_code=404, detail="Application not found or unauthorized")
    reviewed = review_application(db, application, body.status, body.reviewNotes)
    return ok(serialize(reviewed), f"Application {body.status} successfully")


# ------------------------- Workers & invitations -------------------------

@router.get("/workers")
def worker_directory(skill: Optional[str] = None, availability: Optional[str] = None,
                     user=Depends(require_roles("HHM")), db=Depends(get_db)):
    query = {"role": "Worker", "isActive": {"$ne": False}}
    if skill:
        query["skills"] = {"$regex": f"^{re.escape(skill.strip())}$", "$options": "i"}
    if availability:
        query["availability"] = availability
    return ok(list_many(db, USERS, query, sort=[("name", 1)]))


@router.put("/workers/{worker_id}/availability")
def set_worker_availability(worker_id: str, body: AvailabilityIn, user=Depends(require_roles("HHM")),
                            db=Depends(get_db)):
    require_oid(worker_id, "worker ID")
    worker = get_by_id(db, USERS, worker_id, extra={"role": "Worker"})
    if not worker:
        raise HTTPException(status_code=404, detail="Worker not found")
    hired = db[APPLICATIONS].find_one({"workerId": worker_id, "hhmId": user["id"], "status": "approved"}) or \
        db[INVITATIONS].find_one({"workerId": worker_id, "hhmId": user["id"], "status": "accepted"})
    if not hired:
        raise HTTPException(status_code=403, detail="You can only update availability for workers on your schedules")
    db[USERS].update_one({"_id": worker["_id"]}, {"$set": {"availability": body.availability, "updatedAt": now_utc()}})
    log.info("worker_availability_set", worker_id=worker_id, availability=body.availability)
    return ok({"id": worker_id, "availability": body.availability}, "Worker availability updated successfully")


@router.post("/invitations", status_code=201)
def invite_worker(body: WorkerInviteIn, user=Depends(require_roles("HHM")), db=Depends(get_db)):
    require_oid(body.workerId, "worker ID")
    schedule = _own_schedule(db, body.scheduleId, user)
    if schedule.get("status") != "open" or is_full(schedule):
        raise HTTPException(status_code=400, detail="Schedule is not accepting workers")
    worker = get_by_id(db, USERS, body.workerId, extra={"role": "Worker"})
    if not worker:
        raise HTTPException(status_code=404, detail="Worker not found")
    if db[INVITATIONS].find_one({"workerId": body.workerId, "scheduleId": body.scheduleId, "status": "pending"}):
        raise HTTPException(status_code=400, detail="A pending invitation already exists for this worker and schedule")

    invitation = Invitation(
        invitationType="hhm-to-worker",
        hhmId=user["id"],
        workerId=body.workerId,
        scheduleId=body.scheduleId,
        message=body.message,
        expiresAt=now_utc() + INVITATION_TTL,
    ).model_dump()
    insert_with_id(db, INVITATIONS, invitation)
    log.info("worker_invited", invitation_id=invitation["id"], worker_id=body.workerId)
    return JSONResponse(status_code=201, content=ok(serialize(invitation), "Invitation sent successfully"))


@router.get("/factory-invitations")
def factory_invitations(status: Optional[str] = None, user=Depends(require_roles("HHM")), db=Depends(get_db)):
    query = {"invitationType": "factory-to-hhm", "hhmId": user["id"]}
    if status:
        query["status"] = status
    invitations = list_many(db, INVITATIONS, query, sort=[("createdAt", -1)])
    for invitation in invitations:
        factory = get_by_id(db, USERS, invitation.get("factoryId"))
        invitation["factory"] = factory and {"id": factory["id"], "name": factory.get("name"),
                                             "factoryName": factory.get("factoryName"),
                                             "factoryLocation": factory.get("factoryLocation")}
    return ok(invitations)


@router.put("/factory-invitations/{invitation_id}")
def answer_factory_invitation(invitation_id: str, body: InvitationReplyIn, user=Depends(require_roles("HHM")),
                              db=Depends(get_db)):
    oid = require_oid(invitation_id, "invitation ID")
    invitation = load_pending_invitation(db, {"_id": oid, "hhmId": user["id"], "invitationType": "factory-to-hhm"})
    if not close_invitation(db, invitation, body.status, body.responseMessage):
        raise HTTPException(status_code=409, detail="Invitation has already been responded to")
    if body.status == "accepted":
        associate_factory_and_hhm(db, invitation["factoryId"], user["id"])
    return ok(serialize(db[INVITATIONS].find_one({"_id": oid})), f"Invitation {body.status} successfully")


# ------------------------- Dashboard -------------------------

@router.get("/dashboard")
def dashboard(user=Depends(require_roles("HHM")), db=Depends(get_db)):
    hhm_id = user["id"]
    return ok({
        "schedules": {
            "total": db[SCHEDULES].count_documents({"hhmId": hhm_id}),
            "open": db[SCHEDULES].count_documents({"hhmId": hhm_id, "status": "open"}),
        },
        "applications": {
            "pending": db[APPLICATIONS].count_documents({"hhmId": hhm_id, "status": "pending"}),
            "approved": db[APPLICATIONS].count_documents({"hhmId": hhm_id, "status": "approved"}),
        },
        "invitations": {
            "pending": db[INVITATIONS].count_documents({"hhmId": hhm_id, "invitationType": "hhm-to-worker",
                                                        "status": "pending"}),
        },
        "associatedFactories": len(user.get("associatedFactories", [])),
    })
