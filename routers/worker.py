import re
from typing import List, Literal, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from pymongo.errors import DuplicateKeyError

from database import (APPLICATIONS, INVITATIONS, SCHEDULES, USERS, get_by_id, get_db, insert_with_id, list_many,
                      require_oid, serialize)
from routers.common import ok
from schemas import Application
from security import require_roles
from staffing import (can_worker_apply, change_applications_count, close_invitation, is_full,
                      load_pending_invitation, open_schedule_query, take_worker_slot)

log = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/worker", tags=["worker"])


class ApplicationIn(BaseModel):
    scheduleId: str
    workerSkills: List[str] = Field(..., min_length=1)
    applicationMessage: Optional[str] = Field(None, max_length=500)
    experience: Optional[str] = Field(None, max_length=200)
    expectedWage: Optional[float] = Field(None, ge=0)
    availability: Literal["full-time", "part-time", "flexible"] = "flexible"


class InvitationReplyIn(BaseModel):
    status: Literal["accepted", "declined"]
    responseMessage: Optional[str] = Field(None, max_length=500)


def _hhm_summary(db, hhm_id):
    hhm = get_by_id(db, USERS, hhm_id)
    return hhm and {"id": hhm["id"], "name": hhm.get("name"), "phone": hhm.get("phone"), "location": hhm.get("location")}


# ------------------------- Jobs -------------------------

@router.get("/jobs")
def job_feed(skill: Optional[str] = None, jobType: Optional[str] = None, user=Depends(require_roles("Worker")),
             db=Depends(get_db)):
    extra = {}
    if skill:
        extra["requiredSkills"] = {"$regex": f"^{re.escape(skill.strip())}$", "$options": "i"}
    if jobType:
        extra["jobType"] = jobType
    schedules = list_many(db, SCHEDULES, open_schedule_query(extra), sort=[("startDate", 1)])
    jobs = []
    applied = {a["scheduleId"] for a in db[APPLICATIONS].find({"workerId": user["id"]}, {"scheduleId": 1})}
    for schedule in schedules:
        if is_full(schedule):
            continue
        schedule["hhm"] = _hhm_summary(db, schedule.get("hhmId"))
        schedule["hasApplied"] = schedule["id"] in applied
        jobs.append(schedule)
    return ok(jobs)


def matching_skills(required: List[str], worker_skills: List[str]) -> List[str]:
    """Required skills that overlap one of the worker's skills, ignoring case."""
    own = [s.lower() for s in worker_skills]
    return [skill for skill in required if any(w in skill.lower() or skill.lower() in w for w in own)]


@router.get("/jobs/recommendations")
def recommended_jobs(limit: int = 10, user=Depends(require_roles("Worker")), db=Depends(get_db)):
    skills = [s for s in user.get("skills", []) if s]
    if not skills:
        raise HTTPException(status_code=400,
                            detail="Please update your profile with skills to get personalized recommendations")
    limit = max(1, min(50, limit))

    statuses = {a["scheduleId"]: a["status"]
                for a in db[APPLICATIONS].find({"workerId": user["id"]}, {"scheduleId": 1, "status": 1})}
    picks = []
    for schedule in list_many(db, SCHEDULES, open_schedule_query(), sort=[("wageOffered", -1), ("createdAt", -1)]):
        matched = matching_skills(schedule.get("requiredSkills", []), skills)
        if not matched:
            continue
        schedule["matchingSkills"] = matched
        schedule["skillMatchScore"] = len(matched) / len(schedule["requiredSkills"])
        schedule["applicationStatus"] = statuses.get(schedule["id"])
        schedule["canApply"] = can_worker_apply(schedule) and schedule["id"] not in statuses
        picks.append(schedule)
        if len(picks) == limit:
            break
    return ok(picks, f"Found {len(picks)} job recommendations based on your skills", workerSkills=skills)


@router.get("/jobs/{schedule_id}")
def job_detail(schedule_id: str, user=Depends(require_roles("Worker")), db=Depends(get_db)):
    oid = require_oid(schedule_id, "schedule ID")
    schedule = db[SCHEDULES].find_one(open_schedule_query({"_id": oid}))
    if not schedule:
        raise HTTPException(status_code=404, detail="Job not found or no longer available")
    application = db[APPLICATIONS].find_one({"workerId": user["id"], "scheduleId": schedule_id})
    invitation = db[INVITATIONS].find_one({"workerId": user["id"], "scheduleId": schedule_id})

    data = serialize(schedule)
    data.update({
        "hhm": _hhm_summary(db, schedule.get("hhmId")),
        "applicationStatus": application and application["status"],
        "invitationStatus": invitation and invitation["status"],
        "canApply": can_worker_apply(schedule) and application is None,
        "spotsRemaining": schedule["workerCount"] - schedule.get("acceptedWorkersCount", 0),
        "hasApplied": application is not None,
        "hasInvitation": invitation is not None,
    })
    return ok(data)


# ------------------------- Applications -------------------------

@router.post("/applications", status_code=201)
def apply_for_job(body: ApplicationIn, user=Depends(require_roles("Worker")), db=Depends(get_db)):
    require_oid(body.scheduleId, "schedule ID")
    skills = [s.strip() for s in body.workerSkills if s.strip()]
    if not skills:
        raise HTTPException(status_code=400, detail="Worker skills must be provided as a non-empty array")

    schedule = get_by_id(db, SCHEDULES, body.scheduleId)
    if not schedule:
        raise HTTPException(status_code=404, detail="Schedule not found")
    if not can_worker_apply(schedule):
        raise HTTPException(status_code=400, detail="This schedule is no longer accepting applications")
    if db[APPLICATIONS].find_one({"workerId": user["id"], "scheduleId": body.scheduleId}):
        raise HTTPException(status_code=400, detail="You have already applied for this job")
    if user.get("availability", "Available") != "Available":
        raise HTTPException(status_code=400, detail="You must be available to apply for jobs. Update your availability status.")

    application = Application(
        workerId=user["id"],
        scheduleId=body.scheduleId,
        hhmId=schedule["hhmId"],
        workerSkills=skills,
        applicationMessage=body.applicationMessage,
        experience=body.experience,
        expectedWage=body.expectedWage,
        availability=body.availability,
    ).model_dump()
    try:
        insert_with_id(db, APPLICATIONS, application)
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="You have already applied for this job")
    change_applications_count(db, schedule["_id"], 1)
    log.info("application_submitted", application_id=application["id"], schedule_id=body.scheduleId)
    return JSONResponse(status_code=201, content=ok(serialize(application), "Application submitted successfully"))


@router.get("/applications")
def my_applications(status: Optional[str] = None, user=Depends(require_roles("Worker")), db=Depends(get_db)):
    query = {"workerId": user["id"]}
    if status:
        query["status"] = status
    applications = list_many(db, APPLICATIONS, query, sort=[("createdAt", -1)])
    for application in applications:
        schedule = get_by_id(db, SCHEDULES, application.get("scheduleId"))
        application["schedule"] = schedule and {
            "id": schedule["id"], "title": schedule.get("title"), "startDate": schedule.get("startDate"),
            "wageOffered": schedule.get("wageOffered"), "status": schedule.get("status"),
            "location": schedule.get("location"),
        }
    return ok(applications)


@router.delete("/applications/{application_id}")
def withdraw_application(application_id: str, user=Depends(require_roles("Worker")), db=Depends(get_db)):
    oid = require_oid(application_id, "application ID")
    application = db[APPLICATIONS].find_one({"_id": oid, "workerId": user["id"]})
    if not application:
        raise HTTPException(status_code=404, detail="Application not found or unauthorized")
    if application["status"] != "pending":
        raise HTTPException(status_code=400, detail="Only pending applications can be withdrawn")
    if db[APPLICATIONS].delete_one({"_id": oid, "status": "pending"}).deleted_count:
        schedule_oid = require_oid(application["scheduleId"], "schedule ID")
        change_applications_count(db, schedule_oid, -1)
    return ok({"id": application_id}, "Application withdrawn successfully")


# ------------------------- Invitations -------------------------

@router.get("/invitations")
def my_invitations(status: Optional[str] = None, user=Depends(require_roles("Worker")), db=Depends(get_db)):
    query = {"workerId": user["id"], "invitationType": "hhm-to-worker"}
    if status:
        query["status"] = status
    invitations = list_many(db, INVITATIONS, query, sort=[("createdAt", -1)])
    for invitation in invitations:
        invitation["hhm"] = _hhm_summary(db, invitation.get("hhmId"))
        schedule = get_by_id(db, SCHEDULES, invitation.get("scheduleId"))
        invitation["schedule"] = schedule and serialize(schedule)
    return ok(invitations)


@router.put("/invitations/{invitation_id}")
def answer_invitation(invitation_id: str, body: InvitationReplyIn, user=Depends(require_roles("Worker")),
                      db=Depends(get_db)):
    oid = require_oid(invitation_id, "invitation ID")
    invitation = load_pending_invitation(db, {"_id": oid, "workerId": user["id"], "invitationType": "hhm-to-worker"})

    schedule = None
    if body.status == "accepted":
        schedule = get_by_id(db, SCHEDULES, invitation.get("scheduleId"))
        if not schedule or not can_worker_apply(schedule):
            raise HTTPException(status_code=400, detail="This job is no longer available or accepting workers")
        if user.get("availability", "Available") != "Available":
            raise HTTPException(status_code=400, detail="You must be available to accept invitations. Update your availability status.")
        schedule = take_worker_slot(db, schedule)

    if not close_invitation(db, invitation, body.status, body.responseMessage):
        if schedule is not None:
            db[SCHEDULES].update_one({"_id": schedule["_id"]}, {"$inc": {"acceptedWorkersCount": -1}, "$set": {"status": "open"}})
        raise HTTPException(status_code=409, detail="Invitation has already been responded to")

    log.info("invitation_answered", invitation_id=invitation_id, status=body.status)
    return ok(serialize(db[INVITATIONS].find_one({"_id": oid})), f"Invitation {body.status} successfully")


# ------------------------- Dashboard -------------------------

@router.get("/dashboard")
def dashboard(user=Depends(require_roles("Worker")), db=Depends(get_db)):
    worker_id = user["id"]
    return ok({
        "applications": {
            status: db[APPLICATIONS].count_documents({"workerId": worker_id, "status": status})
            for status in ("pending", "approved", "rejected")
        },
        "pendingInvitations": db[INVITATIONS].count_documents({"workerId": worker_id, "status": "pending"}),
        "availability": user.get("availability", "Available"),
    })
