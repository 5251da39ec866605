"""Schedule capacity bookkeeping shared by the HHM, factory and worker endpoints."""

from datetime import datetime
from typing import List, Optional

import structlog
from fastapi import HTTPException
from pymongo import ReturnDocument

from database import APPLICATIONS, INVITATIONS, SCHEDULES, USERS, as_utc, get_by_id, insert_with_id, now_utc
from schemas import Schedule

log = structlog.get_logger(__name__)


def clean_skills(skills: List[str]) -> List[str]:
    cleaned = [s.strip() for s in skills if s.strip()]
    if not cleaned:
        raise HTTPException(status_code=400, detail="At least one required skill must be specified")
    return cleaned


def check_schedule_dates(start: datetime, end: Optional[datetime], start_changed: bool = True):
    """Validate a schedule's date window; a stored start that already passed is left alone."""
    start = as_utc(start)
    end = as_utc(end)
    if start_changed and start < now_utc():
        raise HTTPException(status_code=400, detail="Start date must be in the future")
    if end is not None and end <= start:
        raise HTTPException(status_code=400, detail="End date must be after start date")
    return start, end


def new_schedule(db, owner_id: str, fields: dict, job_type: str = "harvesting") -> dict:
    start, end = check_schedule_dates(fields["startDate"], fields.get("endDate"))
    schedule = Schedule(**{**fields, "hhmId": owner_id, "requiredSkills": clean_skills(fields["requiredSkills"]),
                           "startDate": start, "endDate": end, "jobType": job_type}).model_dump()
    insert_with_id(db, SCHEDULES, schedule)
    log.info("schedule_created", schedule_id=schedule["id"], job_type=job_type, worker_count=schedule["workerCount"])
    return schedule


def capacity_status(accepted: int, worker_count: int) -> str:
    return "closed" if accepted >= worker_count else "open"


def is_full(schedule: dict) -> bool:
    return schedule.get("acceptedWorkersCount", 0) >= schedule.get("workerCount", 0)


def is_expired(schedule: dict) -> bool:
    start = as_utc(schedule.get("startDate"))
    return start is not None and start < now_utc()


def can_worker_apply(schedule: dict) -> bool:
    return schedule.get("status") == "open" and not is_expired(schedule) and not is_full(schedule)


def open_schedule_query(extra: dict = None) -> dict:
    query = {"status": "open", "startDate": {"$gte": now_utc()}}
    if extra:
        query.update(extra)
    return query


def change_applications_count(db, schedule_id, delta: int) -> None:
    query = {"_id": schedule_id}
    if delta < 0:
        query["applicationsCount"] = {"$gte": -delta}
    db[SCHEDULES].update_one(query, {"$inc": {"applicationsCount": delta}})


def take_worker_slot(db, schedule: dict) -> dict:
    """Atomically claim one accepted-worker slot, closing the schedule when it fills up."""
    updated = db[SCHEDULES].find_one_and_update(
        {
            "_id": schedule["_id"],
            "status": "open",
            "acceptedWorkersCount": {"$lt": schedule["workerCount"]},
        },
        {"$inc": {"acceptedWorkersCount": 1}, "$set": {"updatedAt": now_utc()}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise HTTPException(status_code=400, detail="Schedule is already full or closed")
    if updated["acceptedWorkersCount"] >= updated["workerCount"]:
        db[SCHEDULES].update_one({"_id": updated["_id"]}, {"$set": {"status": "closed"}})
        updated["status"] = "closed"
        log.info("schedule_filled", schedule_id=str(updated["_id"]))
    return updated


def review_application(db, application: dict, status: str, notes: Optional[str] = None) -> dict:
    """Approve or reject a pending application; approval claims a slot on its schedule."""
    if application["status"] != "pending":
        raise HTTPException(status_code=400, detail="Application has already been reviewed")

    schedule = None
    if status == "approved":
        schedule = get_by_id(db, SCHEDULES, application["scheduleId"])
        if not schedule:
            raise HTTPException(status_code=404, detail="Schedule not found")
        if schedule.get("status") == "closed":
            raise HTTPException(status_code=400, detail="Schedule is closed. Cannot approve applications.")
        if is_full(schedule):
            raise HTTPException(status_code=400, detail="Schedule is already full. Cannot approve more applications.")

    fields = {"status": status, "reviewedAt": now_utc(), "updatedAt": now_utc()}
    if notes:
        fields["reviewNotes"] = notes.strip()
    res = db[APPLICATIONS].update_one({"_id": application["_id"], "status": "pending"}, {"$set": fields})
    if not res.matched_count:
        raise HTTPException(status_code=400, detail="Application has already been reviewed")

    if schedule is not None:
        try:
            take_worker_slot(db, schedule)
        except HTTPException:
            db[APPLICATIONS].update_one({"_id": application["_id"]},
                                        {"$set": {"status": "pending", "reviewedAt": None}})
            raise
    log.info("application_reviewed", application_id=str(application["_id"]), status=status)
    return db[APPLICATIONS].find_one({"_id": application["_id"]})


def invitation_expired(invitation: dict) -> bool:
    expires = as_utc(invitation.get("expiresAt"))
    return expires is not None and expires < now_utc()


def load_pending_invitation(db, query: dict) -> dict:
    invitation = db[INVITATIONS].find_one(query)
    if not invitation:
        raise HTTPException(status_code=404, detail="Invitation not found or unauthorized")
    if invitation.get("status") != "pending":
        raise HTTPException(status_code=400, detail="Invitation has already been responded to")
    if invitation_expired(invitation):
        raise HTTPException(status_code=400, detail="This invitation has expired")
    return invitation


def close_invitation(db, invitation: dict, status: str, response_message: str = None) -> bool:
    """Move a pending invitation to accepted/declined; False if another request got there first."""
    fields = {"status": status, "respondedAt": now_utc(), "updatedAt": now_utc()}
    if response_message:
        fields["responseMessage"] = response_message.strip()
    res = db[INVITATIONS].update_one({"_id": invitation["_id"], "status": "pending"}, {"$set": fields})
    return res.matched_count == 1


def associate_factory_and_hhm(db, factory_id: str, hhm_id: str) -> None:
    db[USERS].update_one({"id": hhm_id, "role": "HHM"}, {"$addToSet": {"associatedFactories": factory_id}})
    db[USERS].update_one({"id": factory_id, "role": "Factory"}, {"$addToSet": {"associatedHHMs": hhm_id}})
    log.info("factory_hhm_associated", factory_id=factory_id, hhm_id=hhm_id)
