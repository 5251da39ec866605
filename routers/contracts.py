from datetime import timedelta
from typing import Literal, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from contracts import (FINAL_CONTRACT_STATUSES, advance_contract, contract_view, default_expiry, reject_if_expired)
from database import CONTRACTS, USERS, as_utc, get_by_id, get_db, insert_with_id, now_utc, paginate, require_oid
from routers.common import ok, page_window
from schemas import ACTIVE_CONTRACT_STATUSES, Contract
from security import require_roles

log = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/contracts", tags=["contracts"])

Priority = Literal["low", "medium", "high", "urgent"]


class ContractRequestIn(BaseModel):
    factoryId: str
    hhm_request_details: Optional[dict] = None
    title: Optional[str] = Field(None, max_length=200)
    initial_message: Optional[str] = Field(None, max_length=500)
    priority: Priority = "medium"
    contract_value: Optional[float] = Field(None, ge=0)
    duration_days: Optional[int] = Field(None, ge=1)


class FactoryInviteIn(BaseModel):
    hhmId: str
    factory_requirements: Optional[dict] = None
    title: Optional[str] = Field(None, max_length=200)
    initial_message: Optional[str] = Field(None, max_length=500)
    priority: Priority = "medium"
    contract_value: Optional[float] = Field(None, ge=0)
    duration_days: Optional[int] = Field(None, ge=1)


class FactoryResponseIn(BaseModel):
    decision: Literal["reject", "offer"]
    factory_allowance_list: Optional[dict] = None
    response_message: Optional[str] = Field(None, max_length=500)


class FinalizeIn(BaseModel):
    decision: Literal["accept", "reject"]
    response_message: Optional[str] = Field(None, max_length=500)


class ReplyIn(BaseModel):
    response_message: Optional[str] = Field(None, max_length=500)


class ExtendIn(BaseModel):
    days: int = 7


class CancelIn(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


def _own_field(user: dict) -> str:
    return "hhm_id" if user["role"] == "HHM" else "factory_id"


def _partner_field(user: dict) -> str:
    return "factory_id" if user["role"] == "HHM" else "hhm_id"


def _is_party(contract: dict, user: dict) -> bool:
    return user["id"] in (contract.get("hhm_id"), contract.get("factory_id"))


def _load(db, contract_id: str) -> dict:
    oid = require_oid(contract_id, "contract ID")
    contract = db[CONTRACTS].find_one({"_id": oid})
    if not contract:
        raise HTTPException(status_code=404, detail="Contract not found")
    return contract


def _user_summary(db, user_id):
    other = get_by_id(db, USERS, user_id)
    return other and {
        "id": other["id"], "name": other.get("name"), "email": other.get("email"), "phone": other.get("phone"),
        "factoryName": other.get("factoryName"), "location": other.get("location") or other.get("factoryLocation"),
    }


def _with_parties(db, contract: dict) -> dict:
    data = contract_view(contract)
    data["hhm"] = _user_summary(db, contract.get("hhm_id"))
    data["factory"] = _user_summary(db, contract.get("factory_id"))
    return data


# ------------------------- Opening a contract -------------------------

@router.post("/request", status_code=201)
def request_contract(body: ContractRequestIn, user=Depends(require_roles("HHM")), db=Depends(get_db)):
    require_oid(body.factoryId, "factory ID")
    factory = get_by_id(db, USERS, body.factoryId)
    if not factory:
        raise HTTPException(status_code=404, detail="Factory not found")
    if factory.get("role") != "Factory":
        raise HTTPException(status_code=400, detail="Referenced user must have Factory role")
    if not body.hhm_request_details:
        raise HTTPException(status_code=400, detail="HHM request details are required and must be an object")
    active = {"hhm_id": user["id"], "factory_id": body.factoryId, "status": {"$in": list(ACTIVE_CONTRACT_STATUSES)}}
    if db[CONTRACTS].find_one(active):
        raise HTTPException(status_code=409, detail="An active contract already exists between you and this factory")

    contract = Contract(
        hhm_id=user["id"],
        factory_id=body.factoryId,
        status="hhm_pending",
        initiated_by="hhm",
        last_modified_by="hhm",
        expires_at=default_expiry(),
        **body.model_dump(exclude={"factoryId"}),
    ).model_dump()
    insert_with_id(db, CONTRACTS, contract)
    log.info("contract_requested", contract_id=contract["id"], hhm_id=user["id"], factory_id=body.factoryId)
    return JSONResponse(status_code=201, content=ok(_with_parties(db, contract), "Contract request created successfully"))


@router.post("/invite", status_code=201)
def invite_hhm(body: FactoryInviteIn, user=Depends(require_roles("Factory")), db=Depends(get_db)):
    require_oid(body.hhmId, "HHM ID")
    hhm = get_by_id(db, USERS, body.hhmId)
    if not hhm:
        raise HTTPException(status_code=404, detail="HHM not found")
    if hhm.get("role") != "HHM":
        raise HTTPException(status_code=400, detail="Referenced user must have HHM role")
    active = {"hhm_id": body.hhmId, "factory_id": user["id"], "status": {"$in": list(ACTIVE_CONTRACT_STATUSES)}}
    if db[CONTRACTS].find_one(active):
        raise HTTPException(status_code=409, detail="An active contract or invite already exists with this HHM")

    contract = Contract(
        hhm_id=body.hhmId,
        factory_id=user["id"],
        status="factory_invite",
        initiated_by="factory",
        last_modified_by="factory",
        expires_at=default_expiry(),
        **body.model_dump(exclude={"hhmId"}),
    ).model_dump()
    insert_with_id(db, CONTRACTS, contract)
    log.info("contract_invite_sent", contract_id=contract["id"], hhm_id=body.hhmId, factory_id=user["id"])
    return JSONResponse(status_code=201, content=ok(_with_parties(db, contract), "Factory invitation sent successfully"))


# ------------------------- Negotiation -------------------------

@router.put("/respond/{contract_id}")
def factory_response(contract_id: str, body: FactoryResponseIn, user=Depends(require_roles("Factory")),
                     db=Depends(get_db)):
    if body.decision == "offer" and not body.factory_allowance_list:
        raise HTTPException(status_code=400,
                            detail="Factory allowance list is required when making an offer and must be an object")
    oid = require_oid(contract_id, "contract ID")
    contract = db[CONTRACTS].find_one({"_id": oid, "factory_id": user["id"]})
    if not contract:
        raise HTTPException(status_code=404,
                            detail="Contract not found or you are not authorized to respond to this contract")
    if contract["status"] != "hhm_pending":
        raise HTTPException(status_code=400,
                            detail=f"Cannot respond to contract in status: {contract['status']}. Expected: hhm_pending")
    reject_if_expired(db, contract, "Cannot respond to an expired contract")

    fields = {"response_message": body.response_message}
    if body.decision == "reject":
        updated = advance_contract(db, contract, "factory_rejected", fields)
        message = "Contract rejected successfully"
    else:
        fields.update({
            "factory_allowance_list": body.factory_allowance_list,
            "last_modified_by": "factory",
            "revision_count": contract.get("revision_count", 0) + 1,
        })
        updated = advance_contract(db, contract, "factory_offer", fields)
        message = "Contract counter-offer sent successfully"
    return ok(_with_parties(db, updated), message)


@router.put("/finalize/{contract_id}")
def finalize_contract(contract_id: str, body: FinalizeIn, user=Depends(require_roles("HHM")), db=Depends(get_db)):
    oid = require_oid(contract_id, "contract ID")
    contract = db[CONTRACTS].find_one({"_id": oid, "hhm_id": user["id"]})
    if not contract:
        raise HTTPException(status_code=404,
                            detail="Contract not found or you are not authorized to finalize this contract")
    if contract["status"] != "factory_offer":
        raise HTTPException(status_code=400,
                            detail=f"Cannot finalize contract in status: {contract['status']}. Expected: factory_offer")
    reject_if_expired(db, contract, "Cannot finalize an expired contract")

    target = "hhm_accepted" if body.decision == "accept" else "hhm_rejected"
    updated = advance_contract(db, contract, target, {"response_message": body.response_message,
                                                      "last_modified_by": "hhm"})
    return ok(_with_parties(db, updated), f"Contract {body.decision}ed successfully")


def _answer_invite(db, user, contract_id: str, target: str, response_message: Optional[str]):
    contract = _load(db, contract_id)
    if contract["hhm_id"] != user["id"]:
        raise HTTPException(status_code=403, detail="You are not authorized to respond to this invitation")
    if contract["status"] != "factory_invite":
        raise HTTPException(status_code=400, detail="This invitation is no longer available for response")
    reject_if_expired(db, contract, "This invitation has expired")
    return advance_contract(db, contract, target, {"response_message": response_message, "last_modified_by": "hhm"})


@router.put("/{contract_id}/accept-invite")
def accept_invite(contract_id: str, body: Optional[ReplyIn] = None, user=Depends(require_roles("HHM")),
                  db=Depends(get_db)):
    updated = _answer_invite(db, user, contract_id, "hhm_accepted", body and body.response_message)
    return ok(_with_parties(db, updated), "Factory invitation accepted successfully")


@router.put("/{contract_id}/reject-invite")
def reject_invite(contract_id: str, body: Optional[ReplyIn] = None, user=Depends(require_roles("HHM")),
                  db=Depends(get_db)):
    updated = _answer_invite(db, user, contract_id, "hhm_rejected", body and body.response_message)
    return ok(_with_parties(db, updated), "Factory invitation rejected")


# ------------------------- Reads -------------------------

@router.get("/my-contracts")
def my_contracts(status: Optional[str] = None, page: int = 1, limit: int = 10,
                 user=Depends(require_roles("HHM", "Factory")), db=Depends(get_db)):
    query = {_own_field(user): user["id"]}
    if status:
        query["status"] = status
    page, limit, skip = page_window(page, limit)
    total = db[CONTRACTS].count_documents(query)
    cursor = db[CONTRACTS].find(query).sort([("createdAt", -1)]).skip(skip).limit(limit)
    contracts = []
    for contract in cursor:
        data = contract_view(contract)
        data["partner"] = _user_summary(db, contract.get(_partner_field(user)))
        contracts.append(data)
    return ok(contracts, pagination=paginate(page, limit, total, "totalContracts"))


@router.get("/stats")
def contract_stats(user=Depends(require_roles("HHM", "Factory")), db=Depends(get_db)):
    counts = {}
    for row in db[CONTRACTS].aggregate([
        {"$match": {_own_field(user): user["id"]}},
        {"$group": {"_id": "$status", "count": {"$sum": 1}}},
    ]):
        counts[row["_id"]] = row["count"]
    total = sum(counts.values())
    accepted = counts.get("hhm_accepted", 0)
    stats = {
        "total": total,
        "active": sum(counts.get(s, 0) for s in ACTIVE_CONTRACT_STATUSES),
        "accepted": accepted,
        "rejected": counts.get("hhm_rejected", 0) + counts.get("factory_rejected", 0),
        "expired": counts.get("expired", 0),
        "cancelled": counts.get("cancelled", 0),
        "acceptanceRate": round(accepted / total * 100, 1) if total else 0,
        "byStatus": counts,
    }
    return ok(stats)


@router.get("/dashboard")
def contract_dashboard(user=Depends(require_roles("HHM", "Factory")), db=Depends(get_db)):
    own = {_own_field(user): user["id"]}
    now = now_utc()
    active = {**own, "status": {"$in": list(ACTIVE_CONTRACT_STATUSES)}}
    expiring = {**active, "expires_at": {"$gte": now, "$lte": now + timedelta(days=7)}}

    recent = [contract_view(c) for c in db[CONTRACTS].find(own).sort([("updatedAt", -1)]).limit(5)]
    expiring_contracts = [contract_view(c) for c in db[CONTRACTS].find(expiring).sort([("expires_at", 1)])]
    return ok({
        "summary": {
            "total": db[CONTRACTS].count_documents(own),
            "activeNegotiations": db[CONTRACTS].count_documents(active),
            "recentActivity": db[CONTRACTS].count_documents({**own, "updatedAt": {"$gte": now - timedelta(days=30)}}),
            "expiringSoon": len(expiring_contracts),
        },
        "recentContracts": recent,
        "expiringContracts": expiring_contracts,
        "userRole": user["role"],
    }, "Dashboard data retrieved successfully")


@router.get("/partner/{partner_id}")
def contracts_with_partner(partner_id: str, user=Depends(require_roles("HHM", "Factory")), db=Depends(get_db)):
    require_oid(partner_id, "partner ID")
    query = {_own_field(user): user["id"], _partner_field(user): partner_id}
    contracts = [contract_view(c) for c in db[CONTRACTS].find(query).sort([("createdAt", -1)])]
    return ok(contracts, partner=_user_summary(db, partner_id), count=len(contracts))


@router.get("/{contract_id}")
def contract_detail(contract_id: str, user=Depends(require_roles("HHM", "Factory")), db=Depends(get_db)):
    contract = _load(db, contract_id)
    if not _is_party(contract, user):
        raise HTTPException(status_code=403, detail="You are not authorized to view this contract")
    return ok(_with_parties(db, contract))


# ------------------------- Deadline and cancellation -------------------------

@router.put("/{contract_id}/extend")
def extend_deadline(contract_id: str, body: Optional[ExtendIn] = None, user=Depends(require_roles("HHM", "Factory")),
                    db=Depends(get_db)):
    days = body.days if body else 7
    if not 1 <= days <= 30:
        raise HTTPException(status_code=400, detail="Extension days must be an integer between 1 and 30")
    contract = _load(db, contract_id)
    if not _is_party(contract, user):
        raise HTTPException(status_code=403, detail="You are not authorized to extend this contract")
    if contract["status"] in FINAL_CONTRACT_STATUSES:
        raise HTTPException(status_code=400, detail="Cannot extend expiration for finalized contracts")

    base = max(as_utc(contract.get("expires_at")) or now_utc(), now_utc())
    expires_at = base + timedelta(days=days)
    res = db[CONTRACTS].update_one(
        {"_id": contract["_id"], "status": contract["status"]},
        {"$set": {"expires_at": expires_at, "updatedAt": now_utc()}},
    )
    if not res.matched_count:
        raise HTTPException(status_code=409, detail="Contract was updated by another request. Please refresh and retry.")
    log.info("contract_extended", contract_id=contract_id, days=days)
    return ok({"id": contract_id, "expires_at": expires_at}, f"Contract deadline extended by {days} days")


@router.put("/{contract_id}/cancel")
def cancel_contract(contract_id: str, body: Optional[CancelIn] = None, user=Depends(require_roles("HHM", "Factory")),
                    db=Depends(get_db)):
    contract = _load(db, contract_id)
    if not _is_party(contract, user):
        raise HTTPException(status_code=403, detail="You are not authorized to cancel this contract")
    if contract["status"] in FINAL_CONTRACT_STATUSES:
        raise HTTPException(status_code=400, detail="Cannot cancel a finalized contract")
    fields = {"response_message": body and body.reason, "last_modified_by": "hhm" if user["role"] == "HHM" else "factory"}
    updated = advance_contract(db, contract, "cancelled", fields)
    return ok(_with_parties(db, updated), "Contract cancelled successfully")
