from typing import Literal, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from contracts import (FARMER_CONTRACT_STATUSES, accept_farmer_contract, cancel_overdue_requests, grace_period_over,
                       move_farmer_contract)
from database import FARMER_CONTRACTS, USERS, get_by_id, get_db, insert_with_id, now_utc, paginate, require_oid, serialize
from routers.common import ok
from schemas import FarmerContract
from security import require_roles

log = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/farmer-contracts", tags=["farmer-contracts"])


class FarmerContractIn(BaseModel):
    hhm_id: str
    contract_details: Optional[dict] = None
    duration_days: int = Field(..., ge=1, le=365)
    grace_period_days: int = Field(2, ge=1, le=30)


class DecisionIn(BaseModel):
    decision: Literal["accept", "reject"]


def _party_field(user: dict) -> str:
    return "farmer_id" if user["role"] == "Farmer" else "hhm_id"


def _summary(db, user_id):
    other = get_by_id(db, USERS, user_id)
    return other and {"id": other["id"], "name": other.get("name"), "phone": other.get("phone"),
                      "location": other.get("location")}


def _load_for_party(db, user, contract_id: str) -> dict:
    oid = require_oid(contract_id, "contract ID")
    contract = db[FARMER_CONTRACTS].find_one({"_id": oid})
    if not contract:
        raise HTTPException(status_code=404, detail="Contract not found")
    if user["id"] not in (contract["farmer_id"], contract["hhm_id"]):
        raise HTTPException(status_code=403, detail="Access denied. You are not a party to this contract")
    return contract


def _require_accepted(contract: dict, action: str) -> None:
    if contract["status"] != "hhm_accepted":
        raise HTTPException(status_code=400, detail=f"Contract must be in accepted state to mark as {action}")


@router.post("/request", status_code=201)
def request_hhm(body: FarmerContractIn, user=Depends(require_roles("Farmer")), db=Depends(get_db)):
    if not body.contract_details:
        raise HTTPException(status_code=400, detail="Contract details are required")
    require_oid(body.hhm_id, "HHM ID")
    hhm = get_by_id(db, USERS, body.hhm_id)
    if not hhm:
        raise HTTPException(status_code=404, detail="HHM not found")
    if hhm.get("role") != "HHM":
        raise HTTPException(status_code=400, detail="User must have HHM role")
    if hhm.get("isActive") is False:
        raise HTTPException(status_code=400, detail="HHM account is not active")

    cancel_overdue_requests(db, {"farmer_id": user["id"]})
    if db[FARMER_CONTRACTS].find_one({"farmer_id": user["id"], "hhm_id": body.hhm_id, "status": "farmer_pending"}):
        raise HTTPException(status_code=409, detail="A pending contract already exists between you and this HHM")

    contract = FarmerContract(farmer_id=user["id"], **body.model_dump()).model_dump()
    insert_with_id(db, FARMER_CONTRACTS, contract)
    log.info("farmer_contract_requested", contract_id=contract["id"], farmer_id=user["id"], hhm_id=body.hhm_id)
    data = serialize(contract)
    data["hhm"] = _summary(db, body.hhm_id)
    return JSONResponse(status_code=201, content=ok(data, "Contract request sent successfully"))


@router.get("/my-contracts")
def my_contracts(status: Optional[str] = None, page: int = 1, limit: int = 10,
                 user=Depends(require_roles("Farmer", "HHM")), db=Depends(get_db)):
    if status and status not in FARMER_CONTRACT_STATUSES:
        raise HTTPException(status_code=400, detail="Invalid status. Valid options: " + ", ".join(FARMER_CONTRACT_STATUSES))
    if page < 1 or not 1 <= limit <= 50:
        raise HTTPException(status_code=400,
                            detail="Invalid pagination parameters. Page must be >= 1, limit must be 1-50")

    own = {_party_field(user): user["id"]}
    cancel_overdue_requests(db, own)
    query = {**own, "status": status} if status else own
    total = db[FARMER_CONTRACTS].count_documents(query)
    cursor = db[FARMER_CONTRACTS].find(query).sort([("createdAt", -1)]).skip((page - 1) * limit).limit(limit)
    contracts = []
    for contract in cursor:
        data = serialize(contract)
        data["farmer"] = _summary(db, contract["farmer_id"])
        data["hhm"] = _summary(db, contract["hhm_id"])
        contracts.append(data)
    summary = {s: db[FARMER_CONTRACTS].count_documents({**own, "status": s}) for s in FARMER_CONTRACT_STATUSES}
    return ok(contracts, "Contracts retrieved successfully",
              pagination=paginate(page, limit, total, "totalContracts"), summary=summary)


@router.put("/respond/{contract_id}")
def respond(contract_id: str, body: DecisionIn, user=Depends(require_roles("HHM")), db=Depends(get_db)):
    oid = require_oid(contract_id, "contract ID")
    contract = db[FARMER_CONTRACTS].find_one({"_id": oid})
    if not contract:
        raise HTTPException(status_code=404, detail="Contract not found")
    if contract["hhm_id"] != user["id"]:
        raise HTTPException(status_code=403, detail="You are not authorized to respond to this contract")
    if grace_period_over(contract):
        cancel_overdue_requests(db, {"_id": oid})
        contract = db[FARMER_CONTRACTS].find_one({"_id": oid})
    if contract["status"] != "farmer_pending":
        raise HTTPException(status_code=400,
                            detail=f"Contract is already {contract['status']}. Only pending contracts can be responded to.")

    if body.decision == "reject":
        updated = move_farmer_contract(db, contract, "hhm_rejected")
        return ok(serialize(updated), "Contract rejected successfully")

    updated, cancelled = accept_farmer_contract(db, contract)
    data = serialize(updated)
    data["farmerExclusivity"] = {
        "autoCancelledContracts": cancelled,
        "message": f"{cancelled} other pending request(s) from this farmer were auto-cancelled" if cancelled
        else "No other pending requests from this farmer",
    }
    return ok(data, "Contract accepted successfully")


@router.put("/{contract_id}/mark-delivered")
def mark_delivered(contract_id: str, user=Depends(require_roles("Farmer", "HHM")), db=Depends(get_db)):
    contract = _load_for_party(db, user, contract_id)
    _require_accepted(contract, "delivered")
    delivered_at = contract.get("delivery_date") or now_utc()
    db[FARMER_CONTRACTS].update_one({"_id": contract["_id"], "status": "hhm_accepted"},
                                    {"$set": {"delivery_date": delivered_at, "updatedAt": now_utc()}})
    return ok(serialize(db[FARMER_CONTRACTS].find_one({"_id": contract["_id"]})), "Contract marked as delivered")


@router.put("/{contract_id}/mark-paid")
def mark_paid(contract_id: str, user=Depends(require_roles("Farmer", "HHM")), db=Depends(get_db)):
    contract = _load_for_party(db, user, contract_id)
    _require_accepted(contract, "paid")
    db[FARMER_CONTRACTS].update_one({"_id": contract["_id"], "status": "hhm_accepted"},
                                    {"$set": {"payment_status": "paid", "payment_date": now_utc(),
                                              "updatedAt": now_utc()}})
    return ok(serialize(db[FARMER_CONTRACTS].find_one({"_id": contract["_id"]})), "Contract marked as paid")


@router.put("/{contract_id}/mark-completed")
def mark_completed(contract_id: str, user=Depends(require_roles("Farmer", "HHM")), db=Depends(get_db)):
    contract = _load_for_party(db, user, contract_id)
    _require_accepted(contract, "completed")
    if not contract.get("delivery_date"):
        raise HTTPException(status_code=400, detail="Contract must be delivered before it can be marked as completed")
    updated = move_farmer_contract(db, contract, "completed")
    return ok(serialize(updated), "Contract marked as completed")
