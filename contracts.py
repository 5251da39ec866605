"""Status changes for HHM/factory contracts and farmer job contracts.

Both kinds of contract move through a fixed table of transitions. Every move is
a compare-and-set on the status that was read, so two parties answering the
same contract at once cannot both win; the loser gets a 409.

Farmer contracts carry a grace period: a request nobody answered within
``grace_period_days`` is auto-cancelled the next time it is looked at. When an
HHM accepts a farmer's request, the farmer's other pending requests are
auto-cancelled in the same transaction.
"""

import math
from datetime import timedelta
from typing import Optional

import structlog
from fastapi import HTTPException
from pymongo import ReturnDocument

from database import CONTRACTS, FARMER_CONTRACTS, as_utc, now_utc, serialize, transaction
from schemas import ACTIVE_CONTRACT_STATUSES, CONTRACT_TRANSITIONS, FARMER_CONTRACT_TRANSITIONS

log = structlog.get_logger(__name__)

CONTRACT_TTL = timedelta(days=30)
FINAL_CONTRACT_STATUSES = ("factory_rejected", "hhm_accepted", "hhm_rejected", "expired", "cancelled")
FARMER_CONTRACT_STATUSES = ("farmer_pending", "hhm_accepted", "hhm_rejected", "auto_cancelled", "completed")


def check_contract_transition(table: dict, current: str, target: str) -> None:
    if target not in table.get(current, set()):
        raise HTTPException(
            status_code=400,
            detail=f"Contract is already {current} and cannot be changed to {target}",
        )


def move_contract(db, collection: str, contract: dict, target: str, table: dict, fields: Optional[dict] = None,
                  session=None) -> dict:
    check_contract_transition(table, contract["status"], target)
    update = {**(fields or {}), "status": target, "updatedAt": now_utc()}
    updated = db[collection].find_one_and_update(
        {"_id": contract["_id"], "status": contract["status"]},
        {"$set": update},
        return_document=ReturnDocument.AFTER,
        session=session,
    )
    if updated is None:
        raise HTTPException(status_code=409, detail="Contract was updated by another request. Please refresh and retry.")
    log.info("contract_status_changed", collection=collection, contract_id=str(contract["_id"]),
             previous=contract["status"], status=target)
    return updated


# ------------------------- HHM and factory -------------------------

def default_expiry():
    return now_utc() + CONTRACT_TTL


def contract_expired(contract: dict) -> bool:
    expires_at = as_utc(contract.get("expires_at"))
    return expires_at is not None and expires_at < now_utc()


def days_until_expiration(contract: dict) -> Optional[int]:
    expires_at = as_utc(contract.get("expires_at"))
    if expires_at is None or contract["status"] not in ACTIVE_CONTRACT_STATUSES:
        return None
    return max(0, math.ceil((expires_at - now_utc()).total_seconds() / 86400))


def advance_contract(db, contract: dict, target: str, fields: Optional[dict] = None) -> dict:
    """Move an HHM/factory contract, stamping response and finalization times."""
    fields = dict(fields or {})
    now = now_utc()
    if target != "expired" and not contract.get("responded_at"):
        fields["responded_at"] = now
    if target in FINAL_CONTRACT_STATUSES:
        fields["finalized_at"] = now
    return move_contract(db, CONTRACTS, contract, target, CONTRACT_TRANSITIONS, fields)


def reject_if_expired(db, contract: dict, message: str) -> None:
    """Mark an active contract past its deadline as expired, then refuse the caller."""
    if contract["status"] not in ACTIVE_CONTRACT_STATUSES or not contract_expired(contract):
        return
    now = now_utc()
    db[CONTRACTS].update_one(
        {"_id": contract["_id"], "status": contract["status"]},
        {"$set": {"status": "expired", "finalized_at": now, "updatedAt": now}},
    )
    log.info("contract_expired", contract_id=str(contract["_id"]))
    raise HTTPException(status_code=400, detail=message)


def contract_view(contract: dict) -> dict:
    data = serialize(contract)
    data["isActive"] = contract["status"] in ACTIVE_CONTRACT_STATUSES
    data["isExpired"] = contract_expired(contract)
    data["daysUntilExpiration"] = days_until_expiration(contract)
    return data


# ------------------------- Farmer and HHM -------------------------

def grace_period_over(contract: dict) -> bool:
    created = as_utc(contract.get("createdAt"))
    if contract["status"] != "farmer_pending" or created is None:
        return False
    return created + timedelta(days=contract.get("grace_period_days", 2)) < now_utc()


def cancel_overdue_requests(db, query: dict) -> int:
    """Auto-cancel pending farmer requests matching ``query`` whose grace period ran out."""
    cancelled = 0
    for contract in db[FARMER_CONTRACTS].find({**query, "status": "farmer_pending"}):
        if not grace_period_over(contract):
            continue
        res = db[FARMER_CONTRACTS].update_one(
            {"_id": contract["_id"], "status": "farmer_pending"},
            {"$set": {"status": "auto_cancelled", "updatedAt": now_utc()}},
        )
        cancelled += res.modified_count
    if cancelled:
        log.info("farmer_contracts_auto_cancelled", count=cancelled)
    return cancelled


def move_farmer_contract(db, contract: dict, target: str, fields: Optional[dict] = None) -> dict:
    return move_contract(db, FARMER_CONTRACTS, contract, target, FARMER_CONTRACT_TRANSITIONS, fields)


def accept_farmer_contract(db, contract: dict):
    """Accept a farmer's request and cancel that farmer's other pending requests.

    Returns ``(contract, cancelled_count)``.
    """
    with transaction(db) as session:
        updated = move_contract(db, FARMER_CONTRACTS, contract, "hhm_accepted", FARMER_CONTRACT_TRANSITIONS,
                                session=session)
        res = db[FARMER_CONTRACTS].update_many(
            {"farmer_id": contract["farmer_id"], "status": "farmer_pending", "_id": {"$ne": contract["_id"]}},
            {"$set": {"status": "auto_cancelled", "updatedAt": now_utc()}},
            session=session,
        )
    log.info("farmer_contract_accepted", contract_id=str(contract["_id"]), farmer_id=contract["farmer_id"],
             auto_cancelled=res.modified_count)
    return updated, res.modified_count
