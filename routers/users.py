import re
from typing import Optional

from fastapi import APIRouter, Body, Depends, HTTPException
from fastapi.exceptions import RequestValidationError
from pydantic import ValidationError

from database import USERS, get_by_id, get_db, list_many, now_utc, paginate, require_oid, serialize
from routers.common import ok, page_window
from schemas import PROFILE_UPDATES, ROLE_PROFILE_FIELDS, ROLES, ProfileUpdate
from security import get_current_user

router = APIRouter(prefix="/api/users", tags=["users"])

PUBLIC_FIELDS = {"_id": 1, "id": 1, "name": 1, "username": 1, "role": 1, "location": 1, "createdAt": 1}


def clean_profile_update(role: str, payload: dict) -> dict:
    """Validate a profile change against the role's editable fields, dropping everything else."""
    model = PROFILE_UPDATES.get(role, ProfileUpdate)
    try:
        update = model.model_validate(payload)
    except ValidationError as exc:
        raise RequestValidationError(exc.errors()) from exc
    return update.model_dump(exclude_unset=True, exclude_none=True)


@router.get("/me")
def my_profile(user=Depends(get_current_user)):
    return ok(serialize(user), "Profile retrieved successfully")


@router.put("/me")
def update_my_profile(payload: dict = Body(...), user=Depends(get_current_user), db=Depends(get_db)):
    update = clean_profile_update(user["role"], payload)
    if not update:
        raise HTTPException(status_code=400, detail="No editable profile fields provided")
    update["updatedAt"] = now_utc()
    db[USERS].update_one({"_id": user["_id"]}, {"$set": update})
    return ok(serialize(get_by_id(db, USERS, user["id"])), "Profile updated successfully")


@router.get("/search")
def search_users(q: Optional[str] = None, role: Optional[str] = None, page: int = 1, limit: int = 20,
                 user=Depends(get_current_user), db=Depends(get_db)):
    query = {"isActive": {"$ne": False}}
    if role:
        if role not in ROLES:
            raise HTTPException(status_code=400, detail="Role must be one of: " + ", ".join(ROLES))
        query["role"] = role
    if q:
        pattern = {"$regex": re.escape(q.strip()), "$options": "i"}
        query["$or"] = [{"name": pattern}, {"username": pattern}, {"location": pattern}]

    page, limit, skip = page_window(page, limit)
    total = db[USERS].count_documents(query)
    users = list_many(db, USERS, query, sort=[("name", 1)], skip=skip, limit=limit)
    return ok(users, pagination=paginate(page, limit, total, "totalUsers"))


@router.get("/profile/{user_id}")
def public_profile(user_id: str, user=Depends(get_current_user), db=Depends(get_db)):
    require_oid(user_id, "user ID")
    target = get_by_id(db, USERS, user_id, extra={"isActive": {"$ne": False}})
    if not target:
        raise HTTPException(status_code=404, detail="User not found")

    profile = {k: target.get(k) for k in PUBLIC_FIELDS if k in target}
    for key in ROLE_PROFILE_FIELDS.get(target["role"], []):
        if key in target:
            profile[key] = target[key]
    if target["role"] == "HHM":
        profile["associatedFactories"] = target.get("associatedFactories", [])
    if target["role"] == "Factory":
        profile["associatedHHMs"] = target.get("associatedHHMs", [])
    # Contact details are visible to logged-in users only
    profile["email"] = target.get("email")
    profile["phone"] = target.get("phone")
    return ok(serialize(profile), "Profile retrieved successfully")
