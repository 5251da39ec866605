from fastapi import APIRouter, Depends

from database import USERS, get_db, list_many
from routers.common import ok
from security import require_roles

router = APIRouter(prefix="/api/farmer", tags=["farmer"])

ACTIVE = {"isActive": {"$ne": False}}


@router.get("/hhms")
def hhm_directory(user=Depends(require_roles("Farmer")), db=Depends(get_db)):
    hhms = [
        {k: h.get(k) for k in ("id", "name", "username", "phone", "email", "location", "createdAt")}
        for h in list_many(db, USERS, {"role": "HHM", **ACTIVE}, sort=[("name", 1)])
    ]
    return ok(hhms, count=len(hhms))


def _factory_entry(factory: dict) -> dict:
    return {
        "id": factory["id"],
        "name": factory.get("factoryName") or f"{factory.get('name')} Factory",
        "location": factory.get("factoryLocation") or "Location not specified",
        "description": factory.get("factoryDescription") or "Sugar processing facility",
        "capacity": factory.get("capacity") or "Not specified",
        "experience": factory.get("experience") or "Not specified",
        "specialization": factory.get("specialization") or "Sugar Processing",
        "contactInfo": {"phone": factory.get("phone"), "email": factory.get("email")},
        "username": factory.get("username"),
        "createdAt": factory.get("createdAt"),
    }


@router.get("/factories")
def factory_directory(user=Depends(require_roles("Farmer")), db=Depends(get_db)):
    factories = [_factory_entry(f) for f in list_many(db, USERS, {"role": "Factory", **ACTIVE},
                                                       sort=[("factoryName", 1)])]
    return ok(factories, count=len(factories))
