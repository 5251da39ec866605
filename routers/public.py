import re
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from database import USERS, get_by_id, get_db, list_many, paginate, require_oid, serialize
from routers.common import ok, page_window

router = APIRouter(prefix="/api/public", tags=["public"])

FACTORY_FIELDS = ("name", "factoryName", "factoryLocation", "factoryDescription", "capacity", "experience",
                  "specialization", "email", "phone", "createdAt")


def _factory_card(doc: dict) -> dict:
    card = {"id": doc.get("id") or str(doc.get("_id"))}
    card.update({k: doc.get(k) for k in FACTORY_FIELDS})
    return card


@router.get("/factories")
def list_factories(q: Optional[str] = None, page: int = 1, limit: int = 20, db=Depends(get_db)):
    query = {"role": "Factory", "isActive": {"$ne": False}}
    if q:
        pattern = {"$regex": re.escape(q.strip()), "$options": "i"}
        query["$or"] = [{"factoryName": pattern}, {"factoryLocation": pattern}, {"name": pattern}]
    page, limit, skip = page_window(page, limit)
    total = db[USERS].count_documents(query)
    factories = [_factory_card(f) for f in list_many(db, USERS, query, sort=[("factoryName", 1)], skip=skip, limit=limit)]
    return ok(factories, pagination=paginate(page, limit, total, "totalFactories"))


@router.get("/factories/{factory_id}")
def factory_detail(factory_id: str, db=Depends(get_db)):
    require_oid(factory_id, "factory ID")
    factory = get_by_id(db, USERS, factory_id, extra={"role": "Factory"})
    if not factory:
        raise HTTPException(status_code=404, detail="Factory not found")
    data = _factory_card(serialize(factory))
    hhms = list_many(db, USERS, {"id": {"$in": factory.get("associatedHHMs", [])}, "role": "HHM"})
    data["associatedHHMs"] = [{"id": h["id"], "name": h.get("name"), "location": h.get("location")} for h in hhms]
    return ok(data)
