from typing import Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field
from pymongo.errors import DuplicateKeyError

from database import USERS, get_db, insert_with_id, serialize
from routers.common import ok
from schemas import Role, User
from security import create_access_token, get_current_user, get_password_hash, verify_password

log = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])


class RegisterBody(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    username: str = Field(..., min_length=3, max_length=20, pattern=r"^[a-zA-Z0-9_]+$")
    email: EmailStr
    phone: str = Field(..., pattern=r"^\+?[\d\s\-\(\)]+$")
    role: Role
    password: str = Field(..., min_length=6)
    location: Optional[str] = None


class LoginBody(BaseModel):
    identifier: Optional[str] = None
    username: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    password: str


def _token_for(user: dict) -> str:
    return create_access_token({"sub": user["id"], "role": user["role"]})


@router.post("/register", status_code=201)
def register(body: RegisterBody, db=Depends(get_db)):
    username = body.username.lower()
    email = body.email.lower()
    phone = body.phone.strip()

    existing = db[USERS].find_one({"$or": [{"username": username}, {"email": email}, {"phone": phone}]})
    if existing:
        if existing.get("username") == username:
            field = "username"
        elif existing.get("email") == email:
            field = "email"
        else:
            field = "phone"
        raise HTTPException(status_code=409, detail=f"User with this {field} already exists")

    user = User(
        name=body.name.strip(),
        username=username,
        email=email,
        phone=phone,
        role=body.role,
        passwordHash=get_password_hash(body.password),
        location=body.location,
    ).model_dump()
    try:
        insert_with_id(db, USERS, user)
    except DuplicateKeyError:
        raise HTTPException(status_code=409, detail="User with these details already exists")

    log.info("user_registered", user_id=user["id"], role=user["role"])
    return JSONResponse(
        status_code=201,
        content=ok({"token": _token_for(user), "user": serialize(user)}, "User registered successfully"),
    )


@router.post("/login")
def login(body: LoginBody, db=Depends(get_db)):
    identifier = (body.identifier or body.username or body.email or body.phone or "").strip()
    if not identifier:
        raise HTTPException(status_code=400, detail="Please provide username/email/phone and password")

    lowered = identifier.lower()
    user = db[USERS].find_one({"$or": [{"username": lowered}, {"email": lowered}, {"phone": identifier}]})
    if not user or not verify_password(body.password, user.get("passwordHash", "")):
        log.info("login_failed", identifier=identifier)
        raise HTTPException(status_code=401, detail="Invalid credentials")
    if user.get("isActive") is False:
        raise HTTPException(status_code=401, detail="User account has been deactivated.")

    user["id"] = user.get("id") or str(user["_id"])
    return ok({"token": _token_for(user), "user": serialize(user)}, "Login successful")


@router.get("/verify")
def verify(user=Depends(get_current_user)):
    return ok({"user": serialize(user)}, "Token verified successfully")
