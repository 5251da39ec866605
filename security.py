from datetime import timedelta
from typing import Optional

import structlog
from fastapi import Depends, HTTPException
from fastapi.security import OAuth2PasswordBearer
from jose import ExpiredSignatureError, JWTError, jwt
from passlib.context import CryptContext
from structlog.contextvars import bind_contextvars

import config
from database import USERS, get_by_id, get_db, now_utc

log = structlog.get_logger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except (ValueError, TypeError):
        return False


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    expire = now_utc() + (expires_delta or timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, config.SECRET_KEY, algorithm=config.ALGORITHM)


def decode_access_token(token: str) -> dict:
    try:
        return jwt.decode(token, config.SECRET_KEY, algorithms=[config.ALGORITHM])
    except ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token has expired. Please login again.")
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid token. Please login again.")


def get_current_user(token: str = Depends(oauth2_scheme), db=Depends(get_db)):
    payload = decode_access_token(token)
    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token. Please login again.")
    user = get_by_id(db, USERS, user_id)
    if not user:
        raise HTTPException(status_code=401, detail="Token is valid but user no longer exists.")
    if user.get("isActive") is False:
        raise HTTPException(status_code=401, detail="User account has been deactivated.")
    user["id"] = user.get("id") or str(user["_id"])
    bind_contextvars(user_id=user["id"], role=user.get("role"))
    return user


def require_roles(*roles):
    def wrapper(user=Depends(get_current_user)):
        if user.get("role") not in roles:
            log.info("role_denied", required=roles, actual=user.get("role"))
            raise HTTPException(
                status_code=403,
                detail=f"Access denied. Role '{user.get('role')}' is not authorized to access this resource.",
            )
        return user
    return wrapper
