import os
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Literal, Optional

import jwt
from bson import ObjectId
from bson.errors import InvalidId
from fastapi import Depends, HTTPException
from fastapi.security import OAuth2PasswordBearer
from passlib.context import CryptContext
from pydantic import BaseModel

from database import db

JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_ALG = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24 * 7))  # 7 days

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login", auto_error=False)


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"


class Principal(BaseModel):
    """The authenticated caller, resolved once per request."""
    id: str
    role: Literal["customer", "admin"]
    email: str
    name: str

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain: str, hashed: str) -> bool:
    return pwd_context.verify(plain, hashed)


def create_access_token(subject: dict, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = subject.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, JWT_SECRET, algorithm=JWT_ALG)


def principal_from_user(user: Dict[str, Any]) -> Principal:
    return Principal(
        id=str(user["_id"]),
        role=user.get("role", "customer"),
        email=user.get("email", ""),
        name=user.get("name", ""),
    )


def _resolve_principal(token: str) -> Principal:
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.PyJWTError:
        raise HTTPException(status_code=401, detail="Unauthorized")

    uid = payload.get("sub")
    if not uid:
        raise HTTPException(status_code=401, detail="Unauthorized")
    try:
        user = db["user"].find_one({"_id": ObjectId(uid)})
    except InvalidId:
        raise HTTPException(status_code=401, detail="Unauthorized")
    if not user:
        raise HTTPException(status_code=401, detail="Unauthorized")
    if not user.get("isActive", True):
        raise HTTPException(status_code=401, detail="Account is disabled")
    return principal_from_user(user)


async def get_current_principal(token: Optional[str] = Depends(oauth2_scheme)) -> Principal:
    if not token:
        raise HTTPException(status_code=401, detail="Unauthorized", headers={"WWW-Authenticate": "Bearer"})
    return _resolve_principal(token)


async def get_optional_principal(token: Optional[str] = Depends(oauth2_scheme)) -> Optional[Principal]:
    """Like get_current_principal, but anonymous callers get None instead of a 401."""
    if not token:
        return None
    return _resolve_principal(token)


async def get_current_admin(principal: Principal = Depends(get_current_principal)) -> Principal:
    if not principal.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required")
    return principal
