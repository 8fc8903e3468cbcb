import os
import secrets
import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

from bson import ObjectId
from bson.errors import InvalidId
from fastapi import Depends, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import jwt, JWTError
from passlib.context import CryptContext
from pymongo.database import Database

from database import create_document, get_db
from schemas import ContactInfo, User

logger = logging.getLogger(__name__)

# Environment
JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret")
JWT_ALG = "HS256"
TOKEN_EXPIRE_MIN = int(os.getenv("TOKEN_EXPIRE_MIN", "60"))

ADMIN_ROLE = "ADMIN"
USER_ROLE = "user"

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
auth_scheme = HTTPBearer(auto_error=False)

# Simple in-memory rate limiting for login (per-IP)
RATE_LIMIT_WINDOW_SEC = 60 * 15  # 15 minutes
RATE_LIMIT_MAX_ATTEMPTS = 20
rate_store: Dict[str, List[float]] = {}


def check_rate_limit(ip: str):
    now = datetime.now().timestamp()
    bucket = rate_store.get(ip, [])
    # drop old timestamps
    bucket = [t for t in bucket if now - t <= RATE_LIMIT_WINDOW_SEC]
    if len(bucket) >= RATE_LIMIT_MAX_ATTEMPTS:
        raise HTTPException(status_code=429, detail="Too many login attempts. Please try again later.")
    bucket.append(now)
    rate_store[ip] = bucket


def create_access_token(data: dict, expires_minutes: int = TOKEN_EXPIRE_MIN):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + timedelta(minutes=expires_minutes)
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, JWT_SECRET, algorithm=JWT_ALG)


def verify_password(plain: str, hashed: str) -> bool:
    return pwd_context.verify(plain, hashed)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def token_for(user: dict) -> str:
    return create_access_token({"sub": str(user["_id"]), "role": user.get("role", USER_ROLE)})


def public_user(user: dict) -> dict:
    return {
        "_id": str(user["_id"]),
        "name": user.get("name"),
        "email": user.get("email"),
        "phone": user.get("phone"),
        "role": user.get("role"),
    }


def _user_from_token(token: str, db: Database) -> dict:
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])
        user_id: str = payload.get("sub")
        if user_id is None:
            raise HTTPException(status_code=401, detail="Invalid token")
        oid = ObjectId(user_id)
    except (JWTError, InvalidId):
        raise HTTPException(status_code=401, detail="Invalid token")

    user = db["user"].find_one({"_id": oid})
    if not user or not user.get("is_active", True):
        raise HTTPException(status_code=401, detail="User not found")
    user["_id"] = str(user["_id"])
    return user


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(auth_scheme),
    db: Database = Depends(get_db),
) -> dict:
    if credentials is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return _user_from_token(credentials.credentials, db)


async def get_optional_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(auth_scheme),
    db: Database = Depends(get_db),
) -> Optional[dict]:
    if credentials is None:
        return None
    return _user_from_token(credentials.credentials, db)


async def require_admin(user: dict = Depends(get_current_user)):
    if not is_admin(user):
        raise HTTPException(status_code=403, detail="Admin only")
    return user


def is_admin(user: Optional[dict]) -> bool:
    return bool(user) and user.get("role") == ADMIN_ROLE


def register_user(db: Database, name: str, email: str, password: str, phone: Optional[str] = None, role: str = USER_ROLE) -> dict:
    user = User(
        name=name,
        email=email.strip().lower(),
        phone=phone or None,
        password_hash=hash_password(password),
        role=role,
    )
    user_id = create_document("user", user, database=db)
    doc = user.model_dump()
    doc["_id"] = user_id
    return doc


def provision_buyer(db: Database, contact: ContactInfo) -> Tuple[dict, bool, Optional[str]]:
    """
    Find the buyer by email or phone, or register them on first purchase.

    Returns (user, is_new_user, token). A token is minted only for new users
    so checkout can sign them straight in.
    """
    email = contact.email.strip().lower()
    phone = contact.phone.strip()
    clauses = [{"email": email}]
    if phone:
        clauses.append({"phone": phone})
    existing = db["user"].find_one({"$or": clauses})
    if existing:
        if not existing.get("phone") and phone:
            db["user"].update_one({"_id": existing["_id"]}, {"$set": {"phone": phone}})
        existing["_id"] = str(existing["_id"])
        return existing, False, None

    # the buyer signs in with the returned token and can reset the password later
    user = register_user(db, contact.name.strip() or email, email, secrets.token_urlsafe(16), phone=phone)
    logger.info("Registered new buyer %s at checkout", user["_id"])
    return user, True, token_for(user)
