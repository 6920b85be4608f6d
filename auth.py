from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, Header, HTTPException
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel
from pymongo import ReturnDocument
from pymongo.database import Database

import config
from database import USERS, create_document, get_db, parse_id, utcnow
from errors import Forbidden, NotFound, ValidationError
from log import get_logger
from schemas import User as UserSchema

logger = get_logger("auth")

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


class CurrentUser(BaseModel):
    """Identity of the authenticated caller, reloaded from the user record on every request."""

    id: str
    name: str
    email: str
    is_admin: bool = False


def create_token(user_id: str, is_admin: bool) -> str:
    payload = {
        "sub": str(user_id),
        "admin": is_admin,
        "exp": datetime.now(timezone.utc) + timedelta(minutes=config.JWT_EXPIRE_MINUTES),
        "iat": datetime.now(timezone.utc),
    }
    return jwt.encode(payload, config.JWT_SECRET, algorithm=config.JWT_ALG)


def public_user(user: dict) -> dict:
    return {
        "id": str(user["_id"]),
        "name": user.get("name"),
        "email": user.get("email"),
        "isAdmin": user.get("is_admin", False),
        "isActive": user.get("is_active", True),
    }


def lookup_users(db: Database, user_ids) -> dict:
    """Fetch display fields for a batch of user ids, keyed by ObjectId."""
    ids = list({uid for uid in user_ids if uid is not None})
    if not ids:
        return {}
    cursor = db[USERS].find({"_id": {"$in": ids}}, {"name": 1, "email": 1, "is_admin": 1})
    return {
        user["_id"]: {
            "id": str(user["_id"]),
            "name": user.get("name"),
            "email": user.get("email"),
            "isAdmin": user.get("is_admin", False),
        }
        for user in cursor
    }


def register_user(db: Database, name: str, email: str, password: str) -> dict:
    if db[USERS].find_one({"email": email}):
        raise ValidationError.single("email", "Email already registered")

    user = UserSchema(name=name, email=email, password_hash=pwd_context.hash(password))
    doc = create_document(db, USERS, user)
    logger.info("user_registered", user_id=str(doc["_id"]))
    return doc


def authenticate(db: Database, email: str, password: str) -> dict:
    user = db[USERS].find_one({"email": email})
    if not user or not pwd_context.verify(password, user.get("password_hash", "")):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    if not user.get("is_active", True):
        raise Forbidden("Account disabled")
    return user


def get_current_user(
    authorization: Optional[str] = Header(None),
    db: Database = Depends(get_db),
) -> CurrentUser:
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing Authorization header")
    try:
        scheme, token = authorization.split(" ", 1)
        if scheme.lower() != "bearer":
            raise ValueError("Invalid auth scheme")
        data = jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALG])
        user_id = parse_id(data.get("sub"))
    except (ValueError, JWTError, ValidationError):
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    user = db[USERS].find_one({"_id": user_id})
    if not user:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    if not user.get("is_active", True):
        raise Forbidden("Account disabled")

    return CurrentUser(
        id=str(user["_id"]),
        name=user.get("name", ""),
        email=user.get("email", ""),
        is_admin=user.get("is_admin", False),
    )


def require_admin(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if not user.is_admin:
        raise Forbidden("Admin access required")
    return user


def seed_admin(db: Database) -> None:
    """Create the configured default administrator if it does not exist yet."""
    if not (config.ADMIN_EMAIL and config.ADMIN_PASSWORD):
        return
    if db[USERS].find_one({"email": config.ADMIN_EMAIL}):
        return

    admin = UserSchema(
        name=config.ADMIN_NAME,
        email=config.ADMIN_EMAIL,
        password_hash=pwd_context.hash(config.ADMIN_PASSWORD),
        is_admin=True,
    )
    create_document(db, USERS, admin)
    logger.info("default_admin_created", email=config.ADMIN_EMAIL)


def set_user_active(db: Database, user_id, actor_id, is_active: bool) -> dict:
    oid = parse_id(user_id)
    if oid == parse_id(actor_id, "user"):
        raise Forbidden("Cannot deactivate your own account")

    user = db[USERS].find_one_and_update(
        {"_id": oid},
        {"$set": {"is_active": is_active, "updated_at": utcnow()}},
        projection={"password_hash": 0},
        return_document=ReturnDocument.AFTER,
    )
    if user is None:
        raise NotFound("User not found")
    logger.info("user_status_changed", user_id=str(oid), is_active=is_active)
    return user
