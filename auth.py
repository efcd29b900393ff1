"""Credentials: password hashing, bearer tokens and one-time reset codes.

Passwords are hashed with Argon2id, bearer tokens are HS256 JWTs carrying the
user id and first name, and password resets use a six-digit code mailed to
the account address.
"""

import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Annotated, Any, Dict, Optional

import jwt
from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

import config
import emailer
from database import USERS, create_document, now, update_document
from errors import Conflict, Internal, Invalid, NotFound, Unauthorized
from schemas import User

logger = logging.getLogger(__name__)

_hasher = PasswordHasher()
_bearer = HTTPBearer(auto_error=False)


def hash_password(password: str) -> str:
    return _hasher.hash(password)


def verify_password(password: str, stored_hash: Optional[str]) -> bool:
    if not stored_hash:
        return False
    try:
        return _hasher.verify(stored_hash, password)
    except (VerificationError, InvalidHashError):
        return False


def create_access_token(user_id: str, first_name: Optional[str], expiry: Optional[timedelta] = None) -> str:
    expires = datetime.now(timezone.utc) + (expiry or timedelta(hours=config.JWT_EXPIRES_HOURS))
    claims = {"id": user_id, "first_name": first_name, "exp": expires}
    return jwt.encode(claims, config.JWT_SECRET, algorithm=config.JWT_ALGORITHM)


def decode_access_token(token: str) -> Dict[str, Any]:
    try:
        claims = jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALGORITHM])
    except jwt.InvalidTokenError:
        raise Unauthorized("Invalid or expired token")
    if not claims.get("id"):
        raise Unauthorized("Invalid or expired token")
    return {"id": claims["id"], "first_name": claims.get("first_name")}


def get_current_user(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(_bearer)],
) -> Dict[str, Any]:
    if credentials is None or not credentials.credentials:
        raise Unauthorized("No token, access denied")
    return decode_access_token(credentials.credentials)


def generate_otp() -> str:
    return str(100000 + secrets.randbelow(900000))


def _as_utc(value: datetime) -> datetime:
    # pymongo hands back naive datetimes unless the client is tz_aware
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ---------- Account operations ----------

def register_user(db: Database, first_name: str, last_name: Optional[str], email: str, password: str,
                  repassword: str, dob: Optional[datetime] = None,
                  security_question: Optional[str] = None) -> str:
    if password != repassword:
        raise Invalid("Passwords do not match")
    if db[USERS].find_one({"email": email}):
        raise Conflict("User already exists")

    user = User(
        first_name=first_name,
        last_name=last_name,
        email=email,
        password_hash=hash_password(password),
        dob=dob,
        security_question=security_question,
    )
    try:
        user_id = create_document(db, USERS, user.model_dump())
    except DuplicateKeyError:
        raise Conflict("User already exists")
    logger.info("Registered user %s", user_id)
    return user_id


def login_user(db: Database, email: str, password: str) -> Dict[str, Any]:
    user = db[USERS].find_one({"email": email})
    if not user or not verify_password(password, user.get("password_hash")):
        raise Invalid("Invalid credentials")

    token = create_access_token(str(user["_id"]), user.get("first_name"))
    return {
        "token": token,
        "user": {"id": str(user["_id"]), "first_name": user.get("first_name"), "email": user.get("email")},
    }


def start_password_reset(db: Database, email: str) -> None:
    user = db[USERS].find_one({"email": email})
    if not user:
        raise NotFound("User not found")

    otp = generate_otp()
    expires = now() + timedelta(minutes=config.OTP_TTL_MINUTES)
    update_document(db, USERS, {"_id": user["_id"]}, {"$set": {"otp": otp, "otp_expires": expires}})

    ok, info = emailer.send_email(
        to_email=email,
        subject="Connectly OTP",
        body_text=f"Your OTP is: {otp}\nIt expires in {config.OTP_TTL_MINUTES} minutes.",
    )
    if not ok:
        raise Internal(f"Failed to send OTP email ({info})")


def reset_password(db: Database, email: str, otp: str, new_password: str) -> None:
    user = db[USERS].find_one({"email": email})
    if not user:
        raise NotFound("User not found")

    stored = user.get("otp")
    expires = user.get("otp_expires")
    if not stored or expires is None or not secrets.compare_digest(str(stored), str(otp)):
        raise Invalid("Invalid or expired OTP")
    if _as_utc(expires) < now():
        raise Invalid("Invalid or expired OTP")

    update_document(
        db,
        USERS,
        {"_id": user["_id"]},
        {"$set": {"password_hash": hash_password(new_password)}, "$unset": {"otp": "", "otp_expires": ""}},
    )
    logger.info("Password reset for user %s", user["_id"])
