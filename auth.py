"""
Identity provider and auth gate.

Credentials are bcrypt hashes on the `user` collection and bearer tokens are
HS256 JWTs. Resolving a request happens in two steps: the token is decoded to
a user id and email, then the role is looked up in the `user` collection.
"""
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel
from pymongo.errors import DuplicateKeyError

import config
from database import get_db, object_id, utcnow
from errors import Forbidden, NotFound, Unauthorized, ValidationError
from schemas import Role

logger = logging.getLogger(__name__)

DEFAULT_ROLE = Role.user.value

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=config.BCRYPT_ROUNDS)
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login", auto_error=False)


class Identity(BaseModel):
    id: str
    email: str


class CurrentUser(BaseModel):
    id: str
    email: str
    role: str = DEFAULT_ROLE
    token: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == Role.admin.value


def verify_password(plain_password, hashed_password):
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password):
    return pwd_context.hash(password)


def public_user(doc: dict) -> dict:
    return {
        "id": str(doc["_id"]),
        "email": doc["email"],
        "full_name": doc.get("full_name"),
        "role": doc.get("role") or DEFAULT_ROLE,
    }


def send_password_reset(email: str, token: str):
    # No mail transport is configured; the token is only logged.
    logger.info("Password reset requested for %s (token issued, expires in %s min)", email, config.RESET_TOKEN_EXPIRE_MINUTES)
    logger.debug("Reset token for %s: %s", email, token)


class IdentityProvider:
    def __init__(self, db):
        self.db = db

    def create_token(self, user_id: str, email: str, token_type: str = "access",
                     expires_delta: Optional[timedelta] = None) -> dict:
        expire = utcnow() + (expires_delta or timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES))
        to_encode = {
            "sub": user_id,
            "email": email,
            "typ": token_type,
            "jti": uuid.uuid4().hex,
            "exp": expire,
        }
        encoded_jwt = jwt.encode(to_encode, config.SECRET_KEY, algorithm=config.ALGORITHM)
        return {"access_token": encoded_jwt, "token_type": "bearer", "expires_at": expire}

    def _decode(self, token: str, token_type: str) -> dict:
        try:
            payload = jwt.decode(token, config.SECRET_KEY, algorithms=[config.ALGORITHM])
        except JWTError:
            raise Unauthorized("Invalid token")
        if payload.get("typ") != token_type or not payload.get("sub") or not payload.get("jti"):
            raise Unauthorized("Invalid token")
        if self.db["revoked_token"].find_one({"jti": payload["jti"]}):
            raise Unauthorized("Token has been revoked")
        return payload

    def sign_up(self, email: str, password: str, full_name: str) -> dict:
        if self.db["user"].find_one({"email": email}):
            raise ValidationError("Email already registered")
        now = utcnow()
        doc = {
            "email": email,
            "full_name": full_name,
            "password_hash": get_password_hash(password),
            "role": DEFAULT_ROLE,
            "created_at": now,
            "updated_at": now,
        }
        try:
            result = self.db["user"].insert_one(doc)
        except DuplicateKeyError:
            raise ValidationError("Email already registered")
        doc["_id"] = result.inserted_id
        logger.info("Registered user %s", email)
        return public_user(doc)

    def sign_in(self, email: str, password: str) -> dict:
        user = self.db["user"].find_one({"email": email})
        if not user or not user.get("password_hash") or not verify_password(password, user["password_hash"]):
            raise Unauthorized("Incorrect email or password")
        session = self.create_token(str(user["_id"]), user["email"])
        return {"user": public_user(user), "session": session}

    def resolve(self, token: str) -> Identity:
        payload = self._decode(token, "access")
        return Identity(id=payload["sub"], email=payload.get("email", ""))

    def _revoke(self, payload: dict) -> bool:
        """Record the token's jti until it expires. False when it was already revoked."""
        try:
            res = self.db["revoked_token"].update_one(
                {"jti": payload["jti"]},
                {"$setOnInsert": {
                    "jti": payload["jti"],
                    "user_id": payload["sub"],
                    "expires_at": datetime.fromtimestamp(payload["exp"], timezone.utc),
                }},
                upsert=True,
            )
        except DuplicateKeyError:
            return False
        return res.upserted_id is not None

    def sign_out(self, token: str):
        self._revoke(self._decode(token, "access"))

    def request_password_reset(self, email: str) -> Optional[str]:
        user = self.db["user"].find_one({"email": email})
        if not user:
            return None
        token = self.create_token(
            str(user["_id"]), email, token_type="reset",
            expires_delta=timedelta(minutes=config.RESET_TOKEN_EXPIRE_MINUTES),
        )["access_token"]
        send_password_reset(email, token)
        return token

    def reset_password(self, token: str, new_password: str):
        payload = self._decode(token, "reset")
        if not self._revoke(payload):
            raise Unauthorized("Token has been revoked")
        res = self.db["user"].update_one(
            {"_id": object_id(payload["sub"], "User")},
            {"$set": {"password_hash": get_password_hash(new_password), "updated_at": utcnow()}},
        )
        if res.matched_count == 0:
            raise NotFound("User not found")
        logger.info("Password reset for user %s", payload["sub"])


def lookup_role(db, user_id: str) -> str:
    """Role from the user collection; a missing row or field means `user`."""
    try:
        oid = object_id(user_id, "User")
    except NotFound:
        return DEFAULT_ROLE
    row = db["user"].find_one({"_id": oid}, {"role": 1})
    if not row or not row.get("role"):
        return DEFAULT_ROLE
    return row["role"]


def resolve_user(db, token: str) -> CurrentUser:
    identity = IdentityProvider(db).resolve(token)
    return CurrentUser(id=identity.id, email=identity.email, role=lookup_role(db, identity.id), token=token)


def get_current_user(token: Optional[str] = Depends(oauth2_scheme), db=Depends(get_db)) -> CurrentUser:
    if not token:
        raise Unauthorized("Access token required")
    return resolve_user(db, token)


def get_optional_user(token: Optional[str] = Depends(oauth2_scheme), db=Depends(get_db)) -> Optional[CurrentUser]:
    if not token:
        return None
    try:
        return resolve_user(db, token)
    except Unauthorized:
        return None


def get_current_admin(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if not user.is_admin:
        raise Forbidden("Admin access required")
    return user


def seed_admin(db, email: str, password: str) -> str:
    existing = db["user"].find_one({"email": email})
    if existing:
        if existing.get("role") != Role.admin.value:
            db["user"].update_one({"_id": existing["_id"]}, {"$set": {"role": Role.admin.value, "updated_at": utcnow()}})
            logger.info("Promoted %s to admin", email)
            return "promoted"
        return "exists"
    now = utcnow()
    db["user"].insert_one({
        "email": email,
        "full_name": "Admin User",
        "password_hash": get_password_hash(password),
        "role": Role.admin.value,
        "created_at": now,
        "updated_at": now,
    })
    logger.info("Seeded admin account %s", email)
    return "created"
