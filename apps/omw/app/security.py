import base64
import binascii
import hashlib
import logging
import re
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

import bcrypt
import jwt
import nacl.encoding
import nacl.hash
import nacl.secret
from fastapi import Depends, HTTPException, Request
from sqlalchemy import select
from sqlalchemy.orm import Session

from . import config
from .db import get_session
from .models import Role, User, UserRole

logger = logging.getLogger("omw.security")


# ---- Passwords ----
def hash_password(plain: str) -> str:
    raw = plain.encode("utf-8")
    if len(raw) > 72:
        raise ValueError("password longer than 72 bytes")
    return bcrypt.hashpw(raw, bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: Optional[str]) -> bool:
    if not hashed:
        return False
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # malformed stored hash or over-long candidate
        return False


# ---- Roles ----
_ROLE_SYNONYMS = {
    "superadmin": "super admin",
    "super admin": "super admin",
    "provider": "worker",
    "service provider": "worker",
    "worker": "worker",
}


def normalize_role(name: Optional[str]) -> str:
    """'Super_Admin' -> 'super admin', 'Service-Provider' -> 'worker'."""
    key = re.sub(r"[\s_\-]+", " ", (name or "").strip().lower())
    return _ROLE_SYNONYMS.get(key, key)


def user_roles(s: Session, user_id: int) -> list[Role]:
    q = select(Role).join(UserRole, UserRole.role_id == Role.id).where(UserRole.user_id == user_id).order_by(UserRole.id)
    return list(s.execute(q).scalars().all())


def role_by_name(s: Session, name: str) -> Role:
    wanted = normalize_role(name)
    for r in s.execute(select(Role)).scalars().all():
        if normalize_role(r.name) == wanted:
            return r
    raise LookupError(f"role {name!r} is not seeded")


def grant_role(s: Session, user: User, name: str) -> bool:
    """Attach a role to the user. Returns False when it was already held."""
    role = role_by_name(s, name)
    exists = s.execute(
        select(UserRole.id).where(UserRole.user_id == user.id, UserRole.role_id == role.id)
    ).first()
    if exists:
        return False
    s.add(UserRole(user_id=user.id, role_id=role.id))
    return True


# ---- JWT ----
_DURATION = re.compile(r"^\s*(\d+)\s*([smhd]?)\s*$", re.IGNORECASE)
_UNIT_SECONDS = {"": 1, "s": 1, "m": 60, "h": 3600, "d": 86400}


def parse_expiration(value: str) -> int:
    """'15h' -> 54000. Accepts s/m/h/d suffixes or bare seconds."""
    m = _DURATION.match(value or "")
    if not m:
        raise ValueError(f"invalid duration: {value!r}")
    return int(m.group(1)) * _UNIT_SECONDS[m.group(2).lower()]


def _sign(claims: dict, ttl_seconds: int) -> str:
    now = datetime.now(timezone.utc)
    payload = dict(claims)
    payload["iat"] = now
    payload["exp"] = now + timedelta(seconds=ttl_seconds)
    return jwt.encode(payload, config.JWT_SECRET, algorithm=config.JWT_ALGORITHM)


def issue_token(user: User, role: Role) -> str:
    claims = {"id": user.id, "email": user.email, "role": role.name, "role_id": role.id}
    return _sign(claims, parse_expiration(config.JWT_EXPIRATION))


def decode_token(token: str) -> dict:
    return jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALGORITHM])


def issue_purpose_token(user: User, purpose: str, ttl_seconds: int) -> str:
    return _sign({"id": user.id, "email": user.email, "purpose": purpose}, ttl_seconds)


def issue_oauth_state(ttl_seconds: int) -> str:
    """Signed, single-browser state value for the Google redirect flow."""
    return _sign({"purpose": "oauth_state", "nonce": secrets.token_urlsafe(16)}, ttl_seconds)


def decode_purpose_token(token: str, purpose: str) -> dict:
    """Raises ValueError for bad, expired or wrong-purpose tokens."""
    try:
        data = decode_token(token)
    except jwt.PyJWTError as e:
        raise ValueError(str(e)) from e
    if data.get("purpose") != purpose:
        raise ValueError("token purpose mismatch")
    return data


class AuthUser:
    """The caller behind a verified bearer token."""

    def __init__(self, user: User, role: str, role_id: Optional[int]):
        self.user = user
        self.id = user.id
        self.email = user.email
        self.role = normalize_role(role)
        self.role_name = role
        self.role_id = role_id

    @property
    def is_admin(self) -> bool:
        return self.role in ("admin", "super admin")

    @property
    def is_superadmin(self) -> bool:
        return self.role == "super admin"


def _bearer(request: Request) -> str:
    raw = request.headers.get("authorization") or ""
    scheme, _, token = raw.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return ""
    return token.strip()


def current_user(request: Request, s: Session = Depends(get_session)) -> AuthUser:
    token = _bearer(request)
    if not token:
        raise HTTPException(status_code=401, detail="Access token required")
    try:
        data = decode_token(token)
    except jwt.PyJWTError:
        raise HTTPException(status_code=403, detail="Invalid token")
    if data.get("purpose"):
        # email/reset links are not session tokens
        raise HTTPException(status_code=403, detail="Invalid token")
    try:
        uid = int(data.get("id"))
    except (TypeError, ValueError):
        raise HTTPException(status_code=401, detail="Invalid token payload")
    user = s.get(User, uid)
    if not user or not user.is_active:
        raise HTTPException(status_code=401, detail="Invalid user")
    return AuthUser(user, str(data.get("role") or ""), data.get("role_id"))


def require_roles(*roles: str):
    allowed = {normalize_role(r) for r in roles}

    def dep(me: AuthUser = Depends(current_user)) -> AuthUser:
        if me.role not in allowed:
            raise HTTPException(status_code=403, detail="Insufficient permissions")
        return me

    return dep


require_admin = require_roles("admin", "super admin")
require_superadmin = require_roles("super admin")
require_worker = require_roles("worker")
require_customer = require_roles("customer")


# ---- Secret storage for payment API keys ----
def _box() -> nacl.secret.SecretBox:
    raw = config.PAYMENT_SETTINGS_KEY.strip()
    key = b""
    if raw:
        try:
            key = bytes.fromhex(raw)
        except ValueError:
            try:
                key = base64.b64decode(raw, validate=True)
            except binascii.Error:
                key = b""
        if len(key) != nacl.secret.SecretBox.KEY_SIZE:
            raise RuntimeError("PAYMENT_SETTINGS_KEY must be 32 bytes (hex or base64)")
    else:
        logger.warning("PAYMENT_SETTINGS_KEY not set; deriving the key from JWT_SECRET")
        key = nacl.hash.blake2b(
            config.JWT_SECRET.encode("utf-8"),
            digest_size=nacl.secret.SecretBox.KEY_SIZE,
            person=b"omw-pay-keys",
            encoder=nacl.encoding.RawEncoder,
        )
    return nacl.secret.SecretBox(key)


def encrypt_secret(plain: str) -> str:
    return _box().encrypt(plain.encode("utf-8"), encoder=nacl.encoding.Base64Encoder).decode("ascii")


def decrypt_secret(sealed: str) -> str:
    return _box().decrypt(sealed.encode("ascii"), encoder=nacl.encoding.Base64Encoder).decode("utf-8")


def mask_secret(value: str) -> str:
    if len(value) <= 8:
        return "*" * len(value)
    return f"{value[:4]}****{value[-4:]}"


def fingerprint(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return hashlib.sha256(value.encode("utf-8")).hexdigest()
