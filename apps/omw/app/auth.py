import logging
import re
import secrets
import time
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from . import config, mailer
from .audit import client_ip
from .db import get_session
from .models import Customer, Role, User
from .security import (
    AuthUser,
    current_user,
    decode_purpose_token,
    grant_role,
    hash_password,
    issue_purpose_token,
    issue_token,
    normalize_role,
    user_roles,
    verify_password,
)

router = APIRouter()
logger = logging.getLogger("omw.auth")

EMAIL_VERIFY_TTL_SECS = 24 * 3600
PASSWORD_RESET_TTL_SECS = 3600
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_OTP_RE = re.compile(r"^\d{6}$")

# phone -> (code, expires_at); per process, like the rate limiter below
_LOGIN_CODES: dict[str, tuple[str, int]] = {}
_AUTH_RATE_PHONE: dict[str, list[int]] = {}
_AUTH_RATE_IP: dict[str, list[int]] = {}
AUTH_MAX_PER_IP = 40


class UserOut(BaseModel):
    id: int
    name: str
    email: str
    phone_number: Optional[str] = None
    role: str
    role_id: int


class TokenOut(BaseModel):
    token: str
    user: UserOut


class LoginReq(BaseModel):
    email: Optional[str] = None
    password: Optional[str] = None
    role: Optional[str] = None


class RegisterReq(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None
    phone_number: Optional[str] = None


class PhoneReq(BaseModel):
    phone: Optional[str] = None


class OtpLoginReq(BaseModel):
    phone: Optional[str] = None
    otp: Optional[str] = None
    role: Optional[str] = None


class TokenReq(BaseModel):
    token: Optional[str] = None


class EmailReq(BaseModel):
    email: Optional[str] = None


class ResetReq(BaseModel):
    token: Optional[str] = None
    password: Optional[str] = None


def _now() -> int:
    return int(time.time())


def normalize_email(raw: Optional[str]) -> str:
    return (raw or "").strip().lower()


def check_password_policy(password: str) -> None:
    if len(password) < 8:
        raise HTTPException(status_code=400, detail="Password must be at least 8 characters")
    if len(password.encode("utf-8")) > 72:
        raise HTTPException(status_code=400, detail="Password is too long")


def check_email(email: str) -> None:
    if not _EMAIL_RE.match(email):
        raise HTTPException(status_code=400, detail="Invalid email address")


def validate_signup(name: Optional[str], email: str, password: Optional[str]) -> None:
    if not (name or "").strip() or not email or not password:
        raise HTTPException(status_code=400, detail="Name, email and password are required")
    check_email(email)
    check_password_policy(password)


def user_out(user: User, role: Role) -> UserOut:
    return UserOut(id=user.id, name=user.name, email=user.email, phone_number=user.phone_number, role=role.name, role_id=role.id)


def find_user_by_email(s: Session, email: str) -> Optional[User]:
    return s.execute(select(User).where(func.lower(User.email) == email)).scalars().first()


def ensure_customer_row(s: Session, user: User) -> None:
    if not s.execute(select(Customer.id).where(Customer.user_id == user.id)).first():
        s.add(Customer(user_id=user.id))


def send_verification(user: User) -> None:
    token = issue_purpose_token(user, "email_verify", EMAIL_VERIFY_TTL_SECS)
    mailer.send_verification_email(user.email, user.name, token)


def _rate_limit_auth(request: Request, phone: str) -> None:
    now = _now()
    window = config.AUTH_RATE_WINDOW_SECS
    lst = [ts for ts in _AUTH_RATE_PHONE.get(phone, []) if ts >= now - window]
    lst.append(now)
    _AUTH_RATE_PHONE[phone] = lst
    if len(lst) > config.AUTH_MAX_PER_PHONE:
        raise HTTPException(status_code=429, detail="Too many codes requested for this phone")
    ip = client_ip(request)
    if ip:
        lst_ip = [ts for ts in _AUTH_RATE_IP.get(ip, []) if ts >= now - window]
        lst_ip.append(now)
        _AUTH_RATE_IP[ip] = lst_ip
        if len(lst_ip) > AUTH_MAX_PER_IP:
            raise HTTPException(status_code=429, detail="Too many requests")


def _issue_code(phone: str) -> str:
    now = _now()
    for k in [k for k, (_, exp) in _LOGIN_CODES.items() if exp < now]:
        del _LOGIN_CODES[k]
    code = f"{secrets.randbelow(1_000_000):06d}"
    _LOGIN_CODES[phone] = (code, now + config.LOGIN_CODE_TTL_SECS)
    return code


def _check_code(phone: str, code: str) -> bool:
    rec = _LOGIN_CODES.get(phone)
    ok = bool(rec and secrets.compare_digest(rec[0], code) and rec[1] >= _now())
    if ok:
        # single use
        del _LOGIN_CODES[phone]
    return ok


@router.post("/login", response_model=TokenOut)
def login(req: LoginReq, s: Session = Depends(get_session)):
    email = normalize_email(req.email)
    if not email or not req.password or not req.role:
        raise HTTPException(status_code=400, detail="Email, password, and role are required")
    user = find_user_by_email(s, email)
    if not user or not user.is_active:
        raise HTTPException(status_code=401, detail="Invalid email or inactive user")
    wanted = normalize_role(req.role)
    if wanted == "customer" and not user.email_verified:
        raise HTTPException(
            status_code=403,
            detail={
                "message": "Please verify your email address before logging in.",
                "code": "EMAIL_NOT_VERIFIED",
            },
        )
    if not verify_password(req.password, user.password):
        raise HTTPException(status_code=401, detail="Invalid password")
    roles = user_roles(s, user.id)
    match = next((r for r in roles if normalize_role(r.name) == wanted), None)
    if match is None:
        held = ", ".join(r.name for r in roles) or "none"
        raise HTTPException(status_code=403, detail=f"Access denied for role {req.role}. User has role: {held}")
    logger.info("login ok", extra={"user_id": user.id, "role": match.name})
    return TokenOut(token=issue_token(user, match), user=user_out(user, match))


@router.post("/register", status_code=201)
def register(req: RegisterReq, s: Session = Depends(get_session)):
    email = normalize_email(req.email)
    validate_signup(req.name, email, req.password)
    user = find_user_by_email(s, email)
    if user:
        held = {normalize_role(r.name) for r in user_roles(s, user.id)}
        # Another role may add "customer" only when the caller owns the account.
        if "customer" in held or not verify_password(req.password, user.password):
            raise HTTPException(status_code=409, detail="Email already registered")
        grant_role(s, user, "customer")
        ensure_customer_row(s, user)
        s.commit()
        return {"message": "Customer role added to existing account", "user_id": user.id}
    user = User(
        name=req.name.strip(),
        email=email,
        phone_number=(req.phone_number or "").strip() or None,
        password=hash_password(req.password),
        email_verified=False,
    )
    s.add(user)
    s.flush()
    grant_role(s, user, "customer")
    ensure_customer_row(s, user)
    s.commit()
    s.refresh(user)
    send_verification(user)
    return {"message": "Registration successful. Please check your email to verify your account.", "user_id": user.id}


@router.post("/request-otp")
def request_otp(req: PhoneReq, request: Request):
    phone = (req.phone or "").strip()
    if not phone:
        raise HTTPException(status_code=400, detail="Phone number is required")
    _rate_limit_auth(request, phone)
    code = _issue_code(phone)
    # TODO: hand the code to an SMS gateway once one is contracted.
    logger.info("otp issued", extra={"phone_suffix": phone[-4:]})
    resp = {"success": True, "message": "OTP sent successfully", "ttl": config.LOGIN_CODE_TTL_SECS}
    if config.AUTH_EXPOSE_CODES:
        resp["code"] = code
    return resp


@router.post("/login-otp", response_model=TokenOut)
def login_otp(req: OtpLoginReq, s: Session = Depends(get_session)):
    phone = (req.phone or "").strip()
    otp = (req.otp or "").strip()
    if not phone or not otp:
        raise HTTPException(status_code=400, detail="Phone and OTP are required")
    if not _OTP_RE.match(otp):
        raise HTTPException(status_code=400, detail="Invalid OTP format")
    if not _check_code(phone, otp):
        raise HTTPException(status_code=401, detail="Invalid or expired OTP")
    user = s.execute(
        select(User).where(User.phone_number == phone, User.is_active == True)  # noqa: E712
    ).scalars().first()
    if not user:
        raise HTTPException(status_code=401, detail="Phone number not registered")
    roles = user_roles(s, user.id)
    if not roles:
        raise HTTPException(status_code=403, detail="User role not found")
    wanted = normalize_role(req.role or "customer")
    role = next((r for r in roles if normalize_role(r.name) == wanted), roles[0])
    return TokenOut(token=issue_token(user, role), user=user_out(user, role))


@router.post("/verify-email")
def verify_email(req: TokenReq, s: Session = Depends(get_session)):
    if not req.token:
        raise HTTPException(status_code=400, detail="Token is required")
    try:
        data = decode_purpose_token(req.token, "email_verify")
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid or expired verification link")
    user = s.get(User, int(data["id"]))
    if not user or user.email != data.get("email"):
        raise HTTPException(status_code=400, detail="Invalid or expired verification link")
    if not user.email_verified:
        user.email_verified = True
        s.commit()
    return {"message": "Email verified successfully"}


@router.post("/resend-verification")
def resend_verification(req: EmailReq, s: Session = Depends(get_session)):
    email = normalize_email(req.email)
    if not email:
        raise HTTPException(status_code=400, detail="Email is required")
    user = find_user_by_email(s, email)
    if user and user.is_active and not user.email_verified:
        send_verification(user)
    # Same answer whether or not the address exists.
    return {"message": "If the account exists and is unverified, a verification email has been sent."}


@router.post("/forgot-password")
def forgot_password(req: EmailReq, s: Session = Depends(get_session)):
    email = normalize_email(req.email)
    if not email:
        raise HTTPException(status_code=400, detail="Email is required")
    user = find_user_by_email(s, email)
    if user and user.is_active:
        token = issue_purpose_token(user, "password_reset", PASSWORD_RESET_TTL_SECS)
        mailer.send_password_reset_email(user.email, user.name, token)
    return {"message": "If an account exists for this email, a reset link has been sent."}


@router.post("/reset-password")
def reset_password(req: ResetReq, s: Session = Depends(get_session)):
    if not req.token or not req.password:
        raise HTTPException(status_code=400, detail="Token and new password are required")
    check_password_policy(req.password)
    try:
        data = decode_purpose_token(req.token, "password_reset")
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid or expired reset link")
    user = s.get(User, int(data["id"]))
    if not user or user.email != data.get("email"):
        raise HTTPException(status_code=400, detail="Invalid or expired reset link")
    user.password = hash_password(req.password)
    s.commit()
    return {"message": "Password has been reset successfully"}


@router.get("/me")
def get_me(me: AuthUser = Depends(current_user), s: Session = Depends(get_session)):
    u = me.user
    return {
        "id": u.id,
        "name": u.name,
        "email": u.email,
        "phone_number": u.phone_number,
        "email_verified": u.email_verified,
        "role": me.role_name,
        "roles": [r.name for r in user_roles(s, u.id)],
    }
