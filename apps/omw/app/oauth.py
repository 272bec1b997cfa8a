import hmac
import logging
from typing import Optional
from urllib.parse import urlencode

import httpx
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import RedirectResponse
from google.auth import exceptions as google_exceptions
from google.auth.transport import requests as google_requests
from google.oauth2 import id_token
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.orm import Session

from . import config
from .auth import TokenOut, ensure_customer_row, find_user_by_email, normalize_email, user_out
from .db import get_session
from .models import User
from .security import (
    AuthUser,
    current_user,
    decode_purpose_token,
    grant_role,
    issue_oauth_state,
    issue_token,
    role_by_name,
    user_roles,
)

router = APIRouter()
logger = logging.getLogger("omw.oauth")


class MobileLoginReq(BaseModel):
    idToken: Optional[str] = None


def _callback_url() -> str:
    return f"{config.BACKEND_URL}/api/auth/google/callback"


def verify_google_id_token(token: str, audiences: list[str]) -> dict:
    """Signature, expiry, issuer and audience checks are done by google-auth."""
    return id_token.verify_oauth2_token(token, google_requests.Request(), audience=audiences)


def exchange_code(code: str) -> str:
    """Trade an authorization code for Google's ID token."""
    r = httpx.post(
        config.GOOGLE_TOKEN_URL,
        data={
            "code": code,
            "client_id": config.GOOGLE_CLIENT_ID,
            "client_secret": config.GOOGLE_CLIENT_SECRET,
            "redirect_uri": _callback_url(),
            "grant_type": "authorization_code",
        },
        timeout=10,
    )
    r.raise_for_status()
    tok = r.json().get("id_token")
    if not tok:
        raise ValueError("token response without id_token")
    return tok


def upsert_google_user(s: Session, info: dict) -> User:
    """
    Find the account by Google subject, then by email, or create it.

    The customer role and customers row are ensured either way; Google
    vouches for the address so it is marked verified.
    """
    sub = str(info.get("sub") or "")
    email = normalize_email(info.get("email"))
    if not sub or not email:
        raise ValueError("google profile lacks sub or email")
    user = s.execute(select(User).where(User.google_id == sub)).scalars().first()
    if user is None:
        user = find_user_by_email(s, email)
    if user is None:
        user = User(name=info.get("name") or email.split("@")[0], email=email)
        s.add(user)
    if not user.google_id:
        user.google_id = sub
    if info.get("picture") and not user.avatar_url:
        user.avatar_url = info["picture"]
    user.email_verified = True
    s.flush()
    grant_role(s, user, "customer")
    ensure_customer_row(s, user)
    s.commit()
    s.refresh(user)
    return user


def _state_ok(state: Optional[str], cookie: Optional[str]) -> bool:
    if not state or not cookie or not hmac.compare_digest(state, cookie):
        return False
    try:
        decode_purpose_token(state, "oauth_state")
    except ValueError:
        return False
    return True


@router.get("/google")
def google_start():
    if not config.GOOGLE_CLIENT_ID:
        raise HTTPException(status_code=500, detail="Google OAuth not configured")
    state = issue_oauth_state(config.OAUTH_STATE_TTL_SECS)
    params = {
        "client_id": config.GOOGLE_CLIENT_ID,
        "redirect_uri": _callback_url(),
        "response_type": "code",
        "scope": "openid email profile",
        "state": state,
        "prompt": "select_account",
    }
    resp = RedirectResponse(f"{config.GOOGLE_AUTH_URL}?{urlencode(params)}", status_code=302)
    resp.set_cookie(
        config.OAUTH_STATE_COOKIE,
        state,
        max_age=config.OAUTH_STATE_TTL_SECS,
        httponly=True,
        secure=config.COOKIE_SECURE,
        samesite="lax",
        path="/api/auth/google",
    )
    return resp


@router.get("/google/callback")
def google_callback(
    request: Request,
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    s: Session = Depends(get_session),
):
    fail = RedirectResponse(f"{config.FRONTEND_URL}/login?error=oauth_failed", status_code=302)
    fail.delete_cookie(config.OAUTH_STATE_COOKIE, path="/api/auth/google")
    if error or not code:
        return fail
    if not _state_ok(state, request.cookies.get(config.OAUTH_STATE_COOKIE)):
        logger.warning("google oauth callback with missing or mismatched state")
        return fail
    try:
        raw = exchange_code(code)
        info = verify_google_id_token(raw, [config.GOOGLE_CLIENT_ID])
        user = upsert_google_user(s, info)
    except (httpx.HTTPError, ValueError, google_exceptions.GoogleAuthError):
        logger.exception("google oauth callback failed")
        return fail
    token = issue_token(user, role_by_name(s, "customer"))
    ok = RedirectResponse(f"{config.FRONTEND_URL}/auth/google/success?{urlencode({'token': token})}", status_code=302)
    ok.delete_cookie(config.OAUTH_STATE_COOKIE, path="/api/auth/google")
    return ok


@router.post("/google/mobile", response_model=TokenOut)
def google_mobile(req: MobileLoginReq, s: Session = Depends(get_session)):
    if not req.idToken:
        raise HTTPException(status_code=400, detail="idToken is required")
    audiences = config.google_audiences()
    if not audiences:
        raise HTTPException(status_code=500, detail="Google client IDs not configured")
    try:
        info = verify_google_id_token(req.idToken, audiences)
    except (ValueError, google_exceptions.GoogleAuthError):
        raise HTTPException(status_code=401, detail="Invalid Google token")
    try:
        user = upsert_google_user(s, info)
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid Google token")
    if not user.is_active:
        raise HTTPException(status_code=403, detail="Account is disabled")
    role = role_by_name(s, "customer")
    return TokenOut(token=issue_token(user, role), user=user_out(user, role))


@router.get("/user")
def oauth_user(me: AuthUser = Depends(current_user), s: Session = Depends(get_session)):
    u = me.user
    return {
        "id": u.id,
        "name": u.name,
        "email": u.email,
        "avatar_url": u.avatar_url,
        "google_linked": bool(u.google_id),
        "roles": [r.name for r in user_roles(s, u.id)],
    }
