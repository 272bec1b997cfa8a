import logging
import os
from typing import Optional

import nacl.exceptions
from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.orm import Session

from .audit import log_action
from .db import get_session
from .models import SystemSetting
from .security import AuthUser, decrypt_secret, encrypt_secret, mask_secret, require_superadmin

router = APIRouter()
logger = logging.getLogger("omw.system_settings")

# key, type, category, sensitive, description, default
CATALOGUE = [
    ("JWT_SECRET", "string", "security", True, "JWT signing secret", None),
    ("JWT_EXPIRATION", "string", "security", False, "JWT token lifetime", "15h"),
    ("SMTP_HOST", "string", "email", False, "SMTP server host", None),
    ("SMTP_USER", "string", "email", True, "SMTP login", None),
    ("SMTP_PASSWORD", "string", "email", True, "SMTP password", None),
    ("EMAIL_FROM", "string", "email", False, "Sender address for outgoing mail", None),
    ("RAZORPAY_KEY_ID", "string", "payment", True, "Razorpay key id", None),
    ("RAZORPAY_KEY_SECRET", "string", "payment", True, "Razorpay key secret", None),
    ("RAZORPAY_WEBHOOK_SECRET", "string", "payment", True, "Razorpay webhook secret", None),
    ("GOOGLE_CLIENT_ID", "string", "oauth", False, "Google OAuth web client id", None),
    ("GOOGLE_CLIENT_SECRET", "string", "oauth", True, "Google OAuth client secret", None),
    ("GOOGLE_MAPS_API_KEY", "string", "general", True, "Google Maps API key", None),
]


class SettingUpdateReq(BaseModel):
    value: Optional[str] = None
    description: Optional[str] = None


def stored_value(row: SystemSetting) -> Optional[str]:
    """Plain value of a setting; sensitive values are kept encrypted."""
    if row.setting_value is None or not row.is_sensitive:
        return row.setting_value
    try:
        return decrypt_secret(row.setting_value)
    except (nacl.exceptions.CryptoError, ValueError):
        logger.error("system setting cannot be decrypted", extra={"setting_key": row.setting_key})
        return None


def _out(row: SystemSetting) -> dict:
    value = stored_value(row)
    if row.is_sensitive and value is not None:
        value = mask_secret(value)
    return {
        "key": row.setting_key,
        "value": value,
        "type": row.setting_type,
        "category": row.category,
        "is_sensitive": row.is_sensitive,
        "description": row.description,
        "updated_at": row.updated_at.isoformat() if row.updated_at else None,
    }


def upsert_setting(s: Session, key: str, value: str, setting_type: str, category: str, sensitive: bool, description: Optional[str]) -> tuple[SystemSetting, bool]:
    """Insert or overwrite one setting. Returns (row, created). Caller commits."""
    row = s.execute(select(SystemSetting).where(SystemSetting.setting_key == key)).scalars().first()
    created = row is None
    if created:
        row = SystemSetting(setting_key=key)
        s.add(row)
    row.setting_type = setting_type
    row.category = category
    row.is_sensitive = sensitive
    row.description = description
    row.setting_value = encrypt_secret(value) if sensitive else value
    return row, created


def populate_from_env(s: Session, environ=None) -> list[tuple[str, str]]:
    """
    Copy the catalogue from the environment into system_settings.

    Returns (key, outcome) pairs where outcome is created, updated or
    skipped (not set in the environment). Caller commits.
    """
    environ = os.environ if environ is None else environ
    results = []
    for key, setting_type, category, sensitive, desc, default in CATALOGUE:
        value = environ.get(key) or default
        if not value:
            results.append((key, "skipped"))
            continue
        _, created = upsert_setting(s, key, value, setting_type, category, sensitive, desc)
        results.append((key, "created" if created else "updated"))
    return results


@router.get("")
def list_settings(category: str = "", me: AuthUser = Depends(require_superadmin), s: Session = Depends(get_session)):
    q = select(SystemSetting)
    if category:
        q = q.where(SystemSetting.category == category)
    rows = s.execute(q.order_by(SystemSetting.category, SystemSetting.setting_key)).scalars().all()
    return {"settings": [_out(r) for r in rows]}


@router.put("/{key}")
def update_setting(key: str, req: SettingUpdateReq, request: Request, me: AuthUser = Depends(require_superadmin), s: Session = Depends(get_session)):
    if req.value is None:
        raise HTTPException(status_code=400, detail="value is required")
    row = s.execute(select(SystemSetting).where(SystemSetting.setting_key == key)).scalars().first()
    if not row:
        raise HTTPException(status_code=404, detail="Setting not found")
    row.setting_value = encrypt_secret(req.value) if row.is_sensitive else req.value
    if req.description is not None:
        row.description = req.description
    log_action(s, me, "system_setting_updated", "system_setting", key, {"sensitive": row.is_sensitive}, request)
    s.commit()
    s.refresh(row)
    return _out(row)
