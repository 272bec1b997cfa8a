import logging
import os
from typing import Optional

import nacl.exceptions
from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.orm import Session

from .audit import client_ip, log_action
from .db import get_session
from .models import PaymentSetting, PaymentSettingAudit
from .security import AuthUser, decrypt_secret, encrypt_secret, fingerprint, mask_secret, require_superadmin

router = APIRouter()
logger = logging.getLogger("omw.payment_settings")


class SettingCreateReq(BaseModel):
    provider: Optional[str] = None
    key_name: Optional[str] = None
    key_value: Optional[str] = None
    description: Optional[str] = None


class SettingUpdateReq(BaseModel):
    key_value: Optional[str] = None
    description: Optional[str] = None
    is_active: Optional[bool] = None


def _plain(row: PaymentSetting) -> Optional[str]:
    try:
        return decrypt_secret(row.key_value_encrypted)
    except (nacl.exceptions.CryptoError, ValueError):
        logger.error("stored payment key cannot be decrypted", extra={"setting_id": row.id})
        return None


def _out(row: PaymentSetting, value: Optional[str] = None) -> dict:
    plain = _plain(row) if value is None else value
    return {
        "id": row.id,
        "provider": row.provider,
        "key_name": row.key_name,
        "masked_value": mask_secret(plain) if plain is not None else None,
        "description": row.description,
        "is_active": row.is_active,
        "updated_by": row.updated_by,
        "updated_at": row.updated_at.isoformat() if row.updated_at else None,
    }


def _trail(s: Session, row: PaymentSetting, action: str, me: AuthUser, request: Request,
           old: Optional[str] = None, new: Optional[str] = None) -> None:
    s.add(PaymentSettingAudit(
        setting_id=row.id,
        action=action,
        old_value_hash=fingerprint(old),
        new_value_hash=fingerprint(new),
        user_id=me.id,
        ip_address=client_ip(request),
    ))


def _get_or_404(s: Session, setting_id: int) -> PaymentSetting:
    row = s.get(PaymentSetting, setting_id)
    if not row:
        raise HTTPException(status_code=404, detail="Payment setting not found")
    return row


def get_api_key(s: Session, provider: str, key_name: str, env_fallback: Optional[str] = None) -> str:
    """Active stored key for ``provider``/``key_name``; the env var otherwise."""
    row = s.execute(
        select(PaymentSetting).where(
            PaymentSetting.provider == provider,
            PaymentSetting.key_name == key_name,
            PaymentSetting.is_active == True,  # noqa: E712
        )
    ).scalars().first()
    if row is not None:
        plain = _plain(row)
        if plain:
            return plain
    return os.getenv(env_fallback, "") if env_fallback else ""


@router.get("")
def list_settings(provider: str = "", me: AuthUser = Depends(require_superadmin), s: Session = Depends(get_session)):
    q = select(PaymentSetting).where(PaymentSetting.is_active == True)  # noqa: E712
    if provider:
        q = q.where(PaymentSetting.provider == provider.strip().lower())
    rows = s.execute(q.order_by(PaymentSetting.provider, PaymentSetting.key_name)).scalars().all()
    return {"settings": [_out(r) for r in rows]}


@router.get("/audit-logs/list")
def setting_audit(limit: int = 100, me: AuthUser = Depends(require_superadmin), s: Session = Depends(get_session)):
    limit = max(1, min(limit, 500))
    rows = s.execute(
        select(PaymentSettingAudit, PaymentSetting)
        .join(PaymentSetting, PaymentSetting.id == PaymentSettingAudit.setting_id)
        .order_by(PaymentSettingAudit.created_at.desc(), PaymentSettingAudit.id.desc())
        .limit(limit)
    ).all()
    return {
        "logs": [
            {
                "id": a.id,
                "setting_id": a.setting_id,
                "provider": ps.provider,
                "key_name": ps.key_name,
                "action": a.action,
                "old_value_hash": a.old_value_hash,
                "new_value_hash": a.new_value_hash,
                "user_id": a.user_id,
                "ip_address": a.ip_address,
                "created_at": a.created_at.isoformat() if a.created_at else None,
            }
            for a, ps in rows
        ]
    }


@router.get("/{setting_id}/decrypt")
def decrypt_setting(setting_id: int, request: Request, me: AuthUser = Depends(require_superadmin), s: Session = Depends(get_session)):
    row = _get_or_404(s, setting_id)
    plain = _plain(row)
    if plain is None:
        raise HTTPException(status_code=500, detail="Stored value cannot be decrypted")
    _trail(s, row, "viewed", me, request)
    log_action(s, me, "payment_setting_viewed", "payment_setting", row.id, {"provider": row.provider, "key_name": row.key_name}, request)
    s.commit()
    return {"id": row.id, "provider": row.provider, "key_name": row.key_name, "key_value": plain}


@router.post("", status_code=201)
def create_setting(req: SettingCreateReq, request: Request, me: AuthUser = Depends(require_superadmin), s: Session = Depends(get_session)):
    provider = (req.provider or "").strip().lower()
    key_name = (req.key_name or "").strip()
    if not provider or not key_name or not req.key_value:
        raise HTTPException(status_code=400, detail="provider, key_name and key_value are required")
    dup = s.execute(
        select(PaymentSetting).where(PaymentSetting.provider == provider, PaymentSetting.key_name == key_name)
    ).scalars().first()
    if dup is not None and dup.is_active:
        raise HTTPException(status_code=409, detail="Setting already exists for this provider and key")
    if dup is not None:
        # soft-deleted earlier; the unique key forces reuse of the row
        row = dup
        row.key_value_encrypted = encrypt_secret(req.key_value)
        row.description = req.description
        row.is_active = True
        row.updated_by = me.id
    else:
        row = PaymentSetting(
            provider=provider,
            key_name=key_name,
            key_value_encrypted=encrypt_secret(req.key_value),
            description=req.description,
            created_by=me.id,
            updated_by=me.id,
        )
        s.add(row)
    s.flush()
    _trail(s, row, "created", me, request, new=req.key_value)
    log_action(s, me, "payment_setting_created", "payment_setting", row.id, {"provider": provider, "key_name": key_name}, request)
    s.commit()
    s.refresh(row)
    return _out(row, req.key_value)


@router.put("/{setting_id}")
def update_setting(setting_id: int, req: SettingUpdateReq, request: Request, me: AuthUser = Depends(require_superadmin), s: Session = Depends(get_session)):
    row = _get_or_404(s, setting_id)
    old = _plain(row)
    changed = []
    if req.key_value:
        row.key_value_encrypted = encrypt_secret(req.key_value)
        changed.append("key_value")
    if req.description is not None:
        row.description = req.description
        changed.append("description")
    if req.is_active is not None:
        row.is_active = req.is_active
        changed.append("is_active")
    if not changed:
        raise HTTPException(status_code=400, detail="Nothing to update")
    row.updated_by = me.id
    _trail(s, row, "updated", me, request, old=old if req.key_value else None, new=req.key_value or None)
    log_action(s, me, "payment_setting_updated", "payment_setting", row.id, {"fields": changed}, request)
    s.commit()
    s.refresh(row)
    return _out(row)


@router.delete("/{setting_id}")
def delete_setting(setting_id: int, request: Request, me: AuthUser = Depends(require_superadmin), s: Session = Depends(get_session)):
    row = _get_or_404(s, setting_id)
    row.is_active = False
    row.updated_by = me.id
    _trail(s, row, "deleted", me, request)
    log_action(s, me, "payment_setting_deleted", "payment_setting", row.id, None, request)
    s.commit()
    return {"deleted": True, "id": row.id}
