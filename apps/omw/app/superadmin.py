import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel
from sqlalchemy import delete, func, or_, select
from sqlalchemy.orm import Session

from . import config
from .audit import log_action
from .auth import check_email, check_password_policy, find_user_by_email, normalize_email, validate_signup
from .db import get_session
from .models import User, UserRole
from .security import AuthUser, grant_role, hash_password, require_superadmin, role_by_name, user_roles

router = APIRouter()
logger = logging.getLogger("omw.superadmin")


class AdminCreateReq(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None
    phone_number: Optional[str] = None


class AdminUpdateReq(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone_number: Optional[str] = None
    password: Optional[str] = None


class StatusReq(BaseModel):
    is_active: Optional[bool] = None


def _admin_out(u: User) -> dict:
    return {
        "id": u.id,
        "name": u.name,
        "email": u.email,
        "phone_number": u.phone_number,
        "is_active": u.is_active,
        "created_at": u.created_at.isoformat() if u.created_at else None,
        "updated_at": u.updated_at.isoformat() if u.updated_at else None,
    }


def _admin_ids(s: Session):
    role = role_by_name(s, "admin")
    return select(UserRole.user_id).where(UserRole.role_id == role.id)


def _admin_or_404(s: Session, admin_id: int) -> User:
    u = s.get(User, admin_id)
    if not u or admin_id not in set(s.execute(_admin_ids(s)).scalars().all()):
        raise HTTPException(status_code=404, detail="Admin not found")
    return u


@router.get("")
def list_admins(
    page: int = 1,
    limit: int = 10,
    search: str = "",
    status: str = "",
    me: AuthUser = Depends(require_superadmin),
    s: Session = Depends(get_session),
):
    page = max(1, page)
    limit = max(1, min(limit, 100))
    q = select(User).where(User.id.in_(_admin_ids(s)))
    if search.strip():
        like = f"%{search.strip().lower()}%"
        q = q.where(or_(func.lower(User.name).like(like), func.lower(User.email).like(like)))
    st = status.strip().lower()
    if st == "active":
        q = q.where(User.is_active == True)  # noqa: E712
    elif st == "inactive":
        q = q.where(User.is_active == False)  # noqa: E712
    total = s.execute(select(func.count()).select_from(q.subquery())).scalar_one()
    rows = s.execute(q.order_by(User.created_at.desc(), User.id.desc()).offset((page - 1) * limit).limit(limit)).scalars().all()
    return {
        "admins": [_admin_out(u) for u in rows],
        "pagination": {"page": page, "limit": limit, "total": total, "pages": (total + limit - 1) // limit},
    }


@router.get("/{admin_id}")
def get_admin(admin_id: int, me: AuthUser = Depends(require_superadmin), s: Session = Depends(get_session)):
    return _admin_out(_admin_or_404(s, admin_id))


@router.post("", status_code=201)
def create_admin(req: AdminCreateReq, request: Request, me: AuthUser = Depends(require_superadmin), s: Session = Depends(get_session)):
    email = normalize_email(req.email)
    password = req.password or config.DEFAULT_ADMIN_PASSWORD
    validate_signup(req.name, email, password)
    if find_user_by_email(s, email):
        raise HTTPException(status_code=409, detail="Email already registered")
    u = User(
        name=req.name.strip(),
        email=email,
        phone_number=(req.phone_number or "").strip() or None,
        password=hash_password(password),
        email_verified=True,
    )
    s.add(u)
    s.flush()
    grant_role(s, u, "admin")
    log_action(s, me, "admin_created", "user", u.id, {"email": email, "default_password": req.password is None}, request)
    s.commit()
    s.refresh(u)
    return _admin_out(u)


@router.put("/{admin_id}")
def update_admin(admin_id: int, req: AdminUpdateReq, request: Request, me: AuthUser = Depends(require_superadmin), s: Session = Depends(get_session)):
    u = _admin_or_404(s, admin_id)
    changed = []
    if req.name is not None and req.name.strip():
        u.name = req.name.strip()
        changed.append("name")
    if req.email is not None:
        email = normalize_email(req.email)
        check_email(email)
        other = find_user_by_email(s, email)
        if other is not None and other.id != u.id:
            raise HTTPException(status_code=409, detail="Email already registered")
        u.email = email
        changed.append("email")
    if req.phone_number is not None:
        u.phone_number = req.phone_number.strip() or None
        changed.append("phone_number")
    if req.password:
        check_password_policy(req.password)
        u.password = hash_password(req.password)
        changed.append("password")
    log_action(s, me, "admin_updated", "user", u.id, {"fields": changed}, request)
    s.commit()
    s.refresh(u)
    return _admin_out(u)


@router.patch("/{admin_id}/status")
def set_admin_status(admin_id: int, req: StatusReq, request: Request, me: AuthUser = Depends(require_superadmin), s: Session = Depends(get_session)):
    if req.is_active is None:
        raise HTTPException(status_code=400, detail="is_active is required")
    u = _admin_or_404(s, admin_id)
    if u.id == me.id and not req.is_active:
        raise HTTPException(status_code=400, detail="You cannot deactivate your own account")
    u.is_active = req.is_active
    log_action(s, me, "admin_activated" if req.is_active else "admin_deactivated", "user", u.id, None, request)
    s.commit()
    s.refresh(u)
    return _admin_out(u)


@router.delete("/{admin_id}")
def delete_admin(admin_id: int, request: Request, me: AuthUser = Depends(require_superadmin), s: Session = Depends(get_session)):
    """Revoke the admin role; the account is disabled when no other role remains."""
    u = _admin_or_404(s, admin_id)
    if u.id == me.id:
        raise HTTPException(status_code=400, detail="You cannot delete your own account")
    role = role_by_name(s, "admin")
    s.execute(delete(UserRole).where(UserRole.user_id == u.id, UserRole.role_id == role.id))
    s.flush()
    if not user_roles(s, u.id):
        u.is_active = False
    log_action(s, me, "admin_deleted", "user", u.id, {"email": u.email}, request)
    s.commit()
    return {"deleted": True, "id": u.id}
