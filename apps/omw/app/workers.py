import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import delete, func, or_, select
from sqlalchemy.orm import Session

from .audit import log_action
from .auth import find_user_by_email, normalize_email, user_out, validate_signup
from .db import get_session
from .models import Provider, ProviderService, ServiceSubcategory, User
from .security import (
    AuthUser,
    grant_role,
    hash_password,
    issue_token,
    normalize_role,
    require_admin,
    require_worker,
    role_by_name,
    user_roles,
    verify_password,
)

router = APIRouter()
logger = logging.getLogger("omw.workers")

PROVIDER_FIELDS = ("experience_years", "bio", "service_radius_km", "location_lat", "location_lng")
GENDERS = ("male", "female", "other")


class ProviderData(BaseModel):
    experience_years: Optional[int] = Field(default=None, ge=0, le=80)
    bio: Optional[str] = None
    service_radius_km: Optional[float] = Field(default=None, gt=0, le=500)
    location_lat: Optional[float] = Field(default=None, ge=-90, le=90)
    location_lng: Optional[float] = Field(default=None, ge=-180, le=180)


class WorkerRegisterReq(BaseModel):
    name: Optional[str] = None
    firstName: Optional[str] = None
    lastName: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None
    phone_number: Optional[str] = None
    phone: Optional[str] = None
    providerData: Optional[ProviderData] = None


class ProviderOut(BaseModel):
    id: int
    user_id: int
    experience_years: int
    bio: Optional[str]
    service_radius_km: float
    location_lat: Optional[float]
    location_lng: Optional[float]
    is_verified: bool
    is_active: bool
    model_config = ConfigDict(from_attributes=True)


class ProfileUpdateReq(BaseModel):
    name: Optional[str] = None
    phone_number: Optional[str] = None
    bio: Optional[str] = None
    experience_years: Optional[int] = Field(default=None, ge=0, le=80)
    service_radius_km: Optional[float] = Field(default=None, gt=0, le=500)
    location_lat: Optional[float] = Field(default=None, ge=-90, le=90)
    location_lng: Optional[float] = Field(default=None, ge=-180, le=180)
    gender: Optional[str] = None


class ServicesReq(BaseModel):
    subcategory_ids: list[int] = Field(default_factory=list)


class VerifyReq(BaseModel):
    verified: bool


class ActivityReq(BaseModel):
    active: bool


def provider_for_user(s: Session, user_id: int) -> Optional[Provider]:
    return s.execute(select(Provider).where(Provider.user_id == user_id)).scalars().first()


def _worker_view(p: Provider, u: User) -> dict:
    out = ProviderOut.model_validate(p).model_dump()
    out.update({
        "name": u.name,
        "email": u.email,
        "phone_number": u.phone_number,
        "gender": u.gender,
        "user_active": u.is_active,
    })
    return out


@router.post("/worker/register", status_code=201)
def register_worker(req: WorkerRegisterReq, s: Session = Depends(get_session)):
    name = (req.name or " ".join(x for x in (req.firstName, req.lastName) if x) or "").strip()
    email = normalize_email(req.email)
    validate_signup(name, email, req.password)
    if req.providerData is None:
        raise HTTPException(status_code=400, detail="providerData is required")
    data = req.providerData.model_dump()
    missing = [f for f in PROVIDER_FIELDS if data.get(f) is None]
    if missing:
        raise HTTPException(
            status_code=400,
            detail={"message": "Missing required provider fields", "missingFields": missing},
        )
    user = find_user_by_email(s, email)
    if user:
        held = {normalize_role(r.name) for r in user_roles(s, user.id)}
        if "worker" in held or not verify_password(req.password, user.password):
            raise HTTPException(status_code=409, detail="Email already registered")
    else:
        user = User(
            name=name,
            email=email,
            phone_number=(req.phone_number or req.phone or "").strip() or None,
            password=hash_password(req.password),
        )
        s.add(user)
        s.flush()
    grant_role(s, user, "worker")
    provider = provider_for_user(s, user.id)
    if provider is None:
        provider = Provider(user_id=user.id, **data)
        s.add(provider)
    s.commit()
    s.refresh(provider)
    role = role_by_name(s, "worker")
    logger.info("worker registered", extra={"user_id": user.id, "provider_id": provider.id})
    return {
        "message": "Worker registered successfully",
        "user_id": user.id,
        "provider_id": provider.id,
        "token": issue_token(user, role),
        "user": user_out(user, role).model_dump(),
    }


@router.get("/worker/profile")
def get_profile(me: AuthUser = Depends(require_worker), s: Session = Depends(get_session)):
    p = provider_for_user(s, me.id)
    if not p:
        raise HTTPException(status_code=404, detail="Worker profile not found")
    return _worker_view(p, me.user)


@router.put("/worker/profile")
def update_profile(req: ProfileUpdateReq, me: AuthUser = Depends(require_worker), s: Session = Depends(get_session)):
    p = provider_for_user(s, me.id)
    if not p:
        raise HTTPException(status_code=404, detail="Worker profile not found")
    changes = req.model_dump(exclude_unset=True)
    u = me.user
    if "name" in changes and (changes["name"] or "").strip():
        u.name = changes.pop("name").strip()
    if "phone_number" in changes:
        u.phone_number = (changes.pop("phone_number") or "").strip() or None
    if "gender" in changes:
        gender = (changes.pop("gender") or "").strip().lower() or None
        if gender is not None and gender not in GENDERS:
            raise HTTPException(status_code=400, detail=f"gender must be one of {', '.join(GENDERS)}")
        u.gender = gender
    changes.pop("name", None)
    for k, v in changes.items():
        if v is not None:
            setattr(p, k, v)
    s.commit()
    s.refresh(p)
    return _worker_view(p, u)


def _services_out(s: Session, p: Provider) -> dict:
    rows = s.execute(
        select(ServiceSubcategory)
        .join(ProviderService, ProviderService.subcategory_id == ServiceSubcategory.id)
        .where(ProviderService.provider_id == p.id)
        .order_by(ServiceSubcategory.id)
    ).scalars().all()
    return {"services": [{"subcategory_id": sc.id, "category_id": sc.category_id, "name": sc.name} for sc in rows]}


@router.get("/worker/services")
def get_services(me: AuthUser = Depends(require_worker), s: Session = Depends(get_session)):
    p = provider_for_user(s, me.id)
    if not p:
        raise HTTPException(status_code=404, detail="Worker profile not found")
    return _services_out(s, p)


@router.put("/worker/services")
def set_services(req: ServicesReq, me: AuthUser = Depends(require_worker), s: Session = Depends(get_session)):
    p = provider_for_user(s, me.id)
    if not p:
        raise HTTPException(status_code=404, detail="Worker profile not found")
    wanted = list(dict.fromkeys(req.subcategory_ids))
    known = set(s.execute(select(ServiceSubcategory.id).where(ServiceSubcategory.id.in_(wanted))).scalars().all()) if wanted else set()
    unknown = [i for i in wanted if i not in known]
    if unknown:
        raise HTTPException(status_code=400, detail={"message": "Unknown subcategories", "subcategory_ids": unknown})
    s.execute(delete(ProviderService).where(ProviderService.provider_id == p.id))
    for sid in wanted:
        s.add(ProviderService(provider_id=p.id, subcategory_id=sid))
    s.commit()
    logger.info("worker services updated", extra={"provider_id": p.id, "count": len(wanted)})
    return _services_out(s, p)


@router.get("/worker/all")
def list_workers(
    page: int = 1,
    limit: int = 20,
    status: str = "",
    search: str = "",
    me: AuthUser = Depends(require_admin),
    s: Session = Depends(get_session),
):
    page = max(1, page)
    limit = max(1, min(limit, 100))
    q = select(Provider, User).join(User, User.id == Provider.user_id)
    st = (status or "").lower()
    if st == "verified":
        q = q.where(Provider.is_verified == True)  # noqa: E712
    elif st == "unverified":
        q = q.where(Provider.is_verified == False)  # noqa: E712
    elif st == "active":
        q = q.where(Provider.is_active == True)  # noqa: E712
    elif st == "inactive":
        q = q.where(Provider.is_active == False)  # noqa: E712
    if search.strip():
        like = f"%{search.strip().lower()}%"
        q = q.where(or_(func.lower(User.name).like(like), func.lower(User.email).like(like)))
    total = s.execute(select(func.count()).select_from(q.subquery())).scalar_one()
    rows = s.execute(q.order_by(Provider.created_at.desc()).offset((page - 1) * limit).limit(limit)).all()
    return {
        "workers": [_worker_view(p, u) for p, u in rows],
        "pagination": {"page": page, "limit": limit, "total": total, "pages": (total + limit - 1) // limit},
    }


def _admin_target(s: Session, worker_id: int) -> tuple[Provider, User]:
    p = s.get(Provider, worker_id)
    if not p:
        raise HTTPException(status_code=404, detail="Worker not found")
    return p, s.get(User, p.user_id)


@router.get("/worker/{worker_id}")
def get_worker(worker_id: int, me: AuthUser = Depends(require_admin), s: Session = Depends(get_session)):
    p, u = _admin_target(s, worker_id)
    return _worker_view(p, u)


@router.patch("/worker/{worker_id}/verify")
def verify_worker(worker_id: int, req: VerifyReq, request: Request, me: AuthUser = Depends(require_admin), s: Session = Depends(get_session)):
    p, u = _admin_target(s, worker_id)
    p.is_verified = req.verified
    log_action(s, me, "worker_verified" if req.verified else "worker_unverified", "provider", p.id, request=request)
    s.commit()
    return _worker_view(p, u)


@router.patch("/worker/{worker_id}/activity")
def set_worker_activity(worker_id: int, req: ActivityReq, request: Request, me: AuthUser = Depends(require_admin), s: Session = Depends(get_session)):
    p, u = _admin_target(s, worker_id)
    p.is_active = req.active
    log_action(s, me, "worker_activated" if req.active else "worker_deactivated", "provider", p.id, request=request)
    s.commit()
    return _worker_view(p, u)
