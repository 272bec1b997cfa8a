import logging
import re
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .audit import log_action
from .db import get_session
from .models import Booking, CartItem, ProviderService, ServiceCategory, ServiceSubcategory
from .security import AuthUser, require_admin

router = APIRouter()
logger = logging.getLogger("omw.catalogue")

_HHMM = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


class CategoryReq(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    is_active: Optional[bool] = None


class SubcategoryReq(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    base_price_cents: Optional[int] = Field(default=None, ge=0)
    night_charge_cents: Optional[int] = Field(default=None, ge=0)
    night_start_time: Optional[str] = None
    night_end_time: Optional[str] = None
    is_active: Optional[bool] = None


def category_out(c: ServiceCategory) -> dict:
    return {"id": c.id, "name": c.name, "description": c.description, "is_active": c.is_active}


def subcategory_out(sc: ServiceSubcategory) -> dict:
    return {
        "id": sc.id,
        "category_id": sc.category_id,
        "name": sc.name,
        "description": sc.description,
        "base_price_cents": sc.base_price_cents,
        "night_charge_cents": sc.night_charge_cents,
        "night_start_time": sc.night_start_time,
        "night_end_time": sc.night_end_time,
        "is_active": sc.is_active,
    }


def active_subcategory(s: Session, subcategory_id) -> Optional[ServiceSubcategory]:
    """Bookable subcategory: both it and its category are active."""
    try:
        sid = int(subcategory_id)
    except (TypeError, ValueError):
        return None
    sc = s.get(ServiceSubcategory, sid)
    if not sc or not sc.is_active:
        return None
    cat = s.get(ServiceCategory, sc.category_id)
    if not cat or not cat.is_active:
        return None
    return sc


def _category_or_404(s: Session, category_id: int) -> ServiceCategory:
    c = s.get(ServiceCategory, category_id)
    if not c:
        raise HTTPException(status_code=404, detail="Category not found")
    return c


def _subcategory_or_404(s: Session, category_id: int, subcategory_id: int) -> ServiceSubcategory:
    sc = s.get(ServiceSubcategory, subcategory_id)
    if not sc or sc.category_id != category_id:
        raise HTTPException(status_code=404, detail="Subcategory not found")
    return sc


def _check_window(changes: dict) -> None:
    for k in ("night_start_time", "night_end_time"):
        v = changes.get(k)
        if v is not None and not _HHMM.match(v):
            raise HTTPException(status_code=400, detail=f"{k} must be HH:MM")


def _save_unique(s: Session, what: str, commit: bool = True) -> None:
    try:
        if commit:
            s.commit()
        else:
            s.flush()
    except IntegrityError:
        s.rollback()
        raise HTTPException(status_code=409, detail=f"{what} with this name already exists")


# ---- Public ----
@router.get("")
def list_categories(s: Session = Depends(get_session)):
    rows = s.execute(
        select(ServiceCategory).where(ServiceCategory.is_active == True).order_by(ServiceCategory.name)  # noqa: E712
    ).scalars().all()
    return {"categories": [category_out(c) for c in rows]}


@router.get("/subcategories/{subcategory_id}")
def get_subcategory(subcategory_id: int, s: Session = Depends(get_session)):
    sc = active_subcategory(s, subcategory_id)
    if not sc:
        raise HTTPException(status_code=404, detail="Subcategory not found")
    return subcategory_out(sc)


def _active_subcategories(s: Session, category_id: int) -> list:
    rows = s.execute(
        select(ServiceSubcategory)
        .where(ServiceSubcategory.category_id == category_id, ServiceSubcategory.is_active == True)  # noqa: E712
        .order_by(ServiceSubcategory.name)
    ).scalars().all()
    return [subcategory_out(sc) for sc in rows]


@router.get("/{category_id}")
def get_category(category_id: int, s: Session = Depends(get_session)):
    c = _category_or_404(s, category_id)
    if not c.is_active:
        raise HTTPException(status_code=404, detail="Category not found")
    return {**category_out(c), "subcategories": _active_subcategories(s, c.id)}


@router.get("/{category_id}/subcategories")
def list_subcategories(category_id: int, s: Session = Depends(get_session)):
    c = _category_or_404(s, category_id)
    if not c.is_active:
        raise HTTPException(status_code=404, detail="Category not found")
    return {"subcategories": _active_subcategories(s, c.id)}


# ---- Admin ----
@router.post("", status_code=201)
def create_category(req: CategoryReq, request: Request, me: AuthUser = Depends(require_admin), s: Session = Depends(get_session)):
    name = (req.name or "").strip()
    if not name:
        raise HTTPException(status_code=400, detail="Category name is required")
    c = ServiceCategory(name=name, description=req.description, is_active=True if req.is_active is None else req.is_active)
    s.add(c)
    _save_unique(s, "Category", commit=False)
    log_action(s, me, "category_created", "service_category", c.id, {"name": name}, request)
    _save_unique(s, "Category")
    s.refresh(c)
    return category_out(c)


@router.put("/{category_id}")
def update_category(category_id: int, req: CategoryReq, request: Request, me: AuthUser = Depends(require_admin), s: Session = Depends(get_session)):
    c = _category_or_404(s, category_id)
    changes = {k: v for k, v in req.model_dump(exclude_unset=True).items() if v is not None}
    if "name" in changes:
        changes["name"] = changes["name"].strip()
        if not changes["name"]:
            raise HTTPException(status_code=400, detail="Category name is required")
    if not changes:
        raise HTTPException(status_code=400, detail="No fields to update")
    for k, v in changes.items():
        setattr(c, k, v)
    log_action(s, me, "category_updated", "service_category", c.id, changes, request)
    _save_unique(s, "Category")
    s.refresh(c)
    return category_out(c)


@router.delete("/{category_id}")
def delete_category(category_id: int, request: Request, me: AuthUser = Depends(require_admin), s: Session = Depends(get_session)):
    c = _category_or_404(s, category_id)
    children = s.execute(
        select(func.count(ServiceSubcategory.id)).where(ServiceSubcategory.category_id == c.id)
    ).scalar_one()
    if children:
        raise HTTPException(status_code=400, detail="Category still has subcategories")
    log_action(s, me, "category_deleted", "service_category", c.id, {"name": c.name}, request)
    s.delete(c)
    s.commit()
    return {"message": "Category deleted"}


@router.post("/{category_id}/subcategories", status_code=201)
def create_subcategory(category_id: int, req: SubcategoryReq, request: Request, me: AuthUser = Depends(require_admin), s: Session = Depends(get_session)):
    c = _category_or_404(s, category_id)
    name = (req.name or "").strip()
    if not name:
        raise HTTPException(status_code=400, detail="Subcategory name is required")
    if req.base_price_cents is None:
        raise HTTPException(status_code=400, detail="base_price_cents is required")
    data = req.model_dump(exclude_none=True)
    _check_window(data)
    data["name"] = name
    sc = ServiceSubcategory(category_id=c.id, **data)
    s.add(sc)
    _save_unique(s, "Subcategory", commit=False)
    log_action(s, me, "subcategory_created", "service_subcategory", sc.id,
               {"category_id": c.id, "name": name, "base_price_cents": sc.base_price_cents}, request)
    _save_unique(s, "Subcategory")
    s.refresh(sc)
    return subcategory_out(sc)


@router.put("/{category_id}/subcategories/{subcategory_id}")
def update_subcategory(
    category_id: int,
    subcategory_id: int,
    req: SubcategoryReq,
    request: Request,
    me: AuthUser = Depends(require_admin),
    s: Session = Depends(get_session),
):
    sc = _subcategory_or_404(s, category_id, subcategory_id)
    changes = {k: v for k, v in req.model_dump(exclude_unset=True).items() if v is not None}
    if "name" in changes:
        changes["name"] = changes["name"].strip()
        if not changes["name"]:
            raise HTTPException(status_code=400, detail="Subcategory name is required")
    if not changes:
        raise HTTPException(status_code=400, detail="No fields to update")
    _check_window(changes)
    for k, v in changes.items():
        setattr(sc, k, v)
    log_action(s, me, "subcategory_updated", "service_subcategory", sc.id, changes, request)
    _save_unique(s, "Subcategory")
    s.refresh(sc)
    return subcategory_out(sc)


@router.delete("/{category_id}/subcategories/{subcategory_id}")
def delete_subcategory(
    category_id: int,
    subcategory_id: int,
    request: Request,
    me: AuthUser = Depends(require_admin),
    s: Session = Depends(get_session),
):
    sc = _subcategory_or_404(s, category_id, subcategory_id)
    used = s.execute(select(func.count(Booking.id)).where(Booking.subcategory_id == sc.id)).scalar_one()
    if used:
        raise HTTPException(status_code=400, detail="Subcategory has bookings; deactivate it instead")
    log_action(s, me, "subcategory_deleted", "service_subcategory", sc.id, {"name": sc.name}, request)
    s.execute(delete(CartItem).where(CartItem.subcategory_id == sc.id))
    s.execute(delete(ProviderService).where(ProviderService.subcategory_id == sc.id))
    s.delete(sc)
    s.commit()
    return {"message": "Subcategory deleted"}
