import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .audit import log_action
from .db import get_session
from .models import Booking, Customer, CustomerType, User
from .security import AuthUser, require_admin

router = APIRouter()
logger = logging.getLogger("omw.customer_admin")


class CustomerTypeReq(BaseModel):
    name: Optional[str] = None
    discount_percentage: Optional[float] = Field(default=None, ge=0, le=100)


class AssignTypeReq(BaseModel):
    customer_type_id: Optional[int] = None


def type_out(ct: CustomerType) -> dict:
    return {"id": ct.id, "name": ct.name, "discount_percentage": ct.discount_percentage}


def _customer_out(u: User, c: Customer, ct: Optional[CustomerType]) -> dict:
    return {
        "id": u.id,
        "name": u.name,
        "email": u.email,
        "phone_number": u.phone_number,
        "is_active": u.is_active,
        "created_at": u.created_at.isoformat() if u.created_at else None,
        "customer_type_id": c.customer_type_id,
        "customer_type_name": ct.name if ct else None,
        "discount_percentage": ct.discount_percentage if ct else 0.0,
    }


def _customers():
    return (
        select(User, Customer, CustomerType)
        .join(Customer, Customer.user_id == User.id)
        .outerjoin(CustomerType, CustomerType.id == Customer.customer_type_id)
    )


def _type_or_404(s: Session, type_id: int) -> CustomerType:
    ct = s.get(CustomerType, type_id)
    if not ct:
        raise HTTPException(status_code=404, detail="Customer type not found")
    return ct


def _commit_type(s: Session) -> None:
    try:
        s.commit()
    except IntegrityError:
        s.rollback()
        raise HTTPException(status_code=409, detail="Customer type with this name already exists")


# ---- Customer types ----
@router.get("/customer-types")
def list_types(me: AuthUser = Depends(require_admin), s: Session = Depends(get_session)):
    rows = s.execute(select(CustomerType).order_by(CustomerType.id.asc())).scalars().all()
    return {"customer_types": [type_out(ct) for ct in rows]}


@router.post("/customer-types", status_code=201)
def create_type(req: CustomerTypeReq, request: Request, me: AuthUser = Depends(require_admin), s: Session = Depends(get_session)):
    name = (req.name or "").strip()
    if not name:
        raise HTTPException(status_code=400, detail="name is required")
    ct = CustomerType(name=name, discount_percentage=req.discount_percentage or 0.0)
    s.add(ct)
    try:
        s.flush()
    except IntegrityError:
        s.rollback()
        raise HTTPException(status_code=409, detail="Customer type with this name already exists")
    log_action(s, me, "customer_type_created", "customer_type", ct.id, type_out(ct), request)
    _commit_type(s)
    s.refresh(ct)
    return type_out(ct)


@router.patch("/customer-types/{type_id}")
def update_type(type_id: int, req: CustomerTypeReq, request: Request, me: AuthUser = Depends(require_admin), s: Session = Depends(get_session)):
    changes = {k: v for k, v in req.model_dump(exclude_unset=True).items() if v is not None}
    if "name" in changes:
        changes["name"] = changes["name"].strip()
        if not changes["name"]:
            changes.pop("name")
    if not changes:
        raise HTTPException(status_code=400, detail="Nothing to update")
    ct = _type_or_404(s, type_id)
    for k, v in changes.items():
        setattr(ct, k, v)
    log_action(s, me, "customer_type_updated", "customer_type", ct.id, changes, request)
    _commit_type(s)
    s.refresh(ct)
    return type_out(ct)


# ---- Customers ----
@router.get("/customers")
def list_customers(
    page: int = 1,
    limit: int = 10,
    search: str = "",
    customer_type_id: Optional[int] = None,
    me: AuthUser = Depends(require_admin),
    s: Session = Depends(get_session),
):
    page = max(1, page)
    limit = max(1, min(limit, 100))
    q = _customers()
    if search.strip():
        like = f"%{search.strip().lower()}%"
        q = q.where(or_(
            func.lower(User.name).like(like),
            func.lower(User.email).like(like),
            User.phone_number.like(like),
        ))
    if customer_type_id:
        q = q.where(Customer.customer_type_id == customer_type_id)
    total = s.execute(select(func.count()).select_from(q.subquery())).scalar_one()
    rows = s.execute(q.order_by(User.created_at.desc(), User.id.desc()).offset((page - 1) * limit).limit(limit)).all()
    pages = (total + limit - 1) // limit
    return {
        "customers": [_customer_out(u, c, ct) for u, c, ct in rows],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": pages,
            "has_next": page < pages,
            "has_prev": page > 1,
        },
    }


def _customer_or_404(s: Session, user_id: int):
    row = s.execute(_customers().where(User.id == user_id)).first()
    if not row:
        raise HTTPException(status_code=404, detail="Customer not found")
    return row


@router.get("/customers/{user_id}")
def get_customer(user_id: int, me: AuthUser = Depends(require_admin), s: Session = Depends(get_session)):
    u, c, ct = _customer_or_404(s, user_id)
    counts = dict(
        s.execute(
            select(Booking.service_status, func.count(Booking.id)).where(Booking.user_id == u.id).group_by(Booking.service_status)
        ).all()
    )
    return {**_customer_out(u, c, ct), "bookings_by_status": counts, "total_bookings": sum(counts.values())}


@router.patch("/customers/{user_id}/type")
def assign_type(user_id: int, req: AssignTypeReq, request: Request, me: AuthUser = Depends(require_admin), s: Session = Depends(get_session)):
    if not req.customer_type_id:
        raise HTTPException(status_code=400, detail="customer_type_id is required")
    ct = s.get(CustomerType, req.customer_type_id)
    if not ct:
        raise HTTPException(status_code=400, detail="Invalid customer_type_id")
    u, c, _ = _customer_or_404(s, user_id)
    previous = c.customer_type_id
    c.customer_type_id = ct.id
    log_action(s, me, "customer_type_assigned", "customer", u.id, {"from": previous, "to": ct.id}, request)
    s.commit()
    return _customer_out(u, c, ct)
