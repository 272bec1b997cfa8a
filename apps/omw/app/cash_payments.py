import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .db import get_session, utcnow
from .models import Booking, CashPayment, Payment, Provider, ServiceSubcategory, User
from .security import AuthUser, require_worker
from .workers import provider_for_user

router = APIRouter()
logger = logging.getLogger("omw.cash_payments")

METHODS = ("cash", "upi")


class MarkReceivedReq(BaseModel):
    payment_method: str = "cash"
    notes: Optional[str] = None


class DisputeReq(BaseModel):
    reason: Optional[str] = None


def _provider(s: Session, me: AuthUser) -> Provider:
    p = provider_for_user(s, me.id)
    if not p:
        raise HTTPException(status_code=404, detail="Worker profile not found")
    return p


def _my_booking(s: Session, booking_id: int, p: Provider) -> Booking:
    b = s.get(Booking, booking_id)
    if not b or b.provider_id != p.id:
        raise HTTPException(status_code=404, detail="Booking not found or not assigned to you")
    return b


def _cash_for(s: Session, booking_id: int) -> Optional[CashPayment]:
    return s.execute(select(CashPayment).where(CashPayment.booking_id == booking_id)).scalars().first()


def cash_out(cp: CashPayment, b: Booking, customer: Optional[User], service: Optional[str]) -> dict:
    return {
        "id": cp.id,
        "booking_id": cp.booking_id,
        "amount_cents": cp.amount_cents,
        "status": cp.status,
        "payment_method": cp.payment_method,
        "notes": cp.notes,
        "received_at": cp.received_at.isoformat() if cp.received_at else None,
        "scheduled_time": b.scheduled_time.isoformat() if b.scheduled_time else None,
        "service_status": b.service_status,
        "service_name": service,
        "customer_name": customer.name if customer else None,
        "customer_phone": customer.phone_number if customer else None,
    }


def _joined(p: Provider):
    return (
        select(CashPayment, Booking, User, ServiceSubcategory.name)
        .join(Booking, Booking.id == CashPayment.booking_id)
        .join(User, User.id == Booking.user_id)
        .outerjoin(ServiceSubcategory, ServiceSubcategory.id == Booking.subcategory_id)
        .where(Booking.provider_id == p.id)
    )


@router.get("/cash-payments")
def list_cash_payments(
    status: str = "",
    page: int = 1,
    limit: int = 10,
    me: AuthUser = Depends(require_worker),
    s: Session = Depends(get_session),
):
    p = _provider(s, me)
    page = max(1, page)
    limit = max(1, min(limit, 100))
    q = _joined(p)
    if status:
        q = q.where(CashPayment.status == status)
    total = s.execute(select(func.count()).select_from(q.subquery())).scalar_one()
    rows = s.execute(q.order_by(CashPayment.created_at.desc(), CashPayment.id.desc()).offset((page - 1) * limit).limit(limit)).all()
    return {
        "payments": [cash_out(cp, b, u, name) for cp, b, u, name in rows],
        "pagination": {"page": page, "limit": limit, "total": total, "pages": (total + limit - 1) // limit},
    }


@router.post("/cash-payments/{booking_id}/mark-received")
def mark_received(booking_id: int, req: MarkReceivedReq, me: AuthUser = Depends(require_worker), s: Session = Depends(get_session)):
    p = _provider(s, me)
    b = _my_booking(s, booking_id, p)
    if b.payment_method != "pay_after_service":
        raise HTTPException(status_code=400, detail="This booking is not for pay after service")
    if req.payment_method not in METHODS:
        raise HTTPException(status_code=400, detail=f"payment_method must be one of {', '.join(METHODS)}")
    now = utcnow()
    amount = b.actual_cost_cents if b.actual_cost_cents is not None else (b.total_amount_cents or b.estimated_cost_cents)
    cp = _cash_for(s, b.id)
    if cp is not None:
        if cp.status == "received":
            raise HTTPException(status_code=400, detail="Payment already marked as received")
        cp.status = "received"
        cp.received_at = now
        cp.payment_method = req.payment_method
        cp.notes = req.notes
    else:
        cp = CashPayment(
            booking_id=b.id,
            provider_id=p.id,
            amount_cents=amount,
            status="received",
            payment_method=req.payment_method,
            notes=req.notes,
            received_at=now,
        )
        s.add(cp)
        s.add(Payment(
            user_id=b.user_id,
            booking_id=b.id,
            amount_cents=amount,
            status="captured",
            method=req.payment_method,
            captured_at=now,
        ))
    b.payment_status = "paid"
    s.commit()
    logger.info("cash payment received", extra={"booking_id": b.id, "provider_id": p.id, "amount_cents": amount})
    return {"message": "Payment marked as received successfully", "booking_id": b.id, "amount_cents": cp.amount_cents}


@router.get("/cash-payments/{booking_id}")
def get_cash_payment(booking_id: int, me: AuthUser = Depends(require_worker), s: Session = Depends(get_session)):
    p = _provider(s, me)
    row = s.execute(_joined(p).where(CashPayment.booking_id == booking_id)).first()
    if not row:
        raise HTTPException(status_code=404, detail="Cash payment not found")
    cp, b, u, name = row
    return cash_out(cp, b, u, name)


@router.put("/cash-payments/{booking_id}/dispute")
def dispute_cash_payment(booking_id: int, req: DisputeReq, me: AuthUser = Depends(require_worker), s: Session = Depends(get_session)):
    p = _provider(s, me)
    b = _my_booking(s, booking_id, p)
    cp = _cash_for(s, b.id)
    if cp is None:
        raise HTTPException(status_code=404, detail="Cash payment not found")
    reason = (req.reason or "").strip() or "Payment dispute raised"
    cp.status = "disputed"
    cp.notes = f"{cp.notes}\nDispute: {reason}" if cp.notes else f"Dispute: {reason}"
    s.commit()
    logger.warning("cash payment disputed", extra={"booking_id": b.id, "provider_id": p.id})
    return {"message": "Payment dispute raised successfully", "booking_id": b.id, "status": cp.status}
