import hashlib
import hmac
import json
import logging
from typing import Optional

import httpx
from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from . import config
from .db import get_session, utcnow
from .models import Booking, Payment
from .payment_settings import get_api_key
from .security import AuthUser, current_user
from .settlement import settle_booking

router = APIRouter()
logger = logging.getLogger("omw.payments")


class CreateOrderReq(BaseModel):
    booking_id: Optional[int] = None


class PaymentSuccessReq(BaseModel):
    razorpay_order_id: Optional[str] = None
    razorpay_payment_id: Optional[str] = None
    razorpay_signature: Optional[str] = None


def razorpay_keys(s: Session) -> tuple[str, str]:
    return (
        get_api_key(s, "razorpay", "key_id", "RAZORPAY_KEY_ID"),
        get_api_key(s, "razorpay", "key_secret", "RAZORPAY_KEY_SECRET"),
    )


def _hmac_hex(secret: str, msg: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), msg, hashlib.sha256).hexdigest()


def verify_payment_signature(order_id: str, payment_id: str, signature: str, secret: str) -> bool:
    expect = _hmac_hex(secret, f"{order_id}|{payment_id}".encode("utf-8"))
    return hmac.compare_digest(expect, signature or "")


def verify_webhook_signature(body: bytes, signature: str, secret: str) -> bool:
    return hmac.compare_digest(_hmac_hex(secret, body), signature or "")


def create_razorpay_order(key_id: str, key_secret: str, amount_cents: int, receipt: str, notes: dict) -> dict:
    r = httpx.post(
        f"{config.RAZORPAY_BASE_URL}/orders",
        auth=(key_id, key_secret),
        json={
            "amount": amount_cents,
            "currency": config.CURRENCY,
            "receipt": receipt,
            "payment_capture": 1,
            "notes": notes,
        },
        timeout=10,
    )
    r.raise_for_status()
    return r.json()


def payment_out(p: Payment) -> dict:
    return {
        "id": p.id,
        "booking_id": p.booking_id,
        "amount_cents": p.amount_cents,
        "currency": p.currency,
        "status": p.status,
        "method": p.method,
        "razorpay_order_id": p.razorpay_order_id,
        "razorpay_payment_id": p.razorpay_payment_id,
        "failure_reason": p.failure_reason,
        "created_at": p.created_at.isoformat() if p.created_at else None,
        "captured_at": p.captured_at.isoformat() if p.captured_at else None,
    }


def mark_captured(s: Session, p: Payment, payment_id: str) -> None:
    """Capture a payment and its booking once. Caller commits."""
    if p.status == "captured":
        return
    p.status = "captured"
    p.razorpay_payment_id = payment_id
    p.captured_at = utcnow()
    p.failure_reason = None
    b = s.get(Booking, p.booking_id) if p.booking_id else None
    if b is not None:
        b.payment_status = "paid"
        if b.service_status == "completed":
            settle_booking(s, b)
    logger.info("payment captured", extra={"payment_id": p.id, "booking_id": p.booking_id})


@router.post("/razorpay/create-order")
def create_order(req: CreateOrderReq, me: AuthUser = Depends(current_user), s: Session = Depends(get_session)):
    if not req.booking_id:
        raise HTTPException(status_code=400, detail="booking_id is required")
    b = s.get(Booking, req.booking_id)
    if not b or b.user_id != me.id:
        raise HTTPException(status_code=404, detail="Booking not found")
    if b.payment_status == "paid":
        raise HTTPException(status_code=400, detail="Booking already paid")
    amount = b.actual_cost_cents if b.actual_cost_cents is not None else b.estimated_cost_cents
    if not amount or amount <= 0:
        raise HTTPException(status_code=400, detail="Booking has no payable amount")
    key_id, key_secret = razorpay_keys(s)
    if not key_id or not key_secret:
        raise HTTPException(status_code=503, detail="Payment gateway not configured")
    try:
        order = create_razorpay_order(key_id, key_secret, amount, f"booking_{b.id}", {"booking_id": str(b.id), "user_id": str(me.id)})
    except httpx.HTTPError:
        logger.exception("razorpay order creation failed")
        raise HTTPException(status_code=502, detail="Payment gateway error")
    p = Payment(
        user_id=me.id,
        booking_id=b.id,
        amount_cents=amount,
        currency=config.CURRENCY,
        status="created",
        razorpay_order_id=order.get("id"),
    )
    s.add(p)
    s.commit()
    s.refresh(p)
    return {
        "order_id": p.razorpay_order_id,
        "amount": amount,
        "currency": p.currency,
        "key_id": key_id,
        "payment": payment_out(p),
    }


@router.post("/razorpay/payment-success")
def payment_success(req: PaymentSuccessReq, me: AuthUser = Depends(current_user), s: Session = Depends(get_session)):
    if not req.razorpay_order_id or not req.razorpay_payment_id or not req.razorpay_signature:
        raise HTTPException(status_code=400, detail="razorpay_order_id, razorpay_payment_id and razorpay_signature are required")
    _, key_secret = razorpay_keys(s)
    if not key_secret or not verify_payment_signature(req.razorpay_order_id, req.razorpay_payment_id, req.razorpay_signature, key_secret):
        raise HTTPException(status_code=400, detail="Invalid payment signature")
    p = s.execute(
        select(Payment).where(Payment.razorpay_order_id == req.razorpay_order_id, Payment.user_id == me.id)
    ).scalars().first()
    if not p:
        raise HTTPException(status_code=404, detail="Payment order not found")
    if p.status == "captured":
        return {"success": True, "already_captured": True, "payment": payment_out(p)}
    mark_captured(s, p, req.razorpay_payment_id)
    s.commit()
    s.refresh(p)
    return {"success": True, "already_captured": False, "payment": payment_out(p)}


def _member(obj: dict, key: str) -> dict:
    v = obj.get(key)
    return v if isinstance(v, dict) else {}


@router.post("/razorpay/webhook")
async def razorpay_webhook(request: Request, s: Session = Depends(get_session)):
    body = await request.body()
    secret = config.RAZORPAY_WEBHOOK_SECRET
    if not secret:
        raise HTTPException(status_code=503, detail="Webhook secret not configured")
    if not verify_webhook_signature(body, request.headers.get("x-razorpay-signature") or "", secret):
        raise HTTPException(status_code=400, detail="Invalid webhook signature")
    try:
        event = json.loads(body or b"{}")
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON")
    if not isinstance(event, dict):
        raise HTTPException(status_code=400, detail="Webhook body must be a JSON object")
    kind = str(event.get("event") or "")
    entity = _member(_member(_member(event, "payload"), "payment"), "entity")
    order_id = entity.get("order_id")
    if not isinstance(order_id, str):
        order_id = None
    p = s.execute(select(Payment).where(Payment.razorpay_order_id == order_id)).scalars().first() if order_id else None
    if p is None:
        logger.info("webhook for unknown order", extra={"event": kind, "order_id": order_id})
        return {"status": "ignored"}
    if kind == "payment.captured":
        mark_captured(s, p, entity.get("id") or p.razorpay_payment_id or "")
    elif kind == "payment.failed":
        if p.status != "captured":
            p.status = "failed"
            p.razorpay_payment_id = entity.get("id") or p.razorpay_payment_id
            p.failure_reason = (entity.get("error_description") or entity.get("error_code") or "payment failed")[:255]
    else:
        return {"status": "ignored"}
    s.commit()
    return {"status": "ok"}


@router.get("/history")
def payment_history(page: int = 1, limit: int = 20, me: AuthUser = Depends(current_user), s: Session = Depends(get_session)):
    page = max(1, page)
    limit = max(1, min(limit, 100))
    base = select(Payment).where(Payment.user_id == me.id)
    total = s.execute(select(func.count()).select_from(base.subquery())).scalar_one()
    rows = s.execute(base.order_by(Payment.created_at.desc(), Payment.id.desc()).offset((page - 1) * limit).limit(limit)).scalars().all()
    return {
        "payments": [payment_out(p) for p in rows],
        "pagination": {"page": page, "limit": limit, "total": total, "pages": (total + limit - 1) // limit},
    }


@router.get("/payment-status/{booking_id}")
def payment_status(booking_id: int, me: AuthUser = Depends(current_user), s: Session = Depends(get_session)):
    b = s.get(Booking, booking_id)
    if not b or (b.user_id != me.id and not me.is_admin):
        raise HTTPException(status_code=404, detail="Booking not found")
    latest = s.execute(
        select(Payment).where(Payment.booking_id == b.id).order_by(Payment.created_at.desc(), Payment.id.desc())
    ).scalars().first()
    return {
        "booking_id": b.id,
        "payment_status": b.payment_status,
        "payment": payment_out(latest) if latest else None,
    }
