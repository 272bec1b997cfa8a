"""
Scheduled home-service bookings.

A checkout turns each cart line into its own booking priced on the server:
unit price times quantity, plus the subcategory's per-unit night charge when
the slot falls in its night window, minus the customer-type discount, plus
GST. Matching providers get a booking request; the first to accept is
assigned. The job is closed with a one-time code the customer hands over.
"""
import hmac
import logging
import secrets
from datetime import date as date_cls
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from .addresses import full_address, own_address
from .bookings import active_provider, booking_or_404, booking_out
from .cart import MAX_QUANTITY, cart_rows, clear_cart
from .catalogue import active_subcategory
from .chat import end_session_for_booking
from .db import get_session, utcnow
from .models import (
    Booking,
    BookingRequest,
    Customer,
    CustomerAddress,
    CustomerType,
    Provider,
    ProviderService,
    ServiceSubcategory,
    User,
)
from .pricing import haversine_km, local_time, rule_value
from .security import AuthUser, require_customer, require_worker
from .settlement import settle_booking

router = APIRouter()
worker_router = APIRouter()
logger = logging.getLogger("omw.service_bookings")

SLOT_HOURS = list(range(9, 24)) + list(range(0, 7))
SLOT_CAPACITY = 3
OTP_TTL = timedelta(minutes=15)
DEFAULT_SERVICE_GST_PCT = 18.0
PAYMENT_METHODS = ("online", "pay_after_service")
PREFERENCES = ("any", "male", "female")
CLOSED = ("cancelled", "completed")
BUSY = ("assigned", "accepted", "arrived", "in_progress")
ACTIVE = ("pending", "assigned", "accepted", "arrived", "in_progress")


class CartLine(BaseModel):
    subcategory_id: Optional[int] = None
    id: Optional[int] = None
    quantity: int = Field(default=1, ge=1, le=MAX_QUANTITY)


class AvailabilityReq(BaseModel):
    date: Optional[str] = None
    time: Optional[str] = None
    address_id: Optional[int] = None
    services: list = Field(default_factory=list)


class CreateReq(BaseModel):
    cart_items: Optional[list[CartLine]] = None
    scheduled_time: Optional[str] = None
    address_id: Optional[int] = None
    notes: Optional[str] = None
    payment_method: str = "online"
    worker_preference: str = "any"


class OtpReq(BaseModel):
    otp: Optional[str] = None


# ---- Pricing ----
def _minutes(hhmm: Optional[str]) -> Optional[int]:
    try:
        h, m = (hhmm or "").split(":")[:2]
        return int(h) * 60 + int(m)
    except ValueError:
        return None


def in_night_window(when: datetime, start: Optional[str], end: Optional[str]) -> bool:
    """Same-day (start < end) and overnight (start > end) windows; start == end means none."""
    lo, hi = _minutes(start), _minutes(end)
    if lo is None or hi is None or lo == hi:
        return False
    t = local_time(when)
    now = t.hour * 60 + t.minute
    if lo < hi:
        return lo <= now < hi
    return now >= lo or now < hi


def price_item(unit_cents: int, quantity: int, night_unit_cents: int, discount_pct: float, gst_pct: float) -> dict:
    """Price one cart line in cents; ``night_unit_cents`` is 0 outside the night window."""
    base = unit_cents * quantity
    night = night_unit_cents * quantity
    gross = base + night
    discount = int(round(gross * discount_pct / 100)) if discount_pct > 0 else 0
    subtotal = max(gross - discount, 0)
    gst = int(round(subtotal * gst_pct / 100))
    return {
        "base_item_price_cents": base,
        "night_charge_per_unit_cents": night_unit_cents,
        "night_charge_cents": night,
        "discount_cents": discount,
        "subtotal_cents": subtotal,
        "gst_cents": gst,
        "total_amount_cents": subtotal + gst,
    }


def customer_discount(s: Session, user_id: int) -> float:
    pct = s.execute(
        select(CustomerType.discount_percentage)
        .join(Customer, Customer.customer_type_id == CustomerType.id)
        .where(Customer.user_id == user_id)
    ).scalar_one_or_none()
    return float(pct or 0.0)


# ---- Slots and matching ----
def parse_day(value: Optional[str]) -> date_cls:
    if not value:
        raise HTTPException(status_code=400, detail="Date is required")
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid date format. Use YYYY-MM-DD")


def parse_scheduled(value: Optional[str]) -> datetime:
    """Naive UTC; strings without an offset are taken as UTC."""
    if not value:
        raise HTTPException(status_code=400, detail="Scheduled time is required")
    try:
        when = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid scheduled_time")
    if when.tzinfo is not None:
        when = when.astimezone(timezone.utc).replace(tzinfo=None)
    return when


def _slot_count(s: Session, when: datetime) -> int:
    return s.execute(
        select(func.count(Booking.id)).where(Booking.scheduled_time == when, Booking.service_status.not_in(CLOSED))
    ).scalar_one()


def _busy_providers(s: Session, when: datetime) -> set:
    return set(
        s.execute(
            select(Booking.provider_id).where(
                Booking.scheduled_time == when,
                Booking.provider_id.is_not(None),
                Booking.service_status.in_(BUSY),
            )
        ).scalars().all()
    )


def candidate_providers(s: Session, subcategory_id: int, addr: CustomerAddress, when: datetime) -> list[tuple[Provider, User]]:
    """Active, verified, in-radius, free at ``when`` and offering the subcategory."""
    rows = s.execute(
        select(Provider, User)
        .join(User, User.id == Provider.user_id)
        .join(ProviderService, ProviderService.provider_id == Provider.id)
        .where(
            ProviderService.subcategory_id == subcategory_id,
            Provider.is_active == True,  # noqa: E712
            Provider.is_verified == True,  # noqa: E712
            User.is_active == True,  # noqa: E712
            Provider.location_lat.is_not(None),
            Provider.location_lng.is_not(None),
        )
    ).all()
    busy = _busy_providers(s, when)
    out = []
    for p, u in rows:
        if p.id in busy:
            continue
        if addr.location_lat is not None and addr.location_lng is not None:
            km = haversine_km(addr.location_lat, addr.location_lng, p.location_lat, p.location_lng)
            if km > p.service_radius_km:
                continue
        out.append((p, u))
    return out


def _gender(u: User) -> str:
    return (u.gender or "").lower()


def _own_booking(s: Session, me: AuthUser, booking_id: int) -> Booking:
    b = booking_or_404(s, booking_id)
    if b.user_id != me.id:
        raise HTTPException(status_code=404, detail="Booking not found")
    return b


# ---- Customer ----
@router.get("/available-slots")
def available_slots(
    date: Optional[str] = None,
    subcategory_id: Optional[int] = None,
    me: AuthUser = Depends(require_customer),
    s: Session = Depends(get_session),
):
    day = parse_day(date)
    if day < utcnow().date():
        raise HTTPException(status_code=400, detail="Cannot book slots for past dates")
    start = datetime(day.year, day.month, day.day)
    q = (
        select(Booking.scheduled_time, func.count(Booking.id))
        .where(
            Booking.scheduled_time >= start,
            Booking.scheduled_time < start + timedelta(days=1),
            Booking.service_status.not_in(CLOSED),
        )
        .group_by(Booking.scheduled_time)
    )
    if subcategory_id:
        q = q.where(Booking.subcategory_id == subcategory_id)
    booked = {when.strftime("%H:%M"): n for when, n in s.execute(q).all()}
    slots = []
    for hour in SLOT_HOURS:
        hhmm = f"{hour:02d}:00"
        n = booked.get(hhmm, 0)
        slots.append({
            "time": hhmm,
            "datetime": f"{day.isoformat()} {hhmm}:00",
            "available": n < SLOT_CAPACITY,
            "booking_count": n,
        })
    return {"date": day.isoformat(), "slots": slots}


@router.post("/check-worker-availability")
def check_worker_availability(req: AvailabilityReq, me: AuthUser = Depends(require_customer), s: Session = Depends(get_session)):
    if not req.date or not req.time or not req.address_id or not req.services:
        raise HTTPException(status_code=400, detail="date, time, address_id, and services[] are required")
    day = parse_day(req.date)
    try:
        at = datetime.strptime(req.time, "%H:%M").time()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid time format. Use HH:MM (24h)")
    when = datetime.combine(day, at)
    none = {"date": req.date, "time": req.time, "male_available": False, "female_available": False, "any_available": False}
    if when <= utcnow():
        return {**none, "slot_available": False, "reason": "Selected time is in the past"}
    addr = own_address(s, me.id, req.address_id)
    if not addr:
        raise HTTPException(status_code=400, detail="Invalid address")
    if _slot_count(s, when) >= SLOT_CAPACITY:
        return {**none, "slot_available": False, "reason": "Time slot is fully booked"}

    ids = []
    for item in req.services:
        raw = (item.get("subcategory_id") or item.get("id")) if isinstance(item, dict) else item
        try:
            ids.append(int(raw))
        except (TypeError, ValueError):
            continue
    if not ids:
        raise HTTPException(status_code=400, detail="services must include valid subcategory_id values")

    genders: dict[int, str] = {}
    per_sub = []
    night_pricing = []
    for sid in dict.fromkeys(ids):
        found = candidate_providers(s, sid, addr, when)
        male = sum(1 for _, u in found if _gender(u) == "male")
        female = sum(1 for _, u in found if _gender(u) == "female")
        for p, u in found:
            genders[p.id] = _gender(u)
        per_sub.append({
            "subcategory_id": sid,
            "male_count": male,
            "female_count": female,
            "total_count": len(found),
            "available": bool(found),
        })
        sc = s.get(ServiceSubcategory, sid)
        if sc is not None:
            night_pricing.append({
                "subcategory_id": sid,
                "night_charge_cents": sc.night_charge_cents,
                "night_start_time": sc.night_start_time,
                "night_end_time": sc.night_end_time,
                "is_night": sc.night_charge_cents > 0 and in_night_window(when, sc.night_start_time, sc.night_end_time),
            })
    male = sum(1 for g in genders.values() if g == "male")
    female = sum(1 for g in genders.values() if g == "female")
    return {
        "date": req.date,
        "time": req.time,
        "male_available": male > 0,
        "female_available": female > 0,
        "any_available": bool(genders),
        "slot_available": True,
        "counts": {"male": male, "female": female, "total": len(genders)},
        "subcategories": per_sub,
        "night_pricing": night_pricing,
    }


@router.post("/create", status_code=201)
def create_service_booking(req: CreateReq, me: AuthUser = Depends(require_customer), s: Session = Depends(get_session)):
    if req.cart_items:
        lines = [(it.subcategory_id or it.id, it.quantity) for it in req.cart_items]
    else:
        lines = [(sc.id, item.quantity) for item, sc in cart_rows(s, me.id)]
    if not lines:
        raise HTTPException(status_code=400, detail="Cart items are required")
    when = parse_scheduled(req.scheduled_time)
    if not req.address_id:
        raise HTTPException(status_code=400, detail="Address is required")
    if when <= utcnow():
        raise HTTPException(status_code=400, detail="Cannot book for past time")
    if req.payment_method not in PAYMENT_METHODS:
        raise HTTPException(status_code=400, detail=f"payment_method must be one of {', '.join(PAYMENT_METHODS)}")
    addr = own_address(s, me.id, req.address_id)
    if not addr:
        raise HTTPException(status_code=400, detail="Invalid address")
    if _slot_count(s, when) >= SLOT_CAPACITY:
        raise HTTPException(status_code=409, detail="Time slot is fully booked")
    items = []
    for sid, qty in lines:
        sc = active_subcategory(s, sid)
        if sc is None:
            raise HTTPException(status_code=404, detail=f"Service not found: {sid}")
        items.append((sc, qty))

    preference = (req.worker_preference or "any").lower()
    if preference not in PREFERENCES:
        preference = "any"
    discount_pct = customer_discount(s, me.id)
    gst_pct = rule_value(s, "service_gst_percentage", DEFAULT_SERVICE_GST_PCT)
    address_text = full_address(addr)
    created = []
    total = 0
    for sc, qty in items:
        night = sc.night_charge_cents > 0 and in_night_window(when, sc.night_start_time, sc.night_end_time)
        price = price_item(sc.base_price_cents, qty, sc.night_charge_cents if night else 0, discount_pct, gst_pct)
        b = Booking(
            user_id=me.id,
            booking_type="service",
            service_status="pending",
            subcategory_id=sc.id,
            scheduled_time=when,
            service_unit_count=qty,
            is_night_booking=night,
            discount_percentage=discount_pct,
            estimated_cost_cents=price["total_amount_cents"],
            service_address=address_text,
            worker_preference=preference,
            payment_method=req.payment_method,
            notes=(req.notes or "").strip() or None,
            **price,
        )
        s.add(b)
        s.flush()
        for p, u in candidate_providers(s, sc.id, addr, when):
            if preference != "any" and _gender(u) != preference:
                continue
            s.add(BookingRequest(booking_id=b.id, provider_id=p.id))
        total += price["total_amount_cents"]
        created.append(b)
    clear_cart(s, me.id)
    s.commit()
    ids = [b.id for b in created]
    logger.info("service bookings created", extra={"user_id": me.id, "booking_ids": ids, "total_cents": total})
    return {
        "message": "Booking created successfully",
        "bookings": [booking_out(s, b) for b in created],
        "total_amount_cents": total,
        "booking_ids": ids,
    }


@router.get("/history")
def booking_history(
    limit: int = 10,
    status: str = "",
    last_id: Optional[int] = None,
    me: AuthUser = Depends(require_customer),
    s: Session = Depends(get_session),
):
    limit = max(1, min(limit, 50))
    q = select(Booking).where(Booking.user_id == me.id)
    if status:
        q = q.where(Booking.service_status == status)
    if last_id:
        q = q.where(Booking.id < last_id)
    rows = s.execute(q.order_by(Booking.id.desc()).limit(limit + 1)).scalars().all()
    page = rows[:limit]
    return {
        "bookings": [booking_out(s, b) for b in page],
        "has_more": len(rows) > limit,
        "last_id": page[-1].id if page else None,
    }


@router.get("/summary")
def booking_summary(me: AuthUser = Depends(require_customer), s: Session = Depends(get_session)):
    total = s.execute(select(func.count(Booking.id)).where(Booking.user_id == me.id)).scalar_one()
    active = s.execute(
        select(func.count(Booking.id)).where(Booking.user_id == me.id, Booking.service_status.in_(ACTIVE))
    ).scalar_one()
    spent = s.execute(
        select(func.coalesce(func.sum(func.coalesce(Booking.actual_cost_cents, Booking.estimated_cost_cents)), 0))
        .where(Booking.user_id == me.id, Booking.service_status == "completed")
    ).scalar_one()
    return {"total_bookings": total, "active_bookings": active, "total_spent_cents": int(spent)}


@router.get("/{booking_id}/otp-status")
def otp_status(booking_id: int, me: AuthUser = Depends(require_customer), s: Session = Depends(get_session)):
    b = _own_booking(s, me, booking_id)
    has = bool(b.otp_code)
    valid = has and b.otp_expires_at is not None and b.otp_expires_at > utcnow()
    if not has:
        message = "No OTP generated yet"
    elif valid:
        message = "OTP is valid and active"
    else:
        message = "OTP has expired"
    return {
        "has_otp": has,
        "otp_valid": valid,
        "expires_at": b.otp_expires_at.isoformat() if b.otp_expires_at else None,
        "service_status": b.service_status,
        "message": message,
    }


@router.post("/{booking_id}/generate-otp")
def generate_otp(booking_id: int, me: AuthUser = Depends(require_customer), s: Session = Depends(get_session)):
    b = _own_booking(s, me, booking_id)
    if b.service_status not in ("arrived", "in_progress"):
        raise HTTPException(
            status_code=400,
            detail="OTP can only be generated when service provider has arrived or service is in progress",
        )
    now = utcnow()
    if b.otp_expires_at and b.otp_expires_at > now:
        left = int((b.otp_expires_at - now).total_seconds() // 60) + 1
        raise HTTPException(status_code=429, detail=f"OTP is still valid. Please wait {left} minutes before requesting a new OTP")
    b.otp_code = f"{secrets.randbelow(900000) + 100000}"
    b.otp_expires_at = now + OTP_TTL
    s.commit()
    logger.info("completion code issued", extra={"booking_id": b.id})
    return {"message": "OTP generated successfully", "otp": b.otp_code, "expires_at": b.otp_expires_at.isoformat()}


def check_otp(b: Booking, otp: Optional[str]) -> None:
    if not otp or len(otp) != 6:
        raise HTTPException(status_code=400, detail="Please provide a valid 6-digit OTP")
    if not b.otp_code:
        raise HTTPException(status_code=400, detail="No OTP has been generated for this booking")
    if b.otp_expires_at is None or b.otp_expires_at <= utcnow():
        raise HTTPException(status_code=400, detail="OTP has expired. Please generate a new one.")
    if not hmac.compare_digest(b.otp_code, otp):
        raise HTTPException(status_code=400, detail="Invalid OTP. Please try again.")


@router.post("/{booking_id}/verify-otp")
def verify_otp(booking_id: int, req: OtpReq, me: AuthUser = Depends(require_customer), s: Session = Depends(get_session)):
    b = _own_booking(s, me, booking_id)
    check_otp(b, req.otp)
    return {"message": "OTP verified successfully", "service_status": b.service_status}


# ---- Worker ----
def _request_for(s: Session, booking_id: int, p: Provider) -> BookingRequest:
    br = s.execute(
        select(BookingRequest).where(BookingRequest.booking_id == booking_id, BookingRequest.provider_id == p.id)
    ).scalars().first()
    if not br:
        raise HTTPException(status_code=404, detail="Booking request not found")
    return br


def _assigned_job(s: Session, booking_id: int, p: Provider) -> Booking:
    b = booking_or_404(s, booking_id)
    if b.booking_type != "service" or b.provider_id != p.id:
        raise HTTPException(status_code=403, detail="Booking is not assigned to you")
    return b


@worker_router.get("/requests")
def list_requests(me: AuthUser = Depends(require_worker), s: Session = Depends(get_session)):
    p = active_provider(s, me)
    rows = s.execute(
        select(BookingRequest, Booking)
        .join(Booking, Booking.id == BookingRequest.booking_id)
        .where(
            BookingRequest.provider_id == p.id,
            BookingRequest.status == "pending",
            Booking.service_status == "pending",
        )
        .order_by(Booking.scheduled_time.asc(), Booking.id.asc())
    ).all()
    return {
        "requests": [
            {"request_id": br.id, "status": br.status, "requested_at": br.requested_at.isoformat(), "booking": booking_out(s, b)}
            for br, b in rows
        ]
    }


@worker_router.get("/mine")
def my_jobs(status: str = "", me: AuthUser = Depends(require_worker), s: Session = Depends(get_session)):
    p = active_provider(s, me)
    q = select(Booking).where(Booking.provider_id == p.id, Booking.booking_type == "service")
    if status:
        q = q.where(Booking.service_status == status)
    rows = s.execute(q.order_by(Booking.scheduled_time.asc())).scalars().all()
    return {"bookings": [booking_out(s, b) for b in rows]}


@worker_router.post("/requests/{booking_id}/accept")
def accept_request(booking_id: int, me: AuthUser = Depends(require_worker), s: Session = Depends(get_session)):
    p = active_provider(s, me)
    br = _request_for(s, booking_id, p)
    if br.status != "pending":
        raise HTTPException(status_code=409, detail=f"Request is already {br.status}")
    # first provider to accept wins
    res = s.execute(
        update(Booking)
        .where(Booking.id == booking_id, Booking.service_status == "pending", Booking.provider_id.is_(None))
        .values(service_status="assigned", provider_id=p.id, updated_at=utcnow())
    )
    if res.rowcount != 1:
        s.rollback()
        raise HTTPException(status_code=409, detail="Booking is no longer available")
    now = utcnow()
    br.status = "accepted"
    br.responded_at = now
    s.execute(
        update(BookingRequest)
        .where(BookingRequest.booking_id == booking_id, BookingRequest.id != br.id, BookingRequest.status == "pending")
        .values(status="expired", responded_at=now)
    )
    s.commit()
    b = booking_or_404(s, booking_id)
    s.refresh(b)
    logger.info("service request accepted", extra={"booking_id": b.id, "provider_id": p.id})
    return booking_out(s, b)


@worker_router.post("/requests/{booking_id}/reject")
def reject_request(booking_id: int, me: AuthUser = Depends(require_worker), s: Session = Depends(get_session)):
    p = active_provider(s, me)
    br = _request_for(s, booking_id, p)
    if br.status != "pending":
        raise HTTPException(status_code=409, detail=f"Request is already {br.status}")
    br.status = "rejected"
    br.responded_at = utcnow()
    s.commit()
    return {"message": "Request rejected", "booking_id": booking_id}


@worker_router.post("/{booking_id}/arrive")
def mark_arrived(booking_id: int, me: AuthUser = Depends(require_worker), s: Session = Depends(get_session)):
    p = active_provider(s, me)
    b = _assigned_job(s, booking_id, p)
    if b.service_status != "assigned":
        raise HTTPException(status_code=400, detail=f"Cannot mark arrival. Current status: {b.service_status}")
    b.service_status = "arrived"
    b.arrived_at = utcnow()
    s.commit()
    s.refresh(b)
    return booking_out(s, b)


@worker_router.post("/{booking_id}/start")
def start_service(booking_id: int, me: AuthUser = Depends(require_worker), s: Session = Depends(get_session)):
    p = active_provider(s, me)
    b = _assigned_job(s, booking_id, p)
    if b.service_status != "arrived":
        raise HTTPException(status_code=400, detail=f"Cannot start service. Current status: {b.service_status}")
    b.service_status = "in_progress"
    b.started_at = utcnow()
    s.commit()
    s.refresh(b)
    return booking_out(s, b)


@worker_router.post("/{booking_id}/complete")
def complete_service(booking_id: int, req: OtpReq, me: AuthUser = Depends(require_worker), s: Session = Depends(get_session)):
    p = active_provider(s, me)
    b = _assigned_job(s, booking_id, p)
    if b.service_status != "in_progress":
        raise HTTPException(status_code=400, detail=f"Cannot complete service. Current status: {b.service_status}")
    check_otp(b, req.otp)
    b.service_status = "completed"
    b.completed_at = utcnow()
    b.actual_cost_cents = b.total_amount_cents if b.total_amount_cents is not None else b.estimated_cost_cents
    b.otp_code = None
    b.otp_expires_at = None
    end_session_for_booking(s, b.id)
    settle_booking(s, b)
    s.commit()
    s.refresh(b)
    logger.info("service completed", extra={"booking_id": b.id, "provider_id": p.id})
    return booking_out(s, b)
