import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from .audit import log_action
from .chat import end_session_for_booking
from .db import get_session, utcnow
from .models import Booking, BookingRequest, FareBreakdown, Provider, ServiceSubcategory
from .pricing import apply_final_fare, fare_deviation, haversine_km
from .security import AuthUser, require_admin, require_customer, require_worker
from .settlement import settle_booking
from .workers import provider_for_user

router = APIRouter()
trip_router = APIRouter()
admin_router = APIRouter()
logger = logging.getLogger("omw.bookings")

CANCELLABLE = ("pending", "accepted", "assigned")


class RideBookingReq(BaseModel):
    quote_id: Optional[str] = None


class TripReq(BaseModel):
    booking_id: Optional[int] = None


class AdditionalCharges(BaseModel):
    tip_cents: int = Field(default=0, ge=0)
    waiting_charges_cents: int = Field(default=0, ge=0)
    toll_charges_cents: int = Field(default=0, ge=0)
    promo_discount_cents: int = Field(default=0, ge=0)


class EndTripReq(BaseModel):
    booking_id: Optional[int] = None
    distance_km: Optional[float] = Field(default=None, ge=0)
    duration_min: Optional[int] = Field(default=None, ge=0)
    additional_charges: AdditionalCharges = Field(default_factory=AdditionalCharges)


def _iso(v):
    return v.isoformat() if v else None


def _fare_for(s: Session, booking_id: int) -> Optional[FareBreakdown]:
    return s.execute(select(FareBreakdown).where(FareBreakdown.booking_id == booking_id)).scalars().first()


def booking_out(s: Session, b: Booking) -> dict:
    out = {
        "id": b.id,
        "user_id": b.user_id,
        "provider_id": b.provider_id,
        "booking_type": b.booking_type,
        "service_status": b.service_status,
        "payment_status": b.payment_status,
        "vehicle_type_id": b.vehicle_type_id,
        "pickup": {"lat": b.pickup_lat, "lng": b.pickup_lng},
        "drop": {"lat": b.drop_lat, "lng": b.drop_lng},
        "estimated_cost_cents": b.estimated_cost_cents,
        "actual_cost_cents": b.actual_cost_cents,
        "created_at": _iso(b.created_at),
        "started_at": _iso(b.started_at),
        "completed_at": _iso(b.completed_at),
    }
    fb = _fare_for(s, b.id)
    if fb is not None:
        out["fare"] = {
            "quote_id": fb.quote_id,
            "distance_km": fb.distance_km,
            "duration_min": fb.duration_min,
            "total_fare_cents": fb.total_fare_cents,
            "surge_multiplier": fb.surge_multiplier,
            "night_hours_applied": fb.night_hours_applied,
            "actual_distance_km": fb.actual_distance_km,
            "actual_duration_min": fb.actual_duration_min,
            "final_fare_cents": fb.final_fare_cents,
            "fare_deviation_percentage": fb.fare_deviation_percentage,
        }
    if b.booking_type == "service":
        sc = s.get(ServiceSubcategory, b.subcategory_id) if b.subcategory_id else None
        out["service"] = {
            "subcategory_id": b.subcategory_id,
            "service_name": sc.name if sc else None,
            "scheduled_time": _iso(b.scheduled_time),
            "quantity": b.service_unit_count,
            "base_item_price_cents": b.base_item_price_cents,
            "night_charge_per_unit_cents": b.night_charge_per_unit_cents,
            "night_charge_cents": b.night_charge_cents,
            "is_night_booking": b.is_night_booking,
            "discount_percentage": b.discount_percentage,
            "discount_cents": b.discount_cents,
            "subtotal_cents": b.subtotal_cents,
            "gst_cents": b.gst_cents,
            "total_amount_cents": b.total_amount_cents,
            "address": b.service_address,
            "worker_preference": b.worker_preference,
            "payment_method": b.payment_method,
            "notes": b.notes,
            "arrived_at": _iso(b.arrived_at),
        }
    return out


def booking_or_404(s: Session, booking_id: int) -> Booking:
    b = s.get(Booking, booking_id)
    if not b:
        raise HTTPException(status_code=404, detail="Booking not found")
    return b


# ---- Customer ----
@router.post("/ride", status_code=201)
def book_ride(req: RideBookingReq, me: AuthUser = Depends(require_customer), s: Session = Depends(get_session)):
    if not req.quote_id:
        raise HTTPException(status_code=400, detail="quote_id is required")
    fb = s.execute(select(FareBreakdown).where(FareBreakdown.quote_id == req.quote_id.strip())).scalars().first()
    if not fb:
        raise HTTPException(status_code=404, detail="Quote not found")
    if fb.booking_id is not None:
        raise HTTPException(status_code=409, detail="Quote already used")
    if fb.expires_at < utcnow():
        raise HTTPException(status_code=410, detail="Quote expired")
    b = Booking(
        user_id=me.id,
        booking_type="ride",
        service_status="pending",
        vehicle_type_id=fb.vehicle_type_id,
        pickup_lat=fb.pickup_lat,
        pickup_lng=fb.pickup_lng,
        drop_lat=fb.drop_lat,
        drop_lng=fb.drop_lng,
        estimated_cost_cents=fb.total_fare_cents,
    )
    s.add(b)
    s.flush()
    # claim the quote only while it is still unlinked
    res = s.execute(
        update(FareBreakdown)
        .where(FareBreakdown.id == fb.id, FareBreakdown.booking_id.is_(None))
        .values(booking_id=b.id, user_id=me.id)
    )
    if res.rowcount != 1:
        s.rollback()
        raise HTTPException(status_code=409, detail="Quote already used")
    s.commit()
    s.refresh(b)
    logger.info("ride booked", extra={"booking_id": b.id, "quote_id": fb.quote_id})
    return booking_out(s, b)


@router.get("")
def my_bookings(status: str = "", limit: int = 50, me: AuthUser = Depends(require_customer), s: Session = Depends(get_session)):
    limit = max(1, min(limit, 200))
    q = select(Booking).where(Booking.user_id == me.id)
    if status:
        q = q.where(Booking.service_status == status)
    rows = s.execute(q.order_by(Booking.created_at.desc(), Booking.id.desc()).limit(limit)).scalars().all()
    return {"bookings": [booking_out(s, b) for b in rows]}


@router.get("/{booking_id}")
def my_booking(booking_id: int, me: AuthUser = Depends(require_customer), s: Session = Depends(get_session)):
    b = booking_or_404(s, booking_id)
    if b.user_id != me.id:
        raise HTTPException(status_code=404, detail="Booking not found")
    return booking_out(s, b)


@router.post("/{booking_id}/cancel")
def cancel_booking(booking_id: int, me: AuthUser = Depends(require_customer), s: Session = Depends(get_session)):
    b = booking_or_404(s, booking_id)
    if b.user_id != me.id:
        raise HTTPException(status_code=404, detail="Booking not found")
    if b.service_status not in CANCELLABLE:
        raise HTTPException(status_code=400, detail=f"Cannot cancel booking. Current status: {b.service_status}")
    b.service_status = "cancelled"
    s.execute(
        update(BookingRequest)
        .where(BookingRequest.booking_id == b.id, BookingRequest.status == "pending")
        .values(status="cancelled", responded_at=utcnow())
    )
    end_session_for_booking(s, b.id)
    s.commit()
    return booking_out(s, b)


# ---- Worker trip flow ----
def active_provider(s: Session, me: AuthUser) -> Provider:
    p = provider_for_user(s, me.id)
    if not p:
        raise HTTPException(status_code=404, detail="Worker profile not found")
    if not p.is_verified or not p.is_active:
        raise HTTPException(status_code=403, detail="Worker is not verified or inactive")
    return p


def _own_trip(s: Session, booking_id: Optional[int], p: Provider) -> Booking:
    if not booking_id:
        raise HTTPException(status_code=400, detail="booking_id is required")
    b = booking_or_404(s, booking_id)
    if b.provider_id != p.id:
        raise HTTPException(status_code=403, detail="Booking is not assigned to you")
    return b


@trip_router.get("/available")
def available_trips(limit: int = 20, me: AuthUser = Depends(require_worker), s: Session = Depends(get_session)):
    active_provider(s, me)
    limit = max(1, min(limit, 100))
    rows = s.execute(
        select(Booking)
        .where(Booking.booking_type == "ride", Booking.service_status == "pending", Booking.provider_id.is_(None))
        .order_by(Booking.created_at.asc())
        .limit(limit)
    ).scalars().all()
    return {"bookings": [booking_out(s, b) for b in rows]}


@trip_router.get("/mine")
def my_trips(status: str = "", me: AuthUser = Depends(require_worker), s: Session = Depends(get_session)):
    p = provider_for_user(s, me.id)
    if not p:
        raise HTTPException(status_code=404, detail="Worker profile not found")
    q = select(Booking).where(Booking.provider_id == p.id)
    if status:
        q = q.where(Booking.service_status == status)
    rows = s.execute(q.order_by(Booking.created_at.desc())).scalars().all()
    return {"bookings": [booking_out(s, b) for b in rows]}


@trip_router.post("/{booking_id}/accept")
def accept_trip(booking_id: int, me: AuthUser = Depends(require_worker), s: Session = Depends(get_session)):
    p = active_provider(s, me)
    b = booking_or_404(s, booking_id)
    if b.booking_type != "ride" or b.service_status != "pending" or b.provider_id is not None:
        raise HTTPException(status_code=409, detail="Booking is no longer available")
    # guarded update so two workers cannot both take the same booking
    res = s.execute(
        update(Booking)
        .where(Booking.id == b.id, Booking.booking_type == "ride", Booking.service_status == "pending", Booking.provider_id.is_(None))
        .values(service_status="accepted", provider_id=p.id, updated_at=utcnow())
    )
    if res.rowcount != 1:
        s.rollback()
        raise HTTPException(status_code=409, detail="Booking is no longer available")
    s.commit()
    s.refresh(b)
    logger.info("trip accepted", extra={"booking_id": b.id, "provider_id": p.id})
    return booking_out(s, b)


@trip_router.post("/start")
def start_trip(req: TripReq, me: AuthUser = Depends(require_worker), s: Session = Depends(get_session)):
    p = active_provider(s, me)
    b = _own_trip(s, req.booking_id, p)
    if b.service_status != "accepted":
        raise HTTPException(status_code=400, detail=f"Cannot start trip. Current status: {b.service_status}")
    b.service_status = "in_progress"
    b.started_at = utcnow()
    s.commit()
    s.refresh(b)
    return booking_out(s, b)


@trip_router.post("/end")
def end_trip(req: EndTripReq, me: AuthUser = Depends(require_worker), s: Session = Depends(get_session)):
    p = active_provider(s, me)
    b = _own_trip(s, req.booking_id, p)
    if b.service_status != "in_progress":
        raise HTTPException(status_code=400, detail=f"Cannot end trip. Current status: {b.service_status}")
    now = utcnow()
    km = req.distance_km
    if km is None:
        km = haversine_km(b.pickup_lat, b.pickup_lng, b.drop_lat, b.drop_lng)
    minutes = req.duration_min
    if minutes is None:
        minutes = max(1, int(round((now - (b.started_at or now)).total_seconds() / 60.0)))
    extra = req.additional_charges
    fb = _fare_for(s, b.id)
    if fb is not None:
        apply_final_fare(
            s, fb, km, minutes,
            tip_cents=extra.tip_cents,
            waiting_cents=extra.waiting_charges_cents,
            toll_cents=extra.toll_charges_cents,
            promo_cents=extra.promo_discount_cents,
        )
        final = fb.final_fare_cents
    else:
        final = max(0, b.estimated_cost_cents + extra.tip_cents + extra.waiting_charges_cents
                    + extra.toll_charges_cents - extra.promo_discount_cents)
    pct, needs_review = fare_deviation(s, b.estimated_cost_cents, final)
    b.actual_cost_cents = final
    b.completed_at = now
    b.service_status = "pending_review" if needs_review else "completed"
    end_session_for_booking(s, b.id)
    if not needs_review:
        settle_booking(s, b)
    s.commit()
    s.refresh(b)
    if needs_review:
        logger.warning("fare deviation above limit", extra={"booking_id": b.id, "deviation_pct": pct})
    return {**booking_out(s, b), "fare_deviation_percentage": pct, "requires_review": needs_review}


# ---- Admin fare review ----
@admin_router.get("/pending-review")
def pending_review(me: AuthUser = Depends(require_admin), s: Session = Depends(get_session)):
    rows = s.execute(
        select(Booking).where(Booking.service_status == "pending_review").order_by(Booking.completed_at.asc())
    ).scalars().all()
    return {"bookings": [booking_out(s, b) for b in rows]}


@admin_router.post("/{booking_id}/approve-fare")
def approve_fare(booking_id: int, request: Request, me: AuthUser = Depends(require_admin), s: Session = Depends(get_session)):
    b = booking_or_404(s, booking_id)
    if b.service_status != "pending_review":
        raise HTTPException(status_code=400, detail=f"Booking is not awaiting review. Current status: {b.service_status}")
    b.service_status = "completed"
    settle_booking(s, b)
    log_action(s, me, "fare_approved", "booking", b.id, {"actual_cost_cents": b.actual_cost_cents}, request)
    s.commit()
    s.refresh(b)
    return booking_out(s, b)
