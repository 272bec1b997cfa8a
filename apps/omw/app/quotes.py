import logging
import uuid
from dataclasses import asdict
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.orm import Session

from . import config
from .db import get_session, utcnow
from .models import FareBreakdown, VehicleType
from .pricing import estimate_fare, get_distance_and_duration

router = APIRouter()
logger = logging.getLogger("omw.quotes")


class Point(BaseModel):
    lat: Optional[float] = None
    lng: Optional[float] = None


class QuoteReq(BaseModel):
    pickup: Optional[Point] = None
    drop: Optional[Point] = None
    vehicle_type_id: Optional[int] = None
    pickup_time: Optional[str] = None


class ValidateReq(BaseModel):
    quote_id: Optional[str] = None


def _coords(p: Optional[Point], label: str) -> tuple[float, float]:
    if p is None or p.lat is None or p.lng is None:
        raise HTTPException(status_code=400, detail=f"{label} location with lat and lng is required")
    if not (-90 <= p.lat <= 90 and -180 <= p.lng <= 180):
        raise HTTPException(status_code=400, detail=f"Invalid {label} coordinates")
    return p.lat, p.lng


def _parse_time(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    try:
        ts = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid pickup_time")
    if ts.tzinfo is not None:
        ts = ts.astimezone(timezone.utc).replace(tzinfo=None)
    return ts


def active_vehicle_types(s: Session) -> list[VehicleType]:
    q = select(VehicleType).where(VehicleType.is_active == True).order_by(VehicleType.vehicle_multiplier, VehicleType.id)  # noqa: E712
    return list(s.execute(q).scalars().all())


@router.post("/quote")
def create_quote(req: QuoteReq, s: Session = Depends(get_session)):
    pickup = _coords(req.pickup, "pickup")
    drop = _coords(req.drop, "drop")
    when = _parse_time(req.pickup_time)
    if req.vehicle_type_id is not None:
        vt = s.get(VehicleType, req.vehicle_type_id)
        if not vt or not vt.is_active:
            raise HTTPException(status_code=404, detail="Invalid or inactive vehicle type")
        types = [vt]
    else:
        types = active_vehicle_types(s)
        if not types:
            raise HTTPException(status_code=404, detail="No active vehicle types")
    km, minutes = get_distance_and_duration(pickup, drop)
    now = utcnow()
    expires_at = now + timedelta(seconds=config.QUOTE_TTL_SECS)
    quotes = []
    for vt in types:
        est = estimate_fare(s, vt, km, minutes, when)
        qid = str(uuid.uuid4())
        s.add(FareBreakdown(
            quote_id=qid,
            vehicle_type_id=vt.id,
            pickup_lat=pickup[0],
            pickup_lng=pickup[1],
            drop_lat=drop[0],
            drop_lng=drop[1],
            distance_km=km,
            duration_min=minutes,
            base_fare_cents=est.base_fare_cents,
            distance_component_cents=est.distance_component_cents,
            time_component_cents=est.time_component_cents,
            night_component_cents=est.night_component_cents,
            surge_component_cents=est.surge_component_cents,
            vehicle_multiplier=est.vehicle_multiplier,
            surge_multiplier=est.surge_multiplier,
            night_hours_applied=est.night_hours_applied,
            total_fare_cents=est.total_fare_cents,
            expires_at=expires_at,
        ))
        item = asdict(est)
        item["quote_id"] = qid
        quotes.append(item)
    s.commit()
    pickup_at = when if when is not None else now + timedelta(minutes=config.PICKUP_ETA_MINUTES)
    return {
        "distance_km": km,
        "duration_min": minutes,
        "estimated_pickup_time": pickup_at.isoformat(),
        "expires_at": expires_at.isoformat(),
        "currency": config.CURRENCY,
        "quotes": quotes,
    }


@router.post("/quote/validate")
def validate_quote(req: ValidateReq, s: Session = Depends(get_session)):
    if not req.quote_id:
        raise HTTPException(status_code=400, detail="quote_id is required")
    try:
        qid = str(uuid.UUID(req.quote_id))
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid quote_id format")
    fb = s.execute(select(FareBreakdown).where(FareBreakdown.quote_id == qid)).scalars().first()
    if not fb:
        return {"quote_id": qid, "valid": False, "expired": False, "used": False}
    expired = fb.expires_at < utcnow()
    used = fb.booking_id is not None
    return {
        "quote_id": qid,
        "valid": not expired and not used,
        "expired": expired,
        "used": used,
        "total_fare_cents": fb.total_fare_cents,
        "expires_at": fb.expires_at.isoformat(),
    }


@router.get("/vehicle-types")
def list_vehicle_types(s: Session = Depends(get_session)):
    return [
        {
            "id": vt.id,
            "name": vt.name,
            "display_name": vt.display_name,
            "base_fare_cents": vt.base_fare_cents,
            "rate_per_km_cents": vt.rate_per_km_cents,
            "rate_per_min_cents": vt.rate_per_min_cents,
            "minimum_fare_cents": vt.minimum_fare_cents,
            "vehicle_multiplier": vt.vehicle_multiplier,
        }
        for vt in active_vehicle_types(s)
    ]
