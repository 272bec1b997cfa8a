"""
Fare calculation for rides.

All money is integer cents. Quotes capture the surge multiplier and the
night flag at quote time; the final fare after the trip recomputes the
distance and time parts with actuals but keeps those two factors, so a rider
is charged the surge they were shown.
"""
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

import httpx
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from . import config
from .db import utcnow
from .models import Booking, FareBreakdown, PricingRule, SurgeHistory, VehicleType

logger = logging.getLogger("omw.pricing")

DEFAULT_NIGHT_START = 23
DEFAULT_NIGHT_END = 6
DEFAULT_MAX_DEVIATION_PCT = 20.0
SURGE_WINDOW_MINUTES = 30

# (demand index strictly above, multiplier), highest first
SURGE_STEPS = [(80, 2.5), (60, 2.0), (40, 1.5), (20, 1.2)]


@dataclass
class DemandSnapshot:
    pending_requests: int
    active_rides: int
    demand_index: int
    surge_multiplier: float


@dataclass
class FareEstimate:
    vehicle_type_id: int
    vehicle_type_name: str
    distance_km: float
    duration_min: int
    free_km_threshold: float
    billable_distance_km: float
    base_fare_cents: int
    distance_component_cents: int
    time_component_cents: int
    night_component_cents: int
    surge_component_cents: int
    vehicle_multiplier: float
    surge_multiplier: float
    night_hours_applied: bool
    minimum_fare_cents: int
    total_fare_cents: int


# ---- Distance ----
def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    r = 6371.0
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    a = math.sin(dlat / 2) ** 2 + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(dlon / 2) ** 2
    return r * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def _city_minutes(km: float) -> int:
    return max(1, math.ceil(km / max(0.1, config.CITY_SPEED_KMH) * 60))


def get_distance_and_duration(origin: tuple[float, float], dest: tuple[float, float]) -> tuple[float, int]:
    """
    Road distance (km, 2dp) and duration (whole minutes).

    Uses the Google Distance Matrix API when GOOGLE_MAPS_API_KEY is set and
    falls back to great-circle distance at city speed otherwise, or when the
    API call fails.
    """
    if config.GOOGLE_MAPS_API_KEY:
        try:
            r = httpx.get(
                config.DISTANCE_MATRIX_URL,
                params={
                    "origins": f"{origin[0]},{origin[1]}",
                    "destinations": f"{dest[0]},{dest[1]}",
                    "key": config.GOOGLE_MAPS_API_KEY,
                    "units": "metric",
                    "mode": "driving",
                },
                timeout=5,
            )
            r.raise_for_status()
            j = r.json()
            el = ((j.get("rows") or [{}])[0].get("elements") or [{}])[0]
            if j.get("status") == "OK" and el.get("status") == "OK":
                km = round(float(el["distance"]["value"]) / 1000.0, 2)
                minutes = max(1, math.ceil(float(el["duration"]["value"]) / 60.0))
                return km, minutes
            logger.warning("distance matrix returned %s, using haversine", j.get("error_message") or el.get("status"))
        except (httpx.HTTPError, ValueError, KeyError, IndexError, TypeError):
            logger.warning("distance matrix call failed, using haversine", exc_info=True)
    km = haversine_km(origin[0], origin[1], dest[0], dest[1])
    return round(km, 2), _city_minutes(km)


# ---- Rules ----
def rule_value(s: Session, key: str, default: float) -> float:
    raw = s.execute(
        select(PricingRule.rule_value).where(PricingRule.rule_key == key, PricingRule.is_active == True)  # noqa: E712
    ).scalar_one_or_none()
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("pricing rule %s has non-numeric value %r", key, raw)
        return default


def local_time(when: datetime) -> datetime:
    """``when`` in TIMEZONE. Naive datetimes are taken as UTC."""
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return when.astimezone(ZoneInfo(config.TIMEZONE))


def local_hour(when: datetime) -> int:
    return local_time(when).hour


def is_night_hours(s: Session, when: datetime) -> bool:
    start = int(rule_value(s, "night_hours_start", DEFAULT_NIGHT_START))
    end = int(rule_value(s, "night_hours_end", DEFAULT_NIGHT_END))
    h = local_hour(when)
    if start > end:
        # window wraps past midnight
        return h >= start or h < end
    return start <= h < end


# ---- Surge ----
def surge_for_demand(demand_index: int) -> float:
    for threshold, mult in SURGE_STEPS:
        if demand_index > threshold:
            return mult
    return 1.0


def demand_snapshot(s: Session, now: Optional[datetime] = None) -> DemandSnapshot:
    now = now or utcnow()
    window = int(rule_value(s, "surge_window_minutes", SURGE_WINDOW_MINUTES))
    since = now - timedelta(minutes=window)
    base = select(func.count(Booking.id)).where(Booking.booking_type == "ride", Booking.created_at >= since)
    pending = s.execute(base.where(Booking.service_status == "pending")).scalar_one()
    active = s.execute(base.where(Booking.service_status == "in_progress")).scalar_one()
    index = min(100, pending * 10 + active * 5)
    return DemandSnapshot(pending, active, index, surge_for_demand(index))


def record_surge(s: Session, snap: DemandSnapshot, zone_id: Optional[int] = None, source: str = "computed") -> SurgeHistory:
    row = SurgeHistory(
        zone_id=zone_id,
        multiplier=snap.surge_multiplier,
        demand_index=snap.demand_index,
        pending_requests=snap.pending_requests,
        active_rides=snap.active_rides,
        source=source,
    )
    s.add(row)
    return row


def surge_multiplier(s: Session, vt: VehicleType, now: Optional[datetime] = None) -> float:
    if not vt.surge_enabled:
        return 1.0
    snap = demand_snapshot(s, now)
    return min(snap.surge_multiplier, float(vt.max_surge_multiplier or 1.0))


# ---- Fares ----
def _components(vt: VehicleType, km: float, minutes: int, night: bool, surge: float) -> dict:
    base = vt.base_fare_cents
    billable = max(0.0, km - float(vt.free_km_threshold or 0.0))
    dist = billable * vt.rate_per_km_cents
    tme = minutes * vt.rate_per_min_cents
    core = base + dist + tme
    night_part = core * (float(vt.night_multiplier) - 1) if night else 0.0
    surge_part = core * (surge - 1) if surge > 1 else 0.0
    subtotal = (core + night_part + surge_part) * float(vt.vehicle_multiplier)
    return {
        "billable": round(billable, 2),
        "distance": int(round(dist)),
        "time": int(round(tme)),
        "night": int(round(night_part)),
        "surge": int(round(surge_part)),
        "total": max(int(round(subtotal)), vt.minimum_fare_cents),
    }


def estimate_fare(
    s: Session,
    vt: VehicleType,
    distance_km: float,
    duration_min: int,
    pickup_time: Optional[datetime] = None,
) -> FareEstimate:
    when = pickup_time or utcnow()
    night = is_night_hours(s, when)
    surge = surge_multiplier(s, vt)
    c = _components(vt, distance_km, duration_min, night, surge)
    return FareEstimate(
        vehicle_type_id=vt.id,
        vehicle_type_name=vt.display_name,
        distance_km=distance_km,
        duration_min=duration_min,
        free_km_threshold=float(vt.free_km_threshold),
        billable_distance_km=c["billable"],
        base_fare_cents=vt.base_fare_cents,
        distance_component_cents=c["distance"],
        time_component_cents=c["time"],
        night_component_cents=c["night"],
        surge_component_cents=c["surge"],
        vehicle_multiplier=float(vt.vehicle_multiplier),
        surge_multiplier=surge,
        night_hours_applied=night,
        minimum_fare_cents=vt.minimum_fare_cents,
        total_fare_cents=c["total"],
    )


def fare_deviation(s: Session, estimated_cents: int, actual_cents: int) -> tuple[float, bool]:
    """Returns (deviation %, requires review)."""
    limit = rule_value(s, "max_fare_deviation_percentage", DEFAULT_MAX_DEVIATION_PCT)
    if estimated_cents <= 0:
        return 0.0, False
    pct = round(abs((actual_cents - estimated_cents) / estimated_cents) * 100, 2)
    return pct, pct > limit


def apply_final_fare(
    s: Session,
    fb: FareBreakdown,
    actual_km: float,
    actual_min: int,
    tip_cents: int = 0,
    waiting_cents: int = 0,
    toll_cents: int = 0,
    promo_cents: int = 0,
) -> FareBreakdown:
    """
    Recompute a quoted fare with the trip's actual distance and time and
    store the result on the breakdown. Extras are added after the minimum
    fare is applied; the final fare never goes below zero.
    """
    vt = s.get(VehicleType, fb.vehicle_type_id)
    c = _components(vt, actual_km, actual_min, fb.night_hours_applied, fb.surge_multiplier)
    final = c["total"] + tip_cents + waiting_cents + toll_cents - promo_cents
    fb.actual_distance_km = round(actual_km, 2)
    fb.actual_duration_min = actual_min
    fb.tip_cents = tip_cents
    fb.waiting_charges_cents = waiting_cents
    fb.toll_charges_cents = toll_cents
    fb.promo_discount_cents = promo_cents
    fb.final_fare_cents = max(0, final)
    fb.fare_deviation_percentage, _ = fare_deviation(s, fb.total_fare_cents, fb.final_fare_cents)
    return fb
