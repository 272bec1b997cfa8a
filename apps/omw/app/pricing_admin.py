import logging
from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .audit import log_action
from .db import get_session, utcnow
from .models import FareBreakdown, PricingRule, SurgeHistory, SurgeZone, VehicleType
from .pricing import DemandSnapshot, demand_snapshot, record_surge
from .security import AuthUser, require_admin

router = APIRouter()
logger = logging.getLogger("omw.pricing_admin")

MIN_ZONE_MULTIPLIER = 1.0
MAX_ZONE_MULTIPLIER = 5.0


class VehicleTypeOut(BaseModel):
    id: int
    name: str
    display_name: str
    base_fare_cents: int
    rate_per_km_cents: int
    rate_per_min_cents: int
    minimum_fare_cents: int
    free_km_threshold: float
    vehicle_multiplier: float
    night_multiplier: float
    surge_enabled: bool
    max_surge_multiplier: float
    is_active: bool
    model_config = ConfigDict(from_attributes=True)


class VehicleTypeReq(BaseModel):
    name: Optional[str] = None
    display_name: Optional[str] = None
    base_fare_cents: Optional[int] = Field(default=None, ge=0)
    rate_per_km_cents: Optional[int] = Field(default=None, ge=0)
    rate_per_min_cents: Optional[int] = Field(default=None, ge=0)
    minimum_fare_cents: Optional[int] = Field(default=None, ge=0)
    free_km_threshold: Optional[float] = Field(default=None, ge=0)
    vehicle_multiplier: Optional[float] = Field(default=None, gt=0)
    night_multiplier: Optional[float] = Field(default=None, ge=1)
    surge_enabled: Optional[bool] = None
    max_surge_multiplier: Optional[float] = Field(default=None, ge=1)
    is_active: Optional[bool] = None


class RuleUpdateReq(BaseModel):
    rule_value: Optional[str] = None
    description: Optional[str] = None
    is_active: Optional[bool] = None


class ZoneUpdateReq(BaseModel):
    multiplier: Optional[float] = None


REQUIRED_TYPE_FIELDS = ("name", "display_name", "base_fare_cents", "rate_per_km_cents", "rate_per_min_cents")


def _vt_or_404(s: Session, vt_id: int) -> VehicleType:
    vt = s.get(VehicleType, vt_id)
    if not vt:
        raise HTTPException(status_code=404, detail="Vehicle type not found")
    return vt


def _rule_out(r: PricingRule) -> dict:
    return {
        "id": r.id,
        "rule_key": r.rule_key,
        "rule_value": r.rule_value,
        "rule_type": r.rule_type,
        "category": r.category,
        "description": r.description,
        "is_active": r.is_active,
    }


def _zone_out(z: SurgeZone) -> dict:
    return {
        "id": z.id,
        "zone_name": z.zone_name,
        "center_lat": z.center_lat,
        "center_lng": z.center_lng,
        "radius_km": z.radius_km,
        "current_multiplier": z.current_multiplier,
        "is_active": z.is_active,
    }


# ---- Vehicle types ----
@router.get("/vehicle-types")
def list_types(include_inactive: bool = False, me: AuthUser = Depends(require_admin), s: Session = Depends(get_session)):
    q = select(VehicleType)
    if not include_inactive:
        q = q.where(VehicleType.is_active == True)  # noqa: E712
    rows = s.execute(q.order_by(VehicleType.vehicle_multiplier, VehicleType.id)).scalars().all()
    return {"vehicle_types": [VehicleTypeOut.model_validate(v).model_dump() for v in rows]}


@router.post("/vehicle-types", status_code=201)
def create_type(req: VehicleTypeReq, request: Request, me: AuthUser = Depends(require_admin), s: Session = Depends(get_session)):
    data = req.model_dump(exclude_none=True)
    missing = [f for f in REQUIRED_TYPE_FIELDS if data.get(f) in (None, "")]
    if missing:
        raise HTTPException(status_code=400, detail={"message": "Missing required fields", "missingFields": missing})
    data["name"] = data["name"].strip().lower()
    if s.execute(select(VehicleType.id).where(VehicleType.name == data["name"])).first():
        raise HTTPException(status_code=409, detail="Vehicle type already exists")
    vt = VehicleType(**data)
    s.add(vt)
    s.flush()
    log_action(s, me, "vehicle_type_created", "vehicle_type", vt.id, {"name": vt.name}, request)
    s.commit()
    s.refresh(vt)
    return VehicleTypeOut.model_validate(vt).model_dump()


@router.put("/vehicle-types/{vt_id}")
def update_type(vt_id: int, req: VehicleTypeReq, request: Request, me: AuthUser = Depends(require_admin), s: Session = Depends(get_session)):
    vt = _vt_or_404(s, vt_id)
    changes = req.model_dump(exclude_none=True)
    changes.pop("name", None)
    for k, v in changes.items():
        setattr(vt, k, v)
    log_action(s, me, "vehicle_type_updated", "vehicle_type", vt.id, changes, request)
    s.commit()
    s.refresh(vt)
    return VehicleTypeOut.model_validate(vt).model_dump()


@router.delete("/vehicle-types/{vt_id}")
def delete_type(vt_id: int, request: Request, me: AuthUser = Depends(require_admin), s: Session = Depends(get_session)):
    vt = _vt_or_404(s, vt_id)
    used = s.execute(select(func.count(FareBreakdown.id)).where(FareBreakdown.vehicle_type_id == vt.id)).scalar_one()
    if used:
        raise HTTPException(status_code=400, detail="Vehicle type is referenced by fare breakdowns; deactivate it instead")
    s.delete(vt)
    log_action(s, me, "vehicle_type_deleted", "vehicle_type", vt_id, {"name": vt.name}, request)
    s.commit()
    return {"deleted": True, "id": vt_id}


# ---- Rules ----
@router.get("/rules")
def list_rules(me: AuthUser = Depends(require_admin), s: Session = Depends(get_session)):
    rows = s.execute(select(PricingRule).order_by(PricingRule.category, PricingRule.rule_key)).scalars().all()
    grouped: dict[str, list[dict]] = {}
    for r in rows:
        grouped.setdefault(r.category or "general", []).append(_rule_out(r))
    return {"rules": [_rule_out(r) for r in rows], "grouped_rules": grouped}


@router.put("/rules/{rule_id}")
def update_rule(rule_id: int, req: RuleUpdateReq, request: Request, me: AuthUser = Depends(require_admin), s: Session = Depends(get_session)):
    if req.rule_value is None or not str(req.rule_value).strip():
        raise HTTPException(status_code=400, detail="rule_value is required")
    r = s.get(PricingRule, rule_id)
    if not r:
        raise HTTPException(status_code=404, detail="Pricing rule not found")
    value = str(req.rule_value).strip()
    if r.rule_type == "number":
        try:
            float(value)
        except ValueError:
            raise HTTPException(status_code=400, detail="rule_value must be numeric")
    old = r.rule_value
    r.rule_value = value
    if req.description is not None:
        r.description = req.description
    if req.is_active is not None:
        r.is_active = req.is_active
    log_action(s, me, "pricing_rule_updated", "pricing_rule", r.id, {"rule_key": r.rule_key, "old": old, "new": value}, request)
    s.commit()
    s.refresh(r)
    return _rule_out(r)


# ---- Surge ----
def _snapshot_out(snap: DemandSnapshot) -> dict:
    return {
        "pending_requests": snap.pending_requests,
        "active_rides": snap.active_rides,
        "demand_index": snap.demand_index,
        "surge_multiplier": snap.surge_multiplier,
    }


@router.get("/surge/current")
def current_surge(me: AuthUser = Depends(require_admin), s: Session = Depends(get_session)):
    snap = demand_snapshot(s)
    point = record_surge(s, snap)
    s.commit()
    out = _snapshot_out(snap)
    out["recorded_at"] = point.recorded_at.isoformat() if point.recorded_at else None
    return out


@router.get("/surge/history")
def surge_history(hours: int = 24, zone_id: Optional[int] = None, me: AuthUser = Depends(require_admin), s: Session = Depends(get_session)):
    hours = max(1, min(hours, 24 * 30))
    since = utcnow() - timedelta(hours=hours)
    q = select(SurgeHistory).where(SurgeHistory.recorded_at >= since)
    if zone_id is not None:
        q = q.where(SurgeHistory.zone_id == zone_id)
    rows = s.execute(q.order_by(SurgeHistory.recorded_at.asc(), SurgeHistory.id.asc())).scalars().all()
    return {
        "hours": hours,
        "history": [
            {
                "zone_id": h.zone_id,
                "multiplier": h.multiplier,
                "demand_index": h.demand_index,
                "pending_requests": h.pending_requests,
                "active_rides": h.active_rides,
                "source": h.source,
                "recorded_at": h.recorded_at.isoformat(),
            }
            for h in rows
        ],
    }


@router.get("/surge/zones")
def surge_zones(me: AuthUser = Depends(require_admin), s: Session = Depends(get_session)):
    rows = s.execute(select(SurgeZone).where(SurgeZone.is_active == True).order_by(SurgeZone.zone_name)).scalars().all()  # noqa: E712
    return {"zones": [_zone_out(z) for z in rows]}


@router.put("/surge/zones/{zone_id}")
def set_zone_multiplier(zone_id: int, req: ZoneUpdateReq, request: Request, me: AuthUser = Depends(require_admin), s: Session = Depends(get_session)):
    m = req.multiplier
    if m is None or not (MIN_ZONE_MULTIPLIER <= m <= MAX_ZONE_MULTIPLIER):
        raise HTTPException(status_code=400, detail=f"multiplier must be between {MIN_ZONE_MULTIPLIER} and {MAX_ZONE_MULTIPLIER}")
    z = s.get(SurgeZone, zone_id)
    if not z:
        raise HTTPException(status_code=404, detail="Surge zone not found")
    old = z.current_multiplier
    z.current_multiplier = m
    snap = demand_snapshot(s)
    record_surge(s, DemandSnapshot(snap.pending_requests, snap.active_rides, snap.demand_index, m), zone_id=z.id, source="override")
    log_action(s, me, "surge_zone_updated", "surge_zone", z.id, {"old": old, "new": m}, request)
    s.commit()
    s.refresh(z)
    return _zone_out(z)
