import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from .db import get_session
from .models import CustomerAddress
from .security import AuthUser, require_customer

router = APIRouter()
logger = logging.getLogger("omw.addresses")

REQUIRED = ("address", "pin_code", "city", "state", "country")
ADDRESS_TYPES = ("home", "work", "other")


class AddressReq(BaseModel):
    address: Optional[str] = None
    pin_code: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None
    location_lat: Optional[float] = Field(default=None, ge=-90, le=90)
    location_lng: Optional[float] = Field(default=None, ge=-180, le=180)
    address_type: Optional[str] = None
    address_label: Optional[str] = None
    is_default: Optional[bool] = None


def address_out(a: CustomerAddress) -> dict:
    return {
        "id": a.id,
        "address": a.address,
        "pin_code": a.pin_code,
        "city": a.city,
        "state": a.state,
        "country": a.country,
        "location_lat": a.location_lat,
        "location_lng": a.location_lng,
        "address_type": a.address_type,
        "address_label": a.address_label,
        "is_default": a.is_default,
        "created_at": a.created_at.isoformat() if a.created_at else None,
    }


def full_address(a: CustomerAddress) -> str:
    return f"{a.address}, {a.city}, {a.state} - {a.pin_code}, {a.country}"


def own_address(s: Session, user_id: int, address_id) -> Optional[CustomerAddress]:
    try:
        aid = int(address_id)
    except (TypeError, ValueError):
        return None
    a = s.get(CustomerAddress, aid)
    if not a or a.user_id != user_id:
        return None
    return a


def _address_or_404(s: Session, me: AuthUser, address_id: int) -> CustomerAddress:
    a = own_address(s, me.id, address_id)
    if not a:
        raise HTTPException(status_code=404, detail="Address not found")
    return a


def _clean(data: dict) -> dict:
    out = {}
    for k, v in data.items():
        if isinstance(v, str):
            v = v.strip()
        out[k] = v
    if "address_type" in out and out["address_type"] is not None:
        out["address_type"] = out["address_type"].lower()
        if out["address_type"] not in ADDRESS_TYPES:
            raise HTTPException(status_code=400, detail=f"address_type must be one of {', '.join(ADDRESS_TYPES)}")
    return out


def _unset_defaults(s: Session, user_id: int) -> None:
    s.execute(update(CustomerAddress).where(CustomerAddress.user_id == user_id).values(is_default=False))


def _list(s: Session, user_id: int) -> list[CustomerAddress]:
    return s.execute(
        select(CustomerAddress)
        .where(CustomerAddress.user_id == user_id)
        .order_by(CustomerAddress.is_default.desc(), CustomerAddress.created_at.desc(), CustomerAddress.id.desc())
    ).scalars().all()


@router.get("")
def list_addresses(me: AuthUser = Depends(require_customer), s: Session = Depends(get_session)):
    return {"addresses": [address_out(a) for a in _list(s, me.id)]}


@router.post("", status_code=201)
def add_address(req: AddressReq, me: AuthUser = Depends(require_customer), s: Session = Depends(get_session)):
    data = _clean(req.model_dump())
    if any(not data.get(k) for k in REQUIRED):
        raise HTTPException(status_code=400, detail="Address, pin code, city, state, and country are required")
    # a customer's first address is their default
    first = not _list(s, me.id)
    make_default = bool(data.pop("is_default")) or first
    if make_default:
        _unset_defaults(s, me.id)
    a = CustomerAddress(
        user_id=me.id,
        is_default=make_default,
        address_type=data.pop("address_type") or "home",
        **{k: v for k, v in data.items() if v is not None},
    )
    s.add(a)
    s.commit()
    s.refresh(a)
    return {"message": "Address added successfully", "address": address_out(a)}


@router.put("/{address_id}/default")
def set_default(address_id: int, me: AuthUser = Depends(require_customer), s: Session = Depends(get_session)):
    a = _address_or_404(s, me, address_id)
    _unset_defaults(s, me.id)
    a.is_default = True
    s.commit()
    s.refresh(a)
    return {"message": "Default address updated", "address": address_out(a)}


@router.put("/{address_id}")
def update_address(address_id: int, req: AddressReq, me: AuthUser = Depends(require_customer), s: Session = Depends(get_session)):
    a = _address_or_404(s, me, address_id)
    changes = _clean(req.model_dump(exclude_unset=True))
    for k in REQUIRED:
        if k in changes and not changes[k]:
            raise HTTPException(status_code=400, detail=f"{k} cannot be empty")
    make_default = changes.pop("is_default", None)
    if make_default:
        _unset_defaults(s, me.id)
        a.is_default = True
    for k, v in changes.items():
        if v is not None:
            setattr(a, k, v)
    s.commit()
    s.refresh(a)
    return {"message": "Address updated successfully", "address": address_out(a)}


@router.delete("/{address_id}")
def delete_address(address_id: int, me: AuthUser = Depends(require_customer), s: Session = Depends(get_session)):
    a = _address_or_404(s, me, address_id)
    was_default = a.is_default
    s.delete(a)
    s.flush()
    if was_default:
        rest = _list(s, me.id)
        if rest:
            rest[0].is_default = True
    s.commit()
    logger.info("address deleted", extra={"user_id": me.id, "address_id": address_id})
    return {"message": "Address deleted successfully"}
