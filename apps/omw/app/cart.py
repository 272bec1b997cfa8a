import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from .catalogue import active_subcategory
from .db import get_session
from .models import CartItem, ServiceSubcategory
from .security import AuthUser, require_customer

router = APIRouter()
logger = logging.getLogger("omw.cart")

MAX_QUANTITY = 99


class AddReq(BaseModel):
    subcategory_id: Optional[int] = None
    id: Optional[int] = None
    quantity: int = Field(default=1, ge=1, le=MAX_QUANTITY)


class QuantityReq(BaseModel):
    quantity: Optional[int] = None


class SyncItem(BaseModel):
    subcategory_id: Optional[int] = None
    id: Optional[int] = None
    quantity: int = Field(default=1, ge=1, le=MAX_QUANTITY)


class SyncReq(BaseModel):
    items: list[SyncItem] = Field(default_factory=list)


def cart_rows(s: Session, user_id: int) -> list[tuple[CartItem, ServiceSubcategory]]:
    return s.execute(
        select(CartItem, ServiceSubcategory)
        .join(ServiceSubcategory, ServiceSubcategory.id == CartItem.subcategory_id)
        .where(CartItem.user_id == user_id)
        .order_by(CartItem.added_at.asc(), CartItem.id.asc())
    ).all()


def clear_cart(s: Session, user_id: int) -> None:
    """Caller commits."""
    s.execute(delete(CartItem).where(CartItem.user_id == user_id))


def cart_out(s: Session, user_id: int) -> dict:
    items = []
    total = 0
    for item, sc in cart_rows(s, user_id):
        line = sc.base_price_cents * item.quantity
        total += line
        items.append({
            "id": item.id,
            "subcategory_id": sc.id,
            "name": sc.name,
            "description": sc.description,
            "price_cents": sc.base_price_cents,
            "quantity": item.quantity,
            "total_price_cents": line,
        })
    return {"items": items, "total_cents": total}


def _bookable(s: Session, subcategory_id: Optional[int]) -> ServiceSubcategory:
    if subcategory_id is None:
        raise HTTPException(status_code=400, detail="subcategory_id is required")
    sc = active_subcategory(s, subcategory_id)
    if not sc:
        raise HTTPException(status_code=404, detail="Service not found")
    return sc


def _own_item(s: Session, me: AuthUser, cart_id: int) -> CartItem:
    item = s.get(CartItem, cart_id)
    if not item or item.user_id != me.id:
        raise HTTPException(status_code=404, detail="Cart item not found")
    return item


@router.get("")
def get_cart(me: AuthUser = Depends(require_customer), s: Session = Depends(get_session)):
    return cart_out(s, me.id)


@router.post("/add", status_code=201)
def add_item(req: AddReq, me: AuthUser = Depends(require_customer), s: Session = Depends(get_session)):
    sc = _bookable(s, req.subcategory_id or req.id)
    item = s.execute(
        select(CartItem).where(CartItem.user_id == me.id, CartItem.subcategory_id == sc.id)
    ).scalars().first()
    if item:
        item.quantity = min(MAX_QUANTITY, item.quantity + req.quantity)
    else:
        s.add(CartItem(user_id=me.id, subcategory_id=sc.id, quantity=req.quantity))
    s.commit()
    return cart_out(s, me.id)


@router.put("/update/{cart_id}")
def update_item(cart_id: int, req: QuantityReq, me: AuthUser = Depends(require_customer), s: Session = Depends(get_session)):
    if req.quantity is None or req.quantity < 1 or req.quantity > MAX_QUANTITY:
        raise HTTPException(status_code=400, detail=f"quantity must be between 1 and {MAX_QUANTITY}")
    item = _own_item(s, me, cart_id)
    item.quantity = req.quantity
    s.commit()
    return cart_out(s, me.id)


@router.delete("/remove/{cart_id}")
def remove_item(cart_id: int, me: AuthUser = Depends(require_customer), s: Session = Depends(get_session)):
    item = _own_item(s, me, cart_id)
    s.delete(item)
    s.commit()
    return cart_out(s, me.id)


@router.delete("/clear")
def clear(me: AuthUser = Depends(require_customer), s: Session = Depends(get_session)):
    clear_cart(s, me.id)
    s.commit()
    return cart_out(s, me.id)


@router.post("/sync")
def sync_cart(req: SyncReq, me: AuthUser = Depends(require_customer), s: Session = Depends(get_session)):
    """Replace the stored cart with the client's copy; unknown services are dropped."""
    wanted: dict[int, int] = {}
    for it in req.items:
        sc = active_subcategory(s, it.subcategory_id or it.id)
        if sc is None:
            continue
        wanted[sc.id] = min(MAX_QUANTITY, wanted.get(sc.id, 0) + it.quantity)
    clear_cart(s, me.id)
    for sid, qty in wanted.items():
        s.add(CartItem(user_id=me.id, subcategory_id=sid, quantity=qty))
    s.commit()
    if len(wanted) < len(req.items):
        logger.info("cart sync merged or dropped items", extra={"user_id": me.id, "kept": len(wanted), "sent": len(req.items)})
    return cart_out(s, me.id)
