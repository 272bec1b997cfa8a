import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.orm import Session

from .db import get_session, utcnow
from .models import Booking, ChatMessage, ChatSession, Provider, User
from .security import AuthUser, current_user

router = APIRouter()
logger = logging.getLogger("omw.chat")

CHAT_BOOKING_STATUSES = ("assigned", "accepted", "started", "en_route", "arrived", "in_progress")


class CreateSessionReq(BaseModel):
    booking_id: Optional[int] = None


class SendReq(BaseModel):
    content: Optional[str] = None
    message_type: str = "text"


class ReadReq(BaseModel):
    message_ids: Optional[List[int]] = None


def _iso(v):
    return v.isoformat() if v else None


def _side(cs: ChatSession, user_id: int) -> Optional[str]:
    if cs.customer_id == user_id:
        return "customer"
    if cs.provider_id == user_id:
        return "provider"
    return None


def _member_session(s: Session, session_id: int, me: AuthUser, missing_status: int = 403) -> tuple[ChatSession, str]:
    cs = s.get(ChatSession, session_id)
    side = _side(cs, me.id) if cs else None
    if not cs or cs.session_status == "deleted" or side is None:
        if missing_status == 404:
            raise HTTPException(status_code=404, detail="Chat session not found")
        raise HTTPException(status_code=403, detail="Access denied to this chat session")
    return cs, side


def _unread(s: Session, session_id: int, user_id: int) -> int:
    return s.execute(
        select(func.count(ChatMessage.id)).where(
            ChatMessage.session_id == session_id,
            ChatMessage.sender_id != user_id,
            ChatMessage.is_read == False,  # noqa: E712
        )
    ).scalar_one()


def _session_out(s: Session, cs: ChatSession, me_id: int) -> dict:
    side = _side(cs, me_id)
    other_id = cs.provider_id if side == "customer" else cs.customer_id
    other = s.get(User, other_id)
    return {
        "id": cs.id,
        "booking_id": cs.booking_id,
        "customer_id": cs.customer_id,
        "provider_id": cs.provider_id,
        "session_status": cs.session_status,
        "message_count": cs.message_count,
        "created_at": _iso(cs.created_at),
        "ended_at": _iso(cs.ended_at),
        "last_message_at": _iso(cs.last_message_at),
        "user_role": side,
        "other_party": {"id": other_id, "name": other.name if other else None},
        "unread_count": _unread(s, cs.id, me_id),
    }


def _message_out(m: ChatMessage) -> dict:
    return {
        "id": m.id,
        "session_id": m.session_id,
        "sender_id": m.sender_id,
        "sender_type": m.sender_type,
        "message_type": m.message_type,
        "content": m.content,
        "is_read": m.is_read,
        "read_at": _iso(m.read_at),
        "created_at": _iso(m.created_at),
    }


def end_session_for_booking(s: Session, booking_id: int) -> None:
    """Close the booking's chat once the job is over. Caller commits."""
    cs = s.execute(select(ChatSession).where(ChatSession.booking_id == booking_id)).scalars().first()
    if cs and cs.session_status == "active":
        cs.session_status = "ended"
        cs.ended_at = utcnow()


@router.get("/sessions")
def list_sessions(me: AuthUser = Depends(current_user), s: Session = Depends(get_session)):
    q = (
        select(ChatSession)
        .where(
            or_(ChatSession.customer_id == me.id, ChatSession.provider_id == me.id),
            ChatSession.session_status != "deleted",
        )
        .order_by(ChatSession.last_message_at.desc().nulls_last(), ChatSession.created_at.desc())
    )
    return {"sessions": [_session_out(s, cs, me.id) for cs in s.execute(q).scalars().all()]}


@router.get("/unread-count")
def unread_count(me: AuthUser = Depends(current_user), s: Session = Depends(get_session)):
    total = s.execute(
        select(func.count(ChatMessage.id))
        .join(ChatSession, ChatSession.id == ChatMessage.session_id)
        .where(
            or_(ChatSession.customer_id == me.id, ChatSession.provider_id == me.id),
            ChatSession.session_status != "deleted",
            ChatMessage.sender_id != me.id,
            ChatMessage.is_read == False,  # noqa: E712
        )
    ).scalar_one()
    return {"unread_count": total}


@router.post("/sessions")
def create_session(req: CreateSessionReq, me: AuthUser = Depends(current_user), s: Session = Depends(get_session)):
    if not req.booking_id:
        raise HTTPException(status_code=400, detail="Booking ID is required")
    b = s.get(Booking, req.booking_id)
    if not b:
        raise HTTPException(status_code=404, detail="Booking not found")
    provider = s.get(Provider, b.provider_id) if b.provider_id else None
    if b.user_id != me.id and not (provider and provider.user_id == me.id):
        raise HTTPException(status_code=403, detail="Access denied to this booking")
    existing = s.execute(select(ChatSession).where(ChatSession.booking_id == b.id)).scalars().first()
    if existing:
        return {"session": _session_out(s, existing, me.id), "created": False}
    if b.service_status not in CHAT_BOOKING_STATUSES or provider is None:
        raise HTTPException(status_code=400, detail="Chat can only be created for assigned bookings")
    cs = ChatSession(booking_id=b.id, customer_id=b.user_id, provider_id=provider.user_id)
    s.add(cs)
    s.commit()
    s.refresh(cs)
    return {"session": _session_out(s, cs, me.id), "created": True}


@router.get("/sessions/{session_id}")
def get_session_detail(session_id: int, me: AuthUser = Depends(current_user), s: Session = Depends(get_session)):
    cs, _ = _member_session(s, session_id, me, missing_status=404)
    return {"session": _session_out(s, cs, me.id)}


@router.get("/sessions/{session_id}/messages")
def list_messages(session_id: int, limit: int = 50, offset: int = 0, me: AuthUser = Depends(current_user), s: Session = Depends(get_session)):
    cs, _ = _member_session(s, session_id, me)
    limit = max(1, min(limit, 200))
    offset = max(0, offset)
    total = s.execute(select(func.count(ChatMessage.id)).where(ChatMessage.session_id == cs.id)).scalar_one()
    rows = s.execute(
        select(ChatMessage)
        .where(ChatMessage.session_id == cs.id)
        .order_by(ChatMessage.created_at.asc(), ChatMessage.id.asc())
        .offset(offset)
        .limit(limit)
    ).scalars().all()
    return {
        "messages": [_message_out(m) for m in rows],
        "total": total,
        "limit": limit,
        "offset": offset,
        "hasMore": offset + len(rows) < total,
    }


@router.post("/sessions/{session_id}/messages", status_code=201)
def send_message(session_id: int, req: SendReq, me: AuthUser = Depends(current_user), s: Session = Depends(get_session)):
    content = (req.content or "").strip()
    if not content:
        raise HTTPException(status_code=400, detail="Message content is required")
    if req.message_type not in ("text", "system"):
        raise HTTPException(status_code=400, detail="Unsupported message type")
    cs, side = _member_session(s, session_id, me)
    if cs.session_status != "active":
        raise HTTPException(status_code=400, detail="Chat session has ended")
    now = utcnow()
    m = ChatMessage(session_id=cs.id, sender_id=me.id, sender_type=side, message_type=req.message_type, content=content, created_at=now)
    s.add(m)
    cs.message_count = (cs.message_count or 0) + 1
    cs.last_message_at = now
    s.commit()
    s.refresh(m)
    return {"message": _message_out(m)}


@router.put("/sessions/{session_id}/messages/read")
def mark_read(session_id: int, req: Optional[ReadReq] = None, me: AuthUser = Depends(current_user), s: Session = Depends(get_session)):
    cs, _ = _member_session(s, session_id, me)
    stmt = update(ChatMessage).where(
        ChatMessage.session_id == cs.id,
        ChatMessage.sender_id != me.id,
        ChatMessage.is_read == False,  # noqa: E712
    )
    if req is not None and req.message_ids:
        stmt = stmt.where(ChatMessage.id.in_(req.message_ids))
    res = s.execute(stmt.values(is_read=True, read_at=utcnow()))
    s.commit()
    return {"updated": res.rowcount or 0}


@router.put("/sessions/{session_id}/end")
def end_session(session_id: int, me: AuthUser = Depends(current_user), s: Session = Depends(get_session)):
    cs, _ = _member_session(s, session_id, me)
    if cs.session_status == "active":
        cs.session_status = "ended"
        cs.ended_at = utcnow()
        s.commit()
    return {"session": _session_out(s, cs, me.id)}


@router.delete("/sessions/{session_id}")
def delete_session(session_id: int, me: AuthUser = Depends(current_user), s: Session = Depends(get_session)):
    cs, _ = _member_session(s, session_id, me)
    s.execute(delete(ChatMessage).where(ChatMessage.session_id == cs.id))
    cs.session_status = "deleted"
    cs.message_count = 0
    cs.ended_at = cs.ended_at or utcnow()
    s.commit()
    logger.info("chat session deleted", extra={"session_id": cs.id, "by": me.id})
    return {"deleted": True, "id": cs.id}
