import csv
import logging
import threading
import time
from datetime import datetime, timedelta
from io import StringIO
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from pydantic import BaseModel
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from . import config
from .audit import log_action
from .db import get_session, utcnow
from .models import PayoutBatch, PayoutDetail, Provider, ProviderEarning, User
from .security import AuthUser, require_admin

router = APIRouter()
logger = logging.getLogger("omw.payouts")

DATE_RANGES = ("this_week", "this_month", "last_month", "last_3_months")


class BatchCreateReq(BaseModel):
    provider_ids: Optional[List[int]] = None
    notes: Optional[str] = None


def _month_start(d: datetime) -> datetime:
    return d.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def _months_back(start: datetime, n: int) -> datetime:
    y, m = start.year, start.month - n
    while m <= 0:
        m += 12
        y -= 1
    return start.replace(year=y, month=m)


def date_window(date_range: str, now: Optional[datetime] = None) -> tuple[Optional[datetime], Optional[datetime]]:
    """[start, end) for a named range; (None, None) for anything unknown."""
    now = now or utcnow()
    today = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if date_range == "this_week":
        return today - timedelta(days=today.weekday()), None
    if date_range == "this_month":
        return _month_start(now), None
    if date_range == "last_month":
        this = _month_start(now)
        return _months_back(this, 1), this
    if date_range == "last_3_months":
        return _months_back(_month_start(now), 3), None
    return None, None


def _sum_net(s: Session, *where) -> int:
    return int(s.execute(select(func.coalesce(func.sum(ProviderEarning.net_earnings_cents), 0)).where(*where)).scalar_one() or 0)


def _iso(v):
    return v.isoformat() if v else None


def _batch_out(b: PayoutBatch) -> dict:
    return {
        "id": b.id,
        "batch_reference": b.batch_reference,
        "total_amount_cents": b.total_amount_cents,
        "provider_count": b.provider_count,
        "status": b.status,
        "payout_method": b.payout_method,
        "notes": b.notes,
        "created_by": b.created_by,
        "created_at": _iso(b.created_at),
        "processed_at": _iso(b.processed_at),
        "completed_at": _iso(b.completed_at),
    }


def _unbatched_pending():
    return (ProviderEarning.status == "pending", ProviderEarning.payout_batch_id.is_(None))


def _next_reference(s: Session) -> str:
    ts = int(time.time())
    ref, n = f"BATCH_{ts}", 1
    while s.execute(select(PayoutBatch.id).where(PayoutBatch.batch_reference == ref)).first():
        ref = f"BATCH_{ts}_{n}"
        n += 1
    return ref


def create_batch(s: Session, provider_ids: Optional[List[int]], notes: Optional[str], created_by: Optional[int]) -> PayoutBatch:
    """
    Attach every pending, unbatched earning of the chosen providers to a new
    batch. The batch total is the sum of the attached net earnings and each
    provider gets one detail row with its share. Caller commits.
    """
    q = select(ProviderEarning).where(*_unbatched_pending())
    if provider_ids:
        q = q.where(ProviderEarning.provider_id.in_(provider_ids))
    earnings = s.execute(q.order_by(ProviderEarning.provider_id, ProviderEarning.id)).scalars().all()
    if not earnings:
        raise HTTPException(status_code=400, detail="No pending earnings to pay out")
    batch = PayoutBatch(batch_reference=_next_reference(s), notes=notes, created_by=created_by, status="created")
    s.add(batch)
    s.flush()
    per_provider: dict[int, list[ProviderEarning]] = {}
    for e in earnings:
        e.payout_batch_id = batch.id
        per_provider.setdefault(e.provider_id, []).append(e)
    for pid, rows in per_provider.items():
        s.add(PayoutDetail(
            batch_id=batch.id,
            provider_id=pid,
            amount_cents=sum(r.net_earnings_cents for r in rows),
            earnings_count=len(rows),
        ))
    batch.total_amount_cents = sum(e.net_earnings_cents for e in earnings)
    batch.provider_count = len(per_provider)
    return batch


def _batch_earnings(s: Session, batch_id: int) -> list[ProviderEarning]:
    return list(s.execute(select(ProviderEarning).where(ProviderEarning.payout_batch_id == batch_id)).scalars().all())


def complete_batch(s: Session, batch: PayoutBatch) -> None:
    """Mark a processing batch, its details and its earnings paid. Caller commits."""
    now = utcnow()
    batch.status = "completed"
    batch.completed_at = now
    for d in s.execute(select(PayoutDetail).where(PayoutDetail.batch_id == batch.id)).scalars().all():
        d.status = "paid"
        d.paid_at = now
    for e in _batch_earnings(s, batch.id):
        e.status = "paid"
        e.paid_at = now


def _schedule_completion(bind, batch_id: int, delay: float) -> None:
    def _run():
        time.sleep(delay)
        try:
            with Session(bind) as s:
                batch = s.get(PayoutBatch, batch_id)
                if batch is None or batch.status != "processing":
                    return
                complete_batch(s, batch)
                log_action(s, None, "payout_batch_completed", "payout_batch", batch_id, {"auto": True})
                s.commit()
            logger.info("payout batch completed", extra={"batch_id": batch_id})
        except Exception:
            logger.exception("payout batch auto-completion failed", extra={"batch_id": batch_id})
    threading.Thread(target=_run, name=f"payout-{batch_id}", daemon=True).start()


def _get_batch_or_404(s: Session, batch_id: int) -> PayoutBatch:
    b = s.get(PayoutBatch, batch_id)
    if not b:
        raise HTTPException(status_code=404, detail="Payout batch not found")
    return b


@router.get("/stats")
def payout_stats(me: AuthUser = Depends(require_admin), s: Session = Depends(get_session)):
    pending = _unbatched_pending()
    pending_providers = s.execute(
        select(func.count(func.distinct(ProviderEarning.provider_id))).where(*pending)
    ).scalar_one()
    return {
        "pending_amount_cents": _sum_net(s, *pending),
        "pending_provider_count": pending_providers,
        "batched_amount_cents": _sum_net(s, ProviderEarning.status == "pending", ProviderEarning.payout_batch_id.is_not(None)),
        "processing_amount_cents": _sum_net(s, ProviderEarning.status == "processing"),
        "paid_this_month_cents": _sum_net(s, ProviderEarning.status == "paid", ProviderEarning.paid_at >= _month_start(utcnow())),
        "batch_count": s.execute(select(func.count(PayoutBatch.id))).scalar_one(),
    }


@router.get("/provider-earnings")
def provider_earnings(date_range: str = "this_month", me: AuthUser = Depends(require_admin), s: Session = Depends(get_session)):
    if date_range not in DATE_RANGES:
        raise HTTPException(status_code=400, detail=f"date_range must be one of {', '.join(DATE_RANGES)}")
    start, end = date_window(date_range)
    E = ProviderEarning
    q = (
        select(
            E.provider_id,
            User.name,
            User.email,
            func.count(E.id),
            func.sum(E.gross_amount_cents),
            func.sum(E.commission_cents),
            func.sum(E.gst_cents),
            func.sum(E.net_earnings_cents),
        )
        .join(Provider, Provider.id == E.provider_id)
        .join(User, User.id == Provider.user_id)
        .where(E.earned_at >= start)
        .group_by(E.provider_id, User.name, User.email)
        .order_by(func.sum(E.net_earnings_cents).desc())
    )
    if end is not None:
        q = q.where(E.earned_at < end)
    out = []
    for pid, name, email, count, gross, commission, gst, net in s.execute(q).all():
        out.append({
            "provider_id": pid,
            "name": name,
            "email": email,
            "total_bookings": count,
            "gross_amount_cents": int(gross or 0),
            "commission_cents": int(commission or 0),
            "gst_cents": int(gst or 0),
            "net_earnings_cents": int(net or 0),
        })
    return {"date_range": date_range, "start": _iso(start), "end": _iso(end), "providers": out}


@router.get("/pending")
def pending_payouts(me: AuthUser = Depends(require_admin), s: Session = Depends(get_session)):
    E = ProviderEarning
    rows = s.execute(
        select(E.provider_id, User.name, User.email, func.count(E.id), func.sum(E.net_earnings_cents), func.min(E.earned_at))
        .join(Provider, Provider.id == E.provider_id)
        .join(User, User.id == Provider.user_id)
        .where(*_unbatched_pending())
        .group_by(E.provider_id, User.name, User.email)
        .order_by(func.min(E.earned_at))
    ).all()
    return {
        "providers": [
            {
                "provider_id": pid,
                "name": name,
                "email": email,
                "earnings_count": count,
                "pending_amount_cents": int(net or 0),
                "oldest_earning_at": _iso(oldest),
            }
            for pid, name, email, count, net, oldest in rows
        ]
    }


@router.get("/batches")
def list_batches(date_range: str = "", status: str = "", limit: int = 50, me: AuthUser = Depends(require_admin), s: Session = Depends(get_session)):
    limit = max(1, min(limit, 200))
    q = select(PayoutBatch)
    start, end = date_window(date_range)
    if start is not None:
        q = q.where(PayoutBatch.created_at >= start)
    if end is not None:
        q = q.where(PayoutBatch.created_at < end)
    if status:
        q = q.where(PayoutBatch.status == status)
    rows = s.execute(q.order_by(PayoutBatch.created_at.desc(), PayoutBatch.id.desc()).limit(limit)).scalars().all()
    return {"batches": [_batch_out(b) for b in rows]}


@router.post("/batches", status_code=201)
def post_batch(req: BatchCreateReq, request: Request, me: AuthUser = Depends(require_admin), s: Session = Depends(get_session)):
    batch = create_batch(s, req.provider_ids, req.notes, me.id)
    log_action(
        s, me, "payout_batch_created", "payout_batch", batch.id,
        {"batch_reference": batch.batch_reference, "total_amount_cents": batch.total_amount_cents, "provider_count": batch.provider_count},
        request,
    )
    s.commit()
    s.refresh(batch)
    logger.info("payout batch created", extra={"batch_id": batch.id, "total_cents": batch.total_amount_cents})
    return _batch_out(batch)


@router.post("/batches/{batch_id}/process")
def process_batch(batch_id: int, request: Request, me: AuthUser = Depends(require_admin), s: Session = Depends(get_session)):
    batch = s.get(PayoutBatch, batch_id)
    if not batch or batch.status != "created":
        raise HTTPException(status_code=404, detail="Batch not found or already processed")
    batch.status = "processing"
    batch.processed_at = utcnow()
    for e in _batch_earnings(s, batch.id):
        e.status = "processing"
    log_action(s, me, "payout_batch_processing", "payout_batch", batch.id, None, request)
    s.commit()
    s.refresh(batch)
    if config.PAYOUT_AUTO_COMPLETE_SECS > 0:
        _schedule_completion(s.get_bind(), batch.id, config.PAYOUT_AUTO_COMPLETE_SECS)
    return _batch_out(batch)


@router.post("/batches/{batch_id}/complete")
def complete_batch_route(batch_id: int, request: Request, me: AuthUser = Depends(require_admin), s: Session = Depends(get_session)):
    batch = _get_batch_or_404(s, batch_id)
    if batch.status != "processing":
        raise HTTPException(status_code=409, detail=f"Batch is not processing. Current status: {batch.status}")
    complete_batch(s, batch)
    log_action(s, me, "payout_batch_completed", "payout_batch", batch.id, None, request)
    s.commit()
    s.refresh(batch)
    return _batch_out(batch)


@router.get("/batches/{batch_id}")
def get_batch(batch_id: int, me: AuthUser = Depends(require_admin), s: Session = Depends(get_session)):
    batch = _get_batch_or_404(s, batch_id)
    details = s.execute(
        select(PayoutDetail, User.name, User.email)
        .join(Provider, Provider.id == PayoutDetail.provider_id)
        .join(User, User.id == Provider.user_id)
        .where(PayoutDetail.batch_id == batch.id)
        .order_by(PayoutDetail.id)
    ).all()
    out = _batch_out(batch)
    out["details"] = [
        {
            "provider_id": d.provider_id,
            "name": name,
            "email": email,
            "amount_cents": d.amount_cents,
            "earnings_count": d.earnings_count,
            "status": d.status,
            "paid_at": _iso(d.paid_at),
        }
        for d, name, email in details
    ]
    return out


@router.get("/batches/{batch_id}/report")
def batch_report(batch_id: int, me: AuthUser = Depends(require_admin), s: Session = Depends(get_session)):
    batch = _get_batch_or_404(s, batch_id)
    rows = s.execute(
        select(PayoutDetail, User.name, User.email)
        .join(Provider, Provider.id == PayoutDetail.provider_id)
        .join(User, User.id == Provider.user_id)
        .where(PayoutDetail.batch_id == batch.id)
        .order_by(PayoutDetail.id)
    ).all()
    buf = StringIO()
    w = csv.writer(buf)
    w.writerow(["batch_reference", "provider_id", "provider_name", "provider_email", "amount_cents", "amount", "earnings_count", "status", "paid_at"])
    for d, name, email in rows:
        w.writerow([
            batch.batch_reference,
            d.provider_id,
            name or "",
            email or "",
            d.amount_cents,
            f"{d.amount_cents / 100.0:.2f}",
            d.earnings_count,
            d.status,
            _iso(d.paid_at) or "",
        ])
    headers = {"Content-Disposition": f"attachment; filename=payout_{batch.batch_reference}.csv"}
    return Response(content=buf.getvalue(), media_type="text/csv", headers=headers)
