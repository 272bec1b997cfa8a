import csv
import json
import logging
from datetime import date, datetime, timedelta
from io import StringIO
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Response
from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from .db import get_session
from .models import AuditLog
from .security import AuthUser, normalize_role, require_superadmin

router = APIRouter()
logger = logging.getLogger("omw.audit_logs")

EXPORT_LIMIT = 10000


def _parse_bound(raw: str, label: str, end: bool = False) -> Optional[datetime]:
    raw = (raw or "").strip()
    if not raw:
        return None
    try:
        if len(raw) == 10:
            d = date.fromisoformat(raw)
            start = datetime(d.year, d.month, d.day)
            # a bare end date covers that whole day
            return start + timedelta(days=1) if end else start
        return datetime.fromisoformat(raw.replace("Z", "+00:00")).replace(tzinfo=None)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid {label}")


def filtered_query(startDate: str = "", endDate: str = "", role: str = "", action: str = "", search: str = ""):
    q = select(AuditLog)
    start = _parse_bound(startDate, "startDate")
    end = _parse_bound(endDate, "endDate", end=True)
    if start is not None:
        q = q.where(AuditLog.created_at >= start)
    if end is not None:
        q = q.where(AuditLog.created_at < end)
    if role.strip():
        q = q.where(AuditLog.user_role == normalize_role(role))
    if action.strip():
        q = q.where(AuditLog.action == action.strip())
    if search.strip():
        like = f"%{search.strip().lower()}%"
        q = q.where(or_(
            func.lower(AuditLog.user_email).like(like),
            func.lower(AuditLog.action).like(like),
            func.lower(AuditLog.entity_type).like(like),
            func.lower(AuditLog.details).like(like),
        ))
    return q


def log_out(row: AuditLog) -> dict:
    details = None
    if row.details:
        try:
            details = json.loads(row.details)
        except ValueError:
            details = row.details
    return {
        "id": row.id,
        "user_id": row.user_id,
        "user_email": row.user_email,
        "user_role": row.user_role,
        "action": row.action,
        "entity_type": row.entity_type,
        "entity_id": row.entity_id,
        "details": details,
        "ip_address": row.ip_address,
        "user_agent": row.user_agent,
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }


@router.get("")
def list_logs(
    page: int = 1,
    limit: int = 50,
    startDate: str = "",
    endDate: str = "",
    role: str = "",
    action: str = "",
    search: str = "",
    me: AuthUser = Depends(require_superadmin),
    s: Session = Depends(get_session),
):
    page = max(1, page)
    limit = max(1, min(limit, 200))
    q = filtered_query(startDate, endDate, role, action, search)
    total = s.execute(select(func.count()).select_from(q.subquery())).scalar_one()
    rows = s.execute(q.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).offset((page - 1) * limit).limit(limit)).scalars().all()
    return {
        "logs": [log_out(r) for r in rows],
        "pagination": {"page": page, "limit": limit, "total": total, "pages": (total + limit - 1) // limit},
    }


@router.get("/actions")
def list_actions(me: AuthUser = Depends(require_superadmin), s: Session = Depends(get_session)):
    rows = s.execute(select(AuditLog.action).distinct().order_by(AuditLog.action)).scalars().all()
    return {"actions": list(rows)}


@router.get("/export/csv")
def export_csv(
    startDate: str = "",
    endDate: str = "",
    role: str = "",
    action: str = "",
    search: str = "",
    me: AuthUser = Depends(require_superadmin),
    s: Session = Depends(get_session),
):
    q = filtered_query(startDate, endDate, role, action, search)
    rows = s.execute(q.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).limit(EXPORT_LIMIT)).scalars().all()
    buf = StringIO()
    w = csv.writer(buf)
    w.writerow(["id", "created_at", "user_id", "user_email", "user_role", "action", "entity_type", "entity_id", "ip_address", "details"])
    for r in rows:
        w.writerow([
            r.id,
            r.created_at.isoformat() if r.created_at else "",
            r.user_id or "",
            r.user_email or "",
            r.user_role or "",
            r.action,
            r.entity_type or "",
            r.entity_id or "",
            r.ip_address or "",
            r.details or "",
        ])
    headers = {"Content-Disposition": "attachment; filename=audit_logs.csv"}
    return Response(content=buf.getvalue(), media_type="text/csv", headers=headers)


@router.get("/{log_id}")
def get_log(log_id: int, me: AuthUser = Depends(require_superadmin), s: Session = Depends(get_session)):
    row = s.get(AuditLog, log_id)
    if not row:
        raise HTTPException(status_code=404, detail="Audit log not found")
    return log_out(row)
