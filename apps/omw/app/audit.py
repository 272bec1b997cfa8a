import json
import logging
from typing import Any, Optional

from fastapi import Request
from sqlalchemy.orm import Session

from .models import AuditLog

_audit_logger = logging.getLogger("omw.audit")


def client_ip(request: Optional[Request]) -> Optional[str]:
    if request is None:
        return None
    fwd = request.headers.get("x-forwarded-for")
    if fwd:
        return fwd.split(",")[0].strip()
    if request.client and request.client.host:
        return request.client.host
    return None


def log_action(
    s: Session,
    actor,
    action: str,
    entity_type: Optional[str] = None,
    entity_id: Any = None,
    details: Optional[dict] = None,
    request: Optional[Request] = None,
) -> AuditLog:
    """
    Stage an audit row in the caller's transaction.

    ``actor`` is an AuthUser or None for system actions. The caller commits,
    so the trail only exists when the audited change does.
    """
    row = AuditLog(
        user_id=getattr(actor, "id", None),
        user_email=getattr(actor, "email", None),
        user_role=getattr(actor, "role", None),
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id) if entity_id is not None else None,
        details=json.dumps(details, default=str) if details else None,
        ip_address=client_ip(request),
        user_agent=(request.headers.get("user-agent") or "")[:255] if request is not None else None,
    )
    s.add(row)
    _audit_logger.info(
        "audit %s", action,
        extra={"actor_id": row.user_id, "entity_type": entity_type, "entity_id": row.entity_id},
    )
    return row
