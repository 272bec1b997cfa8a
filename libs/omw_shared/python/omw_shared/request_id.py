import uuid
from contextvars import ContextVar

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

_rid_ctx: ContextVar[str] = ContextVar("omw_request_id", default="")

_MAX_INBOUND_LEN = 128


def get_request_id() -> str:
    """Request id of the current request, or "" outside of one."""
    return _rid_ctx.get()


def _clean(raw: str | None) -> str:
    rid = (raw or "").strip()
    if not rid or len(rid) > _MAX_INBOUND_LEN or not rid.isprintable():
        return uuid.uuid4().hex
    return rid


class RequestIDMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, header_name: str = "X-Request-ID"):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request: Request, call_next):
        rid = _clean(request.headers.get(self.header_name))
        token = _rid_ctx.set(rid)
        try:
            response: Response = await call_next(request)
        finally:
            _rid_ctx.reset(token)
        response.headers[self.header_name] = rid
        return response
