import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError

logger = logging.getLogger("omw.errors")


def install_error_handlers(app: FastAPI) -> None:
    """
    Map errors that escape route handlers onto JSON responses.

    HTTPException and request validation keep FastAPI's own handlers.
    Unique/foreign key violations become 409; anything else is logged with
    its traceback and reported as a bare 500.
    """

    @app.exception_handler(IntegrityError)
    async def _integrity(request: Request, exc: IntegrityError):
        logger.warning("integrity error on %s %s: %s", request.method, request.url.path, exc.orig)
        return JSONResponse({"detail": "conflict"}, status_code=409)

    @app.exception_handler(Exception)
    async def _unexpected(request: Request, exc: Exception):
        logger.exception("unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse({"detail": "internal error"}, status_code=500)
