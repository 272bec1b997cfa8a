import logging
import os
from collections.abc import Callable

from fastapi import FastAPI
from fastapi.responses import JSONResponse

logger = logging.getLogger("omw.health")


def add_standard_health(app: FastAPI, checks: dict[str, Callable[[], None]] | None = None, env_key: str = "ENV"):
    """
    Mount GET /health.

    Each entry in ``checks`` is called in turn; a check that raises marks the
    service as degraded and the endpoint answers 503.
    """
    registered = dict(checks or {})

    @app.get("/health")
    def _health():
        results: dict[str, str] = {}
        ok = True
        for name, check in registered.items():
            try:
                check()
                results[name] = "ok"
            except Exception:
                logger.exception("health check %s failed", name)
                results[name] = "error"
                ok = False
        body = {
            "status": "ok" if ok else "degraded",
            "env": os.getenv(env_key, "dev"),
            "service": app.title,
            "version": getattr(app, "version", None),
            "checks": results,
        }
        return JSONResponse(body, status_code=200 if ok else 503)
