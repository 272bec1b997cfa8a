from __future__ import annotations

from fastapi.middleware.cors import CORSMiddleware

# Vite and CRA dev servers used by the dashboards.
_DEV_ORIGINS = [
    "http://localhost:5173",
    "http://127.0.0.1:5173",
    "http://localhost:3000",
]


def configure_cors(app, allowed: str | None, frontend_url: str | None = None):
    origins = [o.strip().rstrip("/") for o in (allowed or "").split(",") if o.strip()]
    if frontend_url and frontend_url.rstrip("/") not in origins and "*" not in origins:
        origins.append(frontend_url.rstrip("/"))
    if not origins:
        origins = list(_DEV_ORIGINS)

    # Browsers reject credentialed requests against a wildcard origin.
    wildcard = "*" in origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if wildcard else origins,
        allow_credentials=not wildcard,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
        expose_headers=["X-Request-ID", "Content-Disposition"],
    )
