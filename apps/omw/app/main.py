import logging

from fastapi import FastAPI
from sqlalchemy import text
from sqlalchemy.orm import Session

from omw_shared import (
    RequestIDMiddleware,
    add_standard_health,
    configure_cors,
    install_error_handlers,
    register_startup,
    setup_json_logging,
)

from . import (
    addresses,
    audit_logs,
    auth,
    bookings,
    cart,
    cash_payments,
    catalogue,
    chat,
    config,
    customer_admin,
    oauth,
    payment_settings,
    payments,
    payouts,
    pricing_admin,
    quotes,
    service_bookings,
    superadmin,
    system_settings,
    workers,
)
from .db import Base, engine
from .seed import seed_defaults

logger = logging.getLogger("omw.main")

app = FastAPI(title="OMW Hub API", version="1.0.0")
setup_json_logging()
app.add_middleware(RequestIDMiddleware)
configure_cors(app, config.ALLOWED_ORIGINS, config.FRONTEND_URL)
install_error_handlers(app)


def _db_check() -> None:
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))


add_standard_health(app, checks={"db": _db_check})

app.include_router(auth.router, prefix="/api/auth", tags=["auth"])
app.include_router(oauth.router, prefix="/api/auth", tags=["oauth"])
app.include_router(workers.router, prefix="/api/worker-management", tags=["workers"])
app.include_router(cash_payments.router, prefix="/api/worker-management", tags=["cash-payments"])
app.include_router(catalogue.router, prefix="/api/categories", tags=["catalogue"])
app.include_router(cart.router, prefix="/api/customer/cart", tags=["cart"])
app.include_router(addresses.router, prefix="/api/customer/addresses", tags=["addresses"])
app.include_router(quotes.router, prefix="/api/customer/ride", tags=["rides"])
# fixed /api/customer/bookings/<name> paths go before /{booking_id}
app.include_router(service_bookings.router, prefix="/api/customer/bookings", tags=["service-bookings"])
app.include_router(bookings.router, prefix="/api/customer/bookings", tags=["bookings"])
app.include_router(service_bookings.worker_router, prefix="/api/worker/service-bookings", tags=["service-bookings"])
app.include_router(bookings.trip_router, prefix="/api/worker/trip", tags=["trips"])
app.include_router(bookings.admin_router, prefix="/api/admin/bookings", tags=["bookings"])
app.include_router(customer_admin.router, prefix="/api/admin", tags=["customers"])
app.include_router(payments.router, prefix="/api/payment", tags=["payments"])
app.include_router(payouts.router, prefix="/api/admin/payouts", tags=["payouts"])
app.include_router(pricing_admin.router, prefix="/api/admin/pricing", tags=["pricing"])
app.include_router(chat.router, prefix="/api/chat", tags=["chat"])
# fixed /api/superadmin/<name> prefixes go before the /{admin_id} routes
app.include_router(payment_settings.router, prefix="/api/superadmin/payment-settings", tags=["payment-settings"])
app.include_router(audit_logs.router, prefix="/api/superadmin/audit-logs", tags=["audit-logs"])
app.include_router(system_settings.router, prefix="/api/superadmin/system-settings", tags=["system-settings"])
app.include_router(superadmin.router, prefix="/api/superadmin", tags=["superadmin"])


@register_startup(app)
def _check_config():
    config.assert_production_ready()


@register_startup(app)
def _prepare_database():
    if config.AUTO_CREATE_TABLES:
        Base.metadata.create_all(engine)
    with Session(engine) as s:
        seed_defaults(s)
