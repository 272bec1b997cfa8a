import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from .models import Booking, ProviderEarning
from .pricing import rule_value

logger = logging.getLogger("omw.settlement")

DEFAULT_COMMISSION_PCT = 20.0
DEFAULT_GST_PCT = 18.0


def split_fare(fare_cents: int, commission_pct: float, gst_pct: float) -> tuple[int, int, int]:
    """(commission, gst on commission, provider net), all cents; parts sum to the fare."""
    commission = int(round(fare_cents * commission_pct / 100))
    gst = int(round(commission * gst_pct / 100))
    return commission, gst, fare_cents - commission - gst


def settle_booking(s: Session, booking: Booking) -> Optional[ProviderEarning]:
    """
    Record the provider's earning for a completed booking.

    Returns the existing row when the booking was already settled and None
    when there is nothing to settle (no provider or no final cost). The
    caller commits.
    """
    existing = s.execute(select(ProviderEarning).where(ProviderEarning.booking_id == booking.id)).scalars().first()
    if existing:
        return existing
    if booking.provider_id is None or booking.actual_cost_cents is None:
        return None
    commission_pct = rule_value(s, "platform_commission_percentage", DEFAULT_COMMISSION_PCT)
    gst_pct = rule_value(s, "gst_percentage", DEFAULT_GST_PCT)
    commission, gst, net = split_fare(booking.actual_cost_cents, commission_pct, gst_pct)
    row = ProviderEarning(
        provider_id=booking.provider_id,
        booking_id=booking.id,
        gross_amount_cents=booking.actual_cost_cents,
        commission_cents=commission,
        gst_cents=gst,
        net_earnings_cents=net,
        status="pending",
    )
    s.add(row)
    logger.info("booking settled", extra={"booking_id": booking.id, "net_cents": net})
    return row
