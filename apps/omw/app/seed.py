import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from .models import PricingRule, Role, SurgeZone, VehicleType

logger = logging.getLogger("omw.seed")

DEFAULT_ROLES = [
    ("customer", "Books services and rides"),
    ("worker", "Service provider / driver"),
    ("admin", "Operations admin"),
    ("super admin", "Platform owner"),
]

DEFAULT_VEHICLE_TYPES = [
    # name, display, base, per km, per min, minimum, multiplier
    ("bike", "Bike", 2000, 800, 100, 3000, 0.8),
    ("auto", "Auto Rickshaw", 3000, 1200, 150, 4000, 1.0),
    ("sedan", "Sedan", 5000, 1500, 200, 8000, 1.2),
    ("suv", "SUV", 7000, 1800, 250, 10000, 1.5),
]

DEFAULT_RULES = [
    # key, value, category, description
    ("night_hours_start", "23", "time", "Hour (0-23) from which night fares apply"),
    ("night_hours_end", "6", "time", "Hour (0-23) at which night fares stop"),
    ("platform_commission_percentage", "20", "commission", "Platform share of each fare"),
    ("gst_percentage", "18", "commission", "GST charged on the platform commission"),
    ("service_gst_percentage", "18", "commission", "GST added to service booking subtotals"),
    ("max_fare_deviation_percentage", "20", "validation", "Final fare deviation that triggers a review"),
    ("surge_window_minutes", "30", "surge", "Demand look-back window"),
]


def seed_defaults(s: Session) -> None:
    """Insert reference rows that are missing. Existing rows are left alone."""
    have_roles = set(s.execute(select(Role.name)).scalars().all())
    for name, desc in DEFAULT_ROLES:
        if name not in have_roles:
            s.add(Role(name=name, description=desc))
    have_types = set(s.execute(select(VehicleType.name)).scalars().all())
    for name, display, base, per_km, per_min, minimum, mult in DEFAULT_VEHICLE_TYPES:
        if name not in have_types:
            s.add(VehicleType(
                name=name,
                display_name=display,
                base_fare_cents=base,
                rate_per_km_cents=per_km,
                rate_per_min_cents=per_min,
                minimum_fare_cents=minimum,
                vehicle_multiplier=mult,
            ))
    have_rules = set(s.execute(select(PricingRule.rule_key)).scalars().all())
    for key, value, category, desc in DEFAULT_RULES:
        if key not in have_rules:
            s.add(PricingRule(rule_key=key, rule_value=value, category=category, description=desc))
    if not s.execute(select(SurgeZone.id).limit(1)).first():
        s.add(SurgeZone(zone_name="City Centre", center_lat=12.9716, center_lng=77.5946, radius_km=5.0))
    s.commit()
    logger.info("reference data ensured")
