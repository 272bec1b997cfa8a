from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from apps.omw.app import pricing
from apps.omw.app.db import utcnow
from apps.omw.app.models import Booking, FareBreakdown, PricingRule, VehicleType


def _sedan(**over) -> VehicleType:
    fields = dict(
        id=3,
        name="sedan",
        display_name="Sedan",
        base_fare_cents=5000,
        rate_per_km_cents=1500,
        rate_per_min_cents=200,
        minimum_fare_cents=8000,
        free_km_threshold=2.0,
        vehicle_multiplier=1.2,
        night_multiplier=1.25,
        surge_enabled=True,
        max_surge_multiplier=3.0,
        is_active=True,
    )
    fields.update(over)
    return VehicleType(**fields)


def test_haversine_known_distance():
    # Bengaluru MG Road to Kempegowda airport, about 27 km in a straight line
    km = pricing.haversine_km(12.9756, 77.6050, 13.1986, 77.7066)
    assert 26 < km < 28
    assert pricing.haversine_km(12.0, 77.0, 12.0, 77.0) == 0


def test_distance_falls_back_to_haversine_without_key():
    km, minutes = pricing.get_distance_and_duration((12.9716, 77.5946), (12.9352, 77.6245))
    assert km == round(pricing.haversine_km(12.9716, 77.5946, 12.9352, 77.6245), 2)
    assert minutes >= 1


def test_components_day_fare():
    c = pricing._components(_sedan(), 10, 20, night=False, surge=1.0)
    assert c["billable"] == 8.0
    assert c["distance"] == 12000
    assert c["time"] == 4000
    assert c["night"] == 0 and c["surge"] == 0
    assert c["total"] == 25200


def test_components_night_and_surge():
    c = pricing._components(_sedan(), 10, 20, night=True, surge=1.5)
    assert c["night"] == 5250
    assert c["surge"] == 10500
    assert c["total"] == 44100


def test_minimum_fare_applies():
    c = pricing._components(_sedan(), 1, 1, night=False, surge=1.0)
    assert c["distance"] == 0
    assert c["total"] == 8000


@pytest.mark.parametrize(
    "index,expected",
    [(0, 1.0), (20, 1.0), (21, 1.2), (40, 1.2), (41, 1.5), (61, 2.0), (81, 2.5), (100, 2.5)],
)
def test_surge_steps(index, expected):
    assert pricing.surge_for_demand(index) == expected


@pytest.mark.parametrize("hour,night", [(23, True), (2, True), (5, True), (6, False), (12, False), (22, False)])
def test_night_window_wraps_midnight(session, hour, night):
    assert pricing.is_night_hours(session, datetime(2024, 5, 1, hour, 30)) is night


def test_night_window_without_wrap(session):
    for key, value in (("night_hours_start", "1"), ("night_hours_end", "4")):
        session.execute(select(PricingRule).where(PricingRule.rule_key == key)).scalars().one().rule_value = value
    session.commit()
    assert pricing.is_night_hours(session, datetime(2024, 5, 1, 2, 0)) is True
    assert pricing.is_night_hours(session, datetime(2024, 5, 1, 23, 0)) is False


def test_rule_value_falls_back_on_bad_numbers(session):
    rule = session.execute(select(PricingRule).where(PricingRule.rule_key == "gst_percentage")).scalars().one()
    rule.rule_value = "eighteen"
    session.commit()
    assert pricing.rule_value(session, "gst_percentage", 18.0) == 18.0
    assert pricing.rule_value(session, "no_such_rule", 7.5) == 7.5


def test_demand_snapshot_counts_recent_rides(session, factory):
    uid = factory.user()
    now = utcnow()
    for _ in range(3):
        session.add(Booking(user_id=uid, booking_type="ride", service_status="pending"))
    session.add(Booking(user_id=uid, booking_type="ride", service_status="in_progress"))
    session.add(Booking(user_id=uid, booking_type="ride", service_status="pending", created_at=now - timedelta(hours=2)))
    session.commit()

    snap = pricing.demand_snapshot(session, now)
    assert snap.pending_requests == 3
    assert snap.active_rides == 1
    assert snap.demand_index == 35
    assert snap.surge_multiplier == 1.2


def test_surge_is_capped_and_can_be_disabled(session, factory):
    uid = factory.user()
    for _ in range(10):
        session.add(Booking(user_id=uid, booking_type="ride", service_status="pending"))
    session.commit()
    assert pricing.surge_multiplier(session, _sedan()) == 2.5
    assert pricing.surge_multiplier(session, _sedan(max_surge_multiplier=1.5)) == 1.5
    assert pricing.surge_multiplier(session, _sedan(surge_enabled=False)) == 1.0


def test_estimate_fare_uses_pickup_time(session):
    vt = session.execute(select(VehicleType).where(VehicleType.name == "sedan")).scalars().one()
    day = pricing.estimate_fare(session, vt, 10, 20, datetime(2024, 5, 1, 12, 0))
    night = pricing.estimate_fare(session, vt, 10, 20, datetime(2024, 5, 1, 23, 30))
    assert day.night_hours_applied is False
    assert night.night_hours_applied is True
    assert day.total_fare_cents == 25200
    assert night.total_fare_cents > day.total_fare_cents


@pytest.mark.parametrize(
    "estimated,actual,pct,review",
    [(10000, 11000, 10.0, False), (10000, 12000, 20.0, False), (10000, 12500, 25.0, True), (10000, 7000, 30.0, True), (0, 500, 0.0, False)],
)
def test_fare_deviation(session, estimated, actual, pct, review):
    assert pricing.fare_deviation(session, estimated, actual) == (pct, review)


def test_apply_final_fare_keeps_quoted_factors(session):
    vt = session.execute(select(VehicleType).where(VehicleType.name == "sedan")).scalars().one()
    fb = FareBreakdown(
        quote_id="q-1",
        vehicle_type_id=vt.id,
        pickup_lat=0, pickup_lng=0, drop_lat=0, drop_lng=0,
        distance_km=10, duration_min=20,
        base_fare_cents=5000, distance_component_cents=12000, time_component_cents=4000,
        night_component_cents=0, surge_component_cents=0,
        vehicle_multiplier=1.2, surge_multiplier=1.0, night_hours_applied=False,
        total_fare_cents=25200, expires_at=utcnow(),
    )
    pricing.apply_final_fare(session, fb, 12, 20, tip_cents=1000, toll_cents=500, promo_cents=300)
    # 8 -> 10 billable km adds 3000 before the 1.2 multiplier
    assert fb.final_fare_cents == 28800 + 1000 + 500 - 300
    assert fb.actual_distance_km == 12
    assert fb.fare_deviation_percentage == round(abs(30000 - 25200) / 25200 * 100, 2)

    pricing.apply_final_fare(session, fb, 10, 20, promo_cents=100000)
    assert fb.final_fare_cents == 0
