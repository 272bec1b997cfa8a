import pytest
from sqlalchemy import func, select

from apps.omw.app.models import Booking, ProviderEarning
from apps.omw.app.settlement import settle_booking, split_fare


@pytest.mark.parametrize("fare", [0, 1, 999, 25200, 123457])
def test_split_parts_sum_to_fare(fare):
    commission, gst, net = split_fare(fare, 20, 18)
    assert commission + gst + net == fare
    assert commission == round(fare * 0.2)


def test_split_example():
    assert split_fare(10000, 20, 18) == (2000, 360, 7640)


def test_settle_is_idempotent(session, factory):
    uid = factory.user()
    _, pid = factory.worker()
    b = Booking(user_id=uid, provider_id=pid, service_status="completed", actual_cost_cents=10000)
    session.add(b)
    session.commit()

    first = settle_booking(session, b)
    session.commit()
    second = settle_booking(session, b)
    session.commit()
    assert first.id == second.id
    assert first.net_earnings_cents == 7640
    assert first.status == "pending"
    assert session.execute(select(func.count(ProviderEarning.id))).scalar_one() == 1


def test_settle_skips_unassigned_or_unpriced(session, factory):
    uid = factory.user()
    _, pid = factory.worker()
    no_provider = Booking(user_id=uid, actual_cost_cents=5000)
    no_cost = Booking(user_id=uid, provider_id=pid)
    session.add_all([no_provider, no_cost])
    session.commit()
    assert settle_booking(session, no_provider) is None
    assert settle_booking(session, no_cost) is None
