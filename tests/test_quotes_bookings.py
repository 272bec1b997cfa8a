from datetime import timedelta

import pytest
from fastapi import HTTPException
from sqlalchemy import select
from sqlalchemy.orm import Session

from apps.omw.app import bookings
from apps.omw.app.bookings import RideBookingReq
from apps.omw.app.db import utcnow
from apps.omw.app.models import AuditLog, Booking, ChatSession, FareBreakdown, ProviderEarning, User, VehicleType
from apps.omw.app.security import AuthUser

PICKUP = {"lat": 12.9716, "lng": 77.5946}
DROP = {"lat": 12.9352, "lng": 77.6245}


def _sedan_id(session) -> int:
    return session.execute(select(VehicleType.id).where(VehicleType.name == "sedan")).scalar_one()


def _quote(client, session, **over):
    body = {"pickup": PICKUP, "drop": DROP, "vehicle_type_id": _sedan_id(session)}
    body.update(over)
    resp = client.post("/api/customer/ride/quote", json=body)
    assert resp.status_code == 200, resp.text
    return resp.json()


@pytest.fixture()
def driver(factory):
    uid, pid = factory.worker()
    return pid, factory.headers(uid, "worker")


@pytest.fixture()
def booked(client, session, customer):
    _, headers = customer
    q = _quote(client, session)
    resp = client.post("/api/customer/bookings/ride", json={"quote_id": q["quotes"][0]["quote_id"]}, headers=headers)
    assert resp.status_code == 201
    return q, resp.json()


# ---- Quotes ----
def test_quote_for_every_active_type(client):
    resp = client.post("/api/customer/ride/quote", json={"pickup": PICKUP, "drop": DROP})
    assert resp.status_code == 200
    body = resp.json()
    assert [q["vehicle_type_name"] for q in body["quotes"]] == ["Bike", "Auto Rickshaw", "Sedan", "SUV"]
    assert body["currency"] == "INR"
    assert body["distance_km"] > 4
    assert len({q["quote_id"] for q in body["quotes"]}) == 4
    for q in body["quotes"]:
        assert q["total_fare_cents"] >= q["minimum_fare_cents"]


def test_quote_validation_errors(client, session):
    assert client.post("/api/customer/ride/quote", json={"drop": DROP}).status_code == 400
    bad = client.post("/api/customer/ride/quote", json={"pickup": {"lat": 123, "lng": 0}, "drop": DROP})
    assert bad.status_code == 400
    unknown = client.post("/api/customer/ride/quote", json={"pickup": PICKUP, "drop": DROP, "vehicle_type_id": 999})
    assert unknown.status_code == 404
    when = client.post("/api/customer/ride/quote", json={"pickup": PICKUP, "drop": DROP, "pickup_time": "tomorrow"})
    assert when.status_code == 400


def test_quote_persists_breakdown(client, session):
    q = _quote(client, session)
    item = q["quotes"][0]
    fb = session.execute(select(FareBreakdown).where(FareBreakdown.quote_id == item["quote_id"])).scalars().one()
    assert fb.total_fare_cents == item["total_fare_cents"]
    assert fb.booking_id is None
    assert fb.expires_at > utcnow()


def test_quote_validate(client, session, customer):
    _, headers = customer
    qid = _quote(client, session)["quotes"][0]["quote_id"]
    ok = client.post("/api/customer/ride/quote/validate", json={"quote_id": qid}).json()
    assert ok["valid"] is True and ok["used"] is False

    client.post("/api/customer/bookings/ride", json={"quote_id": qid}, headers=headers)
    used = client.post("/api/customer/ride/quote/validate", json={"quote_id": qid}).json()
    assert used["valid"] is False and used["used"] is True

    assert client.post("/api/customer/ride/quote/validate", json={"quote_id": "nope"}).status_code == 400


def test_public_vehicle_types(client):
    resp = client.get("/api/customer/ride/vehicle-types")
    assert resp.status_code == 200
    assert {v["name"] for v in resp.json()} == {"bike", "auto", "sedan", "suv"}


# ---- Booking ----
def test_book_ride_from_quote(booked, session):
    q, booking = booked
    assert booking["service_status"] == "pending"
    assert booking["estimated_cost_cents"] == q["quotes"][0]["total_fare_cents"]
    assert booking["fare"]["quote_id"] == q["quotes"][0]["quote_id"]
    assert booking["pickup"] == PICKUP


def test_quote_cannot_be_booked_twice(client, booked, customer):
    q, _ = booked
    _, headers = customer
    resp = client.post("/api/customer/bookings/ride", json={"quote_id": q["quotes"][0]["quote_id"]}, headers=headers)
    assert resp.status_code == 409


def test_quote_claim_is_guarded_against_stale_reads(client, engine, session, customer):
    uid, headers = customer
    qid = _quote(client, session)["quotes"][0]["quote_id"]
    with Session(engine) as racer:
        fb = racer.execute(select(FareBreakdown).where(FareBreakdown.quote_id == qid)).scalars().one()
        assert fb.booking_id is None
        assert client.post("/api/customer/bookings/ride", json={"quote_id": qid}, headers=headers).status_code == 201
        # racer still sees the quote as unlinked
        me = AuthUser(racer.get(User, uid), "customer", None)
        with pytest.raises(HTTPException) as exc:
            bookings.book_ride(RideBookingReq(quote_id=qid), me=me, s=racer)
        assert exc.value.status_code == 409
    assert len(session.execute(select(Booking)).scalars().all()) == 1


def test_expired_quote_is_gone(client, session, customer):
    _, headers = customer
    qid = _quote(client, session)["quotes"][0]["quote_id"]
    fb = session.execute(select(FareBreakdown).where(FareBreakdown.quote_id == qid)).scalars().one()
    fb.expires_at = utcnow() - timedelta(seconds=1)
    session.commit()
    resp = client.post("/api/customer/bookings/ride", json={"quote_id": qid}, headers=headers)
    assert resp.status_code == 410


def test_book_ride_errors(client, customer):
    _, headers = customer
    assert client.post("/api/customer/bookings/ride", json={}, headers=headers).status_code == 400
    assert client.post("/api/customer/bookings/ride", json={"quote_id": "missing"}, headers=headers).status_code == 404
    assert client.post("/api/customer/bookings/ride", json={"quote_id": "x"}).status_code == 401


def test_customer_sees_only_own_bookings(client, booked, factory):
    _, booking = booked
    other = factory.user()
    headers = factory.headers(other, "customer")
    assert client.get(f"/api/customer/bookings/{booking['id']}", headers=headers).status_code == 404
    assert client.get("/api/customer/bookings", headers=headers).json()["bookings"] == []


def test_cancel_pending_booking(client, booked, customer):
    _, booking = booked
    _, headers = customer
    resp = client.post(f"/api/customer/bookings/{booking['id']}/cancel", headers=headers)
    assert resp.status_code == 200
    assert resp.json()["service_status"] == "cancelled"
    again = client.post(f"/api/customer/bookings/{booking['id']}/cancel", headers=headers)
    assert again.status_code == 400


# ---- Trip flow ----
def test_full_trip_settles_earning(client, session, booked, driver):
    q, booking = booked
    pid, headers = driver
    bid = booking["id"]

    avail = client.get("/api/worker/trip/available", headers=headers).json()["bookings"]
    assert [b["id"] for b in avail] == [bid]

    accepted = client.post(f"/api/worker/trip/{bid}/accept", headers=headers)
    assert accepted.status_code == 200
    assert accepted.json()["provider_id"] == pid

    started = client.post("/api/worker/trip/start", json={"booking_id": bid}, headers=headers)
    assert started.status_code == 200
    assert started.json()["service_status"] == "in_progress"

    ended = client.post(
        "/api/worker/trip/end",
        json={"booking_id": bid, "distance_km": q["distance_km"], "duration_min": q["duration_min"]},
        headers=headers,
    )
    assert ended.status_code == 200
    body = ended.json()
    assert body["service_status"] == "completed"
    assert body["requires_review"] is False
    assert body["fare_deviation_percentage"] == 0.0
    assert body["actual_cost_cents"] == booking["estimated_cost_cents"]

    earning = session.execute(select(ProviderEarning).where(ProviderEarning.booking_id == bid)).scalars().one()
    assert earning.provider_id == pid
    assert earning.gross_amount_cents == body["actual_cost_cents"]
    assert earning.commission_cents + earning.gst_cents + earning.net_earnings_cents == earning.gross_amount_cents

    mine = client.get("/api/worker/trip/mine", params={"status": "completed"}, headers=headers).json()["bookings"]
    assert [b["id"] for b in mine] == [bid]


def test_additional_charges_are_added(client, booked, driver):
    q, booking = booked
    _, headers = driver
    bid = booking["id"]
    client.post(f"/api/worker/trip/{bid}/accept", headers=headers)
    client.post("/api/worker/trip/start", json={"booking_id": bid}, headers=headers)
    ended = client.post(
        "/api/worker/trip/end",
        json={
            "booking_id": bid,
            "distance_km": q["distance_km"],
            "duration_min": q["duration_min"],
            "additional_charges": {"tip_cents": 500, "toll_charges_cents": 300, "promo_discount_cents": 200},
        },
        headers=headers,
    )
    assert ended.json()["actual_cost_cents"] == booking["estimated_cost_cents"] + 600
    assert ended.json()["fare"]["final_fare_cents"] == booking["estimated_cost_cents"] + 600


def test_large_deviation_goes_to_review(client, session, booked, driver, admin):
    _, booking = booked
    _, headers = driver
    admin_id, admin_headers = admin
    bid = booking["id"]
    client.post(f"/api/worker/trip/{bid}/accept", headers=headers)
    client.post("/api/worker/trip/start", json={"booking_id": bid}, headers=headers)
    ended = client.post("/api/worker/trip/end", json={"booking_id": bid, "distance_km": 60, "duration_min": 120}, headers=headers)
    assert ended.json()["service_status"] == "pending_review"
    assert ended.json()["requires_review"] is True
    assert session.execute(select(ProviderEarning).where(ProviderEarning.booking_id == bid)).first() is None

    queue = client.get("/api/admin/bookings/pending-review", headers=admin_headers).json()["bookings"]
    assert [b["id"] for b in queue] == [bid]

    approved = client.post(f"/api/admin/bookings/{bid}/approve-fare", headers=admin_headers)
    assert approved.status_code == 200
    assert approved.json()["service_status"] == "completed"
    assert session.execute(select(ProviderEarning).where(ProviderEarning.booking_id == bid)).scalars().one()
    log = session.execute(select(AuditLog).where(AuditLog.action == "fare_approved")).scalars().one()
    assert log.user_id == admin_id

    again = client.post(f"/api/admin/bookings/{bid}/approve-fare", headers=admin_headers)
    assert again.status_code == 400


def test_second_worker_cannot_take_accepted_booking(client, booked, driver, factory):
    _, booking = booked
    _, headers = driver
    uid2, _ = factory.worker()
    other = factory.headers(uid2, "worker")
    assert client.post(f"/api/worker/trip/{booking['id']}/accept", headers=headers).status_code == 200
    assert client.post(f"/api/worker/trip/{booking['id']}/accept", headers=other).status_code == 409
    assert client.post("/api/worker/trip/start", json={"booking_id": booking["id"]}, headers=other).status_code == 403


def test_trip_state_machine_rejects_out_of_order(client, booked, driver):
    _, booking = booked
    _, headers = driver
    bid = booking["id"]
    client.post(f"/api/worker/trip/{bid}/accept", headers=headers)
    resp = client.post("/api/worker/trip/end", json={"booking_id": bid}, headers=headers)
    assert resp.status_code == 400
    assert "accepted" in resp.json()["detail"]
    assert client.post("/api/worker/trip/start", json={}, headers=headers).status_code == 400


def test_unverified_worker_cannot_accept(client, booked, factory):
    _, booking = booked
    uid, _ = factory.worker(verified=False)
    headers = factory.headers(uid, "worker")
    assert client.post(f"/api/worker/trip/{booking['id']}/accept", headers=headers).status_code == 403


def test_completed_trip_ends_chat(client, session, booked, driver, customer):
    q, booking = booked
    _, headers = driver
    _, cust_headers = customer
    bid = booking["id"]
    client.post(f"/api/worker/trip/{bid}/accept", headers=headers)
    created = client.post("/api/chat/sessions", json={"booking_id": bid}, headers=cust_headers)
    assert created.status_code == 200
    client.post("/api/worker/trip/start", json={"booking_id": bid}, headers=headers)
    client.post(
        "/api/worker/trip/end",
        json={"booking_id": bid, "distance_km": q["distance_km"], "duration_min": q["duration_min"]},
        headers=headers,
    )
    chat = session.execute(select(ChatSession).where(ChatSession.booking_id == bid)).scalars().one()
    assert chat.session_status == "ended"
    assert session.get(Booking, bid).service_status == "completed"
