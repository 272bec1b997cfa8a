import hashlib
import hmac
import json

import httpx
import pytest
from sqlalchemy import select

from apps.omw.app import config, payments
from apps.omw.app.models import Booking, Payment, ProviderEarning

KEY_ID = "rzp_test_key"
KEY_SECRET = "rzp_test_secret"
WEBHOOK_SECRET = "whsec_test"


def _sign(secret: str, msg: bytes) -> str:
    return hmac.new(secret.encode(), msg, hashlib.sha256).hexdigest()


@pytest.fixture()
def gateway(monkeypatch):
    monkeypatch.setenv("RAZORPAY_KEY_ID", KEY_ID)
    monkeypatch.setenv("RAZORPAY_KEY_SECRET", KEY_SECRET)
    monkeypatch.setattr(config, "RAZORPAY_WEBHOOK_SECRET", WEBHOOK_SECRET)
    calls = []

    def _order(key_id, key_secret, amount_cents, receipt, notes):
        calls.append({"key_id": key_id, "amount": amount_cents, "receipt": receipt, "notes": notes})
        return {"id": f"order_{len(calls)}", "amount": amount_cents, "status": "created"}

    monkeypatch.setattr(payments, "create_razorpay_order", _order)
    return calls


@pytest.fixture()
def completed_booking(session, factory, customer):
    uid, _ = customer
    _, pid = factory.worker()
    b = Booking(
        user_id=uid,
        provider_id=pid,
        service_status="completed",
        estimated_cost_cents=24000,
        actual_cost_cents=25000,
    )
    session.add(b)
    session.flush()
    bid = b.id
    session.commit()
    return bid


def _create_order(client, headers, booking_id):
    return client.post("/api/payment/razorpay/create-order", json={"booking_id": booking_id}, headers=headers)


def test_signature_helpers():
    sig = _sign(KEY_SECRET, b"order_1|pay_1")
    assert payments.verify_payment_signature("order_1", "pay_1", sig, KEY_SECRET)
    assert not payments.verify_payment_signature("order_1", "pay_2", sig, KEY_SECRET)
    assert not payments.verify_payment_signature("order_1", "pay_1", "", KEY_SECRET)
    assert payments.verify_webhook_signature(b"{}", _sign("s", b"{}"), "s")


def test_create_order_charges_final_fare(client, gateway, completed_booking, customer):
    _, headers = customer
    resp = _create_order(client, headers, completed_booking)
    assert resp.status_code == 200
    body = resp.json()
    assert body["order_id"] == "order_1"
    assert body["amount"] == 25000
    assert body["key_id"] == KEY_ID
    assert body["payment"]["status"] == "created"
    assert gateway[0]["receipt"] == f"booking_{completed_booking}"


def test_create_order_errors(client, gateway, completed_booking, customer, factory):
    _, headers = customer
    assert client.post("/api/payment/razorpay/create-order", json={}, headers=headers).status_code == 400
    stranger = factory.headers(factory.user(), "customer")
    assert _create_order(client, stranger, completed_booking).status_code == 404


def test_create_order_without_keys(client, monkeypatch, completed_booking, customer):
    _, headers = customer
    monkeypatch.delenv("RAZORPAY_KEY_ID", raising=False)
    monkeypatch.delenv("RAZORPAY_KEY_SECRET", raising=False)
    assert _create_order(client, headers, completed_booking).status_code == 503


def test_create_order_gateway_failure(client, gateway, monkeypatch, completed_booking, customer):
    _, headers = customer

    def _down(*a, **kw):
        raise httpx.ConnectError("gateway down")

    monkeypatch.setattr(payments, "create_razorpay_order", _down)
    assert _create_order(client, headers, completed_booking).status_code == 502


def test_payment_success_captures_and_settles(client, session, gateway, completed_booking, customer):
    _, headers = customer
    order_id = _create_order(client, headers, completed_booking).json()["order_id"]
    body = {
        "razorpay_order_id": order_id,
        "razorpay_payment_id": "pay_1",
        "razorpay_signature": _sign(KEY_SECRET, f"{order_id}|pay_1".encode()),
    }
    resp = client.post("/api/payment/razorpay/payment-success", json=body, headers=headers)
    assert resp.status_code == 200
    assert resp.json()["already_captured"] is False
    assert resp.json()["payment"]["status"] == "captured"

    assert session.get(Booking, completed_booking).payment_status == "paid"
    assert session.execute(select(ProviderEarning).where(ProviderEarning.booking_id == completed_booking)).scalars().one()

    again = client.post("/api/payment/razorpay/payment-success", json=body, headers=headers)
    assert again.json()["already_captured"] is True

    status = client.get(f"/api/payment/payment-status/{completed_booking}", headers=headers).json()
    assert status["payment_status"] == "paid"
    assert status["payment"]["razorpay_payment_id"] == "pay_1"

    paid = _create_order(client, headers, completed_booking)
    assert paid.status_code == 400


def test_payment_success_rejects_bad_signature(client, gateway, completed_booking, customer):
    _, headers = customer
    order_id = _create_order(client, headers, completed_booking).json()["order_id"]
    body = {"razorpay_order_id": order_id, "razorpay_payment_id": "pay_1", "razorpay_signature": "0" * 64}
    assert client.post("/api/payment/razorpay/payment-success", json=body, headers=headers).status_code == 400
    assert client.post("/api/payment/razorpay/payment-success", json={}, headers=headers).status_code == 400


def _webhook(client, event, secret: str = WEBHOOK_SECRET):
    raw = json.dumps(event).encode()
    return client.post(
        "/api/payment/razorpay/webhook",
        content=raw,
        headers={"Content-Type": "application/json", "X-Razorpay-Signature": _sign(secret, raw)},
    )


def test_webhook_captures_payment(client, session, gateway, completed_booking, customer):
    _, headers = customer
    order_id = _create_order(client, headers, completed_booking).json()["order_id"]
    event = {"event": "payment.captured", "payload": {"payment": {"entity": {"id": "pay_9", "order_id": order_id}}}}
    resp = _webhook(client, event)
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}
    p = session.execute(select(Payment).where(Payment.razorpay_order_id == order_id)).scalars().one()
    assert p.status == "captured"
    assert p.razorpay_payment_id == "pay_9"
    # replays are harmless
    assert _webhook(client, event).status_code == 200


def test_webhook_records_failure(client, session, gateway, completed_booking, customer):
    _, headers = customer
    order_id = _create_order(client, headers, completed_booking).json()["order_id"]
    event = {
        "event": "payment.failed",
        "payload": {"payment": {"entity": {"id": "pay_x", "order_id": order_id, "error_description": "Card declined"}}},
    }
    assert _webhook(client, event).json() == {"status": "ok"}
    p = session.execute(select(Payment).where(Payment.razorpay_order_id == order_id)).scalars().one()
    assert p.status == "failed"
    assert p.failure_reason == "Card declined"
    assert session.get(Booking, completed_booking).payment_status == "unpaid"


def test_webhook_rejects_and_ignores(client, gateway):
    bad = _webhook(client, {"event": "payment.captured"}, secret="wrong")
    assert bad.status_code == 400
    unknown = _webhook(client, {"event": "payment.captured", "payload": {"payment": {"entity": {"order_id": "order_zz"}}}})
    assert unknown.json() == {"status": "ignored"}


@pytest.mark.parametrize("event", [[], "payment.captured", 42])
def test_webhook_rejects_non_object_bodies(client, gateway, event):
    resp = _webhook(client, event)
    assert resp.status_code == 400


def test_webhook_ignores_malformed_payloads(client, gateway):
    assert _webhook(client, {"event": "payment.captured", "payload": []}).json() == {"status": "ignored"}
    odd = {"event": "payment.captured", "payload": {"payment": {"entity": {"order_id": ["x"]}}}}
    assert _webhook(client, odd).json() == {"status": "ignored"}


def test_webhook_requires_secret(client, monkeypatch):
    monkeypatch.setattr(config, "RAZORPAY_WEBHOOK_SECRET", "")
    assert _webhook(client, {"event": "payment.captured"}).status_code == 503


def test_history_is_paged_per_user(client, gateway, completed_booking, customer, factory):
    _, headers = customer
    _create_order(client, headers, completed_booking)
    _create_order(client, headers, completed_booking)
    page = client.get("/api/payment/history", params={"limit": 1}, headers=headers).json()
    assert page["pagination"]["total"] == 2
    assert len(page["payments"]) == 1
    stranger = factory.headers(factory.user(), "customer")
    assert client.get("/api/payment/history", headers=stranger).json()["pagination"]["total"] == 0
