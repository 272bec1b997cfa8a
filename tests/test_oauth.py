from urllib.parse import parse_qs, urlparse

import pytest
from google.auth import exceptions as google_exceptions
from sqlalchemy import select

from apps.omw.app import config, oauth
from apps.omw.app.models import Customer, User


@pytest.fixture()
def google(monkeypatch):
    monkeypatch.setenv("GOOGLE_CLIENT_ID", "web-client.apps.googleusercontent.com")
    monkeypatch.delenv("GOOGLE_MOBILE_CLIENT_ID", raising=False)
    monkeypatch.delenv("GOOGLE_ANDROID_CLIENT_ID", raising=False)
    monkeypatch.delenv("GOOGLE_RELEASE_CLIENT_ID", raising=False)
    seen = {}

    def _verify(token, audiences):
        seen["audiences"] = audiences
        if token != "good-token":
            raise ValueError("bad token")
        return {"sub": "g-123", "email": "Google.User@example.com", "name": "Google User", "picture": "https://img/x.png"}

    monkeypatch.setattr(oauth, "verify_google_id_token", _verify)
    return seen


def test_mobile_login_creates_verified_customer(client, session, google):
    resp = client.post("/api/auth/google/mobile", json={"idToken": "good-token"})
    assert resp.status_code == 200
    assert google["audiences"] == ["web-client.apps.googleusercontent.com"]
    body = resp.json()
    assert body["user"]["email"] == "google.user@example.com"
    assert body["user"]["role"] == "customer"

    user = session.execute(select(User).where(User.google_id == "g-123")).scalars().one()
    assert user.email_verified is True
    assert user.avatar_url == "https://img/x.png"
    assert session.execute(select(Customer).where(Customer.user_id == user.id)).scalars().first() is not None

    me = client.get("/api/auth/user", headers={"Authorization": f"Bearer {body['token']}"})
    assert me.status_code == 200
    assert me.json()["google_linked"] is True


def test_mobile_login_links_existing_email_account(client, factory, session, google):
    uid = factory.user(roles=("worker",), email="google.user@example.com", verified=False)
    resp = client.post("/api/auth/google/mobile", json={"idToken": "good-token"})
    assert resp.status_code == 200
    assert resp.json()["user"]["id"] == uid
    assert session.execute(select(User).where(User.email == "google.user@example.com")).scalars().all()[0].google_id == "g-123"

    # a second sign-in reuses the same account
    again = client.post("/api/auth/google/mobile", json={"idToken": "good-token"})
    assert again.json()["user"]["id"] == uid


def test_mobile_login_rejects_bad_tokens(client, google):
    assert client.post("/api/auth/google/mobile", json={}).status_code == 400
    assert client.post("/api/auth/google/mobile", json={"idToken": "forged"}).status_code == 401


def test_mobile_login_maps_google_auth_errors(client, monkeypatch, google):
    def _boom(token, audiences):
        raise google_exceptions.GoogleAuthError("certs unavailable")

    monkeypatch.setattr(oauth, "verify_google_id_token", _boom)
    assert client.post("/api/auth/google/mobile", json={"idToken": "good-token"}).status_code == 401


def test_mobile_login_requires_configured_audience(client, monkeypatch, google):
    monkeypatch.delenv("GOOGLE_CLIENT_ID")
    assert client.post("/api/auth/google/mobile", json={"idToken": "good-token"}).status_code == 500


def test_web_flow_redirects(client, monkeypatch):
    monkeypatch.setattr(config, "GOOGLE_CLIENT_ID", "web-client")
    resp = client.get("/api/auth/google", follow_redirects=False)
    assert resp.status_code == 302
    assert resp.headers["location"].startswith(config.GOOGLE_AUTH_URL)
    assert "client_id=web-client" in resp.headers["location"]


def _start_state(client, monkeypatch) -> str:
    monkeypatch.setattr(config, "GOOGLE_CLIENT_ID", "web-client.apps.googleusercontent.com")
    resp = client.get("/api/auth/google", follow_redirects=False)
    assert config.OAUTH_STATE_COOKIE in resp.cookies
    return parse_qs(urlparse(resp.headers["location"]).query)["state"][0]


def test_callback_success_and_failure(client, monkeypatch, google):
    monkeypatch.setattr(oauth, "exchange_code", lambda code: "good-token" if code == "ok" else "bad")
    state = _start_state(client, monkeypatch)
    ok = client.get("/api/auth/google/callback", params={"code": "ok", "state": state}, follow_redirects=False)
    assert ok.status_code == 302
    assert "/auth/google/success?token=" in ok.headers["location"]

    state = _start_state(client, monkeypatch)
    failed = client.get("/api/auth/google/callback", params={"code": "nope", "state": state}, follow_redirects=False)
    assert failed.headers["location"].endswith("/login?error=oauth_failed")
    missing = client.get("/api/auth/google/callback", follow_redirects=False)
    assert missing.headers["location"].endswith("/login?error=oauth_failed")


@pytest.mark.parametrize("sent_state", [None, "forged"])
def test_callback_rejects_missing_or_forged_state(client, monkeypatch, google, sent_state):
    exchanged = []
    monkeypatch.setattr(oauth, "exchange_code", lambda code: exchanged.append(code) or "good-token")
    _start_state(client, monkeypatch)
    params = {"code": "ok"}
    if sent_state:
        params["state"] = sent_state
    resp = client.get("/api/auth/google/callback", params=params, follow_redirects=False)
    assert resp.headers["location"].endswith("/login?error=oauth_failed")
    assert exchanged == []


def test_callback_rejects_state_without_its_cookie(client, monkeypatch, google):
    monkeypatch.setattr(oauth, "exchange_code", lambda code: "good-token")
    state = _start_state(client, monkeypatch)
    client.cookies.clear()
    resp = client.get("/api/auth/google/callback", params={"code": "ok", "state": state}, follow_redirects=False)
    assert resp.headers["location"].endswith("/login?error=oauth_failed")


def test_state_cookie_is_single_use(client, monkeypatch, google):
    monkeypatch.setattr(oauth, "exchange_code", lambda code: "good-token")
    state = _start_state(client, monkeypatch)
    first = client.get("/api/auth/google/callback", params={"code": "ok", "state": state}, follow_redirects=False)
    assert "/auth/google/success?token=" in first.headers["location"]
    replay = client.get("/api/auth/google/callback", params={"code": "ok", "state": state}, follow_redirects=False)
    assert replay.headers["location"].endswith("/login?error=oauth_failed")
