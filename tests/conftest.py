import os
from typing import Dict, Iterable, Optional

os.environ.setdefault("ENV", "test")
os.environ.setdefault("DB_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("AUTO_CREATE_TABLES", "false")
os.environ.setdefault("PAYOUT_AUTO_COMPLETE_SECS", "0")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from apps.omw.app import auth as auth_mod
from apps.omw.app import config
from apps.omw.app.db import Base, get_session
from apps.omw.app.models import (
    Customer,
    CustomerAddress,
    Provider,
    ProviderService,
    ServiceCategory,
    ServiceSubcategory,
    User,
)
from apps.omw.app.security import grant_role, hash_password, issue_token, role_by_name
from apps.omw.app.seed import seed_defaults

PASSWORD = "Passw0rd!"


@pytest.fixture()
def engine():
    """
    Isolated in-memory SQLite database, shared by the app and the test
    through a StaticPool.
    """
    eng = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(eng)
    with Session(eng) as s:
        seed_defaults(s)
    yield eng
    eng.dispose()


@pytest.fixture()
def session(engine):
    with Session(engine) as s:
        yield s


@pytest.fixture()
def app(engine):
    from apps.omw.app.main import app as omw_app

    def _session():
        with Session(engine) as s:
            yield s

    omw_app.dependency_overrides[get_session] = _session
    yield omw_app
    omw_app.dependency_overrides.clear()


@pytest.fixture()
def client(app):
    return TestClient(app)


@pytest.fixture(autouse=True)
def _reset_auth_state(monkeypatch):
    auth_mod._LOGIN_CODES.clear()
    auth_mod._AUTH_RATE_PHONE.clear()
    auth_mod._AUTH_RATE_IP.clear()
    monkeypatch.setattr(config, "SMTP_HOST", "")
    monkeypatch.setattr(config, "PAYOUT_AUTO_COMPLETE_SECS", 0.0)
    monkeypatch.setattr(config, "GOOGLE_MAPS_API_KEY", "")
    monkeypatch.setattr(config, "TIMEZONE", "UTC")


class Factory:
    """
    Creates users, roles, provider and catalogue rows straight in the database and
    builds bearer headers for them.
    """

    def __init__(self, engine):
        self.engine = engine
        self._n = 0

    def user(
        self,
        roles: Iterable[str] = ("customer",),
        email: Optional[str] = None,
        password: str = PASSWORD,
        phone: Optional[str] = None,
        verified: bool = True,
        name: str = "Test User",
    ) -> int:
        self._n += 1
        with Session(self.engine) as s:
            u = User(
                name=name,
                email=email or f"user{self._n}@example.com",
                phone_number=phone,
                password=hash_password(password),
                email_verified=verified,
            )
            s.add(u)
            s.flush()
            for r in roles:
                grant_role(s, u, r)
                if r == "customer":
                    s.add(Customer(user_id=u.id))
            s.commit()
            return u.id

    def worker(self, verified: bool = True, active: bool = True, **kw) -> tuple[int, int]:
        """Returns (user id, provider id)."""
        uid = self.user(roles=("worker",), **kw)
        with Session(self.engine) as s:
            p = Provider(
                user_id=uid,
                experience_years=3,
                bio="Driver",
                service_radius_km=10,
                location_lat=12.97,
                location_lng=77.59,
                is_verified=verified,
                is_active=active,
            )
            s.add(p)
            s.commit()
            return uid, p.id

    def subcategory(
        self,
        name: str = "Deep Clean",
        price_cents: int = 50000,
        night_cents: int = 0,
        category: str = "Cleaning",
        night_start: str = "17:00",
        night_end: str = "06:00",
    ) -> int:
        with Session(self.engine) as s:
            cat = s.execute(select(ServiceCategory).where(ServiceCategory.name == category)).scalars().first()
            if cat is None:
                cat = ServiceCategory(name=category)
                s.add(cat)
                s.flush()
            sc = ServiceSubcategory(
                category_id=cat.id,
                name=name,
                base_price_cents=price_cents,
                night_charge_cents=night_cents,
                night_start_time=night_start,
                night_end_time=night_end,
            )
            s.add(sc)
            s.commit()
            return sc.id

    def address(self, user_id: int, lat: Optional[float] = 12.97, lng: Optional[float] = 77.59, **kw) -> int:
        with Session(self.engine) as s:
            a = CustomerAddress(
                user_id=user_id,
                address=kw.get("address", "12 MG Road"),
                pin_code="560001",
                city="Bengaluru",
                state="KA",
                country="India",
                location_lat=lat,
                location_lng=lng,
                is_default=kw.get("is_default", True),
            )
            s.add(a)
            s.commit()
            return a.id

    def offers(self, provider_id: int, *subcategory_ids: int, gender: Optional[str] = None) -> None:
        with Session(self.engine) as s:
            for sid in subcategory_ids:
                s.add(ProviderService(provider_id=provider_id, subcategory_id=sid))
            if gender:
                p = s.get(Provider, provider_id)
                s.get(User, p.user_id).gender = gender
            s.commit()

    def headers(self, user_id: int, role: str) -> Dict[str, str]:
        with Session(self.engine) as s:
            u = s.get(User, user_id)
            token = issue_token(u, role_by_name(s, role))
        return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def factory(engine) -> Factory:
    return Factory(engine)


@pytest.fixture()
def customer(factory):
    uid = factory.user(roles=("customer",))
    return uid, factory.headers(uid, "customer")


@pytest.fixture()
def admin(factory):
    uid = factory.user(roles=("admin",))
    return uid, factory.headers(uid, "admin")


@pytest.fixture()
def superadmin(factory):
    uid = factory.user(roles=("super admin",))
    return uid, factory.headers(uid, "super admin")
