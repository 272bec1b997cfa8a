from sqlalchemy import select

from apps.omw.app.models import AuditLog

BASE = "/api/admin"


def test_customer_types_crud(client, session, admin):
    _, headers = admin
    created = client.post(f"{BASE}/customer-types", json={"name": "Senior Citizen", "discount_percentage": 10}, headers=headers)
    assert created.status_code == 201
    tid = created.json()["id"]
    assert client.post(f"{BASE}/customer-types", json={"name": "Senior Citizen"}, headers=headers).status_code == 409
    assert client.post(f"{BASE}/customer-types", json={}, headers=headers).status_code == 400
    assert client.post(f"{BASE}/customer-types", json={"name": "x", "discount_percentage": 120}, headers=headers).status_code == 422

    updated = client.patch(f"{BASE}/customer-types/{tid}", json={"discount_percentage": 15}, headers=headers)
    assert updated.json()["discount_percentage"] == 15
    assert client.patch(f"{BASE}/customer-types/{tid}", json={}, headers=headers).status_code == 400
    assert client.patch(f"{BASE}/customer-types/999", json={"name": "Student"}, headers=headers).status_code == 404

    listed = client.get(f"{BASE}/customer-types", headers=headers).json()["customer_types"]
    assert [t["name"] for t in listed] == ["Senior Citizen"]
    actions = session.execute(select(AuditLog.action).where(AuditLog.entity_type == "customer_type")).scalars().all()
    assert sorted(actions) == ["customer_type_created", "customer_type_updated"]


def test_list_search_and_assign_type(client, factory, admin):
    _, headers = admin
    asha = factory.user(name="Asha Rao", email="asha@example.com", phone="9000000001")
    factory.user(name="Bala K", email="bala@example.com")
    factory.worker(name="Not A Customer")
    tid = client.post(f"{BASE}/customer-types", json={"name": "Student", "discount_percentage": 5}, headers=headers).json()["id"]

    everyone = client.get(f"{BASE}/customers", headers=headers).json()
    assert everyone["pagination"]["total"] == 2
    found = client.get(f"{BASE}/customers", params={"search": "9000000001"}, headers=headers).json()["customers"]
    assert [c["id"] for c in found] == [asha]

    assigned = client.patch(f"{BASE}/customers/{asha}/type", json={"customer_type_id": tid}, headers=headers)
    assert assigned.status_code == 200
    assert assigned.json()["customer_type_name"] == "Student"
    typed = client.get(f"{BASE}/customers", params={"customer_type_id": tid}, headers=headers).json()["customers"]
    assert [c["id"] for c in typed] == [asha]

    detail = client.get(f"{BASE}/customers/{asha}", headers=headers).json()
    assert detail["discount_percentage"] == 5
    assert detail["total_bookings"] == 0


def test_assign_type_errors(client, factory, admin):
    _, headers = admin
    uid = factory.user()
    assert client.patch(f"{BASE}/customers/{uid}/type", json={}, headers=headers).status_code == 400
    assert client.patch(f"{BASE}/customers/{uid}/type", json={"customer_type_id": 999}, headers=headers).status_code == 400
    tid = client.post(f"{BASE}/customer-types", json={"name": "VIP"}, headers=headers).json()["id"]
    assert client.patch(f"{BASE}/customers/999/type", json={"customer_type_id": tid}, headers=headers).status_code == 404
    assert client.get(f"{BASE}/customers/999", headers=headers).status_code == 404


def test_customer_admin_requires_admin(client, customer):
    _, headers = customer
    assert client.get(f"{BASE}/customers", headers=headers).status_code == 403
    assert client.get(f"{BASE}/customer-types", headers=headers).status_code == 403
