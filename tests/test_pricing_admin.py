from sqlalchemy import select

from apps.omw.app.models import AuditLog, PricingRule, SurgeZone, VehicleType

BASE = "/api/admin/pricing"

NEW_TYPE = {
    "name": " Premium ",
    "display_name": "Premium Sedan",
    "base_fare_cents": 9000,
    "rate_per_km_cents": 2500,
    "rate_per_min_cents": 300,
    "minimum_fare_cents": 15000,
    "vehicle_multiplier": 2.0,
}


def test_vehicle_type_crud(client, session, admin):
    _, headers = admin
    created = client.post(f"{BASE}/vehicle-types", json=NEW_TYPE, headers=headers)
    assert created.status_code == 201
    vt = created.json()
    assert vt["name"] == "premium"
    assert vt["free_km_threshold"] == 2.0
    assert client.post(f"{BASE}/vehicle-types", json=NEW_TYPE, headers=headers).status_code == 409

    updated = client.put(
        f"{BASE}/vehicle-types/{vt['id']}",
        json={"name": "renamed", "rate_per_km_cents": 2600, "is_active": False},
        headers=headers,
    )
    assert updated.status_code == 200
    assert updated.json()["name"] == "premium"
    assert updated.json()["rate_per_km_cents"] == 2600

    active = client.get(f"{BASE}/vehicle-types", headers=headers).json()["vehicle_types"]
    assert "premium" not in {v["name"] for v in active}
    everything = client.get(f"{BASE}/vehicle-types", params={"include_inactive": True}, headers=headers).json()["vehicle_types"]
    assert "premium" in {v["name"] for v in everything}

    deleted = client.delete(f"{BASE}/vehicle-types/{vt['id']}", headers=headers)
    assert deleted.json() == {"deleted": True, "id": vt["id"]}
    assert session.get(VehicleType, vt["id"]) is None
    actions = session.execute(select(AuditLog.action).order_by(AuditLog.id)).scalars().all()
    assert actions == ["vehicle_type_created", "vehicle_type_updated", "vehicle_type_deleted"]


def test_create_type_reports_missing_fields(client, admin):
    _, headers = admin
    resp = client.post(f"{BASE}/vehicle-types", json={"name": "x", "base_fare_cents": 1}, headers=headers)
    assert resp.status_code == 400
    assert resp.json()["detail"]["missingFields"] == ["display_name", "rate_per_km_cents", "rate_per_min_cents"]


def test_quoted_type_cannot_be_deleted(client, session, admin):
    _, headers = admin
    sedan = session.execute(select(VehicleType).where(VehicleType.name == "sedan")).scalars().one()
    client.post(
        "/api/customer/ride/quote",
        json={"pickup": {"lat": 12.97, "lng": 77.59}, "drop": {"lat": 12.93, "lng": 77.62}, "vehicle_type_id": sedan.id},
    )
    assert client.delete(f"{BASE}/vehicle-types/{sedan.id}", headers=headers).status_code == 400
    assert client.put(f"{BASE}/vehicle-types/999", json={}, headers=headers).status_code == 404


def test_rules_grouped_by_category(client, admin):
    _, headers = admin
    body = client.get(f"{BASE}/rules", headers=headers).json()
    assert len(body["rules"]) == 7
    assert {r["rule_key"] for r in body["grouped_rules"]["time"]} == {"night_hours_start", "night_hours_end"}
    assert set(body["grouped_rules"]) == {"time", "commission", "validation", "surge"}


def test_update_rule(client, session, admin):
    _, headers = admin
    rule = session.execute(select(PricingRule).where(PricingRule.rule_key == "platform_commission_percentage")).scalars().one()
    assert client.put(f"{BASE}/rules/{rule.id}", json={}, headers=headers).status_code == 400
    assert client.put(f"{BASE}/rules/{rule.id}", json={"rule_value": "lots"}, headers=headers).status_code == 400
    assert client.put(f"{BASE}/rules/999", json={"rule_value": "1"}, headers=headers).status_code == 404

    resp = client.put(f"{BASE}/rules/{rule.id}", json={"rule_value": "15"}, headers=headers)
    assert resp.status_code == 200
    assert resp.json()["rule_value"] == "15"
    log = session.execute(select(AuditLog).where(AuditLog.action == "pricing_rule_updated")).scalars().one()
    assert '"old": "20"' in log.details


def test_current_surge_is_recorded(client, admin):
    _, headers = admin
    now = client.get(f"{BASE}/surge/current", headers=headers).json()
    assert now["surge_multiplier"] == 1.0
    assert now["demand_index"] == 0
    history = client.get(f"{BASE}/surge/history", params={"hours": 1}, headers=headers).json()["history"]
    assert len(history) == 1
    assert history[0]["source"] == "computed"


def test_zone_override(client, session, admin):
    _, headers = admin
    zone = session.execute(select(SurgeZone)).scalars().first()
    zones = client.get(f"{BASE}/surge/zones", headers=headers).json()["zones"]
    assert [z["id"] for z in zones] == [zone.id]

    assert client.put(f"{BASE}/surge/zones/{zone.id}", json={"multiplier": 0.5}, headers=headers).status_code == 400
    assert client.put(f"{BASE}/surge/zones/{zone.id}", json={"multiplier": 5.5}, headers=headers).status_code == 400
    assert client.put(f"{BASE}/surge/zones/{zone.id}", json={}, headers=headers).status_code == 400
    assert client.put(f"{BASE}/surge/zones/999", json={"multiplier": 2}, headers=headers).status_code == 404

    resp = client.put(f"{BASE}/surge/zones/{zone.id}", json={"multiplier": 1.8}, headers=headers)
    assert resp.status_code == 200
    assert resp.json()["current_multiplier"] == 1.8
    history = client.get(f"{BASE}/surge/history", params={"zone_id": zone.id}, headers=headers).json()["history"]
    assert [(h["multiplier"], h["source"]) for h in history] == [(1.8, "override")]


def test_pricing_admin_requires_admin(client, customer):
    _, headers = customer
    assert client.get(f"{BASE}/rules", headers=headers).status_code == 403
