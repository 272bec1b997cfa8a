import pytest

BASE = "/api/customer/cart"


@pytest.fixture()
def services(factory):
    return factory.subcategory("Deep Clean", 50000), factory.subcategory("Sofa Clean", 20000)


def test_add_merges_quantities_and_prices_on_the_server(client, customer, services):
    _, headers = customer
    deep, sofa = services
    first = client.post(f"{BASE}/add", json={"subcategory_id": deep, "quantity": 1, "price": 1}, headers=headers)
    assert first.status_code == 201
    client.post(f"{BASE}/add", json={"id": deep, "quantity": 2}, headers=headers)
    cart = client.post(f"{BASE}/add", json={"subcategory_id": sofa}, headers=headers).json()

    by_sub = {i["subcategory_id"]: i for i in cart["items"]}
    assert by_sub[deep]["quantity"] == 3
    assert by_sub[deep]["total_price_cents"] == 150000
    assert by_sub[sofa]["price_cents"] == 20000
    assert cart["total_cents"] == 170000


def test_add_rejects_unknown_or_missing_service(client, customer):
    _, headers = customer
    assert client.post(f"{BASE}/add", json={"subcategory_id": 999}, headers=headers).status_code == 404
    assert client.post(f"{BASE}/add", json={}, headers=headers).status_code == 400


def test_update_and_remove(client, factory, customer, services):
    _, headers = customer
    deep, _ = services
    item_id = client.post(f"{BASE}/add", json={"subcategory_id": deep}, headers=headers).json()["items"][0]["id"]

    assert client.put(f"{BASE}/update/{item_id}", json={"quantity": 0}, headers=headers).status_code == 400
    updated = client.put(f"{BASE}/update/{item_id}", json={"quantity": 4}, headers=headers).json()
    assert updated["total_cents"] == 200000

    other_id = factory.user()
    other = factory.headers(other_id, "customer")
    assert client.put(f"{BASE}/update/{item_id}", json={"quantity": 2}, headers=other).status_code == 404
    assert client.delete(f"{BASE}/remove/{item_id}", headers=other).status_code == 404

    assert client.delete(f"{BASE}/remove/{item_id}", headers=headers).json()["items"] == []


def test_sync_replaces_cart_and_clear_empties_it(client, customer, services):
    _, headers = customer
    deep, sofa = services
    client.post(f"{BASE}/add", json={"subcategory_id": deep, "quantity": 5}, headers=headers)

    synced = client.post(
        f"{BASE}/sync",
        json={"items": [{"subcategory_id": sofa, "quantity": 2}, {"id": 999, "quantity": 1}]},
        headers=headers,
    ).json()
    assert [(i["subcategory_id"], i["quantity"]) for i in synced["items"]] == [(sofa, 2)]

    cleared = client.delete(f"{BASE}/clear", headers=headers).json()
    assert cleared == {"items": [], "total_cents": 0}


def test_cart_is_for_customers(client, factory):
    uid, _ = factory.worker()
    assert client.get(BASE, headers=factory.headers(uid, "worker")).status_code == 403
