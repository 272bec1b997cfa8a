BASE = "/api/customer/addresses"

HOME = {"address": "12 MG Road", "pin_code": "560001", "city": "Bengaluru", "state": "KA", "country": "India"}


def _add(client, headers, **over):
    body = dict(HOME)
    body.update(over)
    return client.post(BASE, json=body, headers=headers)


def test_first_address_becomes_default(client, customer):
    _, headers = customer
    resp = _add(client, headers)
    assert resp.status_code == 201
    assert resp.json()["address"]["is_default"] is True
    assert resp.json()["address"]["address_type"] == "home"

    second = _add(client, headers, address="1 Work Park", address_type="work").json()["address"]
    assert second["is_default"] is False


def test_required_fields(client, customer):
    _, headers = customer
    assert _add(client, headers, city="").status_code == 400
    assert _add(client, headers, pin_code=None).status_code == 400
    assert _add(client, headers, address_type="castle").status_code == 400


def test_default_switching_and_ordering(client, customer):
    _, headers = customer
    first = _add(client, headers).json()["address"]["id"]
    second = _add(client, headers, address="2 Lake View", is_default=True).json()["address"]["id"]

    listed = client.get(BASE, headers=headers).json()["addresses"]
    assert [a["id"] for a in listed] == [second, first]
    assert [a["is_default"] for a in listed] == [True, False]

    assert client.put(f"{BASE}/{first}/default", headers=headers).status_code == 200
    listed = client.get(BASE, headers=headers).json()["addresses"]
    assert listed[0]["id"] == first
    assert sum(a["is_default"] for a in listed) == 1


def test_update_address(client, customer):
    _, headers = customer
    aid = _add(client, headers).json()["address"]["id"]
    resp = client.put(f"{BASE}/{aid}", json={"address_label": "Mum's", "location_lat": 12.9}, headers=headers)
    assert resp.status_code == 200
    assert resp.json()["address"]["address_label"] == "Mum's"
    assert resp.json()["address"]["city"] == "Bengaluru"
    assert client.put(f"{BASE}/{aid}", json={"city": " "}, headers=headers).status_code == 400


def test_deleting_default_promotes_newest(client, customer):
    _, headers = customer
    first = _add(client, headers).json()["address"]["id"]
    second = _add(client, headers, address="2 Lake View").json()["address"]["id"]
    third = _add(client, headers, address="3 Hill Top").json()["address"]["id"]

    assert client.delete(f"{BASE}/{first}", headers=headers).status_code == 200
    listed = client.get(BASE, headers=headers).json()["addresses"]
    assert [a["id"] for a in listed] == [third, second]
    assert listed[0]["is_default"] is True


def test_addresses_are_private(client, factory, customer):
    _, headers = customer
    aid = _add(client, headers).json()["address"]["id"]
    other = factory.headers(factory.user(), "customer")
    assert client.get(BASE, headers=other).json()["addresses"] == []
    assert client.put(f"{BASE}/{aid}", json={"city": "Mysuru"}, headers=other).status_code == 404
    assert client.delete(f"{BASE}/{aid}", headers=other).status_code == 404
    assert client.put(f"{BASE}/{aid}/default", headers=other).status_code == 404
