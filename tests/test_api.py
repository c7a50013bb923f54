import asyncio

from conftest import ADMIN, BUYER, SELLER, auth_headers


async def _list_item(client, **overrides) -> dict:
    body = {"name": "Dune", "category": "Science Fiction", "price": 1500, "stock": 3}
    body.update(overrides)
    resp = await client.post("/items", json=body, headers=auth_headers(SELLER))
    assert resp.status_code == 200, resp.text
    return resp.json()


async def _checkout(client, item, buyer=BUYER) -> str:
    resp = await client.post(
        "/checkout-sessions",
        json={"item_id": item["id"], "quantity": 1, "unit_price": item["price"], "name": item["name"]},
        headers=auth_headers(buyer),
    )
    assert resp.status_code == 200, resp.text
    return resp.json()["redirect_url"].rsplit("/", 1)[-1]


async def test_health(client):
    resp = await client.get("/health")
    assert resp.json() == {"status": "ok", "service": "marketplace-service"}


async def test_protected_routes_require_token(client):
    for method, path in [
        ("get", "/orders/mine"),
        ("post", "/seller-requests"),
        ("get", "/users/role"),
        ("get", "/users"),
    ]:
        resp = await getattr(client, method)(path)
        assert resp.status_code == 401
        assert resp.json()["detail"] == "Unauthorized Access!"


async def test_wrong_role_discloses_actual_role(client, make_user):
    await make_user(BUYER)
    resp = await client.post(
        "/items",
        json={"name": "Dune", "category": "Sci-Fi", "price": 100, "stock": 1},
        headers=auth_headers(BUYER),
    )
    assert resp.status_code == 403
    assert resp.json()["role"] == "customer"


async def test_catalog_reads(client, make_user):
    await make_user(SELLER, "seller")
    dune = await _list_item(client)
    await _list_item(client, name="Emma", category="Romance")

    assert len((await client.get("/items")).json()) == 2
    assert len((await client.get("/items/latest", params={"limit": 1})).json()) == 1
    assert [i["name"] for i in (await client.get("/items/search", params={"q": "roman"})).json()] == ["Emma"]

    resp = await client.get(f"/items/{dune['id']}")
    assert resp.json()["seller_email"] == SELLER

    assert (await client.get("/items/not-an-id")).status_code == 400
    assert (await client.get("/items/00000000-0000-0000-0000-000000000000")).status_code == 404


async def test_checkout_and_reconcile_over_http(client, provider, make_user):
    await make_user(SELLER, "seller")
    item = await _list_item(client, stock=3)
    session_id = await _checkout(client, item)

    # 決済前
    resp = await client.post("/reconcile-payment", json={"session_id": session_id})
    assert resp.status_code == 400
    assert resp.json()["error"] == "PaymentNotComplete"

    provider.complete(session_id, "tx_1")
    first, second = await asyncio.gather(
        client.post("/reconcile-payment", json={"session_id": session_id}),
        client.post("/reconcile-payment", json={"session_id": session_id}),
    )
    assert first.status_code == second.status_code == 200
    assert first.json()["order_id"] == second.json()["order_id"]
    assert first.json()["transaction_reference"] == "tx_1"

    assert (await client.get(f"/items/{item['id']}")).json()["stock"] == 2

    mine = (await client.get("/orders/mine", headers=auth_headers(BUYER))).json()
    assert [o["transaction_ref"] for o in mine] == ["tx_1"]


async def test_checkout_validation_and_buyer_mismatch(client, provider):
    resp = await client.post(
        "/checkout-sessions",
        json={"item_id": "i", "quantity": 0, "unit_price": 100, "name": "Dune"},
        headers=auth_headers(BUYER),
    )
    assert resp.status_code == 400

    resp = await client.post(
        "/checkout-sessions",
        json={"item_id": "i", "unit_price": 100, "name": "Dune", "buyer_email": "someone@else.com"},
        headers=auth_headers(BUYER),
    )
    assert resp.status_code == 403
    assert provider.created == []


async def test_reconcile_errors_map_to_status_codes(client, provider, make_user):
    await make_user(SELLER, "seller")
    item = await _list_item(client)
    session_id = await _checkout(client, item)
    provider.complete(session_id, "tx_gone")
    provider.sessions[session_id].metadata["item_id"] = "00000000-0000-0000-0000-000000000000"

    resp = await client.post("/reconcile-payment", json={"session_id": session_id})
    assert resp.status_code == 404
    assert resp.json()["error"] == "ItemNotFound"

    resp = await client.post("/reconcile-payment", json={"session_id": "cs_unknown"})
    assert resp.status_code == 404

    provider.unavailable = True
    resp = await client.post("/reconcile-payment", json={"session_id": session_id})
    assert resp.status_code == 503


async def test_seller_scoped_reads(client, provider, make_user):
    await make_user(SELLER, "seller")
    await make_user("rival@example.com", "seller")
    await make_user(ADMIN, "admin")
    item = await _list_item(client)
    session_id = await _checkout(client, item)
    provider.complete(session_id, "tx_seller")
    await client.post("/reconcile-payment", json={"session_id": session_id})

    own = await client.get(f"/orders/by-seller/{SELLER}", headers=auth_headers(SELLER))
    assert [o["transaction_ref"] for o in own.json()] == ["tx_seller"]
    stock = await client.get(f"/inventory/by-seller/{SELLER}", headers=auth_headers(SELLER))
    assert [i["id"] for i in stock.json()] == [item["id"]]

    rival = await client.get(f"/orders/by-seller/{SELLER}", headers=auth_headers("rival@example.com"))
    assert rival.status_code == 403
    assert rival.json()["role"] == "seller"

    admin = await client.get(f"/inventory/by-seller/{SELLER}", headers=auth_headers(ADMIN))
    assert admin.status_code == 200

    customer = await client.get(f"/orders/by-seller/{SELLER}", headers=auth_headers(BUYER))
    assert customer.status_code == 403


async def test_delete_order(client, provider, make_user):
    await make_user(SELLER, "seller")
    await make_user("rival@example.com", "seller")
    item = await _list_item(client)
    session_id = await _checkout(client, item)
    provider.complete(session_id, "tx_delete")
    order_id = (await client.post("/reconcile-payment", json={"session_id": session_id})).json()["order_id"]

    resp = await client.delete(f"/orders/{order_id}", headers=auth_headers("rival@example.com"))
    assert resp.status_code == 403

    resp = await client.delete(f"/orders/{order_id}", headers=auth_headers(SELLER))
    assert resp.json() == {"deleted": True, "order_id": order_id}

    resp = await client.delete(f"/orders/{order_id}", headers=auth_headers(SELLER))
    assert resp.status_code == 404


async def test_user_upsert_and_role(client):
    resp = await client.post("/users", json={"name": "Reader"}, headers=auth_headers(BUYER))
    assert resp.json()["role"] == "customer"
    assert resp.json()["name"] == "Reader"

    again = await client.post("/users", headers=auth_headers(BUYER))
    assert again.json()["created_at"] == resp.json()["created_at"]

    role = await client.get("/users/role", headers=auth_headers(BUYER))
    assert role.json() == {"role": "customer"}


async def test_role_change_clears_seller_request(client, make_user, redis):
    await make_user(ADMIN, "admin")
    await client.post("/users", headers=auth_headers(BUYER))

    first = await client.post("/seller-requests", headers=auth_headers(BUYER))
    assert first.json()["created"] is True
    duplicate = await client.post("/seller-requests", headers=auth_headers(BUYER))
    assert duplicate.json()["created"] is False

    pending = await client.get("/seller-requests", headers=auth_headers(ADMIN))
    assert [r["email"] for r in pending.json()] == [BUYER]

    forbidden = await client.patch(
        "/users/role", json={"email": BUYER, "role": "seller"}, headers=auth_headers(BUYER)
    )
    assert forbidden.status_code == 403

    resp = await client.patch(
        "/users/role", json={"email": BUYER, "role": "seller"}, headers=auth_headers(ADMIN)
    )
    assert resp.status_code == 200
    assert resp.json()["role"] == "seller"

    pending = await client.get("/seller-requests", headers=auth_headers(ADMIN))
    assert pending.json() == []
    assert (await client.get("/users/role", headers=auth_headers(BUYER))).json() == {"role": "seller"}
    assert "UserRoleChanged" in redis.event_types("user_events")


async def test_role_change_validation(client, make_user):
    await make_user(ADMIN, "admin")

    unknown_role = await client.patch(
        "/users/role", json={"email": ADMIN, "role": "owner"}, headers=auth_headers(ADMIN)
    )
    assert unknown_role.status_code == 400

    unknown_user = await client.patch(
        "/users/role", json={"email": "ghost@example.com", "role": "seller"}, headers=auth_headers(ADMIN)
    )
    assert unknown_user.status_code == 404

    listed = await client.get("/users", headers=auth_headers(ADMIN))
    assert [u["email"] for u in listed.json()] == [ADMIN]


async def test_seller_request_from_new_identity_can_be_approved(client, make_user):
    await make_user(ADMIN, "admin")
    newcomer = "new@example.com"

    # POST /users を経ずに申請する
    resp = await client.post("/seller-requests", headers=auth_headers(newcomer))
    assert resp.json()["created"] is True

    resp = await client.patch(
        "/users/role", json={"email": newcomer, "role": "seller"}, headers=auth_headers(ADMIN)
    )
    assert resp.status_code == 200
    assert resp.json()["role"] == "seller"
    assert (await client.get("/seller-requests", headers=auth_headers(ADMIN))).json() == []


async def test_latest_items_rejects_non_positive_limit(client):
    for limit in (0, -1):
        resp = await client.get("/items/latest", params={"limit": limit})
        assert resp.status_code == 422
