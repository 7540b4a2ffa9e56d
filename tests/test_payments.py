import mongomock
import pytest
from bson import ObjectId

from errors import Conflict, NotFound, UpstreamError, ValidationError
from payments import PaymentOrchestrator
from conftest import FakeGateway


@pytest.fixture
def orchestrator_env():
    mdb = mongomock.MongoClient().shop
    gateway = FakeGateway()
    orchestrator = PaymentOrchestrator(gateway, mdb["order"], mdb["product"], "https://shop.example/",
                                       currency="ARS")
    return orchestrator, gateway, mdb


def insert_order(mdb, status="pending", user="u1", **fields):
    doc = {
        "user": user,
        "items": [{"product": str(ObjectId()), "productName": "Tee", "price": 120.0, "quantity": 2, "size": "M"}],
        "totalAmount": 240.0,
        "shippingMethod": "pickup_in_store",
        "shippingDetails": {},
        "status": status,
    }
    doc.update(fields)
    return str(mdb["order"].insert_one(doc).inserted_id)


def test_build_preference(orchestrator_env):
    orchestrator, gateway, mdb = orchestrator_env
    order_id = insert_order(mdb)
    result = orchestrator.create_payment_request(order_id, "u1", "ana@example.com")

    assert result["order_id"] == order_id
    assert result["init_point"] == "https://mp.example/checkout/pref"
    preference = gateway.preferences[0]
    assert preference["external_reference"] == order_id
    assert preference["items"] == [{"title": "Tee", "quantity": 2, "unit_price": 120.0, "currency_id": "ARS"}]
    assert preference["payer"] == {"email": "ana@example.com"}
    assert preference["payment_methods"] == {"excluded_payment_types": [{"id": "ticket"}], "installments": 1}
    assert preference["back_urls"]["success"] == "https://shop.example/success"
    assert preference["back_urls"]["pending"] == "https://shop.example/pending"
    assert preference["auto_return"] == "approved"
    assert "notification_url" not in preference


def test_payer_email_placeholder(orchestrator_env):
    orchestrator, gateway, mdb = orchestrator_env
    orchestrator.create_payment_request(insert_order(mdb), "u1", None)
    assert gateway.preferences[0]["payer"]["email"] == "test_user@test.com"


def test_legacy_item_uses_catalog_price(orchestrator_env):
    orchestrator, gateway, mdb = orchestrator_env
    product_id = mdb["product"].insert_one({"name": "Old", "price": 80.0}).inserted_id
    order_id = insert_order(mdb, items=[{"product": str(product_id), "productName": "Old", "quantity": 1}])
    orchestrator.create_payment_request(order_id, "u1", None)
    assert gateway.preferences[0]["items"][0]["unit_price"] == 80.0


@pytest.mark.parametrize("status", ["paid", "shipped", "delivered"])
def test_settled_order_conflicts(orchestrator_env, status):
    orchestrator, gateway, mdb = orchestrator_env
    order_id = insert_order(mdb, status=status)
    with pytest.raises(Conflict):
        orchestrator.create_payment_request(order_id, "u1", None)
    assert gateway.preferences == []


def test_missing_or_foreign_order(orchestrator_env):
    orchestrator, _, mdb = orchestrator_env
    order_id = insert_order(mdb, user="someone-else")
    with pytest.raises(NotFound):
        orchestrator.create_payment_request(order_id, "u1", None)
    with pytest.raises(NotFound):
        orchestrator.create_payment_request("garbage", "u1", None)


def test_provider_failure_leaves_order_pending(orchestrator_env):
    orchestrator, gateway, mdb = orchestrator_env
    gateway.create_error = UpstreamError("provider down")
    order_id = insert_order(mdb)
    with pytest.raises(UpstreamError):
        orchestrator.create_payment_request(order_id, "u1", None)
    assert mdb["order"].find_one({"_id": ObjectId(order_id)})["status"] == "pending"


def test_non_payment_notifications_are_acknowledged(orchestrator_env):
    orchestrator, gateway, _ = orchestrator_env
    assert orchestrator.handle_notification({"type": "merchant_order", "data": {}}) == {"status": "ignored"}
    assert gateway.lookups == []


def test_missing_payment_id(orchestrator_env):
    orchestrator, _, _ = orchestrator_env
    with pytest.raises(ValidationError):
        orchestrator.handle_notification({"type": "payment", "data": {}, "live_mode": True})


def test_sandbox_notification_is_idempotent(orchestrator_env):
    orchestrator, gateway, mdb = orchestrator_env
    order_id = insert_order(mdb)
    payload = {"type": "payment", "data": {"id": order_id}, "live_mode": False}

    assert orchestrator.handle_notification(payload) == {"status": "processed"}
    after_first = mdb["order"].find_one({"_id": ObjectId(order_id)})
    assert orchestrator.handle_notification(payload) == {"status": "unchanged"}
    after_second = mdb["order"].find_one({"_id": ObjectId(order_id)})

    assert after_first["status"] == "paid"
    assert after_first == after_second
    assert gateway.lookups == []


def test_sandbox_unknown_order_is_noop(orchestrator_env):
    orchestrator, _, _ = orchestrator_env
    payload = {"type": "payment", "data": {"id": str(ObjectId())}, "live_mode": False}
    assert orchestrator.handle_notification(payload) == {"status": "unchanged"}
    payload["data"]["id"] = "12345"
    assert orchestrator.handle_notification(payload) == {"status": "unchanged"}


def test_live_approved_payment(orchestrator_env):
    orchestrator, gateway, mdb = orchestrator_env
    order_id = insert_order(mdb)
    gateway.payments["987"] = {"id": 987, "status": "approved", "external_reference": order_id}
    result = orchestrator.handle_notification({"type": "payment", "data": {"id": 987}, "live_mode": True})
    assert result == {"status": "processed"}
    assert gateway.lookups == ["987"]
    order = mdb["order"].find_one({"_id": ObjectId(order_id)})
    assert order["status"] == "paid"
    assert order["paidAt"] is not None


@pytest.mark.parametrize("payment_status", ["pending", "rejected", "in_process"])
def test_live_unapproved_payment_is_noop(orchestrator_env, payment_status):
    orchestrator, gateway, mdb = orchestrator_env
    order_id = insert_order(mdb)
    gateway.payments["55"] = {"status": payment_status, "external_reference": order_id}
    assert orchestrator.handle_notification({"type": "payment", "data": {"id": "55"}, "live_mode": True}) == {"status": "unchanged"}
    assert mdb["order"].find_one({"_id": ObjectId(order_id)})["status"] == "pending"


def test_live_payment_missing_at_provider(orchestrator_env):
    orchestrator, _, _ = orchestrator_env
    result = orchestrator.handle_notification({"type": "payment", "data": {"id": "404"}, "live_mode": True})
    assert result == {"status": "payment_not_found"}


def test_live_lookup_failure_propagates(orchestrator_env):
    orchestrator, gateway, _ = orchestrator_env
    gateway.lookup_error = UpstreamError("timeout")
    with pytest.raises(UpstreamError):
        orchestrator.handle_notification({"type": "payment", "data": {"id": "1"}, "live_mode": True})


def test_stale_notification_does_not_revert_shipping(orchestrator_env):
    orchestrator, gateway, mdb = orchestrator_env
    order_id = insert_order(mdb, status="shipped")
    gateway.payments["1"] = {"status": "approved", "external_reference": order_id}
    orchestrator.handle_notification({"type": "payment", "data": {"id": "1"}, "live_mode": True})
    assert mdb["order"].find_one({"_id": ObjectId(order_id)})["status"] == "shipped"


# HTTP surface

def test_pay_endpoint(user_client, place_order, gateway):
    order = place_order(quantity=3, price=99.5)
    resp = user_client.post(f"/orders/{order['_id']}/pagar")
    assert resp.status_code == 200
    assert resp.json()["init_point"] == "https://mp.example/checkout/pref"
    assert gateway.preferences[0]["items"][0]["quantity"] == 3
    assert gateway.preferences[0]["payer"]["email"] == "ana@example.com"


def test_pay_endpoint_errors(user_client, client, place_order, gateway):
    order = place_order()
    assert client.post(f"/orders/{order['_id']}/pagar").status_code == 401

    gateway.create_error = UpstreamError("provider down")
    assert user_client.post(f"/orders/{order['_id']}/pagar").status_code == 500

    gateway.create_error = None
    user_client.post("/orders/webhook", json={"type": "payment", "data": {"id": order["_id"]}, "live_mode": False})
    resp = user_client.post(f"/orders/{order['_id']}/pagar")
    assert resp.status_code == 400
    assert len(gateway.preferences) == 0


def test_webhook_endpoint_statuses(client, place_order, gateway, mongo):
    order = place_order()
    assert client.post("/orders/webhook", json={"type": "plan"}).status_code == 200
    assert client.post("/orders/webhook", json={"type": "payment", "data": {}}).status_code == 400
    assert client.post("/orders/webhook", content=b"not json",
                       headers={"content-type": "application/json"}).status_code == 400

    gateway.lookup_error = UpstreamError("boom")
    assert client.post("/orders/webhook", json={"type": "payment", "data": {"id": "9"}, "live_mode": True}).status_code == 500

    gateway.lookup_error = None
    gateway.payments["9"] = {"status": "approved", "external_reference": order["_id"]}
    for _ in range(2):
        resp = client.post("/orders/webhook", json={"type": "payment", "data": {"id": "9"}, "live_mode": True})
        assert resp.status_code == 200
    assert mongo["order"].find_one({"_id": ObjectId(order["_id"])})["status"] == "paid"


def test_pay_endpoint_rejects_shipped_order(user_client, place_order, gateway, mongo):
    order = place_order()
    mongo["order"].update_one({"_id": ObjectId(order["_id"])}, {"$set": {"status": "shipped"}})
    resp = user_client.post(f"/orders/{order['_id']}/pagar")
    assert resp.status_code == 400
    assert gateway.preferences == []


def test_webhook_without_json_body_is_acknowledged(client, gateway):
    resp = client.post("/orders/webhook")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ignored"}

    resp = client.post("/orders/webhook", data={"topic": "merchant_order", "id": "123"})
    assert resp.status_code == 200
    assert resp.json() == {"status": "ignored"}
    assert gateway.lookups == []
