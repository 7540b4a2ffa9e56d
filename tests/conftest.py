import mongomock
import pytest
from fastapi.testclient import TestClient

import database
import main
from errors import NotFound, PaymentNotFound


class FakeGateway:
    def __init__(self):
        self.preferences = []
        self.payments = {}
        self.lookups = []
        self.create_error = None
        self.lookup_error = None

    def create_preference(self, preference):
        if self.create_error:
            raise self.create_error
        self.preferences.append(preference)
        return {"id": f"pref-{len(self.preferences)}", "init_point": "https://mp.example/checkout/pref"}

    def get_payment(self, payment_id):
        self.lookups.append(payment_id)
        if self.lookup_error:
            raise self.lookup_error
        if payment_id not in self.payments:
            raise PaymentNotFound(f"Payment {payment_id} not found")
        return self.payments[payment_id]


class FakePlaces:
    def __init__(self, points=None):
        self.points = points or []
        self.calls = []

    def find_pickup_points(self, locality, province):
        self.calls.append((locality, province))
        if not self.points:
            raise NotFound("No pickup points found in this city")
        return self.points


@pytest.fixture
def mongo(monkeypatch):
    mdb = mongomock.MongoClient().storefront
    monkeypatch.setattr(database, "db", mdb)
    monkeypatch.setattr(main, "db", mdb)
    return mdb


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def places():
    return FakePlaces([{"name": "Correo Centro", "address": "Av. Siempre Viva 123", "lat": -34.6, "lng": -58.4}])


@pytest.fixture
def app(mongo, gateway, places):
    main.app.dependency_overrides[main.get_payment_gateway] = lambda: gateway
    main.app.dependency_overrides[main.get_places_client] = lambda: places
    yield main.app
    main.app.dependency_overrides.clear()


@pytest.fixture
def make_client(app):
    clients = []

    def factory():
        # https so the Secure session cookie is sent back
        client = TestClient(app, base_url="https://testserver")
        client.__enter__()
        clients.append(client)
        return client

    yield factory
    for client in clients:
        client.__exit__(None, None, None)


@pytest.fixture
def client(make_client):
    return make_client()


def register_and_login(client, name="Ana", email="ana@example.com", password="secret123"):
    resp = client.post("/auth/register", json={"name": name, "email": email, "password": password})
    assert resp.status_code == 201, resp.text
    resp = client.post("/auth/login", json={"email": email, "password": password})
    assert resp.status_code == 200, resp.text
    return resp


@pytest.fixture
def user_client(make_client):
    client = make_client()
    register_and_login(client)
    return client


@pytest.fixture
def other_client(make_client):
    client = make_client()
    register_and_login(client, name="Bruno", email="bruno@example.com")
    return client


@pytest.fixture
def admin_client(make_client, mongo):
    client = make_client()
    register_and_login(client, name="Admin", email="admin@example.com")
    mongo["user"].update_one({"email": "admin@example.com"}, {"$set": {"role": "admin"}})
    return client


@pytest.fixture
def make_product(mongo):
    def factory(**fields):
        doc = {
            "name": "Basic Tee",
            "price": 100.0,
            "category": "t-shirts",
            "subCategory": "basic",
            "stock": 10,
            "hasSize": False,
            "sizeType": "none",
            "availableSizes": [],
        }
        doc.update(fields)
        return str(mongo["product"].insert_one(doc).inserted_id)

    return factory


@pytest.fixture
def place_order(user_client, make_product):
    def factory(client=None, quantity=2, price=150.0):
        product_id = make_product(name="Cargo Short", price=price, category="shorts")
        resp = (client or user_client).post("/orders", json={
            "items": [{"product": product_id, "quantity": quantity}],
            "shippingMethod": "pickup_in_store",
        })
        assert resp.status_code == 201, resp.text
        return resp.json()["order"]

    return factory
