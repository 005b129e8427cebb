"""Pytest fixtures for storefront tests."""

import json

import httpx
import mongomock
import pytest
from fastapi.testclient import TestClient

from cart import CartEngine
from catalog import CatalogStore
from database import ensure_indexes
from orders import OrderEngine
from payments import PaymentService, RazorpayGateway
from schemas import Category, CurrentUser, Product, Role

GATEWAY_SECRET = "test_secret"

SHIPPING_ADDRESS = {
    "full_name": "Asha Verma",
    "address_line1": "12 MG Road",
    "city": "Bengaluru",
    "state": "Karnataka",
    "postal_code": "560001",
    "phone_number": "9876543210",
}


@pytest.fixture
def db():
    """In-memory MongoDB database with the production indexes."""
    database = mongomock.MongoClient()["storefront_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def catalog(db):
    return CatalogStore(db)


@pytest.fixture
def carts(db, catalog):
    return CartEngine(db, catalog)


@pytest.fixture
def orders(db, catalog, carts):
    return OrderEngine(db, catalog, carts)


@pytest.fixture
def user():
    return CurrentUser(id="user-1", role=Role.USER, email="buyer@shop.io")


@pytest.fixture
def other_user():
    return CurrentUser(id="user-2", role=Role.USER, email="other@shop.io")


@pytest.fixture
def admin():
    return CurrentUser(id="admin-1", role=Role.ADMIN, email="admin@shop.io")


@pytest.fixture
def category(catalog):
    return catalog.create_category(Category(name="Electronics"))


@pytest.fixture
def make_product(catalog, category):
    """Factory creating products in the test category."""

    def _make(name="Headphones", price=100.0, stock=5, **extra):
        payload = Product(name=name, price=price, stock=stock, category_id=category["_id"], **extra)
        product = catalog.add_product(payload)
        return str(product["_id"])

    return _make


@pytest.fixture
def gateway_requests():
    """Requests the fake gateway received, in order."""
    return []


@pytest.fixture
def gateway(gateway_requests):
    """RazorpayGateway wired to an httpx mock transport instead of the network."""

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        gateway_requests.append({"url": str(request.url), "body": body, "headers": dict(request.headers)})
        return httpx.Response(
            200,
            json={
                "id": f"order_rzp_{len(gateway_requests):04d}",
                "entity": "order",
                "amount": body["amount"],
                "currency": body["currency"],
                "receipt": body["receipt"],
                "status": "created",
            },
        )

    client = httpx.Client(transport=httpx.MockTransport(handler))
    gw = RazorpayGateway(key_id="rzp_test_key", key_secret=GATEWAY_SECRET, client=client)
    yield gw
    gw.close()


@pytest.fixture
def payments(orders, gateway):
    return PaymentService(orders, gateway)


@pytest.fixture
def api_client(db, gateway):
    """TestClient with the database and payment gateway swapped for test doubles."""
    import main
    from database import get_db

    main.app.dependency_overrides[get_db] = lambda: db
    main.app.dependency_overrides[main.get_payment_gateway] = lambda: gateway
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


def headers_for(user: CurrentUser) -> dict:
    headers = {"X-User-Id": user.id, "X-User-Role": user.role.value}
    if user.email:
        headers["X-User-Email"] = user.email
    return headers


@pytest.fixture
def auth_headers():
    return headers_for
