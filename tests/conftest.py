import asyncio
from datetime import datetime
from decimal import Decimal
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from shared.security_config import limiter
from shared.utils import settings, get_password_hash
from storefront import main
from storefront.cart import SessionRegistry
from storefront.clients import QrEncodingError, SalesClientError
from storefront.models import SiteSettingsDB
from storefront.schemas import ProductResponse, SaleResponse

ADMIN_PASSWORD = "s3cret-pass"
ADMIN_PASSWORD_HASH = get_password_hash(ADMIN_PASSWORD)
PIX_KEY = "chave-pix@loja.com.br"


class FakeSalesClient:
    """In-memory `sales` collection; set `fail` to make create() blow up."""

    def __init__(self):
        self.records = []
        self.sales = {}
        self.fail = False
        self.release = None

    async def create(self, record):
        self.records.append(record)
        if self.release is not None:
            await self.release.wait()
        if self.fail:
            raise SalesClientError("connection refused")
        sale = SaleResponse(id=f"sale-{len(self.records)}", **record.model_dump(exclude={"id"}))
        self.sales[sale.id] = sale
        return sale

    async def get(self, sale_id):
        return self.sales.get(sale_id)

    async def list(self, status=None, page=1, limit=20):
        sales = [s for s in self.sales.values() if status is None or s.status == status]
        sales.sort(key=lambda s: s.created_at, reverse=True)
        return sales[(page - 1) * limit:page * limit], len(sales)

    async def update_status(self, sale_id, status, current_status=None):
        sale = self.sales.get(sale_id)
        if sale is None or (current_status and sale.status != current_status):
            return None
        sale = sale.model_copy(update={"status": status, "updated_at": datetime.utcnow()})
        self.sales[sale_id] = sale
        return sale


class FakeProductsClient:
    def __init__(self):
        self.products = {}

    def seed(self, id, name, price, is_active=True):
        self.products[id] = ProductResponse(
            id=id, name=name, price=Decimal(price), is_active=is_active,
            created_at=datetime.utcnow()
        )
        return self.products[id]

    async def list(self, page=1, limit=20, category=None, include_inactive=False):
        items = [p for p in self.products.values() if include_inactive or p.is_active]
        return items[(page - 1) * limit:page * limit], len(items)

    async def get(self, product_id):
        return self.products.get(product_id)

    async def create(self, product):
        new_id = f"prod-{len(self.products) + 1}"
        data = product.model_dump(exclude={"id"})
        self.products[new_id] = ProductResponse(id=new_id, **data)
        return self.products[new_id]

    async def update(self, product_id, fields):
        product = self.products.get(product_id)
        if product is None:
            return None
        self.products[product_id] = product.model_copy(update=fields)
        return self.products[product_id]

    async def delete(self, product_id):
        return self.products.pop(product_id, None) is not None


class FakeSettingsClient:
    def __init__(self, **fields):
        self.current = SiteSettingsDB(**fields)

    async def get(self):
        return self.current

    async def update(self, fields):
        self.current = self.current.model_copy(update=fields)
        return self.current


class FakeQrEncoder:
    def __init__(self):
        self.fail = False
        self.calls = []

    def encode(self, text, width=280, margin=2):
        self.calls.append((text, width, margin))
        if self.fail:
            raise QrEncodingError("boom")
        return f"data:image/png;base64,{text}"


class RecordingNotifier:
    def __init__(self):
        self.successes = []
        self.errors = []

    def success(self, message):
        self.successes.append(message)

    def error(self, message):
        self.errors.append(message)


@pytest.fixture
def sales():
    return FakeSalesClient()


@pytest.fixture
def products():
    fake = FakeProductsClient()
    fake.seed("prod-a", "A", "10.00")
    fake.seed("prod-b", "B", "5.50")
    fake.seed("prod-off", "Esgotado", "3.00", is_active=False)
    return fake


@pytest.fixture
def site():
    return FakeSettingsClient(pix_key=PIX_KEY, primary_color="#ff0000")


@pytest.fixture
def qr_encoder():
    return FakeQrEncoder()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def stores(sales, products, site, qr_encoder):
    return SimpleNamespace(sales=sales, products=products, site=site, qr=qr_encoder)


@pytest.fixture
def app(stores, monkeypatch):
    app = main.app
    app.dependency_overrides[main.get_sales_client] = lambda: stores.sales
    app.dependency_overrides[main.get_products_client] = lambda: stores.products
    app.dependency_overrides[main.get_settings_client] = lambda: stores.site
    app.dependency_overrides[main.get_qr_encoder] = lambda: stores.qr
    app.state.sessions = SessionRegistry()
    monkeypatch.setattr(settings, "ADMIN_PASSWORD_HASH", ADMIN_PASSWORD_HASH)
    monkeypatch.setattr(limiter, "enabled", False)
    yield app
    app.dependency_overrides.clear()


@pytest.fixture
def api(app):
    # No context manager: startup would try to reach MongoDB
    return TestClient(app)


@pytest.fixture
def admin_headers(api):
    resp = api.post("/admin/login", json={"email": settings.ADMIN_EMAIL, "password": ADMIN_PASSWORD})
    assert resp.status_code == 200, resp.text
    return {"Authorization": f"Bearer {resp.json()['data']['access_token']}"}


def session_headers(session_id="session-0001"):
    return {"X-Session-ID": session_id}


async def wait_until(predicate, timeout=1.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0)
