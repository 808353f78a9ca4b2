"""
client.py: Async HTTP client for the storefront API

Used by front ends and scripts that talk to a running storefront. Customer
calls are scoped by the browsing session id sent as `X-Session-ID`; admin
calls use the bearer token held by the client's AuthSessionManager.
"""

import logging
import uuid
from typing import List, Optional

import httpx

from .auth import AuthSessionManager, Subscription
from .schemas import (
    CartResponse, CheckoutResponse, ProductListResponse, ProductResponse,
    SaleResponse, SiteSettingsResponse, Token
)

log = logging.getLogger(__name__)


class StorefrontAPIError(Exception):
    """Non-2xx answer from the storefront, or the storefront was unreachable."""

    def __init__(self, status_code: Optional[int], detail: str):
        super().__init__(f"{status_code}: {detail}")
        self.status_code = status_code
        self.detail = detail


class StorefrontClient:
    """
    Args:
        base_url (str): Root URL of the storefront API.
        session_id (str | None): Browsing session id; a random one is used if omitted.
        transport (httpx.AsyncBaseTransport | None): Custom transport, e.g.
            httpx.ASGITransport to talk to the app in-process.
    """

    def __init__(self, base_url: str, session_id: Optional[str] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.session_id = session_id or uuid.uuid4().hex
        timeout_config = httpx.Timeout(5.0, read=10.0)
        self.client = httpx.AsyncClient(base_url=base_url, timeout=timeout_config, transport=transport)
        self.auth = AuthSessionManager(self._login)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.close()

    async def close(self):
        await self.client.aclose()

    def on_auth_state_change(self, callback) -> Subscription:
        return self.auth.on_auth_state_change(callback)

    async def _request(self, method: str, path: str, admin: bool = False, **kwargs):
        headers = kwargs.pop("headers", {})
        headers["X-Session-ID"] = self.session_id
        if admin:
            session = self.auth.get_session()
            if session is None:
                raise StorefrontAPIError(401, "Not signed in")
            headers["Authorization"] = f"Bearer {session.access_token}"

        try:
            response = await self.client.request(method, path, headers=headers, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            try:
                detail = e.response.json().get("detail", e.response.text)
            except ValueError:
                detail = e.response.text
            log.warning(f"[Session: {self.session_id}] {method} {path} -> {e.response.status_code}: {detail}")
            if e.response.status_code == 401 and admin:
                self.auth.sign_out()
            raise StorefrontAPIError(e.response.status_code, str(detail)) from e
        except httpx.RequestError as e:
            log.error(f"[Session: {self.session_id}] Storefront unreachable: {e}")
            raise StorefrontAPIError(None, "Storefront unavailable") from e
        return response.json()

    # --- Catalog ---
    async def list_products(self, page: int = 1, limit: int = 20) -> ProductListResponse:
        data = await self._request("GET", "/products", params={"page": page, "limit": limit})
        return ProductListResponse(**data["data"])

    async def get_settings(self) -> SiteSettingsResponse:
        data = await self._request("GET", "/settings")
        return SiteSettingsResponse(**data["data"])

    # --- Cart ---
    async def get_cart(self) -> CartResponse:
        data = await self._request("GET", "/cart")
        return CartResponse(**data["data"])

    async def add_to_cart(self, product_id: str, quantity: int = 1) -> CartResponse:
        data = await self._request("POST", "/cart/items", json={"product_id": product_id, "quantity": quantity})
        return CartResponse(**data["data"])

    async def set_quantity(self, product_id: str, quantity: int) -> CartResponse:
        data = await self._request("PUT", f"/cart/items/{product_id}", json={"quantity": quantity})
        return CartResponse(**data["data"])

    async def remove_from_cart(self, product_id: str) -> CartResponse:
        data = await self._request("DELETE", f"/cart/items/{product_id}")
        return CartResponse(**data["data"])

    # --- Checkout ---
    async def checkout(self, customer_name: Optional[str] = None,
                       customer_phone: Optional[str] = None) -> CheckoutResponse:
        payload = {"customer_name": customer_name, "customer_phone": customer_phone}
        data = await self._request("POST", "/checkout", json=payload)
        return CheckoutResponse(**data["data"])

    async def get_checkout(self) -> CheckoutResponse:
        data = await self._request("GET", "/checkout")
        return CheckoutResponse(**data["data"])

    async def close_checkout(self) -> CheckoutResponse:
        data = await self._request("DELETE", "/checkout")
        return CheckoutResponse(**data["data"])

    # --- Admin ---
    async def _login(self, email: str, password: str) -> Token:
        data = await self._request("POST", "/admin/login", json={"email": email, "password": password})
        return Token(**data["data"])

    async def sign_in(self, email: str, password: str):
        return await self.auth.sign_in(email, password)

    def sign_out(self):
        self.auth.sign_out()

    async def create_product(self, name: str, price, **fields) -> ProductResponse:
        payload = {"name": name, "price": str(price), **fields}
        data = await self._request("POST", "/admin/products", admin=True, json=payload)
        return ProductResponse(**data["data"])

    async def update_settings(self, **fields) -> SiteSettingsResponse:
        data = await self._request("PUT", "/admin/settings", admin=True, json=fields)
        return SiteSettingsResponse(**data["data"])

    async def list_sales(self, status: Optional[str] = None, page: int = 1, limit: int = 20) -> List[SaleResponse]:
        params = {"page": page, "limit": limit}
        if status:
            params["status"] = status
        data = await self._request("GET", "/admin/sales", admin=True, params=params)
        return [SaleResponse(**sale) for sale in data["data"]]

    async def set_sale_status(self, sale_id: str, status: str) -> SaleResponse:
        data = await self._request("PUT", f"/admin/sales/{sale_id}/status", admin=True, json={"status": status})
        return SaleResponse(**data["data"])

    async def settle_sale(self, sale_id: str) -> SaleResponse:
        """Marks a pending sale as paid once the PIX receipt has been checked."""
        return await self.set_sale_status(sale_id, "paid")
