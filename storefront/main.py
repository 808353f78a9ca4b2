from fastapi import FastAPI, Depends, HTTPException, status, Query, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from datetime import datetime
from typing import Optional, List

from shared.utils import (
    get_db_client, settings, SuccessResponse,
    NotFoundException, AppException, HealthResponse, require_admin
)
from shared.logging_config import setup_logging, RequestLoggingMiddleware
from shared.security_config import setup_rate_limiting, SecurityHeadersMiddleware, limiter

from .schemas import (
    ProductCreate, ProductUpdate, ProductResponse, ProductListResponse,
    CartItemAdd, CartItemUpdate, CartItemResponse, CartResponse,
    CheckoutRequest, CheckoutResponse, NotificationResponse,
    SaleResponse, SaleStatusUpdate, SALE_STATUSES,
    SiteSettingsResponse, SiteSettingsUpdate, AdminLogin, Token
)
from .models import ProductDB
from .auth import authenticate_admin
from .cart import BrowsingSession, SessionRegistry
from .checkout import (
    CheckoutFlow, CheckoutState, ConfigurationError, EmptyCartError,
    CheckoutStateError, PersistenceError, RenderError
)
from .clients import (
    SalesClient, ProductsClient, SiteSettingsClient, QrCodeEncoder, SalesClientError
)

# Setup Logging
logger = setup_logging("pix-storefront")

app = FastAPI(title="PIX Storefront")

# Security Setup
setup_rate_limiting(app)
app.add_middleware(SecurityHeadersMiddleware)

# Middleware
app.add_middleware(RequestLoggingMiddleware, service_name="pix-storefront")

# CORS Configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Browsing sessions live in process memory only
app.state.sessions = SessionRegistry()

CHECKOUT_ERROR_STATUS = {
    ConfigurationError: status.HTTP_503_SERVICE_UNAVAILABLE,
    EmptyCartError: status.HTTP_400_BAD_REQUEST,
    CheckoutStateError: status.HTTP_409_CONFLICT,
    PersistenceError: status.HTTP_502_BAD_GATEWAY,
}

@app.on_event("startup")
async def startup_db_client():
    app.mongodb_client = get_db_client()
    app.mongodb = app.mongodb_client[settings.DATABASE_NAME]
    # Indexes
    await app.mongodb.sales.create_index([("status", 1), ("created_at", -1)])
    await app.mongodb.products.create_index([("is_active", 1), ("name", 1)])

@app.on_event("shutdown")
async def shutdown_db_client():
    app.mongodb_client.close()

# --- Dependencies ---
def get_sales_client(request: Request) -> SalesClient:
    return SalesClient(request.app.mongodb)

def get_products_client(request: Request) -> ProductsClient:
    return ProductsClient(request.app.mongodb)

def get_settings_client(request: Request) -> SiteSettingsClient:
    return SiteSettingsClient(request.app.mongodb)

def get_qr_encoder() -> QrCodeEncoder:
    return QrCodeEncoder()

def get_browsing_session(
    request: Request,
    session_id: str = Header(..., alias="X-Session-ID", min_length=8, max_length=128)
) -> BrowsingSession:
    return request.app.state.sessions.get(session_id)

# --- Helpers ---
def render_cart(session: BrowsingSession) -> CartResponse:
    cart = session.cart
    return CartResponse(
        session_id=session.session_id,
        items=[
            CartItemResponse(
                product_id=item.id,
                name=item.name,
                price=item.price,
                quantity=item.quantity,
                subtotal=item.subtotal,
                image_url=item.image_url
            )
            for item in cart.items
        ],
        total_quantity=cart.total_quantity,
        total=cart.total_price
    )

def render_checkout(session: BrowsingSession, primary_color: Optional[str] = None) -> CheckoutResponse:
    flow = session.checkout
    notifications = [
        NotificationResponse(level=n.level, message=n.message)
        for n in session.notifications.drain()
    ]
    view = CheckoutResponse(
        state=CheckoutState.EDITING.value,
        cart=render_cart(session),
        primary_color=primary_color,
        notifications=notifications
    )
    if flow is None:
        return view

    view.state = flow.state.value
    view.primary_color = flow.site_settings.primary_color
    if flow.state is CheckoutState.PAYMENT_PENDING:
        # Everything shown after payment comes from the frozen order, not the live cart
        order = flow.finalized_order
        view.sale_id = flow.sale.id if flow.sale else None
        view.total = order.total
        view.items_description = order.description
        view.qr_code_url = flow.qr_code_url
        view.whatsapp_link = flow.whatsapp_link
    return view

# --- Endpoints ---

# Catalog
@app.get("/products", response_model=SuccessResponse[ProductListResponse])
async def list_products(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    category: Optional[str] = None,
    products: ProductsClient = Depends(get_products_client)
):
    items, total = await products.list(page=page, limit=limit, category=category)
    return SuccessResponse(data=ProductListResponse(products=items, total=total, page=page, limit=limit))

@app.get("/products/{product_id}", response_model=SuccessResponse[ProductResponse])
async def get_product(product_id: str, products: ProductsClient = Depends(get_products_client)):
    product = await products.get(product_id)
    if not product or not product.is_active:
        raise NotFoundException("Product not found")
    return SuccessResponse(data=product)

@app.get("/settings", response_model=SuccessResponse[SiteSettingsResponse])
async def get_site_settings(site: SiteSettingsClient = Depends(get_settings_client)):
    current = await site.get()
    return SuccessResponse(data=SiteSettingsResponse(**current.model_dump()))

# Cart
@app.get("/cart", response_model=SuccessResponse[CartResponse])
async def get_cart(session: BrowsingSession = Depends(get_browsing_session)):
    return SuccessResponse(data=render_cart(session))

@app.post("/cart/items", response_model=SuccessResponse[CartResponse])
async def add_to_cart(
    item: CartItemAdd,
    session: BrowsingSession = Depends(get_browsing_session),
    products: ProductsClient = Depends(get_products_client)
):
    product = await products.get(item.product_id)
    if not product:
        raise NotFoundException(f"Product {item.product_id} not found")
    if not product.is_active:
        raise HTTPException(status_code=400, detail="Product is not active")

    session.cart.add(product, item.quantity)
    return SuccessResponse(data=render_cart(session))

@app.put("/cart/items/{product_id}", response_model=SuccessResponse[CartResponse])
async def update_cart_item(
    product_id: str,
    update: CartItemUpdate,
    session: BrowsingSession = Depends(get_browsing_session)
):
    try:
        session.cart.set_quantity(product_id, update.quantity)
    except KeyError:
        raise NotFoundException("Item not found in cart")
    return SuccessResponse(data=render_cart(session))

@app.delete("/cart/items/{product_id}", response_model=SuccessResponse[CartResponse])
async def remove_cart_item(product_id: str, session: BrowsingSession = Depends(get_browsing_session)):
    session.cart.remove(product_id)
    return SuccessResponse(data=render_cart(session))

@app.delete("/cart", response_model=SuccessResponse[CartResponse])
async def clear_cart(session: BrowsingSession = Depends(get_browsing_session)):
    session.cart.clear()
    return SuccessResponse(data=render_cart(session), message="Cart cleared")

# Checkout
@app.post("/checkout", response_model=SuccessResponse[CheckoutResponse])
@limiter.limit(settings.CHECKOUT_RATE_LIMIT)
async def checkout(
    request: Request,
    body: CheckoutRequest,
    session: BrowsingSession = Depends(get_browsing_session),
    sales: SalesClient = Depends(get_sales_client),
    site: SiteSettingsClient = Depends(get_settings_client),
    qr_encoder: QrCodeEncoder = Depends(get_qr_encoder)
):
    if session.checkout_lock.locked():
        raise AppException(status.HTTP_409_CONFLICT, "Seu pedido já está sendo finalizado.")

    async with session.checkout_lock:
        flow = session.checkout
        if flow is None or flow.state is CheckoutState.EDITING:
            # Fresh settings for every attempt; the admin may have just set the PIX key
            flow = CheckoutFlow(
                cart=session.cart,
                site_settings=await site.get(),
                sales_client=sales,
                qr_encoder=qr_encoder,
                notifier=session.notifications,
                session_id=session.session_id
            )
            session.checkout = flow

        error = await flow.finalize_order(body.customer_name, body.customer_phone)

    if error is not None and not isinstance(error, RenderError):
        session.notifications.drain()
        raise AppException(CHECKOUT_ERROR_STATUS.get(type(error), status.HTTP_400_BAD_REQUEST), error.message)

    message = error.message if error else "Pedido criado! Agora realize o pagamento."
    return SuccessResponse(data=render_checkout(session), message=message)

@app.get("/checkout", response_model=SuccessResponse[CheckoutResponse])
async def get_checkout(
    session: BrowsingSession = Depends(get_browsing_session),
    site: SiteSettingsClient = Depends(get_settings_client)
):
    primary_color = None
    if session.checkout is None:
        primary_color = (await site.get()).primary_color
    return SuccessResponse(data=render_checkout(session, primary_color))

@app.delete("/checkout", response_model=SuccessResponse[CheckoutResponse])
async def close_checkout(session: BrowsingSession = Depends(get_browsing_session)):
    # Closing the payment screen drops the frozen order; the next checkout starts over
    if session.checkout_lock.locked() or (session.checkout is not None and session.checkout.is_submitting):
        raise AppException(status.HTTP_409_CONFLICT, "Checkout is still being submitted")
    session.checkout = None
    return SuccessResponse(data=render_checkout(session), message="Checkout closed")

# Admin
@app.post("/admin/login", response_model=SuccessResponse[Token])
@limiter.limit(settings.LOGIN_RATE_LIMIT)
async def admin_login(credentials: AdminLogin, request: Request):
    return SuccessResponse(data=authenticate_admin(credentials.email, credentials.password))

@app.get("/admin/verify", response_model=SuccessResponse[dict])
async def admin_verify(admin: dict = Depends(require_admin)):
    return SuccessResponse(data=admin, message="Token is valid")

@app.post("/admin/products", response_model=SuccessResponse[ProductResponse])
async def create_product(
    product: ProductCreate,
    admin: dict = Depends(require_admin),
    products: ProductsClient = Depends(get_products_client)
):
    created = await products.create(ProductDB(**product.model_dump()))
    return SuccessResponse(data=created, message="Product created")

@app.get("/admin/products", response_model=SuccessResponse[ProductListResponse])
async def admin_list_products(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    admin: dict = Depends(require_admin),
    products: ProductsClient = Depends(get_products_client)
):
    items, total = await products.list(page=page, limit=limit, include_inactive=True)
    return SuccessResponse(data=ProductListResponse(products=items, total=total, page=page, limit=limit))

@app.put("/admin/products/{product_id}", response_model=SuccessResponse[ProductResponse])
async def update_product(
    product_id: str,
    update: ProductUpdate,
    admin: dict = Depends(require_admin),
    products: ProductsClient = Depends(get_products_client)
):
    fields = update.model_dump(exclude_unset=True)
    if not fields:
        raise HTTPException(status_code=400, detail="Nothing to update")
    updated = await products.update(product_id, fields)
    if not updated:
        raise NotFoundException("Product not found")
    return SuccessResponse(data=updated, message="Product updated")

@app.delete("/admin/products/{product_id}", response_model=SuccessResponse[dict])
async def delete_product(
    product_id: str,
    admin: dict = Depends(require_admin),
    products: ProductsClient = Depends(get_products_client)
):
    if not await products.delete(product_id):
        raise NotFoundException("Product not found")
    return SuccessResponse(message="Product deleted")

@app.get("/admin/sales", response_model=SuccessResponse[List[SaleResponse]])
async def list_sales(
    sale_status: Optional[str] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    admin: dict = Depends(require_admin),
    sales: SalesClient = Depends(get_sales_client)
):
    if sale_status and sale_status not in SALE_STATUSES:
        raise HTTPException(status_code=400, detail=f"Unknown status {sale_status}")
    try:
        items, total = await sales.list(status=sale_status, page=page, limit=limit)
    except SalesClientError:
        raise AppException(status.HTTP_503_SERVICE_UNAVAILABLE, "Sales store unavailable")
    return SuccessResponse(data=items, message=f"{total} sales")

@app.get("/admin/sales/{sale_id}", response_model=SuccessResponse[SaleResponse])
async def get_sale(
    sale_id: str,
    admin: dict = Depends(require_admin),
    sales: SalesClient = Depends(get_sales_client)
):
    try:
        sale = await sales.get(sale_id)
    except SalesClientError:
        raise AppException(status.HTTP_503_SERVICE_UNAVAILABLE, "Sales store unavailable")
    if not sale:
        raise NotFoundException("Sale not found")
    return SuccessResponse(data=sale)

@app.put("/admin/sales/{sale_id}/status", response_model=SuccessResponse[SaleResponse])
async def update_sale_status(
    sale_id: str,
    status_update: SaleStatusUpdate,
    admin: dict = Depends(require_admin),
    sales: SalesClient = Depends(get_sales_client)
):
    try:
        # Filtered on status so a sale already settled or cancelled is never overwritten
        updated = await sales.update_status(sale_id, status_update.status, current_status="pending")
        if not updated:
            sale = await sales.get(sale_id)
    except SalesClientError:
        raise AppException(status.HTTP_503_SERVICE_UNAVAILABLE, "Sales store unavailable")

    if not updated:
        if not sale:
            raise NotFoundException("Sale not found")
        raise HTTPException(status_code=400, detail=f"Sale is {sale.status}, cannot change status")

    logger.info(f"Sale {sale_id} marked {status_update.status} by {admin.get('sub')}", extra={"sale_id": sale_id})
    return SuccessResponse(data=updated, message=f"Sale {status_update.status}")

@app.put("/admin/settings", response_model=SuccessResponse[SiteSettingsResponse])
async def update_site_settings(
    update: SiteSettingsUpdate,
    admin: dict = Depends(require_admin),
    site: SiteSettingsClient = Depends(get_settings_client)
):
    fields = update.model_dump(exclude_unset=True)
    if not fields:
        raise HTTPException(status_code=400, detail="Nothing to update")
    current = await site.update(fields)
    return SuccessResponse(data=SiteSettingsResponse(**current.model_dump()), message="Settings updated")

@app.get("/health", response_model=HealthResponse)
async def health_check():
    db_status = "unhealthy"

    # Check DB
    try:
        await app.mongodb_client.admin.command('ping')
        db_status = "connected"
    except Exception:
        db_status = "disconnected"

    if db_status != "connected":
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service Unhealthy"
        )

    return HealthResponse(
        service="pix-storefront",
        status="healthy",
        timestamp=datetime.utcnow(),
        version="1.0.0",
        database=db_status
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
