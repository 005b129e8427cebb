import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.database import Database
from pymongo.errors import PyMongoError

import database
from auth import get_current_user, require_admin
from cart import CartEngine
from catalog import CatalogStore
from database import ensure_indexes, get_db, serialize_doc
from errors import ERROR_STATUS_CODES, StoreError
from orders import OrderEngine
from payments import PaymentService, RazorpayGateway
from schemas import (
    AddToCartPayload,
    CancelOrderPayload,
    Category,
    CategoryUpdate,
    CreateOrderPayload,
    CurrentUser,
    MarkPaidPayload,
    OrderStatus,
    OrderStatusUpdate,
    Product,
    ProductStatusUpdate,
    ProductUpdate,
    StockUpdatePayload,
    TrackingPayload,
    UpdateCartItemPayload,
    VerifyPaymentPayload,
)

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        try:
            ensure_indexes(database.db)
        except PyMongoError as e:
            logger.error(f"Could not create indexes: {e}")
    yield
    app.state.payment_gateway.close()


app = FastAPI(title="Storefront Commerce API", lifespan=lifespan)
app.state.payment_gateway = RazorpayGateway.from_env()

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError) -> JSONResponse:
    """Map StoreError subclasses to HTTP responses."""
    status_code = ERROR_STATUS_CODES.get(type(exc), 500)
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error_type": type(exc).__name__, "detail": str(exc)},
    )


# --------- Dependencies ---------
# Identity comes from X-User-* headers set by the upstream gateway (see auth.py).
# Deploy only behind a gateway that strips those headers from client requests.

def get_catalog(db: Database = Depends(get_db)) -> CatalogStore:
    return CatalogStore(db)


def get_cart_engine(catalog: CatalogStore = Depends(get_catalog)) -> CartEngine:
    return CartEngine(catalog.db, catalog)


def get_order_engine(carts: CartEngine = Depends(get_cart_engine)) -> OrderEngine:
    return OrderEngine(carts.db, carts.catalog, carts)


def get_payment_gateway(request: Request) -> RazorpayGateway:
    return request.app.state.payment_gateway


def get_payment_service(
    orders: OrderEngine = Depends(get_order_engine),
    gateway: RazorpayGateway = Depends(get_payment_gateway),
) -> PaymentService:
    return PaymentService(orders, gateway)


# --------- Basic Routes ---------

@app.get("/")
def read_root():
    return {"message": "Storefront API is running"}


@app.get("/health")
def health():
    return {"ok": True}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        db = database.db
        if db is not None:
            response["database"] = "✅ Available"
            response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
            response["database_name"] = getattr(db, 'name', None) or "unknown"
            response["connection_status"] = "Connected"
            try:
                collections = db.list_collection_names()
                response["collections"] = collections[:10]
                response["database"] = "✅ Connected & Working"
            except PyMongoError as e:
                response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"
        else:
            response["database"] = "⚠️  Available but not initialized"
    except PyMongoError as e:
        response["database"] = f"❌ Error: {str(e)[:50]}"
    return response


# --------- Categories ---------

@app.get("/api/categories")
def list_categories(
    is_active: Optional[bool] = None,
    parent_id: Optional[str] = Query(None, description='Parent id, or "null" for top-level categories'),
    search: Optional[str] = None,
    catalog: CatalogStore = Depends(get_catalog),
):
    categories = catalog.list_categories(is_active=is_active, parent_id=parent_id, search=search)
    return {"success": True, "count": len(categories), "categories": categories}


@app.get("/api/categories/tree")
def category_tree(catalog: CatalogStore = Depends(get_catalog)):
    return {"success": True, "category_tree": catalog.category_tree()}


@app.get("/api/categories/{category_id}")
def get_category(category_id: str, catalog: CatalogStore = Depends(get_catalog)):
    return {"success": True, "category": catalog.get_category(category_id)}


@app.post("/api/categories", status_code=201)
def create_category(
    payload: Category,
    admin: CurrentUser = Depends(require_admin),
    catalog: CatalogStore = Depends(get_catalog),
):
    category = catalog.create_category(payload)
    return {"success": True, "message": "Category created successfully", "category": category}


@app.put("/api/categories/{category_id}")
def update_category(
    category_id: str,
    payload: CategoryUpdate,
    admin: CurrentUser = Depends(require_admin),
    catalog: CatalogStore = Depends(get_catalog),
):
    category = catalog.update_category(category_id, payload)
    return {"success": True, "message": "Category updated successfully", "category": category}


@app.delete("/api/categories/{category_id}")
def delete_category(
    category_id: str,
    admin: CurrentUser = Depends(require_admin),
    catalog: CatalogStore = Depends(get_catalog),
):
    catalog.delete_category(category_id)
    return {"success": True, "message": "Category deleted successfully"}


# --------- Products ---------

@app.get("/api/products")
def list_products(
    category_id: Optional[str] = None,
    featured: Optional[bool] = None,
    min_price: Optional[float] = None,
    max_price: Optional[float] = None,
    q: Optional[str] = Query(None, description="search query"),
    sort: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    catalog: CatalogStore = Depends(get_catalog),
):
    result = catalog.list_products(
        category_id=category_id,
        featured=featured,
        is_active=True,
        min_price=min_price,
        max_price=max_price,
        search=q,
        sort=sort,
        page=page,
        limit=limit,
    )
    return {"success": True, **result}


@app.get("/api/products/{product_id}")
def get_product(product_id: str, catalog: CatalogStore = Depends(get_catalog)):
    return {"success": True, "product": serialize_doc(catalog.get_product(product_id, active_only=True))}


@app.post("/api/admin/products", status_code=201)
def add_product(
    payload: Product,
    admin: CurrentUser = Depends(require_admin),
    catalog: CatalogStore = Depends(get_catalog),
):
    product = catalog.add_product(payload)
    return {"success": True, "message": "Product added successfully", "product": serialize_doc(product)}


@app.get("/api/admin/products")
def admin_list_products(
    category_id: Optional[str] = None,
    featured: Optional[bool] = None,
    is_active: Optional[bool] = None,
    min_price: Optional[float] = None,
    max_price: Optional[float] = None,
    search: Optional[str] = None,
    sort: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    admin: CurrentUser = Depends(require_admin),
    catalog: CatalogStore = Depends(get_catalog),
):
    result = catalog.list_products(
        category_id=category_id,
        featured=featured,
        is_active=is_active,
        min_price=min_price,
        max_price=max_price,
        search=search,
        sort=sort,
        page=page,
        limit=limit,
    )
    return {"success": True, **result}


@app.get("/api/admin/products/stats")
def product_stats(admin: CurrentUser = Depends(require_admin), catalog: CatalogStore = Depends(get_catalog)):
    return {"success": True, "stats": catalog.product_stats()}


@app.post("/api/admin/products/update-stock")
def update_product_stock(
    payload: StockUpdatePayload,
    admin: CurrentUser = Depends(require_admin),
    catalog: CatalogStore = Depends(get_catalog),
):
    updates = catalog.bulk_update_stock(payload.products)
    return {"success": True, "message": "Product stock updated successfully", "updates": updates}


@app.put("/api/admin/products/{product_id}")
def update_product(
    product_id: str,
    payload: ProductUpdate,
    admin: CurrentUser = Depends(require_admin),
    catalog: CatalogStore = Depends(get_catalog),
):
    product = catalog.update_product(product_id, payload)
    return {"success": True, "message": "Product updated successfully", "product": serialize_doc(product)}


@app.patch("/api/admin/products/{product_id}/status")
def change_product_status(
    product_id: str,
    payload: ProductStatusUpdate,
    admin: CurrentUser = Depends(require_admin),
    catalog: CatalogStore = Depends(get_catalog),
):
    product = catalog.change_status(product_id, payload.is_active)
    state = "activated" if product["is_active"] else "deactivated"
    return {"success": True, "message": f"Product {state} successfully", "product": serialize_doc(product)}


@app.delete("/api/admin/products/{product_id}")
def delete_product(
    product_id: str,
    admin: CurrentUser = Depends(require_admin),
    catalog: CatalogStore = Depends(get_catalog),
):
    catalog.delete_product(product_id)
    return {"success": True, "message": "Product deleted successfully"}


# --------- Cart ---------

@app.get("/api/cart")
def get_cart(user: CurrentUser = Depends(get_current_user), carts: CartEngine = Depends(get_cart_engine)):
    return {"success": True, "cart": carts.get_cart(user.id)}


@app.post("/api/cart/items")
def add_to_cart(
    payload: AddToCartPayload,
    user: CurrentUser = Depends(get_current_user),
    carts: CartEngine = Depends(get_cart_engine),
):
    cart = carts.add_item(user.id, payload.product_id, payload.quantity)
    return {"success": True, "message": "Item added to cart", "cart": carts.project(cart)}


@app.put("/api/cart/items")
def update_cart_item(
    payload: UpdateCartItemPayload,
    user: CurrentUser = Depends(get_current_user),
    carts: CartEngine = Depends(get_cart_engine),
):
    cart = carts.update_item(user.id, payload.item_id, payload.quantity)
    return {"success": True, "message": "Cart updated successfully", "cart": carts.project(cart)}


@app.delete("/api/cart/items/{item_id}")
def remove_cart_item(
    item_id: str,
    user: CurrentUser = Depends(get_current_user),
    carts: CartEngine = Depends(get_cart_engine),
):
    cart = carts.remove_item(user.id, item_id)
    if cart is None:
        return {"success": True, "message": "Item removed and cart is now empty", "cart": carts.project(None)}
    return {"success": True, "message": "Item removed from cart", "cart": carts.project(cart)}


@app.delete("/api/cart")
def clear_cart(user: CurrentUser = Depends(get_current_user), carts: CartEngine = Depends(get_cart_engine)):
    carts.clear(user.id)
    return {"success": True, "message": "Cart cleared successfully"}


# --------- Orders ---------

@app.post("/api/orders", status_code=201)
def create_order(
    payload: CreateOrderPayload,
    user: CurrentUser = Depends(get_current_user),
    orders: OrderEngine = Depends(get_order_engine),
):
    order = orders.create_order(
        user,
        shipping_address=payload.shipping_address,
        payment_method=payload.payment_method,
        shipping_price=payload.shipping_price,
        tax_price=payload.tax_price,
        notes=payload.notes,
    )
    return {"success": True, "message": "Order created successfully", "order": orders.present(order)}


@app.get("/api/orders/mine")
def my_orders(user: CurrentUser = Depends(get_current_user), orders: OrderEngine = Depends(get_order_engine)):
    mine = [orders.present(o) for o in orders.list_mine(user)]
    return {"success": True, "count": len(mine), "orders": mine}


@app.get("/api/orders")
def all_orders(admin: CurrentUser = Depends(require_admin), orders: OrderEngine = Depends(get_order_engine)):
    result = orders.list_all()
    result["orders"] = [orders.present(o) for o in result["orders"]]
    return {"success": True, **result}


@app.post("/api/orders/verify-payment")
def verify_payment(
    payload: VerifyPaymentPayload,
    user: CurrentUser = Depends(get_current_user),
    payments: PaymentService = Depends(get_payment_service),
):
    order = payments.verify_callback(
        user,
        gateway_order_id=payload.razorpay_order_id,
        payment_id=payload.razorpay_payment_id,
        signature=payload.razorpay_signature,
        order_id=payload.order_id,
    )
    return {"success": True, "message": "Payment verified successfully", "order": OrderEngine.present(order)}


@app.get("/api/orders/{order_id}")
def get_order(
    order_id: str,
    user: CurrentUser = Depends(get_current_user),
    orders: OrderEngine = Depends(get_order_engine),
):
    return {"success": True, "order": orders.present(orders.get_order(user, order_id))}


@app.put("/api/orders/{order_id}/cancel")
def cancel_order(
    order_id: str,
    payload: CancelOrderPayload,
    user: CurrentUser = Depends(get_current_user),
    orders: OrderEngine = Depends(get_order_engine),
):
    order = orders.cancel_order(user, order_id, payload.cancel_reason)
    return {"success": True, "message": "Order cancelled successfully", "order": orders.present(order)}


@app.put("/api/orders/{order_id}/status")
def update_order_status(
    order_id: str,
    payload: OrderStatusUpdate,
    admin: CurrentUser = Depends(require_admin),
    orders: OrderEngine = Depends(get_order_engine),
):
    reason = None
    if payload.order_status == OrderStatus.CANCELLED:
        reason = payload.cancel_reason
    elif payload.order_status == OrderStatus.RETURNED:
        reason = payload.return_reason
    order = orders.update_status(order_id, payload.order_status, reason)
    return {
        "success": True,
        "message": f"Order status updated to {payload.order_status.value}",
        "order": orders.present(order),
    }


@app.put("/api/orders/{order_id}/pay")
def mark_order_paid(
    order_id: str,
    payload: MarkPaidPayload,
    admin: CurrentUser = Depends(require_admin),
    orders: OrderEngine = Depends(get_order_engine),
):
    order = orders.mark_paid(order_id, payload.payment_result)
    return {"success": True, "message": "Order marked as paid", "order": orders.present(order)}


@app.put("/api/orders/{order_id}/tracking")
def add_tracking_number(
    order_id: str,
    payload: TrackingPayload,
    admin: CurrentUser = Depends(require_admin),
    orders: OrderEngine = Depends(get_order_engine),
):
    order = orders.add_tracking(order_id, payload.tracking_number)
    return {"success": True, "message": "Tracking number added successfully", "order": orders.present(order)}


@app.post("/api/orders/{order_id}/restock")
def restock_order(
    order_id: str,
    admin: CurrentUser = Depends(require_admin),
    orders: OrderEngine = Depends(get_order_engine),
):
    order = orders.restock_order(order_id)
    return {"success": True, "message": "Stock restoration completed", "order": orders.present(order)}


@app.post("/api/orders/{order_id}/payment-intent")
def create_payment_intent(
    order_id: str,
    user: CurrentUser = Depends(get_current_user),
    payments: PaymentService = Depends(get_payment_service),
):
    return {"success": True, **payments.create_intent(user, order_id)}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
