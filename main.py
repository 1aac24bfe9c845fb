import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Request, Response, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.errors import PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException

import config
import database
from auth import (
    CurrentUser,
    IdentityProvider,
    get_current_admin,
    get_current_user,
    get_optional_user,
    public_user,
    seed_admin,
)
from cart import CartManager
from catalog import Catalog
from database import get_db, object_id
from errors import Forbidden, NotFound, StoreError
from integrations import AdsPlatform, ChatCompletionClient, SupplierCatalog
from merchandising import AdCampaigns, ProductAnalyst, SupplierImporter, load_settings, save_settings
from orders import OrderEngine
from reviews import ReviewAggregator
from schemas import (
    AnalysisSettingsUpdate,
    BulkImportRequest,
    CampaignCreate,
    CampaignUpdate,
    CancelRequest,
    CartLineIn,
    CartLineUpdate,
    ForgotPasswordPayload,
    ImportRequest,
    LoginPayload,
    OrderCreate,
    PaymentStatusChange,
    Product,
    ProductUpdate,
    RegisterPayload,
    ResetPasswordPayload,
    ReviewCreate,
    StatusChange,
)

config.setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is None:
        logger.warning("DATABASE_URL/DATABASE_NAME not set; requests needing the database will fail")
    else:
        database.ensure_indexes(database.db)
        if config.ADMIN_EMAIL and config.ADMIN_PASSWORD:
            seed_admin(database.db, config.ADMIN_EMAIL, config.ADMIN_PASSWORD)
    yield


app = FastAPI(title="Storefront API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Error rendering

@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)}, headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if errors:
        first = errors[0]
        field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        message = f"{field}: {first.get('msg')}" if field else first.get("msg")
    else:
        message = "Invalid request"
    return JSONResponse(status_code=400, content={"error": message})


@app.exception_handler(PyMongoError)
async def database_error_handler(request: Request, exc: PyMongoError):
    logger.exception("Database error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


# Dependencies

def get_catalog(db=Depends(get_db)) -> Catalog:
    return Catalog(db)


def get_carts(db=Depends(get_db)) -> CartManager:
    return CartManager(db)


def get_orders(db=Depends(get_db)) -> OrderEngine:
    return OrderEngine(db)


def get_reviews(db=Depends(get_db)) -> ReviewAggregator:
    return ReviewAggregator(db)


def get_identity(db=Depends(get_db)) -> IdentityProvider:
    return IdentityProvider(db)


def get_llm():
    return ChatCompletionClient()


def get_supplier():
    return SupplierCatalog()


def get_ads_platform():
    return AdsPlatform()


@app.get("/")
def root():
    return {"message": "Storefront API", "version": app.version, "status": "running"}


# Auth endpoints

@app.post("/auth/register", status_code=status.HTTP_201_CREATED)
def register(payload: RegisterPayload, identity: IdentityProvider = Depends(get_identity)):
    user = identity.sign_up(payload.email, payload.password, payload.full_name)
    return {"message": "User created successfully", "user": user}


@app.post("/auth/login")
def login(payload: LoginPayload, identity: IdentityProvider = Depends(get_identity)):
    result = identity.sign_in(payload.email, payload.password)
    return {"message": "Login successful", **result}


@app.post("/auth/admin-login")
def admin_login(payload: LoginPayload, identity: IdentityProvider = Depends(get_identity)):
    result = identity.sign_in(payload.email, payload.password)
    if result["user"]["role"] != "admin":
        raise Forbidden("Admin access required")
    return {"message": "Admin login successful", **result}


@app.get("/auth/me")
def me(user: CurrentUser = Depends(get_current_user), db=Depends(get_db)):
    profile = db["user"].find_one({"_id": object_id(user.id, "User")})
    if not profile:
        raise NotFound("User not found")
    return {"user": {**public_user(profile), "role": user.role}}


@app.post("/auth/logout")
def logout(user: CurrentUser = Depends(get_current_user), identity: IdentityProvider = Depends(get_identity)):
    identity.sign_out(user.token)
    return {"message": "Logout successful"}


@app.post("/auth/forgot-password")
def forgot_password(payload: ForgotPasswordPayload, identity: IdentityProvider = Depends(get_identity)):
    identity.request_password_reset(payload.email)
    return {"message": "If the account exists, a password reset email has been sent"}


@app.post("/auth/reset-password")
def reset_password(payload: ResetPasswordPayload, identity: IdentityProvider = Depends(get_identity)):
    identity.reset_password(payload.token, payload.new_password)
    return {"message": "Password updated"}


# Products

@app.get("/products")
def list_products(
    category: Optional[str] = None,
    search: Optional[str] = None,
    min_price: Optional[float] = None,
    max_price: Optional[float] = None,
    rating: Optional[float] = None,
    sort: str = "created_at",
    order: str = "desc",
    page: int = 1,
    limit: int = 20,
    user: Optional[CurrentUser] = Depends(get_optional_user),
    catalog: Catalog = Depends(get_catalog),
):
    return catalog.list_products(category, search, min_price, max_price, rating, sort, order, page, limit)


@app.get("/products/categories")
def list_categories(catalog: Catalog = Depends(get_catalog)):
    return catalog.list_categories()


@app.get("/products/admin/all")
def admin_list_products(admin=Depends(get_current_admin), catalog: Catalog = Depends(get_catalog)):
    return catalog.list_all()


@app.get("/products/{product_id}")
def get_product(product_id: str, user: Optional[CurrentUser] = Depends(get_optional_user),
                catalog: Catalog = Depends(get_catalog), reviews: ReviewAggregator = Depends(get_reviews)):
    product = catalog.get_product(product_id, include_unapproved=bool(user and user.is_admin))
    product["reviews"] = reviews.list(product_id)
    return product


@app.post("/products", status_code=status.HTTP_201_CREATED)
def create_product(product: Product, admin=Depends(get_current_admin), catalog: Catalog = Depends(get_catalog)):
    return catalog.create_product(product)


@app.put("/products/{product_id}")
def update_product(product_id: str, updates: ProductUpdate, admin=Depends(get_current_admin),
                   catalog: Catalog = Depends(get_catalog)):
    return catalog.update_product(product_id, updates)


@app.delete("/products/{product_id}")
def delete_product(product_id: str, admin=Depends(get_current_admin), catalog: Catalog = Depends(get_catalog)):
    catalog.delete_product(product_id)
    return {"message": "Product deleted successfully"}


@app.post("/products/{product_id}/approve")
def approve_product(product_id: str, admin=Depends(get_current_admin), catalog: Catalog = Depends(get_catalog)):
    return catalog.set_approval(product_id, True)


@app.post("/products/{product_id}/reject")
def reject_product(product_id: str, admin=Depends(get_current_admin), catalog: Catalog = Depends(get_catalog)):
    return catalog.set_approval(product_id, False)


@app.get("/products/{product_id}/reviews")
def list_reviews(product_id: str, catalog: Catalog = Depends(get_catalog), reviews: ReviewAggregator = Depends(get_reviews)):
    catalog.get_product(product_id)
    return reviews.list(product_id)


@app.post("/products/{product_id}/reviews", status_code=status.HTTP_201_CREATED)
def add_review(product_id: str, payload: ReviewCreate, user: CurrentUser = Depends(get_current_user),
               reviews: ReviewAggregator = Depends(get_reviews), orders: OrderEngine = Depends(get_orders)):
    verified = orders.has_purchased(user.id, product_id)
    return reviews.add(user.id, product_id, payload.rating, payload.comment, verified)


# Cart

@app.get("/cart")
def get_cart(user: CurrentUser = Depends(get_current_user), carts: CartManager = Depends(get_carts)):
    return carts.list(user.id)


@app.post("/cart")
def add_to_cart(payload: CartLineIn, response: Response, user: CurrentUser = Depends(get_current_user),
                carts: CartManager = Depends(get_carts)):
    line, created = carts.add(user.id, payload.product_id, payload.quantity)
    if created:
        response.status_code = status.HTTP_201_CREATED
        return {"message": "Item added to cart successfully", "cart_item": line}
    return {"message": "Cart item updated successfully", "cart_item": line}


@app.put("/cart/{line_id}")
def update_cart_item(line_id: str, payload: CartLineUpdate, user: CurrentUser = Depends(get_current_user),
                     carts: CartManager = Depends(get_carts)):
    line = carts.update(user.id, line_id, payload.quantity)
    return {"message": "Cart item updated successfully", "cart_item": line}


@app.delete("/cart/{line_id}")
def remove_cart_item(line_id: str, user: CurrentUser = Depends(get_current_user), carts: CartManager = Depends(get_carts)):
    carts.remove(user.id, line_id)
    return {"message": "Item removed from cart successfully"}


@app.delete("/cart")
def clear_cart(user: CurrentUser = Depends(get_current_user), carts: CartManager = Depends(get_carts)):
    removed = carts.clear(user.id)
    return {"message": "Cart cleared successfully", "removed": removed}


# Orders

@app.post("/orders", status_code=status.HTTP_201_CREATED)
def create_order(payload: OrderCreate, user: CurrentUser = Depends(get_current_user),
                 orders: OrderEngine = Depends(get_orders)):
    order = orders.place(user.id, payload.items, payload.shipping_address, payload.payment_method)
    return {"message": "Order created successfully", "order": order}


@app.get("/orders")
def list_orders(status: Optional[str] = None, page: int = 1, limit: int = 10,
                user: CurrentUser = Depends(get_current_user), orders: OrderEngine = Depends(get_orders)):
    return orders.list_for_user(user.id, status, page, limit)


@app.get("/orders/admin/all")
def admin_list_orders(status: Optional[str] = None, page: int = 1, limit: int = 20,
                      admin=Depends(get_current_admin), orders: OrderEngine = Depends(get_orders)):
    return orders.list_all(status, page, limit)


@app.get("/orders/track/{tracking_number}")
def track_order(tracking_number: str, orders: OrderEngine = Depends(get_orders)):
    return orders.track(tracking_number)


@app.get("/orders/{order_id}")
def get_order(order_id: str, user: CurrentUser = Depends(get_current_user), orders: OrderEngine = Depends(get_orders)):
    return orders.get(user, order_id)


@app.patch("/orders/{order_id}/status")
def change_order_status(order_id: str, payload: StatusChange, admin: CurrentUser = Depends(get_current_admin),
                        orders: OrderEngine = Depends(get_orders)):
    order = orders.set_status(admin, order_id, payload.status, payload.tracking_number, payload.reason)
    return {"message": "Order status updated successfully", "order": order}


@app.patch("/orders/{order_id}/payment-status")
def change_payment_status(order_id: str, payload: PaymentStatusChange, admin=Depends(get_current_admin),
                          orders: OrderEngine = Depends(get_orders)):
    order = orders.set_payment_status(order_id, payload.payment_status)
    return {"message": "Payment status updated successfully", "order": order}


@app.post("/orders/{order_id}/cancel")
def cancel_order(order_id: str, payload: Optional[CancelRequest] = None, user: CurrentUser = Depends(get_current_user),
                 orders: OrderEngine = Depends(get_orders)):
    order = orders.cancel(user, order_id, payload.reason if payload else None)
    return {"message": "Order cancelled successfully", "order": order}


# AI analysis (admin)

@app.post("/ai/analyze-product/{product_id}")
def analyze_product(product_id: str, admin=Depends(get_current_admin), db=Depends(get_db), llm=Depends(get_llm)):
    analysis = ProductAnalyst(db, llm).analyze(product_id)
    return {"success": True, "analysis": analysis}


@app.post("/ai/bulk-analyze")
def bulk_analyze(admin=Depends(get_current_admin), db=Depends(get_db), llm=Depends(get_llm)):
    return ProductAnalyst(db, llm).bulk_analyze()


@app.get("/ai/config")
def get_ai_config(admin=Depends(get_current_admin), db=Depends(get_db)):
    return load_settings(db)


@app.post("/ai/config")
def update_ai_config(payload: AnalysisSettingsUpdate, admin=Depends(get_current_admin), db=Depends(get_db)):
    return {"success": True, "config": save_settings(db, payload)}


@app.get("/ai/analyses")
def list_analyses(admin=Depends(get_current_admin), db=Depends(get_db), llm=Depends(get_llm)):
    return ProductAnalyst(db, llm).list_analyses()


@app.post("/ai/analyses/{analysis_id}/approve")
def approve_analysis(analysis_id: str, admin=Depends(get_current_admin), db=Depends(get_db), llm=Depends(get_llm)):
    analysis = ProductAnalyst(db, llm).approve_analysis(analysis_id)
    return {"success": True, "analysis": analysis}


# Supplier catalog (admin)

@app.get("/supplier/search")
def supplier_search(query: Optional[str] = None, category: Optional[str] = None,
                    min_price: Optional[float] = None, max_price: Optional[float] = None,
                    admin=Depends(get_current_admin), supplier: SupplierCatalog = Depends(get_supplier)):
    results = supplier.search(query, category, min_price, max_price)
    return {"products": jsonable_encoder(results), "total": len(results), "page": 1, "total_pages": 1}


@app.get("/supplier/trending")
def supplier_trending(admin=Depends(get_current_admin), supplier: SupplierCatalog = Depends(get_supplier)):
    return {"products": jsonable_encoder(supplier.trending()), "updated_at": database.utcnow()}


@app.get("/supplier/imports")
def supplier_imports(admin=Depends(get_current_admin), db=Depends(get_db), supplier: SupplierCatalog = Depends(get_supplier),
                     llm=Depends(get_llm)):
    return SupplierImporter(db, supplier, llm).imports()


@app.get("/supplier/products/{listing_id}")
def supplier_product(listing_id: str, admin=Depends(get_current_admin), supplier: SupplierCatalog = Depends(get_supplier)):
    return supplier.import_listing(listing_id)


@app.post("/supplier/import/{listing_id}")
def supplier_import(listing_id: str, payload: Optional[ImportRequest] = None, admin=Depends(get_current_admin),
                    db=Depends(get_db), supplier: SupplierCatalog = Depends(get_supplier), llm=Depends(get_llm)):
    markup = payload.markup if payload else config.DEFAULT_MARKUP_PERCENT
    result = SupplierImporter(db, supplier, llm).import_listing(listing_id, markup)
    return {"success": True, **result}


@app.post("/supplier/bulk-import")
def supplier_bulk_import(payload: BulkImportRequest, admin=Depends(get_current_admin), db=Depends(get_db),
                         supplier: SupplierCatalog = Depends(get_supplier), llm=Depends(get_llm)):
    result = SupplierImporter(db, supplier, llm).bulk_import(payload.product_ids, payload.markup)
    return {"success": True, **result}


# Ad campaigns (admin)

@app.get("/ads/campaigns")
def list_campaigns(admin=Depends(get_current_admin), db=Depends(get_db), llm=Depends(get_llm)):
    return AdCampaigns(db, llm).list()


@app.post("/ads/campaigns", status_code=status.HTTP_201_CREATED)
def create_campaign(payload: CampaignCreate, admin=Depends(get_current_admin), db=Depends(get_db),
                    llm=Depends(get_llm), platform: AdsPlatform = Depends(get_ads_platform)):
    campaign = AdCampaigns(db, llm, platform).create(payload)
    return {"success": True, "campaign": campaign}


@app.put("/ads/campaigns/{campaign_id}")
def update_campaign(campaign_id: str, payload: CampaignUpdate, admin=Depends(get_current_admin), db=Depends(get_db),
                    llm=Depends(get_llm), platform: AdsPlatform = Depends(get_ads_platform)):
    campaign = AdCampaigns(db, llm, platform).update(campaign_id, payload)
    return {"success": True, "campaign": campaign}


@app.get("/ads/campaigns/{campaign_id}/performance")
def campaign_performance(campaign_id: str, admin=Depends(get_current_admin), db=Depends(get_db),
                         llm=Depends(get_llm), platform: AdsPlatform = Depends(get_ads_platform)):
    return AdCampaigns(db, llm, platform).performance(campaign_id)


@app.post("/ads/campaigns/{campaign_id}/toggle")
def toggle_campaign(campaign_id: str, admin=Depends(get_current_admin), db=Depends(get_db),
                    llm=Depends(get_llm), platform: AdsPlatform = Depends(get_ads_platform)):
    campaign = AdCampaigns(db, llm, platform).toggle(campaign_id)
    return {"success": True, "campaign": campaign}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
