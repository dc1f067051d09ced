"""
Wyzly Box HTTP API.

Every response is wrapped as ``{"success": true, "data": ...}`` or
``{"success": false, "error": ..., "details": ...}``.
"""

import time
import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Query, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import boxes, config, documents, orders, users, wishlist
from .auth import Principal, require_admin, require_any, require_customer, require_restaurant
from .database import Database
from .errors import ServiceError
from .payments import MockPaymentProcessor
from .schemas import (
    BoxCreate, BoxIdsRequest, BoxUpdate, BulkOrderRequest, CancelOrderRequest, FeedCategory,
    InventoryAdjustment, LoginRequest, OrderCreateRequest, RegisterRequest, WishlistItemCreate,
    WishlistItemUpdate, WishlistSyncRequest,
)

logger = logging.getLogger(__name__)

TOKEN_COOKIE = "token"


def ok(data=None, message: str = None):
    body = {"success": True, "data": data}
    if message:
        body["message"] = message
    return body


def error_response(status_code: int, message: str, details=None) -> JSONResponse:
    body = {"success": False, "error": message}
    if details is not None:
        body["details"] = details
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body))


# ============================================
# DEPENDENCIES
# ============================================
def get_database(request: Request) -> Database:
    return request.app.state.database


def get_wishlists(request: Request):
    return request.app.state.wishlists


def get_payments(request: Request) -> MockPaymentProcessor:
    return request.app.state.payments


router = APIRouter(prefix="/api")


# ============================================
# AUTH
# ============================================
@router.post("/auth/login")
async def login(body: LoginRequest, db: Database = Depends(get_database)):
    """Login and return a token plus the landing page for the role"""
    return ok(users.login(db, body))


@router.post("/auth/register", status_code=201)
async def register(body: RegisterRequest, response: Response, db: Database = Depends(get_database)):
    """Register a customer or restaurant owner"""
    result = users.register(db, body)
    response.set_cookie(
        TOKEN_COOKIE,
        result["token"],
        max_age=config.TOKEN_EXPIRE_DAYS * 24 * 60 * 60,
        httponly=True,
        samesite="strict",
        secure=config.is_production(),
        path="/",
    )
    return ok(result, "Registration successful")


@router.post("/auth/logout")
async def logout(response: Response):
    response.delete_cookie(TOKEN_COOKIE, path="/")
    return ok(None, "Logged out successfully")


# ============================================
# PUBLIC CATALOGUE
# ============================================
@router.get("/feed")
async def feed(
    search: Optional[str] = None,
    category: FeedCategory = FeedCategory.ALL,
    restaurant: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1),
    db: Database = Depends(get_database),
):
    return ok(boxes.get_feed(db, search=search, category=category, restaurant=restaurant, page=page, limit=limit))


@router.get("/boxes")
async def list_boxes(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1),
    search: Optional[str] = None,
    category: FeedCategory = FeedCategory.ALL,
    db: Database = Depends(get_database),
):
    return ok(boxes.list_boxes(db, page=page, limit=limit, search=search, category=category))


@router.post("/boxes/by-ids")
async def boxes_by_ids(body: BoxIdsRequest, db: Database = Depends(get_database)):
    return ok(boxes.get_boxes_by_ids(db, body.box_ids))


@router.get("/restaurants")
async def list_restaurants(db: Database = Depends(get_database)):
    return ok(boxes.list_restaurants(db))


@router.get("/restaurants/{restaurant_id}")
async def get_restaurant(restaurant_id: int, db: Database = Depends(get_database)):
    return ok(boxes.get_restaurant(db, restaurant_id))


# ============================================
# RESTAURANT OWNER
# ============================================
@router.get("/restaurant/boxes")
async def owner_boxes(owner: Principal = Depends(require_restaurant), db: Database = Depends(get_database)):
    return ok(boxes.list_owner_boxes(db, owner))


@router.post("/restaurant/boxes/create", status_code=201)
async def create_box(body: BoxCreate, owner: Principal = Depends(require_restaurant),
                     db: Database = Depends(get_database)):
    return ok(boxes.create_box(db, owner, body), "Box created successfully")


@router.patch("/restaurant/boxes/{box_id}")
async def update_box(box_id: int, body: BoxUpdate, owner: Principal = Depends(require_restaurant),
                     db: Database = Depends(get_database)):
    return ok(boxes.update_box(db, owner, box_id, body), "Box updated successfully")


@router.delete("/restaurant/boxes/{box_id}")
async def delete_box(box_id: int, owner: Principal = Depends(require_restaurant),
                     db: Database = Depends(get_database)):
    boxes.delete_box(db, owner, box_id)
    return ok(None, "Box deleted successfully")


@router.get("/restaurant/boxes/{box_id}/inventory")
async def inventory_history(box_id: int, owner: Principal = Depends(require_restaurant),
                            db: Database = Depends(get_database)):
    return ok(boxes.inventory_history(db, owner, box_id))


@router.post("/restaurant/boxes/{box_id}/inventory")
async def adjust_inventory(box_id: int, body: InventoryAdjustment, owner: Principal = Depends(require_restaurant),
                           db: Database = Depends(get_database)):
    return ok(boxes.adjust_inventory(db, owner, box_id, body), "Inventory updated successfully")


# ============================================
# ORDERS
# ============================================
# Plain ``def``: the payment step blocks, so these run in the threadpool
@router.post("/orders/bulk", status_code=201)
def create_bulk_orders(body: BulkOrderRequest, customer: Principal = Depends(require_customer),
                       db: Database = Depends(get_database),
                       payments: MockPaymentProcessor = Depends(get_payments)):
    result = orders.create_bulk_orders(db, payments, customer, body)
    return ok(result, f"Successfully created {result['summary']['totalOrders']} order(s)")


@router.post("/orders/create", status_code=201)
def create_order(body: OrderCreateRequest, customer: Principal = Depends(require_customer),
                 db: Database = Depends(get_database),
                 payments: MockPaymentProcessor = Depends(get_payments)):
    result = orders.create_order(db, payments, customer, body.box_id, body.quantity, body.payment_method)
    return ok(result, "Order created successfully")


@router.get("/orders/me")
async def my_orders(customer: Principal = Depends(require_customer), db: Database = Depends(get_database)):
    return ok(orders.list_my_orders(db, customer))


@router.get("/orders/{order_id}")
async def get_order(order_id: int, principal: Principal = Depends(require_any),
                    db: Database = Depends(get_database)):
    return ok(orders.get_order(db, principal, order_id))


@router.post("/orders/{order_id}/cancel")
async def cancel_order(order_id: int, body: Optional[CancelOrderRequest] = None,
                       customer: Principal = Depends(require_customer), db: Database = Depends(get_database)):
    reason = body.reason if body else None
    return ok(orders.cancel_order_by_customer(db, customer, order_id, reason))


@router.get("/admin/orders")
async def all_orders(admin: Principal = Depends(require_admin), db: Database = Depends(get_database)):
    return ok(orders.list_all_orders(db))


@router.post("/admin/orders/{order_id}/cancel")
async def admin_cancel_order(order_id: int, body: Optional[CancelOrderRequest] = None,
                             admin: Principal = Depends(require_admin), db: Database = Depends(get_database)):
    reason = body.reason if body else None
    return ok(orders.cancel_order_by_admin(db, admin, order_id, reason))


# ============================================
# WISHLIST
# ============================================
@router.get("/wishlist")
async def get_wishlist(principal: Principal = Depends(require_any), collection=Depends(get_wishlists)):
    return ok({"wishlist": wishlist.get_wishlist(collection, principal.id)})


@router.post("/wishlist")
async def add_to_wishlist(body: WishlistItemCreate, principal: Principal = Depends(require_any),
                          collection=Depends(get_wishlists)):
    return ok(wishlist.add_item(collection, principal.id, body))


@router.delete("/wishlist")
async def clear_wishlist(principal: Principal = Depends(require_any), collection=Depends(get_wishlists)):
    return ok(wishlist.clear_wishlist(collection, principal.id))


@router.get("/wishlist/populated")
async def populated_wishlist(principal: Principal = Depends(require_any), collection=Depends(get_wishlists),
                             db: Database = Depends(get_database)):
    return ok(wishlist.get_populated_wishlist(collection, db, principal.id))


@router.post("/wishlist/sync")
async def sync_wishlist(body: WishlistSyncRequest, principal: Principal = Depends(require_any),
                        collection=Depends(get_wishlists)):
    return ok(wishlist.sync_wishlist(collection, principal.id, body))


@router.patch("/wishlist/{box_id}")
async def update_wishlist_item(box_id: int, body: WishlistItemUpdate, principal: Principal = Depends(require_any),
                               collection=Depends(get_wishlists)):
    return ok(wishlist.update_item(collection, principal.id, box_id, body))


@router.delete("/wishlist/{box_id}")
async def remove_wishlist_item(box_id: int, principal: Principal = Depends(require_any),
                               collection=Depends(get_wishlists)):
    return ok(wishlist.remove_item(collection, principal.id, box_id))


@router.get("/health")
async def health():
    return ok({"status": "ok", "environment": config.APP_ENV})


# ============================================
# APPLICATION
# ============================================
def create_app(database: Database = None, wishlists=None, payments: MockPaymentProcessor = None) -> FastAPI:
    """Build the API; stores not passed in are created from config at startup"""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned_database = app.state.database is None
        owned_mongo = app.state.wishlists is None
        if owned_database:
            app.state.database = Database()
            app.state.database.create_tables()
        if owned_mongo:
            app.state.wishlists = documents.get_wishlist_collection()
        yield
        if owned_database:
            app.state.database.close()
            app.state.database = None
        if owned_mongo:
            documents.close_client()
            app.state.wishlists = None

    app = FastAPI(
        title="Wyzly Box API",
        description="Food box marketplace: feed, wishlists, bulk orders and restaurant inventory",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.database = database
    app.state.wishlists = wishlists
    app.state.payments = payments or MockPaymentProcessor()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started) * 1000
        logger.info("%s %s -> %s (%.1fms)", request.method, request.url.path, response.status_code, elapsed_ms)
        return response

    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError):
        return error_response(exc.status_code, exc.message, exc.details)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        messages = {404: "Not found", 405: "Method not allowed"}
        message = messages.get(exc.status_code, exc.detail)
        return error_response(exc.status_code, message)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        details = [
            {"field": ".".join(str(part) for part in err["loc"][1:]), "message": err["msg"]}
            for err in exc.errors()
        ]
        return error_response(400, "Validation failed", details)

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        details = str(exc) if config.is_development() else None
        return error_response(500, "Internal server error", details)

    @app.get("/")
    async def root():
        """Root endpoint with API info"""
        return {
            "app": "Wyzly Box",
            "version": "1.0.0",
            "status": "running",
            "docs": "/docs",
        }

    app.include_router(router)
    return app


app = create_app()


# ============================================
# MAIN ENTRY POINT
# ============================================
if __name__ == "__main__":
    config.configure_logging()
    logger.info("Starting Wyzly Box API on port %s (database %s)", config.PORT, config.DATABASE_URL)
    uvicorn.run("wyzly.main:app", host="0.0.0.0", port=config.PORT, reload=config.is_development())
