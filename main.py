import time
from typing import List, Optional

import structlog
from fastapi import Depends, FastAPI, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from auth import (
    ConsoleOtpNotifier,
    Identity,
    OtpNotifier,
    complete_profile,
    get_current_identity,
    get_notifier,
    get_settings,
    get_storage,
    request_otp,
    require_admin,
    verify_otp,
)
from database import Storage, create_storage
from errors import NotFound, register_error_handlers
from orders import create_payment_intent, get_visible_order, place_order, update_order_status
from schemas import (
    Address,
    AddressCreate,
    AddressUpdate,
    Category,
    Order,
    OrderCreate,
    OrderStatus,
    OrderStatusUpdate,
    OTPRequest,
    OTPVerify,
    Product,
    ProductCreate,
    ProductUpdate,
    ProfileUpdate,
    UserOut,
)
from settings import Settings, load_settings

logger = structlog.get_logger(__name__)


def configure_logging(settings: Settings) -> None:
    renderer = structlog.processors.JSONRenderer() if settings.is_production else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
    )


def create_app(
    settings: Optional[Settings] = None,
    storage: Optional[Storage] = None,
    notifier: Optional[OtpNotifier] = None,
) -> FastAPI:
    settings = settings or load_settings()
    configure_logging(settings)

    app = FastAPI(title="Storefront API")
    app.state.settings = settings
    app.state.storage = storage if storage is not None else create_storage(settings)
    app.state.notifier = notifier or ConsoleOtpNotifier()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        if request.url.path.startswith("/api"):
            logger.info(
                "request",
                method=request.method,
                path=request.url.path,
                status=response.status_code,
                duration_ms=round((time.perf_counter() - start) * 1000, 1),
            )
        return response

    register_error_handlers(app, settings)
    register_routes(app)
    return app


def register_routes(app: FastAPI) -> None:
    # ----------------------- Health -----------------------
    @app.get("/")
    def root():
        return {"message": "Storefront API running"}

    @app.get("/test")
    def test_database(storage: Storage = Depends(get_storage)):
        response = {
            "backend": "✅ Running",
            "database": "❌ Not Available",
            "connection_status": "Not Connected",
        }
        try:
            response.update(storage.health())
            response["database"] = "✅ Connected & Working"
        except Exception as e:
            response["database"] = f"❌ Error: {str(e)[:80]}"
        return response

    # ----------------------- Auth -----------------------
    @app.post("/api/auth/request-otp")
    def request_otp_route(
        body: OTPRequest,
        storage: Storage = Depends(get_storage),
        notifier: OtpNotifier = Depends(get_notifier),
        settings: Settings = Depends(get_settings),
    ):
        return request_otp(storage, notifier, settings, body.phone)

    @app.post("/api/auth/verify-otp")
    def verify_otp_route(
        body: OTPVerify,
        storage: Storage = Depends(get_storage),
        settings: Settings = Depends(get_settings),
    ):
        user, token = verify_otp(storage, settings, body.phone, body.otp_code)
        return {
            "user": UserOut.model_validate(user.model_dump()).model_dump(by_alias=True, mode="json"),
            "token": token,
            "profileComplete": user.is_registered,
        }

    @app.patch("/api/auth/profile", response_model=UserOut)
    def update_profile(
        body: ProfileUpdate,
        identity: Identity = Depends(get_current_identity),
        storage: Storage = Depends(get_storage),
    ):
        return complete_profile(storage, identity, body.name, body.email)

    @app.get("/api/auth/me", response_model=UserOut)
    def me(identity: Identity = Depends(get_current_identity), storage: Storage = Depends(get_storage)):
        user = storage.get_user(identity.id)
        if not user:
            raise NotFound("User not found")
        return user

    # ----------------------- Addresses -----------------------
    def owned_address(storage: Storage, address_id: str, identity: Identity) -> Address:
        address = storage.get_address(address_id)
        if not address or address.user_id != identity.id:
            raise NotFound("Address not found")
        return address

    @app.get("/api/addresses", response_model=List[Address])
    def list_addresses(identity: Identity = Depends(get_current_identity), storage: Storage = Depends(get_storage)):
        return storage.list_addresses(identity.id)

    @app.post("/api/addresses", response_model=Address, status_code=201)
    def create_address(
        body: AddressCreate,
        identity: Identity = Depends(get_current_identity),
        storage: Storage = Depends(get_storage),
    ):
        return storage.create_address(identity.id, body)

    @app.get("/api/addresses/{address_id}", response_model=Address)
    def get_address(
        address_id: str,
        identity: Identity = Depends(get_current_identity),
        storage: Storage = Depends(get_storage),
    ):
        return owned_address(storage, address_id, identity)

    @app.patch("/api/addresses/{address_id}", response_model=Address)
    def update_address(
        address_id: str,
        body: AddressUpdate,
        identity: Identity = Depends(get_current_identity),
        storage: Storage = Depends(get_storage),
    ):
        owned_address(storage, address_id, identity)
        updated = storage.update_address(address_id, body.model_dump(exclude_unset=True))
        if not updated:
            raise NotFound("Address not found")
        return updated

    @app.delete("/api/addresses/{address_id}", status_code=204)
    def delete_address(
        address_id: str,
        identity: Identity = Depends(get_current_identity),
        storage: Storage = Depends(get_storage),
    ):
        owned_address(storage, address_id, identity)
        if not storage.delete_address(address_id):
            raise NotFound("Address not found")
        return Response(status_code=204)

    @app.post("/api/addresses/{address_id}/default", response_model=Address)
    def set_default_address(
        address_id: str,
        identity: Identity = Depends(get_current_identity),
        storage: Storage = Depends(get_storage),
    ):
        address = storage.set_default_address(identity.id, address_id)
        if not address:
            raise NotFound("Address not found")
        return address

    # ----------------------- Products -----------------------
    @app.get("/api/products", response_model=List[Product])
    def list_products(
        category: Optional[Category] = None,
        featured: Optional[bool] = None,
        q: Optional[str] = None,
        storage: Storage = Depends(get_storage),
    ):
        return storage.list_products(category=category, featured=featured, q=q)

    @app.get("/api/products/{product_id}", response_model=Product)
    def get_product(product_id: str, storage: Storage = Depends(get_storage)):
        item = storage.get_product(product_id)
        if not item:
            raise NotFound("Product not found")
        return item

    @app.post("/api/products", response_model=Product, status_code=201)
    def create_product(
        body: ProductCreate,
        admin: Identity = Depends(require_admin),
        storage: Storage = Depends(get_storage),
    ):
        product = storage.create_product(body)
        logger.info("product_created", product_id=product.id, by=admin.id)
        return product

    @app.patch("/api/products/{product_id}", response_model=Product)
    def update_product(
        product_id: str,
        body: ProductUpdate,
        admin: Identity = Depends(require_admin),
        storage: Storage = Depends(get_storage),
    ):
        product = storage.update_product(product_id, body.model_dump(exclude_none=True))
        if not product:
            raise NotFound("Product not found")
        return product

    @app.delete("/api/products/{product_id}", status_code=204)
    def delete_product(
        product_id: str,
        admin: Identity = Depends(require_admin),
        storage: Storage = Depends(get_storage),
    ):
        if not storage.delete_product(product_id):
            raise NotFound("Product not found")
        logger.info("product_deleted", product_id=product_id, by=admin.id)
        return Response(status_code=204)

    # ----------------------- Orders -----------------------
    @app.get("/api/orders", response_model=List[Order])
    def list_orders(identity: Identity = Depends(get_current_identity), storage: Storage = Depends(get_storage)):
        return storage.list_user_orders(identity.id)

    @app.post("/api/orders", response_model=Order, status_code=201)
    def create_order(
        body: OrderCreate,
        identity: Identity = Depends(get_current_identity),
        storage: Storage = Depends(get_storage),
    ):
        return place_order(storage, identity.id, body)

    @app.get("/api/orders/{order_id}", response_model=Order)
    def get_order(
        order_id: str,
        identity: Identity = Depends(get_current_identity),
        storage: Storage = Depends(get_storage),
    ):
        return get_visible_order(storage, order_id, identity.id, identity.is_admin)

    @app.post("/api/create-payment-intent")
    def payment_intent(identity: Identity = Depends(get_current_identity)):
        create_payment_intent()

    # ----------------------- Admin -----------------------
    @app.get("/api/admin/orders", response_model=List[Order])
    def admin_list_orders(
        status: Optional[OrderStatus] = Query(None),
        admin: Identity = Depends(require_admin),
        storage: Storage = Depends(get_storage),
    ):
        return storage.list_orders(status=status)

    @app.patch("/api/admin/orders/{order_id}/status", response_model=Order)
    def admin_update_order_status(
        order_id: str,
        body: OrderStatusUpdate,
        admin: Identity = Depends(require_admin),
        storage: Storage = Depends(get_storage),
    ):
        return update_order_status(storage, order_id, body.status)

    @app.get("/api/admin/stats")
    def admin_stats(admin: Identity = Depends(require_admin), storage: Storage = Depends(get_storage)):
        by_status = storage.count_orders_by_status()
        return {
            "users": storage.count_users(),
            "products": storage.count_products(),
            "orders": sum(by_status.values()),
            "ordersByStatus": by_status,
        }


# run with: uvicorn main:create_app --factory
if __name__ == "__main__":
    import uvicorn

    app = create_app()
    uvicorn.run(app, host="0.0.0.0", port=app.state.settings.port)
