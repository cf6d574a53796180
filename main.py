import json
import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, Body, Depends, FastAPI, File, Form, Query, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

import admin_orders
import carts
import database
import partner_orders
import user_orders
from config import Settings, load_settings
from errors import Outcome, RequestValidationFailed, api_response
from payloads import (
    CancelOrderRequest,
    CartAction,
    CreditRefundRequest,
    DeliveryDateUpdate,
    ItemExchangeStatusUpdate,
    ItemRefundStatusUpdate,
    OrderStatusUpdate,
    PartnerCartItemRequest,
    PartnerCartQuantityRequest,
    PartnerOrderCreate,
    PartnerReturnRequest,
    PaymentStatusUpdate,
    ReturnExchangeRequest,
    ReturnRefundRequest,
    UserCartItemRequest,
    UserOrderCreate,
    VerifyPaymentRequest,
)
from phonepe import PhonePeClient
from security import Actor, require_admin, require_partner, require_user

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# -----------------------------
# Helpers
# -----------------------------

def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_gateway(request: Request) -> PhonePeClient:
    return request.app.state.gateway


def ok(message: str, data=None, status_code: int = 200) -> dict:
    return api_response(status_code, True, message, data)


def respond(outcome: Outcome) -> JSONResponse:
    return JSONResponse(
        status_code=outcome.status_code,
        content=api_response(outcome.status_code, outcome.success, outcome.message, outcome.data),
    )


def validation_message(errors) -> str:
    """First validation error as "field: message"."""
    if not errors:
        return "Invalid request"
    first = errors[0]
    field = ".".join(str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path", "form"))
    return f"{field}: {first.get('msg')}" if field else first.get("msg", "Invalid request")


# -----------------------------
# Health & Test
# -----------------------------

health_router = APIRouter()


@health_router.get("/")
def read_root():
    return {"message": "Marketplace order API running"}


@health_router.get("/test")
def test_database(request: Request):
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "❌ Not Set",
        "database_name": "❌ Not Set",
        "collections": [],
    }
    try:
        if database.db is not None:
            response["database"] = "✅ Connected"
            response["database_url"] = "✅ Set"
            response["database_name"] = database.db.name
            response["collections"] = database.db.list_collection_names()
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:80]}"
    settings = request.app.state.settings
    response["phonepe_env"] = settings.phonepe_env
    response["phonepe_client_id"] = "✅ Set" if settings.phonepe_client_id else "❌ Not Set"
    return response


# -----------------------------
# User orders
# -----------------------------

user_order_router = APIRouter(prefix="/api/user/order")


@user_order_router.post("/create", status_code=201)
def create_user_order(
    payload: UserOrderCreate,
    actor: Actor = Depends(require_user),
    gateway: PhonePeClient = Depends(get_gateway),
    settings: Settings = Depends(get_settings),
):
    order = user_orders.create_order(actor.id, payload, gateway, settings)
    return ok("Order created successfully", order, status_code=201)


@user_order_router.get("/")
def list_user_orders(actor: Actor = Depends(require_user)):
    return ok("Orders fetched successfully", user_orders.fetch_order_history(actor.id))


@user_order_router.post("/verify-payment")
def verify_user_payment(
    payload: VerifyPaymentRequest,
    actor: Actor = Depends(require_user),
    gateway: PhonePeClient = Depends(get_gateway),
    settings: Settings = Depends(get_settings),
):
    return respond(user_orders.verify_payment(actor.id, payload.phonepe_merchant_order_id, gateway, settings))


@user_order_router.post("/phonepe/callback")
def phonepe_callback(
    request: Request,
    body: dict = Body(...),
    gateway: PhonePeClient = Depends(get_gateway),
):
    return respond(user_orders.handle_callback(body, request.headers.get("Authorization"), gateway))


@user_order_router.post("/cancel")
def cancel_user_order(
    payload: CancelOrderRequest,
    actor: Actor = Depends(require_user),
    gateway: PhonePeClient = Depends(get_gateway),
):
    order = user_orders.cancel_order(actor.id, payload.order_id, payload.refund_reason, gateway)
    return ok("Order cancelled successfully", order)


@user_order_router.post("/return-refund")
def return_user_items(
    payload: ReturnRefundRequest,
    actor: Actor = Depends(require_user),
    gateway: PhonePeClient = Depends(get_gateway),
    settings: Settings = Depends(get_settings),
):
    order = user_orders.return_refund(actor.id, payload, gateway, settings)
    return ok("Return and refund initiated successfully", order)


@user_order_router.post("/return-exchange")
def exchange_user_items(payload: ReturnExchangeRequest, actor: Actor = Depends(require_user)):
    order = user_orders.return_exchange(actor.id, payload)
    return ok("Exchange request initiated successfully", order)


@user_order_router.get("/admin/{user_id}")
def list_orders_for_user(user_id: str, actor: Actor = Depends(require_admin)):
    return ok("Orders fetched successfully", user_orders.fetch_orders_for_admin(user_id))


@user_order_router.get("/{order_id}")
def get_user_order(order_id: str, actor: Actor = Depends(require_user)):
    return ok("Order fetched successfully", user_orders.fetch_order(actor.id, order_id))


# -----------------------------
# Partner orders
# -----------------------------

partner_order_router = APIRouter(prefix="/api/partner/order")


def _json_field(raw: str, name: str):
    try:
        return json.loads(raw)
    except ValueError:
        raise RequestValidationFailed(f"{name} must be valid JSON")


@partner_order_router.post("/create", status_code=201)
def create_partner_order(
    order_product_details: str = Form(..., alias="orderProductDetails"),
    invoice: str = Form(...),
    shipping_address_id: str = Form(..., alias="shippingAddressId"),
    total_amount: float = Form(..., alias="totalAmount"),
    is_online_payment: bool = Form(False, alias="isOnlinePayment"),
    online_amount: float = Form(0, alias="onlineAmount"),
    is_cod_payment: bool = Form(False, alias="isCodPayment"),
    cod_amount: float = Form(0, alias="codAmount"),
    is_cheque_payment: bool = Form(False, alias="isChequePayment"),
    cheque_amount: float = Form(0, alias="chequeAmount"),
    is_wallet_payment: bool = Form(False, alias="isWalletPayment"),
    wallet_amount_used: float = Form(0, alias="walletAmountUsed"),
    cheque_image_file: Optional[UploadFile] = File(None, alias="chequeImageFile"),
    actor: Actor = Depends(require_partner),
    gateway: PhonePeClient = Depends(get_gateway),
    settings: Settings = Depends(get_settings),
):
    try:
        payload = PartnerOrderCreate(
            order_product_details=_json_field(order_product_details, "orderProductDetails"),
            invoice=_json_field(invoice, "invoice"),
            shipping_address_id=shipping_address_id,
            total_amount=total_amount,
            is_online_payment=is_online_payment,
            online_amount=online_amount,
            is_cod_payment=is_cod_payment,
            cod_amount=cod_amount,
            is_cheque_payment=is_cheque_payment,
            cheque_amount=cheque_amount,
            is_wallet_payment=is_wallet_payment,
            wallet_amount_used=wallet_amount_used,
        )
    except ValidationError as exc:
        raise RequestValidationFailed(validation_message(exc.errors()))

    cheque = None
    if cheque_image_file is not None and cheque_image_file.filename:
        cheque = partner_orders.ChequeUpload(
            file_name=cheque_image_file.filename,
            content_type=cheque_image_file.content_type,
            content=cheque_image_file.file.read(),
        )
    order = partner_orders.create_order(actor.id, payload, cheque, gateway, settings)
    return ok("Partner order created successfully", order, status_code=201)


@partner_order_router.get("/")
def list_partner_orders(actor: Actor = Depends(require_partner)):
    return ok("Orders fetched successfully", partner_orders.fetch_orders(actor.id))


@partner_order_router.post("/return-refund")
def return_partner_order(
    payload: PartnerReturnRequest,
    actor: Actor = Depends(require_partner),
    settings: Settings = Depends(get_settings),
):
    result = partner_orders.return_refund(actor.id, payload, settings)
    return ok("Return and refund request initiated successfully", result)


@partner_order_router.post("/credit-refund")
def credit_partner_refund(payload: CreditRefundRequest, actor: Actor = Depends(require_admin)):
    result = partner_orders.credit_refund_to_wallet(payload.partner_id, payload.order_id)
    return ok("Refund credited to wallet successfully", result)


@partner_order_router.put("/status")
def update_partner_order_status(payload: OrderStatusUpdate, actor: Actor = Depends(require_admin)):
    order = admin_orders.update_partner_order_status(payload.order_id, payload.order_status)
    return ok("Order status updated successfully", order)


@partner_order_router.put("/payment-status")
def update_partner_payment_status(payload: PaymentStatusUpdate, actor: Actor = Depends(require_admin)):
    order = admin_orders.update_partner_payment_status(payload.order_id, payload.payment_status)
    return ok("Payment status updated successfully", order)


@partner_order_router.put("/delivery-date")
def update_partner_delivery_date(payload: DeliveryDateUpdate, actor: Actor = Depends(require_admin)):
    order = admin_orders.update_partner_delivery_date(payload.order_id, payload.delivery_date)
    return ok("Delivery date updated successfully", order)


@partner_order_router.get("/{order_id}")
def get_partner_order(order_id: str, actor: Actor = Depends(require_partner)):
    return ok("Order fetched successfully", partner_orders.fetch_order(actor.id, order_id))


# -----------------------------
# Admin: user order maintenance
# -----------------------------

admin_order_router = APIRouter(prefix="/api/admin/order", dependencies=[Depends(require_admin)])


@admin_order_router.put("/order-status")
def update_order_status(payload: OrderStatusUpdate):
    order = admin_orders.update_order_status(payload.order_id, payload.order_status)
    return ok("Order status updated successfully", order)


@admin_order_router.put("/payment-status")
def update_payment_status(payload: PaymentStatusUpdate):
    order = admin_orders.update_payment_status(payload.order_id, payload.payment_status)
    return ok("Payment status updated successfully", order)


@admin_order_router.put("/item-refund-status")
def update_item_refund_status(payload: ItemRefundStatusUpdate):
    order = admin_orders.update_item_refund_status(
        payload.order_id, payload.item_id, payload.refund_status, payload.refund_transaction_id
    )
    return ok("Item refund status updated successfully", order)


@admin_order_router.put("/item-exchange-status")
def update_item_exchange_status(payload: ItemExchangeStatusUpdate):
    order = admin_orders.update_item_exchange_status(payload.order_id, payload.item_id, payload.exchange_status)
    return ok("Item exchange status updated successfully", order)


@admin_order_router.put("/delivery-date")
def update_delivery_date(payload: DeliveryDateUpdate):
    order = admin_orders.update_delivery_date(payload.order_id, payload.delivery_date)
    return ok("Delivery date updated successfully", order)


# -----------------------------
# Carts & wallet
# -----------------------------

cart_router = APIRouter()


@cart_router.get("/api/user/cart")
def get_user_cart(actor: Actor = Depends(require_user)):
    cart = carts.get_user_cart(actor.id) or {"user_id": actor.id, "items": []}
    return ok("Cart fetched successfully", cart)


@cart_router.post("/api/user/cart")
def add_to_user_cart(payload: UserCartItemRequest, actor: Actor = Depends(require_user)):
    cart = carts.add_user_cart_item(
        actor.id, payload.item_id, payload.color, payload.size, payload.sku_id, payload.quantity
    )
    return ok("Item added to cart", cart)


@cart_router.put("/api/user/cart")
def update_user_cart(payload: UserCartItemRequest, actor: Actor = Depends(require_user)):
    cart = carts.update_user_cart_quantity(
        actor.id, payload.item_id, payload.color, payload.size, payload.sku_id, payload.quantity
    )
    return ok("Cart updated", cart)


@cart_router.delete("/api/user/cart")
def remove_from_user_cart(
    item_id: str = Query(..., alias="itemId"),
    sku_id: str = Query(..., alias="skuId"),
    actor: Actor = Depends(require_user),
):
    return ok("Item removed from cart", carts.remove_user_cart_item(actor.id, item_id, sku_id))


@cart_router.get("/api/partner/cart")
def get_partner_cart(actor: Actor = Depends(require_partner)):
    cart = carts.get_partner_cart(actor.id) or {"partner_id": actor.id, "items": []}
    return ok("Cart fetched successfully", cart)


@cart_router.post("/api/partner/cart")
def add_to_partner_cart(payload: PartnerCartItemRequest, actor: Actor = Depends(require_partner)):
    order_details = [selection.model_dump() for selection in payload.order_details]
    cart = carts.add_partner_cart_item(actor.id, payload.item_id, order_details)
    return ok("Item added to cart", cart)


@cart_router.put("/api/partner/cart")
def update_partner_cart(payload: PartnerCartQuantityRequest, actor: Actor = Depends(require_partner)):
    cart = carts.update_partner_cart_quantity(
        actor.id, payload.item_id, payload.color, payload.size, payload.action == CartAction.INCREASE
    )
    return ok("Item quantity updated successfully", cart)


@cart_router.delete("/api/partner/cart")
def remove_from_partner_cart(item_id: str = Query(..., alias="itemId"), actor: Actor = Depends(require_partner)):
    return ok("Item removed from cart", carts.remove_partner_cart_item(actor.id, item_id))


@cart_router.get("/api/partner/wallet")
def get_partner_wallet(actor: Actor = Depends(require_partner)):
    return ok("Wallet fetched successfully", partner_orders.get_wallet_details(actor.id))


# -----------------------------
# App
# -----------------------------

def create_app(settings: Optional[Settings] = None, gateway: Optional[PhonePeClient] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # ConfigurationError here stops startup
        app.state.settings = settings or load_settings()
        configure_logging(app.state.settings.log_level)
        if database.db is None and app.state.settings.database_url and app.state.settings.database_name:
            database.connect(app.state.settings.database_url, app.state.settings.database_name)
        app.state.gateway = gateway or PhonePeClient(app.state.settings)
        logger.info("Order API started (PhonePe %s)", app.state.settings.phonepe_env)
        yield

    app = FastAPI(title="Marketplace Order API", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content=api_response(exc.status_code, False, str(exc.detail)),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content=api_response(400, False, validation_message(exc.errors())))

    @app.exception_handler(database.DatabaseUnavailable)
    async def database_error(request: Request, exc: database.DatabaseUnavailable):
        logger.error("Database unavailable for %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content=api_response(500, False, str(exc)))

    @app.exception_handler(Exception)
    async def unexpected_error(request: Request, exc: Exception):
        logger.exception("Unhandled error for %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content=api_response(500, False, "Internal server error"))

    for router in (health_router, user_order_router, partner_order_router, admin_order_router, cart_router):
        app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
