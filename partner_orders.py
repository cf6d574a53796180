"""
Partner (bulk buyer) order workflows.

A partner pays with exactly one of online, COD or cheque, optionally topped
up from the wallet, or with the wallet alone. Online payments are initiated
and verified synchronously while the order transaction is open; if anything
fails after the gateway reported the payment COMPLETED, the payment is
refunded before the error propagates.
"""
import logging
import os
import uuid
from dataclasses import dataclass
from typing import List, Optional

import requests
from bson import ObjectId

import inventory
import wallets
from carts import reduce_partner_cart, validate_partner_cart_totals
from config import Settings
from database import get_db, transaction, utc_now
from errors import ConflictError, NotFoundError, PaymentGatewayError, RequestValidationFailed
from order_states import ensure_transition, initial_status
from payloads import PartnerOrderCreate, PartnerReturnRequest
from phonepe import STATE_COMPLETED, CheckoutSession, PhonePeClient
from projections import find_address, populate_partner_order
from schemas import (
    ChequeImage,
    OrderStatus,
    PartnerOrder,
    PartnerReturnInfo,
    PaymentStatus,
    RefundStatus,
)
from user_orders import new_order_id

logger = logging.getLogger(__name__)


@dataclass
class ChequeUpload:
    file_name: str
    content_type: Optional[str]
    content: bytes


@dataclass
class PaymentPlan:
    wallet: float = 0
    online: float = 0
    cod: float = 0
    cheque: float = 0

    @property
    def total(self) -> float:
        return self.wallet + self.online + self.cod + self.cheque


def plan_payment(payload: PartnerOrderCreate) -> PaymentPlan:
    """Split `total_amount` across the selected methods or reject the combination.

    Valid: exactly one of online/COD/cheque, that one plus wallet, or wallet
    alone covering the whole amount.
    """
    primary = [
        name for name, chosen in (
            ("online", payload.is_online_payment),
            ("cod", payload.is_cod_payment),
            ("cheque", payload.is_cheque_payment),
        ) if chosen
    ]
    if not primary and not payload.is_wallet_payment:
        raise RequestValidationFailed("At least one payment method must be selected")
    if len(primary) > 1:
        raise ConflictError(
            "Invalid payment method combination; only wallet can be combined with one of online, cod, or cheque"
        )

    plan = PaymentPlan()
    total = payload.total_amount
    if payload.is_wallet_payment:
        if payload.wallet_amount_used <= 0:
            raise RequestValidationFailed("walletAmountUsed must be greater than 0 when isWalletPayment is true")
        if payload.wallet_amount_used > total:
            raise ConflictError("walletAmountUsed cannot exceed totalAmount")
        if not primary and payload.wallet_amount_used != total:
            raise ConflictError("Insufficient wallet amount; totalAmount must equal walletAmountUsed")
        plan.wallet = payload.wallet_amount_used
    elif payload.wallet_amount_used:
        raise ConflictError("walletAmountUsed is set but isWalletPayment is false")

    declared = {"online": payload.online_amount, "cod": payload.cod_amount, "cheque": payload.cheque_amount}
    if primary:
        method = primary[0]
        remainder = round(total - plan.wallet, 2)
        if remainder <= 0:
            raise ConflictError(f"{method.capitalize()} amount must be greater than 0")
        setattr(plan, method, remainder)

    for method, amount in declared.items():
        if amount and round(amount, 2) != round(getattr(plan, method), 2):
            raise ConflictError(
                "Total amount must equal the sum of wallet, online, cod, and cheque amounts: "
                f"{method} amount {amount} does not match {getattr(plan, method)}"
            )
    if round(plan.total, 2) != round(total, 2):
        raise ConflictError(
            "Total amount must equal the sum of wallet, online, cod, and cheque amounts: "
            f"calculated={plan.total}, provided={total}"
        )
    return plan


def save_cheque_image(upload_dir: str, partner_id: str, order_id: str, upload: ChequeUpload) -> ChequeImage:
    directory = os.path.join(upload_dir, partner_id, order_id)
    os.makedirs(directory, exist_ok=True)
    file_name = os.path.basename(upload.file_name) or "cheque"
    path = os.path.join(directory, file_name)
    with open(path, "wb") as fh:
        fh.write(upload.content)
    return ChequeImage(url=path, file_name=file_name, content_type=upload.content_type, uploaded_at=utc_now())


def _compensate(gateway: PhonePeClient, checkout: CheckoutSession, amount: float, request_id: str) -> None:
    try:
        receipt = gateway.refund(checkout.merchant_order_id, amount, request_id=request_id)
        logger.warning("[%s] Refunded captured payment %s as %s", request_id, checkout.merchant_order_id, receipt.refund_id)
    except (PaymentGatewayError, requests.RequestException):
        logger.exception("[%s] Compensating refund failed for %s", request_id, checkout.merchant_order_id)


def create_order(partner_id: str, payload: PartnerOrderCreate, cheque: Optional[ChequeUpload],
                 gateway: PhonePeClient, settings: Settings) -> dict:
    request_id = str(uuid.uuid4())
    plan = plan_payment(payload)
    if plan.cheque and cheque is None:
        raise RequestValidationFailed("Cheque image file is required for cheque payment")

    products = [product.model_dump() for product in payload.order_product_details]
    stock_lines = inventory.lines_from_partner_order(products)
    order_id = new_order_id()
    logger.info("[%s] Creating partner order %s for %s: %s", request_id, order_id, partner_id, plan)

    captured: Optional[CheckoutSession] = None
    order_image: Optional[ChequeImage] = None
    try:
        with transaction() as tx:
            cart = tx["partnercart"].find_one({"partner_id": partner_id})
            validate_partner_cart_totals(cart, products)
            for product in products:
                if not tx["item"].find_one({"_id": ObjectId(product["item_id"])}):
                    raise NotFoundError(f"Item not found for itemId: {product['item_id']}")
            if find_address("partneraddress", "partner_id", partner_id, payload.shipping_address_id, tx=tx) is None:
                raise NotFoundError("Shipping address not found")
            if plan.wallet:
                wallet = wallets.get_wallet(partner_id, tx)
                if plan.wallet > (wallet.get("total_balance") or 0):
                    raise ConflictError("Insufficient wallet balance")
            inventory.check_available(tx, stock_lines)

            status = initial_status(bool(plan.online))
            wallet_only = plan.wallet and not (plan.online or plan.cod or plan.cheque)
            payment_status = PaymentStatus.PAID if wallet_only else PaymentStatus.PENDING
            checkout = None
            if plan.online:
                checkout = gateway.initiate(plan.online, settings.phonepe_redirect_url, request_id=request_id)
                state = gateway.verify(checkout.merchant_order_id, request_id=request_id)
                if state != STATE_COMPLETED:
                    raise ConflictError("PhonePe payment verification failed")
                captured = checkout
                status = ensure_transition(status, OrderStatus.CONFIRMED)
                payment_status = PaymentStatus.PAID

            inventory.reserve(tx, stock_lines, request_id)
            reduce_partner_cart(tx, cart, products)
            if plan.wallet:
                wallets.debit(tx, partner_id, plan.wallet, order_id)

            order = PartnerOrder(
                order_id=order_id,
                partner_id=partner_id,
                order_product_details=[dict(product, added_at=utc_now()) for product in products],
                invoice=[entry.model_dump() for entry in payload.invoice],
                shipping_address_id=payload.shipping_address_id,
                order_status=status,
                order_status_date=utc_now(),
                is_order_placed=True,
                phonepe_order_id=checkout.gateway_order_id if checkout else None,
                phonepe_merchant_order_id=checkout.merchant_order_id if checkout else None,
                checkout_page_url=checkout.checkout_url if checkout else None,
                is_online_payment=bool(plan.online),
                online_amount=plan.online,
                is_cod_payment=bool(plan.cod),
                cod_amount=plan.cod,
                is_cheque_payment=bool(plan.cheque),
                cheque_amount=plan.cheque,
                is_wallet_payment=bool(plan.wallet),
                wallet_amount_used=plan.wallet,
                payment_status=payment_status,
                total_amount=payload.total_amount,
            )
            if cheque is not None:
                order_image = save_cheque_image(settings.cheque_upload_dir, partner_id, order_id, cheque)
                order.cheque_image = order_image
            tx.insert("partnerorder", order.model_dump())
    except Exception:
        if order_image is not None and os.path.exists(order_image.url):
            os.remove(order_image.url)
        if captured is not None:
            _compensate(gateway, captured, plan.online, request_id)
        raise

    logger.info("[%s] Partner order %s created", request_id, order_id)
    return populate_partner_order(get_db()["partnerorder"].find_one({"order_id": order_id}))


def return_refund(partner_id: str, payload: PartnerReturnRequest, settings: Settings) -> dict:
    request_id = str(uuid.uuid4())
    with transaction() as tx:
        order = tx["partnerorder"].find_one({"order_id": payload.order_id, "partner_id": partner_id})
        if not order:
            raise NotFoundError("Order not found")
        if order.get("is_order_returned"):
            raise ConflictError("Order is already returned")
        if order["order_status"] != OrderStatus.DELIVERED.value or not order.get("delivered_at"):
            raise ConflictError("Order must be delivered and have a delivery date to initiate a return")
        if order["payment_status"] != PaymentStatus.PAID.value:
            raise ConflictError("Order payment status must be Paid to initiate a refund")
        if find_address("partneraddress", "partner_id", partner_id, payload.pickup_location_id, tx=tx) is None:
            raise NotFoundError("Pickup location address not found")

        refund_amount = order["total_amount"]
        if order.get("is_cod_payment"):
            refund_amount -= settings.cod_refund_deduction
            if refund_amount < 0:
                raise ConflictError("Refund amount cannot be negative after COD deduction")

        status = ensure_transition(order["order_status"], OrderStatus.RETURNED)
        inventory.restore(tx, inventory.lines_from_partner_order(order["order_product_details"]), request_id)
        changes = {
            "is_order_returned": True,
            "order_status": status.value,
            "order_status_date": utc_now(),
            "return_info": PartnerReturnInfo(
                reason=payload.reason,
                request_date=utc_now(),
                pickup_location_id=payload.pickup_location_id,
                refund_amount=refund_amount,
                refund_status=RefundStatus.INITIATED,
            ).model_dump(),
            "updated_at": utc_now(),
        }
        tx["partnerorder"].update_one({"_id": order["_id"]}, {"$set": changes})
        order.update(changes)

    logger.info("[%s] Partner order %s returned, refund %.2f", request_id, payload.order_id, refund_amount)
    return {"order_id": payload.order_id, "refund_amount": refund_amount, "order": populate_partner_order(order)}


def credit_refund_to_wallet(partner_id: str, order_id: str) -> dict:
    request_id = str(uuid.uuid4())
    with transaction() as tx:
        order = tx["partnerorder"].find_one({"order_id": order_id, "partner_id": partner_id})
        if not order:
            raise NotFoundError("Order not found")
        if not order.get("is_order_returned"):
            raise ConflictError("Order must be marked as returned to credit refund")
        if order["payment_status"] != PaymentStatus.PAID.value:
            raise ConflictError("Order payment status must be Paid to credit refund")
        return_info = order.get("return_info") or {}
        if not return_info.get("refund_amount"):
            raise ConflictError("No refund amount found in order")
        if return_info.get("refund_status") == RefundStatus.COMPLETED.value:
            raise ConflictError("Refund has already been credited to wallet")

        entry, balance = wallets.credit(
            tx, partner_id, return_info["refund_amount"], order_id, f"Refund for order {order_id}"
        )
        return_info = dict(
            return_info,
            refund_status=RefundStatus.COMPLETED.value,
            refund_transaction_id=entry["transaction_id"],
        )
        tx["partnerorder"].update_one(
            {"_id": order["_id"]},
            {"$set": {"return_info": return_info, "updated_at": utc_now()}},
        )
        order["return_info"] = return_info

    logger.info("[%s] Credited %.2f to wallet of %s for order %s",
                request_id, entry["amount"], partner_id, order_id)
    return {
        "order_id": order_id,
        "refund_amount": entry["amount"],
        "wallet_balance": balance,
        "transaction": entry,
        "order": populate_partner_order(order),
    }


def fetch_orders(partner_id: str) -> List[dict]:
    orders = get_db()["partnerorder"].find({"partner_id": partner_id}).sort("created_at", -1)
    return [populate_partner_order(order) for order in orders]


def fetch_order(partner_id: str, order_id: str) -> dict:
    order = get_db()["partnerorder"].find_one({"order_id": order_id, "partner_id": partner_id})
    if not order:
        raise NotFoundError("Order not found")
    return populate_partner_order(order)


def get_wallet_details(partner_id: str) -> dict:
    return wallets.get_wallet(partner_id)
