"""
Customer order workflows: checkout, payment finalisation, cancellation,
returns and exchanges.

Every workflow that changes stock or an order runs in one `transaction()`;
gateway calls made inside it happen before the commit, so a gateway failure
after retries aborts everything the workflow wrote.
"""
import logging
import time
import uuid
from datetime import timedelta
from typing import List, Optional

import requests
from bson import ObjectId

import inventory
from carts import match_user_cart_lines, remove_ordered_user_lines
from config import Settings
from database import Transaction, as_utc, get_db, transaction, utc_now
from errors import (
    ConflictError,
    NotFoundError,
    OrderExpiredError,
    Outcome,
    PaymentGatewayError,
    RequestValidationFailed,
    UnauthorizedError,
)
from order_states import ensure_transition, initial_status, settle_partial
from payloads import ReturnExchangeRequest, ReturnRefundRequest, UserOrderCreate
from phonepe import FAILED_STATES, PENDING_STATES, STATE_COMPLETED, PhonePeClient
from projections import find_address, populate_user_order
from schemas import (
    TERMINAL_PAYMENT_STATUSES,
    BankDetails,
    ExchangeInfo,
    ExchangeStatus,
    OrderLine,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    RefundInfo,
    RefundStatus,
    ReturnInfo,
    UserOrder,
)

logger = logging.getLogger(__name__)

TERMINAL = tuple(status.value for status in TERMINAL_PAYMENT_STATUSES)


def new_order_id() -> str:
    return f"ORD-{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"


def _load(tx: Transaction, query: dict) -> dict:
    order = tx["userorder"].find_one(query)
    if not order:
        raise NotFoundError("Order not found")
    return order


def _live_price(item: Optional[dict]) -> Optional[float]:
    if not item:
        return None
    return item.get("discounted_price") or item.get("mrp")


def _save(tx: Transaction, order: dict, changes: dict) -> dict:
    changes["updated_at"] = utc_now()
    tx["userorder"].update_one({"_id": order["_id"]}, {"$set": changes})
    order.update(changes)
    return order


# -----------------------------
# Checkout
# -----------------------------

def create_order(user_id: str, payload: UserOrderCreate, gateway: PhonePeClient, settings: Settings) -> dict:
    request_id = str(uuid.uuid4())
    lines = [line.model_dump() for line in payload.order_details]
    online = payload.payment_method == PaymentMethod.ONLINE
    order_id = new_order_id()
    logger.info("[%s] Creating %s order %s for user %s", request_id, payload.payment_method.value, order_id, user_id)

    with transaction() as tx:
        if find_address("useraddress", "user_id", user_id, payload.shipping_address_id, tx=tx) is None:
            raise NotFoundError("Shipping address not found")

        cart = tx["usercart"].find_one({"user_id": user_id})
        match_user_cart_lines(cart, lines)

        stock_lines = inventory.lines_from_user_order(lines)
        inventory.check_available(tx, stock_lines)

        now = utc_now()
        order_lines = []
        for line in lines:
            item = tx["item"].find_one({"_id": ObjectId(line["item_id"])})
            if not item:
                raise NotFoundError(f"Item not found for itemId: {line['item_id']}")
            order_lines.append(OrderLine(**line, unit_price=_live_price(item), added_at=now))

        inventory.reserve(tx, stock_lines, request_id)
        remove_ordered_user_lines(tx, cart, lines)

        order = UserOrder(
            order_id=order_id,
            user_id=user_id,
            order_details=order_lines,
            invoice=payload.invoice,
            shipping_address_id=payload.shipping_address_id,
            payment_method=payload.payment_method,
            order_status=initial_status(online),
            order_status_date=now,
            is_order_placed=not online,
            total_amount=payload.total_amount,
        )
        if online:
            checkout = gateway.initiate(payload.total_amount, settings.phonepe_redirect_url, request_id=request_id)
            order.phonepe_order_id = checkout.gateway_order_id
            order.phonepe_merchant_order_id = checkout.merchant_order_id
            order.checkout_page_url = checkout.checkout_url
        tx.insert("userorder", order.model_dump())

    logger.info("[%s] Order %s created", request_id, order_id)
    return populate_user_order(get_db()["userorder"].find_one({"order_id": order_id}))


# -----------------------------
# Payment finalisation
# -----------------------------

def _is_expired(order: dict, settings: Settings) -> bool:
    created_at = order.get("created_at")
    if created_at is None:
        return False
    return as_utc(created_at) + timedelta(minutes=settings.payment_expiry_minutes) < utc_now()


def _cancel_unpaid(tx: Transaction, order: dict, payment_status: PaymentStatus, request_id: str) -> dict:
    changes = {"payment_status": payment_status.value}
    if order["order_status"] != OrderStatus.CANCELLED.value:
        ensure_transition(order["order_status"], OrderStatus.CANCELLED)
        inventory.restore(tx, inventory.lines_from_user_order(order["order_details"]), request_id)
        changes.update({
            "order_status": OrderStatus.CANCELLED.value,
            "order_status_date": utc_now(),
            "is_order_cancelled": True,
        })
    return _save(tx, order, changes)


def _refund_unwanted_payment(gateway: PhonePeClient, order: dict, reason: str, request_id: str) -> dict:
    """Refund money the gateway collected for an order that is no longer live.

    A failed refund is logged and recorded without a transaction id; the
    order is still finalised.
    """
    refund = RefundInfo(
        refund_reason=reason,
        request_date=utc_now(),
        refund_amount=order["total_amount"],
        refund_status=RefundStatus.PROCESSING,
    )
    try:
        receipt = gateway.refund(order["phonepe_merchant_order_id"], order["total_amount"], request_id=request_id)
        refund.refund_transaction_id = receipt.refund_id
        refund.merchant_refund_id = receipt.merchant_refund_id
    except (PaymentGatewayError, requests.RequestException):
        logger.exception("[%s] Compensating refund failed for order %s", request_id, order["order_id"])
        refund.refund_status = RefundStatus.INITIATED
    return refund.model_dump()


def _apply_gateway_state(tx: Transaction, order: dict, state: str, gateway: PhonePeClient, request_id: str) -> Outcome:
    if state == STATE_COMPLETED:
        if order["order_status"] == OrderStatus.CANCELLED.value:
            refund = _refund_unwanted_payment(gateway, order, "Payment received for a cancelled order", request_id)
            _save(tx, order, {"payment_status": PaymentStatus.FAILED.value, "refund": refund})
            return Outcome("Payment received for a cancelled order; refund initiated", order, success=False)
        ensure_transition(order["order_status"], OrderStatus.CONFIRMED)
        _save(tx, order, {
            "payment_status": PaymentStatus.PAID.value,
            "order_status": OrderStatus.CONFIRMED.value,
            "order_status_date": utc_now(),
            "is_order_placed": True,
        })
        return Outcome("Payment processed successfully", order)

    if state in FAILED_STATES:
        _cancel_unpaid(tx, order, PaymentStatus.FAILED, request_id)
        return Outcome("Payment failed; order cancelled", order)

    if state in PENDING_STATES:
        return Outcome("Payment is still pending", order, success=False)

    raise PaymentGatewayError(f"Unexpected payment state: {state}")


def verify_payment(user_id: str, merchant_order_id: str, gateway: PhonePeClient, settings: Settings) -> Outcome:
    request_id = str(uuid.uuid4())
    expired = False
    with transaction() as tx:
        order = _load(tx, {"phonepe_merchant_order_id": merchant_order_id, "user_id": user_id})
        if order["payment_method"] != PaymentMethod.ONLINE.value:
            raise ConflictError("Payment verification is only available for online orders")

        if order["payment_status"] in TERMINAL:
            outcome = Outcome(f"Payment already processed as {order['payment_status']}", order)
        elif order["payment_status"] == PaymentStatus.PENDING.value and _is_expired(order, settings):
            _cancel_unpaid(tx, order, PaymentStatus.EXPIRED, request_id)
            logger.info("[%s] Order %s expired before payment", request_id, order["order_id"])
            expired = True
        else:
            state = gateway.verify(merchant_order_id, request_id=request_id)
            logger.info("[%s] Order %s payment state %s", request_id, order["order_id"], state)
            outcome = _apply_gateway_state(tx, order, state, gateway, request_id)

    if expired:
        raise OrderExpiredError()
    return outcome._replace(data=populate_user_order(outcome.data))


def _callback_fields(body: dict) -> tuple:
    payload = body.get("payload") if isinstance(body.get("payload"), dict) else body
    return payload.get("orderId"), payload.get("merchantOrderId"), payload.get("state")


def handle_callback(body: dict, authorization: Optional[str], gateway: PhonePeClient) -> Outcome:
    request_id = str(uuid.uuid4())
    if not gateway.validate_callback(authorization):
        raise UnauthorizedError("Invalid callback authorization")
    gateway_order_id, merchant_order_id, state = _callback_fields(body)
    if not (gateway_order_id or merchant_order_id) or not state:
        raise RequestValidationFailed("Missing callback parameters")

    query = {"phonepe_order_id": gateway_order_id} if gateway_order_id else {
        "phonepe_merchant_order_id": merchant_order_id
    }
    with transaction() as tx:
        order = _load(tx, query)
        if order["payment_status"] in TERMINAL:
            if (
                state == STATE_COMPLETED
                and order["payment_status"] == PaymentStatus.EXPIRED.value
                and not order.get("refund")
            ):
                refund = _refund_unwanted_payment(gateway, order, "Payment received after expiry", request_id)
                _save(tx, order, {"refund": refund})
                return Outcome("Late payment refunded")
            return Outcome(f"Callback already processed as {order['payment_status']}")
        if state not in (STATE_COMPLETED,) + FAILED_STATES:
            return Outcome("Callback received but no action taken")
        _apply_gateway_state(tx, order, state, gateway, request_id)

    logger.info("[%s] Callback processed for order %s, state %s", request_id, order["order_id"], state)
    return Outcome("Callback processed successfully")


# -----------------------------
# Cancellation
# -----------------------------

def cancel_order(user_id: str, order_id: str, reason: Optional[str], gateway: PhonePeClient) -> dict:
    request_id = str(uuid.uuid4())
    with transaction() as tx:
        order = _load(tx, {"order_id": order_id, "user_id": user_id})
        if order.get("is_order_cancelled") or order["order_status"] == OrderStatus.CANCELLED.value:
            raise ConflictError("Order is already cancelled")
        ensure_transition(order["order_status"], OrderStatus.CANCELLED)

        now = utc_now()
        changes = {
            "order_status": OrderStatus.CANCELLED.value,
            "order_status_date": now,
            "is_order_cancelled": True,
        }
        reason = reason or "User cancellation"
        if order["payment_method"] == PaymentMethod.ONLINE.value and order["payment_status"] == PaymentStatus.PAID.value:
            if not order.get("phonepe_merchant_order_id"):
                raise ConflictError("No valid PhonePe merchant order ID found")
            receipt = gateway.refund(order["phonepe_merchant_order_id"], order["total_amount"], request_id=request_id)
            changes["refund"] = RefundInfo(
                refund_reason=reason,
                request_date=now,
                refund_amount=order["total_amount"],
                refund_transaction_id=receipt.refund_id,
                merchant_refund_id=receipt.merchant_refund_id,
                refund_status=RefundStatus.PROCESSING,
            ).model_dump()
        elif order["payment_method"] == PaymentMethod.COD.value:
            changes["refund"] = RefundInfo(refund_reason=reason, request_date=now).model_dump()

        inventory.restore(tx, inventory.lines_from_user_order(order["order_details"]), request_id)
        _save(tx, order, changes)

    logger.info("[%s] Order %s cancelled", request_id, order_id)
    return populate_user_order(order)


# -----------------------------
# Returns and exchanges
# -----------------------------

def compute_refund_amount(order: dict, line: dict, cod_deduction: float, live_price: Optional[float] = None) -> float:
    """Refund owed for one returned line.

    A single-line order refunds its total; otherwise the line's price paid
    times quantity. COD refunds lose `cod_deduction`, floored at zero.
    """
    if len(order["order_details"]) == 1:
        amount = order["total_amount"]
    else:
        unit_price = line.get("unit_price") or live_price
        if not unit_price or unit_price <= 0:
            raise ConflictError(f"Invalid price for itemId {line['item_id']}")
        amount = unit_price * line["quantity"]
    if order["payment_method"] == PaymentMethod.COD.value:
        return max(0.0, amount - cod_deduction)
    return amount


def _busy_reason(line: dict) -> Optional[str]:
    return_info = line.get("return_info") or {}
    exchange_info = line.get("exchange_info") or {}
    if line.get("is_return"):
        if return_info.get("refund_status") == RefundStatus.COMPLETED.value:
            return f"Item {line['item_id']} has already been returned"
        return f"A return request is already in progress for item: {line['item_id']}"
    if line.get("is_exchange") and exchange_info.get("exchange_status") != ExchangeStatus.COMPLETED.value:
        return f"An exchange request is already in progress for item: {line['item_id']}"
    return None


def _find_line(order: dict, item_id: str) -> dict:
    line = next((entry for entry in order["order_details"] if entry["item_id"] == item_id), None)
    if line is None:
        raise NotFoundError(f"Item not found in order details: {item_id}")
    busy = _busy_reason(line)
    if busy:
        raise ConflictError(busy)
    return line


def return_refund(user_id: str, payload: ReturnRefundRequest, gateway: PhonePeClient, settings: Settings) -> dict:
    request_id = str(uuid.uuid4())
    with transaction() as tx:
        order = _load(tx, {"order_id": payload.order_id, "user_id": user_id})
        ensure_transition(order["order_status"], OrderStatus.RETURNED)
        if order["payment_status"] != PaymentStatus.PAID.value:
            raise ConflictError("Order must be in Paid paymentStatus to initiate a return")
        cod = order["payment_method"] == PaymentMethod.COD.value
        if cod and payload.bank_details is None:
            raise RequestValidationFailed("bankDetails are required for COD payment refunds")

        targets = [_find_line(order, item_id) for item_id in dict.fromkeys(payload.item_ids)]
        pickup = find_address("useraddress", "user_id", user_id, payload.pickup_location_id, tx=tx)
        if pickup is None:
            raise NotFoundError(f"Pickup address not found: {payload.pickup_location_id}")

        amounts = []
        for line in targets:
            item = tx["item"].find_one({"_id": ObjectId(line["item_id"])})
            amount = compute_refund_amount(order, line, settings.cod_refund_deduction, _live_price(item))
            if amount <= 0:
                raise ConflictError(f"Calculated refund amount is invalid for itemId {line['item_id']}")
            amounts.append(amount)

        now = utc_now()
        for line in targets:
            line["is_return"] = True
        status = settle_partial(
            all(entry.get("is_return") for entry in order["order_details"]),
            OrderStatus.RETURNED,
            OrderStatus.PARTIALLY_RETURNED,
        )
        ensure_transition(order["order_status"], status)

        receipt = None
        if not cod:
            if not order.get("phonepe_merchant_order_id"):
                raise ConflictError("No valid PhonePe merchant order ID found")
            receipt = gateway.refund(order["phonepe_merchant_order_id"], sum(amounts), request_id=request_id)

        for line, amount in zip(targets, amounts):
            line["return_info"] = ReturnInfo(
                return_reason=payload.return_reason,
                specific_return_reason=payload.specific_return_reason,
                request_date=now,
                pickup_location=pickup,
                bank_details=BankDetails(**payload.bank_details.model_dump()) if payload.bank_details else None,
                refund_amount=amount,
                return_and_refund_transaction_id=receipt.refund_id if receipt else None,
                merchant_refund_id=receipt.merchant_refund_id if receipt else None,
                refund_status=RefundStatus.INITIATED,
            ).model_dump()
        _save(tx, order, {
            "order_details": order["order_details"],
            "order_status": status.value,
            "order_status_date": now,
        })

    logger.info("[%s] Return of %d item(s) on order %s for %.2f", request_id, len(targets), payload.order_id, sum(amounts))
    return populate_user_order(order)


def return_exchange(user_id: str, payload: ReturnExchangeRequest) -> dict:
    request_id = str(uuid.uuid4())
    with transaction() as tx:
        order = _load(tx, {"order_id": payload.order_id, "user_id": user_id})
        ensure_transition(order["order_status"], OrderStatus.EXCHANGED)
        if order["payment_status"] != PaymentStatus.PAID.value:
            raise ConflictError("Order must be in Paid paymentStatus to initiate an exchange")
        if find_address("useraddress", "user_id", user_id, payload.pickup_location_id, tx=tx) is None:
            raise NotFoundError("Pickup address not found")

        now = utc_now()
        for request in payload.item_ids:
            line = _find_line(order, request.item_id)
            detail = inventory.load_detail(tx, request.item_id)
            _, color_entry = inventory.find_color(detail, request.desired_color)
            if color_entry is None:
                raise ConflictError(f"Color {request.desired_color} is not available for item: {request.item_id}")
            size_entry = next(
                (s for s in color_entry.get("sizes", []) if inventory.same_label(s.get("size"), request.desired_size)),
                None,
            )
            if size_entry is None:
                available = ", ".join(s.get("size") for s in color_entry.get("sizes", []))
                raise ConflictError(
                    f"Size {request.desired_size} is not available for item: {request.item_id}. "
                    f"Available sizes for color {request.desired_color}: {available}"
                )
            # Checked, not reserved: a concurrent order can still take this stock.
            if (size_entry.get("stock") or 0) < line["quantity"]:
                raise ConflictError(
                    f"Requested size {request.desired_size} has insufficient stock for quantity "
                    f"{line['quantity']} for item: {request.item_id}"
                )
            item = tx["item"].find_one({"_id": ObjectId(request.item_id)})
            if not item:
                raise NotFoundError(f"Item with ID {request.item_id} not found")
            paid = line.get("unit_price")
            if paid is not None and _live_price(item) != paid:
                raise ConflictError("Exchange is only allowed for products with the same price")

            line["is_exchange"] = True
            line["exchange_info"] = ExchangeInfo(
                exchange_reason=request.exchange_reason,
                exchange_specific_reason=request.exchange_specific_reason,
                color=line["color"],
                size=line["size"],
                sku_id=line["sku_id"],
                desired_color=color_entry["color"],
                desired_size=size_entry["size"],
                desired_sku_id=size_entry.get("sku_id"),
                request_date=now,
                pickup_location_id=payload.pickup_location_id,
                exchange_status=ExchangeStatus.INITIATED,
            ).model_dump()

        status = settle_partial(
            all(entry.get("is_exchange") for entry in order["order_details"]),
            OrderStatus.EXCHANGED,
            OrderStatus.PARTIALLY_EXCHANGED,
        )
        ensure_transition(order["order_status"], status)
        _save(tx, order, {
            "order_details": order["order_details"],
            "order_status": status.value,
            "order_status_date": now,
        })

    logger.info("[%s] Exchange requested on order %s", request_id, payload.order_id)
    return populate_user_order(order)


# -----------------------------
# Reads
# -----------------------------

def fetch_order_history(user_id: str) -> List[dict]:
    orders = get_db()["userorder"].find({"user_id": user_id}).sort("created_at", -1)
    return [populate_user_order(order) for order in orders]


def fetch_order(user_id: str, order_id: str) -> dict:
    order = get_db()["userorder"].find_one({"order_id": order_id, "user_id": user_id})
    if not order:
        raise NotFoundError("Order not found")
    return populate_user_order(order)


def fetch_orders_for_admin(user_id: str) -> List[dict]:
    return fetch_order_history(user_id)
