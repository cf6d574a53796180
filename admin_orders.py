"""Admin maintenance of user and partner orders."""
import logging
from typing import Optional

from database import get_db, utc_now
from errors import ConflictError, NotFoundError, RequestValidationFailed
from order_states import WORKFLOW_STATUSES, ensure_transition
from schemas import OrderStatus, PaymentMethod, PaymentStatus, RefundStatus, ExchangeStatus

logger = logging.getLogger(__name__)

USER_PAYMENT_STATUSES = (PaymentStatus.PENDING, PaymentStatus.PAID, PaymentStatus.FAILED, PaymentStatus.REFUNDED)
PARTNER_PAYMENT_STATUSES = (PaymentStatus.PENDING, PaymentStatus.PAID, PaymentStatus.FAILED)


def _find(collection: str, order_id: str) -> dict:
    order = get_db()[collection].find_one({"order_id": order_id})
    if not order:
        raise NotFoundError("Order not found")
    return order


def _move(collection: str, order: dict, target: OrderStatus, delivered_field: str) -> dict:
    if target in WORKFLOW_STATUSES:
        raise ConflictError(f"Order status {target.value} is set by the cancel, return and exchange workflows")
    if order["order_status"] == OrderStatus.INITIATED.value:
        raise ConflictError("Order is awaiting payment; its status is set when the payment is finalised")
    ensure_transition(order["order_status"], target)
    now = utc_now()
    changes = {"order_status": target.value, "order_status_date": now, "updated_at": now}
    if target == OrderStatus.DELIVERED:
        changes[delivered_field] = now
    result = get_db()[collection].update_one(
        {"_id": order["_id"], "order_status": order["order_status"]},
        {"$set": changes},
    )
    if result.matched_count == 0:
        raise ConflictError("Order status changed while updating; please retry")
    logger.info("Order %s moved from %s to %s", order["order_id"], order["order_status"], target.value)
    order.update(changes)
    return order


# -----------------------------
# User orders
# -----------------------------

def update_order_status(order_id: str, target: OrderStatus) -> dict:
    return _move("userorder", _find("userorder", order_id), target, "delivery_date")


def update_payment_status(order_id: str, payment_status: PaymentStatus) -> dict:
    if payment_status not in USER_PAYMENT_STATUSES:
        raise RequestValidationFailed(
            "Valid paymentStatus is required. Must be one of: "
            + ", ".join(status.value for status in USER_PAYMENT_STATUSES)
        )
    order = _find("userorder", order_id)
    if order["payment_method"] != PaymentMethod.COD.value:
        raise ConflictError("Payment status can only be updated for COD orders")
    changes = {"payment_status": payment_status.value, "updated_at": utc_now()}
    get_db()["userorder"].update_one({"_id": order["_id"]}, {"$set": changes})
    order.update(changes)
    return order


def _order_line(order: dict, item_id: str) -> dict:
    line = next((entry for entry in order["order_details"] if entry["item_id"] == item_id), None)
    if line is None:
        raise NotFoundError(f"Item with ID {item_id} not found in order details")
    return line


def update_item_refund_status(order_id: str, item_id: str, refund_status: RefundStatus,
                              refund_transaction_id: Optional[str] = None) -> dict:
    order = _find("userorder", order_id)
    line = _order_line(order, item_id)
    if not line.get("is_return") or not line.get("return_info"):
        raise ConflictError(f"No return initiated for item with ID {item_id}")
    line["return_info"]["refund_status"] = refund_status.value
    if refund_transaction_id:
        line["return_info"]["return_and_refund_transaction_id"] = refund_transaction_id
    get_db()["userorder"].update_one(
        {"_id": order["_id"]},
        {"$set": {"order_details": order["order_details"], "updated_at": utc_now()}},
    )
    return order


def update_item_exchange_status(order_id: str, item_id: str, exchange_status: ExchangeStatus) -> dict:
    order = _find("userorder", order_id)
    line = _order_line(order, item_id)
    if not line.get("is_exchange") or not line.get("exchange_info"):
        raise ConflictError(f"No exchange initiated for item with ID {item_id}")
    line["exchange_info"]["exchange_status"] = exchange_status.value
    get_db()["userorder"].update_one(
        {"_id": order["_id"]},
        {"$set": {"order_details": order["order_details"], "updated_at": utc_now()}},
    )
    return order


def update_delivery_date(order_id: str, delivery_date) -> dict:
    order = _find("userorder", order_id)
    changes = {"delivery_date": delivery_date, "updated_at": utc_now()}
    get_db()["userorder"].update_one({"_id": order["_id"]}, {"$set": changes})
    order.update(changes)
    return order


# -----------------------------
# Partner orders
# -----------------------------

def update_partner_order_status(order_id: str, target: OrderStatus) -> dict:
    return _move("partnerorder", _find("partnerorder", order_id), target, "delivered_at")


def update_partner_payment_status(order_id: str, payment_status: PaymentStatus) -> dict:
    if payment_status not in PARTNER_PAYMENT_STATUSES:
        raise RequestValidationFailed("Invalid payment status. Must be one of: Pending, Paid, Failed")
    order = _find("partnerorder", order_id)
    changes = {"payment_status": payment_status.value, "updated_at": utc_now()}
    get_db()["partnerorder"].update_one({"_id": order["_id"]}, {"$set": changes})
    order.update(changes)
    return order


def update_partner_delivery_date(order_id: str, delivered_at) -> dict:
    order = _find("partnerorder", order_id)
    changes = {"delivered_at": delivered_at, "updated_at": utc_now()}
    get_db()["partnerorder"].update_one({"_id": order["_id"]}, {"$set": changes})
    order.update(changes)
    return order
