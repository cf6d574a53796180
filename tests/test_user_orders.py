from datetime import datetime, timedelta, timezone

import pytest

from conftest import USER_ID, auth, order_line, seed_address, seed_item, seed_user_cart, seed_user_order, stock_of
from errors import ConflictError
from user_orders import compute_refund_amount

BANK = {"accountHolderName": "Asha Rao", "accountNumber": "000123", "ifscCode": "HDFC0001", "bankName": "HDFC"}


def place_order(client, db, payment_method="COD", quantity=2, cart_quantity=None, stock=10):
    item_id = seed_item(db, stock=stock)
    address_id = seed_address(db)
    seed_user_cart(db, item_id, cart_quantity or quantity)
    resp = client.post("/api/user/order/create", json={
        "orderDetails": [{"itemId": item_id, "quantity": quantity, "size": "M", "color": "Red", "skuId": "SKU-M"}],
        "invoice": [{"key": "Subtotal", "value": 800 * quantity}],
        "shippingAddressId": address_id,
        "paymentMethod": payment_method,
        "totalAmount": 800 * quantity,
    }, headers=auth("user"))
    return resp, item_id, address_id


def stored(db, order_id):
    return db["userorder"].find_one({"order_id": order_id})


# -----------------------------
# Checkout
# -----------------------------

def test_cod_checkout_reserves_stock_and_confirms(client, db):
    resp, item_id, _ = place_order(client, db)

    assert resp.status_code == 201
    body = resp.json()
    assert body["statusCode"] == 201
    assert body["success"] is True
    order = body["data"]
    assert order["order_id"].startswith("ORD-")
    assert order["order_status"] == "Confirmed"
    assert order["payment_status"] == "Pending"
    assert order["is_order_placed"] is True
    assert order["order_details"][0]["unit_price"] == 800
    assert order["order_details"][0]["item"]["name"] == "Cotton Kurta"
    assert order["order_details"][0]["item"]["image"] == "https://cdn.test/red-1.jpg"
    assert order["shipping_address"]["city_town"] == "Pune"
    assert order["invoice"] == [{"key": "subtotal", "value": 1600}]
    assert stock_of(db, item_id) == 8
    assert db["usercart"].find_one({"user_id": USER_ID})["items"] == []


def test_insufficient_stock_rejects_without_side_effects(client, db):
    resp, item_id, _ = place_order(client, db, quantity=11, stock=10)

    assert resp.status_code == 400
    assert resp.json()["message"] == (
        f"Insufficient stock for itemId {item_id}, size M, skuId SKU-M. Available: 10, Requested: 11"
    )
    assert stock_of(db, item_id) == 10
    assert db["userorder"].count_documents({}) == 0
    assert db["usercart"].find_one({"user_id": USER_ID})["items"][0]["quantity"] == 11


def test_second_order_cannot_oversell(client, db):
    resp, item_id, address_id = place_order(client, db, quantity=6, stock=10)
    assert resp.status_code == 201

    seed_user_cart(db, item_id, 6)
    resp = client.post("/api/user/order/create", json={
        "orderDetails": [{"itemId": item_id, "quantity": 6, "size": "M", "color": "Red", "skuId": "SKU-M"}],
        "invoice": [{"key": "Subtotal", "value": 4800}],
        "shippingAddressId": address_id,
        "paymentMethod": "COD",
        "totalAmount": 4800,
    }, headers=auth("user"))

    assert resp.status_code == 400
    assert "Available: 4" in resp.json()["message"]
    assert stock_of(db, item_id) == 4


def test_order_lines_must_be_in_cart(client, db):
    resp, item_id, _ = place_order(client, db, quantity=3, cart_quantity=2)
    assert resp.status_code == 400
    assert resp.json()["message"] == "Insufficient quantity for skuId SKU-M in cart. In cart: 2, Requested: 3"
    assert stock_of(db, item_id) == 10


def test_repeated_lines_cannot_exceed_cart(client, db):
    item_id = seed_item(db, stock=10)
    address_id = seed_address(db)
    seed_user_cart(db, item_id, 2)
    line = {"itemId": item_id, "quantity": 2, "size": "M", "color": "Red", "skuId": "SKU-M"}
    resp = client.post("/api/user/order/create", json={
        "orderDetails": [line, line],
        "invoice": [{"key": "Subtotal", "value": 3200}],
        "shippingAddressId": address_id,
        "paymentMethod": "COD",
        "totalAmount": 3200,
    }, headers=auth("user"))

    assert resp.status_code == 400
    assert resp.json()["message"] == "Insufficient quantity for skuId SKU-M in cart. In cart: 2, Requested: 4"
    assert stock_of(db, item_id) == 10
    assert db["userorder"].count_documents({}) == 0


def test_unknown_shipping_address(client, db):
    item_id = seed_item(db)
    seed_user_cart(db, item_id, 1)
    resp = client.post("/api/user/order/create", json={
        "orderDetails": [{"itemId": item_id, "quantity": 1, "size": "M", "color": "Red", "skuId": "SKU-M"}],
        "invoice": [{"key": "Subtotal", "value": 800}],
        "shippingAddressId": "64b7f0c2a1e4d3b2c1a09f88",
        "paymentMethod": "COD",
        "totalAmount": 800,
    }, headers=auth("user"))
    assert resp.status_code == 404
    assert resp.json()["message"] == "Shipping address not found"


def test_online_checkout_returns_checkout_url(client, db, gateway):
    resp, item_id, _ = place_order(client, db, payment_method="Online")

    assert resp.status_code == 201
    order = resp.json()["data"]
    assert order["order_status"] == "Initiated"
    assert order["payment_status"] == "Pending"
    assert order["is_order_placed"] is False
    assert order["checkout_page_url"] == "https://pay.test/checkout/1"
    assert order["phonepe_merchant_order_id"] == "MO-1"
    assert gateway.initiated[0][0] == 1600
    assert stock_of(db, item_id) == 8


def test_gateway_failure_rolls_back_checkout(client, db, gateway):
    gateway.fail_initiate = True
    resp, item_id, _ = place_order(client, db, payment_method="Online")

    assert resp.status_code == 500
    assert resp.json()["success"] is False
    assert db["userorder"].count_documents({}) == 0
    assert stock_of(db, item_id) == 10
    assert db["usercart"].find_one({"user_id": USER_ID})["items"][0]["quantity"] == 2


# -----------------------------
# Payment verification
# -----------------------------

def verify(client, merchant_order_id="MO-1"):
    return client.post("/api/user/order/verify-payment", json={"phonepeMerchantOrderId": merchant_order_id},
                       headers=auth("user"))


def test_completed_payment_confirms_order_once(client, db, gateway):
    resp, _, _ = place_order(client, db, payment_method="Online")
    order_id = resp.json()["data"]["order_id"]

    first = verify(client)
    assert first.status_code == 200
    assert first.json()["message"] == "Payment processed successfully"
    assert first.json()["data"]["order_status"] == "Confirmed"
    assert first.json()["data"]["payment_status"] == "Paid"

    second = verify(client)
    assert second.json()["message"] == "Payment already processed as Paid"
    assert second.json()["success"] is True
    assert gateway.verified == ["MO-1"]
    assert stored(db, order_id)["is_order_placed"] is True


def test_failed_payment_cancels_and_restores_stock(client, db, gateway):
    resp, item_id, _ = place_order(client, db, payment_method="Online")
    gateway.state = "FAILED"

    body = verify(client).json()
    assert body["data"]["payment_status"] == "Failed"
    assert body["data"]["order_status"] == "Cancelled"
    assert stock_of(db, item_id) == 10

    verify(client)
    assert stock_of(db, item_id) == 10


def test_pending_payment_asks_caller_to_retry(client, db, gateway):
    place_order(client, db, payment_method="Online")
    gateway.state = "PENDING"

    resp = verify(client)
    assert resp.status_code == 200
    assert resp.json()["success"] is False
    assert resp.json()["message"] == "Payment is still pending"


def test_unexpected_gateway_state(client, db, gateway):
    resp, item_id, _ = place_order(client, db, payment_method="Online")
    gateway.state = "REVERSED"

    resp = verify(client)
    assert resp.status_code == 500
    assert "REVERSED" in resp.json()["message"]
    assert stock_of(db, item_id) == 8


def test_cod_orders_cannot_be_verified(client, db):
    resp, _, _ = place_order(client, db)
    db["userorder"].update_one({}, {"$set": {"phonepe_merchant_order_id": "MO-COD"}})
    assert verify(client, "MO-COD").status_code == 400


def test_stale_order_expires_on_verify(client, db, gateway):
    resp, item_id, _ = place_order(client, db, payment_method="Online")
    order_id = resp.json()["data"]["order_id"]
    db["userorder"].update_one(
        {"order_id": order_id},
        {"$set": {"created_at": datetime.now(timezone.utc) - timedelta(minutes=31)}},
    )

    resp = verify(client)
    assert resp.status_code == 400
    assert resp.json()["message"] == "Order has expired"
    order = stored(db, order_id)
    assert order["payment_status"] == "Expired"
    assert order["order_status"] == "Cancelled"
    assert stock_of(db, item_id) == 10
    assert gateway.verified == []


def test_payment_for_cancelled_order_is_refunded(client, db, gateway):
    resp, _, _ = place_order(client, db, payment_method="Online")
    order_id = resp.json()["data"]["order_id"]
    cancel = client.post("/api/user/order/cancel", json={"orderId": order_id}, headers=auth("user"))
    assert cancel.status_code == 200
    assert gateway.refunds == []

    resp = verify(client)
    assert resp.json()["success"] is False
    assert gateway.refunds == [("MO-1", 1600)]
    order = stored(db, order_id)
    assert order["payment_status"] == "Failed"
    assert order["refund"]["refund_transaction_id"] == "RF1"


# -----------------------------
# Gateway callback
# -----------------------------

def callback(client, body):
    return client.post("/api/user/order/phonepe/callback", json=body)


def test_callback_completes_payment_idempotently(client, db):
    resp, _, _ = place_order(client, db, payment_method="Online")
    order_id = resp.json()["data"]["order_id"]

    first = callback(client, {"orderId": "OMO1", "state": "COMPLETED"})
    assert first.json()["message"] == "Callback processed successfully"
    assert stored(db, order_id)["payment_status"] == "Paid"

    second = callback(client, {"event": "checkout.order.completed",
                               "payload": {"orderId": "OMO1", "state": "COMPLETED"}})
    assert second.json()["message"] == "Callback already processed as Paid"


def test_admin_cannot_confirm_an_unpaid_online_order(client, db):
    resp, _, _ = place_order(client, db, payment_method="Online")
    order_id = resp.json()["data"]["order_id"]

    resp = client.put("/api/admin/order/order-status", json={"orderId": order_id, "orderStatus": "Confirmed"},
                      headers=auth("admin"))
    assert resp.status_code == 400
    assert resp.json()["message"] == "Order is awaiting payment; its status is set when the payment is finalised"
    assert stored(db, order_id)["order_status"] == "Initiated"

    assert callback(client, {"orderId": "OMO1", "state": "COMPLETED"}).status_code == 200
    order = stored(db, order_id)
    assert (order["order_status"], order["payment_status"]) == ("Confirmed", "Paid")


def test_callback_by_merchant_order_id_fails_payment(client, db):
    resp, item_id, _ = place_order(client, db, payment_method="Online")
    resp = callback(client, {"payload": {"merchantOrderId": "MO-1", "state": "FAILED"}})
    assert resp.status_code == 200
    assert stock_of(db, item_id) == 10


def test_callback_pending_state_is_ignored(client, db):
    resp, _, _ = place_order(client, db, payment_method="Online")
    order_id = resp.json()["data"]["order_id"]
    assert callback(client, {"orderId": "OMO1", "state": "PENDING"}).json()["message"] == (
        "Callback received but no action taken"
    )
    assert stored(db, order_id)["payment_status"] == "Pending"


def test_callback_with_bad_authorization(client, db, gateway):
    gateway.callback_ok = False
    resp = callback(client, {"orderId": "OMO1", "state": "COMPLETED"})
    assert resp.status_code == 401


def test_callback_without_identifiers(client, db):
    assert callback(client, {"state": "COMPLETED"}).status_code == 400


def test_late_payment_after_expiry_is_refunded_once(client, db, gateway):
    resp, _, _ = place_order(client, db, payment_method="Online")
    order_id = resp.json()["data"]["order_id"]
    db["userorder"].update_one(
        {"order_id": order_id},
        {"$set": {"created_at": datetime.now(timezone.utc) - timedelta(hours=2)}},
    )
    assert verify(client).status_code == 400

    assert callback(client, {"orderId": "OMO1", "state": "COMPLETED"}).json()["message"] == "Late payment refunded"
    assert callback(client, {"orderId": "OMO1", "state": "COMPLETED"}).json()["message"] == (
        "Callback already processed as Expired"
    )
    assert gateway.refunds == [("MO-1", 1600)]


# -----------------------------
# Cancellation
# -----------------------------

def cancel(client, order_id, reason=None):
    return client.post("/api/user/order/cancel", json={"orderId": order_id, "refundReason": reason},
                       headers=auth("user"))


def test_cancel_cod_order_restores_stock(client, db):
    resp, item_id, _ = place_order(client, db)
    order_id = resp.json()["data"]["order_id"]
    assert stock_of(db, item_id) == 8

    resp = cancel(client, order_id, "Ordered by mistake")
    assert resp.status_code == 200
    order = resp.json()["data"]
    assert order["order_status"] == "Cancelled"
    assert order["is_order_cancelled"] is True
    assert order["refund"]["refund_reason"] == "Ordered by mistake"
    assert stock_of(db, item_id) == 10

    again = cancel(client, order_id)
    assert again.status_code == 400
    assert again.json()["message"] == "Order is already cancelled"
    assert stock_of(db, item_id) == 10


def test_cancel_after_delivery_is_rejected(client, db):
    item_id = seed_item(db, stock=10)
    order_id = seed_user_order(db, [order_line(item_id, 2)], 1600)

    resp = cancel(client, order_id)
    assert resp.status_code == 400
    assert resp.json()["message"] == "Order cannot be cancelled in Delivered status"
    assert stock_of(db, item_id) == 10


def test_cancel_paid_online_order_refunds_total(client, db, gateway):
    item_id = seed_item(db, stock=8)
    order_id = seed_user_order(db, [order_line(item_id, 2)], 1600, payment_method="Online",
                               order_status="Confirmed", phonepe_merchant_order_id="MO-42")

    resp = cancel(client, order_id)
    assert resp.status_code == 200
    assert gateway.refunds == [("MO-42", 1600)]
    refund = stored(db, order_id)["refund"]
    assert refund["refund_status"] == "Processing"
    assert refund["refund_amount"] == 1600
    assert stock_of(db, item_id) == 10


def test_cancel_rolls_back_when_refund_fails(client, db, gateway):
    gateway.fail_refund = True
    item_id = seed_item(db, stock=8)
    order_id = seed_user_order(db, [order_line(item_id, 2)], 1600, payment_method="Online",
                               order_status="Confirmed", phonepe_merchant_order_id="MO-42")

    assert cancel(client, order_id).status_code == 500
    assert stored(db, order_id)["order_status"] == "Confirmed"
    assert stock_of(db, item_id) == 8


def test_other_users_orders_are_invisible(client, db):
    resp, _, _ = place_order(client, db)
    order_id = resp.json()["data"]["order_id"]
    other = auth("user", "64b7f0c2a1e4d3b2c1a09f88")
    assert client.get(f"/api/user/order/{order_id}", headers=other).status_code == 404
    assert client.get(f"/api/user/order/{order_id}", headers=auth("user")).status_code == 200


# -----------------------------
# Returns and exchanges
# -----------------------------

def test_single_line_refund_is_order_total():
    order = {"order_details": [{"item_id": "a", "quantity": 2, "unit_price": 800}],
             "total_amount": 1500, "payment_method": "Online"}
    assert compute_refund_amount(order, order["order_details"][0], 50) == 1500


def test_multi_line_refund_uses_price_paid_and_cod_deduction():
    lines = [{"item_id": "a", "quantity": 2, "unit_price": 800}, {"item_id": "b", "quantity": 1, "unit_price": 300}]
    online = {"order_details": lines, "total_amount": 1900, "payment_method": "Online"}
    cod = dict(online, payment_method="COD")
    assert compute_refund_amount(online, lines[0], 50) == 1600
    assert compute_refund_amount(cod, lines[0], 50) == 1550
    assert compute_refund_amount(cod, dict(lines[1], unit_price=None), 50, live_price=30) == 0


def test_missing_price_is_rejected():
    lines = [{"item_id": "a", "quantity": 1}, {"item_id": "b", "quantity": 1}]
    order = {"order_details": lines, "total_amount": 100, "payment_method": "Online"}
    with pytest.raises(ConflictError):
        compute_refund_amount(order, lines[0], 50)


def delivered_order(db, payment_method="COD", **extra):
    first = seed_item(db, stock=10)
    second = seed_item(db, stock=10)
    address_id = seed_address(db)
    order_id = seed_user_order(db, [order_line(first), order_line(second)], 1600,
                               payment_method=payment_method, **extra)
    return order_id, first, second, address_id


def return_items(client, order_id, item_ids, address_id, bank=BANK):
    body = {
        "orderId": order_id,
        "itemIds": item_ids,
        "returnReason": "Size too small",
        "specificReturnReason": "Too tight around the shoulders",
        "pickupLocationId": address_id,
    }
    if bank:
        body["bankDetails"] = bank
    return client.post("/api/user/order/return-refund", json=body, headers=auth("user"))


def test_partial_cod_return(client, db, gateway):
    order_id, first, _, address_id = delivered_order(db)

    resp = return_items(client, order_id, [first], address_id)
    assert resp.status_code == 200
    order = resp.json()["data"]
    assert order["order_status"] == "Partially Returned"
    returned = order["order_details"][0]
    assert returned["is_return"] is True
    assert returned["return_info"]["refund_amount"] == 750
    assert returned["return_info"]["refund_status"] == "Initiated"
    assert returned["return_info"]["bank_details"]["ifsc_code"] == "HDFC0001"
    assert returned["return_info"]["pickup_location"]["city_town"] == "Pune"
    assert gateway.refunds == []

    again = return_items(client, order_id, [first], address_id)
    assert again.status_code == 400
    assert again.json()["message"] == f"A return request is already in progress for item: {first}"


def test_full_online_return_issues_one_refund(client, db, gateway):
    order_id, first, second, address_id = delivered_order(
        db, payment_method="Online", phonepe_merchant_order_id="MO-7",
    )

    resp = return_items(client, order_id, [first, second], address_id, bank=None)
    assert resp.status_code == 200
    assert resp.json()["data"]["order_status"] == "Returned"
    assert gateway.refunds == [("MO-7", 1600)]
    for line in stored(db, order_id)["order_details"]:
        assert line["return_info"]["return_and_refund_transaction_id"] == "RF1"


def test_cod_return_needs_bank_details(client, db):
    order_id, first, _, address_id = delivered_order(db)
    resp = return_items(client, order_id, [first], address_id, bank=None)
    assert resp.status_code == 400
    assert resp.json()["message"] == "bankDetails are required for COD payment refunds"


def test_return_before_delivery_is_rejected(client, db):
    order_id, first, _, address_id = delivered_order(db, order_status="Dispatched")
    resp = return_items(client, order_id, [first], address_id)
    assert resp.status_code == 400
    assert resp.json()["message"] == "Order cannot be returned in Dispatched status"


def test_return_requires_paid_order(client, db):
    order_id, first, _, address_id = delivered_order(db, payment_status="Pending")
    assert return_items(client, order_id, [first], address_id).status_code == 400


def exchange(client, order_id, item_id, address_id, size="L", color="Red"):
    return client.post("/api/user/order/return-exchange", json={
        "orderId": order_id,
        "itemIds": [{
            "itemId": item_id,
            "desiredColor": color,
            "desiredSize": size,
            "exchangeReason": "Size too small",
            "exchangeSpecificReason": "Need one size up",
        }],
        "pickupLocationId": address_id,
    }, headers=auth("user"))


def test_exchange_records_replacement_sku(client, db):
    order_id, first, _, address_id = delivered_order(db)

    resp = exchange(client, order_id, first, address_id)
    assert resp.status_code == 200
    order = resp.json()["data"]
    assert order["order_status"] == "Partially Exchanged"
    info = order["order_details"][0]["exchange_info"]
    assert info["desired_sku_id"] == "SKU-L"
    assert info["sku_id"] == "SKU-M"
    assert info["exchange_status"] == "Initiated"
    assert stock_of(db, first, "SKU-L") == 5


def test_exchange_and_return_are_mutually_exclusive(client, db):
    order_id, first, _, address_id = delivered_order(db)
    assert exchange(client, order_id, first, address_id).status_code == 200

    resp = return_items(client, order_id, [first], address_id)
    assert resp.status_code == 400
    assert stored(db, order_id)["order_details"][0]["is_return"] is False


def test_exchange_to_missing_size(client, db):
    order_id, first, _, address_id = delivered_order(db)
    resp = exchange(client, order_id, first, address_id, size="XL")
    assert resp.status_code == 400
    assert resp.json()["message"] == (
        f"Size XL is not available for item: {first}. Available sizes for color Red: M, L"
    )


def test_exchange_requires_same_price(client, db):
    order_id, first, _, address_id = delivered_order(db)
    db["item"].update_one({}, {"$set": {"discounted_price": 900}})
    resp = exchange(client, order_id, first, address_id)
    assert resp.status_code == 400
    assert resp.json()["message"] == "Exchange is only allowed for products with the same price"


def test_order_history(client, db):
    place_order(client, db)
    resp = client.get("/api/user/order/", headers=auth("user"))
    assert resp.status_code == 200
    assert len(resp.json()["data"]) == 1

    resp = client.get(f"/api/user/order/admin/{USER_ID}", headers=auth("admin"))
    assert len(resp.json()["data"]) == 1
