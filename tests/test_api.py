from conftest import auth, seed_item


def test_root(client):
    resp = client.get("/")
    assert resp.status_code == 200
    assert resp.json() == {"message": "Marketplace order API running"}


def test_database_status_endpoint(client, db):
    seed_item(db)
    body = client.get("/test").json()
    assert body["database"] == "✅ Connected"
    assert body["database_name"] == "marketplace_test"
    assert "itemdetail" in body["collections"]
    assert body["phonepe_env"] == "SANDBOX"


def test_missing_field_names_the_field(client):
    resp = client.post("/api/user/order/create", json={
        "orderDetails": [{"itemId": "64b7f0c2a1e4d3b2c1a09f88", "quantity": 1, "size": "M", "color": "Red",
                          "skuId": "SKU-M"}],
        "invoice": [{"key": "Subtotal", "value": 800}],
        "paymentMethod": "COD",
        "totalAmount": 800,
    }, headers=auth("user"))
    assert resp.status_code == 400
    assert resp.json() == {
        "statusCode": 400,
        "success": False,
        "message": "shippingAddressId: Field required",
        "data": None,
    }


def test_invalid_object_id(client):
    resp = client.post("/api/user/order/create", json={
        "orderDetails": [{"itemId": "not-an-id", "quantity": 1, "size": "M", "color": "Red", "skuId": "SKU-M"}],
        "invoice": [{"key": "Subtotal", "value": 800}],
        "shippingAddressId": "64b7f0c2a1e4d3b2c1a09f88",
        "paymentMethod": "COD",
        "totalAmount": 800,
    }, headers=auth("user"))
    assert resp.status_code == 400
    assert resp.json()["message"].startswith("orderDetails.0.itemId:")


def test_invalid_enum_value(client):
    resp = client.post("/api/user/order/create", json={
        "orderDetails": [{"itemId": "64b7f0c2a1e4d3b2c1a09f88", "quantity": 1, "size": "M", "color": "Red",
                          "skuId": "SKU-M"}],
        "invoice": [{"key": "Subtotal", "value": 800}],
        "shippingAddressId": "64b7f0c2a1e4d3b2c1a09f88",
        "paymentMethod": "Card",
        "totalAmount": 800,
    }, headers=auth("user"))
    assert resp.status_code == 400
    assert resp.json()["message"].startswith("paymentMethod:")


def test_unknown_order_uses_envelope(client, db):
    resp = client.get("/api/user/order/ORD-404", headers=auth("user"))
    assert resp.status_code == 404
    assert resp.json() == {"statusCode": 404, "success": False, "message": "Order not found", "data": None}


def test_unknown_route_uses_envelope(client):
    resp = client.get("/api/nothing-here")
    assert resp.status_code == 404
    assert resp.json()["success"] is False


def test_database_unavailable(client, monkeypatch):
    import database
    monkeypatch.setattr(database, "db", None)
    resp = client.get("/api/user/order/", headers=auth("user"))
    assert resp.status_code == 500
    assert resp.json()["message"].startswith("Database not available")


def test_empty_invoice_is_rejected(client):
    resp = client.post("/api/user/order/create", json={
        "orderDetails": [{"itemId": "64b7f0c2a1e4d3b2c1a09f88", "quantity": 1, "size": "M", "color": "Red",
                          "skuId": "SKU-M"}],
        "invoice": [],
        "shippingAddressId": "64b7f0c2a1e4d3b2c1a09f88",
        "paymentMethod": "COD",
        "totalAmount": 800,
    }, headers=auth("user"))
    assert resp.status_code == 400
    assert resp.json()["message"].startswith("invoice:")
