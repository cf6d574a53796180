"""
Shared fixtures: an in-memory MongoDB with rollback-capable transactions,
a scripted PhonePe gateway, seeding helpers and bearer tokens.
"""
import copy
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import List, Optional

import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

import database
from config import Settings
from errors import PaymentGatewayError
from main import create_app
from phonepe import CheckoutSession, RefundReceipt
from schemas import (
    AddressDetail,
    ColorGroup,
    ColorImage,
    Item,
    ItemDetail,
    OrderLine,
    PartnerOrder,
    PartnerOrderLine,
    PriceTier,
    SkuEntry,
    UserOrder,
    Wallet,
)
from security import encode_token

JWT_SECRET = "test-secret"
USER_ID = str(ObjectId())
PARTNER_ID = str(ObjectId())
ADMIN_ID = str(ObjectId())


# -----------------------------
# In-memory MongoDB
# -----------------------------

class FakeCollection:
    """mongomock collection that ignores the `session` argument."""

    def __init__(self, collection):
        self._collection = collection

    def __getattr__(self, name):
        attr = getattr(self._collection, name)
        if not callable(attr):
            return attr

        def call(*args, **kwargs):
            kwargs.pop("session", None)
            return attr(*args, **kwargs)

        return call


class FakeDatabase:
    def __init__(self, db):
        self._db = db

    def __getitem__(self, name):
        return FakeCollection(self._db[name])

    def __getattr__(self, name):
        return getattr(self._db, name)


class FakeSession:
    def __init__(self, client):
        self.client = client

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return False

    @contextmanager
    def start_transaction(self):
        snapshot = self.client.snapshot()
        try:
            yield self
        except Exception:
            self.client.restore(snapshot)
            raise


class FakeClient:
    """mongomock client whose transactions roll back on error."""

    def __init__(self):
        self._client = mongomock.MongoClient()
        self._names = set()

    def __getitem__(self, name):
        self._names.add(name)
        return FakeDatabase(self._client[name])

    def start_session(self):
        return FakeSession(self)

    def snapshot(self):
        state = {}
        for name in self._names:
            db = self._client[name]
            state[name] = {
                coll: copy.deepcopy(list(db[coll].find()))
                for coll in db.list_collection_names()
            }
        return state

    def restore(self, state):
        for name, collections in state.items():
            db = self._client[name]
            for coll in db.list_collection_names():
                db.drop_collection(coll)
            for coll, docs in collections.items():
                if docs:
                    db[coll].insert_many(docs)


@pytest.fixture
def db(monkeypatch):
    client = FakeClient()
    monkeypatch.setattr(database, "client", client)
    monkeypatch.setattr(database, "db", client["marketplace_test"])
    return database.db


# -----------------------------
# Gateway double
# -----------------------------

class FakeGateway:
    """Stands in for PhonePeClient; `state` is what verify() reports."""

    def __init__(self):
        self.state = "COMPLETED"
        self.fail_initiate = False
        self.fail_refund = False
        self.callback_ok = True
        self.initiated: List[tuple] = []
        self.verified: List[str] = []
        self.refunds: List[tuple] = []

    def initiate(self, amount, redirect_url, merchant_order_id=None, request_id=None):
        if self.fail_initiate:
            raise PaymentGatewayError("PhonePe payment initiation failed: timed out")
        number = len(self.initiated) + 1
        session = CheckoutSession(
            gateway_order_id=f"OMO{number}",
            merchant_order_id=merchant_order_id or f"MO-{number}",
            checkout_url=f"https://pay.test/checkout/{number}",
            state="PENDING",
        )
        self.initiated.append((amount, session))
        return session

    def verify(self, merchant_order_id, request_id=None):
        self.verified.append(merchant_order_id)
        return self.state

    def refund(self, original_merchant_order_id, amount, merchant_refund_id=None, request_id=None):
        if self.fail_refund:
            raise PaymentGatewayError("PhonePe refund failed")
        self.refunds.append((original_merchant_order_id, amount))
        number = len(self.refunds)
        return RefundReceipt(f"RF{number}", merchant_refund_id or f"MR-{number}", "PENDING")

    def validate_callback(self, authorization):
        return self.callback_ok


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        phonepe_client_id="client-id",
        phonepe_client_secret="client-secret",
        phonepe_client_version=1,
        phonepe_redirect_url="https://shop.test/payment/return",
        jwt_secret=JWT_SECRET,
        cheque_upload_dir=str(tmp_path / "cheques"),
    )


@pytest.fixture
def client(db, settings, gateway):
    with TestClient(create_app(settings=settings, gateway=gateway)) as test_client:
        yield test_client


# -----------------------------
# Tokens
# -----------------------------

def auth(role: str, subject: Optional[str] = None) -> dict:
    subject = subject or {"user": USER_ID, "partner": PARTNER_ID, "admin": ADMIN_ID}[role]
    return {"Authorization": f"Bearer {encode_token(subject, role, JWT_SECRET)}"}


# -----------------------------
# Seeding
# -----------------------------

PPQ = [
    PriceTier(min_qty=1, max_qty=9, price_per_unit=500),
    PriceTier(min_qty=10, price_per_unit=450),
]


def seed_item(db, stock: int = 10, large_stock: int = 5, mrp: float = 1000, discounted_price: float = 800,
              color: str = "Red") -> str:
    item_id = ObjectId()
    item = Item(
        name="Cotton Kurta",
        description="Hand-block printed",
        mrp=mrp,
        discounted_price=discounted_price,
        total_stock=stock + large_stock,
        image="https://cdn.test/kurta.jpg",
    )
    db["item"].insert_one(dict(item.model_dump(), _id=item_id))
    detail = ItemDetail(
        item_id=str(item_id),
        images_by_color=[
            ColorGroup(
                color=color,
                images=[
                    ColorImage(url="https://cdn.test/red-2.jpg", priority=2),
                    ColorImage(url="https://cdn.test/red-1.jpg", priority=1),
                ],
                sizes=[
                    SkuEntry(size="M", sku_id="SKU-M", stock=stock, is_out_of_stock=stock == 0),
                    SkuEntry(size="L", sku_id="SKU-L", stock=large_stock, is_out_of_stock=large_stock == 0),
                ],
            )
        ],
        ppq=PPQ,
    )
    db["itemdetail"].insert_one(detail.model_dump())
    return str(item_id)


def stock_of(db, item_id: str, sku_id: str = "SKU-M") -> int:
    detail = db["itemdetail"].find_one({"item_id": item_id})
    for group in detail["images_by_color"]:
        for entry in group["sizes"]:
            if entry["sku_id"] == sku_id:
                return entry["stock"]
    raise AssertionError(f"{sku_id} not seeded")


def seed_address(db, collection: str = "useraddress", owner_field: str = "user_id", owner_id: str = USER_ID) -> str:
    address = AddressDetail(name="Asha Rao", address_line1="12 MG Road", city_town="Pune", pincode="411001")
    db[collection].update_one(
        {owner_field: owner_id},
        {"$push": {"address_detail": address.model_dump(by_alias=True)}},
        upsert=True,
    )
    return address.address_id


def seed_user_cart(db, item_id: str, quantity: int, size: str = "M", sku_id: str = "SKU-M",
                   user_id: str = USER_ID) -> None:
    db["usercart"].update_one(
        {"user_id": user_id},
        {"$push": {"items": {
            "item_id": item_id, "color": "Red", "size": size, "sku_id": sku_id, "quantity": quantity,
        }}},
        upsert=True,
    )


def seed_user_order(db, lines: List[dict], total_amount: float, payment_method: str = "COD",
                    order_status: str = "Delivered", payment_status: str = "Paid",
                    address_id: Optional[str] = None, **extra) -> str:
    order = UserOrder(
        order_id=f"ORD-TEST-{ObjectId()}",
        user_id=USER_ID,
        order_details=[OrderLine(**line) for line in lines],
        invoice=[],
        shipping_address_id=address_id or str(ObjectId()),
        payment_method=payment_method,
        payment_status=payment_status,
        order_status=order_status,
        total_amount=total_amount,
        **extra,
    )
    db["userorder"].insert_one(dict(order.model_dump(), created_at=datetime.now(timezone.utc)))
    return order.order_id


def order_line(item_id: str, quantity: int = 1, size: str = "M", sku_id: str = "SKU-M",
               unit_price: Optional[float] = 800) -> dict:
    return {"item_id": item_id, "quantity": quantity, "size": size, "color": "Red",
            "sku_id": sku_id, "unit_price": unit_price}


def partner_product(item_id: str, quantity: int = 2, size: str = "M", sku_id: str = "SKU-M",
                    total_price: Optional[float] = None) -> dict:
    return {
        "itemId": item_id,
        "orderDetails": [{"color": "Red", "sizeAndQuantity": [{"size": size, "quantity": quantity, "skuId": sku_id}]}],
        "totalQuantity": quantity,
        "totalPrice": total_price if total_price is not None else quantity * 500.0,
    }


def seed_partner_order(db, item_id: str, quantity: int = 2, total_amount: float = 1000,
                       order_status: str = "Delivered", payment_status: str = "Paid",
                       delivered: bool = True, **extra) -> str:
    order = PartnerOrder(
        order_id=f"ORD-TEST-{ObjectId()}",
        partner_id=PARTNER_ID,
        order_product_details=[PartnerOrderLine(
            item_id=item_id,
            order_details=[{"color": "Red", "size_and_quantity": [{"size": "m", "quantity": quantity, "sku_id": "SKU-M"}]}],
            total_quantity=quantity,
            total_price=total_amount,
        )],
        invoice=[],
        shipping_address_id=str(ObjectId()),
        order_status=order_status,
        payment_status=payment_status,
        total_amount=total_amount,
        delivered_at=datetime.now(timezone.utc) if delivered else None,
        **extra,
    )
    db["partnerorder"].insert_one(dict(order.model_dump(), created_at=datetime.now(timezone.utc)))
    return order.order_id


def seed_wallet(db, balance: float, partner_id: str = PARTNER_ID, active: bool = True) -> None:
    db["wallet"].insert_one(Wallet(partner_id=partner_id, total_balance=balance, is_active=active).model_dump())
