"""
Database Schemas for the marketplace order core

Each Pydantic model represents a collection in MongoDB. The collection name is the lowercase of the class name
(Item -> "item", UserOrder -> "userorder"). Embedded models describe sub-documents.
"""
from datetime import datetime
from enum import Enum
from typing import List, Optional

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, Field, field_validator


class OrderStatus(str, Enum):
    INITIATED = "Initiated"
    CONFIRMED = "Confirmed"
    READY_FOR_DISPATCH = "Ready for Dispatch"
    DISPATCHED = "Dispatched"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"
    RETURNED = "Returned"
    PARTIALLY_RETURNED = "Partially Returned"
    EXCHANGED = "Exchanged"
    PARTIALLY_EXCHANGED = "Partially Exchanged"


class PaymentStatus(str, Enum):
    PENDING = "Pending"
    PAID = "Paid"
    FAILED = "Failed"
    EXPIRED = "Expired"
    REFUNDED = "Refunded"


TERMINAL_PAYMENT_STATUSES = (PaymentStatus.PAID, PaymentStatus.FAILED, PaymentStatus.EXPIRED)


class PaymentMethod(str, Enum):
    ONLINE = "Online"
    COD = "COD"


class RefundStatus(str, Enum):
    INITIATED = "Initiated"
    PROCESSING = "Processing"
    COMPLETED = "Completed"


class ExchangeStatus(str, Enum):
    INITIATED = "Initiated"
    PROCESSING = "Processing"
    COMPLETED = "Completed"


class ReturnReason(str, Enum):
    SIZE_TOO_SMALL = "Size too small"
    SIZE_TOO_BIG = "Size too big"
    FIT = "Don't like the fit"
    QUALITY = "Don't like the quality"
    NOT_AS_CATALOGUE = "Not same as the catalogue"
    DAMAGED = "Product is damaged"
    WRONG_PRODUCT = "Wrong product is received"
    LATE = "Product arrived too late"


class TransactionType(str, Enum):
    CREDIT = "credit"
    DEBIT = "debit"


class Document(BaseModel):
    model_config = ConfigDict(use_enum_values=True, populate_by_name=True, validate_default=True)


def new_object_id() -> str:
    return str(ObjectId())


# -----------------------------
# Catalog / inventory
# -----------------------------

class ColorImage(Document):
    url: str
    priority: int = 0


class SkuEntry(Document):
    size: str
    sku_id: str
    stock: int = Field(0, ge=0)
    is_out_of_stock: bool = False


class ColorGroup(Document):
    color: str
    hex_code: Optional[str] = None
    images: List[ColorImage] = Field(default_factory=list)
    sizes: List[SkuEntry] = Field(default_factory=list)


class PriceTier(Document):
    min_qty: int = Field(..., ge=1)
    max_qty: Optional[int] = None
    price_per_unit: float = Field(..., ge=0)


class Item(Document):
    name: str
    description: Optional[str] = None
    mrp: float = Field(..., ge=0)
    discounted_price: Optional[float] = Field(None, ge=0)
    total_stock: int = Field(0, ge=0)
    is_out_of_stock: bool = False
    image: Optional[str] = None


class ItemDetail(Document):
    item_id: str
    images_by_color: List[ColorGroup] = Field(default_factory=list)
    ppq: List[PriceTier] = Field(default_factory=list)
    return_policy: str = "30-day return policy available."


# -----------------------------
# Addresses
# -----------------------------

class AddressDetail(Document):
    address_id: str = Field(default_factory=new_object_id, alias="_id")
    name: str
    phone_number: Optional[str] = None
    email: Optional[str] = None
    pincode: Optional[str] = None
    address_line1: str
    address_line2: Optional[str] = None
    city_town: Optional[str] = None
    state: Optional[str] = None
    country: str = "India"
    address_type: str = "Home"
    is_default: bool = False


class UserAddress(Document):
    user_id: str
    address_detail: List[AddressDetail] = Field(default_factory=list)


class PartnerAddress(Document):
    partner_id: str
    address_detail: List[AddressDetail] = Field(default_factory=list)


# -----------------------------
# Carts
# -----------------------------

class UserCartLine(Document):
    item_id: str
    color: str
    size: str
    sku_id: str
    quantity: int = Field(..., ge=1)
    added_at: Optional[datetime] = None


class UserCart(Document):
    user_id: str
    items: List[UserCartLine] = Field(default_factory=list)


class SizeQuantity(Document):
    size: str
    quantity: int = Field(..., ge=1)
    sku_id: str

    @field_validator("size")
    @classmethod
    def normalise_size(cls, value: str) -> str:
        return value.strip().lower()


class ColorSelection(Document):
    color: str
    size_and_quantity: List[SizeQuantity] = Field(..., min_length=1)


class PartnerCartLine(Document):
    item_id: str
    order_details: List[ColorSelection] = Field(default_factory=list)
    total_quantity: int = Field(0, ge=0)
    total_price: float = Field(0, ge=0)
    added_at: Optional[datetime] = None


class PartnerCart(Document):
    partner_id: str
    items: List[PartnerCartLine] = Field(default_factory=list)


# -----------------------------
# User orders
# -----------------------------

class BankDetails(Document):
    account_holder_name: str = Field(..., min_length=1)
    account_number: str = Field(..., min_length=1)
    ifsc_code: str = Field(..., min_length=1)
    bank_name: str = Field(..., min_length=1)


class ReturnInfo(Document):
    return_reason: ReturnReason
    specific_return_reason: str
    request_date: datetime
    pickup_location: Optional[dict] = None
    bank_details: Optional[BankDetails] = None
    refund_amount: Optional[float] = Field(None, ge=0)
    return_and_refund_transaction_id: Optional[str] = None
    merchant_refund_id: Optional[str] = None
    refund_status: Optional[RefundStatus] = None


class ExchangeInfo(Document):
    exchange_reason: ReturnReason
    exchange_specific_reason: str
    color: str
    size: str
    sku_id: str
    desired_color: str
    desired_size: str
    desired_sku_id: Optional[str] = None
    is_size_availability: bool = True
    request_date: datetime
    pickup_location_id: str
    exchange_status: Optional[ExchangeStatus] = None


class OrderLine(Document):
    item_id: str
    quantity: int = Field(1, ge=1)
    size: str
    color: str
    sku_id: str
    unit_price: Optional[float] = None
    added_at: Optional[datetime] = None
    is_return: bool = False
    is_exchange: bool = False
    return_info: Optional[ReturnInfo] = None
    exchange_info: Optional[ExchangeInfo] = None


class InvoiceEntry(Document):
    key: str
    value: float

    @field_validator("key")
    @classmethod
    def normalise_key(cls, value: str) -> str:
        return value.strip().lower()


class RefundInfo(Document):
    refund_reason: Optional[str] = None
    request_date: Optional[datetime] = None
    refund_amount: Optional[float] = Field(None, ge=0)
    refund_transaction_id: Optional[str] = None
    merchant_refund_id: Optional[str] = None
    refund_status: Optional[RefundStatus] = None


class UserOrder(Document):
    order_id: str
    user_id: str
    order_details: List[OrderLine]
    invoice: List[InvoiceEntry]
    shipping_address_id: str
    payment_method: PaymentMethod
    payment_status: PaymentStatus = PaymentStatus.PENDING
    phonepe_order_id: Optional[str] = None
    phonepe_merchant_order_id: Optional[str] = None
    checkout_page_url: Optional[str] = None
    order_status: OrderStatus = OrderStatus.INITIATED
    order_status_date: Optional[datetime] = None
    is_order_placed: bool = False
    is_order_cancelled: bool = False
    total_amount: float = Field(..., ge=0)
    refund: Optional[RefundInfo] = None
    delivery_date: Optional[datetime] = None


# -----------------------------
# Partner orders and wallets
# -----------------------------

class PartnerOrderLine(Document):
    item_id: str
    order_details: List[ColorSelection]
    total_quantity: int = Field(..., ge=1)
    total_price: float = Field(..., ge=0)
    added_at: Optional[datetime] = None


class PartnerInvoiceEntry(Document):
    key: str
    values: str

    @field_validator("key")
    @classmethod
    def normalise_key(cls, value: str) -> str:
        return value.strip().lower()


class ChequeImage(Document):
    url: Optional[str] = None
    file_name: Optional[str] = None
    content_type: Optional[str] = None
    uploaded_at: Optional[datetime] = None


class PartnerReturnInfo(Document):
    reason: str
    request_date: datetime
    pickup_location_id: str
    refund_transaction_id: Optional[str] = None
    refund_amount: Optional[float] = Field(None, ge=0)
    refund_status: Optional[RefundStatus] = None


class PartnerOrder(Document):
    order_id: str
    partner_id: str
    order_product_details: List[PartnerOrderLine]
    invoice: List[PartnerInvoiceEntry]
    shipping_address_id: str
    order_status: OrderStatus = OrderStatus.CONFIRMED
    order_status_date: Optional[datetime] = None
    is_order_placed: bool = False
    is_order_returned: bool = False
    phonepe_order_id: Optional[str] = None
    phonepe_merchant_order_id: Optional[str] = None
    checkout_page_url: Optional[str] = None
    is_online_payment: bool = False
    online_amount: float = 0
    is_cod_payment: bool = False
    cod_amount: float = 0
    is_cheque_payment: bool = False
    cheque_amount: float = 0
    is_wallet_payment: bool = False
    wallet_amount_used: float = 0
    payment_status: PaymentStatus = PaymentStatus.PENDING
    total_amount: float = Field(..., ge=0)
    cheque_image: Optional[ChequeImage] = None
    return_info: Optional[PartnerReturnInfo] = None
    delivered_at: Optional[datetime] = None


class WalletTransaction(Document):
    transaction_id: str = Field(default_factory=new_object_id)
    type: TransactionType
    amount: float = Field(..., ge=0)
    description: str = ""
    order_id: Optional[str] = None
    status: str = "completed"
    created_at: Optional[datetime] = None


class Wallet(Document):
    partner_id: str
    total_balance: float = Field(0, ge=0)
    currency: str = "INR"
    is_active: bool = True
    transactions: List[WalletTransaction] = Field(default_factory=list)
