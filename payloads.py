"""
Request bodies for the order, cart and admin endpoints.

JSON keys are camelCase on the wire (`orderDetails`, `shippingAddressId`, ...);
the models also accept snake_case field names.
"""
from datetime import datetime
from enum import Enum
from typing import Annotated, List, Optional

from bson import ObjectId
from pydantic import AfterValidator, BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from schemas import (
    ExchangeStatus,
    InvoiceEntry,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    RefundStatus,
    ReturnReason,
)


def _check_object_id(value: str) -> str:
    if not ObjectId.is_valid(value):
        raise ValueError("Invalid id")
    return value


ObjectIdStr = Annotated[str, AfterValidator(_check_object_id)]
Reason = Annotated[str, Field(min_length=1, max_length=500)]


class Payload(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
    )


# -----------------------------
# User orders
# -----------------------------

class OrderLineRequest(Payload):
    item_id: ObjectIdStr
    quantity: int = Field(..., ge=1)
    size: str = Field(..., min_length=1)
    color: str = Field(..., min_length=1)
    sku_id: str = Field(..., min_length=1)


class UserOrderCreate(Payload):
    order_details: List[OrderLineRequest] = Field(..., min_length=1)
    invoice: List[InvoiceEntry] = Field(..., min_length=1)
    shipping_address_id: ObjectIdStr
    payment_method: PaymentMethod
    total_amount: float = Field(..., gt=0)


class VerifyPaymentRequest(Payload):
    phonepe_merchant_order_id: str = Field(..., min_length=1)


class CancelOrderRequest(Payload):
    order_id: str = Field(..., min_length=1)
    refund_reason: Optional[Reason] = None


class BankDetails(Payload):
    account_holder_name: str = Field(..., min_length=1)
    account_number: str = Field(..., min_length=1)
    ifsc_code: str = Field(..., min_length=1)
    bank_name: str = Field(..., min_length=1)


class ReturnRefundRequest(Payload):
    order_id: str = Field(..., min_length=1)
    item_ids: List[ObjectIdStr] = Field(..., min_length=1)
    return_reason: ReturnReason
    specific_return_reason: Reason
    pickup_location_id: ObjectIdStr
    bank_details: Optional[BankDetails] = None


class ExchangeItemRequest(Payload):
    item_id: ObjectIdStr
    desired_color: str = Field(..., min_length=1)
    desired_size: str = Field(..., min_length=1)
    exchange_reason: ReturnReason
    exchange_specific_reason: Reason


class ReturnExchangeRequest(Payload):
    order_id: str = Field(..., min_length=1)
    item_ids: List[ExchangeItemRequest] = Field(..., min_length=1)
    pickup_location_id: ObjectIdStr


# -----------------------------
# Partner orders
# -----------------------------

class SizeQuantityRequest(Payload):
    size: str = Field(..., min_length=1)
    quantity: int = Field(..., ge=1)
    sku_id: str = Field(..., min_length=1)

    @field_validator("size")
    @classmethod
    def normalise_size(cls, value: str) -> str:
        return value.lower()


class ColorSelectionRequest(Payload):
    color: str = Field(..., min_length=1)
    size_and_quantity: List[SizeQuantityRequest] = Field(..., min_length=1)


class PartnerOrderLineRequest(Payload):
    item_id: ObjectIdStr
    order_details: List[ColorSelectionRequest] = Field(..., min_length=1)
    total_quantity: int = Field(..., ge=1)
    total_price: float = Field(..., ge=0)

    @model_validator(mode="after")
    def quantities_add_up(self):
        declared = sum(sq.quantity for sel in self.order_details for sq in sel.size_and_quantity)
        if declared != self.total_quantity:
            raise ValueError(
                f"totalQuantity {self.total_quantity} does not match the sum of sizes {declared} for itemId {self.item_id}"
            )
        return self


class PartnerInvoiceRequest(Payload):
    key: str
    values: str


class PartnerOrderCreate(Payload):
    order_product_details: List[PartnerOrderLineRequest] = Field(..., min_length=1)
    invoice: List[PartnerInvoiceRequest] = Field(..., min_length=1)
    shipping_address_id: ObjectIdStr
    total_amount: float = Field(..., gt=0)
    is_online_payment: bool = False
    online_amount: float = Field(0, ge=0)
    is_cod_payment: bool = False
    cod_amount: float = Field(0, ge=0)
    is_cheque_payment: bool = False
    cheque_amount: float = Field(0, ge=0)
    is_wallet_payment: bool = False
    wallet_amount_used: float = Field(0, ge=0)


class PartnerReturnRequest(Payload):
    order_id: str = Field(..., min_length=1)
    reason: Reason
    pickup_location_id: ObjectIdStr


class CreditRefundRequest(Payload):
    order_id: str = Field(..., min_length=1)
    partner_id: ObjectIdStr


# -----------------------------
# Admin
# -----------------------------

class OrderStatusUpdate(Payload):
    order_id: str = Field(..., min_length=1)
    order_status: OrderStatus


class PaymentStatusUpdate(Payload):
    order_id: str = Field(..., min_length=1)
    payment_status: PaymentStatus


class DeliveryDateUpdate(Payload):
    order_id: str = Field(..., min_length=1)
    delivery_date: datetime


class ItemRefundStatusUpdate(Payload):
    order_id: str = Field(..., min_length=1)
    item_id: ObjectIdStr
    refund_status: RefundStatus
    refund_transaction_id: Optional[str] = None


class ItemExchangeStatusUpdate(Payload):
    order_id: str = Field(..., min_length=1)
    item_id: ObjectIdStr
    exchange_status: ExchangeStatus


# -----------------------------
# Carts
# -----------------------------

class UserCartItemRequest(Payload):
    item_id: ObjectIdStr
    color: str = Field(..., min_length=1)
    size: str = Field(..., min_length=1)
    sku_id: str = Field(..., min_length=1)
    quantity: int = Field(1, ge=1)


class PartnerCartItemRequest(Payload):
    item_id: ObjectIdStr
    order_details: List[ColorSelectionRequest] = Field(..., min_length=1)


class CartAction(str, Enum):
    INCREASE = "increase"
    DECREASE = "decrease"


class PartnerCartQuantityRequest(Payload):
    item_id: ObjectIdStr
    color: str = Field(..., min_length=1)
    size: str = Field(..., min_length=1)
    action: CartAction

    @field_validator("action", mode="before")
    @classmethod
    def lower_action(cls, value):
        return value.lower() if isinstance(value, str) else value
