from datetime import datetime
from typing import Any, NamedTuple, Optional

from bson import ObjectId
from fastapi import HTTPException
from fastapi.encoders import jsonable_encoder


class RequestValidationFailed(HTTPException):
    def __init__(self, detail: str):
        super().__init__(status_code=400, detail=detail)


class NotFoundError(HTTPException):
    def __init__(self, detail: str):
        super().__init__(status_code=404, detail=detail)


class UnauthorizedError(HTTPException):
    def __init__(self, detail: str = "Not authenticated"):
        super().__init__(status_code=401, detail=detail, headers={"WWW-Authenticate": "Bearer"})


class ForbiddenError(HTTPException):
    def __init__(self, detail: str = "Not permitted"):
        super().__init__(status_code=403, detail=detail)


class ConflictError(HTTPException):
    """A request that is well-formed but clashes with the current order state."""

    def __init__(self, detail: str):
        super().__init__(status_code=400, detail=detail)


class InsufficientStockError(ConflictError):
    def __init__(self, item_id: str, sku_id: str, available: int, requested: int, size: Optional[str] = None):
        size_part = f", size {size}" if size else ""
        super().__init__(
            f"Insufficient stock for itemId {item_id}{size_part}, skuId {sku_id}. "
            f"Available: {available}, Requested: {requested}"
        )
        self.item_id = item_id
        self.sku_id = sku_id
        self.available = available
        self.requested = requested


class PaymentGatewayError(HTTPException):
    def __init__(self, detail: str, status_code: int = 500):
        super().__init__(status_code=status_code, detail=detail)


class OrderExpiredError(ConflictError):
    def __init__(self):
        super().__init__("Order has expired")


class Outcome(NamedTuple):
    """What a workflow hands back to its route: message, payload and envelope flags."""

    message: str
    data: Any = None
    success: bool = True
    status_code: int = 200


def to_jsonable(value: Any) -> Any:
    return jsonable_encoder(
        value,
        custom_encoder={ObjectId: str, datetime: lambda d: d.isoformat()},
    )


def api_response(status_code: int, success: bool, message: str, data: Any = None) -> dict:
    return {
        "statusCode": status_code,
        "success": success,
        "message": message,
        "data": to_jsonable(data),
    }
