"""Read-side views of orders: item names, images and addresses resolved for display."""
import logging
from typing import List, Optional

from bson import ObjectId

from database import get_db
from inventory import find_color

logger = logging.getLogger(__name__)


def find_address(collection: str, owner_field: str, owner_id: str, address_id: str, tx=None) -> Optional[dict]:
    """Return the owner's address entry whose _id is `address_id`, or None."""
    source = tx[collection] if tx is not None else get_db()[collection]
    book = source.find_one({owner_field: owner_id})
    if not book:
        return None
    for entry in book.get("address_detail", []):
        if str(entry.get("_id")) == str(address_id):
            return entry
    return None


def _color_image(detail: Optional[dict], color: str) -> Optional[str]:
    if not detail:
        return None
    _, group = find_color(detail, color)
    if not group or not group.get("images"):
        return None
    return min(group["images"], key=lambda image: image.get("priority", 0)).get("url")


def _item_view(item_id: str, color: str, warnings: List[str]) -> dict:
    db = get_db()
    item = db["item"].find_one({"_id": ObjectId(item_id)}) if ObjectId.is_valid(item_id) else None
    if not item:
        warnings.append(f"Item {item_id} not found")
        return {"item_id": item_id}
    detail = db["itemdetail"].find_one({"item_id": item_id})
    return {
        "item_id": item_id,
        "name": item.get("name"),
        "description": item.get("description"),
        "mrp": item.get("mrp"),
        "discounted_price": item.get("discounted_price"),
        "image": _color_image(detail, color) or item.get("image"),
    }


def populate_user_order(order: dict) -> dict:
    warnings: List[str] = []
    view = dict(order)
    view["order_details"] = [
        dict(line, item=_item_view(line["item_id"], line["color"], warnings))
        for line in order.get("order_details", [])
    ]
    address = find_address("useraddress", "user_id", order["user_id"], order["shipping_address_id"])
    if address is None:
        warnings.append(f"Shipping address {order['shipping_address_id']} not found")
    view["shipping_address"] = address
    if warnings:
        logger.debug("Order %s projected with warnings: %s", order.get("order_id"), warnings)
        view["warnings"] = warnings
    return view


def partner_order_summary(order: dict) -> dict:
    lines = order.get("order_product_details", [])
    return {
        "order_id": order.get("order_id"),
        "order_status": order.get("order_status"),
        "payment_status": order.get("payment_status"),
        "item_count": len(lines),
        "total_quantity": sum(line.get("total_quantity", 0) for line in lines),
        "total_amount": order.get("total_amount"),
        "payment_breakdown": {
            "wallet": order.get("wallet_amount_used", 0),
            "online": order.get("online_amount", 0),
            "cod": order.get("cod_amount", 0),
            "cheque": order.get("cheque_amount", 0),
        },
    }


def populate_partner_order(order: dict) -> dict:
    warnings: List[str] = []
    view = dict(order)
    products = []
    for line in order.get("order_product_details", []):
        colors = [selection["color"] for selection in line.get("order_details", [])]
        item = _item_view(line["item_id"], colors[0] if colors else "", warnings)
        products.append(dict(line, item=item))
    view["order_product_details"] = products
    address = find_address("partneraddress", "partner_id", order["partner_id"], order["shipping_address_id"])
    if address is None:
        warnings.append(f"Shipping address {order['shipping_address_id']} not found")
    view["shipping_address"] = address
    return_info = order.get("return_info")
    if return_info:
        pickup = find_address("partneraddress", "partner_id", order["partner_id"], return_info["pickup_location_id"])
        view["return_info"] = dict(return_info, pickup_location=pickup)
    view["summary"] = partner_order_summary(order)
    if warnings:
        view["warnings"] = warnings
    return view
