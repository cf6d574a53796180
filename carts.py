"""
User and partner carts.

A user cart line is one SKU with a quantity. A partner cart line is one item
with colour/size selections and server-computed `total_quantity` and
`total_price` (PPQ priced). Checkout reads the cart inside the order
transaction and reduces it there.
"""
import logging
from typing import Iterable, List, Optional

from bson import ObjectId
from pymongo import ReturnDocument

from database import Transaction, get_db, utc_now
from errors import ConflictError, InsufficientStockError, NotFoundError
from inventory import find_color, locate_sku, same_label

logger = logging.getLogger(__name__)


# -----------------------------
# PPQ pricing
# -----------------------------

def tier_for_quantity(ppq: Iterable[dict], quantity: int) -> Optional[dict]:
    """First tier covering `quantity`; a tier without max_qty is open-ended."""
    for tier in ppq:
        max_qty = tier.get("max_qty")
        if quantity >= tier["min_qty"] and (not max_qty or quantity <= max_qty):
            return tier
    return None


def price_for_quantity(ppq: Iterable[dict], quantity: int) -> float:
    tier = tier_for_quantity(ppq, quantity)
    if tier is not None:
        return tier["price_per_unit"]
    raise ConflictError(f"No valid PPQ range found for quantity {quantity}")


def price_partner_item(detail: dict, order_details: List[dict]) -> dict:
    """Validate selections against the item's SKUs and stock, and price them."""
    item_id = detail["item_id"]
    total_quantity = 0
    total_price = 0.0
    for selection in order_details:
        _, color_entry = find_color(detail, selection["color"])
        if color_entry is None:
            raise NotFoundError(f"Color {selection['color']} not found in ItemDetail for itemId: {item_id}")
        for size_qty in selection["size_and_quantity"]:
            _, _, entry = locate_sku(detail, selection["color"], size_qty["size"], size_qty["sku_id"])
            if (entry.get("stock") or 0) < size_qty["quantity"]:
                raise InsufficientStockError(item_id, size_qty["sku_id"], entry.get("stock") or 0,
                                             size_qty["quantity"], size=size_qty["size"])
            tier = tier_for_quantity(detail.get("ppq", []), size_qty["quantity"])
            if tier is None:
                raise ConflictError(
                    f"No valid PPQ range found for quantity {size_qty['quantity']} in itemId: {item_id}"
                )
            total_quantity += size_qty["quantity"]
            total_price += size_qty["quantity"] * tier["price_per_unit"]
    return {"total_quantity": total_quantity, "total_price": total_price}


# -----------------------------
# User cart
# -----------------------------

def get_user_cart(user_id: str) -> Optional[dict]:
    return get_db()["usercart"].find_one({"user_id": user_id})


def _same_user_line(line: dict, item_id: str, color: str, size: str, sku_id: str) -> bool:
    return (
        line["item_id"] == item_id
        and line["sku_id"] == sku_id
        and same_label(line["size"], size)
        and same_label(line["color"], color)
    )


def add_user_cart_item(user_id: str, item_id: str, color: str, size: str, sku_id: str, quantity: int) -> dict:
    db = get_db()
    if not db["item"].find_one({"_id": ObjectId(item_id)}):
        raise NotFoundError(f"Item not found for itemId: {item_id}")
    detail = db["itemdetail"].find_one({"item_id": item_id})
    if not detail:
        raise NotFoundError(f"Item detail for itemId {item_id} not found")
    _, _, entry = locate_sku(detail, color, size, sku_id)

    cart = db["usercart"].find_one({"user_id": user_id}) or {"user_id": user_id, "items": []}
    items = cart["items"]
    existing = next((line for line in items if _same_user_line(line, item_id, color, size, sku_id)), None)
    wanted = quantity + (existing["quantity"] if existing else 0)
    if (entry.get("stock") or 0) < wanted:
        raise InsufficientStockError(item_id, sku_id, entry.get("stock") or 0, wanted, size=size)

    if existing:
        existing["quantity"] = wanted
    else:
        items.append({
            "item_id": item_id,
            "color": color,
            "size": size,
            "sku_id": sku_id,
            "quantity": quantity,
            "added_at": utc_now(),
        })
    return db["usercart"].find_one_and_update(
        {"user_id": user_id},
        {"$set": {"items": items, "updated_at": utc_now()}, "$setOnInsert": {"created_at": utc_now()}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )


def update_user_cart_quantity(user_id: str, item_id: str, color: str, size: str, sku_id: str, quantity: int) -> dict:
    db = get_db()
    cart = db["usercart"].find_one({"user_id": user_id})
    if not cart:
        raise NotFoundError("Cart not found")
    line = next((c for c in cart["items"] if _same_user_line(c, item_id, color, size, sku_id)), None)
    if line is None:
        raise NotFoundError("Cart item not found")
    detail = db["itemdetail"].find_one({"item_id": item_id})
    if detail:
        _, _, entry = locate_sku(detail, color, size, sku_id)
        if (entry.get("stock") or 0) < quantity:
            raise InsufficientStockError(item_id, sku_id, entry.get("stock") or 0, quantity, size=size)
    line["quantity"] = quantity
    db["usercart"].update_one({"_id": cart["_id"]}, {"$set": {"items": cart["items"], "updated_at": utc_now()}})
    return cart


def remove_user_cart_item(user_id: str, item_id: str, sku_id: str) -> dict:
    db = get_db()
    cart = db["usercart"].find_one({"user_id": user_id})
    if not cart:
        raise NotFoundError("Cart not found")
    remaining = [c for c in cart["items"] if not (c["item_id"] == item_id and c["sku_id"] == sku_id)]
    if len(remaining) == len(cart["items"]):
        raise NotFoundError("Item not in cart")
    cart["items"] = remaining
    db["usercart"].update_one({"_id": cart["_id"]}, {"$set": {"items": remaining, "updated_at": utc_now()}})
    return cart


def _merge_requested(lines: Iterable[dict]) -> List[dict]:
    """Sum requested quantities per item, colour, size and SKU."""
    merged = {}
    for line in lines:
        key = (line["item_id"], line["color"].strip().lower(), line["size"].strip().lower(), line["sku_id"])
        if key in merged:
            merged[key] = dict(merged[key], quantity=merged[key]["quantity"] + line["quantity"])
        else:
            merged[key] = dict(line)
    return list(merged.values())


def match_user_cart_lines(cart: Optional[dict], lines: Iterable[dict]) -> None:
    """Every ordered SKU must be in the cart with at least its total ordered quantity."""
    if not cart or not cart.get("items"):
        raise ConflictError("Cart is empty or not found")
    for line in _merge_requested(lines):
        match = next(
            (c for c in cart["items"]
             if _same_user_line(c, line["item_id"], line["color"], line["size"], line["sku_id"])),
            None,
        )
        if match is None:
            raise ConflictError(
                f"Item with itemId {line['item_id']}, skuId {line['sku_id']} and size {line['size']} not found in cart"
            )
        if match["quantity"] < line["quantity"]:
            raise ConflictError(
                f"Insufficient quantity for skuId {line['sku_id']} in cart. "
                f"In cart: {match['quantity']}, Requested: {line['quantity']}"
            )


def remove_ordered_user_lines(tx: Transaction, cart: dict, lines: Iterable[dict]) -> List[dict]:
    items = [dict(c) for c in cart["items"]]
    for line in lines:
        for c in items:
            if _same_user_line(c, line["item_id"], line["color"], line["size"], line["sku_id"]):
                c["quantity"] -= line["quantity"]
                break
    items = [c for c in items if c["quantity"] > 0]
    tx["usercart"].update_one({"_id": cart["_id"]}, {"$set": {"items": items, "updated_at": utc_now()}})
    return items


# -----------------------------
# Partner cart
# -----------------------------

def get_partner_cart(partner_id: str) -> Optional[dict]:
    return get_db()["partnercart"].find_one({"partner_id": partner_id})


def add_partner_cart_item(partner_id: str, item_id: str, order_details: List[dict]) -> dict:
    """Add an item to the cart, replacing any previous selections for it."""
    db = get_db()
    if not db["item"].find_one({"_id": ObjectId(item_id)}):
        raise NotFoundError(f"Item not found for itemId: {item_id}")
    detail = db["itemdetail"].find_one({"item_id": item_id})
    if not detail:
        raise NotFoundError(f"ItemDetail not found for itemId: {item_id}")
    totals = price_partner_item(detail, order_details)

    cart = db["partnercart"].find_one({"partner_id": partner_id}) or {"partner_id": partner_id, "items": []}
    items = [line for line in cart["items"] if line["item_id"] != item_id]
    items.append({
        "item_id": item_id,
        "order_details": order_details,
        "total_quantity": totals["total_quantity"],
        "total_price": totals["total_price"],
        "added_at": utc_now(),
    })
    return db["partnercart"].find_one_and_update(
        {"partner_id": partner_id},
        {"$set": {"items": items, "updated_at": utc_now()}, "$setOnInsert": {"created_at": utc_now()}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )


def remove_partner_cart_item(partner_id: str, item_id: str) -> dict:
    db = get_db()
    cart = db["partnercart"].find_one({"partner_id": partner_id})
    if not cart:
        raise NotFoundError("Cart not found")
    remaining = [line for line in cart["items"] if line["item_id"] != item_id]
    if len(remaining) == len(cart["items"]):
        raise NotFoundError("Item not in cart")
    cart["items"] = remaining
    db["partnercart"].update_one({"_id": cart["_id"]}, {"$set": {"items": remaining, "updated_at": utc_now()}})
    return cart


def update_partner_cart_quantity(partner_id: str, item_id: str, color: str, size: str, increase: bool) -> dict:
    """Move one size up or down by a unit and reprice the item.

    A size that drops to zero leaves the cart, along with its colour and the
    item once they have no sizes left.
    """
    db = get_db()
    cart = db["partnercart"].find_one({"partner_id": partner_id})
    if not cart:
        raise NotFoundError("Cart not found")
    cart_line = next((line for line in cart["items"] if line["item_id"] == item_id), None)
    if cart_line is None:
        raise NotFoundError("Item not found in cart")
    selection = next((s for s in cart_line["order_details"] if same_label(s["color"], color)), None)
    if selection is None:
        raise NotFoundError(f"Color {color} not found for itemId: {item_id}")
    size_qty = next((sq for sq in selection["size_and_quantity"] if same_label(sq["size"], size)), None)
    if size_qty is None:
        raise NotFoundError(f"Size {size} not found for color {color} in itemId: {item_id}")

    size_qty["quantity"] += 1 if increase else -1
    selection["size_and_quantity"] = [sq for sq in selection["size_and_quantity"] if sq["quantity"] > 0]
    cart_line["order_details"] = [s for s in cart_line["order_details"] if s["size_and_quantity"]]

    if cart_line["order_details"]:
        detail = db["itemdetail"].find_one({"item_id": item_id})
        if not detail:
            raise NotFoundError(f"ItemDetail not found for itemId: {item_id}")
        cart_line.update(price_partner_item(detail, cart_line["order_details"]))
        items = cart["items"]
    else:
        items = [line for line in cart["items"] if line["item_id"] != item_id]

    logger.debug("Partner cart %s: %s %s/%s for item %s", cart["_id"], "increased" if increase else "decreased",
                 color, size, item_id)
    return db["partnercart"].find_one_and_update(
        {"_id": cart["_id"]},
        {"$set": {"items": items, "updated_at": utc_now()}},
        return_document=ReturnDocument.AFTER,
    )


def _find_cart_size(cart_line: dict, color: str, size: str, sku_id: str) -> Optional[dict]:
    selection = next((s for s in cart_line["order_details"] if same_label(s["color"], color)), None)
    if selection is None:
        return None
    return next(
        (sq for sq in selection["size_and_quantity"] if sq["sku_id"] == sku_id and same_label(sq["size"], size)),
        None,
    )


def validate_partner_cart_totals(cart: Optional[dict], order_product_details: List[dict]) -> None:
    """Reject requests whose declared totals or quantities differ from the cart."""
    if not cart or not cart.get("items"):
        raise ConflictError("Cart is empty or not found")
    seen = set()
    for product in order_product_details:
        item_id = product["item_id"]
        if item_id in seen:
            raise ConflictError(f"Item with itemId {item_id} is listed more than once")
        seen.add(item_id)
        cart_line = next((line for line in cart["items"] if line["item_id"] == item_id), None)
        if cart_line is None:
            raise ConflictError(f"Item with itemId {item_id} not found in cart")
        if cart_line["total_quantity"] != product["total_quantity"]:
            raise ConflictError(
                f"Cart total quantity is {cart_line['total_quantity']} and that received is "
                f"{product['total_quantity']} for itemId {item_id}"
            )
        if cart_line["total_price"] != product["total_price"]:
            raise ConflictError(
                f"Cart total price is {cart_line['total_price']} and that received is "
                f"{product['total_price']} for itemId {item_id}"
            )
        for selection in product["order_details"]:
            if not any(same_label(s["color"], selection["color"]) for s in cart_line["order_details"]):
                raise ConflictError(f"Color {selection['color']} not found in cart for itemId {item_id}")
        requested = _merge_requested(
            dict(size_qty, item_id=item_id, color=selection["color"])
            for selection in product["order_details"]
            for size_qty in selection["size_and_quantity"]
        )
        for size_qty in requested:
            cart_size = _find_cart_size(cart_line, size_qty["color"], size_qty["size"], size_qty["sku_id"])
            if cart_size is None:
                raise ConflictError(
                    f"Item with skuId {size_qty['sku_id']} and size {size_qty['size']} not found in cart"
                )
            if cart_size["quantity"] < size_qty["quantity"]:
                raise ConflictError(f"Insufficient quantity for skuId {size_qty['sku_id']} in cart")


def reduce_partner_cart(tx: Transaction, cart: dict, order_product_details: List[dict]) -> List[dict]:
    """Subtract ordered quantities, dropping emptied sizes, colours and items."""
    items = []
    for cart_line in cart["items"]:
        product = next((p for p in order_product_details if p["item_id"] == cart_line["item_id"]), None)
        if product is None:
            items.append(cart_line)
            continue
        selections = []
        for selection in cart_line["order_details"]:
            sizes = []
            for size_qty in selection["size_and_quantity"]:
                ordered = sum(
                    sq["quantity"]
                    for s in product["order_details"] if same_label(s["color"], selection["color"])
                    for sq in s["size_and_quantity"]
                    if sq["sku_id"] == size_qty["sku_id"] and same_label(sq["size"], size_qty["size"])
                )
                left = size_qty["quantity"] - ordered
                if left > 0:
                    sizes.append(dict(size_qty, quantity=left))
            if sizes:
                selections.append(dict(selection, size_and_quantity=sizes))
        if not selections:
            continue
        detail = tx["itemdetail"].find_one({"item_id": cart_line["item_id"]}) or {}
        # sizes that fall below every tier keep the unit price they were carted at
        carted_unit = cart_line["total_price"] / cart_line["total_quantity"] if cart_line["total_quantity"] else 0
        total_price = 0.0
        for s in selections:
            for sq in s["size_and_quantity"]:
                tier = tier_for_quantity(detail.get("ppq", []), sq["quantity"])
                total_price += sq["quantity"] * (tier["price_per_unit"] if tier else carted_unit)
        items.append(dict(
            cart_line,
            order_details=selections,
            total_quantity=sum(sq["quantity"] for s in selections for sq in s["size_and_quantity"]),
            total_price=total_price,
        ))
    tx["partnercart"].update_one({"_id": cart["_id"]}, {"$set": {"items": items, "updated_at": utc_now()}})
    logger.debug("Partner cart %s reduced to %d items", cart["_id"], len(items))
    return items
