"""
Per-SKU stock held on ItemDetail documents (item -> color -> size/SKU).

Stock only moves through `reserve` and `restore`, and both must be called
with the Transaction that also writes the order or cart change depending on
them. `reserve` uses a conditional update (stock >= quantity in the filter)
per SKU, so a decrement that lost a race matches nothing and aborts.
"""
import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

from bson import ObjectId

from database import Transaction
from errors import InsufficientStockError, NotFoundError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StockLine:
    item_id: str
    color: str
    size: str
    sku_id: str
    quantity: int


def same_label(a: Optional[str], b: Optional[str]) -> bool:
    return (a or "").strip().lower() == (b or "").strip().lower()


def lines_from_user_order(order_details: Iterable[dict]) -> List[StockLine]:
    return [
        StockLine(d["item_id"], d["color"], d["size"], d["sku_id"], d["quantity"])
        for d in order_details
    ]


def lines_from_partner_order(order_product_details: Iterable[dict]) -> List[StockLine]:
    lines = []
    for product in order_product_details:
        for selection in product["order_details"]:
            for size_qty in selection["size_and_quantity"]:
                lines.append(StockLine(
                    product["item_id"], selection["color"], size_qty["size"],
                    size_qty["sku_id"], size_qty["quantity"],
                ))
    return lines


def merge_lines(lines: Iterable[StockLine]) -> List[StockLine]:
    merged = OrderedDict()
    for line in lines:
        key = (line.item_id, line.color.strip().lower(), line.size.strip().lower(), line.sku_id)
        if key in merged:
            previous = merged[key]
            merged[key] = StockLine(previous.item_id, previous.color, previous.size,
                                    previous.sku_id, previous.quantity + line.quantity)
        else:
            merged[key] = line
    return list(merged.values())


def load_detail(tx: Transaction, item_id: str) -> dict:
    detail = tx["itemdetail"].find_one({"item_id": item_id})
    if not detail:
        raise NotFoundError(f"Item detail for itemId {item_id} not found")
    return detail


def find_color(detail: dict, color: str) -> Tuple[int, Optional[dict]]:
    for index, entry in enumerate(detail.get("images_by_color", [])):
        if same_label(entry.get("color"), color):
            return index, entry
    return -1, None


def locate_sku(detail: dict, color: str, size: str, sku_id: Optional[str] = None) -> Tuple[int, int, dict]:
    """Return (color index, size index, size entry) or raise NotFoundError."""
    item_id = detail.get("item_id")
    color_index, color_entry = find_color(detail, color)
    if color_entry is None:
        raise NotFoundError(f"Color {color} not found for itemId {item_id}")
    for size_index, entry in enumerate(color_entry.get("sizes", [])):
        if same_label(entry.get("size"), size) and (sku_id is None or entry.get("sku_id") == sku_id):
            return color_index, size_index, entry
    if sku_id is None:
        raise NotFoundError(f"Size {size} not found for color {color} in itemId {item_id}")
    raise NotFoundError(f"Size {size} with skuId {sku_id} not found for itemId {item_id}")


def _sku_path(color_index: int, size_index: int) -> str:
    return f"images_by_color.{color_index}.sizes.{size_index}"


def check_available(tx: Transaction, lines: Iterable[StockLine]) -> None:
    for line in merge_lines(lines):
        detail = load_detail(tx, line.item_id)
        _, _, entry = locate_sku(detail, line.color, line.size, line.sku_id)
        available = entry.get("stock") or 0
        if available < line.quantity:
            raise InsufficientStockError(line.item_id, line.sku_id, available, line.quantity, size=line.size)


def _adjust_item_total(tx: Transaction, item_id: str, delta: int) -> None:
    if not ObjectId.is_valid(item_id):
        return
    updated = tx["item"].find_one_and_update({"_id": ObjectId(item_id)}, {"$inc": {"total_stock": delta}})
    if updated is not None:
        tx["item"].update_one(
            {"_id": updated["_id"]},
            {"$set": {"is_out_of_stock": updated.get("total_stock", 0) <= 0}},
        )


def _apply(tx: Transaction, line: StockLine, delta: int, request_id: Optional[str]) -> int:
    detail = load_detail(tx, line.item_id)
    color_index, size_index, entry = locate_sku(detail, line.color, line.size, line.sku_id)
    path = _sku_path(color_index, size_index)
    query = {"_id": detail["_id"], f"{path}.sku_id": line.sku_id}
    if delta < 0:
        query[f"{path}.stock"] = {"$gte": -delta}

    updated = tx["itemdetail"].find_one_and_update(query, {"$inc": {f"{path}.stock": delta}})
    if updated is None:
        if delta < 0:
            current = load_detail(tx, line.item_id)
            _, _, current_entry = locate_sku(current, line.color, line.size, line.sku_id)
            raise InsufficientStockError(line.item_id, line.sku_id, current_entry.get("stock") or 0,
                                         line.quantity, size=line.size)
        raise NotFoundError(f"Size {line.size} with skuId {line.sku_id} not found for itemId {line.item_id}")

    new_stock = updated["images_by_color"][color_index]["sizes"][size_index]["stock"]
    tx["itemdetail"].update_one(
        {"_id": detail["_id"]},
        {"$set": {f"{path}.is_out_of_stock": new_stock == 0}},
    )
    _adjust_item_total(tx, line.item_id, delta)
    logger.info("[%s] Stock for itemId %s skuId %s moved by %d to %d",
                request_id, line.item_id, line.sku_id, delta, new_stock)
    return new_stock


def reserve(tx: Transaction, lines: Iterable[StockLine], request_id: Optional[str] = None) -> None:
    for line in merge_lines(lines):
        _apply(tx, line, -line.quantity, request_id)


def restore(tx: Transaction, lines: Iterable[StockLine], request_id: Optional[str] = None) -> None:
    for line in merge_lines(lines):
        _apply(tx, line, line.quantity, request_id)


def sku_stock(tx: Transaction, item_id: str, color: str, size: str, sku_id: Optional[str] = None) -> int:
    detail = load_detail(tx, item_id)
    _, _, entry = locate_sku(detail, color, size, sku_id)
    return entry.get("stock") or 0
