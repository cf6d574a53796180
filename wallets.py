"""
Partner wallets.

The balance and the transaction log are always written by the same update,
so `total_balance` never moves without a matching transaction entry.
"""
import logging
from typing import Optional

from database import Transaction, get_db, utc_now
from errors import ConflictError, NotFoundError, RequestValidationFailed
from schemas import TransactionType, WalletTransaction

logger = logging.getLogger(__name__)


def get_wallet(partner_id: str, tx: Optional[Transaction] = None) -> dict:
    collection = tx["wallet"] if tx is not None else get_db()["wallet"]
    wallet = collection.find_one({"partner_id": partner_id})
    if not wallet:
        raise NotFoundError("Wallet not found")
    return wallet


def _entry(kind: TransactionType, amount: float, order_id: str, description: str) -> dict:
    return WalletTransaction(
        type=kind,
        amount=amount,
        description=description,
        order_id=order_id,
        created_at=utc_now(),
    ).model_dump()


def debit(tx: Transaction, partner_id: str, amount: float, order_id: str) -> dict:
    """Take `amount` from the wallet, or fail without touching it."""
    if amount <= 0:
        raise RequestValidationFailed("walletAmountUsed must be greater than 0 when isWalletPayment is true")
    entry = _entry(TransactionType.DEBIT, amount, order_id, f"Payment for order {order_id}")
    updated = tx["wallet"].find_one_and_update(
        {"partner_id": partner_id, "is_active": True, "total_balance": {"$gte": amount}},
        {
            "$inc": {"total_balance": -amount},
            "$push": {"transactions": entry},
            "$set": {"updated_at": utc_now()},
        },
    )
    if updated is None:
        # NotFoundError when there is no wallet at all
        wallet = get_wallet(partner_id, tx)
        if not wallet.get("is_active", False):
            raise ConflictError("Wallet is inactive")
        raise ConflictError("Insufficient wallet balance")
    logger.info("Wallet of partner %s debited %.2f for order %s", partner_id, amount, order_id)
    return entry


def credit(tx: Transaction, partner_id: str, amount: float, order_id: str, description: str) -> tuple:
    """Add `amount` to the wallet, creating it on first use.

    Returns (transaction entry, new balance).
    """
    if amount <= 0:
        raise RequestValidationFailed("Credit amount must be greater than 0")
    entry = _entry(TransactionType.CREDIT, amount, order_id, description)
    now = utc_now()
    updated = tx["wallet"].find_one_and_update(
        {"partner_id": partner_id},
        {
            "$inc": {"total_balance": amount},
            "$push": {"transactions": entry},
            "$set": {"updated_at": now},
            "$setOnInsert": {"currency": "INR", "is_active": True, "created_at": now},
        },
        upsert=True,
    )
    logger.info("Wallet of partner %s credited %.2f for order %s", partner_id, amount, order_id)
    return entry, updated["total_balance"]
