"""
LEDGER SYNCHRONIZER

Keeps one running balance per settlement counterparty (platform_balances)
and an append-only history (balance_histories).

The balance row is mutated with a single atomic $inc upsert and the paired
history row is inserted in the same session, so for every row:

    balance_after - balance_before == amount_changed

and the platform balance always equals the balance_after of its latest row.
No other code path writes platform_balances.balance.

Callers invoke sync() exactly once per (order, counterparty, direction),
from inside a single state transition handler.
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Union
import logging

from fulfillment.errors import ValidationError
from fulfillment.financial_precision import (
    to_decimal, to_float, safe_subtract, FinancialPrecisionError
)
from models import ChangeType

logger = logging.getLogger(__name__)


class LedgerSynchronizer:
    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def sync(
        self,
        counterparty: str,
        order_id: str,
        amount: Union[int, float, Decimal],
        payment_method: str = "",
        session=None
    ) -> Dict[str, Any]:
        """
        Apply a signed amount to a counterparty balance and append its history row.

        Args:
            counterparty: Platform name (e.g. "Duitku", "Digiflazz", "Saldo Member")
            order_id: Order id, stored as batch_id for traceability
            amount: Signed amount; positive credits, negative debits
            payment_method: Free-form channel label for the history row
            session: Transaction session; must be the caller's unit of work

        Returns:
            balance_before, balance_after, amount_changed, change_type,
            platform_id, history_id
        """
        if not order_id or not counterparty:
            raise ValidationError(
                f"Missing ledger parameters: order_id={order_id}, counterparty={counterparty}"
            )
        try:
            delta = to_decimal(amount)
        except FinancialPrecisionError:
            raise ValidationError(f"Invalid ledger amount: {amount!r}")
        if not delta.is_finite():
            raise ValidationError(f"Invalid ledger amount: {amount!r}")

        amount_changed = to_float(delta)
        now = datetime.utcnow()

        platform = await self.db.platform_balances.find_one_and_update(
            {"platform_name": counterparty},
            {
                "$inc": {"balance": amount_changed},
                "$set": {"last_sync_at": now},
                "$setOnInsert": {
                    "account_name": f"Account {counterparty}",
                    "created_at": now
                }
            },
            upsert=True,
            return_document=ReturnDocument.AFTER,
            session=session
        )

        balance_after = to_float(platform["balance"])
        balance_before = to_float(safe_subtract(balance_after, amount_changed))
        change_type = ChangeType.CREDIT if amount_changed > 0 else ChangeType.DEBIT

        history = {
            "platform_id": platform["_id"],
            "platform_name": counterparty,
            "batch_id": order_id,
            "balance_before": balance_before,
            "balance_after": balance_after,
            "amount_changed": amount_changed,
            "change_type": change_type.value,
            "payment_method": payment_method,
            "description": f"Balance sync for order {order_id}",
            "created_at": now
        }
        result = await self.db.balance_histories.insert_one(history, session=session)

        logger.info(
            f"[LEDGER] {counterparty} {change_type.value} {amount_changed} "
            f"for {order_id}: {balance_before} -> {balance_after}"
        )

        return {
            "platform_name": counterparty,
            "balance_before": balance_before,
            "balance_after": balance_after,
            "amount_changed": amount_changed,
            "change_type": change_type.value,
            "platform_id": platform["_id"],
            "history_id": result.inserted_id
        }
