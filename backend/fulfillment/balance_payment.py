"""
INTERNAL-BALANCE PAYMENT PATH

Pays a PENDING top-up from the buyer's own balance instead of the gateway:

1. atomic conditional debit of exactly the order price
   (balance >= price, else InsufficientBalanceError)
2. idempotency guard + provider call
3. PENDING -> PAID, crediting the "Saldo Member" counterparty
4. PROCESS, or FAILED with a refund of the same price

All steps share one transaction, so a provider failure leaves the
buyer's balance exactly where it started and a crash in between leaves
nothing behind. The shared "Saldo Member" row is written after the
provider has answered.
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument
from typing import Any, Dict, List, Optional, Tuple
import logging

from fulfillment.errors import InsufficientBalanceError, NotFoundError, ValidationError
from fulfillment.financial_precision import (
    to_decimal, to_float, validate_positive, NegativeValueError, FinancialPrecisionError
)
from fulfillment.order_state_machine import OrderWorkflow
from fulfillment.unit_of_work import UnitOfWork
from models import BALANCE_COUNTERPARTY, OrderStatus, TransactionKind

logger = logging.getLogger(__name__)


class BalancePaymentService:
    def __init__(self, db: AsyncIOMotorDatabase, uow: UnitOfWork, workflow: OrderWorkflow):
        self.db = db
        self.uow = uow
        self.workflow = workflow

    async def debit(self, username: str, amount: float, session=None) -> Dict[str, Any]:
        """Decrement a user's balance, refusing to go below zero."""
        user = await self.db.users.find_one_and_update(
            {"username": username, "balance": {"$gte": amount}},
            {"$inc": {"balance": -amount}},
            return_document=ReturnDocument.AFTER,
            session=session
        )
        if user:
            return user

        exists = await self.db.users.find_one({"username": username}, {"_id": 1}, session=session)
        if not exists:
            raise NotFoundError(f"User {username} not found", {"username": username})
        raise InsufficientBalanceError(username, amount)

    async def pay_with_balance(
        self,
        order: Dict[str, Any],
        username: str,
        amount,
        session=None,
        transitions: Optional[List[Tuple[Dict, Dict]]] = None
    ) -> Dict[str, Any]:
        """
        Settle a top-up order from the buyer's balance.

        amount must equal the order price: the refund on provider failure
        credits the order price, so any other charge would not net to zero.

        Runs inside the caller's session when one is given, and appends the
        transitions it made to `transitions` for the caller to log after
        commit. Otherwise it opens its own unit of work and logs them itself.
        Raises on validation and balance errors; a provider failure is not
        an error here, it returns status FAILED with refunded=True.
        """
        if session is None:
            committed: List[Tuple[Dict, Dict]] = []
            async with self.uow.transaction() as own_session:
                result = await self.pay_with_balance(
                    order, username, amount, session=own_session, transitions=committed
                )
            await self.workflow.log_transitions(committed)
            return result

        if transitions is None:
            transitions = []

        if not username:
            raise ValidationError("Balance payment requires a logged-in user")
        if order.get("transaction_type") != TransactionKind.TOPUP.value:
            raise ValidationError(f"Balance payment is only available for top-ups, not {order.get('transaction_type')}")
        if order.get("status") != OrderStatus.PENDING.value:
            raise ValidationError(f"Order {order['order_id']} is {order.get('status')}, expected PENDING")
        try:
            validate_positive(amount, "amount")
        except (NegativeValueError, FinancialPrecisionError) as e:
            raise ValidationError(str(e))
        if to_decimal(amount) != to_decimal(order["price"]):
            raise ValidationError(
                f"Balance charge {amount} does not match the price {order['price']} of {order['order_id']}",
                details={"order_id": order["order_id"]}
            )
        amount = to_float(amount)

        user = await self.debit(username, amount, session=session)
        logger.info(f"[BALANCE] Debited {amount} from {username} for {order['order_id']}")

        payment = await self.db.payments.find_one({"order_id": order["order_id"]}, session=session)
        if not payment:
            raise NotFoundError(f"Payment for {order['order_id']} not found")

        await self.workflow.check_payable(order, payment, session=session)
        forward = await self.workflow.request_forward(order, session=session)

        transitions.append((order, await self.workflow.mark_paid(
            order, payment, BALANCE_COUNTERPARTY,
            session=session, log={"method": payment.get("method"), "username": username},
            actor=username
        )))
        result = await self.workflow.apply_forward(order, forward, session=session, actor=username)
        transitions.append((order, result))

        refunded = result["handler_result"].get("refunded", False)
        new_balance = to_float(user["balance"]) + (amount if refunded else 0)

        return {
            "order_id": order["order_id"],
            "status": result["to_state"],
            "reference_id": order.get("reference_id"),
            "serial_number": order.get("serial_number"),
            "message": order.get("message"),
            "refunded": refunded,
            "balance": new_balance
        }
