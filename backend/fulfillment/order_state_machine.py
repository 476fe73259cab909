"""
ORDER STATE MACHINE WIRING

    PENDING -> PAID -> PROCESS -> SUCCESS
                  \          \
                   -> FAILED  -> FAILED

- PENDING -> PAID     mark payment PAID, credit the settlement counterparty
                      (price - fee)
- PAID -> PROCESS     store provider reference (idempotency key from now on),
                      debit the provider counterparty by its cost
- PAID -> FAILED      compensating refund of price to the buyer
- PROCESS -> SUCCESS  store serial number; success side effects once
                      (success_report_sent gate)
- PROCESS -> FAILED   compensating refund of price to the buyer

DEPOSIT and MEMBERSHIP orders stop at PAID after their completion step.
All handlers run inside the caller's transaction; any exception aborts it.

The counterparty balance rows are shared by every order. Pipelines that
forward a top-up call request_forward() before mark_paid(), so those rows
are written only after the provider has answered, right before commit.
Transitions are written to the operator log by log_transitions() once the
caller's transaction has committed.
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
import json
import logging

from audit_service import AuditService
from fulfillment.errors import DuplicateError, InvariantViolationError, NotFoundError
from fulfillment.financial_precision import to_float, safe_subtract
from fulfillment.idempotency import IdempotencyGuard
from fulfillment.ledger import LedgerSynchronizer
from fulfillment.provider import DigiflazzProvider, ForwardResult
from fulfillment.state_machine import StateMachine
from models import (
    OrderStatus, PaymentStatus, TERMINAL_STATUSES,
    PROVIDER_COUNTERPARTY, ManualTransactionStatus
)

logger = logging.getLogger(__name__)

MESSAGES = {
    "PAID": "Payment successful",
    "PROCESS": "Order is being processed",
    "FAILED_REFUNDED": "Order failed, the amount has been returned to your balance",
    "FAILED_NO_REFUND": "Order failed, please contact admin",
    "SUCCESS": "Order completed",
}


def _dump(payload: Any) -> str:
    return json.dumps(payload, default=str)


class OrderWorkflow:
    """
    Order transitions and the side effects attached to them.

    Constructed once by the entry point with injected collaborators.
    """

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        ledger: LedgerSynchronizer,
        provider: DigiflazzProvider,
        guard: IdempotencyGuard,
        audit: Optional[AuditService] = None
    ):
        self.db = db
        self.ledger = ledger
        self.provider = provider
        self.guard = guard
        self.audit = audit
        self.machine = self._build_machine()

    def _build_machine(self) -> StateMachine:
        machine = StateMachine(
            "order",
            collection=self.db.orders,
            key_field="order_id",
            terminal_states=TERMINAL_STATUSES
        )
        machine.register(OrderStatus.PENDING.value, OrderStatus.PAID.value,
                         self._handle_pending_to_paid, guard=self._guard_payment_unpaid,
                         description="Payment confirmed")
        machine.register(OrderStatus.PAID.value, OrderStatus.PROCESS.value,
                         self._handle_paid_to_process, description="Provider accepted")
        machine.register(OrderStatus.PAID.value, OrderStatus.FAILED.value,
                         self._handle_to_failed, description="Provider failed, refund")
        machine.register(OrderStatus.PROCESS.value, OrderStatus.SUCCESS.value,
                         self._handle_process_to_success, description="Provider delivered")
        machine.register(OrderStatus.PROCESS.value, OrderStatus.FAILED.value,
                         self._handle_to_failed, description="Provider reported failure, refund")
        return machine

    # =========================================================================
    # GUARDS
    # =========================================================================

    async def _guard_payment_unpaid(self, order: Dict, context: Dict, session) -> Tuple[bool, str]:
        payment = context.get("payment")
        if payment is None:
            return (False, "Payment record missing")
        if payment.get("status") == PaymentStatus.PAID.value:
            return (False, "Payment already PAID")
        return (True, "")

    # =========================================================================
    # HANDLERS
    # =========================================================================

    async def _handle_pending_to_paid(self, order: Dict, context: Dict, session) -> Dict:
        payment = context["payment"]
        result = await self.db.payments.update_one(
            {"order_id": order["order_id"], "status": PaymentStatus.PENDING.value},
            {"$set": {"status": PaymentStatus.PAID.value, "updated_at": datetime.utcnow()}},
            session=session
        )
        if result.matched_count != 1:
            raise DuplicateError(f"Payment for {order['order_id']} already processed")

        net_amount = safe_subtract(order["price"], payment.get("fee_amount") or 0)
        sync = await self.ledger.sync(
            counterparty=context["counterparty"],
            order_id=order["order_id"],
            amount=net_amount,
            payment_method=payment.get("method", ""),
            session=session
        )

        return {
            "updates": {
                "log": _dump(context.get("log") or {}),
                "message": MESSAGES["PAID"]
            },
            "ledger": sync
        }

    async def _handle_paid_to_process(self, order: Dict, context: Dict, session) -> Dict:
        forward: ForwardResult = context["forward"]
        cost = forward.cost or order.get("purchase_price") or 0

        sync = await self.ledger.sync(
            counterparty=PROVIDER_COUNTERPARTY,
            order_id=order["order_id"],
            amount=-to_float(cost),
            payment_method="FROM DIGI",
            session=session
        )

        updates = {
            "reference_id": forward.provider_ref,
            "purchase_price": to_float(cost),
            "profit_amount": to_float(safe_subtract(order["price"], cost)),
            "log": _dump(forward.to_log()),
            "message": MESSAGES["PROCESS"]
        }
        if forward.serial_number:
            updates["serial_number"] = forward.serial_number

        return {"updates": updates, "ledger": sync}

    async def _handle_to_failed(self, order: Dict, context: Dict, session) -> Dict:
        refunded = await self.refund(order, session=session, reason=context.get("reason", "fulfillment failed"))
        log = context.get("log")
        if log is None and context.get("forward") is not None:
            log = context["forward"].to_log()

        return {
            "updates": {
                "log": _dump(log or {}),
                "message": MESSAGES["FAILED_REFUNDED"] if refunded else MESSAGES["FAILED_NO_REFUND"],
                "refunded": refunded
            },
            "refunded": refunded
        }

    async def _handle_process_to_success(self, order: Dict, context: Dict, session) -> Dict:
        serial_number = context.get("serial_number")
        updates = {
            "serial_number": serial_number or order.get("serial_number"),
            "log": _dump(context.get("log") or {}),
            "message": f"{MESSAGES['SUCCESS']} - SN: {serial_number}" if serial_number else MESSAGES["SUCCESS"]
        }
        reported = await self.apply_success_side_effects(order, context, session=session)
        if reported:
            updates["success_report_sent"] = True
        return {"updates": updates, "success_report_sent": reported}

    # =========================================================================
    # SIDE EFFECTS
    # =========================================================================

    async def refund(self, order: Dict, session=None, reason: str = "") -> bool:
        """
        Compensating refund: credit the buyer by the original price.

        Orders without an owner cannot be refunded; that is logged as an
        invariant violation and no balance is touched.
        """
        username = order.get("username")
        if not username:
            violation = InvariantViolationError(
                "REFUND_WITHOUT_OWNER",
                f"Refund requested for {order['order_id']} which has no username",
                {"order_id": order["order_id"], "reason": reason}
            )
            logger.error(f"[COMPENSATION] {violation.message}")
            return False

        result = await self.db.users.update_one(
            {"username": username},
            {"$inc": {"balance": to_float(order["price"])}},
            session=session
        )
        if result.matched_count != 1:
            logger.error(
                f"[COMPENSATION] User {username} not found; refund of {order['price']} "
                f"for {order['order_id']} not applied"
            )
            return False

        logger.warning(
            f"[COMPENSATION] Refunded {order['price']} to {username} for {order['order_id']} ({reason})"
        )
        return True

    async def apply_success_side_effects(self, order: Dict, context: Dict, session=None) -> bool:
        """
        Run the post-success side effects at most once per order.

        The success_report_sent flag is flipped with a conditional update,
        so a redelivered callback finds it already set and does nothing.
        """
        result = await self.db.orders.update_one(
            {"order_id": order["order_id"], "success_report_sent": {"$ne": True}},
            {"$set": {"success_report_sent": True}},
            session=session
        )
        if result.modified_count != 1:
            logger.info(f"[SETTLE] Success side effects already applied for {order['order_id']}")
            return False

        manual_id = context.get("manual_transaction_id")
        if manual_id:
            await self.db.manual_transactions.update_one(
                {"manual_transaction_id": manual_id},
                {
                    "$set": {
                        "status": ManualTransactionStatus.SUCCESS.value,
                        "serial_number": context.get("serial_number"),
                        "updated_at": datetime.utcnow()
                    }
                },
                session=session
            )
        return True

    # =========================================================================
    # WORKFLOW STEPS (called by the pipelines)
    # =========================================================================

    async def check_payable(self, order: Dict, payment: Dict, session=None) -> None:
        """Raise unless PENDING -> PAID would be allowed for this order and payment."""
        self.machine.validate_transition(order["status"], OrderStatus.PAID.value)
        await self.machine.check_guard(
            order, order["status"], OrderStatus.PAID.value, {"payment": payment}, session
        )

    async def mark_paid(self, order: Dict, payment: Dict, counterparty: str,
                        session=None, log: Optional[Dict] = None, actor: str = "gateway") -> Dict:
        return await self.machine.transition(
            order,
            OrderStatus.PAID.value,
            session=session,
            context={
                "payment": payment,
                "counterparty": counterparty,
                "log": log,
                "actor": actor
            }
        )

    async def request_forward(self, order: Dict, session=None) -> ForwardResult:
        """
        Send a top-up to the provider, at most once.

        Raises ForwardBlockedError (before any provider call) when the order
        already carries a reference. Writes nothing; the result is applied
        by apply_forward() once the order is PAID.
        """
        await self.guard.ensure_not_forwarded(order["order_id"], session=session)

        return await self.provider.forward(
            order_ref=order["order_id"],
            buyer_id=order.get("customer_id") or "",
            product_code=order.get("product_code") or "",
            server_id=order.get("zone")
        )

    async def apply_forward(self, order: Dict, forward: ForwardResult, session=None,
                            actor: str = "gateway") -> Dict:
        """PAID -> PROCESS when the provider accepted, PAID -> FAILED (with refund) otherwise."""
        if forward.ok:
            return await self.machine.transition(
                order, OrderStatus.PROCESS.value, session=session,
                context={"forward": forward, "actor": actor}
            )

        return await self.machine.transition(
            order, OrderStatus.FAILED.value, session=session,
            context={
                "forward": forward,
                "reason": forward.error_kind,
                "actor": actor,
                "history_metadata": {"error": forward.error_kind}
            }
        )

    async def complete_deposit(self, order: Dict, session=None) -> Dict:
        deposit = await self.db.deposits.find_one_and_update(
            {"deposit_id": order["order_id"], "status": PaymentStatus.PENDING.value},
            {"$set": {"status": PaymentStatus.PAID.value, "updated_at": datetime.utcnow()}},
            session=session
        )
        if not deposit:
            raise NotFoundError(f"Pending deposit {order['order_id']} not found")

        amount = to_float(deposit["amount"])
        result = await self.db.users.update_one(
            {"username": deposit["username"]},
            {"$inc": {"balance": amount}},
            session=session
        )
        if result.matched_count != 1:
            raise NotFoundError(f"User {deposit['username']} not found for deposit {order['order_id']}")

        logger.info(f"[DEPOSIT] Credited {amount} to {deposit['username']} for {order['order_id']}")
        return {"username": deposit["username"], "amount": amount}

    async def complete_membership(self, order: Dict, session=None) -> Dict:
        tier = await self.db.memberships.find_one({"price": order["price"]}, session=session)
        username = order.get("username")
        if not tier or not username:
            logger.warning(
                f"[MEMBERSHIP] No tier for price {order['price']} or no username on {order['order_id']}"
            )
            return {"role": None}

        await self.db.users.update_one(
            {"username": username},
            {"$set": {"role": tier["name"]}},
            session=session
        )
        logger.info(f"[MEMBERSHIP] {username} upgraded to {tier['name']}")
        return {"role": tier["name"]}

    # =========================================================================
    # AUDIT
    # =========================================================================

    async def log_transitions(self, transitions: List[Tuple[Dict, Dict]]) -> None:
        """
        Write committed transitions to the operator log.

        Takes the (order, transition result) pairs a pipeline collected
        inside its transaction; call only after that transaction committed.
        """
        if not self.audit:
            return
        for order, result in transitions:
            handler_result = result["handler_result"]
            await self.audit.log_transaction(
                order_id=order["order_id"],
                transaction_type="UPDATE",
                status=result["to_state"],
                user_id=order.get("customer_id"),
                product_code=order.get("product_code"),
                amount=order.get("price"),
                position=f"{result['from_state']} -> {result['to_state']}",
                data={"handler_result": {k: v for k, v in handler_result.items() if k != "ledger"}}
            )
