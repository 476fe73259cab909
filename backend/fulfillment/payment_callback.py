"""
PAYMENT CALLBACK INGESTION

process_payment_callback() turns one gateway notification into at most one
PAID transition and at most one provider forward:

1. validate structure and signature (no mutation on failure)
2. claim the order by merchant order id (not found -> reject)
3. payment already PAID -> duplicate, acknowledged as a no-op
4. TOPUP: idempotency guard and provider call
5. PENDING -> PAID with ledger credit for the gateway
6. TOPUP: PROCESS or FAILED (+refund); DEPOSIT and MEMBERSHIP: completion

Steps 2-6 share one transaction. Any exception rolls all of it back and is
returned as a CallbackResult; nothing is retried here. Retries are the
gateway's job and are made safe by steps 3 and 4. The provider call comes
before the first ledger write, so the shared counterparty rows are never
held across it. Committed transitions go to the operator log afterwards.
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from typing import Any, Dict, List, Optional, Tuple
import logging

from audit_service import AuditService
from fulfillment.errors import ValidationError, NotFoundError, DuplicateError, ForwardBlockedError
from fulfillment.financial_precision import to_decimal
from fulfillment.gateway import DuitkuGateway, SUCCESS_CODE
from fulfillment.order_state_machine import OrderWorkflow
from fulfillment.state_machine import TransitionHandlerError, GuardConditionError
from fulfillment.unit_of_work import UnitOfWork
from models import (
    CallbackOutcome, CallbackResult, PaymentCallback, PaymentStatus,
    OrderStatus, TransactionKind, GATEWAY_COUNTERPARTY
)

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("merchantCode", "merchantOrderId", "amount", "signature", "resultCode")
KNOWN_KINDS = tuple(kind.value for kind in TransactionKind)


def unwrap_error(error: Exception) -> Exception:
    """Return the domain error hidden behind state machine wrappers."""
    while isinstance(error, TransitionHandlerError):
        error = error.original_error
    return error


def missing_callback_fields(callback: PaymentCallback) -> List[str]:
    missing = []
    for name in REQUIRED_FIELDS:
        value = getattr(callback, name)
        if name == "amount":
            if not value or value <= 0:
                missing.append(name)
        elif not value:
            missing.append(name)
    return missing


class PaymentCallbackService:
    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        uow: UnitOfWork,
        workflow: OrderWorkflow,
        gateway: DuitkuGateway,
        audit: Optional[AuditService] = None
    ):
        self.db = db
        self.uow = uow
        self.workflow = workflow
        self.gateway = gateway
        self.audit = audit

    def validate(self, callback: PaymentCallback) -> None:
        missing = missing_callback_fields(callback)
        if missing:
            raise ValidationError("Missing required fields", missing_fields=missing)

        if not self.gateway.verify_callback_signature(
            callback.merchantCode, callback.merchantOrderId, callback.amount, callback.signature
        ):
            raise ValidationError("Invalid callback signature")

    async def process_payment_callback(self, callback: PaymentCallback) -> CallbackResult:
        order_id = callback.merchantOrderId or "UNKNOWN"

        try:
            self.validate(callback)
        except ValidationError as e:
            logger.warning(f"[CALLBACK] Rejected gateway callback for {order_id}: {e.message} {e.missing_fields}")
            return CallbackResult(
                success=False,
                message=e.message,
                data={"missing_fields": e.missing_fields, "received": callback.model_dump(exclude={"signature"})},
                outcome=CallbackOutcome.REJECTED,
                error_type=e.error_type,
                status_code=500
            )

        if callback.resultCode != SUCCESS_CODE:
            logger.info(f"[CALLBACK] {order_id} not paid (resultCode={callback.resultCode}); nothing to do")
            return CallbackResult(
                success=False,
                message="Payment not successful",
                data={"order_id": order_id, "result_code": callback.resultCode},
                outcome=CallbackOutcome.REJECTED
            )

        await self._log(order_id, "CALLBACK", "RECEIVED", data=callback.model_dump(exclude={"signature"}))

        transitions: List[Tuple[Dict, Dict]] = []
        try:
            async with self.uow.transaction() as session:
                data = await self._apply(callback, session, transitions)
        except Exception as raw_error:
            return await self._error_result(order_id, unwrap_error(raw_error))
        await self.workflow.log_transitions(transitions)

        if data["status"] == OrderStatus.FAILED.value:
            return CallbackResult(
                success=False,
                message="Order failed, the buyer has been refunded" if data.get("refunded") else "Order failed, contact admin",
                data=data
            )

        logger.info(f"[CALLBACK] {order_id} processed -> {data['status']}")
        return CallbackResult(success=True, message="Callback processed successfully", data=data)

    async def _apply(self, callback: PaymentCallback, session,
                     transitions: List[Tuple[Dict, Dict]]) -> Dict[str, Any]:
        order_id = callback.merchantOrderId

        order = await self.uow.claim_order(order_id, session)
        if not order:
            raise NotFoundError("Transaction not found", {"order_id": order_id})

        payment = await self.db.payments.find_one({"order_id": order_id}, session=session)
        if not payment:
            raise NotFoundError("Payment not found", {"order_id": order_id})

        if payment.get("status") == PaymentStatus.PAID.value:
            raise DuplicateError("Payment already processed", {"order_id": order_id})

        expected = to_decimal(payment.get("total_amount") or order["price"])
        if to_decimal(callback.amount) != expected:
            raise ValidationError(
                f"Amount mismatch: callback {callback.amount}, expected {expected}",
                details={"order_id": order_id}
            )

        kind = order.get("transaction_type")
        if kind not in KNOWN_KINDS:
            raise ValidationError(f"Unknown transaction type: {kind}")

        await self.workflow.check_payable(order, payment, session=session)
        forward = None
        if kind == TransactionKind.TOPUP.value:
            forward = await self.workflow.request_forward(order, session=session)

        transitions.append((order, await self.workflow.mark_paid(
            order, payment, GATEWAY_COUNTERPARTY,
            session=session, log=callback.model_dump(exclude={"signature"})
        )))

        data: Dict[str, Any] = {"order_id": order_id, "transaction_type": kind}

        if kind == TransactionKind.TOPUP.value:
            result = await self.workflow.apply_forward(order, forward, session=session)
            transitions.append((order, result))
            data["status"] = result["to_state"]
            data["refunded"] = result["handler_result"].get("refunded", False)
            data["reference_id"] = order.get("reference_id")
        elif kind == TransactionKind.DEPOSIT.value:
            data.update(await self.workflow.complete_deposit(order, session=session))
            data["status"] = OrderStatus.PAID.value
        else:
            data.update(await self.workflow.complete_membership(order, session=session))
            data["status"] = OrderStatus.PAID.value

        return data

    async def _error_result(self, order_id: str, error: Exception) -> CallbackResult:
        if isinstance(error, ForwardBlockedError):
            return CallbackResult(
                success=True,
                message="Order already forwarded; callback ignored",
                data=error.details,
                outcome=CallbackOutcome.BLOCKED,
                error_type=error.error_type
            )

        if isinstance(error, (DuplicateError, GuardConditionError)):
            logger.info(f"[CALLBACK] Duplicate gateway callback for {order_id}")
            return CallbackResult(
                success=True,
                message="Payment already processed",
                data={"order_id": order_id},
                outcome=CallbackOutcome.DUPLICATE,
                error_type=DuplicateError.error_type
            )

        if isinstance(error, NotFoundError):
            logger.warning(f"[CALLBACK] {error.message}: {order_id}")
            return CallbackResult(
                success=False,
                message=error.message,
                data={"order_id": order_id},
                outcome=CallbackOutcome.REJECTED,
                error_type=error.error_type
            )

        if isinstance(error, ValidationError):
            logger.warning(f"[CALLBACK] Invalid callback for {order_id}: {error.message}")
            return CallbackResult(
                success=False,
                message=error.message,
                data={"order_id": order_id},
                outcome=CallbackOutcome.REJECTED,
                error_type=error.error_type,
                status_code=500
            )

        logger.exception(f"[CALLBACK] Error processing callback for {order_id}: {error}")
        await self._log(order_id, "ERROR", "ERROR", error=str(error))
        return CallbackResult(
            success=False,
            message="Error processing callback",
            data={"order_id": order_id, "error": str(error)},
            outcome=CallbackOutcome.ERROR,
            error_type=getattr(error, "error_type", type(error).__name__),
            status_code=500
        )

    async def _log(self, order_id: str, transaction_type: str, status: str, **kwargs):
        if self.audit:
            await self.audit.log_transaction(
                order_id=order_id,
                transaction_type=transaction_type,
                status=status,
                position="CALLBACK DUITKU",
                **kwargs
            )
