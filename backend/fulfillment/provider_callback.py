"""
PROVIDER CALLBACK INGESTION

The provider reports the final outcome of a forwarded top-up:

    {"data": {"ref_id", "buyer_sku_code", "customer_no", "status", "message", "sn"}}

ref_id is the reference stored on PAID -> PROCESS, or the id of a manual
retry. A status matching a success token (case-insensitive) settles the
order as SUCCESS; anything else settles it as FAILED with a refund.

SUCCESS and FAILED are terminal. A redelivered callback that agrees with the
stored outcome is acknowledged without writes, so the refund and the success
side effects happen at most once.
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
import json
import logging

from audit_service import AuditService
from fulfillment.errors import NotFoundError, DuplicateError, InvariantViolationError, ValidationError
from fulfillment.order_state_machine import OrderWorkflow
from fulfillment.payment_callback import unwrap_error
from fulfillment.unit_of_work import UnitOfWork
from models import (
    CallbackOutcome, CallbackResult, ProviderCallback, ProviderCallbackData,
    OrderStatus, ManualTransactionStatus, TERMINAL_STATUSES
)

logger = logging.getLogger(__name__)

SUCCESS_TOKENS = ("sukses", "success")


def settled_status(provider_status: Optional[str]) -> str:
    normalized = (provider_status or "").strip().lower()
    return OrderStatus.SUCCESS.value if normalized in SUCCESS_TOKENS else OrderStatus.FAILED.value


class ProviderCallbackService:
    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        uow: UnitOfWork,
        workflow: OrderWorkflow,
        audit: Optional[AuditService] = None
    ):
        self.db = db
        self.uow = uow
        self.workflow = workflow
        self.audit = audit

    async def process_provider_callback(self, callback: ProviderCallback) -> CallbackResult:
        if callback is None or callback.data is None:
            return self._rejected("Invalid callback data format", ValidationError.error_type, 500)

        data = callback.data
        if not data.ref_id:
            return self._rejected("Missing reference ID", ValidationError.error_type, 500)

        reference = data.ref_id
        target = settled_status(data.status)
        await self._log(reference, "CALLBACK", "RECEIVED", data=data.model_dump())

        transitions: List[Tuple[Dict, Dict]] = []
        try:
            async with self.uow.transaction() as session:
                result = await self._apply(reference, target, data, session, transitions)
        except Exception as raw_error:
            return await self._error_result(reference, unwrap_error(raw_error))
        await self.workflow.log_transitions(transitions)

        logger.info(f"[PROVIDER_CALLBACK] {reference} settled as {result['status']}")
        return CallbackResult(success=True, message="Callback processed successfully", data=result)

    async def _apply(self, reference: str, target: str, data: ProviderCallbackData, session,
                     transitions: List[Tuple[Dict, Dict]]) -> Dict[str, Any]:
        order = await self.uow.claim_order(reference, session, field="reference_id")
        if order:
            return await self._settle_order(order, target, data, session, transitions)

        manual = await self.db.manual_transactions.find_one(
            {"manual_transaction_id": reference}, session=session
        )
        if manual:
            order = await self.uow.claim_order(manual["order_id"], session)
            if order:
                return await self._settle_manual(order, manual, target, data, session, transitions)

        raise NotFoundError("Transaction not found", {"reference_id": reference, "rc": "14"})

    async def _settle_order(self, order: Dict, target: str, data: ProviderCallbackData, session,
                            transitions: List[Tuple[Dict, Dict]]) -> Dict[str, Any]:
        current = order["status"]
        if current in TERMINAL_STATUSES:
            if current == target:
                raise DuplicateError(
                    f"Order {order['order_id']} already {current}",
                    {"order_id": order["order_id"], "status": current}
                )
            raise InvariantViolationError(
                "TERMINAL_STATUS_CHANGE",
                f"Order {order['order_id']} is {current}; provider now reports {target}",
                {"order_id": order["order_id"], "status": current, "reported": target}
            )

        result = await self.workflow.machine.transition(
            order,
            target,
            session=session,
            context={
                "serial_number": data.sn or None,
                "log": data.model_dump(),
                "reason": data.message or "provider reported failure",
                "actor": "provider"
            }
        )
        handler_result = result["handler_result"]
        transitions.append((order, result))
        return {
            "order_id": order["order_id"],
            "reference_id": order.get("reference_id"),
            "status": target,
            "serial_number": order.get("serial_number"),
            "refunded": handler_result.get("refunded", False)
        }

    async def _settle_manual(self, order: Dict, manual: Dict, target: str, data: ProviderCallbackData,
                             session, transitions: List[Tuple[Dict, Dict]]) -> Dict[str, Any]:
        manual_id = manual["manual_transaction_id"]
        if manual.get("status") in TERMINAL_STATUSES:
            if manual["status"] == target:
                raise DuplicateError(
                    f"Retry {manual_id} already {target}",
                    {"manual_transaction_id": manual_id, "status": target}
                )
            raise InvariantViolationError(
                "TERMINAL_STATUS_CHANGE",
                f"Retry {manual_id} is {manual['status']}; provider now reports {target}",
                {"manual_transaction_id": manual_id}
            )

        await self.db.manual_transactions.update_one(
            {"manual_transaction_id": manual_id, "status": {"$nin": list(TERMINAL_STATUSES)}},
            {
                "$set": {
                    "status": ManualTransactionStatus(target).value,
                    "serial_number": data.sn or None,
                    "log": json.dumps(data.model_dump()),
                    "updated_at": datetime.utcnow()
                }
            },
            session=session
        )

        order_status = order["status"]
        if target == OrderStatus.SUCCESS.value and order_status == OrderStatus.PROCESS.value:
            result = await self.workflow.machine.transition(
                order,
                OrderStatus.SUCCESS.value,
                session=session,
                context={
                    "serial_number": data.sn or None,
                    "log": data.model_dump(),
                    "manual_transaction_id": manual_id,
                    "actor": "provider"
                }
            )
            transitions.append((order, result))
            order_status = OrderStatus.SUCCESS.value
        elif target == OrderStatus.SUCCESS.value and order_status == OrderStatus.FAILED.value:
            # Refund already issued when the order failed; left for the operator
            logger.warning(
                f"[RETRY] {manual_id} delivered for {order['order_id']} which stays FAILED (refunded)"
            )

        return {
            "order_id": order["order_id"],
            "manual_transaction_id": manual_id,
            "status": target,
            "order_status": order_status,
            "serial_number": data.sn or None,
            "refunded": False
        }

    def _rejected(self, message: str, error_type: str, status_code: int, data: Dict = None) -> CallbackResult:
        return CallbackResult(
            success=False,
            message=message,
            data=data,
            outcome=CallbackOutcome.REJECTED,
            error_type=error_type,
            status_code=status_code
        )

    async def _error_result(self, reference: str, error: Exception) -> CallbackResult:
        if isinstance(error, DuplicateError):
            logger.info(f"[PROVIDER_CALLBACK] Redelivered callback for {reference}: {error.message}")
            return CallbackResult(
                success=True,
                message="Callback already processed",
                data=error.details,
                outcome=CallbackOutcome.DUPLICATE,
                error_type=error.error_type
            )

        if isinstance(error, NotFoundError):
            logger.warning(f"[PROVIDER_CALLBACK] Unknown reference {reference}")
            return self._rejected(error.message, error.error_type, 200, data=error.details)

        if isinstance(error, InvariantViolationError):
            logger.error(f"[PROVIDER_CALLBACK] {error.violation_type}: {error.message}")
            await self._log(reference, "ERROR", "REJECTED", error=error.message)
            return self._rejected(error.message, error.error_type, 200, data=error.details)

        logger.exception(f"[PROVIDER_CALLBACK] Error processing {reference}: {error}")
        await self._log(reference, "ERROR", "ERROR", error=str(error))
        return CallbackResult(
            success=False,
            message=str(error) or "System error",
            data={"reference_id": reference},
            outcome=CallbackOutcome.ERROR,
            error_type=getattr(error, "error_type", type(error).__name__),
            status_code=500
        )

    async def _log(self, reference: str, transaction_type: str, status: str, **kwargs):
        if self.audit:
            await self.audit.log_transaction(
                order_id=reference,
                transaction_type=transaction_type,
                status=status,
                position="CALLBACK DIGIFLAZZ",
                **kwargs
            )
