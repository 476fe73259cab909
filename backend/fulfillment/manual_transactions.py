"""
MANUAL RETRY (operator re-forwarding)

An operator may re-send a FAILED or stuck PROCESS top-up to the provider.
Each retry gets its own provider reference, RE{order_id} for the first and
RE{order_id}-{n} after that, so the provider never sees a reused ref_id and
the order's own reference stays untouched.

Only one retry per order may be in flight or successful at a time. The
provider's callback for a retry id is routed back here through the
manual_transactions collection (see provider_callback).
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from datetime import datetime
from typing import Any, Dict, List, Optional
import json
import logging
import math

from audit_service import AuditService
from fulfillment.errors import DuplicateError, NotFoundError, ValidationError
from fulfillment.financial_precision import to_float, safe_subtract
from fulfillment.ledger import LedgerSynchronizer
from fulfillment.provider import DigiflazzProvider
from fulfillment.unit_of_work import UnitOfWork
from models import (
    ManualTransaction, ManualTransactionCreate, ManualTransactionStatus,
    OrderStatus, TransactionKind, PROVIDER_COUNTERPARTY
)

logger = logging.getLogger(__name__)

RETRYABLE_ORDER_STATUSES = (OrderStatus.FAILED.value, OrderStatus.PROCESS.value)
BLOCKING_RETRY_STATUSES = (
    ManualTransactionStatus.PENDING.value,
    ManualTransactionStatus.PROCESS.value,
    ManualTransactionStatus.SUCCESS.value,
)


def retry_id(order_id: str, attempt: int) -> str:
    return f"RE{order_id}" if attempt <= 1 else f"RE{order_id}-{attempt}"


class ManualTransactionService:
    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        uow: UnitOfWork,
        provider: DigiflazzProvider,
        ledger: LedgerSynchronizer,
        audit: Optional[AuditService] = None
    ):
        self.db = db
        self.uow = uow
        self.provider = provider
        self.ledger = ledger
        self.audit = audit

    async def create(self, data: ManualTransactionCreate, created_by: str) -> Dict[str, Any]:
        """
        Record a retry and forward it to the provider in one transaction.

        Returns success=False (with the FAILED retry record) when the
        provider refuses; raises for unknown orders, non-retryable orders
        and retries already in flight.
        """
        async with self.uow.transaction() as session:
            order = await self.uow.claim_order(data.order_id, session)
            if not order:
                raise NotFoundError(f"Order {data.order_id} not found")
            if order.get("transaction_type") != TransactionKind.TOPUP.value:
                raise ValidationError("Only top-up orders can be retried")
            if order["status"] not in RETRYABLE_ORDER_STATUSES:
                raise ValidationError(
                    f"Order {data.order_id} is {order['status']}; only FAILED or PROCESS orders can be retried"
                )

            active = await self.db.manual_transactions.find_one(
                {"order_id": data.order_id, "status": {"$in": list(BLOCKING_RETRY_STATUSES)}},
                session=session
            )
            if active:
                raise DuplicateError(
                    f"Retry {active['manual_transaction_id']} for {data.order_id} is {active['status']}",
                    {"manual_transaction_id": active["manual_transaction_id"]}
                )

            previous = await self.db.manual_transactions.count_documents(
                {"order_id": data.order_id}, session=session
            )
            manual_id = retry_id(data.order_id, previous + 1)

            manual = ManualTransaction(
                manual_transaction_id=manual_id,
                order_id=data.order_id,
                customer_id=data.customer_id or order.get("customer_id"),
                zone=data.zone or order.get("zone"),
                nickname=data.nickname or order.get("nickname"),
                product_code=order.get("product_code"),
                product_name=data.product_name or order.get("service_name"),
                price=order["price"],
                purchase_price=order.get("purchase_price") or 0,
                profit_amount=order.get("profit_amount") or 0,
                whatsapp=data.whatsapp,
                created_by=created_by,
                reason=data.reason
            )
            await self.db.manual_transactions.insert_one(manual.model_dump(), session=session)

            forward = await self.provider.forward(
                order_ref=manual_id,
                buyer_id=manual.customer_id or "",
                product_code=manual.product_code or "",
                server_id=manual.zone
            )

            updates: Dict[str, Any] = {"log": json.dumps(forward.to_log(), default=str), "updated_at": datetime.utcnow()}
            if forward.ok:
                await self.ledger.sync(
                    counterparty=PROVIDER_COUNTERPARTY,
                    order_id=manual_id,
                    amount=-forward.cost,
                    payment_method="FROM DIGI",
                    session=session
                )
                updates.update({
                    "status": ManualTransactionStatus.PROCESS.value,
                    "purchase_price": forward.cost,
                    "profit_amount": to_float(safe_subtract(order["price"], forward.cost))
                })
            else:
                updates["status"] = ManualTransactionStatus.FAILED.value

            await self.db.manual_transactions.update_one(
                {"manual_transaction_id": manual_id},
                {"$set": updates},
                session=session
            )

        record = {**manual.model_dump(), **updates}
        logger.info(f"[RETRY] {manual_id} for {data.order_id} by {created_by} -> {updates['status']}")
        if self.audit:
            await self.audit.log_transaction(
                order_id=data.order_id,
                transaction_type="PROCESS",
                status=updates["status"],
                product_code=manual.product_code,
                amount=manual.price,
                reference=manual_id,
                position="MANUAL RETRY",
                error=forward.error.message if forward.error else None
            )

        if forward.ok:
            return {"success": True, "message": "Manual transaction created successfully", "data": record}
        return {"success": False, "message": "Failed to process manual transaction", "data": record}

    async def get(self, manual_id: str) -> Dict[str, Any]:
        manual = await self.db.manual_transactions.find_one({"manual_transaction_id": manual_id}, {"_id": 0})
        if not manual:
            raise NotFoundError(f"Manual transaction {manual_id} not found")
        order = await self.db.orders.find_one({"order_id": manual["order_id"]}, {"status": 1, "service_name": 1})
        manual["transaction_status"] = order.get("status") if order else None
        manual["service_name"] = order.get("service_name") if order else None
        return manual

    async def list(
        self,
        status: Optional[str] = None,
        created_by: Optional[str] = None,
        page: int = 1,
        limit: int = 10
    ) -> Dict[str, Any]:
        page = max(page, 1)
        limit = max(min(limit, 100), 1)
        query: Dict[str, Any] = {}
        if status:
            query["status"] = status
        if created_by:
            query["created_by"] = created_by

        total = await self.db.manual_transactions.count_documents(query)
        cursor = (
            self.db.manual_transactions.find(query, {"_id": 0})
            .sort("created_at", -1)
            .skip((page - 1) * limit)
            .limit(limit)
        )
        items: List[Dict[str, Any]] = await cursor.to_list(length=limit)
        total_pages = math.ceil(total / limit) if total else 0

        return {
            "data": items,
            "meta": {
                "current_page": page,
                "total_pages": total_pages,
                "total_items": total,
                "items_per_page": limit,
                "has_next_page": page < total_pages,
                "has_prev_page": page > 1
            }
        }

    async def update_status(self, manual_id: str, status: str, serial_number: Optional[str] = None) -> Dict[str, Any]:
        try:
            status = ManualTransactionStatus(status).value
        except ValueError:
            raise ValidationError(f"Invalid status: {status}")

        updates: Dict[str, Any] = {"status": status, "updated_at": datetime.utcnow()}
        if serial_number:
            updates["serial_number"] = serial_number

        result = await self.db.manual_transactions.update_one(
            {"manual_transaction_id": manual_id},
            {"$set": updates}
        )
        if result.matched_count != 1:
            raise NotFoundError(f"Manual transaction {manual_id} not found")

        logger.info(f"[RETRY] {manual_id} status set to {status}")
        return await self.get(manual_id)
