"""
FORWARDING IDEMPOTENCY GUARD

An order counts as forwarded once it carries a non-empty reference_id
(the provider reference stored on PAID -> PROCESS). The guard runs
immediately before every provider call:

    await guard.ensure_not_forwarded(order_id, session=session)
    result = await provider.forward(...)

ensure_not_forwarded() raises ForwardBlockedError, which aborts the
surrounding unit of work: no further writes and no second provider call.
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from dataclasses import dataclass
from typing import Optional
import logging

from fulfillment.errors import ForwardBlockedError, NotFoundError

logger = logging.getLogger(__name__)


@dataclass
class ForwardCheck:
    order_id: str
    is_forwarded: bool
    reference_id: Optional[str] = None


class IdempotencyGuard:
    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def check(self, order_id: str, session=None) -> ForwardCheck:
        order = await self.db.orders.find_one(
            {"order_id": order_id},
            {"reference_id": 1},
            session=session
        )
        if not order:
            raise NotFoundError(f"Order {order_id} not found", {"order_id": order_id})

        reference_id = (order.get("reference_id") or "").strip()
        return ForwardCheck(
            order_id=order_id,
            is_forwarded=bool(reference_id),
            reference_id=reference_id or None
        )

    async def is_already_forwarded(self, order_id: str, session=None) -> bool:
        return (await self.check(order_id, session=session)).is_forwarded

    async def ensure_not_forwarded(self, order_id: str, session=None) -> None:
        check = await self.check(order_id, session=session)
        if check.is_forwarded:
            logger.info(
                f"[IDEMPOTENT] Blocked second forward of {order_id} "
                f"(reference {check.reference_id})"
            )
            raise ForwardBlockedError(order_id, check.reference_id)
        logger.debug(f"[IDEMPOTENT] {order_id} clear to forward")
