"""
TRANSACTION BOUNDARY

Every callback runs its whole read-modify-write sequence inside one MongoDB
multi-document transaction:

    async with uow.transaction() as session:
        order = await uow.claim_order(order_id, session)
        ...

The transaction commits on clean exit and aborts on any exception, so a
failure anywhere leaves no partial writes.

claim_order() writes the order document before anything else. Two
transactions touching the same order therefore conflict on that write and
commit one after the other; transactions on different orders never meet.
"""

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, Optional
import logging

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ReturnDocument
from pymongo.read_concern import ReadConcern
from pymongo.write_concern import WriteConcern

logger = logging.getLogger(__name__)


class UnitOfWork:
    def __init__(self, client: AsyncIOMotorClient, db: AsyncIOMotorDatabase):
        self.client = client
        self.db = db

    @asynccontextmanager
    async def transaction(self):
        async with await self.client.start_session() as session:
            async with session.start_transaction(
                read_concern=ReadConcern("snapshot"),
                write_concern=WriteConcern("majority")
            ):
                yield session

    async def claim_order(
        self,
        order_id: str,
        session,
        field: str = "order_id"
    ) -> Optional[Dict[str, Any]]:
        """
        Lock the order for this transaction and return it (post-claim state).
        Returns None when no order matches.
        """
        order = await self.db.orders.find_one_and_update(
            {field: order_id},
            {
                "$inc": {"lock_version": 1},
                "$set": {"updated_at": datetime.utcnow()}
            },
            return_document=ReturnDocument.AFTER,
            session=session
        )
        if order:
            logger.debug(f"[UOW] Claimed order {order['order_id']} v{order['lock_version']}")
        return order
