from motor.motor_asyncio import AsyncIOMotorDatabase
from datetime import datetime
from typing import Optional, Dict, Any, List
import logging

logger = logging.getLogger(__name__)

TRANSACTION_LOG_TYPES = ("CREATE", "UPDATE", "PAYMENT", "PROCESS", "CALLBACK", "ERROR")


class AuditService:
    """Append-only transaction log for operator inspection (INSERT ONLY)"""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.collection = db.transaction_logs

    async def log_transaction(
        self,
        order_id: str,
        transaction_type: str,
        status: str,
        user_id: Optional[str] = None,
        product_code: Optional[str] = None,
        amount: Optional[float] = None,
        payment_method: Optional[str] = None,
        reference: Optional[str] = None,
        position: Optional[str] = None,
        data: Optional[Any] = None,
        error: Optional[str] = None,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None
    ):
        """
        Append one entry to the transaction log.

        Fire-and-forget: runs outside the caller's transaction and never
        raises, so a failing sink cannot abort the pipeline.
        """
        try:
            entry = {
                "order_id": order_id,
                "transaction_type": transaction_type if transaction_type in TRANSACTION_LOG_TYPES else "UPDATE",
                "status": status,
                "user_id": user_id,
                "product_code": product_code,
                "amount": amount,
                "payment_method": payment_method,
                "reference": reference,
                "position": position,
                "data": data,
                "error": error,
                "ip": ip,
                "user_agent": user_agent,
                "timestamp": datetime.utcnow()
            }
            await self.collection.insert_one(entry)
            logger.debug(f"Transaction log: {transaction_type}/{status} for {order_id}")
        except Exception as e:
            # Don't fail the main operation if audit logging fails
            logger.error(f"Failed to write transaction log for {order_id}: {str(e)}")

    async def get_order_logs(self, order_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        """Retrieve logs of one order, newest first (READ ONLY)"""
        cursor = self.collection.find({"order_id": order_id}).sort("timestamp", -1).limit(limit)
        logs = await cursor.to_list(length=limit)

        for log in logs:
            log["log_id"] = str(log.pop("_id"))

        return logs
