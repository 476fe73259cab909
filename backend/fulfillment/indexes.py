"""
Index definitions the pipelines depend on.

The unique indexes are part of correctness: order ids and provider
references identify an order exactly once, and each counterparty has one
balance row.
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from typing import Any, Dict, List, Tuple
import logging

logger = logging.getLogger(__name__)

# (collection, keys, options)
INDEXES: List[Tuple[str, List[Tuple[str, int]], Dict[str, Any]]] = [
    ("orders", [("order_id", 1)], {"unique": True, "name": "idx_orders_order_id_unique"}),
    ("orders", [("reference_id", 1)], {
        "unique": True,
        "partialFilterExpression": {"reference_id": {"$type": "string"}},
        "name": "idx_orders_reference_id_unique"
    }),
    ("orders", [("username", 1), ("created_at", -1)], {"name": "idx_orders_username_created"}),
    ("payments", [("order_id", 1)], {"unique": True, "name": "idx_payments_order_id_unique"}),
    ("deposits", [("deposit_id", 1)], {"unique": True, "name": "idx_deposits_deposit_id_unique"}),
    ("platform_balances", [("platform_name", 1)], {"unique": True, "name": "idx_platform_name_unique"}),
    ("balance_histories", [("platform_id", 1), ("created_at", 1)], {"name": "idx_history_platform_created"}),
    ("balance_histories", [("batch_id", 1)], {"name": "idx_history_batch"}),
    ("manual_transactions", [("manual_transaction_id", 1)], {
        "unique": True, "name": "idx_manual_transaction_id_unique"
    }),
    ("manual_transactions", [("order_id", 1), ("status", 1)], {"name": "idx_manual_order_status"}),
    ("vouchers", [("code", 1)], {"unique": True, "name": "idx_vouchers_code_unique"}),
    ("voucher_usages", [("order_id", 1)], {"unique": True, "name": "idx_voucher_usages_order_unique"}),
    ("users", [("username", 1)], {"unique": True, "name": "idx_users_username_unique"}),
    ("transaction_logs", [("order_id", 1), ("timestamp", -1)], {"name": "idx_logs_order_timestamp"}),
]


async def ensure_indexes(db: AsyncIOMotorDatabase) -> List[str]:
    """Create every index (idempotent). Returns the index names."""
    names = []
    for collection, keys, options in INDEXES:
        name = await db[collection].create_index(keys, **options)
        names.append(name)
    logger.info(f"[INDEXES] Ensured {len(names)} indexes")
    return names
