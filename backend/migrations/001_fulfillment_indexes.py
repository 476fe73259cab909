#!/usr/bin/env python3
"""
MIGRATION SCRIPT: Fulfillment collections and indexes

Creates:
1. the order, payment and ledger collections if missing
2. every index in fulfillment.indexes.INDEXES
3. the three settlement counterparty balance rows (zero balance)

Run: python migrations/001_fulfillment_indexes.py
"""

import asyncio
import os
import sys
from datetime import datetime

# Add backend to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from motor.motor_asyncio import AsyncIOMotorClient

from fulfillment.indexes import INDEXES, ensure_indexes
from models import GATEWAY_COUNTERPARTY, PROVIDER_COUNTERPARTY, BALANCE_COUNTERPARTY
from settings import Settings

MIGRATION_ID = "001_fulfillment_indexes"


async def run_migration():
    """Execute the fulfillment index migration."""
    settings = Settings.from_env()

    print(f"Connecting to: {settings.mongo_url}")
    print(f"Database: {settings.db_name}")

    client = AsyncIOMotorClient(settings.mongo_url)
    db = client[settings.db_name]

    try:
        await client.admin.command('ping')
        print("✓ Connected to MongoDB")

        # Collections must exist before they are used inside a transaction
        existing = await db.list_collection_names()
        collections = sorted({collection for collection, _, _ in INDEXES})
        for name in collections:
            if name not in existing:
                await db.create_collection(name)
                print(f"✓ Created {name} collection")
            else:
                print(f"• {name} collection already exists")

        names = await ensure_indexes(db)
        for name in names:
            print(f"✓ Ensured index: {name}")

        now = datetime.utcnow()
        for platform in (GATEWAY_COUNTERPARTY, PROVIDER_COUNTERPARTY, BALANCE_COUNTERPARTY):
            await db.platform_balances.update_one(
                {"platform_name": platform},
                {"$setOnInsert": {
                    "platform_name": platform,
                    "account_name": f"Account {platform}",
                    "balance": 0.0,
                    "created_at": now
                }},
                upsert=True
            )
            print(f"✓ Platform balance row: {platform}")

        await db.migrations.update_one(
            {"migration_id": MIGRATION_ID},
            {"$set": {
                "migration_id": MIGRATION_ID,
                "description": "Fulfillment collections and indexes",
                "collections": collections,
                "indexes_created": names,
                "executed_at": now,
                "status": "success"
            }},
            upsert=True
        )
        print("\n✓ Migration record saved")

        return {"status": "success", "collections": collections, "indexes": len(names)}

    except Exception as e:
        print(f"\n✗ Migration failed: {str(e)}")
        raise
    finally:
        client.close()


if __name__ == "__main__":
    result = asyncio.run(run_migration())
    print(f"\nResult: {result}")
