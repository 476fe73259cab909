"""
LEDGER INTEGRITY JOB

Verifies the settlement ledger against its own history.

For each platform balance:
1. Walk its balance_histories rows oldest first
2. Every row must satisfy balance_after - balance_before == amount_changed
3. Each row must start where the previous one ended
4. The stored balance must equal the balance_after of the latest row
5. Log mismatches (NO auto-fix)

Usage:
    job = LedgerIntegrityJob(db)
    report = await job.run()
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from decimal import Decimal
from datetime import datetime
from typing import Dict, Any, List, Optional
import logging

from fulfillment.financial_precision import to_decimal, round_financial

logger = logging.getLogger(__name__)


class LedgerIntegrityJob:
    """
    Background job to verify ledger consistency.

    Reports mismatches but does NOT auto-fix.
    """

    TOLERANCE = Decimal('0.01')

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def run(self) -> Dict[str, Any]:
        """One verification pass. Each call keeps its own counters, so runs may overlap."""
        start_time = datetime.utcnow()
        mismatches: List[Dict[str, Any]] = []
        checked_count = 0
        rows_checked = 0

        logger.info("[INTEGRITY_JOB] Starting ledger integrity check...")

        async for platform in self.db.platform_balances.find({}):
            checked_count += 1
            rows_checked += await self._check_platform(platform, mismatches)

        end_time = datetime.utcnow()
        report = {
            "job_name": "LedgerIntegrityJob",
            "status": "completed",
            "started_at": start_time.isoformat(),
            "completed_at": end_time.isoformat(),
            "duration_ms": round((end_time - start_time).total_seconds() * 1000, 2),
            "platforms_checked": checked_count,
            "rows_checked": rows_checked,
            "mismatches_found": len(mismatches),
            "mismatches": mismatches
        }

        if mismatches:
            logger.warning(
                f"[INTEGRITY_JOB] Completed with {len(mismatches)} mismatches "
                f"across {checked_count} platforms"
            )
        else:
            logger.info(
                f"[INTEGRITY_JOB] Completed successfully. "
                f"All {checked_count} platforms verified."
            )

        return report

    def _differs(self, a: Decimal, b: Decimal) -> bool:
        return abs(a - b) > self.TOLERANCE

    def _record(self, mismatches: List[Dict[str, Any]], platform: Dict[str, Any], kind: str, **details):
        mismatch = {
            "platform_name": platform.get("platform_name"),
            "platform_id": str(platform.get("_id")),
            "type": kind,
            "checked_at": datetime.utcnow().isoformat(),
            **details
        }
        mismatches.append(mismatch)
        logger.warning(f"[INTEGRITY_JOB] MISMATCH {kind} on {platform.get('platform_name')}: {details}")

    async def _check_platform(self, platform: Dict[str, Any], mismatches: List[Dict[str, Any]]) -> int:
        """Check one platform's history chain; returns the number of rows read."""
        rows = 0

        cursor = self.db.balance_histories.find({"platform_id": platform["_id"]}).sort("created_at", 1)
        previous_after: Optional[Decimal] = None

        async for row in cursor:
            rows += 1
            before = to_decimal(row.get("balance_before") or 0)
            after = to_decimal(row.get("balance_after") or 0)
            changed = to_decimal(row.get("amount_changed") or 0)

            if self._differs(after - before, changed):
                self._record(
                    mismatches, platform, "ROW_ARITHMETIC",
                    batch_id=row.get("batch_id"),
                    history_id=str(row.get("_id")),
                    balance_before=float(before),
                    balance_after=float(after),
                    amount_changed=float(changed)
                )

            if previous_after is not None and self._differs(before, previous_after):
                self._record(
                    mismatches, platform, "CHAIN_BREAK",
                    batch_id=row.get("batch_id"),
                    history_id=str(row.get("_id")),
                    expected_before=float(previous_after),
                    balance_before=float(before)
                )
            previous_after = after

        if previous_after is None:
            return rows

        stored = round_financial(to_decimal(platform.get("balance") or 0))
        if self._differs(stored, previous_after):
            self._record(
                mismatches, platform, "BALANCE_DRIFT",
                stored=float(stored),
                latest_balance_after=float(previous_after),
                difference=float(stored - previous_after)
            )
        return rows
