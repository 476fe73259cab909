"""
Settlement ledger tests
Testing: balance sync, history rows, transaction rollback, integrity job
"""
import asyncio

import pytest

from fulfillment.errors import ValidationError
from fulfillment.ledger import LedgerSynchronizer
from fulfillment.ledger_integrity_job import LedgerIntegrityJob
from fulfillment.unit_of_work import UnitOfWork


class TestLedgerSync:
    """LedgerSynchronizer.sync"""

    async def test_first_sync_creates_balance_row(self, db):
        ledger = LedgerSynchronizer(db)
        result = await ledger.sync("Duitku", "VAZZ1", 10000, payment_method="QRIS")

        assert result["balance_before"] == 0
        assert result["balance_after"] == 10000
        assert result["change_type"] == "CREDIT"

        platform = await db.platform_balances.find_one({"platform_name": "Duitku"})
        assert platform["balance"] == 10000
        assert platform["account_name"] == "Account Duitku"

    async def test_history_rows_chain(self, db):
        """Each row starts where the previous one ended"""
        ledger = LedgerSynchronizer(db)
        await ledger.sync("Digiflazz", "VAZZ1", -9000)
        await ledger.sync("Digiflazz", "VAZZ2", -4500.5)
        await ledger.sync("Digiflazz", "VAZZ3", 1000)

        rows = await db.balance_histories.find({"platform_name": "Digiflazz"}).sort("created_at", 1).to_list(10)
        assert [r["batch_id"] for r in rows] == ["VAZZ1", "VAZZ2", "VAZZ3"]
        for row in rows:
            assert round(row["balance_after"] - row["balance_before"], 2) == row["amount_changed"]
        assert rows[1]["balance_before"] == rows[0]["balance_after"]
        assert rows[2]["balance_before"] == rows[1]["balance_after"]
        assert [r["change_type"] for r in rows] == ["DEBIT", "DEBIT", "CREDIT"]

        platform = await db.platform_balances.find_one({"platform_name": "Digiflazz"})
        assert platform["balance"] == rows[-1]["balance_after"] == -12500.5

    async def test_counterparties_are_independent(self, db):
        ledger = LedgerSynchronizer(db)
        await ledger.sync("Duitku", "VAZZ1", 10000)
        await ledger.sync("Saldo Member", "VAZZ2", 5000)

        duitku = await db.platform_balances.find_one({"platform_name": "Duitku"})
        saldo = await db.platform_balances.find_one({"platform_name": "Saldo Member"})
        assert duitku["balance"] == 10000
        assert saldo["balance"] == 5000

    async def test_missing_order_id_rejected(self, db):
        ledger = LedgerSynchronizer(db)
        with pytest.raises(ValidationError):
            await ledger.sync("Duitku", "", 100)
        assert await db.balance_histories.count_documents({}) == 0

    async def test_non_numeric_amount_rejected(self, db):
        ledger = LedgerSynchronizer(db)
        with pytest.raises(ValidationError):
            await ledger.sync("Duitku", "VAZZ1", "ten thousand")
        assert await db.platform_balances.count_documents({}) == 0

    async def test_sync_rolls_back_with_transaction(self, client, db):
        """A failure later in the same unit of work leaves no ledger trace"""
        ledger = LedgerSynchronizer(db)
        uow = UnitOfWork(client, db)

        with pytest.raises(RuntimeError):
            async with uow.transaction() as session:
                await ledger.sync("Duitku", "VAZZ1", 10000, session=session)
                raise RuntimeError("boom")

        assert await db.platform_balances.count_documents({}) == 0
        assert await db.balance_histories.count_documents({}) == 0
        assert client.transactions_aborted == 1


class TestLedgerIntegrityJob:
    """Integrity report over the ledger"""

    async def test_clean_ledger_has_no_mismatches(self, db):
        ledger = LedgerSynchronizer(db)
        await ledger.sync("Duitku", "VAZZ1", 10000)
        await ledger.sync("Duitku", "VAZZ2", 2500)
        await ledger.sync("Digiflazz", "VAZZ1", -9000)

        report = await LedgerIntegrityJob(db).run()

        assert report["status"] == "completed"
        assert report["platforms_checked"] == 2
        assert report["rows_checked"] == 3
        assert report["mismatches_found"] == 0

    async def test_detects_balance_drift(self, db):
        ledger = LedgerSynchronizer(db)
        await ledger.sync("Duitku", "VAZZ1", 10000)
        await db.platform_balances.update_one({"platform_name": "Duitku"}, {"$inc": {"balance": 50}})

        report = await LedgerIntegrityJob(db).run()

        assert report["mismatches_found"] == 1
        mismatch = report["mismatches"][0]
        assert mismatch["type"] == "BALANCE_DRIFT"
        assert mismatch["difference"] == 50

    async def test_detects_broken_row(self, db):
        ledger = LedgerSynchronizer(db)
        await ledger.sync("Duitku", "VAZZ1", 10000)
        await db.balance_histories.update_one({"batch_id": "VAZZ1"}, {"$set": {"amount_changed": 9000}})

        report = await LedgerIntegrityJob(db).run()

        types = [m["type"] for m in report["mismatches"]]
        assert types == ["ROW_ARITHMETIC"]

    async def test_detects_chain_break(self, db):
        ledger = LedgerSynchronizer(db)
        await ledger.sync("Duitku", "VAZZ1", 10000)
        await ledger.sync("Duitku", "VAZZ2", 1000)
        # shift the second row as a whole; its own arithmetic still holds
        await db.balance_histories.update_one(
            {"batch_id": "VAZZ2"},
            {"$set": {"balance_before": 10500, "balance_after": 11500}}
        )
        await db.platform_balances.update_one({"platform_name": "Duitku"}, {"$set": {"balance": 11500}})

        report = await LedgerIntegrityJob(db).run()

        assert [m["type"] for m in report["mismatches"]] == ["CHAIN_BREAK"]

    async def test_overlapping_runs_keep_separate_reports(self, db, monkeypatch):
        """One job object serves every request; interleaved runs must not share counters"""
        ledger = LedgerSynchronizer(db)
        await ledger.sync("Duitku", "VAZZ1", 10000)
        await ledger.sync("Digiflazz", "VAZZ1", -9000)
        await db.platform_balances.update_one({"platform_name": "Duitku"}, {"$inc": {"balance": 50}})

        job = LedgerIntegrityJob(db)
        check_platform = job._check_platform

        async def yielding_check(platform, mismatches):
            await asyncio.sleep(0)
            return await check_platform(platform, mismatches)

        monkeypatch.setattr(job, "_check_platform", yielding_check)

        first, second = await asyncio.gather(job.run(), job.run())

        for report in (first, second):
            assert report["platforms_checked"] == 2
            assert report["rows_checked"] == 2
            assert report["mismatches_found"] == 1
            assert [m["type"] for m in report["mismatches"]] == ["BALANCE_DRIFT"]
