"""
Order creation and internal-balance payment tests
Testing: pricing, fees, vouchers, gateway orders, SALDO orders, deposits, status view
"""
from datetime import datetime, timedelta

import pytest

from fakes import seed_order, seed_user, signed_callback
from fulfillment.errors import (
    InsufficientBalanceError, NotFoundError, ValidationError, GatewayError
)
from fulfillment.order_service import calculate_fee, calculate_price, quote_payment_method
from fulfillment.vouchers import calculate_discount
from models import DepositCreate, DiscountType, OrderCreate, TransactionKind, Voucher

PRODUCT = {
    "provider_code": "ML86",
    "service_name": "86 Diamonds",
    "price_from_provider": 9000,
    "profit": 1000,
    "profit_reseller": 500,
    "profit_platinum": 300,
    "is_profit_fixed": True,
}

QRIS = {
    "code": "NQ",
    "name": "QRIS",
    "is_active": True,
    "min_amount": 1000,
    "max_amount": 5000000,
    "tax_type": "PERCENTAGE",
    "tax_admin": 0.7,
}


@pytest.fixture
async def catalog(db):
    await db.products.insert_one(dict(PRODUCT))
    await db.payment_methods.insert_one(dict(QRIS))
    await db.payment_methods.insert_one({
        "code": "BR", "name": "BRI Virtual Account", "is_active": False,
        "tax_type": "FIXED", "tax_admin": 4000
    })


def order_request(**overrides):
    fields = {
        "product_code": "ML86",
        "method_code": "NQ",
        "game_id": "123456789",
        "zone": "2001",
        "whatsapp_number": "6281234567890",
        "nickname": "Player1",
    }
    fields.update(overrides)
    return OrderCreate(**fields)


class TestPricing:
    """Role pricing and method fees"""

    def test_role_tiers(self):
        assert calculate_price(PRODUCT).price == 10000
        assert calculate_price(PRODUCT, "member").price == 10000
        assert calculate_price(PRODUCT, "RESELLER").price == 9500
        assert calculate_price(PRODUCT, "PLATINUM").price == 9300

    def test_percentage_profit(self):
        product = dict(PRODUCT, is_profit_fixed=False, profit=10)
        quote = calculate_price(product)
        assert quote.profit_amount == 900
        assert quote.price == 9900

    def test_flash_sale_wins_while_active(self):
        now = datetime(2026, 1, 1, 12, 0)
        product = dict(
            PRODUCT, is_flash_sale=True, price_flash_sale=8000,
            expired_flash_sale=now + timedelta(hours=1)
        )
        quote = calculate_price(product, "PLATINUM", now=now)
        assert quote.is_flash_sale
        assert quote.price == 8000

        later = calculate_price(product, "PLATINUM", now=now + timedelta(hours=2))
        assert not later.is_flash_sale
        assert later.price == 9300

    def test_fees(self):
        assert calculate_fee(QRIS, 10000) == 70
        assert calculate_fee(QRIS, 10001) == 71
        assert calculate_fee({"tax_type": "FIXED", "tax_admin": 4000}, 10000) == 4000
        assert calculate_fee({"tax_type": None}, 10000) == 0

    async def test_method_limits(self, db, catalog):
        quote = await quote_payment_method(db, "NQ", 10000)
        assert quote.total_amount == 10070

        with pytest.raises(ValidationError):
            await quote_payment_method(db, "NQ", 500)
        with pytest.raises(ValidationError):
            await quote_payment_method(db, "BR", 10000)
        with pytest.raises(ValidationError):
            await quote_payment_method(db, "XX", 10000)


class TestCreateOrder:
    """OrderService.create_order via the gateway"""

    async def test_guest_order(self, services, db, upstream, catalog):
        result = await services.orders.create_order(order_request())

        assert result["order_id"].startswith("VAZZ")
        assert result["amount"] == 10000
        assert result["fee"] == 70
        assert result["final_amount"] == 10070
        assert result["payment_number"] == "00020101021226"
        assert result["status"] == "PENDING"
        assert upstream.gateway_calls[0]["paymentAmount"] == 10070

        order = await db.orders.find_one({"order_id": result["order_id"]})
        payment = await db.payments.find_one({"order_id": result["order_id"]})
        assert order["status"] == "PENDING"
        assert order["username"] is None
        assert order["customer_id"] == "123456789"
        assert order["transaction_type"] == "TOPUP"
        assert payment["total_amount"] == 10070
        assert payment["fee_amount"] == 70

    async def test_reseller_price(self, services, db, catalog):
        await seed_user(db, "reseller", role="RESELLER")
        result = await services.orders.create_order(order_request(username="reseller"))
        assert result["amount"] == 9500

    async def test_unknown_product(self, services, catalog):
        with pytest.raises(NotFoundError):
            await services.orders.create_order(order_request(product_code="NOPE"))

    async def test_gateway_refusal_creates_nothing(self, services, db, upstream, catalog):
        upstream.gateway_body = {"statusCode": "01", "statusMessage": "Minimum amount"}

        with pytest.raises(GatewayError):
            await services.orders.create_order(order_request())
        assert await db.orders.count_documents({}) == 0
        assert await db.payments.count_documents({}) == 0

    async def test_order_then_callback(self, services, db, upstream, catalog):
        """Created order settles through the gateway callback end to end"""
        created = await services.orders.create_order(order_request())
        callback = signed_callback(services.gateway, order_id=created["order_id"], amount=created["final_amount"])

        result = await services.payment_callbacks.process_payment_callback(callback)

        assert result.success
        assert result.data["status"] == "PROCESS"
        assert upstream.provider_calls[0]["customer_no"] == "1234567892001"


class TestVouchers:
    """Voucher codes are priced and consumed on the server"""

    @pytest.fixture
    async def voucher(self, db):
        async def create(code="HEMAT", **overrides):
            fields = {"code": code, "discount_type": DiscountType.FIXED, "discount_value": 1500}
            fields.update(overrides)
            doc = Voucher(**fields).model_dump()
            await db.vouchers.insert_one(doc)
            return doc
        return create

    def test_discount_calculation(self):
        assert calculate_discount({"discount_type": "FIXED", "discount_value": 1500}, 10000) == 1500
        assert calculate_discount({"discount_type": "FIXED", "discount_value": 15000}, 10000) == 10000
        assert calculate_discount({"discount_type": "PERCENTAGE", "discount_value": 10}, 9995) == 1000
        assert calculate_discount(
            {"discount_type": "PERCENTAGE", "discount_value": 20, "max_discount": 1000}, 10000
        ) == 1000

    async def test_voucher_discount_lowers_price(self, services, db, buyer, catalog, voucher):
        await voucher()

        result = await services.orders.create_order(order_request(username="buyer", voucher_code="HEMAT"))

        order = await db.orders.find_one({"order_id": result["order_id"]})
        assert order["price"] == 8500
        assert order["discount"] == 1500
        assert result["final_amount"] == 8560

        stored = await db.vouchers.find_one({"code": "HEMAT"})
        usage = await db.voucher_usages.find_one({"order_id": result["order_id"]})
        assert stored["usage_count"] == 1
        assert usage["discount_amount"] == 1500
        assert usage["username"] == "buyer"

    async def test_percentage_voucher_is_capped(self, services, db, catalog, voucher):
        await voucher(discount_type=DiscountType.PERCENTAGE, discount_value=20, max_discount=1000)

        result = await services.orders.create_order(order_request(voucher_code="HEMAT"))

        assert result["discount"] == 1000
        order = await db.orders.find_one({"order_id": result["order_id"]})
        assert order["price"] == 9000

    async def test_unknown_voucher(self, services, db, upstream, catalog):
        with pytest.raises(NotFoundError):
            await services.orders.create_order(order_request(voucher_code="NOPE"))
        assert upstream.gateway_calls == []
        assert await db.orders.count_documents({}) == 0

    @pytest.mark.parametrize("overrides", [
        {"is_active": False},
        {"expiry_date": datetime(2020, 1, 1)},
        {"start_date": datetime(2999, 1, 1)},
        {"min_purchase": 20000},
        {"usage_limit": 3, "usage_count": 3},
        {"is_for_all_categories": False, "category_ids": ["voucher-games"]},
    ])
    async def test_unusable_voucher_is_refused(self, services, db, upstream, voucher, overrides):
        await db.products.insert_one(dict(PRODUCT, category_id="mobile-legends"))
        await db.payment_methods.insert_one(dict(QRIS))
        await voucher(**overrides)

        with pytest.raises(ValidationError):
            await services.orders.create_order(order_request(voucher_code="HEMAT"))

        assert upstream.gateway_calls == []
        assert await db.orders.count_documents({}) == 0
        assert await db.voucher_usages.count_documents({}) == 0

    async def test_voucher_for_product_category(self, services, db, voucher):
        await db.products.insert_one(dict(PRODUCT, category_id="mobile-legends"))
        await db.payment_methods.insert_one(dict(QRIS))
        await voucher(is_for_all_categories=False, category_ids=["mobile-legends"])

        result = await services.orders.create_order(order_request(voucher_code="HEMAT"))

        assert result["discount"] == 1500

    async def test_gateway_refusal_keeps_voucher_unused(self, services, db, upstream, catalog, voucher):
        await voucher(usage_limit=1)
        upstream.gateway_body = {"statusCode": "01", "statusMessage": "Minimum amount"}

        with pytest.raises(GatewayError):
            await services.orders.create_order(order_request(voucher_code="HEMAT"))

        stored = await db.vouchers.find_one({"code": "HEMAT"})
        assert stored["usage_count"] == 0
        assert await db.voucher_usages.count_documents({}) == 0

    async def test_last_use_taken_between_validate_and_redeem(self, services, db, voucher):
        """The usage limit is checked again when the voucher is consumed"""
        await voucher(usage_limit=1)
        quote = await services.orders.vouchers.validate("HEMAT", 10000)
        await db.vouchers.update_one({"code": "HEMAT"}, {"$inc": {"usage_count": 1}})

        with pytest.raises(ValidationError):
            await services.orders.vouchers.redeem(quote, "VAZZ1")

        assert await db.voucher_usages.count_documents({}) == 0

    async def test_saldo_order_pays_discounted_price(self, services, db, upstream, catalog, voucher):
        await seed_user(db, "buyer", balance=10000)
        await voucher()

        result = await services.orders.create_order(
            order_request(method_code="SALDO", username="buyer", voucher_code="HEMAT")
        )

        assert result["status"] == "PROCESS"
        assert result["final_amount"] == 8500
        user = await db.users.find_one({"username": "buyer"})
        assert user["balance"] == 1500
        assert await db.voucher_usages.count_documents({"order_id": result["order_id"]}) == 1

    async def test_saldo_failure_rolls_back_voucher_use(self, services, db, catalog, voucher):
        await seed_user(db, "buyer", balance=1000)
        await voucher()

        with pytest.raises(InsufficientBalanceError):
            await services.orders.create_order(
                order_request(method_code="SALDO", username="buyer", voucher_code="HEMAT")
            )

        stored = await db.vouchers.find_one({"code": "HEMAT"})
        assert stored["usage_count"] == 0
        assert await db.voucher_usages.count_documents({}) == 0


class TestSaldoOrder:
    """OrderService.create_order with method SALDO"""

    async def test_paid_from_balance_and_forwarded(self, services, db, upstream, catalog):
        await seed_user(db, "buyer", balance=50000)

        result = await services.orders.create_order(order_request(method_code="SALDO", username="buyer"))

        assert result["status"] == "PROCESS"
        assert result["balance"] == 40000
        assert result["fee"] == 0
        user = await db.users.find_one({"username": "buyer"})
        assert user["balance"] == 40000
        saldo = await db.platform_balances.find_one({"platform_name": "Saldo Member"})
        assert saldo["balance"] == 10000
        assert upstream.gateway_calls == []

    async def test_insufficient_balance_creates_nothing(self, services, db, upstream, catalog):
        await seed_user(db, "buyer", balance=5000)

        with pytest.raises(InsufficientBalanceError):
            await services.orders.create_order(order_request(method_code="SALDO", username="buyer"))

        user = await db.users.find_one({"username": "buyer"})
        assert user["balance"] == 5000
        assert await db.orders.count_documents({}) == 0
        assert upstream.provider_calls == []

    async def test_guest_cannot_pay_with_balance(self, services, db, catalog):
        with pytest.raises(ValidationError):
            await services.orders.create_order(order_request(method_code="SALDO"))
        assert await db.orders.count_documents({}) == 0

    async def test_provider_rejection_nets_to_zero(self, services, db, upstream, catalog):
        upstream.provider_status = "Gagal"
        await seed_user(db, "buyer", balance=50000)

        result = await services.orders.create_order(order_request(method_code="SALDO", username="buyer"))

        assert result["status"] == "FAILED"
        assert result["refunded"] is True
        assert result["balance"] == 50000
        user = await db.users.find_one({"username": "buyer"})
        assert user["balance"] == 50000


class TestBalancePayment:
    """BalancePaymentService on an existing order"""

    async def test_pay_pending_order(self, services, db, upstream):
        await seed_user(db, "buyer", balance=20000)
        order = await seed_order(db, method="SALDO")

        result = await services.balance_payment.pay_with_balance(order, "buyer", 10000)

        assert result["status"] == "PROCESS"
        assert result["reference_id"] == "VAZZ123"
        stored = await db.orders.find_one({"order_id": "VAZZ123"})
        assert stored["status"] == "PROCESS"
        assert upstream.provider_refs == ["VAZZ123"]

    async def test_charge_must_match_price(self, services, db, upstream):
        """A refund could not return a charge that differs from the order price"""
        await seed_user(db, "buyer", balance=20000)
        order = await seed_order(db, method="SALDO")

        with pytest.raises(ValidationError):
            await services.balance_payment.pay_with_balance(order, "buyer", 15000)
        with pytest.raises(ValidationError):
            await services.balance_payment.pay_with_balance(order, "buyer", 5000)

        user = await db.users.find_one({"username": "buyer"})
        stored = await db.orders.find_one({"order_id": "VAZZ123"})
        assert user["balance"] == 20000
        assert stored["status"] == "PENDING"
        assert upstream.provider_calls == []

    async def test_provider_failure_returns_exact_charge(self, services, db, upstream):
        upstream.provider_status = "Gagal"
        await seed_user(db, "buyer", balance=20000)
        order = await seed_order(db, method="SALDO")

        result = await services.balance_payment.pay_with_balance(order, "buyer", 10000)

        assert result["status"] == "FAILED"
        assert result["refunded"] is True
        assert result["balance"] == 20000
        user = await db.users.find_one({"username": "buyer"})
        assert user["balance"] == 20000

    async def test_ledger_written_after_provider_answers(self, services, db, upstream, monkeypatch):
        await seed_user(db, "buyer", balance=20000)
        order = await seed_order(db, method="SALDO")
        original_sync = services.ledger.sync
        seen = []

        async def recording_sync(counterparty, **kwargs):
            seen.append((counterparty, len(upstream.provider_calls)))
            return await original_sync(counterparty=counterparty, **kwargs)

        monkeypatch.setattr(services.ledger, "sync", recording_sync)

        await services.balance_payment.pay_with_balance(order, "buyer", 10000)

        assert seen == [("Saldo Member", 1), ("Digiflazz", 1)]

    async def test_transitions_logged_after_commit(self, services, db):
        await seed_user(db, "buyer", balance=20000)
        order = await seed_order(db, method="SALDO")

        await services.balance_payment.pay_with_balance(order, "buyer", 10000)

        updates = await db.transaction_logs.find({"order_id": "VAZZ123", "transaction_type": "UPDATE"}).to_list(None)
        assert [log["position"] for log in updates] == ["PENDING -> PAID", "PAID -> PROCESS"]

    async def test_insufficient_balance(self, services, db):
        await seed_user(db, "buyer", balance=5000)
        order = await seed_order(db, method="SALDO")

        with pytest.raises(InsufficientBalanceError):
            await services.balance_payment.pay_with_balance(order, "buyer", 10000)

        stored = await db.orders.find_one({"order_id": "VAZZ123"})
        assert stored["status"] == "PENDING"

    async def test_unknown_user(self, services, db):
        order = await seed_order(db, method="SALDO")
        with pytest.raises(NotFoundError):
            await services.balance_payment.pay_with_balance(order, "ghost", 10000)

    async def test_only_pending_topups(self, services, db):
        await seed_user(db, "buyer", balance=20000)
        paid = await seed_order(db, status="PAID")
        deposit = await seed_order(db, order_id="DEP1", kind=TransactionKind.DEPOSIT)
        pending = await seed_order(db, order_id="VAZZ2")

        with pytest.raises(ValidationError):
            await services.balance_payment.pay_with_balance(paid, "buyer", 10000)
        with pytest.raises(ValidationError):
            await services.balance_payment.pay_with_balance(deposit, "buyer", 10000)
        with pytest.raises(ValidationError):
            await services.balance_payment.pay_with_balance(pending, "buyer", -5)

        user = await db.users.find_one({"username": "buyer"})
        assert user["balance"] == 20000


class TestCreateDeposit:
    """OrderService.create_deposit"""

    async def test_deposit_then_callback(self, services, db, catalog):
        await seed_user(db, "buyer", balance=0)

        created = await services.orders.create_deposit(DepositCreate(amount=50000, code="NQ"), "buyer")

        assert created["order_id"].startswith("DEP")
        assert created["final_amount"] == 50350
        deposit = await db.deposits.find_one({"deposit_id": created["order_id"]})
        assert deposit["status"] == "PENDING"

        result = await services.payment_callbacks.process_payment_callback(
            signed_callback(services.gateway, order_id=created["order_id"], amount=50350)
        )
        assert result.success
        user = await db.users.find_one({"username": "buyer"})
        assert user["balance"] == 50000

    async def test_membership_has_no_deposit_record(self, services, db, catalog):
        await seed_user(db, "buyer")

        created = await services.orders.create_deposit(
            DepositCreate(amount=75000, code="NQ", type=TransactionKind.MEMBERSHIP), "buyer"
        )

        assert created["order_id"].startswith("MEM")
        assert await db.deposits.count_documents({}) == 0
        order = await db.orders.find_one({"order_id": created["order_id"]})
        assert order["transaction_type"] == "MEMBERSHIP"

    async def test_topup_kind_rejected(self, services, db, catalog):
        await seed_user(db, "buyer")
        with pytest.raises(ValidationError):
            await services.orders.create_deposit(
                DepositCreate(amount=10000, code="NQ", type=TransactionKind.TOPUP), "buyer"
            )


class TestOrderStatus:
    async def test_status_view(self, services, db, buyer):
        await seed_order(db, status="PROCESS", reference_id="VAZZ123")

        view = await services.orders.get_order_status("VAZZ123")

        assert view.status == "PROCESS"
        assert view.payment_method == "QRIS"
        assert view.payment_status == "PAID"

    async def test_unknown_order(self, services):
        with pytest.raises(NotFoundError):
            await services.orders.get_order_status("VAZZ404")
