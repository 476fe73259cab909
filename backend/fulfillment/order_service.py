"""
ORDER CREATION

Creates the PENDING order + payment pair that the callback pipelines later
settle:

- create_order(): top-up priced by buyer role (flash sale wins), less any
  voucher discount, paid either through the gateway or, for method SALDO,
  straight from the buyer balance
- create_deposit(): DEPOSIT or MEMBERSHIP order paid through the gateway
- get_order_status(): coarse public view of an order

The gateway call happens before the database transaction so no
transaction is held open across it; the order, its payment and the voucher
redemption are then written together.
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
import json
import logging
import uuid

from audit_service import AuditService
from fulfillment.balance_payment import BalancePaymentService
from fulfillment.errors import NotFoundError, ValidationError
from fulfillment.financial_precision import (
    to_decimal, to_float, safe_add, safe_subtract, calculate_percentage, round_amount, ceil_amount
)
from fulfillment.gateway import DuitkuGateway
from fulfillment.unit_of_work import UnitOfWork
from fulfillment.vouchers import VoucherService, VoucherQuote
from models import (
    Order, Payment, Deposit, OrderCreate, DepositCreate, OrderStatusView,
    OrderStatus, PaymentStatus, TransactionKind, SALDO_METHOD_CODE
)

logger = logging.getLogger(__name__)


def generate_order_id(prefix: str) -> str:
    return f"{prefix}{uuid.uuid4().hex[:12].upper()}"


# =============================================================================
# PRICING
# =============================================================================

@dataclass
class PriceQuote:
    price: float
    profit: float
    profit_amount: float
    tier: str
    is_flash_sale: bool
    base_price: float


ROLE_PROFIT_FIELDS = {
    "PLATINUM": ("profit_platinum", "Platinum"),
    "RESELLER": ("profit_reseller", "Reseller"),
    "MEMBER": ("profit", "Member"),
}


def flash_sale_active(product: Dict[str, Any], now: Optional[datetime] = None) -> bool:
    now = now or datetime.utcnow()
    expires = product.get("expired_flash_sale")
    return bool(
        product.get("is_flash_sale")
        and product.get("price_flash_sale")
        and expires
        and now < expires
    )


def calculate_price(product: Dict[str, Any], role: Optional[str] = None,
                    now: Optional[datetime] = None) -> PriceQuote:
    """
    Selling price for a product as seen by a buyer role.

    Fixed profits are added as-is; percentage profits are applied to the
    provider price. An active flash sale overrides every tier.
    """
    base = to_decimal(product.get("price_from_provider") or 0)

    if flash_sale_active(product, now):
        flash_price = to_decimal(product["price_flash_sale"])
        return PriceQuote(
            price=to_float(flash_price),
            profit=to_float(flash_price - base),
            profit_amount=to_float(flash_price - base),
            tier="FLASH_SALE",
            is_flash_sale=True,
            base_price=to_float(base)
        )

    field, tier = ROLE_PROFIT_FIELDS.get((role or "").upper(), ("profit", "REGULAR"))
    profit = to_decimal(product.get(field) or 0)

    if product.get("is_profit_fixed", True):
        profit_amount = profit
    else:
        profit_amount = round_amount(calculate_percentage(base, profit))

    return PriceQuote(
        price=to_float(round_amount(base + profit_amount)),
        profit=to_float(profit),
        profit_amount=to_float(profit_amount),
        tier=tier,
        is_flash_sale=False,
        base_price=to_float(base)
    )


@dataclass
class MethodQuote:
    method: Dict[str, Any]
    fee_amount: float
    total_amount: float


def calculate_fee(method: Dict[str, Any], amount) -> float:
    tax_type = method.get("tax_type")
    tax_admin = method.get("tax_admin")
    if not tax_type or not tax_admin:
        return 0.0
    if tax_type == "PERCENTAGE":
        return to_float(ceil_amount(calculate_percentage(amount, tax_admin)))
    if tax_type == "FIXED":
        return to_float(tax_admin)
    return 0.0


async def quote_payment_method(db: AsyncIOMotorDatabase, code: str, amount, session=None) -> MethodQuote:
    """Validate an active payment method against its limits and price its fee."""
    method = await db.payment_methods.find_one({"code": code, "is_active": True}, session=session)
    if not method:
        raise ValidationError(f"Payment method {code} not found or not available")

    amount = to_decimal(amount)
    if method.get("min_amount") and amount < to_decimal(method["min_amount"]):
        raise ValidationError(f"Amount below the minimum of {method['min_amount']} for {code}")
    if method.get("max_amount") and amount > to_decimal(method["max_amount"]):
        raise ValidationError(f"Amount above the maximum of {method['max_amount']} for {code}")

    fee = calculate_fee(method, amount)
    return MethodQuote(
        method=method,
        fee_amount=fee,
        total_amount=to_float(round_amount(safe_add(amount, fee)))
    )


# =============================================================================
# SERVICE
# =============================================================================

class OrderService:
    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        uow: UnitOfWork,
        gateway: DuitkuGateway,
        balance_payment: BalancePaymentService,
        vouchers: VoucherService,
        audit: Optional[AuditService] = None,
        order_id_prefix: str = "VAZZ",
        callback_url: Optional[str] = None,
        return_url: Optional[str] = None
    ):
        self.db = db
        self.uow = uow
        self.gateway = gateway
        self.balance_payment = balance_payment
        self.vouchers = vouchers
        self.audit = audit
        self.order_id_prefix = order_id_prefix
        self.callback_url = callback_url
        self.return_url = (return_url or "").rstrip("/")

    async def _log(self, order_id: str, status: str, **kwargs):
        if self.audit:
            await self.audit.log_transaction(order_id=order_id, transaction_type="CREATE", status=status, **kwargs)

    async def create_order(self, data: OrderCreate) -> Dict[str, Any]:
        order_id = generate_order_id(self.order_id_prefix)
        await self._log(order_id, "STARTED", user_id=data.game_id, product_code=data.product_code,
                        payment_method=data.method_code, ip=data.ip, user_agent=data.user_agent,
                        data=data.model_dump())

        user = None
        if data.username:
            user = await self.db.users.find_one({"username": data.username})
            if not user:
                raise NotFoundError(f"User {data.username} not found")

        product = await self.db.products.find_one({"provider_code": data.product_code})
        if not product:
            raise NotFoundError(f"Product {data.product_code} not found")

        quote = calculate_price(product, user.get("role") if user else None)
        voucher = None
        discount = to_decimal(0)
        if data.voucher_code:
            voucher = await self.vouchers.validate(
                data.voucher_code, quote.price, category_id=product.get("category_id")
            )
            discount = to_decimal(voucher.discount_amount)
        price = to_float(safe_subtract(quote.price, discount))

        order = Order(
            order_id=order_id,
            transaction_type=TransactionKind.TOPUP,
            price=price,
            purchase_price=quote.base_price,
            profit_amount=to_float(safe_subtract(quote.profit_amount, discount)),
            discount=to_float(discount),
            username=user["username"] if user else None,
            customer_id=data.game_id,
            zone=data.zone,
            product_code=data.product_code,
            service_name=product.get("service_name"),
            nickname=data.nickname,
            message="Order pending"
        )

        if data.method_code == SALDO_METHOD_CODE:
            return await self._create_saldo_order(order, data, voucher)

        method = await quote_payment_method(self.db, data.method_code, price)
        created = await self.gateway.create_transaction(
            merchant_order_id=order_id,
            amount=method.total_amount,
            product_details=product.get("service_name") or data.product_code,
            payment_method=data.method_code,
            customer_name=order.username,
            phone_number=data.whatsapp_number,
            return_url=f"{self.return_url}/invoice?invoice={order_id}" if self.return_url else None,
            callback_url=self.callback_url
        )

        payment = Payment(
            order_id=order_id,
            method=method.method.get("name") or data.method_code,
            price=price,
            fee_amount=method.fee_amount,
            total_amount=method.total_amount,
            buyer_number=data.whatsapp_number,
            payment_number=created.get("payment_number"),
            reference=created.get("reference")
        )
        order.profit_amount = to_float(safe_subtract(order.profit_amount, method.fee_amount))
        order.log = json.dumps(created, default=str)

        async with self.uow.transaction() as session:
            if voucher:
                await self.vouchers.redeem(
                    voucher, order_id, username=order.username,
                    whatsapp=data.whatsapp_number, session=session
                )
            await self.db.payments.insert_one(payment.model_dump(mode="python"), session=session)
            await self.db.orders.insert_one(order.model_dump(mode="python"), session=session)

        await self._log(order_id, "PENDING", user_id=data.game_id, product_code=data.product_code,
                        amount=method.total_amount, payment_method=payment.method,
                        reference=payment.reference, ip=data.ip, user_agent=data.user_agent)
        logger.info(f"[ORDER] Created {order_id} {data.product_code} {price} via {data.method_code}")

        return {
            "order_id": order_id,
            "product_name": order.service_name,
            "amount": quote.price,
            "discount": order.discount,
            "fee": method.fee_amount,
            "final_amount": method.total_amount,
            "payment_method": payment.method,
            "payment_number": payment.payment_number,
            "payment_url": created.get("paymentUrl"),
            "reference": payment.reference,
            "status": OrderStatus.PENDING.value
        }

    async def _create_saldo_order(self, order: Order, data: OrderCreate,
                                  voucher: Optional[VoucherQuote] = None) -> Dict[str, Any]:
        if not order.username:
            raise ValidationError("User authentication required for SALDO payment")

        payment = Payment(
            order_id=order.order_id,
            method=SALDO_METHOD_CODE,
            price=order.price,
            total_amount=order.price,
            buyer_number=data.whatsapp_number
        )

        transitions: List[Tuple[Dict, Dict]] = []
        async with self.uow.transaction() as session:
            if voucher:
                await self.vouchers.redeem(
                    voucher, order.order_id, username=order.username,
                    whatsapp=data.whatsapp_number, session=session
                )
            await self.db.payments.insert_one(payment.model_dump(mode="python"), session=session)
            order_doc = order.model_dump(mode="python")
            await self.db.orders.insert_one(order_doc, session=session)
            result = await self.balance_payment.pay_with_balance(
                order_doc, order.username, order.price, session=session, transitions=transitions
            )
        await self.balance_payment.workflow.log_transitions(transitions)

        await self._log(order.order_id, result["status"], user_id=data.game_id, product_code=data.product_code,
                        amount=order.price, payment_method=SALDO_METHOD_CODE, ip=data.ip,
                        user_agent=data.user_agent, data=result)

        return {
            "order_id": order.order_id,
            "product_name": order.service_name,
            "amount": order.price,
            "discount": order.discount,
            "fee": 0,
            "final_amount": order.price,
            "payment_method": SALDO_METHOD_CODE,
            **{k: v for k, v in result.items() if k != "order_id"}
        }

    async def create_deposit(self, data: DepositCreate, username: str) -> Dict[str, Any]:
        """Open a gateway payment that tops up (DEPOSIT) or upgrades (MEMBERSHIP) a user."""
        if data.type == TransactionKind.TOPUP:
            raise ValidationError("Use create_order for top-ups")

        user = await self.db.users.find_one({"username": username})
        if not user:
            raise NotFoundError(f"User {username} not found")

        method = await quote_payment_method(self.db, data.code, data.amount)
        is_membership = data.type == TransactionKind.MEMBERSHIP
        order_id = generate_order_id("MEM" if is_membership else "DEP")
        details = f"{'Membership' if is_membership else 'Deposit'} {username}"

        created = await self.gateway.create_transaction(
            merchant_order_id=order_id,
            amount=method.total_amount,
            product_details=details,
            payment_method=data.code,
            customer_name=username,
            phone_number=user.get("whatsapp"),
            return_url=f"{self.return_url}/profile" if self.return_url else None,
            callback_url=self.callback_url
        )
        log = json.dumps(created, default=str)
        method_name = method.method.get("name") or data.code

        payment = Payment(
            order_id=order_id,
            method=method_name,
            price=data.amount,
            fee_amount=method.fee_amount,
            total_amount=method.total_amount,
            buyer_number=user.get("whatsapp"),
            payment_number=created.get("payment_number"),
            reference=created.get("reference")
        )
        order = Order(
            order_id=order_id,
            transaction_type=data.type,
            price=data.amount,
            profit_amount=data.amount,
            username=username,
            service_name=details,
            log=log,
            message="Transaction pending"
        )

        async with self.uow.transaction() as session:
            if not is_membership:
                deposit = Deposit(
                    deposit_id=order_id,
                    username=username,
                    method=method_name,
                    amount=data.amount,
                    payment_reference=created.get("payment_number"),
                    log=log
                )
                await self.db.deposits.insert_one(deposit.model_dump(mode="python"), session=session)
            await self.db.payments.insert_one(payment.model_dump(mode="python"), session=session)
            await self.db.orders.insert_one(order.model_dump(mode="python"), session=session)

        logger.info(f"[DEPOSIT] Created {order_id} {data.type.value} {data.amount} for {username}")
        return {
            "order_id": order_id,
            "transaction_type": data.type.value,
            "amount": data.amount,
            "fee": method.fee_amount,
            "final_amount": method.total_amount,
            "payment_method": method_name,
            "payment_number": payment.payment_number,
            "reference": payment.reference,
            "status": PaymentStatus.PENDING.value
        }

    async def get_order_status(self, order_id: str) -> OrderStatusView:
        order = await self.db.orders.find_one({"order_id": order_id})
        if not order:
            raise NotFoundError(f"Order {order_id} not found")
        payment = await self.db.payments.find_one({"order_id": order_id}) or {}

        return OrderStatusView(
            order_id=order["order_id"],
            status=order["status"],
            message=order.get("message"),
            price=order["price"],
            service_name=order.get("service_name"),
            serial_number=order.get("serial_number"),
            customer_id=order.get("customer_id"),
            zone=order.get("zone"),
            nickname=order.get("nickname"),
            payment_method=payment.get("method"),
            payment_number=payment.get("payment_number"),
            payment_status=payment.get("status"),
            created_at=order.get("created_at"),
            updated_at=order.get("updated_at")
        )
