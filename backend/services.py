"""
Service wiring.

Everything the routes need is constructed once here, from explicitly
passed clients, and attached to app.state by the entry point. Nothing in
the fulfillment package holds a process-wide connection.
"""

from dataclasses import dataclass
from typing import Optional

import httpx
from fastapi import Request
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from audit_service import AuditService
from fulfillment.balance_payment import BalancePaymentService
from fulfillment.gateway import DuitkuGateway
from fulfillment.idempotency import IdempotencyGuard
from fulfillment.ledger import LedgerSynchronizer
from fulfillment.ledger_integrity_job import LedgerIntegrityJob
from fulfillment.manual_transactions import ManualTransactionService
from fulfillment.order_service import OrderService
from fulfillment.order_state_machine import OrderWorkflow
from fulfillment.payment_callback import PaymentCallbackService
from fulfillment.provider import DigiflazzProvider
from fulfillment.provider_callback import ProviderCallbackService
from fulfillment.unit_of_work import UnitOfWork
from fulfillment.vouchers import VoucherService
from settings import Settings


@dataclass
class ServiceContainer:
    client: AsyncIOMotorClient
    db: AsyncIOMotorDatabase
    audit: AuditService
    ledger: LedgerSynchronizer
    provider: DigiflazzProvider
    gateway: DuitkuGateway
    workflow: OrderWorkflow
    payment_callbacks: PaymentCallbackService
    provider_callbacks: ProviderCallbackService
    balance_payment: BalancePaymentService
    orders: OrderService
    manual_transactions: ManualTransactionService
    integrity_job: LedgerIntegrityJob
    http_client: Optional[httpx.AsyncClient] = None


def build_services(
    client: AsyncIOMotorClient,
    db: AsyncIOMotorDatabase,
    settings: Settings,
    http_client: httpx.AsyncClient
) -> ServiceContainer:
    audit = AuditService(db)
    uow = UnitOfWork(client, db)
    ledger = LedgerSynchronizer(db)
    provider = DigiflazzProvider(
        http_client,
        username=settings.digi_username,
        api_key=settings.digi_api_key,
        base_url=settings.digi_base_url,
        callback_url=settings.digi_callback_url,
        timeout=settings.provider_timeout_seconds
    )
    gateway = DuitkuGateway(
        http_client,
        merchant_code=settings.duitku_merchant_code,
        api_key=settings.duitku_api_key,
        base_url=settings.duitku_base_url,
        expiry_period=settings.duitku_expiry_period,
        timeout=settings.gateway_timeout_seconds
    )
    workflow = OrderWorkflow(db, ledger, provider, IdempotencyGuard(db), audit)
    balance_payment = BalancePaymentService(db, uow, workflow)

    return ServiceContainer(
        client=client,
        db=db,
        audit=audit,
        ledger=ledger,
        provider=provider,
        gateway=gateway,
        workflow=workflow,
        payment_callbacks=PaymentCallbackService(db, uow, workflow, gateway, audit),
        provider_callbacks=ProviderCallbackService(db, uow, workflow, audit),
        balance_payment=balance_payment,
        orders=OrderService(
            db, uow, gateway, balance_payment, VoucherService(db), audit,
            order_id_prefix=settings.order_id_prefix,
            callback_url=settings.duitku_callback_url,
            return_url=settings.duitku_return_url or settings.frontend_url
        ),
        manual_transactions=ManualTransactionService(db, uow, provider, ledger, audit),
        integrity_job=LedgerIntegrityJob(db),
        http_client=http_client
    )


def get_services(request: Request) -> ServiceContainer:
    return request.app.state.services
