from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import datetime
from enum import Enum


# ============================================
# ENUMS
# ============================================
class OrderStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    PROCESS = "PROCESS"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


TERMINAL_STATUSES = (OrderStatus.SUCCESS.value, OrderStatus.FAILED.value)


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"


class TransactionKind(str, Enum):
    TOPUP = "TOPUP"
    DEPOSIT = "DEPOSIT"
    MEMBERSHIP = "MEMBERSHIP"


class ChangeType(str, Enum):
    CREDIT = "CREDIT"
    DEBIT = "DEBIT"


class ManualTransactionStatus(str, Enum):
    PENDING = "PENDING"
    PROCESS = "PROCESS"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class DiscountType(str, Enum):
    PERCENTAGE = "PERCENTAGE"
    FIXED = "FIXED"


class CallbackOutcome(str, Enum):
    PROCESSED = "PROCESSED"
    DUPLICATE = "DUPLICATE"
    BLOCKED = "BLOCKED"
    REJECTED = "REJECTED"
    ERROR = "ERROR"


# Settlement counterparties tracked in platform_balances
GATEWAY_COUNTERPARTY = "Duitku"
PROVIDER_COUNTERPARTY = "Digiflazz"
BALANCE_COUNTERPARTY = "Saldo Member"

SALDO_METHOD_CODE = "SALDO"


# ============================================
# ORDER (TRANSACTION) MODEL
# ============================================
class Order(BaseModel):
    order_id: str
    reference_id: Optional[str] = None  # Set once forwarded; idempotency key
    transaction_type: TransactionKind
    status: OrderStatus = OrderStatus.PENDING
    price: float
    purchase_price: float = 0
    profit_amount: float = 0
    discount: float = 0
    username: Optional[str] = None
    customer_id: Optional[str] = None  # Game account id sent to the provider
    zone: Optional[str] = None  # Game server id
    product_code: Optional[str] = None
    service_name: Optional[str] = None
    nickname: Optional[str] = None
    serial_number: Optional[str] = None
    log: Optional[str] = None  # Opaque provider/gateway payload
    message: Optional[str] = None
    success_report_sent: bool = False
    lock_version: int = 0
    state_history: List[Dict[str, Any]] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=lambda: datetime.utcnow())
    updated_at: datetime = Field(default_factory=lambda: datetime.utcnow())

    class Config:
        use_enum_values = True


# ============================================
# PAYMENT MODEL
# ============================================
class Payment(BaseModel):
    order_id: str
    status: PaymentStatus = PaymentStatus.PENDING
    method: str
    price: float
    fee_amount: float = 0
    total_amount: float
    buyer_number: Optional[str] = None
    payment_number: Optional[str] = None
    reference: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.utcnow())
    updated_at: datetime = Field(default_factory=lambda: datetime.utcnow())

    class Config:
        use_enum_values = True


class Deposit(BaseModel):
    deposit_id: str
    username: str
    method: str
    amount: float
    status: PaymentStatus = PaymentStatus.PENDING
    payment_reference: Optional[str] = None
    log: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.utcnow())
    updated_at: datetime = Field(default_factory=lambda: datetime.utcnow())

    class Config:
        use_enum_values = True


# ============================================
# LEDGER MODELS
# ============================================
class PlatformBalance(BaseModel):
    platform_name: str
    account_name: Optional[str] = None
    balance: float = 0
    last_sync_at: Optional[datetime] = None


class BalanceHistory(BaseModel):
    platform_id: Any
    batch_id: str  # order id
    balance_before: float
    balance_after: float
    amount_changed: float
    change_type: ChangeType
    payment_method: Optional[str] = None
    description: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.utcnow())

    class Config:
        use_enum_values = True


# ============================================
# VOUCHER MODELS
# ============================================
class Voucher(BaseModel):
    code: str
    discount_type: DiscountType
    discount_value: float
    max_discount: Optional[float] = None  # Cap for PERCENTAGE vouchers
    min_purchase: Optional[float] = None
    usage_limit: Optional[int] = None
    usage_count: int = 0
    is_active: bool = True
    is_for_all_categories: bool = True
    category_ids: List[str] = Field(default_factory=list)
    start_date: Optional[datetime] = None
    expiry_date: Optional[datetime] = None
    created_at: datetime = Field(default_factory=lambda: datetime.utcnow())
    updated_at: datetime = Field(default_factory=lambda: datetime.utcnow())

    class Config:
        use_enum_values = True


class VoucherUsage(BaseModel):
    voucher_code: str
    order_id: str
    amount: float
    discount_amount: float
    username: Optional[str] = None
    whatsapp: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.utcnow())


class ManualTransaction(BaseModel):
    manual_transaction_id: str
    order_id: str
    status: ManualTransactionStatus = ManualTransactionStatus.PENDING
    customer_id: Optional[str] = None
    zone: Optional[str] = None
    nickname: Optional[str] = None
    product_code: Optional[str] = None
    product_name: Optional[str] = None
    price: float = 0
    purchase_price: float = 0
    profit_amount: float = 0
    whatsapp: Optional[str] = None
    created_by: str
    reason: Optional[str] = None
    serial_number: Optional[str] = None
    log: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.utcnow())
    updated_at: datetime = Field(default_factory=lambda: datetime.utcnow())

    class Config:
        use_enum_values = True


# ============================================
# INBOUND CALLBACKS
# ============================================
class PaymentCallback(BaseModel):
    """Payment gateway notification, decoded from JSON or form bodies."""
    merchantCode: str = ""
    amount: float = 0
    refId: str = ""
    merchantOrderId: str = ""
    resultCode: str = ""
    signature: str = ""


class ProviderCallbackData(BaseModel):
    ref_id: str = ""
    buyer_sku_code: Optional[str] = None
    customer_no: Optional[str] = None
    status: str = ""
    message: Optional[str] = None
    sn: Optional[str] = None


class ProviderCallback(BaseModel):
    data: Optional[ProviderCallbackData] = None


class CallbackResult(BaseModel):
    success: bool
    message: str
    data: Optional[Dict[str, Any]] = None
    outcome: CallbackOutcome = CallbackOutcome.PROCESSED
    error_type: Optional[str] = None
    status_code: int = 200

    def to_response(self) -> Dict[str, Any]:
        return {"success": self.success, "message": self.message, "data": self.data}


# ============================================
# ORDER / DEPOSIT REQUESTS
# ============================================
class OrderCreate(BaseModel):
    product_code: str
    method_code: str
    game_id: str
    zone: Optional[str] = None
    whatsapp_number: str
    nickname: Optional[str] = None
    voucher_code: Optional[str] = None
    username: Optional[str] = None
    ip: Optional[str] = None
    user_agent: Optional[str] = None


class DepositCreate(BaseModel):
    amount: float = Field(..., gt=0)
    code: str
    type: TransactionKind = TransactionKind.DEPOSIT
    username: Optional[str] = None


class ManualTransactionCreate(BaseModel):
    order_id: str
    reason: str
    whatsapp: Optional[str] = None
    customer_id: Optional[str] = None
    zone: Optional[str] = None
    nickname: Optional[str] = None
    product_name: Optional[str] = None


class OrderStatusView(BaseModel):
    """Coarse public view of an order; no provider internals."""
    order_id: str
    status: str
    message: Optional[str] = None
    price: float
    service_name: Optional[str] = None
    serial_number: Optional[str] = None
    customer_id: Optional[str] = None
    zone: Optional[str] = None
    nickname: Optional[str] = None
    payment_method: Optional[str] = None
    payment_number: Optional[str] = None
    payment_status: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ManualTransactionStatusUpdate(BaseModel):
    status: ManualTransactionStatus
    serial_number: Optional[str] = None
