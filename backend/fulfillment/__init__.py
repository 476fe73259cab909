"""
Fulfillment core: order state machine, callback pipelines, settlement ledger
"""
from .financial_precision import (
    to_decimal,
    round_financial,
    to_float,
    validate_non_negative,
    validate_positive,
    safe_subtract,
    safe_add,
    calculate_percentage,
    FinancialPrecisionError,
    NegativeValueError
)

from .errors import (
    FulfillmentError,
    ValidationError,
    NotFoundError,
    DuplicateError,
    ForwardBlockedError,
    InsufficientBalanceError,
    InvariantViolationError,
    GatewayError
)

from .state_machine import (
    StateMachine,
    StateMachineError,
    InvalidTransitionError,
    TransitionHandlerError,
    GuardConditionError
)

from .unit_of_work import UnitOfWork
from .ledger import LedgerSynchronizer
from .idempotency import IdempotencyGuard, ForwardCheck
from .provider import (
    DigiflazzProvider,
    ForwardResult,
    ProviderError,
    ProviderTimeout,
    ProviderNetworkError,
    ProviderRejected,
    ProviderMalformedResponse
)
from .gateway import DuitkuGateway
from .order_state_machine import OrderWorkflow
from .payment_callback import PaymentCallbackService
from .provider_callback import ProviderCallbackService
from .balance_payment import BalancePaymentService
from .order_service import OrderService
from .manual_transactions import ManualTransactionService
from .ledger_integrity_job import LedgerIntegrityJob
from .indexes import ensure_indexes

__all__ = [
    # Precision
    'to_decimal', 'round_financial', 'to_float',
    'validate_non_negative', 'validate_positive',
    'safe_subtract', 'safe_add', 'calculate_percentage',
    'FinancialPrecisionError', 'NegativeValueError',
    # Errors
    'FulfillmentError', 'ValidationError', 'NotFoundError', 'DuplicateError',
    'ForwardBlockedError', 'InsufficientBalanceError', 'InvariantViolationError', 'GatewayError',
    # State machine
    'StateMachine', 'StateMachineError', 'InvalidTransitionError',
    'TransitionHandlerError', 'GuardConditionError',
    # Adapters
    'DigiflazzProvider', 'ForwardResult', 'ProviderError', 'ProviderTimeout',
    'ProviderNetworkError', 'ProviderRejected', 'ProviderMalformedResponse',
    'DuitkuGateway',
    # Pipelines
    'UnitOfWork', 'LedgerSynchronizer', 'IdempotencyGuard', 'ForwardCheck',
    'OrderWorkflow', 'PaymentCallbackService', 'ProviderCallbackService',
    'BalancePaymentService', 'OrderService', 'ManualTransactionService',
    'LedgerIntegrityJob', 'ensure_indexes'
]
