"""
ORDER, DEPOSIT AND OPERATOR ROUTES

Buyers create orders and poll their status; operators retry stuck or
failed top-ups and check the ledger. Service errors are mapped to
HTTPException here and nowhere else.
"""

from fastapi import APIRouter, HTTPException, Request, status, Depends, Query
from bson import ObjectId
from datetime import datetime
from typing import Optional, Dict, Any
import logging

from auth import get_current_user, get_optional_user, require_admin
from fulfillment.errors import (
    FulfillmentError, ValidationError, NotFoundError, DuplicateError,
    InsufficientBalanceError, GatewayError
)
from models import (
    OrderCreate, DepositCreate, ManualTransactionCreate, ManualTransactionStatusUpdate,
    ManualTransactionStatus
)
from services import ServiceContainer, get_services

logger = logging.getLogger(__name__)


def serialize_doc(doc: Dict[str, Any]) -> Dict[str, Any]:
    """Serialize MongoDB document for JSON response (ObjectId, datetime)"""
    if doc is None:
        return None
    result = {}
    for key, value in doc.items():
        if isinstance(value, ObjectId):
            result[key] = str(value)
        elif isinstance(value, datetime):
            result[key] = value.isoformat()
        elif isinstance(value, dict):
            result[key] = serialize_doc(value)
        elif isinstance(value, list):
            result[key] = [serialize_doc(item) if isinstance(item, dict) else item for item in value]
        else:
            result[key] = value
    return result


transaction_router = APIRouter(prefix="/api/v1", tags=["Transactions"])

ERROR_STATUS = [
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (DuplicateError, status.HTTP_409_CONFLICT),
    (InsufficientBalanceError, status.HTTP_400_BAD_REQUEST),
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (GatewayError, status.HTTP_502_BAD_GATEWAY),
]


def to_http_error(error: FulfillmentError) -> HTTPException:
    for error_class, status_code in ERROR_STATUS:
        if isinstance(error, error_class):
            return HTTPException(status_code=status_code, detail=error.message)
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=error.message)


# ============================================
# ORDERS
# ============================================

@transaction_router.post("/transactions/order", status_code=status.HTTP_201_CREATED)
async def create_order(
    order_data: OrderCreate,
    request: Request,
    current_user: Optional[dict] = Depends(get_optional_user),
    services: ServiceContainer = Depends(get_services)
):
    """Create a top-up order (gateway payment or SALDO)."""
    order_data.username = current_user["username"] if current_user else None
    order_data.ip = request.client.host if request.client else None
    order_data.user_agent = request.headers.get("user-agent")

    try:
        result = await services.orders.create_order(order_data)
    except FulfillmentError as e:
        logger.warning(f"[ORDER] Create failed for {order_data.product_code}: {e.message}")
        raise to_http_error(e)

    return {"success": True, "message": "Order created", "data": result}


@transaction_router.get("/transactions/{order_id}")
async def get_order_status(order_id: str, services: ServiceContainer = Depends(get_services)):
    try:
        view = await services.orders.get_order_status(order_id)
    except FulfillmentError as e:
        raise to_http_error(e)
    return {"success": True, "data": view}


@transaction_router.post("/deposits", status_code=status.HTTP_201_CREATED)
async def create_deposit(
    deposit_data: DepositCreate,
    current_user: dict = Depends(get_current_user),
    services: ServiceContainer = Depends(get_services)
):
    """Deposit to balance, or buy a membership tier."""
    try:
        result = await services.orders.create_deposit(deposit_data, current_user["username"])
    except FulfillmentError as e:
        raise to_http_error(e)
    return {"success": True, "message": "Deposit created", "data": result}


# ============================================
# OPERATOR: MANUAL RETRIES
# ============================================

@transaction_router.post("/transactions/retransactions", status_code=status.HTTP_201_CREATED)
async def create_manual_transaction(
    retry_data: ManualTransactionCreate,
    current_user: dict = Depends(require_admin),
    services: ServiceContainer = Depends(get_services)
):
    try:
        result = await services.manual_transactions.create(retry_data, current_user["username"])
    except FulfillmentError as e:
        raise to_http_error(e)

    if not result["success"]:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=result["message"])
    result["data"] = serialize_doc(result["data"])
    return result


@transaction_router.get("/transactions/manual/retransactions")
async def list_manual_transactions(
    status_filter: Optional[ManualTransactionStatus] = Query(None, alias="status"),
    created_by: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    current_user: dict = Depends(require_admin),
    services: ServiceContainer = Depends(get_services)
):
    result = await services.manual_transactions.list(
        status=status_filter.value if status_filter else None,
        created_by=created_by,
        page=page,
        limit=limit
    )
    result["data"] = [serialize_doc(item) for item in result["data"]]
    return result


@transaction_router.get("/transactions/manual/retransactions/{manual_id}")
async def get_manual_transaction(
    manual_id: str,
    current_user: dict = Depends(require_admin),
    services: ServiceContainer = Depends(get_services)
):
    try:
        return serialize_doc(await services.manual_transactions.get(manual_id))
    except FulfillmentError as e:
        raise to_http_error(e)


@transaction_router.patch("/transactions/manual/retransactions/{manual_id}")
async def update_manual_transaction(
    manual_id: str,
    update_data: ManualTransactionStatusUpdate,
    current_user: dict = Depends(require_admin),
    services: ServiceContainer = Depends(get_services)
):
    try:
        manual = await services.manual_transactions.update_status(
            manual_id, update_data.status.value, update_data.serial_number
        )
    except FulfillmentError as e:
        raise to_http_error(e)
    return serialize_doc(manual)


# ============================================
# OPERATOR: INSPECTION
# ============================================

@transaction_router.get("/transactions/{order_id}/logs")
async def get_order_logs(
    order_id: str,
    limit: int = Query(50, ge=1, le=500),
    current_user: dict = Depends(require_admin),
    services: ServiceContainer = Depends(get_services)
):
    logs = await services.audit.get_order_logs(order_id, limit=limit)
    return {"order_id": order_id, "logs": [serialize_doc(log) for log in logs]}


@transaction_router.get("/ledger/integrity")
async def check_ledger_integrity(
    current_user: dict = Depends(require_admin),
    services: ServiceContainer = Depends(get_services)
) -> Dict[str, Any]:
    """Run the ledger integrity job on demand (report only)."""
    return await services.integrity_job.run()
