"""
INBOUND CALLBACK ROUTES

Thin adapters: decode the body into its typed model, hand it to the
pipeline, return the pipeline's CallbackResult. Business failures are
HTTP 200 with success=false so senders do not retry forever; only
structural problems and unexpected errors are HTTP 500.
"""

from fastapi import APIRouter, Depends, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
import logging

from fulfillment.callback_decoder import decode_form, decode_payment_callback, decode_provider_callback
from fulfillment.errors import ValidationError
from models import CallbackResult
from services import ServiceContainer, get_services

logger = logging.getLogger(__name__)

callback_router = APIRouter(prefix="/api/v1/callback", tags=["Callbacks"])


def _respond(result: CallbackResult) -> JSONResponse:
    return JSONResponse(status_code=result.status_code, content=jsonable_encoder(result.to_response()))


def _decode_failure(error: ValidationError) -> JSONResponse:
    logger.warning(f"[CALLBACK] Undecodable body: {error.message}")
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "message": error.message,
            "data": {"missing_fields": error.missing_fields}
        }
    )


@callback_router.post("/duitku")
async def duitku_callback(request: Request, services: ServiceContainer = Depends(get_services)):
    """Payment gateway notification (JSON, urlencoded or multipart)."""
    content_type = request.headers.get("content-type", "")
    try:
        if "multipart/form-data" in content_type.lower():
            callback = decode_form(await request.form())
        else:
            callback = decode_payment_callback(content_type, await request.body())
    except ValidationError as e:
        return _decode_failure(e)

    result = await services.payment_callbacks.process_payment_callback(callback)
    return _respond(result)


@callback_router.post("/digiflazz")
async def digiflazz_callback(request: Request, services: ServiceContainer = Depends(get_services)):
    """Provider delivery report."""
    try:
        callback = decode_provider_callback(await request.body())
    except ValidationError as e:
        return _decode_failure(e)

    result = await services.provider_callbacks.process_provider_callback(callback)
    return _respond(result)
