"""
Inbound payment-callback decoding.

One decode step per content type, all converging on PaymentCallback before
the pipeline runs. The gateway sends camelCase fields; some relays forward
snake_case, so both are accepted.
"""

from typing import Any, Dict, Mapping
from urllib.parse import parse_qsl
import json
import logging

from pydantic import ValidationError as PydanticValidationError

from fulfillment.errors import ValidationError
from models import PaymentCallback, ProviderCallback

logger = logging.getLogger(__name__)

FIELD_ALIASES = {
    "merchantCode": ("merchantCode", "merchant_code"),
    "amount": ("amount",),
    "refId": ("refId", "ref_id", "reference"),
    "merchantOrderId": ("merchantOrderId", "merchant_order_id"),
    "resultCode": ("resultCode", "result_code"),
    "signature": ("signature",),
}


def _normalize(fields: Mapping[str, Any]) -> Dict[str, Any]:
    normalized = {}
    for name, aliases in FIELD_ALIASES.items():
        for alias in aliases:
            value = fields.get(alias)
            if value not in (None, ""):
                normalized[name] = value.strip() if isinstance(value, str) else value
                break
    return normalized


def _build(fields: Mapping[str, Any]) -> PaymentCallback:
    normalized = _normalize(fields)
    try:
        return PaymentCallback(**normalized)
    except PydanticValidationError as e:
        bad = [".".join(str(p) for p in err["loc"]) for err in e.errors()]
        raise ValidationError("Invalid callback field types", missing_fields=bad)


def decode_json(body: bytes) -> PaymentCallback:
    try:
        data = json.loads(body or b"{}")
    except ValueError:
        raise ValidationError("Callback body is not valid JSON")
    if not isinstance(data, dict):
        raise ValidationError("Callback body must be a JSON object")
    return _build(data)


def decode_urlencoded(body: bytes) -> PaymentCallback:
    try:
        text = body.decode("utf-8")
    except UnicodeDecodeError:
        raise ValidationError("Callback body is not UTF-8")
    return _build(dict(parse_qsl(text, keep_blank_values=True)))


def decode_form(fields: Mapping[str, Any]) -> PaymentCallback:
    """Multipart form fields, already parsed by the web layer."""
    return _build({k: v for k, v in fields.items() if isinstance(v, str)})


def decode_payment_callback(content_type: str, body: bytes) -> PaymentCallback:
    """Pick the decoder from the Content-Type header."""
    content_type = (content_type or "").lower()
    if "application/json" in content_type:
        return decode_json(body)
    # form posts and untyped bodies are both key=value pairs
    return decode_urlencoded(body)


def decode_provider_callback(body: bytes) -> ProviderCallback:
    try:
        data = json.loads(body or b"{}")
    except ValueError:
        raise ValidationError("Provider callback body is not valid JSON")
    if not isinstance(data, dict):
        raise ValidationError("Provider callback body must be a JSON object")
    try:
        return ProviderCallback(**data)
    except PydanticValidationError:
        raise ValidationError("Invalid provider callback format")
