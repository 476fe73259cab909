"""
FULFILLMENT PROVIDER ADAPTER (Digiflazz)

Signed top-up requests to the provider with a hard deadline. Every failure
mode is folded into a ForwardResult instead of being raised, so the
pipeline can map it to the PAID -> FAILED transition:

    result = await provider.forward(order_id, buyer_id, product_code, server_id)
    if result.ok:
        ... result.provider_ref, result.cost, result.status
    else:
        ... result.error (ProviderTimeout / ProviderNetworkError /
                          ProviderRejected / ProviderMalformedResponse)
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional
import hashlib
import logging

import httpx

logger = logging.getLogger(__name__)

# Provider statuses that mean "accepted, being delivered"
ACCEPTED_STATUSES = ("pending", "sukses", "success")


# =============================================================================
# FAILURE TAXONOMY
# =============================================================================

class ProviderError(Exception):
    kind = "ProviderError"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ProviderTimeout(ProviderError):
    kind = "Timeout"


class ProviderNetworkError(ProviderError):
    kind = "NetworkError"


class ProviderRejected(ProviderError):
    kind = "ProviderRejected"

    def __init__(self, code: Optional[str], message: str):
        self.code = code
        super().__init__(message)


class ProviderMalformedResponse(ProviderError):
    kind = "MalformedResponse"


@dataclass
class ForwardResult:
    ok: bool
    provider_ref: Optional[str] = None
    cost: float = 0
    status: Optional[str] = None
    serial_number: Optional[str] = None
    message: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)
    error: Optional[ProviderError] = None

    @property
    def error_kind(self) -> Optional[str]:
        return self.error.kind if self.error else None

    def to_log(self) -> Dict[str, Any]:
        log = dict(self.raw)
        if self.error:
            log["error"] = {"kind": self.error.kind, "message": self.error.message}
            if isinstance(self.error, ProviderRejected):
                log["error"]["code"] = self.error.code
        return log


def sign_request(username: str, api_key: str, ref_id: str) -> str:
    """md5(username + api_key + ref_id), hex encoded."""
    return hashlib.md5(f"{username}{api_key}{ref_id}".encode("utf-8")).hexdigest()


def build_customer_no(buyer_id: str, server_id: Optional[str] = None) -> str:
    buyer = (buyer_id or "").strip()
    server = (server_id or "").strip()
    return f"{buyer}{server}" if server else buyer


class DigiflazzProvider:
    """
    Top-up provider client.

    The httpx client is injected; its lifecycle belongs to the entry point.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        username: str,
        api_key: str,
        base_url: str = "https://api.digiflazz.com/v1",
        callback_url: Optional[str] = None,
        timeout: float = 45.0
    ):
        self.http = http_client
        self.username = username
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.callback_url = callback_url
        self.timeout = timeout

    def sign(self, ref_id: str) -> str:
        return sign_request(self.username, self.api_key, ref_id)

    def build_payload(
        self,
        order_ref: str,
        buyer_id: str,
        product_code: str,
        server_id: Optional[str] = None
    ) -> Dict[str, Any]:
        payload = {
            "username": self.username,
            "buyer_sku_code": product_code,
            "customer_no": build_customer_no(buyer_id, server_id),
            "ref_id": order_ref,
            "sign": self.sign(order_ref),
        }
        if self.callback_url:
            payload["cb_url"] = self.callback_url
        return payload

    async def forward(
        self,
        order_ref: str,
        buyer_id: str,
        product_code: str,
        server_id: Optional[str] = None
    ) -> ForwardResult:
        """Send one top-up request. Never raises for upstream failures."""
        payload = self.build_payload(order_ref, buyer_id, product_code, server_id)
        logger.info(f"[PROVIDER] Forwarding {order_ref} sku={product_code}")
        logger.debug(f"[PROVIDER] Payload for {order_ref}: {payload}")

        try:
            response = await self.http.post(
                f"{self.base_url}/transaction",
                json=payload,
                timeout=self.timeout
            )
        except httpx.TimeoutException:
            logger.error(f"[PROVIDER] Timeout after {self.timeout}s for {order_ref}")
            return ForwardResult(
                ok=False,
                error=ProviderTimeout(f"Provider timed out after {self.timeout}s")
            )
        except httpx.HTTPError as e:
            logger.error(f"[PROVIDER] Network error for {order_ref}: {e}")
            return ForwardResult(ok=False, error=ProviderNetworkError(str(e)))

        return self.parse_response(order_ref, response)

    def parse_response(self, order_ref: str, response: httpx.Response) -> ForwardResult:
        try:
            body = response.json()
        except ValueError:
            logger.error(
                f"[PROVIDER] Non-JSON response for {order_ref}: "
                f"{response.status_code} {response.text[:200]}"
            )
            return ForwardResult(
                ok=False,
                error=ProviderMalformedResponse(f"Non-JSON response (HTTP {response.status_code})")
            )

        data = body.get("data") if isinstance(body, dict) else None
        if not isinstance(data, dict) or not data.get("status"):
            logger.error(f"[PROVIDER] Malformed response for {order_ref}: {body}")
            return ForwardResult(
                ok=False,
                raw=body if isinstance(body, dict) else {},
                error=ProviderMalformedResponse("Response has no data.status")
            )

        status = str(data["status"]).strip()
        message = data.get("message")

        if response.status_code >= 400 or status.lower() not in ACCEPTED_STATUSES:
            logger.warning(
                f"[PROVIDER] Rejected {order_ref}: status={status} rc={data.get('rc')} {message}"
            )
            return ForwardResult(
                ok=False,
                status=status,
                message=message,
                raw=data,
                error=ProviderRejected(data.get("rc"), message or f"Provider status {status}")
            )

        provider_ref = data.get("ref_id") or order_ref
        try:
            cost = float(data.get("price") or 0)
        except (TypeError, ValueError):
            return ForwardResult(
                ok=False,
                raw=data,
                error=ProviderMalformedResponse(f"Invalid price: {data.get('price')!r}")
            )

        logger.info(f"[PROVIDER] Accepted {order_ref}: status={status} ref={provider_ref} cost={cost}")
        return ForwardResult(
            ok=True,
            provider_ref=provider_ref,
            cost=cost,
            status=status,
            serial_number=data.get("sn") or None,
            message=message,
            raw=data
        )
