"""
PAYMENT GATEWAY ADAPTER (Duitku)

- create_transaction(): open a payment (inquiry) for an order
- get_transaction(): query payment status at the gateway
- verify_callback_signature(): authenticate an inbound notification

Signatures:
    inquiry   md5(merchantCode + merchantOrderId + paymentAmount + apiKey)
    status    md5(merchantCode + merchantOrderId + apiKey)
    callback  md5(merchantCode + amount + merchantOrderId + apiKey)
"""

from typing import Any, Dict, Optional
import hashlib
import hmac
import logging

import httpx

from fulfillment.errors import GatewayError
from fulfillment.financial_precision import format_amount

logger = logging.getLogger(__name__)

SUCCESS_CODE = "00"

# Which response field becomes the payment number, by method family
URL_PAYMENT_METHODS = ("DA", "OV", "SA")
VA_PAYMENT_METHODS = ("I1", "BR", "B1", "BT", "SP", "FT", "M2", "VA")


def _md5(value: str) -> str:
    return hashlib.md5(value.encode("utf-8")).hexdigest()


def pick_payment_number(method_code: str, data: Dict[str, Any]) -> str:
    if method_code in URL_PAYMENT_METHODS:
        return data.get("paymentUrl") or ""
    if method_code in VA_PAYMENT_METHODS:
        return data.get("vaNumber") or ""
    return data.get("qrString") or data.get("vaNumber") or data.get("paymentUrl") or ""


class DuitkuGateway:
    def __init__(
        self,
        http_client: httpx.AsyncClient,
        merchant_code: str,
        api_key: str,
        base_url: str = "https://passport.duitku.com/webapi/api/merchant",
        expiry_period: int = 60 * 24,
        timeout: float = 30.0
    ):
        self.http = http_client
        self.merchant_code = merchant_code
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.expiry_period = expiry_period
        self.timeout = timeout

    # =========================================================================
    # SIGNATURES
    # =========================================================================

    def sign_inquiry(self, merchant_order_id: str, amount) -> str:
        return _md5(f"{self.merchant_code}{merchant_order_id}{format_amount(amount)}{self.api_key}")

    def sign_status(self, merchant_order_id: str) -> str:
        return _md5(f"{self.merchant_code}{merchant_order_id}{self.api_key}")

    def sign_callback(self, merchant_order_id: str, amount) -> str:
        return _md5(f"{self.merchant_code}{format_amount(amount)}{merchant_order_id}{self.api_key}")

    def verify_callback_signature(self, merchant_code: str, merchant_order_id: str,
                                  amount, signature: str) -> bool:
        if merchant_code != self.merchant_code:
            return False
        expected = self.sign_callback(merchant_order_id, amount)
        return hmac.compare_digest(expected, (signature or "").lower())

    # =========================================================================
    # API CALLS
    # =========================================================================

    async def create_transaction(
        self,
        merchant_order_id: str,
        amount,
        product_details: str,
        payment_method: str,
        customer_name: Optional[str] = None,
        phone_number: Optional[str] = None,
        return_url: Optional[str] = None,
        callback_url: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Open a payment at the gateway.

        Returns the gateway body plus payment_number. Raises GatewayError on
        transport failure or a non-success status code.
        """
        payload = {
            "merchantCode": self.merchant_code,
            "paymentAmount": int(format_amount(amount)),
            "merchantOrderId": merchant_order_id,
            "productDetails": product_details,
            "paymentMethod": payment_method,
            "customerVaName": customer_name,
            "phoneNumber": phone_number,
            "returnUrl": return_url,
            "callbackUrl": callback_url,
            "signature": self.sign_inquiry(merchant_order_id, amount),
            "expiryPeriod": self.expiry_period,
        }

        try:
            response = await self.http.post(
                f"{self.base_url}/v2/inquiry",
                json=payload,
                timeout=self.timeout
            )
        except httpx.TimeoutException:
            logger.error(f"[GATEWAY] Inquiry timeout for {merchant_order_id}")
            raise GatewayError("Payment gateway timed out", {"merchantOrderId": merchant_order_id})
        except httpx.HTTPError as e:
            logger.error(f"[GATEWAY] Inquiry failed for {merchant_order_id}: {e}")
            raise GatewayError(f"Payment gateway unreachable: {e}", {"merchantOrderId": merchant_order_id})

        try:
            data = response.json()
        except ValueError:
            raise GatewayError(
                f"Invalid gateway response (HTTP {response.status_code})",
                {"merchantOrderId": merchant_order_id}
            )

        if response.status_code >= 400 or data.get("statusCode") != SUCCESS_CODE:
            logger.warning(f"[GATEWAY] Inquiry rejected for {merchant_order_id}: {data}")
            raise GatewayError(
                f"Failed to create payment: {data.get('statusMessage') or data.get('Message') or response.status_code}",
                {"merchantOrderId": merchant_order_id, "response": data}
            )

        data["payment_number"] = pick_payment_number(payment_method, data)
        logger.info(f"[GATEWAY] Payment created for {merchant_order_id}: ref={data.get('reference')}")
        return data

    async def get_transaction(self, merchant_order_id: str) -> Dict[str, Any]:
        payload = {
            "merchantCode": self.merchant_code,
            "merchantOrderId": merchant_order_id,
            "signature": self.sign_status(merchant_order_id),
        }
        try:
            response = await self.http.post(
                f"{self.base_url}/transactionStatus",
                json=payload,
                timeout=self.timeout
            )
            response.raise_for_status()
            return response.json()
        except httpx.TimeoutException:
            raise GatewayError("Payment gateway timed out", {"merchantOrderId": merchant_order_id})
        except httpx.HTTPError as e:
            raise GatewayError(f"Payment status query failed: {e}", {"merchantOrderId": merchant_order_id})
        except ValueError:
            raise GatewayError("Invalid gateway response", {"merchantOrderId": merchant_order_id})
