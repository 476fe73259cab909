"""
Upstream adapter tests
Testing: provider request signing and failure taxonomy, gateway signatures and inquiry
"""
import hashlib

import httpx
import pytest

from fakes import UpstreamStub, provider_signature
from fulfillment.errors import GatewayError
from fulfillment.gateway import DuitkuGateway, pick_payment_number
from fulfillment.provider import DigiflazzProvider, build_customer_no


def make_provider(upstream, **kwargs):
    http = httpx.AsyncClient(transport=httpx.MockTransport(upstream))
    return DigiflazzProvider(http, username="digiuser", api_key="digikey", **kwargs)


def make_gateway(handler):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return DuitkuGateway(http, merchant_code="D0001", api_key="duitku-secret")


class TestProviderAdapter:
    """DigiflazzProvider.forward"""

    def test_customer_number_joins_server_id(self):
        assert build_customer_no("123456789", "2001") == "1234567892001"
        assert build_customer_no(" 123456789 ", None) == "123456789"
        assert build_customer_no("123456789", "  ") == "123456789"

    async def test_request_is_signed(self, settings):
        upstream = UpstreamStub()
        provider = make_provider(upstream, callback_url="https://shop.example/cb")

        await provider.forward("VAZZ123", "123456789", "ML86", "2001")

        payload = upstream.provider_calls[0]
        expected = hashlib.md5(b"digiuserdigikeyVAZZ123").hexdigest()
        assert payload["sign"] == expected == provider_signature(settings, "VAZZ123")
        assert payload["ref_id"] == "VAZZ123"
        assert payload["customer_no"] == "1234567892001"
        assert payload["buyer_sku_code"] == "ML86"
        assert payload["cb_url"] == "https://shop.example/cb"

    async def test_accepted_returns_reference_and_cost(self):
        upstream = UpstreamStub()
        upstream.provider_price = 8750
        provider = make_provider(upstream)

        result = await provider.forward("VAZZ123", "123456789", "ML86")

        assert result.ok
        assert result.provider_ref == "VAZZ123"
        assert result.cost == 8750
        assert result.status == "Pending"
        assert result.error is None

    async def test_timeout(self):
        upstream = UpstreamStub()
        upstream.provider_exception = httpx.ReadTimeout
        provider = make_provider(upstream, timeout=1.5)

        result = await provider.forward("VAZZ123", "123456789", "ML86")

        assert not result.ok
        assert result.error_kind == "Timeout"
        assert "1.5" in result.error.message

    async def test_network_error(self):
        upstream = UpstreamStub()
        upstream.provider_exception = httpx.ConnectError
        provider = make_provider(upstream)

        result = await provider.forward("VAZZ123", "123456789", "ML86")

        assert not result.ok
        assert result.error_kind == "NetworkError"

    async def test_rejection_keeps_provider_code(self):
        upstream = UpstreamStub()
        upstream.provider_status = "Gagal"
        upstream.provider_rc = "40"
        provider = make_provider(upstream)

        result = await provider.forward("VAZZ123", "123456789", "ML86")

        assert not result.ok
        assert result.error_kind == "ProviderRejected"
        assert result.error.code == "40"
        assert result.to_log()["error"]["code"] == "40"

    async def test_non_json_body_is_malformed(self):
        upstream = UpstreamStub()
        upstream.provider_body = "<html>Bad Gateway</html>"
        provider = make_provider(upstream)

        result = await provider.forward("VAZZ123", "123456789", "ML86")

        assert not result.ok
        assert result.error_kind == "MalformedResponse"

    async def test_missing_status_is_malformed(self):
        upstream = UpstreamStub()
        upstream.provider_body = {"data": {"ref_id": "VAZZ123"}}
        provider = make_provider(upstream)

        result = await provider.forward("VAZZ123", "123456789", "ML86")

        assert result.error_kind == "MalformedResponse"

    async def test_invalid_price_is_malformed(self):
        upstream = UpstreamStub()
        upstream.provider_body = {"data": {"ref_id": "VAZZ123", "status": "Pending", "price": "n/a"}}
        provider = make_provider(upstream)

        result = await provider.forward("VAZZ123", "123456789", "ML86")

        assert result.error_kind == "MalformedResponse"


class TestGatewaySignatures:
    """DuitkuGateway signature helpers"""

    def test_callback_signature(self):
        gateway = make_gateway(UpstreamStub())
        expected = hashlib.md5(b"D000110000VAZZ123duitku-secret").hexdigest()

        assert gateway.sign_callback("VAZZ123", 10000.0) == expected
        assert gateway.verify_callback_signature("D0001", "VAZZ123", 10000, expected)
        assert gateway.verify_callback_signature("D0001", "VAZZ123", 10000, expected.upper())

    def test_callback_signature_rejections(self):
        gateway = make_gateway(UpstreamStub())
        signature = gateway.sign_callback("VAZZ123", 10000)

        assert not gateway.verify_callback_signature("D9999", "VAZZ123", 10000, signature)
        assert not gateway.verify_callback_signature("D0001", "VAZZ123", 10001, signature)
        assert not gateway.verify_callback_signature("D0001", "VAZZ124", 10000, signature)
        assert not gateway.verify_callback_signature("D0001", "VAZZ123", 10000, "")

    def test_inquiry_signature(self):
        gateway = make_gateway(UpstreamStub())
        expected = hashlib.md5(b"D0001VAZZ12310070duitku-secret").hexdigest()
        assert gateway.sign_inquiry("VAZZ123", 10070) == expected

    def test_payment_number_by_method(self):
        data = {"paymentUrl": "https://pay", "vaNumber": "8801", "qrString": "0002"}
        assert pick_payment_number("OV", data) == "https://pay"
        assert pick_payment_number("BR", data) == "8801"
        assert pick_payment_number("NQ", data) == "0002"
        assert pick_payment_number("NQ", {"vaNumber": "8801"}) == "8801"


class TestGatewayInquiry:
    """DuitkuGateway.create_transaction"""

    async def test_creates_payment(self):
        upstream = UpstreamStub()
        gateway = make_gateway(upstream)

        data = await gateway.create_transaction("VAZZ123", 10070.0, "86 Diamonds", "NQ")

        payload = upstream.gateway_calls[0]
        assert payload["paymentAmount"] == 10070
        assert payload["merchantOrderId"] == "VAZZ123"
        assert payload["signature"] == gateway.sign_inquiry("VAZZ123", 10070)
        assert data["reference"] == "DKVAZZ123"
        assert data["payment_number"] == "00020101021226"

    async def test_non_success_code_raises(self):
        upstream = UpstreamStub()
        upstream.gateway_body = {"statusCode": "01", "statusMessage": "Payment method not available"}
        gateway = make_gateway(upstream)

        with pytest.raises(GatewayError) as exc:
            await gateway.create_transaction("VAZZ123", 10000, "86 Diamonds", "NQ")
        assert "not available" in exc.value.message

    async def test_timeout_raises(self):
        def handler(request):
            raise httpx.ConnectTimeout("slow", request=request)

        gateway = make_gateway(handler)
        with pytest.raises(GatewayError):
            await gateway.create_transaction("VAZZ123", 10000, "86 Diamonds", "NQ")

    async def test_non_json_raises(self):
        gateway = make_gateway(lambda request: httpx.Response(502, text="Bad Gateway"))
        with pytest.raises(GatewayError):
            await gateway.create_transaction("VAZZ123", 10000, "86 Diamonds", "NQ")

    async def test_status_query(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            return httpx.Response(200, json={"merchantOrderId": "VAZZ123", "statusCode": "00"})

        gateway = make_gateway(handler)
        data = await gateway.get_transaction("VAZZ123")

        assert seen["path"].endswith("/transactionStatus")
        assert data["statusCode"] == "00"
