"""
Callback body decoding tests
"""
import json

import pytest

from fulfillment.callback_decoder import (
    decode_form, decode_json, decode_payment_callback, decode_provider_callback, decode_urlencoded
)
from fulfillment.errors import ValidationError


class TestPaymentCallbackDecoding:
    def test_json(self):
        body = json.dumps({
            "merchantCode": "D0001", "amount": "10000", "merchantOrderId": "VAZZ123",
            "resultCode": "00", "signature": "abc", "reference": "DK1"
        }).encode()

        callback = decode_json(body)

        assert callback.amount == 10000
        assert callback.refId == "DK1"
        assert callback.merchantOrderId == "VAZZ123"

    def test_urlencoded_snake_case(self):
        body = b"merchant_code=D0001&amount=10000&merchant_order_id=VAZZ123&result_code=00&signature=abc"

        callback = decode_urlencoded(body)

        assert callback.merchantCode == "D0001"
        assert callback.merchantOrderId == "VAZZ123"
        assert callback.resultCode == "00"

    def test_form_fields_are_trimmed(self):
        callback = decode_form({"merchantCode": " D0001 ", "amount": "5000", "merchantOrderId": "VAZZ9"})
        assert callback.merchantCode == "D0001"
        assert callback.amount == 5000

    def test_dispatch_by_content_type(self):
        body = b'{"merchantOrderId": "VAZZ123"}'
        assert decode_payment_callback("application/json; charset=utf-8", body).merchantOrderId == "VAZZ123"
        assert decode_payment_callback("", b"merchantOrderId=VAZZ7").merchantOrderId == "VAZZ7"

    def test_missing_fields_default_to_empty(self):
        callback = decode_json(b"{}")
        assert callback.signature == ""
        assert callback.amount == 0

    @pytest.mark.parametrize("body", [b"not json", b"[1, 2]"])
    def test_bad_json(self, body):
        with pytest.raises(ValidationError):
            decode_json(body)

    def test_bad_amount_type(self):
        with pytest.raises(ValidationError) as exc:
            decode_urlencoded(b"amount=ten&merchantOrderId=VAZZ1")
        assert exc.value.missing_fields == ["amount"]


class TestProviderCallbackDecoding:
    def test_report(self):
        body = json.dumps({"data": {"ref_id": "VAZZ123", "status": "Sukses", "sn": "SN1"}}).encode()

        callback = decode_provider_callback(body)

        assert callback.data.ref_id == "VAZZ123"
        assert callback.data.sn == "SN1"

    def test_empty_body_has_no_data(self):
        assert decode_provider_callback(b"").data is None

    @pytest.mark.parametrize("body", [b"<xml/>", b'"text"', b'{"data": "oops"}'])
    def test_invalid(self, body):
        with pytest.raises(ValidationError):
            decode_provider_callback(body)
