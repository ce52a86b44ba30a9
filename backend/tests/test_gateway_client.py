# Overview: Pytest coverage for the SSLCommerz gateway client wire format and error mapping.

from unittest.mock import patch

import pytest
import httpx

from paycore.services import gateway_client
from paycore.services.gateway_client import (
    GatewayCredentials,
    GatewayInitError,
    GatewayUnavailable,
)
from paycore.validation import ValidationError

from conftest import http_response


POST = "paycore.services.gateway_client.httpx.post"
GET = "paycore.services.gateway_client.httpx.get"

SANDBOX = GatewayCredentials(store_id="teststore", store_password="s3cret", is_live=False, enabled=True, source="config")
LIVE = GatewayCredentials(store_id="livestore", store_password="s3cret", is_live=True, enabled=True, source="override")


def payment_request(**overrides):
    request = {
        "tran_id": "TXN_1_ABCD",
        "total_amount": "500.00",
        "currency": "BDT",
        "success_url": "https://api.example.test/api/checkout/success",
        "fail_url": "https://api.example.test/api/checkout/fail",
        "cancel_url": "https://api.example.test/api/checkout/cancel",
        "ipn_url": "https://api.example.test/api/checkout/ipn",
        "shipping_method": "NO",
        "product_name": "Pro",
        "product_category": "SaaS Subscription",
        "product_profile": "non-physical-goods",
        "cus_name": "Rahim",
        "cus_email": "rahim@acme.test",
        "cus_add1": "N/A",
        "cus_city": "Dhaka",
        "cus_state": "N/A",
        "cus_postcode": "1207",
        "cus_country": "Bangladesh",
        "cus_phone": "01700000001",
        "value_a": "acme",
    }
    request.update(overrides)
    return request


class TestInitPayment:

    def test_posts_form_to_sandbox(self, app):
        body = {"status": "SUCCESS", "GatewayPageURL": "https://sandbox.sslcommerz.com/pay/x", "sessionkey": "KEY1"}
        with patch(POST, return_value=http_response(body)) as post:
            result = gateway_client.init_payment(SANDBOX, payment_request())

        assert result.gateway_page_url == "https://sandbox.sslcommerz.com/pay/x"
        assert result.session_key == "KEY1"

        url = post.call_args.args[0]
        form = post.call_args.kwargs["data"]
        assert url == "https://sandbox.sslcommerz.com/gwprocess/v4/api.php"
        assert form["store_id"] == "teststore"
        assert form["store_passwd"] == "s3cret"
        assert form["tran_id"] == "TXN_1_ABCD"
        assert form["cus_add2"] == ""
        assert form["value_a"] == "acme"
        assert "value_b" not in form
        assert post.call_args.kwargs["timeout"] == 20.0

    def test_live_base_url(self, app):
        body = {"status": "SUCCESS", "GatewayPageURL": "https://securepay.sslcommerz.com/pay/x"}
        with patch(POST, return_value=http_response(body)) as post:
            gateway_client.init_payment(LIVE, payment_request())
        assert post.call_args.args[0].startswith("https://securepay.sslcommerz.com/")

    def test_missing_required_field_sends_nothing(self, app):
        with patch(POST) as post:
            with pytest.raises(ValidationError) as exc:
                gateway_client.init_payment(SANDBOX, payment_request(cus_email="  "))
        post.assert_not_called()
        assert "cus_email" in exc.value.fields

    def test_failed_status_raises_init_error(self, app):
        body = {"status": "FAILED", "failedreason": "Store Credential Error Or Store is De-active"}
        with patch(POST, return_value=http_response(body)):
            with pytest.raises(GatewayInitError) as exc:
                gateway_client.init_payment(SANDBOX, payment_request())
        assert exc.value.reason == "Store Credential Error Or Store is De-active"

    def test_success_without_page_url_raises_init_error(self, app):
        with patch(POST, return_value=http_response({"status": "SUCCESS"})):
            with pytest.raises(GatewayInitError):
                gateway_client.init_payment(SANDBOX, payment_request())

    @pytest.mark.parametrize("error", [httpx.ReadTimeout("timed out"), httpx.ConnectError("refused")])
    def test_transport_errors_are_unavailable(self, app, error):
        with patch(POST, side_effect=error):
            with pytest.raises(GatewayUnavailable):
                gateway_client.init_payment(SANDBOX, payment_request())

    def test_server_error_is_unavailable(self, app):
        with patch(POST, return_value=http_response({}, status_code=502)):
            with pytest.raises(GatewayUnavailable):
                gateway_client.init_payment(SANDBOX, payment_request())

    def test_non_json_body_is_unavailable(self, app):
        with patch(POST, return_value=http_response(ValueError("no json"))):
            with pytest.raises(GatewayUnavailable):
                gateway_client.init_payment(SANDBOX, payment_request())


class TestVerifyPayment:

    def test_validator_query(self, app):
        body = {
            "status": "VALIDATED",
            "tran_id": "TXN_1_ABCD",
            "val_id": "v1",
            "amount": "500.00",
            "store_amount": "487.50",
            "currency": "BDT",
            "card_type": "VISA-Dutch Bangla",
            "bank_tran_id": "BANK123",
            "risk_level": 0,
            "risk_title": "Safe",
        }
        with patch(GET, return_value=http_response(body)) as get:
            result = gateway_client.verify_payment(SANDBOX, "v1")

        assert get.call_args.args[0] == "https://sandbox.sslcommerz.com/validator/api/validationserverAPI.php"
        params = get.call_args.kwargs["params"]
        assert params == {
            "val_id": "v1",
            "store_id": "teststore",
            "store_passwd": "s3cret",
            "v": "1",
            "format": "json",
        }
        assert result.is_valid
        assert result.tran_id == "TXN_1_ABCD"
        assert result.bank_transaction_id == "BANK123"
        assert result.risk_level == "0"
        assert result.store_amount == "487.50"

    @pytest.mark.parametrize("status,valid", [
        ("VALID", True),
        ("VALIDATED", True),
        ("valid", False),
        ("Validated", False),
        ("INVALID_TRANSACTION", False),
        ("FAILED", False),
        ("", False),
    ])
    def test_only_valid_statuses_accepted(self, app, status, valid):
        with patch(GET, return_value=http_response({"status": status})):
            assert gateway_client.verify_payment(SANDBOX, "v1").is_valid is valid

    def test_rejection_is_not_an_exception(self, app):
        with patch(GET, return_value=http_response({"status": "INVALID_TRANSACTION"})):
            result = gateway_client.verify_payment(SANDBOX, "forged")
        assert result.status == "INVALID_TRANSACTION"
        assert result.val_id == "forged"

    def test_timeout_is_unavailable(self, app):
        with patch(GET, side_effect=httpx.ConnectTimeout("timed out")):
            with pytest.raises(GatewayUnavailable):
                gateway_client.verify_payment(SANDBOX, "v1")

    def test_requires_validation_id(self, app):
        with patch(GET) as get:
            with pytest.raises(ValidationError):
                gateway_client.verify_payment(SANDBOX, "")
        get.assert_not_called()


def test_credentials_repr_hides_password():
    assert "s3cret" not in repr(SANDBOX)
