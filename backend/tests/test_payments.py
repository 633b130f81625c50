import pytest
import requests

from directrent import payments
from directrent.payments import (
    PaymentGatewayError,
    PaystackNotConfigured,
    initialize_transaction,
    new_reference,
    verify_transaction,
)


class _Resp:
    def __init__(self, body, status_code=200):
        self._body = body
        self.status_code = status_code

    def json(self):
        if isinstance(self._body, Exception):
            raise self._body
        return self._body


@pytest.fixture
def paystack_key(monkeypatch):
    monkeypatch.setenv("PAYSTACK_SECRET_KEY", "sk_test_abc")
    monkeypatch.setenv("PAYSTACK_BASE_URL", "https://paystack.example/")


def test_initialize_sends_pesewas(monkeypatch, paystack_key):
    seen = {}

    def fake_post(url, json, headers, timeout):
        seen.update(url=url, json=json, headers=headers)
        return _Resp({"status": True, "data": {"authorization_url": "https://checkout/x", "access_code": "ac"}})

    monkeypatch.setattr(payments.requests, "post", fake_post)

    data = initialize_transaction(
        email="233241234567@directrent.gh",
        amount_cedis=100,
        reference="DR_1_7",
        callback_url="http://localhost:3000/pricing/callback",
    )

    assert data["authorization_url"] == "https://checkout/x"
    assert seen["url"] == "https://paystack.example/transaction/initialize"
    assert seen["json"]["amount"] == 10000
    assert seen["json"]["currency"] == "GHS"
    assert seen["headers"]["Authorization"] == "Bearer sk_test_abc"


def test_verify_unwraps_data(monkeypatch, paystack_key):
    monkeypatch.setattr(
        payments.requests,
        "get",
        lambda url, headers, timeout: _Resp({"status": True, "data": {"status": "success", "amount": 5000}}),
    )
    assert verify_transaction("DR_1_7") == {"status": "success", "amount": 5000}


def test_not_configured(monkeypatch):
    monkeypatch.delenv("PAYSTACK_SECRET_KEY", raising=False)
    with pytest.raises(PaystackNotConfigured):
        verify_transaction("DR_1_7")


def test_gateway_rejection_message_is_surfaced(monkeypatch, paystack_key):
    monkeypatch.setattr(
        payments.requests,
        "get",
        lambda url, headers, timeout: _Resp({"status": False, "message": "Transaction reference not found"}, 400),
    )
    with pytest.raises(PaymentGatewayError, match="reference not found"):
        verify_transaction("DR_missing")


def test_non_json_response(monkeypatch, paystack_key):
    monkeypatch.setattr(payments.requests, "get", lambda url, headers, timeout: _Resp(ValueError("html"), 502))
    with pytest.raises(PaymentGatewayError, match="HTTP 502"):
        verify_transaction("DR_1_7")


def test_network_failure(monkeypatch, paystack_key):
    def boom(*a, **kw):
        raise requests.ConnectionError("dns")

    monkeypatch.setattr(payments.requests, "post", boom)
    with pytest.raises(PaymentGatewayError, match="unreachable"):
        initialize_transaction(email="a@b.c", amount_cedis=50, reference="DR_2", callback_url="http://x")


def test_reference_format():
    ref = new_reference(1234567890123)
    assert ref.startswith("DR_")
    assert ref.endswith("_12345678")
