from __future__ import annotations

import logging
import time
from typing import Any

import requests

from directrent.config import paystack_base_url, paystack_secret_key

logger = logging.getLogger(__name__)

_TIMEOUT_SECONDS = 20


class PaystackNotConfigured(RuntimeError):
    pass


class PaymentGatewayError(RuntimeError):
    pass


def new_reference(user_id: int | str) -> str:
    return f"DR_{int(time.time() * 1000)}_{str(user_id)[:8]}"


def _headers() -> dict[str, str]:
    key = paystack_secret_key()
    if not key:
        raise PaystackNotConfigured("PAYSTACK_SECRET_KEY not configured")
    return {"Authorization": f"Bearer {key}", "Content-Type": "application/json"}


def _unwrap(resp: requests.Response) -> dict[str, Any]:
    try:
        body = resp.json() or {}
    except ValueError as e:
        raise PaymentGatewayError(f"Paystack returned non-JSON response (HTTP {resp.status_code})") from e
    if not body.get("status"):
        raise PaymentGatewayError(str(body.get("message") or f"Paystack request failed (HTTP {resp.status_code})"))
    return dict(body.get("data") or {})


def initialize_transaction(
    *,
    email: str,
    amount_cedis: int,
    reference: str,
    callback_url: str,
    metadata: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """
    Starts a Paystack checkout. Returns Paystack's `data` object
    (`authorization_url`, `access_code`, `reference`).
    """
    payload = {
        "email": email,
        # Paystack amounts are in pesewas.
        "amount": int(amount_cedis) * 100,
        "currency": "GHS",
        "reference": reference,
        "callback_url": callback_url,
        "metadata": metadata or {},
    }
    try:
        resp = requests.post(
            f"{paystack_base_url()}/transaction/initialize",
            json=payload,
            headers=_headers(),
            timeout=_TIMEOUT_SECONDS,
        )
    except requests.RequestException as e:
        logger.warning("Paystack initialize failed reference=%s: %s", reference, e)
        raise PaymentGatewayError("Payment gateway unreachable") from e
    return _unwrap(resp)


def verify_transaction(reference: str) -> dict[str, Any]:
    """
    Looks up a transaction by reference. The caller must check `data["status"] == "success"`.
    """
    try:
        resp = requests.get(
            f"{paystack_base_url()}/transaction/verify/{reference}",
            headers=_headers(),
            timeout=_TIMEOUT_SECONDS,
        )
    except requests.RequestException as e:
        logger.warning("Paystack verify failed reference=%s: %s", reference, e)
        raise PaymentGatewayError("Payment gateway unreachable") from e
    return _unwrap(resp)
