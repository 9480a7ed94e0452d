"""Thin pass-through to a Stripe-compatible payment-intent API."""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, List, Mapping, Optional, Tuple

import requests

__all__ = [
    "PaymentError",
    "WebhookSignatureError",
    "PaymentClient",
    "build_payment_client",
    "sign_webhook_payload",
    "to_minor_units",
    "verify_webhook_event",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.stripe.com/v1"
MAX_AMOUNT = Decimal("999999.99")
WEBHOOK_SIGNATURE_SCHEME = "v1"
WEBHOOK_TOLERANCE_SECONDS = 300


class PaymentError(RuntimeError):
    """Raised when the payment provider rejects or fails a request."""


def to_minor_units(amount: Any) -> int:
    """Convert a dollar amount to integer cents.

    Non-positive amounts and amounts above ``MAX_AMOUNT`` raise ``ValueError``.
    """
    if isinstance(amount, bool):
        raise ValueError("Invalid amount")
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError):
        raise ValueError("Invalid amount") from None
    if not value.is_finite() or value <= 0 or value > MAX_AMOUNT:
        raise ValueError("Invalid amount")
    try:
        cents = int((value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    except ArithmeticError:
        raise ValueError("Invalid amount") from None
    if cents <= 0:
        raise ValueError("Invalid amount")
    return cents


class WebhookSignatureError(PaymentError):
    """Raised when a webhook body does not carry a valid provider signature."""


def _compute_signature(payload: bytes, secret: str, timestamp: int) -> str:
    signed_payload = str(timestamp).encode("utf-8") + b"." + payload
    return hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()


def _signature_parts(header: str) -> Tuple[Optional[int], List[str]]:
    timestamp = None
    signatures = []
    for item in (header or "").split(","):
        key, _, value = item.strip().partition("=")
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                return None, []
        elif key == WEBHOOK_SIGNATURE_SCHEME:
            signatures.append(value)
    return timestamp, signatures


def verify_webhook_event(payload: bytes, signature_header: Optional[str], secret: str,
                         tolerance: int = WEBHOOK_TOLERANCE_SECONDS,
                         now: Optional[float] = None) -> Dict[str, Any]:
    """Check a ``Stripe-Signature`` header against ``payload`` and return the event.

    The header carries ``t=<unix time>`` and one or more ``v1=<hex digest>``
    entries; each digest is an HMAC-SHA256 of ``"<t>.<payload>"`` keyed with
    the endpoint secret. Events older than ``tolerance`` seconds are refused.
    """
    timestamp, signatures = _signature_parts(signature_header or "")
    if timestamp is None or not signatures:
        raise WebhookSignatureError("Webhook signature header is malformed")

    expected = _compute_signature(payload, secret, timestamp).encode("utf-8")
    if not any(hmac.compare_digest(expected, candidate.encode("utf-8")) for candidate in signatures):
        raise WebhookSignatureError("Webhook signature does not match")

    current = time.time() if now is None else now
    if tolerance and abs(current - timestamp) > tolerance:
        raise WebhookSignatureError("Webhook timestamp is outside the tolerance window")

    try:
        event = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise WebhookSignatureError("Webhook body is not valid JSON") from exc
    if not isinstance(event, dict) or not isinstance(event.get("type"), str):
        raise WebhookSignatureError("Webhook body is not an event")
    return event


def sign_webhook_payload(payload: bytes, secret: str, timestamp: int) -> str:
    """Build the ``Stripe-Signature`` header value the provider would send."""
    return f"t={timestamp},{WEBHOOK_SIGNATURE_SCHEME}={_compute_signature(payload, secret, timestamp)}"


class PaymentClient:
    def __init__(self, api_key: str, base_url: str = DEFAULT_BASE_URL,
                 session: Optional[requests.Session] = None, timeout: float = 30.0):
        if not api_key:
            raise ValueError("Payment API key is required")
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout

    def create_payment_intent(self, amount: Any, currency: str = "usd",
                              metadata: Optional[Mapping[str, Any]] = None) -> Dict[str, str]:
        cents = to_minor_units(amount)
        form: Dict[str, Any] = {
            "amount": cents,
            "currency": (currency or "usd").lower(),
            "automatic_payment_methods[enabled]": "true",
        }
        for key, value in (metadata or {}).items():
            form[f"metadata[{key}]"] = str(value)

        try:
            response = self.session.post(
                f"{self.base_url}/payment_intents",
                data=form,
                auth=(self.api_key, ""),
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise PaymentError(f"Payment provider unreachable: {exc}") from exc

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not response.ok:
            message = (body.get("error") or {}).get("message") if isinstance(body, dict) else None
            raise PaymentError(message or f"Payment provider returned status {response.status_code}")

        try:
            intent = {"clientSecret": body["client_secret"], "paymentIntentId": body["id"]}
        except (KeyError, TypeError) as exc:
            raise PaymentError("Payment provider response was missing the intent id") from exc
        LOGGER.info("Payment intent created: %s", intent["paymentIntentId"])
        return intent


def build_payment_client(env: Mapping[str, str]) -> Optional[PaymentClient]:
    api_key = (env.get("PAYMENT_API_KEY") or "").strip()
    if not api_key:
        return None
    base_url = (env.get("PAYMENT_API_BASE_URL") or "").strip() or DEFAULT_BASE_URL
    return PaymentClient(api_key, base_url=base_url)
