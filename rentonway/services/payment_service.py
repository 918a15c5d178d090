from __future__ import annotations

import hashlib
import hmac
import logging
import os

from services.errors import UpstreamFailureError


PAYMENT_LOGGER = logging.getLogger("rentonway.payments")


def _payment_secret() -> bytes:
    raw = (os.environ.get("PAYMENT_KEY_SECRET") or "").strip()
    if not raw:
        raise UpstreamFailureError("Payment gateway is not configured.")
    return raw.encode("utf-8")


def sign_payment(order_id: str, payment_id: str) -> str:
    message = f"{order_id}|{payment_id}".encode("utf-8")
    return hmac.new(_payment_secret(), message, hashlib.sha256).hexdigest()


def verify_payment_signature(order_id: str | None, payment_id: str | None, signature: str | None) -> bool:
    if not order_id or not payment_id or not signature:
        return False
    expected = sign_payment(order_id, payment_id)
    valid = hmac.compare_digest(expected, signature.strip().lower())
    if not valid:
        PAYMENT_LOGGER.warning("Payment signature mismatch order=%s payment=%s", order_id, payment_id)
    return valid
