from __future__ import annotations

import base64
import hashlib
import hmac
import json
import os
import time
from typing import Any


ROLE_CUSTOMER = "user"
ROLE_RETAILER = "retailer"
ROLE_DELIVERY_PARTNER = "deliveryPartner"
KNOWN_ROLES = {ROLE_CUSTOMER, ROLE_RETAILER, ROLE_DELIVERY_PARTNER}

SESSION_TTL_SECONDS = int(os.environ.get("SESSION_TTL_SECONDS") or str(60 * 60 * 24 * 30))


def _require_session_secret() -> bytes:
    raw = (os.environ.get("SESSION_SIGNING_SECRET") or "").strip()
    if len(raw) < 32:
        raise RuntimeError("SESSION_SIGNING_SECRET must be set and at least 32 characters long.")
    return raw.encode("utf-8")


_SESSION_SECRET = _require_session_secret()


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64decode(value: str) -> bytes:
    return base64.urlsafe_b64decode(value + "=" * (-len(value) % 4))


def normalize_role(raw_role: str | None) -> str:
    role = (raw_role or "").strip()
    if role in KNOWN_ROLES:
        return role
    return ROLE_CUSTOMER


def create_session(payload: dict[str, Any], ttl_seconds: int | None = None) -> str:
    """Issue a signed bearer token for ``payload``.

    The payload must carry the caller ``id``; ``role`` defaults to a customer.
    """
    try:
        caller_id = int(payload.get("id") or 0)
    except (TypeError, ValueError) as exc:
        raise ValueError("Session payload id must be numeric.") from exc
    if caller_id <= 0:
        raise ValueError("Session payload id must be greater than zero.")

    session_payload = dict(payload)
    session_payload["id"] = caller_id
    session_payload["role"] = normalize_role(payload.get("role"))
    session_payload["expiresAt"] = time.time() + (ttl_seconds if ttl_seconds is not None else SESSION_TTL_SECONDS)
    body = json.dumps(session_payload, ensure_ascii=True, separators=(",", ":")).encode("utf-8")
    encoded = _b64encode(body)
    signature = hmac.new(_SESSION_SECRET, encoded.encode("ascii"), hashlib.sha256).digest()
    return f"{encoded}.{_b64encode(signature)}"


def get_session(token: str | None) -> dict[str, Any] | None:
    if not token:
        return None
    try:
        encoded, encoded_sig = token.split(".", 1)
        expected_sig = hmac.new(_SESSION_SECRET, encoded.encode("ascii"), hashlib.sha256).digest()
        if not hmac.compare_digest(expected_sig, _b64decode(encoded_sig)):
            return None
        decoded_session = json.loads(_b64decode(encoded).decode("utf-8"))
    except (ValueError, UnicodeError):
        return None

    if not isinstance(decoded_session, dict):
        return None
    try:
        expires_at = float(decoded_session.get("expiresAt") or 0.0)
        caller_id = int(decoded_session.get("id") or 0)
    except (TypeError, ValueError):
        return None
    if time.time() >= expires_at or caller_id <= 0:
        return None

    decoded_session["id"] = caller_id
    decoded_session["role"] = normalize_role(decoded_session.get("role"))
    return decoded_session
