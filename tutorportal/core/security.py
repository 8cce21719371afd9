import hashlib
import hmac
from datetime import datetime, timedelta, timezone
from typing import Any, Dict

from jose import jwt

from ..config import get_settings

ALGORITHM = "HS256"
WEBHOOK_SIGNATURE_VERSION = "v1"


class WebhookSignatureError(Exception):
    """The callback is unsigned, stale, or its signature does not match."""


def create_access_token(data: Dict[str, Any], expires_delta: timedelta | None = None) -> str:
    settings = get_settings()
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=15))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.jwt_secret, algorithm=ALGORITHM)


def decode_identity_token(token: str) -> Dict[str, Any]:
    """Decode a token issued by the identity service; raises ``JWTError`` if invalid."""
    settings = get_settings()
    return jwt.decode(token, settings.jwt_secret, algorithms=[ALGORITHM])


def compute_webhook_signature(secret: str, timestamp: int, body: bytes) -> str:
    signed_payload = f"{timestamp}.".encode("utf-8") + body
    return hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()


def verify_webhook_signature(
    secret: str,
    header: str | None,
    body: bytes,
    *,
    tolerance_seconds: int,
    now: datetime | None = None,
) -> None:
    """Check a ``t=<unix>,v1=<hex>`` signature header against the raw request body.

    The signed payload is ``"<t>." + body``. Raises ``WebhookSignatureError``
    when the secret is unset, the header is missing or malformed, the
    timestamp is outside ``tolerance_seconds`` or no ``v1`` value matches.
    """

    if not secret:
        raise WebhookSignatureError("Webhook secret is not configured")
    if not header:
        raise WebhookSignatureError("Missing webhook signature")

    timestamp = None
    candidates = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            timestamp = value
        elif key == WEBHOOK_SIGNATURE_VERSION and value:
            candidates.append(value)
    if timestamp is None or not timestamp.isdigit() or not candidates:
        raise WebhookSignatureError("Malformed webhook signature")

    current = now or datetime.now(timezone.utc)
    if abs(current.timestamp() - int(timestamp)) > tolerance_seconds:
        raise WebhookSignatureError("Webhook timestamp outside tolerance")

    expected = compute_webhook_signature(secret, int(timestamp), body)
    if not any(hmac.compare_digest(expected, candidate) for candidate in candidates):
        raise WebhookSignatureError("Invalid webhook signature")
