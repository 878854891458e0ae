import hashlib
from typing import Any

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from stripe import SignatureVerificationError, WebhookSignature

from app.core.config import get_settings
from app.core.exceptions import InvalidEventSignatureError

SESSION_MAX_AGE_SECONDS = 7 * 24 * 3600


def get_session_serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(
        settings.secret_key,
        salt="kidhero-session",
        signer_kwargs={"key_derivation": "hmac", "digest_method": hashlib.sha256},
    )


def create_session_cookie(payload: dict[str, Any]) -> str:
    serializer = get_session_serializer()
    return serializer.dumps(payload)


def load_session_cookie(cookie_value: str) -> dict[str, Any] | None:
    serializer = get_session_serializer()
    try:
        return serializer.loads(cookie_value, max_age=SESSION_MAX_AGE_SECONDS)
    except (BadSignature, SignatureExpired):
        return None


def verify_stripe_signature(payload: bytes, signature: str | None) -> str:
    """Check the Stripe-Signature header against the webhook secret; return the payload as text."""
    settings = get_settings()
    if not settings.stripe_webhook_secret:
        raise InvalidEventSignatureError("Webhook secret not configured")
    if not signature:
        raise InvalidEventSignatureError("Missing Stripe-Signature header")
    try:
        text = payload.decode("utf-8")
    except UnicodeDecodeError:
        raise InvalidEventSignatureError("Webhook payload is not valid UTF-8")
    try:
        WebhookSignature.verify_header(
            text,
            signature,
            settings.stripe_webhook_secret,
            settings.stripe_webhook_tolerance,
        )
    except SignatureVerificationError as e:
        raise InvalidEventSignatureError(f"Invalid webhook signature: {e}")
    return text
