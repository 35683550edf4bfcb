"""
Gateway signature verification.

Checkout callbacks are signed with HMAC-SHA256 over
``order_id + "|" + payment_id`` (one-time orders) or
``payment_id + "|" + subscription_id`` (subscription checkout) using the
gateway key secret. Server webhooks are signed over the raw request body
with the webhook secret. Every check is a constant-time comparison of
lowercase hex digests and returns ``False`` instead of raising.
"""
import hashlib
import hmac
from typing import Optional

import structlog

from settlement.config import Settings, get_settings
from settlement.exceptions import ConfigurationError

logger = structlog.get_logger(__name__)


def compute_signature(message: str | bytes, secret: str) -> str:
    """Return the lowercase hex HMAC-SHA256 of ``message`` under ``secret``."""
    if isinstance(message, str):
        message = message.encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def _matches(expected: str, supplied: object) -> bool:
    if not isinstance(supplied, str) or not supplied:
        return False
    return hmac.compare_digest(expected.encode("ascii"), supplied.encode("utf-8"))


def verify_payment_signature(
    order_id: str, payment_id: str, signature: str, secret: str
) -> bool:
    """
    Verify a checkout callback for a one-time order.

    Args:
        order_id: Gateway order id the checkout was opened for
        payment_id: Gateway payment id reported by the checkout
        signature: Hex signature reported by the checkout
        secret: Gateway key secret

    Returns:
        bool: True only if the signature is authentic
    """
    if not isinstance(order_id, str) or not isinstance(payment_id, str):
        return False
    expected = compute_signature(f"{order_id}|{payment_id}", secret)
    return _matches(expected, signature)


class SignatureVerifier:
    """Authenticates gateway callbacks with the configured secrets."""

    def __init__(self, key_secret: str, webhook_secret: Optional[str] = None):
        if not key_secret:
            raise ConfigurationError("Gateway key secret is not configured for verification")
        self._key_secret = key_secret
        self._webhook_secret = webhook_secret

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "SignatureVerifier":
        """
        Build a verifier from settings.

        Raises:
            ConfigurationError: If the gateway key secret is missing
        """
        settings = settings or get_settings()
        _, key_secret = settings.require_gateway_credentials()
        return cls(key_secret, settings.gateway_webhook_secret)

    def verify(self, order_id: str, payment_id: str, signature: str) -> bool:
        """Verify a one-time order checkout callback."""
        verified = verify_payment_signature(order_id, payment_id, signature, self._key_secret)
        if not verified:
            logger.warning(
                "payment_signature_mismatch",
                order_id=order_id,
                gateway_payment_id=payment_id,
            )
        return verified

    def verify_subscription(
        self, subscription_id: str, payment_id: str, signature: str
    ) -> bool:
        """Verify a subscription checkout callback (payment id first, then subscription id)."""
        if not isinstance(subscription_id, str) or not isinstance(payment_id, str):
            return False
        expected = compute_signature(f"{payment_id}|{subscription_id}", self._key_secret)
        verified = _matches(expected, signature)
        if not verified:
            logger.warning(
                "subscription_signature_mismatch",
                subscription_id=subscription_id,
                gateway_payment_id=payment_id,
            )
        return verified

    def verify_webhook(self, body: bytes, signature: str) -> bool:
        """
        Verify a server-to-server webhook body.

        Raises:
            ConfigurationError: If no webhook secret is configured
        """
        if not self._webhook_secret:
            raise ConfigurationError("Gateway webhook secret is not configured")
        expected = compute_signature(body, self._webhook_secret)
        verified = _matches(expected, signature)
        if not verified:
            logger.warning("webhook_signature_mismatch", body_length=len(body))
        return verified
