"""Webhook authenticity checks for card-issuer callbacks."""

import hashlib
import hmac
import logging
from dataclasses import dataclass
from typing import Optional

from spendguard.authorization.codes import DeclineCode
from spendguard.config import Settings

logger = logging.getLogger(__name__)


def verify_webhook_signature(
    payload: bytes,
    signature: str,
    secret: str,
    algorithm: str = "sha256",
) -> bool:
    """Verify webhook signature using HMAC.

    Args:
        payload: Raw request body
        signature: Hex signature from header, optionally prefixed ("sha256=...")
        secret: Webhook secret key
        algorithm: Hash algorithm (sha256, sha512)

    Returns:
        True if signature is valid. An empty secret never verifies.
    """
    if not secret or not signature:
        return False

    # Remove any prefix like "sha256="
    if "=" in signature:
        signature = signature.split("=", 1)[1]

    mac = hmac.new(
        secret.encode(),
        payload,
        getattr(hashlib, algorithm),
    )
    expected = mac.hexdigest()

    return hmac.compare_digest(expected, signature.strip().lower())


def client_ip_from_headers(
    forwarded_for: Optional[str],
    real_ip: Optional[str],
    peer: Optional[str] = None,
) -> str:
    """Resolve the caller's IP: first X-Forwarded-For hop, then X-Real-IP, then the peer."""
    if forwarded_for:
        first = forwarded_for.split(",")[0].strip()
        if first:
            return first
    if real_ip and real_ip.strip():
        return real_ip.strip()
    return peer or "unknown"


@dataclass
class VerificationResult:
    """Outcome of an authenticity check; ``code`` is set when rejected."""

    ok: bool
    code: Optional[DeclineCode] = None
    message: str = ""


class WebhookVerifier:
    """Per-provider HMAC verification plus a source IP allow-list.

    Providers without a configured secret are rejected: an unsigned
    authorization is never accepted.
    """

    def __init__(
        self,
        secrets: dict[str, str],
        allowed_ips: Optional[list[str]] = None,
        default_provider: str = "highnote",
    ):
        self.secrets = {provider.lower(): secret for provider, secret in secrets.items()}
        self.allowed_ips = set(allowed_ips or [])
        self.default_provider = default_provider.lower()

    @classmethod
    def from_settings(cls, settings: Settings) -> "WebhookVerifier":
        return cls(
            secrets=settings.webhook_secrets,
            allowed_ips=settings.allowed_webhook_ips,
            default_provider=settings.default_card_provider,
        )

    def verify(self, raw_body: bytes, signature: Optional[str], provider: Optional[str]) -> bool:
        """Check an HMAC signature for ``provider``."""
        provider = (provider or self.default_provider).lower()
        secret = self.secrets.get(provider)
        if not secret:
            logger.warning(f"No webhook secret configured for provider {provider}")
            return False
        return verify_webhook_signature(raw_body, signature or "", secret)

    def is_ip_allowed(self, client_ip: str) -> bool:
        """Empty allow-list admits any source."""
        return not self.allowed_ips or client_ip in self.allowed_ips

    def check(
        self,
        raw_body: bytes,
        signature: Optional[str],
        provider: Optional[str],
        client_ip: str,
    ) -> VerificationResult:
        """Run all authenticity checks in order: signature present, IP, HMAC."""
        if not signature:
            logger.warning(f"Rejected webhook from {client_ip}: missing signature")
            return VerificationResult(False, DeclineCode.UNAUTHORIZED, "Missing webhook signature")

        if not self.is_ip_allowed(client_ip):
            logger.warning(f"Rejected webhook from {client_ip}: IP not allowed")
            return VerificationResult(False, DeclineCode.FORBIDDEN, "IP not allowed")

        if not self.verify(raw_body, signature, provider):
            logger.warning(f"Rejected webhook from {client_ip}: invalid signature")
            return VerificationResult(False, DeclineCode.UNAUTHORIZED, "Invalid webhook signature")

        return VerificationResult(True)
