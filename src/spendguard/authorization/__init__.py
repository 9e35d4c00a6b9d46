"""Authorization pipeline: request authenticity and the decision engine."""

from spendguard.authorization.codes import DeclineCode, decline_message
from spendguard.authorization.engine import (
    AuthorizationResult,
    CardAuthorizationRequest,
    DecisionEngine,
    SendRequest,
)
from spendguard.authorization.verifier import WebhookVerifier, verify_webhook_signature

__all__ = [
    "AuthorizationResult",
    "CardAuthorizationRequest",
    "DecisionEngine",
    "DeclineCode",
    "SendRequest",
    "WebhookVerifier",
    "decline_message",
    "verify_webhook_signature",
]
