"""Decline reason codes returned by the decision engine."""

from enum import Enum


class DeclineCode(str, Enum):
    """Machine-readable reason for a declined authorization."""

    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    CARD_NOT_FOUND = "CARD_NOT_FOUND"
    CARD_INACTIVE = "CARD_INACTIVE"
    WALLET_NOT_FOUND = "WALLET_NOT_FOUND"
    DISPOSABLE_CARD_USED = "DISPOSABLE_CARD_USED"
    FRAUD_DETECTED = "FRAUD_DETECTED"
    MERCHANT_CATEGORY_BLOCKED = "MERCHANT_CATEGORY_BLOCKED"
    MERCHANT_CATEGORY_NOT_ALLOWED = "MERCHANT_CATEGORY_NOT_ALLOWED"
    COUNTRY_BLOCKED = "COUNTRY_BLOCKED"
    COUNTRY_NOT_ALLOWED = "COUNTRY_NOT_ALLOWED"
    SPENDING_LIMIT_EXCEEDED = "SPENDING_LIMIT_EXCEEDED"
    MONTHLY_LIMIT_EXCEEDED = "MONTHLY_LIMIT_EXCEEDED"
    DAILY_LIMIT_EXCEEDED = "DAILY_LIMIT_EXCEEDED"
    VELOCITY_EXCEEDED = "VELOCITY_EXCEEDED"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    UNSUPPORTED_CHAIN = "UNSUPPORTED_CHAIN"
    BROADCAST_FAILED = "BROADCAST_FAILED"
    SYSTEM_ERROR = "SYSTEM_ERROR"


DECLINE_MESSAGES: dict[DeclineCode, str] = {
    DeclineCode.UNAUTHORIZED: "Invalid or missing webhook signature",
    DeclineCode.FORBIDDEN: "Source IP not allowed",
    DeclineCode.CARD_NOT_FOUND: "Card does not exist",
    DeclineCode.CARD_INACTIVE: "Card is not active",
    DeclineCode.WALLET_NOT_FOUND: "Wallet does not exist",
    DeclineCode.DISPOSABLE_CARD_USED: "Disposable card already used",
    DeclineCode.FRAUD_DETECTED: "Transaction flagged as suspicious",
    DeclineCode.MERCHANT_CATEGORY_BLOCKED: "Merchant category is blocked",
    DeclineCode.MERCHANT_CATEGORY_NOT_ALLOWED: "Merchant category not in allow-list",
    DeclineCode.COUNTRY_BLOCKED: "Transactions from this country are blocked",
    DeclineCode.COUNTRY_NOT_ALLOWED: "Transactions from this country are not allowed",
    DeclineCode.SPENDING_LIMIT_EXCEEDED: "Total spending limit exceeded",
    DeclineCode.MONTHLY_LIMIT_EXCEEDED: "Monthly spending limit exceeded",
    DeclineCode.DAILY_LIMIT_EXCEEDED: "Daily spending limit exceeded",
    DeclineCode.VELOCITY_EXCEEDED: "Too many transactions in short time",
    DeclineCode.INSUFFICIENT_FUNDS: "Insufficient wallet balance",
    DeclineCode.UNSUPPORTED_CHAIN: "Chain is not supported",
    DeclineCode.BROADCAST_FAILED: "Transaction could not be broadcast",
    DeclineCode.SYSTEM_ERROR: "Unable to process authorization",
}


def decline_message(code: DeclineCode) -> str:
    """Human-readable message for a decline code."""
    return DECLINE_MESSAGES.get(code, code.value)
