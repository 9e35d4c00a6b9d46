"""Notification events emitted by the authorization and settlement pipeline."""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Optional


class EventType(str, Enum):
    CARD_APPROVED = "card_approved"
    CARD_DECLINED = "card_declined"
    SEND_SUBMITTED = "send_submitted"
    TX_CONFIRMED = "tx_confirmed"
    TX_FAILED = "tx_failed"
    FRAUD_ALERT = "fraud_alert"


@dataclass
class NotificationEvent:
    """Something an account holder may want to hear about."""

    account_id: int
    type: EventType
    amount_usd: Optional[Decimal] = None
    telegram_id: Optional[int] = None
    details: dict[str, Any] = field(default_factory=dict)
