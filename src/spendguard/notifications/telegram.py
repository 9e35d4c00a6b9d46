"""Telegram notification sink.

Formats pipeline events as HTML messages and sends them with aiogram.
"""

import logging
from decimal import Decimal
from typing import Optional

from aiogram import Bot
from aiogram.exceptions import TelegramBadRequest, TelegramForbiddenError

from spendguard.notifications.events import EventType, NotificationEvent

logger = logging.getLogger(__name__)


def _fmt_usd(amount: Optional[Decimal]) -> str:
    if amount is None:
        return "-"
    return f"${amount:,.2f}"


def _short(value: str, head: int = 8, tail: int = 8) -> str:
    return f"{value[:head]}...{value[-tail:]}" if len(value) > head + tail + 4 else value


def format_event(event: NotificationEvent) -> str:
    """Render an event as a Telegram HTML message."""
    details = event.details
    amount = _fmt_usd(event.amount_usd)

    if event.type == EventType.CARD_APPROVED:
        message = (
            f"<b>Card Payment Approved</b>\n\n"
            f"Amount: <code>{amount}</code>\n"
            f"Merchant: {details.get('merchant') or details.get('mcc', '-')}\n"
        )
        cashback = details.get("cashback")
        if cashback:
            message += f"Cashback: <code>{_fmt_usd(Decimal(str(cashback)))}</code>\n"
        if details.get("is_anomaly"):
            message += "\nThis payment was flagged for review."
        return message

    if event.type == EventType.CARD_DECLINED:
        return (
            f"<b>Card Payment Declined</b>\n\n"
            f"Amount: <code>{amount}</code>\n"
            f"Reason: {details.get('reason', '-')}"
        )

    if event.type == EventType.SEND_SUBMITTED:
        return (
            f"<b>Transaction Submitted</b>\n\n"
            f"Chain: {details.get('chain', '-')}\n"
            f"Amount: <code>{amount}</code>\n"
            f"TX: <code>{_short(details.get('tx_hash', ''))}</code>\n\n"
            f"Waiting for confirmations..."
        )

    if event.type == EventType.TX_CONFIRMED:
        return (
            f"<b>Transaction Confirmed</b>\n\n"
            f"Chain: {details.get('chain', '-')}\n"
            f"Confirmations: {details.get('confirmations', 0)}\n"
            f"TX: <code>{_short(details.get('tx_hash', ''))}</code>"
        )

    if event.type == EventType.TX_FAILED:
        return (
            f"<b>Transaction Failed</b>\n\n"
            f"Chain: {details.get('chain', '-')}\n"
            f"TX: <code>{_short(details.get('tx_hash', ''))}</code>\n"
            f"Reason: {details.get('reason', 'failed on chain')}"
        )

    return (
        f"<b>Security Alert</b>\n\n"
        f"A {amount} payment was flagged as suspicious.\n"
        f"Signals: {', '.join(details.get('reasons', []))}"
    )


class TelegramNotifier:
    """Sends event messages to an account's Telegram chat."""

    def __init__(self, bot: Bot):
        self.bot = bot

    @classmethod
    def from_token(cls, token: str) -> Optional["TelegramNotifier"]:
        if not token:
            logger.warning("Telegram bot token not configured - notifications disabled")
            return None
        return cls(Bot(token=token))

    async def send_message(
        self,
        telegram_id: int,
        message: str,
        parse_mode: Optional[str] = "HTML",
    ) -> bool:
        """Send a message to a user.

        Returns:
            True if message was sent successfully
        """
        try:
            await self.bot.send_message(
                chat_id=telegram_id,
                text=message,
                parse_mode=parse_mode,
            )
            return True
        except TelegramForbiddenError:
            logger.warning(f"User {telegram_id} has blocked the bot")
            return False
        except TelegramBadRequest as e:
            logger.error(f"Bad request sending to {telegram_id}: {e}")
            return False
        except Exception as e:
            logger.error(f"Failed to send notification to {telegram_id}: {e}")
            return False

    async def __call__(self, event: NotificationEvent) -> None:
        if event.telegram_id is None:
            return
        await self.send_message(event.telegram_id, format_event(event))

    async def close(self) -> None:
        """Close the bot session (call on shutdown)."""
        await self.bot.session.close()
