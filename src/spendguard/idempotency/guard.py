"""Replay protection for mutating requests.

A stored response is keyed by ``(idempotency_key, account_id)`` and
returned verbatim for any repeat of the key within the TTL.
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import AsyncIterator, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from spendguard.clock import Clock, utcnow
from spendguard.ledger.repository import LedgerRepository
from spendguard.utils.locks import KeyedLock

logger = logging.getLogger(__name__)


class IdempotencyConflictError(Exception):
    """An idempotency key was reused for a different endpoint."""

    pass


@dataclass
class IdempotencyCheck:
    """Result of looking up a key."""

    is_duplicate: bool
    stored_response: Optional[str] = None
    status_code: int = 200


class IdempotencyGuard:
    """Looks up and stores responses by idempotency key.

    Example:
        async with guard.hold(key, account_id):
            check = await guard.check(key, account_id, endpoint="send")
            if check.is_duplicate:
                return check.stored_response
            body = ...
            await guard.store(key, account_id, "send", body)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ttl: timedelta = timedelta(hours=24),
        clock: Clock = utcnow,
        locks: Optional[KeyedLock] = None,
    ):
        self.session_factory = session_factory
        self.ttl = ttl
        self.clock = clock
        self.locks = locks if locks is not None else KeyedLock()

    @asynccontextmanager
    async def hold(self, key: str, account_id: str) -> AsyncIterator[None]:
        """Serialize concurrent requests carrying the same key."""
        async with self.locks.hold(("idempotency", account_id, key), operation="idempotent request"):
            yield

    async def check(
        self, key: str, account_id: str, endpoint: Optional[str] = None
    ) -> IdempotencyCheck:
        """Return the stored response for ``key`` if one exists and has not expired.

        Raises:
            IdempotencyConflictError: If the key was stored for another endpoint
        """
        async with self.session_factory() as session:
            repo = LedgerRepository(session)
            record = await repo.get_idempotency_record(key, account_id)

        if record is None or record.expires_at <= self.clock():
            return IdempotencyCheck(is_duplicate=False)

        if endpoint is not None and record.endpoint != endpoint:
            raise IdempotencyConflictError(
                f"Idempotency key already used for {record.endpoint}"
            )

        logger.info(f"Replaying stored response for idempotency key {key} ({account_id})")
        return IdempotencyCheck(
            is_duplicate=True,
            stored_response=record.response_body,
            status_code=record.status_code,
        )

    async def store(
        self,
        key: str,
        account_id: str,
        endpoint: str,
        response_body: str,
        status_code: int = 200,
    ) -> None:
        """Persist the exact response body for later replay."""
        now = self.clock()
        async with self.session_factory() as session:
            repo = LedgerRepository(session)
            await repo.save_idempotency_record(
                key=key,
                account_id=account_id,
                endpoint=endpoint,
                status_code=status_code,
                response_body=response_body,
                now=now,
                expires_at=now + self.ttl,
            )
            await session.commit()

    async def purge_expired(self) -> int:
        """Delete records past their TTL."""
        async with self.session_factory() as session:
            repo = LedgerRepository(session)
            deleted = await repo.delete_expired_idempotency_records(self.clock())
            await session.commit()

        if deleted:
            logger.info(f"Purged {deleted} expired idempotency records")
        return deleted
