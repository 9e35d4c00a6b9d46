"""Tests for idempotent request replay."""

import asyncio

import pytest

from spendguard.idempotency.guard import IdempotencyConflictError, IdempotencyGuard
from spendguard.services import Services


@pytest.fixture
def guard(session_factory, clock) -> IdempotencyGuard:
    return IdempotencyGuard(session_factory, clock=clock)


class TestIdempotencyGuard:
    """Tests for lookup, storage and expiry."""

    @pytest.mark.asyncio
    async def test_unknown_key(self, guard: IdempotencyGuard):
        check = await guard.check("key-1", "7")

        assert check.is_duplicate is False
        assert check.stored_response is None

    @pytest.mark.asyncio
    async def test_replay_returns_exact_body(self, guard: IdempotencyGuard):
        body = '{"approved":true,"txHash":"0xabc","reasonCode":null,"message":"ok"}'
        await guard.store("key-1", "7", "transactions.send", body)

        check = await guard.check("key-1", "7", endpoint="transactions.send")

        assert check.is_duplicate is True
        assert check.stored_response == body
        assert check.status_code == 200

    @pytest.mark.asyncio
    async def test_keys_scoped_per_account(self, guard: IdempotencyGuard):
        await guard.store("key-1", "7", "transactions.send", "{}")

        assert (await guard.check("key-1", "8")).is_duplicate is False

    @pytest.mark.asyncio
    async def test_endpoint_mismatch_conflicts(self, guard: IdempotencyGuard):
        await guard.store("key-1", "7", "transactions.send", "{}")

        with pytest.raises(IdempotencyConflictError):
            await guard.check("key-1", "7", endpoint="cards.authorize")

    @pytest.mark.asyncio
    async def test_expired_record_ignored(self, guard: IdempotencyGuard, clock):
        await guard.store("key-1", "7", "transactions.send", "{}")

        clock.advance(hours=25)

        assert (await guard.check("key-1", "7")).is_duplicate is False

    @pytest.mark.asyncio
    async def test_store_after_expiry_overwrites(self, guard: IdempotencyGuard, clock):
        await guard.store("key-1", "7", "transactions.send", '{"v":1}')
        clock.advance(hours=25)

        await guard.store("key-1", "7", "transactions.send", '{"v":2}')

        assert (await guard.check("key-1", "7")).stored_response == '{"v":2}'

    @pytest.mark.asyncio
    async def test_purge_expired(self, guard: IdempotencyGuard, clock):
        await guard.store("old", "7", "transactions.send", "{}")
        clock.advance(hours=23)
        await guard.store("new", "7", "transactions.send", "{}")
        clock.advance(hours=2)

        assert await guard.purge_expired() == 1
        assert (await guard.check("new", "7")).is_duplicate is True

    @pytest.mark.asyncio
    async def test_hold_serializes_same_key(self, guard: IdempotencyGuard):
        order = []

        async def worker(name: str):
            async with guard.hold("key-1", "7"):
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))

        assert order in (["a-in", "a-out", "b-in", "b-out"], ["b-in", "b-out", "a-in", "a-out"])

    @pytest.mark.asyncio
    async def test_hold_leaves_no_lock_behind(self, guard: IdempotencyGuard):
        for i in range(100):
            async with guard.hold(f"key-{i}", "1"):
                pass

        assert len(guard.locks) == 0


class TestSharedLocks:
    """The wired services share one lock registry."""

    @pytest.mark.asyncio
    async def test_engine_and_guard_share_registry(self, services: Services):
        assert services.engine.locks is services.idempotency.locks

        async with services.idempotency.hold("key-1", "1"):
            assert len(services.engine.locks) == 1
        assert len(services.engine.locks) == 0
