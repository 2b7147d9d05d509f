"""
Unit tests for per-key locking.
"""

import asyncio

import pytest

from review_consensus.errors import ContentionError
from review_consensus.models import ScreeningPhase
from review_consensus.screening.locks import KeyedLockRegistry

TA = ScreeningPhase.TITLE_ABSTRACT
FT = ScreeningPhase.FULL_TEXT


@pytest.mark.asyncio
async def test_same_key_is_serialized():
    registry = KeyedLockRegistry(default_timeout=1.0)
    order = []

    async def worker(name: str) -> None:
        async with registry.acquire("pw-1", TA):
            order.append(f"{name}-in")
            await asyncio.sleep(0.01)
            order.append(f"{name}-out")

    await asyncio.gather(worker("a"), worker("b"))
    assert order in (["a-in", "a-out", "b-in", "b-out"], ["b-in", "b-out", "a-in", "a-out"])


@pytest.mark.asyncio
async def test_different_keys_do_not_block():
    registry = KeyedLockRegistry(default_timeout=0.05)
    async with registry.acquire("pw-1", TA):
        async with registry.acquire("pw-1", FT):
            async with registry.acquire("pw-2", TA):
                assert registry.is_locked("pw-1", TA)
                assert registry.is_locked("pw-2", TA)
                assert len(registry) == 3


@pytest.mark.asyncio
async def test_timeout_raises_contention():
    registry = KeyedLockRegistry(default_timeout=1.0)
    async with registry.acquire("pw-1", TA):
        with pytest.raises(ContentionError):
            async with registry.acquire("pw-1", TA, timeout=0.01):
                pass
    # The timed-out waiter must not leave the key held
    async with registry.acquire("pw-1", TA, timeout=0.01):
        pass


@pytest.mark.asyncio
async def test_entries_are_dropped_when_idle():
    registry = KeyedLockRegistry()
    async with registry.acquire("pw-1", TA):
        assert len(registry) == 1
    assert len(registry) == 0
    assert not registry.is_locked("pw-1", TA)


@pytest.mark.asyncio
async def test_lock_released_on_error():
    registry = KeyedLockRegistry(default_timeout=0.05)
    with pytest.raises(RuntimeError):
        async with registry.acquire("pw-1", TA):
            raise RuntimeError("boom")
    async with registry.acquire("pw-1", TA):
        pass
