import asyncio

import pytest

from app.errors import LockTimeout
from app.locks import KeyedLock


@pytest.mark.asyncio
async def test_same_key_is_serialized():
    locks = KeyedLock("booking", timeout=1)
    order = []

    async def worker(name):
        async with locks.hold("bk-1"):
            order.append(f"{name}:in")
            await asyncio.sleep(0.01)
            order.append(f"{name}:out")

    await asyncio.gather(worker("a"), worker("b"))

    assert order == ["a:in", "a:out", "b:in", "b:out"]
    assert len(locks) == 0


@pytest.mark.asyncio
async def test_timeout_raises_and_forgets_waiter():
    locks = KeyedLock("payment", timeout=0.05)

    async with locks.hold("pay-1"):
        with pytest.raises(LockTimeout, match="payment:pay-1"):
            async with locks.hold("pay-1"):
                pass
        assert locks.locked("pay-1")

    assert not locks.locked("pay-1")
    assert len(locks) == 0


@pytest.mark.asyncio
async def test_waiter_cancelled_as_lock_frees_does_not_keep_it():
    locks = KeyedLock("booking", timeout=5)
    entered = []

    async def contender():
        async with locks.hold("bk-1"):
            entered.append(True)

    async with locks.hold("bk-1"):
        task = asyncio.create_task(contender())
        await asyncio.sleep(0)
    # the lock has just been handed to the contender; cancel before it resumes
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task

    assert entered == []
    assert not locks.locked("bk-1")
    assert len(locks) == 0
    async with locks.hold("bk-1"):
        assert locks.locked("bk-1")


@pytest.mark.asyncio
async def test_cancelled_waiter_lets_next_one_in():
    locks = KeyedLock("booking", timeout=5)
    served = []

    async def contender(name):
        async with locks.hold("bk-1"):
            served.append(name)

    async with locks.hold("bk-1"):
        first = asyncio.create_task(contender("first"))
        second = asyncio.create_task(contender("second"))
        await asyncio.sleep(0)
        first.cancel()

    await asyncio.wait_for(second, timeout=1)
    with pytest.raises(asyncio.CancelledError):
        await first

    assert served == ["second"]
    assert len(locks) == 0
