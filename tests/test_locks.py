import asyncio

import pytest

from oppdesc.services.locks import InMemoryLockRegistry, LockNotAcquiredError, description_lock_key


def test_description_lock_key_is_stable_and_in_range() -> None:
    key = description_lock_key("abc123")

    assert key == description_lock_key("abc123")
    assert key != description_lock_key("abc124")
    assert 0 <= key < 2**63


def test_hold_rejects_second_holder() -> None:
    registry = InMemoryLockRegistry()

    async def scenario() -> None:
        async with registry.lock(7).hold():
            assert registry.is_held(7)
            with pytest.raises(LockNotAcquiredError) as exc_info:
                async with registry.lock(7).hold():
                    pass
            assert exc_info.value.key == 7
        assert not registry.is_held(7)

    asyncio.run(scenario())


def test_hold_releases_on_exception() -> None:
    registry = InMemoryLockRegistry()

    async def scenario() -> None:
        with pytest.raises(RuntimeError):
            async with registry.lock(7).hold():
                raise RuntimeError("boom")

    asyncio.run(scenario())
    assert not registry.is_held(7)


def test_acquire_waits_for_release() -> None:
    registry = InMemoryLockRegistry()

    async def scenario() -> tuple[bool, bool]:
        first = registry.lock(9)
        assert await first.try_acquire()
        second = registry.lock(9)
        timed_out = await second.acquire(timeout=0.05, poll_interval=0.01)

        async def release_soon() -> None:
            await asyncio.sleep(0.02)
            await first.release()

        releaser = asyncio.create_task(release_soon())
        acquired = await second.acquire(timeout=1.0, poll_interval=0.01)
        await releaser
        await second.release()
        return timed_out, acquired

    timed_out, acquired = asyncio.run(scenario())

    assert timed_out is False
    assert acquired is True
    assert not registry.is_held(9)


def test_release_without_ownership_is_a_no_op() -> None:
    registry = InMemoryLockRegistry()
    owner = registry.lock(3)
    assert asyncio.run(owner.try_acquire())

    asyncio.run(registry.lock(3).release())

    assert registry.is_held(3)
