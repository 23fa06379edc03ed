import asyncio

import pytest

from safe_code_runner.execution.resources import ResourceCache


def test_concurrent_first_calls_share_one_load() -> None:
    cache = ResourceCache()
    started = 0

    async def loader() -> str:
        nonlocal started
        started += 1
        await asyncio.sleep(0.01)
        return "runtime"

    async def scenario() -> list[str]:
        return await asyncio.gather(*(cache.get("v8", loader) for _ in range(10)))

    values = asyncio.run(scenario())

    assert values == ["runtime"] * 10
    assert started == 1
    assert cache.load_counts["v8"] == 1
    assert cache.is_ready("v8")


def test_failed_load_reaches_every_waiter_then_retries() -> None:
    cache = ResourceCache()
    attempts = 0

    async def loader() -> str:
        nonlocal attempts
        attempts += 1
        await asyncio.sleep(0.01)
        if attempts == 1:
            raise RuntimeError("download failed")
        return "runtime"

    async def scenario() -> tuple[list, str]:
        first = await asyncio.gather(
            *(cache.get("mypy", loader) for _ in range(3)), return_exceptions=True
        )
        assert not cache.has_started("mypy")
        second = await cache.get("mypy", loader)
        return first, second

    first, second = asyncio.run(scenario())

    assert len(first) == 3
    assert all(isinstance(exc, RuntimeError) for exc in first)
    assert second == "runtime"
    assert cache.load_counts["mypy"] == 2


def test_cancelled_waiter_does_not_cancel_shared_load() -> None:
    cache = ResourceCache()

    async def scenario() -> str:
        gate = asyncio.Event()

        async def loader() -> str:
            await gate.wait()
            return "runtime"

        impatient = asyncio.create_task(cache.get("v8", loader))
        patient = asyncio.create_task(cache.get("v8", loader))
        await asyncio.sleep(0)
        impatient.cancel()
        with pytest.raises(asyncio.CancelledError):
            await impatient
        assert cache.is_loading("v8")
        gate.set()
        return await patient

    assert asyncio.run(scenario()) == "runtime"
    assert cache.load_counts["v8"] == 1


def test_reset_forces_a_fresh_load() -> None:
    cache = ResourceCache()

    async def loader() -> object:
        return object()

    async def scenario() -> tuple[object, object, object]:
        first = await cache.get("v8", loader)
        again = await cache.get("v8", loader)
        cache.reset("v8")
        fresh = await cache.get("v8", loader)
        return first, again, fresh

    first, again, fresh = asyncio.run(scenario())

    assert first is again
    assert fresh is not first
    assert cache.load_counts["v8"] == 2
