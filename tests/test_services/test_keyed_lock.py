"""Tests for per-key locks and single-flight execution."""

from __future__ import annotations

import asyncio

import pytest

from backend.services.keyed_lock import KeyedLock, SingleFlight


class TestKeyedLock:
    @pytest.mark.asyncio
    async def test_same_key_is_serialized(self) -> None:
        locks = KeyedLock()
        active = 0
        peak = 0

        async def worker() -> None:
            nonlocal active, peak
            async with locks.hold("device"):
                active += 1
                peak = max(peak, active)
                await asyncio.sleep(0.01)
                active -= 1

        await asyncio.gather(*(worker() for _ in range(10)))
        assert peak == 1

    @pytest.mark.asyncio
    async def test_different_keys_run_concurrently(self) -> None:
        locks = KeyedLock()
        entered = asyncio.Event()

        async def first() -> None:
            async with locks.hold("a"):
                await asyncio.wait_for(entered.wait(), timeout=1)

        async def second() -> None:
            async with locks.hold("b"):
                entered.set()

        await asyncio.gather(first(), second())

    @pytest.mark.asyncio
    async def test_registry_is_emptied(self) -> None:
        locks = KeyedLock()
        async with locks.hold("a"):
            assert locks.is_locked("a")
            assert len(locks) == 1
        assert not locks.is_locked("a")
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_released_on_exception(self) -> None:
        locks = KeyedLock()
        with pytest.raises(RuntimeError):
            async with locks.hold("a"):
                raise RuntimeError("boom")
        assert len(locks) == 0
        async with locks.hold("a"):
            pass


class TestSingleFlight:
    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_execution(self) -> None:
        flight: SingleFlight[int] = SingleFlight()
        calls = 0

        async def work() -> int:
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.01)
            return 42

        results = await asyncio.gather(*(flight.run("k", work) for _ in range(5)))
        assert results == [42] * 5
        assert calls == 1
        assert not flight.in_flight("k")

    @pytest.mark.asyncio
    async def test_exception_shared_and_key_released(self) -> None:
        flight: SingleFlight[int] = SingleFlight()
        calls = 0

        async def failing() -> int:
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.01)
            raise ValueError("nope")

        results = await asyncio.gather(
            *(flight.run("k", failing) for _ in range(3)), return_exceptions=True
        )
        assert calls == 1
        assert all(isinstance(r, ValueError) for r in results)

        async def succeeding() -> int:
            return 7

        assert await flight.run("k", succeeding) == 7

    @pytest.mark.asyncio
    async def test_sequential_calls_run_again(self) -> None:
        flight: SingleFlight[int] = SingleFlight()
        calls = 0

        async def work() -> int:
            nonlocal calls
            calls += 1
            return calls

        assert await flight.run("k", work) == 1
        assert await flight.run("k", work) == 2

    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_cancel_work(self) -> None:
        flight: SingleFlight[str] = SingleFlight()
        release = asyncio.Event()

        async def work() -> str:
            await release.wait()
            return "done"

        first = asyncio.create_task(flight.run("k", work))
        await asyncio.sleep(0)
        second = asyncio.create_task(flight.run("k", work))
        await asyncio.sleep(0)
        first.cancel()
        release.set()
        assert await second == "done"
        with pytest.raises(asyncio.CancelledError):
            await first
