from __future__ import annotations

import asyncio

import pytest

from engine.limiter import Limiter


def test_limiter_never_exceeds_max_concurrency() -> None:
    async def _run() -> int:
        limiter = Limiter(2)
        active = 0
        peak = 0

        async def _work(i: int) -> int:
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return i

        results = await asyncio.gather(*(limiter.run(_work, i) for i in range(6)))
        assert results == list(range(6))
        assert limiter.active == 0
        assert limiter.pending == 0
        return peak

    assert asyncio.run(_run()) == 2


def test_limiter_starts_waiters_in_submission_order() -> None:
    async def _run() -> list[int]:
        limiter = Limiter(1)
        started: list[int] = []

        async def _work(i: int) -> None:
            started.append(i)
            await asyncio.sleep(0)

        tasks = [asyncio.ensure_future(limiter.run(_work, i)) for i in range(5)]
        await asyncio.gather(*tasks)
        return started

    assert asyncio.run(_run()) == [0, 1, 2, 3, 4]


def test_limiter_failure_is_isolated_to_its_caller() -> None:
    async def _run():
        limiter = Limiter(2)

        async def _ok() -> str:
            await asyncio.sleep(0)
            return "ok"

        async def _boom() -> str:
            raise RuntimeError("boom")

        return await asyncio.gather(
            limiter.run(_ok),
            limiter.run(_boom),
            limiter.run(_ok),
            return_exceptions=True,
        )

    first, second, third = asyncio.run(_run())
    assert first == "ok"
    assert isinstance(second, RuntimeError)
    assert third == "ok"


def test_limiter_cancelled_waiter_releases_its_place() -> None:
    async def _run() -> list[str]:
        limiter = Limiter(1)
        gate = asyncio.Event()
        order: list[str] = []

        async def _hold() -> None:
            await gate.wait()
            order.append("hold")

        async def _mark(name: str) -> None:
            order.append(name)

        holder = asyncio.ensure_future(limiter.run(_hold))
        await asyncio.sleep(0)
        cancelled = asyncio.ensure_future(limiter.run(_mark, "cancelled"))
        survivor = asyncio.ensure_future(limiter.run(_mark, "survivor"))
        await asyncio.sleep(0)
        cancelled.cancel()
        await asyncio.sleep(0)
        gate.set()
        await asyncio.gather(holder, survivor)
        assert cancelled.cancelled()
        assert limiter.active == 0
        return order

    assert asyncio.run(_run()) == ["hold", "survivor"]


def test_limiter_rejects_zero_capacity() -> None:
    with pytest.raises(ValueError):
        Limiter(0)
