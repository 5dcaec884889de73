from __future__ import annotations

import asyncio

import pytest

from engine.download_queue import DownloadConvertQueue
from engine.errors import CancelledError, ItemSkippedError
from engine.jobs import CancelToken
from engine.limiter import Limiter


def test_queue_reports_each_item_as_it_finishes() -> None:
    async def _run():
        done: list[int] = []

        async def _download(item, index: int) -> str:
            await asyncio.sleep(0.01 * (4 - index))
            return f"/tmp/{item}.webm"

        queue = DownloadConvertQueue(
            _download,
            limiter=Limiter(3),
            cancel_token=CancelToken(),
            on_item_done=lambda result, index: done.append(index),
        )
        for index in (1, 2, 3):
            queue.enqueue(f"item{index}", index)
        queue.end()
        await queue.wait_for_idle()
        return done, queue.get_results()

    done, results = asyncio.run(_run())
    assert done == [3, 2, 1]
    assert [r.index for r in results] == [1, 2, 3]
    assert all(r.ok for r in results)
    assert results[0].path == "/tmp/item1.webm"


def test_queue_marks_skips_and_errors_without_stopping() -> None:
    async def _run():
        async def _download(item, index: int) -> str:
            if index == 2:
                raise ItemSkippedError("Private video")
            if index == 3:
                raise RuntimeError("network down")
            return f"/tmp/{index}.webm"

        seen = []
        queue = DownloadConvertQueue(
            _download,
            limiter=Limiter(2),
            cancel_token=CancelToken(),
            on_item_done=lambda result, index: seen.append((index, result.skipped, result.error is not None)),
            skip_errors=(ItemSkippedError,),
        )
        for index in (1, 2, 3, 4):
            queue.enqueue({"id": index}, index)
        queue.end()
        await queue.wait_for_idle()
        return sorted(seen), queue.get_results()

    seen, results = asyncio.run(_run())
    assert seen == [(1, False, False), (2, True, True), (3, False, True), (4, False, False)]
    assert results[1].skipped is True
    assert results[2].error == "network down"
    assert [r.ok for r in results] == [True, False, False, True]


def test_queue_cancellation_discards_waiting_items() -> None:
    async def _run():
        token = CancelToken()
        started: list[int] = []
        release = asyncio.Event()

        async def _download(item, index: int) -> str:
            started.append(index)
            await release.wait()
            token.raise_if_cancelled()
            return "/tmp/x"

        done: list[int] = []
        queue = DownloadConvertQueue(
            _download,
            limiter=Limiter(1),
            cancel_token=token,
            on_item_done=lambda result, index: done.append(index),
        )
        for index in (1, 2, 3):
            queue.enqueue(index, index)
        queue.end()
        await asyncio.sleep(0.01)
        token.cancel("user")
        await asyncio.wait_for(queue.wait_for_idle(), timeout=1)
        release.set()
        await queue.shutdown()
        return started, done, queue.get_results()

    started, done, results = asyncio.run(_run())
    assert started == [1]
    assert done == []
    assert all(r.canceled for r in results)


def test_queue_rejects_enqueue_after_end_and_duplicate_index() -> None:
    async def _run() -> None:
        async def _download(item, index: int) -> str:
            return "/tmp/x"

        queue = DownloadConvertQueue(_download, limiter=Limiter(1), cancel_token=CancelToken())
        queue.enqueue("a", 1)
        with pytest.raises(ValueError):
            queue.enqueue("b", 1)
        assert queue.next_free_index() == 2
        queue.end()
        with pytest.raises(RuntimeError):
            queue.enqueue("c", 2)
        await queue.wait_for_idle()

    asyncio.run(_run())


def test_queue_item_cancelled_error_is_not_reported() -> None:
    async def _run():
        async def _download(item, index: int) -> str:
            raise CancelledError()

        done: list[int] = []
        queue = DownloadConvertQueue(
            _download,
            limiter=Limiter(1),
            cancel_token=CancelToken(),
            on_item_done=lambda result, index: done.append(index),
        )
        queue.enqueue("a", 1)
        queue.end()
        await queue.wait_for_idle()
        return done, queue.get_results()

    done, results = asyncio.run(_run())
    assert done == []
    assert results[0].canceled is True


def test_wait_for_idle_returns_at_once_on_empty_queue() -> None:
    async def _run():
        async def _download(item, index: int) -> str:
            return f"/tmp/{index}.webm"

        queue = DownloadConvertQueue(_download, limiter=Limiter(1), cancel_token=CancelToken())
        await asyncio.wait_for(queue.wait_for_idle(), timeout=0.5)
        return queue

    queue = asyncio.run(_run())
    assert queue.get_results() == []
    assert not queue.is_ended
