"""Two-stage download/convert pipeline for batch jobs."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from engine.errors import CancelledError
from engine.jobs import CancelToken
from engine.limiter import Limiter
from engine.outputs import ConvertResult

logger = logging.getLogger(__name__)


@dataclass
class ItemResult:
    index: int
    item: Any
    path: Optional[str] = None
    error: Optional[str] = None
    skipped: bool = False
    canceled: bool = False
    output: Optional[ConvertResult] = None

    @property
    def ok(self) -> bool:
        return self.path is not None and self.error is None and not self.canceled


DownloadFn = Callable[[Any, int], Awaitable[str]]
ItemDoneFn = Callable[[ItemResult, int], None]


class DownloadConvertQueue:
    """Download items under a :class:`Limiter` and report each one as it lands.

    ``on_item_done`` is called once per started item, on success or failure,
    so the caller can submit that item's conversion without waiting for the
    rest of the batch. Items still waiting for a download slot when the token is
    cancelled are discarded and :meth:`wait_for_idle` returns right away.
    """

    def __init__(
        self,
        download_fn: DownloadFn,
        *,
        limiter: Limiter,
        cancel_token: CancelToken,
        on_item_done: ItemDoneFn | None = None,
        skip_errors: tuple[type[BaseException], ...] = (),
    ) -> None:
        self._download_fn = download_fn
        self._limiter = limiter
        self._cancel_token = cancel_token
        self._on_item_done = on_item_done
        self._skip_errors = skip_errors
        self._results: dict[int, ItemResult] = {}
        self._tasks: list[asyncio.Task] = []
        self._pending = 0
        self._running = 0
        self._ended = False
        self._idle = asyncio.Event()
        self._remove_cancel_callback = cancel_token.add_callback(self._idle.set)

    @property
    def pending(self) -> int:
        return self._pending

    @property
    def running(self) -> int:
        return self._running

    @property
    def is_ended(self) -> bool:
        return self._ended

    def has_index(self, index: int) -> bool:
        return index in self._results

    def next_free_index(self) -> int:
        index = 1
        while index in self._results:
            index += 1
        return index

    def enqueue(self, item: Any, index: int) -> None:
        if self._ended:
            raise RuntimeError("queue already ended")
        if index in self._results:
            raise ValueError(f"duplicate item index: {index}")
        self._results[index] = ItemResult(index=index, item=item)
        if self._cancel_token.cancelled:
            self._results[index].canceled = True
            return
        self._pending += 1
        self._idle.clear()
        self._tasks.append(asyncio.get_running_loop().create_task(self._run(index)))

    def end(self) -> None:
        self._ended = True
        self._check_idle()

    async def wait_for_idle(self) -> None:
        """Resolve once nothing is pending or running, or the token is cancelled.

        Returns immediately on an idle queue. Otherwise it wakes when the last
        item finishes after :meth:`end` has been called.
        """
        if self._cancel_token.cancelled or (self._pending == 0 and self._running == 0):
            return
        self._check_idle()
        await self._idle.wait()
        self._remove_cancel_callback()

    async def shutdown(self) -> None:
        """Cancel download tasks that are still queued or running and wait for them."""
        tasks = [task for task in self._tasks if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._remove_cancel_callback()

    def get_results(self) -> list[ItemResult]:
        return [self._results[index] for index in sorted(self._results)]

    async def _run(self, index: int) -> None:
        result = self._results[index]
        try:
            await self._limiter.run(self._download, result)
        except asyncio.CancelledError:
            result.canceled = True
            raise
        finally:
            self._check_idle()

    async def _download(self, result: ItemResult) -> None:
        self._pending -= 1
        if self._cancel_token.cancelled:
            result.canceled = True
            return
        self._running += 1
        try:
            result.path = await self._download_fn(result.item, result.index)
        except CancelledError:
            result.canceled = True
        except self._skip_errors as exc:
            result.skipped = True
            result.error = str(exc)
        except Exception as exc:
            logger.warning("Item download failed index=%s error=%s", result.index, exc)
            result.error = str(exc) or exc.__class__.__name__
        finally:
            self._running -= 1
        if result.canceled or self._cancel_token.cancelled:
            return
        if self._on_item_done is not None:
            try:
                self._on_item_done(result, result.index)
            except Exception:
                logger.exception("on_item_done failed index=%s", result.index)

    def _check_idle(self) -> None:
        if self._cancel_token.cancelled or (self._ended and self._pending == 0 and self._running == 0):
            self._idle.set()
