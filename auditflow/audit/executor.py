# auditflow/audit/executor.py
import asyncio
import logging
from typing import Any, Awaitable, Callable, Iterable, List, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

_PENDING = object()


class BoundedExecutor:
    """
    Runs an async worker over a stream of items with at most `limit` calls in
    flight. A finished call (success or failure) immediately admits the next
    item, so throughput is never held back by the slowest member of a group.

    Results come back in input order. A failing worker does not disturb its
    siblings: its exception object is stored in its own result slot.
    """

    def __init__(self, limit: int):
        if limit is None or int(limit) < 1:
            raise ValueError(f"limit must be >= 1 (got {limit})")
        self.limit = int(limit)
        self.in_flight = 0
        self.peak_in_flight = 0

    async def run(
        self,
        items: Iterable[T],
        worker: Callable[[T], Awaitable[R]],
        on_item_done: Optional[Callable[[int], Any]] = None,
    ) -> List[Any]:
        source = enumerate(items)
        results: List[Any] = []
        done_count = 0

        def _next():
            # single-threaded event loop: pulling from the shared iterator is atomic
            try:
                index, item = next(source)
            except StopIteration:
                return None
            while len(results) <= index:
                results.append(_PENDING)
            return index, item

        async def _lane() -> None:
            nonlocal done_count
            while True:
                pulled = _next()
                if pulled is None:
                    return
                index, item = pulled
                self.in_flight += 1
                self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
                try:
                    results[index] = await worker(item)
                except Exception as e:
                    results[index] = e
                finally:
                    self.in_flight -= 1
                done_count += 1
                if on_item_done is not None:
                    try:
                        on_item_done(done_count)
                    except Exception:
                        logger.warning("on_item_done callback failed", exc_info=True)

        width = self.limit
        if hasattr(items, "__len__"):
            width = min(width, len(items))  # type: ignore[arg-type]
        lanes = [asyncio.create_task(_lane()) for _ in range(width)]
        try:
            await asyncio.gather(*lanes)
        except BaseException:
            for lane in lanes:
                lane.cancel()
            raise
        return results


async def run_bounded(
    items: Iterable[T],
    worker: Callable[[T], Awaitable[R]],
    limit: int,
    on_item_done: Optional[Callable[[int], Any]] = None,
) -> List[Any]:
    """Functional shortcut for `BoundedExecutor(limit).run(...)`."""
    return await BoundedExecutor(limit).run(items, worker, on_item_done)
