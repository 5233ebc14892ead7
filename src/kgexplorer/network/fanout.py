from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Iterable, TypeVar

from ..gateway.base import check_cancelled


T = TypeVar("T")
R = TypeVar("R")


def bounded_map(
    fn: Callable[[T], R],
    items: Iterable[T],
    *,
    workers: int,
    cancel: threading.Event | None = None,
) -> list[R]:
    """Run ``fn`` over ``items`` on at most ``workers`` threads, results in input order.

    The first failure cancels work that has not started yet and is re-raised.
    """
    items = list(items)
    check_cancelled(cancel)
    if not items:
        return []
    if workers <= 1 or len(items) == 1:
        return [fn(item) for item in items]

    with ThreadPoolExecutor(max_workers=min(int(workers), len(items))) as pool:
        futures = [pool.submit(fn, item) for item in items]
        try:
            return [f.result() for f in futures]
        except BaseException:
            for f in futures:
                f.cancel()
            raise
