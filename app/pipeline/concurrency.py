"""
Bounded concurrency mapper used by every per-lead stage pass.

K worker threads pull the next index from one shared cursor, so a worker that
finishes early immediately picks up more work. The mapper does not retry and
does not swallow errors: an exception ends only the worker that raised it,
the others keep draining, and the first exception is re-raised once all
workers have stopped.
"""
import contextvars
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, List, Sequence

logger = logging.getLogger('pipeline.concurrency')


def bounded_map(items: Sequence[Any], fn: Callable[[Any], Any], concurrency: int) -> List[Any]:
    """
    Run fn over items with at most `concurrency` calls in flight.

    Returns the results in item order. A worker stops at its first exception;
    the other workers drain the remaining items and the first error is re-raised.
    """
    items = list(items)
    results: List[Any] = [None] * len(items)
    if not items:
        return results

    lock = threading.Lock()
    cursor = [0]

    def _next_index():
        with lock:
            i = cursor[0]
            cursor[0] += 1
        return i

    def _worker():
        while True:
            i = _next_index()
            if i >= len(items):
                return
            results[i] = fn(items[i])

    n_workers = min(max(1, concurrency), len(items))
    with ThreadPoolExecutor(max_workers=n_workers, thread_name_prefix='bounded-map') as pool:
        # each worker runs in a copy of the caller's context (run_id/stage log tags)
        futures = [pool.submit(contextvars.copy_context().run, _worker) for _ in range(n_workers)]

    errors = [f.exception() for f in futures if f.exception() is not None]
    if errors:
        if len(errors) > 1:
            logger.warning("%d workers stopped on errors; re-raising the first", len(errors))
        raise errors[0]
    return results
