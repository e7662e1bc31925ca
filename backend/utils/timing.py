import time
import asyncio
import functools
import logging

logger = logging.getLogger("operis.timing")


def timeit(label: str = None, slow_ms: float = None):
    """
    Decorator to log execution time for a function (sync or async).

    Durations are logged at DEBUG; calls slower than ``slow_ms`` at WARNING.

    Usage:
        @timeit()
        def foo():
            ...

        @timeit("scheduler.tick", slow_ms=30000)
        async def bar():
            await ...
    """

    def _decorate(func):
        name = label or getattr(func, "__qualname__", getattr(func, "__name__", "function"))

        def _report(start: float) -> None:
            elapsed_ms = (time.perf_counter() - start) * 1000.0
            if slow_ms is not None and elapsed_ms >= slow_ms:
                logger.warning(f"[timing] {name} took {elapsed_ms:.2f} ms")
            else:
                logger.debug(f"[timing] {name} took {elapsed_ms:.2f} ms")

        if asyncio.iscoroutinefunction(func):

            @functools.wraps(func)
            async def _aw(*args, **kwargs):
                start = time.perf_counter()
                try:
                    return await func(*args, **kwargs)
                finally:
                    _report(start)

            return _aw

        @functools.wraps(func)
        def _w(*args, **kwargs):
            start = time.perf_counter()
            try:
                return func(*args, **kwargs)
            finally:
                _report(start)

        return _w

    return _decorate
