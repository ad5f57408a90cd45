import time
import asyncio
import functools
import logging
from datetime import datetime, timezone
from typing import Optional

logger = logging.getLogger("ecotec.timing")

SLOW_CALL_MS = 5000.0


def utc_now() -> datetime:
    """Naive UTC timestamp, the convention for every stored datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def timeit(label: Optional[str] = None, slow_ms: float = SLOW_CALL_MS):
    """
    Log how long a function (sync or async) took; WARNING above ``slow_ms``.

    Usage:
        @timeit()
        def foo():
            ...

        @timeit("verify_otp")
        async def bar():
            await ...
    """

    def _decorate(func):
        name = label or getattr(func, "__qualname__", func.__name__)

        def _report(started: float) -> None:
            elapsed_ms = (time.perf_counter() - started) * 1000.0
            level = logging.WARNING if elapsed_ms >= slow_ms else logging.INFO
            logger.log(level, "[timing] %s took %.2f ms", name, elapsed_ms)

        if asyncio.iscoroutinefunction(func):

            @functools.wraps(func)
            async def _aw(*args, **kwargs):
                started = time.perf_counter()
                try:
                    return await func(*args, **kwargs)
                finally:
                    _report(started)

            return _aw

        @functools.wraps(func)
        def _w(*args, **kwargs):
            started = time.perf_counter()
            try:
                return func(*args, **kwargs)
            finally:
                _report(started)

        return _w

    return _decorate
