"""
Miscelaneous utilities.
"""

import inspect
import time
from functools import wraps
from typing import Callable

from shapebase.logger import logger


def _log_elapsed(name: str, init: float) -> None:
    end = time.perf_counter() - init
    logger.debug(f"{name} finished in {1000 * end:.2f} ms")


def timed(func) -> Callable:
    if inspect.iscoroutinefunction(func):
        @wraps(func)
        async def timed_coro(*args, **kwargs):
            init = time.perf_counter()
            out = await func(*args, **kwargs)
            _log_elapsed(func.__name__, init)
            return out
        return timed_coro

    @wraps(func)
    def timed_func(*args, **kwargs):
        init = time.perf_counter()
        out = func(*args, **kwargs)
        _log_elapsed(func.__name__, init)
        return out
    return timed_func


def store_cache_key(store, *parts) -> str:
    """Cache key that goes stale as soon as the store records a write."""
    return ":".join([store.cache_namespace, str(store.version), *map(str, parts)])
