"""Performance Logging.

Decorator and context manager for timing provider calls and database
operations, logging the slow ones.
"""

import asyncio
import functools
import logging
import time
from typing import Any, Callable, Optional

from src.logging_config.config import DEFAULT_LOGGING_CONFIG

logger = logging.getLogger(__name__)


def _report(
    _logger: logging.Logger,
    name: str,
    duration_ms: float,
    threshold_ms: float,
    failure: Optional[BaseException] = None,
    extra_data: Optional[str] = None,
) -> None:
    extra: dict[str, Any] = {"duration_ms": round(duration_ms, 2)}
    if extra_data is not None:
        extra["extra_data"] = extra_data

    if failure is not None:
        _logger.error(
            f"{name} failed after {duration_ms:.1f}ms: {type(failure).__name__}",
            extra=extra,
        )
    elif duration_ms >= threshold_ms:
        _logger.warning(f"Slow operation: {name} took {duration_ms:.1f}ms", extra=extra)
    else:
        _logger.debug(f"{name} completed in {duration_ms:.1f}ms", extra=extra)


def log_performance(
    threshold_ms: Optional[float] = None,
    logger_name: Optional[str] = None,
    include_args: bool = False,
) -> Callable:
    """Decorator that logs function execution time.

    Logs all calls at DEBUG level, slow calls (above threshold) at WARNING
    and failures at ERROR. Works on both sync and async callables.

    Example:
        @log_performance(threshold_ms=5000)
        async def complete(self, request, model):
            ...
    """
    if threshold_ms is None:
        threshold_ms = DEFAULT_LOGGING_CONFIG.slow_threshold_ms

    def decorator(func: Callable) -> Callable:
        _logger = logging.getLogger(logger_name or func.__module__)
        func_name = func.__qualname__

        if asyncio.iscoroutinefunction(func):
            @functools.wraps(func)
            async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
                start = time.perf_counter()
                summary = _summarize_args(args, kwargs) if include_args else None
                try:
                    result = await func(*args, **kwargs)
                except Exception as exc:
                    _report(_logger, func_name, (time.perf_counter() - start) * 1000,
                            threshold_ms, exc, summary)
                    raise
                _report(_logger, func_name, (time.perf_counter() - start) * 1000,
                        threshold_ms, None, summary)
                return result
            return async_wrapper

        @functools.wraps(func)
        def sync_wrapper(*args: Any, **kwargs: Any) -> Any:
            start = time.perf_counter()
            summary = _summarize_args(args, kwargs) if include_args else None
            try:
                result = func(*args, **kwargs)
            except Exception as exc:
                _report(_logger, func_name, (time.perf_counter() - start) * 1000,
                        threshold_ms, exc, summary)
                raise
            _report(_logger, func_name, (time.perf_counter() - start) * 1000,
                    threshold_ms, None, summary)
            return result
        return sync_wrapper

    return decorator


def _summarize_args(args: tuple, kwargs: dict, max_len: int = 100) -> str:
    """Create a short summary of function arguments for logging."""
    parts = []
    for arg in args[:3]:
        rep = repr(arg)
        if len(rep) > max_len:
            rep = rep[:max_len] + "..."
        parts.append(rep)
    if len(args) > 3:
        parts.append(f"... +{len(args) - 3} more args")

    for key, val in list(kwargs.items())[:3]:
        rep = repr(val)
        if len(rep) > max_len:
            rep = rep[:max_len] + "..."
        parts.append(f"{key}={rep}")

    return ", ".join(parts)


class PerformanceTimer:
    """Context manager for timing code blocks.

    Example:
        with PerformanceTimer("anthropic.complete") as timer:
            result = await provider.complete(request, model)
        result.latency_ms = timer.duration_ms
    """

    def __init__(self, operation_name: str, threshold_ms: Optional[float] = None):
        self.operation_name = operation_name
        self.threshold_ms = threshold_ms or DEFAULT_LOGGING_CONFIG.slow_threshold_ms
        self.start_time: float = 0
        self.duration_ms: float = 0

    def __enter__(self) -> "PerformanceTimer":
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.duration_ms = (time.perf_counter() - self.start_time) * 1000
        _report(logger, self.operation_name, self.duration_ms, self.threshold_ms, exc_val)
