"""
Small helpers shared by the orchestrator, the coverage aggregator and the
result transformer.
"""

import functools
import inspect
import logging
import re
import time
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Optional, TypeVar, Union

from apexrunner.core.constants import (
    CLASS_ID_PREFIX,
    TEST_RUN_ID_PREFIX,
    VALID_ID_LENGTHS,
)

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])


def is_valid_test_run_id(test_run_id: Optional[str]) -> bool:
    return (
        bool(test_run_id)
        and len(test_run_id) in VALID_ID_LENGTHS
        and test_run_id.startswith(TEST_RUN_ID_PREFIX)
    )


def is_valid_apex_class_id(apex_class_id: Optional[str]) -> bool:
    return (
        bool(apex_class_id)
        and len(apex_class_id) in VALID_ID_LENGTHS
        and apex_class_id.startswith(CLASS_ID_PREFIX)
    )


def calculate_percentage(dividend: int, divisor: int) -> str:
    """
    Return `round(dividend / divisor * 100)` as a percent string.

    Zero (or negative) dividends are "0%" whatever the divisor, so 0/0 never
    divides. Halves round up (5/8 -> "63%").
    """
    if dividend <= 0 or divisor <= 0:
        return "0%"
    value = (Decimal(dividend) * 100 / Decimal(divisor)).quantize(
        Decimal(1), rounding=ROUND_HALF_UP
    )
    return f"{value}%"


def current_time_ms() -> int:
    return int(time.time() * 1000)


_OFFSET_WITHOUT_COLON = re.compile(r"([+-]\d{2})(\d{2})$")


def parse_platform_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse `2020-11-09T18:02:50.000+0000` style timestamps."""
    if not value:
        return None
    text = value.replace("Z", "+00:00")
    text = _OFFSET_WITHOUT_COLON.sub(r"\1:\2", text)
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        logger.debug("Unparseable platform timestamp: %s", value)
        return None


def format_start_time(start_time: Union[str, int, None]) -> Optional[str]:
    """Render a run start time as `Mon Nov 09 2020 6:02:50 PM`."""
    if start_time is None:
        return None
    if isinstance(start_time, (int, float)):
        dt = datetime.fromtimestamp(start_time / 1000)
    else:
        dt = parse_platform_datetime(start_time)
        if dt is None:
            return start_time
    clock = dt.strftime("%I:%M:%S %p").lstrip("0")
    return f"{dt:%a %b %d %Y} {clock}"


def elapsed_time(level: int = logging.DEBUG) -> Callable[[F], F]:
    """
    Log entry and exit of the wrapped function with the elapsed milliseconds.

    Works on both plain functions and coroutine functions.
    """

    def decorator(func: F) -> F:
        name = f"{func.__module__}.{func.__qualname__}"

        if inspect.iscoroutinefunction(func):

            @functools.wraps(func)
            async def async_wrapper(*args, **kwargs):
                logger.log(level, "%s - enter", name)
                start = time.perf_counter()
                try:
                    return await func(*args, **kwargs)
                finally:
                    elapsed_ms = (time.perf_counter() - start) * 1000
                    logger.log(level, "%s - exit (%.1f ms)", name, elapsed_ms)

            return async_wrapper  # type: ignore[return-value]

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            logger.log(level, "%s - enter", name)
            start = time.perf_counter()
            try:
                return func(*args, **kwargs)
            finally:
                elapsed_ms = (time.perf_counter() - start) * 1000
                logger.log(level, "%s - exit (%.1f ms)", name, elapsed_ms)

        return wrapper  # type: ignore[return-value]

    return decorator
