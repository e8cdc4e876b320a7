"""
Cooperative cancellation.

A CancellationTokenSource owns a token; callbacks registered on the token run
once, in registration order, when the source is cancelled. Work already in
flight (a batched query, for instance) is not interrupted.
"""

import inspect
import logging
from typing import Any, Awaitable, Callable, List, Optional, Union

logger = logging.getLogger(__name__)

CancellationCallback = Callable[[], Union[Awaitable[Any], Any]]


class CancellationToken:
    def __init__(self) -> None:
        self._cancelled = False
        self._callbacks: List[CancellationCallback] = []

    @property
    def is_cancellation_requested(self) -> bool:
        return self._cancelled

    def on_cancellation_requested(self, callback: CancellationCallback) -> None:
        self._callbacks.append(callback)

    async def _fire(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            result = callback()
            if inspect.isawaitable(result):
                await result


class CancellationTokenSource:
    def __init__(self) -> None:
        self.token = CancellationToken()

    async def cancel(self) -> None:
        """Request cancellation; awaits every registered callback in order."""
        logger.info("Cancellation requested")
        await self.token._fire()


def is_cancelled(token: Optional[CancellationToken]) -> bool:
    return token is not None and token.is_cancellation_requested
