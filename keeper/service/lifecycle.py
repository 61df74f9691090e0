from __future__ import annotations

import asyncio
import inspect
from typing import Any, Callable, List

from keeper.logging import get_logger

logger = get_logger(__name__)


class Lifecycle:
    """Owns process-wide resources and releases them once, in reverse order.

    Created by the entrypoint and handed to the services that need to know
    whether the process is shutting down. Nothing registers itself globally.
    """

    def __init__(self) -> None:
        self._resources: List[tuple[str, Callable[[], Any]]] = []
        self._closing = False
        self._closed = asyncio.Event()
        self._lock = asyncio.Lock()

    @property
    def closing(self) -> bool:
        return self._closing

    def register(self, name: str, close: Callable[[], Any]) -> None:
        """Register a close callable; coroutine functions are awaited."""
        if self._closing:
            raise RuntimeError("lifecycle is shutting down")
        self._resources.append((name, close))

    async def shutdown(self) -> None:
        """Close every registered resource. Safe to call more than once."""
        async with self._lock:
            if self._closed.is_set():
                return
            self._closing = True
            resources, self._resources = self._resources, []
            for name, close in reversed(resources):
                try:
                    result = close()
                    if inspect.isawaitable(result):
                        await result
                    logger.info("resource_closed", resource=name)
                except Exception as exc:
                    logger.error(
                        "resource_close_failed",
                        resource=name,
                        error_type=type(exc).__name__,
                        error=str(exc),
                    )
            self._closed.set()


__all__ = ["Lifecycle"]
